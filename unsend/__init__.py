"""unsend: a two-party room relay for chat and files that can be recalled."""

__version__ = "0.3.0"
