"""Error taxonomy shared by the registries, the recall engine and the routers.

Every error carries a machine-readable ``category`` that is sent to clients
verbatim, plus the HTTP status the routers answer with.
"""


class RelayError(Exception):
    category = "invalid_input"
    status_code = 400

    def __init__(self, message: str = "", *, artifact_id: str | None = None):
        super().__init__(message or self.category)
        self.message = message or self.category
        self.artifact_id = artifact_id

    def to_body(self) -> dict:
        body = {"ok": False, "error": self.category, "message": self.message}
        if self.artifact_id:
            body["id"] = self.artifact_id
        return body


class RoomFullError(RelayError):
    """Raised when a third connection tries to join a two-party room."""

    category = "room_full"
    status_code = 409


class AuthorizationError(RelayError):
    category = "forbidden"
    status_code = 403


class GoneError(AuthorizationError):
    """The artifact has been recalled; nobody but the owner can reach it."""

    def to_body(self) -> dict:
        body = super().to_body()
        body["recalled"] = True
        return body


class NotFoundError(RelayError):
    category = "not_found"
    status_code = 404


class ValidationError(RelayError):
    category = "invalid_input"
    status_code = 400


class PayloadTooLargeError(ValidationError):
    status_code = 413


class StorageError(RelayError):
    """Filesystem failure while moving or deleting a stored file.

    Recovered inside the storage layer; it only escapes from upload writes.
    """

    category = "storage"
    status_code = 500
