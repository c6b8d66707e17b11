"""Artifact registry: every chat message and file that can be recalled."""

import asyncio
import hashlib
import hmac
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from unsend.config import Settings
from unsend.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

CHAT = "chat"
FILE = "file"

_SUFFIX_CHARS = re.compile(r"[^A-Za-z0-9.]")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = _BASE36[r] + out
    return out or "0"


def new_artifact_id() -> str:
    """Millisecond time prefix plus a random suffix; sortable, no counter."""
    return f"{_base36(int(time.time() * 1000))}-{secrets.token_hex(4)}"


def hash_password(password: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)


@dataclass
class FileMeta:
    name: str
    size: int
    mime_type: str = "application/octet-stream"


@dataclass
class Artifact:
    id: str
    room: str
    kind: str
    owner_identity: str
    owner_client_id: Optional[str]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    recalled: bool = False
    recall_reason: Optional[str] = None
    recalled_at: Optional[datetime] = None

    # chat
    text: str = ""

    # file
    name: str = ""
    stored_name: str = ""
    size: int = 0
    mime_type: str = "application/octet-stream"
    public_path: Optional[Path] = None
    restricted_path: Optional[Path] = None
    view_only: bool = False

    protected: bool = False
    salt: bytes = field(default=b"", repr=False)
    password_hash: bytes = field(default=b"", repr=False)
    unlocked_for_identity: Optional[str] = None

    ttl_seconds: float = 0
    expires_at: Optional[datetime] = None
    timer: Optional[asyncio.Task] = field(default=None, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def is_file(self) -> bool:
        return self.kind == FILE

    @property
    def starts_restricted(self) -> bool:
        """Protected and view-only files never touch the public location."""
        return self.protected or self.view_only

    def is_owner(self, identity: Optional[str] = None, client_id: Optional[str] = None) -> bool:
        if client_id and self.owner_client_id and client_id == self.owner_client_id:
            return True
        return identity is not None and identity == self.owner_identity

    def check_password(self, password: str, iterations: int) -> bool:
        supplied = hash_password(password, self.salt, iterations)
        return hmac.compare_digest(supplied, self.password_hash)


class ArtifactRegistry:
    """Owns every Artifact record for the lifetime of the process.

    Records are never released on room teardown; they stay until process exit
    so the owner can still fetch a recalled file.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._items: dict[str, Artifact] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items.values()))

    def create_chat(self, room: str, owner_identity: str, owner_client_id: Optional[str], text: str) -> Artifact:
        limit = self.settings.max_text_length
        if len(text) > limit:
            logger.debug("Truncating chat text from %d to %d chars", len(text), limit)
            text = text[:limit]
        artifact = Artifact(
            id=new_artifact_id(),
            room=room,
            kind=CHAT,
            owner_identity=owner_identity,
            owner_client_id=owner_client_id,
            text=text,
        )
        self._items[artifact.id] = artifact
        return artifact

    def create_file(
        self,
        room: str,
        owner_identity: str,
        owner_client_id: Optional[str],
        meta: FileMeta,
        ttl_seconds: float = 0,
        password: Optional[str] = None,
        view_only: bool = False,
    ) -> Artifact:
        """Record a new file; the bytes are written by the storage layer.

        ``ttl_seconds`` is clamped to [0, max_ttl_seconds]. A non-empty
        password makes the file protected: only a salted hash is kept.
        """
        name = Path((meta.name or "").replace("\\", "/")).name
        if not name:
            raise ValidationError("file name is required")

        ttl = clamp_ttl(ttl_seconds, self.settings.max_ttl_seconds)
        artifact = Artifact(
            id=new_artifact_id(),
            room=room,
            kind=FILE,
            owner_identity=owner_identity,
            owner_client_id=owner_client_id,
            name=name,
            size=meta.size,
            mime_type=meta.mime_type or "application/octet-stream",
            view_only=bool(view_only),
            ttl_seconds=ttl,
        )
        artifact.stored_name = artifact.id + _safe_suffix(name)
        if ttl > 0:
            artifact.expires_at = artifact.created_at + timedelta(seconds=ttl)
        if password:
            artifact.protected = True
            artifact.salt = secrets.token_bytes(16)
            artifact.password_hash = hash_password(password, artifact.salt, self.settings.pbkdf2_iterations)

        self._items[artifact.id] = artifact
        return artifact

    def get(self, artifact_id: str) -> Artifact:
        artifact = self._items.get(artifact_id)
        if artifact is None:
            raise NotFoundError("no such item", artifact_id=artifact_id)
        return artifact

    def discard(self, artifact_id: str) -> None:
        """Forget a record whose upload never completed."""
        self._items.pop(artifact_id, None)

    def authorize_recall(
        self,
        artifact_id: str,
        requester_client_id: Optional[str],
        requester_identity: Optional[str] = None,
    ) -> bool:
        return self.get(artifact_id).is_owner(identity=requester_identity, client_id=requester_client_id)

    def list_room(self, room: str) -> list[Artifact]:
        return [a for a in self._items.values() if a.room == room]


def clamp_ttl(ttl_seconds, upper: float) -> float:
    try:
        ttl = float(ttl_seconds or 0)
    except (TypeError, ValueError):
        raise ValidationError("ttlSeconds must be a number")
    if ttl != ttl:  # NaN
        return 0.0
    return min(max(ttl, 0.0), upper)


def _safe_suffix(name: str) -> str:
    suffix = _SUFFIX_CHARS.sub("", Path(name).suffix)
    return suffix[:16] if suffix.startswith(".") and len(suffix) > 1 else ""
