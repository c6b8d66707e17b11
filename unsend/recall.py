"""Recall engine: the Live -> Recalled transition and everything gated on it.

All three triggers (owner request, TTL expiry, failed unlock) go through
``_transition``, which checks and sets ``recalled`` under the artifact's lock
before any side effect. Whoever gets there first wins; everyone after is a
no-op and sends no notifications.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from unsend.artifacts import Artifact, ArtifactRegistry
from unsend.config import Settings
from unsend.dispatcher import Dispatcher, Target
from unsend.errors import AuthorizationError, GoneError, NotFoundError, ValidationError
from unsend.models import RecallConfirmedEvent, RecalledEvent, UnlockedEvent
from unsend.storage import Storage

logger = logging.getLogger(__name__)

MANUAL = "manual"
EXPIRED = "expired"
UNLOCK_FAILED = "unlock_failed"

PUBLIC = "public"
OWNER = "owner"
PEER = "peer"


def file_url(artifact_id: str, access: str) -> str:
    return f"/files/{artifact_id}/{access}"


@dataclass(frozen=True)
class Reference:
    artifact_id: str
    access: str

    @property
    def url(self) -> str:
        return file_url(self.artifact_id, self.access)

    def to_body(self) -> dict:
        return {"ok": True, "id": self.artifact_id, "access": self.access, "url": self.url}


def owner_target(artifact: Artifact, exclude: bool = False) -> Target:
    """Everyone ``Artifact.is_owner`` accepts: the owning client id or the owner's identity."""
    return Target(
        identity=artifact.owner_identity,
        client_id=artifact.owner_client_id,
        exclude=exclude,
        either=True,
    )


class RecallEngine:
    def __init__(self, settings: Settings, artifacts: ArtifactRegistry, storage: Storage, dispatcher: Dispatcher):
        self.settings = settings
        self.artifacts = artifacts
        self.storage = storage
        self.dispatcher = dispatcher

    # ---- triggers ------------------------------------------------------------

    def schedule_expiry(self, artifact: Artifact) -> None:
        """Start the single TTL timer for ``artifact`` (no-op without a TTL)."""
        if artifact.ttl_seconds <= 0 or artifact.timer is not None or artifact.recalled:
            return
        artifact.timer = asyncio.create_task(
            self._expire_after(artifact.id, artifact.ttl_seconds),
            name=f"ttl-{artifact.id}",
        )

    async def _expire_after(self, artifact_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        logger.info("TTL elapsed for %s", artifact_id)
        await self.recall(artifact_id, EXPIRED)

    async def request_recall(
        self,
        artifact_id: str,
        client_id: Optional[str] = None,
        identity: Optional[str] = None,
    ) -> bool:
        """Owner-initiated recall. Raises AuthorizationError for anyone else."""
        if not self.artifacts.authorize_recall(artifact_id, client_id, identity):
            logger.info("Recall of %s refused for %s/%s", artifact_id, identity, client_id)
            raise AuthorizationError("only the sender can recall this item", artifact_id=artifact_id)
        return await self.recall(artifact_id, MANUAL)

    async def recall(self, artifact_id: str, reason: str = MANUAL) -> bool:
        """Recall without an ownership check. True if this call did the transition."""
        artifact = self.artifacts.get(artifact_id)
        async with artifact.lock:
            changed = await self._transition(artifact, reason)
        if changed:
            self._announce(artifact)
        return changed

    # ---- the transition ------------------------------------------------------

    async def _transition(self, artifact: Artifact, reason: str) -> bool:
        """Caller must hold ``artifact.lock``."""
        if artifact.recalled:
            return False
        artifact.recalled = True
        artifact.recall_reason = reason
        artifact.recalled_at = datetime.now(timezone.utc)

        timer, artifact.timer = artifact.timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

        artifact.unlocked_for_identity = None
        if artifact.is_file:
            await self.storage.move_to_restricted(artifact)

        logger.info("Recalled %s %s in room %s (%s)", artifact.kind, artifact.id, artifact.room, reason)
        return True

    def _announce(self, artifact: Artifact) -> None:
        room = artifact.room
        if not artifact.is_file:
            self.dispatcher.redact(room, artifact.id)

        self.dispatcher.publish(
            room,
            RecalledEvent(id=artifact.id, reason=artifact.recall_reason).to_event(),
            target=owner_target(artifact, exclude=True),
        )
        owner_url = file_url(artifact.id, OWNER) if artifact.restricted_path is not None else None
        self.dispatcher.publish(
            room,
            RecallConfirmedEvent(id=artifact.id, reason=artifact.recall_reason, owner_url=owner_url).to_event(),
            target=owner_target(artifact),
        )

    # ---- unlock --------------------------------------------------------------

    async def unlock(self, artifact_id: str, password: str, identity: str) -> Reference:
        """One guess: a wrong password recalls the file for everybody."""
        artifact = self.artifacts.get(artifact_id)
        if not artifact.is_file or not artifact.protected:
            raise ValidationError("item is not password protected", artifact_id=artifact_id)
        if not password:
            raise ValidationError("password is required", artifact_id=artifact_id)

        async with artifact.lock:
            if artifact.recalled:
                raise GoneError("item has been recalled", artifact_id=artifact_id)
            if artifact.is_owner(identity=identity):
                raise AuthorizationError("the sender does not need to unlock", artifact_id=artifact_id)

            matched = await asyncio.to_thread(artifact.check_password, password, self.settings.pbkdf2_iterations)
            if matched:
                artifact.unlocked_for_identity = identity
            else:
                logger.warning("Wrong password for %s from %s, recalling", artifact_id, identity)
                changed = await self._transition(artifact, UNLOCK_FAILED)

        if not matched:
            if changed:
                self._announce(artifact)
            raise GoneError("wrong password; the item has been recalled", artifact_id=artifact_id)

        ref = Reference(artifact.id, PEER)
        self.dispatcher.publish(
            artifact.room,
            UnlockedEvent(id=artifact.id, url=ref.url).to_event(),
            target=Target(identity=identity),
        )
        return ref

    # ---- access resolution -----------------------------------------------------

    async def resolve(self, artifact_id: str, identity: str) -> Reference:
        """Best reference ``identity`` can use right now. Never cached."""
        artifact = self.artifacts.get(artifact_id)
        if not artifact.is_file:
            raise ValidationError("item is not a file", artifact_id=artifact_id)

        async with artifact.lock:
            if artifact.is_owner(identity=identity):
                if artifact.restricted_path is not None:
                    return Reference(artifact.id, OWNER)
                if artifact.public_path is not None:
                    return Reference(artifact.id, PUBLIC)
                raise NotFoundError("file is no longer stored", artifact_id=artifact_id)

            if artifact.recalled:
                raise GoneError("item has been recalled", artifact_id=artifact_id)

            if not artifact.protected and not artifact.view_only and artifact.public_path is not None:
                return Reference(artifact.id, PUBLIC)

            if artifact.view_only and not artifact.protected and artifact.unlocked_for_identity is None:
                # First viewer to ask is bound as the only one.
                artifact.unlocked_for_identity = identity
                logger.info("View-only %s bound to %s", artifact.id, identity)

            if artifact.unlocked_for_identity == identity and artifact.restricted_path is not None:
                return Reference(artifact.id, PEER)

        raise AuthorizationError("not allowed to view this item", artifact_id=artifact_id)

    def fetchable_path(self, artifact_id: str, access: str, identity: str):
        """Path a retrieval endpoint may serve, or raise. Checked per request."""
        artifact = self.artifacts.get(artifact_id)
        if not artifact.is_file:
            raise NotFoundError("no such file", artifact_id=artifact_id)

        if access == OWNER:
            if not artifact.is_owner(identity=identity):
                raise AuthorizationError("owner only", artifact_id=artifact_id)
            path = artifact.restricted_path or artifact.public_path
        elif access == PEER:
            if artifact.recalled:
                raise GoneError("item has been recalled", artifact_id=artifact_id)
            if artifact.unlocked_for_identity is None or artifact.unlocked_for_identity != identity:
                raise AuthorizationError("not unlocked for you", artifact_id=artifact_id)
            path = artifact.restricted_path
        elif access == PUBLIC:
            if artifact.recalled:
                raise GoneError("item has been recalled", artifact_id=artifact_id)
            if artifact.protected or artifact.view_only:
                raise AuthorizationError("item is not public", artifact_id=artifact_id)
            path = artifact.public_path
        else:
            raise NotFoundError("unknown access kind")

        if path is None:
            raise NotFoundError("file is no longer stored", artifact_id=artifact_id)
        return artifact, path

    async def open_for_fetch(self, artifact_id: str, access: str, identity: str):
        """Check access and open the file while holding the artifact's lock.

        A recall can only move the file before the check or after the open;
        the open handle stays readable either way.
        """
        async with self.artifacts.get(artifact_id).lock:
            artifact, path = self.fetchable_path(artifact_id, access, identity)
            try:
                handle = await asyncio.to_thread(open, path, "rb")
            except (FileNotFoundError, IsADirectoryError) as e:
                logger.warning("File for %s missing at %s", artifact_id, path)
                raise NotFoundError("file is no longer stored", artifact_id=artifact_id) from e
        return artifact, handle

    def cancel_timers(self) -> int:
        n = 0
        for artifact in self.artifacts:
            if artifact.timer is not None:
                artifact.timer.cancel()
                artifact.timer = None
                n += 1
        return n
