"""The Relay context: one instance per process, built in ``create_app``.

It owns the registries, storage, dispatcher and recall engine and is handed
to every websocket and HTTP handler instead of module-level globals.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from unsend.artifacts import Artifact, ArtifactRegistry, FileMeta
from unsend.config import Settings
from unsend.dispatcher import Dispatcher
from unsend.errors import RelayError, ValidationError
from unsend.models import (
    ChatEvent,
    ChatFrame,
    DownloadedEvent,
    DownloadedFrame,
    ErrorEvent,
    FileEvent,
    MemberInfo,
    PingFrame,
    PongEvent,
    PresenceEvent,
    RecallFrame,
    WelcomeEvent,
)
from unsend.recall import PUBLIC, RecallEngine, file_url, owner_target
from unsend.rooms import Member, RoomRegistry
from unsend.storage import Storage

logger = logging.getLogger(__name__)


@dataclass
class Upload:
    meta: FileMeta
    data: bytes


class Relay:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.rooms = RoomRegistry(capacity=settings.room_capacity)
        self.artifacts = ArtifactRegistry(settings)
        self.storage = Storage(settings.public_dir, settings.vault_dir)
        self.dispatcher = Dispatcher(
            self.rooms,
            buffer_size=settings.event_buffer_size,
            stream_queue_size=settings.stream_queue_size,
            idle_seconds=settings.channel_idle_seconds,
        )
        self.recall = RecallEngine(settings, self.artifacts, self.storage, self.dispatcher)

    def startup(self) -> None:
        self.storage.ensure_dirs()
        logger.info("Storage ready under %s", self.settings.storage_dir)

    def shutdown(self) -> None:
        cancelled = self.recall.cancel_timers()
        logger.info("Relay stopped (%d pending timers cancelled)", cancelled)

    # ---- membership ----------------------------------------------------------

    def presence(self, room: str) -> PresenceEvent:
        members = [MemberInfo(client_id=m.client_id, identity=m.identity) for m in self.rooms.members(room)]
        return PresenceEvent(room=room, members=members)

    async def join(self, member: Member) -> None:
        """Admit ``member``; RoomFullError propagates with nothing registered."""
        await self.rooms.join(member)
        member.start_writer()
        presence = self.presence(member.room)
        welcome = WelcomeEvent(
            client_id=member.client_id,
            identity=member.identity,
            room=member.room,
            members=presence.members,
        )
        self.dispatcher.send_direct(member, welcome.to_event())
        self.dispatcher.publish(member.room, presence.to_event())

    async def leave(self, member: Member) -> None:
        remaining = await self.rooms.leave(member)
        await member.close()
        if remaining:
            self.dispatcher.publish(member.room, self.presence(member.room).to_event())
        else:
            self.dispatcher.release(member.room)

    # ---- client frames -------------------------------------------------------

    async def handle_frame(self, member: Member, frame) -> None:
        """Act on one parsed frame. Relay errors go back to the sender only."""
        try:
            if isinstance(frame, ChatFrame):
                self.send_chat(member, frame.text)
            elif isinstance(frame, RecallFrame):
                await self.recall.request_recall(frame.id, client_id=member.client_id, identity=member.identity)
            elif isinstance(frame, DownloadedFrame):
                self.downloaded(frame.id, member)
            elif isinstance(frame, PingFrame):
                self.dispatcher.send_direct(member, PongEvent().to_event())
        except RelayError as e:
            self.dispatcher.send_direct(
                member,
                ErrorEvent(category=e.category, message=e.message, id=e.artifact_id).to_event(),
            )

    def send_chat(self, member: Member, text: str) -> Artifact:
        artifact = self.artifacts.create_chat(member.room, member.identity, member.client_id, text)
        event = ChatEvent(id=artifact.id, sender=member.client_id, text=artifact.text, timestamp=artifact.created_at)
        self.dispatcher.publish(member.room, event.to_event())
        return artifact

    def downloaded(self, artifact_id: str, member: Member) -> None:
        """Tell the owner that the peer fetched their file."""
        artifact = self.artifacts.get(artifact_id)
        if artifact.room != member.room or not artifact.is_file:
            raise ValidationError("not a file in this room", artifact_id=artifact_id)
        if artifact.is_owner(identity=member.identity, client_id=member.client_id):
            return
        event = DownloadedEvent(id=artifact.id, by=member.client_id, timestamp=datetime.now(timezone.utc))
        self.dispatcher.publish(member.room, event.to_event(), target=owner_target(artifact))

    # ---- uploads ---------------------------------------------------------------

    def uploader_client_id(self, room: str, identity: str, client_id: Optional[str]) -> Optional[str]:
        """Accept the claimed session id only if it is a live member at the same address."""
        if not client_id:
            return None
        member = self.rooms.find(room, client_id)
        if member is None or member.identity != identity:
            logger.info("Ignoring unverified clientId on upload to %s from %s", room, identity)
            return None
        return client_id

    async def upload(
        self,
        room: str,
        identity: str,
        client_id: Optional[str],
        uploads: list[Upload],
        ttl_seconds: float = 0,
        password: Optional[str] = None,
        view_only: bool = False,
    ) -> list[Artifact]:
        """Store each file as its own artifact and announce it to the room."""
        if not uploads:
            raise ValidationError("no files in upload")
        owner_client_id = self.uploader_client_id(room, identity, client_id)

        created = []
        for upload in uploads:
            artifact = self.artifacts.create_file(
                room,
                identity,
                owner_client_id,
                upload.meta,
                ttl_seconds=ttl_seconds,
                password=password,
                view_only=view_only,
            )
            try:
                await self.storage.save(artifact, upload.data)
            except RelayError:
                self.artifacts.discard(artifact.id)
                raise
            self.recall.schedule_expiry(artifact)
            created.append(artifact)

            logger.info(
                "Stored %s (%s, %d bytes, protected=%s, view_only=%s, ttl=%ss) in room %s",
                artifact.id, artifact.name, artifact.size, artifact.protected, artifact.view_only,
                artifact.ttl_seconds, room,
            )
            self.dispatcher.publish(room, self.file_event(artifact).to_event())
        return created

    def file_event(self, artifact: Artifact) -> FileEvent:
        url = file_url(artifact.id, PUBLIC) if artifact.public_path is not None else None
        return FileEvent(
            id=artifact.id,
            sender=artifact.owner_client_id or artifact.owner_identity,
            name=artifact.name,
            size=artifact.size,
            mime_type=artifact.mime_type,
            protected=artifact.protected,
            view_only=artifact.view_only,
            expires_at=artifact.expires_at,
            url=url,
            timestamp=artifact.created_at,
        )
