"""Out-of-band file endpoints: upload, unlock, resolve, recall and retrieval."""

import logging
import mimetypes
import os
from typing import TYPE_CHECKING, BinaryIO, Iterator, Optional
from urllib.parse import quote

from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.responses import StreamingResponse

from unsend.artifacts import FileMeta
from unsend.errors import PayloadTooLargeError
from unsend.identity import normalize_room, resolve_identity
from unsend.models import RecallRequest, UnlockRequest
from unsend.recall import OWNER, PEER, PUBLIC, file_url
from unsend.relay import Upload

if TYPE_CHECKING:
    from unsend.relay import Relay

logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store"}
CHUNK_SIZE = 64 * 1024


def content_disposition(disposition: str, filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"{disposition}; filename*=utf-8''{quoted}"
    return f'{disposition}; filename="{filename}"'


def read_chunks(handle: BinaryIO) -> Iterator[bytes]:
    """Stream an already-open file and close it when done."""
    with handle:
        while True:
            chunk = handle.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk


def create_files_router(relay: "Relay") -> APIRouter:
    settings = relay.settings
    router = APIRouter(tags=["files"])

    def identity_of(request: Request) -> str:
        return resolve_identity(request, trust_forwarded_for=settings.trust_forwarded_for)

    @router.post("/api/upload")
    async def upload(
        request: Request,
        files: list[UploadFile] = File(...),
        room: str = Form(""),
        client_id: Optional[str] = Form(None, alias="clientId"),
        ttl_seconds: float = Form(0, alias="ttlSeconds"),
        password: str = Form(""),
        view_only: bool = Form(False, alias="viewOnly"),
    ):
        room_name = normalize_room(room or request.query_params.get("room"), settings.default_room)
        limit = settings.max_upload_bytes

        uploads = []
        for f in files:
            data = await f.read(limit + 1)
            if len(data) > limit:
                raise PayloadTooLargeError(f"{f.filename} exceeds {limit} bytes")
            mime = f.content_type or mimetypes.guess_type(f.filename or "")[0] or "application/octet-stream"
            uploads.append(Upload(FileMeta(name=f.filename or "", size=len(data), mime_type=mime), data))

        created = await relay.upload(
            room_name,
            identity_of(request),
            client_id,
            uploads,
            ttl_seconds=ttl_seconds,
            password=password or None,
            view_only=view_only,
        )
        items = [relay.file_event(a).to_event() for a in created]
        return {"ok": True, "room": room_name, "items": items}

    @router.post("/api/unlock")
    async def unlock(request: Request, body: UnlockRequest):
        ref = await relay.recall.unlock(body.id, body.password, identity_of(request))
        return ref.to_body()

    @router.get("/api/resolve/{artifact_id}")
    async def resolve(request: Request, artifact_id: str):
        ref = await relay.recall.resolve(artifact_id, identity_of(request))
        return ref.to_body()

    @router.post("/api/recall")
    async def recall(request: Request, body: RecallRequest):
        # Over HTTP only the network identity is trusted; client ids are visible to the peer.
        changed = await relay.recall.request_recall(body.id, identity=identity_of(request))
        artifact = relay.artifacts.get(body.id)
        owner_url = file_url(artifact.id, OWNER) if artifact.restricted_path is not None else None
        return {"ok": True, "id": artifact.id, "changed": changed, "ownerUrl": owner_url}

    async def serve(request: Request, artifact_id: str, access: str) -> StreamingResponse:
        artifact, handle = await relay.recall.open_for_fetch(artifact_id, access, identity_of(request))
        disposition = "inline" if artifact.view_only else "attachment"
        headers = dict(NO_STORE)
        headers["Content-Disposition"] = content_disposition(disposition, artifact.name)
        headers["Content-Length"] = str(os.fstat(handle.fileno()).st_size)
        return StreamingResponse(read_chunks(handle), media_type=artifact.mime_type, headers=headers)

    @router.get("/files/{artifact_id}/public")
    async def fetch_public(request: Request, artifact_id: str):
        return await serve(request, artifact_id, PUBLIC)

    @router.get("/files/{artifact_id}/owner")
    async def fetch_owner(request: Request, artifact_id: str):
        return await serve(request, artifact_id, OWNER)

    @router.get("/files/{artifact_id}/peer")
    async def fetch_peer(request: Request, artifact_id: str):
        return await serve(request, artifact_id, PEER)

    return router
