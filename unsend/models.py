"""Wire envelopes.

Client frames are a closed tagged union on ``kind``; anything that does not
parse into one of the known variants is dropped. Server events are built from
the models below and serialized once, so every transport sees the same dict.
"""

import logging
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class JsonModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_event(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ---- client -> server -------------------------------------------------------


class ChatFrame(JsonModel):
    kind: Literal["chat"]
    text: str


class RecallFrame(JsonModel):
    kind: Literal["recall"]
    id: str = Field(min_length=1)


class DownloadedFrame(JsonModel):
    kind: Literal["downloaded"]
    id: str = Field(min_length=1)


class PingFrame(JsonModel):
    kind: Literal["ping"]


ClientFrame = Annotated[
    Union[ChatFrame, RecallFrame, DownloadedFrame, PingFrame],
    Field(discriminator="kind"),
]
_client_frame = TypeAdapter(ClientFrame)


def parse_client_frame(raw: str | bytes) -> Optional[ChatFrame | RecallFrame | DownloadedFrame | PingFrame]:
    """Parse one websocket frame, returning None for anything malformed."""
    try:
        return _client_frame.validate_json(raw)
    except PydanticValidationError:
        logger.debug("Dropping malformed frame (%d bytes)", len(raw))
        return None


# ---- server -> client -------------------------------------------------------


class MemberInfo(JsonModel):
    client_id: str
    identity: str


class WelcomeEvent(JsonModel):
    kind: Literal["welcome"] = "welcome"
    client_id: str
    identity: str
    room: str
    members: list[MemberInfo]


class PresenceEvent(JsonModel):
    kind: Literal["presence"] = "presence"
    room: str
    members: list[MemberInfo]


class ChatEvent(JsonModel):
    kind: Literal["chat"] = "chat"
    id: str
    sender: str = Field(..., alias="from")
    text: str
    timestamp: datetime


class FileEvent(JsonModel):
    kind: Literal["file"] = "file"
    id: str
    sender: str = Field(..., alias="from")
    name: str
    size: int
    mime_type: str
    protected: bool
    view_only: bool
    expires_at: Optional[datetime] = None
    # Public reference; None when the file starts out in the vault.
    url: Optional[str] = None
    timestamp: datetime


class RecalledEvent(JsonModel):
    kind: Literal["recalled"] = "recalled"
    id: str
    reason: str


class RecallConfirmedEvent(JsonModel):
    kind: Literal["recall_confirmed"] = "recall_confirmed"
    id: str
    reason: str
    owner_url: Optional[str] = None


class UnlockedEvent(JsonModel):
    kind: Literal["unlocked"] = "unlocked"
    id: str
    url: str


class DownloadedEvent(JsonModel):
    kind: Literal["downloaded"] = "downloaded"
    id: str
    by: str
    timestamp: datetime


class ErrorEvent(JsonModel):
    kind: Literal["error"] = "error"
    category: str
    message: str
    id: Optional[str] = None


class PongEvent(JsonModel):
    kind: Literal["pong"] = "pong"


# ---- out-of-band request bodies ----------------------------------------------


class UnlockRequest(JsonModel):
    id: str = Field(min_length=1)
    password: str


class RecallRequest(JsonModel):
    id: str = Field(min_length=1)
