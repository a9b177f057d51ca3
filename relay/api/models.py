from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from relay.models import ReplicationOutcome


class SendResponse(BaseModel):
    ok: bool = True
    id: int
    timestamp: str


class PolledMessage(BaseModel):
    id: int
    worldId: str
    channel: str
    username: str
    text: str
    timestamp: str


class MessagesResponse(BaseModel):
    # Stringified message id, as clients echo it straight back in `since`.
    cursor: str
    messages: list[PolledMessage] = Field(default_factory=list)


class FeedMessage(BaseModel):
    username: str
    text: str
    timestamp: str


class SnapshotResponse(BaseModel):
    messages: list[FeedMessage] = Field(default_factory=list)


class DocGetResponse(BaseModel):
    ok: bool = True
    doc: str
    path: str
    value: Any = None


class DocWriteResponse(BaseModel):
    ok: bool = True
    doc: str
    path: str
    value: Any = None
    timestamp: str
    created: bool | None = None
    replication: ReplicationOutcome | None = None


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
