from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    """A chat line. Immutable once appended to the log."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    external_id: str = Field(alias="externalId")
    world_id: str = Field(alias="worldId")
    channel: str
    username: str
    text: str
    timestamp: str

    def public(self) -> dict[str, Any]:
        """Wire shape for incremental polling (no external id)."""

        return {
            "id": self.id,
            "worldId": self.world_id,
            "channel": self.channel,
            "username": self.username,
            "text": self.text,
            "timestamp": self.timestamp,
        }

    def brief(self) -> dict[str, Any]:
        """Wire shape for the fixed-window feed."""

        return {"username": self.username, "text": self.text, "timestamp": self.timestamp}


class ReplicationOutcome(BaseModel):
    ok: bool
    status: int | None = None
    error: str | None = None
    sha: str | None = None
    at: str


class FlushOutcome(BaseModel):
    """Result of one flush of a document: local write, then optional push."""

    doc: str
    ok: bool
    error: str | None = None
    replication: ReplicationOutcome | None = None
