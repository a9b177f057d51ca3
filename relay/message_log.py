from __future__ import annotations

import asyncio
import bisect
import logging
from collections.abc import Iterable, Iterator
from uuid import uuid4

from relay.clock import now_iso
from relay.config import Settings
from relay.errors import Forbidden, ValidationFailed
from relay.models import Message

logger = logging.getLogger(__name__)

USERNAME_MAX = 24
DEFAULT_CHANNEL = "global"
DEFAULT_USERNAME = "Guest"


class MessageLog:
    """Append-only chat log with integer cursors.

    Ids come from a process-wide counter and are never reused. When the log
    exceeds `max_messages` the oldest entries are dropped; remaining entries
    keep their ids, so cursors held by clients stay valid.
    """

    def __init__(self, *, settings: Settings) -> None:
        self._settings = settings
        self._messages: list[Message] = []
        self._last_id = 0
        self._lock = asyncio.Lock()

    @property
    def last_id(self) -> int:
        return self._last_id

    def __len__(self) -> int:
        return len(self._messages)

    async def append(
        self,
        *,
        world_id: str | None,
        channel: str | None = None,
        username: str | None = None,
        text: str | None = None,
    ) -> Message:
        world_id = (world_id or "").strip()
        channel = (channel or "").strip() or DEFAULT_CHANNEL
        username = (username or "").strip() or DEFAULT_USERNAME
        trimmed = (text or "").strip()

        if not world_id:
            raise ValidationFailed("worldId-required")
        if not self._settings.world_allowed(world_id):
            raise Forbidden("worldId-forbidden")
        if not trimmed:
            raise ValidationFailed("empty")
        if len(trimmed) > self._settings.max_len:
            raise ValidationFailed("too-long")

        async with self._lock:
            self._last_id += 1
            msg = Message(
                id=self._last_id,
                external_id=str(uuid4()),
                world_id=world_id,
                channel=channel,
                username=username[:USERNAME_MAX],
                text=trimmed,
                timestamp=now_iso(),
            )
            self._messages.append(msg)
            self._trim()

        logger.debug("Appended message %s (%s) to %s/%s", msg.id, msg.external_id, world_id, channel)
        return msg

    def _trim(self) -> None:
        cap = self._settings.max_messages
        overflow = len(self._messages) - cap
        if cap and overflow > 0:
            del self._messages[:overflow]
            logger.debug("Trimmed %d oldest messages", overflow)

    def _matching(self, items: Iterable[Message], world_id: str | None, channel: str | None) -> Iterator[Message]:
        world_id = (world_id or "").strip()
        channel = (channel or "").strip()
        allowed = self._settings.allowed_world_ids

        for m in items:
            if allowed and m.world_id not in allowed:
                continue
            if world_id and m.world_id != world_id:
                continue
            if channel and m.channel != channel:
                continue
            yield m

    def query(
        self,
        *,
        world_id: str | None = None,
        channel: str | None = None,
        since_id: int = 0,
        limit: int | None = None,
    ) -> tuple[int, list[Message]]:
        """Messages with id > since_id in id order, at most `limit`, plus the next cursor."""

        lim = self._settings.clamp_limit(limit)
        # Ids are strictly increasing, so skip straight past the cursor.
        messages = self._messages
        start = bisect.bisect_right(messages, since_id, key=lambda m: m.id)

        out: list[Message] = []
        for m in self._matching(messages[start:], world_id, channel):
            out.append(m)
            if len(out) >= lim:
                break

        cursor = out[-1].id if out else since_id
        return cursor, out

    def snapshot(
        self,
        *,
        world_id: str | None = None,
        channel: str | None = None,
        limit: int | None = None,
    ) -> list[Message]:
        """The newest `limit` matching messages, oldest first."""

        lim = self._settings.clamp_limit(limit)
        return list(self._matching(self._messages, world_id, channel))[-lim:]
