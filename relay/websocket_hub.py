from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from fastapi import WebSocket

logger = logging.getLogger(__name__)

# Subscribers that pass no worldId receive every world's messages.
ALL_WORLDS = "*"


class MessageFeedHub:
    """Live push of chat messages to clients of `/ws/messages`.

    A subscriber joins either one world or `ALL_WORLDS` (no worldId given).
    `/send` broadcasts each accepted message as
    ``{"type": "message", "message": <polled message shape>}`` to the
    message's world and to every all-worlds subscriber. The feed never
    replays history; clients catch up through the `/messages` cursor.

    Delivery is best effort: a socket that fails on send is dropped.
    """

    def __init__(self) -> None:
        self._by_world: dict[str, set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, world_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._by_world[world_id].add(websocket)

    async def disconnect(self, world_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            conns = self._by_world.get(world_id)
            if not conns:
                return
            conns.discard(websocket)
            if not conns:
                self._by_world.pop(world_id, None)

    def subscriber_count(self, world_id: str) -> int:
        return len(self._by_world.get(world_id, ()))

    async def broadcast(self, world_id: str, payload: dict[str, object]) -> int:
        async with self._lock:
            targets = [(world_id, ws) for ws in self._by_world.get(world_id, set())]
            if world_id != ALL_WORLDS:
                targets += [(ALL_WORLDS, ws) for ws in self._by_world.get(ALL_WORLDS, set())]

        if not targets:
            return 0

        sent = 0
        dead: list[tuple[str, WebSocket]] = []
        for key, ws in targets:
            try:
                await ws.send_json(payload)
                sent += 1
            except Exception as e:
                logger.debug("Dropping feed subscriber for %r: %s", key, e)
                dead.append((key, ws))

        if dead:
            async with self._lock:
                for key, ws in dead:
                    self._by_world.get(key, set()).discard(ws)
        return sent
