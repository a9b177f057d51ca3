from __future__ import annotations

import secrets

from fastapi import Depends, Request, Response

from relay.config import Settings
from relay.errors import Forbidden, RateLimited
from relay.services import RelayServices

UNKNOWN_IDENTITY = "ip:unknown"


def get_services(request: Request) -> RelayServices:
    return request.app.state.services


def client_identity(request: Request) -> str:
    """First X-Forwarded-For hop, else the peer address."""

    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_IDENTITY


async def admit_write(
    request: Request,
    services: RelayServices = Depends(get_services),
) -> str:
    """Shared cooldown gate for every state-mutating route."""

    identity = client_identity(request)
    if not await services.limiter.admit(identity):
        raise RateLimited()
    return identity


def no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, proxy-revalidate"
    response.headers["Pragma"] = "no-cache"
    response.headers["Expires"] = "0"


def check_write_access(*, settings: Settings, token: str | None, world_id: str | None) -> None:
    if settings.write_token:
        given = (token or "").strip().encode("utf-8")
        if not secrets.compare_digest(given, settings.write_token.encode("utf-8")):
            raise Forbidden("invalid-token")
    world_id = (world_id or "").strip()
    if world_id and not settings.world_allowed(world_id):
        raise Forbidden("worldId-forbidden")
