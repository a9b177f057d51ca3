from __future__ import annotations

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse

from relay.api.deps import admit_write, check_write_access, get_services, no_store
from relay.api.models import (
    DocGetResponse,
    DocWriteResponse,
    FeedMessage,
    MessagesResponse,
    PolledMessage,
    SendResponse,
    SnapshotResponse,
)
from relay.config import parse_flag, parse_int
from relay.doc_store import WriteResult, normalize_doc_name
from relay.doc_tree import MISSING, coerce_scalar, parse_delta, parse_structured
from relay.errors import Forbidden, PersistFailed, ValidationFailed
from relay.services import RelayServices
from relay.websocket_hub import ALL_WORLDS

router = APIRouter()

NAME = "world-relay"
VERSION = "0.1.0"


@router.get("/", response_class=PlainTextResponse)
async def root() -> str:
    return f"{NAME} OK"


@router.get("/healthcheck")
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/info")
async def info() -> dict[str, str]:
    return {"name": NAME, "version": VERSION}


# --------- Chat ---------


@router.get("/send", response_model=SendResponse)
async def send_route(
    world_id: str | None = Query(None, alias="worldId"),
    channel: str | None = None,
    username: str | None = None,
    text: str | None = None,
    _identity: str = Depends(admit_write),
    services: RelayServices = Depends(get_services),
) -> SendResponse:
    msg = await services.messages.append(world_id=world_id, channel=channel, username=username, text=text)
    await services.feed.broadcast(msg.world_id, {"type": "message", "message": msg.public()})
    return SendResponse(ok=True, id=msg.id, timestamp=msg.timestamp)


@router.get("/messages", response_model=MessagesResponse, dependencies=[Depends(no_store)])
async def messages_route(
    world_id: str | None = Query(None, alias="worldId"),
    channel: str | None = None,
    since: str | None = None,
    limit: str | None = None,
    services: RelayServices = Depends(get_services),
) -> MessagesResponse:
    since_id = parse_int(since, 0)
    cursor, found = services.messages.query(
        world_id=world_id,
        channel=channel,
        since_id=since_id,
        limit=parse_int(limit, services.settings.default_limit),
    )
    return MessagesResponse(cursor=str(cursor), messages=[PolledMessage(**m.public()) for m in found])


@router.get("/messages.json", response_model=SnapshotResponse, dependencies=[Depends(no_store)])
async def messages_snapshot_route(
    world_id: str | None = Query(None, alias="worldId"),
    channel: str | None = None,
    limit: str | None = None,
    services: RelayServices = Depends(get_services),
) -> SnapshotResponse:
    found = services.messages.snapshot(
        world_id=world_id,
        channel=channel,
        limit=parse_int(limit, services.settings.default_limit),
    )
    return SnapshotResponse(messages=[FeedMessage(**m.brief()) for m in found])


@router.websocket("/ws/messages")
async def messages_feed_ws(websocket: WebSocket) -> None:
    services: RelayServices = websocket.app.state.services
    world_id = (websocket.query_params.get("worldId") or "").strip() or ALL_WORLDS
    if world_id != ALL_WORLDS and not services.settings.world_allowed(world_id):
        await websocket.close(code=1008, reason="worldId-forbidden")
        return

    await services.feed.connect(world_id, websocket)
    try:
        # Keep the socket open; client can optionally send pings.
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await services.feed.disconnect(world_id, websocket)
    except Exception:
        await services.feed.disconnect(world_id, websocket)
        raise


# --------- JSON documents ---------


@router.get("/json/get", response_model=DocGetResponse, dependencies=[Depends(no_store)])
async def doc_get_route(
    doc: str | None = None,
    path: str | None = None,
    services: RelayServices = Depends(get_services),
) -> DocGetResponse:
    name = normalize_doc_name(doc)
    p = (path or "").strip()
    value = await services.documents.get(name, p)
    return DocGetResponse(ok=True, doc=name, path=p, value=None if value is MISSING else value)


async def _write_response(services: RelayServices, result: WriteResult, *, wait: bool) -> DocWriteResponse:
    resp = DocWriteResponse(ok=True, doc=result.doc, path=result.path, value=result.value, timestamp=result.timestamp)
    if wait:
        outcome = await services.documents.wait_flushed(result.doc, result.ticket)
        if not outcome.ok:
            raise PersistFailed()
        replication = outcome.replication
    else:
        replication = services.documents.last_replication(result.doc)
    if replication is not None:
        resp.replication = replication
    return resp


@router.get(
    "/json/set",
    response_model=DocWriteResponse,
    response_model_exclude_unset=True,
)
async def doc_set_route(
    doc: str | None = None,
    path: str | None = None,
    value: str | None = None,
    value_json: str | None = Query(None, alias="valueJson"),
    token: str | None = None,
    world_id: str | None = Query(None, alias="worldId"),
    wait: str | None = None,
    _identity: str = Depends(admit_write),
    services: RelayServices = Depends(get_services),
) -> DocWriteResponse:
    check_write_access(settings=services.settings, token=token, world_id=world_id)

    if not (path or "").strip():
        raise ValidationFailed("path-required")
    if value_json is not None:
        parsed = parse_structured(value_json)
    else:
        parsed = coerce_scalar(value or "")

    result = await services.documents.set(doc, path, parsed)
    return await _write_response(services, result, wait=parse_flag(wait))


@router.get(
    "/json/increment",
    response_model=DocWriteResponse,
    response_model_exclude_unset=True,
)
async def doc_increment_route(
    doc: str | None = None,
    path: str | None = None,
    delta: str | None = None,
    token: str | None = None,
    world_id: str | None = Query(None, alias="worldId"),
    wait: str | None = None,
    _identity: str = Depends(admit_write),
    services: RelayServices = Depends(get_services),
) -> DocWriteResponse:
    check_write_access(settings=services.settings, token=token, world_id=world_id)

    if not (path or "").strip():
        raise ValidationFailed("path-required")
    d = parse_delta(delta if delta is not None and delta.strip() else "1")

    result = await services.documents.increment(doc, path, d)
    return await _write_response(services, result, wait=parse_flag(wait))


@router.get(
    "/players/register",
    response_model=DocWriteResponse,
    response_model_exclude_unset=True,
)
async def register_route(
    doc: str | None = None,
    username: str | None = None,
    token: str | None = None,
    world_id: str | None = Query(None, alias="worldId"),
    wait: str | None = None,
    _identity: str = Depends(admit_write),
    services: RelayServices = Depends(get_services),
) -> DocWriteResponse:
    check_write_access(settings=services.settings, token=token, world_id=world_id)

    wid = (world_id or "").strip()
    if not wid:
        raise ValidationFailed("worldId-required")
    if not services.settings.world_allowed(wid):
        raise Forbidden("worldId-forbidden")

    result = await services.documents.register(doc, world_id=wid, username=username)
    resp = await _write_response(services, result, wait=parse_flag(wait))
    resp.created = result.created
    return resp
