from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from relay.config import Settings
from relay.doc_store import DocumentStore
from relay.infra.redis_client import create_redis
from relay.message_log import MessageLog
from relay.rate_limit import MemoryRateLimiter, RateLimiter, RedisRateLimiter
from relay.replication import GitHubReplicator
from relay.websocket_hub import MessageFeedHub

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RelayServices:
    """Everything a request handler may touch, owned by one app instance."""

    settings: Settings
    messages: MessageLog
    documents: DocumentStore
    limiter: RateLimiter
    feed: MessageFeedHub
    replicator: GitHubReplicator | None = None

    async def aclose(self) -> None:
        await self.documents.aclose()
        if self.replicator is not None:
            await self.replicator.aclose()


def build_limiter(settings: Settings) -> RateLimiter:
    if settings.redis_url:
        logger.info("Using Redis rate-limit ledger at %s", settings.redis_url)
        return RedisRateLimiter(r=create_redis(settings.redis_url), cooldown_ms=settings.cooldown_ms)
    return MemoryRateLimiter(cooldown_ms=settings.cooldown_ms)


def build_services(
    settings: Settings,
    *,
    limiter: RateLimiter | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> RelayServices:
    replicator = None
    rep = settings.replication
    if rep.active:
        replicator = GitHubReplicator(settings=rep, client=http_client)
        logger.info("Replicating documents to %s@%s under %r", rep.repo, rep.branch, rep.path_prefix)
    elif rep.enabled:
        logger.warning("GITHUB_BACKUP_ENABLED is set but GITHUB_TOKEN/GITHUB_REPO are missing; replication disabled")

    return RelayServices(
        settings=settings,
        messages=MessageLog(settings=settings),
        documents=DocumentStore(
            root=settings.store_dir,
            debounce_ms=settings.flush_debounce_ms,
            replicator=replicator,
        ),
        limiter=limiter or build_limiter(settings),
        feed=MessageFeedHub(),
        replicator=replicator,
    )
