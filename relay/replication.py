from __future__ import annotations

import base64
import logging

import httpx

from relay.clock import now_iso
from relay.config import ReplicationSettings
from relay.models import ReplicationOutcome

logger = logging.getLogger(__name__)


def _error_for_status(status: int) -> str:
    if status in (401, 403):
        return "unauthorized"
    if status in (409, 422):
        return "conflict"
    return f"http-{status}"


class GitHubReplicator:
    """Best-effort backup of flushed documents through the GitHub contents API.

    Each push reads the file's current blob sha on the target branch, then
    creates or updates the file with that sha. Failures are returned as an
    outcome, never raised; the caller's local state is already durable.
    """

    def __init__(self, *, settings: ReplicationSettings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(timeout=settings.timeout_s)
        self._owns_client = client is None

    def remote_path(self, doc: str) -> str:
        prefix = self._settings.path_prefix
        return f"{prefix}/{doc}.json" if prefix else f"{doc}.json"

    def _url(self, doc: str) -> str:
        return f"{self._settings.api_url}/repos/{self._settings.repo}/contents/{self.remote_path(doc)}"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "world-relay",
        }

    def _failed(self, doc: str, *, status: int | None, error: str) -> ReplicationOutcome:
        logger.warning("Replication of %r failed: %s (status=%s)", doc, error, status)
        return ReplicationOutcome(ok=False, status=status, error=error, at=now_iso())

    async def current_sha(self, doc: str) -> str | None:
        """Remote blob sha, None when the file doesn't exist yet."""

        resp = await self._client.get(self._url(doc), params={"ref": self._settings.branch}, headers=self._headers())
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        data = resp.json()
        sha = data.get("sha") if isinstance(data, dict) else None
        return str(sha) if sha else None

    async def push(self, *, doc: str, payload: str) -> ReplicationOutcome:
        try:
            sha = await self.current_sha(doc)
        except httpx.HTTPStatusError as e:
            return self._failed(doc, status=e.response.status_code, error=_error_for_status(e.response.status_code))
        except (httpx.HTTPError, ValueError) as e:
            return self._failed(doc, status=None, error=f"lookup-failed: {type(e).__name__}")

        body: dict[str, str] = {
            "message": f"backup {doc} {now_iso()}",
            "content": base64.b64encode(payload.encode("utf-8")).decode("ascii"),
            "branch": self._settings.branch,
        }
        if sha:
            body["sha"] = sha

        try:
            resp = await self._client.put(self._url(doc), json=body, headers=self._headers())
        except httpx.HTTPError as e:
            return self._failed(doc, status=None, error=f"push-failed: {type(e).__name__}")

        if resp.status_code not in (200, 201):
            return self._failed(doc, status=resp.status_code, error=_error_for_status(resp.status_code))

        try:
            data = resp.json()
        except ValueError:
            data = None
        content = data.get("content") if isinstance(data, dict) else None
        new_sha = content.get("sha") if isinstance(content, dict) else None
        logger.info("Replicated %r to %s@%s", doc, self._settings.repo, self._settings.branch)
        return ReplicationOutcome(ok=True, status=resp.status_code, sha=new_sha, at=now_iso())

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
