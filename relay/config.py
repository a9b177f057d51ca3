from __future__ import annotations

import os
import re
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

_LEADING_INT = re.compile(r"^\s*([+-]?)([0-9]+)")

# Longer digit runs saturate at +/-sys.maxsize.
_MAX_DIGITS = 18

_TRUTHY = {"1", "true", "yes", "on"}


def parse_int(raw: object, default: int) -> int:
    """Lenient integer parse: take the leading integer, else fall back to `default`.

    "12abc" -> 12, "" -> default, None -> default. Absurdly long numbers
    saturate instead of failing, so a huge cursor reads as "past the end".
    """

    if raw is None:
        return default
    m = _LEADING_INT.match(str(raw))
    if not m:
        return default
    sign, digits = m.groups()
    digits = digits.lstrip("0") or "0"
    if len(digits) > _MAX_DIGITS:
        return -sys.maxsize if sign == "-" else sys.maxsize
    return int(sign + digits)


def parse_flag(raw: object) -> bool:
    if raw is None:
        return False
    return str(raw).strip().casefold() in _TRUTHY


def parse_csv(raw: str | None) -> frozenset[str]:
    return frozenset(s.strip() for s in (raw or "").split(",") if s.strip())


@dataclass(frozen=True, slots=True)
class ReplicationSettings:
    enabled: bool = False
    token: str = ""
    repo: str = ""  # "owner/name"
    branch: str = "main"
    path_prefix: str = "backups"
    api_url: str = "https://api.github.com"
    timeout_s: float = 10.0

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.token) and bool(self.repo)


@dataclass(frozen=True, slots=True)
class Settings:
    port: int = 8080
    allowed_world_ids: frozenset[str] = frozenset()
    max_len: int = 200
    cooldown_ms: int = 2000
    default_limit: int = 100
    max_page_size: int = 200
    # 0 disables trimming.
    max_messages: int = 1000
    write_token: str = ""
    store_dir: Path = Path("data")
    flush_debounce_ms: int = 200
    redis_url: str = ""
    replication: ReplicationSettings = field(default_factory=ReplicationSettings)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            port=parse_int(env.get("PORT"), 8080),
            allowed_world_ids=parse_csv(env.get("ALLOWED_WORLD_IDS")),
            max_len=parse_int(env.get("MAX_LEN"), 200),
            cooldown_ms=parse_int(env.get("COOLDOWN_MS"), 2000),
            default_limit=parse_int(env.get("DEFAULT_LIMIT"), 100),
            max_messages=max(0, parse_int(env.get("MAX_MESSAGES"), 1000)),
            write_token=env.get("JSON_WRITE_TOKEN", "").strip(),
            store_dir=Path(env.get("JSON_STORE_DIR") or "data"),
            flush_debounce_ms=max(0, parse_int(env.get("FLUSH_DEBOUNCE_MS"), 200)),
            redis_url=env.get("REDIS_URL", "").strip(),
            replication=ReplicationSettings(
                enabled=parse_flag(env.get("GITHUB_BACKUP_ENABLED")),
                token=env.get("GITHUB_TOKEN", "").strip(),
                repo=env.get("GITHUB_REPO", "").strip(),
                branch=env.get("GITHUB_BRANCH") or "main",
                path_prefix=(env.get("GITHUB_PATH_PREFIX") or "backups").strip("/"),
                api_url=(env.get("GITHUB_API_URL") or "https://api.github.com").rstrip("/"),
            ),
        )

    def world_allowed(self, world_id: str) -> bool:
        return not self.allowed_world_ids or world_id in self.allowed_world_ids

    def clamp_limit(self, raw: object) -> int:
        return max(1, min(self.max_page_size, parse_int(raw, self.default_limit)))
