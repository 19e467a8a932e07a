"""Service configuration loaded from ``SPENDGATE_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .session import DEFAULT_RATE_WINDOW_SECONDS
from .storage import default_data_dir


@dataclass
class ServiceConfig:
    data_dir: Path = field(default_factory=default_data_dir)
    store: str = "memory"
    rate_window_seconds: float = DEFAULT_RATE_WINDOW_SECONDS
    facilitator_url: str = "http://127.0.0.1:8402"
    http_timeout: float = 15.0
    max_retries: int = 2
    cache_ttl: float = 30.0
    audit: bool = True
    audit_hmac_key: Optional[str] = None

    def __post_init__(self) -> None:
        if self.store not in ("memory", "sqlite"):
            raise ValueError(f"store must be 'memory' or 'sqlite', got {self.store!r}")
        if self.rate_window_seconds <= 0:
            raise ValueError("rate_window_seconds must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    @classmethod
    def from_env(cls) -> ServiceConfig:
        env = os.environ
        return cls(
            data_dir=default_data_dir(),
            store=env.get("SPENDGATE_STORE", "memory").strip().lower(),
            rate_window_seconds=float(
                env.get("SPENDGATE_RATE_WINDOW_SECONDS", DEFAULT_RATE_WINDOW_SECONDS)
            ),
            facilitator_url=env.get("SPENDGATE_FACILITATOR_URL", "http://127.0.0.1:8402"),
            http_timeout=float(env.get("SPENDGATE_HTTP_TIMEOUT", 15.0)),
            max_retries=int(env.get("SPENDGATE_MAX_RETRIES", 2)),
            cache_ttl=float(env.get("SPENDGATE_CACHE_TTL", 30.0)),
            audit=env.get("SPENDGATE_AUDIT", "1").strip().lower() not in ("0", "false", "no"),
            audit_hmac_key=env.get("SPENDGATE_AUDIT_HMAC_KEY") or None,
        )
