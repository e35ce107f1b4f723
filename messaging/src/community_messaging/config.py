from __future__ import annotations

import os
from dataclasses import dataclass


DEFAULT_ATTACHMENT_BUCKET = "message-media"
MIN_TYPING_TTL_MS = 500
MIN_TYPING_SWEEP_INTERVAL_S = 0.1


@dataclass(frozen=True)
class MessagingConfig:
    api_url: str
    realtime_url: str = ""
    storage_url: str = ""
    api_key: str = ""
    access_token: str = ""
    attachment_bucket: str = DEFAULT_ATTACHMENT_BUCKET
    signed_url_ttl_s: int = 3600
    typing_ttl_ms: int = 3000
    typing_sweep_interval_s: float = 1.0
    reconcile_interval_s: float = 10.0
    page_size: int = 50
    heartbeat_interval_s: int = 30

    @property
    def reconcile_enabled(self) -> bool:
        return self.reconcile_interval_s > 0


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_non_negative_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _require(name: str) -> str:
    raw = os.environ.get(name, "").strip()
    if not raw:
        raise ValueError(f"{name} is required")
    return raw


def load_config_from_env() -> MessagingConfig:
    api_url = _require("ECOMMUNITY_API_URL")
    realtime_url = os.environ.get("ECOMMUNITY_REALTIME_URL", "").strip()
    storage_url = os.environ.get("ECOMMUNITY_STORAGE_URL", "").strip()
    return MessagingConfig(
        api_url=api_url,
        realtime_url=realtime_url,
        storage_url=storage_url,
        api_key=os.environ.get("ECOMMUNITY_API_KEY", ""),
        access_token=os.environ.get("ECOMMUNITY_ACCESS_TOKEN", ""),
        attachment_bucket=os.environ.get("ECOMMUNITY_ATTACHMENT_BUCKET") or DEFAULT_ATTACHMENT_BUCKET,
        signed_url_ttl_s=max(1, _parse_non_negative_int("ECOMMUNITY_SIGNED_URL_TTL_S", 3600)),
        typing_ttl_ms=max(MIN_TYPING_TTL_MS, _parse_non_negative_int("ECOMMUNITY_TYPING_TTL_MS", 3000)),
        typing_sweep_interval_s=max(
            MIN_TYPING_SWEEP_INTERVAL_S, _parse_non_negative_float("ECOMMUNITY_TYPING_SWEEP_INTERVAL_S", 1.0)
        ),
        reconcile_interval_s=_parse_non_negative_float("ECOMMUNITY_RECONCILE_INTERVAL_S", 10.0),
        page_size=max(1, _parse_non_negative_int("ECOMMUNITY_PAGE_SIZE", 50)),
        heartbeat_interval_s=max(1, _parse_non_negative_int("ECOMMUNITY_HEARTBEAT_INTERVAL_S", 30)),
    )
