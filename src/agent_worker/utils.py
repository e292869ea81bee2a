"""Provide utility helpers for timestamps and durations."""

from __future__ import annotations

from datetime import datetime, timezone


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _format_duration(seconds: float) -> str:
    total = int(max(seconds, 0))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _preview(text: str, limit: int = 200) -> str:
    flat = (text or "").replace("\n", " ").strip()
    if len(flat) <= limit:
        return flat
    return flat[:limit] + "…"
