import json
from datetime import datetime
from typing import Any, Optional

from .config import DEFAULT_TZ, settings


def _enabled_tags() -> Optional[set[str]]:
    raw = (settings.LIFEPATH_DEBUG_TAGS or "").strip()
    if not raw:
        return None
    return {t.strip().lower() for t in raw.split(",") if t.strip()}


def debug_enabled(tag: Optional[str] = None) -> bool:
    if not settings.LIFEPATH_DEBUG:
        return False
    tags = _enabled_tags()
    if tags is None or tag is None:
        return True
    return tag.lower() in tags


def debug_log(message: str, payload: Optional[dict[str, Any]] = None, tag: str = "debug") -> None:
    """Verbose trace line, printed only when LIFEPATH_DEBUG is on (optionally filtered by LIFEPATH_DEBUG_TAGS)."""
    if not debug_enabled(tag):
        return
    stamp = datetime.now(DEFAULT_TZ).strftime("%H:%M:%S")
    line = f"[{tag}] {stamp} {message}"
    if payload is not None:
        try:
            line += " :: " + json.dumps(payload, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            line += f" :: {payload!r}"
    print(line)
