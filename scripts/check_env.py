#!/usr/bin/env python3
"""
Environment check for deploys.
Usage: python scripts/check_env.py --service api
       python scripts/check_env.py --service scheduler --warn-optional
"""
from __future__ import annotations

import argparse
import os
import sys
from typing import Dict, Iterable, List, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger


REQUIRED_COMMON: List[Tuple[str, ...]] = [
    ("DATABASE_URL",),
    ("APP_TIMEZONE",),
]

REQUIRED_BY_SERVICE: Dict[str, List[Tuple[str, ...]]] = {
    "api": [("ADMIN_API_TOKEN",)],
    "scheduler": [],
}

REQUIRED_BY_CHANNEL: Dict[str, List[Tuple[str, ...]]] = {
    "telegram": [("TELEGRAM_BOT_TOKEN",)],
    "whatsapp": [("TWILIO_ACCOUNT_SID",), ("TWILIO_AUTH_TOKEN",), ("TWILIO_FROM",)],
}

CRON_KEYS = [
    "DAILY_GENERATION_CRON",
    "MIDNIGHT_GENERATION_CRON",
    "REMINDER_TICK_CRON",
    "WEEKLY_CLEANUP_CRON",
]

INT_KEYS = [
    "GENERATION_RETENTION_DAYS",
    "REMINDER_MAX_ATTEMPTS",
    "PENDING_BATCH_LIMIT",
    "OVERDUE_BATCH_LIMIT",
    "OVERDUE_DEDUP_HOURS",
    "REMINDER_RETRY_BASE_SECONDS",
    "REMINDER_RETRY_MAX_SECONDS",
]

OPTIONAL = CRON_KEYS + INT_KEYS


def _is_set(key: str) -> bool:
    return bool((os.getenv(key) or "").strip())


def _missing(groups: Iterable[Tuple[str, ...]]) -> List[str]:
    missing: List[str] = []
    for group in groups:
        if any(_is_set(k) for k in group):
            continue
        if len(group) == 1:
            missing.append(group[0])
        else:
            missing.append(" | ".join(group))
    return missing


def _invalid_values() -> List[str]:
    """Values that are set but would make the app refuse to boot or schedule."""
    problems: List[str] = []

    tz_name = (os.getenv("APP_TIMEZONE") or "").strip()
    if tz_name:
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            problems.append(f"APP_TIMEZONE={tz_name!r} is not a known IANA zone")

    for key in CRON_KEYS:
        expr = (os.getenv(key) or "").strip()
        if not expr:
            continue
        try:
            CronTrigger.from_crontab(expr)
        except ValueError as e:
            problems.append(f"{key}={expr!r}: {e}")

    for key in INT_KEYS:
        raw = (os.getenv(key) or "").strip()
        if not raw:
            continue
        try:
            if int(raw) < 0:
                problems.append(f"{key}={raw!r} must not be negative")
        except ValueError:
            problems.append(f"{key}={raw!r} is not an integer")

    return problems


def _warn_optional(keys: Iterable[str]) -> None:
    missing = [k for k in keys if not _is_set(k)]
    if not missing:
        return
    print("[env-check] Optional vars missing (defaults apply):")
    for k in missing:
        print(f"  - {k}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate required environment variables.")
    parser.add_argument(
        "--service",
        default="api",
        choices=sorted(REQUIRED_BY_SERVICE),
        help="Which service to validate (default: api)",
    )
    parser.add_argument(
        "--warn-optional",
        action="store_true",
        help="Also list optional variables that are missing",
    )
    args = parser.parse_args()

    channel = (os.getenv("DELIVERY_CHANNEL") or "telegram").strip().lower()
    if channel not in REQUIRED_BY_CHANNEL:
        print(f"[env-check] Unknown DELIVERY_CHANNEL {channel!r}")
        return 2

    required = REQUIRED_COMMON + REQUIRED_BY_SERVICE[args.service] + REQUIRED_BY_CHANNEL[channel]
    missing = _missing(required)
    if missing:
        print("[env-check] Missing required environment variables:")
        for item in missing:
            print(f"  - {item}")
        return 1

    invalid = _invalid_values()
    if invalid:
        print("[env-check] Invalid values:")
        for item in invalid:
            print(f"  - {item}")
        return 1

    if args.warn_optional:
        _warn_optional(OPTIONAL)

    print(f"[env-check] OK ({args.service}, channel={channel})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
