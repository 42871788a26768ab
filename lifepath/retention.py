from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from .clock import resolve_now
from .config import settings
from .db import SessionLocal
from .models import DailyRoutineGeneration, GeneratedTaskRecord


def cleanup_generations(
    *,
    retention_days: Optional[int] = None,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> dict[str, Any]:
    """
    Delete generation rows older than the retention window. Task links survive with
    generation_id cleared; they still carry template id and target date.
    """
    days = retention_days if retention_days is not None else settings.GENERATION_RETENTION_DAYS
    days = max(1, int(days))
    cutoff = resolve_now(now) - timedelta(days=days)

    with SessionLocal() as s:
        old_ids = [
            row[0]
            for row in s.query(DailyRoutineGeneration.id)
            .filter(DailyRoutineGeneration.created_at < cutoff)
            .all()
        ]
        detached = 0
        if old_ids and not dry_run:
            detached = (
                s.query(GeneratedTaskRecord)
                .filter(GeneratedTaskRecord.generation_id.in_(old_ids))
                .update({GeneratedTaskRecord.generation_id: None}, synchronize_session=False)
            )
            (
                s.query(DailyRoutineGeneration)
                .filter(DailyRoutineGeneration.id.in_(old_ids))
                .delete(synchronize_session=False)
            )
            s.commit()

    print(f"[retention] generations older than {days}d (before {cutoff:%Y-%m-%d %H:%M}): "
          f"{len(old_ids)} {'would be ' if dry_run else ''}removed")
    return {
        "ok": True,
        "dry_run": dry_run,
        "retention_days": days,
        "cutoff": cutoff,
        "removed": len(old_ids),
        "links_detached": detached,
    }
