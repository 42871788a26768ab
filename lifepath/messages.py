# lifepath/messages.py
# Notification text for each reminder type. Telegram Markdown (v1) friendly;
# the WhatsApp channel sends the same text, where *bold* renders natively.
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from .models import Task

PRIORITY_EMOJI = {"high": "🔴", "medium": "🟡", "low": "🟢"}
CATEGORY_EMOJI = {"work": "💼", "learn": "📚", "rest": "😴"}
STATUS_LABELS = (("pending", "⏳ Pending"), ("in_progress", "🔄 In progress"), ("done", "✅ Done"))
SUMMARY_PENDING_PREVIEW = 5


@dataclass(frozen=True)
class RenderedMessage:
    title: str
    body: str

    @property
    def text(self) -> str:
        return self.body


def _hhmm(t) -> Optional[str]:
    return t.strftime("%H:%M") if t else None


def _time_range(task: Task) -> Optional[str]:
    start, end = _hhmm(task.time_start), _hhmm(task.time_end)
    if start and end:
        return f"{start} - {end}"
    return start


def _priority(task: Task) -> str:
    p = (task.priority or "medium").lower()
    return f"{PRIORITY_EMOJI.get(p, '⚪')} {p.capitalize()}"


def _category(task: Task) -> Optional[str]:
    if not task.category:
        return None
    c = task.category.lower()
    return f"{CATEGORY_EMOJI.get(c, '📌')} {c.capitalize()}"


def _detail_lines(task: Task) -> list[str]:
    lines = []
    rng = _time_range(task)
    if rng:
        lines.append(f"🕐 Time: {rng}")
    lines.append(f"Priority: {_priority(task)}")
    cat = _category(task)
    if cat:
        lines.append(f"Category: {cat}")
    return lines


def render_task_start(task: Task, minutes_before: Optional[int]) -> RenderedMessage:
    title = f"Reminder: {task.title}"
    when = f"Starts in {minutes_before} minutes" if minutes_before else "Starting soon"
    lines = ["⏰ *Task Reminder*", "", f"*{task.title}*", when, ""]
    lines += _detail_lines(task)
    if task.description:
        lines += ["", task.description]
    return RenderedMessage(title=title, body="\n".join(lines))


def render_task_due(task: Task) -> RenderedMessage:
    title = f"Due soon: {task.title}"
    due = task.due_date.isoformat() if task.due_date else "soon"
    lines = ["📅 *Task Due Tomorrow*", "", f"*{task.title}*", f"Due: {due}", ""]
    lines += _detail_lines(task)
    return RenderedMessage(title=title, body="\n".join(lines))


def render_overdue(task: Task, today: date) -> RenderedMessage:
    title = f"Overdue: {task.title}"
    days = (today - task.due_date).days if task.due_date else 0
    late = f"{days} day{'s' if days != 1 else ''} overdue" if days > 0 else "Overdue"
    lines = [
        "⚠️ *Overdue Task*",
        "",
        f"*{task.title}*",
        f"Due date: {task.due_date.isoformat() if task.due_date else 'n/a'} ({late})",
        f"Priority: {_priority(task)}",
        "",
        "Please update or complete this task.",
    ]
    return RenderedMessage(title=title, body="\n".join(lines))


def render_daily_summary(tasks: Iterable[Task], today: date) -> RenderedMessage:
    tasks = list(tasks)
    counts = {key: 0 for key, _ in STATUS_LABELS}
    for t in tasks:
        counts[t.status] = counts.get(t.status, 0) + 1
    lines = [f"📋 *Daily Summary* ({today.isoformat()})", "", f"Total tasks: {len(tasks)}"]
    for key, label in STATUS_LABELS:
        lines.append(f"{label}: {counts.get(key, 0)}")
    pending = [t for t in tasks if t.status != "done"]
    pending.sort(key=lambda t: (t.time_start is None, t.time_start or 0, t.id))
    if pending:
        lines += ["", "*Up next:*"]
        for t in pending[:SUMMARY_PENDING_PREVIEW]:
            start = _hhmm(t.time_start)
            prefix = f"{start} " if start else ""
            lines.append(f"{PRIORITY_EMOJI.get((t.priority or '').lower(), '⚪')} {prefix}{t.title}")
        more = len(pending) - SUMMARY_PENDING_PREVIEW
        if more > 0:
            lines.append(f"...and {more} more")
    return RenderedMessage(title=f"Daily summary {today.isoformat()}", body="\n".join(lines))


def render_routine_generated(template_name: str, tasks: Iterable[Task], target_date: date) -> RenderedMessage:
    tasks = list(tasks)
    lines = [
        "🔁 *Routine Generated*",
        "",
        f"*{template_name}* for {target_date.isoformat()}",
        f"{len(tasks)} task{'s' if len(tasks) != 1 else ''} added:",
    ]
    for t in tasks:
        start = _hhmm(t.time_start)
        lines.append(f"• {start + ' ' if start else ''}{t.title}")
    return RenderedMessage(title=f"Routine generated: {template_name}", body="\n".join(lines))
