from __future__ import annotations

from datetime import date
from typing import Optional


class LifePathError(Exception):
    pass


# ── Generation ────────────────────────────────────────────────────────────────

class GenerationError(LifePathError):
    pass


class AlreadyGenerated(GenerationError):
    """Benign: a completed generation already exists for (user, template, date)."""

    def __init__(self, template_id: int, target_date: date, generation_id: Optional[int] = None):
        self.template_id = template_id
        self.target_date = target_date
        self.generation_id = generation_id
        super().__init__(f"Routine already generated for {target_date.isoformat()}")


class TemplateNotFound(GenerationError):
    def __init__(self, template_id: int):
        self.template_id = template_id
        super().__init__(f"Template {template_id} not found")


class TemplateInactive(GenerationError):
    def __init__(self, template_id: int):
        self.template_id = template_id
        super().__init__(f"Template {template_id} is not active")


class TemplateEmpty(GenerationError):
    def __init__(self, template_id: int):
        self.template_id = template_id
        super().__init__(f"Template {template_id} has no active tasks")


class GenerationNotFound(GenerationError):
    def __init__(self, template_id: int, target_date: date):
        self.template_id = template_id
        self.target_date = target_date
        super().__init__(f"No generated tasks found for template {template_id} on {target_date.isoformat()}")


# ── Other collaborators ───────────────────────────────────────────────────────

class TemplateInUse(LifePathError):
    def __init__(self, template_id: int):
        self.template_id = template_id
        super().__init__(f"Template {template_id} has generation history; deactivate it instead")


class TaskNotFound(LifePathError):
    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class DeliveryError(LifePathError):
    """Transient channel failure; the dispatcher retries on a later tick."""

    def __init__(self, message: str, *, channel: Optional[str] = None, code: Optional[object] = None):
        self.channel = channel
        self.code = code
        super().__init__(message)


class PersistenceError(LifePathError):
    """Unexpected store failure; aborts one unit of work, never the whole batch."""

    def __init__(self, message: str, *, partial_count: int = 0):
        self.partial_count = partial_count
        super().__init__(message)
