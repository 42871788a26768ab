from __future__ import annotations

from datetime import time

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Date, Time, Boolean, ForeignKey,
    UniqueConstraint, Index, JSON, text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

from .clock import utcnow

Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (SQLite dev/test)
JSONType = JSON().with_variant(JSONB(), "postgresql")

TASK_STATUSES = ("pending", "in_progress", "done")
TASK_PRIORITIES = ("high", "medium", "low")
GENERATION_STATUSES = ("completed", "failed", "deleted")
REMINDER_TYPES = ("task_start", "task_due")
REMINDER_STATUSES = ("pending", "sent", "failed")
NOTIFICATION_TYPES = ("task_start", "task_due", "overdue", "daily_summary", "routine_generated")
DELIVERY_STATUSES = ("sent", "skipped", "failed")

# ──────────────────────────────────────────────────────────────────────────────
# Core
# ──────────────────────────────────────────────────────────────────────────────
class User(Base):
    __tablename__ = "users"
    id         = Column(Integer, primary_key=True)
    name       = Column(String(160), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    delivery_target = relationship("DeliveryTarget", back_populates="user", uselist=False,
                                   cascade="all, delete-orphan")


class DeliveryTarget(Base):
    """Chat destination for a user; verification is owned by the bot, we only read the flags."""
    __tablename__ = "delivery_targets"
    id                = Column(Integer, primary_key=True)
    user_id           = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    channel           = Column(String(32), nullable=False, default="telegram")   # telegram | whatsapp
    destination       = Column(String(128), nullable=False)                      # chat id or E.164 phone
    is_verified       = Column(Boolean, nullable=False, default=False)
    is_active         = Column(Boolean, nullable=False, default=True)
    verification_code = Column(String(32), nullable=True)
    verified_at       = Column(DateTime, nullable=True)
    created_at        = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="delivery_target")


# ──────────────────────────────────────────────────────────────────────────────
# Tasks
# ──────────────────────────────────────────────────────────────────────────────
class Task(Base):
    __tablename__ = "tasks"
    id          = Column(Integer, primary_key=True)
    user_id     = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title       = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    status      = Column(String(16), nullable=False, default="pending")   # pending|in_progress|done
    priority    = Column(String(16), nullable=False, default="medium")    # high|medium|low
    category    = Column(String(32), nullable=True)                       # work|learn|rest|...
    due_date    = Column(Date, nullable=True, index=True)
    time_start  = Column(Time, nullable=True)
    time_end    = Column(Time, nullable=True)
    created_at  = Column(DateTime, default=utcnow, nullable=False)
    updated_at  = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


# ──────────────────────────────────────────────────────────────────────────────
# Routine templates + generation history
# ──────────────────────────────────────────────────────────────────────────────
class RoutineTemplate(Base):
    __tablename__ = "routine_templates"
    id          = Column(Integer, primary_key=True)
    user_id     = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name        = Column(String(160), nullable=False)
    description = Column(Text, nullable=True)
    is_active   = Column(Boolean, nullable=False, default=True)
    created_at  = Column(DateTime, default=utcnow, nullable=False)
    updated_at  = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    tasks = relationship("TemplateTask", back_populates="template", cascade="all, delete-orphan",
                         order_by="TemplateTask.order_index")


class TemplateTask(Base):
    __tablename__ = "template_tasks"
    id                 = Column(Integer, primary_key=True)
    template_id        = Column(Integer, ForeignKey("routine_templates.id", ondelete="CASCADE"), nullable=False, index=True)
    title              = Column(String(255), nullable=False)
    description        = Column(Text, nullable=True)
    category           = Column(String(32), nullable=True)
    priority           = Column(String(16), nullable=False, default="medium")
    time_start         = Column(Time, nullable=True)
    time_end           = Column(Time, nullable=True)
    estimated_duration = Column(Integer, nullable=True)   # minutes
    order_index        = Column(Integer, nullable=False, default=0)
    is_active          = Column(Boolean, nullable=False, default=True)
    created_at         = Column(DateTime, default=utcnow, nullable=False)

    template = relationship("RoutineTemplate", back_populates="tasks")


class DailyRoutineGeneration(Base):
    __tablename__ = "daily_routine_generations"
    id              = Column(Integer, primary_key=True)
    user_id         = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    template_id     = Column(Integer, ForeignKey("routine_templates.id", ondelete="CASCADE"), nullable=False, index=True)
    target_date     = Column(Date, nullable=False)
    tasks_generated = Column(Integer, nullable=False, default=0)
    status          = Column(String(16), nullable=False, default="completed")   # completed|failed|deleted
    error           = Column(Text, nullable=True)
    created_at      = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        # at most one completed generation per (user, template, day)
        Index(
            "uq_generation_completed_key",
            "user_id", "template_id", "target_date",
            unique=True,
            postgresql_where=text("status = 'completed'"),
            sqlite_where=text("status = 'completed'"),
        ),
        Index("ix_generation_lookup", "user_id", "target_date"),
    )


class GeneratedTaskRecord(Base):
    __tablename__ = "generated_task_records"
    id               = Column(Integer, primary_key=True)
    task_id          = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    template_id      = Column(Integer, ForeignKey("routine_templates.id", ondelete="CASCADE"), nullable=False)
    template_task_id = Column(Integer, ForeignKey("template_tasks.id", ondelete="SET NULL"), nullable=True)
    generation_id    = Column(Integer, ForeignKey("daily_routine_generations.id", ondelete="SET NULL"), nullable=True)
    target_date      = Column(Date, nullable=False)
    created_at       = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_generated_task_key", "template_id", "target_date"),
    )


# ──────────────────────────────────────────────────────────────────────────────
# Reminders
# ──────────────────────────────────────────────────────────────────────────────
class ReminderSettings(Base):
    __tablename__ = "reminder_settings"
    id                               = Column(Integer, primary_key=True)
    user_id                          = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    reminder_before_minutes          = Column(JSONType, nullable=False, default=lambda: [15, 30, 60])
    daily_summary_time               = Column(Time, nullable=False, default=time(7, 0))
    enable_task_start_reminder       = Column(Boolean, nullable=False, default=True)
    enable_task_due_reminder         = Column(Boolean, nullable=False, default=True)
    enable_daily_summary             = Column(Boolean, nullable=False, default=True)
    enable_routine_generation_notice = Column(Boolean, nullable=False, default=True)
    notify_pending_tasks             = Column(Boolean, nullable=False, default=True)
    notify_overdue_tasks             = Column(Boolean, nullable=False, default=True)
    notify_completed_milestone       = Column(Boolean, nullable=False, default=True)
    quiet_hours_enabled              = Column(Boolean, nullable=False, default=False)
    quiet_hours_start                = Column(Time, nullable=False, default=time(22, 0))
    quiet_hours_end                  = Column(Time, nullable=False, default=time(7, 0))
    created_at                       = Column(DateTime, default=utcnow, nullable=False)
    updated_at                       = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("user_id", name="uq_reminder_settings_user"),)


class ScheduledReminder(Base):
    __tablename__ = "scheduled_reminders"
    id              = Column(Integer, primary_key=True)
    user_id         = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    task_id         = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=True, index=True)
    reminder_type   = Column(String(32), nullable=False)    # task_start|task_due
    fire_at         = Column(DateTime, nullable=False)      # naive UTC
    minutes_before  = Column(Integer, nullable=True)
    status          = Column(String(16), nullable=False, default="pending")   # pending|sent|failed
    attempts        = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=True)     # naive UTC; set after a failed send
    last_error      = Column(Text, nullable=True)
    sent_at         = Column(DateTime, nullable=True)
    created_at      = Column(DateTime, default=utcnow, nullable=False)

    task = relationship("Task")

    __table_args__ = (
        Index("ix_scheduled_reminders_due", "status", "fire_at"),
    )


class NotificationLog(Base):
    """Append-only; rows are never updated after insert."""
    __tablename__ = "notification_logs"
    id                  = Column(Integer, primary_key=True)
    user_id             = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    task_id             = Column(Integer, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True)
    reminder_id         = Column(Integer, ForeignKey("scheduled_reminders.id", ondelete="SET NULL"), nullable=True)
    notification_type   = Column(String(32), nullable=False)
    title               = Column(String(255), nullable=True)
    body                = Column(Text, nullable=True)
    scheduled_for       = Column(DateTime, nullable=True)
    sent_at             = Column(DateTime, nullable=True)
    delivery_status     = Column(String(16), nullable=False)    # sent|skipped|failed
    error_message       = Column(Text, nullable=True)
    external_message_id = Column(String(128), nullable=True)
    created_at          = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("ix_notification_dedup", "user_id", "notification_type", "created_at"),
    )


class JobAudit(Base):
    __tablename__ = "job_audits"
    id         = Column(Integer, primary_key=True)
    job_name   = Column(String(120), nullable=True)
    status     = Column(String(32), nullable=True)    # started|ok|error
    payload    = Column(JSONType, nullable=True)
    error      = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
