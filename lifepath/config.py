# lifepath/config.py
import zoneinfo
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    # ── Database
    DATABASE_URL: str = "sqlite:///./lifepath.db"  # placeholder; the real URL lives in .env

    # Single timezone for every "now"/"today" decision (midnight rollover, quiet hours)
    APP_TIMEZONE: str = Field("Asia/Jakarta", env="APP_TIMEZONE")

    # Delivery channel: telegram | whatsapp
    DELIVERY_CHANNEL: str = Field("telegram", env="DELIVERY_CHANNEL")
    DELIVERY_TIMEOUT_SECONDS: float = Field(10.0, env="DELIVERY_TIMEOUT_SECONDS")

    # Telegram
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_API_BASE: str = Field("https://api.telegram.org", env="TELEGRAM_API_BASE")

    # Twilio (WhatsApp)
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_FROM: Optional[str] = None
    WHATSAPP_MIN_SEND_GAP: float = Field(0.4, env="WHATSAPP_MIN_SEND_GAP")

    # Scheduler (cron expressions, evaluated in APP_TIMEZONE)
    SCHEDULER_ENABLED: bool = Field(True, env="SCHEDULER_ENABLED")
    DAILY_GENERATION_CRON: str = Field("0 6 * * *", env="DAILY_GENERATION_CRON")
    MIDNIGHT_GENERATION_CRON: str = Field("0 0 * * *", env="MIDNIGHT_GENERATION_CRON")
    REMINDER_TICK_CRON: str = Field("* * * * *", env="REMINDER_TICK_CRON")
    WEEKLY_CLEANUP_CRON: str = Field("0 2 * * 0", env="WEEKLY_CLEANUP_CRON")
    JOB_MISFIRE_GRACE_SEC: int = Field(300, env="JOB_MISFIRE_GRACE_SEC")

    # Dispatcher limits
    PENDING_BATCH_LIMIT: int = Field(100, env="PENDING_BATCH_LIMIT")
    OVERDUE_BATCH_LIMIT: int = Field(50, env="OVERDUE_BATCH_LIMIT")
    OVERDUE_DEDUP_HOURS: int = Field(24, env="OVERDUE_DEDUP_HOURS")
    SUMMARY_WINDOW_MINUTES: int = Field(1, env="SUMMARY_WINDOW_MINUTES")
    REMINDER_MAX_ATTEMPTS: int = Field(0, env="REMINDER_MAX_ATTEMPTS")  # 0 = keep retrying, no cap
    REMINDER_RETRY_BASE_SECONDS: int = Field(60, env="REMINDER_RETRY_BASE_SECONDS")   # doubles per failed attempt
    REMINDER_RETRY_MAX_SECONDS: int = Field(1800, env="REMINDER_RETRY_MAX_SECONDS")

    # Housekeeping
    GENERATION_RETENTION_DAYS: int = Field(90, env="GENERATION_RETENTION_DAYS")

    # Admin surface
    ADMIN_API_TOKEN: Optional[str] = None

    # Dev reset + seed user
    RESET_DB_ON_STARTUP: bool = Field(False, env="RESET_DB_ON_STARTUP")
    SEED_DEMO_USER: bool = Field(False, env="SEED_DEMO_USER")
    SEED_USER_NAME: str = Field("Demo User", env="SEED_USER_NAME")
    SEED_USER_CHAT_ID: Optional[str] = Field(None, env="SEED_USER_CHAT_ID")

    # Debug logging
    LIFEPATH_DEBUG: bool = Field(False, env="LIFEPATH_DEBUG")
    LIFEPATH_DEBUG_TAGS: Optional[str] = Field(None, env="LIFEPATH_DEBUG_TAGS")  # e.g. "planner,dispatcher"


    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",  # ignore unexpected keys instead of erroring
    )

settings = Settings()
DEFAULT_TZ = zoneinfo.ZoneInfo(settings.APP_TIMEZONE)
