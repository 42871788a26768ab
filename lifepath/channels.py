# lifepath/channels.py
from __future__ import annotations

import re
import threading
import time
from typing import Optional

import requests
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from .config import settings
from .errors import DeliveryError
from .messages import RenderedMessage


class DeliveryChannel:
    """send(destination, message) -> external message id, or raise DeliveryError."""

    name = "base"

    def send(self, destination: str, message: RenderedMessage) -> str:
        raise NotImplementedError


# ──────────────────────────────────────────────────────────────────────────────
# Telegram (Bot API over requests)
# ──────────────────────────────────────────────────────────────────────────────

class TelegramChannel(DeliveryChannel):
    name = "telegram"

    def __init__(self, token: Optional[str] = None, api_base: Optional[str] = None, timeout: Optional[float] = None):
        self.token = token or settings.TELEGRAM_BOT_TOKEN
        if not self.token:
            raise ValueError("TELEGRAM_BOT_TOKEN not configured")
        self.base_url = f"{(api_base or settings.TELEGRAM_API_BASE).rstrip('/')}/bot{self.token}"
        self.timeout = timeout if timeout is not None else settings.DELIVERY_TIMEOUT_SECONDS

    def send(self, destination: str, message: RenderedMessage) -> str:
        data = {
            "chat_id": destination,
            "text": message.body,
            "parse_mode": "Markdown",
            "disable_web_page_preview": True,
        }
        try:
            resp = requests.post(f"{self.base_url}/sendMessage", json=data, timeout=self.timeout)
        except requests.RequestException as e:
            print(f"[channel] telegram send to {destination} failed: {e!r}")
            raise DeliveryError(f"telegram request failed: {e}", channel=self.name) from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code != 200 or not body.get("ok"):
            desc = body.get("description") or resp.text[:200]
            print(f"[channel] telegram send to {destination} rejected: {resp.status_code} {desc}")
            raise DeliveryError(f"telegram error {resp.status_code}: {desc}", channel=self.name, code=resp.status_code)
        return str((body.get("result") or {}).get("message_id", ""))


# ──────────────────────────────────────────────────────────────────────────────
# WhatsApp via Twilio (multi-user safe)
# ──────────────────────────────────────────────────────────────────────────────

E164 = re.compile(r"^\+?[1-9]\d{7,14}$")  # simple E.164 validator
_SEND_LOCK_GUARD = threading.Lock()
_SEND_LOCKS: dict[str, threading.Lock] = {}
_LAST_SEND_MONO: dict[str, float] = {}


def _lock_for_destination(dest: str) -> threading.Lock:
    with _SEND_LOCK_GUARD:
        lock = _SEND_LOCKS.get(dest)
        if lock is None:
            lock = threading.Lock()
            _SEND_LOCKS[dest] = lock
        return lock


def _throttle_destination(dest: str, min_gap: float):
    last = _LAST_SEND_MONO.get(dest, 0.0)
    gap = min_gap - (time.monotonic() - last)
    if gap > 0:
        time.sleep(gap)


def normalize_whatsapp_phone(raw: str | None) -> str | None:
    """
    Return a number in the 'whatsapp:+441234567890' format, or None.
    """
    if not raw:
        return None
    s = str(raw).strip()
    if s.startswith("whatsapp:"):
        num = s.split("whatsapp:", 1)[1]
        if E164.match(num):
            return s
        return None
    if E164.match(s):
        return f"whatsapp:{s if s.startswith('+') else '+' + s}"
    return None


class WhatsAppChannel(DeliveryChannel):
    name = "whatsapp"

    def __init__(self, client: Optional[Client] = None, from_number: Optional[str] = None,
                 timeout: Optional[float] = None, min_gap: Optional[float] = None):
        self.timeout = timeout if timeout is not None else settings.DELIVERY_TIMEOUT_SECONDS
        self.min_gap = min_gap if min_gap is not None else settings.WHATSAPP_MIN_SEND_GAP
        self.from_number = from_number or settings.TWILIO_FROM
        if client is None:
            if not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN):
                raise ValueError("TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN not configured")
            client = Client(
                settings.TWILIO_ACCOUNT_SID,
                settings.TWILIO_AUTH_TOKEN,
                http_client=TwilioHttpClient(timeout=self.timeout),
            )
        self.client = client

    def send(self, destination: str, message: RenderedMessage) -> str:
        to_norm = normalize_whatsapp_phone(destination)
        if not to_norm:
            raise DeliveryError(f"invalid WhatsApp destination: {destination!r}", channel=self.name)
        lock = _lock_for_destination(to_norm)
        with lock:
            _throttle_destination(to_norm, self.min_gap)
            try:
                msg = self.client.messages.create(from_=self.from_number, body=message.body, to=to_norm)
            except TwilioRestException as exc:
                code = getattr(exc, "code", None)
                print(f"[channel] twilio send failed to {to_norm}: {getattr(exc, 'msg', exc)} (code={code})")
                if code == 63016:
                    print("[channel] WhatsApp session expired (>24h); an approved template is needed to reopen it.")
                raise DeliveryError(f"twilio error: {getattr(exc, 'msg', exc)}", channel=self.name, code=code) from exc
            except requests.RequestException as exc:
                raise DeliveryError(f"twilio request failed: {exc}", channel=self.name) from exc
            _LAST_SEND_MONO[to_norm] = time.monotonic()
        return getattr(msg, "sid", "") or ""


_CHANNELS = {
    "telegram": TelegramChannel,
    "whatsapp": WhatsAppChannel,
}


def get_channel(name: Optional[str] = None) -> DeliveryChannel:
    key = (name or settings.DELIVERY_CHANNEL or "telegram").strip().lower()
    cls = _CHANNELS.get(key)
    if cls is None:
        raise ValueError(f"unknown delivery channel {key!r}; expected one of {sorted(_CHANNELS)}")
    return cls()
