"""Business hours / auto-reply gate evaluated before any AI work."""

from dataclasses import dataclass
from datetime import datetime, time, timezone
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from chatdesk.logging_config import get_logger
from chatdesk.services.settings_service import BusinessHours, RuntimeSettings

logger = get_logger("business_hours")

CLOSED_MESSAGE_TEMPLATE = (
    "Grazie per il tuo messaggio. Il nostro studio è attualmente chiuso. "
    "Orari: {start}-{end}. Ti risponderemo appena possibile."
)


class GateOutcome(str, Enum):
    SKIP = "skip"  # AI or auto-reply off: a human agent answers
    CLOSED = "closed"  # outside business hours: canned reply, no model call
    PROCEED = "proceed"


@dataclass(frozen=True)
class GateDecision:
    outcome: GateOutcome
    reply_text: Optional[str] = None
    reason: str = ""


def parse_hhmm(value: str) -> time:
    hours, minutes = value.strip().split(":")
    return time(int(hours), int(minutes))


def is_within_business_hours(now: datetime, hours: BusinessHours) -> bool:
    """Inclusive [start, end] check at minute resolution in the configured timezone.

    Windows with start > end wrap past midnight. A misconfigured window counts as open.
    """
    if not hours.enabled:
        return True

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    try:
        local = now.astimezone(ZoneInfo(hours.timezone))
        start = parse_hhmm(hours.start)
        end = parse_hhmm(hours.end)
    except (ValueError, ZoneInfoNotFoundError) as exc:
        logger.warning(
            "Invalid business hours configuration, treating as open",
            extra={"context": {"start": hours.start, "end": hours.end, "timezone": hours.timezone, "error": str(exc)}},
        )
        return True

    current = time(local.hour, local.minute)
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def build_closed_message(hours: BusinessHours) -> str:
    return CLOSED_MESSAGE_TEMPLATE.format(start=hours.start, end=hours.end)


def evaluate_gate(now: datetime, runtime: RuntimeSettings) -> GateDecision:
    if not runtime.ai_enabled:
        return GateDecision(GateOutcome.SKIP, reason="ai_disabled")
    if not runtime.auto_reply:
        return GateDecision(GateOutcome.SKIP, reason="auto_reply_disabled")
    if not is_within_business_hours(now, runtime.business_hours):
        return GateDecision(
            GateOutcome.CLOSED,
            reply_text=build_closed_message(runtime.business_hours),
            reason="outside_business_hours",
        )
    return GateDecision(GateOutcome.PROCEED)
