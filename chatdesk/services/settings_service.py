"""Runtime channel settings, read at the point of use.

The ``channel_settings`` row is maintained by the settings UI; values left NULL
there fall back to the environment defaults in :mod:`chatdesk.config`.
Nothing here is cached, so a toggle takes effect on the next message.
"""

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.orm import Session

from chatdesk.config import Settings, settings
from chatdesk.models import ChannelSettings

TRIGGER_WHATSAPP = "whatsapp"
TRIGGER_CHAT = "chat"


@dataclass(frozen=True)
class BusinessHours:
    enabled: bool = False
    start: str = "09:00"
    end: str = "18:00"
    timezone: str = "Europe/Rome"


@dataclass(frozen=True)
class RuntimeSettings:
    ai_enabled: bool = False
    auto_reply: bool = False
    ai_model: Optional[str] = None
    system_prompt: str = ""
    business_hours: BusinessHours = field(default_factory=BusinessHours)
    timeouts: dict = field(default_factory=lambda: {TRIGGER_WHATSAPP: 60.0, TRIGGER_CHAT: 30.0})
    max_context_messages: int = 5
    max_tool_iterations: int = 5

    def timeout_for(self, trigger: str) -> float:
        if trigger in self.timeouts:
            return self.timeouts[trigger]
        return min(self.timeouts.values())


def _pick(value, default):
    return default if value is None else value


def build_runtime_settings(row: Optional[ChannelSettings], defaults: Settings) -> RuntimeSettings:
    hours = BusinessHours(
        enabled=_pick(row.business_hours_enabled if row else None, defaults.business_hours_enabled),
        start=_pick(row.business_hours_start if row else None, defaults.business_hours_start),
        end=_pick(row.business_hours_end if row else None, defaults.business_hours_end),
        timezone=_pick(row.business_hours_timezone if row else None, defaults.business_hours_timezone),
    )
    return RuntimeSettings(
        ai_enabled=_pick(row.ai_enabled if row else None, defaults.ai_enabled),
        auto_reply=_pick(row.auto_reply if row else None, defaults.auto_reply),
        ai_model=_pick(row.ai_model if row else None, defaults.ai_model),
        system_prompt=_pick(row.system_prompt if row else None, defaults.system_prompt),
        business_hours=hours,
        timeouts={
            TRIGGER_WHATSAPP: float(
                _pick(row.timeout_whatsapp_seconds if row else None, defaults.ai_timeout_whatsapp_seconds)
            ),
            TRIGGER_CHAT: float(_pick(row.timeout_chat_seconds if row else None, defaults.ai_timeout_chat_seconds)),
        },
        max_context_messages=_pick(row.max_context_messages if row else None, defaults.max_context_messages),
        max_tool_iterations=_pick(row.max_tool_iterations if row else None, defaults.max_tool_iterations),
    )


def get_runtime_settings(db: Session, channel: str = TRIGGER_WHATSAPP) -> RuntimeSettings:
    row = db.query(ChannelSettings).filter(ChannelSettings.channel == channel).first()
    return build_runtime_settings(row, settings)
