"""Bounded tool-calling loop that turns an inbound message into one reply.

GATHER_CONTEXT -> CALL_MODEL -> (TOOL_REQUESTED -> EXECUTE_TOOL -> CALL_MODEL)* -> FINAL_TEXT
-> DISPATCH -> DONE, with FAILURE -> FALLBACK_REPLY reachable from any live state.
Every triggering message ends up processed with some reply text, even when the
model or a tool fails.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from chatdesk.logging_config import get_logger
from chatdesk.models import AuthorType, Conversation, Message
from chatdesk.services import conversation_service
from chatdesk.services.dispatcher import ReplyDispatcher
from chatdesk.services.llm.base import LLMProvider, LLMTimeoutError
from chatdesk.services.result import AI_ERROR, AI_TIMEOUT, Result
from chatdesk.services.settings_service import TRIGGER_CHAT, TRIGGER_WHATSAPP, RuntimeSettings
from chatdesk.services.state_machine import OrchestratorState, StateTracker
from chatdesk.services.tools.base import ToolContext, ToolResult
from chatdesk.services.tools.registry import ToolRegistry

logger = get_logger("orchestrator")

FALLBACK_REPLY_TEXT = "Grazie per il tuo messaggio. Un nostro operatore ti risponderà al più presto."
COMPLETION_TEXT = "Ho completato la tua richiesta. Se hai bisogno di altro, scrivici pure."

ROLE_BY_AUTHOR = {
    AuthorType.EXTERNAL_CONTACT.value: "user",
    AuthorType.AI_AGENT.value: "assistant",
    AuthorType.HUMAN_AGENT.value: "assistant",
}

# text-protocol tool calls some local models leak into their answer
_TOOL_MARKUP_PATTERNS = (
    re.compile(r"<tool_call>.*?</tool_call>", re.IGNORECASE | re.DOTALL),
    re.compile(r"\[TOOL_CALLS\]\s*(\[.*?\]|\{.*?\})?", re.DOTALL),
    re.compile(r"^[ \t]*TOOL_CALL:.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"^[ \t]*PARAMETERS:\s*\{.*?\}[ \t]*$", re.IGNORECASE | re.MULTILINE | re.DOTALL),
    re.compile(r"^[ \t]*REASON:.*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"<\|[^|>]*\|>"),
)


def strip_tool_markup(text: Optional[str]) -> str:
    cleaned = text or ""
    for pattern in _TOOL_MARKUP_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def clean_reply_text(text: Optional[str]) -> str:
    return strip_tool_markup(text) or COMPLETION_TEXT


@dataclass
class OrchestrationOutcome:
    reply_text: str
    fallback: bool = False
    dispatched: bool = False
    states: list = field(default_factory=list)
    tool_calls: list = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class _Draft:
    text: str
    tool_calls: list


class AIOrchestrator:
    def __init__(
        self,
        llm: LLMProvider,
        registry: ToolRegistry,
        dispatcher: ReplyDispatcher,
        *,
        temperature: float = 0.3,
        max_tokens: int = 1000,
    ):
        self.llm = llm
        self.registry = registry
        self.dispatcher = dispatcher
        self.temperature = temperature
        self.max_tokens = max_tokens

    def build_system_prompt(self, runtime: RuntimeSettings, now: datetime) -> str:
        tz_name = runtime.business_hours.timezone
        try:
            local_now = now.astimezone(ZoneInfo(tz_name))
        except (ValueError, ZoneInfoNotFoundError):
            tz_name = "UTC"
            local_now = now.astimezone(timezone.utc)

        prompt = f"{runtime.system_prompt}\n\nData e ora attuali: {local_now:%Y-%m-%d %H:%M} ({tz_name})."
        if len(self.registry):
            prompt += (
                "\n\nStrumenti disponibili:\n"
                f"{self.registry.describe_tools()}\n"
                "Usa uno strumento solo quando serve per completare la richiesta del cliente."
            )
        return prompt

    def build_history(
        self,
        db: Session,
        conversation: Conversation,
        message: Message,
        runtime: RuntimeSettings,
    ) -> list[dict]:
        recent = conversation_service.get_recent_messages(
            db,
            conversation.id,
            runtime.max_context_messages,
            exclude_message_id=message.id,
            until=message.timestamp,
        )
        turns = [{"role": ROLE_BY_AUTHOR.get(m.author_type, "user"), "content": m.content} for m in recent]
        turns.append({"role": "user", "content": message.content})
        return turns

    def _run_model_loop(
        self,
        messages: list[dict],
        runtime: RuntimeSettings,
        trigger: str,
        tool_context: ToolContext,
        tracker: StateTracker,
    ) -> _Draft:
        tools = self.registry.get_tool_definitions() or None
        executed: list[dict] = []
        last_success: Optional[str] = None
        max_iterations = max(1, runtime.max_tool_iterations)

        for iteration in range(1, max_iterations + 1):
            response = self.llm.generate(
                messages,
                model=runtime.ai_model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                tools=tools,
                timeout_seconds=runtime.timeout_for(trigger),
            )
            if not response.tool_calls:
                tracker.advance(OrchestratorState.FINAL_TEXT)
                return _Draft(response.content, executed)

            calls = []
            for index, call in enumerate(response.tool_calls):
                call.id = call.id or f"call_{iteration}_{index}"
                calls.append(
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments, ensure_ascii=False)},
                    }
                )
            messages.append({"role": "assistant", "content": response.content or "", "tool_calls": calls})

            for call in response.tool_calls:
                tracker.advance(OrchestratorState.TOOL_REQUESTED)
                errors = [call.parse_error] if call.parse_error else self.registry.validate_parameters(
                    call.name, call.arguments
                )
                if errors:
                    result = ToolResult.fail("Parametri non validi", error="; ".join(errors))
                    logger.info(
                        "Tool call rejected",
                        extra={"context": {"tool": call.name, "errors": errors, "iteration": iteration}},
                    )
                else:
                    tracker.advance(OrchestratorState.EXECUTE_TOOL)
                    result = self.registry.execute_tool(call.name, call.arguments, tool_context)
                    if result.success:
                        last_success = result.message

                executed.append({"name": call.name, "success": result.success, "error": result.error})
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "name": call.name,
                        "content": json.dumps(result.to_dict(), ensure_ascii=False, default=str),
                    }
                )

            if iteration < max_iterations:
                tracker.advance(OrchestratorState.CALL_MODEL)

        logger.warning(
            "Tool iteration limit reached",
            extra={"context": {"max_iterations": max_iterations, "conversation_id": str(tool_context.conversation_id)}},
        )
        tracker.advance(OrchestratorState.FINAL_TEXT)
        return _Draft(last_success or COMPLETION_TEXT, executed)

    def generate_reply(
        self,
        messages: list[dict],
        runtime: RuntimeSettings,
        trigger: str,
        tool_context: ToolContext,
        tracker: StateTracker,
    ) -> Result[_Draft]:
        tracker.advance(OrchestratorState.CALL_MODEL)
        try:
            return Result.success(self._run_model_loop(messages, runtime, trigger, tool_context, tracker))
        except LLMTimeoutError as exc:
            return Result.failure(str(exc), AI_TIMEOUT)
        except Exception as exc:
            logger.error("AI generation failed", extra={"context": {"error": str(exc)}}, exc_info=True)
            return Result.failure(str(exc), AI_ERROR)

    def handle_message(
        self,
        db: Session,
        conversation: Conversation,
        message: Message,
        runtime: RuntimeSettings,
        trigger: str = TRIGGER_WHATSAPP,
        now: Optional[datetime] = None,
    ) -> OrchestrationOutcome:
        """Produce, persist and dispatch the reply to one inbound message.

        Dispatch errors propagate; the message stays processed in that case.
        """
        now = now or conversation_service.utcnow()
        conversation_id = conversation.id
        message_id = message.id
        ids = {"conversation_id": str(conversation_id), "message_id": str(message_id), "trigger": trigger}
        tracker = StateTracker()

        messages = [{"role": "system", "content": self.build_system_prompt(runtime, now)}]
        messages.extend(self.build_history(db, conversation, message, runtime))
        tool_context = ToolContext(
            db=db,
            now=now,
            conversation_id=conversation_id,
            message_id=message_id,
            contact_identifier=conversation.contact_identifier,
            contact_name=conversation.contact_name,
            timezone=runtime.business_hours.timezone,
        )

        result = self.generate_reply(messages, runtime, trigger, tool_context, tracker)
        outcome = OrchestrationOutcome(reply_text=FALLBACK_REPLY_TEXT)
        if result.ok:
            draft = result.unwrap()
            outcome.reply_text = clean_reply_text(draft.text)
            outcome.tool_calls = draft.tool_calls
        else:
            tracker.fail()
            tracker.advance(OrchestratorState.FALLBACK_REPLY)
            outcome.fallback = True
            outcome.error = result.error
            outcome.error_code = result.error_code
            logger.error(
                "AI processing failed, sending fallback reply",
                extra={"context": {**ids, "error_code": result.error_code, "error": result.error}},
            )

        marked = conversation_service.mark_message_processed(db, message_id, outcome.reply_text)
        db.commit()

        if not marked:
            logger.info("Message already processed elsewhere, not replying", extra={"context": ids})
        elif not conversation_service.conversation_exists(db, conversation_id):
            logger.info("Conversation deleted during processing, reply dropped", extra={"context": ids})
        else:
            tracker.advance(OrchestratorState.DISPATCH)
            self.dispatcher.dispatch(db, conversation, outcome.reply_text, AuthorType.AI_AGENT)
            outcome.dispatched = True

        tracker.advance(OrchestratorState.DONE)
        outcome.states = [state.value for state in tracker.trail]
        logger.info(
            "AI reply handled",
            extra={
                "context": {
                    **ids,
                    "fallback": outcome.fallback,
                    "dispatched": outcome.dispatched,
                    "tool_calls": len(outcome.tool_calls),
                }
            },
        )
        return outcome

    def chat(
        self,
        db: Session,
        turns: list[dict],
        runtime: RuntimeSettings,
        now: Optional[datetime] = None,
    ) -> OrchestrationOutcome:
        """Direct chat surface: same loop with the short timeout, nothing persisted or sent."""
        now = now or conversation_service.utcnow()
        tracker = StateTracker()
        messages = [{"role": "system", "content": self.build_system_prompt(runtime, now)}]
        messages.extend({"role": t["role"], "content": t["content"]} for t in turns if t.get("role") in ("user", "assistant"))
        tool_context = ToolContext(db=db, now=now, timezone=runtime.business_hours.timezone)

        result = self.generate_reply(messages, runtime, TRIGGER_CHAT, tool_context, tracker)
        if result.ok:
            draft = result.unwrap()
            outcome = OrchestrationOutcome(reply_text=clean_reply_text(draft.text), tool_calls=draft.tool_calls)
        else:
            tracker.fail()
            tracker.advance(OrchestratorState.FALLBACK_REPLY)
            outcome = OrchestrationOutcome(
                reply_text=FALLBACK_REPLY_TEXT,
                fallback=True,
                error=result.error,
                error_code=result.error_code,
            )
            logger.error(
                "AI chat failed, returning fallback",
                extra={"context": {"error_code": result.error_code, "error": result.error}},
            )

        tracker.advance(OrchestratorState.DONE)
        outcome.states = [state.value for state in tracker.trail]
        return outcome
