"""Explicit construction of the long-lived service objects."""

from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from chatdesk.config import Settings
from chatdesk.services.dispatcher import ReplyDispatcher
from chatdesk.services.events import EventBus
from chatdesk.services.gateway_service import PROCESS_INBOUND_JOB, WHATSAPP_QUEUE, ChannelGateway
from chatdesk.services.llm import LLMProvider, build_llm_provider
from chatdesk.services.orchestrator import AIOrchestrator
from chatdesk.services.processing_service import MessageProcessor
from chatdesk.services.queue_service import JobQueueManager
from chatdesk.services.tools import ToolRegistry, build_default_registry
from chatdesk.services.whatsapp_client import WhatsAppClient

# queues without handlers of their own still accept synthetic test jobs
AUXILIARY_QUEUES = ("ai-processing", "notifications")


@dataclass
class Services:
    settings: Settings
    events: EventBus
    queue_manager: JobQueueManager
    dispatcher: ReplyDispatcher
    registry: ToolRegistry
    orchestrator: AIOrchestrator
    processor: MessageProcessor
    gateway: ChannelGateway
    session_factory: Callable[[], Session]


def build_services(
    cfg: Settings,
    session_factory: Callable[[], Session],
    *,
    llm: Optional[LLMProvider] = None,
    whatsapp: Optional[WhatsAppClient] = None,
) -> Services:
    events = EventBus()
    dispatcher = ReplyDispatcher(whatsapp or WhatsAppClient.from_settings(cfg), events)
    registry = build_default_registry(dispatcher)
    orchestrator = AIOrchestrator(
        llm or build_llm_provider(cfg),
        registry,
        dispatcher,
        temperature=cfg.ai_temperature,
        max_tokens=cfg.ai_max_tokens,
    )
    processor = MessageProcessor(orchestrator, dispatcher, session_factory)

    queue_manager = JobQueueManager.from_settings(session_factory, cfg)
    queue_manager.register_queue(
        WHATSAPP_QUEUE,
        {PROCESS_INBOUND_JOB: processor.handle_job},
        concurrency=cfg.queue_ai_concurrency,
    )
    for name in AUXILIARY_QUEUES:
        queue_manager.register_queue(name)

    gateway = ChannelGateway(queue_manager, processor, events, verify_token=cfg.whatsapp_verify_token)
    return Services(
        settings=cfg,
        events=events,
        queue_manager=queue_manager,
        dispatcher=dispatcher,
        registry=registry,
        orchestrator=orchestrator,
        processor=processor,
        gateway=gateway,
        session_factory=session_factory,
    )
