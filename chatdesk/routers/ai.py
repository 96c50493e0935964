from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chatdesk.database import get_db
from chatdesk.dependencies import get_orchestrator, require_admin_token
from chatdesk.schemas.conversation import ChatRequest, ChatResponse
from chatdesk.services.orchestrator import AIOrchestrator
from chatdesk.services.settings_service import get_runtime_settings

router = APIRouter(prefix="/ai", tags=["ai"], dependencies=[Depends(require_admin_token)])


@router.post("/chat", response_model=ChatResponse)
def chat(
    request: ChatRequest,
    db: Session = Depends(get_db),
    orchestrator: AIOrchestrator = Depends(get_orchestrator),
):
    runtime = get_runtime_settings(db)
    outcome = orchestrator.chat(db, [turn.model_dump() for turn in request.messages], runtime)
    return ChatResponse(reply=outcome.reply_text, fallback=outcome.fallback, tool_calls=outcome.tool_calls)
