from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from chatdesk.database import get_db
from chatdesk.dependencies import get_dispatcher, require_admin_token
from chatdesk.logging_config import get_logger
from chatdesk.models import AuthorType
from chatdesk.schemas.conversation import AgentReplyRequest, AgentReplyResponse
from chatdesk.services import conversation_service
from chatdesk.services.dispatcher import ReplyDispatcher
from chatdesk.services.whatsapp_client import WhatsAppAPIError

logger = get_logger("conversations")

router = APIRouter(prefix="/conversations", tags=["conversations"], dependencies=[Depends(require_admin_token)])


@router.post("/{conversation_id}/reply", response_model=AgentReplyResponse)
def send_agent_reply(
    conversation_id: UUID,
    request: AgentReplyRequest,
    db: Session = Depends(get_db),
    dispatcher: ReplyDispatcher = Depends(get_dispatcher),
):
    """Manual reply from a human agent, sent through the shared dispatcher."""
    conversation = conversation_service.get_conversation(db, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    if request.agent_ref:
        conversation.assigned_agent_ref = request.agent_ref

    try:
        message = dispatcher.dispatch(
            db,
            conversation,
            request.text,
            AuthorType.HUMAN_AGENT,
            media_type=request.media_type,
            media_ref=request.media_ref,
        )
    except WhatsAppAPIError as exc:
        db.rollback()
        raise HTTPException(status_code=502, detail=f"WhatsApp send failed: {exc}")
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(exc))

    return AgentReplyResponse(success=True, message_id=message.id, conversation_id=conversation_id)


@router.delete("/{conversation_id}")
def delete_conversation(conversation_id: UUID, db: Session = Depends(get_db)):
    if not conversation_service.delete_conversation(db, conversation_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    db.commit()
    logger.info("Conversation deleted", extra={"context": {"conversation_id": str(conversation_id)}})
    return {"success": True, "conversation_id": str(conversation_id)}
