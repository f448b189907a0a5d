# =============================================================================
# Conversations API — Conversation Lifecycle & History
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from derp_research.api.deps import get_store
from derp_research.models.responses import (
    ConversationResponse,
    HistoryResponse,
    MessageResponse,
)
from derp_research.services.memory_store import MemoryStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["Conversations"])


@router.post(
    "",
    response_model=ConversationResponse,
    status_code=201,
    summary="Start a new conversation",
)
async def create_conversation(
    store: MemoryStore = Depends(get_store),
) -> ConversationResponse:
    conversation_id = await store.create_conversation()
    logger.info("Created conversation %s", conversation_id)
    return ConversationResponse(conversation_id=conversation_id)


@router.get(
    "/{conversation_id}/history",
    response_model=HistoryResponse,
    summary="List a conversation's messages",
)
async def get_history(
    conversation_id: str,
    limit: int | None = Query(default=None, ge=1, le=1000, description="Return only the last N messages"),
    store: MemoryStore = Depends(get_store),
) -> HistoryResponse:
    """Messages oldest first. 404 if the conversation does not exist."""
    if not await store.conversation_exists(conversation_id):
        raise HTTPException(status_code=404, detail=f"Conversation {conversation_id} not found")

    messages = await store.get_messages(conversation_id, limit=limit)
    return HistoryResponse(
        conversation_id=conversation_id,
        messages=[
            MessageResponse(role=m.role, content=m.content, timestamp=m.timestamp)
            for m in messages
        ],
    )
