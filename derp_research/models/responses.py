# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shape of data coming OUT of the API. Research results themselves are
# streamed as server-sent events (see models/events.py); these models
# cover the plain JSON endpoints.
# =============================================================================

from datetime import datetime

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response for GET /health: confirms the API is running."""

    status: str = "ok"
    version: str
    service: str
    indexed_vectors: int = Field(description="Vectors currently held in the similarity index")


class ConversationResponse(BaseModel):
    """Response for POST /conversations."""

    conversation_id: str


class MessageResponse(BaseModel):
    role: str
    content: str
    timestamp: datetime | None = None


class HistoryResponse(BaseModel):
    """Response for GET /conversations/{id}/history, oldest message first."""

    conversation_id: str
    messages: list[MessageResponse]
