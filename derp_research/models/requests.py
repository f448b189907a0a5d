# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shape of data coming INTO the API. FastAPI validates request bodies
# against these models and returns 422 for invalid data before any
# research work starts.
# =============================================================================

from pydantic import BaseModel, ConfigDict, Field


class ResearchRequest(BaseModel):
    """
    Request body for POST /research: start (or continue) a research run.

    Without `clarification_answers` the run may stop after asking clarifying
    questions. Send the answers in a second request with the same
    `conversation_id` to run the research with them.

    Example:
        {
            "prompt": "How do vector databases index embeddings?",
            "conversation_id": "3f1c...",
            "intensity_level": 50
        }
    """

    prompt: str = Field(
        ...,
        min_length=1,
        max_length=10000,
        description="The research question",
        examples=["How do vector databases index embeddings?"],
    )

    # None starts a new conversation
    conversation_id: str | None = Field(
        default=None,
        max_length=64,
        description="Existing conversation to continue. If omitted, a new conversation is created.",
    )

    intensity_level: int = Field(
        default=100,
        ge=0,
        le=100,
        description=(
            "Research depth. 0-33: simple answer from few sources, "
            "34-66: balanced, 67-100: exhaustive with more sources per query."
        ),
    )

    clarification_answers: list[str] | None = Field(
        default=None,
        description=(
            "Answers to the clarifying questions asked in the previous run, "
            "in question order. Blank answers are ignored."
        ),
    )

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "prompt": "How do vector databases index embeddings?",
                    "intensity_level": 50,
                },
                {
                    "prompt": "How do vector databases index embeddings?",
                    "conversation_id": "3f1c2a9e-5d0b-4a7e-9a51-2f7c8e0d6b44",
                    "intensity_level": 90,
                    "clarification_answers": ["HNSW and IVF", "Production systems"],
                },
            ]
        }
    )
