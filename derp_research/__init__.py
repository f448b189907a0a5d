# =============================================================================
# Derp Research
# =============================================================================
# An iterative research agent: clarify → plan → search → synthesise → reflect,
# looping until the answer is confident enough or the iteration budget runs
# out. Findings persist as vector memory retrievable across a conversation.
#
# Package structure:
#   derp_research/
#   ├── api/          → FastAPI routes (SSE research stream, conversations)
#   ├── agents/       → Pipeline stages + LangGraph orchestrator
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 schemas and internal dataclasses
#   ├── services/     → Chunking, embeddings, LLM providers, vector index,
#   │                    memory store, web search, content fetching
#   └── workers/      → Celery maintenance tasks (compaction, cache expiry)
# =============================================================================
