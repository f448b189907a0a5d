# =============================================================================
# Services Package — Business Logic
# =============================================================================
#   - chunker.py: Token-budget text chunking (character heuristic)
#   - embedder.py: Embedding generation (OpenAI-compatible, mock)
#   - llm.py: Multi-provider LLM abstraction (Anthropic, OpenAI-compatible)
#   - vector_index.py: In-memory cosine index with durable variant
#   - memory_store.py: Conversations, messages, and chunked vector memory
#   - search_gateway.py: Cached, deduplicated web search
#   - content_fetcher.py: Concurrent page download and text extraction
#   - streaming.py: Stream event constructors
# =============================================================================
