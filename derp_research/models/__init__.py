# =============================================================================
# Models Package — Schemas
# =============================================================================
#   - research.py: Structured LLM outputs (plan, reflection, clarification)
#     and internal pipeline dataclasses
#   - events.py: Stream events emitted by the orchestrator
#   - requests.py / responses.py: API request and response bodies
# =============================================================================
