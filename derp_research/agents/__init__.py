# =============================================================================
# Agents Package — Research Pipeline
# =============================================================================
#   - base.py: Stage protocols (clarify, plan, search, synthesise, reflect)
#   - clarification.py, planner.py, search.py, synthesis.py, reflection.py:
#     LLM-backed (or gateway-backed) stage implementations
#   - mock.py: Deterministic stages for offline runs and tests
#   - orchestrator.py: LangGraph state machine driving the loop
# =============================================================================
