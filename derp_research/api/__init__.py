# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - research.py: streaming research endpoint (SSE)
#   - conversations.py: conversation creation and message history
# Shared dependencies live in deps.py.
# =============================================================================
