"""FastAPI API endpoints under /api.

Endpoint groups: settings (health, config, connection check), catalog (story
types, generators, output types, children, characters) and sessions. Every
session action lives under /api/sessions/{session_id}/ and returns a step
result: {ok, notice, view, messages}.
"""

from fastapi import APIRouter

from .catalog import router as catalog_router
from .sessions import router as sessions_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(catalog_router)
router.include_router(sessions_router)
