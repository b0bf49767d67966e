from fastapi import APIRouter, Depends

from quicknote_auth.core.config import PROJECT_NAME
from quicknote_auth.routers.auth_router import get_orchestrator
from quicknote_auth.services.auth_orchestrator import AuthOrchestrator

router = APIRouter()


@router.get("")
def health(orchestrator: AuthOrchestrator = Depends(get_orchestrator)):
    """Liveness plus the coarse auth state, no identifiers"""
    return {"status": "ok", "service": PROJECT_NAME, "auth_state": orchestrator.context.state.value}
