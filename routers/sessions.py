"""
Sessions Router — /sessions
Registry listing; entries still processing are reconciled before they are returned.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from auth.security import get_optional_user_id
from generation.errors import StorageError
from generation.orchestrator import GenerationOrchestrator, get_orchestrator
from generation.schemas import RegistryEntry

router = APIRouter(prefix="/sessions", tags=["sessions"])

log = logging.getLogger(__name__)


class SessionListResponse(BaseModel):
    sessions: List[RegistryEntry]


@router.get("", response_model=SessionListResponse)
async def list_sessions(
    user_id: Optional[str] = Depends(get_optional_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    try:
        return SessionListResponse(sessions=await orchestrator.list_sessions(user_id))
    except StorageError as e:
        log.error(f"[SESSIONS] {e}")
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {e}")
