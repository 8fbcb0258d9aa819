"""
Domains Router — /domains
Per-domain score tracking and progress stats.
"""

import logging
from typing import List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from generation.errors import StorageError
from services.domains import DomainEvolution, DomainScoreService, DomainStats, TrackScoreRequest
from storage import DATA_DIR, get_store

router = APIRouter(prefix="/domains", tags=["domains"])

log = logging.getLogger(__name__)


class TrackScoreResponse(BaseModel):
    ok: bool = True
    domains: List[str]


class DomainStatsResponse(BaseModel):
    stats: List[DomainStats]


_service: Optional[DomainScoreService] = None


def get_domain_service() -> DomainScoreService:
    """FastAPI dependency – process-wide service so its lock covers every request."""
    global _service
    if _service is None:
        _service = DomainScoreService(get_store().backend, DATA_DIR)
    return _service


@router.post("/track-score", response_model=TrackScoreResponse)
async def track_score(
    request: TrackScoreRequest,
    service: DomainScoreService = Depends(get_domain_service),
):
    """Record a finished quiz score for every domain its file belongs to."""
    try:
        domains = await service.track_score(request)
    except StorageError as e:
        log.error(f"[DOMAINS] {e}")
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {e}")
    return TrackScoreResponse(domains=domains)


@router.get("/stats", response_model=Union[DomainEvolution, DomainStatsResponse])
async def domain_stats(
    domain: Optional[str] = Query(None, description="Domain key for its evolution"),
    service: DomainScoreService = Depends(get_domain_service),
):
    try:
        if domain:
            return await service.evolution(domain)
        return DomainStatsResponse(stats=await service.all_stats())
    except StorageError as e:
        log.error(f"[DOMAINS] {e}")
        raise HTTPException(status_code=503, detail=f"Storage unavailable: {e}")
