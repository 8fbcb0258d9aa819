"""
Knowledge-domain score tracking.

A mapping file (DATA_DIR/domain-mapping.json) assigns PDF filenames to
domains:

    {"domains": {"cardio": {"name": "Cardiologie", "color": "#e11d48",
                            "files": ["item-231.pdf", ...]}}}

Every finished quiz appends one timestamped score per domain of its file
under the "domains:scores" key, one writer at a time per service; stats
are aggregated on read.
"""

import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from generation.schemas import utcnow
from storage import DATA_DIR
from storage.backends import StorageBackend

log = logging.getLogger(__name__)

DOMAIN_MAPPING_FILE = "domain-mapping.json"
DOMAIN_SCORES_KEY = "domains:scores"


# ─── Schemas ───────────────────────────────────────────────────────────────────

class Domain(BaseModel):
    name: str
    color: str = "#64748b"
    files: List[str] = Field(default_factory=list)


class DomainMapping(BaseModel):
    domains: Dict[str, Domain] = Field(default_factory=dict)


class TrackScoreRequest(BaseModel):
    session_id: str
    filename: str
    score: float
    total_questions: int = Field(..., ge=0)
    answered_questions: int = Field(..., ge=0)
    average_score: float


class DomainScore(BaseModel):
    domain: str
    session_id: str
    filename: str
    score: float
    total_questions: int
    answered_questions: int
    average_score: float
    timestamp: datetime = Field(default_factory=utcnow)


class DomainStats(BaseModel):
    key: str
    name: str
    color: str
    average_score: float
    total_sessions: int
    last_session: Optional[datetime] = None


class DomainEvolution(BaseModel):
    scores: List[float]
    dates: List[datetime]
    average_score: float
    total_sessions: int


# ─── Mapping ───────────────────────────────────────────────────────────────────

def load_domain_mapping(data_dir: str = DATA_DIR) -> DomainMapping:
    """Read the mapping file; a missing or malformed file means no domains."""
    path = os.path.join(data_dir, DOMAIN_MAPPING_FILE)
    try:
        with open(path, "r", encoding="utf-8") as f:
            return DomainMapping.model_validate(json.load(f))
    except FileNotFoundError:
        return DomainMapping()
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        log.error(f"Error loading domain mapping {path}: {e}")
        return DomainMapping()


def domains_for_file(mapping: DomainMapping, filename: str) -> List[str]:
    return [key for key, domain in mapping.domains.items() if filename in domain.files]


# ─── Service ───────────────────────────────────────────────────────────────────

class DomainScoreService:
    def __init__(self, backend: StorageBackend, data_dir: str = DATA_DIR):
        self.backend = backend
        self.data_dir = data_dir
        self._lock = asyncio.Lock()

    async def _load_scores(self) -> List[DomainScore]:
        data = await self.backend.get_json(DOMAIN_SCORES_KEY) or {}
        return [DomainScore.model_validate(s) for s in data.get("scores", [])]

    async def track_score(self, request: TrackScoreRequest) -> List[str]:
        """Append one score per domain of the file; returns the domain keys."""
        mapping = load_domain_mapping(self.data_dir)
        domains = domains_for_file(mapping, request.filename)
        if not domains:
            return []

        async with self._lock:
            scores = await self._load_scores()
            now = utcnow()
            for key in domains:
                scores.append(DomainScore(domain=key, timestamp=now, **request.model_dump()))
            await self.backend.set_json(DOMAIN_SCORES_KEY, {
                "scores": [s.model_dump(mode="json") for s in scores],
                "last_updated": now.isoformat(),
            })
        log.info(f"Tracked score {request.average_score} for {request.filename} in {domains}")
        return domains

    async def evolution(self, domain_key: str) -> DomainEvolution:
        """Scores of one domain in chronological order."""
        return _evolution(await self._load_scores(), domain_key)

    async def all_stats(self) -> List[DomainStats]:
        """One summary per mapped domain, most practised first."""
        mapping = load_domain_mapping(self.data_dir)
        scores = await self._load_scores()
        stats = []
        for key, domain in mapping.domains.items():
            evo = _evolution(scores, key)
            stats.append(DomainStats(
                key=key,
                name=domain.name,
                color=domain.color,
                average_score=evo.average_score,
                total_sessions=evo.total_sessions,
                last_session=evo.dates[-1] if evo.dates else None,
            ))
        stats.sort(key=lambda s: s.total_sessions, reverse=True)
        return stats


def _evolution(all_scores: List[DomainScore], domain_key: str) -> DomainEvolution:
    scores = sorted(
        (s for s in all_scores if s.domain == domain_key),
        key=lambda s: s.timestamp,
    )
    values = [s.average_score for s in scores]
    return DomainEvolution(
        scores=values,
        dates=[s.timestamp for s in scores],
        average_score=sum(values) / len(values) if values else 0.0,
        total_sessions=len(scores),
    )
