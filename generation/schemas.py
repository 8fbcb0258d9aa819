"""
Pydantic schemas for the quiz generation pipeline.

Layer 1 (stored):  Proposition → GeneratedQuestion → Session, RegistryEntry
Layer 2 (API):     StartResponse, ContinueRequest/Response, GetResponse, StatusResponse
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from parsing.schemas import Chunk

SessionStatus = Literal["processing", "completed", "failed"]
Tone = Literal["concise", "detailed"]

PROPOSITIONS_PER_QUESTION = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Layer 1: stored records ───────────────────────────────────────────────────

class Proposition(BaseModel):
    """One true/false statement of a question."""
    statement: str = Field(..., min_length=1)
    is_true: bool
    explanation: str = Field(..., min_length=1)


class GeneratedQuestion(BaseModel):
    """
    One quiz question: a topic and exactly five propositions.

    Created once by the normalizer, then only ever appended to a session.
    """
    id: str
    topic: str = Field(..., min_length=1)
    rationale: str = ""
    propositions: List[Proposition] = Field(
        ..., min_length=PROPOSITIONS_PER_QUESTION, max_length=PROPOSITIONS_PER_QUESTION
    )
    chunk_id: Optional[str] = None
    chunk_heading: Optional[str] = None
    page_range: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "id": "5f0c2c1e9b7a4f3d8e6a1b2c3d4e5f60",
                "topic": "Insuffisance cardiaque : diagnostic",
                "rationale": "Couvre les signes cliniques et le dosage du BNP.",
                "propositions": [
                    {"statement": "Le BNP est élevé", "is_true": True, "explanation": "..."},
                ],
                "chunk_id": "chunk_2",
                "chunk_heading": "2. Insuffisance cardiaque",
                "page_range": "3-4",
            }
        }


class Session(BaseModel):
    """
    Authoritative record of one document's generation run.

    chunk_order starts with `total` indices into chunks; used_chunks holds
    the slots already consumed, in order. The next slot to work on is always
    chunk_order[len(used_chunks)]. When slots were abandoned, the order may
    grow with reuse slots until it reaches slot_budget.
    """
    id: str
    filename: str
    tone: Tone = "concise"
    total: int = Field(..., ge=1)
    available: int = Field(0, ge=0)
    status: SessionStatus = "processing"
    chunks: List[Chunk] = Field(default_factory=list)
    chunk_order: List[int] = Field(default_factory=list)
    used_chunks: List[int] = Field(default_factory=list)
    slot_budget: int = Field(0, ge=0, description="Upper bound on len(chunk_order)")
    model_failures: int = Field(0, ge=0, description="Slots abandoned because the model kept failing")
    questions: List[GeneratedQuestion] = Field(default_factory=list)
    user_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def next_slot(self) -> Optional[int]:
        """Position in chunk_order of the next unconsumed slot, or None."""
        if len(self.used_chunks) >= len(self.chunk_order):
            return None
        return len(self.used_chunks)

    @property
    def slot_limit(self) -> int:
        return max(self.slot_budget, len(self.chunk_order))

    @property
    def can_extend(self) -> bool:
        """True if reuse slots may still be appended to chunk_order."""
        return len(self.questions) < self.total and len(self.chunk_order) < self.slot_limit

    @property
    def exhausted(self) -> bool:
        """Every slot consumed and no reuse slot left to add."""
        return self.next_slot is None and not self.can_extend


class RegistryEntry(BaseModel):
    """Summary projection of a Session kept in the shared sessions list."""
    id: str
    filename: str
    tone: Tone = "concise"
    status: SessionStatus = "processing"
    total: int = 0
    available: int = 0
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_session(cls, session: Session) -> "RegistryEntry":
        return cls(
            id=session.id,
            filename=session.filename,
            tone=session.tone,
            status=session.status,
            total=session.total,
            available=session.available,
            user_id=session.user_id,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )


# ─── Layer 2: API models ───────────────────────────────────────────────────────

class StartResponse(BaseModel):
    session_id: str
    question: Optional[GeneratedQuestion] = None
    available: int
    total: int
    status: SessionStatus


class ContinueRequest(BaseModel):
    session_id: str = Field(..., min_length=1)


class ContinueResponse(BaseModel):
    status: SessionStatus
    generated: int = Field(..., description="Questions added by this call")
    available: int
    total: int


class GetResponse(BaseModel):
    question: Optional[GeneratedQuestion] = None
    available: int
    total: int
    status: SessionStatus


class StatusResponse(BaseModel):
    id: str
    filename: str
    tone: Tone
    status: SessionStatus
    available: int
    total: int
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
