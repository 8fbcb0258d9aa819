"""
Flashcards Router — /flashcards

  GET    /flashcards/decks                          — list decks
  POST   /flashcards/decks                          — create deck
  GET    /flashcards/decks/{deck_id}                — deck with cards
  PATCH  /flashcards/decks/{deck_id}                — rename deck
  DELETE /flashcards/decks/{deck_id}                — delete deck
  POST   /flashcards/decks/{deck_id}/cards          — add card
  DELETE /flashcards/decks/{deck_id}/cards/{id}     — remove card
  POST   /flashcards/decks/{deck_id}/cards/{id}/review — SM-2 review
  GET    /flashcards/due                            — due cards (one deck or all)
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from auth.security import get_optional_user_id
from generation.errors import StorageError
from services.flashcards import (
    DEFAULT_DUE_LIMIT,
    Deck,
    DeckMeta,
    DueCards,
    Flashcard,
    FlashcardNotFoundError,
    FlashcardService,
    ReviewResult,
)
from storage import get_store

router = APIRouter(prefix="/flashcards", tags=["flashcards"])


# ─── Schemas ───────────────────────────────────────────────────────────────────

class DeckNameRequest(BaseModel):
    name: str


class AddCardRequest(BaseModel):
    front: str
    back: str


class ReviewRequest(BaseModel):
    quality: int = Field(..., description="0 (blackout) .. 5 (perfect); clamped")


class DeckListResponse(BaseModel):
    decks: List[DeckMeta]


class DueResponse(BaseModel):
    decks: List[DueCards]


# ─── Dependencies ──────────────────────────────────────────────────────────────

_service: Optional[FlashcardService] = None


def get_flashcard_service() -> FlashcardService:
    """FastAPI dependency – process-wide service so its lock covers every request."""
    global _service
    if _service is None:
        _service = FlashcardService(get_store().backend)
    return _service


async def _call(coro):
    """Await a service call, mapping service errors to HTTP errors."""
    try:
        return await coro
    except FlashcardNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"Storage unavailable: {e}")


# ─── Decks ─────────────────────────────────────────────────────────────────────

@router.get("/decks", response_model=DeckListResponse)
async def list_decks(
    user_id: Optional[str] = Depends(get_optional_user_id),
    service: FlashcardService = Depends(get_flashcard_service),
):
    return DeckListResponse(decks=await _call(service.list_decks(user_id)))


@router.post("/decks", response_model=Deck, status_code=status.HTTP_201_CREATED)
async def create_deck(
    request: DeckNameRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    service: FlashcardService = Depends(get_flashcard_service),
):
    return await _call(service.create_deck(request.name, user_id))


@router.get("/decks/{deck_id}", response_model=Deck)
async def get_deck(
    deck_id: str,
    user_id: Optional[str] = Depends(get_optional_user_id),
    service: FlashcardService = Depends(get_flashcard_service),
):
    return await _call(service.get_deck(deck_id, user_id))


@router.patch("/decks/{deck_id}", response_model=Deck)
async def rename_deck(
    deck_id: str,
    request: DeckNameRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    service: FlashcardService = Depends(get_flashcard_service),
):
    return await _call(service.rename_deck(deck_id, request.name, user_id))


@router.delete("/decks/{deck_id}")
async def delete_deck(
    deck_id: str,
    user_id: Optional[str] = Depends(get_optional_user_id),
    service: FlashcardService = Depends(get_flashcard_service),
):
    await _call(service.delete_deck(deck_id, user_id))
    return {"ok": True}


# ─── Cards ─────────────────────────────────────────────────────────────────────

@router.post("/decks/{deck_id}/cards", response_model=Flashcard, status_code=status.HTTP_201_CREATED)
async def add_card(
    deck_id: str,
    request: AddCardRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    service: FlashcardService = Depends(get_flashcard_service),
):
    return await _call(service.add_card(deck_id, request.front, request.back, user_id))


@router.delete("/decks/{deck_id}/cards/{card_id}")
async def remove_card(
    deck_id: str,
    card_id: str,
    user_id: Optional[str] = Depends(get_optional_user_id),
    service: FlashcardService = Depends(get_flashcard_service),
):
    await _call(service.remove_card(deck_id, card_id, user_id))
    return {"ok": True}


@router.post("/decks/{deck_id}/cards/{card_id}/review", response_model=ReviewResult)
async def review_card(
    deck_id: str,
    card_id: str,
    request: ReviewRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    service: FlashcardService = Depends(get_flashcard_service),
):
    return await _call(service.review_card(deck_id, card_id, request.quality, user_id))


@router.get("/due", response_model=DueResponse)
async def due_cards(
    deck_id: Optional[str] = Query(None),
    limit: int = Query(DEFAULT_DUE_LIMIT),
    user_id: Optional[str] = Depends(get_optional_user_id),
    service: FlashcardService = Depends(get_flashcard_service),
):
    """Cards due now; `limit` is clamped to 1..100 per deck."""
    return DueResponse(decks=await _call(service.due_cards(deck_id, limit, user_id)))
