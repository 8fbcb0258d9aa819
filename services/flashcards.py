"""
Flashcard decks with SM-2 spaced repetition.

Storage layout (any StorageBackend):
  flashcards:decks:list   list of DeckMeta, newest first
  flashcards:deck:<id>    full Deck with its cards

Every read-modify-write of a deck or of the list runs under one lock per
service, so the router shares a single service per process.

Deleting a deck only removes its metadata entry; the deck record stays
behind, hidden from every listing.

SM-2 (quality 0..5):
  q >= 3  interval 1 → 6 → round(interval × ease); repetition += 1;
          ease += 0.1 − (5 − q)(0.08 + (5 − q)·0.02)
  q <  3  repetition = 0; interval = 1; ease −= 0.2; lapses += 1
  ease never drops below 1.3; due_at = now + interval days
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field

from generation.schemas import utcnow
from storage.backends import StorageBackend

DECKS_LIST_KEY = "flashcards:decks:list"
MIN_EASE = 1.3
START_EASE = 2.5
DEFAULT_DUE_LIMIT = 40
MAX_DUE_LIMIT = 100


def deck_key(deck_id: str) -> str:
    return f"flashcards:deck:{deck_id}"


class FlashcardNotFoundError(LookupError):
    pass


# ─── Schemas ───────────────────────────────────────────────────────────────────

class SrsState(BaseModel):
    repetition: int = 0
    interval_days: int = 0
    ease_factor: float = START_EASE
    due_at: datetime = Field(default_factory=utcnow)
    lapses: int = 0


class Flashcard(BaseModel):
    id: str
    front: str
    back: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    srs: SrsState = Field(default_factory=SrsState)


class Deck(BaseModel):
    id: str
    name: str
    user_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    cards: List[Flashcard] = Field(default_factory=list)


class DeckMeta(BaseModel):
    id: str
    name: str
    user_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    num_cards: int = 0

    @classmethod
    def from_deck(cls, deck: Deck) -> "DeckMeta":
        return cls(
            id=deck.id,
            name=deck.name,
            user_id=deck.user_id,
            created_at=deck.created_at,
            updated_at=deck.updated_at,
            num_cards=len(deck.cards),
        )


class ReviewResult(BaseModel):
    next_due_at: datetime
    repetition: int
    interval_days: int
    ease_factor: float


class DueCards(BaseModel):
    deck_id: str
    name: str
    due: List[Flashcard]


# ─── SM-2 ──────────────────────────────────────────────────────────────────────

def schedule_review(srs: SrsState, quality: int, now: Optional[datetime] = None) -> SrsState:
    """Return the SRS state after one review with the given quality (clamped to 0..5)."""
    now = now or utcnow()
    q = max(0, min(5, int(quality)))
    repetition, interval, ease, lapses = srs.repetition, srs.interval_days, srs.ease_factor, srs.lapses

    if q >= 3:
        if repetition == 0:
            interval = 1
        elif repetition == 1:
            interval = 6
        else:
            interval = round(interval * ease)
        repetition += 1
        ease = max(MIN_EASE, ease + (0.1 - (5 - q) * (0.08 + (5 - q) * 0.02)))
    else:
        repetition = 0
        interval = 1
        ease = max(MIN_EASE, ease - 0.2)
        lapses += 1

    return SrsState(
        repetition=repetition,
        interval_days=interval,
        ease_factor=ease,
        due_at=now + timedelta(days=interval),
        lapses=lapses,
    )


# ─── Service ───────────────────────────────────────────────────────────────────

class FlashcardService:
    def __init__(self, backend: StorageBackend):
        self.backend = backend
        self._lock = asyncio.Lock()

    async def list_decks(self, user_id: Optional[str] = None) -> List[DeckMeta]:
        data = await self.backend.get_json(DECKS_LIST_KEY) or []
        metas = [DeckMeta.model_validate(item) for item in data]
        return [m for m in metas if m.user_id is None or m.user_id == user_id]

    async def get_deck(self, deck_id: str, user_id: Optional[str] = None) -> Deck:
        data = await self.backend.get_json(deck_key(deck_id))
        if data is None:
            raise FlashcardNotFoundError(f"Deck {deck_id} not found")
        deck = Deck.model_validate(data)
        if deck.user_id is not None and deck.user_id != user_id:
            raise FlashcardNotFoundError(f"Deck {deck_id} not found")
        return deck

    async def create_deck(self, name: str, user_id: Optional[str] = None) -> Deck:
        name = (name or "").strip()
        if not name:
            raise ValueError("Name is required")
        deck = Deck(id=str(uuid.uuid4()), name=name, user_id=user_id)
        async with self._lock:
            await self._save(deck)
        return deck

    async def rename_deck(self, deck_id: str, name: str, user_id: Optional[str] = None) -> Deck:
        name = (name or "").strip()
        if not name:
            raise ValueError("Name is required")
        async with self._lock:
            deck = await self.get_deck(deck_id, user_id)
            deck.name = name
            deck.updated_at = utcnow()
            await self._save(deck)
        return deck

    async def delete_deck(self, deck_id: str, user_id: Optional[str] = None) -> None:
        async with self._lock:
            await self.get_deck(deck_id, user_id)
            metas = await self._all_metas()
            await self._write_metas([m for m in metas if m.id != deck_id])

    async def add_card(self, deck_id: str, front: str, back: str, user_id: Optional[str] = None) -> Flashcard:
        front, back = (front or "").strip(), (back or "").strip()
        if not front or not back:
            raise ValueError("front and back are required")
        card = Flashcard(id=str(uuid.uuid4()), front=front, back=back)
        async with self._lock:
            deck = await self.get_deck(deck_id, user_id)
            deck.cards.insert(0, card)
            deck.updated_at = card.created_at
            await self._save(deck)
        return card

    async def remove_card(self, deck_id: str, card_id: str, user_id: Optional[str] = None) -> None:
        async with self._lock:
            deck = await self.get_deck(deck_id, user_id)
            remaining = [c for c in deck.cards if c.id != card_id]
            if len(remaining) == len(deck.cards):
                raise FlashcardNotFoundError(f"Card {card_id} not found")
            deck.cards = remaining
            deck.updated_at = utcnow()
            await self._save(deck)

    async def review_card(
        self,
        deck_id: str,
        card_id: str,
        quality: int,
        user_id: Optional[str] = None,
    ) -> ReviewResult:
        async with self._lock:
            deck = await self.get_deck(deck_id, user_id)
            card = next((c for c in deck.cards if c.id == card_id), None)
            if card is None:
                raise FlashcardNotFoundError(f"Card {card_id} not found")

            now = utcnow()
            card.srs = schedule_review(card.srs, quality, now)
            card.updated_at = now
            # Reviews do not change the metadata entry
            await self.backend.set_json(deck_key(deck.id), deck.model_dump(mode="json"))
        return ReviewResult(
            next_due_at=card.srs.due_at,
            repetition=card.srs.repetition,
            interval_days=card.srs.interval_days,
            ease_factor=card.srs.ease_factor,
        )

    async def due_cards(
        self,
        deck_id: Optional[str] = None,
        limit: int = DEFAULT_DUE_LIMIT,
        user_id: Optional[str] = None,
    ) -> List[DueCards]:
        """Due cards for one deck, or for every listed deck that has any."""
        limit = max(1, min(MAX_DUE_LIMIT, int(limit)))
        now = utcnow()

        if deck_id:
            decks = [await self.get_deck(deck_id, user_id)]
        else:
            decks = []
            for meta in await self.list_decks(user_id):
                try:
                    decks.append(await self.get_deck(meta.id, user_id))
                except FlashcardNotFoundError:
                    continue

        result = []
        for deck in decks:
            due = [c for c in deck.cards if c.srs.due_at <= now][:limit]
            if due or deck_id:
                result.append(DueCards(deck_id=deck.id, name=deck.name, due=due))
        return result

    # ─── Persistence ───────────────────────────────────────────────────────────

    async def _all_metas(self) -> List[DeckMeta]:
        data = await self.backend.get_json(DECKS_LIST_KEY) or []
        return [DeckMeta.model_validate(item) for item in data]

    async def _write_metas(self, metas: List[DeckMeta]) -> None:
        await self.backend.set_json(DECKS_LIST_KEY, [m.model_dump(mode="json") for m in metas])

    async def _save(self, deck: Deck) -> None:
        """Write the deck and its metadata entry; callers hold the lock."""
        await self.backend.set_json(deck_key(deck.id), deck.model_dump(mode="json"))
        metas = await self._all_metas()
        meta = DeckMeta.from_deck(deck)
        for i, existing in enumerate(metas):
            if existing.id == deck.id:
                metas[i] = meta
                break
        else:
            metas.insert(0, meta)
        await self._write_metas(metas)
