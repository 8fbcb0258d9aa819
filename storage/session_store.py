"""
Session state store.

Authoritative records live under "session:<id>"; the registry, a newest-first
list of RegistryEntry summaries, lives under "sessions:list". The registry
is a projection that may lag behind: readers call reconcile() to recompute
status and counters from the session record and rewrite the entry when it
is missing or stale.
"""

import asyncio
import logging
from typing import List, Optional

from pydantic import ValidationError

from generation.errors import StorageError
from generation.schemas import RegistryEntry, Session, utcnow
from storage.backends import StorageBackend

log = logging.getLogger(__name__)

SESSIONS_LIST_KEY = "sessions:list"
NO_QUESTION_ERROR = "No question could be generated from this document"
MODEL_FAILURE_ERROR = "The question model kept failing; no question could be generated"


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def derive_status(session: Session) -> str:
    """Status implied by the record's own bookkeeping."""
    if session.status == "failed":
        return "failed"
    if len(session.questions) >= session.total:
        return "completed"
    if session.exhausted:
        return "completed" if session.questions else "failed"
    return "processing"


def apply_derived_state(session: Session) -> bool:
    """Bring available/status in line with the record; True if anything changed."""
    available = min(len(session.questions), session.total)
    status = derive_status(session)
    changed = available != session.available or status != session.status
    session.available = available
    session.status = status
    if status == "failed" and not session.error:
        session.error = MODEL_FAILURE_ERROR if session.model_failures else NO_QUESTION_ERROR
        changed = True
    return changed


def _same_summary(entry: RegistryEntry, session: Session) -> bool:
    return (
        entry.status == session.status
        and entry.available == session.available
        and entry.total == session.total
        and entry.user_id == session.user_id
    )


class SessionStore:
    """Reads and writes Session records and keeps the registry in sync."""

    def __init__(self, backend: StorageBackend):
        self.backend = backend
        self._registry_lock = asyncio.Lock()

    # ─── Session records ───────────────────────────────────────────────────────

    async def create(self, session: Session) -> None:
        await self.write(session)
        await self.upsert_entry(RegistryEntry.from_session(session))

    async def read(self, session_id: str) -> Optional[Session]:
        data = await self.backend.get_json(session_key(session_id))
        if data is None:
            return None
        try:
            return Session.model_validate(data)
        except ValidationError as e:
            raise StorageError(f"Session {session_id} record is corrupted: {e}") from e

    async def write(self, session: Session) -> None:
        session.updated_at = utcnow()
        await self.backend.set_json(session_key(session.id), session.model_dump(mode="json"))

    # ─── Registry ──────────────────────────────────────────────────────────────

    async def list_entries(self) -> List[RegistryEntry]:
        data = await self.backend.get_json(SESSIONS_LIST_KEY) or []
        entries = []
        for item in data:
            try:
                entries.append(RegistryEntry.model_validate(item))
            except ValidationError as e:
                log.warning(f"Skipping malformed registry entry: {e}")
        return entries

    async def upsert_entry(self, entry: RegistryEntry) -> None:
        async with self._registry_lock:
            entries = await self.list_entries()
            for i, existing in enumerate(entries):
                if existing.id == entry.id:
                    entries[i] = entry
                    break
            else:
                entries.insert(0, entry)
            await self.backend.set_json(
                SESSIONS_LIST_KEY, [e.model_dump(mode="json") for e in entries]
            )

    async def reconcile(self, session: Session, entry: Optional[RegistryEntry] = None) -> Session:
        """
        Recompute status/available from the record and self-heal both copies.

        The session record is rewritten only if its own counters were stale;
        the registry entry is rewritten if it is missing or disagrees.
        """
        if apply_derived_state(session):
            log.info(f"Session {session.id}: record status healed to {session.status}")
            await self.write(session)

        if entry is None:
            entry = next((e for e in await self.list_entries() if e.id == session.id), None)
        if entry is None or not _same_summary(entry, session):
            await self.upsert_entry(RegistryEntry.from_session(session))
        return session

    async def list_sessions(self) -> List[RegistryEntry]:
        """Registry entries newest first, with processing entries reconciled."""
        entries = await self.list_entries()
        result = []
        for entry in entries:
            if entry.status == "processing":
                session = await self.read(entry.id)
                if session is not None:
                    await self.reconcile(session, entry)
                    entry = RegistryEntry.from_session(session)
            result.append(entry)
        result.sort(key=lambda e: e.created_at, reverse=True)
        return result
