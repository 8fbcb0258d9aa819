"""
Generation orchestrator: the per-session state machine.

    processing ──► completed   `total` questions available, or the slot
                               budget spent with at least one question
    processing ──► failed      unrecoverable error (record corrupted or
                               missing, storage failure) or the slot budget
                               spent without a single question

Operations:
  start     extract + chunk the document, create the session, generate the
            first questions synchronously, schedule a background continue
  continue  under the per-session guard, consume slots of chunk_order until
            the time budget or the question cap is reached; an order used
            up short of `total` grows with reuse slots up to slot_budget
  get       return question #index; if it is not generated yet, schedule a
            continue as a side effect so polling drives progress
  status    summary recomputed from the authoritative record

Every mutation is read-latest → mutate → write-whole-record. Model and
payload failures only abandon the current slot and are made up for by reuse
slots; a session fails on them only once its whole slot budget is spent.
"""

import asyncio
import logging
import os
import random
import time
import uuid
from typing import Callable, List, Optional, Sequence, Set

from generation.errors import (
    GenerationBusyError,
    InvalidPayloadShapeError,
    ModelError,
    SessionNotFoundError,
    StorageError,
)
from generation.guard import SessionGuard, create_guard
from generation.normalizer import normalize_question
from generation.question_generator import QuestionGenerator, normalize_tone
from generation.schemas import (
    ContinueResponse,
    GeneratedQuestion,
    GetResponse,
    RegistryEntry,
    Session,
    StartResponse,
    StatusResponse,
)
from parsing.chunker import MIN_CHUNK_CHARS, DocumentChunker
from parsing.pdf_text import extract_pdf_text
from parsing.schemas import Chunk, ExtractedText
from storage import get_store
from storage.session_store import SessionStore, apply_derived_state

log = logging.getLogger("generation.pipeline")

CONTINUE_TIME_BUDGET_SECONDS = float(os.getenv("CONTINUE_TIME_BUDGET_SECONDS", "45"))
CONTINUE_MAX_QUESTIONS = int(os.getenv("CONTINUE_MAX_QUESTIONS", "3"))
INITIAL_QUESTIONS = int(os.getenv("INITIAL_QUESTIONS", "2"))
INITIAL_MAX_SLOTS = 4
# chunk_order may grow to total * SLOT_BUDGET_FACTOR slots when slots are abandoned
SLOT_BUDGET_FACTOR = int(os.getenv("SLOT_BUDGET_FACTOR", "2"))
NORMALIZE_ATTEMPTS = 2


def build_chunk_order(chunk_count: int, total: int, rng: Optional[random.Random] = None) -> List[int]:
    """
    Consumption order of length `total`: shuffled passes over all chunk indices.

    Every chunk is used once before any chunk is reused.
    """
    if chunk_count < 1:
        raise ValueError("chunk_count must be at least 1")
    rng = rng or random.Random()
    order: List[int] = []
    while len(order) < total:
        one_pass = list(range(chunk_count))
        rng.shuffle(one_pass)
        order.extend(one_pass)
    return order[:total]


class GenerationOrchestrator:
    """
    Drives sessions from start to completion.

    Args:
        store:         SessionStore for records and the registry
        generator:     QuestionGenerator (model adapter)
        guard:         per-session exclusivity guard
        chunker:       DocumentChunker used by start
        time_budget:   wall-clock seconds per continue call
        max_questions: questions added per continue call
        slot_budget_factor: chunk_order may grow to total * this many slots
        auto_continue: schedule background continues (tests turn this off)
    """

    def __init__(
        self,
        store: SessionStore,
        generator: Optional[QuestionGenerator] = None,
        guard: Optional[SessionGuard] = None,
        chunker: Optional[DocumentChunker] = None,
        time_budget: float = CONTINUE_TIME_BUDGET_SECONDS,
        max_questions: int = CONTINUE_MAX_QUESTIONS,
        initial_questions: int = INITIAL_QUESTIONS,
        slot_budget_factor: int = SLOT_BUDGET_FACTOR,
        min_chunk_chars: int = MIN_CHUNK_CHARS,
        auto_continue: bool = True,
        extract: Callable[[bytes], ExtractedText] = extract_pdf_text,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.generator = generator or QuestionGenerator()
        self.guard = guard or create_guard()
        self.chunker = chunker or DocumentChunker()
        self.time_budget = time_budget
        self.max_questions = max_questions
        self.initial_questions = initial_questions
        self.slot_budget_factor = max(1, slot_budget_factor)
        self.min_chunk_chars = min_chunk_chars
        self.auto_continue = auto_continue
        self.extract = extract
        self.clock = clock
        self.rng = rng or random.Random()
        self._tasks: Set[asyncio.Task] = set()

    # ─── start ─────────────────────────────────────────────────────────────────

    async def start(
        self,
        pdf_bytes: bytes,
        filename: str,
        total: int,
        tone: str = "concise",
        user_id: Optional[str] = None,
    ) -> StartResponse:
        """
        Extract the PDF and start a session.

        Raises:
            DocumentUnreadableError: no text could be extracted (no session created)
            EmptyDocumentError:      no usable chunk (no session created)
        """
        extracted = await asyncio.to_thread(self.extract, pdf_bytes)
        return await self.start_from_text(extracted, filename, total, tone, user_id)

    async def start_from_text(
        self,
        document: ExtractedText,
        filename: str,
        total: int,
        tone: str = "concise",
        user_id: Optional[str] = None,
    ) -> StartResponse:
        if total < 1:
            raise ValueError("total must be at least 1")
        tone = normalize_tone(tone)
        chunks = self.chunker.chunk(document.text, document.page_count)

        session = Session(
            id=uuid.uuid4().hex,
            filename=filename,
            tone=tone,
            total=total,
            chunks=chunks,
            chunk_order=build_chunk_order(len(chunks), total, self.rng),
            slot_budget=total * self.slot_budget_factor,
            user_id=user_id,
        )
        await self.store.create(session)
        log.info(
            f"[START] session {session.id}: '{filename}', {len(chunks)} chunks, "
            f"{total} questions, tone={tone}"
        )

        async with self.guard.hold(session.id):
            await self._run_pass(
                session.id,
                max_questions=self.initial_questions,
                max_slots=INITIAL_MAX_SLOTS,
            )

        session = await self._read(session.id)
        if session.status == "processing":
            self.schedule_continue(session.id)

        return StartResponse(
            session_id=session.id,
            question=session.questions[0] if session.questions else None,
            available=session.available,
            total=session.total,
            status=session.status,
        )

    # ─── continue ──────────────────────────────────────────────────────────────

    async def continue_session(self, session_id: str, user_id: Optional[str] = None) -> ContinueResponse:
        """
        Advance a session by up to max_questions within time_budget seconds.

        A finished session is a no-op. Raises GenerationBusyError when another
        pass already holds the session.
        """
        return await self._continue(await self._load(session_id, user_id))

    async def _continue(self, session: Session) -> ContinueResponse:
        session_id = session.id
        if session.status != "processing" or session.exhausted:
            session = await self.store.reconcile(session)
            return _continue_response(session, generated=0)

        async with self.guard.hold(session_id):
            generated = await self._run_pass(
                session_id,
                max_questions=self.max_questions,
                max_slots=session.slot_limit,
            )

        session = await self._read(session_id)
        log.info(
            f"[CONTINUE] session {session_id}: +{generated}, "
            f"{session.available}/{session.total} ({session.status})"
        )
        return _continue_response(session, generated)

    # ─── get / status / list ───────────────────────────────────────────────────

    async def get_question(self, session_id: str, index: int, user_id: Optional[str] = None) -> GetResponse:
        """
        Question #index (0-based), or question=None with the current counters.

        A missing question on a processing session schedules a background
        continue unless one is already running.
        """
        if index < 0:
            raise ValueError("index must be >= 0")
        session = await self.store.reconcile(await self._load(session_id, user_id))

        question: Optional[GeneratedQuestion] = None
        if index < len(session.questions):
            question = session.questions[index]
        elif (
            session.status == "processing"
            and index < session.total
            and not await self.guard.is_held(session_id)
        ):
            self.schedule_continue(session_id)

        return GetResponse(
            question=question,
            available=session.available,
            total=session.total,
            status=session.status,
        )

    async def status(self, session_id: str, user_id: Optional[str] = None) -> StatusResponse:
        session = await self.store.reconcile(await self._load(session_id, user_id))
        return StatusResponse(
            id=session.id,
            filename=session.filename,
            tone=session.tone,
            status=session.status,
            available=session.available,
            total=session.total,
            error=session.error,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )

    async def list_sessions(self, user_id: Optional[str] = None) -> List[RegistryEntry]:
        entries = await self.store.list_sessions()
        return [e for e in entries if e.user_id is None or e.user_id == user_id]

    # ─── Background tasks ──────────────────────────────────────────────────────

    def schedule_continue(self, session_id: str) -> Optional[asyncio.Task]:
        """Fire-and-forget continue; errors are logged by the task itself."""
        if not self.auto_continue:
            return None
        task = asyncio.create_task(self._background_continue(session_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _background_continue(self, session_id: str) -> None:
        try:
            await self._continue(await self._read(session_id))
        except GenerationBusyError:
            log.info(f"[CONTINUE] session {session_id}: already running, background pass skipped")
        except Exception as e:
            log.error(f"[CONTINUE] session {session_id}: background pass failed: {e}")

    async def wait_idle(self) -> None:
        """Wait until every scheduled background continue has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ─── Core loop ─────────────────────────────────────────────────────────────

    async def _run_pass(self, session_id: str, max_questions: int, max_slots: int) -> int:
        """
        Consume slots until a bound is hit, then settle status and registry.

        Unexpected errors mark the session failed. Storage errors are
        re-raised after that attempt since the record may be unreachable.
        """
        try:
            generated = await self._advance(session_id, max_questions, max_slots)
            session = await self._read(session_id)
            await self.store.reconcile(session)
            return generated
        except SessionNotFoundError:
            raise
        except Exception as e:
            log.error(f"[FAILED] session {session_id}: {type(e).__name__}: {e}")
            await self._mark_failed(session_id, str(e) or type(e).__name__)
            if isinstance(e, StorageError):
                raise
            return 0

    async def _advance(self, session_id: str, max_questions: int, max_slots: int) -> int:
        deadline = self.clock() + self.time_budget
        generated = 0
        attempted = 0

        while generated < max_questions and attempted < max_slots and self.clock() < deadline:
            session = await self._read(session_id)
            if session.status != "processing":
                break
            slot = session.next_slot
            if slot is None:
                if not session.can_extend:
                    break
                await self._extend_order(session)
                continue

            chunk_index = session.chunk_order[slot]
            if not 0 <= chunk_index < len(session.chunks):
                raise StorageError(f"Session {session_id}: chunk index {chunk_index} out of range")
            chunk = session.chunks[chunk_index]
            attempted += 1
            await self.guard.renew(session_id)

            question = None
            model_failed = False
            if len(chunk.content.strip()) < self.min_chunk_chars:
                log.info(f"[CHUNK {chunk_index}] too short, skipped")
            else:
                reuse = chunk_index in session.used_chunks
                previous = [q.topic for q in session.questions if q.chunk_id == chunk.id]
                try:
                    question = await self._generate_for_chunk(chunk, session.tone, reuse, previous)
                except ModelError as e:
                    log.warning(f"[CHUNK {chunk.id}] model failed after retries, chunk abandoned: {e}")
                    model_failed = True

            latest = await self._read(session_id)
            if latest.next_slot != slot:
                # Another writer consumed this slot while we were generating
                log.warning(f"[CHUNK {chunk_index}] slot {slot} already consumed, result dropped")
                continue
            latest.used_chunks.append(chunk_index)
            if question is not None:
                latest.questions.append(question)
                generated += 1
            elif model_failed:
                latest.model_failures += 1
            apply_derived_state(latest)
            await self.store.write(latest)

        return generated

    async def _extend_order(self, session: Session) -> None:
        """Append reuse slots for the questions still missing, within slot_budget."""
        missing = session.total - len(session.questions)
        room = session.slot_limit - len(session.chunk_order)
        extra = build_chunk_order(len(session.chunks), min(missing, room), self.rng)
        session.chunk_order.extend(extra)
        await self.store.write(session)
        log.info(
            f"[REUSE] session {session.id}: order used up at {len(session.questions)}/{session.total}, "
            f"{len(extra)} reuse slots added ({len(session.chunk_order)}/{session.slot_limit})"
        )

    async def _generate_for_chunk(
        self,
        chunk: Chunk,
        tone: str,
        reuse: bool,
        previous_topics: Sequence[str],
    ) -> Optional[GeneratedQuestion]:
        """
        One question for a chunk, or None if no valid shape came back.

        Raises ModelError when the model itself failed after its retries.
        """
        for attempt in range(1, NORMALIZE_ATTEMPTS + 1):
            try:
                raw = await self.generator.generate(chunk, tone, reuse, previous_topics)
                question = normalize_question(raw, chunk)
                log.info(f"[CHUNK {chunk.id}] question '{question.topic}' generated")
                return question
            except InvalidPayloadShapeError as e:
                log.warning(f"[CHUNK {chunk.id}] invalid question shape (attempt {attempt}): {e}")
        log.warning(f"[CHUNK {chunk.id}] no valid question after {NORMALIZE_ATTEMPTS} attempts, chunk abandoned")
        return None

    # ─── Helpers ───────────────────────────────────────────────────────────────

    async def _read(self, session_id: str) -> Session:
        session = await self.store.read(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _load(self, session_id: str, user_id: Optional[str]) -> Session:
        """Read a session, hiding sessions that belong to another user."""
        session = await self._read(session_id)
        if session.user_id is not None and session.user_id != user_id:
            raise SessionNotFoundError(session_id)
        return session

    async def _mark_failed(self, session_id: str, message: str) -> None:
        try:
            session = await self.store.read(session_id)
            if session is None:
                return
            session.status = "failed"
            session.error = message
            await self.store.write(session)
            await self.store.upsert_entry(RegistryEntry.from_session(session))
        except StorageError as e:
            log.error(f"[FAILED] session {session_id}: could not persist failure: {e}")


def _continue_response(session: Session, generated: int) -> ContinueResponse:
    return ContinueResponse(
        status=session.status,
        generated=generated,
        available=session.available,
        total=session.total,
    )


# ─── Dependency ────────────────────────────────────────────────────────────────

_orchestrator: Optional[GenerationOrchestrator] = None


def get_orchestrator() -> GenerationOrchestrator:
    """FastAPI dependency – process-wide orchestrator (one guard per process)."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = GenerationOrchestrator(store=get_store())
    return _orchestrator
