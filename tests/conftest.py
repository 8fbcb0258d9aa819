"""Shared fixtures and fakes for the test suite."""

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from generation.guard import LocalSessionGuard
from generation.orchestrator import GenerationOrchestrator
from generation.question_generator import QuestionGenerator
from parsing.chunker import DocumentChunker
from parsing.schemas import ExtractedText
from storage.backends import FileBackend
from storage.session_store import SessionStore


# ─── Fakes ─────────────────────────────────────────────────────────────────────

class FakeRedis:
    """In-memory stand-in for the redis.asyncio client (strings only)."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.expire_calls: List[str] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis is down")

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.data.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: Optional[int] = None) -> Optional[bool]:
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if key in self.data)

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        self.expire_calls.append(key)
        if key not in self.data:
            return False
        self.ttls[key] = seconds
        return True


def question_json(topic: str = "Insuffisance cardiaque", count: int = 5, all_false: bool = False) -> str:
    propositions = [
        {
            "statement": f"Proposition {i + 1} sur {topic}",
            "is_true": (not all_false) and i % 2 == 0,
            "explanation": f"Justification {i + 1}",
        }
        for i in range(count)
    ]
    return json.dumps({"topic": topic, "propositions": propositions, "rationale": "Vue d'ensemble"})


class ScriptedCompletion:
    """
    Fake completion function with call_gpt's signature.

    Plays back `script` in order (strings are returned, exceptions raised),
    then keeps answering with a valid question.
    """

    def __init__(self, script: Optional[List[Any]] = None, default: Optional[str] = None) -> None:
        self.script = list(script or [])
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    async def __call__(self, prompt: str, **kwargs: Any) -> str:
        self.calls.append({"prompt": prompt, **kwargs})
        # Yield so concurrent passes really interleave
        await asyncio.sleep(0)
        if self.script:
            item = self.script.pop(0)
        else:
            item = self.default if self.default is not None else question_json(f"Question {len(self.calls)}")
        if isinstance(item, BaseException):
            raise item
        return item


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ─── Sample documents ──────────────────────────────────────────────────────────

SECTION_BODY = (
    "Cette section décrit la physiologie normale et les mécanismes principaux.\n"
    "Les signes cliniques sont variés et dépendent du terrain du patient.\n"
    "Le diagnostic repose sur un faisceau d'arguments cliniques et biologiques.\n"
)


def headed_document(headings: int = 4, pages: int = 10) -> ExtractedText:
    """A document with `headings` numbered sections spread over `pages` pages."""
    page_texts = [[] for _ in range(pages)]
    per_section = max(1, pages // headings)
    for i in range(headings):
        first_page = min(i * per_section, pages - 1)
        page_texts[first_page].append(f"{i + 1}. Chapitre numéro {i + 1}\n{SECTION_BODY}")
        for extra in range(first_page + 1, min(first_page + per_section, pages)):
            page_texts[extra].append(SECTION_BODY)
    # Trailing pages with no section of their own continue the last section
    for page in range(headings * per_section, pages):
        page_texts[page].append(SECTION_BODY)
    return ExtractedText(
        text="\f".join("".join(parts) for parts in page_texts),
        page_count=pages,
    )


def plain_document(sentences: int = 300) -> str:
    """Long text with no heading-like line at all."""
    return " ".join(f"Phrase numéro {i} du cours sans aucun titre." for i in range(sentences))


# ─── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def file_backend(tmp_path: Path) -> FileBackend:
    return FileBackend(str(tmp_path / "data"))


@pytest.fixture
def store(file_backend: FileBackend) -> SessionStore:
    return SessionStore(file_backend)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def completion() -> ScriptedCompletion:
    return ScriptedCompletion()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


def make_orchestrator(
    store: SessionStore,
    completion: ScriptedCompletion,
    document: Optional[ExtractedText] = None,
    **kwargs: Any,
) -> GenerationOrchestrator:
    generator = QuestionGenerator(complete=completion, sleep=SleepRecorder())
    kwargs.setdefault("auto_continue", False)
    return GenerationOrchestrator(
        store=store,
        generator=generator,
        guard=LocalSessionGuard(),
        chunker=DocumentChunker(),
        extract=lambda _bytes: document or headed_document(),
        **kwargs,
    )


@pytest.fixture
def orchestrator(store: SessionStore, completion: ScriptedCompletion) -> GenerationOrchestrator:
    return make_orchestrator(store, completion)
