"""
Question Generation Engine (model client adapter)

Generates the raw JSON for one true/false question (5 propositions) from a
single document chunk using OpenAI GPT.

Retry policy (all of it lives here, upstream code stays deterministic):
  - at most `max_attempts` calls per chunk (default 3)
  - timeout / empty response / transport error → sleep backoff × attempt, retry
  - unparseable JSON → one immediate retry with a stricter, example-reinforced
    prompt; a second parse failure gives up
  - the last error is raised once the attempts are spent

Output: the parsed JSON object, still loosely structured; the normalizer
turns it into a GeneratedQuestion.
"""

import asyncio
import logging
import os
import re
from typing import Any, Awaitable, Callable, Optional, Sequence

import json_repair

from generation.errors import (
    ModelEmptyResponseError,
    ModelError,
    ModelInvalidJsonError,
    ModelTimeoutError,
    ModelUnavailableError,
)
from generation.gpt_client import GPT_TIMEOUT_SECONDS, call_gpt
from parsing.pdf_text import PAGE_SEPARATOR
from parsing.schemas import Chunk

log = logging.getLogger("generation.pipeline")

QUIZ_LANGUAGE = os.getenv("QUIZ_LANGUAGE", "French")
GPT_MAX_ATTEMPTS = int(os.getenv("GPT_MAX_ATTEMPTS", "3"))
GPT_RETRY_BACKOFF_SECONDS = float(os.getenv("GPT_RETRY_BACKOFF_SECONDS", "1.0"))
MAX_CONTEXT_CHARS = 3000
MAX_PREVIOUS_TOPICS = 10

TONE_ALIASES = {
    "concise": "concise",
    "concis": "concise",
    "court": "concise",
    "short": "concise",
    "detailed": "detailed",
    "détaillé": "detailed",
    "detaille": "detailed",
    "detail": "detailed",
    "long": "detailed",
}
TONE_STYLES = {
    "concise": "Concise and direct",
    "detailed": "Detailed and explanatory",
}

CompleteFn = Callable[..., Awaitable[str]]


# ─── Prompts ───────────────────────────────────────────────────────────────────

SYSTEM_PROMPT = (
    "You are an expert author of true/false multiple-choice questions for "
    "university students. Output only one valid JSON object."
)

QCM_PROMPT = """You are an expert author of true/false multiple-choice questions (QCM) for university students.
Write everything in {language}.

CONTEXT: {heading}
CONTENT (use ONLY information from this section; do NOT copy text verbatim):
---
{content}
---
{reuse_block}
Generate exactly ONE question with exactly 5 true/false propositions.

OUTPUT FORMAT — respond with ONLY a valid JSON object, no markdown, no explanation:
{{
  "topic": "<short title of the question>",
  "propositions": [
    {{"statement": "<proposition A>", "is_true": true, "explanation": "<detailed justification>"}},
    {{"statement": "<proposition B>", "is_true": false, "explanation": "<detailed justification>"}},
    {{"statement": "<proposition C>", "is_true": true, "explanation": "<detailed justification>"}},
    {{"statement": "<proposition D>", "is_true": false, "explanation": "<detailed justification>"}},
    {{"statement": "<proposition E>", "is_true": true, "explanation": "<detailed justification>"}}
  ],
  "rationale": "<overall justification covering the whole question>"
}}

RULES:
1. Exactly 5 propositions, at least one of them true
2. Complex, nuanced propositions: include pitfalls, exceptions and special cases
3. Cover varied subtopics of the content above
4. Clear, unambiguous statements with teaching-quality explanations
5. Style: {style}
6. Stay within this section ({heading})
7. Return ONLY the JSON object
"""

REUSE_BLOCK = """
WARNING: this content was already used for an earlier question{previous}.
Write a COMPLETELY DIFFERENT question: new angle, new propositions, new explanations.
"""

STRICT_SUFFIX = """
ERROR: your previous answer was not valid JSON.

STRICT RULES:
1. Reply with valid JSON ONLY
2. No text before or after the JSON
3. Double quotes around every string
4. No trailing commas
5. No comments

EXACT FORMAT EXAMPLE:
{"topic":"Example","propositions":[{"statement":"A","is_true":true,"explanation":"B"},{"statement":"C","is_true":false,"explanation":"D"},{"statement":"E","is_true":false,"explanation":"F"},{"statement":"G","is_true":true,"explanation":"H"},{"statement":"I","is_true":false,"explanation":"J"}],"rationale":"K"}
"""


def normalize_tone(tone: Optional[str]) -> str:
    """Map a user-supplied tone (English or French) to "concise" | "detailed"."""
    if not tone:
        return "concise"
    key = tone.strip().lower()
    if key not in TONE_ALIASES:
        raise ValueError(f"Unknown tone '{tone}'. Use 'concise' or 'detailed'.")
    return TONE_ALIASES[key]


def build_prompt(
    chunk: Chunk,
    tone: str = "concise",
    reuse: bool = False,
    previous_topics: Sequence[str] = (),
    language: str = QUIZ_LANGUAGE,
) -> str:
    content = chunk.content.replace(PAGE_SEPARATOR, "\n").strip()
    if len(content) > MAX_CONTEXT_CHARS:
        content = content[:MAX_CONTEXT_CHARS] + "..."

    reuse_block = ""
    if reuse:
        topics = [t for t in previous_topics if t][:MAX_PREVIOUS_TOPICS]
        previous = f" (previous topics: {'; '.join(topics)})" if topics else ""
        reuse_block = REUSE_BLOCK.format(previous=previous)

    return QCM_PROMPT.format(
        language=language,
        heading=chunk.heading,
        content=content,
        reuse_block=reuse_block,
        style=TONE_STYLES[normalize_tone(tone)],
    )


# ─── JSON extraction ───────────────────────────────────────────────────────────

def parse_json_object(raw: str) -> Any:
    """Extract + repair the JSON object in a model response."""
    raw = (raw or "").strip()
    # Strip markdown code fences if present
    raw = re.sub(r"^```(?:json)?\s*", "", raw, flags=re.MULTILINE)
    raw = re.sub(r"\s*```$", "", raw, flags=re.MULTILINE)
    # Find the JSON object boundaries
    start = raw.find("{")
    end = raw.rfind("}") + 1
    if start == -1 or end == 0 or end <= start:
        raise ModelInvalidJsonError(f"No JSON object in model response: {raw[:300]}")
    try:
        data = json_repair.loads(raw[start:end])
    except Exception as e:
        raise ModelInvalidJsonError(f"Unrepairable JSON: {e}") from e
    if not isinstance(data, (dict, list)) or not data:
        raise ModelInvalidJsonError(f"Model response is not a JSON object: {raw[:300]}")
    return data


# ─── Generator ─────────────────────────────────────────────────────────────────

class QuestionGenerator:
    """
    Drives the model for one chunk at a time with bounded retries.

    Args:
        complete:        async completion function with call_gpt's signature
        max_attempts:    total calls allowed per generate() (≤3 by default)
        backoff_seconds: linear backoff unit; waits backoff × attempt
        timeout:         per-call timeout passed to `complete`
        sleep:           injectable sleep (tests pass a no-op)
    """

    def __init__(
        self,
        complete: CompleteFn = call_gpt,
        max_attempts: int = GPT_MAX_ATTEMPTS,
        backoff_seconds: float = GPT_RETRY_BACKOFF_SECONDS,
        timeout: float = GPT_TIMEOUT_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        language: str = QUIZ_LANGUAGE,
    ):
        self.complete = complete
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.timeout = timeout
        self.sleep = sleep
        self.language = language

    async def generate(
        self,
        chunk: Chunk,
        tone: str = "concise",
        reuse: bool = False,
        previous_topics: Sequence[str] = (),
    ) -> Any:
        """
        Generate the raw question JSON for one chunk.

        Returns:
            Parsed JSON (usually a dict) from the first successful attempt

        Raises:
            ModelError: the last failure once every attempt is spent
        """
        prompt = build_prompt(chunk, tone, reuse, previous_topics, self.language)
        strict = False
        last_error: Optional[ModelError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                raw = await self.complete(
                    prompt + STRICT_SUFFIX if strict else prompt,
                    system=SYSTEM_PROMPT,
                    temperature=0.3 if strict else 0.7,
                    max_tokens=1800,
                    json_mode=True,
                    timeout=self.timeout,
                )
                return parse_json_object(raw)

            except ModelInvalidJsonError as e:
                last_error = e
                if strict:
                    log.warning(f"[GPT] {chunk.id}: strict retry still not JSON, giving up")
                    break
                log.warning(f"[GPT] {chunk.id}: invalid JSON on attempt {attempt}, retrying with strict prompt")
                strict = True

            except (ModelTimeoutError, ModelEmptyResponseError, ModelUnavailableError) as e:
                last_error = e
                if attempt < self.max_attempts:
                    delay = self.backoff_seconds * attempt
                    log.warning(f"[GPT] {chunk.id}: attempt {attempt} failed ({e}), retrying in {delay:.1f}s")
                    await self.sleep(delay)

        raise last_error or ModelUnavailableError("No attempt was made")
