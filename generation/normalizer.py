"""
Question normalizer

Turns the loosely-structured JSON a model returns into a canonical
GeneratedQuestion:
- key synonyms and casing are tolerated (statement/text, isTrue/is_true/truth,
  explanation/justification, ...)
- strings are trimmed, truth values coerced to bool
- more than 5 propositions → truncated; 3 or 4 → padded with marked filler
- no true proposition → the first one is forced true with a correction notice

Raises InvalidPayloadShapeError when the topic is empty or fewer than
MIN_REAL_PROPOSITIONS usable propositions are present.
"""

import uuid
from typing import Any, Dict, List, Optional

from generation.errors import InvalidPayloadShapeError
from generation.schemas import PROPOSITIONS_PER_QUESTION, GeneratedQuestion, Proposition
from parsing.schemas import Chunk

MIN_REAL_PROPOSITIONS = 3

FILLER_STATEMENT = "Additional proposition (auto-generated)"
FILLER_EXPLANATION = (
    "Auto-generated filler: the model returned fewer than five propositions. "
    "This statement is false by construction."
)
MISSING_EXPLANATION = "No explanation provided."
CORRECTION_NOTICE = (
    "Automatic correction: no proposition was marked true, so this one was "
    "set to true. Check it against the course material."
)

TOPIC_KEYS = ("topic", "title", "titre", "subject", "question")
RATIONALE_KEYS = ("rationale", "justification", "summary", "explanation")
PROPOSITION_LIST_KEYS = ("propositions", "statements", "items", "options", "choices")
STATEMENT_KEYS = ("statement", "text", "proposition", "enonce", "label")
TRUTH_KEYS = ("istrue", "truth", "correct", "answer", "value", "vrai")
EXPLANATION_KEYS = ("explanation", "justification", "reason", "rationale")
WRAPPER_KEYS = ("questions", "qcm", "qcms", "question")

TRUE_WORDS = {"true", "vrai", "yes", "oui", "1", "v", "t", "y", "correct"}


# ─── Coercion helpers ──────────────────────────────────────────────────────────

def _norm_key(key: Any) -> str:
    return "".join(ch for ch in str(key).lower() if ch.isalnum())


def _pick(data: Dict[str, Any], keys) -> Any:
    """Return the value of the first key in `keys` present in data, ignoring case and _/-."""
    normalized = {_norm_key(k): v for k, v in data.items()}
    for key in keys:
        value = normalized.get(key)
        if value is not None:
            return value
    return None


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() in TRUE_WORDS
    return False


def _unwrap(raw: Any) -> Dict[str, Any]:
    """Accept a bare question object, a one-item list, or {"questions": [...]}."""
    if isinstance(raw, list):
        raw = next((item for item in raw if isinstance(item, dict)), None)
    if not isinstance(raw, dict):
        raise InvalidPayloadShapeError(f"Expected a JSON object, got {type(raw).__name__}")

    if _pick(raw, PROPOSITION_LIST_KEYS) is None:
        wrapped = _pick(raw, WRAPPER_KEYS)
        if isinstance(wrapped, list) and wrapped and isinstance(wrapped[0], dict):
            return wrapped[0]
        if isinstance(wrapped, dict):
            return wrapped
    return raw


def _parse_propositions(items: Any) -> List[Proposition]:
    if not isinstance(items, list):
        raise InvalidPayloadShapeError("Missing propositions list")

    propositions = []
    for item in items:
        if not isinstance(item, dict):
            continue
        statement = _text(_pick(item, STATEMENT_KEYS))
        if not statement:
            continue
        propositions.append(Proposition(
            statement=statement,
            is_true=coerce_bool(_pick(item, TRUTH_KEYS)),
            explanation=_text(_pick(item, EXPLANATION_KEYS)) or MISSING_EXPLANATION,
        ))
    return propositions


# ─── Public API ────────────────────────────────────────────────────────────────

def normalize_question(raw: Any, chunk: Optional[Chunk] = None) -> GeneratedQuestion:
    """
    Build a canonical GeneratedQuestion from parsed model output.

    Args:
        raw:   Parsed JSON (dict, list or wrapper object) from the model
        chunk: Source chunk, copied into chunk_id / chunk_heading / page_range

    Returns:
        GeneratedQuestion with exactly 5 propositions, at least one true

    Raises:
        InvalidPayloadShapeError: empty topic or too few usable propositions
    """
    data = _unwrap(raw)

    topic = _text(_pick(data, TOPIC_KEYS))
    if not topic:
        raise InvalidPayloadShapeError("Question topic is empty")

    propositions = _parse_propositions(_pick(data, PROPOSITION_LIST_KEYS))
    if len(propositions) < MIN_REAL_PROPOSITIONS:
        raise InvalidPayloadShapeError(
            f"Only {len(propositions)} usable propositions (need {MIN_REAL_PROPOSITIONS})"
        )

    propositions = propositions[:PROPOSITIONS_PER_QUESTION]
    while len(propositions) < PROPOSITIONS_PER_QUESTION:
        propositions.append(Proposition(
            statement=FILLER_STATEMENT,
            is_true=False,
            explanation=FILLER_EXPLANATION,
        ))

    if not any(p.is_true for p in propositions):
        propositions[0] = propositions[0].model_copy(
            update={"is_true": True, "explanation": CORRECTION_NOTICE}
        )

    return GeneratedQuestion(
        id=_text(data.get("id")) or uuid.uuid4().hex,
        topic=topic,
        rationale=_text(_pick(data, RATIONALE_KEYS)),
        propositions=propositions,
        chunk_id=chunk.id if chunk else None,
        chunk_heading=chunk.heading if chunk else None,
        page_range=chunk.page_range if chunk else None,
    )
