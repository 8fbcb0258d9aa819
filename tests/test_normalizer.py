"""Tests for the question normalizer."""

import pytest

from generation.errors import InvalidPayloadShapeError
from generation.normalizer import (
    CORRECTION_NOTICE,
    FILLER_STATEMENT,
    MISSING_EXPLANATION,
    coerce_bool,
    normalize_question,
)
from parsing.schemas import Chunk


def _props(count: int, truth: bool = False) -> list:
    return [
        {"statement": f"Statement {i}", "isTrue": truth, "explanation": f"Because {i}"}
        for i in range(count)
    ]


class TestPaddingAndCorrection:
    """Test the degrade-gracefully repairs."""

    def test_four_false_propositions_are_padded_and_corrected(self) -> None:
        question = normalize_question({"topic": "X", "propositions": _props(4)})
        assert len(question.propositions) == 5
        assert question.propositions[4].statement == FILLER_STATEMENT
        assert question.propositions[4].is_true is False
        assert question.propositions[0].is_true is True
        assert question.propositions[0].explanation == CORRECTION_NOTICE

    def test_three_propositions_are_enough(self) -> None:
        question = normalize_question({"topic": "X", "propositions": _props(3, truth=True)})
        assert len(question.propositions) == 5
        assert [p.statement for p in question.propositions[3:]] == [FILLER_STATEMENT] * 2

    def test_extra_propositions_are_truncated(self) -> None:
        question = normalize_question({"topic": "X", "propositions": _props(7, truth=True)})
        assert [p.statement for p in question.propositions] == [f"Statement {i}" for i in range(5)]

    def test_existing_true_proposition_is_untouched(self) -> None:
        props = _props(5)
        props[3]["isTrue"] = True
        question = normalize_question({"topic": "X", "propositions": props})
        assert [p.is_true for p in question.propositions] == [False, False, False, True, False]
        assert question.propositions[0].explanation == "Because 0"


class TestKeySynonyms:
    """Test tolerance to key names, casing and value types."""

    def test_synonyms_and_casing(self) -> None:
        raw = {
            "Title": "  Cardiologie  ",
            "Statements": [
                {"Text": "A", "truth": "vrai", "Justification": "ja"},
                {"text": "B", "correct": 0, "reason": "jb"},
                {"proposition": "C", "is_true": "false", "explanation": "jc"},
                {"statement": "D", "answer": "yes", "explanation": "jd"},
                {"statement": "E", "isTrue": True, "explanation": "je"},
            ],
            "Rationale": "global",
        }
        question = normalize_question(raw)
        assert question.topic == "Cardiologie"
        assert [p.statement for p in question.propositions] == ["A", "B", "C", "D", "E"]
        assert [p.is_true for p in question.propositions] == [True, False, False, True, True]
        assert question.propositions[0].explanation == "ja"
        assert question.rationale == "global"

    def test_wrapped_question_list(self) -> None:
        raw = {"questions": [{"topic": "Wrapped", "propositions": _props(5, truth=True)}]}
        assert normalize_question(raw).topic == "Wrapped"

    def test_bare_list(self) -> None:
        raw = [{"topic": "Listed", "propositions": _props(5, truth=True)}]
        assert normalize_question(raw).topic == "Listed"

    def test_empty_explanation_gets_placeholder(self) -> None:
        props = _props(5, truth=True)
        props[2]["explanation"] = "   "
        question = normalize_question({"topic": "X", "propositions": props})
        assert question.propositions[2].explanation == MISSING_EXPLANATION

    @pytest.mark.parametrize("value,expected", [
        (True, True), ("TRUE", True), ("Vrai", True), ("oui", True), (1, True),
        (False, False), ("faux", False), ("no", False), (0, False), (None, False),
    ])
    def test_coerce_bool(self, value, expected) -> None:
        assert coerce_bool(value) is expected


class TestIdentityAndMetadata:
    def test_supplied_id_is_kept(self) -> None:
        question = normalize_question({"id": "q-1", "topic": "X", "propositions": _props(5, True)})
        assert question.id == "q-1"

    def test_fresh_ids_are_unique(self) -> None:
        raw = {"topic": "X", "propositions": _props(5, True)}
        assert normalize_question(raw).id != normalize_question(raw).id

    def test_chunk_metadata_is_attached(self) -> None:
        chunk = Chunk(
            id="chunk_3", heading="3. Traitement", content="...",
            page_range="5-6", start_page=5, end_page=6,
        )
        question = normalize_question({"topic": "X", "propositions": _props(5, True)}, chunk)
        assert question.chunk_id == "chunk_3"
        assert question.chunk_heading == "3. Traitement"
        assert question.page_range == "5-6"


class TestRejection:
    """Test payloads that cannot become a question."""

    def test_empty_topic(self) -> None:
        with pytest.raises(InvalidPayloadShapeError):
            normalize_question({"topic": "  ", "propositions": _props(5, True)})

    def test_too_few_propositions(self) -> None:
        with pytest.raises(InvalidPayloadShapeError):
            normalize_question({"topic": "X", "propositions": _props(2, True)})

    def test_propositions_without_statements_do_not_count(self) -> None:
        props = _props(2, True) + [{"statement": "", "isTrue": True}, {"explanation": "x"}]
        with pytest.raises(InvalidPayloadShapeError):
            normalize_question({"topic": "X", "propositions": props})

    def test_missing_propositions(self) -> None:
        with pytest.raises(InvalidPayloadShapeError):
            normalize_question({"topic": "X"})

    def test_not_an_object(self) -> None:
        with pytest.raises(InvalidPayloadShapeError):
            normalize_question("just text")
