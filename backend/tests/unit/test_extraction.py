"""
Unit Tests: StructuredExtractor, item schemas, chunk content
═════════════════════════════════════════════════════════════
The model client is an AsyncMock; every test controls the raw text the
"model" returns and asserts on batching, validation and ordering.
"""

from __future__ import annotations

import json

import pytest

from tests.conftest import knowledge_points_json, make_pages, questions_json
from tutor_ingest.core.errors import LLMResponseError
from tutor_ingest.processing.content import build_chunk_content
from tutor_ingest.processing.extraction import (
    StructuredExtractor,
    deduplicate_by_title,
    parse_items,
    strip_code_fence,
)
from tutor_ingest.schemas.items import (
    ContentCategory,
    ItemType,
    KnowledgePoint,
    Question,
    item_type_of,
)


def _kp(title: str) -> KnowledgePoint:
    return KnowledgePoint(title=title, definition=f"about {title}")


# ─────────────────────────────────────────────────────────────────────────────
# Batching
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestExtractionBatching:

    @pytest.mark.parametrize("page_count", [1, 7, 10])
    async def test_single_call_when_pages_fit_one_batch(self, model_client, page_count):
        model_client.generate_json.return_value = knowledge_points_json(["Heap"])
        extractor = StructuredExtractor(model_client, page_batch_size=10)

        items = await extractor.extract(make_pages(page_count), ContentCategory.LECTURE)

        assert model_client.generate_json.await_count == 1
        assert [i.title for i in items] == ["Heap"]

    async def test_batches_in_page_order_and_concatenates(self, model_client):
        model_client.generate_json.side_effect = [
            knowledge_points_json(["A1", "A2"]),
            knowledge_points_json(["B1"]),
            knowledge_points_json(["C1"]),
        ]
        extractor = StructuredExtractor(model_client, page_batch_size=10)

        items = await extractor.extract(make_pages(25), ContentCategory.LECTURE)

        assert model_client.generate_json.await_count == 3
        prompts = [c.args[0] for c in model_client.generate_json.await_args_list]
        assert "[Page 1]" in prompts[0] and "[Page 10]" in prompts[0] and "[Page 11]" not in prompts[0]
        assert "[Page 11]" in prompts[1] and "[Page 20]" in prompts[1]
        assert "[Page 21]" in prompts[2] and "[Page 25]" in prompts[2]
        assert [i.title for i in items] == ["A1", "A2", "B1", "C1"]

    async def test_reports_batch_progress(self, model_client):
        model_client.generate_json.return_value = "[]"
        extractor = StructuredExtractor(model_client, page_batch_size=10)
        calls = []

        await extractor.extract(
            make_pages(12), ContentCategory.LECTURE,
            on_batch_progress=lambda done, total: calls.append((done, total)),
        )

        assert calls == [(1, 2), (2, 2)]

    async def test_no_pages_no_calls(self, model_client):
        extractor = StructuredExtractor(model_client)
        assert await extractor.extract([], ContentCategory.EXAM) == []
        model_client.generate_json.assert_not_awaited()

    async def test_provider_error_propagates(self, model_client):
        model_client.generate_json.side_effect = RuntimeError("upstream exploded")
        extractor = StructuredExtractor(model_client)
        with pytest.raises(RuntimeError):
            await extractor.extract(make_pages(2), ContentCategory.LECTURE)

    def test_invalid_batch_size(self, model_client):
        with pytest.raises(ValueError):
            StructuredExtractor(model_client, page_batch_size=0)


# ─────────────────────────────────────────────────────────────────────────────
# Questions
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestQuestionExtraction:

    async def test_order_num_is_sequential_across_batches(self, model_client):
        model_client.generate_json.side_effect = [
            questions_json(["q one", "q two"]),
            questions_json(["q three"]),
        ]
        extractor = StructuredExtractor(model_client, page_batch_size=2)

        items = await extractor.extract(make_pages(3), ContentCategory.EXAM)

        assert [q.order_num for q in items] == [1, 2, 3]
        assert [q.content for q in items] == ["q one", "q two", "q three"]

    async def test_questions_are_not_deduplicated(self, model_client):
        model_client.generate_json.return_value = questions_json(["same", "same"])
        extractor = StructuredExtractor(model_client)

        items = await extractor.extract(make_pages(1), ContentCategory.ASSIGNMENT)
        assert len(items) == 2

    @pytest.mark.parametrize("has_answers, expected", [
        (True,  "extract from the document"),
        (False, "Omit this field"),
    ])
    async def test_answer_instruction_toggles(self, model_client, has_answers, expected):
        extractor = StructuredExtractor(model_client)
        await extractor.extract(make_pages(1), ContentCategory.EXAM, has_answers=has_answers)
        assert expected in model_client.generate_json.await_args.args[0]

    def test_model_vocabulary_is_accepted(self):
        q = Question.model_validate({
            "questionNumber":  2,
            "content":         "Prove it",
            "score":           7.5,
            "referenceAnswer": "By induction",
            "sourcePage":      3,
            "type":            "proof",
            "options":         ["a", "b"],
        })
        assert q.question_number == "2"
        assert q.points == 7.5
        assert q.question_type == "proof"
        assert q.to_wire()["referenceAnswer"] == "By induction"
        assert q.to_wire()["sourcePage"] == 3


# ─────────────────────────────────────────────────────────────────────────────
# Response parsing
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestParseItems:

    def test_invalid_entries_dropped_individually(self):
        raw = json.dumps([
            {"title": "Good", "definition": "kept"},
            {"title": "", "definition": "empty title"},
            {"definition": "no title"},
            "not an object",
            {"title": "Also good", "definition": "kept", "keyFormulas": ["a+b"]},
        ])
        items = parse_items(raw, ContentCategory.LECTURE)
        assert [i.title for i in items] == ["Good", "Also good"]
        assert items[1].formulas == ["a+b"]

    def test_non_array_root_yields_empty(self):
        assert parse_items('{"title": "x", "definition": "y"}', ContentCategory.LECTURE) == []

    def test_invalid_json_raises(self):
        with pytest.raises(LLMResponseError):
            parse_items("Sure! Here are the points:", ContentCategory.LECTURE)

    def test_code_fence_stripped(self):
        fenced = "```json\n" + knowledge_points_json(["Tree"]) + "\n```"
        assert strip_code_fence(fenced).startswith("[")
        assert [i.title for i in parse_items(fenced, ContentCategory.LECTURE)] == ["Tree"]


# ─────────────────────────────────────────────────────────────────────────────
# Deduplication
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.ingestion
class TestDeduplicateByTitle:

    def test_case_insensitive_first_wins(self):
        points = [_kp("Algorithm"), _kp("algorithm"), _kp("Graph")]
        result = deduplicate_by_title(points)
        assert [p.title for p in result] == ["Algorithm", "Graph"]
        assert result[0] is points[0]

    def test_idempotent(self):
        points = [_kp("B"), _kp("a"), _kp("A"), _kp("b"), _kp("C")]
        once = deduplicate_by_title(points)
        assert deduplicate_by_title(once) == once
        assert [p.title for p in once] == ["B", "a", "C"]

    async def test_lecture_extraction_dedups_across_batches(self, model_client):
        model_client.generate_json.side_effect = [
            knowledge_points_json(["Algorithm", "Graph"]),
            knowledge_points_json(["algorithm", "Tree"]),
        ]
        extractor = StructuredExtractor(model_client, page_batch_size=1)
        items = await extractor.extract(make_pages(2), ContentCategory.LECTURE)
        assert [i.title for i in items] == ["Algorithm", "Graph", "Tree"]


# ─────────────────────────────────────────────────────────────────────────────
# Chunk content
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestChunkContent:

    def test_knowledge_point_content(self):
        kp = KnowledgePoint(
            title="Big-O",
            definition="Asymptotic upper bound.",
            formulas=["f(n) <= c*g(n)"],
            concepts=["asymptotics", "growth"],
            examples=["n^2 is O(n^3)"],
        )
        assert build_chunk_content(kp) == (
            "## Big-O\n"
            "Asymptotic upper bound.\n"
            "Formulas: f(n) <= c*g(n)\n"
            "Concepts: asymptotics, growth\n"
            "Examples: n^2 is O(n^3)"
        )

    def test_question_content(self):
        q = Question(question_number="1a", content="Pick one", options=["x", "y"], reference_answer="x")
        assert build_chunk_content(q) == "Q1a: Pick one\nOptions: x | y\nAnswer: x"

    def test_item_type(self):
        assert item_type_of(_kp("t")) is ItemType.KNOWLEDGE_POINT
        assert item_type_of(Question(content="c")) is ItemType.QUESTION
