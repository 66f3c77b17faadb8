"""
Unit Tests: OutlineGenerator and the local page-window outline
"""

from __future__ import annotations

import json

import pytest

from tests.conftest import FakeHTTPError
from tutor_ingest.processing.outline import OutlineGenerator, build_local_outline
from tutor_ingest.schemas.items import KnowledgePoint


def _kp(title: str, *pages: int) -> KnowledgePoint:
    return KnowledgePoint(title=title, definition=f"about {title}", source_pages=list(pages))


def _points(count: int) -> list[KnowledgePoint]:
    return [_kp(f"Topic {i}", i) for i in range(1, count + 1)]


def _outline_json(*sections: tuple[str, list[str]]) -> str:
    return json.dumps({
        "title":    "Algorithms",
        "summary":  "Sorting and graph search.",
        "sections": [
            {"title": title, "knowledgePoints": points, "briefDescription": f"About {title}."}
            for title, points in sections
        ],
    })


# ─────────────────────────────────────────────────────────────────────────────
# Local outline
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestLocalOutline:

    def test_groups_by_first_source_page(self):
        points = [_kp("Sorting", 2), _kp("Heaps", 9, 3), _kp("Graphs", 14), _kp("Paths", 25)]

        outline = build_local_outline("lecture-1", "Week 3", points)

        assert [s.title for s in outline.sections] == ["Pages 1-3", "Pages 11-14", "Pages 21-25"]
        assert outline.sections[0].knowledge_points == ["Sorting", "Heaps"]
        assert outline.sections[0].brief_description == "Covers Sorting, Heaps."
        assert outline.total_knowledge_points == 4
        assert outline.summary == "Document covering 4 knowledge points across 3 sections."

    def test_point_without_pages_lands_in_first_window(self):
        outline = build_local_outline("lecture-1", "Week 3", [_kp("Intro")], section_pages=5)

        assert outline.sections[0].title == "Page 1"

    def test_wire_shape_is_camel_case(self):
        wire = build_local_outline("lecture-1", "", [_kp("Sorting", 1)]).to_wire()

        assert wire["documentId"] == "lecture-1"
        assert wire["title"] == "Untitled Document"
        assert wire["sections"][0]["briefDescription"] == "Covers Sorting."
        assert "knowledgePoints" in wire["sections"][0]


# ─────────────────────────────────────────────────────────────────────────────
# Model-backed outline
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestOutlineGenerator:

    async def test_small_documents_skip_the_model(self, model_client):
        outline = await OutlineGenerator(model_client).generate("lecture-1", "Week 3", _points(10))

        model_client.generate_json.assert_not_awaited()
        assert outline.total_knowledge_points == 10

    async def test_large_documents_use_model_sections(self, model_client):
        model_client.generate_json.return_value = (
            "```json\n" + _outline_json(("Sorting", ["Topic 1"]), ("Graphs", ["Topic 2"])) + "\n```"
        )

        outline = await OutlineGenerator(model_client).generate("lecture-1", "Week 3", _points(11))

        prompt = model_client.generate_json.await_args.args[0]
        assert "Document title: Week 3" in prompt
        assert "(11 total)" in prompt
        assert outline.document_id == "lecture-1"
        assert outline.title == "Algorithms"
        assert [s.title for s in outline.sections] == ["Sorting", "Graphs"]
        assert outline.total_knowledge_points == 11

    @pytest.mark.parametrize(
        "response",
        [
            "not json at all",
            json.dumps({"title": "Algorithms", "summary": "x", "sections": []}),
            json.dumps([{"title": "Sorting"}]),
        ],
    )
    async def test_bad_model_output_falls_back_to_local(self, model_client, response):
        model_client.generate_json.return_value = response

        outline = await OutlineGenerator(model_client).generate("lecture-1", "Week 3", _points(12))

        assert outline.title == "Week 3"
        assert [s.title for s in outline.sections] == ["Pages 1-10", "Pages 11-12"]

    async def test_provider_error_falls_back_to_local(self, model_client):
        model_client.generate_json.side_effect = FakeHTTPError(503)

        outline = await OutlineGenerator(model_client, llm_threshold=2).generate("lecture-1", "Week 3", _points(3))

        assert outline.total_knowledge_points == 3
        assert outline.sections[0].knowledge_points == ["Topic 1", "Topic 2", "Topic 3"]
