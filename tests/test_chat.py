from __future__ import annotations

import asyncio

import pytest

from kommunkb.errors import ChatProcessingError, VectorStoreError
from kommunkb.models import ArticleContext, ChatMessage, ChatRequest
from kommunkb.retrieval.semantic import SemanticSearcher
from kommunkb.services.chat import ChatOrchestrator, cited_urls, enforce_citations
from kommunkb.services.generation import FunctionCall, GenerationResult
from kommunkb.services.knowledge import KnowledgeSearchTool
from kommunkb.services.prompts import (
    EMPTY_RESPONSE_NUDGE,
    FORCE_ANSWER_INSTRUCTION,
    GENERIC_FAILURE_MESSAGE,
    NO_SOURCES_MESSAGE,
)
from kommunkb.sources import ExternalSourceRegistry

from support import AlwaysSearchGenerator, ScriptedGenerator, StubEmbedder, StubVectorIndex, internal_point

QUESTION = "Hur ansöker jag om semester?"
SEMESTER = internal_point("1", 0.8, title="Semesterpolicy", text="Ansök i personalsystemet.")


def _orchestrator(generator, points=(), *, index_error=None, grounding_enabled=False, max_turns=2):
    registry = ExternalSourceRegistry([])
    searcher = SemanticSearcher(StubEmbedder(), StubVectorIndex(points, error=index_error), registry)
    tool = KnowledgeSearchTool(searcher, registry)
    return ChatOrchestrator(generator, tool, max_turns=max_turns, grounding_enabled=grounding_enabled)


def _call(query: str) -> GenerationResult:
    return GenerationResult(function_calls=[FunctionCall(name="searchKnowledge", args={"query": query})])


def _text(text: str, **kwargs) -> GenerationResult:
    return GenerationResult(text=text, **kwargs)


def _chat(orchestrator, request=None):
    return asyncio.run(orchestrator.chat(request or ChatRequest(message=QUESTION, department_ids=["1"])))


def test_no_sources_returns_fixed_message_without_calling_the_model():
    generator = ScriptedGenerator()

    response = _chat(_orchestrator(generator), ChatRequest(message=QUESTION))

    assert response.response == NO_SOURCES_MESSAGE
    assert response.sources == []
    assert generator.requests == []


def test_plain_answer_ends_the_search_phase():
    generator = ScriptedGenerator([_text("Svar utan sökning.")])

    response = _chat(_orchestrator(generator))

    assert response.response == "Svar utan sökning."
    assert response.turns == 0
    assert [request.tool_mode for request in generator.requests] == ["knowledge"]


def test_search_results_are_fed_back_and_cited():
    generator = ScriptedGenerator([_call("semester"), _text("Se [Semesterpolicy](/hr/article-1).")])

    response = _chat(_orchestrator(generator, [SEMESTER]))

    assert response.response == "Se [Semesterpolicy](/hr/article-1)."
    assert [source.url for source in response.sources] == ["/hr/article-1"]
    assert response.search_queries == ["semester"]
    tool_entries = [entry for entry in generator.requests[1].entries if entry.kind == "tool-result"]
    assert len(tool_entries) == 1
    assert tool_entries[0].content.startswith('[Search 1] I searched with query "semester" and found 1 results')
    assert "Article URL: /hr/article-1" in tool_entries[0].content


def test_tool_calls_never_exceed_the_turn_limit():
    generator = AlwaysSearchGenerator(answer="Sammanfattning.")

    response = _chat(_orchestrator(generator, [SEMESTER]))

    modes = [request.tool_mode for request in generator.requests]
    assert modes == ["knowledge", "knowledge", "none"]
    assert response.turns == 2
    assert response.response == "Sammanfattning."
    assert generator.requests[-1].entries[-1].content == FORCE_ANSWER_INSTRUCTION


def test_turn_limit_is_configurable():
    generator = AlwaysSearchGenerator()

    response = _chat(_orchestrator(generator, [SEMESTER], max_turns=1))

    assert response.turns == 1
    assert [request.tool_mode for request in generator.requests] == ["knowledge", "none"]


def test_only_the_first_call_per_turn_is_executed():
    double = GenerationResult(
        function_calls=[
            FunctionCall(name="searchKnowledge", args={"query": "a"}),
            FunctionCall(name="searchKnowledge", args={"query": "b"}),
        ]
    )
    generator = ScriptedGenerator([double, _text("Klart.")])

    response = _chat(_orchestrator(generator, [SEMESTER]))

    assert response.search_queries == ["a"]


def test_empty_first_response_is_retried_once_with_a_nudge():
    generator = ScriptedGenerator([GenerationResult(), _text("Svar efter knuff.")])

    response = _chat(_orchestrator(generator))

    assert response.response == "Svar efter knuff."
    assert len(generator.requests) == 2
    assert generator.requests[1].entries[-1].content == EMPTY_RESPONSE_NUDGE


def test_empty_responses_after_retry_give_generic_failure():
    generator = ScriptedGenerator([GenerationResult(), GenerationResult()])

    response = _chat(_orchestrator(generator))

    assert response.response == GENERIC_FAILURE_MESSAGE
    assert len(generator.requests) == 2


def test_failed_search_becomes_error_marker():
    generator = ScriptedGenerator([_call("semester"), _text("Jag hittade inget.")])

    response = _chat(_orchestrator(generator, index_error=VectorStoreError("down")))

    assert response.response == "Jag hittade inget."
    errors = [entry for entry in generator.requests[1].entries if entry.kind == "tool-error"]
    assert len(errors) == 1
    assert errors[0].content.startswith("[Search Error]")
    assert response.sources == []


def test_empty_search_becomes_error_marker():
    generator = ScriptedGenerator([_call("okänt"), _text("Inget hittades.")])

    _chat(_orchestrator(generator))

    (error,) = [entry for entry in generator.requests[1].entries if entry.kind == "tool-error"]
    assert "returned no results" in error.content


def test_fabricated_links_are_reduced_to_their_label():
    answer = "Läs [Semesterpolicy](/hr/article-1) och [Påhittad](https://evil.example/x)."
    generator = ScriptedGenerator([_call("semester"), _text(answer)])

    response = _chat(_orchestrator(generator, [SEMESTER]))

    assert response.response == "Läs [Semesterpolicy](/hr/article-1) och Påhittad."
    allowed = {source.url for source in response.sources}
    assert set(cited_urls(response.response)) <= allowed


def test_sources_are_deduplicated_across_searches():
    generator = ScriptedGenerator([_call("semester"), _call("ledighet"), _text("Svar.")])

    response = _chat(_orchestrator(generator, [SEMESTER]))

    urls = [source.url for source in response.sources]
    assert urls == ["/hr/article-1"]
    assert response.search_queries == ["semester", "ledighet"]


def test_grounding_enhances_knowledge_base_answer():
    metadata = {"groundingChunks": [{"web": {"uri": "https://verksamt.se", "title": "Verksamt"}}]}
    generator = ScriptedGenerator([_text("KB-svar."), _text("Förbättrat svar.", grounding_metadata=metadata)])
    request = ChatRequest(message=QUESTION, department_ids=["1"], use_google_grounding=True)

    response = _chat(_orchestrator(generator, grounding_enabled=True), request)

    assert response.response == "Förbättrat svar."
    assert [(source.type, source.url) for source in response.sources] == [("google", "https://verksamt.se")]
    grounding_request = generator.requests[-1]
    assert grounding_request.tool_mode == "grounding"
    assert "KB-svar." in grounding_request.entries[-1].content


def test_grounding_only_request_skips_the_search_phase():
    generator = ScriptedGenerator([_text("Webbsvar.")])
    request = ChatRequest(message=QUESTION, use_google_grounding=True)

    response = _chat(_orchestrator(generator, grounding_enabled=True), request)

    assert response.response == "Webbsvar."
    assert [r.tool_mode for r in generator.requests] == ["grounding"]
    assert generator.requests[0].entries[-1].content == QUESTION


def test_grounding_is_ignored_when_globally_disabled():
    generator = ScriptedGenerator()
    request = ChatRequest(message=QUESTION, use_google_grounding=True)

    response = _chat(_orchestrator(generator, grounding_enabled=False), request)

    assert response.response == NO_SOURCES_MESSAGE


def test_empty_grounding_keeps_knowledge_base_answer():
    generator = ScriptedGenerator([_text("KB-svar."), GenerationResult()])
    request = ChatRequest(message=QUESTION, department_ids=["1"], use_google_grounding=True)

    response = _chat(_orchestrator(generator, grounding_enabled=True), request)

    assert response.response == "KB-svar."
    assert response.sources == []


def test_fatal_errors_are_wrapped_with_a_reason():
    failure = RuntimeError("429 RESOURCE_EXHAUSTED")
    generator = ScriptedGenerator([failure])

    with pytest.raises(ChatProcessingError) as excinfo:
        _chat(_orchestrator(generator))

    assert excinfo.value.reason == "rate_limit"
    assert excinfo.value.__cause__ is failure


def test_article_scoped_chat_injects_article_content():
    generator = ScriptedGenerator([_text("Om artikeln.")])
    context = ArticleContext(id="9", title="Semesterpolicy", content="Semester ansöks i april.", summary="Kort")
    request = ChatRequest(message=QUESTION, article_context=context)

    response = _chat(_orchestrator(generator), request)

    assert response.response == "Om artikeln."
    first = generator.requests[0]
    assert 'titled: "Semesterpolicy"' in first.system_instruction
    contents = [entry.content for entry in first.entries]
    assert contents[-1] == QUESTION
    assert contents[-2].startswith("--- ARTICLE CONTENT ---")
    assert "Semester ansöks i april." in contents[-2]


def test_history_precedes_the_new_message():
    generator = ScriptedGenerator([_text("Ja.")])
    history = [ChatMessage(role="user", content="Hej"), ChatMessage(role="assistant", content="Hej! Vad undrar du?")]
    request = ChatRequest(message=QUESTION, department_ids=["1"], history=history)

    _chat(_orchestrator(generator), request)

    entries = generator.requests[0].entries
    assert [(entry.kind, entry.role) for entry in entries] == [
        ("user", "user"),
        ("assistant", "model"),
        ("user", "user"),
    ]


def test_external_sources_switch_on_source_attribution():
    generator = ScriptedGenerator([_text("Svar.")])
    request = ChatRequest(message=QUESTION, external_source_ids=["lagar"])

    _chat(_orchestrator(generator), request)

    assert "both internal documents and external sources" in generator.requests[0].system_instruction


def test_enforce_citations_leaves_images_and_allowed_links():
    text = "![bild](https://img.se/a.png) [Ok](/a) [Nej](/b)"

    assert enforce_citations(text, {"/a"}) == "![bild](https://img.se/a.png) [Ok](/a) Nej"


def test_max_turns_must_be_positive():
    with pytest.raises(ValueError):
        _orchestrator(ScriptedGenerator(), max_turns=0)
