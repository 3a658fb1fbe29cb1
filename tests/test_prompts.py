from __future__ import annotations

from kommunkb.models import ArticleContext, ChatMessage
from kommunkb.services.prompts import (
    EXTERNAL_BALANCE_NOTE,
    build_article_block,
    build_grounding_prompt,
    build_results_block,
    build_search_error_block,
    build_system_instruction,
)
from kommunkb.services.transcript import Transcript


def test_system_instruction_variants():
    general = build_system_instruction(article_context=None, has_external_sources=False, max_turns=2)
    assert "searchKnowledge" in general
    assert "at most 2 searches" in general
    assert "external sources" not in general

    scoped = build_system_instruction(
        article_context=ArticleContext(id="7", title="Semesterregler", summary="Kort om semester"),
        has_external_sources=True,
        max_turns=3,
    )
    assert '"Semesterregler"' in scoped
    assert "Kort om semester" in scoped
    assert "external sources" in scoped


def test_article_block_truncates_content():
    context = ArticleContext(id="7", title="Semester", content="x" * 50)

    block = build_article_block(context, max_chars=10)

    assert "Title: Semester" in block
    assert "x" * 10 + "\n" in block
    assert "x" * 11 not in block
    assert build_article_block(ArticleContext(id="8", title="Tom"), max_chars=10) == ""


def test_results_block_mentions_external_balance_only_when_needed():
    internal_only = build_results_block(1, "semester", "...", internal_count=2, external_count=0)
    mixed = build_results_block(2, "semester", "...", internal_count=1, external_count=1)

    assert internal_only.startswith('[Search 1] I searched with query "semester" and found 2 results')
    assert EXTERNAL_BALANCE_NOTE not in internal_only
    assert EXTERNAL_BALANCE_NOTE in mixed


def test_error_block_and_grounding_prompt():
    assert build_search_error_block(1, "x", "failed").startswith('[Search Error] Search 1 with query "x" failed.')
    assert build_grounding_prompt("Fråga?", None) == "Fråga?"
    assert "--- EXISTING ANSWER ---\nSvar\n" in build_grounding_prompt("Fråga?", "Svar")


def test_transcript_roles_and_kinds():
    transcript = Transcript.from_history([ChatMessage("user", "Hej"), ChatMessage("assistant", "Hallå")])
    transcript.append("tool-error", "[Search Error] ...")

    assert [entry.role for entry in transcript] == ["user", "model", "user"]
    assert len(transcript.of_kind("tool-error")) == 1
    assert len(transcript) == 3
