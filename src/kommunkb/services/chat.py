"""Chat orchestration over the knowledge search tool and optional web grounding."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Sequence

from kommunkb.errors import ChatProcessingError, KnowledgeBaseError, classify_failure, user_message
from kommunkb.metrics.observability import PipelineMetrics, get_logger
from kommunkb.models import ChatRequest, ChatResponse, SearchHit, SourceMetadata, dedupe_sources
from kommunkb.services.generation import FunctionCall, GenerationBackend, GenerationRequest, GenerationResult, ToolMode
from kommunkb.services.grounding import extract_grounding_citations, grounding_sources
from kommunkb.services.knowledge import SEARCH_KNOWLEDGE_TOOL, KnowledgeSearchTool
from kommunkb.services.prompts import (
    EMPTY_RESPONSE_NUDGE,
    FORCE_ANSWER_INSTRUCTION,
    GENERIC_FAILURE_MESSAGE,
    GROUNDING_SYSTEM_INSTRUCTION,
    NO_SOURCES_MESSAGE,
    build_article_block,
    build_grounding_prompt,
    build_results_block,
    build_search_error_block,
    build_system_instruction,
)
from kommunkb.services.transcript import Transcript

# [label](url) but not ![alt](src); an optional "title" after the url is allowed.
_MARKDOWN_LINK = re.compile(r'(?<!!)\[([^\]\n]+)\]\(\s*<?([^)\s>]+)>?(?:\s+"[^"]*")?\s*\)')


class ChatPhase(str, Enum):
    INIT = "init"
    SEARCH = "search"
    GROUNDING = "grounding"
    DONE = "done"
    FAILED = "failed"


def enforce_citations(text: str, allowed_urls: Iterable[str]) -> str:
    """Reduce markdown links whose target is not an allowed URL to their label."""

    allowed = set(allowed_urls)

    def _replace(match: re.Match[str]) -> str:
        if match.group(2) in allowed:
            return match.group(0)
        return match.group(1)

    return _MARKDOWN_LINK.sub(_replace, text)


def cited_urls(text: str) -> list[str]:
    return [match.group(2) for match in _MARKDOWN_LINK.finditer(text)]


@dataclass
class _ChatRun:
    """Mutable state of one orchestration."""

    request: ChatRequest
    transcript: Transcript
    system_instruction: str
    phase: ChatPhase = ChatPhase.INIT
    hits: list[SearchHit] = field(default_factory=list)
    queries: list[str] = field(default_factory=list)
    model_calls: int = 0

    @property
    def tool_calls(self) -> int:
        return len(self.queries)


class ChatOrchestrator:
    """Drive one chat request from the user's message to a cited answer.

    The search phase lets the model call ``searchKnowledge`` at most
    ``max_turns`` times, one call per turn. When the budget is spent without
    a plain-text answer, a final tool-free call forces one. The optional
    grounding phase is a separate call with the web-search tool, since the
    model cannot mix that tool with function declarations.
    """

    def __init__(
        self,
        generator: GenerationBackend,
        knowledge_tool: KnowledgeSearchTool,
        *,
        max_turns: int = 2,
        grounding_enabled: bool = False,
        article_context_max_chars: int = 10000,
    ) -> None:
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        self._generator = generator
        self._knowledge_tool = knowledge_tool
        self._max_turns = max_turns
        self._grounding_enabled = grounding_enabled
        self._article_context_max_chars = article_context_max_chars
        self._logger = get_logger("chat")

    @property
    def max_turns(self) -> int:
        return self._max_turns

    @property
    def grounding_enabled(self) -> bool:
        return self._grounding_enabled

    async def chat(self, request: ChatRequest) -> ChatResponse:
        started = time.perf_counter()
        run = self._start(request)
        try:
            response = await self._orchestrate(run)
        except Exception as exc:
            run.phase = ChatPhase.FAILED
            reason = classify_failure(exc)
            PipelineMetrics.chat_failures.labels(reason=reason).inc()
            self._logger.exception(
                "chat.failed",
                reason=reason,
                error_type=type(exc).__name__,
                message_length=len(request.message),
                history_length=len(request.history),
                department_count=len(request.department_ids),
                external_source_count=len(request.external_source_ids),
                article_scoped=request.article_context is not None,
                use_google_grounding=request.use_google_grounding,
                tool_calls=run.tool_calls,
            )
            raise ChatProcessingError(user_message(reason), reason=reason) from exc
        run.phase = ChatPhase.DONE
        duration = time.perf_counter() - started
        PipelineMetrics.observe_chat(duration, run.tool_calls)
        self._logger.info(
            "chat.complete",
            duration_ms=round(duration * 1000, 2),
            tool_calls=run.tool_calls,
            model_calls=run.model_calls,
            sources=len(response.sources),
        )
        return response

    def _start(self, request: ChatRequest) -> _ChatRun:
        transcript = Transcript.from_history(request.history)
        if request.article_context is not None:
            block = build_article_block(request.article_context, self._article_context_max_chars)
            if block:
                transcript.append("user", block)
        transcript.append("user", request.message)
        system_instruction = build_system_instruction(
            article_context=request.article_context,
            has_external_sources=bool(request.external_source_ids),
            max_turns=self._max_turns,
        )
        return _ChatRun(request=request, transcript=transcript, system_instruction=system_instruction)

    def _wants_grounding(self, request: ChatRequest) -> bool:
        return request.use_google_grounding and self._grounding_enabled

    async def _orchestrate(self, run: _ChatRun) -> ChatResponse:
        request = run.request
        if not request.has_knowledge_base_sources and not self._wants_grounding(request):
            self._logger.info("chat.no_sources")
            return ChatResponse(response=NO_SOURCES_MESSAGE, sources=[])

        answer: str | None = None
        sources: list[SourceMetadata] = []
        if request.has_knowledge_base_sources:
            run.phase = ChatPhase.SEARCH
            answer = await self._search_phase(run)
            sources.extend(self._knowledge_tool.source_metadata(run.hits))

        if self._wants_grounding(request):
            run.phase = ChatPhase.GROUNDING
            grounded, web_sources = await self._grounding_phase(run, answer)
            if grounded:
                answer = grounded
                sources.extend(web_sources)

        sources = dedupe_sources(sources)
        if not answer:
            return ChatResponse(
                response=GENERIC_FAILURE_MESSAGE,
                sources=sources,
                search_queries=list(run.queries),
                turns=run.tool_calls,
            )
        allowed = {source.url for source in sources}
        return ChatResponse(
            response=enforce_citations(answer, allowed),
            sources=sources,
            search_queries=list(run.queries),
            turns=run.tool_calls,
        )

    async def _generate(self, run: _ChatRun, tool_mode: ToolMode) -> GenerationResult:
        run.model_calls += 1
        return await self._generator.generate(
            GenerationRequest(
                system_instruction=run.system_instruction,
                entries=run.transcript.entries,
                tool_mode=tool_mode,
            )
        )

    @staticmethod
    def _search_call(result: GenerationResult) -> FunctionCall | None:
        for call in result.function_calls:
            if call.name == SEARCH_KNOWLEDGE_TOOL:
                return call
        return None

    async def _search_phase(self, run: _ChatRun) -> str | None:
        for turn in range(self._max_turns):
            result = await self._generate(run, "knowledge")
            if turn == 0 and result.is_empty:
                self._logger.warning("chat.empty_response", turn=turn)
                run.transcript.append("user", EMPTY_RESPONSE_NUDGE)
                result = await self._generate(run, "knowledge")

            call = self._search_call(result)
            if call is None:
                text = result.text.strip()
                if text:
                    return text
                if turn == 0:
                    self._logger.warning("chat.empty_after_retry")
                    return None
                break

            if len(result.function_calls) > 1:
                self._logger.info("chat.extra_calls_ignored", count=len(result.function_calls) - 1)
            if result.text.strip():
                run.transcript.append("assistant", result.text.strip())
            await self._execute_search(run, call)

        self._logger.info("chat.turns_exhausted", tool_calls=run.tool_calls)
        run.transcript.append("user", FORCE_ANSWER_INSTRUCTION)
        final = await self._generate(run, "none")
        return final.text.strip() or None

    async def _execute_search(self, run: _ChatRun, call: FunctionCall) -> None:
        query = str(call.args.get("query") or "").strip()
        run.queries.append(query)
        number = len(run.queries)
        if not query:
            run.transcript.append("tool-error", build_search_error_block(number, query, "had an empty query"))
            return

        request = run.request
        try:
            output = await self._knowledge_tool.run(
                query,
                department_ids=request.department_ids,
                external_source_ids=request.external_source_ids,
            )
        except KnowledgeBaseError as exc:
            self._logger.warning("chat.search_failed", query=query, detail=str(exc))
            run.transcript.append("tool-error", build_search_error_block(number, query, "failed"))
            return

        self._logger.info(
            "chat.turn",
            search=number,
            query=query,
            internal=output.internal_count,
            external=output.external_count,
        )
        if output.is_empty:
            run.transcript.append("tool-error", build_search_error_block(number, query, "returned no results"))
            return
        run.hits.extend(output.hits)
        run.transcript.append(
            "tool-result",
            build_results_block(
                number,
                query,
                output.formatted,
                internal_count=output.internal_count,
                external_count=output.external_count,
            ),
        )

    async def _grounding_phase(
        self, run: _ChatRun, knowledge_base_answer: str | None
    ) -> tuple[str | None, Sequence[SourceMetadata]]:
        transcript = Transcript.from_history(run.request.history)
        transcript.append("user", build_grounding_prompt(run.request.message, knowledge_base_answer))
        run.model_calls += 1
        result = await self._generator.generate(
            GenerationRequest(
                system_instruction=GROUNDING_SYSTEM_INSTRUCTION,
                entries=transcript.entries,
                tool_mode="grounding",
            )
        )
        text = result.text.strip()
        if not text:
            self._logger.warning("chat.grounding_empty")
            return None, []
        if result.grounding_metadata is None:
            self._logger.info("chat.grounding_without_metadata")
            return text, []
        citations = extract_grounding_citations(result.grounding_metadata)
        self._logger.info("chat.grounding_complete", citations=len(citations))
        return text, grounding_sources(citations)


__all__ = ["ChatOrchestrator", "ChatPhase", "cited_urls", "enforce_citations"]
