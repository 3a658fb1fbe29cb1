"""Generation backends for kommunkb."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Protocol, Sequence

from google import genai
from google.genai import types

from kommunkb.errors import ConfigurationError
from kommunkb.metrics.observability import get_logger
from kommunkb.services.grounding import find_grounding_metadata
from kommunkb.services.knowledge import (
    QUERY_PARAMETER_DESCRIPTION,
    SEARCH_KNOWLEDGE_DESCRIPTION,
    SEARCH_KNOWLEDGE_TOOL,
)
from kommunkb.services.transcript import TranscriptEntry

logger = get_logger("generation")

ToolMode = Literal["knowledge", "grounding", "none"]


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for answer generation."""

    model: str = "gemini-flash-latest"
    temperature: float = 0.7
    max_output_tokens: int = 2048
    api_key: str | None = None
    vertexai: bool = False
    project: str | None = None
    location: str = "europe-west4"


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerationRequest:
    system_instruction: str
    entries: Sequence[TranscriptEntry]
    tool_mode: ToolMode = "none"


@dataclass(frozen=True)
class GenerationResult:
    text: str = ""
    function_calls: Sequence[FunctionCall] = ()
    grounding_metadata: Any = None

    @property
    def is_empty(self) -> bool:
        return not self.function_calls and not self.text.strip()


class GenerationBackend(Protocol):
    """Protocol describing one model call.

    ``tool_mode`` selects at most one tool family per call: the knowledge
    search function, the web-grounding tool, or none.
    """

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Return the model's text and/or requested function calls."""


def _knowledge_tool() -> types.Tool:
    return types.Tool(
        function_declarations=[
            types.FunctionDeclaration(
                name=SEARCH_KNOWLEDGE_TOOL,
                description=SEARCH_KNOWLEDGE_DESCRIPTION,
                parameters=types.Schema(
                    type=types.Type.OBJECT,
                    properties={
                        "query": types.Schema(type=types.Type.STRING, description=QUERY_PARAMETER_DESCRIPTION),
                    },
                    required=["query"],
                ),
            )
        ]
    )


def to_contents(entries: Sequence[TranscriptEntry]) -> list[types.Content]:
    """Convert transcript entries to Gemini contents, merging same-role runs."""

    contents: list[types.Content] = []
    for entry in entries:
        if not entry.content:
            continue
        part = types.Part(text=entry.content)
        if contents and contents[-1].role == entry.role:
            contents[-1].parts.append(part)
        else:
            contents.append(types.Content(role=entry.role, parts=[part]))
    return contents


def _response_text(response: Any) -> str:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return ""
    content = getattr(candidates[0], "content", None)
    parts = getattr(content, "parts", None) or []
    texts = [part.text for part in parts if getattr(part, "text", None) and not getattr(part, "thought", False)]
    return "".join(texts)


class GeminiGenerator:
    """Generation backend using the Google Gen AI SDK (AI Studio or Vertex AI)."""

    def __init__(self, config: GenerationConfig | None = None, *, client: genai.Client | None = None) -> None:
        self._config = config or GenerationConfig()
        self._client = client

    def _get_client(self) -> genai.Client:
        # Created on first use so the app can start without credentials.
        if self._client is None:
            if self._config.vertexai:
                if not self._config.project:
                    raise ConfigurationError("GOOGLE_CLOUD_PROJECT is required when GEMINI_MODE=vertexai")
                logger.info("generation.vertexai", location=self._config.location, project=self._config.project)
                self._client = genai.Client(
                    vertexai=True,
                    project=self._config.project,
                    location=self._config.location,
                )
            else:
                if not self._config.api_key:
                    raise ConfigurationError("Gemini API key not configured")
                self._client = genai.Client(api_key=self._config.api_key)
        return self._client

    def _build_config(self, request: GenerationRequest) -> types.GenerateContentConfig:
        tools: list[types.Tool] | None = None
        tool_config: types.ToolConfig | None = None
        if request.tool_mode == "knowledge":
            tools = [_knowledge_tool()]
            tool_config = types.ToolConfig(
                function_calling_config=types.FunctionCallingConfig(mode=types.FunctionCallingConfigMode.AUTO)
            )
        elif request.tool_mode == "grounding":
            tools = [types.Tool(google_search=types.GoogleSearch())]
        return types.GenerateContentConfig(
            system_instruction=request.system_instruction,
            temperature=self._config.temperature,
            max_output_tokens=self._config.max_output_tokens,
            tools=tools,
            tool_config=tool_config,
        )

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        client = self._get_client()
        response = await client.aio.models.generate_content(
            model=self._config.model,
            contents=to_contents(request.entries),
            config=self._build_config(request),
        )
        calls = [
            FunctionCall(name=call.name or "", args=dict(call.args or {}))
            for call in (response.function_calls or [])
        ]
        metadata = find_grounding_metadata(response) if request.tool_mode == "grounding" else None
        return GenerationResult(text=_response_text(response), function_calls=calls, grounding_metadata=metadata)
