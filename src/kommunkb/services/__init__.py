"""Service layer orchestrations for kommunkb."""

from .chat import ChatOrchestrator, ChatPhase, enforce_citations
from .generation import (
    FunctionCall,
    GeminiGenerator,
    GenerationBackend,
    GenerationConfig,
    GenerationRequest,
    GenerationResult,
)
from .knowledge import KnowledgeSearchOutput, KnowledgeSearchTool
from .transcript import Transcript, TranscriptEntry

__all__ = [
    "ChatOrchestrator",
    "ChatPhase",
    "FunctionCall",
    "GeminiGenerator",
    "GenerationBackend",
    "GenerationConfig",
    "GenerationRequest",
    "GenerationResult",
    "KnowledgeSearchOutput",
    "KnowledgeSearchTool",
    "Transcript",
    "TranscriptEntry",
    "enforce_citations",
]
