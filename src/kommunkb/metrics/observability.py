"""Observability helpers for kommunkb."""

from __future__ import annotations

import logging
import time
from contextvars import ContextVar
from typing import Iterable

import structlog
from prometheus_client import Counter, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "kommunkb") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def _clamp_score(score: float) -> float:
    if score < 0.0:
        return 0.0
    if score > 1.0:
        return 1.0
    return score


class PipelineMetrics:
    """Prometheus metrics for search and chat stages."""

    search_latency = Histogram(
        "kommunkb_search_duration_seconds",
        "Time spent per search method.",
        ["method"],
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
    )
    search_result_count = Histogram(
        "kommunkb_search_result_count",
        "Results returned per search call.",
        ["method"],
        buckets=(0, 1, 2, 5, 10, 20, 50, 100),
    )
    relevance_score = Histogram(
        "kommunkb_relevance_score",
        "Final relevance scores of returned hits.",
        buckets=(0.0, 0.25, 0.5, 0.75, 1.0),
    )
    semantic_degraded = Counter(
        "kommunkb_semantic_degraded_total",
        "Searches that continued without semantic results.",
    )
    chat_latency = Histogram(
        "kommunkb_chat_duration_seconds",
        "Time spent orchestrating a chat request.",
        buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0),
    )
    chat_tool_calls = Histogram(
        "kommunkb_chat_tool_calls",
        "Knowledge search tool calls per chat request.",
        buckets=(0, 1, 2, 3, 5),
    )
    chat_failures = Counter(
        "kommunkb_chat_failures_total",
        "Chat requests that failed, by triage reason.",
        ["reason"],
    )

    @classmethod
    def observe_search(
        cls,
        method: str,
        duration_seconds: float,
        result_count: int,
        scores: Iterable[float] = (),
    ) -> None:
        cls.search_latency.labels(method=method).observe(duration_seconds)
        cls.search_result_count.labels(method=method).observe(result_count)
        for score in scores:
            cls.relevance_score.observe(_clamp_score(score))

    @classmethod
    def observe_chat(cls, duration_seconds: float, tool_calls: int) -> None:
        cls.chat_latency.observe(duration_seconds)
        cls.chat_tool_calls.observe(tool_calls)


class TimedSection:
    """Context manager capturing elapsed time for metrics."""

    def __init__(self, callback=None) -> None:
        self._callback = callback
        self._start = 0.0
        self.elapsed = 0.0

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed * 1000

    def __enter__(self) -> "TimedSection":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        self.elapsed = time.perf_counter() - self._start
        if self._callback is not None:
            self._callback(self.elapsed)


__all__ = [
    "PipelineMetrics",
    "TimedSection",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
