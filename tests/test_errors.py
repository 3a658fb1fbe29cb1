from __future__ import annotations

from kommunkb.errors import (
    ChatProcessingError,
    EmbeddingError,
    VectorStoreError,
    classify_failure,
    status_code_for,
    user_message,
)


def test_classify_by_type_and_cause():
    assert classify_failure(VectorStoreError("down")) == "vector_store"
    assert classify_failure(EmbeddingError("boom")) == "embedding"

    try:
        try:
            raise VectorStoreError("Collection does not exist")
        except VectorStoreError as inner:
            raise RuntimeError("search failed") from inner
    except RuntimeError as outer:
        assert classify_failure(outer) == "vector_store"


def test_classify_by_message():
    assert classify_failure(RuntimeError("429 Too Many Requests")) == "rate_limit"
    assert classify_failure(RuntimeError("API key not valid")) == "auth"
    assert classify_failure(RuntimeError("something odd")) == "unknown"


def test_chat_processing_error_keeps_reason():
    error = ChatProcessingError(user_message("embedding"), reason="embedding")
    assert classify_failure(error) == "embedding"
    assert status_code_for(error.reason) == 502


def test_status_codes():
    assert status_code_for("rate_limit") == 429
    assert status_code_for("vector_store") == 503
    assert status_code_for("auth") == 500
    assert user_message("rate_limit").startswith("För många")
