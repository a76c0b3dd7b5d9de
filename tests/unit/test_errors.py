"""Tests for the error taxonomy and failure classification."""

from __future__ import annotations

import asyncio

import pytest

from cairn.errors import (
    CairnError,
    ConfigurationError,
    DimensionMismatchError,
    ExtractError,
    FetchError,
    NotFoundError,
    OwnershipError,
    ProviderError,
    SchemaValidationError,
    TaskCancelled,
    UnsupportedFormatError,
    ValidationError,
    classify_failure,
)


@pytest.mark.parametrize("cls", [FetchError, ProviderError])
def test_transient_errors_are_retryable(cls):
    message, retryable = classify_failure(cls("rate limited"))
    assert retryable is True
    assert message == "rate limited"


@pytest.mark.parametrize(
    "exc",
    [
        ExtractError("empty page"),
        UnsupportedFormatError("bad type"),
        SchemaValidationError("bad json"),
        DimensionMismatchError(1536, 768),
        ConfigurationError("no key"),
        OwnershipError("not yours"),
        NotFoundError("gone"),
        TaskCancelled("stop"),
    ],
)
def test_terminal_errors_are_not_retryable(exc):
    _, retryable = classify_failure(exc)
    assert retryable is False


def test_validation_family():
    for cls in (ExtractError, UnsupportedFormatError, SchemaValidationError):
        assert issubclass(cls, ValidationError)
    assert issubclass(DimensionMismatchError, ValidationError)


def test_dimension_mismatch_message():
    exc = DimensionMismatchError(1536, 768, "vec_chunks_openai")
    assert exc.expected == 1536
    assert exc.actual == 768
    assert "vec_chunks_openai" in str(exc)
    assert "expected 1536, got 768" in str(exc)


def test_empty_message_falls_back_to_class_name():
    message, _ = classify_failure(ProviderError())
    assert message == "ProviderError"


@pytest.mark.parametrize("exc", [asyncio.TimeoutError(), TimeoutError()])
def test_timeouts_are_retryable(exc):
    assert classify_failure(exc) == ("Operation timed out", True)


def test_os_errors_are_retryable():
    message, retryable = classify_failure(ConnectionResetError("peer reset"))
    assert retryable is True
    assert "peer reset" in message


def test_unclassified_errors_are_retryable():
    message, retryable = classify_failure(KeyError("choices"))
    assert retryable is True
    assert message.startswith("KeyError")


def test_base_error_is_terminal():
    assert classify_failure(CairnError("boom")) == ("boom", False)
