"""Tests for the LiteLLM client wrapper."""

from __future__ import annotations

import asyncio
import base64
from unittest.mock import AsyncMock, MagicMock, patch

import litellm
import pytest

from cairn.errors import ConfigurationError, ProviderError, ValidationError
from cairn.providers.llm_client import (
    LiteLLMClient,
    call_with_timeout,
    translate_error,
    validate_api_key,
)

MODEL = "openai/gpt-4o-mini"


# ------------------------------------------------------------------
# validate_api_key
# ------------------------------------------------------------------


def test_validate_api_key_raises_if_missing(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ConfigurationError, match="OPENAI_API_KEY"):
        validate_api_key("openai/gpt-4o")


def test_validate_api_key_passes_if_set(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-key")
    validate_api_key("openai/gpt-4o")


def test_validate_api_key_cohere(monkeypatch):
    monkeypatch.delenv("COHERE_API_KEY", raising=False)
    with pytest.raises(ConfigurationError, match="COHERE_API_KEY"):
        validate_api_key("cohere/rerank-english-v3.0")


def test_validate_api_key_ollama_no_key_required():
    validate_api_key("ollama/nomic-embed-text")


def test_validate_api_key_bare_model_treated_as_openai(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        validate_api_key("whisper-1")


# ------------------------------------------------------------------
# translate_error
# ------------------------------------------------------------------


def test_rate_limit_is_retryable():
    exc = litellm.RateLimitError(message="slow down", llm_provider="openai", model=MODEL)
    translated = translate_error(exc, MODEL)
    assert isinstance(translated, ProviderError)
    assert translated.retryable is True


def test_timeout_is_retryable():
    exc = litellm.Timeout(message="timed out", model=MODEL, llm_provider="openai")
    assert isinstance(translate_error(exc, MODEL), ProviderError)


def test_authentication_is_configuration_error():
    exc = litellm.AuthenticationError(message="bad key", llm_provider="openai", model=MODEL)
    translated = translate_error(exc, MODEL)
    assert isinstance(translated, ConfigurationError)
    assert translated.retryable is False


def test_bad_request_is_validation_error():
    exc = litellm.BadRequestError(message="too long", model=MODEL, llm_provider="openai")
    translated = translate_error(exc, MODEL)
    assert isinstance(translated, ValidationError)
    assert translated.retryable is False


def test_unrelated_error_returned_unchanged():
    exc = KeyError("x")
    assert translate_error(exc, MODEL) is exc


# ------------------------------------------------------------------
# call_with_timeout
# ------------------------------------------------------------------


async def test_call_with_timeout_returns_result():
    async def quick():
        return 42

    assert await call_with_timeout(quick(), model=MODEL, timeout=1) == 42


async def test_call_with_timeout_raises_provider_error():
    async def slow():
        await asyncio.sleep(5)

    with pytest.raises(ProviderError, match="timed out"):
        await call_with_timeout(slow(), model=MODEL, timeout=0.01)


async def test_call_with_timeout_translates_litellm_errors():
    async def limited():
        raise litellm.RateLimitError(message="429", llm_provider="openai", model=MODEL)

    with pytest.raises(ProviderError, match="RateLimitError"):
        await call_with_timeout(limited(), model=MODEL, timeout=1)


async def test_call_with_timeout_reraises_untranslated():
    async def broken():
        raise KeyError("choices")

    with pytest.raises(KeyError):
        await call_with_timeout(broken(), model=MODEL, timeout=1)


# ------------------------------------------------------------------
# LiteLLMClient
# ------------------------------------------------------------------


def _completion(content):
    response = MagicMock()
    response.choices[0].message.content = content
    return response


async def test_complete_returns_content():
    mock = AsyncMock(return_value=_completion("Hello, world!"))
    with patch("cairn.providers.llm_client.litellm.acompletion", mock):
        result = await LiteLLMClient().complete([{"role": "user", "content": "Hi"}], model=MODEL)
    assert result == "Hello, world!"


async def test_complete_returns_empty_string_on_none_content():
    mock = AsyncMock(return_value=_completion(None))
    with patch("cairn.providers.llm_client.litellm.acompletion", mock):
        result = await LiteLLMClient().complete([{"role": "user", "content": "Hi"}], model=MODEL)
    assert result == ""


async def test_complete_passes_params_and_disables_retries():
    mock = AsyncMock(return_value=_completion("{}"))
    fmt = {"type": "json_object"}
    with patch("cairn.providers.llm_client.litellm.acompletion", mock):
        await LiteLLMClient().complete(
            [{"role": "user", "content": "Hi"}], model=MODEL, response_format=fmt, max_tokens=99
        )
    kwargs = mock.call_args.kwargs
    assert kwargs["model"] == MODEL
    assert kwargs["max_tokens"] == 99
    assert kwargs["num_retries"] == 0
    assert kwargs["response_format"] == fmt


async def test_complete_omits_response_format_when_none():
    mock = AsyncMock(return_value=_completion("ok"))
    with patch("cairn.providers.llm_client.litellm.acompletion", mock):
        await LiteLLMClient().complete([{"role": "user", "content": "Hi"}], model=MODEL)
    assert "response_format" not in mock.call_args.kwargs


async def test_describe_image_sends_data_url():
    mock = AsyncMock(return_value=_completion("a diagram"))
    with patch("cairn.providers.llm_client.litellm.acompletion", mock):
        text = await LiteLLMClient().describe_image(
            b"\x89PNG", "image/png", "Describe it.", model="openai/gpt-4o"
        )
    assert text == "a diagram"
    [message] = mock.call_args.kwargs["messages"]
    text_part, image_part = message["content"]
    assert text_part == {"type": "text", "text": "Describe it."}
    expected = "data:image/png;base64," + base64.b64encode(b"\x89PNG").decode("ascii")
    assert image_part["image_url"]["url"] == expected


async def test_transcribe_returns_text(tmp_path):
    audio = tmp_path / "memo.mp3"
    audio.write_bytes(b"\x00" * 8)
    response = MagicMock()
    response.text = "spoken words"
    mock = AsyncMock(return_value=response)
    with patch("cairn.providers.llm_client.litellm.atranscription", mock):
        text = await LiteLLMClient().transcribe(audio, model="openai/whisper-1")
    assert text == "spoken words"
    assert mock.call_args.kwargs["model"] == "openai/whisper-1"
