"""LiteLLM client wrapper with timeouts, error translation and API key validation.

All completion, vision and transcription calls in the ingestion pipeline route
through this module. LiteLLM's own retries are disabled (``num_retries=0``):
the task queue owns retry and backoff, so a failed call surfaces at once as a
classified error.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from pathlib import Path
from typing import Any, TypeVar

import litellm

from cairn.errors import ConfigurationError, ProviderError, ValidationError

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "google": "GOOGLE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "jina_ai": "JINA_AI_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        ConfigurationError: If the required key is missing from environment.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return  # No key required (e.g. ollama)

    if not os.getenv(env_var):
        raise ConfigurationError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


def translate_error(exc: Exception, model: str) -> Exception:
    """Map a LiteLLM exception onto the Cairn taxonomy.

    Auth/permission/unknown-model → ConfigurationError (terminal).
    Bad request → ValidationError (terminal).
    Rate limit, timeout, connection, 5xx → ProviderError (retryable).
    Anything else is returned unchanged.
    """
    if isinstance(
        exc,
        (litellm.AuthenticationError, litellm.PermissionDeniedError, litellm.NotFoundError),
    ):
        return ConfigurationError(f"Provider rejected model '{model}': {exc}")
    if isinstance(exc, litellm.BadRequestError):
        return ValidationError(f"Provider rejected request for '{model}': {exc}")
    if isinstance(
        exc,
        (
            litellm.RateLimitError,
            litellm.Timeout,
            litellm.APIConnectionError,
            litellm.ServiceUnavailableError,
            litellm.InternalServerError,
            litellm.APIError,
        ),
    ):
        return ProviderError(f"{type(exc).__name__} from '{model}': {exc}")
    return exc


async def call_with_timeout(coro: Awaitable[T], *, model: str, timeout: float) -> T:
    """Await a provider call with a hard timeout and translated errors."""
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ProviderError(f"Call to '{model}' timed out after {timeout:.0f}s") from exc
    except Exception as exc:
        translated = translate_error(exc, model)
        if translated is exc:
            raise
        raise translated from exc


# ------------------------------------------------------------------
# Capability interface
# ------------------------------------------------------------------


class LLMClient(ABC):
    """Completion, vision and transcription capability consumed by the pipeline."""

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        response_format: dict[str, Any] | None = None,
        max_tokens: int = 2048,
        temperature: float = 0.0,
    ) -> str:
        """Return the text of the first choice."""

    @abstractmethod
    async def describe_image(
        self, image: bytes, mime_type: str, prompt: str, *, model: str
    ) -> str:
        """Run a vision-capable completion over one image."""

    @abstractmethod
    async def transcribe(self, path: Path, *, model: str) -> str:
        """Transcribe an audio file."""


class LiteLLMClient(LLMClient):
    """LLMClient backed by ``litellm.acompletion`` / ``litellm.atranscription``.

    Args:
        timeout: Seconds allowed per call; exceeding it raises ProviderError.
    """

    def __init__(self, timeout: float = 120.0) -> None:
        self.timeout = timeout

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        response_format: dict[str, Any] | None = None,
        max_tokens: int = 2048,
        temperature: float = 0.0,
    ) -> str:
        kwargs: dict[str, Any] = {}
        if response_format is not None:
            kwargs["response_format"] = response_format
        response = await call_with_timeout(
            litellm.acompletion(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                num_retries=0,
                **kwargs,
            ),
            model=model,
            timeout=self.timeout,
        )
        return response.choices[0].message.content or ""

    async def describe_image(
        self, image: bytes, mime_type: str, prompt: str, *, model: str
    ) -> str:
        data_url = f"data:{mime_type};base64,{base64.b64encode(image).decode('ascii')}"
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            }
        ]
        return await self.complete(messages, model=model, max_tokens=4096)

    async def transcribe(self, path: Path, *, model: str) -> str:
        with open(path, "rb") as audio_file:
            response = await call_with_timeout(
                litellm.atranscription(model=model, file=audio_file),
                model=model,
                timeout=self.timeout,
            )
        return response.text or ""
