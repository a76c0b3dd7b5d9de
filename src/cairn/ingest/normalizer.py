"""Content normalizer: turn a task payload into plain text plus provenance.

Dispatch:
  TextPayload                      → passed through unchanged
  UrlPayload                       → PageFetcher (title + readable text)
  FilePayload  application/pdf     → pypdf text layer
               image/*             → vision completion with the image prompt
               audio/*, .mp3 ...   → transcription
               text/*              → decoded as UTF-8
Every path returns a NormalizedContent or raises a classified CairnError.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from cairn.config import CairnConfig
from cairn.db.models import FilePayload, Payload, TextPayload, UrlPayload
from cairn.errors import ExtractError, UnsupportedFormatError
from cairn.ingest.audio import SUPPORTED_EXTENSIONS as AUDIO_EXTENSIONS
from cairn.ingest.audio import validate_audio
from cairn.ingest.files import FileStore
from cairn.ingest.pdf import extract_pdf_text
from cairn.ingest.web import PageFetcher
from cairn.providers.llm_client import LLMClient

logger = logging.getLogger(__name__)

_IMAGE_TYPES = {"image/png", "image/jpeg", "image/gif", "image/webp"}


@dataclass
class Provenance:
    kind: str  # "text" | "url" | "pdf" | "image" | "audio" | "file"
    url: str | None = None
    file_id: str | None = None
    file_name: str = ""
    mime_type: str = ""


@dataclass
class NormalizedContent:
    text: str
    title: str
    provenance: Provenance


class Normalizer:
    """Polymorphic payload → text adapter.

    Args:
        llm: Vision and transcription capability.
        files: Where FilePayload blobs are resolved.
        config: Model ids, image prompt and fetch timeout.
        fetcher: Page fetcher; a default PageFetcher when omitted.
    """

    def __init__(
        self,
        llm: LLMClient,
        files: FileStore,
        config: CairnConfig,
        fetcher: PageFetcher | None = None,
    ) -> None:
        self.llm = llm
        self.files = files
        self.config = config
        self.fetcher = fetcher or PageFetcher(timeout=config.workers.fetch_timeout)

    async def normalize(self, payload: Payload, owner: str) -> NormalizedContent:
        if isinstance(payload, TextPayload):
            return NormalizedContent(
                text=payload.text, title="", provenance=Provenance(kind="text")
            )
        if isinstance(payload, UrlPayload):
            return await self._normalize_url(payload)
        if isinstance(payload, FilePayload):
            return await self._normalize_file(payload, owner)
        raise TypeError(f"Unknown payload type: {type(payload).__name__}")

    async def _normalize_url(self, payload: UrlPayload) -> NormalizedContent:
        logger.debug("Fetching %s", payload.url)
        page = await asyncio.to_thread(self.fetcher.fetch, payload.url)
        return NormalizedContent(
            text=page.text,
            title=page.title or payload.url,
            provenance=Provenance(kind="url", url=page.url),
        )

    async def _normalize_file(self, payload: FilePayload, owner: str) -> NormalizedContent:
        ref, path = await asyncio.to_thread(self.files.open, payload.file_id, owner)
        mime = ref.mime_type.lower()
        ext = Path(ref.file_name or path.name).suffix.lower()
        title = ref.file_name or path.name

        if mime == "application/pdf" or ext == ".pdf":
            kind = "pdf"
            text = await asyncio.to_thread(extract_pdf_text, path)
        elif mime in _IMAGE_TYPES:
            kind = "image"
            data = await asyncio.to_thread(path.read_bytes)
            text = await self.llm.describe_image(
                data, mime, self.config.prompts.image, model=self.config.models.vision
            )
        elif mime.startswith("audio/") or ext in AUDIO_EXTENSIONS:
            kind = "audio"
            validate_audio(path, ref.file_name)
            text = await self.llm.transcribe(path, model=self.config.models.transcription)
        elif mime.startswith("text/"):
            kind = "file"
            raw = await asyncio.to_thread(path.read_bytes)
            text = raw.decode("utf-8", errors="replace")
        else:
            raise UnsupportedFormatError(
                f"Unsupported file type '{mime}' for '{title}'. "
                "Supported: PDF, PNG/JPEG/GIF/WebP images, audio, plain text."
            )

        if not text.strip():
            raise ExtractError(f"No readable content in '{title}'")
        return NormalizedContent(
            text=text,
            title=title,
            provenance=Provenance(
                kind=kind, file_id=ref.id, file_name=ref.file_name, mime_type=ref.mime_type
            ),
        )
