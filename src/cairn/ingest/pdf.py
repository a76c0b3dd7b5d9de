"""PDF text-layer extraction via pypdf."""

from __future__ import annotations

from pathlib import Path

import pypdf
from pypdf.errors import PdfReadError

from cairn.errors import UnsupportedFormatError


def extract_pdf_text(path: Path | str) -> str:
    """Extract all page text from the PDF at *path*.

    Pages that yield no text are skipped; pages are joined with blank lines.

    Raises:
        UnsupportedFormatError: The file is not a readable PDF, or it has no
            text layer at all (e.g. a scan without OCR).
    """
    try:
        reader = pypdf.PdfReader(str(path))
        parts: list[str] = []
        for page in reader.pages:
            page_text = page.extract_text() or ""
            stripped = page_text.strip()
            if stripped:
                parts.append(stripped)
    except PdfReadError as exc:
        raise UnsupportedFormatError(f"Unreadable PDF '{Path(path).name}': {exc}") from exc

    if not parts:
        raise UnsupportedFormatError(
            f"PDF '{Path(path).name}' has no text layer (scanned document without OCR?)"
        )
    return "\n\n".join(parts)
