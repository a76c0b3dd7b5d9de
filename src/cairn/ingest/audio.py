"""Audio input validation ahead of transcription.

File size is checked BEFORE any API call: > 25 MB → hard fail.
Only supported audio extensions are accepted.
"""

from __future__ import annotations

import os
from pathlib import Path

from cairn.errors import UnsupportedFormatError, ValidationError

SUPPORTED_EXTENSIONS = {".mp3", ".wav", ".m4a", ".ogg", ".flac", ".mp4", ".mpeg", ".mpga", ".webm"}
MAX_FILE_BYTES = 25 * 1024 * 1024  # 25 MB


def validate_audio(path: Path | str, file_name: str = "") -> None:
    """Raise for unsupported extensions or oversized files.

    The extension is taken from *file_name* when given (blobs are stored
    under their hash), otherwise from *path*.
    """
    ext = Path(file_name or str(path)).suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFormatError(
            f"Unsupported audio format '{ext}'. "
            f"Supported: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
        )

    try:
        size = os.path.getsize(path)
    except OSError as exc:
        raise ValidationError(f"Cannot access audio file '{path}': {exc}") from exc

    if size > MAX_FILE_BYTES:
        raise ValidationError(
            f"Audio file '{file_name or path}' exceeds the 25 MB limit "
            f"({size / (1024 * 1024):.1f} MB). "
            "Split the file and submit each part separately."
        )
