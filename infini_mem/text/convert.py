"""Document-to-text conversion keyed by file extension."""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import Iterator

from ..errors import ExternalConversionFailure

logger = logging.getLogger(__name__)

# Commands writing plain text to stdout; "{path}" is replaced by the input.
CONVERTERS: dict[str, tuple[str, ...]] = {
    ".pdf": ("pdftotext", "{path}", "-"),
    ".docx": ("pandoc", "-f", "docx", "-t", "plain", "{path}"),
}


def _read_raw(path: Path) -> Iterator[str]:
    with open(path, "rb") as fh:
        for raw in fh:
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")


def _run_converter(command: list[str]) -> Iterator[str]:
    # stderr goes to a file so a chatty converter cannot block on a full pipe
    with tempfile.TemporaryFile() as errors:
        try:
            proc = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=errors)
        except OSError as exc:
            raise ExternalConversionFailure(f"Failed to run {command[0]}: {exc}") from exc

        with proc:
            for raw in proc.stdout:
                yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

        if proc.returncode != 0:
            errors.seek(0)
            message = errors.read().decode("utf-8", errors="replace").strip()
            raise ExternalConversionFailure(
                f"{command[0]} exited with status {proc.returncode}" + (f": {message}" if message else "")
            )


def iter_lines(path: str | os.PathLike) -> Iterator[str]:
    """
    Stream the text lines of a document.

    .pdf is converted with ``pdftotext`` and .docx with ``pandoc``; .txt and
    every other extension are read directly as bytes and decoded as UTF-8
    with replacement characters.

    Args:
        path: Input document.

    Yields:
        Lines without their trailing newline.

    Raises:
        ExternalConversionFailure: The converter could not start or failed.
    """
    path = Path(path)
    template = CONVERTERS.get(path.suffix.lower())
    if template is None:
        logger.debug("reading %s directly", path)
        return _read_raw(path)
    command = [str(path) if part == "{path}" else part for part in template]
    logger.debug("converting %s with %s", path, command[0])
    return _run_converter(command)
