"""DOCX -> PDF conversion through a headless LibreOffice process.

LibreOffice is an optional system dependency. Any failed conversion is
reported as ConversionUnavailable.
"""
import logging
import shutil
import subprocess
import tempfile
from pathlib import Path

import settings
from errors import ConversionUnavailable

logger = logging.getLogger(__name__)

_CANDIDATE_BINARIES = ("soffice", "libreoffice")


def find_converter() -> str | None:
    if settings.SOFFICE_BINARY:
        configured = shutil.which(settings.SOFFICE_BINARY)
        if configured:
            return configured
        logger.warning("SOFFICE_BINARY=%s is not executable", settings.SOFFICE_BINARY)
    for name in _CANDIDATE_BINARIES:
        found = shutil.which(name)
        if found:
            return found
    return None


def is_available() -> bool:
    return find_converter() is not None


def convert(flowable: bytes, timeout: float | None = None) -> bytes:
    """Convert DOCX bytes to PDF bytes.

    Raises:
        ConversionUnavailable: no converter binary, a failed or timed out run,
            or no PDF produced.
    """
    binary = find_converter()
    if binary is None:
        raise ConversionUnavailable("LibreOffice (soffice) is not installed.")

    timeout = settings.CONVERSION_TIMEOUT if timeout is None else timeout
    with tempfile.TemporaryDirectory(prefix="letterhead-convert-") as tmpdir:
        work_dir = Path(tmpdir)
        source = work_dir / "document.docx"
        source.write_bytes(flowable)
        cmd = [
            binary,
            "--headless",
            "--convert-to",
            "pdf",
            "--outdir",
            str(work_dir),
            str(source),
        ]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ConversionUnavailable(f"LibreOffice conversion failed: {exc}") from exc

        target = work_dir / "document.pdf"
        if result.returncode != 0 or not target.exists():
            raise ConversionUnavailable(
                f"LibreOffice conversion failed (exit {result.returncode}): {result.stderr.strip()}"
            )
        return target.read_bytes()
