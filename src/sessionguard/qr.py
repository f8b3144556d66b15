"""
QR artifact sink: writes pairing challenges to a file for out-of-band pairing.
"""

import asyncio
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

QR_DIR = Path("database") / "qr-code"
QR_FILE = "qr.txt"


def default_qr_path(app_root: Path) -> Path:
    """<app-root>/database/qr-code/qr.txt"""
    return Path(app_root) / QR_DIR / QR_FILE


def _write(path: Path, qr: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(qr, encoding="utf-8")


class QrArtifactSink:
    """Overwrites one text file with the latest QR payload."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    async def write(self, qr: str) -> Path:
        """Write the raw QR text, creating the directory if missing."""
        await asyncio.to_thread(_write, self.path, qr)
        logger.debug("QR payload written to %s", self.path)
        return self.path
