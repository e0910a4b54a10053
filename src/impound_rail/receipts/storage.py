"""
Receipt Artifact Storage

One file per payment under the receipt directory. Writes go to a temp file in
the same directory, are fsynced, then renamed over the final name, so readers
only ever see a complete artifact and concurrent writers of the same content
leave one complete file behind.
"""

import os
import re
import tempfile
from pathlib import Path
from typing import Optional
import structlog

from ..core.errors import RenderError, ValidationError

logger = structlog.get_logger()

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class ReceiptStorage:
    """Filesystem store for rendered receipts."""

    def __init__(self, base_dir: str, extension: str = "html"):
        self.base_dir = Path(base_dir)
        self.extension = extension

    def path_for(self, payment_id: str) -> Path:
        if not _SAFE_NAME.match(payment_id or ""):
            raise ValidationError(f"Invalid payment id: {payment_id!r}", field="payment_id")
        return self.base_dir / f"{payment_id}.{self.extension}"

    def exists(self, payment_id: str) -> bool:
        return self.path_for(payment_id).is_file()

    def read(self, payment_id: str) -> Optional[bytes]:
        path = self.path_for(payment_id)
        if not path.is_file():
            return None
        return path.read_bytes()

    def write(self, payment_id: str, content: bytes) -> Path:
        """Atomically place `content` at the payment's artifact path."""
        path = self.path_for(payment_id)
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.base_dir, prefix=f".{payment_id}-", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            logger.error("receipt_write_failed", payment_id=payment_id, path=str(path), error=str(e))
            raise RenderError(f"Cannot write receipt for {payment_id}: {e}") from e

        logger.debug("receipt_artifact_written", payment_id=payment_id, path=str(path), size=len(content))
        return path
