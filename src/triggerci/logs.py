# logs.py
"""Logging setup plus masking of secret values in anything we print or log."""

from __future__ import annotations

import logging
import sys
import threading
from typing import Iterable, List

MASK = "***"


class SecretMasker:
    """Replaces registered secret values with *** in text. Thread-safe."""

    def __init__(self, values: Iterable[str] = ()):
        self._values: List[str] = []
        self._lock = threading.Lock()
        self.add(*values)

    def add(self, *values: str) -> None:
        with self._lock:
            for v in values:
                # very short values would mask half the log
                if v and len(str(v)) >= 3 and str(v) not in self._values:
                    self._values.append(str(v))
            # longest first so a secret containing another is masked whole
            self._values.sort(key=len, reverse=True)

    def mask(self, text: str) -> str:
        if not text:
            return text
        with self._lock:
            values = list(self._values)
        for v in values:
            text = text.replace(v, MASK)
        return text


_masker = SecretMasker()


def get_masker() -> SecretMasker:
    return _masker


class SecretMaskingFilter(logging.Filter):
    def __init__(self, masker: SecretMasker | None = None):
        super().__init__()
        self.masker = masker or _masker

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = self.masker.mask(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def configure_logging(level: str = "WARNING", secrets: Iterable[str] = ()) -> None:
    """
    Route library logs (the `triggerci` logger tree) to stderr with secret
    masking. Calling it again replaces the previous handler.
    """
    _masker.add(*secrets)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler.addFilter(SecretMaskingFilter(_masker))

    logger = logging.getLogger("triggerci")
    logger.setLevel(level.upper())
    for existing in logger.handlers[:]:
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.propagate = False
