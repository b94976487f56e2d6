"""Token counting used for usage summaries."""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import lru_cache

import tiktoken

_logger = logging.getLogger(__name__)

_FALLBACK_ENCODING = "cl100k_base"

TokenCounter = Callable[[str, str], int]


@lru_cache(maxsize=32)
def _encoding_for(model: str) -> tiktoken.Encoding | None:
    """Encoding for ``model``, or ``None`` when none can be loaded.

    The miss is cached as well, so an offline process tries the BPE
    download once rather than on every count.
    """
    try:
        try:
            return tiktoken.encoding_for_model(model)
        except KeyError:
            return tiktoken.get_encoding(_FALLBACK_ENCODING)
    except Exception as exc:  # tiktoken surfaces download and decode errors untyped
        _logger.warning("No tiktoken encoding for model %s, estimating token counts: %s", model, exc)
        return None


def count_tokens(text: str, model: str) -> int:
    """Count tokens of ``text`` for ``model``.

    Unknown models use ``cl100k_base``; if no encoding can be loaded at all
    (e.g. offline without a cached BPE file) a four-characters-per-token
    estimate is returned instead.
    """
    if not text:
        return 0
    encoding = _encoding_for(model)
    if encoding is None:
        return len(text) // 4
    return len(encoding.encode(text, disallowed_special=()))
