"""
Repeated-action detection.

A model stuck in a loop tends to issue the same tool call with the same
arguments and get back the same result.  The detector keeps a sliding window
of ``(tool_name, arguments, result)`` fingerprints and trips once one
fingerprint occurs ``threshold`` times inside the window.  Matching is exact:
a call that differs in a single argument or result byte is a new fingerprint.
"""

import json
import logging
from collections import deque
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 10
DEFAULT_THRESHOLD = 3


def _fingerprint(tool_name: str, arguments: Any, result: str) -> tuple[str, str, str]:
    try:
        args = json.dumps(arguments, sort_keys=True)
    except (TypeError, ValueError):
        args = repr(arguments)
    return (tool_name, args, result)


class DoomLoopDetector:
    def __init__(self, window: int = DEFAULT_WINDOW, threshold: int = DEFAULT_THRESHOLD) -> None:
        if window < 1 or threshold < 1:
            raise ValueError("window and threshold must be positive")
        self.window = window
        self.threshold = threshold
        self._recent: deque[tuple[str, str, str]] = deque(maxlen=window)

    def record_and_check(self, tool_name: str, arguments: Any, result: str) -> bool:
        """Record one execution; return True iff its fingerprint now occurs
        ``threshold`` or more times inside the window."""
        fp = _fingerprint(tool_name, arguments, result)
        self._recent.append(fp)
        count = sum(1 for seen in self._recent if seen == fp)
        if count >= self.threshold:
            logger.warning("Doom loop: %s repeated %d times in last %d calls",
                           tool_name, count, len(self._recent))
            return True
        return False

    def clear(self) -> None:
        self._recent.clear()

    def __len__(self) -> int:
        return len(self._recent)
