"""
Central prompt file loader.

All prompt templates live in ``foreman/prompts/`` as plain-text files and
ship with the package.  No hardcoded fallbacks: a missing file is a startup
error.
"""

import logging
from functools import lru_cache
from pathlib import Path

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

REQUIRED_FILES = [
    "SYSTEM_PROMPT.txt",
    "TURN_SUMMARY.txt",
    "SUBAGENT_PROTOCOL.txt",
    "SUBAGENT_SUMMARY_REQUEST.txt",
    "SUBAGENT_CODE.txt",
    "SUBAGENT_RESEARCH.txt",
    "SUBAGENT_REFACTOR.txt",
    "SUBAGENT_TEST.txt",
    "SUBAGENT_DOCUMENTATION.txt",
    "SUBAGENT_SECURITY.txt",
    "SUBAGENT_ARCHITECT.txt",
    "SUBAGENT_REVIEWER.txt",
    "SUBAGENT_CUSTOM.txt",
    "TASK_TOOL.txt",
]


@lru_cache(maxsize=None)
def _read(name: str) -> str:
    return (PROMPTS_DIR / name).read_text(encoding="utf-8").strip()


def load(name: str, **kwargs: object) -> str:
    """Read a prompt template from *foreman/prompts/{name}*.

    If **kwargs** are provided the template is formatted via ``str.format()``.
    Raises ``FileNotFoundError`` if the file is missing.
    """
    text = _read(name)
    if kwargs:
        text = text.format(**kwargs)
    return text


def validate_all() -> None:
    """Check that every required prompt file exists.  Call at startup."""
    missing = [f for f in REQUIRED_FILES if not (PROMPTS_DIR / f).is_file()]
    if missing:
        raise FileNotFoundError(
            f"Missing required prompt files in {PROMPTS_DIR}/: "
            + ", ".join(missing)
        )
    logger.info("All %d prompt files validated in %s", len(REQUIRED_FILES), PROMPTS_DIR)
