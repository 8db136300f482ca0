from __future__ import annotations

import logging
import os

logger = logging.getLogger("medialib")


# ------------------------------------------------------------
# Category logging
#   Set LOG_ALL=0 to disable all categories unless explicitly enabled.
#   Per-category env vars override: LOG_INDEX, LOG_PROBE, LOG_FFMPEG,
#   LOG_DERIVE, LOG_RANGE, LOG_QUEUE, LOG_TOOL. Values: 1 enable, 0 disable.
# ------------------------------------------------------------
def log_enabled(cat: str) -> bool:
    try:
        base = os.environ.get("LOG_ALL", "1")
        base_on = str(base).lower() not in ("0", "false", "no")
        specific = os.environ.get(f"LOG_{cat.upper()}")
        if specific is not None:
            return str(specific).lower() in ("1", "true", "yes")
        return base_on
    except Exception:
        return True


def log(cat: str, msg: str, level: int = logging.INFO) -> None:
    """Emit an application log line for a given category.

    Warnings and errors are always emitted; the category switches only
    silence the chatty INFO/DEBUG lines.
    """
    if level < logging.WARNING and not log_enabled(cat):
        return
    logger.log(level, "[%s] %s", cat, msg)


def trim(text: str | None, limit: int = 1200) -> str:
    s = (text or "").strip()
    if len(s) > limit:
        s = s[:limit] + "..."
    return s
