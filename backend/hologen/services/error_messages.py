"""User-facing error message classification.

Every stage failure is reduced to one of a handful of categories by pattern
matching the underlying error, so callers can show a stable, human-readable
message instead of provider or subprocess diagnostics.
"""

import re
from enum import Enum


class ErrorCategory(str, Enum):
    CONTENT_POLICY = "content_policy"
    QUOTA = "quota"
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"
    GENERIC = "generic"


USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.CONTENT_POLICY: (
        "The request was blocked by the content policy. "
        "Please try a different prompt or reference image."
    ),
    ErrorCategory.QUOTA: "The generation service is busy or over quota. Please try again in a few minutes.",
    ErrorCategory.TIMEOUT: "Generation took too long and was stopped. Please try again.",
    ErrorCategory.AUTHENTICATION: "The generation service is misconfigured. Please contact support.",
    ErrorCategory.GENERIC: "Something went wrong while creating your video. Please try again.",
}

# Checked in order; content policy wins over everything else.
_PATTERNS: list[tuple[ErrorCategory, re.Pattern[str]]] = [
    (ErrorCategory.CONTENT_POLICY, re.compile(r"nsfw|content[ _-]?(policy|blocked)|safety|moderation", re.I)),
    (ErrorCategory.QUOTA, re.compile(r"quota|rate[ _-]?limit|too many requests|\b429\b|credits?", re.I)),
    (ErrorCategory.TIMEOUT, re.compile(r"time[ _-]?out|timed out|deadline", re.I)),
    (ErrorCategory.AUTHENTICATION, re.compile(r"unauthori[sz]ed|invalid (api )?key|\b401\b|\b403\b|forbidden", re.I)),
]


def classify_message(message: str) -> ErrorCategory:
    for category, pattern in _PATTERNS:
        if pattern.search(message):
            return category
    return ErrorCategory.GENERIC


def classify_error(exc: BaseException) -> ErrorCategory:
    """Map an exception to a user-facing category.

    Errors that already know their category (``category`` class attribute)
    keep it; anything else is classified from its message text.
    """
    category = getattr(exc, "category", None)
    if category is not None:
        return ErrorCategory(category)
    return classify_message(str(exc))


def user_message(category: ErrorCategory) -> str:
    return USER_MESSAGES[category]
