"""Provider error classification.

All string matching on provider error codes and messages lives here.

Classification rules (first match wins):
    - code 13 or "high_traffic" / "high traffic" → HIGH_TRAFFIC
    - code 4 or "timed_out" / "timed out" / "timeout" → TIMEOUT
    - "expired" / "deadline" → DEADLINE_EXPIRED
    - "unsafe_generation" / "unsafe generation" → CONTENT_SAFETY
    - "error_minor" / "minor error" → MINOR
    - code 16 or authentication markers → AUTHENTICATION
    - content policy markers → CONTENT_POLICY
    - anything else → UNKNOWN
"""

from enum import Enum


class ErrorCategory(str, Enum):
    """Closed set of provider error categories."""

    HIGH_TRAFFIC = "high_traffic"
    TIMEOUT = "timeout"
    DEADLINE_EXPIRED = "deadline_expired"
    CONTENT_SAFETY = "content_safety"
    MINOR = "minor"
    CONTENT_POLICY = "content_policy"
    AUTHENTICATION = "authentication"
    UNKNOWN = "unknown"


TRANSIENT_CATEGORIES = frozenset(
    {
        ErrorCategory.HIGH_TRAFFIC,
        ErrorCategory.TIMEOUT,
        ErrorCategory.DEADLINE_EXPIRED,
        ErrorCategory.CONTENT_SAFETY,
        ErrorCategory.MINOR,
    }
)

AUTH_ERROR_MARKERS = (
    "invalid authentication",
    "oauth 2 access token",
    "unauthorized",
    "unauthenticated",
    "invalid api token",
    "401",
)

CONTENT_POLICY_MARKERS = (
    "content policy",
    "policy_violation",
    "nsfw",
    "inappropriate",
    "prohibited",
    "safety",
)


def is_auth_error_message(message: str | None) -> bool:
    """Return True when a provider message signals a rejected credential."""
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in AUTH_ERROR_MARKERS)


def classify_provider_error(
    error_code: str | int | None = None,
    error_category: str | None = None,
    error_message: str | None = None,
) -> ErrorCategory:
    """Classify a terminal provider error.

    Args:
        error_code: Numeric or symbolic code reported by the provider
        error_category: Provider's own category label (e.g. "HIGH_TRAFFIC")
        error_message: Free-form provider message

    Returns:
        ErrorCategory for the error
    """
    code = str(error_code).strip().lower() if error_code is not None else ""
    text = " ".join(part for part in (error_category, error_message) if part).lower()

    if code == "13" or "high_traffic" in text or "high traffic" in text:
        return ErrorCategory.HIGH_TRAFFIC
    if code == "4" or "timed_out" in text or "timed out" in text or "timeout" in text:
        return ErrorCategory.TIMEOUT
    if "expired" in text or "deadline" in text:
        return ErrorCategory.DEADLINE_EXPIRED
    if "unsafe_generation" in text or "unsafe generation" in text:
        return ErrorCategory.CONTENT_SAFETY
    if "error_minor" in text or "minor error" in text:
        return ErrorCategory.MINOR
    if code == "16" or is_auth_error_message(text):
        return ErrorCategory.AUTHENTICATION
    if any(marker in text for marker in CONTENT_POLICY_MARKERS):
        return ErrorCategory.CONTENT_POLICY
    return ErrorCategory.UNKNOWN


def is_transient(category: ErrorCategory) -> bool:
    """Return True when a new operation with a new token may succeed."""
    return category in TRANSIENT_CATEGORIES
