"""
Error taxonomy for provider failures.

Providers report failures as free text. Every adapter folds that text into an
ErrorKind before anything reaches the user, and every kind has exactly one
fixed user-facing message. Text we cannot classify is shown verbatim.
"""

from typing import Iterable, Optional

from .models import ErrorKind, GenerationJob

GENERIC_FAILURE_MESSAGE = "Something went wrong while processing your video. Please try again later."

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.FILE_UNAVAILABLE: "We could not download your image. Please send the photo again.",
    ErrorKind.IMAGE_TOO_SMALL: (
        "The image is too small. Minimum size is 300x300 pixels. "
        "Please send a larger photo."
    ),
    ErrorKind.CONTENT_MODERATION_REJECTED: "The image or the prompt did not pass content moderation.",
    ErrorKind.UNSUPPORTED_FORMAT: "Unsupported image format. Please send a JPG or PNG photo.",
    ErrorKind.INVALID_ASPECT_RATIO: (
        "Unsupported aspect ratio. The width-to-height ratio must be between 0.5 and 2."
    ),
    ErrorKind.PROVIDER_TIMEOUT: "Processing took too long. Please try again later.",
    ErrorKind.UNKNOWN: GENERIC_FAILURE_MESSAGE,
}

# Checked in order; the first matching kind wins.
_PATTERNS: list[tuple[ErrorKind, tuple[str, ...]]] = [
    (ErrorKind.FILE_UNAVAILABLE, (
        "failed to download",
        "file_download_error",
        "download the file",
        "file not found",
        "file is not accessible",
    )),
    (ErrorKind.IMAGE_TOO_SMALL, (
        "dimensions are too small",
        "minimum dimensions",
        "image is too small",
        "too small",
    )),
    (ErrorKind.INVALID_ASPECT_RATIO, (
        "invalid asset aspect ratio",
        "aspect ratio",
    )),
    (ErrorKind.CONTENT_MODERATION_REJECTED, (
        "content moderation",
        "moderation",
        "not passed moderation",
        "public figure",
        "did not pass",
        "safety checker",
    )),
    (ErrorKind.UNSUPPORTED_FORMAT, (
        "invalid format",
        "unsupported format",
        "unsupported image",
    )),
    (ErrorKind.PROVIDER_TIMEOUT, (
        "timed out",
        "timeout",
    )),
]


def classify_error(raw: Optional[str]) -> ErrorKind:
    """Map raw provider text onto the taxonomy."""
    if not raw or not isinstance(raw, str):
        return ErrorKind.UNKNOWN

    lower = raw.lower()
    for kind, needles in _PATTERNS:
        if any(needle in lower for needle in needles):
            return kind
    return ErrorKind.UNKNOWN


def user_message(kind: ErrorKind, raw: Optional[str] = None) -> str:
    """Fixed message for a kind; UNKNOWN passes provider text through."""
    if kind == ErrorKind.UNKNOWN and raw and raw.strip():
        return raw.strip()
    return USER_MESSAGES[kind]


def failure_reason(jobs: Iterable[GenerationJob], timed_out: bool = False) -> tuple[ErrorKind, str]:
    """
    Pick the single failure reason to show for an order.

    Moderation beats everything, then the first non-generic kind in
    submission order, then the first raw provider text, then the timeout
    (if the session hit its ceiling), then the generic retry-later text.
    """
    failed = [j for j in jobs if j.error_kind is not None]

    for job in failed:
        if job.error_kind == ErrorKind.CONTENT_MODERATION_REJECTED:
            return job.error_kind, USER_MESSAGES[job.error_kind]

    for job in failed:
        if job.error_kind != ErrorKind.UNKNOWN:
            return job.error_kind, USER_MESSAGES[job.error_kind]

    for job in failed:
        if job.error_raw and job.error_raw.strip():
            return ErrorKind.UNKNOWN, job.error_raw.strip()

    if timed_out:
        return ErrorKind.PROVIDER_TIMEOUT, USER_MESSAGES[ErrorKind.PROVIDER_TIMEOUT]

    return ErrorKind.UNKNOWN, GENERIC_FAILURE_MESSAGE


# ── Exceptions ───────────────────────────────────────────────────────────────

class OrderNotFoundError(LookupError):
    """Raised when an order id does not resolve in the store."""


class IllegalTransitionError(ValueError):
    """Raised when a status change is not one of the legal edges."""


class SubmissionError(Exception):
    """No provider accepted the request."""

    def __init__(self, kind: ErrorKind, raw: Optional[str] = None):
        self.kind = kind
        self.raw = raw
        super().__init__(f"{kind.value}: {raw}" if raw else kind.value)

    @property
    def user_message(self) -> str:
        return user_message(self.kind, self.raw)


class TransientProviderError(Exception):
    """Provider could not be reached; the caller should retry later."""
