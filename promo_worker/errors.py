"""
Error taxonomy for provider calls and video-field transitions.

Transient provider errors are retried and never reach the job record.
Rejections, timeouts, stuck jobs and dead links all end up as a
``failed:<reason>`` / ``expired:<reason>`` value on the job, which is what
the UI reads.
"""

from typing import Optional, Tuple


class ProviderError(Exception):
    """Base class for anything a video provider call can raise."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.message = message
        self.status_code = status_code
        self.attempts = 1

    def __str__(self) -> str:
        if self.status_code:
            return f"{self.provider} error ({self.status_code}): {self.message}"
        return f"{self.provider} error: {self.message}"


class TransientProviderError(ProviderError):
    """Network failure, timeout, 429 or 5xx on a call that is safe to repeat."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
    ):
        super().__init__(provider, message, status_code)
        self.retry_after = retry_after


class ProviderRejectedError(ProviderError):
    """The provider refused the request (validation, quota, 4xx/5xx on create)."""


class ProviderConfigError(ProviderError):
    """Missing or malformed credentials."""


class InvalidTransitionError(Exception):
    """A write would move a video field backward (e.g. resubmitting over a terminal value)."""

    def __init__(self, job_id: str, field: str, current: Optional[str]):
        super().__init__(f"Job {job_id}: {field} is {current!r}, refusing to resubmit")
        self.job_id = job_id
        self.field = field
        self.current = current


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


# ── User-facing messages ─────────────────────────────────────────────────────

GENERIC_MESSAGE = (
    "We encountered an issue generating your video. "
    "Please try again with a different image."
)

REASON_MESSAGES = {
    "aspect_ratio": (
        "Your image dimensions aren't compatible with video generation. "
        "Please upload an image with one of these aspect ratios: 16:9 (landscape), "
        "9:16 (portrait), or 1:1 (square)."
    ),
    "file_size": "Your image is too large. Please upload an image smaller than 16MB.",
    "file_type": (
        "Please upload a JPEG, PNG, or WebP image. "
        "Other formats aren't supported for video generation."
    ),
    "resolution": (
        "Your image resolution is too low for video generation. Please upload a higher "
        "quality image (minimum 512x512 pixels recommended)."
    ),
    "image_access": "There was an issue accessing your image. Please try uploading again.",
    "moderation": "We couldn't process this image. Please try a different product image.",
    "timeout": "Video generation is taking longer than expected. Please try again in a few minutes.",
    "rate_limit": "We're experiencing high demand. Please try again in a few minutes.",
    "stuck": "Video generation took too long. Please try again with a different image.",
    "video_not_found": "This video link has expired and could not be refreshed.",
    "generation_error": GENERIC_MESSAGE,
}

# Checked in order; first hit wins.
_REASON_KEYWORDS = (
    ("aspect_ratio", ("aspect ratio", "width / height ratio", "dimensions")),
    ("file_size", ("file size", "too large", "exceeds", "16mb")),
    ("file_type", ("content-type", "file type", "unsupported format", "invalid format")),
    ("resolution", (
        "resolution", "too small", "pixels", "image quality", "image size", "pixel count",
    )),
    ("image_access", (
        "failed to fetch", "could not fetch", "unable to download", "image url", "source_url",
    )),
    ("moderation", ("moderation", "policy", "prohibited", "inappropriate")),
    ("timeout", ("timeout", "timed out")),
    ("rate_limit", ("rate limit", "too many requests")),
)


def classify_provider_error(message: Optional[str]) -> Tuple[str, str]:
    """
    Map raw provider error text to ``(reason_code, user_message)``.

    Unknown text maps to ``generation_error`` with the generic message.
    """
    text = (message or "").lower()
    for reason, keywords in _REASON_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return reason, REASON_MESSAGES[reason]
    return "generation_error", GENERIC_MESSAGE


def message_for_reason(reason: Optional[str]) -> str:
    return REASON_MESSAGES.get(reason or "", GENERIC_MESSAGE)
