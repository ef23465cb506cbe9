"""Generation error taxonomy.

Every failure the pipeline can report is a GenerationError subclass carrying
a kind and the HTTP status it maps to. The orchestrator catches these at
the request boundary and converts them into a response; nothing below it
formats responses.

Provider messages are rewritten before they reach callers: content-policy
rejections get one distinct message, everything else is genericized so raw
provider bodies never leak.
"""

from __future__ import annotations

import re

# Keywords providers use when a prompt trips content moderation.
_CONTENT_POLICY_KEYWORDS = (
    "content_policy_violation",
    "policy",
    "safety",
    "explicit",
    "flagged",
    "moderation",
)

CONTENT_POLICY_MESSAGE = (
    "Your prompt was rejected by the provider's content policy. "
    "Please rephrase it and try again."
)

EXCERPT_LIMIT = 1000


class GenerationError(Exception):
    """Base error with a kind and the HTTP status it maps to."""

    kind = "ProviderRejected"
    http_status = 500

    def __init__(self, message: str, *, provider: str = "", details: str = ""):
        self.provider = provider
        self.details = details
        super().__init__(message)


class InvalidRequest(GenerationError):
    kind = "InvalidRequest"
    http_status = 400


class CredentialMissing(GenerationError):
    kind = "CredentialMissing"
    http_status = 400


class ProviderRejected(GenerationError):
    kind = "ProviderRejected"

    def __init__(self, message: str, *, provider: str = "", status_code: int | None = None, details: str = ""):
        self.status_code = status_code
        super().__init__(message, provider=provider, details=details)


class MalformedResponse(GenerationError):
    kind = "MalformedResponse"


class PollTimeout(GenerationError):
    kind = "Timeout"


class ProviderReportedFailure(GenerationError):
    kind = "ProviderReportedFailure"


class ParseFailure(GenerationError):
    kind = "ParseFailure"

    def __init__(self, message: str, *, raw: str = "", provider: str = ""):
        super().__init__(message, provider=provider, details=str(raw or "")[:EXCERPT_LIMIT])


class StorageFailure(GenerationError):
    """Raised inside persistence only; never fatal to a request."""

    kind = "StorageFailure"


def is_content_policy_message(message: str) -> bool:
    low = str(message or "").lower()
    return any(keyword in low for keyword in _CONTENT_POLICY_KEYWORDS)


def provider_display_name(label: str) -> str:
    clean = re.sub(r"[-_]+", " ", str(label or "").strip())
    return clean.title() if clean else "Provider"


def rewrite_provider_message(provider: str, raw_message: str, status_code: int | None = None) -> str:
    """Turn a raw provider error into the message callers are allowed to see."""
    if is_content_policy_message(raw_message):
        return CONTENT_POLICY_MESSAGE
    name = provider_display_name(provider)
    low = str(raw_message or "").lower()
    if "balance not enough" in low or "insufficient" in low or "credits" in low or "quota" in low:
        return f"{name} account has insufficient credits. Please top up your balance and try again."
    if status_code:
        return f"{name} request failed (HTTP {status_code}). Please check your API key and try again."
    return f"{name} request failed. Please check your API key and try again."
