"""Generation request/response schemas (credentials, media locators, jobs)."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


GenerationKind = Literal["image", "video", "vision", "text"]

CredentialOrigin = Literal["explicit", "system_wide", "user_stored", "environment"]

JobStatus = Literal["pending", "processing", "succeeded", "failed", "timed_out"]

ErrorKind = Literal[
    "CredentialMissing",
    "ProviderRejected",
    "MalformedResponse",
    "Timeout",
    "ProviderReportedFailure",
    "ParseFailure",
    "StorageFailure",
    "InvalidRequest",
]


class Dimensions(BaseModel):
    width: int = Field(default=1280, gt=0)
    height: int = Field(default=720, gt=0)


class ResolvedCredential(BaseModel):
    """A usable API key plus where it came from. Origin is diagnostic only."""

    model_config = ConfigDict(frozen=True)

    value: str = Field(repr=False)
    origin: CredentialOrigin
    service: str

    def masked(self) -> str:
        return f"***{self.value[-4:]}" if len(self.value) > 4 else "***"


# ---------------------------------------------------------------------------
# Media locators
# ---------------------------------------------------------------------------

class RemoteUrl(BaseModel):
    kind: Literal["remote_url"] = "remote_url"
    url: str

    def reference(self) -> str:
        return self.url


class InlineBytes(BaseModel):
    kind: Literal["inline_bytes"] = "inline_bytes"
    mime: str = "image/png"
    b64: str

    def reference(self) -> str:
        return f"data:{self.mime};base64,{self.b64}"


MediaLocator = Annotated[Union[RemoteUrl, InlineBytes], Field(discriminator="kind")]


# ---------------------------------------------------------------------------
# Requests, jobs, results
# ---------------------------------------------------------------------------

class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: GenerationKind
    provider: str
    model: str | None = None
    prompt: str
    dimensions: Dimensions | None = None
    attachment: bytes | None = None
    attachment_mime: str | None = None
    duration_seconds: int | None = None
    credential: ResolvedCredential


class PollableJob(BaseModel):
    """An in-flight provider job. Only the job poller mutates it."""

    id: str
    provider_label: str
    candidate_endpoints: list[str]
    headers: dict[str, str] = Field(default_factory=dict)
    status: JobStatus = "pending"
    attempt: int = 0
    result: MediaLocator | None = None
    error: str | None = None

    def endpoints(self) -> list[str]:
        return [template.format(id=self.id) for template in self.candidate_endpoints]


class RawModelText(BaseModel):
    text: str
    provider_label: str
    model: str = ""


class GenerationResult(BaseModel):
    success: bool
    media: MediaLocator | None = None
    text: str | None = None
    provider_label: str = ""
    family: str = ""

    @classmethod
    def ok(cls, media: Any, provider_label: str, family: str = "") -> "GenerationResult":
        return cls(success=True, media=media, provider_label=provider_label, family=family)


# ---------------------------------------------------------------------------
# HTTP payloads
# ---------------------------------------------------------------------------

class GenerateMediaPayload(BaseModel):
    prompt: str = ""
    provider: str = ""
    model: str | None = None
    credential: str | None = None
    caller_id: str | None = None
    persist_requested: bool = True
    dimensions: Dimensions | None = None
    attachment_base64: str | None = None
    attachment_mime: str | None = None
    kind: GenerationKind = "image"
    duration_seconds: int | None = None
    filename: str | None = None


class GenerationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    media: str | None = None
    original_media: str | None = Field(default=None, serialization_alias="originalMedia")
    text: str | None = None
    error: str | None = None
    error_kind: ErrorKind | None = Field(default=None, serialization_alias="errorKind")
    provider: str = ""
    persisted: bool = False

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
