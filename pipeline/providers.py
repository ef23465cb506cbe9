"""Provider adapters for image/video generation (OpenAI/OpenArt/Leonardo/Runway/Kling).

Every adapter exposes submit(request) and returns either a finished
GenerationResult or a PollableJob for the job poller. Adapters own their
endpoint, headers and body shape, and validate the provider's response at
this boundary: anything downstream only ever sees a MediaLocator.

Routing is two steps: resolve_route() maps a free-form label (and optional
model label) to a canonical service id, then the registry builds the
adapter for that id.
"""

from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import httpx
from jose import jwt

from config import Config
from pipeline.errors import (
    InvalidRequest,
    MalformedResponse,
    ProviderRejected,
    rewrite_provider_message,
)
from pipeline.llm import (
    AnthropicTextAdapter,
    GoogleTextAdapter,
    OpenAITextAdapter,
    OpenAIVisionAdapter,
    openai_client,
    sdk_error,
)
from schemas.generation import (
    GenerationKind,
    GenerationRequest,
    GenerationResult,
    InlineBytes,
    PollableJob,
    RawModelText,
    RemoteUrl,
)

logger = logging.getLogger(__name__)


class ProviderAdapter(Protocol):
    def submit(self, request: GenerationRequest) -> GenerationResult | PollableJob | RawModelText:
        """Send the request to the provider."""


# ---------------------------------------------------------------------------
# Alias resolution
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderRoute:
    service: str
    model: str | None
    kind: GenerationKind


# Ordered: the first rule whose needle occurs in the lowercased label wins.
_ALIAS_RULES: dict[str, tuple[tuple[tuple[str, ...], str, str | None], ...]] = {
    "image": (
        (("gpt image", "gpt-image"), "openai-image", "gpt-image-1"),
        (("dall", "openai"), "openai-image", "dall-e-3"),
        (("openart", "sdxl", "stable", "sd"), "openart", "sdxl"),
        (("leonardo",), "leonardo", None),
        (("midjourney",), "midjourney", None),
    ),
    "video": (
        (("kling",), "kling", None),
        (("runway", "gen4", "gen3", "aleph", "upscale"), "runway", None),
    ),
    "text": (
        (("claude", "anthropic"), "anthropic", None),
        (("gemini", "google"), "google-text", None),
        (("gpt", "openai"), "openai-text", None),
    ),
    "vision": (
        (("gpt", "openai"), "openai-vision", None),
    ),
}

_BASELINE_ROUTES: dict[str, tuple[str, str | None]] = {
    "image": ("openai-image", "dall-e-3"),
    "video": ("runway", "gen4_turbo"),
    "text": ("openai-text", None),
    "vision": ("openai-vision", None),
}

# Credential service per canonical id.
CREDENTIAL_SERVICE = {
    "openai-image": "openai",
    "openai-text": "openai",
    "openai-vision": "openai",
    "anthropic": "anthropic",
    "google-text": "google",
    "openart": "openart",
    "leonardo": "leonardo",
    "runway": "runway",
    "kling": "kling",
    "midjourney": "midjourney",
}


def normalize_openai_image_model(label: str | None) -> str:
    low = str(label or "").strip().lower()
    if "gpt image" in low or "gpt-image" in low:
        return "gpt-image-1"
    return "dall-e-3"


def _match(label: str, kind: str) -> tuple[str, str | None] | None:
    low = str(label or "").strip().lower()
    if not low:
        return None
    for needles, service, model in _ALIAS_RULES.get(kind, ()):
        if any(needle in low for needle in needles):
            return service, model
    return None


def resolve_route(label: str, kind: GenerationKind, model: str | None = None) -> ProviderRoute:
    """Map a free-form provider label (and optional model label) to a route."""
    matched = _match(label, kind) or (_match(model or "", kind) if kind == "image" else None)
    if matched is None:
        if label:
            logger.info("Unrecognized %s provider %r, using baseline", kind, label)
        matched = _BASELINE_ROUTES[kind]
    service, default_model = matched

    if service == "openai-image":
        chosen = normalize_openai_image_model(model) if model else default_model
    else:
        chosen = str(model or "").strip() or default_model
    return ProviderRoute(service=service, model=chosen, kind=kind)


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------

def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(payload, dict):
        for key in ("error", "message", "detail", "failure"):
            value = payload.get(key)
            if isinstance(value, dict):
                value = value.get("message")
            if value:
                return str(value)
    return response.text[:500]


def _post_json(
    client: httpx.Client,
    url: str,
    *,
    provider: str,
    headers: dict[str, str],
    body: dict[str, Any],
) -> dict[str, Any]:
    try:
        response = client.post(url, headers=headers, json=body)
    except httpx.HTTPError as exc:
        logger.error("%s request to %s failed: %s", provider, url, exc)
        raise ProviderRejected(rewrite_provider_message(provider, str(exc)), provider=provider) from exc
    if not response.is_success:
        detail = _error_text(response)
        logger.error("%s API error %d: %s", provider, response.status_code, detail)
        raise ProviderRejected(
            rewrite_provider_message(provider, detail, response.status_code),
            provider=provider,
            status_code=response.status_code,
            details=detail,
        )
    try:
        payload = response.json()
    except ValueError as exc:
        raise MalformedResponse("AI service returned an invalid response", provider=provider) from exc
    if not isinstance(payload, dict):
        raise MalformedResponse("AI service returned an invalid response", provider=provider)
    return payload


def _bearer(api_key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}


def _dimensions(request: GenerationRequest, config: Config) -> tuple[int, int]:
    if request.dimensions is not None:
        return request.dimensions.width, request.dimensions.height
    return config.default_width, config.default_height


# ---------------------------------------------------------------------------
# Image adapters
# ---------------------------------------------------------------------------

class OpenAIImageAdapter:
    """DALL-E 3 answers with a URL; gpt-image-1 answers with inline base64."""

    provider_label = "openai-image"

    def __init__(self, config: Config, http_client: httpx.Client | None = None):
        self._config = config
        self._http_client = http_client

    @staticmethod
    def _size(model: str, width: int, height: int) -> str:
        ratio = width / height
        if model == "gpt-image-1":
            if ratio > 1.2:
                return "1536x1024"
            if ratio < 0.83:
                return "1024x1536"
            return "1024x1024"
        if ratio > 1.2:
            return "1792x1024"
        if ratio < 0.83:
            return "1024x1792"
        return "1024x1024"

    def submit(self, request: GenerationRequest) -> GenerationResult:
        model = normalize_openai_image_model(request.model or self._config.model("openai_image", "dall-e-3"))
        width, height = _dimensions(request, self._config)
        kwargs: dict[str, Any] = {
            "model": model,
            "prompt": request.prompt,
            "n": 1,
            "size": self._size(model, width, height),
        }
        if model == "dall-e-3":
            kwargs["response_format"] = "url"
        try:
            client = openai_client(request.credential.value, self._http_client)
            response = client.images.generate(**kwargs)
        except Exception as exc:
            raise sdk_error(exc, self.provider_label, model) from exc

        data = getattr(response, "data", None) or []
        first = data[0] if data else None
        b64 = getattr(first, "b64_json", None)
        url = getattr(first, "url", None)
        family = "gpt-image" if model == "gpt-image-1" else "dall-e"
        if b64:
            return GenerationResult.ok(InlineBytes(mime="image/png", b64=b64), self.provider_label, family)
        if url:
            return GenerationResult.ok(RemoteUrl(url=url), self.provider_label, family)
        raise MalformedResponse("AI service returned an invalid response", provider=self.provider_label)


class OpenArtImageAdapter:
    provider_label = "openart"

    def __init__(self, config: Config, http_client: httpx.Client):
        self._config = config
        self._client = http_client

    def submit(self, request: GenerationRequest) -> GenerationResult:
        payload = _post_json(
            self._client,
            f"{self._config.endpoint('openart')}/generations",
            provider=self.provider_label,
            headers=_bearer(request.credential.value),
            body={
                "prompt": request.prompt,
                "model": request.model or "sdxl",
                "width": 1024,
                "height": 1024,
                "num_images": 1,
            },
        )
        images = payload.get("images")
        url = ""
        if isinstance(images, list) and images and isinstance(images[0], dict):
            url = str(images[0].get("url") or "").strip()
        if not url:
            raise MalformedResponse("AI service returned an invalid response", provider=self.provider_label)
        return GenerationResult.ok(RemoteUrl(url=url), self.provider_label)


class LeonardoImageAdapter:
    provider_label = "leonardo"

    DEFAULT_MODEL_ID = "6bef9f1b-29cb-40c7-b9df-32b51c1ed67c"

    def __init__(self, config: Config, http_client: httpx.Client):
        self._config = config
        self._client = http_client

    def submit(self, request: GenerationRequest) -> PollableJob:
        width, height = _dimensions(request, self._config)
        base = self._config.endpoint("leonardo")
        headers = _bearer(request.credential.value)
        payload = _post_json(
            self._client,
            f"{base}/generations",
            provider=self.provider_label,
            headers=headers,
            body={
                "prompt": request.prompt,
                "modelId": request.model or self.DEFAULT_MODEL_ID,
                "width": width,
                "height": height,
                "num_images": 1,
            },
        )
        job = payload.get("sdGenerationJob")
        generation_id = str((job or {}).get("generationId") or "").strip() if isinstance(job, dict) else ""
        if not generation_id:
            raise MalformedResponse("AI service returned an invalid response", provider=self.provider_label)
        return PollableJob(
            id=generation_id,
            provider_label=self.provider_label,
            candidate_endpoints=[f"{base}/generations/{{id}}"],
            headers={"Authorization": headers["Authorization"]},
        )


class UnsupportedAdapter:
    """Labels we recognize but cannot serve from a server-side request."""

    def __init__(self, provider_label: str, reason: str):
        self.provider_label = provider_label
        self._reason = reason

    def submit(self, request: GenerationRequest) -> GenerationResult:
        raise ProviderRejected(self._reason, provider=self.provider_label)


# ---------------------------------------------------------------------------
# Video adapters
# ---------------------------------------------------------------------------

RUNWAY_RATIOS = (
    "1280:720", "1920:1080", "1080:1920", "720:720", "960:720", "720:960",
    "1024:1024", "1080:1080", "1168:880", "1360:768", "1440:1080", "1080:1440",
    "1808:768", "2112:912", "1680:720",
)

# model -> (endpoint, attachment kind required)
_RUNWAY_MODELS = {
    "gen4_turbo": ("image_to_video", "image"),
    "gen3a_turbo": ("image_to_video", "image"),
    "gen4_aleph": ("video_to_video", "video"),
    "upscale_v1": ("video_upscale", "video"),
}

_RUNWAY_STATUS_PATHS = ("/v1/tasks/{id}", "/v1/jobs/{id}", "/v1/inference/{id}", "/v1/generations/{id}")


def _snap_duration(value: int | None) -> int:
    return value if value in (5, 10) else 5


def _attachment_data_uri(request: GenerationRequest, default_mime: str) -> str:
    mime = request.attachment_mime or default_mime
    return f"data:{mime};base64,{base64.b64encode(request.attachment or b'').decode('ascii')}"


class RunwayVideoAdapter:
    provider_label = "runway"

    def __init__(self, config: Config, http_client: httpx.Client):
        self._config = config
        self._client = http_client

    def _ratio(self, request: GenerationRequest) -> str:
        width, height = _dimensions(request, self._config)
        ratio = f"{width}:{height}"
        return ratio if ratio in RUNWAY_RATIOS else "1280:720"

    def submit(self, request: GenerationRequest) -> PollableJob:
        model = request.model or self._config.model("runway_video", "gen4_turbo")
        if model not in _RUNWAY_MODELS:
            raise InvalidRequest(f"Runway model '{model}' is not supported", provider=self.provider_label)
        endpoint, needs = _RUNWAY_MODELS[model]
        mime = str(request.attachment_mime or "")
        article = "an" if needs == "image" else "a"
        if not request.attachment:
            raise InvalidRequest(
                f"{model} requires {article} {needs} to be uploaded. Please upload {article} {needs} and try again.",
                provider=self.provider_label,
            )
        if mime and not mime.startswith(f"{needs}/"):
            raise InvalidRequest(f"{model} requires {article} {needs} file.", provider=self.provider_label)

        uri = _attachment_data_uri(request, "image/png" if needs == "image" else "video/mp4")
        body: dict[str, Any] = {"model": model, "ratio": self._ratio(request)}
        if endpoint == "image_to_video":
            body.update(promptImage=uri, promptText=request.prompt, duration=_snap_duration(request.duration_seconds))
        elif endpoint == "video_to_video":
            body.update(videoUri=uri, promptText=request.prompt)
        else:
            body = {"model": model, "videoUri": uri}

        base = self._config.endpoint("runway")
        headers = {
            **_bearer(request.credential.value),
            "X-Runway-Version": self._config.runway_api_version,
        }
        payload = _post_json(
            self._client,
            f"{base}/v1/{endpoint}",
            provider=self.provider_label,
            headers=headers,
            body=body,
        )
        task_id = str(payload.get("id") or "").strip()
        if not task_id:
            raise MalformedResponse("AI service returned an invalid response", provider=self.provider_label)
        logger.info("Runway task %s created (%s)", task_id, model)
        return PollableJob(
            id=task_id,
            provider_label=self.provider_label,
            candidate_endpoints=[f"{base}{path}" for path in _RUNWAY_STATUS_PATHS],
            headers={
                "Authorization": headers["Authorization"],
                "X-Runway-Version": headers["X-Runway-Version"],
            },
        )


_KLING_ASPECTS = {
    "1280:720": "16:9",
    "1920:1080": "16:9",
    "720:1280": "9:16",
    "1080:1920": "9:16",
    "1024:1024": "1:1",
    "1080:1080": "1:1",
    "720:720": "1:1",
}


def kling_aspect_ratio(width: int, height: int) -> str:
    mapped = _KLING_ASPECTS.get(f"{width}:{height}")
    if mapped:
        return mapped
    aspect = width / height
    if aspect > 1.5:
        return "16:9"
    if aspect < 0.6:
        return "9:16"
    return "1:1"


def kling_token(credential: str, now: Callable[[], float] = time.time) -> str:
    """Sign the short-lived HS256 token Kling expects from "access:secret"."""
    access_key, sep, secret_key = str(credential or "").partition(":")
    if not sep or not access_key.strip() or not secret_key.strip():
        raise InvalidRequest(
            "Kling credentials must be formatted as access_key:secret_key",
            provider="kling",
        )
    issued = int(now())
    claims = {"iss": access_key.strip(), "exp": issued + 1800, "nbf": issued - 5}
    return jwt.encode(claims, secret_key.strip(), algorithm="HS256", headers={"typ": "JWT"})


class KlingVideoAdapter:
    provider_label = "kling"

    def __init__(self, config: Config, http_client: httpx.Client):
        self._config = config
        self._client = http_client

    def submit(self, request: GenerationRequest) -> PollableJob:
        width, height = _dimensions(request, self._config)
        token = kling_token(request.credential.value)
        mode = "image2video" if request.attachment else "text2video"
        endpoint = f"{self._config.endpoint('kling')}/v1/videos/{mode}"
        body: dict[str, Any] = {
            "model_name": request.model or self._config.model("kling_video", "kling-v1"),
            "prompt": request.prompt,
            "duration": str(_snap_duration(request.duration_seconds)),
            "aspect_ratio": kling_aspect_ratio(width, height),
            "mode": "pro",
        }
        if request.attachment:
            body["image"] = base64.b64encode(request.attachment).decode("ascii")

        headers = _bearer(token)
        payload = _post_json(self._client, endpoint, provider=self.provider_label, headers=headers, body=body)
        if payload.get("code") != 0:
            message = str(payload.get("message") or "Task creation failed")
            raise ProviderRejected(rewrite_provider_message(self.provider_label, message), provider=self.provider_label)
        data = payload.get("data")
        task_id = str((data or {}).get("task_id") or "").strip() if isinstance(data, dict) else ""
        if not task_id:
            raise MalformedResponse("AI service returned an invalid response", provider=self.provider_label)
        logger.info("Kling task %s created (%s)", task_id, mode)
        return PollableJob(
            id=task_id,
            provider_label=self.provider_label,
            candidate_endpoints=[f"{endpoint}/{{id}}"],
            headers={"Authorization": headers["Authorization"]},
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

AdapterFactory = Callable[[Config, httpx.Client], ProviderAdapter]

REGISTRY: dict[str, AdapterFactory] = {
    "openai-image": OpenAIImageAdapter,
    "openart": OpenArtImageAdapter,
    "leonardo": LeonardoImageAdapter,
    "runway": RunwayVideoAdapter,
    "kling": KlingVideoAdapter,
    "openai-text": OpenAITextAdapter,
    "anthropic": AnthropicTextAdapter,
    "google-text": lambda config, client: GoogleTextAdapter(config),
    "openai-vision": OpenAIVisionAdapter,
    "midjourney": lambda config, client: UnsupportedAdapter(
        "midjourney",
        "Midjourney is not available for direct generation. Please choose another image service.",
    ),
}


def build_adapter(service: str, config: Config, http_client: httpx.Client) -> ProviderAdapter:
    try:
        factory = REGISTRY[service]
    except KeyError:
        raise InvalidRequest(f"Unsupported AI service: {service}", provider=service) from None
    return factory(config, http_client)
