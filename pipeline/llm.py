"""LLM client — text and vision calls across OpenAI, Anthropic and Google.

Clients are built per request because every request may carry a different
caller's key. Submissions are never retried (max_retries=0): a failed
generation is reported, not replayed.

Error handling:
  - SDK exceptions are converted into ProviderRejected with a message that
    is safe to show callers (content-policy rejections keep a distinct one).
  - The detailed SDK message is logged, never returned.
"""

from __future__ import annotations

import base64
import logging
from typing import Any

import anthropic
import httpx
import openai

from config import Config
from pipeline.errors import (
    GenerationError,
    InvalidRequest,
    MalformedResponse,
    ProviderRejected,
    rewrite_provider_message,
)
from schemas.generation import GenerationRequest, GenerationResult, RawModelText

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error helpers
# ---------------------------------------------------------------------------

def _extract_error_message(exc: Exception, provider: str, model: str) -> str:
    """Pull out a clean, human-readable error message from an API exception."""

    msg = str(exc)

    if isinstance(exc, (openai.AuthenticationError, anthropic.AuthenticationError)):
        return f"[{provider}] Authentication failed, check the {provider} API key."
    if isinstance(exc, openai.NotFoundError):
        return f"[{provider}] Model '{model}' not found."
    if isinstance(exc, openai.PermissionDeniedError):
        return f"[{provider}] Permission denied, your API key may not have access to '{model}'."
    if isinstance(exc, openai.APIStatusError):
        # OpenAI puts the useful text in body["error"]["message"]
        body = getattr(exc, "body", None)
        if isinstance(body, dict):
            inner = body.get("error", body)
            if isinstance(inner, dict):
                msg = inner.get("message", msg)
        return f"[{provider}/{model}] {msg}"

    if len(msg) > 300:
        msg = msg[:300] + "..."
    return f"[{provider}/{model}] {msg}"


def sdk_error(exc: Exception, provider: str, model: str) -> GenerationError:
    """Convert an SDK exception into the pipeline's error taxonomy."""
    if isinstance(exc, GenerationError):
        return exc
    detail = _extract_error_message(exc, provider, model)
    status_code = getattr(exc, "status_code", None)
    logger.error("Provider call failed: %s", detail)
    return ProviderRejected(
        rewrite_provider_message(provider, detail, status_code),
        provider=provider,
        status_code=status_code,
        details=detail,
    )


# ---------------------------------------------------------------------------
# Client factories
# ---------------------------------------------------------------------------

def openai_client(api_key: str, http_client: httpx.Client | None = None):
    return openai.OpenAI(api_key=api_key, http_client=http_client, max_retries=0)


def anthropic_client(api_key: str, http_client: httpx.Client | None = None):
    return anthropic.Anthropic(api_key=api_key, http_client=http_client, max_retries=0)


def google_client(api_key: str):
    from google import genai
    return genai.Client(api_key=api_key)


# Models that require max_completion_tokens instead of the legacy max_tokens.
_OPENAI_NEW_TOKEN_PARAM_PREFIXES = (
    "gpt-4.1", "gpt-4.5", "gpt-5", "o1", "o3", "o4",
)


def _openai_token_kwargs(model: str, max_tokens: int) -> dict[str, int]:
    if any(model.startswith(prefix) for prefix in _OPENAI_NEW_TOKEN_PARAM_PREFIXES):
        return {"max_completion_tokens": max_tokens}
    return {"max_tokens": max_tokens}


# ---------------------------------------------------------------------------
# Text adapters
# ---------------------------------------------------------------------------

class OpenAITextAdapter:
    provider_label = "openai"

    def __init__(self, config: Config, http_client: httpx.Client | None = None):
        self._config = config
        self._http_client = http_client

    def complete(
        self,
        *,
        prompt: str,
        api_key: str,
        system: str = "",
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> RawModelText:
        model = model or self._config.model("openai_text", "gpt-4o")
        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        try:
            client = openai_client(api_key, self._http_client)
            response = client.chat.completions.create(
                model=model,
                messages=messages,
                **_openai_token_kwargs(model, max_tokens or self._config.shot_list_max_tokens),
            )
        except Exception as exc:
            raise sdk_error(exc, self.provider_label, model) from exc
        try:
            text = response.choices[0].message.content or ""
        except (AttributeError, IndexError) as exc:
            raise MalformedResponse("AI service returned an invalid response", provider=self.provider_label) from exc
        return RawModelText(text=text, provider_label=self.provider_label, model=model)

    def submit(self, request: GenerationRequest) -> RawModelText:
        return self.complete(prompt=request.prompt, api_key=request.credential.value, model=request.model)


class AnthropicTextAdapter:
    provider_label = "anthropic"

    def __init__(self, config: Config, http_client: httpx.Client | None = None):
        self._config = config
        self._http_client = http_client

    def complete(
        self,
        *,
        prompt: str,
        api_key: str,
        system: str = "",
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> RawModelText:
        model = model or self._config.model("anthropic_text", "claude-3-5-sonnet-20241022")
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens or self._config.shot_list_max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system
        try:
            client = anthropic_client(api_key, self._http_client)
            response = client.messages.create(**kwargs)
        except Exception as exc:
            raise sdk_error(exc, self.provider_label, model) from exc
        parts = [
            getattr(block, "text", "")
            for block in (getattr(response, "content", None) or [])
            if getattr(block, "type", "") == "text"
        ]
        if not parts:
            raise MalformedResponse("AI service returned an invalid response", provider=self.provider_label)
        return RawModelText(text="".join(parts), provider_label=self.provider_label, model=model)

    def submit(self, request: GenerationRequest) -> RawModelText:
        return self.complete(prompt=request.prompt, api_key=request.credential.value, model=request.model)


class GoogleTextAdapter:
    provider_label = "google"

    def __init__(self, config: Config):
        self._config = config

    def complete(
        self,
        *,
        prompt: str,
        api_key: str,
        system: str = "",
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> RawModelText:
        from google.genai import types

        model = model or self._config.model("google_text", "gemini-2.5-flash")
        cfg = types.GenerateContentConfig(
            system_instruction=system or None,
            max_output_tokens=max_tokens or self._config.shot_list_max_tokens,
        )
        try:
            client = google_client(api_key)
            response = client.models.generate_content(model=model, contents=prompt, config=cfg)
        except Exception as exc:
            raise sdk_error(exc, self.provider_label, model) from exc
        text = getattr(response, "text", None)
        if not text:
            raise MalformedResponse("AI service returned an invalid response", provider=self.provider_label)
        return RawModelText(text=text, provider_label=self.provider_label, model=model)

    def submit(self, request: GenerationRequest) -> RawModelText:
        return self.complete(prompt=request.prompt, api_key=request.credential.value, model=request.model)


# ---------------------------------------------------------------------------
# Vision
# ---------------------------------------------------------------------------

class OpenAIVisionAdapter:
    """Describe an attached image (used to derive prompts from references)."""

    provider_label = "openai-vision"

    def __init__(self, config: Config, http_client: httpx.Client | None = None):
        self._config = config
        self._http_client = http_client

    def submit(self, request: GenerationRequest) -> GenerationResult:
        if not request.attachment:
            raise InvalidRequest("An image attachment is required for analysis", provider=self.provider_label)
        model = request.model or self._config.model("openai_vision", "gpt-4o-mini")
        mime = request.attachment_mime or "image/png"
        data_url = f"data:{mime};base64,{base64.b64encode(request.attachment).decode('ascii')}"
        try:
            client = openai_client(request.credential.value, self._http_client)
            response = client.chat.completions.create(
                model=model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": request.prompt},
                            {"type": "image_url", "image_url": {"url": data_url}},
                        ],
                    }
                ],
                **_openai_token_kwargs(model, 1000),
            )
        except Exception as exc:
            raise sdk_error(exc, self.provider_label, model) from exc
        try:
            text = response.choices[0].message.content or ""
        except (AttributeError, IndexError) as exc:
            raise MalformedResponse("AI service returned an invalid response", provider=self.provider_label) from exc
        if not text.strip():
            raise MalformedResponse("AI service returned an empty analysis", provider=self.provider_label)
        return GenerationResult(success=True, text=text.strip(), provider_label=self.provider_label)
