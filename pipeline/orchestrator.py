"""Generation orchestrator — one request from payload to response.

    pre-flight -> resolve credential -> route -> submit -> (poll) -> persist

Every failure surfaces as a GenerationError and is converted to a response
here and nowhere else. Each call builds its own HTTP client, so concurrent
requests share nothing.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import time
from contextlib import contextmanager
from typing import Callable, Iterator

import httpx

from config import Config
from pipeline.credentials import SENTINELS, CredentialResolver
from pipeline.errors import GenerationError, InvalidRequest, MalformedResponse, ParseFailure
from pipeline.persistence import AssetPersister, BlobStore, PersistDestination
from pipeline.poller import JobPoller
from pipeline.providers import CREDENTIAL_SERVICE, ProviderAdapter, build_adapter, resolve_route
from pipeline.recovery import recover_shot_records
from prompts.shot_list_system import build_shot_list_prompts
from schemas.generation import (
    GenerateMediaPayload,
    GenerationRequest,
    GenerationResponse,
    GenerationResult,
    PollableJob,
    RawModelText,
)
from schemas.shot_list import ShotListPayload, ShotListResponse

logger = logging.getLogger(__name__)

PARSE_FAILURE_HINT = (
    "The AI may have returned malformed JSON. Check the details field for the actual response."
)

AdapterBuilder = Callable[[str, Config, httpx.Client], ProviderAdapter]

# Caller ids become the first storage path segment.
_CALLER_ID_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.@-]*")


def _decode_attachment(payload: GenerateMediaPayload) -> bytes | None:
    raw = str(payload.attachment_base64 or "").strip()
    if not raw:
        return None
    if raw.startswith("data:") and "," in raw:
        raw = raw.split(",", 1)[1]
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidRequest("attachment_base64 is not valid base64") from exc


def _attachment_mime(payload: GenerateMediaPayload) -> str | None:
    if payload.attachment_mime:
        return payload.attachment_mime
    raw = str(payload.attachment_base64 or "")
    if raw.startswith("data:") and ";" in raw:
        return raw[5:].split(";", 1)[0] or None
    return None


class GenerationPipeline:
    def __init__(
        self,
        config: Config,
        resolver: CredentialResolver,
        blob_store: BlobStore,
        *,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        adapter_builder: AdapterBuilder = build_adapter,
    ):
        self._config = config
        self._resolver = resolver
        self._blob_store = blob_store
        self._http_client = http_client
        self._sleep = sleep
        self._adapter_builder = adapter_builder

    @contextmanager
    def _client(self) -> Iterator[httpx.Client]:
        if self._http_client is not None:
            yield self._http_client
            return
        with httpx.Client(timeout=self._config.http_timeout_seconds) as client:
            yield client

    # ------------------------------------------------------------------
    # Media generation
    # ------------------------------------------------------------------

    @staticmethod
    def _preflight(payload: GenerateMediaPayload):
        if not payload.prompt.strip():
            raise InvalidRequest("Missing required field: prompt")
        if not payload.provider.strip():
            raise InvalidRequest("Missing required field: provider")
        if payload.credential is None:
            raise InvalidRequest("Missing required field: credential")
        caller_id = str(payload.caller_id or "").strip()
        if caller_id and (not _CALLER_ID_RE.fullmatch(caller_id) or ".." in caller_id):
            raise InvalidRequest("callerId may only contain letters, digits, '.', '_', '-' and '@'")
        if payload.credential.strip().lower() in SENTINELS and not caller_id:
            raise InvalidRequest("callerId is required when the credential is looked up server-side")
        if payload.persist_requested and payload.kind in ("image", "video") and not caller_id:
            raise InvalidRequest("callerId is required when persistence is requested")

    def generate(self, payload: GenerateMediaPayload) -> tuple[GenerationResponse, int]:
        """Run one generation request. Returns (response, http_status)."""
        provider_label = payload.provider
        try:
            self._preflight(payload)
            route = resolve_route(payload.provider, payload.kind, payload.model)
            provider_label = route.service
            credential = self._resolver.resolve(
                CREDENTIAL_SERVICE.get(route.service, route.service),
                payload.caller_id,
                payload.credential,
            )
            logger.info(
                "Generating %s via %s/%s (key %s from %s)",
                payload.kind, route.service, route.model or "default",
                credential.masked(), credential.origin,
            )
            request = GenerationRequest(
                kind=payload.kind,
                provider=route.service,
                model=route.model,
                prompt=payload.prompt.strip(),
                dimensions=payload.dimensions,
                attachment=_decode_attachment(payload),
                attachment_mime=_attachment_mime(payload),
                duration_seconds=payload.duration_seconds,
                credential=credential,
            )
            with self._client() as client:
                return self._run(request, payload, client), 200
        except GenerationError as exc:
            logger.warning("Generation via %s failed (%s): %s", provider_label, exc.kind, exc)
            return GenerationResponse(success=False, error=str(exc), error_kind=exc.kind, provider=provider_label), exc.http_status
        except Exception:
            logger.exception("Unexpected generation failure via %s", provider_label)
            return GenerationResponse(success=False, error="Internal server error", provider=provider_label), 500

    def _run(
        self,
        request: GenerationRequest,
        payload: GenerateMediaPayload,
        client: httpx.Client,
    ) -> GenerationResponse:
        adapter = self._adapter_builder(request.provider, self._config, client)
        outcome = adapter.submit(request)

        if isinstance(outcome, RawModelText):
            return GenerationResponse(success=True, text=outcome.text, provider=request.provider)

        if isinstance(outcome, PollableJob):
            JobPoller(client, self._config, sleep=self._sleep).run(outcome)
            media = outcome.result
        elif isinstance(outcome, GenerationResult):
            if outcome.text is not None:
                return GenerationResponse(success=True, text=outcome.text, provider=request.provider)
            media = outcome.media
        else:
            media = None
        if media is None:
            raise MalformedResponse("AI service returned an invalid response", provider=request.provider)

        original = media.reference()
        if not payload.persist_requested:
            return GenerationResponse(success=True, media=original, original_media=original, provider=request.provider)

        persister = AssetPersister(self._blob_store, client)
        result = persister.persist(
            media,
            PersistDestination(
                caller_id=str(payload.caller_id).strip(),
                category="videos" if request.kind == "video" else "images",
                name=payload.filename or request.prompt,
            ),
        )
        return GenerationResponse(
            success=True,
            media=result.url,
            original_media=result.original,
            provider=request.provider,
            persisted=result.persisted,
        )

    # ------------------------------------------------------------------
    # Shot list breakdown
    # ------------------------------------------------------------------

    def generate_shot_list(self, payload: ShotListPayload) -> tuple[ShotListResponse, int]:
        provider_label = payload.provider
        try:
            if not payload.screenplay.strip():
                raise InvalidRequest("Missing required field: screenplay")
            route = resolve_route(payload.provider or "openai", "text", payload.model)
            provider_label = route.service
            credential = self._resolver.resolve(
                CREDENTIAL_SERVICE.get(route.service, route.service),
                payload.caller_id,
                payload.credential,
            )
            system, user = build_shot_list_prompts(payload.screenplay, payload.page_number, payload.scene_heading)
            with self._client() as client:
                adapter = self._adapter_builder(route.service, self._config, client)
                raw = adapter.complete(
                    system=system,
                    prompt=user,
                    api_key=credential.value,
                    model=route.model,
                    max_tokens=self._config.shot_list_max_tokens,
                )
            logger.info("Shot list response from %s: %d chars", raw.provider_label, len(raw.text))
            shots = recover_shot_records(raw.text)
        except ParseFailure as exc:
            logger.warning("Shot list recovery failed via %s: %s", provider_label, exc)
            return ShotListResponse(success=False, error=str(exc), details=exc.details, hint=PARSE_FAILURE_HINT), 500
        except GenerationError as exc:
            logger.warning("Shot list via %s failed (%s): %s", provider_label, exc.kind, exc)
            return ShotListResponse(success=False, error=str(exc)), exc.http_status
        except Exception as exc:
            logger.exception("Unexpected shot list failure via %s", provider_label)
            return ShotListResponse(success=False, error="Internal server error", details=str(exc)), 500

        return ShotListResponse(success=True, shots=shots, count=len(shots)), 200
