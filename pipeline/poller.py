"""Job poller — drive a PollableJob to a terminal state.

State machine (TRANSITIONS is the only place transitions are defined):

    pending    --accepted-->   processing
    pending    --succeeded-->  succeeded
    processing --succeeded-->  succeeded
    *          --failed-->     failed
    *          --exhausted-->  timed_out

Each tick tries the job's candidate status endpoints in order and uses the
first one that answers 2xx. Non-2xx answers and transport errors move on to
the next candidate within the same tick; a tick where no candidate answers
just counts as an attempt.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx

from config import Config
from pipeline.errors import (
    CONTENT_POLICY_MESSAGE,
    MalformedResponse,
    PollTimeout,
    ProviderReportedFailure,
    is_content_policy_message,
    provider_display_name,
)
from schemas.generation import InlineBytes, PollableJob, RemoteUrl

logger = logging.getLogger(__name__)

TERMINAL_STATES = {"succeeded", "failed", "timed_out"}

TRANSITIONS: dict[tuple[str, str], str] = {
    ("pending", "accepted"): "processing",
    ("pending", "succeeded"): "succeeded",
    ("pending", "failed"): "failed",
    ("pending", "exhausted"): "timed_out",
    ("processing", "accepted"): "processing",
    ("processing", "succeeded"): "succeeded",
    ("processing", "failed"): "failed",
    ("processing", "exhausted"): "timed_out",
}

_SUCCESS_STATUSES = {"succeeded", "succeed", "success", "completed", "complete"}
_FAILURE_STATUSES = {"failed", "failure", "aborted", "cancelled", "canceled", "error"}


def advance(status: str, event: str) -> str:
    """Return the next status, or raise ValueError for an illegal transition."""
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise ValueError(f"Illegal job transition: {status} --{event}-->") from None


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------

def _containers(payload: Any) -> list[Any]:
    """The payload itself plus the nested objects providers put results in."""
    nodes = [payload]
    if isinstance(payload, dict):
        for key in ("data", "generations_by_pk", "task"):
            inner = payload.get(key)
            if isinstance(inner, dict):
                nodes.append(inner)
    return nodes


def read_status(payload: Any) -> str:
    for node in _containers(payload):
        if not isinstance(node, dict):
            continue
        for key in ("status", "task_status", "state"):
            value = str(node.get(key) or "").strip().lower()
            if value:
                return value
    return ""


def read_failure_reason(payload: Any) -> str:
    for node in reversed(_containers(payload)):
        if not isinstance(node, dict):
            continue
        for key in ("failure", "failureReason", "task_status_msg", "error", "message"):
            value = node.get(key)
            if isinstance(value, dict):
                value = value.get("message")
            text = str(value or "").strip()
            # Kling answers "SUCCEED" at the envelope level even for failed tasks.
            if text and text.lower() not in _SUCCESS_STATUSES:
                return text
    return "Generation failed"


def _first_url(items: Any) -> str:
    if not isinstance(items, list):
        return ""
    for item in items:
        if isinstance(item, str) and item.strip():
            return item.strip()
        if isinstance(item, dict):
            for key in ("url", "image_url", "video_url"):
                text = str(item.get(key) or "").strip()
                if text:
                    return text
    return ""


def _media_from_container(container: Any) -> str:
    """Extraction order: bare array, images array, image_url, url."""
    if isinstance(container, list):
        return _first_url(container)
    if not isinstance(container, dict):
        return ""
    for key in ("images", "generated_images", "videos"):
        url = _first_url(container.get(key))
        if url:
            return url
    for key in ("image_url", "url", "video_url"):
        text = str(container.get(key) or "").strip()
        if text:
            return text
    return ""


def extract_media(payload: Any) -> RemoteUrl | InlineBytes | None:
    """Pull the result media out of a succeeded job's status payload."""
    candidates: list[Any] = []
    for node in _containers(payload):
        if isinstance(node, dict):
            for key in ("output", "task_result", "result"):
                if key in node:
                    candidates.append(node[key])
    candidates.extend(_containers(payload))

    for container in candidates:
        url = _media_from_container(container)
        if url.startswith("data:") and ";base64," in url:
            header, b64 = url.split(",", 1)
            return InlineBytes(mime=header[5:].split(";", 1)[0] or "image/png", b64=b64)
        if url:
            return RemoteUrl(url=url)
    return None


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------

class JobPoller:
    def __init__(
        self,
        client: httpx.Client,
        config: Config,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self._sleep = sleep
        self._interval = config.poll_interval_seconds
        self._max_attempts = max(1, int(config.max_poll_attempts))

    def _fetch_status(self, job: PollableJob) -> dict[str, Any] | None:
        for url in job.endpoints():
            try:
                response = self._client.get(url, headers=job.headers)
            except httpx.HTTPError as exc:
                logger.debug("Status check %s failed: %s", url, exc)
                continue
            if not response.is_success:
                logger.debug("Status check %s answered HTTP %d", url, response.status_code)
                continue
            try:
                payload = response.json()
            except ValueError:
                logger.debug("Status check %s returned non-JSON body", url)
                continue
            if isinstance(payload, dict):
                return payload
        return None

    def tick(self, job: PollableJob) -> PollableJob:
        """Perform one status check and apply the resulting transition."""
        job.attempt += 1
        payload = self._fetch_status(job)
        if payload is None:
            return job

        status = read_status(payload)
        if status in _SUCCESS_STATUSES:
            job.result = extract_media(payload)
            job.status = advance(job.status, "succeeded")
            if job.result is None:
                job.error = "Job succeeded but no media was returned"
        elif status in _FAILURE_STATUSES:
            job.error = read_failure_reason(payload)
            job.status = advance(job.status, "failed")
        else:
            job.status = advance(job.status, "accepted")
        return job

    def run(self, job: PollableJob) -> PollableJob:
        """Poll until terminal. Raises on failure or timeout."""
        logger.info(
            "Polling %s job %s (every %.1fs, max %d attempts)",
            job.provider_label, job.id, self._interval, self._max_attempts,
        )
        while job.status not in TERMINAL_STATES:
            if job.attempt >= self._max_attempts:
                job.status = advance(job.status, "exhausted")
                break
            if job.attempt > 0:
                self._sleep(self._interval)
            self.tick(job)
            logger.debug("Job %s attempt %d: %s", job.id, job.attempt, job.status)

        if job.status == "succeeded":
            if job.result is None:
                raise MalformedResponse(job.error or "Job succeeded without media", provider=job.provider_label)
            logger.info("%s job %s succeeded after %d attempt(s)", job.provider_label, job.id, job.attempt)
            return job
        if job.status == "failed":
            reason = job.error or "Generation failed"
            if is_content_policy_message(reason):
                raise ProviderReportedFailure(CONTENT_POLICY_MESSAGE, provider=job.provider_label, details=reason)
            raise ProviderReportedFailure(
                f"{provider_display_name(job.provider_label)} generation failed: {reason}",
                provider=job.provider_label,
                details=reason,
            )
        job.error = f"Timed out after {job.attempt} status checks"
        raise PollTimeout(
            f"{provider_display_name(job.provider_label)} generation timed out. Please try again.",
            provider=job.provider_label,
        )
