from __future__ import annotations

import unittest

import httpx

from config import Config
from pipeline.errors import CONTENT_POLICY_MESSAGE, MalformedResponse, PollTimeout, ProviderReportedFailure
from pipeline.poller import TRANSITIONS, JobPoller, advance, extract_media
from schemas.generation import InlineBytes, PollableJob, RemoteUrl


def _job(
    endpoints=("https://api.test/v1/tasks/{id}", "https://api.test/v1/jobs/{id}"),
    provider_label="runway",
):
    return PollableJob(
        id="task-1",
        provider_label=provider_label,
        candidate_endpoints=list(endpoints),
        headers={"Authorization": "Bearer k"},
    )


class TransitionTableTests(unittest.TestCase):
    def test_happy_path(self):
        self.assertEqual(advance("pending", "accepted"), "processing")
        self.assertEqual(advance("processing", "accepted"), "processing")
        self.assertEqual(advance("processing", "succeeded"), "succeeded")

    def test_every_live_state_can_fail_or_time_out(self):
        for state in ("pending", "processing"):
            self.assertEqual(advance(state, "failed"), "failed")
            self.assertEqual(advance(state, "exhausted"), "timed_out")

    def test_terminal_states_have_no_exits(self):
        for state in ("succeeded", "failed", "timed_out"):
            self.assertFalse([key for key in TRANSITIONS if key[0] == state])
            with self.assertRaises(ValueError):
                advance(state, "accepted")


class ExtractMediaTests(unittest.TestCase):
    def test_bare_output_array(self):
        self.assertEqual(extract_media({"status": "SUCCEEDED", "output": ["https://cdn/v.mp4"]}).url, "https://cdn/v.mp4")

    def test_images_array_beats_url(self):
        payload = {"output": {"images": [{"url": "https://cdn/a.png"}], "url": "https://cdn/b.png"}}
        self.assertEqual(extract_media(payload).url, "https://cdn/a.png")

    def test_image_url_beats_url(self):
        payload = {"output": {"image_url": "https://cdn/a.png", "url": "https://cdn/b.png"}}
        self.assertEqual(extract_media(payload).url, "https://cdn/a.png")

    def test_kling_task_result(self):
        payload = {"code": 0, "data": {"task_status": "succeed", "task_result": {"videos": [{"url": "https://k/v.mp4"}]}}}
        self.assertEqual(extract_media(payload).url, "https://k/v.mp4")

    def test_leonardo_generated_images(self):
        payload = {"generations_by_pk": {"status": "COMPLETE", "generated_images": [{"url": "https://l/0.png"}]}}
        self.assertEqual(extract_media(payload).url, "https://l/0.png")

    def test_data_url_becomes_inline_bytes(self):
        media = extract_media({"output": ["data:image/webp;base64,AAAA"]})
        self.assertIsInstance(media, InlineBytes)
        self.assertEqual((media.mime, media.b64), ("image/webp", "AAAA"))

    def test_nothing_to_extract(self):
        self.assertIsNone(extract_media({"status": "SUCCEEDED", "output": []}))


class JobPollerTests(unittest.TestCase):
    def setUp(self):
        self.sleeps: list[float] = []
        self.config = Config(poll_interval_seconds=5, max_poll_attempts=3)

    def _poller(self, handler):
        client = httpx.Client(transport=httpx.MockTransport(handler))
        self.addCleanup(client.close)
        return JobPoller(client, self.config, sleep=self.sleeps.append)

    def test_advances_past_failing_candidate_and_processing(self):
        statuses = iter(["PROCESSING", "SUCCEEDED"])
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            if request.url.path.startswith("/v1/tasks/"):
                return httpx.Response(404, json={"error": "not found"})
            status = next(statuses)
            body = {"status": status}
            if status == "SUCCEEDED":
                body["output"] = ["https://cdn.test/video.mp4"]
            return httpx.Response(200, json=body)

        job = self._poller(handler).run(_job())

        self.assertEqual(job.status, "succeeded")
        self.assertEqual(job.result, RemoteUrl(url="https://cdn.test/video.mp4"))
        self.assertEqual(job.attempt, 2)
        self.assertEqual(self.sleeps, [5])
        self.assertEqual(seen, ["/v1/tasks/task-1", "/v1/jobs/task-1"] * 2)

    def test_transport_error_moves_to_next_candidate(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if "/tasks/" in request.url.path:
                raise httpx.ConnectError("boom", request=request)
            return httpx.Response(200, json={"status": "SUCCEEDED", "output": ["https://cdn.test/v.mp4"]})

        job = self._poller(handler).run(_job())
        self.assertEqual(job.attempt, 1)
        self.assertEqual(self.sleeps, [])

    def test_provider_reported_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "FAILED", "failure": "Content moderation"})

        job = _job()
        with self.assertRaises(ProviderReportedFailure) as ctx:
            self._poller(handler).run(job)
        self.assertEqual(job.status, "failed")
        self.assertEqual(str(ctx.exception), CONTENT_POLICY_MESSAGE)
        self.assertEqual(ctx.exception.details, "Content moderation")

    def test_kling_failure_message(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={"code": 0, "message": "SUCCEED", "data": {"task_status": "failed", "task_status_msg": "Risk control"}},
            )

        with self.assertRaises(ProviderReportedFailure) as ctx:
            self._poller(handler).run(_job(["https://k.test/v1/videos/text2video/{id}"], provider_label="kling"))
        self.assertEqual(str(ctx.exception), "Kling generation failed: Risk control")

    def test_kling_envelope_success_message_is_not_a_reason(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"code": 0, "message": "SUCCEED", "data": {"task_status": "failed"}})

        with self.assertRaises(ProviderReportedFailure) as ctx:
            self._poller(handler).run(_job(["https://k.test/v1/videos/text2video/{id}"], provider_label="kling"))
        self.assertEqual(str(ctx.exception), "Kling generation failed: Generation failed")
        self.assertEqual(ctx.exception.details, "Generation failed")

    def test_times_out_after_max_attempts(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "PENDING"})

        job = _job()
        with self.assertRaises(PollTimeout) as ctx:
            self._poller(handler).run(job)
        self.assertEqual(ctx.exception.kind, "Timeout")
        self.assertEqual(job.status, "timed_out")
        self.assertEqual(job.attempt, 3)
        self.assertEqual(self.sleeps, [5, 5])

    def test_unanswered_ticks_still_count(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        job = _job()
        with self.assertRaises(PollTimeout):
            self._poller(handler).run(job)
        self.assertEqual(job.attempt, 3)

    def test_success_without_media_is_malformed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "SUCCEEDED", "output": []})

        with self.assertRaises(MalformedResponse):
            self._poller(handler).run(_job())


if __name__ == "__main__":
    unittest.main()
