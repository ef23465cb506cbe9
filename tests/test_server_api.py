from __future__ import annotations

import asyncio
import json
import unittest
from unittest.mock import patch

from fastapi.responses import JSONResponse

import server
from schemas.generation import GenerateMediaPayload, GenerationResponse
from schemas.shot_list import ShotListPayload, ShotListResponse, ShotRecord


class _StubPipeline:
    def __init__(self, response=None, status=200):
        self.response = response
        self.status = status
        self.payloads = []

    def generate(self, payload):
        self.payloads.append(payload)
        return self.response, self.status

    def generate_shot_list(self, payload):
        self.payloads.append(payload)
        return self.response, self.status


class GenerationRouteTests(unittest.TestCase):
    def test_generate_image_success_returns_plain_body(self):
        stub = _StubPipeline(
            GenerationResponse(
                success=True,
                media="http://files/u1/images/1-a.png",
                original_media="https://cdn/a.png",
                provider="openart",
                persisted=True,
            )
        )
        with patch.object(server, "build_pipeline", return_value=stub):
            body = asyncio.run(
                server.api_generate_image(GenerateMediaPayload(prompt="a", provider="openart", kind="video"))
            )

        self.assertEqual(body["media"], "http://files/u1/images/1-a.png")
        self.assertEqual(body["originalMedia"], "https://cdn/a.png")
        self.assertNotIn("text", body)
        self.assertEqual(stub.payloads[0].kind, "image")

    def test_generate_video_error_keeps_status(self):
        stub = _StubPipeline(GenerationResponse(success=False, error="Missing required field: prompt"), 400)
        with patch.object(server, "build_pipeline", return_value=stub):
            resp = asyncio.run(server.api_generate_video(GenerateMediaPayload(provider="runway")))

        self.assertIsInstance(resp, JSONResponse)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(json.loads(resp.body)["error"], "Missing required field: prompt")
        self.assertEqual(stub.payloads[0].kind, "video")

    def test_analyze_image_requires_attachment(self):
        stub = _StubPipeline()
        with patch.object(server, "build_pipeline", return_value=stub):
            resp = asyncio.run(server.api_analyze_image(GenerateMediaPayload(prompt="what is this", provider="gpt")))

        self.assertEqual(resp.status_code, 400)
        self.assertEqual(stub.payloads, [])

    def test_analyze_image_never_persists(self):
        stub = _StubPipeline(GenerationResponse(success=True, text="A lighthouse.", provider="openai-vision"))
        with patch.object(server, "build_pipeline", return_value=stub):
            body = asyncio.run(
                server.api_analyze_image(
                    GenerateMediaPayload(prompt="describe", provider="gpt", attachment_base64="QUJD", caller_id="u1")
                )
            )

        self.assertEqual(body["text"], "A lighthouse.")
        self.assertEqual((stub.payloads[0].kind, stub.payloads[0].persist_requested), ("vision", False))


class ShotListRouteTests(unittest.TestCase):
    def test_shot_list_success(self):
        stub = _StubPipeline(ShotListResponse(success=True, shots=[ShotRecord(shot_number=1)], count=1))
        with patch.object(server, "build_pipeline", return_value=stub):
            body = asyncio.run(server.api_generate_shot_list(ShotListPayload(screenplay="INT. ROOM - DAY")))

        self.assertEqual(body["count"], 1)
        self.assertEqual(body["shots"][0]["shot_type"], "wide")
        self.assertNotIn("hint", body)

    def test_shot_list_parse_failure(self):
        stub = _StubPipeline(
            ShotListResponse(success=False, error="Failed to parse AI response.", details="oops", hint="check details"),
            500,
        )
        with patch.object(server, "build_pipeline", return_value=stub):
            resp = asyncio.run(server.api_generate_shot_list(ShotListPayload(screenplay="INT. ROOM - DAY")))

        self.assertEqual(resp.status_code, 500)
        self.assertEqual(json.loads(resp.body)["details"], "oops")


class HealthRouteTests(unittest.TestCase):
    def test_health_lists_missing_keys(self):
        with patch.object(server, "pipeline_config", server.config.Config(env_keys={"openai": "sk"})):
            body = asyncio.run(server.api_health())
        self.assertEqual(body["status"], "ok")
        self.assertEqual(len(body["warnings"]), 2)
        self.assertFalse(any("OPENAI" in warning for warning in body["warnings"]))


if __name__ == "__main__":
    unittest.main()
