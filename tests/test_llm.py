from __future__ import annotations

import unittest
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import openai

from config import Config
from pipeline.errors import CONTENT_POLICY_MESSAGE, InvalidRequest, MalformedResponse, ProviderRejected
from pipeline.llm import (
    AnthropicTextAdapter,
    GoogleTextAdapter,
    OpenAITextAdapter,
    OpenAIVisionAdapter,
    _openai_token_kwargs,
    sdk_error,
)
from schemas.generation import GenerationRequest, ResolvedCredential


def _openai_status_error(cls, status, body):
    response = httpx.Response(status, request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    return cls("provider said no", response=response, body=body)


def _chat_client(content, calls):
    def create(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])

    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


class SdkErrorTests(unittest.TestCase):
    def test_auth_failure_is_genericized(self):
        exc = _openai_status_error(openai.AuthenticationError, 401, {"error": {"message": "Incorrect API key sk-abc"}})
        err = sdk_error(exc, "openai", "gpt-4o")

        self.assertIsInstance(err, ProviderRejected)
        self.assertEqual(err.status_code, 401)
        self.assertEqual(str(err), "Openai request failed (HTTP 401). Please check your API key and try again.")
        self.assertNotIn("sk-abc", str(err))

    def test_content_policy_body_gets_distinct_message(self):
        generic_exc = _openai_status_error(openai.BadRequestError, 400, {"error": {"message": "Your request was rejected"}})
        policy_exc = _openai_status_error(
            openai.BadRequestError, 400, {"error": {"message": "content_policy_violation: rejected"}}
        )
        self.assertEqual(str(sdk_error(policy_exc, "openai-image", "dall-e-3")), CONTENT_POLICY_MESSAGE)
        self.assertNotEqual(str(sdk_error(generic_exc, "openai-image", "dall-e-3")), CONTENT_POLICY_MESSAGE)

    def test_generation_errors_pass_through(self):
        original = InvalidRequest("bad")
        self.assertIs(sdk_error(original, "openai", "gpt-4o"), original)


class TokenParamTests(unittest.TestCase):
    def test_new_models_use_max_completion_tokens(self):
        self.assertEqual(_openai_token_kwargs("gpt-5-mini", 10), {"max_completion_tokens": 10})
        self.assertEqual(_openai_token_kwargs("o3", 10), {"max_completion_tokens": 10})
        self.assertEqual(_openai_token_kwargs("gpt-4o", 10), {"max_tokens": 10})


class TextAdapterTests(unittest.TestCase):
    def test_openai_sends_system_and_user_messages(self):
        calls = []
        with patch("pipeline.llm.openai_client", return_value=_chat_client('[{"shot_type": "wide"}]', calls)):
            raw = OpenAITextAdapter(Config()).complete(prompt="scene", api_key="k", system="sys", max_tokens=123)

        self.assertEqual(raw.text, '[{"shot_type": "wide"}]')
        self.assertEqual(raw.model, "gpt-4o")
        self.assertEqual([m["role"] for m in calls[0]["messages"]], ["system", "user"])
        self.assertEqual(calls[0]["max_tokens"], 123)

    def test_anthropic_joins_text_blocks(self):
        calls = []

        def create(**kwargs):
            calls.append(kwargs)
            return SimpleNamespace(
                content=[
                    SimpleNamespace(type="text", text="[{"),
                    SimpleNamespace(type="tool_use"),
                    SimpleNamespace(type="text", text="}]"),
                ]
            )

        fake = SimpleNamespace(messages=SimpleNamespace(create=create))
        with patch("pipeline.llm.anthropic_client", return_value=fake):
            raw = AnthropicTextAdapter(Config()).complete(prompt="scene", api_key="k", system="sys")

        self.assertEqual(raw.text, "[{}]")
        self.assertEqual(calls[0]["system"], "sys")
        self.assertEqual(calls[0]["max_tokens"], 4000)

    def test_anthropic_without_text_is_malformed(self):
        fake = SimpleNamespace(messages=SimpleNamespace(create=lambda **kwargs: SimpleNamespace(content=[])))
        with patch("pipeline.llm.anthropic_client", return_value=fake):
            with self.assertRaises(MalformedResponse):
                AnthropicTextAdapter(Config()).complete(prompt="scene", api_key="k")

    def test_google_passes_system_instruction(self):
        calls = []

        def generate_content(**kwargs):
            calls.append(kwargs)
            return SimpleNamespace(text="[]")

        fake = SimpleNamespace(models=SimpleNamespace(generate_content=generate_content))
        with patch("pipeline.llm.google_client", return_value=fake):
            raw = GoogleTextAdapter(Config()).complete(prompt="scene", api_key="k", system="sys", max_tokens=50)

        self.assertEqual(raw.text, "[]")
        self.assertEqual(calls[0]["model"], "gemini-2.5-flash")
        self.assertEqual(calls[0]["config"].system_instruction, "sys")
        self.assertEqual(calls[0]["config"].max_output_tokens, 50)

    def test_sdk_exception_becomes_provider_rejected(self):
        def boom(**kwargs):
            raise RuntimeError("connection reset by peer")

        fake = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=boom)))
        with patch("pipeline.llm.openai_client", return_value=fake):
            with self.assertRaises(ProviderRejected) as ctx:
                OpenAITextAdapter(Config()).complete(prompt="scene", api_key="k")
        self.assertIn("connection reset", ctx.exception.details)


class VisionAdapterTests(unittest.TestCase):
    def _request(self, **overrides):
        fields = {
            "kind": "vision",
            "provider": "openai-vision",
            "prompt": "Describe this frame",
            "credential": ResolvedCredential(value="k", origin="explicit", service="openai"),
        }
        fields.update(overrides)
        return GenerationRequest(**fields)

    def test_image_is_sent_as_data_url(self):
        calls = []
        with patch("pipeline.llm.openai_client", return_value=_chat_client("  A lighthouse at night. ", calls)):
            result = OpenAIVisionAdapter(Config()).submit(self._request(attachment=b"abc", attachment_mime="image/jpeg"))

        self.assertEqual(result.text, "A lighthouse at night.")
        content = calls[0]["messages"][0]["content"]
        self.assertEqual(content[1]["image_url"]["url"], "data:image/jpeg;base64,YWJj")
        self.assertEqual(calls[0]["model"], "gpt-4o-mini")

    def test_missing_attachment_is_invalid(self):
        with self.assertRaises(InvalidRequest):
            OpenAIVisionAdapter(Config()).submit(self._request())


if __name__ == "__main__":
    unittest.main()
