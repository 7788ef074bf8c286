"""Unit tests for the chat model factory.

These tests are network-free: they check configuration and instantiation logic
without calling any provider APIs.
"""

from __future__ import annotations

import os
import unittest

from podsum.llm.factory import (
    build_chat_runnable,
    canonical_model_name,
    create_chat_model,
    infer_provider,
    parse_model_list,
)


class TestModelListParsing(unittest.TestCase):
    def test_parse_model_list_defaults_and_dedupes(self) -> None:
        self.assertEqual(parse_model_list(None, default=["a", "b"]), ["a", "b"])
        self.assertEqual(parse_model_list("", default=["a", "b"]), ["a", "b"])
        self.assertEqual(parse_model_list("a, b, a,  ,b", default=["x"]), ["a", "b"])
        self.assertEqual(parse_model_list(" , ", default=["x"]), ["x"])


class TestProviderInference(unittest.TestCase):
    def test_infer_provider(self) -> None:
        self.assertEqual(infer_provider("gemini-2.0-flash"), "google_genai")
        self.assertEqual(infer_provider("claude-haiku-4-5"), "anthropic")
        self.assertEqual(infer_provider("gpt-4o-mini"), "openai")
        self.assertEqual(infer_provider("accounts/fireworks/models/x"), "fireworks")
        self.assertIsNone(infer_provider("llama-local"))

    def test_aliases(self) -> None:
        self.assertEqual(canonical_model_name("gpt-5-mini"), "gpt-5.1-mini")
        self.assertEqual(canonical_model_name("gemini-2.0-flash"), "gemini-2.0-flash")


class TestCreateChatModel(unittest.TestCase):
    def setUp(self) -> None:
        self._old_env = os.environ.copy()
        os.environ["OPENAI_API_KEY"] = "test-openai"
        os.environ["GOOGLE_API_KEY"] = "test-google"
        os.environ["ANTHROPIC_API_KEY"] = "test-anthropic"
        os.environ["FIREWORKS_API_KEY"] = "test-fireworks"
        os.environ["GEMINI_API_KEY"] = "test-gemini"

    def tearDown(self) -> None:
        os.environ.clear()
        os.environ.update(self._old_env)

    def test_create_chat_model_openai(self) -> None:
        model = create_chat_model(model_name="gpt-5.1-mini", timeout=1)
        self.assertIsNotNone(model)

    def test_create_chat_model_google(self) -> None:
        model = create_chat_model(model_name="gemini-2.0-flash", timeout=1, max_tokens=256)
        self.assertIsNotNone(model)

    def test_create_chat_model_anthropic(self) -> None:
        model = create_chat_model(model_name="claude-sonnet-4-5", timeout=1)
        self.assertIsNotNone(model)

    def test_openai_compatible_endpoint(self) -> None:
        from langchain_openai import ChatOpenAI

        model = create_chat_model(
            model_name="gemini-2.0-flash",
            base_url="https://generativelanguage.googleapis.com/v1beta/openai",
            timeout=1,
        )
        self.assertIsInstance(model, ChatOpenAI)

    def test_openai_compatible_endpoint_custom_key_env(self) -> None:
        os.environ["LOCAL_LLM_KEY"] = "test-local"
        model = create_chat_model(
            model_name="llama-local",
            base_url="http://localhost:8000/v1",
            api_key_env="LOCAL_LLM_KEY",
        )
        self.assertIsNotNone(model)

    def test_sdk_retries_are_disabled(self) -> None:
        names = [
            "gpt-5.1-mini",
            "claude-sonnet-4-5",
            "gemini-2.0-flash",
            "accounts/fireworks/models/gpt-oss-120b",
        ]
        for name in names:
            with self.subTest(model=name):
                model = create_chat_model(model_name=name, timeout=1)
                self.assertEqual(model.max_retries, 0)

        compat = create_chat_model(model_name="gemini-2.0-flash", base_url="http://localhost:8000/v1")
        self.assertEqual(compat.max_retries, 0)

    def test_missing_api_key_raises(self) -> None:
        os.environ.pop("GOOGLE_API_KEY", None)
        with self.assertRaises(ValueError):
            create_chat_model(model_name="gemini-3-flash-preview", timeout=1)

    def test_missing_compat_key_raises(self) -> None:
        os.environ.pop("GEMINI_API_KEY", None)
        with self.assertRaises(ValueError):
            create_chat_model(model_name="gemini-2.0-flash", base_url="https://example.invalid/v1")

    def test_unknown_provider_raises(self) -> None:
        with self.assertRaises(ValueError):
            create_chat_model(model_name="llama-local")

    def test_build_chat_runnable_attaches_fallbacks(self) -> None:
        runnable = build_chat_runnable(model_names=["gpt-5.1-mini", "claude-haiku-4-5"], timeout=1)
        self.assertTrue(hasattr(runnable, "fallbacks"))
        self.assertEqual(len(runnable.fallbacks), 1)

    def test_build_chat_runnable_requires_models(self) -> None:
        with self.assertRaises(ValueError):
            build_chat_runnable(model_names=[])


if __name__ == "__main__":
    unittest.main()
