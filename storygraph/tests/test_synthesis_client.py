"""Tests for storygraph.synthesis_client (HTTP mocked at requests.post)."""

from __future__ import annotations

import json
import unittest
from typing import Any
from unittest.mock import MagicMock, patch

import requests

from storygraph.synthesis_client import (
    SynthesisClient,
    SynthesisError,
    _decode_reply_object,
    build_synthesis_prompt,
    format_articles,
)

_ARTICLES = [
    {
        "id": "a",
        "title": "Example Corp to merge with Acme",
        "excerpt": "Deal announced Monday.",
        "url": "https://example.com/a",
        "source": "Reuters",
        "published_at": "2026-10-19T10:00:00Z",
    },
    {
        "id": "b",
        "title": "Acme confirms merger",
        "excerpt": "Boards approved the deal.",
        "url": "https://example.com/b",
        "source": "AP",
        "published_at": "2026-10-19T09:00:00Z",
    },
]


def _response(status: int, body: Any = None, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.text = text or (json.dumps(body) if body is not None else "")
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body
    return resp


def _completion(content: str) -> dict[str, Any]:
    return {"model": "llama-3.3-70b-versatile", "choices": [{"index": 0, "message": {"role": "assistant", "content": content}}]}


# ---------------------------------------------------------------------------
# _decode_reply_object
# ---------------------------------------------------------------------------


class TestDecodeReplyObject(unittest.TestCase):
    def test_empty_string(self) -> None:
        self.assertIsNone(_decode_reply_object(""))

    def test_plain_json(self) -> None:
        self.assertEqual(_decode_reply_object('{"a": 1}'), {"a": 1})

    def test_json_with_fences(self) -> None:
        self.assertEqual(_decode_reply_object('```json\n{"key": "val"}\n```'), {"key": "val"})

    def test_json_embedded_in_text(self) -> None:
        self.assertEqual(_decode_reply_object('Here you go: {"title": "x", "n": {"k": 1}} thanks'), {"title": "x", "n": {"k": 1}})

    def test_array_not_object(self) -> None:
        self.assertIsNone(_decode_reply_object("[1, 2, 3]"))

    def test_invalid_json_inside_braces(self) -> None:
        self.assertIsNone(_decode_reply_object("{not json}"))

    def test_braces_inside_strings(self) -> None:
        self.assertEqual(_decode_reply_object('Reply: {"title": "a } b {", "n": 2}'), {"title": "a } b {", "n": 2})

    def test_skips_broken_object_before_valid_one(self) -> None:
        self.assertEqual(_decode_reply_object('{draft} final: {"title": "x"}'), {"title": "x"})


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------


class TestPrompt(unittest.TestCase):
    def test_format_articles_numbers_from_zero(self) -> None:
        text = format_articles(_ARTICLES)
        self.assertTrue(text.startswith("[ARTICLE 0]\nSource: Reuters\nTitle: Example Corp to merge with Acme"))
        self.assertIn("\n---\n[ARTICLE 1]\nSource: AP", text)
        self.assertIn("URL: https://example.com/b", text)

    def test_build_prompt_embeds_articles_and_contract(self) -> None:
        prompt = build_synthesis_prompt(_ARTICLES)
        self.assertIn("[ARTICLE 1]", prompt)
        self.assertIn('"article_index": 0', prompt)
        self.assertIn("supply_chain", prompt)
        self.assertNotIn("{articles}", prompt)


# ---------------------------------------------------------------------------
# SynthesisClient
# ---------------------------------------------------------------------------


class TestSynthesisClient(unittest.TestCase):
    def test_missing_api_key_fails_without_request(self) -> None:
        client = SynthesisClient(api_key=None)
        with patch("storygraph.synthesis_client.requests.post") as post:
            with self.assertRaises(SynthesisError):
                client.synthesize(_ARTICLES)
            post.assert_not_called()

    def test_empty_article_list(self) -> None:
        with self.assertRaises(SynthesisError):
            SynthesisClient(api_key="k").synthesize([])

    def test_success_posts_chat_completion_and_parses_json(self) -> None:
        payload = {"title": "Merger", "summary": "s", "sections": []}
        client = SynthesisClient(api_key="secret", base_url="https://llm.example/v1/", connect_timeout_s=3, read_timeout_s=7)
        with patch(
            "storygraph.synthesis_client.requests.post",
            return_value=_response(200, _completion("```json\n" + json.dumps(payload) + "\n```")),
        ) as post:
            out = client.synthesize(_ARTICLES)

        self.assertEqual(out, payload)
        self.assertEqual(client.last_model_name, "llama-3.3-70b-versatile")
        args, kwargs = post.call_args
        self.assertEqual(args[0], "https://llm.example/v1/chat/completions")
        self.assertEqual(kwargs["timeout"], (3.0, 7.0))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer secret")
        body = kwargs["json"]
        self.assertEqual(body["model"], client.model)
        self.assertEqual([m["role"] for m in body["messages"]], ["system", "user"])
        self.assertIn("[ARTICLE 0]", body["messages"][1]["content"])

    def test_transport_errors_become_synthesis_errors(self) -> None:
        client = SynthesisClient(api_key="k")
        for exc in (requests.Timeout("slow"), requests.ConnectionError("down")):
            with patch("storygraph.synthesis_client.requests.post", side_effect=exc):
                with self.assertRaises(SynthesisError):
                    client.generate("prompt")

    def test_http_errors(self) -> None:
        client = SynthesisClient(api_key="k")
        for status in (429, 500, 401):
            with patch("storygraph.synthesis_client.requests.post", return_value=_response(status, text="nope")):
                with self.assertRaises(SynthesisError) as ctx:
                    client.generate("prompt")
                self.assertIn(str(status), str(ctx.exception))

    def test_malformed_bodies(self) -> None:
        client = SynthesisClient(api_key="k")
        cases = [
            _response(200, ValueError("bad json"), text="<html>"),
            _response(200, {"choices": []}),
            _response(200, {"choices": [{"message": {"content": ""}}]}),
        ]
        for resp in cases:
            with patch("storygraph.synthesis_client.requests.post", return_value=resp):
                with self.assertRaises(SynthesisError):
                    client.generate("prompt")
                self.assertIsNone(client.last_model_name)

    def test_reply_without_json_object(self) -> None:
        client = SynthesisClient(api_key="k")
        with patch("storygraph.synthesis_client.requests.post", return_value=_response(200, _completion("Sorry, I cannot help."))):
            with self.assertRaises(SynthesisError):
                client.synthesize(_ARTICLES)


if __name__ == "__main__":
    unittest.main()
