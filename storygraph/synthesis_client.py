"""REST client for the story synthesis LLM.

Talks to an OpenAI-compatible chat-completions endpoint (Groq by default) and
returns the first JSON object found in the reply. Every failure surfaces as
SynthesisError so the orchestrator can fall back to a degraded story.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Sequence

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_MODEL = "llama-3.3-70b-versatile"

_HTTP_TIMEOUT_CONNECT_S = 10
_HTTP_TIMEOUT_READ_S = 60

_SYSTEM_PROMPT = "You are a news synthesis AI. Output only valid JSON, no markdown or explanation."

SYNTHESIS_PROMPT = """You are an investigative journalist AI for a news portal.
Given multiple news articles about the same event/topic, create a comprehensive briefing.

ARTICLES TO SYNTHESIZE:
{articles}

Your task is to:
1. Write a synthesized briefing (NOT copy-paste)
2. Add inline citations [Source Name] after each factual claim
3. Extract ALL entities (people, companies, locations, organizations)
4. Map connections between entities
5. Predict impacts on various sectors

OUTPUT FORMAT (valid JSON only, no markdown):
{{
  "title": "Clear, concise headline for the story (max 100 chars)",
  "summary": "2-3 sentence hook summarizing the key development.",
  "sections": [
    {{
      "title": "Summary",
      "content": "Main paragraph synthesizing the core news. Every fact must have [Source Name] citation inline.",
      "citations": [{{"source": "AP", "article_index": 0}}]
    }},
    {{
      "title": "Key Developments",
      "content": "Timeline of events or additional details. [Source] citations required.",
      "citations": [{{"source": "Reuters", "article_index": 1}}]
    }},
    {{
      "title": "Background",
      "content": "Context and history if relevant. [Source] citations.",
      "citations": []
    }},
    {{
      "title": "Reactions",
      "content": "Quotes and responses from stakeholders. [Source] citations.",
      "citations": []
    }}
  ],
  "entities": [
    {{
      "name": "Entity Name",
      "type": "person|company|location|commodity|sector|policy|event",
      "role": "primary|secondary|mentioned",
      "context": "Brief explanation of this entity's relevance"
    }}
  ],
  "connections": [
    {{
      "source": "Entity A Name",
      "target": "Entity B Name",
      "relationship": "works_for|located_in|owns|investigated_by|allied_with|opposes|related_to|supplies|regulates",
      "evidence": "Brief evidence/reason for this connection from the articles",
      "strength": 0.8
    }}
  ],
  "impacts": [
    {{
      "sector": "economic|geopolitical|political|social|technological|supply_chain|ecological",
      "type": "positive|negative|neutral|uncertain",
      "severity": 3,
      "prediction": "What could happen as a result of this news",
      "confidence": 0.7
    }}
  ]
}}

RULES:
1. NEVER copy full sentences from articles - always synthesize in your own words
2. Every factual claim MUST have a [Source Name] citation
3. article_index is the 0-based position of the cited article in the list above
4. Identify at least 3-5 entities
5. Only connect entities that appear in "entities"
6. Predict at least 2-3 sector impacts
7. Be objective and balanced - present multiple viewpoints
8. Output ONLY valid JSON, no explanation or markdown"""


class SynthesisError(RuntimeError):
    pass


_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_DECODER = json.JSONDecoder()


def _decode_reply_object(text: str) -> dict[str, Any] | None:
    """Return the first decodable JSON object in a model reply.

    Code fences are dropped first; any chatter around the object is ignored.
    """
    body = _FENCE_RE.sub("", (text or "").strip())
    pos = body.find("{")
    while pos != -1:
        try:
            return _DECODER.raw_decode(body, pos)[0]
        except json.JSONDecodeError:
            pos = body.find("{", pos + 1)
    return None


def _get(article: Any, key: str) -> str:
    if isinstance(article, dict):
        v = article.get(key)
    else:
        v = getattr(article, key, None)
    return "" if v is None else str(v)


def format_articles(articles: Sequence[Any]) -> str:
    blocks = []
    for index, article in enumerate(articles):
        blocks.append(
            "\n".join(
                [
                    f"[ARTICLE {index}]",
                    f"Source: {_get(article, 'source')}",
                    f"Title: {_get(article, 'title')}",
                    f"Published: {_get(article, 'published_at')}",
                    f"Content: {_get(article, 'excerpt')}",
                    f"URL: {_get(article, 'url')}",
                ]
            )
        )
    return "\n---\n".join(blocks)


def build_synthesis_prompt(articles: Sequence[Any]) -> str:
    return SYNTHESIS_PROMPT.format(articles=format_articles(articles))


class SynthesisClient:
    """Chat-completions client that turns an article list into a synthesis payload."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        connect_timeout_s: float = _HTTP_TIMEOUT_CONNECT_S,
        read_timeout_s: float = _HTTP_TIMEOUT_READ_S,
        temperature: float = 0.3,
        max_tokens: int = 4000,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._endpoint = base_url.rstrip("/") + "/chat/completions"
        self._timeout = (float(connect_timeout_s), float(read_timeout_s))
        self._temperature = float(temperature)
        self._max_tokens = int(max_tokens)
        # Last successful model name (best-effort, for audit/logging).
        self.last_model_name: str | None = None

    @property
    def model(self) -> str:
        return self._model

    def generate(self, prompt: str) -> str:
        """Return the completion text for *prompt* or raise SynthesisError."""
        self.last_model_name = None
        if not self._api_key:
            raise SynthesisError("synthesis API key is not configured")

        body = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        try:
            resp = requests.post(
                self._endpoint,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json=body,
                timeout=self._timeout,
            )
        except requests.Timeout as e:
            raise SynthesisError(f"synthesis request timed out: {e}") from e
        except requests.RequestException as e:
            raise SynthesisError(f"synthesis request failed: {e}") from e

        if resp.status_code == 429:
            raise SynthesisError(f"synthesis rate limited (HTTP 429) for model={self._model}")
        if resp.status_code != 200:
            raise SynthesisError(f"synthesis HTTP {resp.status_code} for model={self._model}: {resp.text[:300]}")

        try:
            data = resp.json()
        except ValueError as e:
            raise SynthesisError("synthesis response is not JSON") from e

        text_parts: list[str] = []
        choices = data.get("choices") if isinstance(data, dict) else None
        for choice in choices or []:
            if not isinstance(choice, dict):
                continue
            message = choice.get("message") or {}
            content = message.get("content") if isinstance(message, dict) else None
            if isinstance(content, str) and content:
                text_parts.append(content)
                break
        if not text_parts:
            raise SynthesisError("synthesis response has no content")

        self.last_model_name = str(data.get("model") or self._model)
        return "".join(text_parts)

    def synthesize(self, articles: Sequence[Any]) -> dict[str, Any]:
        """Ask the model for a structured synthesis of *articles*."""
        if not articles:
            raise SynthesisError("no articles provided for synthesis")
        text = self.generate(build_synthesis_prompt(articles))
        obj = _decode_reply_object(text)
        if obj is None:
            logger.warning("No JSON object found in synthesis response (len=%d): %s...", len(text), text[:200])
            raise SynthesisError("no JSON object in synthesis response")
        logger.debug("Synthesis ok: model=%s articles=%d chars=%d", self.last_model_name, len(articles), len(text))
        return obj
