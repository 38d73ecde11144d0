import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from consensus_backend.config import AI_TIMEOUT_SECONDS, API_LOG_PREVIEW_CHARS, TRACE_API_CALLS
from consensus_backend.services.errors import AiUpstreamError
from consensus_backend.services.llm_config import AiCredentials

logger = logging.getLogger("consensus_backend")

_FLOAT_PATTERN = re.compile(r"[-+]?\d*\.\d+|[-+]?\d+")
_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.IGNORECASE | re.DOTALL)


def _preview_text(value: Any, limit: int = API_LOG_PREVIEW_CHARS) -> str:
    text = "" if value is None else str(value)
    overflow = len(text) - limit
    return text if overflow <= 0 else f"{text[:limit]}...<+{overflow} chars>"


def _json_candidates(reply: str):
    yield reply
    for block in _FENCED_BLOCK.findall(reply):
        yield block.strip()


def extract_json_from_text(text: Optional[str]) -> Any:
    """
    Decode the JSON payload of a model reply.

    Tries the whole reply, then each fenced code block, then the first
    ``{`` at which a JSON value decodes. Reasoning ``<think>`` blocks are
    ignored. Raises ``json.JSONDecodeError`` when nothing decodes.
    """
    if text is None:
        raise ValueError("Model reply is empty")

    reply = _THINK_BLOCK.sub("", str(text)).strip()
    for candidate in _json_candidates(reply):
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    decoder = json.JSONDecoder()
    start = reply.find("{")
    while start != -1:
        try:
            return decoder.raw_decode(reply, start)[0]
        except json.JSONDecodeError:
            start = reply.find("{", start + 1)

    raise json.JSONDecodeError("No JSON object in model reply", reply, 0)


@dataclass(frozen=True)
class ParseResult:
    """Outcome of reading structured data out of a free-form model reply."""
    ok: bool
    data: Optional[Dict[str, Any]] = None
    raw: str = ""
    error: Optional[str] = None

    @classmethod
    def success(cls, data: Dict[str, Any], raw: str = "") -> "ParseResult":
        return cls(ok=True, data=data, raw=raw)

    @classmethod
    def malformed(cls, raw: str, error: str) -> "ParseResult":
        return cls(ok=False, data=None, raw=raw or "", error=error)


def parse_json_object(text: Optional[str]) -> ParseResult:
    try:
        parsed = extract_json_from_text(text)
    except (ValueError, json.JSONDecodeError) as exc:
        return ParseResult.malformed(text or "", str(exc))
    if not isinstance(parsed, dict):
        return ParseResult.malformed(text or "", f"Expected a JSON object, got {type(parsed).__name__}")
    return ParseResult.success(parsed, raw=text or "")


def extract_first_float(text: Optional[str]) -> Optional[float]:
    """First numeric-looking substring of a reply, or None."""
    match = _FLOAT_PATTERN.search(text or "")
    if not match:
        return None
    try:
        return float(match.group(0))
    except ValueError:
        return None


class OpenAICompatibleClient:
    """Minimal client for OpenAI-compatible ``/chat/completions`` and ``/embeddings``."""

    def __init__(
        self,
        credentials: AiCredentials,
        timeout_seconds: float = AI_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.credentials = credentials
        self.base_url = credentials.base_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.credentials.api_key.strip()}",
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        if TRACE_API_CALLS:
            logger.info("[AI API] POST %s model=%s", url, payload.get("model"))
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            try:
                response = await client.post(url, json=payload, headers=self._headers())
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise AiUpstreamError(
                    f"{path} failed: {exc.response.status_code} - {_preview_text(exc.response.text)}",
                    status_code=exc.response.status_code,
                ) from exc
            except httpx.HTTPError as exc:
                raise AiUpstreamError(f"{path} request error: {exc}") from exc

        if TRACE_API_CALLS:
            logger.info(
                "[AI API] %s status=%s preview=%s",
                url,
                response.status_code,
                _preview_text(response.text),
            )
        try:
            return response.json()
        except ValueError as exc:
            raise AiUpstreamError(f"{path} returned non-JSON body") from exc

    async def chat(
        self,
        messages: list,
        model: Optional[str] = None,
        max_tokens: int = 2000,
        temperature: float = 0.3,
    ) -> str:
        data = await self._post(
            "/chat/completions",
            {
                "model": model or self.credentials.model,
                "messages": messages,
                "max_tokens": max_tokens,
                "temperature": temperature,
            },
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AiUpstreamError("chat completion response missing choices[0].message.content") from exc
        if content is None:
            return ""
        if not isinstance(content, str):
            raise AiUpstreamError(f"chat completion content is {type(content).__name__}, not text")
        return content

    async def embeddings(self, inputs: List[str], model: Optional[str] = None) -> List[List[float]]:
        data = await self._post(
            "/embeddings",
            {
                "model": model or self.credentials.embedding_model,
                "input": inputs,
            },
        )
        items = data.get("data") if isinstance(data, dict) else None
        if not isinstance(items, list) or len(items) != len(inputs):
            raise AiUpstreamError("Invalid embedding response")
        try:
            return [_embedding_vector(item["embedding"]) for item in items]
        except (KeyError, TypeError) as exc:
            raise AiUpstreamError("Invalid embedding response") from exc


def _embedding_vector(values: Any) -> List[float]:
    """A non-empty list of finite numbers; anything else is an upstream error."""
    if not isinstance(values, list) or not values:
        raise AiUpstreamError("Embedding vector is missing or empty")
    vector = []
    for value in values:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise AiUpstreamError(f"Embedding vector holds a non-numeric value: {value!r}")
        vector.append(float(value))
    return vector


async def chat_json(client: OpenAICompatibleClient, prompt: str, max_tokens: int = 2000) -> ParseResult:
    """One user-prompt chat call parsed into a ``ParseResult``; upstream errors propagate."""
    content = await client.chat([{"role": "user", "content": prompt}], max_tokens=max_tokens)
    return parse_json_object(content)
