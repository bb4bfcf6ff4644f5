import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Literal, Optional

import httpx


logger = logging.getLogger("uvicorn.error")

ErrorKind = Literal["rate_limited", "provider", "parse", "unconfigured"]
_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_RATE_LIMIT_MARKERS = ("429", "resource_exhausted", "rate limit")


@dataclass
class LLMResult:
    """Tagged backend outcome: either a payload or a typed error, never both."""

    ok: bool
    backend: str
    text: str = ""
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def success(cls, backend: str, text: str, data: Optional[Dict[str, Any]] = None) -> "LLMResult":
        return cls(ok=True, backend=backend, text=text, data=data)

    @classmethod
    def failure(cls, backend: str, error: str, kind: ErrorKind) -> "LLMResult":
        return cls(ok=False, backend=backend, error=error, error_kind=kind)


class RateLimited(Exception):
    pass


class ProviderError(Exception):
    pass


def parse_json_object(raw: str) -> Dict[str, Any]:
    """Strict parse-or-reject boundary for structured model output."""
    cleaned = _CODE_FENCE_RE.sub("", raw or "").replace("```", "").strip()
    if not cleaned:
        raise ValueError("empty structured response")
    data = json.loads(cleaned)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _looks_rate_limited(detail: str) -> bool:
    text = (detail or "").lower()
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


class ThrottledBackend:
    """Shared throttle + retry loop; subclasses implement a single raw call.

    One instance serves every job, so the last-request timestamp gates the
    provider's rate limit process-wide.
    """

    name = "backend"

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        base_url: str,
        *,
        min_interval_s: float,
        backoff_base_s: float,
        max_retries: int = 3,
        timeout_s: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.min_interval_s = min_interval_s
        self.backoff_base_s = backoff_base_s
        self.max_retries = max(1, max_retries)
        self.client = client or httpx.AsyncClient(timeout=timeout_s)
        self.sleep = sleep
        self.clock = clock
        self.last_request_at: Optional[float] = None
        self.throttle_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def throttle(self) -> None:
        async with self.throttle_lock:
            if self.last_request_at is not None:
                elapsed = self.clock() - self.last_request_at
                if elapsed < self.min_interval_s:
                    await self.sleep(self.min_interval_s - elapsed)
            self.last_request_at = self.clock()

    async def _complete(self, prompt: str, structured: bool) -> str:
        raise NotImplementedError

    async def _call(self, prompt: str, structured: bool) -> LLMResult:
        if not self.enabled:
            return LLMResult.failure(self.name, f"{self.name} not configured", "unconfigured")
        for attempt in range(1, self.max_retries + 1):
            try:
                await self.throttle()
                text = await self._complete(prompt, structured)
            except RateLimited as exc:
                if attempt < self.max_retries:
                    wait = self.backoff_base_s * (2 ** attempt)
                    logger.warning("%s rate limited, retrying in %.1fs (attempt %s/%s)", self.name, wait, attempt, self.max_retries)
                    await self.sleep(wait)
                    continue
                logger.error("%s rate limit retries exhausted: %s", self.name, exc)
                return LLMResult.failure(self.name, "Max retries exceeded", "rate_limited")
            except ProviderError as exc:
                logger.error("%s error: %s", self.name, exc)
                return LLMResult.failure(self.name, str(exc), "provider")
            if not structured:
                return LLMResult.success(self.name, text)
            try:
                data = parse_json_object(text)
            except ValueError as exc:
                logger.error("%s returned malformed JSON: %s", self.name, exc)
                return LLMResult.failure(self.name, f"Malformed structured output: {exc}", "parse")
            return LLMResult.success(self.name, text, data)
        return LLMResult.failure(self.name, "Max retries exceeded", "rate_limited")

    async def generate_structured(self, prompt: str) -> LLMResult:
        return await self._call(prompt, structured=True)

    async def generate_text(self, prompt: str) -> LLMResult:
        return await self._call(prompt, structured=False)

    async def _post(self, url: str, payload: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        """POST and classify failures into rate-limit vs. everything else."""
        try:
            resp = await self.client.post(url, json=payload, **kwargs)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text
            if exc.response.status_code == 429 or (exc.response.status_code >= 500 and _looks_rate_limited(detail)):
                raise RateLimited(detail) from exc
            raise ProviderError(f"HTTP {exc.response.status_code}: {detail[:300]}") from exc
        except httpx.RequestError as exc:
            raise ProviderError(f"request failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderError(f"invalid response body: {exc}") from exc

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


class GroqClient(ThrottledBackend):
    """Low-latency backend over Groq's OpenAI-compatible chat completions API."""

    name = "groq"

    async def _complete(self, prompt: str, structured: bool) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
        }
        if structured:
            payload["response_format"] = {"type": "json_object"}
        data = await self._post(
            f"{self.base_url}/chat/completions",
            payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        choices = data.get("choices") or []
        message = (choices[0].get("message") or {}) if choices else {}
        content = message.get("content")
        if structured:
            return content or "{}"
        return content or "No response"


class GeminiClient(ThrottledBackend):
    """High-quality backend over the Gemini generateContent REST API."""

    name = "gemini"

    async def _complete(self, prompt: str, structured: bool) -> str:
        text = prompt + "\n\nRespond ONLY with valid JSON." if structured else prompt
        payload = {"contents": [{"role": "user", "parts": [{"text": text}]}]}
        data = await self._post(
            f"{self.base_url}/models/{self.model}:generateContent",
            payload,
            params={"key": self.api_key},
        )
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            raise ProviderError(f"no candidates returned ({feedback.get('blockReason') or 'empty response'})")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))
