"""Upstream generation clients.

An upstream turns a prompt into response text or raises one of two errors:

  - UpstreamThrottled: the vendor said "too many requests" (HTTP 429);
    carries the vendor's retry hint in seconds when one was sent
  - UpstreamError: anything else (transport, 5xx, malformed body, blocked
    prompt); never retried by the dispatcher

Gemini specifics:
  - generateContent REST endpoint, API key in the query string
  - retry hint from the Retry-After header or RetryInfo.retryDelay ("37s")
  - promptFeedback.blockReason / finishReason SAFETY without text -> UpstreamError
"""

from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod

import httpx

logger = logging.getLogger(__name__)


class UpstreamError(Exception):
    """Raised when an upstream call fails for a non-throttling reason."""

    def __init__(self, message: str, status_code: int = 0, error_code: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class UpstreamThrottled(UpstreamError):
    """Raised when the upstream rejects the call for exceeding its quota."""

    def __init__(self, message: str = "Rate limited by upstream", retry_after: float | None = None):
        super().__init__(message, status_code=429, error_code="429")
        self.retry_after = retry_after


class BaseUpstream(ABC):
    """Base class for all upstream generation clients."""

    name: str = "upstream"

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        """Send the prompt and return the generated text."""
        ...


# ---------------------------------------------------------------------------
# Retry hint parsing
# ---------------------------------------------------------------------------

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)s\s*$")


def parse_retry_after(resp: httpx.Response) -> float | None:
    """Extract a retry hint (seconds) from a 429 response, if any."""
    header = resp.headers.get("Retry-After")
    if header:
        try:
            return max(0.0, float(header))
        except ValueError:
            # HTTP-date form is not used by Google APIs
            logger.debug("Unparseable Retry-After header: %r", header)

    try:
        data = resp.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    details = data.get("error", {}).get("details", [])
    for detail in details:
        if not isinstance(detail, dict):
            continue
        if detail.get("@type", "").endswith("google.rpc.RetryInfo"):
            match = _DURATION_PATTERN.match(str(detail.get("retryDelay", "")))
            if match:
                return float(match.group(1))
    return None


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------


class GeminiUpstream(BaseUpstream):
    """Google AI generateContent client."""

    name = "gemini"
    default_model = "gemini-1.5-flash"
    api_base = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(
        self,
        api_key: str,
        model: str = "",
        api_base: str = "",
        timeout: float = 60.0,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ):
        self.api_key = api_key
        self.model = model or self.default_model
        self.api_base = (api_base or self.api_base).rstrip("/")
        self.timeout = timeout
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    @property
    def url(self) -> str:
        return f"{self.api_base}/models/{self.model}:generateContent"

    def _payload(self, prompt: str) -> dict:
        payload: dict = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        generation_config: dict = {}
        if self.temperature is not None:
            generation_config["temperature"] = self.temperature
        if self.max_output_tokens is not None:
            generation_config["maxOutputTokens"] = self.max_output_tokens
        if generation_config:
            payload["generationConfig"] = generation_config
        return payload

    async def generate(self, prompt: str) -> str:
        start = time.monotonic()

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    self.url,
                    json=self._payload(prompt),
                    params={"key": self.api_key},
                    headers={"Content-Type": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Gemini request timed out: {e}", error_code="TIMEOUT") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Gemini transport error: {e}", error_code="TRANSPORT") from e

        elapsed_ms = int((time.monotonic() - start) * 1000)

        if resp.status_code == 429:
            retry_after = parse_retry_after(resp)
            logger.info("Gemini throttled the call after %dms (retry hint: %s)", elapsed_ms, retry_after)
            raise UpstreamThrottled("Rate limited by Google AI", retry_after=retry_after)

        if resp.status_code >= 400:
            raise UpstreamError(
                f"Gemini HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
                error_code=str(resp.status_code),
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError("Gemini returned a non-JSON body", status_code=resp.status_code) from e

        text = self._extract_text(data)
        logger.debug("Gemini answered in %dms (%d chars)", elapsed_ms, len(text))
        return text

    @staticmethod
    def _extract_text(data: dict) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = data.get("promptFeedback", {}).get("blockReason", "")
            if block_reason:
                raise UpstreamError(f"Prompt blocked: {block_reason}", error_code=f"BLOCKED_{block_reason}")
            raise UpstreamError("Gemini returned no candidates", error_code="EMPTY")

        candidate = candidates[0]
        parts = candidate.get("content", {}).get("parts", [])
        text = "".join(p.get("text", "") for p in parts if "text" in p)

        if not text:
            finish_reason = candidate.get("finishReason", "")
            if finish_reason == "SAFETY":
                raise UpstreamError("Gemini safety filter triggered", error_code="SAFETY")
            raise UpstreamError(f"Gemini returned empty text (finishReason={finish_reason})", error_code="EMPTY")

        return text
