"""LLM client abstractions used by the AI extraction stage."""

from __future__ import annotations

import base64
import json
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urljoin

import httpx

from ..core.config import LlmSettings


class LLMError(RuntimeError):
    """Raised when the LLM provider fails to respond as expected."""


class LLMTimeout(LLMError):
    """Raised when the provider does not answer within the configured timeout."""


class LLMClient(Protocol):
    """Protocol describing the minimal LLM client behaviour."""

    @property
    def provider_id(self) -> str:
        """Identifier describing the backing model/provider."""
        raise NotImplementedError

    def generate(self, prompt: str, *, images: Sequence[bytes] = ()) -> str:
        """Return the raw text completion for ``prompt``."""
        raise NotImplementedError


@dataclass(slots=True)
class OllamaClient:
    """Thin synchronous client for the Ollama HTTP API."""

    settings: LlmSettings
    transport: httpx.BaseTransport | None = None
    max_attempts: int = 3

    def generate(self, prompt: str, *, images: Sequence[bytes] = ()) -> str:
        """Send a JSON-mode completion request to the Ollama server."""
        endpoint = _resolve_endpoint(self.settings.base_url)
        options: dict[str, object] = {"temperature": self.settings.temperature}
        if self.settings.max_output_tokens is not None:
            options["num_predict"] = self.settings.max_output_tokens
        payload: dict[str, object] = {
            "model": self.settings.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": options,
        }
        if images:
            payload["images"] = [base64.b64encode(image).decode("ascii") for image in images]

        data: dict[str, object] | None = None
        last_error: Exception | None = None
        with httpx.Client(
            timeout=self.settings.timeout_seconds, transport=self.transport
        ) as client:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    response = client.post(endpoint, json=payload)
                    response.raise_for_status()
                    data = response.json()
                    break
                except httpx.TimeoutException as exc:
                    raise LLMTimeout(
                        f"LLM did not answer within {self.settings.timeout_seconds}s"
                    ) from exc
                except httpx.HTTPError as exc:  # pragma: no cover - network dependent
                    last_error = exc
                except json.JSONDecodeError as exc:
                    raise LLMError("LLM returned invalid JSON") from exc

                if attempt < self.max_attempts:
                    delay = min(2**attempt, 8)
                    time.sleep(delay)

        if data is None:
            raise LLMError("LLM request failed after retries") from last_error

        result = data.get("response")
        if not isinstance(result, str):
            raise LLMError("LLM response missing 'response' field")
        return result

    @property
    def provider_id(self) -> str:
        """Return a human readable identifier for the configured model."""
        return f"ollama:{self.settings.model}"


def _resolve_endpoint(base_url: str) -> str:
    trimmed = base_url.rstrip("/") + "/"
    return urljoin(trimmed, "api/generate")


__all__ = ["LLMClient", "LLMError", "LLMTimeout", "OllamaClient"]
