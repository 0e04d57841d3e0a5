"""Thin model client that turns a prompt into reply text."""

from __future__ import annotations

import asyncio
import json
import logging
from urllib import request
from urllib.error import HTTPError, URLError

from commandpilot.errors import TransportFailure

LOGGER = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.openai.com/v1/responses"


class LLMClient:
    """Small HTTP client for the Responses API.

    Every failure (HTTP status, transport, timeout, undecodable body, reply
    without text) is logged and raised as ``TransportFailure`` so the session
    can surface it and let the caller decide whether to retry.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        reasoning_effort: str | None = None,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.reasoning_effort = reasoning_effort
        self.api_url = api_url
        self.timeout = timeout

    async def invoke(self, prompt: str) -> str:
        return await asyncio.to_thread(self.complete, prompt)

    def complete(self, prompt: str) -> str:
        raw_response = self._post(self._build_payload(prompt))
        text = self._extract_output_text(raw_response)
        if text is None:
            raise self._failure(
                "llm_response_empty", "Model response contained no output text"
            )
        LOGGER.debug(
            "llm_reply_received",
            extra={"model": self.model, "reply_length": len(text)},
        )
        return text

    def _post(self, payload: dict[str, object]) -> object:
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "api_url": self.api_url,
                "model": self.model,
                "payload_bytes": len(body),
                "reasoning_effort": self.reasoning_effort,
            },
        )

        req = request.Request(self.api_url, data=body, headers=headers, method="POST")
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                return json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            excerpt = self._read_error_body_excerpt(exc)
            message = f"Model request failed with HTTP {exc.code}: {exc.reason}"
            if excerpt:
                message = f"{message}. Response body: {excerpt}"
            raise self._failure(
                "llm_request_http_error",
                message,
                http_status=exc.code,
                response_excerpt=excerpt,
            ) from exc
        except URLError as exc:
            raise self._failure(
                "llm_request_transport_error",
                f"Model request transport error: {exc.reason}",
            ) from exc
        except TimeoutError as exc:
            raise self._failure(
                "llm_request_timeout",
                f"Model request timed out after {self.timeout:.1f}s",
                timed_out=True,
            ) from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise self._failure(
                "llm_response_parse_error", f"Model response parsing error: {exc}"
            ) from exc

    def _failure(
        self,
        event: str,
        message: str,
        *,
        timed_out: bool = False,
        **details: object,
    ) -> TransportFailure:
        LOGGER.error(
            event,
            extra={"api_url": self.api_url, "model": self.model, "error": message, **details},
        )
        return TransportFailure(message, source="model", timed_out=timed_out)

    def _build_payload(self, prompt: str) -> dict[str, object]:
        payload: dict[str, object] = {
            "model": self.model,
            "input": [{"role": "user", "content": prompt}],
        }
        if self.reasoning_effort:
            payload["reasoning"] = {"effort": self.reasoning_effort}
        return payload

    @staticmethod
    def _extract_output_text(payload: object) -> str | None:
        if not isinstance(payload, dict):
            return None
        direct = payload.get("output_text")
        if isinstance(direct, str) and direct:
            return direct

        output_items = payload.get("output")
        if not isinstance(output_items, list):
            return None

        chunks: list[str] = []
        for item in output_items:
            if not isinstance(item, dict):
                continue
            content_items = item.get("content")
            if not isinstance(content_items, list):
                continue
            for content in content_items:
                if not isinstance(content, dict):
                    continue
                if content.get("type") == "output_text" and isinstance(content.get("text"), str):
                    chunks.append(content["text"])
        if not chunks:
            return None
        return "".join(chunks)

    @staticmethod
    def _read_error_body_excerpt(exc: HTTPError, *, max_chars: int = 500) -> str | None:
        if exc.fp is None:
            return None
        try:
            raw = exc.read()
        except OSError:
            return None

        if not raw:
            return None

        excerpt = raw.decode("utf-8", errors="replace").replace("\n", " ").strip()
        if len(excerpt) > max_chars:
            return f"{excerpt[:max_chars]}..."
        return excerpt
