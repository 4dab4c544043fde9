"""Async HTTP client for an OpenCode-style language-model server."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class LLMAPIError(RuntimeError):
    """Raised when the model server returns an error or an unexpected payload."""


@dataclass(frozen=True)
class PromptResult:
    session_id: str
    message_id: str
    raw_output: str
    response_json: dict[str, Any]


def _extract_text(parts: list[dict[str, Any]]) -> str:
    # Most useful text lives in parts with type == "text".
    texts: list[str] = []
    for part in parts:
        if part.get("type") == "text" and isinstance(part.get("text"), str):
            texts.append(part["text"])
    return "".join(texts).strip()


class LLMClient:
    """Session-based client: create a session, then post prompts to it."""

    def __init__(
        self,
        *,
        base_url: str,
        directory: str | None = None,
        timeout_seconds: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._directory = directory
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _params(self) -> dict[str, str]:
        return {"directory": self._directory} if self._directory else {}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        body: Any | None = None,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, params=params, json=body)
            resp.raise_for_status()
            return resp
        except httpx.RequestError as e:
            raise LLMAPIError(f"LLM request failed ({method} {path}): {e}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            text = e.response.text
            raise LLMAPIError(f"LLM API error {status} ({method} {path}): {text}") from e

    async def health_check(self) -> None:
        await self._request("GET", "/session")

    async def create_session(self, *, title: str) -> str:
        """Create a new session and return its id."""
        resp = await self._request("POST", "/session", params=self._params(), body={"title": title})
        payload = resp.json()
        session_id = payload.get("id") if isinstance(payload, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise LLMAPIError(f"Unexpected create_session response: {payload}")
        return session_id

    async def prompt(
        self,
        *,
        session_id: str,
        agent: str,
        text: str,
        model: dict[str, str] | None = None,
        system: str | None = None,
    ) -> PromptResult:
        """Send a prompt to a session, returning the assistant output."""
        body: dict[str, Any] = {
            "parts": [{"type": "text", "text": text}],
            "agent": agent,
        }
        if model:
            body["model"] = model
        if system:
            body["system"] = system

        resp = await self._request(
            "POST", f"/session/{session_id}/message", params=self._params(), body=body
        )
        try:
            payload = resp.json()
        except json.JSONDecodeError as exc:
            raise LLMAPIError(f"Invalid JSON response from LLM server: {resp.text[:200]}") from exc

        info = payload.get("info") if isinstance(payload, dict) else None
        parts = payload.get("parts") if isinstance(payload, dict) else None
        if not isinstance(info, dict) or not isinstance(parts, list):
            raise LLMAPIError(f"Unexpected prompt response: {payload}")

        msg_id = info.get("id")
        if not isinstance(msg_id, str) or not msg_id:
            raise LLMAPIError(f"Missing message id in response: {payload}")

        raw_output = _extract_text([p for p in parts if isinstance(p, dict)])
        if not raw_output:
            logger.warning(
                "LLM server returned empty output. Session: %s, parts: %d", session_id, len(parts)
            )

        return PromptResult(
            session_id=session_id,
            message_id=msg_id,
            raw_output=raw_output,
            response_json=payload,
        )

    async def complete(
        self,
        *,
        title: str,
        agent: str,
        text: str,
        system: str | None = None,
        model: dict[str, str] | None = None,
    ) -> str:
        """One-shot helper: fresh session, single prompt, text output."""
        session_id = await self.create_session(title=title)
        result = await self.prompt(
            session_id=session_id, agent=agent, text=text, system=system, model=model
        )
        return result.raw_output
