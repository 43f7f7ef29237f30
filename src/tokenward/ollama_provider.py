"""Ollama provider — chat completions via the Ollama ``/api/chat`` endpoint.

Requires Ollama running locally (default: http://localhost:11434).
Every transport or shape failure surfaces as :class:`UpstreamServiceFailure`
with a ``kind`` tag; the original exception is chained.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import requests

from tokenward.errors import UpstreamServiceFailure
from tokenward.provider import ChatRequest, ChatResponse, LLMProvider, TokenUsage

logger = logging.getLogger(__name__)

_DEFAULT_BASE_URL = "http://localhost:11434"
_DEFAULT_MODEL = "llama3.2"
_HTTP_SERVER_ERROR = 500


class OllamaProvider(LLMProvider):
    """LLMProvider backed by a local or remote Ollama server."""

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        base = base_url or os.environ.get("TOKENWARD_OLLAMA_BASE_URL", _DEFAULT_BASE_URL)
        self._base_url = base.rstrip("/")
        self._url = f"{self._base_url}/api/chat"
        self._model = model or os.environ.get("TOKENWARD_OLLAMA_MODEL", _DEFAULT_MODEL)
        self._session = session or requests.Session()

    def name(self) -> str:
        return "ollama"

    @property
    def model(self) -> str:
        return self._model

    def _payload(self, request: ChatRequest) -> dict[str, Any]:
        options = {
            "num_predict": request.max_tokens,
            "temperature": request.temperature,
            "top_p": request.top_p,
            "num_ctx": request.context_window,
        }
        return {
            "model": request.model or self._model,
            "messages": [{"role": m.role.value, "content": m.content} for m in request.messages],
            "stream": False,
            "options": {k: v for k, v in options.items() if v is not None},
        }

    def chat(self, request: ChatRequest, timeout: float) -> ChatResponse:
        payload = self._payload(request)
        logger.debug(
            "Ollama request: model=%s messages=%d", payload["model"], len(payload["messages"])
        )
        try:
            resp = self._session.post(self._url, json=payload, timeout=timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.HTTPError as exc:
            raise self._http_failure(exc, payload["model"]) from exc
        except requests.Timeout as exc:
            msg = f"Ollama request timed out after {timeout:g} seconds ({self._base_url})"
            raise UpstreamServiceFailure(msg, kind="timeout") from exc
        except requests.ConnectionError as exc:
            msg = f"Could not connect to Ollama at {self._base_url}"
            raise UpstreamServiceFailure(msg, kind="connection") from exc
        except requests.JSONDecodeError as exc:
            msg = "Ollama returned a body that is not valid JSON"
            raise UpstreamServiceFailure(msg, kind="invalid_json") from exc
        except requests.RequestException as exc:
            msg = f"Error talking to Ollama ({payload['model']}): {exc}"
            raise UpstreamServiceFailure(msg, kind="generic") from exc

        return self._parse(data)

    def _http_failure(self, exc: requests.HTTPError, model: str) -> UpstreamServiceFailure:
        status = exc.response.status_code if exc.response is not None else 0
        body = exc.response.text if exc.response is not None else ""
        msg = f"Ollama returned HTTP {status}: {body or exc}"
        if status >= _HTTP_SERVER_ERROR:
            msg += (
                f". Check that the server is running and that model '{model}' "
                f"is available (ollama serve / ollama list)."
            )
        logger.error("Ollama HTTP error: status=%d model=%s", status, model)
        return UpstreamServiceFailure(msg, kind=f"http_{status}")

    @staticmethod
    def _parse(data: Any) -> ChatResponse:
        if not data:
            msg = "Ollama returned an empty response"
            raise UpstreamServiceFailure(msg, kind="null_response")
        message = data.get("message") if isinstance(data, dict) else None
        if not isinstance(message, dict):
            msg = "Ollama response has no message"
            raise UpstreamServiceFailure(msg, kind="null_message")
        content = message.get("content")
        if content is None:
            msg = "Ollama response message has no content"
            raise UpstreamServiceFailure(msg, kind="null_content")

        usage = None
        if "prompt_eval_count" in data or "eval_count" in data:
            usage = TokenUsage(
                prompt_tokens=int(data.get("prompt_eval_count", 0)),
                completion_tokens=int(data.get("eval_count", 0)),
            )
        return ChatResponse(content=str(content), usage=usage)
