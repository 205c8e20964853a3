"""Chat-completion client for OpenAI-compatible endpoints."""

from __future__ import annotations

import logging
import socket
import threading
import weakref
from typing import Any
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.poolmanager import ProxyManager

from askpop.config import AppConfig

log = logging.getLogger(__name__)

_HOST_LOOKUP_MARKERS = (
    "nameresolutionerror",
    "failed to resolve",
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "no address associated",
    "temporary failure in name resolution",
)


class CompletionError(Exception):
    """Base class for failures that end a completion call with a user message."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(CompletionError):
    """Missing or unusable API credentials or endpoint."""


class NetworkError(CompletionError):
    """Timeout, unreachable host or no connectivity."""


class HttpStatusError(CompletionError):
    """Endpoint answered with a non-200 status."""

    def __init__(self, status_code: int):
        super().__init__(describe_http_status(status_code))
        self.status_code = status_code


class ResponseFormatError(CompletionError):
    """Body was not JSON, or carried no recognised content shape."""


class ApiError(CompletionError):
    """Endpoint reported an error object in an otherwise valid body."""


class CancelledError(CompletionError):
    """The caller abandoned the request before it finished."""

    def __init__(self) -> None:
        super().__init__("Request cancelled")


def describe_http_status(status_code: int) -> str:
    if status_code == 401:
        return "API key is invalid or expired"
    if status_code == 403:
        return "Access denied, check the API permissions"
    if status_code == 429:
        return "Too many requests, please try again later"
    if 500 <= status_code <= 599:
        return "Server error, please try again later"
    return f"HTTP error: {status_code}"


def extract_content(payload: Any) -> str:
    """Pull assistant text out of the known completion response shapes.

    Tried in order: OpenAI `choices[0].message.content`, Anthropic-style
    `content[0].text`, then a bare `content` string. The first non-empty
    string wins.
    """
    if not isinstance(payload, dict):
        raise ResponseFormatError("Unrecognised response format or empty content")

    error = payload.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        raise ApiError(f"API error: {error['message']}")

    candidates: list[Any] = []
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message")
        if isinstance(message, dict):
            candidates.append(message.get("content"))

    content = payload.get("content")
    if isinstance(content, list) and content and isinstance(content[0], dict):
        candidates.append(content[0].get("text"))
    candidates.append(content)

    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate
    raise ResponseFormatError("Unrecognised response format or empty content")


def _is_host_lookup_failure(exc: BaseException) -> bool:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        text = f"{type(current).__name__} {current}".casefold()
        if any(marker in text for marker in _HOST_LOOKUP_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


class AbortableAdapter(HTTPAdapter):
    """Transport adapter whose open sockets can be shut down from another thread.

    Closing a `requests.Session` only drops idle pooled connections; a read
    that is already blocked keeps waiting for the server. The adapter hands
    its pool managers connection pools that remember every connection they
    open, so `abort()` can shut the sockets down under the blocked read.
    """

    def __init__(self, *args, **kwargs):
        self._lock = threading.Lock()
        self._connections: weakref.WeakSet = weakref.WeakSet()
        self._aborted = False
        super().__init__(*args, **kwargs)

    @property
    def aborted(self) -> bool:
        return self._aborted

    def init_poolmanager(self, *args, **kwargs):
        super().init_poolmanager(*args, **kwargs)
        self._track_pools(self.poolmanager)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        manager = super().proxy_manager_for(proxy, **proxy_kwargs)
        if isinstance(manager, ProxyManager):
            self._track_pools(manager)
        return manager

    def send(self, request, *args, **kwargs):
        if self._aborted:
            raise requests.exceptions.ConnectionError("Request aborted", request=request)
        return super().send(request, *args, **kwargs)

    def abort(self) -> None:
        with self._lock:
            self._aborted = True
            connections = list(self._connections)
        for connection in connections:
            sock = getattr(connection, "sock", None)
            if sock is None:
                continue
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                # Already closed by the peer or by urllib3.
                pass

    def _remember(self, connection) -> None:
        with self._lock:
            self._connections.add(connection)

    def _track_pools(self, manager) -> None:
        adapter = self

        class _TrackedHTTPConnectionPool(HTTPConnectionPool):
            def _new_conn(self):
                connection = super()._new_conn()
                adapter._remember(connection)
                return connection

        class _TrackedHTTPSConnectionPool(HTTPSConnectionPool):
            def _new_conn(self):
                connection = super()._new_conn()
                adapter._remember(connection)
                return connection

        manager.pool_classes_by_scheme = {
            "http": _TrackedHTTPConnectionPool,
            "https": _TrackedHTTPSConnectionPool,
        }


class CompletionCall:
    """One in-flight request; `cancel()` may be called from any thread."""

    def __init__(self, session: requests.Session, adapter: AbortableAdapter | None = None):
        self.session = session
        self.adapter = adapter
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        if self.adapter is not None:
            self.adapter.abort()
        try:
            self.session.close()
        except Exception:
            log.debug("Closing cancelled completion session failed", exc_info=True)


class Conversation:
    """Ordered chat turns resent with every follow-up question."""

    def __init__(self) -> None:
        self._messages: list[dict[str, str]] = []

    def __len__(self) -> int:
        return len(self._messages)

    def history(self) -> list[dict[str, str]]:
        return [dict(message) for message in self._messages]

    def record(self, question: str, answer: str) -> None:
        self._messages.append({"role": "user", "content": question})
        self._messages.append({"role": "assistant", "content": answer})

    def clear(self) -> None:
        self._messages.clear()

    def to_markdown(self) -> str:
        """Render the answers, quoting every question after the opening one."""
        parts: list[str] = []
        for index, message in enumerate(self._messages):
            if message["role"] == "assistant":
                parts.append(message["content"].strip())
            elif index > 0:
                quoted = "\n".join(f"> {line}" for line in message["content"].strip().splitlines())
                parts.append(f"---\n\n{quoted}")
        return "\n\n".join(parts) + "\n" if parts else ""


class CompletionClient:
    """Sends non-streaming chat requests to the configured endpoint."""

    def __init__(self, config: AppConfig, session_factory=requests.Session):
        self.config = config
        self._session_factory = session_factory

    def validate(self) -> None:
        if not self.config.api_key.strip():
            raise ConfigurationError("API key is not configured")
        url = self.config.api_url.strip()
        if not url:
            raise ConfigurationError("API URL is not configured")
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ConfigurationError("API URL is invalid")

    def build_payload(
        self,
        prompt: str,
        temperature: float | None = None,
        history: list[dict[str, str]] | None = None,
    ) -> dict[str, Any]:
        messages = list(history or [])
        messages.append({"role": "user", "content": prompt})
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": messages,
            "stream": False,
        }
        if temperature is None:
            temperature = self.config.request_temperature()
        if temperature is not None:
            payload["temperature"] = temperature
        return payload

    def new_call(self) -> CompletionCall:
        session = self._session_factory()
        adapter = AbortableAdapter()
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return CompletionCall(session, adapter)

    def complete(
        self,
        prompt: str,
        *,
        temperature: float | None = None,
        call: CompletionCall | None = None,
        history: list[dict[str, str]] | None = None,
    ) -> str:
        """POST `prompt` after `history` and return the assistant text.

        Raises a `CompletionError` subclass on failure.
        """
        self.validate()
        call = call or self.new_call()
        if call.cancelled:
            raise CancelledError()

        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        payload = self.build_payload(prompt, temperature, history)
        log.info(
            "POST %s model=%s prompt_len=%d turns=%d temperature=%s",
            self.config.api_url,
            self.config.model,
            len(prompt),
            len(payload["messages"]),
            payload.get("temperature", "-"),
        )

        try:
            response = call.session.post(
                self.config.api_url.strip(),
                headers=headers,
                json=payload,
                timeout=self.config.request_timeout,
            )
        except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema, requests.exceptions.InvalidSchema) as exc:
            raise ConfigurationError("API URL is invalid") from exc
        except requests.exceptions.Timeout as exc:
            if call.cancelled:
                raise CancelledError() from exc
            raise NetworkError("Request timed out, check the network connection") from exc
        except requests.exceptions.ConnectionError as exc:
            if call.cancelled:
                raise CancelledError() from exc
            if _is_host_lookup_failure(exc):
                raise NetworkError("Cannot reach the server, check the API URL") from exc
            raise NetworkError("Network connection unavailable") from exc
        except requests.exceptions.RequestException as exc:
            if call.cancelled:
                raise CancelledError() from exc
            raise NetworkError(f"Network error: {exc}") from exc

        if call.cancelled:
            log.info("Completion response arrived after cancellation; dropped")
            raise CancelledError()

        if response.status_code != 200:
            log.warning("Completion HTTP %s: %s", response.status_code, (response.text or "")[:200])
            raise HttpStatusError(response.status_code)

        try:
            data = response.json()
        except ValueError as exc:
            log.warning("Completion body is not JSON: %s", (response.text or "")[:200])
            raise ResponseFormatError("Response is not valid JSON") from exc

        return extract_content(data)
