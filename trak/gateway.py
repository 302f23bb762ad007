"""Client for the external execution gateway.

The gateway runs a work instruction as a sub-agent session. Calls go to
``POST {url}/tools/invoke`` with ``{"tool": ..., "args": ...}``; the gateway
answers ``{"ok": true, "result": ...}`` or ``{"ok": false, "error": {...}}``.

Discovery order:
    1. Environment: TRAK_GATEWAY_URL, TRAK_GATEWAY_TOKEN
    2. config.yaml: gateway.url, gateway.token
    3. Default: http://127.0.0.1:18789 (no token)
"""

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import requests

from . import config
from .errors import GatewayError, GatewayUnreachableError, Result

logger = logging.getLogger(__name__)

# Session the spawn call is issued from
MAIN_SESSION_KEY = "agent:main:main"


@dataclass
class GatewayConfig:
    url: str
    token: str = ""

    @classmethod
    def discover(cls, trak_dir: Path | None = None) -> "GatewayConfig":
        """Resolve URL and token from the environment, then config.yaml."""
        env_url = os.environ.get("TRAK_GATEWAY_URL")
        env_token = os.environ.get("TRAK_GATEWAY_TOKEN", "")
        if env_url:
            return cls(url=env_url.rstrip("/"), token=env_token)

        if trak_dir is not None:
            url = config.get_config_value(trak_dir, "gateway.url")
            token = config.get_config_value(trak_dir, "gateway.token") or env_token
            if url:
                return cls(url=str(url).rstrip("/"), token=str(token or ""))

        return cls(url=config.DEFAULT_GATEWAY_URL, token=env_token)


@dataclass
class SpawnRequest:
    """What to hand the gateway for one dispatched task."""
    instruction: str
    label: str
    cleanup: str = "delete"
    timeout_seconds: int = config.DEFAULT_DISPATCH_TIMEOUT_SECONDS
    model: str | None = None


@dataclass
class SpawnResponse:
    ok: bool
    session_key: str | None = None
    run_id: str | None = None
    error: str | None = None


class Gateway(ABC):
    """Anything that can run a work instruction on behalf of a task."""

    @abstractmethod
    def ping(self) -> bool:
        """Return True if the gateway is reachable right now."""

    @abstractmethod
    def spawn(self, request: SpawnRequest) -> SpawnResponse:
        """Start a session for the instruction. Must not raise."""

    def is_session_active(self, label_prefix: str) -> bool:
        """Whether a session whose label starts with ``label_prefix`` is running."""
        return False


class HttpGateway(Gateway):
    """Gateway reached over HTTP with bearer-token auth.

    Args:
        gateway_config: URL and token
        timeout: Per-request timeout in seconds
        max_retries: Extra attempts after the first for retryable failures
        session: requests session, injectable for tests
        sleep: Backoff sleep function, injectable for tests
    """

    def __init__(
        self,
        gateway_config: GatewayConfig,
        timeout: int = 15,
        max_retries: int = 2,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = gateway_config
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = session or requests.Session()
        self.sleep = sleep

        self.session.headers.update({"Content-Type": "application/json"})
        if gateway_config.token:
            self.session.headers.update({"Authorization": f"Bearer {gateway_config.token}"})

    @classmethod
    def discover(cls, trak_dir: Path | None = None, **kwargs) -> "HttpGateway":
        return cls(GatewayConfig.discover(trak_dir), **kwargs)

    def _invoke(
        self,
        tool: str,
        args: dict[str, Any],
        timeout: int | None = None,
        session_key: str | None = None,
    ) -> Any:
        """Invoke a gateway tool once.

        Returns:
            The ``result`` payload of a successful call

        Raises:
            GatewayUnreachableError: Connection failure or timeout
            GatewayError: HTTP error status or ``ok: false`` body
        """
        body: dict[str, Any] = {"tool": tool, "args": args}
        if session_key:
            body["sessionKey"] = session_key

        url = f"{self.config.url}/tools/invoke"
        try:
            response = self.session.post(url, json=body, timeout=timeout or self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise GatewayUnreachableError(f"Gateway not reachable at {self.config.url}: {e}")

        if not response.ok:
            raise GatewayError(f"HTTP {response.status_code}: {response.text}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise GatewayError("Gateway returned a non-JSON response")

        if not data.get("ok"):
            error = data.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise GatewayError(message or "Unknown gateway error")

        return data.get("result")

    def invoke(
        self,
        tool: str,
        args: dict[str, Any],
        timeout: int | None = None,
        session_key: str | None = None,
    ) -> Result:
        """Invoke a tool with exponential backoff (1s, 2s, 4s ...).

        Authentication failures (401/403) are not retried.

        Returns:
            Result carrying the tool's ``result`` payload
        """
        last_error: GatewayError | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return Result.success(self._invoke(tool, args, timeout, session_key))
            except GatewayError as e:
                last_error = e
                if e.status_code in (401, 403):
                    break
                if attempt < self.max_retries:
                    delay = 2 ** attempt
                    logger.warning("Gateway %s failed (%s), retrying in %ss", tool, e, delay)
                    self.sleep(delay)

        return Result.from_error(last_error)

    def ping(self) -> bool:
        try:
            self._invoke("sessions_list", {}, timeout=5)
            return True
        except GatewayError as e:
            logger.debug("Gateway ping failed: %s", e)
            return False

    def list_sessions(self) -> list[dict[str, Any]]:
        """Active sessions, or an empty list when the gateway cannot answer."""
        try:
            result = self._invoke("sessions_list", {}, timeout=10)
        except GatewayError as e:
            logger.debug("Listing sessions failed: %s", e)
            return []
        details = (result or {}).get("details") or {}
        return list(details.get("sessions") or [])

    def is_session_active(self, label_prefix: str) -> bool:
        return any((s.get("label") or "").startswith(label_prefix) for s in self.list_sessions())

    def spawn(self, request: SpawnRequest) -> SpawnResponse:
        args: dict[str, Any] = {
            "task": request.instruction,
            "label": request.label,
            "cleanup": request.cleanup,
            "runTimeoutSeconds": request.timeout_seconds,
        }
        if request.model:
            args["model"] = request.model

        result = self.invoke("sessions_spawn", args, session_key=MAIN_SESSION_KEY)
        if not result.ok:
            return SpawnResponse(ok=False, error=result.message)

        details = _spawn_details(result.value)
        return SpawnResponse(
            ok=True,
            session_key=details.get("childSessionKey"),
            run_id=details.get("runId"),
        )


def _spawn_details(payload: Any) -> dict[str, Any]:
    """Pull spawn details from ``result.details`` or a JSON text content block."""
    if not isinstance(payload, dict):
        return {}
    if isinstance(payload.get("details"), dict):
        return payload["details"]

    content = payload.get("content") or []
    if content and isinstance(content[0], dict) and content[0].get("text"):
        try:
            parsed = json.loads(content[0]["text"])
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}

