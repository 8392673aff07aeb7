"""HTTP agent — calls a model-serving backend over JSON."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from governor.errors import AgentRejectedError, AgentTimeoutError, TransientExecutionError

logger = logging.getLogger(__name__)


class HttpAgent:
    """
    Posts ``{"capability", "payload"}`` to ``endpoint`` and returns the
    ``output`` field of the JSON response.

    Connection errors, timeouts and 5xx responses become
    ``TransientExecutionError``. A 4xx response means the request itself was
    at fault and raises ``AgentRejectedError``, which is never retried.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.endpoint = endpoint
        self._client = client or httpx.Client(timeout=timeout, headers=headers)
        self._owns_client = client is None

    def execute(self, capability: str, payload: dict[str, Any]) -> Any:
        try:
            response = self._client.post(
                self.endpoint, json={"capability": capability, "payload": payload}
            )
        except httpx.TimeoutException as e:
            raise AgentTimeoutError(f"{self.endpoint} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientExecutionError(f"{self.endpoint} unreachable: {e}") from e

        if response.status_code >= 500:
            raise TransientExecutionError(
                f"{self.endpoint} returned {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise AgentRejectedError(
                f"{self.endpoint} refused the request with {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        data = response.json()
        if isinstance(data, dict) and "output" in data:
            return data["output"]
        return data

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __repr__(self) -> str:
        return f"HttpAgent({self.endpoint!r})"
