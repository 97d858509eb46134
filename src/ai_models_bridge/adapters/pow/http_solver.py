"""Proof-of-work solver reached over a local HTTP helper."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from ...errors import ErrorKind, raise_model_error
from ...utils.async_helpers import api_retry

log = structlog.get_logger()


class HttpPowSolver:
    """Solver delegating the numeric work to a host-side helper.

    The helper receives ``{"challenge": {...}}`` and answers
    ``{"solution": "<base64 header value>"}``.
    """

    def __init__(
        self,
        url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._timeout = timeout

    async def aclose(self) -> None:
        """Close the HTTP client if this solver created it."""
        if self._owns_client:
            await self._client.aclose()

    @api_retry
    async def _post(self, challenge: dict[str, Any]) -> httpx.Response:
        return await self._client.post(
            self._url, json={"challenge": challenge}, timeout=self._timeout
        )

    async def solve(self, challenge: dict[str, Any]) -> str:
        """Solve a challenge through the helper.

        Raises:
            AIModelError: POW_CHALLENGE_FAILED on any helper failure.
        """
        try:
            response = await self._post(challenge)
            response.raise_for_status()
            solution = response.json().get("solution")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            log.error("pow_solver_failed", error=str(e))
            raise_model_error(
                "Proof-of-work solver failed", ErrorKind.POW_CHALLENGE_FAILED, cause=e
            )

        if not solution or not isinstance(solution, str):
            raise_model_error(
                "Proof-of-work solver returned no solution", ErrorKind.POW_CHALLENGE_FAILED
            )
        return solution
