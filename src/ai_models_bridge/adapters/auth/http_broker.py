"""Auth broker reached over a local HTTP message channel.

Token extraction must run inside the browser (or another privileged host)
that holds the authenticated session. A small helper on the host side
receives ``GET_AUTH_TOKEN_FROM_WEBSITE`` messages, runs the named extractor
and answers ``{"success": bool, "token": str | null, "error": str?}``.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from ...errors import ErrorKind, raise_model_error
from ...utils.async_helpers import api_retry

log = structlog.get_logger()

MESSAGE_TYPE = "GET_AUTH_TOKEN_FROM_WEBSITE"


class HttpAuthBroker:
    """Auth broker posting token requests to a host-side helper.

    Example:
        broker = HttpAuthBroker("http://127.0.0.1:8765/auth")
        token = await broker.get_token(
            "Deepseek",
            "https://chat.deepseek.com",
            "*://chat.deepseek.com/*",
            "deepseekExtractor",
        )
    """

    def __init__(
        self,
        url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ) -> None:
        """Initialize the broker.

        Args:
            url: Endpoint of the host-side helper.
            client: Shared HTTP client. If None, creates one.
            timeout: Request timeout; extraction may open a background window.
        """
        self._url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._timeout = timeout

    async def aclose(self) -> None:
        """Close the HTTP client if this broker created it."""
        if self._owns_client:
            await self._client.aclose()

    @api_retry
    async def _post(self, message: dict[str, Any]) -> httpx.Response:
        return await self._client.post(self._url, json=message, timeout=self._timeout)

    async def get_token(
        self,
        service_name: str,
        target_origin: str,
        url_pattern: str,
        extractor_id: str,
        force_fresh: bool = False,
    ) -> str | None:
        """Ask the host helper to extract a token.

        Returns:
            The token, or None when no authenticated session was found.

        Raises:
            AIModelError: NETWORK_ERROR if the helper is unreachable,
                MISSING_HOST_PERMISSION if it lacks access to the origin,
                UNKNOWN_ERROR for any other helper-side failure.
        """
        message: dict[str, Any] = {
            "type": MESSAGE_TYPE,
            "payload": {
                "serviceName": service_name,
                "targetUrl": target_origin,
                "urlPattern": url_pattern,
                "extractorName": extractor_id,
                "forceNewTab": force_fresh,
            },
        }

        try:
            response = await self._post(message)
            response.raise_for_status()
            reply = response.json()
        except (httpx.HTTPError, ValueError) as e:
            log.error("auth_broker_unreachable", service=service_name, error=str(e))
            raise_model_error(
                f"Auth broker request for {service_name} failed",
                ErrorKind.NETWORK_ERROR,
                cause=e,
            )

        if not isinstance(reply, dict) or not reply.get("success"):
            error = str(reply.get("error", "")) if isinstance(reply, dict) else ""
            kind = (
                ErrorKind.MISSING_HOST_PERMISSION
                if "permission" in error.lower()
                else ErrorKind.UNKNOWN_ERROR
            )
            raise_model_error(
                f"Auth broker could not extract a token for {service_name}: {error}", kind
            )

        token = reply.get("token")
        return str(token) if token else None
