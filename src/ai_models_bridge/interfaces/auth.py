"""Abstract interface for the external auth-token broker."""

from typing import Protocol


class AuthBroker(Protocol):
    """Mines a usable session token out of an authenticated context.

    The extractor is identified by name: it runs inside a privileged host
    context this package does not control, and only the resulting string
    crosses the boundary.
    """

    async def get_token(
        self,
        service_name: str,
        target_origin: str,
        url_pattern: str,
        extractor_id: str,
        force_fresh: bool = False,
    ) -> str | None:
        """
        Retrieve a token for a backend.

        Args:
            service_name: Human-readable backend name (e.g., "Deepseek")
            target_origin: Origin of the authenticated site
            url_pattern: Match pattern for tabs/pages belonging to the site
            extractor_id: Name of the extraction routine to run
            force_fresh: Skip any broker-side cache and extract again

        Returns:
            The token, or None when no authenticated session exists

        Raises:
            AIModelError: If the broker itself cannot be reached
        """
        ...
