"""Abstract interface for proof-of-work challenge solvers."""

from typing import Any, Protocol


class PowSolver(Protocol):
    """Opaque solver turning a backend challenge into a header value."""

    async def solve(self, challenge: dict[str, Any]) -> str:
        """
        Solve a proof-of-work challenge.

        Args:
            challenge: The challenge object exactly as issued by the backend
                (algorithm, challenge, salt, signature, difficulty,
                expire_at, expire_after, target_path)

        Returns:
            The encoded solution to send back with the guarded request

        Raises:
            AIModelError: POW_CHALLENGE_FAILED if no solution can be produced
        """
        ...
