"""Cooperative cancellation for running sync cycles.

A token is registered per audit record when a cycle starts. The engine polls
it between conversations; a cancel request flips it and the cycle stops at the
next checkpoint.
"""

from __future__ import annotations

import structlog

logger = structlog.get_logger()


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled


class CancellationRegistry:
    """Tokens of the cycles running in this process, keyed by audit record id."""

    def __init__(self) -> None:
        self._tokens: dict[int, CancellationToken] = {}

    def register(self, audit_id: int) -> CancellationToken:
        token = CancellationToken()
        self._tokens[audit_id] = token
        return token

    def cancel(self, audit_id: int) -> bool:
        """Signal the cycle if it runs in this process; returns whether a token was found."""

        token = self._tokens.get(audit_id)
        if token is None:
            return False
        token.cancel()
        logger.info("sync_cancel_signalled", audit_id=audit_id)
        return True

    def release(self, audit_id: int) -> None:
        self._tokens.pop(audit_id, None)

    def __contains__(self, audit_id: object) -> bool:
        return audit_id in self._tokens
