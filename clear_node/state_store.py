"""Server-side store for suspended CLEAR flows.

Keyed by pipeline run id. Resumption goes through take(), which removes the
entry under the lock, so of two concurrent resumptions only the first sees the
state; the second finds nothing and fails closed.

Note: In-memory implementation. For multi-instance deployments, implement a
Redis-backed store with the same take() semantics.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from clear_node.config import STATE_TTL
from clear_node.models import FlowState

log = logging.getLogger(__name__)


class FlowStateStore:
    """In-memory FlowState store with expiry."""

    def __init__(self, default_ttl: int = STATE_TTL) -> None:
        """Initialize the store.

        Args:
            default_ttl: Default state TTL in seconds
        """
        self._states: dict[str, tuple[FlowState, datetime]] = {}
        self._lock = asyncio.Lock()
        self._default_ttl = default_ttl

    async def put(self, run_id: str, state: FlowState, ttl: Optional[int] = None) -> None:
        """Store (or replace) the suspended flow for a run."""
        expires_at = datetime.now(timezone.utc) + timedelta(
            seconds=self._default_ttl if ttl is None else ttl
        )
        async with self._lock:
            self._states[run_id] = (state, expires_at)
        log.debug(f"Stored flow state for run {run_id}")

    async def get(self, run_id: str) -> Optional[FlowState]:
        """Retrieve the suspended flow without consuming it.

        Returns:
            FlowState if found and not expired, None otherwise
        """
        async with self._lock:
            entry = self._states.get(run_id)
            if entry is None:
                return None

            state, expires_at = entry
            if datetime.now(timezone.utc) > expires_at:
                del self._states[run_id]
                log.debug(f"Flow state for run {run_id} expired")
                return None

            return state

    async def take(self, run_id: str) -> Optional[FlowState]:
        """Retrieve and delete the suspended flow (one-time use).

        Returns:
            FlowState if found and not expired, None otherwise
        """
        async with self._lock:
            entry = self._states.pop(run_id, None)

        if entry is None:
            return None

        state, expires_at = entry
        if datetime.now(timezone.utc) > expires_at:
            log.debug(f"Flow state for run {run_id} expired")
            return None

        log.debug(f"Took flow state for run {run_id}")
        return state

    async def delete(self, run_id: str) -> bool:
        """Delete the suspended flow.

        Returns:
            True if state was found and deleted
        """
        async with self._lock:
            if run_id in self._states:
                del self._states[run_id]
                return True
            return False

    async def cleanup_expired(self) -> int:
        """Remove all expired states.

        Returns:
            Number of states removed
        """
        now = datetime.now(timezone.utc)

        async with self._lock:
            expired = [
                run_id
                for run_id, (_, expires_at) in self._states.items()
                if expires_at < now
            ]
            for run_id in expired:
                del self._states[run_id]

        if expired:
            log.info(f"Cleaned up {len(expired)} expired flow states")

        return len(expired)

    @property
    def state_count(self) -> int:
        """Number of suspended flows (for monitoring)."""
        return len(self._states)
