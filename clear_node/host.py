"""Reference journey host for the CLEAR node.

Loads the suspended FlowState for a run, invokes the flow once, then persists
or discards the state according to the step result.
"""

import logging
import secrets
from typing import Optional

from clear_node.flow import VerificationFlow
from clear_node.models import ResumptionInput, StepResult
from clear_node.state_store import FlowStateStore

log = logging.getLogger(__name__)

# 16 bytes = 128 bits, base64url encoded
RUN_ID_BYTES = 16


class JourneyHost:
    """Drives one VerificationFlow over a FlowStateStore."""

    def __init__(self, flow: VerificationFlow, store: Optional[FlowStateStore] = None):
        self.flow = flow
        self.store = store or FlowStateStore()

    @staticmethod
    def new_run_id() -> str:
        """Allocate an unguessable run id for a journey this host starts."""
        return secrets.token_urlsafe(RUN_ID_BYTES)

    async def visit(self, run_id: str, resumption: ResumptionInput) -> StepResult:
        """Run the node for one request belonging to ``run_id``."""
        if self.flow.presented_nonce(resumption, run_id) is not None:
            # Consumed before validation: a second resumption finds nothing
            state = await self.store.take(run_id)
        else:
            state = await self.store.get(run_id)

        result = await self.flow.step(resumption, state, run_id=run_id)

        if result.state is not None:
            await self.store.put(run_id, result.state)
        elif await self.store.delete(run_id):
            log.debug(f"Discarded flow state for run {run_id}")

        return result
