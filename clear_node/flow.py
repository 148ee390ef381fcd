"""CLEAR verification flow.

Two-phase state machine run once per pipeline visit:

1. No nonce presented: create a CLEAR verification session, hand the host a
   FlowState to persist, and redirect the user to CLEAR's hosted UI.
2. Nonce presented: check it against the persisted FlowState, fetch the
   session's results and resolve the outcome. The state is single-use.

All failures end in the clientError outcome. step() is the only place errors
are converted; no exception escapes it.
"""

import hmac
import logging
from enum import Enum
from typing import Callable, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from clear_node.audit import AuditLogger, get_audit_logger
from clear_node.client import VerificationClient
from clear_node.config import NONCE_COOKIE, VERIFY_UI_URL, NodeConfig, validate_config
from clear_node.exceptions import ClearNodeError, ConfigurationError, ValidationError
from clear_node.models import (
    NONCE,
    SESSION_ID,
    VERIFICATION_RESULTS,
    ErrorCode,
    FlowState,
    InputState,
    Outcome,
    OutputState,
    RedirectDirective,
    ResumptionInput,
    StepResult,
)
from clear_node.nonce import generate_nonce
from clear_node.outcomes import CLIENT_ERROR_OUTCOME, OutcomeResolver

log = logging.getLogger(__name__)


class FlowPhase(str, Enum):
    """Where a visit sits in the protocol."""
    NOT_STARTED = "NOT_STARTED"            # no nonce, no state
    AWAITING_CALLBACK = "AWAITING_CALLBACK"  # state, but no nonce presented
    RESUMING = "RESUMING"                  # nonce presented


def append_query_param(url: str, name: str, value: str) -> str:
    """Add a query parameter, keeping any the URL already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.append((name, value))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def build_verify_url(token: str) -> str:
    """CLEAR hosted verification page for a session token."""
    return f"{VERIFY_UI_URL}?{urlencode({'token': token})}"


class VerificationFlow:
    """The CLEAR node: decides the phase of each visit and runs it.

    Holds no per-flow state; everything needed to resume lives in the
    FlowState the host persists between visits.
    """

    def __init__(
        self,
        config: NodeConfig,
        client: VerificationClient,
        audit: Optional[AuditLogger] = None,
        nonce_factory: Callable[[], str] = generate_nonce,
    ):
        """Initialize the flow for one configured node.

        Args:
            config: Administrator settings
            client: Shared CLEAR API client
            audit: Operator audit channel (global one by default)
            nonce_factory: Nonce source

        Raises:
            ConfigurationError: If the statement codes cannot form an outcome set
        """
        self._config = config
        self._client = client
        self._audit = audit or get_audit_logger()
        self._nonce_factory = nonce_factory
        self._resolver = OutcomeResolver(config)

    @property
    def client(self) -> VerificationClient:
        return self._client

    @property
    def outcomes(self) -> List[Outcome]:
        """Exits this node can take, fixed at construction."""
        return self._resolver.outcomes

    @staticmethod
    def node_inputs() -> List[InputState]:
        return [InputState(name=SESSION_ID, required=False), InputState(name=NONCE, required=False)]

    @staticmethod
    def node_outputs() -> List[OutputState]:
        return [OutputState(name=VERIFICATION_RESULTS)]

    def presented_nonce(self, resumption: ResumptionInput, run_id: Optional[str] = None) -> Optional[str]:
        """Nonce the user agent brought back, or None if it brought none.

        The nonce rides the redirect URL query when CLEAR round-trips it,
        otherwise the correlation cookie set with the redirect. The cookie
        names the run it was issued for and counts only for that run.
        """
        if self._config.nonce_round_trip:
            if NONCE not in resumption.parameters:
                return None
            return resumption.first(NONCE) or ""

        value = resumption.cookies.get(NONCE_COOKIE)
        if value is None:
            return None
        owner, sep, nonce = value.rpartition(":")
        if not sep or owner != (run_id or ""):
            return None
        return nonce

    def phase(
        self,
        resumption: ResumptionInput,
        state: Optional[FlowState],
        run_id: Optional[str] = None,
    ) -> FlowPhase:
        if self.presented_nonce(resumption, run_id) is not None:
            return FlowPhase.RESUMING
        if state is not None:
            return FlowPhase.AWAITING_CALLBACK
        return FlowPhase.NOT_STARTED

    async def step(
        self,
        resumption: ResumptionInput,
        state: Optional[FlowState] = None,
        run_id: Optional[str] = None,
    ) -> StepResult:
        """Run one visit of the node.

        Args:
            resumption: Query parameters and cookies of the current request
            state: FlowState persisted by the previous visit, if any
            run_id: Pipeline run identifier; a cookie-carried nonce only
                counts for the run it was issued to

        Returns:
            StepResult with either a redirect (and state to persist) or an
            outcome. Never raises.
        """
        phase = self.phase(resumption, state, run_id)
        log.debug(f"CLEAR step phase={phase.value}", extra={"run_id": run_id, "phase": phase.value})

        try:
            if phase is FlowPhase.NOT_STARTED:
                return await self._start(run_id)
            if phase is FlowPhase.AWAITING_CALLBACK:
                # A suspended flow revisited without its nonce is not restarted
                raise ValidationError.nonce_missing()
            return await self._resume(resumption, state, run_id)
        except ClearNodeError as e:
            return self._fail(e, phase, run_id, state)
        except Exception as e:
            return self._fail(
                ClearNodeError(ErrorCode.INTERNAL_ERROR, f"Unexpected error: {e}"),
                phase,
                run_id,
                state,
                cause=e,
            )

    def _check_config(self) -> None:
        issues = validate_config(self._config)
        if issues:
            raise ConfigurationError(issues)

    async def _start(self, run_id: Optional[str]) -> StepResult:
        self._check_config()

        nonce = self._nonce_factory()
        redirect_target = self._config.redirect_url
        if self._config.nonce_round_trip:
            redirect_target = append_query_param(redirect_target, NONCE, nonce)

        handle = await self._client.create_session(
            self._config.api_key,
            self._config.project_id,
            redirect_target,
        )

        state = FlowState(session_id=handle.id, nonce=nonce)

        cookies = {} if self._config.nonce_round_trip else {NONCE_COOKIE: f"{run_id or ''}:{nonce}"}
        directive = RedirectDirective(url=build_verify_url(handle.token), cookies=cookies)

        self._audit.log("session.created", run_id=run_id, session_id=handle.id)
        log.info(
            f"Redirecting to CLEAR for session {handle.id}",
            extra={"run_id": run_id, "phase": FlowPhase.NOT_STARTED.value},
        )
        return StepResult(redirect=directive, state=state, shared_state=state.to_shared_state())

    async def _resume(
        self,
        resumption: ResumptionInput,
        state: Optional[FlowState],
        run_id: Optional[str],
    ) -> StepResult:
        presented = self.presented_nonce(resumption, run_id)
        if not presented:
            raise ValidationError.nonce_missing()
        if state is None:
            raise ValidationError.state_missing()
        if not state.nonce or not hmac.compare_digest(state.nonce.encode(), presented.encode()):
            raise ValidationError.nonce_mismatch()

        self._check_config()

        result = await self._client.fetch_results(
            self._config.api_key,
            state.session_id,
            base_url=self._config.results_base_url,
        )
        outcome = self._resolver.resolve(result)

        if outcome.id == CLIENT_ERROR_OUTCOME.id:
            log.warning(
                f"Unrecognised CLEAR decision for session {state.session_id}",
                extra={"run_id": run_id, "outcome": outcome.id},
            )

        self._audit.log(
            "resume.completed",
            run_id=run_id,
            session_id=state.session_id,
            outcome=outcome.id,
            details={"decision": result.decision},
        )
        log.info(
            f"CLEAR session {state.session_id} resolved to {outcome.id}",
            extra={"run_id": run_id, "phase": FlowPhase.RESUMING.value, "outcome": outcome.id},
        )
        return StepResult(outcome=outcome, transient_state={VERIFICATION_RESULTS: result.body})

    def _fail(
        self,
        error: ClearNodeError,
        phase: FlowPhase,
        run_id: Optional[str],
        state: Optional[FlowState],
        cause: Optional[BaseException] = None,
    ) -> StepResult:
        session_id = state.session_id if state else None

        if isinstance(error, ValidationError):
            log.error(
                f"{error.message}, exiting with {CLIENT_ERROR_OUTCOME.id}",
                extra={"run_id": run_id, "phase": phase.value},
            )
        else:
            log.error(
                f"CLEAR step failed [{error.code}]: {error.message}",
                extra={"run_id": run_id, "phase": phase.value},
                exc_info=cause,
            )

        self._audit.log_exception(
            f"{'session' if phase is FlowPhase.NOT_STARTED else 'resume'}.failed",
            cause or error,
            run_id=run_id,
            session_id=session_id,
            error_code=error.code,
        )
        return StepResult(outcome=CLIENT_ERROR_OUTCOME, error=error.to_detail())
