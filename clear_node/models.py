"""
CLEAR node data models.
State carried across the redirect, step inputs/outputs and error details.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Pipeline state keys
# =============================================================================

SESSION_ID = "sessionId"
NONCE = "nonce"
VERIFICATION_RESULTS = "verificationResults"


# =============================================================================
# Outcomes
# =============================================================================

class OutcomeId:
    """Built-in exit identifiers."""
    CONTINUE = "continue"
    PERMIT = "permit"
    DENY = "deny"
    INDETERMINATE = "indeterminate"
    CLIENT_ERROR = "clientError"


RESERVED_OUTCOME_IDS = frozenset({
    OutcomeId.CONTINUE,
    OutcomeId.PERMIT,
    OutcomeId.DENY,
    OutcomeId.INDETERMINATE,
    OutcomeId.CLIENT_ERROR,
})


class Decision:
    """Decision values CLEAR reports for a verification session."""
    PERMIT = "PERMIT"
    DENY = "DENY"
    INDETERMINATE = "INDETERMINATE"


PROVIDER_DECISIONS = frozenset({Decision.PERMIT, Decision.DENY, Decision.INDETERMINATE})


class Outcome(BaseModel):
    """Named terminal exit routing the pipeline to its next step."""
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str


# =============================================================================
# Errors
# =============================================================================

class ErrorKind(str, Enum):
    """Error family tag carried by every node error."""
    PROVIDER = "PROVIDER"
    VALIDATION = "VALIDATION"
    CONFIGURATION = "CONFIGURATION"
    INTERNAL = "INTERNAL"


class ErrorCode:
    """Error code registry"""
    # Provider
    PROVIDER_REQUEST_FAILED = "PROVIDER_REQUEST_FAILED"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    PROVIDER_RESPONSE_INVALID = "PROVIDER_RESPONSE_INVALID"

    # Resumption validation
    NONCE_MISSING = "NONCE_MISSING"
    NONCE_MISMATCH = "NONCE_MISMATCH"
    STATE_MISSING = "STATE_MISSING"

    # Administrator settings
    CONFIG_INVALID = "CONFIG_INVALID"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorDetail(BaseModel):
    """Operator-facing description of why a step ended in clientError."""
    kind: ErrorKind
    code: str
    message: str


# =============================================================================
# Flow state and provider payloads
# =============================================================================

class FlowState(BaseModel):
    """Correlation record for one in-flight verification.

    Created when the CLEAR session is established, handed back unchanged on
    the resuming visit, and discarded once that visit completes.
    """
    model_config = ConfigDict(frozen=True)

    session_id: str
    nonce: str

    def to_shared_state(self) -> Dict[str, str]:
        return {SESSION_ID: self.session_id, NONCE: self.nonce}

    @classmethod
    def from_shared_state(cls, shared: Dict[str, Any]) -> Optional["FlowState"]:
        """Rebuild state from host storage; None unless both keys are set."""
        session_id = shared.get(SESSION_ID)
        nonce = shared.get(NONCE)
        if not session_id or not nonce:
            return None
        return cls(session_id=session_id, nonce=nonce)


class SessionHandle(BaseModel):
    """verification_session returned by the create call."""
    id: str
    token: str


class VerificationResult(BaseModel):
    """Raw verification_session body; passed downstream untouched."""
    body: Dict[str, Any] = Field(default_factory=dict)

    @property
    def decision(self) -> Optional[str]:
        value = self.body.get("decision")
        if value is None:
            value = self.body.get("status")
        return value if isinstance(value, str) else None


# =============================================================================
# Step input / output
# =============================================================================

class ResumptionInput(BaseModel):
    """Request data for the current visit (query params and cookies)."""
    parameters: Dict[str, List[str]] = Field(default_factory=dict)
    cookies: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_query(cls, query: str, cookies: Optional[Dict[str, str]] = None) -> "ResumptionInput":
        return cls(parameters=parse_qs(query, keep_blank_values=True), cookies=cookies or {})

    def first(self, name: str) -> Optional[str]:
        values = self.parameters.get(name)
        return values[0] if values else None


class RedirectDirective(BaseModel):
    """Instruction to send the user agent to CLEAR's hosted UI.

    track_cookie asks the host to keep its tracking cookie across the round
    trip; cookies lists extra correlation cookies to set.
    """
    url: str
    method: str = "GET"
    track_cookie: bool = True
    cookies: Dict[str, str] = Field(default_factory=dict)


class StepResult(BaseModel):
    """Result of one VerificationFlow.step call.

    Exactly one of redirect and outcome is set. state is the FlowState the
    host must persist (phase 1 only); None means discard.
    """
    redirect: Optional[RedirectDirective] = None
    outcome: Optional[Outcome] = None
    state: Optional[FlowState] = None
    shared_state: Dict[str, Any] = Field(default_factory=dict)
    transient_state: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[ErrorDetail] = None

    @property
    def is_redirect(self) -> bool:
        return self.redirect is not None


class InputState(BaseModel):
    """State key a node reads."""
    name: str
    required: bool = False


class OutputState(BaseModel):
    """State key a node writes."""
    name: str
