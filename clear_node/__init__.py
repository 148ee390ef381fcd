"""CLEAR identity verification node.

Delegates identity verification to CLEAR's hosted UI and resumes the journey
once the user comes back with the nonce issued for the flow.
"""

__version__ = "0.1.0"

from clear_node.client import VerificationClient
from clear_node.config import NodeConfig
from clear_node.exceptions import (
    ClearNodeError,
    ConfigurationError,
    ProviderError,
    ValidationError,
)
from clear_node.flow import FlowPhase, VerificationFlow
from clear_node.host import JourneyHost
from clear_node.models import (
    ErrorKind,
    FlowState,
    Outcome,
    RedirectDirective,
    ResumptionInput,
    StepResult,
    VerificationResult,
)
from clear_node.nonce import generate_nonce
from clear_node.outcomes import OutcomeProvider, OutcomeResolver
from clear_node.state_store import FlowStateStore

__all__ = [
    "ClearNodeError",
    "ConfigurationError",
    "ErrorKind",
    "FlowPhase",
    "FlowState",
    "FlowStateStore",
    "JourneyHost",
    "NodeConfig",
    "Outcome",
    "OutcomeProvider",
    "OutcomeResolver",
    "ProviderError",
    "RedirectDirective",
    "ResumptionInput",
    "StepResult",
    "ValidationError",
    "VerificationClient",
    "VerificationFlow",
    "VerificationResult",
    "generate_nonce",
]
