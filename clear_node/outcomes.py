"""Outcome set and result-to-outcome mapping for the CLEAR node.

The outcome set is fixed when a node is configured: either the simple
continue/clientError pair, or decision routing with any administrator
statement codes inserted before clientError.
"""

from typing import Dict, List

from clear_node.config import NodeConfig, validate_statement_codes
from clear_node.exceptions import ConfigurationError
from clear_node.models import Decision, Outcome, OutcomeId, VerificationResult

CONTINUE_OUTCOME = Outcome(id=OutcomeId.CONTINUE, display_name="Continue")
PERMIT_OUTCOME = Outcome(id=OutcomeId.PERMIT, display_name="Permit")
DENY_OUTCOME = Outcome(id=OutcomeId.DENY, display_name="Deny")
INDETERMINATE_OUTCOME = Outcome(id=OutcomeId.INDETERMINATE, display_name="Indeterminate")
CLIENT_ERROR_OUTCOME = Outcome(id=OutcomeId.CLIENT_ERROR, display_name="Error")

# Provider decision value -> built-in exit
DECISION_OUTCOMES: Dict[str, Outcome] = {
    Decision.PERMIT: PERMIT_OUTCOME,
    Decision.DENY: DENY_OUTCOME,
    Decision.INDETERMINATE: INDETERMINATE_OUTCOME,
}


class OutcomeProvider:
    """Builds the ordered outcome list a configured node exposes."""

    @staticmethod
    def get_outcomes(config: NodeConfig) -> List[Outcome]:
        if config.use_continue:
            return [CONTINUE_OUTCOME, CLIENT_ERROR_OUTCOME]

        outcomes = [PERMIT_OUTCOME, DENY_OUTCOME, INDETERMINATE_OUTCOME]
        outcomes.extend(Outcome(id=code, display_name=code) for code in config.statement_codes)
        outcomes.append(CLIENT_ERROR_OUTCOME)
        return outcomes


class OutcomeResolver:
    """Maps fetched verification results onto the node's outcome set.

    Pure: no I/O, no state beyond the outcome set built at construction.
    """

    def __init__(self, config: NodeConfig):
        issues = validate_statement_codes(config)
        if issues:
            raise ConfigurationError(issues)

        self._use_continue = config.use_continue
        self._outcomes = OutcomeProvider.get_outcomes(config)
        self._custom = {
            code: Outcome(id=code, display_name=code)
            for code in config.statement_codes
        }

    @property
    def outcomes(self) -> List[Outcome]:
        return list(self._outcomes)

    def resolve(self, result: VerificationResult) -> Outcome:
        """Resolve the exit for a verification result.

        Simple variant: always continue; routing is left to later steps.
        Decision variant: PERMIT/DENY/INDETERMINATE, then statement codes,
        anything else is clientError.
        """
        if self._use_continue:
            return CONTINUE_OUTCOME

        decision = result.decision
        if decision is None:
            return CLIENT_ERROR_OUTCOME
        if decision in DECISION_OUTCOMES:
            return DECISION_OUTCOMES[decision]
        return self._custom.get(decision, CLIENT_ERROR_OUTCOME)
