"""Configuration for the CLEAR verification node.

Operational constants come from the environment. Administrator settings for a
configured node instance live in NodeConfig and are validated before any
network call is made.
"""

import os
from pathlib import Path
from typing import List
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from clear_node.models import PROVIDER_DECISIONS, RESERVED_OUTCOME_IDS

# =============================================================================
# PROVIDER ENDPOINTS
# =============================================================================

# Standard API host (session creation, standard results endpoint)
API_BASE_URL = os.getenv("CLEAR_API_BASE_URL", "https://verified.clearme.com")

# Secure results endpoint, selected by NodeConfig.secure_endpoint
SECURE_API_BASE_URL = os.getenv("CLEAR_SECURE_API_BASE_URL", "https://secure.verified.clearme.com")

# Hosted verification UI; the session token is appended as ?token=
VERIFY_UI_URL = os.getenv("CLEAR_VERIFY_UI_URL", "https://verified.clearme.com/verify")

HTTP_TIMEOUT = float(os.getenv("CLEAR_HTTP_TIMEOUT", "10.0"))

# =============================================================================
# HOST / OPERATIONAL SETTINGS
# =============================================================================

# Lifetime of a suspended flow in the reference state store (seconds)
STATE_TTL = int(os.getenv("CLEAR_STATE_TTL", "900"))
STATE_CLEANUP_INTERVAL = int(os.getenv("CLEAR_STATE_CLEANUP_INTERVAL", "300"))

# Cookie the hosted journey uses to find its run after the round trip
JOURNEY_COOKIE = os.getenv("CLEAR_JOURNEY_COOKIE", "clear_journey")

# Cookie carrying the nonce when the provider does not round-trip query params
NONCE_COOKIE = os.getenv("CLEAR_NONCE_COOKIE", "clear_nonce")

AUDIT_LOG_DIR = Path(os.getenv("CLEAR_AUDIT_LOG_DIR", "/var/log/clear-node"))

LOG_LEVEL = os.getenv("CLEAR_LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("CLEAR_LOG_FILE", "")


class NodeConfig(BaseModel):
    """Administrator settings for one configured node.

    Attributes:
        api_key: CLEAR API key (bearer token)
        project_id: CLEAR project the verification sessions belong to
        redirect_url: Where CLEAR sends the user after verification
        secure_endpoint: Fetch results from the secure endpoint (default True)
        use_continue: Single ``continue`` exit instead of decision routing
        statement_codes: Extra decision values, each routed to its own exit
        nonce_round_trip: Append the nonce to the redirect URL; when False the
            nonce travels in the correlation cookie instead
    """

    api_key: str = ""
    project_id: str = ""
    redirect_url: str = ""
    secure_endpoint: bool = True
    use_continue: bool = True
    statement_codes: List[str] = Field(default_factory=list)
    nonce_round_trip: bool = True

    @property
    def results_base_url(self) -> str:
        """Base URL of the endpoint results are fetched from."""
        return SECURE_API_BASE_URL if self.secure_endpoint else API_BASE_URL

    @classmethod
    def from_env(cls) -> "NodeConfig":
        """Build the default node's settings from CLEAR_* variables."""
        codes = os.getenv("CLEAR_STATEMENT_CODES", "")
        return cls(
            api_key=os.getenv("CLEAR_API_KEY", ""),
            project_id=os.getenv("CLEAR_PROJECT_ID", ""),
            redirect_url=os.getenv("CLEAR_REDIRECT_URL", ""),
            secure_endpoint=os.getenv("CLEAR_SECURE_ENDPOINT", "true").lower() == "true",
            use_continue=os.getenv("CLEAR_USE_CONTINUE", "true").lower() == "true",
            statement_codes=[c.strip() for c in codes.split(",") if c.strip()],
            nonce_round_trip=os.getenv("CLEAR_NONCE_ROUND_TRIP", "true").lower() == "true",
        )


def validate_config(config: NodeConfig) -> list[str]:
    """Validate node settings and return list of issues."""
    issues = []

    if not config.api_key:
        issues.append("api_key is required")
    if not config.project_id:
        issues.append("project_id is required")

    if not config.redirect_url:
        issues.append("redirect_url is required")
    else:
        parsed = urlparse(config.redirect_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            issues.append(f"redirect_url must be an absolute http(s) URL: {config.redirect_url}")

    issues.extend(validate_statement_codes(config))
    return issues


def validate_statement_codes(config: NodeConfig) -> list[str]:
    """Check statement codes can each become a distinct exit."""
    # Statement codes only become exits on the decision-routing variant
    if config.use_continue:
        return []

    issues = []
    seen: set[str] = set()
    for code in config.statement_codes:
        if code in RESERVED_OUTCOME_IDS:
            issues.append(f"statement code collides with built-in outcome: {code}")
        elif code in PROVIDER_DECISIONS:
            issues.append(f"statement code shadowed by built-in decision: {code}")
        elif code in seen:
            issues.append(f"duplicate statement code: {code}")
        seen.add(code)
    return issues
