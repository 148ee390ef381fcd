"""Root conftest for all tests - provides shared fixtures."""

import os
import tempfile

# Keep audit files out of /var/log (must be set before clear_node import)
os.environ.setdefault("CLEAR_AUDIT_LOG_DIR", tempfile.mkdtemp(prefix="clear-node-audit-"))

from unittest.mock import AsyncMock

import pytest

from clear_node.audit import AuditLogger, reset_audit_logger
from clear_node.client import VerificationClient
from clear_node.config import NodeConfig
from clear_node.flow import VerificationFlow
from clear_node.host import JourneyHost
from clear_node.models import SessionHandle, VerificationResult


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset the global audit logger before each test."""
    reset_audit_logger()
    yield
    reset_audit_logger()


@pytest.fixture
def node_config() -> NodeConfig:
    """Simple-variant settings from the k/p/https://host/cb scenario."""
    return NodeConfig(api_key="k", project_id="p", redirect_url="https://host/cb")


@pytest.fixture
def decision_config() -> NodeConfig:
    """Decision-routing settings with two statement codes."""
    return NodeConfig(
        api_key="k",
        project_id="p",
        redirect_url="https://host/cb",
        use_continue=False,
        statement_codes=["approved", "denied"],
    )


@pytest.fixture
def audit() -> AuditLogger:
    """Audit logger without a backing file."""
    return AuditLogger(log_dir=None)


@pytest.fixture
def client() -> AsyncMock:
    """CLEAR client stub: session s1/t1, results {"decision": "PERMIT"}."""
    mock = AsyncMock(spec=VerificationClient)
    mock.create_session.return_value = SessionHandle(id="s1", token="t1")
    mock.fetch_results.return_value = VerificationResult(body={"decision": "PERMIT"})
    return mock


@pytest.fixture
def make_flow(client, audit):
    """Build a VerificationFlow over the stub client."""

    def _make(config: NodeConfig, **kwargs) -> VerificationFlow:
        return VerificationFlow(config, client, audit=audit, **kwargs)

    return _make


@pytest.fixture
def host(make_flow, node_config) -> JourneyHost:
    return JourneyHost(make_flow(node_config))
