"""Tests for the CLEAR verification flow state machine."""

import json
import logging
from urllib.parse import parse_qs, urlsplit

import pytest

from clear_node.config import NodeConfig
from clear_node.exceptions import ProviderError
from clear_node.flow import (
    FlowPhase,
    VerificationFlow,
    append_query_param,
    build_verify_url,
)
from clear_node.models import (
    ErrorCode,
    ErrorKind,
    FlowState,
    ResumptionInput,
)


def _nonce_from(redirect_target: str) -> str:
    return parse_qs(urlsplit(redirect_target).query)["nonce"][0]


def _resume_with(nonce: str) -> ResumptionInput:
    return ResumptionInput(parameters={"nonce": [nonce]})


# =============================================================================
# URL helpers
# =============================================================================


class TestUrlHelpers:

    def test_append_to_bare_url(self):
        assert append_query_param("https://host/cb", "nonce", "abc") == "https://host/cb?nonce=abc"

    def test_append_keeps_existing_query(self):
        url = append_query_param("https://host/cb?journey=1", "nonce", "abc")
        assert parse_qs(urlsplit(url).query) == {"journey": ["1"], "nonce": ["abc"]}

    def test_verify_url(self):
        assert build_verify_url("t1") == "https://verified.clearme.com/verify?token=t1"


# =============================================================================
# Node contract
# =============================================================================


class TestNodeContract:

    def test_inputs_are_optional(self):
        inputs = VerificationFlow.node_inputs()
        assert [(i.name, i.required) for i in inputs] == [("sessionId", False), ("nonce", False)]

    def test_outputs(self):
        assert [o.name for o in VerificationFlow.node_outputs()] == ["verificationResults"]

    def test_outcomes_fixed_at_construction(self, make_flow, decision_config):
        flow = make_flow(decision_config)
        assert [o.id for o in flow.outcomes] == [
            "permit", "deny", "indeterminate", "approved", "denied", "clientError",
        ]


# =============================================================================
# Phase detection
# =============================================================================


class TestPhase:

    def test_not_started(self, make_flow, node_config):
        flow = make_flow(node_config)
        assert flow.phase(ResumptionInput(), None) is FlowPhase.NOT_STARTED

    def test_awaiting_callback(self, make_flow, node_config):
        flow = make_flow(node_config)
        state = FlowState(session_id="s1", nonce="n")
        assert flow.phase(ResumptionInput(), state) is FlowPhase.AWAITING_CALLBACK

    def test_empty_nonce_still_resumes(self, make_flow, node_config):
        flow = make_flow(node_config)
        assert flow.phase(ResumptionInput.from_query("nonce="), None) is FlowPhase.RESUMING


# =============================================================================
# Phase 1: session creation
# =============================================================================


class TestStart:

    @pytest.mark.asyncio
    async def test_creates_session_and_redirects(self, make_flow, node_config, client):
        flow = make_flow(node_config)

        result = await flow.step(ResumptionInput())

        assert result.is_redirect
        assert result.outcome is None
        assert result.redirect.url == "https://verified.clearme.com/verify?token=t1"
        assert result.redirect.method == "GET"
        assert result.redirect.track_cookie is True

        client.create_session.assert_awaited_once()
        api_key, project_id, redirect_target = client.create_session.await_args.args
        assert (api_key, project_id) == ("k", "p")
        assert redirect_target.startswith("https://host/cb?nonce=")

        nonce = _nonce_from(redirect_target)
        assert result.state == FlowState(session_id="s1", nonce=nonce)
        assert result.shared_state == {"sessionId": "s1", "nonce": nonce}

    @pytest.mark.asyncio
    async def test_fresh_nonce_per_flow(self, make_flow, node_config, client):
        flow = make_flow(node_config)

        first = await flow.step(ResumptionInput())
        second = await flow.step(ResumptionInput())

        assert first.state.nonce != second.state.nonce

    @pytest.mark.asyncio
    async def test_provider_failure_persists_nothing(self, make_flow, node_config, client):
        client.create_session.side_effect = ProviderError.bad_status(500, "boom")
        flow = make_flow(node_config)

        result = await flow.step(ResumptionInput())

        assert result.outcome.id == "clientError"
        assert result.redirect is None
        assert result.state is None
        assert result.shared_state == {}
        assert result.error.kind == ErrorKind.PROVIDER
        assert result.error.code == ErrorCode.PROVIDER_REQUEST_FAILED

    @pytest.mark.asyncio
    async def test_missing_settings_fail_before_network(self, make_flow, client):
        flow = make_flow(NodeConfig(project_id="p", redirect_url="https://host/cb"))

        result = await flow.step(ResumptionInput())

        assert result.outcome.id == "clientError"
        assert result.error.kind == ErrorKind.CONFIGURATION
        assert "api_key is required" in result.error.message
        client.create_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_nonce_factory_is_used(self, make_flow, node_config, client):
        flow = make_flow(node_config, nonce_factory=lambda: "fixed")

        result = await flow.step(ResumptionInput())

        assert result.state.nonce == "fixed"
        assert client.create_session.await_args.args[2] == "https://host/cb?nonce=fixed"


# =============================================================================
# Phase 2: resumption
# =============================================================================


class TestResume:

    @pytest.mark.asyncio
    async def test_round_trip_simple_variant(self, make_flow, node_config, client):
        """k / p / https://host/cb with a PERMIT result exits continue."""
        flow = make_flow(node_config)
        first = await flow.step(ResumptionInput())
        nonce = _nonce_from(client.create_session.await_args.args[2])

        result = await flow.step(_resume_with(nonce), first.state)

        assert result.outcome.id == "continue"
        assert result.state is None
        assert result.error is None
        assert result.transient_state == {"verificationResults": {"decision": "PERMIT"}}
        client.fetch_results.assert_awaited_once_with(
            "k", "s1", base_url="https://secure.verified.clearme.com"
        )

    @pytest.mark.asyncio
    async def test_round_trip_decision_variant(self, make_flow, decision_config, client):
        flow = make_flow(decision_config)
        first = await flow.step(ResumptionInput())

        result = await flow.step(_resume_with(first.state.nonce), first.state)

        assert result.outcome.id == "permit"

    @pytest.mark.asyncio
    async def test_standard_endpoint(self, make_flow, client):
        config = NodeConfig(api_key="k", project_id="p", redirect_url="https://host/cb", secure_endpoint=False)
        flow = make_flow(config)
        state = FlowState(session_id="s1", nonce="n1")

        await flow.step(_resume_with("n1"), state)

        assert client.fetch_results.await_args.kwargs["base_url"] == "https://verified.clearme.com"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("presented", ["n2", "", "N1", "n1 ", "n1n1"])
    async def test_mismatched_nonce_rejected(self, make_flow, node_config, client, presented):
        flow = make_flow(node_config)
        state = FlowState(session_id="s1", nonce="n1")

        result = await flow.step(ResumptionInput.from_query(f"nonce={presented}"), state)

        assert result.outcome.id == "clientError"
        assert result.error.kind == ErrorKind.VALIDATION
        assert result.transient_state == {}
        client.fetch_results.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mismatch_code(self, make_flow, node_config, client):
        flow = make_flow(node_config)
        state = FlowState(session_id="s1", nonce="n1")

        result = await flow.step(_resume_with("n2"), state)

        assert result.error.code == ErrorCode.NONCE_MISMATCH
        assert result.error.message == "Mismatched nonce value"

    @pytest.mark.asyncio
    async def test_nonce_without_state(self, make_flow, node_config, client):
        flow = make_flow(node_config)

        result = await flow.step(_resume_with("n1"), None)

        assert result.outcome.id == "clientError"
        assert result.error.code == ErrorCode.STATE_MISSING
        client.fetch_results.assert_not_awaited()
        client.create_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_state_without_nonce_is_not_restarted(self, make_flow, node_config, client):
        flow = make_flow(node_config)
        state = FlowState(session_id="s1", nonce="n1")

        result = await flow.step(ResumptionInput(), state)

        assert result.outcome.id == "clientError"
        assert result.error.code == ErrorCode.NONCE_MISSING
        client.create_session.assert_not_awaited()
        client.fetch_results.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fetch_failure(self, make_flow, node_config, client):
        client.fetch_results.side_effect = ProviderError.unavailable("Timeout")
        flow = make_flow(node_config)
        state = FlowState(session_id="s1", nonce="n1")

        result = await flow.step(_resume_with("n1"), state)

        assert result.outcome.id == "clientError"
        assert result.error.code == ErrorCode.PROVIDER_UNAVAILABLE
        assert result.transient_state == {}

    @pytest.mark.asyncio
    async def test_unexpected_exception_contained(self, make_flow, node_config, client):
        client.fetch_results.side_effect = RuntimeError("unexpected")
        flow = make_flow(node_config)
        state = FlowState(session_id="s1", nonce="n1")

        result = await flow.step(_resume_with("n1"), state)

        assert result.outcome.id == "clientError"
        assert result.error.kind == ErrorKind.INTERNAL
        assert result.error.code == ErrorCode.INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_unknown_decision(self, make_flow, decision_config, client):
        client.fetch_results.return_value.body["decision"] = "SOMETHING_ELSE"
        flow = make_flow(decision_config)
        state = FlowState(session_id="s1", nonce="n1")

        result = await flow.step(_resume_with("n1"), state)

        assert result.outcome.id == "clientError"
        assert result.error is None
        assert result.transient_state["verificationResults"] == {"decision": "SOMETHING_ELSE"}


# =============================================================================
# Cookie-carried nonce
# =============================================================================


class TestCookieNonce:

    @pytest.fixture
    def cookie_config(self) -> NodeConfig:
        return NodeConfig(api_key="k", project_id="p", redirect_url="https://host/cb", nonce_round_trip=False)

    @pytest.mark.asyncio
    async def test_redirect_url_left_untouched(self, make_flow, cookie_config, client):
        flow = make_flow(cookie_config)

        result = await flow.step(ResumptionInput(), run_id="run-1")

        assert client.create_session.await_args.args[2] == "https://host/cb"
        assert result.redirect.cookies == {"clear_nonce": f"run-1:{result.state.nonce}"}

    @pytest.mark.asyncio
    async def test_resume_from_cookie(self, make_flow, cookie_config, client):
        flow = make_flow(cookie_config)
        first = await flow.step(ResumptionInput(), run_id="run-1")

        resumption = ResumptionInput(cookies=first.redirect.cookies)
        result = await flow.step(resumption, first.state, run_id="run-1")

        assert result.outcome.id == "continue"

    @pytest.mark.asyncio
    async def test_query_nonce_ignored(self, make_flow, cookie_config, client):
        flow = make_flow(cookie_config)
        state = FlowState(session_id="s1", nonce="n1")

        result = await flow.step(_resume_with("n1"), state, run_id="run-1")

        assert result.error.code == ErrorCode.NONCE_MISSING
        client.fetch_results.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cookie_mismatch(self, make_flow, cookie_config, client):
        flow = make_flow(cookie_config)
        state = FlowState(session_id="s1", nonce="n1")

        result = await flow.step(ResumptionInput(cookies={"clear_nonce": "run-1:n2"}), state, run_id="run-1")

        assert result.error.code == ErrorCode.NONCE_MISMATCH
        client.fetch_results.assert_not_awaited()

    @pytest.mark.parametrize("cookie", ["run-1:n1", "n1", "run-10:n1"])
    def test_cookie_for_other_run_not_presented(self, make_flow, cookie_config, cookie):
        flow = make_flow(cookie_config)
        resumption = ResumptionInput(cookies={"clear_nonce": cookie})

        assert flow.presented_nonce(resumption, "run-2") is None
        assert flow.phase(resumption, None, "run-2") is FlowPhase.NOT_STARTED

    @pytest.mark.asyncio
    async def test_leftover_cookie_does_not_block_new_run(self, make_flow, cookie_config, client):
        flow = make_flow(cookie_config)
        abandoned = await flow.step(ResumptionInput(), run_id="run-1")

        result = await flow.step(ResumptionInput(cookies=abandoned.redirect.cookies), run_id="run-2")

        assert result.is_redirect
        assert client.create_session.await_count == 2
        assert result.redirect.cookies["clear_nonce"].startswith("run-2:")



# =============================================================================
# Diagnostics
# =============================================================================


class TestDiagnostics:

    @pytest.mark.asyncio
    async def test_failure_audited(self, make_flow, node_config, audit):
        flow = make_flow(node_config)
        state = FlowState(session_id="s1", nonce="secret-nonce")

        await flow.step(_resume_with("wrong-nonce"), state, run_id="run-1")

        events = audit.get_recent_events(action_filter="resume.failed")
        assert len(events) == 1
        assert events[0]["run_id"] == "run-1"
        assert events[0]["session_id"] == "s1"
        assert events[0]["error_code"] == ErrorCode.NONCE_MISMATCH
        assert "stack_trace" in events[0]["details"]
        assert "secret-nonce" not in json.dumps(events[0])

    @pytest.mark.asyncio
    async def test_nonce_never_logged(self, make_flow, node_config, client, caplog):
        flow = make_flow(node_config, nonce_factory=lambda: "secret-nonce")
        caplog.set_level(logging.DEBUG)

        first = await flow.step(ResumptionInput(), run_id="run-1")
        await flow.step(_resume_with("other"), first.state, run_id="run-1")

        assert "secret-nonce" not in caplog.text

    @pytest.mark.asyncio
    async def test_success_audited(self, make_flow, node_config, audit):
        flow = make_flow(node_config)
        state = FlowState(session_id="s1", nonce="n1")

        await flow.step(_resume_with("n1"), state, run_id="run-1")

        events = audit.get_recent_events(action_filter="resume.completed")
        assert events[0]["outcome"] == "continue"
        assert events[0]["details"] == {"decision": "PERMIT"}

    @pytest.mark.asyncio
    async def test_unexpected_error_logged_once(self, make_flow, node_config, client, caplog):
        client.fetch_results.side_effect = RuntimeError("provider exploded")
        flow = make_flow(node_config)
        state = FlowState(session_id="s1", nonce="n1")
        caplog.set_level(logging.DEBUG, logger="clear_node.flow")

        await flow.step(_resume_with("n1"), state, run_id="run-1")

        errors = [r for r in caplog.records if r.name == "clear_node.flow" and r.levelno >= logging.ERROR]
        assert len(errors) == 1
        assert errors[0].exc_info is not None
        assert "provider exploded" in errors[0].getMessage()
