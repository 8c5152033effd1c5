"""Tests for the OPA client wire contract and failure classification.

Uses respx to mock the policy engine over httpx.
"""

import json

import httpx
import pytest
import respx

from compliance_gateway.adapters.opa_client import OPAClient, policy_path
from compliance_gateway.errors import EngineTransportError

OPA_URL = "http://opa.test:8181"
EVAL_URL = f"{OPA_URL}/v1/data/compliance/production"

INPUT = {
    "application": {"name": "pay-api", "environment": "production", "riskTier": "critical", "owner": "a@b.io"},
    "scanResults": [],
    "metadata": {},
}


@pytest.fixture()
def client() -> OPAClient:
    return OPAClient(opa_url=OPA_URL + "/", eval_timeout_ms=1000, health_timeout_ms=500)


def test_policy_path_replaces_every_dot() -> None:
    assert policy_path("compliance.production.strict") == "compliance/production/strict"


class TestEvaluate:
    @pytest.mark.asyncio()
    async def test_allow_decision(self, client: OPAClient) -> None:
        body = {"result": {"allow": True, "violations": []}}
        with respx.mock:
            route = respx.post(EVAL_URL).mock(return_value=httpx.Response(200, json=body))
            decision = await client.evaluate(INPUT, "compliance.production")

        assert route.called
        assert json.loads(route.calls.last.request.content) == {"input": INPUT}
        assert decision.allow is True
        assert decision.violations == ()
        assert decision.request_body == {"input": INPUT}
        assert json.loads(decision.response_body) == body
        assert decision.policy_package == "compliance.production"

    @pytest.mark.asyncio()
    async def test_deny_with_violations_is_a_decision_not_an_error(self, client: OPAClient) -> None:
        body = {
            "result": {
                "allow": False,
                "violations": [
                    {
                        "rule": "no_critical",
                        "message": "Critical vulnerabilities are not allowed",
                        "severity": "critical",
                        "details": {"count": 2},
                    }
                ],
                "reason": "blocked by policy",
            }
        }
        with respx.mock:
            respx.post(EVAL_URL).mock(return_value=httpx.Response(200, json=body))
            decision = await client.evaluate(INPUT, "compliance.production")

        assert decision.allow is False
        assert decision.violation_messages == ("Critical vulnerabilities are not allowed",)
        assert decision.violations[0].rule == "no_critical"
        assert decision.violations[0].details == {"count": 2}
        assert decision.reason == "blocked by policy"

    @pytest.mark.asyncio()
    async def test_deny_without_violations_is_a_transport_error(self, client: OPAClient) -> None:
        with respx.mock:
            respx.post(EVAL_URL).mock(
                return_value=httpx.Response(200, json={"result": {"allow": False, "violations": []}})
            )
            with pytest.raises(EngineTransportError):
                await client.evaluate(INPUT, "compliance.production")

    @pytest.mark.asyncio()
    async def test_non_2xx_is_a_transport_error(self, client: OPAClient) -> None:
        with respx.mock:
            respx.post(EVAL_URL).mock(return_value=httpx.Response(500, text="internal stack trace"))
            with pytest.raises(EngineTransportError) as exc_info:
                await client.evaluate(INPUT, "compliance.production")

        assert exc_info.value.status_code == 500
        assert "stack trace" not in exc_info.value.message

    @pytest.mark.asyncio()
    async def test_unparsable_body_is_a_transport_error(self, client: OPAClient) -> None:
        with respx.mock:
            respx.post(EVAL_URL).mock(return_value=httpx.Response(200, text="<html>not json</html>"))
            with pytest.raises(EngineTransportError):
                await client.evaluate(INPUT, "compliance.production")

    @pytest.mark.asyncio()
    async def test_missing_result_is_a_transport_error(self, client: OPAClient) -> None:
        with respx.mock:
            respx.post(EVAL_URL).mock(return_value=httpx.Response(200, json={}))
            with pytest.raises(EngineTransportError):
                await client.evaluate(INPUT, "compliance.production")

    @pytest.mark.asyncio()
    async def test_malformed_violation_is_a_transport_error(self, client: OPAClient) -> None:
        with respx.mock:
            respx.post(EVAL_URL).mock(
                return_value=httpx.Response(200, json={"result": {"allow": False, "violations": [{"rule": "x"}]}})
            )
            with pytest.raises(EngineTransportError):
                await client.evaluate(INPUT, "compliance.production")

    @pytest.mark.asyncio()
    async def test_connection_error_is_a_transport_error(self, client: OPAClient) -> None:
        with respx.mock:
            respx.post(EVAL_URL).mock(side_effect=httpx.ConnectError("connection refused"))
            with pytest.raises(EngineTransportError) as exc_info:
                await client.evaluate(INPUT, "compliance.production")

        assert exc_info.value.message == "Policy engine is unreachable"

    @pytest.mark.asyncio()
    async def test_timeout_is_a_transport_error(self, client: OPAClient) -> None:
        with respx.mock:
            respx.post(EVAL_URL).mock(side_effect=httpx.ReadTimeout("timed out"))
            with pytest.raises(EngineTransportError) as exc_info:
                await client.evaluate(INPUT, "compliance.production")

        assert "timed out" in exc_info.value.message


class TestHealthCheck:
    @pytest.mark.asyncio()
    @pytest.mark.parametrize("status_code", [200, 204])
    async def test_2xx_is_healthy(self, client: OPAClient, status_code: int) -> None:
        with respx.mock:
            respx.get(f"{OPA_URL}/health").mock(return_value=httpx.Response(status_code))
            assert await client.health_check() is True

    @pytest.mark.asyncio()
    async def test_error_status_is_unhealthy(self, client: OPAClient) -> None:
        with respx.mock:
            respx.get(f"{OPA_URL}/health").mock(return_value=httpx.Response(503))
            assert await client.health_check() is False

    @pytest.mark.asyncio()
    async def test_network_error_is_unhealthy_and_does_not_raise(self, client: OPAClient) -> None:
        with respx.mock:
            respx.get(f"{OPA_URL}/health").mock(side_effect=httpx.ConnectError("down"))
            assert await client.health_check() is False
