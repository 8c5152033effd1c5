"""OPA (Open Policy Agent) REST API client.

Provides async HTTP communication with the policy engine for:
- Evaluating a policy package against a compliance evaluation input
- Health-checking engine connectivity

The client uses httpx for async HTTP and enforces a hard evaluation timeout
(COMPLIANCE_GATEWAY_POLICY_EVAL_TIMEOUT_MS).

Failure classification: a well-formed ``allow=false`` response carrying
violations is a normal deny decision and is returned as an EngineDecision.
Everything else that prevents a usable decision raises EngineTransportError:
network errors, timeouts, non-2xx statuses, unparsable bodies, a missing
``result`` object, and a deny that carries no violations.

OPA REST API reference: https://www.openpolicyagent.org/docs/latest/rest-api/
"""

import time
from typing import Any

import httpx

from compliance_gateway.core.domain import PolicyViolation
from compliance_gateway.core.interfaces import EngineDecision
from compliance_gateway.errors import EngineTransportError
from compliance_gateway.observability import get_logger

logger = get_logger(__name__)

# Default OPA base URL, overridden by COMPLIANCE_GATEWAY_OPA_URL
_DEFAULT_OPA_URL = "http://localhost:8181"

_DEFAULT_EVAL_TIMEOUT_MS = 5000
_DEFAULT_HEALTH_TIMEOUT_MS = 3000

# Response bodies are truncated to this length in logs
_LOG_BODY_LIMIT = 500


def policy_path(policy_package: str) -> str:
    """Map a dotted policy package to its OPA data path.

    ``compliance.production`` becomes ``compliance/production``.
    """
    return policy_package.strip().replace(".", "/")


class OPAClient:
    """Async client for the OPA REST API.

    Args:
        opa_url: OPA REST API base URL.
        eval_timeout_ms: Hard timeout for policy evaluation in milliseconds.
        health_timeout_ms: Timeout for the health check in milliseconds.
    """

    def __init__(
        self,
        opa_url: str = _DEFAULT_OPA_URL,
        eval_timeout_ms: int = _DEFAULT_EVAL_TIMEOUT_MS,
        health_timeout_ms: int = _DEFAULT_HEALTH_TIMEOUT_MS,
    ) -> None:
        self._opa_url = opa_url.rstrip("/")
        self._eval_timeout_ms = eval_timeout_ms
        self._eval_timeout_s = eval_timeout_ms / 1000.0
        self._health_timeout_s = health_timeout_ms / 1000.0

    def evaluation_url(self, policy_package: str) -> str:
        """Return the full data API URL for a policy package."""
        return f"{self._opa_url}/v1/data/{policy_path(policy_package)}"

    async def evaluate(self, input_data: dict[str, Any], policy_package: str) -> EngineDecision:
        """Evaluate a policy package against input data via the OPA REST API.

        Sends ``POST /v1/data/{package path}`` with body ``{"input": input_data}``
        and parses the ``result`` object into an EngineDecision.

        Args:
            input_data: Structured JSON input for the policy.
            policy_package: Dotted policy package name, e.g. ``compliance.production``.

        Returns:
            The parsed decision. ``allow=False`` is a successful deny.

        Raises:
            EngineTransportError: If no usable decision could be obtained.
        """
        url = self.evaluation_url(policy_package)
        request_body = {"input": input_data}

        logger.debug(
            "Evaluating policy via OPA",
            policy_package=policy_package,
            opa_url=url,
            timeout_ms=self._eval_timeout_ms,
        )

        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self._eval_timeout_s) as client:
                response = await client.post(url, json=request_body)
        except httpx.TimeoutException:
            logger.warning(
                "OPA evaluation timed out",
                policy_package=policy_package,
                timeout_ms=self._eval_timeout_ms,
            )
            raise EngineTransportError(
                message=f"Policy engine timed out after {self._eval_timeout_ms}ms",
            ) from None
        except httpx.HTTPError as exc:
            logger.error("OPA request failed", policy_package=policy_package, error=str(exc))
            raise EngineTransportError(message="Policy engine is unreachable") from exc

        duration_ms = int((time.perf_counter() - started) * 1000)

        if not response.is_success:
            logger.error(
                "OPA returned unexpected status",
                policy_package=policy_package,
                status_code=response.status_code,
                body=response.text[:_LOG_BODY_LIMIT],
            )
            raise EngineTransportError(
                message=f"Policy engine returned status {response.status_code}",
                status_code=response.status_code,
            )

        result = self._parse_result(response, policy_package)
        allow = result["allow"]
        violations = _parse_violations(result.get("violations"), policy_package)

        if not allow and not violations:
            logger.error(
                "OPA denied without violations",
                policy_package=policy_package,
                body=response.text[:_LOG_BODY_LIMIT],
            )
            raise EngineTransportError(
                message="Policy engine returned a deny decision without violations",
                status_code=response.status_code,
            )

        reason = result.get("reason")
        decision = EngineDecision(
            allow=allow,
            violations=violations,
            request_body=request_body,
            response_body=response.text,
            policy_package=policy_package,
            reason=reason if isinstance(reason, str) and reason else None,
            duration_ms=duration_ms,
        )

        logger.info(
            "OPA evaluation complete",
            policy_package=policy_package,
            allowed=allow,
            violations_count=len(violations),
            duration_ms=duration_ms,
        )
        return decision

    @staticmethod
    def _parse_result(response: httpx.Response, policy_package: str) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            logger.error(
                "OPA response is not valid JSON",
                policy_package=policy_package,
                body=response.text[:_LOG_BODY_LIMIT],
            )
            raise EngineTransportError(
                message="Policy engine returned an unparsable response",
                status_code=response.status_code,
            ) from None

        result = body.get("result") if isinstance(body, dict) else None
        if not isinstance(result, dict):
            # OPA answers an undefined package with 200 and no result key
            logger.error("OPA response has no result", policy_package=policy_package)
            raise EngineTransportError(
                message=f"Policy engine returned no result for package '{policy_package}'",
                status_code=response.status_code,
            )

        if not isinstance(result.get("allow"), bool):
            logger.error("OPA result has no boolean allow", policy_package=policy_package)
            raise EngineTransportError(
                message="Policy engine result is missing a boolean 'allow'",
                status_code=response.status_code,
            )
        return result

    async def health_check(self) -> bool:
        """Check if OPA is reachable and healthy.

        Sends a GET request to /health. Any 2xx status means healthy.

        Returns:
            True if OPA is healthy, False if unreachable or unhealthy. Never raises.
        """
        url = f"{self._opa_url}/health"
        try:
            async with httpx.AsyncClient(timeout=self._health_timeout_s) as client:
                response = await client.get(url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("OPA health check failed, OPA not reachable", opa_url=url, error=str(exc))
            return False

        healthy = response.is_success
        logger.debug("OPA health check", opa_url=url, healthy=healthy, status_code=response.status_code)
        return healthy


def _parse_violations(raw: Any, policy_package: str) -> tuple[PolicyViolation, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        logger.error("OPA violations is not a list", policy_package=policy_package)
        raise EngineTransportError(message="Policy engine returned malformed violations")

    violations: list[PolicyViolation] = []
    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("message"), str):
            logger.error("OPA violation is malformed", policy_package=policy_package)
            raise EngineTransportError(message="Policy engine returned malformed violations")
        details = item.get("details")
        violations.append(
            PolicyViolation(
                rule=str(item.get("rule", "")),
                message=item["message"],
                severity=str(item.get("severity", "medium")),
                details=details if isinstance(details, dict) else None,
            )
        )
    return tuple(violations)
