"""Scan result normalizer.

Converts raw per-tool scan payloads into validated ScanResult value objects.
Any malformed vulnerability fails the entire batch with a ValidationError, so
an evaluation never runs against a partial view of the scan input.

The transformation is pure: the same raw input always yields value-equal
ScanResult objects, and nothing is logged, stored, or sent.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from compliance_gateway.core.domain import (
    DEFAULT_SCAN_CLOCK_SKEW,
    ScanResult,
    Severity,
    Vulnerability,
)
from compliance_gateway.errors import ValidationError


@dataclass(frozen=True)
class RawVulnerability:
    """A vulnerability as submitted by the caller, before validation."""

    id: str
    severity: str
    cvss_score: Any
    package_name: str
    current_version: str
    fixed_version: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class RawScanResult:
    """One tool's scan output as submitted by the caller, before validation."""

    tool_name: str
    scanned_at: datetime
    vulnerabilities: Sequence[RawVulnerability] = field(default_factory=tuple)
    raw_output: str = ""


def normalize_vulnerability(raw: RawVulnerability) -> Vulnerability:
    """Validate one raw vulnerability.

    Args:
        raw: Caller-supplied vulnerability.

    Returns:
        The validated Vulnerability.

    Raises:
        ValidationError: On an unknown severity, an out-of-range or non-numeric
            CVSS score, or missing identifying fields.
    """
    severity = Severity.parse(raw.severity)
    try:
        cvss_score = float(raw.cvss_score)
    except (TypeError, ValueError):
        raise ValidationError(
            message=f"CVSS score for {raw.id} must be a number",
            field="cvss_score",
        ) from None

    return Vulnerability(
        id=(raw.id or "").strip(),
        severity=severity,
        cvss_score=cvss_score,
        package_name=(raw.package_name or "").strip(),
        package_version=(raw.current_version or "").strip(),
        fixed_version=raw.fixed_version or None,
        description=raw.description or None,
    )


def normalize_scan_results(
    raw_results: Sequence[RawScanResult],
    now: datetime | None = None,
    clock_skew: timedelta = DEFAULT_SCAN_CLOCK_SKEW,
) -> list[ScanResult]:
    """Validate and normalize every scan result in a request.

    Args:
        raw_results: Raw per-tool scan payloads.
        now: Reference time for the future-timestamp check.
        clock_skew: Tolerance for scan timestamps ahead of ``now``.

    Returns:
        ScanResult value objects in input order.

    Raises:
        ValidationError: On the first malformed scan or vulnerability.
    """
    results: list[ScanResult] = []
    for raw in raw_results:
        vulnerabilities = [normalize_vulnerability(v) for v in raw.vulnerabilities]
        results.append(
            ScanResult.create(
                tool_name=raw.tool_name,
                scanned_at=raw.scanned_at,
                vulnerabilities=vulnerabilities,
                raw_output=raw.raw_output,
                now=now,
                clock_skew=clock_skew,
            )
        )
    return results


def raw_scan_results_to_payload(raw_results: Sequence[RawScanResult]) -> list[dict[str, Any]]:
    """Render raw scan results exactly as submitted, for decision evidence.

    Keys follow the wire contract's camelCase naming.
    """
    payload: list[dict[str, Any]] = []
    for raw in raw_results:
        payload.append(
            {
                "toolName": raw.tool_name,
                "scannedAt": raw.scanned_at.isoformat(),
                "vulnerabilities": [_raw_vulnerability_payload(v) for v in raw.vulnerabilities],
                "rawOutput": raw.raw_output,
            }
        )
    return payload


def _raw_vulnerability_payload(raw: RawVulnerability) -> Mapping[str, Any]:
    return {
        "id": raw.id,
        "severity": raw.severity,
        "cvssScore": raw.cvss_score,
        "packageName": raw.package_name,
        "currentVersion": raw.current_version,
        "fixedVersion": raw.fixed_version,
        "description": raw.description,
    }


def scan_results_to_payload(results: Sequence[ScanResult]) -> list[dict[str, Any]]:
    """Render normalized scan results for the policy engine input.

    Each entry carries its derived per-severity counts so policies can gate
    on them directly.
    """
    return [
        {
            "toolName": result.tool_name,
            "scannedAt": result.scanned_at.isoformat(),
            "vulnerabilities": [
                {
                    "id": v.id,
                    "severity": v.severity.value,
                    "cvssScore": v.cvss_score,
                    "packageName": v.package_name,
                    "currentVersion": v.package_version,
                    "fixedVersion": v.fixed_version,
                    "description": v.description,
                    "isFixable": v.is_fixable,
                }
                for v in result.vulnerabilities
            ],
            "counts": result.counts.to_dict(),
        }
        for result in results
    ]
