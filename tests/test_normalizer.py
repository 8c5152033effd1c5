"""Tests for the scan result normalizer."""

from datetime import UTC, datetime, timedelta

import pytest

from compliance_gateway.core.domain import Severity
from compliance_gateway.core.normalizer import (
    normalize_scan_results,
    normalize_vulnerability,
    raw_scan_results_to_payload,
    scan_results_to_payload,
)
from compliance_gateway.errors import ValidationError
from tests.conftest import make_raw_scan, make_raw_vulnerability


class TestNormalizeVulnerability:
    def test_valid_vulnerability(self) -> None:
        vulnerability = normalize_vulnerability(make_raw_vulnerability(severity="HIGH", cvss_score="7.2"))
        assert vulnerability.severity is Severity.HIGH
        assert vulnerability.cvss_score == 7.2
        assert vulnerability.package_version == "3.0.1"

    def test_non_numeric_cvss_is_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            normalize_vulnerability(make_raw_vulnerability(cvss_score="high"))
        assert exc_info.value.field == "cvss_score"


class TestNormalizeScanResults:
    def test_empty_input_yields_empty_list(self) -> None:
        assert normalize_scan_results([]) == []

    def test_preserves_order_and_counts(self) -> None:
        raw = [
            make_raw_scan("snyk", [make_raw_vulnerability("a", "critical"), make_raw_vulnerability("b", "low", 2.0)]),
            make_raw_scan("PrismaCloud", [make_raw_vulnerability("c", "medium", 5.0)]),
        ]
        results = normalize_scan_results(raw)

        assert [r.tool_name for r in results] == ["snyk", "prismacloud"]
        assert results[0].critical_count == 1
        assert results[0].low_count == 1
        assert results[1].medium_count == 1

    def test_unknown_severity_fails_the_whole_batch(self) -> None:
        raw = [
            make_raw_scan("snyk", [make_raw_vulnerability("a", "critical")]),
            make_raw_scan("prismacloud", [make_raw_vulnerability("b", "urgent")]),
        ]
        with pytest.raises(ValidationError) as exc_info:
            normalize_scan_results(raw)
        assert exc_info.value.field == "severity"

    def test_out_of_range_cvss_fails(self) -> None:
        with pytest.raises(ValidationError):
            normalize_scan_results([make_raw_scan(vulnerabilities=[make_raw_vulnerability(cvss_score=11)])])

    def test_future_scan_is_rejected(self) -> None:
        now = datetime(2024, 1, 1, tzinfo=UTC)
        raw = [make_raw_scan(scanned_at=now + timedelta(hours=1))]
        with pytest.raises(ValidationError):
            normalize_scan_results(raw, now=now)

    def test_normalizing_twice_is_value_equal(self) -> None:
        raw = [make_raw_scan("snyk", [make_raw_vulnerability("a", "critical")])]
        assert normalize_scan_results(raw) == normalize_scan_results(raw)


class TestPayloads:
    def test_raw_payload_keeps_input_as_sent(self) -> None:
        raw = [make_raw_scan("Snyk", [make_raw_vulnerability(severity="CRITICAL", cvss_score="9.8")])]
        payload = raw_scan_results_to_payload(raw)

        assert payload[0]["toolName"] == "Snyk"
        assert payload[0]["vulnerabilities"][0]["severity"] == "CRITICAL"
        assert payload[0]["vulnerabilities"][0]["cvssScore"] == "9.8"
        assert payload[0]["rawOutput"] == '{"ok": true}'

    def test_normalized_payload_carries_counts(self) -> None:
        results = normalize_scan_results(
            [make_raw_scan("snyk", [make_raw_vulnerability("a", "critical"), make_raw_vulnerability("b", "high")])]
        )
        payload = scan_results_to_payload(results)

        assert payload[0]["counts"] == {"critical": 1, "high": 1, "medium": 0, "low": 0, "total": 2}
        assert payload[0]["vulnerabilities"][0]["isFixable"] is True
        assert payload[0]["vulnerabilities"][0]["currentVersion"] == "3.0.1"
