# tests/core/test_monitor.py

import pytest

from shopguard.core.security.monitor import Health, SecurityMonitor, Severity, ThreatType


@pytest.mark.unit
class TestSecurityMonitor:

    def test_report_and_query(self, monitor):
        first = monitor.report_threat(ThreatType.CSRF, Severity.HIGH, "token rejected")
        second = monitor.report_threat(ThreatType.INJECTION, Severity.MEDIUM, "bad input", {"field": "name"})

        assert monitor.recent_threats() == [second, first]
        assert monitor.threats_by_type(ThreatType.CSRF) == [first]
        assert second.to_dict()["details"] == {"field": "name"}

    def test_log_is_bounded(self, clock):
        monitor = SecurityMonitor(max_threats=3, clock=clock)
        for i in range(5):
            monitor.report_threat(ThreatType.RATE_LIMIT, Severity.LOW, f"threat {i}")

        assert [t.description for t in monitor.recent_threats()] == ["threat 4", "threat 3", "threat 2"]

    def test_listeners_are_isolated(self, monitor):
        seen = []

        def broken(threat):
            raise RuntimeError("listener bug")

        monitor.add_listener(broken)
        monitor.add_listener(seen.append)
        monitor.report_threat(ThreatType.CSRF, Severity.LOW, "x")

        monitor.remove_listener(seen.append)
        monitor.report_threat(ThreatType.CSRF, Severity.LOW, "y")

        assert len(seen) == 1

    def test_health_verdicts(self, monitor):
        assert monitor.health() == Health.HEALTHY

        high = monitor.report_threat(ThreatType.BRUTE_FORCE, Severity.HIGH, "brute force")
        assert monitor.health() == Health.WARNING

        critical = monitor.report_threat(ThreatType.INTEGRITY, Severity.CRITICAL, "tampered")
        assert monitor.health() == Health.CRITICAL
        assert monitor.health_check()["issues"] == ["1 critical threats active"]

        assert monitor.resolve_threat(critical.id)
        assert monitor.resolve_threat(high.id)
        assert not monitor.resolve_threat("unknown")
        assert monitor.health() == Health.HEALTHY

    def test_many_low_threats_warn(self, monitor):
        for _ in range(11):
            monitor.report_threat(ThreatType.RATE_LIMIT, Severity.LOW, "limit")

        assert monitor.health() == Health.WARNING
        assert "High volume of active threats" in monitor.health_check()["issues"]

    def test_suspicious_activity_detection(self, monitor, clock):
        for _ in range(6):
            monitor.report_threat(ThreatType.CSRF, Severity.LOW, "csrf")

        threat = monitor.run_check()

        assert threat is not None
        assert threat.type == ThreatType.SUSPICIOUS_ACTIVITY

    def test_old_threats_do_not_count_as_suspicious(self, monitor, clock):
        for _ in range(6):
            monitor.report_threat(ThreatType.CSRF, Severity.LOW, "csrf")

        clock.advance(minutes=11)

        assert monitor.run_check() is None

    def test_metrics(self, monitor):
        monitor.report_threat(ThreatType.CSRF, Severity.LOW, "a")
        monitor.report_threat(ThreatType.CSRF, Severity.LOW, "b")

        metrics = monitor.metrics()
        assert metrics["total_threats"] == 2
        assert metrics["active_threats_by_type"] == {"csrf": 2}
        assert metrics["system_health"] == "healthy"

        monitor.clear()
        assert monitor.metrics()["last_threat_time"] is None
