# shopguard/core/security/monitor.py
"""
In-memory security monitor.

Collects threat reports from the guards (rate-limit blocks, CSRF
failures, dangerous input, session integrity failures), keeps the most
recent ones, and derives a health verdict from them.
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from shopguard.core.timeutils import Clock, utcnow

logger = logging.getLogger(__name__)


class ThreatType(str, Enum):
    BRUTE_FORCE = "brute_force"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT = "rate_limit"
    CSRF = "csrf"
    INJECTION = "injection"
    INTEGRITY = "integrity"
    UNAUTHORIZED_ACCESS = "unauthorized_access"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Health(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class SecurityThreat:
    id: str
    type: ThreatType
    severity: Severity
    description: str
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    resolved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "description": self.description,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
            "resolved": self.resolved,
        }


ThreatListener = Callable[[SecurityThreat], None]


class SecurityMonitor:
    """Bounded threat log with listeners and health reporting"""

    def __init__(
        self,
        max_threats: int = 100,
        suspicious_window: timedelta = timedelta(minutes=10),
        suspicious_threshold: int = 5,
        clock: Clock = utcnow
    ):
        self.max_threats = max_threats
        self.suspicious_window = suspicious_window
        self.suspicious_threshold = suspicious_threshold
        self._clock = clock
        self._threats: List[SecurityThreat] = []  # newest first
        self._listeners: List[ThreatListener] = []

    def report_threat(
        self,
        threat_type: ThreatType,
        severity: Severity,
        description: str,
        details: Optional[Dict[str, Any]] = None
    ) -> SecurityThreat:
        now = self._clock()
        threat = SecurityThreat(
            id=f"threat_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}",
            type=threat_type,
            severity=severity,
            description=description,
            timestamp=now,
            details=details or {},
        )

        self._threats.insert(0, threat)
        del self._threats[self.max_threats:]

        for listener in list(self._listeners):
            try:
                listener(threat)
            except Exception as e:
                logger.error(f"Threat listener failed: {e}", exc_info=True)

        logger.warning(
            f"🛡️ Security threat [{threat.severity.value}] {threat.type.value}: {description}"
        )
        return threat

    def add_listener(self, listener: ThreatListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ThreatListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def recent_threats(self, limit: int = 10) -> List[SecurityThreat]:
        return self._threats[:limit]

    def threats_by_type(self, threat_type: ThreatType) -> List[SecurityThreat]:
        return [t for t in self._threats if t.type == threat_type]

    def active_threats(self) -> List[SecurityThreat]:
        return [t for t in self._threats if not t.resolved]

    def resolve_threat(self, threat_id: str) -> bool:
        for threat in self._threats:
            if threat.id == threat_id:
                threat.resolved = True
                logger.info(f"✅ Threat {threat_id} resolved")
                return True
        return False

    def clear(self) -> None:
        self._threats.clear()
        logger.info("🧹 All threats cleared")

    def health(self) -> Health:
        active = self.active_threats()
        if any(t.severity == Severity.CRITICAL for t in active):
            return Health.CRITICAL
        if any(t.severity == Severity.HIGH for t in active) or len(active) > 10:
            return Health.WARNING
        return Health.HEALTHY

    def metrics(self) -> Dict[str, Any]:
        by_type: Dict[str, int] = {}
        for threat in self.active_threats():
            by_type[threat.type.value] = by_type.get(threat.type.value, 0) + 1

        return {
            "total_threats": len(self._threats),
            "active_threats_by_type": by_type,
            "last_threat_time": self._threats[0].timestamp.isoformat() if self._threats else None,
            "system_health": self.health().value,
        }

    def health_check(self) -> Dict[str, Any]:
        """Verdict plus human-readable issues and recommendations"""
        issues: List[str] = []
        recommendations: List[str] = []
        active = self.active_threats()

        critical = [t for t in active if t.severity == Severity.CRITICAL]
        if critical:
            issues.append(f"{len(critical)} critical threats active")
            recommendations.append("Resolve critical threats immediately")

        high = [t for t in active if t.severity == Severity.HIGH]
        if len(high) > 2:
            issues.append(f"{len(high)} high severity threats")
            recommendations.append("Investigate and resolve high severity threats")

        if len(active) > 10:
            issues.append("High volume of active threats")
            recommendations.append("Review security configuration")

        return {
            "status": self.health().value,
            "issues": issues,
            "recommendations": recommendations,
        }

    def detect_suspicious_activity(self) -> bool:
        """More than the threshold of threats inside the window"""
        cutoff = self._clock() - self.suspicious_window
        recent = [
            t for t in self._threats
            if t.timestamp > cutoff and t.type != ThreatType.SUSPICIOUS_ACTIVITY
        ]
        return len(recent) > self.suspicious_threshold

    def run_check(self) -> Optional[SecurityThreat]:
        """Periodic check; reports suspicious activity when detected"""
        if self.detect_suspicious_activity():
            return self.report_threat(
                ThreatType.SUSPICIOUS_ACTIVITY,
                Severity.MEDIUM,
                "Suspicious activity detected",
                {"source": "automated_check"},
            )
        return None
