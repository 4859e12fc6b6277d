"""
Security middleware for the storefront API.
Handles origin checks on mutating requests, suspicious-request logging
and security headers.
"""

import logging
import time
from typing import Callable, Dict, Iterable, Optional
from urllib.parse import unquote

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from shopguard.core.rate_limit_config import get_real_ip
from shopguard.core.security.monitor import SecurityMonitor, Severity, ThreatType
from shopguard.core.security.sanitizer import detect_injection_attempt

logger = logging.getLogger(__name__)

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}


class SecurityMiddleware:
    """Origin validation, suspicious request logging and response headers"""

    def __init__(self, allowed_origins: Iterable[str], monitor: Optional[SecurityMonitor] = None):
        self.allowed_origins = {o.rstrip("/") for o in allowed_origins}
        self.monitor = monitor
        self.rejected_origins = 0
        self.suspicious_requests = 0

    async def __call__(self, request: Request, call_next: Callable) -> Response:
        client_ip = get_real_ip(request)

        # 1. Cross-site mutations are refused before they reach a handler
        if request.method in MUTATING_METHODS and not self._origin_allowed(request):
            self.rejected_origins += 1
            logger.warning(f"🚫 Mutation from foreign origin {request.headers.get('Origin')} ({client_ip})")
            if self.monitor:
                self.monitor.report_threat(
                    ThreatType.CSRF, Severity.HIGH,
                    "Mutating request from a foreign origin",
                    {"path": request.url.path, "origin": request.headers.get("Origin")}
                )
            return JSONResponse(status_code=403, content={"detail": "Origin not allowed"})

        # 2. Suspicious URLs are logged, not blocked
        if self._contains_suspicious_content(request):
            self.suspicious_requests += 1
            logger.warning(f"⚠️ Suspicious request from {client_ip}: {request.url.path}")
            if self.monitor:
                self.monitor.report_threat(
                    ThreatType.INJECTION, Severity.MEDIUM,
                    "Injection pattern in request URL",
                    {"path": request.url.path}
                )

        # 3. Security headers
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        for header, value in SECURITY_HEADERS.items():
            response.headers[header] = value
        response.headers["X-Process-Time"] = f"{process_time:.4f}"

        if process_time > 1.0:
            logger.warning(f"⏱️ Slow request: {request.url.path} took {process_time:.2f}s")

        return response

    def _origin_allowed(self, request: Request) -> bool:
        # Non-browser clients send no Origin; the CSRF token still guards them
        origin = request.headers.get("Origin")
        if not origin:
            return True
        return origin.rstrip("/") in self.allowed_origins

    @staticmethod
    def _contains_suspicious_content(request: Request) -> bool:
        target = unquote(request.url.path + "?" + request.url.query)
        return detect_injection_attempt(target)

    def get_stats(self) -> Dict[str, int]:
        return {
            "rejected_origins": self.rejected_origins,
            "suspicious_requests": self.suspicious_requests,
        }


class RateLimitMonitor:
    """Counts HTTP-level rate limit violations per client IP"""

    def __init__(self, violation_threshold: int = 10, monitor: Optional[SecurityMonitor] = None):
        self.violations: Dict[str, int] = {}
        self.violation_threshold = violation_threshold
        self.monitor = monitor

    def record_violation(self, ip: str) -> bool:
        """Record a violation; True once the IP crossed the threshold"""
        self.violations[ip] = self.violations.get(ip, 0) + 1
        logger.warning(f"🚦 Rate limit violation #{self.violations[ip]} from {ip}")

        if self.violations[ip] >= self.violation_threshold:
            logger.error(f"🚫 IP {ip} exceeded violation threshold")
            if self.monitor and self.violations[ip] == self.violation_threshold:
                self.monitor.report_threat(
                    ThreatType.RATE_LIMIT, Severity.HIGH,
                    "Repeated HTTP rate limit violations",
                    {"ip": ip, "violations": self.violations[ip]}
                )
            return True
        return False

    def get_violation_stats(self) -> dict:
        return {
            "total_violators": len(self.violations),
            "total_violations": sum(self.violations.values()),
            "top_violators": sorted(
                self.violations.items(),
                key=lambda x: x[1],
                reverse=True
            )[:10]
        }
