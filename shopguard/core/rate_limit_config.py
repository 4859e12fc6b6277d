"""
HTTP-level rate limiting for the storefront API.

This is the coarse per-IP limit applied by slowapi in front of every
endpoint. The per-operation, per-identity limiter with blocking lives in
``shopguard.core.security.rate_limiter``.
"""

from typing import Callable, Dict

from fastapi import Request
from slowapi.util import get_remote_address


def get_real_ip(request: Request) -> str:
    """
    Get the client IP address, considering proxy headers.
    Needed behind load balancers that terminate the connection.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs, take the first
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


def create_custom_key_func(prefix: str = "") -> Callable[[Request], str]:
    """Key function that namespaces the client IP, e.g. per endpoint group"""
    def key_func(request: Request) -> str:
        ip = get_real_ip(request)
        return f"{prefix}:{ip}" if prefix else ip

    return key_func


# Per-endpoint-group limits, on top of the operation limiter
RATE_LIMIT_TIERS: Dict[str, Dict[str, str]] = {
    "default": {
        "auth": "20/minute",
        "cart": "60/minute",
        "favorites": "60/minute",
    },
}

RATE_LIMIT_MESSAGES = {
    "default": "Too many requests. Please wait a moment and try again.",
    "auth": "Too many sign-in attempts from this address. Please wait a minute.",
    "cart": "Too many cart changes. Please slow down.",
    "favorites": "Too many favorite changes. Please slow down.",
}


def get_rate_limit_message(endpoint: str) -> str:
    """Get the client-facing message for a limited endpoint group"""
    return RATE_LIMIT_MESSAGES.get(endpoint, RATE_LIMIT_MESSAGES["default"])
