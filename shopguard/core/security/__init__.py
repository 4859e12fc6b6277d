"""
Security layer of the storefront core.

Centralizes the cross-cutting guards:
- Rate limiting per operation and identity
- CSRF token lifecycle
- Input sanitization and password strength
- Threat monitoring

The periodic sweep lives in ``shopguard.core.security.cleanup`` and is
imported from there directly, since it depends on the session controller.
"""

from .csrf import CSRF_HEADER, CSRFToken, CSRFTokenManager
from .monitor import Health, SecurityMonitor, SecurityThreat, Severity, ThreatType
from .password_policy import ensure_strong_password, validate_password_strength
from .rate_limiter import (
    DEFAULT_POLICY,
    ExemptionPolicy,
    RateLimitDecision,
    RateLimitPolicy,
    RateLimiter,
    make_key,
)
from .sanitizer import Sanitizer, sanitize_email, sanitize_product_data, sanitize_text

__all__ = [
    'CSRF_HEADER',
    'CSRFToken',
    'CSRFTokenManager',
    'Health',
    'SecurityMonitor',
    'SecurityThreat',
    'Severity',
    'ThreatType',
    'ensure_strong_password',
    'validate_password_strength',
    'DEFAULT_POLICY',
    'ExemptionPolicy',
    'RateLimitDecision',
    'RateLimitPolicy',
    'RateLimiter',
    'make_key',
    'Sanitizer',
    'sanitize_email',
    'sanitize_product_data',
    'sanitize_text',
]
