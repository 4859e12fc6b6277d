# shopguard/main.py
"""
Storefront API - HTTP surface over the session & security core.

Exposes one StorefrontClient to a browser front-end. Mutating endpoints
require the X-CSRF-Token header; the current (possibly rotated) token is
returned in the same header on every mutation response.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from shopguard.core.config import Settings, settings
from shopguard.core.exceptions import (
    AuthError,
    ConfigurationError,
    IntegrityError,
    NetworkError,
    RateLimitError,
    RecordNotFoundError,
    RemoteTimeoutError,
    ServiceError,
    StoreConflictError,
    StoreError,
    ValidationError,
    csrf_error,
)
from shopguard.core.logging_config import setup_logging
from shopguard.core.rate_limit_config import (
    RATE_LIMIT_TIERS,
    create_custom_key_func,
    get_rate_limit_message,
    get_real_ip,
)
from shopguard.core.security.csrf import CSRF_HEADER
from shopguard.middleware.security_middleware import RateLimitMonitor, SecurityMiddleware
from shopguard.services.storefront_client import StorefrontClient

logger = logging.getLogger(__name__)

RATE_LIMITS = RATE_LIMIT_TIERS["default"]


# =============================================================================
# API MODELS
# =============================================================================

class SignInRequest(BaseModel):
    email: str
    password: str


class SignUpRequest(BaseModel):
    email: str
    password: str
    full_name: Optional[str] = None


class CartAddRequest(BaseModel):
    product_id: str
    quantity: int = 1
    selected_color: Optional[str] = None
    selected_size: Optional[str] = None


class CartUpdateRequest(BaseModel):
    quantity: int = Field(..., description="Zero or less removes the line")


# =============================================================================
# HELPERS
# =============================================================================

def get_storefront(request: Request) -> StorefrontClient:
    return request.app.state.storefront


def _error(status_code: int, detail: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail}, headers=headers)


def _with_csrf(response: Response, storefront: StorefrontClient) -> None:
    token = storefront.csrf.peek()
    if token is not None and storefront.current_session() is not None:
        response.headers[CSRF_HEADER] = token.value


def _cart_view(storefront: StorefrontClient) -> Dict[str, Any]:
    return {
        "items": [item.model_dump() for item in storefront.cart.items],
        "total_items": storefront.cart.total_items,
        "total_price": storefront.cart.total_price,
    }


def _favorites_view(storefront: StorefrontClient) -> Dict[str, Any]:
    return {
        "favorites": [entry.model_dump() for entry in storefront.favorites.favorites],
        "count": storefront.favorites.count,
    }


def register_exception_handlers(app: FastAPI) -> None:
    """Map core exceptions to status codes with safe messages"""

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=422,
            content={"detail": exc.message, "field": exc.field, "errors": exc.errors},
        )

    @app.exception_handler(RateLimitError)
    async def rate_limit_handler(request: Request, exc: RateLimitError):
        retry_after = str(int(round(exc.retry_after))) if exc.retry_after is not None else "60"
        return _error(429, exc.message, headers={"Retry-After": retry_after})

    @app.exception_handler(IntegrityError)
    async def integrity_handler(request: Request, exc: IntegrityError):
        logger.error(f"🚨 Integrity failure on {request.url.path}: {exc}")
        return _error(401, "Session is no longer valid. Please sign in again.")

    @app.exception_handler(AuthError)
    async def auth_handler(request: Request, exc: AuthError):
        if exc.reason == "csrf":
            return _error(403, exc.message)
        if exc.reason == "exists":
            return _error(409, exc.message)
        return _error(401, exc.message, headers={"WWW-Authenticate": "Bearer"})

    @app.exception_handler(RemoteTimeoutError)
    async def timeout_handler(request: Request, exc: RemoteTimeoutError):
        logger.warning(f"⏱️ Timeout on {request.url.path}: {exc}")
        return _error(504, "The request took too long. Please try again.")

    @app.exception_handler(NetworkError)
    async def network_handler(request: Request, exc: NetworkError):
        logger.error(f"❌ Upstream failure on {request.url.path}: {exc}")
        return _error(502, "Connection problem. Please try again later.")

    @app.exception_handler(StoreError)
    async def store_handler(request: Request, exc: StoreError):
        if isinstance(exc, RecordNotFoundError):
            return _error(404, "Not found")
        if isinstance(exc, StoreConflictError):
            return _error(409, "Conflicting change, please reload")
        logger.error(f"❌ Store error on {request.url.path}: {exc}")
        return _error(502, "Data service error. Please try again later.")

    @app.exception_handler(ServiceError)
    @app.exception_handler(ConfigurationError)
    async def service_handler(request: Request, exc: Exception):
        logger.error(f"❌ Service unavailable on {request.url.path}: {exc}")
        return _error(503, "Service not ready")


# =============================================================================
# APPLICATION FACTORY
# =============================================================================

def create_app(
    storefront: Optional[StorefrontClient] = None,
    config: Optional[Settings] = None,
    background_tasks: bool = True
) -> FastAPI:
    """
    Build the API around one StorefrontClient.

    Args:
        storefront: Prebuilt client (tests pass one with in-memory collaborators)
        config: Settings, defaults to the environment
        background_tasks: Start the periodic session check and security sweep
    """
    config = config or settings
    storefront = storefront or StorefrontClient(config=config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=" * 60)
        logger.info("🚀 Storefront API starting...")
        logger.info("=" * 60)

        from shopguard.core.config import validate_required_settings
        if not validate_required_settings(config):
            logger.warning("⚠️ Backend settings missing - running on in-memory collaborators")

        try:
            await storefront.start(background=background_tasks)
        except Exception as e:
            logger.error(f"❌ Failed to start storefront client: {e}")
            raise

        logger.info("✅ Storefront API ready")
        yield

        logger.info("🛑 Storefront API shutting down...")
        await storefront.shutdown()
        logger.info("👋 Goodbye!")

    app = FastAPI(
        title="Storefront Session API",
        description="Session, CSRF, rate limiting and cart/favorites sync for the storefront",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )
    app.state.storefront = storefront

    # -------------------------------------------------------------------------
    # RATE LIMITING (per IP, in front of the per-operation limiter)
    # -------------------------------------------------------------------------

    limiter = Limiter(key_func=get_real_ip)
    violations = RateLimitMonitor(monitor=storefront.monitor)
    app.state.limiter = limiter
    app.state.rate_limit_monitor = violations

    def group_limit(group: str):
        """One per-IP budget shared by every endpoint of a group"""
        return limiter.shared_limit(
            RATE_LIMITS[group], scope=group, key_func=create_custom_key_func(group)
        )

    def custom_rate_limit_handler(request: Request, exc: RateLimitExceeded):
        violations.record_violation(get_real_ip(request))
        group = request.url.path.strip("/").split("/")[0]
        response = PlainTextResponse(content=get_rate_limit_message(group), status_code=429)
        response.headers["Retry-After"] = "60"
        return response

    app.add_exception_handler(RateLimitExceeded, custom_rate_limit_handler)
    register_exception_handlers(app)

    # -------------------------------------------------------------------------
    # MIDDLEWARE
    # -------------------------------------------------------------------------

    security = SecurityMiddleware(config.ALLOWED_ORIGINS, monitor=storefront.monitor)
    app.state.security_middleware = security
    app.middleware("http")(security)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path != "/health":
            logger.info(f"📥 Request: {request.method} {request.url.path}")
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[CSRF_HEADER, "Retry-After"],
    )

    # -------------------------------------------------------------------------
    # HEALTH
    # -------------------------------------------------------------------------

    @app.get("/health", status_code=200)
    def health():
        return {
            "status": "healthy",
            "security": storefront.monitor.health().value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    # -------------------------------------------------------------------------
    # SESSION
    # -------------------------------------------------------------------------

    @app.get("/csrf")
    def csrf_token(sf: StorefrontClient = Depends(get_storefront)):
        token = sf.csrf_token()
        return {"token": token.value, "expires_at": token.expires_at.isoformat()}

    @app.post("/auth/sign_in")
    @group_limit("auth")
    async def sign_in(request: Request, body: SignInRequest, response: Response,
                      sf: StorefrontClient = Depends(get_storefront)):
        session = await sf.sign_in(body.email, body.password)
        response.headers[CSRF_HEADER] = sf.csrf_token().value
        return {"session": session.public_view(), "state": sf.auth.state.value}

    @app.post("/auth/sign_up", status_code=201)
    @group_limit("auth")
    async def sign_up(request: Request, body: SignUpRequest, response: Response,
                      sf: StorefrontClient = Depends(get_storefront)):
        session = await sf.sign_up(body.email, body.password, body.full_name)
        if session is None:
            return {"session": None, "confirmation_required": True}
        response.headers[CSRF_HEADER] = sf.csrf_token().value
        return {"session": session.public_view(), "confirmation_required": False}

    @app.post("/auth/sign_out", status_code=204)
    async def sign_out(x_csrf_token: str = Header(default=""),
                       sf: StorefrontClient = Depends(get_storefront)):
        if sf.current_session() is not None and not sf.csrf.validate(x_csrf_token):
            raise csrf_error("SIGN_OUT")
        await sf.sign_out()
        return Response(status_code=204)

    @app.get("/session")
    def get_session(sf: StorefrontClient = Depends(get_storefront)):
        session = sf.current_session()
        profile = sf.auth.profile
        return {
            "state": sf.auth.state.value,
            "session": session.public_view() if session else None,
            "profile": profile.model_dump() if profile else None,
        }

    # -------------------------------------------------------------------------
    # CART
    # -------------------------------------------------------------------------

    @app.get("/cart")
    @limiter.limit(config.API_RATE_LIMIT)
    async def get_cart(request: Request, sf: StorefrontClient = Depends(get_storefront)):
        if sf.current_session() is None:
            raise AuthError("Authentication required", reason="unauthenticated")
        if not sf.cart.initialized:
            await sf.load_cart()
        return _cart_view(sf)

    @app.post("/cart", status_code=201)
    @group_limit("cart")
    async def add_to_cart(request: Request, body: CartAddRequest, response: Response,
                          x_csrf_token: str = Header(default=""),
                          sf: StorefrontClient = Depends(get_storefront)):
        item = await sf.add_to_cart(
            body.product_id, body.quantity,
            color=body.selected_color, size=body.selected_size,
            csrf_token=x_csrf_token
        )
        _with_csrf(response, sf)
        return {"item": item.model_dump() if item else None, "suppressed": item is None, **_cart_view(sf)}

    @app.delete("/cart")
    @group_limit("cart")
    async def clear_cart(request: Request, response: Response,
                         x_csrf_token: str = Header(default=""),
                         sf: StorefrontClient = Depends(get_storefront)):
        removed = await sf.clear_cart(csrf_token=x_csrf_token)
        _with_csrf(response, sf)
        return {"removed": removed, **_cart_view(sf)}

    @app.patch("/cart/{item_id}")
    @group_limit("cart")
    async def update_cart_item(request: Request, item_id: str, body: CartUpdateRequest, response: Response,
                               x_csrf_token: str = Header(default=""),
                               sf: StorefrontClient = Depends(get_storefront)):
        item = await sf.update_cart_quantity(item_id, body.quantity, csrf_token=x_csrf_token)
        _with_csrf(response, sf)
        return {"item": item.model_dump() if item else None, **_cart_view(sf)}

    @app.delete("/cart/{item_id}")
    @group_limit("cart")
    async def remove_cart_item(request: Request, item_id: str, response: Response,
                               x_csrf_token: str = Header(default=""),
                               sf: StorefrontClient = Depends(get_storefront)):
        removed = await sf.remove_from_cart(item_id, csrf_token=x_csrf_token)
        _with_csrf(response, sf)
        return {"removed": removed, **_cart_view(sf)}

    # -------------------------------------------------------------------------
    # FAVORITES
    # -------------------------------------------------------------------------

    @app.get("/favorites")
    @limiter.limit(config.API_RATE_LIMIT)
    async def get_favorites(request: Request, sf: StorefrontClient = Depends(get_storefront)):
        if sf.current_session() is None:
            raise AuthError("Authentication required", reason="unauthenticated")
        if not sf.favorites.initialized:
            await sf.load_favorites()
        return _favorites_view(sf)

    @app.post("/favorites/{product_id}/toggle")
    @group_limit("favorites")
    async def toggle_favorite(request: Request, product_id: str, response: Response,
                              x_csrf_token: str = Header(default=""),
                              sf: StorefrontClient = Depends(get_storefront)):
        is_favorite = await sf.toggle_favorite(product_id, csrf_token=x_csrf_token)
        _with_csrf(response, sf)
        return {"product_id": product_id, "is_favorite": is_favorite, **_favorites_view(sf)}

    # -------------------------------------------------------------------------
    # MONITORING
    # -------------------------------------------------------------------------

    @app.get("/security/metrics")
    def security_metrics(sf: StorefrontClient = Depends(get_storefront)):
        if sf.current_session() is None:
            raise AuthError("Authentication required", reason="unauthenticated")
        if not sf.auth.is_admin():
            raise HTTPException(status_code=403, detail="Admin role required")
        return {
            "health": sf.monitor.health_check(),
            "recent_threats": [t.to_dict() for t in sf.monitor.recent_threats(20)],
            "metrics": sf.get_metrics(),
            "http": {
                **security.get_stats(),
                "rate_limit_violations": violations.get_violation_stats(),
            },
        }

    return app


# Setup logging
setup_logging()

app = create_app()


if __name__ == "__main__":
    import os
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    logger.info(f"🚀 Starting storefront API on port {port}...")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
