# shopguard/core/service_base.py
"""
Base class for the HTTP adapters that talk to the hosted backend.

Adapters share:
- Lazy initialization of one httpx.AsyncClient
- Configuration validation before the first call
- Mapping of transport failures onto NetworkError / RemoteTimeoutError
- Health check and graceful shutdown
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

import httpx

from shopguard.core.exceptions import (
    ConfigurationError,
    NetworkError,
    RemoteTimeoutError,
    ServiceError,
)

ConfigType = TypeVar('ConfigType', bound='ServiceConfig')


@dataclass
class ServiceConfig:
    """Connection settings shared by every backend adapter"""
    base_url: str = ""
    api_key: str = ""
    timeout: float = 8.0
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Any) -> "ServiceConfig":
        return cls(
            base_url=(settings.SUPABASE_URL or "").rstrip("/"),
            api_key=settings.SUPABASE_ANON_KEY or "",
            timeout=settings.REMOTE_TIMEOUT_SECONDS,
        )


class BaseService(ABC, Generic[ConfigType]):
    """
    Abstract base for backend adapters.

    Subclasses provide the client factory and a health check; the base
    class owns lifecycle, error mapping and metrics.
    """

    def __init__(
        self,
        config: ConfigType,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the adapter.

        Args:
            config: Connection settings
            transport: Optional httpx transport (tests pass a MockTransport)
            logger: Optional logger instance
        """
        self.config = config
        self.transport = transport
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._initialized = False
        self._client: Optional[httpx.AsyncClient] = None

        self.service_name = self.__class__.__name__
        self._requests = 0
        self._failures = 0

    def _default_headers(self) -> Dict[str, str]:
        headers = {
            "apikey": self.config.api_key,
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
        }
        headers.update(self.config.headers)
        return headers

    async def _initialize_client(self) -> httpx.AsyncClient:
        """Create the shared AsyncClient"""
        return httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=self._default_headers(),
            timeout=self.config.timeout,
            transport=self.transport,
        )

    async def initialize(self) -> None:
        """Idempotent lazy initialization"""
        if self._initialized:
            return

        try:
            self._validate_config()
            self._client = await self._initialize_client()
            self._initialized = True
            self.logger.info(f"{self.service_name} initialized ({self.config.base_url})")
        except ConfigurationError:
            raise
        except Exception as e:
            error_msg = f"Failed to initialize {self.service_name}"
            self.logger.error(error_msg, exc_info=True)
            raise ServiceError(
                error_msg,
                service_name=self.service_name,
                details={'original_error': str(e), 'error_type': type(e).__name__}
            )

    def _validate_config(self) -> None:
        """
        Raises:
            ConfigurationError: base URL or API key missing
        """
        if not self.config.base_url:
            raise ConfigurationError("Backend URL is not configured", component=self.service_name)
        if not self.config.api_key:
            raise ConfigurationError("Backend API key is not configured", component=self.service_name)

    async def ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def client(self) -> httpx.AsyncClient:
        if not self._initialized or self._client is None:
            raise ServiceError(
                f"{self.service_name} is not initialized. Call initialize() first.",
                service_name=self.service_name
            )
        return self._client

    async def _send(self, method: str, url: str, operation: str, **kwargs: Any) -> httpx.Response:
        """
        Issue a request, mapping transport failures.

        HTTP status handling is left to the caller.

        Raises:
            RemoteTimeoutError: request exceeded the configured timeout
            NetworkError: connection-level failure
        """
        await self.ensure_initialized()
        self._requests += 1
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            self._failures += 1
            self.logger.warning(f"⏱️ {self.service_name} {operation} timed out")
            raise RemoteTimeoutError(
                f"{self.service_name} {operation} timed out",
                operation=operation,
                timeout=self.config.timeout
            ) from None
        except httpx.HTTPError as e:
            self._failures += 1
            self.logger.error(f"❌ {self.service_name} {operation} failed: {type(e).__name__}")
            raise NetworkError(
                f"{self.service_name} {operation} failed",
                service_name=self.service_name,
                operation=operation,
                details={'error_type': type(e).__name__}
            ) from e

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """
        Returns:
            Dict with ``healthy`` (bool), ``status`` and optional ``details``
        """

    async def shutdown(self) -> None:
        """Close the client; errors are logged, not raised"""
        if not self._initialized:
            return

        try:
            await self._cleanup()
        except Exception:
            self.logger.error(f"Error during {self.service_name} shutdown", exc_info=True)
        finally:
            self._client = None
            self._initialized = False
            self.logger.info(f"{self.service_name} shut down")

    async def _cleanup(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "service_name": self.service_name,
            "initialized": self._initialized,
            "requests": self._requests,
            "failures": self._failures,
        }
