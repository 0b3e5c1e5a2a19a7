import re
import threading
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

import httpx
import msgspec
import structlog

from flexflow.domain.error import DataSourceUnavailable, ExecutionError, OperationTimeoutError
from flexflow.domain.port import DataSource

logger = structlog.get_logger(__name__)

_PATH_PARAMETER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


class EndpointConfig(msgspec.Struct, forbid_unknown_fields=True):
    """HTTP route of one operation; ``{name}`` segments are filled from the parameters."""

    path: str
    method: str = "POST"


class RestApiConfig(msgspec.Struct, forbid_unknown_fields=True):
    base_url: str
    headers: dict[str, str] = msgspec.field(default_factory=dict)
    timeout: float = 30
    max_retries: int = 3
    auth_token: str = ""
    rate_limit: float | None = None
    endpoints: dict[str, EndpointConfig] = msgspec.field(default_factory=dict)
    health_endpoint: str = ""


class RateLimiter:
    """Spaces requests at least ``1 / rate`` seconds apart across all threads."""

    def __init__(
        self,
        rate: float | None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.interval = 1.0 / rate if rate else 0.0
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def acquire(self) -> None:
        if not self.interval:
            return
        with self._lock:
            now = self._clock()
            wait = self._next_slot - now
            self._next_slot = max(now, self._next_slot) + self.interval
        if wait > 0:
            self._sleep(wait)


class RestApiDataSource(DataSource):
    """Calls operations of an HTTP JSON API.

    Each operation maps to a route in ``endpoints``; unmapped operations are sent as
    ``POST /<operation>``. GET and DELETE requests carry the parameters as a query
    string, all other methods as a JSON body.
    """

    source_type = "rest_api"
    config_type = RestApiConfig

    def __init__(self, name: str, config: RestApiConfig, transport: httpx.BaseTransport | None = None):
        """
        :param name: Registry name of the data source
        :type name: str
        :param config: Connection settings
        :type config: RestApiConfig
        :param transport: Optional httpx transport, e.g. ``httpx.MockTransport`` in tests
        :type transport: httpx.BaseTransport | None
        """
        super().__init__(name)
        self.config = config
        self.rate_limiter = RateLimiter(config.rate_limit)
        headers = {"Accept": "application/json", **config.headers}
        if config.auth_token:
            headers["Authorization"] = f"Bearer {config.auth_token}"
        self._client = httpx.Client(
            base_url=config.base_url,
            headers=headers,
            timeout=config.timeout,
            transport=transport,
        )

    def execute(self, operation: str, parameters: dict[str, Any]) -> Any:
        endpoint = self.config.endpoints.get(operation) or EndpointConfig(path=f"/{operation}")
        method = endpoint.method.upper()
        params = dict(parameters)
        path = self._build_path(operation, endpoint.path, params)
        if method in ("GET", "DELETE"):
            response = self._send(method, path, params=params)
        else:
            response = self._send(method, path, json=params)

        if response.status_code >= 400:
            raise ExecutionError(
                f"{self.get_name()}: {method} {path} returned HTTP {response.status_code}: {response.text[:200]}"
            )
        return self._decode(response)

    def _build_path(self, operation: str, template: str, params: dict[str, Any]) -> str:
        def substitute(match: re.Match) -> str:
            key = match.group(1)
            if key not in params:
                raise ExecutionError(f"{self.get_name()}: missing path parameter '{key}' for {operation}")
            return quote(str(params.pop(key)), safe="")

        return _PATH_PARAMETER.sub(substitute, template)

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        last_error: Exception | None = None
        for attempt in range(self.config.max_retries + 1):
            self.rate_limiter.acquire()
            try:
                return self._client.request(method, path, **kwargs)
            except httpx.TimeoutException as e:
                raise OperationTimeoutError(
                    f"{self.get_name()}: {method} {path} timed out after {self.config.timeout:g}s"
                ) from e
            except httpx.TransportError as e:
                last_error = e
                logger.warning(
                    "request_failed",
                    data_source=self.get_name(),
                    method=method,
                    path=path,
                    attempt=attempt + 1,
                    error=str(e),
                )
                if attempt < self.config.max_retries:
                    time.sleep(0.1 * 2**attempt)
        raise DataSourceUnavailable(
            f"{self.get_name()}: {self.config.base_url} unreachable after "
            f"{self.config.max_retries + 1} attempts: {last_error}"
        ) from last_error

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        if "json" in response.headers.get("content-type", ""):
            try:
                return msgspec.json.decode(response.content)
            except msgspec.DecodeError as e:
                raise ExecutionError(f"Invalid JSON response from {response.request.url}: {e}") from e
        return {"status_code": response.status_code, "content": response.text}

    def is_available(self) -> bool:
        try:
            response = self._client.get(self.config.health_endpoint or "/")
        except httpx.HTTPError as e:
            logger.debug("health_check_failed", data_source=self.get_name(), error=str(e))
            return False
        return response.status_code < 500

    def get_type(self) -> str:
        return self.source_type

    def get_connection_info(self) -> dict[str, Any]:
        return {
            "type": self.source_type,
            "name": self.get_name(),
            "base_url": self.config.base_url,
            "timeout": self.config.timeout,
            "max_retries": self.config.max_retries,
            "rate_limit": self.config.rate_limit,
            "authenticated": bool(self.config.auth_token),
        }

    def close(self) -> None:
        self._client.close()
