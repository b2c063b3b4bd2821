"""
Metrics Fetcher - Collaborator that reads public metrics for a monitored account.
"""

from typing import Protocol
from urllib.parse import quote

import httpx
from structlog import get_logger

from app.exceptions import (
    ExternalFetchFailure,
    ExternalFetchTimeoutError,
    MisconfiguredIntegrationError,
)
from app.models.domain import PlatformMetrics
from app.observability.tracing import trace_operation

logger = get_logger(__name__)


class MetricsFetcher(Protocol):
    """Fetches current metrics for one platform account. May raise on transient failure."""

    async def fetch_metrics(self, platform: str, username: str) -> PlatformMetrics: ...


class HttpMetricsFetcher:
    """Metrics fetcher backed by an HTTP metrics service."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout_seconds: float = 15.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url:
            raise MisconfiguredIntegrationError("metrics_service", "METRICS_SERVICE_URL")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        return self._http_client

    async def fetch_metrics(self, platform: str, username: str) -> PlatformMetrics:
        """
        GET /v1/metrics/{platform}/{username}.

        Raises:
            ExternalFetchTimeoutError: If the service does not answer in time
            ExternalFetchFailure: On transport errors, non-2xx or malformed bodies
        """
        path = f"/v1/metrics/{quote(platform, safe='')}/{quote(username, safe='')}"
        try:
            with trace_operation("metrics_fetch", platform=platform, username=username) as span:
                response = await self.http_client.get(path)
                span.set_attribute("http.status_code", response.status_code)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            raise ExternalFetchTimeoutError(self.timeout_seconds) from e
        except httpx.HTTPStatusError as e:
            logger.warning(
                "metrics_fetch_http_error",
                platform=platform,
                username=username,
                status_code=e.response.status_code,
            )
            raise ExternalFetchFailure(
                f"HTTP {e.response.status_code} for {platform}/{username}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalFetchFailure(f"{type(e).__name__}: {e}") from e

        try:
            return PlatformMetrics(
                follower_count=int(data["follower_count"]),
                post_count=int(data["post_count"]),
                engagement_rate=(
                    float(data["engagement_rate"])
                    if data.get("engagement_rate") is not None
                    else None
                ),
                is_verified=data.get("is_verified"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ExternalFetchFailure(f"Malformed metrics response: {e}") from e

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
