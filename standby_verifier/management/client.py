"""
Async management HTTP API client.

Handles basic authentication, URL encoding of names, and retries for
transient transport errors. One client serves every cluster; the target host
is passed per call.
"""

import asyncio
import time
from logging import Logger
from typing import Any
from urllib.parse import quote

import httpx

from standby_verifier.config import Settings
from standby_verifier.errors import ManagementAPIError, ManagementAuthError
from standby_verifier.management.redaction import safe_log_request
from standby_verifier.management.types import NodeInfo, Overview, QueueInfo

DEFAULT_VHOST = "/"


def encode(name: str) -> str:
    """Percent-encode a vhost, queue or exchange name for a URL path."""
    return quote(name, safe="")


class ManagementClient:
    """
    Async client for the broker management API.

    Handles:
    - Basic auth with the configured user
    - Retry/backoff for timeouts, connection errors and 5xx responses
    - 404 mapped to "absent" for existence checks
    """

    def __init__(
        self,
        settings: Settings,
        logger: Logger,
        management_port: int = 15672,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize management client.

        Args:
            settings: Verifier settings (password must be resolved)
            logger: Logger instance
            management_port: Listener port shared by all clusters
            transport: Optional transport override
        """
        self._settings = settings
        self._logger = logger
        self._port = management_port
        self._scheme = settings.management_scheme
        self._timeout = settings.http_timeout
        self._max_retries = settings.http_max_retries
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._last_latency_ms = 0

    @property
    def last_latency_ms(self) -> int:
        return self._last_latency_ms

    def base_url(self, host: str) -> str:
        """Management API root for a host."""
        return f"{self._scheme}://{host}:{self._port}/api"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                auth=(self._settings.user, self._settings.password_value()),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ManagementClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        host: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """
        Make an HTTP request with retries.

        Returns:
            HTTP response (including 4xx other than 401)

        Raises:
            ManagementAuthError: Credentials rejected
            ManagementAPIError: Transport failure or 5xx after retries
        """
        url = f"{self.base_url(host)}{path}"
        self._logger.debug("Management request: %s", safe_log_request(method, url, body=json_body))

        last_error: Exception | None = None
        for attempt in range(self._max_retries + 1):
            try:
                client = await self._get_client()
                start_time = time.perf_counter()
                response = await client.request(method, url, json=json_body)
                self._last_latency_ms = int((time.perf_counter() - start_time) * 1000)

                if response.status_code == 401:
                    raise ManagementAuthError(
                        f"Management API rejected credentials on {host}", status_code=401
                    )

                if response.status_code >= 500:
                    last_error = ManagementAPIError(
                        f"Server error {response.status_code} from {host}",
                        status_code=response.status_code,
                    )
                    if attempt < self._max_retries:
                        backoff = 2**attempt
                        self._logger.warning(
                            "Server error %d from %s, backing off %ds (attempt %d/%d)",
                            response.status_code,
                            host,
                            backoff,
                            attempt + 1,
                            self._max_retries + 1,
                        )
                        await asyncio.sleep(backoff)
                    continue

                return response

            except httpx.TimeoutException as e:
                last_error = e
                reason = "Request timeout"
            except httpx.RequestError as e:
                last_error = e
                reason = f"Request error: {e}"

            if attempt < self._max_retries:
                backoff = 2**attempt
                self._logger.warning(
                    "%s for %s, backing off %ds (attempt %d/%d)",
                    reason,
                    host,
                    backoff,
                    attempt + 1,
                    self._max_retries + 1,
                )
                await asyncio.sleep(backoff)

        if isinstance(last_error, ManagementAPIError):
            raise last_error
        raise ManagementAPIError(
            f"{method} {path} on {host} failed after {self._max_retries + 1} attempts: {last_error}"
        )

    def _expect(self, response: httpx.Response, *ok: int) -> httpx.Response:
        if response.status_code not in ok:
            raise ManagementAPIError(
                f"Unexpected status {response.status_code} for {response.request.url.path}",
                status_code=response.status_code,
            )
        return response

    async def _exists(self, host: str, path: str) -> bool:
        response = await self._request("GET", host, path)
        if response.status_code == 404:
            return False
        self._expect(response, 200)
        return True

    # =========================================================================
    # Cluster
    # =========================================================================

    async def overview(self, host: str) -> Overview:
        """Get the cluster overview."""
        response = self._expect(await self._request("GET", host, "/overview"), 200)
        return Overview.model_validate(response.json())

    async def is_reachable(self, host: str) -> bool:
        """
        Check if the management API of a host answers.

        Raises:
            ManagementAuthError: The host answered but rejected the credentials
        """
        try:
            await self.overview(host)
        except ManagementAuthError:
            raise
        except ManagementAPIError as e:
            self._logger.debug("Overview on %s failed: %s", host, e)
            return False
        return True

    async def list_nodes(self, host: str) -> list[NodeInfo]:
        """Cluster members with their running flags."""
        response = self._expect(await self._request("GET", host, "/nodes"), 200)
        return [NodeInfo.model_validate(n) for n in response.json()]

    async def running_node_count(self, host: str) -> int:
        """Number of members currently running."""
        return sum(1 for n in await self.list_nodes(host) if n.running)

    # =========================================================================
    # Queues
    # =========================================================================

    async def get_queue(
        self, host: str, queue: str, vhost: str = DEFAULT_VHOST
    ) -> QueueInfo | None:
        """Queue details, or None if the queue does not exist."""
        response = await self._request("GET", host, f"/queues/{encode(vhost)}/{encode(queue)}")
        if response.status_code == 404:
            return None
        self._expect(response, 200)
        return QueueInfo.model_validate(response.json())

    async def queue_exists(self, host: str, queue: str, vhost: str = DEFAULT_VHOST) -> bool:
        return await self._exists(host, f"/queues/{encode(vhost)}/{encode(queue)}")

    async def queue_messages(self, host: str, queue: str, vhost: str = DEFAULT_VHOST) -> int:
        """Message count of a queue; a missing queue counts as 0."""
        info = await self.get_queue(host, queue, vhost)
        return info.messages if info else 0

    async def list_queues(self, host: str) -> list[QueueInfo]:
        response = self._expect(await self._request("GET", host, "/queues"), 200)
        return [QueueInfo.model_validate(q) for q in response.json()]

    async def delete_queue(self, host: str, queue: str, vhost: str = DEFAULT_VHOST) -> bool:
        """Delete a queue. Returns False if it did not exist."""
        response = await self._request("DELETE", host, f"/queues/{encode(vhost)}/{encode(queue)}")
        if response.status_code == 404:
            return False
        self._expect(response, 200, 204)
        return True

    # =========================================================================
    # Exchanges
    # =========================================================================

    async def exchange_exists(self, host: str, exchange: str, vhost: str = DEFAULT_VHOST) -> bool:
        return await self._exists(host, f"/exchanges/{encode(vhost)}/{encode(exchange)}")

    async def create_exchange(
        self,
        host: str,
        exchange: str,
        vhost: str = DEFAULT_VHOST,
        exchange_type: str = "direct",
        durable: bool = True,
    ) -> None:
        response = await self._request(
            "PUT",
            host,
            f"/exchanges/{encode(vhost)}/{encode(exchange)}",
            json_body={"type": exchange_type, "durable": durable},
        )
        self._expect(response, 200, 201, 204)

    async def delete_exchange(self, host: str, exchange: str, vhost: str = DEFAULT_VHOST) -> bool:
        response = await self._request(
            "DELETE", host, f"/exchanges/{encode(vhost)}/{encode(exchange)}"
        )
        if response.status_code == 404:
            return False
        self._expect(response, 200, 204)
        return True

    # =========================================================================
    # Virtual hosts
    # =========================================================================

    async def vhost_exists(self, host: str, vhost: str) -> bool:
        return await self._exists(host, f"/vhosts/{encode(vhost)}")

    async def create_vhost(self, host: str, vhost: str) -> None:
        response = await self._request("PUT", host, f"/vhosts/{encode(vhost)}", json_body={})
        self._expect(response, 200, 201, 204)

    async def delete_vhost(self, host: str, vhost: str) -> bool:
        response = await self._request("DELETE", host, f"/vhosts/{encode(vhost)}")
        if response.status_code == 404:
            return False
        self._expect(response, 200, 204)
        return True
