"""Provisioner client - VM lifecycle over the provisioner HTTP API.

One ``httpx.AsyncClient`` is opened at startup and shared by every job. It is
safe for concurrent use, so calls from different jobs are not serialized.

Endpoints used:
    POST   /environments                 create a VM from a template
    POST   /environments/{env_id}/start  boot it
    POST   /environments/{env_id}/stop   power it off
    DELETE /environments/{env_id}        destroy it
"""

from typing import Any, Optional, Protocol

import httpx
import structlog

from delegation.config import Settings
from delegation.core.resilience import (
    CircuitOpenError,
    CircuitState,
    RetryConfig,
    circuit_status,
    is_connect_error,
    is_transient_http_error,
    with_retry,
)
from delegation.jobs.manifest import JobManifest
from delegation.jobs.models import EnvironmentHandle
from delegation.services.cloud_init import build_cloud_config

logger = structlog.get_logger(__name__)


class ProvisionerError(Exception):
    """Raised when a provisioner call fails."""


class ProvisionerNotConnectedError(ProvisionerError):
    """Raised when the client is used before ``connect()``."""


class Provisioner(Protocol):
    """Environment lifecycle operations the orchestrator depends on."""

    async def connect(self) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    async def create_environment(
        self, job_id: str, manifest: JobManifest
    ) -> EnvironmentHandle:
        ...

    async def start_environment(self, handle: EnvironmentHandle) -> None:
        ...

    async def destroy_environment(self, handle: EnvironmentHandle) -> None:
        """Stop then destroy. An already-destroyed VM is not an error."""
        ...


class ProvisionerClient:
    """HTTP client for the provisioner service."""

    def __init__(
        self,
        base_url: str,
        callback_url: str,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        """
        Initialize provisioner client.

        Args:
            base_url: Provisioner API base URL
            callback_url: Base URL job runners report back to
            settings: Application settings (resource defaults, timeouts)
            transport: Optional httpx transport (tests)
            retry_config: Retry behavior for transient failures
        """
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url
        self._settings = settings
        self._transport = transport
        self._retry_config = retry_config or RetryConfig(
            max_attempts=settings.provisioner_max_attempts
        )
        self._circuit = CircuitState()
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Open the shared HTTP client."""
        if self._client is not None:
            return
        headers = {}
        if self._settings.provisioner_api_token:
            headers["Authorization"] = f"Bearer {self._settings.provisioner_api_token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._settings.provisioner_timeout,
            headers=headers,
            transport=self._transport,
        )
        logger.info("Provisioner client connected", base_url=self.base_url)

    async def disconnect(self) -> None:
        """Close the shared HTTP client."""
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        logger.info("Provisioner client disconnected")

    def health(self) -> dict[str, Any]:
        return {"connected": self.is_connected, "circuit": circuit_status(self._circuit)}

    async def create_environment(
        self, job_id: str, manifest: JobManifest
    ) -> EnvironmentHandle:
        """Create a VM for a job, seeded with its runner bootstrap."""
        settings = self._settings
        resources = manifest.resources
        payload = {
            "name": f"job-{job_id}",
            "template": manifest.vm_template or settings.default_vm_template,
            "cpu": (resources and resources.cpu) or settings.default_cpu,
            "memory": (resources and resources.memory) or settings.default_memory,
            "disk": (resources and resources.disk) or settings.default_disk,
            "cloud_init": build_cloud_config(
                job_id, manifest, self.callback_url, settings.default_timeout
            ),
        }

        # Creation is not idempotent: only retry when the request never landed
        data = await self._request(
            "POST", "/environments", json=payload, is_transient=is_connect_error
        )

        env_id = data.get("vmid") if isinstance(data, dict) else None
        if env_id is None and isinstance(data, dict):
            env_id = data.get("vmId")
        if env_id is None:
            raise ProvisionerError("Unexpected response format: missing vmid")

        handle = EnvironmentHandle(env_id=str(env_id), node=data.get("node"))
        logger.info("Environment created", job_id=job_id, environment=str(handle))
        return handle

    async def start_environment(self, handle: EnvironmentHandle) -> None:
        await self._request("POST", f"/environments/{handle.env_id}/start")
        logger.info("Environment started", environment=str(handle))

    async def destroy_environment(self, handle: EnvironmentHandle) -> None:
        """Stop then destroy a VM.

        A failed stop is ignored since the VM might already be stopped. A 404
        on destroy means it is already gone.
        """
        try:
            await self._request(
                "POST", f"/environments/{handle.env_id}/stop", allow_missing=True
            )
        except ProvisionerNotConnectedError:
            raise
        except ProvisionerError as e:
            logger.debug("Environment stop failed", environment=str(handle), error=str(e))

        data = await self._request(
            "DELETE",
            f"/environments/{handle.env_id}",
            params={"confirm": "true"},
            allow_missing=True,
        )
        if data is None:
            logger.info("Environment already destroyed", environment=str(handle))
            return
        logger.info("Environment destroyed", environment=str(handle))

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
        is_transient=is_transient_http_error,
        allow_missing: bool = False,
    ) -> Any:
        """Send a request with retries.

        Returns:
            Decoded JSON body ({} when empty), or None for a 404 when
            ``allow_missing`` is set

        Raises:
            ProvisionerNotConnectedError: If ``connect()`` was not called
            ProvisionerError: Any other failure
        """
        client = self._client
        if client is None:
            raise ProvisionerNotConnectedError("Provisioner client not connected")

        async def send() -> httpx.Response:
            response = await client.request(method, path, json=json, params=params)
            response.raise_for_status()
            return response

        try:
            response = await with_retry(
                send,
                is_transient=is_transient,
                config=self._retry_config,
                circuit=self._circuit,
                service_name="provisioner",
            )
        except httpx.HTTPStatusError as e:
            if allow_missing and e.response.status_code == 404:
                return None
            raise ProvisionerError(
                f"{method} {path} failed with status {e.response.status_code}: "
                f"{e.response.text[:200]}"
            ) from e
        except CircuitOpenError as e:
            raise ProvisionerError(str(e)) from e
        except httpx.HTTPError as e:
            raise ProvisionerError(f"{method} {path} failed: {e}") from e

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProvisionerError(f"{method} {path} returned invalid JSON") from e
