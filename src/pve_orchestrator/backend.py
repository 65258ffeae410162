"""
Backend client for the virtualization control plane.

This module talks to a Proxmox VE cluster over its HTTP API. Write operations
never raise; they return a BackendResult that is either an immediate success,
an asynchronous task handle, or a failure message.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import aiohttp

from .config import AppConfig
from .exceptions import BackendOperationError
from .logging import logger
from .models import BackendResult, TaskStatusReport, VMConfig


class BackendClient(Protocol):
    """Operations the orchestrator consumes from the control plane."""

    async def next_vm_id(self) -> Optional[int]: ...

    async def clone(
        self,
        source_node: str,
        source_id: int,
        new_id: int,
        name: str,
        target_node: str,
        storage: str,
        full: bool = True,
    ) -> BackendResult: ...

    async def patch_config(self, node: str, vm_id: int, fields: Dict[str, Any]) -> BackendResult: ...

    async def resize_disk(self, node: str, vm_id: int, disk: str, size_gb: int) -> BackendResult: ...

    async def read_config(self, node: str, vm_id: int) -> Optional[VMConfig]: ...

    async def delete(self, node: str, vm_id: int) -> BackendResult: ...

    async def convert_to_template(self, node: str, vm_id: int) -> BackendResult: ...

    async def read_task_status(self, node: str, handle: str) -> Optional[TaskStatusReport]: ...

    async def read_vm_status(self, node: str, vm_id: int) -> Optional[str]: ...


class ProxmoxClient:
    """aiohttp client for the Proxmox VE API using token authentication."""

    def __init__(
        self,
        config: AppConfig,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.base_url = config.api_base_url
        self._session: Optional[aiohttp.ClientSession] = None
        self._sleep = sleep

    async def __aenter__(self) -> "ProxmoxClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        """Get or create the shared HTTP session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                ssl=None if self.config.verify_ssl else False, limit=10, limit_per_host=5
            )
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
            headers = {"User-Agent": "pve-orchestrator"}
            if self.config.api_token:
                headers["Authorization"] = f"PVEAPIToken={self.config.api_token}"
            self._session = aiohttp.ClientSession(
                connector=connector, timeout=timeout, headers=headers
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Perform one API call and return the ``data`` member of the response.

        Raises:
            BackendOperationError: On HTTP error status or malformed response
            aiohttp.ClientError: On transport failure
            asyncio.TimeoutError: When the request exceeds the configured timeout
        """
        url = f"{self.base_url}{path}"
        async with self.session.request(method, url, data=data, params=params) as response:
            if response.status >= 400:
                text = await response.text()
                raise BackendOperationError(
                    f"HTTP {response.status} {response.reason}: {text.strip()}",
                    operation=f"{method} {path}",
                )
            try:
                body = await response.json(content_type=None)
            except ValueError as e:
                raise BackendOperationError(
                    f"Malformed response: {e}", operation=f"{method} {path}"
                )
        if not isinstance(body, dict):
            raise BackendOperationError("Response is not an object", operation=f"{method} {path}")
        return body.get("data")

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET with exponential backoff on connection errors."""
        attempt = 0
        while True:
            try:
                return await self._request("GET", path, params=params)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                attempt += 1
                if attempt >= self.config.max_retries:
                    raise
                delay = 2 ** (attempt - 1)
                logger.warning(
                    f"GET {path} failed, retrying in {delay}s",
                    path=path,
                    attempt=attempt,
                    error=str(e),
                )
                await self._sleep(delay)

    async def _write(
        self,
        method: str,
        path: str,
        operation: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> BackendResult:
        try:
            result = await self._request(method, path, data=data, params=params)
        except BackendOperationError as e:
            logger.error(f"{operation} rejected: {e.message}", path=path)
            return BackendResult.failure(e.message)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            message = f"Backend error during {operation}: {str(e) or type(e).__name__}"
            logger.error(message, path=path)
            return BackendResult.failure(message)
        return self.classify(result, operation)

    @staticmethod
    def classify(data: Any, operation: str = "request") -> BackendResult:
        """Map the ``data`` of a write response onto a BackendResult."""
        if data is None:
            return BackendResult.immediate()
        if isinstance(data, str):
            return BackendResult.task(data)
        return BackendResult.failure(
            f"Unexpected response to {operation}: {type(data).__name__}"
        )

    async def _read(self, path: str, operation: str) -> Any:
        try:
            return await self._get(path)
        except BackendOperationError as e:
            logger.error(f"{operation} failed: {e.message}", path=path)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"{operation} failed: {str(e) or type(e).__name__}", path=path)
        return None

    async def next_vm_id(self) -> Optional[int]:
        data = await self._read("/cluster/nextid", "next_vm_id")
        if data is None:
            return None
        try:
            return int(data)
        except (TypeError, ValueError):
            logger.error("next_vm_id returned a non-numeric id", value=str(data))
            return None

    async def clone(
        self,
        source_node: str,
        source_id: int,
        new_id: int,
        name: str,
        target_node: str,
        storage: str,
        full: bool = True,
    ) -> BackendResult:
        """
        Clone a VM or template.

        Args:
            source_node: Node holding the source
            source_id: Remote id of the source
            new_id: Remote id for the clone
            name: Name of the clone
            target_node: Node to place the clone on
            storage: Target storage for full clones
            full: Create a full (not linked) clone

        Returns:
            BackendResult: Usually a task handle to poll on the source node
        """
        fields = {
            "newid": new_id,
            "name": name,
            "target": target_node,
            "storage": storage,
            "full": 1 if full else 0,
        }
        return await self._write(
            "POST", f"/nodes/{source_node}/qemu/{source_id}/clone", "clone", data=fields
        )

    async def patch_config(self, node: str, vm_id: int, fields: Dict[str, Any]) -> BackendResult:
        return await self._write(
            "PUT", f"/nodes/{node}/qemu/{vm_id}/config", "patch_config", data=fields
        )

    async def resize_disk(self, node: str, vm_id: int, disk: str, size_gb: int) -> BackendResult:
        """Grow a disk to an absolute size in GB."""
        return await self._write(
            "PUT",
            f"/nodes/{node}/qemu/{vm_id}/resize",
            "resize_disk",
            data={"disk": disk, "size": f"{size_gb}G"},
        )

    async def read_config(self, node: str, vm_id: int) -> Optional[VMConfig]:
        data = await self._read(f"/nodes/{node}/qemu/{vm_id}/config", "read_config")
        if not isinstance(data, dict):
            return None
        try:
            return VMConfig.from_api(data, disk_slot=self.config.primary_disk)
        except (TypeError, ValueError) as e:
            logger.error(f"read_config returned unusable data: {e}", node=node, vm_id=vm_id)
            return None

    async def delete(self, node: str, vm_id: int) -> BackendResult:
        return await self._write(
            "DELETE",
            f"/nodes/{node}/qemu/{vm_id}",
            "delete",
            params={"purge": 1, "destroy-unreferenced-disks": 1},
        )

    async def convert_to_template(self, node: str, vm_id: int) -> BackendResult:
        return await self._write(
            "POST", f"/nodes/{node}/qemu/{vm_id}/template", "convert_to_template"
        )

    async def read_task_status(self, node: str, handle: str) -> Optional[TaskStatusReport]:
        data = await self._read(f"/nodes/{node}/tasks/{handle}/status", "read_task_status")
        if not isinstance(data, dict) or "status" not in data:
            return None
        return TaskStatusReport(status=data["status"], exit_status=data.get("exitstatus"))

    async def read_vm_status(self, node: str, vm_id: int) -> Optional[str]:
        data = await self._read(
            f"/nodes/{node}/qemu/{vm_id}/status/current", "read_vm_status"
        )
        if not isinstance(data, dict):
            return None
        return data.get("status")
