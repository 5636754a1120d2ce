"""
Narrow interface over the cloud management API used by the probes.

Only the operations the probe sequence needs are exposed, so the executor can
run against the Azure SDK in production and an in-memory fake in tests.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol


class ProviderError(Exception):
    """A capability-provider call failed; carries the provider's message."""

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class StorageAccountInfo:
    name: str
    web_endpoint: Optional[str] = None


class CapabilityProvider(Protocol):
    async def ensure_resource_group(self, name: str, location: str) -> None:
        ...

    async def create_storage_account(self, resource_group: str, name: str, location: str) -> StorageAccountInfo:
        ...

    async def enable_static_website(self, account: str, index_document: str, error_document: str) -> None:
        ...

    async def create_public_container(self, account: str, container: str) -> None:
        ...

    async def upload_blob(self, account: str, container: str, name: str, data: bytes, content_type: str) -> None:
        ...

    async def delete_storage_account(self, resource_group: str, name: str) -> None:
        ...

    async def close(self) -> None:
        ...


# (credentials, subscription_id) -> provider; building one must not touch the network
ProviderFactory = Callable[[Dict[str, Any], str], CapabilityProvider]
