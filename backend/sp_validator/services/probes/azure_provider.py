"""
Azure implementation of the capability provider.

Management-plane calls go through the async ARM clients authenticated with the
service principal under test. Data-plane blob calls use the storage account's
shared key, fetched with the same principal, so the probes measure what the
principal can do in the subscription rather than data-plane role assignments.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from azure.core.exceptions import AzureError
from azure.identity.aio import ClientSecretCredential
from azure.mgmt.resource.resources.aio import ResourceManagementClient
from azure.mgmt.storage.aio import StorageManagementClient
from azure.mgmt.storage.models import Sku, StorageAccountCreateParameters
from azure.storage.blob import ContentSettings, StaticWebsite
from azure.storage.blob.aio import BlobServiceClient

from sp_validator.services.probes.provider import ProviderError, StorageAccountInfo

logger = logging.getLogger(__name__)

BLOB_ENDPOINT_TEMPLATE = "https://{account}.blob.core.windows.net"


def _error_message(exc: Exception) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return message.strip() or exc.__class__.__name__


@asynccontextmanager
async def _translate_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except AzureError as exc:
        raise ProviderError(_error_message(exc), operation=operation) from exc


class AzureCapabilityProvider:
    """CapabilityProvider backed by the Azure async SDK."""

    def __init__(self, tenant_id: str, client_id: str, client_secret: str, subscription_id: str):
        # Constructing the credential is local only; auth failures surface on first call
        try:
            self._credential = ClientSecretCredential(tenant_id, client_id, client_secret)
        except ValueError as exc:
            raise ProviderError(str(exc), operation="authenticate") from exc
        self._resources = ResourceManagementClient(self._credential, subscription_id)
        self._storage = StorageManagementClient(self._credential, subscription_id)
        self._account_groups: Dict[str, str] = {}
        self._blob_services: Dict[str, BlobServiceClient] = {}

    async def ensure_resource_group(self, name: str, location: str) -> None:
        async with _translate_errors("ensure_resource_group"):
            await self._resources.resource_groups.create_or_update(name, {"location": location})
        logger.info("Resource group %s created or verified in %s", name, location)

    async def create_storage_account(self, resource_group: str, name: str, location: str) -> StorageAccountInfo:
        parameters = StorageAccountCreateParameters(
            sku=Sku(name="Standard_LRS"),
            kind="StorageV2",
            location=location,
            allow_blob_public_access=True,
        )
        async with _translate_errors("create_storage_account"):
            poller = await self._storage.storage_accounts.begin_create(resource_group, name, parameters)
            account = await poller.result()
        self._account_groups[name] = resource_group

        endpoints = getattr(account, "primary_endpoints", None)
        web_endpoint: Optional[str] = getattr(endpoints, "web", None) if endpoints else None
        logger.info("Storage account %s created", name)
        return StorageAccountInfo(name=name, web_endpoint=web_endpoint)

    async def _blob_service(self, account: str) -> BlobServiceClient:
        client = self._blob_services.get(account)
        if client is not None:
            return client
        resource_group = self._account_groups.get(account)
        if resource_group is None:
            raise ProviderError(f"Storage account {account} was not created by this provider", operation="list_keys")
        async with _translate_errors("list_keys"):
            keys = await self._storage.storage_accounts.list_keys(resource_group, account)
        if not keys.keys:
            raise ProviderError(f"No access keys returned for storage account {account}", operation="list_keys")
        credential: Dict[str, Any] = {"account_name": account, "account_key": keys.keys[0].value}
        client = BlobServiceClient(BLOB_ENDPOINT_TEMPLATE.format(account=account), credential=credential)
        self._blob_services[account] = client
        return client

    async def enable_static_website(self, account: str, index_document: str, error_document: str) -> None:
        service = await self._blob_service(account)
        async with _translate_errors("enable_static_website"):
            await service.set_service_properties(
                static_website=StaticWebsite(
                    enabled=True,
                    index_document=index_document,
                    error_document404_path=error_document,
                )
            )

    async def create_public_container(self, account: str, container: str) -> None:
        service = await self._blob_service(account)
        container_client = service.get_container_client(container)
        async with _translate_errors("create_public_container"):
            if await container_client.exists():
                await container_client.set_container_access_policy(signed_identifiers={}, public_access="container")
            else:
                await container_client.create_container(public_access="container")

    async def upload_blob(self, account: str, container: str, name: str, data: bytes, content_type: str) -> None:
        service = await self._blob_service(account)
        blob_client = service.get_blob_client(container, name)
        async with _translate_errors("upload_blob"):
            await blob_client.upload_blob(
                data,
                overwrite=True,
                content_settings=ContentSettings(content_type=content_type),
            )

    async def delete_storage_account(self, resource_group: str, name: str) -> None:
        async with _translate_errors("delete_storage_account"):
            await self._storage.storage_accounts.delete(resource_group, name)
        self._account_groups.pop(name, None)
        client = self._blob_services.pop(name, None)
        if client is not None:
            await client.close()

    async def close(self) -> None:
        for client in self._blob_services.values():
            await client.close()
        self._blob_services.clear()
        await self._storage.close()
        await self._resources.close()
        await self._credential.close()


def azure_provider_factory(credentials: Dict[str, Any], subscription_id: str) -> AzureCapabilityProvider:
    return AzureCapabilityProvider(
        tenant_id=credentials["tenant_id"],
        client_id=credentials["client_id"],
        client_secret=credentials["client_secret"],
        subscription_id=subscription_id,
    )
