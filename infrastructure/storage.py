# ============================================================================
# BLOB STORAGE INFRASTRUCTURE
# ============================================================================
# EPOCH: 1 - JOB CORE
# STATUS: Infrastructure - Azure Blob Storage object store
# PURPOSE: Object store adapter (upload, delete, delete_prefix, download, url)
# CREATED: 12 OCT 2026
# ============================================================================
"""
Blob Storage Infrastructure

Provides ObjectStore, the object store adapter backed by Azure Blob Storage
(async client). Each ObjectCategory maps to one container.

Uses DefaultAzureCredential for authentication (works with Managed Identity),
or a connection string for local development.
"""

import logging
import mimetypes
import os
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional

from azure.core.exceptions import ResourceNotFoundError, ServiceRequestError, ServiceResponseError
from azure.storage.blob import ContentSettings
from azure.storage.blob.aio import BlobServiceClient, ContainerClient

from core.contracts import ObjectCategory
from core.errors import ConfigError, InvalidArgument, NotFound, TransientError

logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class StorageConfig:
    """Object store settings; one container per category."""
    account_name: Optional[str] = None
    connection_string: Optional[str] = None
    containers: Dict[ObjectCategory, str] = field(
        default_factory=lambda: {
            ObjectCategory.MATERIAL: "materials",
            ObjectCategory.AVATAR: "avatars",
        }
    )
    public_base_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "StorageConfig":
        """
        Load from environment variables.

            JOBCORE_STORAGE_ACCOUNT / JOBCORE_STORAGE_CONNECTION_STRING (one required)
            JOBCORE_STORAGE_MATERIAL_CONTAINER (default materials)
            JOBCORE_STORAGE_AVATAR_CONTAINER (default avatars)
            JOBCORE_STORAGE_PUBLIC_URL (optional CDN base)
        """
        account = os.environ.get("JOBCORE_STORAGE_ACCOUNT")
        conn_str = os.environ.get("JOBCORE_STORAGE_CONNECTION_STRING")
        if not account and not conn_str:
            raise ConfigError("JOBCORE_STORAGE_ACCOUNT or JOBCORE_STORAGE_CONNECTION_STRING is required")
        return cls(
            account_name=account,
            connection_string=conn_str,
            containers={
                ObjectCategory.MATERIAL: os.environ.get("JOBCORE_STORAGE_MATERIAL_CONTAINER", "materials"),
                ObjectCategory.AVATAR: os.environ.get("JOBCORE_STORAGE_AVATAR_CONTAINER", "avatars"),
            },
            public_base_url=os.environ.get("JOBCORE_STORAGE_PUBLIC_URL"),
        )


# ============================================================================
# OBJECT STORE
# ============================================================================

class ObjectStore:
    """
    Azure Blob Storage object store.

    Usage:
        store = ObjectStore(StorageConfig.from_env())
        await store.upload(ObjectCategory.MATERIAL, "u1/doc.pdf", data)
        await store.delete(ObjectCategory.MATERIAL, "u1/doc.pdf")
        await store.close()
    """

    def __init__(self, config: StorageConfig, service: Optional[BlobServiceClient] = None):
        self.config = config
        self._service = service
        self._credential = None

    # ========================================================================
    # AZURE CLIENT INITIALIZATION
    # ========================================================================

    def _get_service(self) -> BlobServiceClient:
        """Get BlobServiceClient (lazy initialization)."""
        if self._service is None:
            if self.config.connection_string:
                self._service = BlobServiceClient.from_connection_string(self.config.connection_string)
            else:
                client_id = os.environ.get("AZURE_CLIENT_ID")
                if client_id:
                    from azure.identity.aio import ManagedIdentityCredential
                    self._credential = ManagedIdentityCredential(client_id=client_id)
                else:
                    from azure.identity.aio import DefaultAzureCredential
                    self._credential = DefaultAzureCredential()
                account_url = f"https://{self.config.account_name}.blob.core.windows.net"
                self._service = BlobServiceClient(account_url=account_url, credential=self._credential)
            logger.debug("BlobServiceClient initialized")
        return self._service

    @staticmethod
    def _category(category) -> ObjectCategory:
        try:
            return ObjectCategory(category)
        except ValueError as e:
            raise InvalidArgument(f"unknown object category: {category}") from e

    def _container(self, category: ObjectCategory) -> ContainerClient:
        name = self.config.containers.get(category)
        if name is None:
            raise InvalidArgument(f"no container configured for {category.value}")
        return self._get_service().get_container_client(name)

    async def close(self) -> None:
        if self._service is not None:
            await self._service.close()
            self._service = None
        if self._credential is not None:
            await self._credential.close()
            self._credential = None

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    async def upload(
        self,
        category: ObjectCategory,
        key: str,
        data: bytes,
        content_type: Optional[str] = None,
    ) -> None:
        category = self._category(category)
        content_type = content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"
        try:
            await self._container(category).upload_blob(
                name=key,
                data=data,
                overwrite=True,
                content_settings=ContentSettings(content_type=content_type),
            )
        except (ServiceRequestError, ServiceResponseError) as e:
            raise TransientError(f"upload {category.value}/{key} failed: {e}", operation="object.upload") from e
        logger.info(f"Uploaded {len(data)} bytes to {category.value}/{key}")

    async def delete(self, category: ObjectCategory, key: str) -> None:
        """Delete one object; NotFound if it is already gone."""
        category = self._category(category)
        try:
            await self._container(category).delete_blob(key)
        except ResourceNotFoundError as e:
            raise NotFound(f"object {category.value}/{key} not found", operation="object.delete") from e
        except (ServiceRequestError, ServiceResponseError) as e:
            raise TransientError(f"delete {category.value}/{key} failed: {e}", operation="object.delete") from e
        logger.info(f"Deleted object: {category.value}/{key}")

    async def delete_prefix(self, category: ObjectCategory, prefix: str) -> int:
        """Delete every object under prefix; returns how many were deleted."""
        category = self._category(category)
        if not prefix.strip("/"):
            raise InvalidArgument("refusing to delete the container root", operation="object.delete_prefix")

        container = self._container(category)
        deleted = 0
        try:
            async for blob in container.list_blobs(name_starts_with=prefix):
                try:
                    await container.delete_blob(blob.name)
                    deleted += 1
                except ResourceNotFoundError:
                    continue
        except (ServiceRequestError, ServiceResponseError) as e:
            raise TransientError(
                f"delete_prefix {category.value}/{prefix} failed after {deleted}: {e}",
                operation="object.delete_prefix",
            ) from e

        logger.info(f"Deleted {deleted} object(s) under {category.value}/{prefix}")
        return deleted

    async def download(self, category: ObjectCategory, key: str) -> AsyncIterator[bytes]:
        """Stream an object in chunks."""
        category = self._category(category)
        try:
            downloader = await self._container(category).download_blob(key)
        except ResourceNotFoundError as e:
            raise NotFound(f"object {category.value}/{key} not found", operation="object.download") from e
        async for chunk in downloader.chunks():
            yield chunk

    def public_url(self, category: ObjectCategory, key: str) -> str:
        container = self.config.containers[self._category(category)]
        if self.config.public_base_url:
            return f"{self.config.public_base_url.rstrip('/')}/{container}/{key}"
        return f"https://{self.config.account_name}.blob.core.windows.net/{container}/{key}"


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = ["StorageConfig", "ObjectStore"]
