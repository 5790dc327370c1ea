from typing import BinaryIO, Optional, Union

from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings

from ..config import settings
from .provider import StorageProvider


class BlobStorageProvider(StorageProvider):
    name = "blob"

    def __init__(self) -> None:
        if not settings.azure_blob_connection or not settings.azure_blob_container:
            raise RuntimeError("AZURE_BLOB_CONNECTION and AZURE_BLOB_CONTAINER must be set")
        self._service = BlobServiceClient.from_connection_string(settings.azure_blob_connection)
        self._container = settings.azure_blob_container

    def _client(self, key: str):
        return self._service.get_blob_client(self._container, key.lstrip("/"))

    def copy_in(self, src_stream: Union[bytes, BinaryIO], key: str, content_type: Optional[str] = None) -> None:
        content_settings = ContentSettings(content_type=content_type) if content_type else None
        self._client(key).upload_blob(src_stream, overwrite=True, content_settings=content_settings)

    def read(self, key: str) -> bytes:
        return self._client(key).download_blob().readall()

    def exists(self, key: str) -> bool:
        return self._client(key).exists()

    def delete(self, key: str) -> None:
        try:
            self._client(key).delete_blob()
        except ResourceNotFoundError:
            pass
