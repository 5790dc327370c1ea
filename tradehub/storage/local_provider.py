"""
Local filesystem storage provider.
Saves files under a base directory instead of Azure Blob Storage.
"""
from typing import BinaryIO, Optional, Union
from pathlib import Path

from ..config import settings
from .provider import StorageProvider


class LocalStorageProvider(StorageProvider):
    """Local filesystem storage provider for development and single-host installs."""

    name = "local"

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or settings.storage_local_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        """Get the local filesystem path for a given key."""
        # Remove leading slash and sanitize
        clean_key = key.lstrip("/").replace("..", "").replace("\\", "/")
        return self.base_dir / clean_key

    def copy_in(self, src_stream: Union[bytes, BinaryIO], key: str, content_type: Optional[str] = None) -> None:
        """Copy a file to local storage."""
        path = self._get_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            if hasattr(src_stream, "read"):
                f.write(src_stream.read())
            else:
                f.write(src_stream)

    def read(self, key: str) -> bytes:
        return self._get_path(key).read_bytes()

    def exists(self, key: str) -> bool:
        """Check if a file exists locally."""
        return self._get_path(key).is_file()

    def delete(self, key: str) -> None:
        """Delete a file from local storage. Missing files are ignored."""
        path = self._get_path(key)
        if path.exists():
            path.unlink()
