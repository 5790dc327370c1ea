from typing import BinaryIO, Optional, Union


class StorageProvider:
    """Custody store for uploaded files, addressed by key."""

    name = "abstract"

    def copy_in(self, src_stream: Union[bytes, BinaryIO], key: str, content_type: Optional[str] = None) -> None:
        raise NotImplementedError

    def read(self, key: str) -> bytes:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError
