from datetime import datetime, timezone

import structlog
from fastapi import Depends, Request

from ..auth.security import get_principal
from ..config import settings
from ..services.permissions import Principal
from ..storage.blob_provider import BlobStorageProvider
from ..storage.local_provider import LocalStorageProvider
from ..storage.provider import StorageProvider


def get_storage() -> StorageProvider:
    """
    Get storage provider based on configuration.
    STORAGE_PROVIDER=blob uses Azure Blob Storage, anything else the local filesystem.
    """
    if settings.storage_provider == "blob":
        return BlobStorageProvider()
    return LocalStorageProvider()


def get_clock() -> datetime:
    """Request time, taken once per request so every rule sees the same instant."""
    return datetime.now(timezone.utc)


def get_request_logger(request: Request, principal: Principal = Depends(get_principal)):
    return structlog.get_logger("tradehub").bind(
        request_id=getattr(request.state, "request_id", None),
        user_id=str(principal.id),
        role=principal.role.value,
    )
