import os
from datetime import datetime
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import Response
from sqlalchemy.orm import Session

from ..auth.security import get_principal
from ..config import settings
from ..db import get_db
from ..models.models import LedgerRequest, User
from ..schemas.ledgers import LedgerCreate, LedgerStatusUpdate
from ..services.ledgers import LedgerManager
from ..services.permissions import Principal
from ..services.time_rules import as_utc, utc_to_local
from ..storage.provider import StorageProvider
from .deps import get_clock, get_request_logger, get_storage


router = APIRouter(prefix="/ledgers", tags=["ledgers"])


def get_ledger_manager(
    db: Session = Depends(get_db),
    storage: StorageProvider = Depends(get_storage),
    log=Depends(get_request_logger),
) -> LedgerManager:
    return LedgerManager(db, storage, settings=settings, logger=log)


def format_file_size(size: Optional[int]) -> Optional[str]:
    """Human readable size, 1024-based: 0 Bytes, 512 Bytes, 1.5 KB, 2 MB."""
    if size is None:
        return None
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    i = 0
    while i < len(units) - 1 and size >= 1024 ** (i + 1):
        i += 1
    return f"{round(size / 1024 ** i, 2):g} {units[i]}"


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return as_utc(dt).isoformat() if dt else None


def _display_date(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return utc_to_local(dt, settings.tz_default).strftime("%b %d, %Y %H:%M")


def _user_to_dict(u: Optional[User]) -> Optional[dict]:
    if u is None:
        return None
    return {"id": str(u.id), "name": u.name, "email": u.email, "role": u.role}


def _ledger_to_dict(ledger: LedgerRequest, file_exists: Optional[bool] = None) -> dict:
    data = {
        "id": str(ledger.id),
        "request_id": ledger.request_id,
        "client_id": str(ledger.client_id),
        "requested_by": str(ledger.requested_by),
        "status": ledger.status,
        "request_details": ledger.request_details,
        "additional_notes": ledger.additional_notes,
        "request_date": _iso(ledger.request_date),
        "uploaded_date": _iso(ledger.uploaded_date),
        "uploaded_by": str(ledger.uploaded_by) if ledger.uploaded_by else None,
        "confirmed_date": _iso(ledger.confirmed_date),
        "file_path": ledger.file_path,
        "file_name": ledger.file_name,
        "file_size": ledger.file_size,
        "created_at": _iso(ledger.created_at),
        "updated_at": _iso(ledger.updated_at),
        "client": _user_to_dict(ledger.client),
        "requester": _user_to_dict(ledger.requester),
        "uploader": _user_to_dict(ledger.uploader),
        "formatted_request_date": _display_date(ledger.request_date),
        "formatted_uploaded_date": _display_date(ledger.uploaded_date),
    }
    if ledger.file_path:
        data["file_size_formatted"] = format_file_size(ledger.file_size)
        data["file_extension"] = os.path.splitext(ledger.file_name or ledger.file_path)[1].lstrip(".").lower()
    if file_exists is not None:
        data["file_exists"] = file_exists
    return data


@router.get("")
def list_ledgers(
    status: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None),
    all_ledgers: bool = Query(default=False),
    principal: Principal = Depends(get_principal),
    manager: LedgerManager = Depends(get_ledger_manager),
):
    ledgers = manager.list(principal, status=status, search=search, show_all=all_ledgers)
    return {
        "success": True,
        "data": [_ledger_to_dict(ledger, file_exists=manager.file_exists(ledger)) for ledger in ledgers],
        "message": "Ledger requests retrieved successfully",
    }


@router.post("", status_code=201)
def create_ledger(
    payload: LedgerCreate,
    principal: Principal = Depends(get_principal),
    manager: LedgerManager = Depends(get_ledger_manager),
    now: datetime = Depends(get_clock),
):
    ledger = manager.create(principal, payload.client_id, payload.request_details, payload.additional_notes, now)
    return {
        "success": True,
        "data": _ledger_to_dict(ledger),
        "message": "Ledger request created successfully",
    }


@router.get("/{ledger_id}")
def get_ledger(
    ledger_id: str,
    principal: Principal = Depends(get_principal),
    manager: LedgerManager = Depends(get_ledger_manager),
):
    ledger = manager.get(principal, ledger_id)
    return {
        "success": True,
        "data": _ledger_to_dict(ledger),
        "message": "Ledger request retrieved successfully",
    }


@router.put("/{ledger_id}")
def update_ledger(
    ledger_id: str,
    payload: LedgerStatusUpdate,
    principal: Principal = Depends(get_principal),
    manager: LedgerManager = Depends(get_ledger_manager),
    now: datetime = Depends(get_clock),
):
    ledger = manager.update_status(principal, ledger_id, payload.status, now)
    return {
        "success": True,
        "data": _ledger_to_dict(ledger),
        "message": "Ledger request updated successfully",
    }


@router.post("/{ledger_id}/upload")
def upload_ledger(
    ledger_id: str,
    file: UploadFile = File(...),
    principal: Principal = Depends(get_principal),
    manager: LedgerManager = Depends(get_ledger_manager),
    now: datetime = Depends(get_clock),
):
    # One byte past the cap is enough to reject oversize files
    data = file.file.read(settings.ledger_max_upload_bytes + 1)
    ledger = manager.upload(principal, ledger_id, file.filename, file.content_type, data, now)
    return {
        "success": True,
        "data": _ledger_to_dict(ledger),
        "message": "Ledger uploaded successfully",
    }


@router.get("/{ledger_id}/download")
def download_ledger(
    ledger_id: str,
    principal: Principal = Depends(get_principal),
    manager: LedgerManager = Depends(get_ledger_manager),
):
    f = manager.download(principal, ledger_id)
    ascii_name = f.file_name.encode("ascii", "ignore").decode().replace('"', "") or "ledger"
    return Response(
        content=f.content,
        media_type=f.media_type,
        headers={"Content-Disposition": f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(f.file_name)}"},
    )


@router.delete("/{ledger_id}")
def delete_ledger(
    ledger_id: str,
    principal: Principal = Depends(get_principal),
    manager: LedgerManager = Depends(get_ledger_manager),
):
    manager.delete(principal, ledger_id)
    return {"success": True, "message": "Ledger request deleted successfully"}
