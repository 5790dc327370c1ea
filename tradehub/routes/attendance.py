from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.security import get_principal
from ..config import settings
from ..db import get_db
from ..models.models import AttendanceRecord
from ..schemas.attendance import AttendanceLocation
from ..services.attendance import AttendanceManager
from ..services.geofence import office_location
from ..services.permissions import Principal
from ..services.time_rules import format_minutes, utc_to_local
from .deps import get_clock, get_request_logger


router = APIRouter(prefix="/attendance", tags=["attendance"])


def get_attendance_manager(db: Session = Depends(get_db), log=Depends(get_request_logger)) -> AttendanceManager:
    return AttendanceManager(db, settings=settings, logger=log)


def _local(dt: Optional[datetime], fmt: str) -> Optional[str]:
    if dt is None:
        return None
    return utc_to_local(dt, settings.tz_default).strftime(fmt)


def _total_hours(rec: AttendanceRecord) -> Optional[str]:
    return format_minutes(rec.total_minutes) if rec.total_minutes is not None else None


def _record_to_dict(rec: AttendanceRecord) -> dict:
    return {
        "id": str(rec.id),
        "date": rec.date.isoformat(),
        "start_time": _local(rec.start_time, "%Y-%m-%d %H:%M:%S"),
        "end_time": _local(rec.end_time, "%Y-%m-%d %H:%M:%S"),
        "status": rec.status,
        "total_minutes": rec.total_minutes,
        "total_hours": _total_hours(rec),
        "notes": rec.notes,
    }


def _history_row(rec: AttendanceRecord) -> dict:
    return {
        "id": str(rec.id),
        "date": rec.date.isoformat(),
        "start_time": _local(rec.start_time, "%H:%M:%S"),
        "end_time": _local(rec.end_time, "%H:%M:%S"),
        "total_hours": _total_hours(rec),
        "status": rec.status,
        "notes": rec.notes,
        "start_distance_m": rec.start_distance_m,
        "end_distance_m": rec.end_distance_m,
    }


@router.post("/start", status_code=201)
def start_attendance(
    payload: Optional[AttendanceLocation] = None,
    principal: Principal = Depends(get_principal),
    manager: AttendanceManager = Depends(get_attendance_manager),
    now: datetime = Depends(get_clock),
):
    payload = payload or AttendanceLocation()
    rec = manager.start(principal, payload.latitude, payload.longitude, now, notes=payload.notes)
    return {
        "success": True,
        "message": "Attendance started successfully",
        "attendance": {
            "id": str(rec.id),
            "start_time": _local(rec.start_time, "%Y-%m-%d %H:%M:%S"),
            "status": rec.status,
            "distance": rec.start_distance_m,
        },
    }


@router.post("/end")
def end_attendance(
    payload: Optional[AttendanceLocation] = None,
    principal: Principal = Depends(get_principal),
    manager: AttendanceManager = Depends(get_attendance_manager),
    now: datetime = Depends(get_clock),
):
    payload = payload or AttendanceLocation()
    rec = manager.end(principal, payload.latitude, payload.longitude, now, notes=payload.notes)
    return {
        "success": True,
        "message": "Attendance ended successfully",
        "attendance": {
            "id": str(rec.id),
            "start_time": _local(rec.start_time, "%Y-%m-%d %H:%M:%S"),
            "end_time": _local(rec.end_time, "%Y-%m-%d %H:%M:%S"),
            "total_hours": _total_hours(rec),
            "status": rec.status,
            "distance": rec.end_distance_m,
        },
    }


@router.get("/status")
def attendance_status(
    principal: Principal = Depends(get_principal),
    manager: AttendanceManager = Depends(get_attendance_manager),
    now: datetime = Depends(get_clock),
):
    view = manager.status(principal, now)
    if view.record is None:
        return {"success": True, "status": view.status, "message": "No attendance record for today"}
    body = {"success": True, "status": view.status, "attendance": _record_to_dict(view.record)}
    if view.elapsed is not None:
        body["current_elapsed_time"] = view.elapsed
    return body


@router.get("/history")
def attendance_history(
    date_from: Optional[str] = Query(default=None, alias="from"),
    date_to: Optional[str] = Query(default=None, alias="to"),
    limit: int = Query(default=0),
    principal: Principal = Depends(get_principal),
    manager: AttendanceManager = Depends(get_attendance_manager),
    now: datetime = Depends(get_clock),
):
    records = manager.history(principal, now, date_from=date_from, date_to=date_to, limit=limit)
    return {"success": True, "attendances": [_history_row(r) for r in records]}


@router.get("/all")
def all_attendance(
    date_from: Optional[str] = Query(default=None, alias="from"),
    date_to: Optional[str] = Query(default=None, alias="to"),
    limit: int = Query(default=0),
    principal: Principal = Depends(get_principal),
    manager: AttendanceManager = Depends(get_attendance_manager),
    now: datetime = Depends(get_clock),
):
    records = manager.list_all(principal, now, date_from=date_from, date_to=date_to, limit=limit)
    out = []
    for r in records:
        row = _history_row(r)
        row["user_id"] = str(r.user_id)
        row["user_name"] = r.user.name if r.user else None
        out.append(row)
    return {"success": True, "attendances": out}


@router.get("/office-location")
def get_office_location(principal: Principal = Depends(get_principal)):
    return {"success": True, "office": office_location()}
