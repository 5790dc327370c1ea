"""
Attendance session manager.

One record per (user, local calendar day): not_started -> active -> completed.
Check-in is gated by the daily cutoff and the office geofence; check-out by the
geofence only. Status reads never write.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from ..config import Settings, settings as default_settings
from ..errors import (
    AlreadyCompleted,
    AlreadyStarted,
    Conflict,
    NoActiveSession,
    OutOfRange,
    TimeWindowClosed,
    ValidationFailed,
    operation,
)
from ..models.models import AttendanceRecord, AttendanceStatus
from .geofence import LocationCheck, validate_location
from .permissions import ATTENDANCE_OVERSEERS, Principal, require_role
from .time_rules import (
    as_utc,
    format_minutes,
    is_before_cutoff,
    local_today,
    parse_cutoff,
    resolve_date_range,
    utc_to_local,
    whole_minutes_between,
)


@dataclass
class AttendanceStatusView:
    status: str
    record: Optional[AttendanceRecord] = None
    elapsed: Optional[str] = None


class AttendanceManager:
    def __init__(self, db: Session, settings: Optional[Settings] = None, logger=None):
        self.db = db
        self.settings = settings or default_settings
        self.log = logger or structlog.get_logger(__name__)

    # Helpers

    def _today_record(self, user_id, today) -> Optional[AttendanceRecord]:
        return (
            self.db.query(AttendanceRecord)
            .filter(AttendanceRecord.user_id == user_id, AttendanceRecord.date == today)
            .first()
        )

    def _check_location(self, principal: Principal, latitude, longitude, event: str) -> Optional[LocationCheck]:
        """
        Server-side geofence. When enforcement is off the distance is still
        computed (if coordinates were sent) and recorded, but never rejects.
        """
        enforce = self.settings.attendance_enforce_geofence
        if latitude is None or longitude is None:
            if enforce:
                raise ValidationFailed(
                    "Location data is required and must be valid coordinates",
                    errors={
                        field: ["This field is required."]
                        for field, value in (("latitude", latitude), ("longitude", longitude))
                        if value is None
                    },
                )
            return None

        check = validate_location(
            latitude,
            longitude,
            office=(self.settings.office_latitude, self.settings.office_longitude),
            max_distance_m=self.settings.office_max_distance_m,
        )
        if not check.valid:
            if enforce:
                self.log.info("attendance_out_of_range", user_id=str(principal.id), action=event, distance_m=check.distance_m)
                raise OutOfRange(
                    check.message,
                    distance=check.distance_m,
                    office_coordinates={
                        "latitude": self.settings.office_latitude,
                        "longitude": self.settings.office_longitude,
                    },
                    max_distance=self.settings.office_max_distance_m,
                )
            self.log.warning("attendance_geofence_advisory", user_id=str(principal.id), action=event, distance_m=check.distance_m)
        return check

    def _raise_existing(self, record: AttendanceRecord):
        if record.status == AttendanceStatus.COMPLETED.value:
            raise AlreadyCompleted()
        raise AlreadyStarted()

    # Operations

    @operation("attendance.start")
    def start(
        self,
        principal: Principal,
        latitude: Optional[float],
        longitude: Optional[float],
        now: datetime,
        notes: Optional[str] = None,
    ) -> AttendanceRecord:
        """Check in for today."""
        tz = self.settings.tz_default
        cutoff = parse_cutoff(self.settings.attendance_cutoff)
        if not is_before_cutoff(now, cutoff, tz):
            local_now = utc_to_local(now, tz)
            raise TimeWindowClosed(
                "Attendance can only be marked before %s. Current time: %s"
                % (cutoff.strftime("%I:%M %p"), local_now.strftime("%I:%M %p")),
                current_time=local_now.strftime("%H:%M"),
            )

        today = local_today(now, tz)
        existing = self._today_record(principal.id, today)
        if existing is not None:
            self._raise_existing(existing)

        check = self._check_location(principal, latitude, longitude, "start")

        record = AttendanceRecord(
            user_id=principal.id,
            date=today,
            start_time=as_utc(now),
            end_time=None,
            status=AttendanceStatus.ACTIVE.value,
            total_minutes=None,
            notes=notes,
            start_lat=latitude,
            start_lng=longitude,
            start_distance_m=check.distance_m if check else None,
            created_at=as_utc(now),
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost the race against a concurrent check-in for the same day
            self.db.rollback()
            existing = self._today_record(principal.id, today)
            if existing is None:
                raise Conflict()
            self._raise_existing(existing)
        self.db.refresh(record)

        self.log.info(
            "attendance_started",
            user_id=str(principal.id),
            attendance_id=str(record.id),
            date=today.isoformat(),
            distance_m=check.distance_m if check else None,
        )
        return record

    @operation("attendance.end")
    def end(
        self,
        principal: Principal,
        latitude: Optional[float],
        longitude: Optional[float],
        now: datetime,
        notes: Optional[str] = None,
    ) -> AttendanceRecord:
        """Check out of today's active session."""
        today = local_today(now, self.settings.tz_default)
        record = self._today_record(principal.id, today)
        if record is None or record.status != AttendanceStatus.ACTIVE.value:
            raise NoActiveSession()

        check = self._check_location(principal, latitude, longitude, "end")

        end_time = as_utc(now)
        total_minutes = whole_minutes_between(record.start_time, end_time)
        values = {
            "end_time": end_time,
            "total_minutes": total_minutes,
            "status": AttendanceStatus.COMPLETED.value,
            "end_lat": latitude,
            "end_lng": longitude,
            "end_distance_m": check.distance_m if check else None,
            "updated_at": end_time,
        }
        if notes:
            values["notes"] = notes

        # Conditional update keyed on the expected prior status
        result = self.db.execute(
            update(AttendanceRecord)
            .where(
                AttendanceRecord.id == record.id,
                AttendanceRecord.status == AttendanceStatus.ACTIVE.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise NoActiveSession()
        self.db.commit()
        self.db.refresh(record)

        self.log.info(
            "attendance_ended",
            user_id=str(principal.id),
            attendance_id=str(record.id),
            total_hours=format_minutes(total_minutes),
            distance_m=check.distance_m if check else None,
        )
        return record

    @operation("attendance.status")
    def status(self, principal: Principal, now: datetime) -> AttendanceStatusView:
        """Today's state for the principal. Pure read."""
        today = local_today(now, self.settings.tz_default)
        record = self._today_record(principal.id, today)
        if record is None:
            return AttendanceStatusView(status=AttendanceStatus.NOT_STARTED.value)

        elapsed = None
        if record.status == AttendanceStatus.ACTIVE.value and record.start_time is not None:
            elapsed = format_minutes(whole_minutes_between(record.start_time, now))
        return AttendanceStatusView(status=record.status, record=record, elapsed=elapsed)

    @operation("attendance.history")
    def history(
        self,
        principal: Principal,
        now: datetime,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        limit: int = 0,
    ) -> List[AttendanceRecord]:
        """The principal's own records, newest day first."""
        today = local_today(now, self.settings.tz_default)
        start, end = resolve_date_range(date_from, date_to, today, self.settings.attendance_history_days)
        query = (
            self.db.query(AttendanceRecord)
            .filter(
                AttendanceRecord.user_id == principal.id,
                AttendanceRecord.date >= start,
                AttendanceRecord.date <= end,
            )
            .order_by(AttendanceRecord.date.desc())
        )
        if limit and limit > 0:
            query = query.limit(limit)
        return query.all()

    @operation("attendance.list_all")
    def list_all(
        self,
        principal: Principal,
        now: datetime,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        limit: int = 0,
    ) -> List[AttendanceRecord]:
        """Every user's records for office roles."""
        require_role(principal, ATTENDANCE_OVERSEERS)
        today = local_today(now, self.settings.tz_default)
        start, end = resolve_date_range(date_from, date_to, today, self.settings.attendance_history_days)
        query = (
            self.db.query(AttendanceRecord)
            .options(joinedload(AttendanceRecord.user))
            .filter(AttendanceRecord.date >= start, AttendanceRecord.date <= end)
            .order_by(AttendanceRecord.date.desc(), AttendanceRecord.created_at.desc())
        )
        if limit and limit > 0:
            query = query.limit(limit)
        return query.all()
