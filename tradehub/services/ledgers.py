"""
Ledger request manager.

Lifecycle: pending -> uploaded -> confirmed, never backwards. Clients and sales
request ledgers, admin/manager/office upload the file, the owning client
confirms receipt, admin/manager delete. Every transition is a conditional
update keyed on the expected prior status.
"""
import mimetypes
import os
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

import structlog
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased, joinedload

from ..config import Settings, settings as default_settings
from ..errors import (
    Conflict,
    FileRejected,
    FileUnavailable,
    Forbidden,
    InvalidTransition,
    NotFound,
    NotUploadable,
    ValidationFailed,
    operation,
)
from ..models.models import LedgerRequest, LedgerStatus, User
from ..storage.provider import StorageProvider
from .permissions import (
    LEDGER_CONFIRMERS,
    LEDGER_DELETERS,
    LEDGER_OVERVIEW,
    LEDGER_REQUESTERS,
    LEDGER_UPLOADERS,
    Principal,
    Role,
    can_access_ledger,
    has_role,
    require_role,
)
from .time_rules import as_utc

REQUEST_ID_PREFIX = "LED-"
REQUEST_ID_ALPHABET = string.ascii_uppercase + string.digits


def generate_request_id() -> str:
    return REQUEST_ID_PREFIX + "".join(secrets.choice(REQUEST_ID_ALPHABET) for _ in range(6))


@dataclass
class LedgerFile:
    content: bytes
    file_name: str
    media_type: str


class LedgerManager:
    def __init__(
        self,
        db: Session,
        storage: StorageProvider,
        settings: Optional[Settings] = None,
        logger=None,
        id_factory: Callable[[], str] = generate_request_id,
    ):
        self.db = db
        self.storage = storage
        self.settings = settings or default_settings
        self.log = logger or structlog.get_logger(__name__)
        self.id_factory = id_factory

    # Helpers

    def _query(self):
        return self.db.query(LedgerRequest).options(
            joinedload(LedgerRequest.client),
            joinedload(LedgerRequest.requester),
            joinedload(LedgerRequest.uploader),
        )

    def _find(self, ident) -> LedgerRequest:
        """Look up by primary key (UUID) or by the LED- request code."""
        query = self._query()
        try:
            ledger = query.filter(LedgerRequest.id == uuid.UUID(str(ident))).first()
        except ValueError:
            ledger = query.filter(LedgerRequest.request_id == str(ident).strip().upper()).first()
        if ledger is None:
            raise NotFound("Ledger request not found")
        return ledger

    def _find_accessible(self, principal: Principal, ident) -> LedgerRequest:
        ledger = self._find(ident)
        if not can_access_ledger(principal, ledger):
            self.log.info("ledger_access_denied", user_id=str(principal.id), ledger_id=str(ledger.id))
            raise Forbidden("Access denied")
        return ledger

    def _transition(self, ledger: LedgerRequest, expected: str, **values) -> LedgerRequest:
        result = self.db.execute(
            update(LedgerRequest)
            .where(LedgerRequest.id == ledger.id, LedgerRequest.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise Conflict()
        self.db.commit()
        self.db.refresh(ledger)
        return ledger

    def _discard_blob(self, key: str, ledger_id=None) -> None:
        """Best-effort blob removal: failures are logged and never block the caller."""
        try:
            self.storage.delete(key)
        except Exception as e:
            self.log.warning("ledger_blob_delete_failed", key=key, ledger_id=str(ledger_id), error=str(e))

    def _storage_key(self, ledger: LedgerRequest, extension: str, now: datetime) -> str:
        stamp = int(as_utc(now).timestamp())
        token = secrets.token_hex(3)
        return f"{self.settings.ledger_prefix}ledger_{ledger.request_id}_{stamp}_{token}.{extension}"

    def _validate_file(self, filename: Optional[str], size: int) -> str:
        allowed = self.settings.ledger_extensions
        extension = os.path.splitext(filename or "")[1].lower().lstrip(".")
        if not filename or extension not in allowed:
            raise FileRejected(
                f"File type not allowed. Allowed: {', '.join(allowed)}",
                errors={"file": [f"The file must be a file of type: {', '.join(allowed)}."]},
            )
        if size <= 0:
            raise FileRejected("The uploaded file is empty", errors={"file": ["The file is empty."]})
        max_size = self.settings.ledger_max_upload_bytes
        if size > max_size:
            raise FileRejected(
                f"File too large. Max size: {max_size / 1024 / 1024:g}MB",
                errors={"file": [f"The file may not be greater than {max_size // 1024} kilobytes."]},
            )
        return extension

    # Operations

    @operation("ledger.create")
    def create(
        self,
        principal: Principal,
        client_id,
        request_details: str,
        additional_notes: Optional[str],
        now: datetime,
    ) -> LedgerRequest:
        require_role(principal, LEDGER_REQUESTERS, "Only clients and sales can request ledgers")
        try:
            client_uuid = uuid.UUID(str(client_id))
        except ValueError:
            raise ValidationFailed(errors={"client_id": ["The selected client id is invalid."]})
        if principal.role == Role.CLIENT and client_uuid != principal.id:
            raise Forbidden("Clients can only request their own ledger")
        if self.db.query(User.id).filter(User.id == client_uuid).first() is None:
            raise ValidationFailed(errors={"client_id": ["The selected client id is invalid."]})

        attempts = max(1, self.settings.ledger_id_max_attempts)
        for attempt in range(1, attempts + 1):
            request_id = self.id_factory()
            ledger = LedgerRequest(
                request_id=request_id,
                client_id=client_uuid,
                requested_by=principal.id,
                status=LedgerStatus.PENDING.value,
                request_details=request_details,
                additional_notes=additional_notes,
                request_date=as_utc(now),
                created_at=as_utc(now),
            )
            self.db.add(ledger)
            try:
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                self.log.warning("ledger_request_id_collision", request_id=request_id, attempt=attempt)
                continue
            ledger = self._find(ledger.id)
            self.log.info(
                "ledger_requested",
                user_id=str(principal.id),
                ledger_id=str(ledger.id),
                request_id=ledger.request_id,
                client_id=str(client_uuid),
            )
            return ledger
        raise Conflict("Could not allocate a unique ledger request id, please retry")

    @operation("ledger.list")
    def list(
        self,
        principal: Principal,
        status: Optional[str] = None,
        search: Optional[str] = None,
        show_all: bool = False,
    ) -> List[LedgerRequest]:
        query = self._query()

        if show_all and has_role(principal, LEDGER_OVERVIEW):
            pass  # management overview, no row filtering
        elif principal.role == Role.CLIENT:
            query = query.filter(LedgerRequest.client_id == principal.id)
        elif principal.role == Role.SALES:
            query = query.filter(LedgerRequest.requested_by == principal.id)
        elif principal.role == Role.OFFICE:
            query = query.filter(
                or_(LedgerRequest.requested_by == principal.id, LedgerRequest.client_id == principal.id)
            )

        if status and status != "all":
            query = query.filter(LedgerRequest.status == status)

        if search:
            # Wildcards in the term match literally
            term = search.strip().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            like = f"%{term}%"
            client = aliased(User)
            query = query.join(client, client.id == LedgerRequest.client_id).filter(
                or_(
                    LedgerRequest.request_details.ilike(like, escape="\\"),
                    LedgerRequest.additional_notes.ilike(like, escape="\\"),
                    client.name.ilike(like, escape="\\"),
                    client.email.ilike(like, escape="\\"),
                )
            )

        return query.order_by(LedgerRequest.request_date.desc()).all()

    @operation("ledger.get")
    def get(self, principal: Principal, ident) -> LedgerRequest:
        return self._find_accessible(principal, ident)

    @operation("ledger.update_status")
    def update_status(self, principal: Principal, ident, status: str, now: datetime) -> LedgerRequest:
        ledger = self._find_accessible(principal, ident)

        valid = {s.value for s in LedgerStatus}
        if status not in valid:
            raise ValidationFailed(errors={"status": ["The selected status is invalid."]})

        stamp = as_utc(now)
        if status == LedgerStatus.UPLOADED.value:
            require_role(principal, LEDGER_UPLOADERS, "Only admin, manager, or office can upload ledgers")
            if ledger.status == LedgerStatus.CONFIRMED.value:
                raise InvalidTransition("Ledger request has already been confirmed")
            if ledger.status != LedgerStatus.UPLOADED.value or not ledger.file_path:
                raise InvalidTransition("Upload a ledger file to mark this request as uploaded")
            ledger = self._transition(
                ledger,
                LedgerStatus.UPLOADED.value,
                uploaded_date=stamp,
                uploaded_by=principal.id,
                updated_at=stamp,
            )
        elif status == LedgerStatus.CONFIRMED.value:
            require_role(principal, LEDGER_CONFIRMERS, "Only clients can confirm ledger receipt")
            if ledger.status != LedgerStatus.UPLOADED.value:
                if ledger.status == LedgerStatus.CONFIRMED.value:
                    raise InvalidTransition("Ledger request has already been confirmed")
                raise InvalidTransition("Ledger must be uploaded before it can be confirmed")
            ledger = self._transition(
                ledger,
                LedgerStatus.UPLOADED.value,
                status=LedgerStatus.CONFIRMED.value,
                confirmed_date=stamp,
                updated_at=stamp,
            )
        else:
            raise InvalidTransition("Ledger requests cannot be moved back to pending")

        self.log.info(
            "ledger_status_updated",
            user_id=str(principal.id),
            ledger_id=str(ledger.id),
            status=ledger.status,
        )
        return ledger

    @operation("ledger.upload")
    def upload(
        self,
        principal: Principal,
        ident,
        filename: Optional[str],
        content_type: Optional[str],
        data: bytes,
        now: datetime,
    ) -> LedgerRequest:
        require_role(principal, LEDGER_UPLOADERS, "Only admin, manager, or office can upload ledgers")
        ledger = self._find(ident)
        if ledger.status != LedgerStatus.PENDING.value:
            raise NotUploadable()

        extension = self._validate_file(filename, len(data))
        key = self._storage_key(ledger, extension, now)
        previous = ledger.file_path

        self.storage.copy_in(data, key, content_type=content_type)

        stamp = as_utc(now)
        try:
            ledger = self._transition(
                ledger,
                LedgerStatus.PENDING.value,
                status=LedgerStatus.UPLOADED.value,
                uploaded_date=stamp,
                uploaded_by=principal.id,
                file_path=key,
                file_name=os.path.basename(filename),
                file_size=len(data),
                updated_at=stamp,
            )
        except (Conflict, SQLAlchemyError):
            # The new blob must not outlive a failed transition
            self._discard_blob(key, ledger.id)
            raise

        if previous and previous != key:
            self._discard_blob(previous, ledger.id)

        self.log.info(
            "ledger_uploaded",
            user_id=str(principal.id),
            ledger_id=str(ledger.id),
            file_path=key,
            file_size=len(data),
        )
        return ledger

    @operation("ledger.download")
    def download(self, principal: Principal, ident) -> LedgerFile:
        ledger = self._find_accessible(principal, ident)
        downloadable = {LedgerStatus.UPLOADED.value, LedgerStatus.CONFIRMED.value}
        if ledger.status not in downloadable or not ledger.file_path:
            self.log.info("ledger_download_unavailable", ledger_id=str(ledger.id), status=ledger.status)
            raise FileUnavailable("Ledger file is not available for download")
        if not self.storage.exists(ledger.file_path):
            self.log.error("ledger_blob_missing", ledger_id=str(ledger.id), file_path=ledger.file_path)
            raise FileUnavailable("Ledger file not found on server")

        content = self.storage.read(ledger.file_path)
        file_name = ledger.file_name or os.path.basename(ledger.file_path)
        media_type = mimetypes.guess_type(file_name)[0] or "application/octet-stream"
        self.log.info("ledger_downloaded", user_id=str(principal.id), ledger_id=str(ledger.id))
        return LedgerFile(content=content, file_name=file_name, media_type=media_type)

    @operation("ledger.delete")
    def delete(self, principal: Principal, ident) -> None:
        ledger = self._find(ident)
        require_role(principal, LEDGER_DELETERS, "Only admin or manager can delete ledger requests")

        ledger_id, file_path = ledger.id, ledger.file_path
        self.db.delete(ledger)
        self.db.commit()

        if file_path:
            self._discard_blob(file_path, ledger_id)
        self.log.info("ledger_deleted", user_id=str(principal.id), ledger_id=str(ledger_id))

    def file_exists(self, ledger: LedgerRequest) -> bool:
        return bool(ledger.file_path) and self.storage.exists(ledger.file_path)
