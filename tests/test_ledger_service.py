import re
import uuid

import pytest

from tradehub.config import settings
from tradehub.errors import (
    Conflict,
    FileRejected,
    FileUnavailable,
    Forbidden,
    InternalError,
    InvalidTransition,
    NotFound,
    NotUploadable,
    Unauthenticated,
    ValidationFailed,
)
from tradehub.models.models import LedgerRequest
from tradehub.services.ledgers import LedgerManager, generate_request_id

from conftest import ist

NOW = ist(2026, 3, 2, 11, 0)
PDF = b"%PDF-1.4 quarterly statement"


@pytest.fixture
def manager(db, storage):
    return LedgerManager(db, storage)


@pytest.fixture
def pending(manager, principals, users):
    return manager.create(principals["client"], users["client"].id, "Need Q1 statement", "Email copy too", NOW)


def test_generate_request_id_format():
    for _ in range(50):
        assert re.fullmatch(r"LED-[A-Z0-9]{6}", generate_request_id())


def test_full_lifecycle(manager, principals, users, pending, storage):
    assert pending.status == "pending"
    assert pending.requested_by == users["client"].id
    assert pending.client.email == "client@test.com"
    assert pending.file_path is None

    ledger = manager.upload(principals["office"], pending.id, "q1.pdf", "application/pdf", PDF, NOW)
    assert ledger.status == "uploaded"
    assert ledger.file_name == "q1.pdf"
    assert ledger.file_size == len(PDF)
    assert ledger.uploaded_by == users["office"].id
    assert ledger.file_path.startswith(f"ledgers/ledger_{ledger.request_id}_")
    assert ledger.file_path.endswith(".pdf")
    assert storage.read(ledger.file_path) == PDF

    ledger = manager.update_status(principals["client"], ledger.request_id, "confirmed", NOW)
    assert ledger.status == "confirmed"
    assert ledger.confirmed_date is not None

    with pytest.raises(Forbidden):
        manager.get(principals["sales"], ledger.id)

    f = manager.download(principals["client"], ledger.id)
    assert f.content == PDF
    assert f.file_name == "q1.pdf"
    assert f.media_type == "application/pdf"


def test_create_then_fetch_round_trip(manager, principals, users):
    created = manager.create(principals["sales"], str(users["client"].id), "Ledger FY25", None, NOW)
    fetched = manager.get(principals["sales"], created.request_id)
    assert fetched.id == created.id
    assert fetched.request_details == "Ledger FY25"
    assert fetched.additional_notes is None
    assert fetched.client_id == users["client"].id
    assert fetched.requester.name == "Sunil Sales"


@pytest.mark.parametrize("role", ["admin", "manager", "office"])
def test_only_clients_and_sales_create(manager, principals, users, role):
    with pytest.raises(Forbidden):
        manager.create(principals[role], users["client"].id, "Need statement", None, NOW)


def test_create_requires_principal(manager, users):
    with pytest.raises(Unauthenticated):
        manager.create(None, users["client"].id, "Need statement", None, NOW)


def test_client_cannot_request_for_another_client(manager, principals, users):
    with pytest.raises(Forbidden):
        manager.create(principals["client"], users["client2"].id, "Need statement", None, NOW)


def test_create_rejects_unknown_client(manager, principals):
    with pytest.raises(ValidationFailed) as exc:
        manager.create(principals["sales"], uuid.uuid4(), "Need statement", None, NOW)
    assert "client_id" in exc.value.errors


def test_request_id_collision_is_retried(db, storage, principals, users, pending):
    ids = iter([pending.request_id, pending.request_id, "LED-NEW001"])
    manager = LedgerManager(db, storage, id_factory=lambda: next(ids))
    ledger = manager.create(principals["sales"], users["client"].id, "Second request", None, NOW)
    assert ledger.request_id == "LED-NEW001"
    assert db.query(LedgerRequest).count() == 2


def test_request_id_collisions_are_bounded(db, storage, principals, users, pending):
    manager = LedgerManager(db, storage, id_factory=lambda: pending.request_id)
    with pytest.raises(Conflict):
        manager.create(principals["sales"], users["client"].id, "Second request", None, NOW)
    assert db.query(LedgerRequest).count() == 1


def test_client_isolation(manager, principals, users, storage):
    mine = manager.create(principals["client"], users["client"].id, "Mine", None, NOW)
    theirs = manager.create(principals["client2"], users["client2"].id, "Theirs", "private", NOW)
    manager.upload(principals["admin"], theirs.id, "theirs.csv", "text/csv", b"a,b\n1,2\n", NOW)

    for status in (None, "all", "pending", "uploaded"):
        for search in (None, "Theirs", "kamal", "private"):
            rows = manager.list(principals["client"], status=status, search=search, show_all=True)
            assert all(r.client_id == users["client"].id for r in rows)

    assert [r.id for r in manager.list(principals["client"])] == [mine.id]
    with pytest.raises(Forbidden):
        manager.get(principals["client"], theirs.id)
    with pytest.raises(Forbidden):
        manager.download(principals["client"], theirs.id)


def test_list_visibility_by_role(manager, principals, users):
    by_client = manager.create(principals["client"], users["client"].id, "Statement A", None, NOW)
    by_sales = manager.create(principals["sales"], users["client2"].id, "Statement B", None, NOW)
    by_sales2 = manager.create(principals["sales2"], users["client"].id, "Statement C", None, NOW)

    assert {r.id for r in manager.list(principals["sales"])} == {by_sales.id}
    assert {r.id for r in manager.list(principals["sales"], show_all=True)} == {by_sales.id}
    assert {r.id for r in manager.list(principals["client"])} == {by_client.id, by_sales2.id}
    assert manager.list(principals["office"]) == []
    assert len(manager.list(principals["office"], show_all=True)) == 3
    assert len(manager.list(principals["admin"])) == 3


def test_list_filters_and_search(manager, principals, users):
    manager.create(principals["sales"], users["client"].id, "Q1 statement", None, NOW)
    b = manager.create(principals["sales"], users["client2"].id, "Annual ledger", "urgent", NOW)
    manager.upload(principals["office"], b.id, "annual.xlsx", None, b"xlsx-bytes", NOW)

    assert [r.id for r in manager.list(principals["admin"], status="uploaded")] == [b.id]
    assert len(manager.list(principals["admin"], status="all")) == 2
    assert [r.id for r in manager.list(principals["admin"], search="URGENT")] == [b.id]
    assert [r.id for r in manager.list(principals["admin"], search="kamal@")] == [b.id]
    assert [r.id for r in manager.list(principals["admin"], search="Kamal Stores")] == [b.id]
    assert manager.list(principals["admin"], search="nothing matches") == []


def test_search_wildcards_match_literally(manager, principals, users):
    manager.create(principals["sales"], users["client"].id, "Q1 statement", None, NOW)
    tagged = manager.create(principals["sales"], users["client2"].id, "Q1_statement 50% due", None, NOW)

    assert [r.id for r in manager.list(principals["admin"], search="Q1_")] == [tagged.id]
    assert [r.id for r in manager.list(principals["admin"], search="50%")] == [tagged.id]
    assert [r.id for r in manager.list(principals["admin"], search="_")] == [tagged.id]
    assert [r.id for r in manager.list(principals["admin"], search="%")] == [tagged.id]
    assert manager.list(principals["admin"], search="Q1\\") == []


def test_list_is_newest_first(manager, principals, users):
    first = manager.create(principals["sales"], users["client"].id, "First", None, ist(2026, 3, 1, 10, 0))
    second = manager.create(principals["sales"], users["client"].id, "Second", None, ist(2026, 3, 2, 10, 0))
    assert [r.id for r in manager.list(principals["sales"])] == [second.id, first.id]


def test_get_unknown_ledger(manager, principals):
    with pytest.raises(NotFound):
        manager.get(principals["admin"], uuid.uuid4())
    with pytest.raises(NotFound):
        manager.get(principals["admin"], "LED-ZZZZZZ")


def test_confirm_from_pending_is_invalid(manager, principals, pending):
    with pytest.raises(InvalidTransition) as exc:
        manager.update_status(principals["client"], pending.id, "confirmed", NOW)
    assert exc.value.kind == "invalid_state"
    assert exc.value.reason == "invalid_transition"


def test_status_change_role_gates(manager, principals, pending):
    with pytest.raises(Forbidden):
        manager.update_status(principals["client"], pending.id, "uploaded", NOW)
    manager.upload(principals["manager"], pending.id, "q1.pdf", None, PDF, NOW)
    with pytest.raises(Forbidden):
        manager.update_status(principals["admin"], pending.id, "confirmed", NOW)


def test_status_cannot_move_backwards(manager, principals, pending):
    manager.upload(principals["admin"], pending.id, "q1.pdf", None, PDF, NOW)
    with pytest.raises(InvalidTransition):
        manager.update_status(principals["admin"], pending.id, "pending", NOW)
    manager.update_status(principals["client"], pending.id, "confirmed", NOW)
    with pytest.raises(InvalidTransition):
        manager.update_status(principals["admin"], pending.id, "uploaded", NOW)
    with pytest.raises(InvalidTransition):
        manager.update_status(principals["client"], pending.id, "confirmed", NOW)


def test_marking_uploaded_requires_a_file(manager, principals, pending):
    with pytest.raises(InvalidTransition):
        manager.update_status(principals["admin"], pending.id, "uploaded", NOW)


def test_unknown_status_value(manager, principals, pending):
    with pytest.raises(ValidationFailed):
        manager.update_status(principals["admin"], pending.id, "archived", NOW)


def test_upload_role_and_state(manager, principals, pending):
    with pytest.raises(Forbidden):
        manager.upload(principals["sales"], pending.id, "q1.pdf", None, PDF, NOW)
    with pytest.raises(Forbidden):
        manager.upload(principals["client"], pending.id, "q1.pdf", None, PDF, NOW)

    manager.upload(principals["office"], pending.id, "q1.pdf", None, PDF, NOW)
    with pytest.raises(NotUploadable) as exc:
        manager.upload(principals["office"], pending.id, "q1-v2.pdf", None, PDF, NOW)
    assert exc.value.reason == "not_uploadable"


@pytest.mark.parametrize(
    "filename,data",
    [
        ("statement.docx", PDF),
        ("statement", PDF),
        (None, PDF),
        ("empty.pdf", b""),
        ("huge.pdf", b"x" * (settings.ledger_max_upload_bytes + 1)),
    ],
)
def test_upload_rejects_bad_files(manager, principals, pending, storage, filename, data):
    with pytest.raises(FileRejected):
        manager.upload(principals["office"], pending.id, filename, None, data, NOW)
    assert manager.get(principals["admin"], pending.id).status == "pending"
    assert not list(storage.base_dir.rglob("*.*"))


def test_upload_accepts_max_size_and_uppercase_extension(manager, principals, pending):
    data = b"x" * settings.ledger_max_upload_bytes
    ledger = manager.upload(principals["office"], pending.id, "BIG.CSV", "text/csv", data, NOW)
    assert ledger.file_size == settings.ledger_max_upload_bytes
    assert ledger.file_path.endswith(".csv")


def test_upload_lost_race_discards_new_blob(manager, principals, pending, storage, monkeypatch):
    def lose(ledger, expected, **values):
        raise Conflict()

    monkeypatch.setattr(manager, "_transition", lose)
    with pytest.raises(Conflict):
        manager.upload(principals["office"], pending.id, "q1.pdf", None, PDF, NOW)
    assert not list(storage.base_dir.rglob("*.pdf"))


def test_download_requires_uploaded_file(manager, principals, pending, storage):
    with pytest.raises(FileUnavailable):
        manager.download(principals["client"], pending.id)

    ledger = manager.upload(principals["office"], pending.id, "q1.pdf", None, PDF, NOW)
    storage.delete(ledger.file_path)
    with pytest.raises(FileUnavailable) as exc:
        manager.download(principals["client"], pending.id)
    assert exc.value.message == "Ledger file not found on server"


def test_delete_is_admin_or_manager_and_purges_blob(manager, principals, pending, storage, db):
    ledger = manager.upload(principals["office"], pending.id, "q1.pdf", None, PDF, NOW)
    key = ledger.file_path
    for role in ("office", "sales", "client"):
        with pytest.raises(Forbidden):
            manager.delete(principals[role], pending.id)

    manager.delete(principals["manager"], pending.id)
    assert db.query(LedgerRequest).count() == 0
    assert storage.exists(key) is False
    with pytest.raises(NotFound):
        manager.delete(principals["manager"], pending.id)


def test_delete_proceeds_when_blob_delete_fails(manager, principals, pending, storage, db, monkeypatch):
    manager.upload(principals["office"], pending.id, "q1.pdf", None, PDF, NOW)

    def broken(key):
        raise OSError("storage unreachable")

    monkeypatch.setattr(storage, "delete", broken)
    manager.delete(principals["admin"], pending.id)
    assert db.query(LedgerRequest).count() == 0


def test_storage_failure_is_internal(manager, principals, pending, storage, monkeypatch):
    def broken(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(storage, "copy_in", broken)
    with pytest.raises(InternalError) as exc:
        manager.upload(principals["office"], pending.id, "q1.pdf", None, PDF, NOW)
    assert exc.value.status_code == 500
    assert manager.get(principals["admin"], pending.id).status == "pending"


def test_sdk_storage_failure_is_internal(manager, principals, pending, storage, monkeypatch):
    from azure.core.exceptions import ServiceRequestError

    def broken(*args, **kwargs):
        raise ServiceRequestError("storage unreachable")

    monkeypatch.setattr(storage, "copy_in", broken)
    with pytest.raises(InternalError) as exc:
        manager.upload(principals["office"], pending.id, "q1.pdf", None, PDF, NOW)
    assert exc.value.status_code == 500
    assert manager.get(principals["admin"], pending.id).status == "pending"
