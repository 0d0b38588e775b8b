from datetime import UTC, datetime, timedelta

import pytest

from app.models.content import ContentAddress, ContentRecord, FolderRecord
from app.services.exceptions import OwnershipError, ValidationError
from tests.conftest import make_folder, make_record

NOW = datetime(2026, 3, 5, 12, 0, tzinfo=UTC)


def _pinned(db, ledger, owner, address, **kwargs):
    record = make_record(db, owner, address, **kwargs)
    ledger.request_pin(db, record, NOW)
    return record


def test_trashed_file_keeps_its_pin(db_session, ledger, store, trash_manager, user):
    record = _pinned(db_session, ledger, user, "bafya")

    trash_manager.trash_file(db_session, user.id, record.id, NOW)

    assert record.is_deleted is True
    assert record.is_pinned is True
    assert store.unpin_calls["bafya"] == 0
    assert trash_manager.expires_at(record.deleted_at) == NOW + timedelta(days=30)


def test_deleting_folder_releases_each_pinned_file(db_session, ledger, store, trash_manager, user):
    folder = make_folder(db_session, user)
    for i in range(3):
        _pinned(db_session, ledger, user, f"bafy{i}", folder=folder)
    make_record(db_session, user, "bafyloose", folder=folder)
    trash_manager.trash_folder(db_session, user.id, folder.id, NOW)

    summary = trash_manager.permanently_delete_folder(db_session, user.id, folder.id, NOW)

    assert summary.references_released_count == 3
    assert summary.permanently_deleted_count == 5
    assert summary.failed_count == 0
    assert all(store.unpin_calls[f"bafy{i}"] == 1 for i in range(3))
    assert store.pinned == set()
    assert db_session.query(ContentRecord).count() == 0
    assert db_session.query(FolderRecord).count() == 0


def test_shared_address_survives_other_owner_delete(
    db_session, ledger, store, trash_manager, user, other_user
):
    mine = _pinned(db_session, ledger, user, "bafyshared")
    _pinned(db_session, ledger, other_user, "bafyshared")
    trash_manager.trash_file(db_session, user.id, mine.id, NOW)

    trash_manager.permanently_delete_file(db_session, user.id, mine.id, NOW)

    assert store.unpin_calls["bafyshared"] == 0
    assert "bafyshared" in store.pinned
    row = db_session.get(ContentAddress, "bafyshared")
    assert row.reference_count == 1


def test_trash_and_restore_nested_folder(db_session, trash_manager, user):
    root = make_folder(db_session, user, "Projects")
    child = make_folder(db_session, user, "2026", parent=root)
    record = make_record(db_session, user, folder=child)

    trash_manager.trash_folder(db_session, user.id, root.id, NOW)
    assert child.is_deleted is True
    assert record.is_deleted is True

    restored = trash_manager.restore_folder(db_session, user.id, root.id, NOW)

    assert restored.is_deleted is False
    db_session.refresh(child)
    db_session.refresh(record)
    assert child.is_deleted is False
    assert record.is_deleted is False


def test_restore_moves_orphan_to_root_and_renames(db_session, trash_manager, user):
    make_record(db_session, user, filename="a.txt")
    folder = make_folder(db_session, user)
    record = make_record(db_session, user, filename="a.txt", folder=folder)
    trash_manager.trash_folder(db_session, user.id, folder.id, NOW)

    restored = trash_manager.restore_file(db_session, user.id, record.id, NOW)

    assert restored.parent_folder_id is None
    assert restored.filename == "a (1).txt"
    assert restored.is_deleted is False


def test_restore_folder_renames_on_clash(db_session, trash_manager, user):
    trashed = make_folder(db_session, user, "Docs")
    trash_manager.trash_folder(db_session, user.id, trashed.id, NOW)
    make_folder(db_session, user, "docs")

    restored = trash_manager.restore_folder(db_session, user.id, trashed.id, NOW)

    assert restored.name == "Docs (1)"


def test_restore_after_purge_returns_none(db_session, trash_manager, user):
    record = make_record(db_session, user)
    record_id = record.id
    trash_manager.trash_file(db_session, user.id, record_id, NOW)
    trash_manager.permanently_delete_file(db_session, user.id, record_id, NOW)

    assert trash_manager.restore_file(db_session, user.id, record_id, NOW) is None


def test_other_owner_cannot_restore_or_delete(db_session, trash_manager, user, other_user):
    record = make_record(db_session, user, is_deleted=True, deleted_at=NOW)

    with pytest.raises(OwnershipError):
        trash_manager.restore_file(db_session, other_user.id, record.id, NOW)
    with pytest.raises(OwnershipError):
        trash_manager.permanently_delete_file(db_session, other_user.id, record.id, NOW)


def test_sweep_respects_retention(db_session, ledger, store, trash_manager, user):
    old = _pinned(db_session, ledger, user, "bafyold")
    recent = make_record(db_session, user, "bafyrecent")
    trash_manager.trash_file(db_session, user.id, old.id, NOW - timedelta(days=31))
    trash_manager.trash_file(db_session, user.id, recent.id, NOW - timedelta(days=5))
    recent_id = recent.id

    summary = trash_manager.sweep_expired(db_session, NOW)

    assert summary.permanently_deleted_count == 1
    assert summary.references_released_count == 1
    assert store.unpin_calls["bafyold"] == 1
    assert [r.id for r in db_session.query(ContentRecord).all()] == [recent_id]


def test_sweep_counts_store_failures(db_session, ledger, store, trash_manager, user):
    record = _pinned(db_session, ledger, user, "bafyold")
    trash_manager.trash_file(db_session, user.id, record.id, NOW - timedelta(days=40))
    store.fail_unpin = True

    summary = trash_manager.sweep_expired(db_session, NOW)

    assert summary.failed_count == 1
    assert summary.permanently_deleted_count == 0
    assert db_session.query(ContentRecord).count() == 1
    assert "bafyold" in store.pinned


def test_empty_trash_leaves_active_items(db_session, ledger, trash_manager, user):
    keep = make_record(db_session, user, filename="keep.txt")
    folder = make_folder(db_session, user)
    _pinned(db_session, ledger, user, "bafyinfolder", folder=folder)
    loose = make_record(db_session, user, "bafyloose")
    trash_manager.trash_folder(db_session, user.id, folder.id, NOW)
    trash_manager.trash_file(db_session, user.id, loose.id, NOW)
    keep_id = keep.id

    summary = trash_manager.empty_trash(db_session, user.id, NOW)

    assert summary.permanently_deleted_count == 3
    assert summary.references_released_count == 1
    assert [r.id for r in db_session.query(ContentRecord).all()] == [keep_id]


def test_list_trash_sweeps_expired_first(db_session, trash_manager, user):
    expired = make_record(db_session, user, "bafyexpired")
    fresh = make_record(db_session, user, "bafyfresh")
    trash_manager.trash_file(db_session, user.id, expired.id, NOW - timedelta(days=31))
    trash_manager.trash_file(db_session, user.id, fresh.id, NOW - timedelta(days=1))
    fresh_id = fresh.id

    listing = trash_manager.list_trash(db_session, user.id, NOW)

    assert [f.id for f in listing.files] == [fresh_id]
    assert listing.swept.permanently_deleted_count == 1


def test_permanent_delete_requires_trash_first(db_session, ledger, store, trash_manager, user):
    record = _pinned(db_session, ledger, user, "bafyactive")
    folder = make_folder(db_session, user)

    with pytest.raises(ValidationError):
        trash_manager.permanently_delete_file(db_session, user.id, record.id, NOW)
    with pytest.raises(ValidationError):
        trash_manager.permanently_delete_folder(db_session, user.id, folder.id, NOW)

    assert db_session.get(ContentRecord, record.id) is not None
    assert db_session.get(FolderRecord, folder.id) is not None
    assert store.unpin_calls["bafyactive"] == 0


def test_purging_unpinned_file_releases_nothing(db_session, store, trash_manager, user):
    record = make_record(db_session, user, "bafyplain")
    trash_manager.trash_file(db_session, user.id, record.id, NOW)

    summary = trash_manager.permanently_delete_file(db_session, user.id, record.id, NOW)

    assert summary.permanently_deleted_count == 1
    assert summary.references_released_count == 0
    assert store.unpin_calls["bafyplain"] == 0
    assert db_session.query(ContentRecord).count() == 0
