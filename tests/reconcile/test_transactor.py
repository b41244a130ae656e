"""
Tests for the reconciliation transactor.

Covers versioned inserts/updates/deletes, change source bookkeeping, audit entries,
chunked application and the optimistic concurrency failure modes.
"""

import pytest
from sqlalchemy import text

from registry_app.models import (
    AuditAction,
    AuditLogEntry,
    BulkUpload,
    ChangeSource,
    ChangeSourceType,
    ChangeType,
    Person,
    PersonVersion,
    db,
)
from registry_app.reconcile import (
    ConcurrentModificationError,
    ReconciliationTransactor,
    SnapshotRow,
    SourceMeta,
    compute_diff,
    load_current_state,
)


def _person(external_id):
    return Person.query.filter_by(external_id=external_id).one()


def _versions(person):
    return PersonVersion.query.filter_by(person_id=person.id).order_by(PersonVersion.version_number).all()


def test_insert_creates_person_version_and_source(apply_rows):
    result = apply_rows({"A1": {"name": "Ali", "gender": "MALE", "date_of_birth": "1980-05-06"}})

    assert result.stats == {"inserted": 1, "updated": 0, "deleted": 0}
    person = _person("A1")
    assert person.current_version_number == 1
    assert person.gender.value == "MALE"
    assert person.date_of_birth.isoformat() == "1980-05-06"

    (version,) = _versions(person)
    assert version.change_type == ChangeType.INSERT
    assert version.change_source_id == result.change_source_id
    assert version.snapshot["name"] == "Ali"
    assert version.snapshot["date_of_death"] is None
    assert set(version.changed_fields) == {"name", "gender", "date_of_birth"}

    source = db.session.get(ChangeSource, result.change_source_id)
    assert source.type == ChangeSourceType.BULK_UPLOAD
    assert source.principal_id == "admin-1"
    assert source.stats == {"inserted": 1, "updated": 0, "deleted": 0}
    assert BulkUpload.query.filter_by(change_source_id=source.id).one().filename == "snapshot.csv"

    entry = AuditLogEntry.query.filter_by(action=AuditAction.BULK_UPLOAD_APPLIED).one()
    assert entry.resource_id == str(source.id)
    assert entry.details["stats"]["inserted"] == 1


def test_update_appends_full_snapshot_version(apply_rows):
    apply_rows({"A1": {"name": "Ali", "gender": "MALE"}})
    result = apply_rows({"A1": {"name": "Ali Hassan", "gender": "MALE"}})

    person = _person("A1")
    assert person.name == "Ali Hassan"
    assert person.current_version_number == 2
    versions = _versions(person)
    assert [version.version_number for version in versions] == [1, 2]
    assert versions[1].change_type == ChangeType.UPDATE
    assert versions[1].changed_fields == ["name"]
    assert versions[1].snapshot["gender"] == "MALE"
    assert versions[1].change_source_id == result.change_source_id
    # The first version is untouched.
    assert versions[0].snapshot["name"] == "Ali"


def test_delete_is_soft_and_keeps_snapshot(apply_rows):
    apply_rows({"A1": {"name": "Ali"}, "A2": {"name": "Sara"}})
    result = apply_rows({"A2": {"name": "Sara"}})

    assert result.stats == {"inserted": 0, "updated": 0, "deleted": 1}
    person = _person("A1")
    assert person.is_deleted is True
    assert person.name == "Ali"
    latest = _versions(person)[-1]
    assert latest.change_type == ChangeType.DELETE
    assert latest.is_deleted is True
    assert latest.snapshot["name"] == "Ali"


def test_reappearing_person_is_undeleted(apply_rows):
    apply_rows({"A1": {"name": "Ali"}})
    apply_rows({})
    apply_rows({"A1": {"name": "Ali"}})

    person = _person("A1")
    assert person.is_deleted is False
    assert person.current_version_number == 3
    assert [version.change_type for version in _versions(person)] == [
        ChangeType.INSERT,
        ChangeType.DELETE,
        ChangeType.UPDATE,
    ]


def test_absent_optional_columns_are_left_untouched(apply_rows):
    apply_rows({"A1": {"name": "Ali", "gender": "MALE"}})

    apply_rows({"A1": {"name": "Ali H."}}, fields=("name",))

    person = _person("A1")
    assert person.name == "Ali H."
    assert person.gender.value == "MALE"


def test_identical_snapshot_writes_an_empty_batch(apply_rows):
    apply_rows({"A1": {"name": "Ali"}})

    result = apply_rows({"A1": {"name": "Ali"}})

    assert result.stats == {"inserted": 0, "updated": 0, "deleted": 0}
    assert _person("A1").current_version_number == 1
    assert ChangeSource.query.count() == 2


def test_simulate_does_not_touch_the_database(transactor):
    diff = compute_diff(load_current_state(db.session), [SnapshotRow("A1", {"name": "Ali"})])

    summary = transactor.simulate(diff)

    assert summary["inserted"] == 1
    assert summary["samples"]["inserted"] == ["A1"]
    assert Person.query.count() == 0
    assert ChangeSource.query.count() == 0


def test_chunked_application_matches_single_chunk(app, admin):
    transactor = ReconciliationTransactor(db.session, chunk_size=2)
    rows = [SnapshotRow(f"E{index}", {"name": f"Person {index}"}) for index in range(5)]
    diff = compute_diff(load_current_state(db.session), rows)

    result = transactor.apply(diff, SourceMeta(source_type=ChangeSourceType.BULK_UPLOAD), admin)

    assert result.stats["inserted"] == 5
    assert len(result.version_ids) == 5
    assert PersonVersion.query.filter_by(change_source_id=result.change_source_id).count() == 5


def test_stale_diff_is_rejected_and_nothing_is_applied(apply_rows, transactor, admin):
    apply_rows({"A1": {"name": "Ali"}, "A2": {"name": "Sara"}})
    stale = compute_diff(
        load_current_state(db.session),
        [SnapshotRow("A1", {"name": "Ali B"}), SnapshotRow("A2", {"name": "Sara B"}), SnapshotRow("A3", {"name": "X"})],
    )
    apply_rows({"A1": {"name": "Ali C"}, "A2": {"name": "Sara"}})
    sources_before = ChangeSource.query.count()

    with pytest.raises(ConcurrentModificationError):
        transactor.apply(stale, SourceMeta(source_type=ChangeSourceType.BULK_UPLOAD, filename="late.csv"), admin)

    assert ChangeSource.query.count() == sources_before
    assert Person.query.filter_by(external_id="A3").count() == 0
    assert _person("A2").name == "Sara"
    assert _person("A1").name == "Ali C"
    failure = AuditLogEntry.query.filter_by(action=AuditAction.BULK_UPLOAD_FAILED).one()
    assert failure.details["filename"] == "late.csv"
    assert failure.details["kind"] == "conflict"


def test_concurrent_row_update_surfaces_as_conflict(apply_rows, transactor, admin):
    apply_rows({"A1": {"name": "Ali"}})
    person = _person("A1")
    diff = compute_diff(load_current_state(db.session), [SnapshotRow("A1", {"name": "Ali B"})])
    # Another writer bumps the row behind the session's back.
    db.session.execute(text("UPDATE persons SET current_version_number = 2 WHERE id = :id"), {"id": person.id})

    with pytest.raises(ConcurrentModificationError):
        transactor.apply(diff, SourceMeta(source_type=ChangeSourceType.BULK_UPLOAD), admin)

    db.session.expire_all()
    assert _person("A1").current_version_number == 1
    assert len(_versions(_person("A1"))) == 1


def test_concurrent_insert_of_same_external_id_is_a_conflict(apply_rows, transactor, admin):
    diff = compute_diff(load_current_state(db.session), [SnapshotRow("A9", {"name": "Late"})])
    apply_rows({"A9": {"name": "Early"}})

    with pytest.raises(ConcurrentModificationError):
        transactor.apply(diff, SourceMeta(source_type=ChangeSourceType.BULK_UPLOAD), admin)

    assert Person.query.filter_by(external_id="A9").one().name == "Early"
