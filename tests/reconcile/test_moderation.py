"""
Tests for community submissions and their moderation.
"""

import pytest

from registry_app.models import (
    AuditAction,
    AuditLogEntry,
    ChangeSource,
    ChangeSourceType,
    CommunitySubmission,
    Person,
    PersonVersion,
    SubmissionStatus,
    db,
)
from registry_app.reconcile import (
    ConflictError,
    ModerationService,
    PersonEditService,
    NotFoundError,
    StaleBaseVersionError,
    SubmissionAlreadyDecidedError,
    SubmissionValidationError,
    ValidationError,
    validate_submission_payload,
)
from registry_app.services import LocalBlobStore


@pytest.fixture
def service(transactor):
    return ModerationService(db.session, transactor)


@pytest.fixture
def person(apply_rows):
    apply_rows({"A1": {"name": "Ali"}})
    return Person.query.filter_by(external_id="A1").one()


def _submit(service, person, member, payload):
    submission = service.create_submission(person.id, payload, member)
    db.session.commit()
    return submission


class TestPayloadValidation:
    def test_normalizes_allowed_fields(self):
        normalized = validate_submission_payload(
            {
                "date_of_death": "2023-10-17",
                "location_of_death_lat": "31.5",
                "location_of_death_lng": 34.46,
                "photo_url_thumb": " /blobs/thumb.jpg ",
            }
        )

        assert normalized == {
            "date_of_death": "2023-10-17",
            "location_of_death_lat": 31.5,
            "location_of_death_lng": 34.46,
            "photo_url_thumb": "/blobs/thumb.jpg",
        }

    def test_rejects_fields_outside_allow_list(self):
        with pytest.raises(SubmissionValidationError) as excinfo:
            validate_submission_payload({"name": "Someone else", "date_of_death": "2023-10-17"})

        assert excinfo.value.errors == {"name": "field cannot be edited through a submission"}

    def test_coordinates_must_come_in_pairs(self):
        with pytest.raises(SubmissionValidationError) as excinfo:
            validate_submission_payload({"location_of_death_lat": 31.5})

        assert "location_of_death" in excinfo.value.errors

    @pytest.mark.parametrize(
        "lat,lng,field",
        [
            (91, 0, "location_of_death_lat"),
            (-90.5, 0, "location_of_death_lat"),
            (0, 180.01, "location_of_death_lng"),
            ("north", 0, "location_of_death_lat"),
            (True, 0, "location_of_death_lat"),
        ],
    )
    def test_coordinates_must_be_on_earth(self, lat, lng, field):
        with pytest.raises(SubmissionValidationError) as excinfo:
            validate_submission_payload({"location_of_death_lat": lat, "location_of_death_lng": lng})

        assert field in excinfo.value.errors

    def test_rejects_bad_dates_and_empty_payloads(self):
        with pytest.raises(SubmissionValidationError) as excinfo:
            validate_submission_payload({"date_of_death": "17/10/2023"})
        assert "date_of_death" in excinfo.value.errors

        with pytest.raises(SubmissionValidationError):
            validate_submission_payload({})

        with pytest.raises(SubmissionValidationError):
            validate_submission_payload(["date_of_death"])


def test_create_submission_anchors_to_latest_version(service, person, member):
    submission = _submit(service, person, member, {"date_of_death": "2023-10-17"})

    latest = PersonVersion.query.filter_by(person_id=person.id, version_number=1).one()
    assert submission.status == SubmissionStatus.PENDING
    assert submission.base_version_id == latest.id
    assert submission.submitted_by == "member-1"
    assert AuditLogEntry.query.filter_by(action=AuditAction.COMMUNITY_SUBMISSION_CREATED).count() == 1


def test_submission_against_deleted_person_is_rejected(service, person, member, apply_rows):
    apply_rows({})

    with pytest.raises(ValidationError):
        service.create_submission(person.id, {"date_of_death": "2023-10-17"}, member)


def test_submission_against_unknown_person(service, member):
    with pytest.raises(NotFoundError):
        service.create_submission(404, {"date_of_death": "2023-10-17"}, member)


def test_approve_applies_exactly_one_version(service, person, member, moderator):
    submission = _submit(
        service,
        person,
        member,
        {"date_of_death": "2023-10-17", "location_of_death_lat": 31.5, "location_of_death_lng": 34.46},
    )

    decision = service.approve(submission.id, moderator, note="Confirmed")

    refreshed = db.session.get(Person, person.id)
    assert refreshed.current_version_number == 2
    assert refreshed.date_of_death.isoformat() == "2023-10-17"
    assert refreshed.location_of_death_lat == 31.5
    assert refreshed.name == "Ali"

    source = db.session.get(ChangeSource, decision.change_source_id)
    assert source.type == ChangeSourceType.COMMUNITY_SUBMISSION
    assert source.principal_id == "moderator-1"
    version = db.session.get(PersonVersion, decision.applied_version_id)
    assert version.version_number == 2
    assert sorted(version.changed_fields) == ["date_of_death", "location_of_death_lat", "location_of_death_lng"]

    stored = db.session.get(CommunitySubmission, submission.id)
    assert stored.status == SubmissionStatus.APPROVED
    assert stored.decided_by == "moderator-1"
    assert stored.decision_note == "Confirmed"
    assert stored.applied_version_id == version.id
    assert stored.rebased_from_version_id is None


def test_approve_with_stale_base_is_a_conflict(service, person, member, moderator, apply_rows):
    submission = _submit(service, person, member, {"date_of_death": "2023-10-17"})
    apply_rows({"A1": {"name": "Ali Hassan"}})

    with pytest.raises(StaleBaseVersionError) as excinfo:
        service.approve(submission.id, moderator)

    assert excinfo.value.kind.value == "conflict"
    assert db.session.get(CommunitySubmission, submission.id).status == SubmissionStatus.PENDING
    assert db.session.get(Person, person.id).date_of_death is None


def test_approve_with_rebase_applies_over_current_state(service, person, member, moderator, apply_rows):
    submission = _submit(service, person, member, {"date_of_death": "2023-10-17"})
    base_version_id = submission.base_version_id
    apply_rows({"A1": {"name": "Ali Hassan"}})

    decision = service.approve(submission.id, moderator, rebase=True)

    refreshed = db.session.get(Person, person.id)
    assert refreshed.current_version_number == 3
    assert refreshed.name == "Ali Hassan"
    assert refreshed.date_of_death.isoformat() == "2023-10-17"
    assert decision.rebased_from_version_id == base_version_id
    assert db.session.get(CommunitySubmission, submission.id).rebased_from_version_id == base_version_id


def test_rebase_onto_deleted_person_is_a_conflict(service, person, member, moderator, apply_rows):
    submission = _submit(service, person, member, {"date_of_death": "2023-10-17"})
    apply_rows({})

    with pytest.raises(ConflictError):
        service.approve(submission.id, moderator, rebase=True)

    assert db.session.get(CommunitySubmission, submission.id).status == SubmissionStatus.PENDING


def test_decided_submission_cannot_be_decided_again(service, person, member, moderator):
    submission = _submit(service, person, member, {"date_of_death": "2023-10-17"})
    service.approve(submission.id, moderator)

    with pytest.raises(SubmissionAlreadyDecidedError):
        service.approve(submission.id, moderator)
    with pytest.raises(SubmissionAlreadyDecidedError):
        service.reject(submission.id, moderator, note="Too late")


def test_reject_leaves_person_untouched(service, person, member, moderator):
    submission = _submit(service, person, member, {"date_of_death": "2023-10-17"})

    decision = service.reject(submission.id, moderator, note="No source given")

    assert decision.status == SubmissionStatus.REJECTED
    assert db.session.get(Person, person.id).current_version_number == 1
    stored = db.session.get(CommunitySubmission, submission.id)
    assert stored.status == SubmissionStatus.REJECTED
    assert stored.decision_note == "No source given"
    assert AuditLogEntry.query.filter_by(action=AuditAction.COMMUNITY_SUBMISSION_REJECTED).count() == 1


def test_reject_requires_a_note(service, person, member, moderator):
    submission = _submit(service, person, member, {"date_of_death": "2023-10-17"})

    with pytest.raises(SubmissionValidationError):
        service.reject(submission.id, moderator, note="  ")


def test_reject_discards_unused_photo_blobs(app, person, member, moderator, transactor, tmp_path):
    store = LocalBlobStore(tmp_path / "photos")
    stored = store.store(b"\x89PNG fake", filename="face.png", content_type="image/png")
    service = ModerationService(db.session, transactor, blob_store=store)
    submission = _submit(service, person, member, {"photo_url_original": stored.url})

    service.reject(submission.id, moderator, note="Wrong person")

    assert list((tmp_path / "photos").iterdir()) == []


def test_reject_keeps_photos_referenced_by_history(app, person, member, moderator, admin, transactor, tmp_path):
    store = LocalBlobStore(tmp_path / "photos")
    old = store.store(b"old portrait", filename="old.png", content_type="image/png")
    new = store.store(b"new portrait", filename="new.png", content_type="image/png")
    editor = PersonEditService(db.session, transactor)
    editor.edit(person.id, {"photo_url_original": old.url}, admin, expected_version=1)
    editor.edit(person.id, {"photo_url_original": new.url}, admin, expected_version=2)
    service = ModerationService(db.session, transactor, blob_store=store)
    submission = _submit(service, person, member, {"photo_url_original": old.url})

    service.reject(submission.id, moderator, note="Outdated portrait")

    assert store.open(old.url) == b"old portrait"
    assert store.open(new.url) == b"new portrait"


def test_reject_keeps_photos_of_other_pending_submissions(app, person, member, moderator, transactor, tmp_path):
    store = LocalBlobStore(tmp_path / "photos")
    stored = store.store(b"\x89PNG fake", filename="face.png", content_type="image/png")
    service = ModerationService(db.session, transactor, blob_store=store)
    first = _submit(service, person, member, {"photo_url_thumb": stored.url})
    _submit(service, person, member, {"photo_url_original": stored.url})

    service.reject(first.id, moderator, note="Duplicate")

    assert store.open(stored.url) == b"\x89PNG fake"


def test_pending_queue_is_oldest_first(service, person, member):
    first = _submit(service, person, member, {"date_of_death": "2023-10-17"})
    second = _submit(service, person, member, {"date_of_death": "2023-10-18"})

    pending, total = service.list_submissions(status=SubmissionStatus.PENDING)

    assert total == 2
    assert [item.id for item in pending] == [first.id, second.id]
