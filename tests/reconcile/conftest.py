from __future__ import annotations

import pytest

from registry_app.models import ChangeSourceType, db
from registry_app.reconcile import (
    ReconciliationTransactor,
    SnapshotRow,
    SourceMeta,
    compute_diff,
    load_current_state,
)
from registry_app.reconcile.principal import Principal, Role


SNAPSHOT_HEADER = "external_id,name,name_english,gender,date_of_birth"


@pytest.fixture
def snapshot_csv():
    def _make(rows, header=SNAPSHOT_HEADER) -> bytes:
        return ("\n".join([header, *rows]) + "\n").encode("utf-8")

    return _make


@pytest.fixture
def admin():
    return Principal(id="admin-1", role=Role.ADMIN)


@pytest.fixture
def moderator():
    return Principal(id="moderator-1", role=Role.MODERATOR)


@pytest.fixture
def member():
    return Principal(id="member-1", role=Role.MEMBER)


@pytest.fixture
def transactor(app):
    return ReconciliationTransactor(db.session)


@pytest.fixture
def apply_rows(transactor, admin):
    """Diff ``rows`` (external_id -> fields) against the registry and apply them as one bulk upload."""

    def _apply(rows: dict[str, dict], *, fields=None, principal=None, filename="snapshot.csv"):
        snapshot = [
            SnapshotRow(external_id=external_id, fields=values, source_line=index)
            for index, (external_id, values) in enumerate(rows.items(), start=2)
        ]
        kwargs = {"fields": fields} if fields is not None else {}
        diff = compute_diff(load_current_state(db.session), snapshot, **kwargs)
        meta = SourceMeta(source_type=ChangeSourceType.BULK_UPLOAD, filename=filename)
        return transactor.apply(diff, meta, principal or admin)

    return _apply
