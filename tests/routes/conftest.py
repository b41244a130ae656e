"""Shared fixtures for registry route tests"""

from io import BytesIO

import pytest

from registry_app.models import Person

SNAPSHOT_HEADER = "external_id,name,name_english,gender,date_of_birth"


def _csv(rows):
    return ("\n".join([SNAPSHOT_HEADER, *rows]) + "\n").encode("utf-8")


@pytest.fixture
def upload_snapshot(client, admin_headers):
    """POST a snapshot to the admin API and return the response."""

    def _upload(rows, *, simulate=False, filename="snapshot.csv", **form):
        path = "/api/admin/bulk-uploads/simulate" if simulate else "/api/admin/bulk-uploads"
        data = {"file": (BytesIO(_csv(rows)), filename), **form}
        return client.post(path, data=data, headers=admin_headers, content_type="multipart/form-data")

    return _upload


@pytest.fixture
def seeded_persons(upload_snapshot):
    response = upload_snapshot(["A1,Ali,,MALE,1980-05-06", "A2,Sara,Sarah,FEMALE,", "A3,Omar,,,"])
    assert response.status_code == 201
    return {person.external_id: person.id for person in Person.query.all()}
