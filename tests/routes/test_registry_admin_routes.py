from io import BytesIO

from registry_app.models import AuditAction, AuditLogEntry, BulkUpload, ChangeSource


def test_bulk_upload_requires_admin(client, moderator_headers):
    response = client.post(
        "/api/admin/bulk-uploads",
        data={"file": (BytesIO(b"external_id,name\nA1,Ali\n"), "snapshot.csv")},
        headers=moderator_headers,
        content_type="multipart/form-data",
    )

    assert response.status_code == 403
    assert response.get_json()["kind"] == "forbidden"
    assert response.get_json()["details"] == {"required_roles": ["admin"]}
    assert ChangeSource.query.count() == 0


def test_simulate_reports_counts_without_applying(client, upload_snapshot):
    response = upload_snapshot(["A1,Ali,,,", "A2,Sara,,,"], simulate=True)

    assert response.status_code == 200
    body = response.get_json()
    assert body["inserted"] == 2
    assert body["samples"]["inserted"] == ["A1", "A2"]
    assert client.get("/api/stats").get_json()["total"] == 0


def test_apply_returns_change_source_and_stats(client, upload_snapshot):
    response = upload_snapshot(["A1,Ali,,,"], comment="First release", date_released="2024-01-31")

    assert response.status_code == 201
    body = response.get_json()
    assert body["stats"] == {"inserted": 1, "updated": 0, "deleted": 0}
    upload = BulkUpload.query.filter_by(change_source_id=body["change_source_id"]).one()
    assert upload.comment == "First release"
    assert upload.date_released.isoformat() == "2024-01-31"
    assert client.get(upload.file_url).status_code == 200


def test_apply_rejects_bad_release_date(upload_snapshot):
    response = upload_snapshot(["A1,Ali,,,"], date_released="31/01/2024")

    assert response.status_code == 422


def test_duplicate_external_ids_conflict(upload_snapshot):
    response = upload_snapshot(["B2,Bilal,,,", "B2,Bilal,,,"])

    assert response.status_code == 409
    assert response.get_json()["details"]["duplicates"] == {"B2": [2, 3]}
    assert ChangeSource.query.count() == 0


def test_malformed_snapshot_lists_row_errors(upload_snapshot):
    response = upload_snapshot(["A1,Ali,,NOPE,"])

    assert response.status_code == 422
    errors = response.get_json()["details"]["errors"]
    assert errors[0]["line"] == 2
    assert errors[0]["message"].startswith("gender:")


def test_non_csv_upload_is_rejected(client, admin_headers):
    response = client.post(
        "/api/admin/bulk-uploads",
        data={"file": (BytesIO(b"{}"), "snapshot.json")},
        headers=admin_headers,
        content_type="multipart/form-data",
    )

    assert response.status_code == 422


def test_list_uploads(client, upload_snapshot, admin_headers):
    upload_snapshot(["A1,Ali,,,"], filename="one.csv")
    upload_snapshot(["A1,Ali,,,", "A2,Sara,,,"], filename="two.csv")

    payload = client.get("/api/admin/bulk-uploads", headers=admin_headers).get_json()

    assert payload["total"] == 2
    assert payload["items"][0]["filename"] == "two.csv"
    assert payload["items"][0]["stats"]["inserted"] == 1


def test_rollback_flow(client, upload_snapshot, admin_headers):
    upload_snapshot(["A1,X,,,"])
    second = upload_snapshot(["A1,Y,,,"]).get_json()["change_source_id"]
    upload_snapshot([])
    path = f"/api/admin/change-sources/{second}/rollback"

    conflict = client.post(path, json={}, headers=admin_headers)
    assert conflict.status_code == 409
    assert conflict.get_json()["details"]["conflicts"][0]["external_id"] == "A1"

    forced = client.post(path, json={"force": True}, headers=admin_headers)
    assert forced.status_code == 201
    rollback_id = forced.get_json()["change_source_id"]

    person = client.get("/api/persons?external_id=A1").get_json()["items"][0]
    assert person["name"] == "X"
    assert person["current_version"] == 4

    assert client.post(path, json={}, headers=admin_headers).status_code == 409
    again = client.post(f"/api/admin/change-sources/{rollback_id}/rollback", json={}, headers=admin_headers)
    assert again.status_code == 422
    assert client.post("/api/admin/change-sources/999/rollback", json={}, headers=admin_headers).status_code == 404


def test_manual_edit_and_delete(client, seeded_persons, admin_headers):
    person_id = seeded_persons["A1"]

    response = client.patch(
        f"/api/admin/persons/{person_id}",
        json={"expected_version": 1, "fields": {"name": "Ali Hassan"}},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.get_json()["stats"]["updated"] == 1

    stale = client.patch(
        f"/api/admin/persons/{person_id}",
        json={"expected_version": 1, "fields": {"name": "Ali H."}},
        headers=admin_headers,
    )
    assert stale.status_code == 409

    missing_version = client.delete(f"/api/admin/persons/{person_id}", headers=admin_headers)
    assert missing_version.status_code == 422

    deleted = client.delete(f"/api/admin/persons/{person_id}?expected_version=2", headers=admin_headers)
    assert deleted.status_code == 200
    assert client.get(f"/api/persons/{person_id}").status_code == 404


def test_audit_log_filters(client, upload_snapshot, admin_headers):
    upload_snapshot(["A1,Ali,,,"], simulate=True)
    applied = upload_snapshot(["A1,Ali,,,"]).get_json()

    payload = client.get("/api/admin/audit-log?action=bulk_upload_applied", headers=admin_headers).get_json()

    assert payload["total"] == 1
    entry = payload["items"][0]
    assert entry["resource_id"] == str(applied["change_source_id"])
    assert entry["principal_id"] == "admin-1"
    assert AuditLogEntry.query.filter_by(action=AuditAction.BULK_UPLOAD_SIMULATED).count() == 1

    bad = client.get("/api/admin/audit-log?action=nope", headers=admin_headers)
    assert bad.status_code == 422
