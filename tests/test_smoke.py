import io


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    assert client.get("/healthz").data == b"ok"


def test_login_and_me(client, login):
    # Anonymous should be rejected
    r = client.get("/auth/me")
    assert r.status_code == 401
    r = client.get("/api/documents/1")
    assert r.status_code == 401
    assert r.json["code"] == "UNAUTHENTICATED"

    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "wrong"})
    assert r.status_code == 401

    login(client, "Admin@Example.com")
    r = client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["email"] == "admin@example.com"
    assert "documents.issue" in r.json["permissions"]


def test_mutations_require_csrf_token(client, login):
    login(client, "assessor@example.com")
    r = client.post("/api/documents/", json={"document_type": "FRA"})
    assert r.status_code == 400
    assert r.json["code"] == "CSRF_INVALID"


def test_create_document_seeds_module_skeleton(client, login):
    headers = login(client, "assessor@example.com")
    r = client.post("/api/documents/", json={"document_type": "XYZ"}, headers=headers)
    assert r.status_code == 422

    r = client.post("/api/documents/", json={"document_type": "FRA", "title": "Depot"}, headers=headers)
    assert r.status_code == 201
    doc = r.json["document"]
    keys = [m["module_key"] for m in doc["modules"]]
    assert "A1_DOC_CONTROL" in keys
    assert "FRA_4_SIGNIFICANT_FINDINGS" in keys
    assert all(m["payload"] == {} for m in doc["modules"])
    assert doc["jurisdiction"] == "UK"

    r = client.patch(f"/api/documents/{doc['id']}", json={"scope_type": "partial"}, headers=headers)
    assert r.status_code == 422
    r = client.put(f"/api/documents/{doc['id']}/modules/FRA_1_HAZARDS", json={"payload": [1, 2]}, headers=headers)
    assert r.status_code == 422
    assert r.json["codes"] == ["INVALID_PAYLOAD"]


def test_evidence_upload_and_caption(client, login):
    headers = login(client, "assessor@example.com")
    r = client.post("/api/documents/", json={"document_type": "FRA"}, headers=headers)
    vid = r.json["document"]["id"]

    r = client.post(f"/api/documents/{vid}/evidence", data={}, headers=headers, content_type="multipart/form-data")
    assert r.status_code == 400
    assert r.json["code"] == "FILE_REQUIRED"

    r = client.post(
        f"/api/documents/{vid}/evidence",
        data={"file": (io.BytesIO(b"\xff\xd8photo"), "stair core.jpg"), "caption": "Stair core, ground floor"},
        headers=headers,
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    link = r.json["evidence"]
    assert link["caption"] == "Stair core, ground floor"

    r = client.patch(f"/api/documents/evidence/{link['id']}", json={"caption": "Stair core B"}, headers=headers)
    assert r.status_code == 200
    assert r.json["evidence"]["caption"] == "Stair core B"

    r = client.delete(f"/api/documents/evidence/{link['id']}", headers=headers)
    assert r.status_code == 200
    r = client.get(f"/api/documents/{vid}")
    assert r.json["document"]["evidence"] == []


def test_soft_delete_draft(client, login):
    headers = login(client, "admin@example.com")
    r = client.post("/api/documents/", json={"document_type": "FRA"}, headers=headers)
    vid = r.json["document"]["id"]

    r = client.delete(f"/api/documents/{vid}", json={"reason": "Duplicate"}, headers=headers)
    assert r.status_code == 200
    r = client.get(f"/api/documents/{vid}")
    assert r.status_code == 404
    assert r.json["code"] == "DOC_NOT_FOUND"

    # The trail outlives the draft.
    r = client.get(f"/api/documents/{vid}/audit")
    assert r.status_code == 200
    trail = r.json["events"]
    assert [e["action"] for e in trail] == ["document.create", "document.delete"]
    assert trail[-1]["reason"] == "Duplicate"
    assert trail[-1]["actor_user_email"] == "admin@example.com"


def test_documents_are_scoped_to_the_organisation(client, login):
    headers = login(client, "assessor@example.com")
    r = client.post("/api/documents/", json={"document_type": "FRA"}, headers=headers)
    vid = r.json["document"]["id"]
    client.post("/auth/logout", headers=headers)

    login(client, "outsider@example.com")
    r = client.get(f"/api/documents/{vid}")
    assert r.status_code == 404
