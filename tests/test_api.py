"""
End-to-end tests for the Flask REST API using the test client.
"""

import logging

import pytest

from optica.api.app import create_app

from conftest import PASSWORD, SECRET, bearer, patient_attrs

API = "/api/v1"


# ── Helpers ──────────────────────────────────────────────────────────

def sign_in(client, email, password=PASSWORD):
    return client.post(f"{API}/users/sign_in", json={"user": {"email": email, "password": password}})


def new_patient(client, headers, **overrides):
    resp = client.post(f"{API}/patients", json={"patient": patient_attrs(**overrides)}, headers=headers)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


def full_prescription():
    return {
        "exam_date": "2024-05-02",
        "total_cost": 500,
        "deposit_paid": 150,
        "prescription_eyes_attributes": [
            {"eye_type": "OD", "sphere": -1.25, "axis": 180},
            {"eye_type": "OS", "sphere": -0.75},
        ],
        "lenses_attributes": [
            {"eye_type": "OD", "coatings": ["UV Protection"], "index": 1.6},
            {"eye_type": "OS", "coatings": ["UV Protection"], "index": 1.6},
        ],
        "frame_attributes": {"brand": "Carrera", "frame_cost": 120},
    }


# ── Tests: health / routing ──────────────────────────────────────────

def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "healthy"


def test_unknown_endpoint_is_json_404(client):
    resp = client.get(f"{API}/nope")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Endpoint not found"


# ── Tests: sessions ──────────────────────────────────────────────────

def test_sign_in_returns_token_and_header(client, api_user):
    user, _ = api_user("sales@example.com")
    resp = sign_in(client, "sales@example.com")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["data"]["user"]["id"] == user.id
    assert "password_hash" not in body["data"]["user"]
    assert resp.headers["Authorization"] == f"Bearer {body['data']['token']}"


def test_sign_in_failures_are_indistinguishable(client, api_user, caplog):
    api_user("sales@example.com")
    with caplog.at_level(logging.WARNING, logger="optica.audit"):
        wrong_pw = sign_in(client, "sales@example.com", "bad-password")
        unknown = sign_in(client, "nobody@example.com")
    assert wrong_pw.status_code == unknown.status_code == 401
    assert wrong_pw.get_json() == unknown.get_json() == {"error": "Invalid email or password"}
    assert caplog.text.count("failed_login") == 2


def test_protected_endpoint_requires_token(client):
    assert client.get(f"{API}/patients").status_code == 401
    resp = client.get(f"{API}/patients", headers={"Authorization": "Token abc"})
    assert resp.status_code == 401
    assert client.get(f"{API}/patients", headers=bearer("garbage")).status_code == 401


@pytest.mark.parametrize("headers", [{}, bearer("garbage"), {"Authorization": "Basic abc"}])
def test_authentication_checked_before_existence_or_ownership(client, api_user, headers):
    owner, owner_headers = api_user("owner@example.com")
    pid = new_patient(client, owner_headers)["id"]
    rx = client.post(f"{API}/patients/{pid}/prescriptions",
                     json={"prescription": {}}, headers=owner_headers).get_json()

    for method, path in [
        ("get", f"{API}/patients/9999"),
        ("get", f"{API}/patients/{pid}"),
        ("delete", f"{API}/patients/{pid}"),
        ("get", f"{API}/prescriptions/9999"),
        ("get", f"{API}/prescriptions/{rx['id']}"),
        ("patch", f"{API}/prescriptions/{rx['id']}"),
        ("delete", f"{API}/users/{owner.id}"),
        ("delete", f"{API}/users/9999"),
    ]:
        resp = getattr(client, method)(path, headers=headers, json={})
        assert resp.status_code == 401, (method, path)

    assert client.get(f"{API}/prescriptions/{rx['id']}", headers=owner_headers).status_code == 200


def test_sign_out_revokes_token(client, api_user):
    api_user("sales@example.com")
    token = sign_in(client, "sales@example.com").get_json()["data"]["token"]
    headers = bearer(token)
    assert client.get(f"{API}/current_user", headers=headers).status_code == 200

    assert client.delete(f"{API}/users/sign_out", headers=headers).status_code == 200

    resp = client.get(f"{API}/current_user", headers=headers)
    assert resp.status_code == 401
    assert sign_in(client, "sales@example.com").status_code == 200


def test_signup_disabled_in_admin_only_mode(client):
    resp = client.post(f"{API}/users/signup",
                       json={"user": {"email": "me@example.com", "password": PASSWORD}})
    assert resp.status_code == 403


def test_signup_in_open_mode():
    app = create_app(db_uri="sqlite://", registration_mode="open", secret_key=SECRET)
    client = app.test_client()
    resp = client.post(f"{API}/users/signup", json={"user": {
        "email": "me@example.com", "password": PASSWORD, "password_confirmation": PASSWORD,
    }})
    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["user"]["role"] == "sales"
    assert client.get(f"{API}/current_user", headers=bearer(data["token"])).status_code == 200


# ── Tests: user management ───────────────────────────────────────────

def test_sales_cannot_manage_users(client, api_user):
    _, headers = api_user("sales@example.com")
    assert client.get(f"{API}/users", headers=headers).status_code == 403
    resp = client.post(f"{API}/users", headers=headers,
                       json={"user": {"email": "x@example.com", "password": PASSWORD}})
    assert resp.status_code == 403


def test_admin_creates_and_lists_users(client, api_user):
    _, headers = api_user("admin@example.com", role="admin")
    resp = client.post(f"{API}/users", headers=headers,
                       json={"user": {"email": "new@example.com", "password": PASSWORD}})
    assert resp.status_code == 201
    assert resp.get_json()["data"]["user"]["role"] == "sales"

    dup = client.post(f"{API}/users", headers=headers,
                      json={"user": {"email": "NEW@example.com", "password": PASSWORD}})
    assert dup.status_code == 422
    assert dup.get_json() == {"errors": ["Email already exists"]}

    bad_role = client.post(f"{API}/users", headers=headers,
                           json={"user": {"email": "r@example.com", "password": PASSWORD, "role": "root"}})
    assert bad_role.status_code == 400

    listed = client.get(f"{API}/users?role=sales", headers=headers).get_json()["users"]
    assert [u["email"] for u in listed] == ["new@example.com"]


def test_admin_updates_user(client, api_user):
    _, headers = api_user("admin@example.com", role="admin")
    user, _ = api_user("sales@example.com")
    resp = client.patch(f"{API}/users/{user.id}", headers=headers, json={"user": {"role": "admin"}})
    assert resp.status_code == 200
    assert resp.get_json()["data"]["user"]["role"] == "admin"
    assert client.get(f"{API}/users/9999", headers=headers).status_code == 404


def test_admin_cannot_delete_self(client, api_user):
    admin, headers = api_user("admin@example.com", role="admin")
    resp = client.delete(f"{API}/users/{admin.id}", headers=headers)
    assert resp.status_code == 403
    assert client.get(f"{API}/current_user", headers=headers).status_code == 200


def test_deleting_user_cascades_to_patients_and_tokens(client, api_user):
    _, admin_headers = api_user("admin@example.com", role="admin")
    sales, sales_headers = api_user("sales@example.com")
    patient = new_patient(client, sales_headers)
    client.post(f"{API}/patients/{patient['id']}/prescriptions",
                json={"prescription": full_prescription()}, headers=sales_headers)

    resp = client.delete(f"{API}/users/{sales.id}", headers=admin_headers)
    assert resp.status_code == 200

    assert client.get(f"{API}/current_user", headers=sales_headers).status_code == 401
    # the DNI is free again, so the patient row is gone
    _, newcomer = api_user("newcomer@example.com")
    new_patient(client, newcomer, dni=patient["dni"])


@pytest.mark.parametrize("user, message", [
    ({"email": "x@example.com", "password": 12345678}, "Password must be at least 6 characters"),
    ({"email": 42, "password": PASSWORD}, "Invalid email format"),
    ({"email": ["x@example.com"], "password": PASSWORD}, "Invalid email format"),
])
def test_create_user_rejects_non_string_credentials(client, api_user, user, message):
    _, headers = api_user("admin@example.com", role="admin")
    resp = client.post(f"{API}/users", headers=headers, json={"user": user})
    assert resp.status_code == 400
    assert resp.get_json() == {"error": message}


def test_non_string_credentials_on_update_reset_and_signup(client, api_user):
    _, headers = api_user("admin@example.com", role="admin")
    sales, _ = api_user("sales@example.com")

    resp = client.put(f"{API}/users/{sales.id}", headers=headers, json={"user": {"email": 42}})
    assert resp.status_code == 400

    resp = client.post(f"{API}/users/{sales.id}/reset-password", headers=headers,
                       json={"user": {"password": 1234567}})
    assert resp.status_code == 400
    assert sign_in(client, "sales@example.com").status_code == 200

    open_app = create_app(db_uri="sqlite://", registration_mode="open", secret_key=SECRET)
    resp = open_app.test_client().post(f"{API}/users/signup",
                                       json={"user": {"email": "me@example.com", "password": 12345678}})
    assert resp.status_code == 400


def test_reset_password(client, api_user):
    _, admin_headers = api_user("admin@example.com", role="admin")
    sales, sales_headers = api_user("sales@example.com")

    resp = client.post(f"{API}/users/{sales.id}/reset-password", headers=admin_headers)
    assert resp.status_code == 200
    temporary = resp.get_json()["data"]["temporary_password"]

    assert client.get(f"{API}/current_user", headers=sales_headers).status_code == 401
    assert sign_in(client, "sales@example.com").status_code == 401
    assert sign_in(client, "sales@example.com", temporary).status_code == 200

    chosen = client.post(f"{API}/users/{sales.id}/reset-password", headers=admin_headers,
                         json={"user": {"password": "picked-by-admin"}})
    assert "temporary_password" not in chosen.get_json()["data"]
    assert sign_in(client, "sales@example.com", "picked-by-admin").status_code == 200


# ── Tests: patients ──────────────────────────────────────────────────

def test_patient_crud(client, api_user):
    _, headers = api_user("sales@example.com")
    created = new_patient(client, headers)
    pid = created["id"]
    assert created["full_name"] == "Ana García"
    assert created["active"] is True

    resp = client.put(f"{API}/patients/{pid}", json={"patient": {"city": "Bilbao"}}, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["city"] == "Bilbao"

    assert client.get(f"{API}/patients/{pid}", headers=headers).status_code == 200
    assert client.delete(f"{API}/patients/{pid}", headers=headers).status_code == 204
    assert client.get(f"{API}/patients/{pid}", headers=headers).status_code == 404


def test_patient_validation_errors(client, api_user):
    _, headers = api_user("sales@example.com")
    resp = client.post(f"{API}/patients", json={"patient": {"first_name": "Ana"}}, headers=headers)
    assert resp.status_code == 422
    errors = resp.get_json()["errors"]
    assert "Last name can't be blank" in errors
    assert "DNI can't be blank" in errors

    new_patient(client, headers)
    dup = client.post(f"{API}/patients", json={"patient": patient_attrs()}, headers=headers)
    assert dup.status_code == 422
    assert dup.get_json()["errors"] == ["DNI has already been taken"]


def test_patients_are_private_to_owner(client, api_user):
    _, u1 = api_user("u1@example.com")
    _, u2 = api_user("u2@example.com")
    pid = new_patient(client, u1)["id"]

    assert client.get(f"{API}/patients/{pid}", headers=u2).status_code == 403
    assert client.patch(f"{API}/patients/{pid}", json={"patient": {"city": "X"}}, headers=u2).status_code == 403
    assert client.delete(f"{API}/patients/{pid}", headers=u2).status_code == 403
    assert client.get(f"{API}/patients/{pid}/prescriptions", headers=u2).status_code == 403
    assert client.get(f"{API}/patients", headers=u2).get_json()["patients"] == []
    assert client.get(f"{API}/patients/{pid}", headers=u1).status_code == 200


def test_patient_search_and_listing(client, api_user):
    _, headers = api_user("sales@example.com")
    new_patient(client, headers, first_name="Berta", dni="10000001")
    new_patient(client, headers, first_name="Carlos", dni="10000002", city="Toledo")

    everyone = client.get(f"{API}/patients?search=", headers=headers).get_json()
    assert everyone["pagination"]["total_count"] == 2
    assert everyone["filters"]["cities"] == ["Madrid", "Toledo"]

    none = client.get(f"{API}/patients?search=zzz", headers=headers)
    assert none.status_code == 200
    assert none.get_json()["patients"] == []

    desc = client.get(f"{API}/patients?sort=name_desc", headers=headers).get_json()
    assert [p["first_name"] for p in desc["patients"]] == ["Carlos", "Berta"]

    toledo = client.get(f"{API}/patients?city=Toledo", headers=headers).get_json()
    assert [p["first_name"] for p in toledo["patients"]] == ["Carlos"]


def test_toggle_status_twice_is_identity(client, api_user):
    _, headers = api_user("sales@example.com")
    pid = new_patient(client, headers)["id"]
    first = client.post(f"{API}/patients/{pid}/toggle_status", headers=headers).get_json()
    second = client.post(f"{API}/patients/{pid}/toggle_status", headers=headers).get_json()
    assert first["active"] is False
    assert second["active"] is True


def test_dashboard(client, api_user):
    _, headers = api_user("sales@example.com")
    pid = new_patient(client, headers)["id"]
    client.post(f"{API}/patients/{pid}/prescriptions", json={"prescription": {}}, headers=headers)

    stats = client.get(f"{API}/dashboard", headers=headers).get_json()["dashboard"]
    assert stats["total_patients"] == 1
    assert stats["active_patients"] == 1
    assert stats["total_prescriptions"] == 1
    assert stats["recent_patients"][0]["id"] == pid


# ── Tests: prescriptions ─────────────────────────────────────────────

def test_prescription_round_trip(client, api_user):
    _, headers = api_user("sales@example.com")
    pid = new_patient(client, headers)["id"]

    resp = client.post(f"{API}/patients/{pid}/prescriptions",
                       json={"prescription": full_prescription()}, headers=headers)
    assert resp.status_code == 201
    created = resp.get_json()
    assert created["balance_due"] == 350.0
    assert created["status"] == "pending"

    fetched = client.get(f"{API}/prescriptions/{created['id']}", headers=headers).get_json()
    assert [e["eye_type"] for e in fetched["prescription_eyes"]] == ["OD", "OS"]
    assert fetched["prescription_eyes"][0]["axis"] == 180
    assert [lens["coatings"] for lens in fetched["lenses"]] == [["UV Protection"], ["UV Protection"]]
    assert fetched["lenses"][0]["index"] == 1.6
    assert fetched["frame"]["brand"] == "Carrera"
    assert fetched["patient"]["id"] == pid

    listed = client.get(f"{API}/patients/{pid}/prescriptions", headers=headers).get_json()
    assert [p["id"] for p in listed] == [created["id"]]


def test_prescription_nested_update_and_delete(client, api_user):
    _, headers = api_user("sales@example.com")
    pid = new_patient(client, headers)["id"]
    created = client.post(f"{API}/patients/{pid}/prescriptions",
                          json={"prescription": full_prescription()}, headers=headers).get_json()
    od_lens, os_lens = created["lenses"]

    resp = client.patch(f"{API}/prescriptions/{created['id']}", headers=headers, json={"prescription": {
        "status": "delivered",
        "lenses_attributes": [
            {"id": od_lens["id"], "_destroy": True},
            {"id": os_lens["id"], "coatings": ["UV Protection", "Hydrophobic"]},
        ],
    }})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "delivered"
    assert [lens["id"] for lens in body["lenses"]] == [os_lens["id"]]
    assert body["lenses"][0]["coatings"] == ["UV Protection", "Hydrophobic"]

    assert client.delete(f"{API}/prescriptions/{created['id']}", headers=headers).status_code == 204
    assert client.get(f"{API}/prescriptions/{created['id']}", headers=headers).status_code == 404


@pytest.mark.parametrize("payload", [
    {"total_cost": "NaN"},
    {"deposit_paid": "Infinity"},
    {"prescription_eyes_attributes": [{"eye_type": "OD", "sphere": "sNaN"}]},
    {"prescription_eyes_attributes": [{"eye_type": "OD", "axis": "NaN"}]},
    {"frame_attributes": {"frame_cost": "-Infinity"}},
])
def test_non_finite_numbers_are_validation_errors(client, api_user, payload):
    _, headers = api_user("sales@example.com")
    pid = new_patient(client, headers)["id"]
    resp = client.post(f"{API}/patients/{pid}/prescriptions",
                       json={"prescription": payload}, headers=headers)
    assert resp.status_code == 422
    assert any("is not a" in msg for msg in resp.get_json()["errors"])


def test_prescription_validation_is_atomic(client, api_user):
    _, headers = api_user("sales@example.com")
    pid = new_patient(client, headers)["id"]
    payload = full_prescription()
    payload["lenses_attributes"].append({"eye_type": "Both"})

    resp = client.post(f"{API}/patients/{pid}/prescriptions",
                       json={"prescription": payload}, headers=headers)
    assert resp.status_code == 422
    assert client.get(f"{API}/patients/{pid}/prescriptions", headers=headers).get_json() == []


def test_prescriptions_private_to_patient_owner(client, api_user):
    _, u1 = api_user("u1@example.com")
    _, u2 = api_user("u2@example.com")
    pid = new_patient(client, u1)["id"]
    rx = client.post(f"{API}/patients/{pid}/prescriptions",
                     json={"prescription": {"order_number": "ORD-7"}}, headers=u1).get_json()

    assert client.get(f"{API}/prescriptions/{rx['id']}", headers=u2).status_code == 403
    assert client.delete(f"{API}/prescriptions/{rx['id']}", headers=u2).status_code == 403
    assert client.post(f"{API}/patients/{pid}/prescriptions",
                       json={"prescription": {}}, headers=u2).status_code == 403
    assert client.get(f"{API}/prescriptions/all", headers=u2).get_json()["prescriptions"] == []

    dup = client.post(f"{API}/patients/{pid}/prescriptions",
                      json={"prescription": {"order_number": "ORD-7"}}, headers=u1)
    assert dup.status_code == 422


def test_deleting_patient_removes_prescriptions(client, api_user):
    _, headers = api_user("sales@example.com")
    pid = new_patient(client, headers)["id"]
    rx = client.post(f"{API}/patients/{pid}/prescriptions",
                     json={"prescription": full_prescription()}, headers=headers).get_json()

    assert client.delete(f"{API}/patients/{pid}", headers=headers).status_code == 204
    assert client.get(f"{API}/prescriptions/{rx['id']}", headers=headers).status_code == 404


def test_prescriptions_all_and_search(client, api_user):
    _, headers = api_user("sales@example.com")
    pid = new_patient(client, headers)["id"]
    for _ in range(3):
        client.post(f"{API}/patients/{pid}/prescriptions", json={"prescription": {}}, headers=headers)

    page = client.get(f"{API}/prescriptions/all?per_page=2&page=2", headers=headers).get_json()
    assert len(page["prescriptions"]) == 1
    assert page["pagination"]["total_count"] == 3

    found = client.get(f"{API}/prescriptions/search?q=garc", headers=headers).get_json()["results"]
    assert found[0]["display_name"] == "Ana García (DNI: 12345678)"
    assert client.get(f"{API}/prescriptions/search?q=", headers=headers).get_json()["results"] == []


@pytest.mark.parametrize("body", ["not json", "[1, 2]"])
def test_non_object_body_is_bad_request(client, api_user, body):
    _, headers = api_user("sales@example.com")
    resp = client.post(f"{API}/patients", data=body, headers=headers, content_type="application/json")
    assert resp.status_code == 400
