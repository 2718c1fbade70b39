import re

from fastapi.testclient import TestClient

from main import app, limiter


def test_root(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json() == {"message": "CivicConnect API running"}


def test_database_probe(client):
    resp = client.get("/test")
    assert resp.json()["database"] == "connected"


def test_citizen_journey(client, admin, auth, outbox, location):
    resp = client.post("/auth/send-otp", json={"email": "maria@example.com"})
    assert resp.status_code == 200
    assert resp.json()["expires_in"] == 600
    code = re.search(r"\b(\d{6})\b", outbox.to("maria@example.com")[0].text).group(1)

    resp = client.post("/auth/verify-otp", json={
        "name": "Maria Lopez", "email": "maria@example.com", "password": "secret123", "otp": code,
    })
    assert resp.status_code == 201
    token = resp.json()["token"]
    headers = {"Authorization": f"Bearer {token}"}
    assert resp.json()["user"]["is_email_verified"] is True
    assert [m.subject for m in outbox.to("maria@example.com")][-1] == "Welcome to CivicConnect!"

    me = client.get("/auth/me", headers=headers).json()
    assert me["email"] == "maria@example.com"
    assert client.get("/me", headers=headers).json()["id"] == me["id"]

    resp = client.post("/reports", headers=headers, json={
        "title": "Pothole on Main St",
        "description": "Deep pothole in the right lane",
        "category": "pothole",
        "location": location,
    })
    assert resp.status_code == 201
    report = resp.json()["report"]
    assert report["report_id"] == "RC-0001"
    assert report["status"] == "pending"

    listing = client.get("/reports").json()
    assert listing["pagination"]["total"] == 1

    voted = client.post(f"/reports/{report['id']}/vote", headers=headers).json()
    assert voted["votes"] == {"count": 1, "has_voted": True}

    resp = client.put(f"/admin/reports/{report['id']}/status", headers=auth(admin),
                      json={"status": "resolved", "comment": "Filled in"})
    assert resp.status_code == 200
    updated = resp.json()["report"]
    assert updated["status"] == "resolved"
    assert updated["actual_resolution"] is not None
    assert updated["comments"][0]["content"] == "Status updated to: resolved"
    assert outbox.to("maria@example.com")[-1].subject == "Report Update: RC-0001 - Pothole on Main St"

    detail = client.get(f"/reports/{report['id']}", headers=headers).json()["report"]
    assert len(detail["comments"]) == 2
    assert detail["votes"]["has_voted"] is True

    resp = client.post("/admin/analytics/generate", headers=auth(admin), json={})
    assert resp.status_code == 200
    assert resp.json()["analytics"]["metrics"]["reports"]["by_status"]["resolved"] == 1
    history = client.get("/admin/analytics", headers=auth(admin)).json()["analytics"]
    assert len(history) == 1


def test_wrong_code_is_rejected(client, outbox):
    client.post("/auth/send-otp", json={"email": "maria@example.com"})
    code = re.search(r"\b(\d{6})\b", outbox.sent[0].text).group(1)
    wrong = "000000" if code != "000000" else "111111"
    resp = client.post("/auth/verify-otp", json={
        "name": "Maria Lopez", "email": "maria@example.com", "password": "secret123", "otp": wrong,
    })
    assert resp.status_code == 400
    assert resp.json() == {"detail": "Invalid OTP"}


def test_send_otp_to_registered_email(client, citizen):
    resp = client.post("/auth/send-otp", json={"email": "jane@example.com"})
    assert resp.status_code == 409
    assert resp.json() == {"detail": "User already exists with this email"}


def test_login(client, citizen):
    resp = client.post("/auth/login", json={"email": "jane@example.com", "password": "secret123"})
    assert resp.status_code == 200
    assert resp.json()["user"]["email"] == "jane@example.com"

    resp = client.post("/auth/login", json={"email": "jane@example.com", "password": "wrong"})
    assert resp.status_code == 401
    assert resp.json() == {"detail": "Invalid email or password"}


def test_password_reset_flow(client, citizen, outbox):
    resp = client.post("/auth/forgot-password", json={"email": "jane@example.com"})
    assert resp.status_code == 200
    token = re.search(r"token=(\S+)", outbox.to("jane@example.com")[-1].text).group(1)

    assert client.put("/auth/reset-password", json={"token": token, "password": "brandnew1"}).status_code == 200
    assert client.put("/auth/reset-password", json={"token": token, "password": "brandnew2"}).status_code == 400
    resp = client.post("/auth/login", json={"email": "jane@example.com", "password": "brandnew1"})
    assert resp.status_code == 200


def test_forgot_password_for_unknown_email(client, outbox):
    resp = client.post("/auth/forgot-password", json={"email": "ghost@example.com"})
    assert resp.status_code == 200
    assert outbox.sent == []


def test_authentication_required(client):
    resp = client.get("/auth/me")
    assert resp.status_code == 401
    assert resp.json() == {"detail": "Not authenticated"}
    resp = client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


def test_deactivated_account_is_locked_out(client, citizen, auth):
    headers = auth(citizen)
    assert client.delete("/auth/account", headers=headers).status_code == 200
    assert client.get("/auth/me", headers=headers).status_code == 403


def test_admin_routes_require_admin(client, citizen, admin, auth):
    assert client.get("/admin/dashboard", headers=auth(citizen)).status_code == 403
    resp = client.get("/admin/dashboard", headers=auth(admin))
    assert resp.status_code == 200
    assert resp.json()["users"]["total"] == 2


def test_citizen_cannot_triage_own_report(client, citizen, auth, location):
    headers = auth(citizen)
    report = client.post("/reports", headers=headers, json={
        "title": "Graffiti", "description": "Tagged wall", "category": "graffiti", "location": location,
    }).json()["report"]
    resp = client.put(f"/reports/{report['id']}", headers=headers, json={"status": "resolved"})
    assert resp.status_code == 403
    resp = client.put(f"/reports/{report['id']}", headers=headers, json={"title": "Graffiti on bridge"})
    assert resp.json()["report"]["title"] == "Graffiti on bridge"


def test_invalid_report_id(client, citizen, auth):
    resp = client.get("/reports/not-an-id", headers=auth(citizen))
    assert resp.status_code == 400
    resp = client.get("/reports/" + "0" * 24, headers=auth(citizen))
    assert resp.status_code == 404


def test_messaging(client, citizen, admin, auth):
    resp = client.post("/messages/admin", headers=auth(citizen), json={"subject": "Hi", "content": "Question"})
    assert resp.status_code == 201
    message_id = resp.json()["message"]["id"]

    assert client.get("/messages/unread-count", headers=auth(admin)).json() == {"unread_count": 1}
    opened = client.get(f"/messages/{message_id}", headers=auth(admin)).json()["message"]
    assert opened["is_read"] is True
    assert opened["sender"]["email"] == "jane@example.com"

    resp = client.post(f"/messages/{message_id}/reply", headers=auth(admin), json={"content": "Answer"})
    assert resp.json()["message"]["subject"] == "Re: Hi"
    assert client.get("/messages/unread-count", headers=auth(citizen)).json() == {"unread_count": 1}


def test_auth_endpoints_are_rate_limited(client):
    limiter.reset()
    limiter.enabled = True
    body = {"email": "ghost@example.com", "password": "whatever"}
    for _ in range(5):
        assert client.post("/auth/login", json=body).status_code == 401

    resp = client.post("/auth/login", json=body)
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) > 0
    assert resp.json()["retry_after"] > 0


def test_non_digit_code_is_rejected(client):
    client.post("/auth/send-otp", json={"email": "maria@example.com"})
    resp = client.post("/auth/verify-otp", json={
        "name": "Maria Lopez", "email": "maria@example.com", "password": "secret123", "otp": "12345é",
    })
    assert resp.status_code == 422


def test_registration_survives_welcome_email_failure(client, outbox):
    client.post("/auth/send-otp", json={"email": "maria@example.com"})
    code = re.search(r"\b(\d{6})\b", outbox.sent[0].text).group(1)
    outbox.fail = True
    resp = client.post("/auth/verify-otp", json={
        "name": "Maria Lopez", "email": "maria@example.com", "password": "secret123", "otp": code,
    })
    assert resp.status_code == 201
    assert resp.json()["user"]["email"] == "maria@example.com"


def test_status_change_survives_notification_failure(client, citizen, admin, auth, outbox, location):
    report = client.post("/reports", headers=auth(citizen), json={
        "title": "Broken light", "description": "Dark corner", "category": "streetlight", "location": location,
    }).json()["report"]
    outbox.fail = True
    resp = client.put(f"/admin/reports/{report['id']}/status", headers=auth(admin), json={"status": "resolved"})
    assert resp.status_code == 200
    assert resp.json()["report"]["status"] == "resolved"
    assert client.get(f"/reports/{report['id']}").json()["report"]["status"] == "resolved"


def test_startup_creates_indexes(db):
    with TestClient(app) as started:
        assert started.get("/").status_code == 200
    assert "email_1" in db["user"].index_information()
    assert "expires_at_1" in db["otp"].index_information()


def test_contact_form(client, citizen, admin, auth, outbox):
    body = {"name": "Ana Park", "email": "ana@example.com", "subject": "Question about permits",
            "message": "How do I request a block party permit?"}
    resp = client.post("/contact", json=body)
    assert resp.status_code == 201
    contact_id = resp.json()["contact"]["id"]
    assert outbox.to("ana@example.com")[0].subject == "Thank you for contacting CivicConnect"

    assert client.get("/contact/admin", headers=auth(citizen)).status_code == 403
    listing = client.get("/admin/contacts", headers=auth(admin)).json()
    assert listing["pagination"]["total"] == 1
    assert client.get("/admin/dashboard", headers=auth(admin)).json()["contacts"] == {"total": 1, "unread": 1}

    resp = client.post(f"/admin/contacts/{contact_id}/respond", headers=auth(admin),
                       json={"content": "Use the events form on our website."})
    assert resp.status_code == 200
    assert resp.json()["contact"]["status"] == "responded"
    assert outbox.to("ana@example.com")[-1].subject == "Re: Question about permits"

    assert client.get("/contact/stats", headers=auth(admin)).json()["stats"]["responded"] == 1
    assert client.delete(f"/contact/{contact_id}", headers=auth(admin)).status_code == 200
    assert client.get(f"/contact/{contact_id}", headers=auth(admin)).status_code == 404


def test_contact_form_is_rate_limited(client):
    limiter.reset()
    limiter.enabled = True
    body = {"name": "Ana Park", "email": "ana@example.com", "subject": "Question about permits",
            "message": "How do I request a block party permit?"}
    for _ in range(3):
        assert client.post("/contact", json=body).status_code == 201
    assert client.post("/contact", json=body).status_code == 429
