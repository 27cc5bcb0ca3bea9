import logging

from conftest import USER_EMAIL, USER_PASSWORD, FakeResponse


def test_root_redirects_to_login(client):
    res = client.get("/")
    assert res.status_code == 302
    assert res.headers["Location"].endswith("/login")


def test_pages_require_login(client):
    for path in ("/dashboard", "/loads", "/add-load"):
        res = client.get(path)
        assert res.status_code == 302
        assert "/login" in res.headers["Location"]


def test_api_requires_login(client):
    res = client.get("/api/live")
    assert res.status_code == 401
    assert res.get_json() == {"success": False, "error": "Authentication required"}


def test_signup_logs_in_and_flashes(client):
    res = client.post("/signup", data={
        "email": "new@example.com",
        "password": "secret123",
        "confirm_password": "secret123",
    }, follow_redirects=True)

    assert res.status_code == 200
    assert b"Account created successfully" in res.data
    assert b"Energy Monitoring Dashboard" in res.data


def test_signup_error_is_shown(client):
    res = client.post("/signup", data={
        "email": "new@example.com",
        "password": "secret123",
        "confirm_password": "different",
    })
    assert res.status_code == 400
    assert b"Passwords do not match." in res.data


def test_login_and_logout(logged_in, client):
    client.get("/logout")
    assert client.get("/dashboard").status_code == 302

    res = client.post("/login", data={"email": USER_EMAIL, "password": USER_PASSWORD})
    assert res.status_code == 302
    assert res.headers["Location"].endswith("/dashboard")
    assert client.get("/dashboard").status_code == 200


def test_login_failure_message(logged_in, client):
    client.get("/logout")
    res = client.post("/login", data={"email": USER_EMAIL, "password": "wrong"})
    assert res.status_code == 401
    assert b"Incorrect email or password." in res.data


def test_login_page_redirects_signed_in_user(logged_in):
    res = logged_in.get("/login")
    assert res.status_code == 302
    assert res.headers["Location"].endswith("/dashboard")
    assert logged_in.get("/signup").status_code == 302


def test_add_load_form(logged_in, store, uid):
    res = logged_in.post("/add-load", data={"name": "Refrigerator", "field": "3"})
    assert res.status_code == 302

    loads = store.list_loads(uid)
    assert [(d["name"], d["field"], d["status"]) for d in loads] == [("Refrigerator", 3, "auto")]

    page = logged_in.get("/dashboard")
    assert b"Refrigerator" in page.data


def test_add_load_form_duplicate_field(logged_in, store, uid):
    store.add_load(uid, "Fridge", 3)
    res = logged_in.post("/add-load", data={"name": "Heater", "field": "3"})
    assert res.status_code == 409
    assert b"already mapped" in res.data


def test_loads_api_crud(logged_in):
    res = logged_in.post("/api/loads", json={"name": "Fridge", "field": 1})
    assert res.status_code == 201
    load_id = res.get_json()["load"]["id"]

    listing = logged_in.get("/api/loads").get_json()
    assert [load["name"] for load in listing["loads"]] == ["Fridge"]
    assert 1 not in listing["available_fields"]
    assert 4 not in listing["available_fields"]

    res = logged_in.put(f"/api/loads/{load_id}", json={"name": "Freezer"})
    assert res.get_json()["load"]["name"] == "Freezer"

    assert logged_in.put(f"/api/loads/{load_id}", json={}).status_code == 400

    assert logged_in.delete(f"/api/loads/{load_id}").status_code == 200
    assert logged_in.delete(f"/api/loads/{load_id}").status_code == 404


def test_loads_api_validation(logged_in):
    res = logged_in.post("/api/loads", json={"name": "Limit", "field": 4})
    assert res.status_code == 400
    assert "reserved" in res.get_json()["error"]

    logged_in.post("/api/loads", json={"name": "Fridge", "field": 2})
    res = logged_in.post("/api/loads", json={"name": "Other", "field": "2"})
    assert res.status_code == 409


def test_loads_page_lists_loads(logged_in, store, uid):
    store.add_load(uid, "Washer", 6)
    res = logged_in.get("/loads")
    assert res.status_code == 200
    assert b"Washer" in res.data


def test_live_maps_readings_onto_loads(logged_in, session, store, uid):
    store.add_load(uid, "Fridge", 3)
    store.add_load(uid, "Heater", 5)
    session.queue_feed()

    data = logged_in.get("/api/live").get_json()

    assert data["success"] is True
    assert data["telemetry"]["total_power"] == 460.0
    assert data["telemetry"]["permissible_limit"] == 1200.0
    by_name = {load["name"]: load for load in data["loads"]}
    assert by_name["Fridge"]["power"] == 345.0
    assert by_name["Heater"]["power"] == 115.0
    assert data["totals"]["power"] == 460.0

    # served from the poller's snapshot, no second request
    logged_in.get("/api/live")
    assert len(session.calls) == 1


def test_live_reports_feed_failure(logged_in, session):
    session.queue(FakeResponse(status_code=503))
    res = logged_in.get("/api/live")
    assert res.status_code == 502
    assert res.get_json()["success"] is False


def test_update_limit(logged_in, session):
    session.queue(FakeResponse(text="77"))
    res = logged_in.post("/api/limit", json={"limit": 1500})

    assert res.status_code == 200
    assert res.get_json() == {"success": True, "limit": 1500.0, "field": 4, "entry_id": 77}
    assert session.calls[0][1]["field4"] == "1500"


def test_update_limit_validation(logged_in, session):
    assert logged_in.post("/api/limit", json={"limit": -3}).status_code == 400
    assert logged_in.post("/api/limit", json={}).status_code == 400
    assert session.calls == []


def test_update_limit_rejected(logged_in, session):
    session.queue(FakeResponse(text="0"))
    res = logged_in.post("/api/limit", json={"limit": 900})
    assert res.status_code == 502


def test_command_endpoint(logged_in, store, uid, controller):
    load = store.add_load(uid, "Fridge", 3)

    res = logged_in.post(f"/api/loads/{load['_id']}/command", json={"command": "on"})
    assert res.status_code == 200
    assert res.get_json()["load"]["status"] == "on"
    assert controller.sent == [(3, "on")]

    assert logged_in.post(f"/api/loads/{load['_id']}/command", json={"command": "blink"}).status_code == 400
    assert logged_in.post("/api/loads/missing/command", json={"command": "on"}).status_code == 404

    controller.fail = True
    res = logged_in.post(f"/api/loads/{load['_id']}/command", json={"command": "off"})
    assert res.status_code == 502
    assert store.get_load(uid, load["_id"])["status"] == "on"


def test_health_json(client):
    res = client.get("/health/json")
    data = res.get_json()

    assert res.status_code == 200
    assert data["status"] in ("healthy", "degraded")
    assert data["controller"] == "fake"
    assert data["telemetry"]["poll_count"] == 0


def test_api_rejects_non_object_bodies(logged_in, store, uid):
    load = store.add_load(uid, "Fridge", 3)

    for method, path in (
        ("post", "/api/loads"),
        ("put", f"/api/loads/{load['_id']}"),
        ("post", "/api/limit"),
        ("post", f"/api/loads/{load['_id']}/command"),
    ):
        res = getattr(logged_in, method)(path, json=["Fridge", 3])
        assert res.status_code == 400
        assert res.get_json() == {"success": False, "error": "Request body must be a JSON object"}

    assert logged_in.post("/api/loads", json="Fridge").status_code == 400


def test_unexpected_api_error_is_logged_json_500(logged_in, store, uid, controller, caplog):
    load = store.add_load(uid, "Fridge", 3)

    def explode(field_no, command):
        raise RuntimeError("relay board on fire")

    controller.send = explode
    with caplog.at_level(logging.ERROR):
        res = logged_in.post(f"/api/loads/{load['_id']}/command", json={"command": "on"})

    assert res.status_code == 500
    assert res.get_json() == {"success": False, "error": "Internal server error"}
    assert "relay board on fire" in caplog.text


def test_unknown_page_is_still_404(client):
    assert client.get("/no-such-page").status_code == 404


def test_live_serves_cached_snapshot(app, logged_in, session):
    session.queue_feed()
    poller = app.extensions["powerpal"]["poller"]
    assert poller.poll_once() is not None
    assert len(session.calls) == 1

    for _ in range(3):
        data = logged_in.get("/api/live").get_json()
        assert data["telemetry"]["entry_id"] == 42

    assert len(session.calls) == 1


def test_main_starts_poller_once(monkeypatch, store):
    import runpy
    from flask import Flask

    from powerpal import config, mongodb
    from powerpal.telemetry import TelemetryPoller

    started = []
    ran = []
    monkeypatch.setattr(TelemetryPoller, "start", lambda self: started.append(self))
    monkeypatch.setattr(Flask, "run", lambda self, **kwargs: ran.append(kwargs))
    monkeypatch.setattr(mongodb, "LoadStore", lambda **kwargs: store)
    monkeypatch.setattr(config, "LOG_FILE", "")

    runpy.run_module("powerpal.dashboard_app", run_name="__main__")

    assert len(started) == 1
    assert ran and ran[0]["use_reloader"] is False


def test_dashboard_syncs_limit_input_from_feed(logged_in):
    page = logged_in.get("/dashboard").data
    assert b"limitSynced" in page
    assert b"document.getElementById('limit').value = t.permissible_limit" in page
