"""
Flask JSON API (portal/app.py + portal/routes_core.py).

Covers:
  Core:
  - /health, /db/health counts
  - login ok / bad credentials, logout
  - login required -> 401

  Events:
  - create 201, empty title 400, list, get other user's event 403, missing 404

  Menu import:
  - JSON import ok with counts
  - schema errors -> 400 with issues
  - dangling categoryId -> 400 CATEGORY_LINK
  - non-JSON body -> 400 PARSE
  - store failure -> 500 with generic message only
  - text import (JSON body and text/plain)
  - upload .json / .tsv, unsupported type, missing file field

  Snapshot + export:
  - GET /menu/json, PUT /menu/json valid + invalid
  - GET /menu/export

  Categories:
  - list, create, rename relabels items, invalid hierarchy 409,
    delete ?mode=wipe, unknown mode 400

  Items:
  - create, list, patch, delete, delete-all

  Event lifecycle + guest orders:
  - PATCH settings, POST status, DELETE event
  - guest order without login 201, LOCKED 409, invalid 400, unknown slug 404
  - owner lists and deletes orders, other user 403

  Error mapping:
  - NaN in a JSON body -> 400 SCHEMA issue
  - bad sort / unknown delete mode -> 400 SCHEMA
  - unexpected ValueError -> generic 500
"""

from __future__ import annotations

import io
import json
import sqlite3
import pytest
from typing import Optional

from storage.db import apply_schema


# ---------------------------------------------------------------------------
# In-memory DB helpers
# ---------------------------------------------------------------------------
_TEST_CONN: Optional[sqlite3.Connection] = None


def _make_test_db() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    apply_schema(conn)
    return conn


def _patch_db(monkeypatch):
    global _TEST_CONN
    _TEST_CONN = _make_test_db()
    import storage.events as events_mod
    import storage.categories as categories_mod
    import storage.menu_items as items_mod
    import storage.menu_import as import_mod
    import storage.orders as orders_mod
    import portal.routes_core as core_mod

    def mock_connect():
        return _TEST_CONN

    for mod in (events_mod, categories_mod, items_mod, import_mod, orders_mod, core_mod):
        monkeypatch.setattr(mod, "db_connect", mock_connect)
    return _TEST_CONN


@pytest.fixture(autouse=True)
def fresh_db(monkeypatch):
    conn = _patch_db(monkeypatch)
    yield conn
    global _TEST_CONN
    _TEST_CONN = None


# ---------------------------------------------------------------------------
# Flask test client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture()
def client(fresh_db):
    from portal.app import app
    app.config["TESTING"] = True
    app.config["SECRET_KEY"] = "test-secret"
    with app.test_client() as c:
        yield c


def _login_as(c, username):
    with c.session_transaction() as sess:
        sess["user"] = {"username": username, "role": "admin"}


@pytest.fixture()
def alice(client):
    _login_as(client, "alice")
    return client


DOC = {
    "restaurant": "Taj Mahal",
    "categories": [
        {"id": "mains", "name": "Mains", "sort": 0},
        {"id": "drinks", "name": "Drinks", "sort": 1, "type": "DRINK"},
    ],
    "items": [
        {"code": "101", "name": "Butter Chicken", "categoryId": "mains", "price": 14.5},
        {"code": "D1", "name": "Lassi", "categoryId": "drinks", "price": 4},
    ],
    "bundles": [{"code": "B1", "name": "Dinner", "price": 20, "lines": ["2x Butter Chicken"]}],
}


def _new_event(c, title="Summer Party") -> int:
    resp = c.post("/api/events", json={"title": title})
    assert resp.status_code == 201
    return resp.get_json()["event"]["id"]


def _import(c, eid, doc=DOC):
    return c.post(f"/api/events/{eid}/menu/import", json=doc)


# ===========================================================================
# SECTION 1: Core + auth
# ===========================================================================

class TestCore:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ok"

    def test_db_health(self, alice):
        eid = _new_event(alice)
        _import(alice, eid)
        data = alice.get("/db/health").get_json()
        assert data == {"ok": True, "events": 1, "categories": 2, "menu_items": 2, "bundles": 1}

    def test_login_required(self, client):
        resp = client.get("/api/events")
        assert resp.status_code == 401
        assert resp.get_json()["ok"] is False

    def test_login_and_logout(self, client, monkeypatch):
        import portal.app as app_mod
        monkeypatch.setattr(app_mod, "DEV_USERNAME", "alice")
        monkeypatch.setattr(app_mod, "DEV_PASSWORD", "pw")

        assert client.post("/login", json={"username": "alice", "password": "nope"}).status_code == 401
        resp = client.post("/login", json={"username": "alice", "password": "pw"})
        assert resp.status_code == 200
        assert client.get("/").get_json()["user"] == "alice"
        assert client.get("/api/events").status_code == 200

        client.post("/logout")
        assert client.get("/api/events").status_code == 401


# ===========================================================================
# SECTION 2: Events
# ===========================================================================

class TestEventsApi:

    def test_create_and_list(self, alice):
        resp = alice.post("/api/events", json={"title": "Summer Party", "restaurantName": "Taj"})
        assert resp.status_code == 201
        event = resp.get_json()["event"]
        assert event["restaurant_name"] == "Taj"
        assert event["has_menu_json"] is False
        assert "menu_json" not in event

        events = alice.get("/api/events").get_json()["events"]
        assert [e["title"] for e in events] == ["Summer Party"]

    def test_empty_title(self, alice):
        resp = alice.post("/api/events", json={"title": ""})
        assert resp.status_code == 400
        assert resp.get_json()["error_type"] == "SCHEMA"

    def test_other_users_event(self, alice):
        eid = _new_event(alice)
        _login_as(alice, "bob")
        assert alice.get(f"/api/events/{eid}").status_code == 403
        assert _import(alice, eid).status_code == 403

    def test_missing_event(self, alice):
        resp = alice.get("/api/events/999")
        assert resp.status_code == 404
        assert resp.get_json()["error_type"] == "NOT_FOUND"


# ===========================================================================
# SECTION 3: Menu import
# ===========================================================================

class TestImportApi:

    def test_import_ok(self, alice):
        eid = _new_event(alice)
        resp = _import(alice, eid)
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["ok"] is True
        assert body["counts"]["items"] == 2
        assert body["counts"]["bundle_lines"] == 1

    def test_schema_errors(self, alice):
        eid = _new_event(alice)
        resp = _import(alice, eid, {"items": [{"code": "1"}]})
        assert resp.status_code == 400
        body = resp.get_json()
        assert body["error_type"] == "SCHEMA"
        assert {tuple(i["path"]) for i in body["issues"]} == {
            ("items", 0, "name"), ("items", 0, "categoryId"),
        }

    def test_category_link(self, alice):
        eid = _new_event(alice)
        doc = dict(DOC, items=[{"code": "1", "name": "Ghost", "categoryId": "nope"}])
        body = _import(alice, eid, doc).get_json()
        assert body["error_type"] == "CATEGORY_LINK"
        assert body["category_id"] == "nope"

    def test_not_json(self, alice):
        eid = _new_event(alice)
        resp = alice.post(f"/api/events/{eid}/menu/import", data="{oops", content_type="application/json")
        assert resp.status_code == 400
        assert resp.get_json()["error_type"] == "PARSE"

    def test_store_failure_is_generic(self, alice, monkeypatch):
        import storage.menu_import as menu_import
        eid = _new_event(alice)

        def boom(conn, event_id, doc, now):
            raise sqlite3.OperationalError("database is locked: /secret/path.db")

        monkeypatch.setattr(menu_import, "_create_bundles", boom)
        resp = _import(alice, eid)
        assert resp.status_code == 500
        body = resp.get_json()
        assert body["error"] == "operation failed"
        assert "secret" not in json.dumps(body)

    def test_text_import_json_body(self, alice):
        eid = _new_event(alice)
        resp = alice.post(f"/api/events/{eid}/menu/import/text",
                          json={"text": "101\tButter Chicken\t14.50\tMains\n102\tNaan"})
        assert resp.status_code == 200
        assert resp.get_json()["counts"]["items"] == 2

    def test_text_import_plain_body(self, alice):
        eid = _new_event(alice)
        resp = alice.post(f"/api/events/{eid}/menu/import/text",
                          data="1\tTea\t2", content_type="text/plain")
        assert resp.status_code == 200

    def test_text_import_no_items(self, alice):
        eid = _new_event(alice)
        resp = alice.post(f"/api/events/{eid}/menu/import/text", json={"text": "junk"})
        assert resp.status_code == 400
        assert resp.get_json()["error_type"] == "NO_VALID_ITEMS"

    def test_upload_json(self, alice):
        eid = _new_event(alice)
        data = {"file": (io.BytesIO(json.dumps(DOC).encode()), "menu.json")}
        resp = alice.post(f"/api/events/{eid}/menu/import/upload", data=data,
                          content_type="multipart/form-data")
        assert resp.status_code == 200
        assert resp.get_json()["counts"]["categories"] == 2

    def test_upload_tsv(self, alice):
        eid = _new_event(alice)
        data = {"file": (io.BytesIO(b"1\tTea\t2\tDrinks"), "menu.tsv")}
        resp = alice.post(f"/api/events/{eid}/menu/import/upload", data=data,
                          content_type="multipart/form-data")
        assert resp.status_code == 200

    def test_upload_unsupported(self, alice):
        eid = _new_event(alice)
        data = {"file": (io.BytesIO(b"a,b"), "menu.csv")}
        resp = alice.post(f"/api/events/{eid}/menu/import/upload", data=data,
                          content_type="multipart/form-data")
        assert resp.status_code == 400

    def test_upload_missing_file(self, alice):
        eid = _new_event(alice)
        resp = alice.post(f"/api/events/{eid}/menu/import/upload", data={},
                          content_type="multipart/form-data")
        assert resp.status_code == 400


# ===========================================================================
# SECTION 4: Snapshot + export
# ===========================================================================

class TestSnapshotApi:

    def test_menu_json_after_import(self, alice):
        eid = _new_event(alice)
        _import(alice, eid)
        menu = alice.get(f"/api/events/{eid}/menu/json").get_json()["menu"]
        assert menu["restaurant"] == "Taj Mahal"
        assert menu["currency"] == "EUR"

    def test_put_menu_json(self, alice):
        eid = _new_event(alice)
        resp = alice.put(f"/api/events/{eid}/menu/json", json=DOC)
        assert resp.status_code == 200
        assert alice.get(f"/api/events/{eid}").get_json()["event"]["has_menu_json"] is True

    def test_put_menu_json_invalid(self, alice):
        eid = _new_event(alice)
        resp = alice.put(f"/api/events/{eid}/menu/json", json={"categories": [{"id": 1}]})
        assert resp.status_code == 400
        assert len(resp.get_json()["issues"]) == 2

    def test_export(self, alice):
        eid = _new_event(alice)
        _import(alice, eid)
        menu = alice.get(f"/api/events/{eid}/menu/export").get_json()["menu"]
        assert [c["id"] for c in menu["categories"]] == ["mains", "drinks"]
        assert menu["bundles"][0]["lines"] == ["2x Butter Chicken"]


# ===========================================================================
# SECTION 5: Categories
# ===========================================================================

class TestCategoriesApi:

    def test_list_and_create(self, alice):
        eid = _new_event(alice)
        _import(alice, eid)
        mains = alice.get(f"/api/events/{eid}/categories").get_json()["categories"][0]
        resp = alice.post(f"/api/events/{eid}/categories",
                          json={"name": "Curries", "parentId": mains["id"]})
        assert resp.status_code == 201
        assert resp.get_json()["category"]["parent_id"] == mains["id"]

    def test_rename_relabels_items(self, alice):
        eid = _new_event(alice)
        _import(alice, eid)
        mains = alice.get(f"/api/events/{eid}/categories").get_json()["categories"][0]
        resp = alice.patch(f"/api/categories/{mains['id']}", json={"name": "Main Courses"})
        assert resp.status_code == 200
        items = alice.get(f"/api/events/{eid}/items").get_json()["items"]
        assert items[0]["category"] == "Main Courses"

    def test_invalid_hierarchy(self, alice):
        eid = _new_event(alice)
        cat = alice.post(f"/api/events/{eid}/categories", json={"name": "Solo"}).get_json()["category"]
        resp = alice.patch(f"/api/categories/{cat['id']}", json={"parentId": cat["id"]})
        assert resp.status_code == 409
        assert resp.get_json()["error_type"] == "INVALID_HIERARCHY"

    def test_delete_wipe(self, alice):
        eid = _new_event(alice)
        _import(alice, eid)
        drinks = alice.get(f"/api/events/{eid}/categories").get_json()["categories"][1]
        resp = alice.delete(f"/api/categories/{drinks['id']}?mode=wipe")
        assert resp.status_code == 200
        assert resp.get_json()["items_deleted"] == 1
        assert len(alice.get(f"/api/events/{eid}/items").get_json()["items"]) == 1

    def test_delete_preserve_default(self, alice):
        eid = _new_event(alice)
        _import(alice, eid)
        drinks = alice.get(f"/api/events/{eid}/categories").get_json()["categories"][1]
        body = alice.delete(f"/api/categories/{drinks['id']}").get_json()
        assert body["mode"] == "preserve"
        assert body["items_moved"] == 1

    def test_delete_unknown_mode(self, alice):
        eid = _new_event(alice)
        cat = alice.post(f"/api/events/{eid}/categories", json={"name": "Solo"}).get_json()["category"]
        assert alice.delete(f"/api/categories/{cat['id']}?mode=shred").status_code == 400

    def test_delete_missing(self, alice):
        assert alice.delete("/api/categories/999").status_code == 404


# ===========================================================================
# SECTION 6: Items
# ===========================================================================

class TestItemsApi:

    def test_item_lifecycle(self, alice):
        eid = _new_event(alice)
        resp = alice.post(f"/api/events/{eid}/items",
                          json={"name": "Samosa", "category": "Starters", "price": "4.50"})
        assert resp.status_code == 201
        item = resp.get_json()["item"]
        assert item["price"] == 4.5

        resp = alice.patch(f"/api/items/{item['id']}", json={"price": 5})
        assert resp.get_json()["item"]["price_cents"] == 500

        assert alice.delete(f"/api/items/{item['id']}").status_code == 200
        assert alice.get(f"/api/events/{eid}/items").get_json()["items"] == []

    def test_item_validation(self, alice):
        eid = _new_event(alice)
        assert alice.post(f"/api/events/{eid}/items", json={"name": ""}).status_code == 400

    def test_delete_all(self, alice):
        eid = _new_event(alice)
        _import(alice, eid)
        body = alice.delete(f"/api/events/{eid}/items").get_json()
        assert body["deleted"]["items"] == 2
        assert alice.get(f"/api/events/{eid}/categories").get_json()["categories"] == []


# ===========================================================================
# SECTION 7: Event lifecycle + guest orders
# ===========================================================================

ORDER = {
    "guestName": "Priya",
    "items": [{"codeSnapshot": "101", "nameSnapshot": "Butter Chicken", "qty": 2,
               "priceSnapshot": 14.5, "spiceLevel": 1}],
}


def _logout(c):
    with c.session_transaction() as sess:
        sess.clear()


class TestEventLifecycleApi:

    def test_settings(self, alice):
        eid = _new_event(alice)
        resp = alice.patch(f"/api/events/{eid}", json={"title": "Winter Party", "spiceScale": "INDIAN"})
        assert resp.status_code == 200
        event = resp.get_json()["event"]
        assert (event["title"], event["spice_scale"]) == ("Winter Party", "INDIAN")

        resp = alice.patch(f"/api/events/{eid}", json={"showPrices": "no"})
        assert resp.status_code == 400
        assert resp.get_json()["issues"][0]["path"] == ["showPrices"]

    def test_status(self, alice):
        eid = _new_event(alice)
        resp = alice.post(f"/api/events/{eid}/status", json={"status": "PUBLISHED"})
        assert resp.get_json()["event"]["status"] == "PUBLISHED"
        assert alice.post(f"/api/events/{eid}/status", json={"status": "DONE"}).status_code == 400

    def test_delete(self, alice):
        eid = _new_event(alice)
        _import(alice, eid)
        resp = alice.delete(f"/api/events/{eid}")
        assert resp.status_code == 200
        assert resp.get_json()["deleted"]["items"] == 2
        assert alice.get(f"/api/events/{eid}").status_code == 404


class TestGuestOrdersApi:

    def _published(self, c):
        resp = c.post("/api/events", json={"title": "Summer Party"})
        event = resp.get_json()["event"]
        c.post(f"/api/events/{event['id']}/status", json={"status": "PUBLISHED"})
        return event

    def test_guest_submits_without_login(self, alice):
        event = self._published(alice)
        _logout(alice)
        resp = alice.post(f"/e/{event['slug']}/orders", json=ORDER)
        assert resp.status_code == 201
        order = resp.get_json()["order"]
        assert order["guest_name"] == "Priya"
        assert order["items"][0]["price"] == 14.5

    def test_locked_event(self, alice):
        event = self._published(alice)
        alice.post(f"/api/events/{event['id']}/status", json={"status": "LOCKED"})
        resp = alice.post(f"/e/{event['slug']}/orders", json=ORDER)
        assert resp.status_code == 409
        assert resp.get_json()["error_type"] == "ORDERING_CLOSED"

    def test_invalid_order(self, alice):
        event = self._published(alice)
        resp = alice.post(f"/e/{event['slug']}/orders", json={"guestName": "", "items": []})
        assert resp.status_code == 400
        assert resp.get_json()["error_type"] == "SCHEMA"

    def test_unknown_slug(self, client):
        assert client.post("/e/nope/orders", json=ORDER).status_code == 404

    def test_admin_list_and_delete(self, alice):
        event = self._published(alice)
        alice.post(f"/e/{event['slug']}/orders", json=ORDER)
        orders = alice.get(f"/api/events/{event['id']}/orders").get_json()["orders"]
        assert [o["guest_name"] for o in orders] == ["Priya"]

        _login_as(alice, "bob")
        assert alice.delete(f"/api/orders/{orders[0]['id']}").status_code == 403
        _login_as(alice, "alice")
        assert alice.delete(f"/api/orders/{orders[0]['id']}").status_code == 200
        assert alice.get(f"/api/events/{event['id']}/orders").get_json()["orders"] == []


# ===========================================================================
# SECTION 8: Bad numbers + unexpected errors
# ===========================================================================

class TestErrorMappingApi:

    def test_nan_in_json_body(self, alice):
        eid = _new_event(alice)
        body = ('{"categories": [{"id": "m", "name": "M"}], '
                '"items": [{"code": "1", "name": "Dal", "categoryId": "m", "price": NaN}]}')
        resp = alice.post(f"/api/events/{eid}/menu/import", data=body, content_type="application/json")
        assert resp.status_code == 400
        payload = resp.get_json()
        assert payload["error_type"] == "SCHEMA"
        assert payload["issues"] == [{"path": ["items", 0, "price"], "message": "Expected number, received nan"}]

    def test_bad_category_sort(self, alice):
        eid = _new_event(alice)
        resp = alice.post(f"/api/events/{eid}/categories", json={"name": "Curries", "sort": "first"})
        assert resp.status_code == 400
        assert resp.get_json()["error_type"] == "SCHEMA"

    def test_unknown_mode_is_schema_error(self, alice):
        eid = _new_event(alice)
        cat = alice.post(f"/api/events/{eid}/categories", json={"name": "Solo"}).get_json()["category"]
        body = alice.delete(f"/api/categories/{cat['id']}?mode=shred").get_json()
        assert body["error_type"] == "SCHEMA"
        assert body["issues"][0]["path"] == ["mode"]

    def test_unexpected_value_error_is_generic_500(self, alice, monkeypatch):
        import storage.events as events_mod
        from portal.app import app

        def broken(ctx):
            raise ValueError("internal detail /secret/path")

        monkeypatch.setattr(events_mod, "list_events", broken)
        monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)
        resp = alice.get("/api/events")
        assert resp.status_code == 500
        assert resp.get_json() == {"ok": False, "error": "operation failed"}
