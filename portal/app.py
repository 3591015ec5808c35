# portal/app.py
from flask import Flask, jsonify, request, session

# --- Standard libs & typing ---
import logging
import os
from functools import wraps
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv

# safer filename + big-file error handling
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.utils import secure_filename

# --- Paths + .env (before storage reads PARTYMENU_DB) ---
ROOT = Path(__file__).resolve().parents[1]
load_dotenv(ROOT / ".env")

from storage import categories as categories_store
from storage import events as events_store
from storage import menu_import
from storage import menu_items as items_store
from storage import orders as orders_store
from storage.auth import RequestContext
from storage.errors import (
    ImportFailed,
    InconsistentState,
    InvalidHierarchy,
    MenuError,
    NotFound,
    OrderingClosed,
    ParseError,
    SchemaInvalid,
    TextExtractionError,
    Unauthorized,
)
from storage.revalidate import register_stale_handler

from portal.routes_core import core_bp

# ------------------------
# Logging
# ------------------------
logging.basicConfig(
    level=os.getenv("PARTYMENU_LOG_LEVEL") or "INFO",
    format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("portal")

# ------------------------
# App & Config
# ------------------------
app = Flask(__name__)

app.config["SECRET_KEY"] = os.getenv("PARTYMENU_SECRET_KEY") or "dev-secret-change-me"
app.config["MAX_CONTENT_LENGTH"] = int(os.getenv("MAX_CONTENT_LENGTH") or 20 * 1024 * 1024)  # ~20 MB

DEV_USERNAME = os.getenv("PARTYMENU_DEV_USER") or "admin"
DEV_PASSWORD = os.getenv("PARTYMENU_DEV_PASSWORD") or "letmein"

app.register_blueprint(core_bp)

# Allowed upload types for menu import
ALLOWED_EXTENSIONS = {"json", "txt", "tsv", "tab", "pdf"}


def allowed_file(filename: str) -> bool:
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_EXTENSIONS


# ------------------------
# Stale-menu signal (views re-read the DB on every request)
# ------------------------
def _log_stale_menu(event_id: int, reason: str) -> None:
    log.info("Menu views for event %s are stale (%s)", event_id, reason)


register_stale_handler(_log_stale_menu)


# ------------------------
# Auth helpers
# ------------------------
def _ctx() -> RequestContext:
    user = session.get("user") or {}
    return RequestContext(user_id=user.get("username"))


def login_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        if not session.get("user"):
            return jsonify({"ok": False, "error": "Login required"}), 401
        return view_func(*args, **kwargs)
    return wrapper


def _json_body() -> Any:
    payload = request.get_json(silent=True)
    if payload is None:
        raise ParseError("Request body must be valid JSON")
    return payload


def _json_object() -> Dict[str, Any]:
    payload = _json_body()
    if not isinstance(payload, dict):
        raise ParseError("Request body must be a JSON object")
    return payload


def _public_event(event: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: v for k, v in event.items() if k != "menu_json"}
    out["has_menu_json"] = bool(event.get("menu_json"))
    return out


# ------------------------
# Error mapping
# ------------------------
_STATUS_BY_ERROR = (
    (Unauthorized, 403),
    (NotFound, 404),
    (InvalidHierarchy, 409),
    (InconsistentState, 409),
    (OrderingClosed, 409),
    (TextExtractionError, 422),
    (SchemaInvalid, 400),
    (ParseError, 400),
)


@app.errorhandler(MenuError)
def handle_menu_error(err: MenuError):
    if isinstance(err, ImportFailed):
        log.error("Operation failed: %r (cause: %r)", err, err.cause)
        return jsonify({"ok": False, "error": "operation failed", "error_type": err.error_type}), 500

    status = 400
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(err, cls):
            status = code
            break
    body = {"ok": False, "error": err.message}
    body.update(err.to_dict())
    return jsonify(body), status


@app.errorhandler(RequestEntityTooLarge)
def handle_too_large(_err):
    return jsonify({"ok": False, "error": "File too large. Try a smaller file or raise MAX_CONTENT_LENGTH."}), 413


@app.errorhandler(500)
def handle_server_error(err):
    log.error("Unhandled server error: %r", getattr(err, "original_exception", err))
    return jsonify({"ok": False, "error": "operation failed"}), 500


# ------------------------
# Login (dev)
# ------------------------
@app.post("/login")
def login_post():
    data = request.get_json(silent=True) or request.form
    username = (data.get("username") or "").strip()
    password = (data.get("password") or "").strip()
    if username == DEV_USERNAME and password == DEV_PASSWORD:
        session["user"] = {"username": username, "role": "admin"}
        return jsonify({"ok": True, "user": username})
    log.warning("Failed login for %r", username)
    return jsonify({"ok": False, "error": "Invalid credentials"}), 401


@app.post("/logout")
def logout():
    session.clear()
    return jsonify({"ok": True})


# ======================================================================
# Events
# ======================================================================
@app.get("/api/events")
@login_required
def api_list_events():
    return jsonify({"ok": True, "events": events_store.list_events(_ctx())})


@app.post("/api/events")
@login_required
def api_create_event():
    data = _json_object()
    event = events_store.create_event(
        _ctx(),
        data.get("title") or "",
        restaurant_name=data.get("restaurantName"),
    )
    return jsonify({"ok": True, "event": _public_event(event)}), 201


@app.get("/api/events/<int:event_id>")
@login_required
def api_get_event(event_id: int):
    event = events_store.require_event_owner(_ctx(), event_id)
    return jsonify({"ok": True, "event": _public_event(event)})


@app.patch("/api/events/<int:event_id>")
@login_required
def api_update_event_settings(event_id: int):
    event = events_store.update_event_settings(_ctx(), event_id, _json_object())
    return jsonify({"ok": True, "event": _public_event(event)})


@app.post("/api/events/<int:event_id>/status")
@login_required
def api_update_event_status(event_id: int):
    status = _json_object().get("status")
    event = events_store.update_event_status(_ctx(), event_id, status)
    return jsonify({"ok": True, "event": _public_event(event)})


@app.delete("/api/events/<int:event_id>")
@login_required
def api_delete_event(event_id: int):
    counts = events_store.delete_event(_ctx(), event_id)
    return jsonify({"ok": True, "deleted": counts})


# ======================================================================
# Guest orders
# ======================================================================
@app.post("/e/<slug>/orders")
def guest_submit_order(slug: str):
    """Public: guests are not logged in."""
    order = orders_store.submit_guest_order(slug, _json_object())
    return jsonify({"ok": True, "order": order}), 201


@app.get("/api/events/<int:event_id>/orders")
@login_required
def api_list_orders(event_id: int):
    return jsonify({"ok": True, "orders": orders_store.list_guest_orders(_ctx(), event_id)})


@app.delete("/api/orders/<int:order_id>")
@login_required
def api_delete_order(order_id: int):
    orders_store.delete_guest_order(_ctx(), order_id)
    return jsonify({"ok": True})


# ======================================================================
# Menu import / snapshot / export
# ======================================================================
def _import_response(result: menu_import.ImportResult):
    return jsonify(result.to_dict()), (200 if result.ok else 400)


@app.post("/api/events/<int:event_id>/menu/import")
@login_required
def api_import_menu(event_id: int):
    """Wipe + replace the event's menu from a JSON document body."""
    return _import_response(menu_import.import_menu_document(_ctx(), event_id, _json_body()))


@app.post("/api/events/<int:event_id>/menu/import/text")
@login_required
def api_import_menu_text(event_id: int):
    """Tab-delimited lines, either as {"text": ...} JSON or a text/plain body."""
    if request.is_json:
        text = (_json_object().get("text") or "")
    else:
        text = request.get_data(as_text=True) or ""
    return _import_response(menu_import.import_menu_text(_ctx(), event_id, text))


@app.post("/api/events/<int:event_id>/menu/import/upload")
@login_required
def api_import_menu_upload(event_id: int):
    if "file" not in request.files:
        return jsonify({"ok": False, "error": "No file field 'file' provided"}), 400
    file = request.files["file"]
    if not file.filename:
        return jsonify({"ok": False, "error": "Empty filename"}), 400
    if not allowed_file(file.filename):
        return jsonify({"ok": False, "error": "Unsupported file type. Allowed: json, txt, tsv, pdf"}), 400

    filename = secure_filename(file.filename) or "upload"
    result = menu_import.import_upload(_ctx(), event_id, file.read(), filename)
    return _import_response(result)


@app.get("/api/events/<int:event_id>/menu/json")
@login_required
def api_get_menu_json(event_id: int):
    events_store.require_event_owner(_ctx(), event_id)
    return jsonify({"ok": True, "menu": events_store.get_menu_json(event_id)})


@app.put("/api/events/<int:event_id>/menu/json")
@login_required
def api_save_menu_json(event_id: int):
    doc = events_store.save_menu_json(_ctx(), event_id, _json_body())
    return jsonify({"ok": True, "menu": doc})


@app.get("/api/events/<int:event_id>/menu/export")
@login_required
def api_export_menu(event_id: int):
    events_store.require_event_owner(_ctx(), event_id)
    return jsonify({"ok": True, "menu": events_store.export_menu_document(event_id)})


# ======================================================================
# Categories
# ======================================================================
@app.get("/api/events/<int:event_id>/categories")
@login_required
def api_list_categories(event_id: int):
    events_store.require_event_owner(_ctx(), event_id)
    return jsonify({"ok": True, "categories": categories_store.list_categories(event_id)})


@app.post("/api/events/<int:event_id>/categories")
@login_required
def api_create_category(event_id: int):
    data = _json_object()
    category = categories_store.create_category(
        _ctx(),
        event_id,
        data.get("name") or "",
        parent_id=data.get("parentId"),
        type=data.get("type") or "FOOD",
        sort=data.get("sort"),
    )
    return jsonify({"ok": True, "category": category}), 201


@app.patch("/api/categories/<int:category_id>")
@login_required
def api_update_category(category_id: int):
    data = _json_object()
    fields = {}
    for key, arg in (("name", "name"), ("parentId", "parent_id"), ("sort", "sort"), ("isHidden", "is_hidden")):
        if key in data:
            fields[arg] = data[key]
    category = categories_store.update_category(_ctx(), category_id, **fields)
    return jsonify({"ok": True, "category": category})


@app.delete("/api/categories/<int:category_id>")
@login_required
def api_delete_category(category_id: int):
    mode = request.args.get("mode") or categories_store.DELETE_PRESERVE
    summary = categories_store.delete_category(_ctx(), category_id, mode=mode)
    return jsonify({"ok": True, **summary})


# ======================================================================
# Menu items
# ======================================================================
@app.get("/api/events/<int:event_id>/items")
@login_required
def api_list_items(event_id: int):
    events_store.require_event_owner(_ctx(), event_id)
    return jsonify({"ok": True, "items": items_store.list_menu_items(event_id)})


@app.post("/api/events/<int:event_id>/items")
@login_required
def api_add_item(event_id: int):
    item = items_store.add_menu_item(_ctx(), event_id, _json_object())
    return jsonify({"ok": True, "item": item}), 201


@app.delete("/api/events/<int:event_id>/items")
@login_required
def api_delete_all_items(event_id: int):
    counts = items_store.delete_all_menu_items(_ctx(), event_id)
    return jsonify({"ok": True, "deleted": counts})


@app.patch("/api/items/<int:item_id>")
@login_required
def api_update_item(item_id: int):
    item = items_store.update_menu_item(_ctx(), item_id, _json_object())
    return jsonify({"ok": True, "item": item})


@app.delete("/api/items/<int:item_id>")
@login_required
def api_delete_item(item_id: int):
    items_store.delete_menu_item(_ctx(), item_id)
    return jsonify({"ok": True})


if __name__ == "__main__":
    app.run(debug=os.getenv("FLASK_DEBUG") == "1", port=int(os.getenv("PORT") or 5000))
