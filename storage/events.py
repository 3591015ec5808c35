# storage/events.py: events, ownership, menu snapshot + export
from __future__ import annotations

import json
import logging
import re
import secrets
import sqlite3
from typing import Any, Dict, List, Optional

from .auth import RequestContext
from .contracts import SPICE_SCALES, cents_to_price, validate_menu_document
from .db import _now, _row_to_dict, db_connect
from .errors import NotFound, SchemaInvalid, Unauthorized
from .parsers.bundle_lines import BundleLine, format_bundle_line
from .revalidate import mark_menu_stale

log = logging.getLogger(__name__)

EVENT_STATUSES = ("DRAFT", "PUBLISHED", "LOCKED")

# settings key -> (column, rule)
_SETTINGS = {
    "title": ("title", "required"),
    "restaurantName": ("restaurant_name", "optional"),
    "showPrices": ("show_prices", "bool"),
    "spiceScale": ("spice_scale", "spice"),
    "pdfHeaderTitle": ("pdf_header_title", "required"),
    "pdfReportTitle": ("pdf_report_title", "required"),
    "pdfRestaurantLabel": ("pdf_restaurant_label", "required"),
    "pdfSectionTitle": ("pdf_section_title", "required"),
    "pdfAddress": ("pdf_address", "optional"),
    "vipName": ("vip_name", "optional"),
    "vipMessage": ("vip_message", "optional"),
}


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------
def slugify(text: str) -> str:
    """'Summer Party 2026' -> 'summer-party-2026'."""
    text = (text or "").strip().lower()
    text = re.sub(r"[^a-z0-9]+", "-", text)
    return re.sub(r"-+", "-", text).strip("-")


def _load_owned_event(conn: sqlite3.Connection, ctx: RequestContext, event_id: int) -> Dict[str, Any]:
    """Fetch the event row and check that ctx's user owns it."""
    user_id = ctx.require_user()
    row = conn.execute("SELECT * FROM events WHERE id=?", (int(event_id),)).fetchone()
    if not row:
        raise NotFound(f"Event {event_id} not found")
    if row["owner"] != user_id:
        log.warning("User %s denied access to event %s", user_id, event_id)
        raise Unauthorized()
    return _row_to_dict(row)


# ====================================================================
# Event CRUD
# ====================================================================

def create_event(
    ctx: RequestContext,
    title: str,
    *,
    restaurant_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Create an event owned by ctx's user. Returns the full event dict."""
    owner = ctx.require_user()
    title = (title or "").strip()
    if not title:
        raise SchemaInvalid([{"path": ["title"], "message": "Title is required"}])

    slug = f"{slugify(title) or 'event'}-{secrets.token_hex(3)[:5]}"
    now = _now()
    with db_connect() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO events (owner, slug, title, restaurant_name, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (owner, slug, title, restaurant_name or None, now, now),
        )
        event_id = int(cur.lastrowid)
        event = _row_to_dict(conn.execute("SELECT * FROM events WHERE id=?", (event_id,)).fetchone())
        conn.commit()
    log.info("Created event %s (%s) for %s", event_id, slug, owner)
    return event


def get_event(event_id: int) -> Optional[Dict[str, Any]]:
    """Get a single event by id. Returns None if not found."""
    with db_connect() as conn:
        row = conn.execute("SELECT * FROM events WHERE id=?", (int(event_id),)).fetchone()
        return _row_to_dict(row) if row else None


def list_events(ctx: RequestContext) -> List[Dict[str, Any]]:
    """Events owned by ctx's user, newest first."""
    owner = ctx.require_user()
    with db_connect() as conn:
        rows = conn.execute(
            "SELECT id, owner, slug, title, restaurant_name, status, created_at, updated_at "
            "FROM events WHERE owner=? ORDER BY created_at DESC, id DESC",
            (owner,),
        ).fetchall()
        return [_row_to_dict(r) for r in rows]


def require_event_owner(ctx: RequestContext, event_id: int) -> Dict[str, Any]:
    """Raise NotFound / Unauthorized unless ctx's user owns event_id."""
    with db_connect() as conn:
        return _load_owned_event(conn, ctx, event_id)


def get_event_by_slug(slug: str) -> Optional[Dict[str, Any]]:
    with db_connect() as conn:
        row = conn.execute("SELECT * FROM events WHERE slug=?", (slug,)).fetchone()
        return _row_to_dict(row) if row else None


# ====================================================================
# Lifecycle: status, settings, delete
# ====================================================================

def update_event_status(ctx: RequestContext, event_id: int, status: str) -> Dict[str, Any]:
    """DRAFT -> PUBLISHED -> LOCKED, in any order. LOCKED refuses guest orders."""
    with db_connect() as conn:
        _load_owned_event(conn, ctx, event_id)
        if status not in EVENT_STATUSES:
            raise SchemaInvalid([{
                "path": ["status"],
                "message": "Invalid enum value. Expected 'DRAFT' | 'PUBLISHED' | 'LOCKED', "
                           f"received '{status}'",
            }])
        conn.execute(
            "UPDATE events SET status=?, updated_at=? WHERE id=?",
            (status, _now(), int(event_id)),
        )
        event = _row_to_dict(conn.execute("SELECT * FROM events WHERE id=?", (int(event_id),)).fetchone())
        conn.commit()
    log.info("Event %s is now %s", event_id, status)
    mark_menu_stale(event_id, "event_status")
    return event


def _setting_value(key: str, rule: str, value: Any, issues: List[Dict[str, Any]]) -> Any:
    if rule == "bool":
        if not isinstance(value, bool):
            issues.append({"path": [key], "message": "Expected boolean"})
        return 1 if value else 0
    if rule == "spice":
        if value not in SPICE_SCALES:
            issues.append({
                "path": [key],
                "message": f"Invalid enum value. Expected 'GERMAN' | 'INDIAN', received '{value}'",
            })
        return value
    if value is not None and not isinstance(value, str):
        issues.append({"path": [key], "message": "Expected string"})
        return None
    cleaned = (value or "").strip()
    if rule == "required" and not cleaned:
        issues.append({"path": [key], "message": "Required"})
    return cleaned or None


def update_event_settings(ctx: RequestContext, event_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Update the settings present in `data` (camelCase keys, see _SETTINGS).
    Unknown keys are ignored; every invalid value is reported at once.
    """
    with db_connect() as conn:
        event = _load_owned_event(conn, ctx, event_id)

        issues: List[Dict[str, Any]] = []
        sets: List[str] = []
        args: List[Any] = []
        for key, (col, rule) in _SETTINGS.items():
            if key in data:
                sets.append(f"{col}=?")
                args.append(_setting_value(key, rule, data[key], issues))
        if issues:
            raise SchemaInvalid(issues)
        if not sets:
            return event

        sets.append("updated_at=?")
        args.append(_now())
        args.append(int(event_id))
        conn.execute(f"UPDATE events SET {', '.join(sets)} WHERE id=?", args)
        event = _row_to_dict(conn.execute("SELECT * FROM events WHERE id=?", (int(event_id),)).fetchone())
        conn.commit()

    mark_menu_stale(event_id, "event_settings")
    return event


def delete_event(ctx: RequestContext, event_id: int) -> Dict[str, int]:
    """Delete the event with its whole menu and every guest order."""
    from .menu_items import wipe_event_menu

    with db_connect() as conn:
        _load_owned_event(conn, ctx, event_id)
        counts = wipe_event_menu(conn, event_id)
        counts["order_items"] = conn.execute(
            "DELETE FROM order_items WHERE order_id IN (SELECT id FROM guest_orders WHERE event_id=?)",
            (int(event_id),),
        ).rowcount
        counts["orders"] = conn.execute(
            "DELETE FROM guest_orders WHERE event_id=?", (int(event_id),)
        ).rowcount
        conn.execute("DELETE FROM events WHERE id=?", (int(event_id),))
        conn.commit()
    log.info("Deleted event %s: %s", event_id, counts)
    mark_menu_stale(event_id, "event_deleted")
    return counts


# ====================================================================
# Menu JSON snapshot
# ====================================================================

def save_menu_json(ctx: RequestContext, event_id: int, payload: Any) -> Dict[str, Any]:
    """
    Validate and store a document as the event's snapshot without rebuilding
    any categories/items. Raises SchemaInvalid with every issue.
    """
    ok, doc, issues = validate_menu_document(payload)
    with db_connect() as conn:
        _load_owned_event(conn, ctx, event_id)
        if not ok:
            raise SchemaInvalid(issues)
        conn.execute(
            "UPDATE events SET menu_json=?, updated_at=? WHERE id=?",
            (json.dumps(doc, ensure_ascii=False), _now(), int(event_id)),
        )
        conn.commit()
    mark_menu_stale(event_id, "menu_json")
    return doc


def get_menu_json(event_id: int) -> Optional[Dict[str, Any]]:
    """The last validated document stored for the event, or None."""
    event = get_event(event_id)
    if not event or not event.get("menu_json"):
        return None
    try:
        return json.loads(event["menu_json"])
    except ValueError:
        log.error("Event %s has an unreadable menu_json snapshot", event_id)
        return None


# ====================================================================
# Export: persisted rows -> interchange document
# ====================================================================

def _unique_keys(categories: List[Dict[str, Any]]) -> Dict[int, str]:
    """Category row id -> document id; duplicate keys get the row id appended."""
    out: Dict[int, str] = {}
    used: set = set()
    for c in categories:
        key = c["key"] or slugify(c["name"]) or str(c["id"])
        if key in used:
            key = f"{key}-{c['id']}"
        used.add(key)
        out[c["id"]] = key
    return out


def export_menu_document(event_id: int) -> Dict[str, Any]:
    """
    Rebuild an interchange document from what is currently persisted for
    the event (including admin edits made after the last import).
    """
    with db_connect() as conn:
        event = conn.execute("SELECT * FROM events WHERE id=?", (int(event_id),)).fetchone()
        if not event:
            raise NotFound(f"Event {event_id} not found")

        snapshot: Dict[str, Any] = {}
        if event["menu_json"]:
            try:
                snapshot = json.loads(event["menu_json"])
            except ValueError:
                snapshot = {}

        categories = [
            _row_to_dict(r) for r in conn.execute(
                "SELECT * FROM categories WHERE event_id=? ORDER BY sort ASC, id ASC",
                (int(event_id),),
            ).fetchall()
        ]
        keys = _unique_keys(categories)

        items = conn.execute(
            "SELECT * FROM menu_items WHERE event_id=? ORDER BY sort_order ASC, id ASC",
            (int(event_id),),
        ).fetchall()

        images: Dict[int, List[str]] = {}
        for r in conn.execute(
            """
            SELECT img.item_id, img.url FROM menu_item_images img
            JOIN menu_items i ON i.id = img.item_id
            WHERE i.event_id=? ORDER BY img.item_id, img.sort ASC, img.id ASC
            """,
            (int(event_id),),
        ).fetchall():
            images.setdefault(r["item_id"], []).append(r["url"])

        options: Dict[int, List[Dict[str, Any]]] = {}
        for r in conn.execute(
            """
            SELECT o.* FROM menu_item_options o
            JOIN menu_items i ON i.id = o.item_id
            WHERE i.event_id=? ORDER BY o.item_id, o.position ASC, o.id ASC
            """,
            (int(event_id),),
        ).fetchall():
            options.setdefault(r["item_id"], []).append({
                "label": r["label"],
                "metaQty": r["meta_qty"],
                "price": cents_to_price(r["price_cents"]),
            })

        bundles = conn.execute(
            "SELECT * FROM bundles WHERE event_id=? ORDER BY sort_order ASC, id ASC",
            (int(event_id),),
        ).fetchall()
        lines: Dict[int, List[str]] = {}
        for r in conn.execute(
            """
            SELECT l.* FROM bundle_lines l
            JOIN bundles b ON b.id = l.bundle_id
            WHERE b.event_id=? ORDER BY l.bundle_id, l.position ASC, l.id ASC
            """,
            (int(event_id),),
        ).fetchall():
            lines.setdefault(r["bundle_id"], []).append(
                format_bundle_line(BundleLine(label=r["label"], qty=r["qty"], note=r["note"]))
            )

    return {
        "restaurant": event["restaurant_name"],
        "sourcePdf": snapshot.get("sourcePdf"),
        "currency": snapshot.get("currency") or "EUR",
        "categories": [
            {"id": keys[c["id"]], "name": c["name"], "sort": c["sort"], "type": c["type"]}
            for c in categories
        ],
        "items": [
            {
                "code": it["code"],
                "name": it["name"],
                "description": it["description"],
                "categoryId": keys.get(it["category_id"]),
                "subCategory": it["sub_category"],
                "price": cents_to_price(it["price_cents"]),
                "diet": {"veg": bool(it["is_veg"]), "vegan": bool(it["is_vegan"])},
                "images": images.get(it["id"], []),
                "tags": json.loads(it["tags_json"] or "[]"),
                "options": options.get(it["id"], []),
            }
            for it in items
        ],
        "bundles": [
            {
                "code": b["code"],
                "name": b["name"],
                "description": b["description"],
                "price": cents_to_price(b["price_cents"]),
                "images": json.loads(b["images_json"] or "[]"),
                "lines": lines.get(b["id"], []),
            }
            for b in bundles
        ],
    }
