# storage/menu_items.py: single-item admin edits + full wipe
from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from .auth import RequestContext
from .categories import _get_category_row, category_labels
from .contracts import cents_to_price, coerce_int, number_problem, price_to_cents
from .db import _now, _row_to_dict, db_connect
from .errors import NotFound, SchemaInvalid
from .events import _load_owned_event, slugify
from .revalidate import mark_menu_stale

log = logging.getLogger(__name__)

DEFAULT_CATEGORY = "General"

# data key -> column, for the plain scalar fields an admin may edit
_EDITABLE_TEXT = {"code": "code", "name": "name", "description": "description"}
_EDITABLE_FLAGS = {"isVeg": "is_veg", "isVegan": "is_vegan", "isHidden": "is_hidden", "isDrink": "is_drink"}


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------
def _coerce_price_cents(raw: Any) -> Optional[int]:
    """'14.50' / 14.5 -> 1450; '' / None -> None; junk -> SchemaInvalid."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    if isinstance(raw, bool):
        raise SchemaInvalid([{"path": ["price"], "message": "Expected number, received boolean"}])
    try:
        value = float(str(raw).replace(",", ".").strip())
    except ValueError:
        raise SchemaInvalid([{"path": ["price"], "message": f"Invalid price {raw!r}"}])
    problem = number_problem(value, price=True)
    if problem:
        raise SchemaInvalid([{"path": ["price"], "message": problem}])
    return price_to_cents(value)


def _coerce_tags(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [t.strip() for t in raw.split(",") if t.strip()]
    if isinstance(raw, list):
        return [str(t).strip() for t in raw if str(t).strip()]
    raise SchemaInvalid([{"path": ["tags"], "message": "Expected array of strings"}])


def _item_with_children(conn: sqlite3.Connection, row: sqlite3.Row) -> Dict[str, Any]:
    item = _row_to_dict(row)
    item["price"] = cents_to_price(item["price_cents"])
    item["tags"] = json.loads(item.pop("tags_json") or "[]")
    item["options"] = [
        {"id": o["id"], "label": o["label"], "meta_qty": o["meta_qty"],
         "price": cents_to_price(o["price_cents"])}
        for o in conn.execute(
            "SELECT * FROM menu_item_options WHERE item_id=? ORDER BY position ASC, id ASC",
            (item["id"],),
        ).fetchall()
    ]
    item["images"] = [
        r["url"] for r in conn.execute(
            "SELECT url FROM menu_item_images WHERE item_id=? ORDER BY sort ASC, id ASC",
            (item["id"],),
        ).fetchall()
    ]
    return item


def _category_for_event(conn: sqlite3.Connection, event_id: int, category_id: Any) -> Dict[str, Any]:
    category = _get_category_row(conn, coerce_int(category_id, "categoryId"))
    if category["event_id"] != int(event_id):
        raise NotFound(f"Category {category_id} not found")
    return category


def _find_or_create_category_by_name(conn: sqlite3.Connection, event_id: int, name: str) -> Dict[str, Any]:
    row = conn.execute(
        "SELECT * FROM categories WHERE event_id=? AND name=? ORDER BY parent_id IS NOT NULL, id LIMIT 1",
        (int(event_id), name),
    ).fetchone()
    if row:
        return _row_to_dict(row)
    now = _now()
    cur = conn.execute(
        """
        INSERT INTO categories (event_id, key, name, parent_id, type, sort,
                                is_hidden, created_at, updated_at)
        VALUES (?, ?, ?, NULL, 'FOOD', 0, 0, ?, ?)
        """,
        (int(event_id), slugify(name) or "category", name, now, now),
    )
    return _get_category_row(conn, int(cur.lastrowid))


# ------------------------------------------------------------
# Wipe (shared with storage.menu_import)
# ------------------------------------------------------------
def wipe_event_menu(conn: sqlite3.Connection, event_id: int) -> Dict[str, int]:
    """
    Delete every bundle line, bundle, option, image, item and category of
    an event, children before parents. Caller owns the transaction.
    """
    eid = int(event_id)
    counts: Dict[str, int] = {}
    counts["bundle_lines"] = conn.execute(
        "DELETE FROM bundle_lines WHERE bundle_id IN (SELECT id FROM bundles WHERE event_id=?)",
        (eid,),
    ).rowcount
    counts["bundles"] = conn.execute("DELETE FROM bundles WHERE event_id=?", (eid,)).rowcount
    counts["options"] = conn.execute(
        "DELETE FROM menu_item_options WHERE item_id IN (SELECT id FROM menu_items WHERE event_id=?)",
        (eid,),
    ).rowcount
    counts["images"] = conn.execute(
        "DELETE FROM menu_item_images WHERE item_id IN (SELECT id FROM menu_items WHERE event_id=?)",
        (eid,),
    ).rowcount
    counts["items"] = conn.execute("DELETE FROM menu_items WHERE event_id=?", (eid,)).rowcount
    # detach subcategories first so the self-reference never blocks the delete
    conn.execute("UPDATE categories SET parent_id=NULL WHERE event_id=? AND parent_id IS NOT NULL", (eid,))
    counts["categories"] = conn.execute("DELETE FROM categories WHERE event_id=?", (eid,)).rowcount
    return counts


# ====================================================================
# Read
# ====================================================================

def list_menu_items(event_id: int, *, include_hidden: bool = True) -> List[Dict[str, Any]]:
    qs = "SELECT * FROM menu_items WHERE event_id=?"
    if not include_hidden:
        qs += " AND is_hidden=0"
    qs += " ORDER BY sort_order ASC, id ASC"
    with db_connect() as conn:
        rows = conn.execute(qs, (int(event_id),)).fetchall()
        return [_item_with_children(conn, r) for r in rows]


def get_menu_item(item_id: int) -> Optional[Dict[str, Any]]:
    with db_connect() as conn:
        row = conn.execute("SELECT * FROM menu_items WHERE id=?", (int(item_id),)).fetchone()
        return _item_with_children(conn, row) if row else None


# ====================================================================
# Create / update / delete
# ====================================================================

def add_menu_item(ctx: RequestContext, event_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Add one item. Category comes from data["categoryId"] when given,
    else it is found (or created) by data["category"] name.
    """
    name = (data.get("name") or "").strip()
    if not name:
        raise SchemaInvalid([{"path": ["name"], "message": "Name is required"}])
    price_cents = _coerce_price_cents(data.get("price"))
    tags = _coerce_tags(data.get("tags"))

    now = _now()
    with db_connect() as conn:
        _load_owned_event(conn, ctx, event_id)
        if data.get("categoryId") not in (None, ""):
            category = _category_for_event(conn, event_id, data["categoryId"])
        else:
            category_name = (data.get("category") or "").strip() or DEFAULT_CATEGORY
            category = _find_or_create_category_by_name(conn, event_id, category_name)
        top_name, sub_name = category_labels(conn, category)

        sort_row = conn.execute(
            "SELECT COALESCE(MAX(sort_order), -1) + 1 AS nxt FROM menu_items WHERE event_id=?",
            (int(event_id),),
        ).fetchone()
        cur = conn.execute(
            """
            INSERT INTO menu_items (event_id, category_id, category, sub_category, code, name,
                                    description, price_cents, is_veg, is_vegan, is_drink,
                                    is_hidden, tags_json, sort_order, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                int(event_id), category["id"], top_name, sub_name,
                (data.get("code") or "").strip(), name, data.get("description"),
                price_cents,
                1 if data.get("isVeg") else 0,
                1 if data.get("isVegan") else 0,
                1 if (data.get("isDrink") or category["type"] == "DRINK") else 0,
                1 if data.get("isHidden") else 0,
                json.dumps(tags, ensure_ascii=False),
                sort_row["nxt"], now, now,
            ),
        )
        item_id = int(cur.lastrowid)
        conn.commit()
        item = _item_with_children(
            conn, conn.execute("SELECT * FROM menu_items WHERE id=?", (item_id,)).fetchone()
        )

    mark_menu_stale(event_id, "item_added")
    return item


def update_menu_item(ctx: RequestContext, item_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Update the fields present in `data`. Moving an item (categoryId)
    recomputes its labels from the hierarchy; labels are never taken from
    the caller.
    """
    sets: List[str] = []
    args: List[Any] = []

    with db_connect() as conn:
        row = conn.execute("SELECT * FROM menu_items WHERE id=?", (int(item_id),)).fetchone()
        if not row:
            raise NotFound(f"Menu item {item_id} not found")
        event_id = row["event_id"]
        _load_owned_event(conn, ctx, event_id)

        for key, col in _EDITABLE_TEXT.items():
            if key in data:
                value = data[key]
                if key == "name" and not (value or "").strip():
                    raise SchemaInvalid([{"path": ["name"], "message": "Name is required"}])
                sets.append(f"{col}=?")
                args.append(value.strip() if isinstance(value, str) and key != "description" else value)
        for key, col in _EDITABLE_FLAGS.items():
            if key in data:
                sets.append(f"{col}=?")
                args.append(1 if data[key] else 0)
        if "price" in data:
            sets.append("price_cents=?")
            args.append(_coerce_price_cents(data["price"]))
        if "tags" in data:
            sets.append("tags_json=?")
            args.append(json.dumps(_coerce_tags(data["tags"]), ensure_ascii=False))
        if "sortOrder" in data:
            sets.append("sort_order=?")
            args.append(coerce_int(data["sortOrder"], "sortOrder"))
        if data.get("categoryId") not in (None, ""):
            category = _category_for_event(conn, event_id, data["categoryId"])
            top_name, sub_name = category_labels(conn, category)
            sets += ["category_id=?", "category=?", "sub_category=?"]
            args += [category["id"], top_name, sub_name]

        if sets:
            sets.append("updated_at=?")
            args.append(_now())
            args.append(int(item_id))
            conn.execute(f"UPDATE menu_items SET {', '.join(sets)} WHERE id=?", args)
            conn.commit()
        item = _item_with_children(
            conn, conn.execute("SELECT * FROM menu_items WHERE id=?", (int(item_id),)).fetchone()
        )

    if sets:
        mark_menu_stale(event_id, "item_updated")
    return item


def delete_menu_item(ctx: RequestContext, item_id: int) -> bool:
    with db_connect() as conn:
        row = conn.execute("SELECT event_id FROM menu_items WHERE id=?", (int(item_id),)).fetchone()
        if not row:
            raise NotFound(f"Menu item {item_id} not found")
        event_id = row["event_id"]
        _load_owned_event(conn, ctx, event_id)
        conn.execute("DELETE FROM menu_item_options WHERE item_id=?", (int(item_id),))
        conn.execute("DELETE FROM menu_item_images WHERE item_id=?", (int(item_id),))
        conn.execute("DELETE FROM menu_items WHERE id=?", (int(item_id),))
        conn.commit()
    mark_menu_stale(event_id, "item_deleted")
    return True


def delete_all_menu_items(ctx: RequestContext, event_id: int) -> Dict[str, int]:
    """Wipe the event's whole menu (bundles and categories included)."""
    with db_connect() as conn:
        _load_owned_event(conn, ctx, event_id)
        counts = wipe_event_menu(conn, event_id)
        conn.commit()
    log.info("Wiped menu for event %s: %s", event_id, counts)
    mark_menu_stale(event_id, "menu_wiped")
    return counts
