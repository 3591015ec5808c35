# storage/categories.py: category hierarchy, label sync, deletion
"""
Category maintenance for an event's menu.

Hierarchy is at most two levels: top-level categories and their direct
subcategories. Menu items carry two denormalized display labels:

    menu_items.category      -> name of the top-level category
    menu_items.sub_category  -> name of the item's own category when it is
                                a subcategory, else NULL

Those labels are written only through category_labels() / _apply_labels()
in this module, so a rename or move can never leave items pointing at
stale names.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .auth import RequestContext
from .contracts import CATEGORY_TYPES, coerce_int
from .db import _now, _row_to_dict, db_connect
from .errors import InconsistentState, InvalidHierarchy, NotFound, SchemaInvalid
from .events import _load_owned_event, slugify
from .revalidate import mark_menu_stale

log = logging.getLogger(__name__)

GENERAL_CATEGORY = "General"
GENERAL_SORT = 999

DELETE_PRESERVE = "preserve"
DELETE_WIPE = "wipe"
DELETE_MODES = frozenset({DELETE_PRESERVE, DELETE_WIPE})

_UNSET: Any = object()


# ------------------------------------------------------------
# Row helpers
# ------------------------------------------------------------
def _get_category_row(conn: sqlite3.Connection, category_id: int) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM categories WHERE id=?", (int(category_id),)).fetchone()
    if not row:
        raise NotFound(f"Category {category_id} not found")
    return _row_to_dict(row)


def _child_rows(conn: sqlite3.Connection, category_id: int) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM categories WHERE parent_id=? ORDER BY sort ASC, id ASC",
        (int(category_id),),
    ).fetchall()
    return [_row_to_dict(r) for r in rows]


def _next_sort(conn: sqlite3.Connection, event_id: int) -> int:
    row = conn.execute(
        "SELECT MAX(sort) AS mx FROM categories WHERE event_id=? AND sort < ?",
        (int(event_id), GENERAL_SORT),
    ).fetchone()
    return 0 if row["mx"] is None else int(row["mx"]) + 1


# ------------------------------------------------------------
# Denormalized labels (the only writer of category/sub_category)
# ------------------------------------------------------------
def category_labels(conn: sqlite3.Connection, category: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    """
    (top-level name, subcategory name) for items placed in `category`.

    Top-level category  -> (own name, None)
    Subcategory         -> (parent's name, own name)
    """
    parent_id = category.get("parent_id")
    if parent_id is None:
        return category["name"], None
    parent = conn.execute("SELECT name FROM categories WHERE id=?", (int(parent_id),)).fetchone()
    if not parent:
        raise InconsistentState(
            f"Category {category['id']} points at missing parent {parent_id}"
        )
    return parent["name"], category["name"]


def _apply_labels(conn: sqlite3.Connection, category_id: int,
                  top_name: str, sub_name: Optional[str]) -> int:
    cur = conn.execute(
        "UPDATE menu_items SET category=?, sub_category=?, updated_at=? WHERE category_id=?",
        (top_name, sub_name, _now(), int(category_id)),
    )
    return cur.rowcount


def sync_category_labels(conn: sqlite3.Connection, category: Dict[str, Any],
                         *, name_changed: bool) -> int:
    """
    Re-label every item whose labels depend on `category`.

    Items directly in the category always get relabelled. When the name
    changed, items in each child category get the new parent name too.
    Returns the number of item rows touched.
    """
    top_name, sub_name = category_labels(conn, category)
    touched = _apply_labels(conn, category["id"], top_name, sub_name)

    if name_changed:
        for child in _child_rows(conn, category["id"]):
            touched += _apply_labels(conn, child["id"], category["name"], child["name"])

    log.debug("Relabelled %d item(s) after change to category %s", touched, category["id"])
    return touched


# ------------------------------------------------------------
# Hierarchy policy
# ------------------------------------------------------------
def _check_parent(conn: sqlite3.Connection, event_id: int, parent_id: Optional[int],
                  *, category_id: Optional[int] = None) -> None:
    """Parent must be a top-level category of the same event."""
    if parent_id is None:
        return
    if category_id is not None and int(parent_id) == int(category_id):
        raise InvalidHierarchy("A category cannot be its own parent")

    parent = conn.execute(
        "SELECT id, event_id, parent_id FROM categories WHERE id=?", (int(parent_id),)
    ).fetchone()
    if not parent or parent["event_id"] != int(event_id):
        raise NotFound(f"Parent category {parent_id} not found")
    if parent["parent_id"] is not None:
        raise InvalidHierarchy("Subcategories cannot have subcategories of their own")

    if category_id is not None and _child_rows(conn, category_id):
        raise InvalidHierarchy("A category with subcategories cannot become a subcategory")


def _clean_name(name: Any) -> str:
    cleaned = (name or "").strip() if isinstance(name, str) else ""
    if not cleaned:
        raise SchemaInvalid([{"path": ["name"], "message": "Name is required"}])
    return cleaned


# ====================================================================
# Read
# ====================================================================

def get_category(category_id: int) -> Optional[Dict[str, Any]]:
    with db_connect() as conn:
        row = conn.execute("SELECT * FROM categories WHERE id=?", (int(category_id),)).fetchone()
        return _row_to_dict(row) if row else None


def list_categories(event_id: int) -> List[Dict[str, Any]]:
    """Categories of an event ordered by sort, each with children + item count."""
    with db_connect() as conn:
        rows = conn.execute(
            """
            SELECT c.*,
                   p.name AS parent_name,
                   COALESCE(ic.cnt, 0) AS item_count
            FROM categories c
            LEFT JOIN categories p ON p.id = c.parent_id
            LEFT JOIN (
                SELECT category_id, COUNT(*) AS cnt
                FROM menu_items
                GROUP BY category_id
            ) ic ON ic.category_id = c.id
            WHERE c.event_id = ?
            ORDER BY c.sort ASC, c.id ASC
            """,
            (int(event_id),),
        ).fetchall()

    cats = [_row_to_dict(r) for r in rows]
    by_id = {c["id"]: c for c in cats}
    for c in cats:
        c["children"] = []
    for c in cats:
        parent = by_id.get(c["parent_id"])
        if parent is not None:
            parent["children"].append({"id": c["id"], "name": c["name"], "sort": c["sort"]})
    return cats


# ====================================================================
# Create / update
# ====================================================================

def create_category(
    ctx: RequestContext,
    event_id: int,
    name: str,
    *,
    parent_id: Optional[int] = None,
    type: str = "FOOD",
    sort: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a category (optionally under a top-level parent)."""
    name = _clean_name(name)
    if parent_id is not None:
        parent_id = coerce_int(parent_id, "parentId")
    if sort is not None:
        sort = coerce_int(sort, "sort")
    if type not in CATEGORY_TYPES:
        raise SchemaInvalid([{
            "path": ["type"],
            "message": f"Invalid enum value. Expected 'FOOD' | 'DRINK', received '{type}'",
        }])

    now = _now()
    with db_connect() as conn:
        _load_owned_event(conn, ctx, event_id)
        _check_parent(conn, event_id, parent_id)
        if sort is None:
            sort = _next_sort(conn, event_id)
        cur = conn.execute(
            """
            INSERT INTO categories (event_id, key, name, parent_id, type, sort,
                                    is_hidden, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)
            """,
            (int(event_id), slugify(name) or "category", name,
             parent_id, type, sort, now, now),
        )
        category = _get_category_row(conn, int(cur.lastrowid))
        conn.commit()

    mark_menu_stale(event_id, "category_created")
    return category


def update_category(
    ctx: RequestContext,
    category_id: int,
    *,
    name: Any = _UNSET,
    parent_id: Any = _UNSET,
    sort: Any = _UNSET,
    is_hidden: Any = _UNSET,
) -> Dict[str, Any]:
    """
    Update a category and keep item labels in step, in one transaction.

    name / parent_id supplied -> items of this category are relabelled;
    name supplied             -> items of every child category too;
    sort / is_hidden only     -> no item rows are touched.
    """
    sets: List[str] = []
    args: List[Any] = []

    with db_connect() as conn:
        before = _get_category_row(conn, category_id)
        event_id = before["event_id"]
        _load_owned_event(conn, ctx, event_id)

        if name is not _UNSET:
            sets.append("name=?")
            args.append(_clean_name(name))
        if parent_id is not _UNSET:
            if parent_id is not None:
                parent_id = coerce_int(parent_id, "parentId")
            _check_parent(conn, event_id, parent_id, category_id=before["id"])
            sets.append("parent_id=?")
            args.append(parent_id)
        if sort is not _UNSET:
            sets.append("sort=?")
            args.append(coerce_int(sort, "sort"))
        if is_hidden is not _UNSET:
            sets.append("is_hidden=?")
            args.append(1 if is_hidden else 0)

        if not sets:
            return before

        sets.append("updated_at=?")
        args.append(_now())
        args.append(int(category_id))
        conn.execute(f"UPDATE categories SET {', '.join(sets)} WHERE id=?", args)

        after = _get_category_row(conn, category_id)
        touched = 0
        if name is not _UNSET or parent_id is not _UNSET:
            touched = sync_category_labels(conn, after, name_changed=name is not _UNSET)
        conn.commit()

    log.info("Updated category %s (event %s); %d item(s) relabelled", category_id, event_id, touched)
    mark_menu_stale(event_id, "category_updated")
    return after


# ====================================================================
# Delete
# ====================================================================

def _delete_items_in_categories(conn: sqlite3.Connection, category_ids: Sequence[int]) -> int:
    if not category_ids:
        return 0
    marks = ",".join("?" for _ in category_ids)
    ids = [int(i) for i in category_ids]
    conn.execute(
        f"DELETE FROM menu_item_options WHERE item_id IN "
        f"(SELECT id FROM menu_items WHERE category_id IN ({marks}))",
        ids,
    )
    conn.execute(
        f"DELETE FROM menu_item_images WHERE item_id IN "
        f"(SELECT id FROM menu_items WHERE category_id IN ({marks}))",
        ids,
    )
    cur = conn.execute(f"DELETE FROM menu_items WHERE category_id IN ({marks})", ids)
    return cur.rowcount


def _move_items(conn: sqlite3.Connection, category_ids: Sequence[int],
                target: Dict[str, Any]) -> int:
    """Move items to a top-level target category (sub_category cleared)."""
    if not category_ids:
        return 0
    top_name, sub_name = category_labels(conn, target)
    marks = ",".join("?" for _ in category_ids)
    cur = conn.execute(
        f"UPDATE menu_items SET category_id=?, category=?, sub_category=?, updated_at=? "
        f"WHERE category_id IN ({marks})",
        [int(target["id"]), top_name, sub_name, _now()] + [int(i) for i in category_ids],
    )
    return cur.rowcount


def _find_or_create_general(conn: sqlite3.Connection, event_id: int,
                            *, exclude_id: int) -> Dict[str, Any]:
    row = conn.execute(
        """
        SELECT * FROM categories
        WHERE event_id=? AND name=? AND parent_id IS NULL AND id != ?
        ORDER BY id ASC LIMIT 1
        """,
        (int(event_id), GENERAL_CATEGORY, int(exclude_id)),
    ).fetchone()
    if row:
        return _row_to_dict(row)

    now = _now()
    cur = conn.execute(
        """
        INSERT INTO categories (event_id, key, name, parent_id, type, sort,
                                is_hidden, created_at, updated_at)
        VALUES (?, ?, ?, NULL, 'FOOD', ?, 0, ?, ?)
        """,
        (int(event_id), slugify(GENERAL_CATEGORY), GENERAL_CATEGORY, GENERAL_SORT, now, now),
    )
    log.info("Created fallback '%s' category for event %s", GENERAL_CATEGORY, event_id)
    return _get_category_row(conn, int(cur.lastrowid))


def delete_category(
    ctx: RequestContext,
    category_id: int,
    *,
    mode: str = DELETE_PRESERVE,
) -> Dict[str, Any]:
    """
    Delete a category after resolving its items and child categories.

    preserve (default): items are never deleted.
      - subcategory: items move to the parent category.
      - top-level: items of the category and of every child move to a
        "General" category (found or created), children are deleted.
    wipe: items of the category and of every child are deleted, children
      are deleted.

    The category itself is removed last. Returns a summary dict.
    """
    if mode not in DELETE_MODES:
        raise SchemaInvalid([{
            "path": ["mode"],
            "message": f"Invalid enum value. Expected 'preserve' | 'wipe', received '{mode}'",
        }])

    summary: Dict[str, Any] = {
        "category_id": int(category_id),
        "mode": mode,
        "items_moved": 0,
        "items_deleted": 0,
        "children_deleted": 0,
        "moved_to": None,
    }

    with db_connect() as conn:
        category = _get_category_row(conn, category_id)
        event_id = category["event_id"]
        _load_owned_event(conn, ctx, event_id)
        children = _child_rows(conn, category["id"])
        child_ids = [c["id"] for c in children]

        if category["parent_id"] is not None and children:
            raise InconsistentState(
                f"Subcategory {category['id']} has subcategories of its own"
            )

        if mode == DELETE_WIPE:
            summary["items_deleted"] = _delete_items_in_categories(conn, [category["id"]] + child_ids)
        elif category["parent_id"] is not None:
            parent = conn.execute(
                "SELECT * FROM categories WHERE id=?", (int(category["parent_id"]),)
            ).fetchone()
            if not parent:
                raise InconsistentState(
                    f"Subcategory {category['id']} has no parent category"
                )
            parent = _row_to_dict(parent)
            summary["items_moved"] = _move_items(conn, [category["id"]], parent)
            summary["moved_to"] = parent["id"]
        else:
            general = _find_or_create_general(conn, event_id, exclude_id=category["id"])
            summary["items_moved"] = _move_items(conn, [category["id"]] + child_ids, general)
            summary["moved_to"] = general["id"]

        if child_ids:
            marks = ",".join("?" for _ in child_ids)
            cur = conn.execute(f"DELETE FROM categories WHERE id IN ({marks})", child_ids)
            summary["children_deleted"] = cur.rowcount

        conn.execute("DELETE FROM categories WHERE id=?", (int(category["id"]),))
        conn.commit()

    log.info(
        "Deleted category %s (%s mode): %d moved, %d deleted, %d children removed",
        category_id, mode, summary["items_moved"], summary["items_deleted"],
        summary["children_deleted"],
    )
    mark_menu_stale(event_id, "category_deleted")
    return summary
