# storage/orders.py
"""
Guest orders for an event.

A guest orders by name: submitting again under the same name replaces the
earlier order (its lines are deleted and re-created) inside one
transaction. Order lines carry code/name/price snapshots, so they stay
readable after the menu is re-imported.

Guests are not logged in; an event that is LOCKED refuses new orders.
Reading and deleting orders is for the event's owner only.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from .auth import RequestContext
from .contracts import cents_to_price, price_to_cents, validate_guest_order
from .db import _now, _row_to_dict, db_connect
from .errors import NotFound, OrderingClosed, SchemaInvalid
from .events import _load_owned_event
from .revalidate import mark_menu_stale

log = logging.getLogger(__name__)

LOCKED = "LOCKED"


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------
def _order_with_items(conn: sqlite3.Connection, row: sqlite3.Row) -> Dict[str, Any]:
    order = _row_to_dict(row)
    items = []
    for r in conn.execute(
        "SELECT * FROM order_items WHERE order_id=? ORDER BY position ASC, id ASC",
        (order["id"],),
    ).fetchall():
        line = _row_to_dict(r)
        line["price"] = cents_to_price(line.pop("price_cents"))
        line["option_price"] = cents_to_price(line.pop("option_price_cents"))
        items.append(line)
    order["items"] = items
    return order


def _insert_lines(conn: sqlite3.Connection, order_id: int,
                  lines: List[Dict[str, Any]], default_scale: str) -> int:
    conn.executemany(
        """
        INSERT INTO order_items (order_id, kind, menu_item_id, bundle_id, code_snapshot,
                                 name_snapshot, qty, option_label, option_price_cents,
                                 price_cents, spice_level, spice_scale, note, position)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        [
            (
                order_id, ln["kind"], ln["menuItemId"], ln["bundleId"],
                ln["codeSnapshot"], ln["nameSnapshot"], ln["qty"],
                ln["optionLabel"], price_to_cents(ln["optionPrice"]),
                price_to_cents(ln["priceSnapshot"]) or 0,
                ln["spiceLevel"], ln["spiceScale"] or default_scale,
                ln["note"], pos,
            )
            for pos, ln in enumerate(lines)
        ],
    )
    return len(lines)


# ====================================================================
# Guest side
# ====================================================================

def submit_guest_order(event_slug: str, payload: Any) -> Dict[str, Any]:
    """
    Create or replace the order placed under payload["guestName"].

    Raises NotFound for an unknown slug, OrderingClosed when the event is
    LOCKED and SchemaInvalid (every issue) for a bad payload.
    """
    with db_connect() as conn:
        event = conn.execute(
            "SELECT id, status, spice_scale FROM events WHERE slug=?", (event_slug,)
        ).fetchone()
        if not event:
            raise NotFound(f"Event {event_slug!r} not found")
        if event["status"] == LOCKED:
            log.info("Order for locked event %s refused", event_slug)
            raise OrderingClosed()

        ok, order, issues = validate_guest_order(payload)
        if not ok:
            raise SchemaInvalid(issues, message="guest order failed validation")

        now = _now()
        existing = conn.execute(
            "SELECT id FROM guest_orders WHERE event_id=? AND guest_name=?",
            (event["id"], order["guestName"]),
        ).fetchone()
        if existing:
            order_id = int(existing["id"])
            conn.execute("DELETE FROM order_items WHERE order_id=?", (order_id,))
            conn.execute(
                "UPDATE guest_orders SET notes=?, updated_at=? WHERE id=?",
                (order["notes"], now, order_id),
            )
        else:
            cur = conn.execute(
                """
                INSERT INTO guest_orders (event_id, guest_name, notes, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (event["id"], order["guestName"], order["notes"], now, now),
            )
            order_id = int(cur.lastrowid)

        _insert_lines(conn, order_id, order["items"], event["spice_scale"])
        saved = _order_with_items(
            conn, conn.execute("SELECT * FROM guest_orders WHERE id=?", (order_id,)).fetchone()
        )
        conn.commit()

    log.info(
        "%s order %s for %r (event %s, %d line(s))",
        "Replaced" if existing else "Created", order_id, order["guestName"],
        event["id"], len(order["items"]),
    )
    mark_menu_stale(event["id"], "guest_order")
    return saved


# ====================================================================
# Admin side
# ====================================================================

def list_guest_orders(ctx: RequestContext, event_id: int) -> List[Dict[str, Any]]:
    """Every order of the event with its lines, oldest first."""
    with db_connect() as conn:
        _load_owned_event(conn, ctx, event_id)
        rows = conn.execute(
            "SELECT * FROM guest_orders WHERE event_id=? ORDER BY created_at ASC, id ASC",
            (int(event_id),),
        ).fetchall()
        return [_order_with_items(conn, r) for r in rows]


def get_guest_order(order_id: int) -> Optional[Dict[str, Any]]:
    with db_connect() as conn:
        row = conn.execute("SELECT * FROM guest_orders WHERE id=?", (int(order_id),)).fetchone()
        return _order_with_items(conn, row) if row else None


def delete_guest_order(ctx: RequestContext, order_id: int) -> bool:
    with db_connect() as conn:
        row = conn.execute("SELECT event_id FROM guest_orders WHERE id=?", (int(order_id),)).fetchone()
        if not row:
            raise NotFound(f"Order {order_id} not found")
        event_id = row["event_id"]
        _load_owned_event(conn, ctx, event_id)
        conn.execute("DELETE FROM order_items WHERE order_id=?", (int(order_id),))
        conn.execute("DELETE FROM guest_orders WHERE id=?", (int(order_id),))
        conn.commit()
    log.info("Deleted order %s (event %s)", order_id, event_id)
    mark_menu_stale(event_id, "order_deleted")
    return True
