# storage/menu_import.py
"""
Menu import: wipe-and-replace an event's whole menu from one document.

Inputs:
  - a JSON menu document (see storage.contracts for the shape)
  - tab-delimited text (storage.parsers.line_parser builds the document)
  - an uploaded .json / .txt / .tsv / .pdf file (parse_upload)

Every path ends in import_menu_document(): validate, then one SQLite
transaction that deletes the event's bundles/items/categories and rebuilds
them. Any failure inside the transaction rolls everything back, so readers
see either the old menu or the new one.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .auth import RequestContext
from .contracts import MenuDocument, price_to_cents, validate_menu_document
from .db import _now, db_connect
from .errors import (
    CategoryLinkFailure,
    ImportFailed,
    MenuError,
    NoValidItems,
    ParseError,
    SchemaInvalid,
)
from .events import _load_owned_event, require_event_owner
from .menu_items import wipe_event_menu
from .parsers.bundle_lines import parse_bundle_line
from .parsers.line_parser import build_document_from_text
from .revalidate import mark_menu_stale

log = logging.getLogger(__name__)

TEXT_EXTENSIONS = (".txt", ".tsv", ".tab")


# ---------------------------------------------------------------------------
# Public types
# ---------------------------------------------------------------------------

@dataclass
class ImportResult:
    """
    Outcome of an import. Validation-type failures come back here instead
    of being raised, so the caller can show field-level feedback.
    """
    ok: bool
    error_type: Optional[str] = None
    message: str = ""
    issues: List[Dict[str, Any]] = field(default_factory=list)
    category_id: Optional[str] = None
    counts: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def failed(cls, err: MenuError) -> "ImportResult":
        return cls(
            ok=False,
            error_type=err.error_type,
            message=err.message,
            issues=list(getattr(err, "issues", []) or []),
            category_id=getattr(err, "category_id", None),
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"ok": self.ok}
        if self.ok:
            d["counts"] = dict(self.counts)
            return d
        d["error_type"] = self.error_type
        d["message"] = self.message
        if self.issues:
            d["issues"] = self.issues
        if self.category_id is not None:
            d["category_id"] = self.category_id
        return d


# ---------------------------------------------------------------------------
# Transactional replace
# ---------------------------------------------------------------------------

def _create_categories(conn: sqlite3.Connection, event_id: int,
                       doc: MenuDocument, now: str) -> Dict[str, Dict[str, Any]]:
    """Flat insert; returns document id -> {id, name, type}."""
    mapping: Dict[str, Dict[str, Any]] = {}
    for cat in doc["categories"]:
        cur = conn.execute(
            """
            INSERT INTO categories (event_id, key, name, parent_id, type, sort,
                                    is_hidden, created_at, updated_at)
            VALUES (?, ?, ?, NULL, ?, ?, 0, ?, ?)
            """,
            (event_id, cat["id"], cat["name"], cat["type"], cat["sort"], now, now),
        )
        mapping[cat["id"]] = {"id": int(cur.lastrowid), "name": cat["name"], "type": cat["type"]}
    return mapping


def _create_items(conn: sqlite3.Connection, event_id: int, doc: MenuDocument,
                  categories: Dict[str, Dict[str, Any]], now: str) -> Dict[str, int]:
    counts = {"items": 0, "images": 0, "options": 0}
    for pos, item in enumerate(doc["items"]):
        cat = categories.get(item["categoryId"])
        if cat is None:
            raise CategoryLinkFailure(item["categoryId"])

        diet = item.get("diet") or {}
        cur = conn.execute(
            """
            INSERT INTO menu_items (event_id, category_id, category, sub_category, code, name,
                                    description, price_cents, is_veg, is_vegan, is_drink,
                                    is_hidden, tags_json, sort_order, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
            """,
            (
                event_id, cat["id"], cat["name"], item.get("subCategory"),
                item["code"], item["name"], item.get("description"),
                price_to_cents(item.get("price")),
                1 if diet.get("veg") else 0,
                1 if diet.get("vegan") else 0,
                1 if cat["type"] == "DRINK" else 0,
                json.dumps(item["tags"], ensure_ascii=False),
                pos, now, now,
            ),
        )
        item_id = int(cur.lastrowid)
        counts["items"] += 1

        if item["images"]:
            conn.executemany(
                "INSERT INTO menu_item_images (item_id, url, sort) VALUES (?, ?, ?)",
                [(item_id, url, i) for i, url in enumerate(item["images"])],
            )
            counts["images"] += len(item["images"])

        if item["options"]:
            conn.executemany(
                """
                INSERT INTO menu_item_options (item_id, label, meta_qty, price_cents, position)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (item_id, opt["label"], opt.get("metaQty"), price_to_cents(opt["price"]), i)
                    for i, opt in enumerate(item["options"])
                ],
            )
            counts["options"] += len(item["options"])
    return counts


def _create_bundles(conn: sqlite3.Connection, event_id: int,
                    doc: MenuDocument, now: str) -> Dict[str, int]:
    counts = {"bundles": 0, "bundle_lines": 0}
    for pos, bundle in enumerate(doc["bundles"]):
        cur = conn.execute(
            """
            INSERT INTO bundles (event_id, code, name, description, price_cents,
                                 images_json, sort_order, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event_id, bundle["code"], bundle["name"], bundle.get("description"),
                price_to_cents(bundle["price"]),
                json.dumps(bundle["images"], ensure_ascii=False),
                pos, now,
            ),
        )
        bundle_id = int(cur.lastrowid)
        counts["bundles"] += 1

        lines = [parse_bundle_line(s) for s in bundle["lines"]]
        if lines:
            conn.executemany(
                "INSERT INTO bundle_lines (bundle_id, label, qty, note, position) VALUES (?, ?, ?, ?, ?)",
                [(bundle_id, ln.label, ln.qty, ln.note, i) for i, ln in enumerate(lines)],
            )
            counts["bundle_lines"] += len(lines)
    return counts


def replace_event_menu(conn: sqlite3.Connection, event_id: int, doc: MenuDocument) -> Dict[str, int]:
    """
    Wipe and rebuild inside the caller's transaction. `doc` must already be
    validated. Raises CategoryLinkFailure on a dangling categoryId.
    """
    now = _now()
    eid = int(event_id)
    wipe_event_menu(conn, eid)

    categories = _create_categories(conn, eid, doc, now)
    counts: Dict[str, int] = {"categories": len(doc["categories"])}
    counts.update(_create_items(conn, eid, doc, categories, now))
    counts.update(_create_bundles(conn, eid, doc, now))

    conn.execute(
        """
        UPDATE events
        SET menu_json=?, restaurant_name=COALESCE(?, restaurant_name), updated_at=?
        WHERE id=?
        """,
        (json.dumps(doc, ensure_ascii=False), doc.get("restaurant") or None, now, eid),
    )
    return counts


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def import_menu_document(ctx: RequestContext, event_id: int, payload: Any) -> ImportResult:
    """
    Validate `payload` and atomically replace the event's menu with it.

    Raises Unauthorized / NotFound for access problems and ImportFailed
    (cause chained) when the store fails; nothing is persisted in any
    failure case.
    """
    require_event_owner(ctx, event_id)

    ok, doc, issues = validate_menu_document(payload)
    if not ok:
        log.info("Menu import for event %s rejected: %d schema issue(s)", event_id, len(issues))
        return ImportResult.failed(SchemaInvalid(issues))

    try:
        with db_connect() as conn:
            _load_owned_event(conn, ctx, event_id)
            counts = replace_event_menu(conn, event_id, doc)
            conn.commit()
    except CategoryLinkFailure as e:
        log.warning("Menu import for event %s rolled back: %s", event_id, e.message)
        return ImportResult.failed(e)
    except (sqlite3.Error, OverflowError) as e:
        log.exception("Menu import for event %s failed", event_id)
        raise ImportFailed(cause=e) from e

    log.info("Imported menu for event %s: %s", event_id, counts)
    mark_menu_stale(event_id, "menu_import")
    return ImportResult(ok=True, counts=counts)


def import_menu_text(ctx: RequestContext, event_id: int, text: str,
                     *, delimiter: str = "\t", source_pdf: Optional[str] = None) -> ImportResult:
    """Tab-delimited text -> document -> import_menu_document()."""
    require_event_owner(ctx, event_id)
    try:
        doc = build_document_from_text(text, delimiter=delimiter)
    except NoValidItems as e:
        log.info("Text import for event %s found no usable lines", event_id)
        return ImportResult.failed(e)
    if source_pdf:
        doc["sourcePdf"] = source_pdf
    return import_menu_document(ctx, event_id, doc)


def import_menu_pdf(ctx: RequestContext, event_id: int, pdf_bytes: bytes,
                    *, filename: Optional[str] = None) -> ImportResult:
    """OCR a PDF and run the text import. TextExtractionError propagates."""
    from .pdf_text import extract_text_from_pdf

    require_event_owner(ctx, event_id)
    text = extract_text_from_pdf(pdf_bytes)
    return import_menu_text(ctx, event_id, text, source_pdf=filename)


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------

def _decode(file_bytes: bytes) -> str:
    try:
        return file_bytes.decode("utf-8-sig", errors="strict")
    except UnicodeDecodeError:
        # Fallback with replacement chars but still import as best we can
        return file_bytes.decode("utf-8-sig", errors="replace")


def parse_upload(file_bytes: bytes, filename: str) -> MenuDocument:
    """
    Decide the parser from the filename extension and return an
    (unvalidated) menu document.

    Raises ParseError for unsupported/malformed files, NoValidItems for
    text without usable lines, TextExtractionError for unreadable PDFs.
    """
    if not filename:
        raise ParseError("File has no name; expected .json, .txt, .tsv or .pdf.")

    lower = filename.lower()
    if lower.endswith(".json"):
        try:
            return json.loads(_decode(file_bytes))
        except json.JSONDecodeError as e:
            raise ParseError(f"Invalid JSON: {e}") from e

    if lower.endswith(TEXT_EXTENSIONS):
        return build_document_from_text(_decode(file_bytes))

    if lower.endswith(".pdf"):
        from .pdf_text import extract_text_from_pdf

        doc = build_document_from_text(extract_text_from_pdf(file_bytes))
        doc["sourcePdf"] = filename
        return doc

    raise ParseError("Unsupported file type; only .json, .txt, .tsv and .pdf are accepted.")


def import_upload(ctx: RequestContext, event_id: int, file_bytes: bytes, filename: str) -> ImportResult:
    """Route-friendly helper: parse_upload() then import_menu_document()."""
    require_event_owner(ctx, event_id)
    try:
        doc = parse_upload(file_bytes, filename)
    except (ParseError, NoValidItems) as e:
        log.info("Upload %r for event %s rejected: %s", filename, event_id, e.message)
        return ImportResult.failed(e)
    return import_menu_document(ctx, event_id, doc)
