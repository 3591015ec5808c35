# storage/contracts.py
from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Tuple

from .errors import SchemaInvalid

"""
Contracts & validators for the menu interchange document.

One place for the document shape:
- portal/app.py stays thin and hands raw JSON in here (via menu_import).
- Field rules, defaults and price normalization live here.
- Nothing in this module touches the database.

Document shape:

    {
      "restaurant"?: str, "sourcePdf"?: str, "currency": str = "EUR",
      "categories": [{"id", "name", "sort" = 0, "type" = "FOOD"}],
      "items": [{"code", "name", "description"?, "categoryId", "subCategory"?,
                 "price"?, "diet"?: {"veg", "vegan"}, "images", "tags",
                 "options": [{"label", "metaQty"?, "price"}]}],
      "bundles": [{"code", "name", "description"?, "price", "images", "lines"}]
    }

Cross references (items[].categoryId -> categories[].id) are NOT checked
here; storage.menu_import enforces them inside its transaction.

Numbers must be finite. Prices carry at most 2 decimals and sorts are
integers, so every accepted document survives the trip through integer
cents and back unchanged.

Guest orders (storage.orders) are validated here too:

    {
      "guestName": str, "notes"?: str,
      "items": [{"kind" = "ITEM", "menuItemId"?, "bundleId"?, "codeSnapshot",
                 "nameSnapshot", "qty" >= 1, "optionLabel"?, "optionPrice"?,
                 "priceSnapshot" = 0, "spiceLevel" 0..4, "spiceScale"?, "note"?}]
    }
"""

MenuDocument = Dict[str, Any]
GuestOrder = Dict[str, Any]
Issue = Dict[str, Any]
Path = List[Any]

CATEGORY_TYPES = ("FOOD", "DRINK")
ORDER_ITEM_KINDS = ("ITEM", "BUNDLE")
SPICE_SCALES = ("GERMAN", "INDIAN")
MAX_SPICE_LEVEL = 4
DEFAULT_CURRENCY = "EUR"

MAX_PRICE = 1_000_000_000          # currency units
MAX_INT = 2 ** 63 - 1              # SQLite INTEGER

_MISSING = object()


# ---------------------------------------------------------------------------
# Basic helpers
# ---------------------------------------------------------------------------

def _type_name(x: Any) -> str:
    if x is None:
        return "null"
    if isinstance(x, bool):
        return "boolean"
    if isinstance(x, (int, float)):
        return "number"
    if isinstance(x, str):
        return "string"
    if isinstance(x, list):
        return "array"
    if isinstance(x, dict):
        return "object"
    return type(x).__name__


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _issue(issues: List[Issue], path: Path, message: str) -> None:
    issues.append({"path": list(path), "message": message})


def _expected(issues: List[Issue], path: Path, expected: str, value: Any) -> None:
    _issue(issues, path, f"Expected {expected}, received {_type_name(value)}")


def _enum_message(allowed: Tuple[str, ...], value: Any) -> str:
    choices = " | ".join(f"'{a}'" for a in allowed)
    return f"Invalid enum value. Expected {choices}, received '{value}'"


def number_problem(value: Any, *, integer: bool = False, price: bool = False) -> Optional[str]:
    """
    Message for the first numeric rule `value` breaks, or None.

    `value` must already be a number (see _is_number). Python's json
    module turns the tokens NaN / Infinity into floats, so they are
    rejected here rather than further down in the store.
    """
    if isinstance(value, float):
        if math.isnan(value):
            return "Expected number, received nan"
        if math.isinf(value):
            return "Number must be finite"
    if integer:
        if isinstance(value, float) and not value.is_integer():
            return "Expected integer, received float"
        if abs(value) > MAX_INT:
            return f"Number must be less than or equal to {MAX_INT}"
    if price:
        if abs(value) > MAX_PRICE:
            return f"Number must be less than or equal to {MAX_PRICE}"
        if cents_to_price(price_to_cents(value)) != value:
            return "Price must have at most 2 decimal places"
    return None


def coerce_int(value: Any, field_name: str) -> int:
    """
    Integer input from JSON or a query string -> int.
    Raises SchemaInvalid for anything that is not a whole number.
    """
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        value = int(value.strip())
    if not _is_number(value):
        raise SchemaInvalid([{"path": [field_name], "message": f"Expected integer, received {_type_name(value)}"}])
    problem = number_problem(value, integer=True)
    if problem:
        raise SchemaInvalid([{"path": [field_name], "message": problem}])
    return int(value)


# ---------------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------------

def price_to_cents(value: Any) -> Optional[int]:
    """12.5 -> 1250. None stays None."""
    if value is None:
        return None
    return int(round(float(value) * 100))


def cents_to_price(cents: Optional[int]) -> Optional[float]:
    """1250 -> 12.5. None stays None."""
    if cents is None:
        return None
    return round(int(cents) / 100.0, 2)


# ---------------------------------------------------------------------------
# Field readers (each appends issues and returns the normalized value)
# ---------------------------------------------------------------------------

def _req_str(obj: Dict[str, Any], key: str, path: Path, issues: List[Issue]) -> Optional[str]:
    value = obj.get(key, _MISSING)
    if value is _MISSING or value is None:
        _issue(issues, path + [key], "Required")
        return None
    if not isinstance(value, str):
        _expected(issues, path + [key], "string", value)
        return None
    return value


def _opt_str(obj: Dict[str, Any], key: str, path: Path, issues: List[Issue]) -> Optional[str]:
    value = obj.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        _expected(issues, path + [key], "string", value)
        return None
    return value


def _number(value: Any, path: Path, issues: List[Issue], *,
            integer: bool, price: bool) -> Optional[Any]:
    if not _is_number(value):
        _expected(issues, path, "number", value)
        return None
    problem = number_problem(value, integer=integer, price=price)
    if problem:
        _issue(issues, path, problem)
        return None
    return int(value) if integer else value


def _req_number(obj: Dict[str, Any], key: str, path: Path, issues: List[Issue],
                *, integer: bool = False, price: bool = False) -> Optional[Any]:
    value = obj.get(key, _MISSING)
    if value is _MISSING or value is None:
        _issue(issues, path + [key], "Required")
        return None
    return _number(value, path + [key], issues, integer=integer, price=price)


def _opt_number(obj: Dict[str, Any], key: str, path: Path, issues: List[Issue],
                default: Any = None, *, integer: bool = False, price: bool = False) -> Any:
    value = obj.get(key)
    if value is None:
        return default
    out = _number(value, path + [key], issues, integer=integer, price=price)
    return default if out is None else out


def _opt_bool(obj: Dict[str, Any], key: str, path: Path, issues: List[Issue]) -> bool:
    value = obj.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        _expected(issues, path + [key], "boolean", value)
        return False
    return value


def _str_list(obj: Dict[str, Any], key: str, path: Path, issues: List[Issue]) -> List[str]:
    value = obj.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        _expected(issues, path + [key], "array", value)
        return []
    out: List[str] = []
    for i, v in enumerate(value):
        if not isinstance(v, str):
            _expected(issues, path + [key, i], "string", v)
            continue
        out.append(v)
    return out


def _object_list(obj: Dict[str, Any], key: str, path: Path, issues: List[Issue]) -> List[Tuple[Path, Dict[str, Any]]]:
    """Yield (path, entry) pairs for a list of objects, flagging non-objects."""
    value = obj.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        _expected(issues, path + [key], "array", value)
        return []
    out: List[Tuple[Path, Dict[str, Any]]] = []
    for i, entry in enumerate(value):
        p = path + [key, i]
        if not isinstance(entry, dict):
            _expected(issues, p, "object", entry)
            continue
        out.append((p, entry))
    return out


# ---------------------------------------------------------------------------
# Section validators
# ---------------------------------------------------------------------------

def _validate_category(path: Path, raw: Dict[str, Any], issues: List[Issue]) -> Dict[str, Any]:
    cat_id = _req_str(raw, "id", path, issues)
    name = _req_str(raw, "name", path, issues)
    sort = _opt_number(raw, "sort", path, issues, default=0, integer=True)

    ctype = raw.get("type")
    if ctype is None:
        ctype = "FOOD"
    elif ctype not in CATEGORY_TYPES:
        _issue(issues, path + ["type"], _enum_message(CATEGORY_TYPES, ctype))
        ctype = "FOOD"
    return {"id": cat_id, "name": name, "sort": sort, "type": ctype}


def _validate_option(path: Path, raw: Dict[str, Any], issues: List[Issue]) -> Dict[str, Any]:
    return {
        "label": _req_str(raw, "label", path, issues),
        "metaQty": _opt_str(raw, "metaQty", path, issues),
        "price": _req_number(raw, "price", path, issues, price=True),
    }


def _validate_item(path: Path, raw: Dict[str, Any], issues: List[Issue]) -> Dict[str, Any]:
    diet_raw = raw.get("diet")
    diet: Dict[str, bool] = {"veg": False, "vegan": False}
    if diet_raw is not None:
        if isinstance(diet_raw, dict):
            diet = {
                "veg": _opt_bool(diet_raw, "veg", path + ["diet"], issues),
                "vegan": _opt_bool(diet_raw, "vegan", path + ["diet"], issues),
            }
        else:
            _expected(issues, path + ["diet"], "object", diet_raw)

    return {
        "code": _req_str(raw, "code", path, issues),
        "name": _req_str(raw, "name", path, issues),
        "description": _opt_str(raw, "description", path, issues),
        "categoryId": _req_str(raw, "categoryId", path, issues),
        "subCategory": _opt_str(raw, "subCategory", path, issues),
        "price": _opt_number(raw, "price", path, issues, price=True),
        "diet": diet,
        "images": _str_list(raw, "images", path, issues),
        "tags": _str_list(raw, "tags", path, issues),
        "options": [
            _validate_option(p, opt, issues)
            for p, opt in _object_list(raw, "options", path, issues)
        ],
    }


def _validate_bundle(path: Path, raw: Dict[str, Any], issues: List[Issue]) -> Dict[str, Any]:
    return {
        "code": _req_str(raw, "code", path, issues),
        "name": _req_str(raw, "name", path, issues),
        "description": _opt_str(raw, "description", path, issues),
        "price": _req_number(raw, "price", path, issues, price=True),
        "images": _str_list(raw, "images", path, issues),
        "lines": _str_list(raw, "lines", path, issues),
    }


# ---------------------------------------------------------------------------
# Document-level validation
# ---------------------------------------------------------------------------

def validate_menu_document(payload: Any) -> Tuple[bool, Optional[MenuDocument], List[Issue]]:
    """
    Validate a candidate menu document and apply defaults.

    Returns:
      (ok, normalized_document | None, issues)

    Every violation is reported, not just the first one. Unknown keys are
    dropped from the normalized document.
    """
    issues: List[Issue] = []
    if not isinstance(payload, dict):
        _expected(issues, [], "object", payload)
        return False, None, issues

    currency = payload.get("currency")
    if currency is None:
        currency = DEFAULT_CURRENCY
    elif not isinstance(currency, str):
        _expected(issues, ["currency"], "string", currency)
        currency = DEFAULT_CURRENCY

    doc: MenuDocument = {
        "restaurant": _opt_str(payload, "restaurant", [], issues),
        "sourcePdf": _opt_str(payload, "sourcePdf", [], issues),
        "currency": currency,
        "categories": [
            _validate_category(p, c, issues)
            for p, c in _object_list(payload, "categories", [], issues)
        ],
        "items": [
            _validate_item(p, it, issues)
            for p, it in _object_list(payload, "items", [], issues)
        ],
        "bundles": [
            _validate_bundle(p, b, issues)
            for p, b in _object_list(payload, "bundles", [], issues)
        ],
    }

    if issues:
        return False, None, issues
    return True, doc, []


def format_issue(issue: Issue) -> str:
    """['items', 2, 'name'] + 'Required' -> 'items[2].name: Required'."""
    out = ""
    for part in issue.get("path") or []:
        if isinstance(part, int):
            out += f"[{part}]"
        else:
            out += f".{part}" if out else str(part)
    return f"{out or '(root)'}: {issue.get('message', '')}"


# ---------------------------------------------------------------------------
# Guest orders
# ---------------------------------------------------------------------------

def _opt_ref(obj: Dict[str, Any], key: str, path: Path, issues: List[Issue]) -> Optional[int]:
    """Optional row id; accepts 12 or "12"."""
    value = obj.get(key)
    if value is None or value == "":
        return None
    try:
        return coerce_int(value, key)
    except SchemaInvalid as e:
        _issue(issues, path + [key], e.issues[0]["message"])
        return None


def _validate_order_item(path: Path, raw: Dict[str, Any], issues: List[Issue]) -> Dict[str, Any]:
    kind = raw.get("kind")
    if kind is None:
        kind = "ITEM"
    elif kind not in ORDER_ITEM_KINDS:
        _issue(issues, path + ["kind"], _enum_message(ORDER_ITEM_KINDS, kind))

    qty = _req_number(raw, "qty", path, issues, integer=True)
    if qty is not None and qty < 1:
        _issue(issues, path + ["qty"], "Number must be greater than or equal to 1")

    spice = _req_number(raw, "spiceLevel", path, issues, integer=True)
    if spice is not None and not 0 <= spice <= MAX_SPICE_LEVEL:
        _issue(issues, path + ["spiceLevel"], f"Number must be between 0 and {MAX_SPICE_LEVEL}")

    scale = raw.get("spiceScale")
    if scale is not None and scale not in SPICE_SCALES:
        _issue(issues, path + ["spiceScale"], _enum_message(SPICE_SCALES, scale))

    return {
        "kind": kind,
        "menuItemId": _opt_ref(raw, "menuItemId", path, issues),
        "bundleId": _opt_ref(raw, "bundleId", path, issues),
        "codeSnapshot": _req_str(raw, "codeSnapshot", path, issues),
        "nameSnapshot": _req_str(raw, "nameSnapshot", path, issues),
        "qty": qty,
        "optionLabel": _opt_str(raw, "optionLabel", path, issues),
        "optionPrice": _opt_number(raw, "optionPrice", path, issues, price=True),
        "priceSnapshot": _opt_number(raw, "priceSnapshot", path, issues, default=0, price=True),
        "spiceLevel": spice,
        "spiceScale": scale,
        "note": _opt_str(raw, "note", path, issues),
    }


def validate_guest_order(payload: Any) -> Tuple[bool, Optional[GuestOrder], List[Issue]]:
    """Same contract as validate_menu_document(), for a guest's order."""
    issues: List[Issue] = []
    if not isinstance(payload, dict):
        _expected(issues, [], "object", payload)
        return False, None, issues

    guest_name = _req_str(payload, "guestName", [], issues)
    if guest_name is not None:
        guest_name = guest_name.strip()
        if not guest_name:
            _issue(issues, ["guestName"], "Name is required")

    items = [
        _validate_order_item(p, it, issues)
        for p, it in _object_list(payload, "items", [], issues)
    ]
    if not items and not any(i["path"][:1] == ["items"] for i in issues):
        _issue(issues, ["items"], "Select at least one item")

    order: GuestOrder = {
        "guestName": guest_name,
        "notes": _opt_str(payload, "notes", [], issues),
        "items": items,
    }
    if issues:
        return False, None, issues
    return True, order, []
