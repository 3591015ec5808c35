# storage/errors.py
"""
Error taxonomy for menu import and category maintenance.

Validation-type failures (SchemaInvalid, ParseError, CategoryLinkFailure,
NoValidItems) are caught at the importer boundary and turned into structured
results. The rest propagate to the caller (portal/app.py maps them to HTTP).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class MenuError(Exception):
    """Base class for every error raised by the storage layer."""

    error_type = "ERROR"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error_type": self.error_type, "message": self.message}


class SchemaInvalid(MenuError):
    """Document failed structural validation. Carries every violation."""

    error_type = "SCHEMA"

    def __init__(self, issues: List[Dict[str, Any]], message: str = "menu document failed validation"):
        super().__init__(message)
        self.issues = list(issues or [])

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["issues"] = self.issues
        return d


class ParseError(MenuError):
    """Transport-level parse failure (e.g. malformed JSON)."""

    error_type = "PARSE"


class CategoryLinkFailure(MenuError):
    error_type = "CATEGORY_LINK"

    def __init__(self, category_id: str):
        super().__init__(
            f'Category link failed: Category ID "{category_id}" not found in categories list.'
        )
        self.category_id = category_id

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["category_id"] = self.category_id
        return d


class NoValidItems(MenuError):
    error_type = "NO_VALID_ITEMS"

    def __init__(self, message: str = "No valid items found in text (expected: Code [Tab] Name [Tab] Price)"):
        super().__init__(message)


class NotFound(MenuError):
    error_type = "NOT_FOUND"


class Unauthorized(MenuError):
    error_type = "UNAUTHORIZED"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class InconsistentState(MenuError):
    error_type = "INCONSISTENT_STATE"


class InvalidHierarchy(MenuError):
    """Category move would nest deeper than category -> subcategory."""

    error_type = "INVALID_HIERARCHY"


class OrderingClosed(MenuError):
    """The event is LOCKED and no longer takes guest orders."""

    error_type = "ORDERING_CLOSED"

    def __init__(self, message: str = "Event is not accepting orders"):
        super().__init__(message)


class TextExtractionError(MenuError):
    error_type = "TEXT_EXTRACTION"


class ImportFailed(MenuError):
    """Store-level failure during an import; the transaction was rolled back."""

    error_type = "OTHER"

    def __init__(self, message: str = "operation failed", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
