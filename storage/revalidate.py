# storage/revalidate.py
"""
Stale-menu signal.

Fired after every successful import or category/item mutation so that
whatever renders the event's menu can refresh. Fire-and-forget: handlers
run synchronously, failures are logged and never reach the caller.
"""

from __future__ import annotations

import logging
from typing import Callable, List

log = logging.getLogger(__name__)

StaleHandler = Callable[[int, str], None]

_stale_handlers: List[StaleHandler] = []


def register_stale_handler(handler: StaleHandler) -> None:
    if handler not in _stale_handlers:
        _stale_handlers.append(handler)
        log.debug("Registered stale-menu handler %s", getattr(handler, "__name__", handler))


def unregister_stale_handler(handler: StaleHandler) -> None:
    if handler in _stale_handlers:
        _stale_handlers.remove(handler)


def mark_menu_stale(event_id: int, reason: str) -> None:
    """Notify every handler that event_id's menu views are out of date."""
    if not _stale_handlers:
        log.debug("No stale-menu handlers for event %s (%s)", event_id, reason)
        return
    for handler in list(_stale_handlers):
        try:
            handler(int(event_id), reason)
        except Exception:
            log.exception("Stale-menu handler %r failed for event %s", handler, event_id)
