# storage/auth.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from storage.errors import Unauthorized


@dataclass(frozen=True)
class RequestContext:
    """
    Who is acting. Passed explicitly into every storage operation that
    mutates an event's menu; there is no ambient "current user".
    """

    user_id: Optional[str]

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    def require_user(self) -> str:
        if not self.user_id:
            raise Unauthorized()
        return self.user_id


ANONYMOUS = RequestContext(user_id=None)
