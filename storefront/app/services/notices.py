from __future__ import annotations

import logging
import time
import uuid
from typing import List, Optional

from storefront.app.models.cart import Notice

log = logging.getLogger(__name__)


class NoticeBoard:
    """Recoverable cart problems, shown until the shopper dismisses them."""

    def __init__(self, limit: int = 20) -> None:
        self._items: List[Notice] = []
        self._limit = limit

    def push(self, kind: str, message: str, *, product_id: Optional[str] = None) -> Notice:
        # same problem twice in a row shows once
        if self._items and (self._items[-1].kind, self._items[-1].product_id) == (kind, product_id):
            self._items.pop()
        notice = Notice(
            id=uuid.uuid4().hex[:12],
            kind=kind,
            message=message,
            product_id=product_id,
            created_at=time.time(),
        )
        self._items.append(notice)
        del self._items[:-self._limit]
        log.info("notice %s: %s", kind, message)
        return notice

    def list(self) -> List[Notice]:
        return list(self._items)

    def dismiss(self, notice_id: str) -> bool:
        before = len(self._items)
        self._items = [n for n in self._items if n.id != notice_id]
        return len(self._items) != before

    def clear(self) -> None:
        self._items.clear()
