"""Shared base for services bound to one tenant session."""

from __future__ import annotations

from sqlalchemy.orm import Session


class BaseService:
    """Base class for services that operate on one tenant session.

    Services only flush. The enclosing ``TenantStore.write`` block owns the
    transaction and commits or rolls back the whole unit of work.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def flush(self) -> None:
        self.db.flush()
