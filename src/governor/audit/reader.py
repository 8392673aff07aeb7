"""
Async Audit Reader — Concurrent Read-Only Access for the API

The audit log has a single writer; readers in the API event loop go through
aiosqlite so that exports never block request handling or the writer.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from governor.audit.log import build_query, row_to_entry
from governor.models import AuditEntry


class AsyncAuditReader:
    """Read-only async view over the ``audit_log`` table."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    async def __aenter__(self) -> AsyncAuditReader:
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Optional[object],
    ) -> None:
        await self.close()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def iter_entries(self, **filters: Any) -> AsyncIterator[AuditEntry]:
        """Yield entries matching the filters in sequence order."""
        assert self._db is not None
        sql, params = build_query(**filters)
        async with self._db.execute(sql, params) as cursor:
            async for row in cursor:
                yield row_to_entry(row)

    async def fetch(self, **filters: Any) -> list[AuditEntry]:
        return [entry async for entry in self.iter_entries(**filters)]

    async def count(self) -> int:
        assert self._db is not None
        cursor = await self._db.execute("SELECT COUNT(*) FROM audit_log")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0
