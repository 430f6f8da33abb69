"""
Keyset cursor over store tables.

Batch runs iterate with a ``KeysetCursor`` instead of OFFSET paging so that
rows updated mid-scan (a new watermark, a new score) never shift the pages.
"""

import logging
from typing import Any, Iterator, List, Optional

import sqlite3

from .database import ProviderStore

logger = logging.getLogger(__name__)


class KeysetCursor:
    """
    Yields batches of rows ordered by a unique key column.

    ``last_key`` always holds the key of the last row handed out, so a run
    interrupted between batches can be resumed with ``start_after``.
    """

    def __init__(self, store: ProviderStore, table: str, key_column: str,
                 where: str = "", params: tuple = (), batch_size: int = 100,
                 start_after: Any = None, limit: Optional[int] = None,
                 columns: str = "*"):
        """
        Args:
            store: Store to read from
            table: Table (or view) name
            key_column: Unique, ordered key used for pagination
            where: Extra SQL predicate, without the WHERE keyword
            params: Parameters for the predicate
            batch_size: Rows per batch
            start_after: Resume strictly after this key
            limit: Stop after this many rows in total
            columns: Column list to select
        """
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.table = table
        self.key_column = key_column
        self.where = where
        self.params = params
        self.batch_size = batch_size
        self.last_key = start_after
        self.limit = limit
        self.columns = columns
        self.rows_yielded = 0

    def _next_batch(self, size: int) -> List[sqlite3.Row]:
        clauses = []
        params: list = []
        if self.where:
            clauses.append(f"({self.where})")
            params.extend(self.params)
        if self.last_key is not None:
            clauses.append(f"{self.key_column} > ?")
            params.append(self.last_key)

        sql = f"SELECT {self.columns} FROM {self.table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {self.key_column} LIMIT ?"
        params.append(size)
        return self.store.fetchall(sql, tuple(params))

    def batches(self) -> Iterator[List[sqlite3.Row]]:
        while True:
            size = self.batch_size
            if self.limit is not None:
                remaining = self.limit - self.rows_yielded
                if remaining <= 0:
                    return
                size = min(size, remaining)

            batch = self._next_batch(size)
            if not batch:
                return

            self.last_key = batch[-1][self.key_column]
            self.rows_yielded += len(batch)
            logger.debug(f"{self.table}: fetched {len(batch)} rows up to {self.last_key}")
            yield batch

    def __iter__(self) -> Iterator[sqlite3.Row]:
        for batch in self.batches():
            yield from batch
