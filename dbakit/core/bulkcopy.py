"""
Objective: Batched bulk insert into SQL Server over pyodbc, with rows-copied notifications.
"""
import pyodbc
from typing import Callable, Iterable, Iterator, List, Optional, Sequence
from .progress import INT32_MAX
from .utils import bracket_ident


def chunked(rows: Iterable[Sequence], size: int) -> Iterator[List[Sequence]]:
    chunk = []
    for row in rows:
        chunk.append(row)
        if len(chunk) >= size:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


class BulkCopier:
    """
    Writes rows into an existing table using fast_executemany INSERT batches.

    batch_size is the number of rows per committed transaction (0 commits once
    at the end). notify_after is the number of rows between on_rows_copied
    callbacks (0 disables them). The callback runs on the calling thread and
    receives rows_copied, which is a 32-bit counter and starts again from zero
    after INT32_MAX.
    """

    def __init__(
        self,
        conn: pyodbc.Connection,
        table: str,
        columns: Sequence[str],
        batch_size: int = 50000,
        notify_after: int = 5000,
        keep_identity: bool = False,
        table_lock: bool = False,
        on_rows_copied: Optional[Callable[[int], None]] = None
    ):
        if not columns:
            raise ValueError("At least one column is required for a bulk copy")
        if batch_size < 0 or notify_after < 0:
            raise ValueError("batch_size and notify_after must not be negative")
        self.conn = conn
        self.table = table
        self.columns = list(columns)
        self.batch_size = batch_size
        self.notify_after = notify_after
        self.keep_identity = keep_identity
        self.table_lock = table_lock
        self.on_rows_copied = on_rows_copied
        self._rows_copied = 0

    @property
    def rows_copied(self) -> int:
        return self._rows_copied % (INT32_MAX + 1)

    def insert_statement(self) -> str:
        cols = ", ".join(bracket_ident(c) for c in self.columns)
        placeholders = ", ".join("?" for _ in self.columns)
        hint = " WITH (TABLOCK)" if self.table_lock else ""
        return f"INSERT INTO {self.table}{hint} ({cols}) VALUES ({placeholders})"

    def _chunk_size(self) -> int:
        sizes = [s for s in (self.batch_size, self.notify_after) if s > 0]
        return min(sizes) if sizes else 10000

    def write_to_server(self, rows: Iterable[Sequence]) -> int:
        """Inserts all rows and returns the reported rows_copied counter."""
        sql = self.insert_statement()
        autocommit = self.conn.autocommit
        self.conn.autocommit = False
        cur = self.conn.cursor()
        cur.fast_executemany = True
        pending = 0
        since_notify = 0
        identity_insert = False
        try:
            if self.keep_identity:
                cur.execute(f"SET IDENTITY_INSERT {self.table} ON")
                identity_insert = True
            for chunk in chunked(rows, self._chunk_size()):
                cur.executemany(sql, [tuple(r) for r in chunk])
                self._rows_copied += len(chunk)
                pending += len(chunk)
                since_notify += len(chunk)
                if self.batch_size and pending >= self.batch_size:
                    self.conn.commit()
                    pending = 0
                if self.notify_after and since_notify >= self.notify_after:
                    since_notify = 0
                    if self.on_rows_copied:
                        self.on_rows_copied(self.rows_copied)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        finally:
            # IDENTITY_INSERT is session state and outlives the transaction
            if identity_insert:
                try:
                    cur.execute(f"SET IDENTITY_INSERT {self.table} OFF")
                except pyodbc.Error as e:
                    print(f"WARN: Could not turn IDENTITY_INSERT off for {self.table}: {e}")
            cur.close()
            self.conn.autocommit = autocommit
        return self.rows_copied
