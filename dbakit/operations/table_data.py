"""
Objective: Copy table data between instances, and write in-memory rows to a table.
"""
import datetime
import decimal
import os
import time
import traceback
import uuid
import pyodbc
from typing import Any, Iterable, Iterator, List, Mapping, NamedTuple, Optional, Sequence
from ..core.bulkcopy import BulkCopier
from ..core.progress import BulkCopyProgress
from ..core.utils import bracket_ident, quote_table_name, split_table_name

QUERY_DIR = os.path.join(os.path.dirname(__file__), "..", "queries")


class TableCopyResult(NamedTuple):
    source_instance: Optional[str]
    source_database: Optional[str]
    source_table: Optional[str]
    destination_instance: str
    destination_database: str
    destination_table: str
    rows_copied: int
    elapsed: float


def current_database(conn: pyodbc.Connection) -> str:
    cur = conn.cursor()
    cur.execute("SELECT DB_NAME();")
    row = cur.fetchone()
    cur.close()
    return row[0]


def table_exists(conn: pyodbc.Connection, schema: str, table: str) -> bool:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT 1
        FROM INFORMATION_SCHEMA.TABLES
        WHERE TABLE_SCHEMA = ? AND TABLE_NAME = ?
        """,
        schema, table
    )
    row = cur.fetchone()
    cur.close()
    return bool(row)


def ensure_schema(conn: pyodbc.Connection, schema: str) -> None:
    cur = conn.cursor()
    cur.execute("SELECT 1 FROM sys.schemas WHERE name = ?", schema)
    if not cur.fetchone():
        literal = schema.replace("'", "''")
        cur.execute(f"EXEC(N'CREATE SCHEMA {bracket_ident(literal)}')")
    cur.close()


def get_columns(conn: pyodbc.Connection, schema: str, table: str) -> List[dict]:
    """Column metadata for a table, computed columns excluded."""
    with open(os.path.join(QUERY_DIR, "table_columns.sql"), "r", encoding="utf-8") as f:
        query_sql = f.read()

    cur = conn.cursor()
    cur.execute(query_sql, quote_table_name(schema, table))
    rows = cur.fetchall()
    cur.close()

    out = []
    for (name, type_name, max_len, prec, scale, is_null, is_ident, is_comp) in rows:
        if is_comp:
            continue
        out.append({
            "name": name,
            "type_name": type_name.lower(),
            "max_length": max_len,
            "precision": prec,
            "scale": scale,
            "is_nullable": bool(is_null),
            "is_identity": bool(is_ident),
        })
    return out


def build_type_decl(col: dict) -> str:
    t = col["type_name"]
    if t in ("varchar", "nvarchar", "varbinary", "char", "nchar", "binary"):
        ml = col["max_length"]
        if ml == -1:
            length = "MAX"
        elif t in ("nvarchar", "nchar"):
            # max_length is in bytes for the n-types
            length = str(ml // 2)
        else:
            length = str(ml)
        return f"{t}({length})"
    if t in ("decimal", "numeric"):
        p = col["precision"] or 18
        s = col["scale"] or 0
        return f"{t}({p},{s})"
    if t in ("time", "datetime2", "datetimeoffset"):
        s = col["scale"]
        if s is not None:
            return f"{t}({s})"
        return t
    return t


def build_create_table_sql(schema: str, table: str, columns: Sequence[dict]) -> str:
    col_defs = []
    for col in columns:
        nullness = "NULL" if col["is_nullable"] else "NOT NULL"
        identity = " IDENTITY(1,1)" if col.get("is_identity") else ""
        col_defs.append(f"{bracket_ident(col['name'])} {build_type_decl(col)}{identity} {nullness}")
    cols_sql = ",\n    ".join(col_defs)
    return f"CREATE TABLE {quote_table_name(schema, table)} (\n    {cols_sql}\n);"


def create_table(conn: pyodbc.Connection, schema: str, table: str, columns: Sequence[dict]) -> None:
    ensure_schema(conn, schema)
    cur = conn.cursor()
    cur.execute(build_create_table_sql(schema, table, columns))
    cur.close()
    if not conn.autocommit:
        conn.commit()


def truncate_table(conn: pyodbc.Connection, schema: str, table: str) -> None:
    cur = conn.cursor()
    cur.execute(f"TRUNCATE TABLE {quote_table_name(schema, table)};")
    cur.close()
    if not conn.autocommit:
        conn.commit()


def infer_column(name: str, values: Iterable[Any]) -> dict:
    """Picks a column definition from the first non-null Python value."""
    col = {"name": name, "max_length": -1, "precision": None, "scale": None,
           "is_nullable": True, "is_identity": False}
    sample = next((v for v in values if v is not None), None)
    if isinstance(sample, bool):
        col["type_name"] = "bit"
    elif isinstance(sample, int):
        col["type_name"] = "bigint"
    elif isinstance(sample, float):
        col["type_name"] = "float"
    elif isinstance(sample, decimal.Decimal):
        exponent = sample.as_tuple().exponent
        col["type_name"] = "decimal"
        col["precision"] = 38
        col["scale"] = min(-exponent, 38) if isinstance(exponent, int) and exponent < 0 else 0
    elif isinstance(sample, datetime.datetime):
        col["type_name"] = "datetimeoffset" if sample.tzinfo else "datetime2"
        col["scale"] = 7
    elif isinstance(sample, datetime.date):
        col["type_name"] = "date"
    elif isinstance(sample, datetime.time):
        col["type_name"] = "time"
        col["scale"] = 7
    elif isinstance(sample, (bytes, bytearray)):
        col["type_name"] = "varbinary"
    elif isinstance(sample, uuid.UUID):
        col["type_name"] = "uniqueidentifier"
    else:
        col["type_name"] = "nvarchar"
    return col


def normalise_rows(rows: Iterable[Any], columns: Optional[Sequence[str]] = None):
    """
    Accepts mappings or sequences. Returns (columns, list_of_tuples).
    Mappings take their column names from the first row when columns is not given.
    """
    rows = list(rows)
    if not rows:
        return list(columns or []), []

    if isinstance(rows[0], Mapping):
        if not columns:
            columns = list(rows[0].keys())
        return list(columns), [tuple(r.get(c) for c in columns) for r in rows]

    if not columns:
        raise ValueError("Column names are required when rows are sequences")
    width = len(columns)
    for i, r in enumerate(rows):
        if len(r) != width:
            raise ValueError(f"Row {i} has {len(r)} values, expected {width}")
    return list(columns), [tuple(r) for r in rows]


def _progress_printer(progress: BulkCopyProgress, server_name: str, table: str, verbose: bool):
    def on_rows_copied(reported: int) -> None:
        progress.update(reported)
        if verbose:
            print(f"[{server_name}] {progress.total} rows copied to {table} "
                  f"({progress.rows_per_second():.0f} rows/sec)")
    return on_rows_copied


def _bulk_write(
    dest_conn: pyodbc.Connection,
    rows: Iterable[Sequence],
    columns: Sequence[str],
    server_name: str,
    schema: str,
    table: str,
    batch_size: int,
    notify_after: int,
    keep_identity: bool,
    table_lock: bool,
    verbose: bool
) -> BulkCopyProgress:
    progress = BulkCopyProgress()
    target = quote_table_name(schema, table)
    copier = BulkCopier(
        dest_conn,
        target,
        columns,
        batch_size=batch_size,
        notify_after=notify_after,
        keep_identity=keep_identity,
        table_lock=table_lock,
        on_rows_copied=_progress_printer(progress, server_name, target, verbose),
    )
    reported = copier.write_to_server(rows)
    # Rows copied after the last notification
    progress.update(reported)
    return progress


def _stream(cur: pyodbc.Cursor, size: int) -> Iterator[Sequence]:
    while True:
        rows = cur.fetchmany(size)
        if not rows:
            break
        for row in rows:
            yield row


def check_database(database: Optional[str], current: str, server: str, name: str) -> None:
    """A three-part name must refer to the database the connection is using."""
    if database and database.lower() != current.lower():
        raise ValueError(f"{name} refers to database {database} but the connection on {server} uses {current}")


def identity_columns(columns: Sequence[dict]) -> set:
    return {c["name"].lower() for c in columns if c.get("is_identity")}


def select_positions(rows: Iterable[Sequence], positions: Sequence[int]) -> Iterator[tuple]:
    for row in rows:
        yield tuple(row[i] for i in positions)


def copy_table_data(
    source_conn: pyodbc.Connection,
    dest_conn: pyodbc.Connection,
    table: str,
    source_server: str,
    dest_server: str,
    destination_table: Optional[str] = None,
    query: Optional[str] = None,
    batch_size: int = 50000,
    notify_after: int = 5000,
    truncate: bool = False,
    auto_create_table: bool = False,
    keep_identity: bool = False,
    table_lock: bool = False,
    verbose: bool = False
) -> TableCopyResult:
    """Copies a table (or the result of a query) from one database to another."""
    src_db_part, src_schema, src_table = split_table_name(table)
    dst_db_part, dst_schema, dst_table = split_table_name(destination_table or table)
    source_db = current_database(source_conn)
    dest_db = current_database(dest_conn)
    check_database(src_db_part, source_db, source_server, table)
    # a three-part source name says nothing about the destination database
    if destination_table:
        check_database(dst_db_part, dest_db, dest_server, destination_table)

    if (source_server.lower() == dest_server.lower() and source_db.lower() == dest_db.lower()
            and src_schema.lower() == dst_schema.lower() and src_table.lower() == dst_table.lower()):
        raise ValueError(f"Cannot copy {source_db}.{src_schema}.{src_table} onto itself")

    if table_exists(dest_conn, dst_schema, dst_table):
        dest_identity = identity_columns(get_columns(dest_conn, dst_schema, dst_table))
    else:
        if not auto_create_table:
            raise ValueError(
                f"Table {dest_db}.{dst_schema}.{dst_table} does not exist on {dest_server}, use auto-create to create it"
            )
        columns = get_columns(source_conn, src_schema, src_table)
        if not columns:
            raise ValueError(f"No copyable columns found for {source_db}.{src_schema}.{src_table} on {source_server}")
        if verbose:
            print(f"DEBUG: [Server: {dest_server}] creating {dest_db}.{dst_schema}.{dst_table}")
        create_table(dest_conn, dst_schema, dst_table, columns)
        dest_identity = identity_columns(columns)

    # without keep_identity the destination generates its own identity values
    skipped = set() if keep_identity else dest_identity

    if truncate:
        if verbose:
            print(f"DEBUG: [Server: {dest_server}] truncating {dest_db}.{dst_schema}.{dst_table}")
        truncate_table(dest_conn, dst_schema, dst_table)

    if not query:
        source_columns = get_columns(source_conn, src_schema, src_table)
        if not source_columns:
            raise ValueError(f"Table {source_db}.{src_schema}.{src_table} not found on {source_server}")
        select_cols = ", ".join(
            bracket_ident(c["name"]) for c in source_columns if c["name"].lower() not in skipped
        )
        if not select_cols:
            raise ValueError(f"Table {source_db}.{src_schema}.{src_table} has no columns to copy besides identity")
        query = f"SELECT {select_cols} FROM {quote_table_name(src_schema, src_table)};"

    started = time.monotonic()
    src_cur = source_conn.cursor()
    try:
        src_cur.execute(query)
        names = [d[0] for d in src_cur.description]
        keep = [i for i, n in enumerate(names) if n.lower() not in skipped]
        rows = _stream(src_cur, batch_size or 10000)
        if len(keep) < len(names):
            rows = select_positions(rows, keep)
        progress = _bulk_write(
            dest_conn, rows, [names[i] for i in keep], dest_server,
            dst_schema, dst_table, batch_size, notify_after, keep_identity, table_lock, verbose
        )
    finally:
        src_cur.close()

    return TableCopyResult(
        source_instance=source_server,
        source_database=source_db,
        source_table=f"{src_schema}.{src_table}",
        destination_instance=dest_server,
        destination_database=dest_db,
        destination_table=f"{dst_schema}.{dst_table}",
        rows_copied=progress.total,
        elapsed=time.monotonic() - started,
    )


def write_table_data(
    dest_conn: pyodbc.Connection,
    rows: Iterable[Any],
    table: str,
    dest_server: str,
    columns: Optional[Sequence[str]] = None,
    batch_size: int = 50000,
    notify_after: int = 5000,
    truncate: bool = False,
    auto_create_table: bool = False,
    keep_identity: bool = False,
    table_lock: bool = False,
    verbose: bool = False
) -> TableCopyResult:
    """Writes rows (mappings or sequences) into a table."""
    db_part, schema, name = split_table_name(table)
    columns, values = normalise_rows(rows, columns)
    if not columns:
        raise ValueError(f"No columns to write to {schema}.{name}")
    dest_db = current_database(dest_conn)
    check_database(db_part, dest_db, dest_server, table)

    if table_exists(dest_conn, schema, name):
        skipped = set() if keep_identity else identity_columns(get_columns(dest_conn, schema, name))
        keep = [i for i, c in enumerate(columns) if c.lower() not in skipped]
        if not keep:
            raise ValueError(f"No columns to write to {schema}.{name} besides identity")
        if len(keep) < len(columns):
            if verbose:
                print(f"DEBUG: [Server: {dest_server}] leaving identity values to {dest_db}.{schema}.{name}")
            columns = [columns[i] for i in keep]
            values = list(select_positions(values, keep))
    else:
        if not auto_create_table:
            raise ValueError(
                f"Table {dest_db}.{schema}.{name} does not exist on {dest_server}, use auto-create to create it"
            )
        definitions = [infer_column(c, (v[i] for v in values)) for i, c in enumerate(columns)]
        if verbose:
            print(f"DEBUG: [Server: {dest_server}] creating {dest_db}.{schema}.{name}")
        create_table(dest_conn, schema, name, definitions)

    if truncate:
        if verbose:
            print(f"DEBUG: [Server: {dest_server}] truncating {dest_db}.{schema}.{name}")
        truncate_table(dest_conn, schema, name)

    started = time.monotonic()
    progress = _bulk_write(
        dest_conn, values, columns, dest_server, schema, name,
        batch_size, notify_after, keep_identity, table_lock, verbose
    )

    return TableCopyResult(
        source_instance=None,
        source_database=None,
        source_table=None,
        destination_instance=dest_server,
        destination_database=dest_db,
        destination_table=f"{schema}.{name}",
        rows_copied=progress.total,
        elapsed=time.monotonic() - started,
    )


def copy_tables(
    source_conn: pyodbc.Connection,
    dest_conn: pyodbc.Connection,
    tables: Sequence[str],
    source_server: str,
    dest_server: str,
    verbose: bool = False,
    **options
):
    """
    Copies each table in turn; a failing table is reported and the rest continue.
    Returns (results, failed_count).
    """
    results = []
    failed = 0
    for table in tables:
        try:
            result = copy_table_data(
                source_conn, dest_conn, table, source_server, dest_server, verbose=verbose, **options
            )
        except (ValueError, pyodbc.Error) as e:
            failed += 1
            print(f"ERROR: [Server: {dest_server}] Failed to copy {table} from {source_server}: {e}")
            if verbose:
                traceback.print_exc()
            continue
        results.append(result)
        print(f"[{dest_server}] Copied {result.rows_copied} rows from {source_server} "
              f"{result.source_database}.{result.source_table} to "
              f"{result.destination_database}.{result.destination_table} in {result.elapsed:.1f}s")
    return results, failed
