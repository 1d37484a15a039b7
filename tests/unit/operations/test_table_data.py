"""
Tests for the `table_data.py` module.
"""
import datetime
import decimal
import uuid

import pytest

from dbakit.operations.table_data import (
    build_create_table_sql,
    build_type_decl,
    copy_table_data,
    copy_tables,
    infer_column,
    normalise_rows,
    write_table_data,
)
from tests.fakes import FakeConnection, make_rows


COLUMN_META = ["name", "type_name", "max_length", "precision", "scale", "is_nullable", "is_identity", "is_computed"]
ORDER_COLUMNS = [
    ("Id", "int", 4, 10, 0, 0, 1, 0),
    ("Customer", "nvarchar", 100, 0, 0, 1, 0, 0),
    ("Total", "decimal", 9, 18, 2, 1, 0, 0),
    ("TotalWithTax", "decimal", 9, 18, 2, 1, 0, 1),
]


def database(name: str, tables=(), columns=None, data=None) -> FakeConnection:
    """
    Builds a fake connection answering the catalog queries the table operations issue.

    :param name: The database name returned by DB_NAME().
    :param tables: (schema, table) pairs that exist.
    :param columns: sys.columns rows returned for any table.
    :param data: Rows returned by the source SELECT.
    """
    existing = {(s.lower(), t.lower()) for s, t in tables}

    def respond(sql, params):
        if "DB_NAME()" in sql:
            return make_rows(["name"], (name,))
        if "INFORMATION_SCHEMA.TABLES" in sql:
            return [(1,)] if (params[0].lower(), params[1].lower()) in existing else []
        if "sys.schemas" in sql:
            return [(1,)]
        if "FROM sys.columns" in sql:
            return make_rows(COLUMN_META, *(columns or []))
        if sql.startswith("SELECT"):
            return make_rows(["Id", "Customer", "Total"], *(data or []))
        return []

    return FakeConnection(respond)


def test_normalise_rows_from_mappings():
    """Column names come from the first mapping and missing keys become None."""
    columns, values = normalise_rows([{"a": 1, "b": 2}, {"a": 3}])
    assert columns == ["a", "b"]
    assert values == [(1, 2), (3, None)]


def test_normalise_rows_from_sequences():
    """Sequences need explicit columns and a matching width."""
    assert normalise_rows([(1, 2)], ["a", "b"]) == (["a", "b"], [(1, 2)])
    with pytest.raises(ValueError):
        normalise_rows([(1, 2)])
    with pytest.raises(ValueError):
        normalise_rows([(1, 2), (3,)], ["a", "b"])


@pytest.mark.parametrize(
    "values, expected",
    [
        ([None, 5], "bigint"),
        ([True], "bit"),
        ([1.5], "float"),
        ([decimal.Decimal("12.345")], "decimal(38,3)"),
        ([datetime.datetime(2024, 1, 1)], "datetime2(7)"),
        ([datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)], "datetimeoffset(7)"),
        ([datetime.date(2024, 1, 1)], "date"),
        ([b"\x00"], "varbinary(MAX)"),
        ([uuid.uuid4()], "uniqueidentifier"),
        (["text"], "nvarchar(MAX)"),
        ([None, None], "nvarchar(MAX)"),
    ],
)
def test_infer_column(values: list, expected: str):
    """
    Test the SQL type picked for Python values.

    :param values: Column values.
    :param expected: The expected type declaration.
    """
    assert build_type_decl(infer_column("c", values)) == expected


def test_build_create_table_sql():
    """Computed columns are skipped by the caller; identity and nullability are kept."""
    columns = [
        {"name": "Id", "type_name": "int", "max_length": 4, "precision": 10, "scale": 0,
         "is_nullable": False, "is_identity": True},
        {"name": "Name", "type_name": "nvarchar", "max_length": 100, "precision": 0, "scale": 0,
         "is_nullable": True, "is_identity": False},
    ]
    assert build_create_table_sql("dbo", "T", columns) == (
        "CREATE TABLE [dbo].[T] (\n    [Id] int IDENTITY(1,1) NOT NULL,\n    [Name] nvarchar(50) NULL\n);"
    )


def test_write_table_data_auto_creates_and_truncates():
    """A missing table is created from the values and then written."""
    dest = database("Staging")
    rows = [{"Id": 1, "Name": "a"}, {"Id": 2, "Name": "b"}]

    result = write_table_data(dest, rows, "etl.Import", "SQL02", auto_create_table=True, truncate=True)

    assert result.rows_copied == 2
    assert result.destination_table == "etl.Import"
    assert result.destination_database == "Staging"
    assert result.source_instance is None
    statements = dest.statements()
    assert any(s.startswith("CREATE TABLE [etl].[Import]") and "[Id] bigint NULL" in s for s in statements)
    assert "TRUNCATE TABLE [etl].[Import];" in statements
    assert dest.committed == [(1, "a"), (2, "b")]


def test_write_table_data_missing_table():
    """Without auto-create a missing table is an error."""
    with pytest.raises(ValueError, match="does not exist"):
        write_table_data(database("Staging"), [{"Id": 1}], "dbo.Missing", "SQL02")


def test_copy_table_data_copies_rows():
    """Rows stream from the source into the destination and the total is corrected."""
    data = [(i, f"c{i}", decimal.Decimal("1.00")) for i in range(12)]
    source = database("Sales", tables=[("dbo", "Orders")], columns=ORDER_COLUMNS, data=data)
    dest = database("Archive", tables=[("dbo", "Orders")])

    result = copy_table_data(source, dest, "Orders", "SQL01", "SQL02", batch_size=5, notify_after=3)

    assert result.rows_copied == 12
    assert result.source_table == "dbo.Orders"
    assert result.source_database == "Sales"
    assert result.destination_database == "Archive"
    assert len(dest.committed) == 12
    select = [s for s in source.statements() if s.startswith("SELECT [")][0]
    assert select == "SELECT [Id], [Customer], [Total] FROM [dbo].[Orders];"


def test_copy_table_data_auto_create_from_source():
    """The destination table is created from the source column metadata."""
    source = database("Sales", tables=[("dbo", "Orders")], columns=ORDER_COLUMNS, data=[(1, "x", None)])
    dest = database("Archive")

    copy_table_data(source, dest, "dbo.Orders", "SQL01", "SQL02",
                    destination_table="[hist].[Orders 2024]", auto_create_table=True)

    create = [s for s in dest.statements() if s.startswith("CREATE TABLE")][0]
    assert create.startswith("CREATE TABLE [hist].[Orders 2024]")
    assert "[Total] decimal(18,2) NULL" in create
    assert "TotalWithTax" not in create


def test_copy_table_data_rejects_self_copy():
    """Copying a table onto itself is refused."""
    conn = database("Sales", tables=[("dbo", "Orders")], columns=ORDER_COLUMNS)
    with pytest.raises(ValueError, match="onto itself"):
        copy_table_data(conn, conn, "dbo.Orders", "SQL01", "sql01")


def test_copy_tables_isolates_failures(capsys):
    """
    A failing table is reported and the remaining tables are still copied.

    :param capsys: Captures the printed report.
    """
    source = database("Sales", tables=[("dbo", "Orders")], columns=ORDER_COLUMNS, data=[(1, "x", None)])
    dest = database("Archive", tables=[("dbo", "Orders")])

    results, failed = copy_tables(source, dest, ["dbo.Missing", "dbo.Orders"], "SQL01", "SQL02")

    assert failed == 1
    assert [r.source_table for r in results] == ["dbo.Orders"]
    assert "Failed to copy dbo.Missing from SQL01" in capsys.readouterr().out


def test_copy_table_data_leaves_identity_to_destination():
    """Without keep_identity the destination identity column is neither selected nor inserted."""
    data = [(1, "x", decimal.Decimal("2.50")), (2, "y", None)]
    source = database("Sales", tables=[("dbo", "Orders")], columns=ORDER_COLUMNS, data=data)
    dest = database("Archive", tables=[("dbo", "Orders")], columns=ORDER_COLUMNS)

    result = copy_table_data(source, dest, "dbo.Orders", "SQL01", "SQL02")

    assert result.rows_copied == 2
    select = [s for s in source.statements() if s.startswith("SELECT [")][0]
    assert select == "SELECT [Customer], [Total] FROM [dbo].[Orders];"
    insert, values, _ = dest.batches[0]
    assert insert == "INSERT INTO [dbo].[Orders] ([Customer], [Total]) VALUES (?, ?)"
    assert values == [("x", decimal.Decimal("2.50")), ("y", None)]


def test_copy_table_data_query_drops_identity_values():
    """A custom query returning the identity column has that column dropped from every row."""
    source = database("Sales", tables=[("dbo", "Orders")], columns=ORDER_COLUMNS, data=[(7, "x", None)])
    dest = database("Archive", tables=[("dbo", "Orders")], columns=ORDER_COLUMNS)

    copy_table_data(source, dest, "dbo.Orders", "SQL01", "SQL02", query="SELECT * FROM dbo.Orders")

    insert, values, _ = dest.batches[0]
    assert "[Id]" not in insert
    assert values == [("x", None)]


def test_copy_table_data_keep_identity_inserts_identity():
    """keep_identity copies the source identity values under IDENTITY_INSERT."""
    source = database("Sales", tables=[("dbo", "Orders")], columns=ORDER_COLUMNS, data=[(7, "x", None)])
    dest = database("Archive", tables=[("dbo", "Orders")], columns=ORDER_COLUMNS)

    copy_table_data(source, dest, "dbo.Orders", "SQL01", "SQL02", keep_identity=True)

    insert, values, _ = dest.batches[0]
    assert insert.startswith("INSERT INTO [dbo].[Orders] ([Id], [Customer], [Total])")
    assert values == [(7, "x", None)]
    assert "SET IDENTITY_INSERT [dbo].[Orders] ON" in dest.statements()


def test_write_table_data_leaves_identity_to_destination():
    """Values given for an identity column of an existing table are not written."""
    dest = database("Sales", tables=[("dbo", "Orders")], columns=ORDER_COLUMNS)

    write_table_data(dest, [{"Id": 5, "Customer": "x", "Total": 1}], "dbo.Orders", "SQL01")

    insert, values, _ = dest.batches[0]
    assert insert == "INSERT INTO [dbo].[Orders] ([Customer], [Total]) VALUES (?, ?)"
    assert values == [("x", 1)]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"table": "OtherDb.dbo.Orders"},
        {"table": "dbo.Orders", "destination_table": "OtherDb.dbo.Orders"},
    ],
)
def test_copy_table_data_rejects_other_database(kwargs: dict):
    """
    Test that a three-part name must refer to the database of its connection.

    :param kwargs: The source and destination table names.
    """
    source = database("Sales", tables=[("dbo", "Orders")], columns=ORDER_COLUMNS, data=[(1, "x", None)])
    dest = database("Archive", tables=[("dbo", "Orders")])
    table = kwargs.pop("table")

    with pytest.raises(ValueError, match="refers to database OtherDb"):
        copy_table_data(source, dest, table, "SQL01", "SQL02", **kwargs)
    assert dest.batches == []


def test_copy_table_data_accepts_matching_database():
    """A three-part name naming the connection's own database is accepted."""
    source = database("Sales", tables=[("dbo", "Orders")], columns=ORDER_COLUMNS, data=[(1, "x", None)])
    dest = database("Archive", tables=[("dbo", "Orders")])

    result = copy_table_data(source, dest, "[sales].dbo.Orders", "SQL01", "SQL02",
                             destination_table="Archive.dbo.Orders")

    assert result.rows_copied == 1
    assert result.destination_table == "dbo.Orders"


def test_write_table_data_rejects_other_database():
    """Writing to a three-part name outside the connected database is refused."""
    dest = database("Staging", tables=[("dbo", "Orders")])
    with pytest.raises(ValueError, match="refers to database OtherDb"):
        write_table_data(dest, [{"Customer": "x"}], "OtherDb.dbo.Orders", "SQL02")
    assert dest.batches == []
