"""
This module contains pytest fixtures to be used throughout the entire test suite.
"""
import pytest

from tests.fakes import EncryptedModuleServer, FakeConnection


@pytest.fixture
def fake_connection() -> FakeConnection:
    """A fake pyodbc connection with no scripted results."""
    return FakeConnection()


@pytest.fixture
def encrypted_server() -> EncryptedModuleServer:
    """A simulated database holding one encrypted module of every supported kind."""
    server = EncryptedModuleServer()
    server.add(101, "dbo", "usp_GetOrders", "P", "SQL_STORED_PROCEDURE",
               "CREATE PROCEDURE dbo.usp_GetOrders @CustomerId INT WITH ENCRYPTION AS\n"
               "SELECT OrderId, Total FROM dbo.Orders WHERE CustomerId = @CustomerId;")
    server.add(102, "sales", "vw_Totals", "V", "VIEW",
               "CREATE VIEW sales.vw_Totals WITH ENCRYPTION AS\n"
               "SELECT CustomerId, SUM(Total) AS Total FROM dbo.Orders GROUP BY CustomerId;")
    server.add(103, "dbo", "fn_Tax", "FN", "SQL_SCALAR_FUNCTION",
               "CREATE FUNCTION dbo.fn_Tax (@amount MONEY) RETURNS MONEY WITH ENCRYPTION AS\n"
               "BEGIN RETURN @amount * 0.2 END;")
    server.add(104, "dbo", "trg_Orders_Audit", "TR", "SQL_TRIGGER",
               "CREATE TRIGGER dbo.trg_Orders_Audit ON dbo.Orders WITH ENCRYPTION AFTER UPDATE AS\n"
               "INSERT INTO dbo.OrdersAudit (OrderId) SELECT OrderId FROM inserted;",
               parent_schema="dbo", parent_name="Orders")
    return server
