import pyodbc
import re
import traceback
from typing import List, Optional
from .auth import AuthManager

DEFAULT_DRIVER = "ODBC Driver 18 for SQL Server"
DAC_PREFIX = "ADMIN:"


def ensure_driver_available(driver_name: str) -> str:
    """Checks if the requested driver is available, or finds a suitable fallback."""
    installed = pyodbc.drivers()
    if driver_name in installed:
        return driver_name

    low_installed = [d.lower() for d in installed]
    if driver_name and driver_name.lower() in low_installed:
        return installed[low_installed.index(driver_name.lower())]

    for d in installed:
        if "SQL Server" in d and "18" in d:
            return d
    for d in installed:
        if "SQL Server" in d and "17" in d:
            return d

    raise RuntimeError(f"Requested ODBC driver {driver_name} not found, available drivers: {installed}")


def replace_db_in_conn(conn: str, dbname: str) -> str:
    """Replaces the database/initial catalog in the connection string."""
    out = re.sub(r'(?i)\b(database|initial catalog)\s*=\s*[^;]+;?', '', conn).strip()
    if out and not out.endswith(";"):
        out = out + ";"
    out = out + f"DATABASE={dbname};"
    return out


def replace_server_in_conn(conn: str, servername: str) -> str:
    """Replaces the server in the connection string."""
    out = re.sub(r'(?i)\bserver\s*=[^;]+;?', '', conn).strip()
    if out and not out.endswith(";"):
        out = out + ";"
    out = out + f"SERVER={servername};"
    return out


def get_server_name_from_conn(conn: str) -> str:
    """Extracts server name from connection string, without any DAC prefix."""
    m = re.search(r'(?i)\bserver\s*=\s*([^;]+)', conn)
    if m:
        return strip_dac_prefix(m.group(1).strip())
    return "unknown_server"


def get_database_from_conn(conn: str) -> Optional[str]:
    m = re.search(r'(?i)\b(database|initial catalog)\s*=\s*([^;]+)', conn)
    if m:
        return m.group(2).strip()
    return None


def dac_server(server: str) -> str:
    """Returns the server name addressed through the Dedicated Admin Connection."""
    if server.upper().startswith(DAC_PREFIX):
        return server
    # tcp:host,port style names keep their protocol prefix out of the DAC marker
    if server.lower().startswith("tcp:"):
        server = server[4:]
    return DAC_PREFIX + server


def strip_dac_prefix(server: str) -> str:
    if server.upper().startswith(DAC_PREFIX):
        return server[len(DAC_PREFIX):]
    return server


def mask_conn(conn: str) -> str:
    return re.sub(r'(?i)\b(pwd|password)=[^;]+', r'\1=***', conn)


def build_connection_string(
    server: str,
    database: Optional[str] = None,
    driver: str = DEFAULT_DRIVER,
    dac: bool = False,
    username: str = None,
    password: str = None,
    auth_interactive: bool = False,
    trust_server_certificate: bool = True
) -> str:
    """Builds an ODBC connection string."""
    use_driver = ensure_driver_available(driver)

    server_part = dac_server(server) if dac else server
    db_part = f"DATABASE={database};" if database else ""
    trust = "yes" if trust_server_certificate else "no"

    if auth_interactive:
        return (
            f"DRIVER={{{use_driver}}};SERVER={server_part};{db_part}"
            f"Authentication=ActiveDirectoryInteractive;Encrypt=yes;TrustServerCertificate={trust};"
        )

    if username:
        return (
            f"DRIVER={{{use_driver}}};SERVER={server_part};{db_part}"
            f"UID={username};PWD={password or ''};Encrypt=yes;TrustServerCertificate={trust};"
        )

    return (
        f"DRIVER={{{use_driver}}};SERVER={server_part};{db_part}"
        f"Trusted_Connection=yes;Encrypt=yes;TrustServerCertificate={trust};"
    )


def connect(conn_str: str, auth_manager: AuthManager = None, autocommit: bool = True, verbose: bool = False) -> pyodbc.Connection:
    """Opens a pyodbc connection, injecting a Service Principal token when one is available."""
    connect_args = {"autocommit": autocommit}
    if auth_manager and auth_manager.get_token_credential():
        attrs = auth_manager.connect_attrs()
        if attrs:
            connect_args["attrs_before"] = attrs

    if verbose:
        print(f"DEBUG: Connecting using connection string: {mask_conn(conn_str)}")
    return pyodbc.connect(conn_str, **connect_args)


def list_databases(conn_str: str, auth_manager: AuthManager = None, verbose: bool = False) -> List[str]:
    """Lists user databases from the server."""
    master_conn = replace_db_in_conn(conn_str, "master")
    dbs = []

    try:
        with connect(master_conn, auth_manager=auth_manager, verbose=verbose) as conn:
            cur = conn.cursor()
            cur.execute(r"""
                SELECT name
                FROM sys.databases
                WHERE database_id > 4 --- skips system databases
                    AND state = 0 --- skips offline databases
                ORDER BY name;
            """)
            rows = cur.fetchall()

        for row in rows:
            dbs.append(row[0])

    except pyodbc.Error as e:
        if verbose:
            traceback.print_exc()
        print(f"WARN: Failed to list databases: {e}")

    if verbose:
        print(f"DEBUG: Found {len(dbs)} databases: {', '.join(dbs)}")
    return dbs
