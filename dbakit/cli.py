import argparse
import os
import sys
from .core.utils import load_config, load_dotenv
from .operations.runners import run_copy, run_decrypt, run_write


def add_connection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--driver", help="ODBC Driver to use (default: config.yaml or ODBC Driver 18 for SQL Server).")
    parser.add_argument("--username", help="SQL login; the password is read from DBAKIT_SQL_PASSWORD. Uses Windows auth when omitted.")
    parser.add_argument("--ad-interactive", action="store_true", help="Use Active Directory Interactive auth.")
    parser.add_argument("--sp-tenant", help="Service Principal Tenant ID.")
    parser.add_argument("--sp-client-id", help="Service Principal Client ID.")
    parser.add_argument("--sp-client-secret", help="Service Principal Client Secret.")


def add_bulk_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--batch-size", type=int, help="Rows per committed batch, 0 for a single transaction (default: 50000).")
    parser.add_argument("--notify-after", type=int, help="Rows between progress notifications (default: 5000).")
    parser.add_argument("--truncate", action="store_true", help="Truncate the destination table first.")
    parser.add_argument("--auto-create-table", action="store_true", help="Create the destination table when missing.")
    parser.add_argument("--keep-identity", action="store_true", help="Preserve source identity values.")
    parser.add_argument("--table-lock", action="store_true", help="Take a table lock for the duration of the copy.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dbakit", description="SQL Server administration helpers.")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml (default: config.yaml)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    dec = sub.add_parser("decrypt", help="Decrypt modules created WITH ENCRYPTION.")
    dec.add_argument("--conn", help="ODBC connection string (overrides server/auth args).")
    dec.add_argument("--servers", nargs="+", dest="servers_list", help="SQL Servers to process.")
    dec.add_argument("--database", help="Specific database to process.")
    dec.add_argument("--databases", help="Comma-separated list of databases.")
    dec.add_argument("--all-databases", action="store_true", help="Iterate all user databases.")
    dec.add_argument("--object", dest="objects", action="append", help="Object name (name or schema.name), repeatable.")
    dec.add_argument("--encoding", type=str.lower, choices=["ascii", "utf8"], help="Text encoding of the definitions (default: ascii).")
    dec.add_argument("--export-destination", help="Directory to write decrypted scripts to instead of printing them.")
    dec.add_argument("--no-dac", dest="dac", action="store_false", default=None, help="Do not connect through the Dedicated Admin Connection.")
    dec.add_argument("--dry-run", action="store_true", help="Simulate writes.")
    add_connection_args(dec)
    dec.set_defaults(func=run_decrypt)

    cp = sub.add_parser("copy-table", help="Copy table data between databases or instances.")
    cp.add_argument("--source", help="Source SQL Server.")
    cp.add_argument("--source-conn", help="Source ODBC connection string.")
    cp.add_argument("--destination", help="Destination SQL Server (default: source).")
    cp.add_argument("--destination-conn", help="Destination ODBC connection string.")
    cp.add_argument("--database", help="Source database (also the destination database unless overridden).")
    cp.add_argument("--destination-database", help="Destination database.")
    cp.add_argument("--table", dest="tables", action="append", required=True, help="Table to copy, repeatable.")
    cp.add_argument("--destination-table", help="Destination table name (single table only).")
    cp.add_argument("--query", help="Query to select source rows instead of the whole table.")
    add_bulk_args(cp)
    add_connection_args(cp)
    cp.set_defaults(func=run_copy)

    wr = sub.add_parser("write-table", help="Write rows from a CSV, JSON or YAML file to a table.")
    wr.add_argument("--conn", help="ODBC connection string (overrides server/auth args).")
    wr.add_argument("--server", help="Destination SQL Server.")
    wr.add_argument("--database", help="Destination database.")
    wr.add_argument("--table", required=True, help="Destination table.")
    wr.add_argument("--input", required=True, help="CSV, JSON or YAML file holding the rows.")
    wr.add_argument("--columns", help="Comma-separated column names to write (default: all).")
    add_bulk_args(wr)
    add_connection_args(wr)
    wr.set_defaults(func=run_write)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    load_dotenv()

    config_path = args.config
    if not os.path.exists(config_path):
        package_dir = os.path.dirname(os.path.dirname(__file__))
        potential = os.path.join(package_dir, "config.yaml")
        if os.path.exists(potential):
            config_path = potential

    config = load_config(config_path)

    if args.verbose:
        print(f"Using configuration from: {config_path if os.path.exists(config_path) else 'Defaults (empty)'}")

    failed = args.func(args, config)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
