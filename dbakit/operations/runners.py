"""
Objective: Orchestrates the CLI commands across servers and databases.
Each run returns the number of failed units so the CLI can set its exit code.
"""
import argparse
import csv
import os
import traceback
import pyodbc
import yaml
from typing import List, Optional
from ..core.auth import AuthManager
from ..core.connection import (
    DEFAULT_DRIVER,
    build_connection_string,
    connect,
    dac_server,
    get_database_from_conn,
    get_server_name_from_conn,
    list_databases,
    replace_db_in_conn,
    replace_server_in_conn,
)
from .decrypt import decrypt_objects
from .table_data import copy_tables, write_table_data

ENV_CONN = "DBAKIT_SQL_CONN"
ENV_USER = "DBAKIT_SQL_USER"
ENV_PASSWORD = "DBAKIT_SQL_PASSWORD"


def config_defaults(config: dict) -> dict:
    return config.get("defaults", {}) or {}


def setting(value, config: dict, key: str, fallback):
    """CLI value, then config.yaml defaults, then the built-in fallback."""
    if value is not None:
        return value
    configured = config_defaults(config).get(key)
    if configured is not None:
        return configured
    return fallback


def base_connection_string(args: argparse.Namespace, config: dict, server: str, conn: Optional[str] = None, dac: bool = False) -> str:
    if conn:
        return replace_server_in_conn(conn, dac_server(server) if dac else server)
    return build_connection_string(
        server=server,
        driver=setting(args.driver, config, "driver", DEFAULT_DRIVER),
        dac=dac,
        username=args.username or os.environ.get(ENV_USER),
        password=os.environ.get(ENV_PASSWORD),
        auth_interactive=args.ad_interactive,
    )


def auth_from_args(args: argparse.Namespace) -> AuthManager:
    return AuthManager(
        tenant_id=args.sp_tenant,
        client_id=args.sp_client_id,
        client_secret=args.sp_client_secret
    )


def resolve_databases(args: argparse.Namespace, conn_str: str, auth: AuthManager = None) -> List[str]:
    if args.databases:
        return [d.strip() for d in args.databases.split(",") if d.strip()]
    if args.all_databases:
        return list_databases(conn_str, auth_manager=auth, verbose=args.verbose)
    if args.database:
        return [args.database]
    db = get_database_from_conn(conn_str)
    return [db] if db else []


def run_decrypt(args: argparse.Namespace, config: dict) -> int:
    verbose = args.verbose
    encoding = setting(args.encoding, config, "encoding", "ascii")
    dac = setting(args.dac, config, "dac", True)

    servers = []
    if args.servers_list:
        servers.extend(args.servers_list)
    elif config.get("servers"):
        servers.extend(config["servers"])

    conn = args.conn or os.environ.get(ENV_CONN)
    if not servers and conn:
        s = get_server_name_from_conn(conn)
        if s != "unknown_server":
            servers.append(s)

    if not servers:
        print("ERROR: No servers specified. Use --servers, config.yaml or a connection string.")
        return 1

    auth = auth_from_args(args)
    failed = 0
    decrypted = 0

    for server in servers:
        if verbose:
            print(f"\n{'='*60}\nProcessing server: {server}\n{'='*60}\n")

        server_conn_str = base_connection_string(args, config, server, conn=conn, dac=dac)
        dbs = resolve_databases(args, server_conn_str, auth)
        if not dbs:
            print(f"ERROR: No database specified for server {server}. Skipping.")
            failed += 1
            continue

        for db_name in dbs:
            if verbose:
                print(f"Processing database: {db_name}")
            db_conn_str = replace_db_in_conn(server_conn_str, db_name)
            try:
                # the DAC allows one session at a time
                cn = connect(db_conn_str, auth_manager=auth, verbose=verbose)
                try:
                    results, f = decrypt_objects(
                        conn=cn,
                        server_name=server,
                        db_name=db_name,
                        names=args.objects,
                        encoding=encoding,
                        export_destination=args.export_destination,
                        dry_run=args.dry_run,
                        verbose=verbose
                    )
                finally:
                    cn.close()
            except pyodbc.Error as e:
                failed += 1
                print(f"ERROR: [Server: {server}] Failed to process database {db_name}: {e}")
                if verbose:
                    traceback.print_exc()
                continue

            failed += f
            decrypted += len(results)
            if not args.export_destination:
                for obj in results:
                    print(f"-- {server} {db_name} {obj.type} {obj.full_name}")
                    print(obj.script.strip())
                    print("GO\n")

    print(f"Total decrypted: {decrypted}, failed: {failed}")
    return failed


def bulk_options(args: argparse.Namespace, config: dict) -> dict:
    return {
        "batch_size": setting(args.batch_size, config, "batch_size", 50000),
        "notify_after": setting(args.notify_after, config, "notify_after", 5000),
        "truncate": args.truncate,
        "auto_create_table": args.auto_create_table,
        "keep_identity": args.keep_identity,
        "table_lock": args.table_lock,
    }


def run_copy(args: argparse.Namespace, config: dict) -> int:
    verbose = args.verbose
    source = args.source or (get_server_name_from_conn(args.source_conn) if args.source_conn else None)
    destination = args.destination or (
        get_server_name_from_conn(args.destination_conn) if args.destination_conn else source
    )
    if not source:
        print("ERROR: No source specified. Use --source or --source-conn.")
        return 1
    if args.destination_table and len(args.tables) > 1:
        print("ERROR: --destination-table can only be used with a single --table.")
        return 1

    auth = auth_from_args(args)
    src_conn_str = base_connection_string(args, config, source, conn=args.source_conn)
    dst_conn_str = base_connection_string(args, config, destination, conn=args.destination_conn)
    if args.database:
        src_conn_str = replace_db_in_conn(src_conn_str, args.database)
    dst_db = args.destination_database or args.database
    if dst_db:
        dst_conn_str = replace_db_in_conn(dst_conn_str, dst_db)

    options = bulk_options(args, config)
    options["destination_table"] = args.destination_table
    options["query"] = args.query

    try:
        with connect(src_conn_str, auth_manager=auth, verbose=verbose) as src, \
                connect(dst_conn_str, auth_manager=auth, verbose=verbose) as dst:
            results, failed = copy_tables(
                src, dst, args.tables, source, destination, verbose=verbose, **options
            )
    except pyodbc.Error as e:
        print(f"ERROR: [Server: {source}] Failed to connect for table copy to {destination}: {e}")
        if verbose:
            traceback.print_exc()
        return 1

    print(f"Total tables copied: {len(results)}, failed: {failed}, "
          f"rows: {sum(r.rows_copied for r in results)}")
    return failed


def load_rows(path: str) -> list:
    """Reads rows from a CSV file (header row required) or a YAML/JSON list of mappings."""
    ext = os.path.splitext(path)[1].lower()
    with open(path, "r", encoding="utf-8", newline="") as f:
        if ext == ".csv":
            return list(csv.DictReader(f))
        data = yaml.safe_load(f) or []
    if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
        raise ValueError(f"{path} must contain a list of mappings")
    return data


def run_write(args: argparse.Namespace, config: dict) -> int:
    verbose = args.verbose
    conn = args.conn or os.environ.get(ENV_CONN)
    server = args.server or (get_server_name_from_conn(conn) if conn else None)
    if not server:
        print("ERROR: No server specified. Use --server or a connection string.")
        return 1

    try:
        rows = load_rows(args.input)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"ERROR: Failed to read rows from {args.input}: {e}")
        return 1

    auth = auth_from_args(args)
    conn_str = base_connection_string(args, config, server, conn=conn)
    if args.database:
        conn_str = replace_db_in_conn(conn_str, args.database)

    columns = [c.strip() for c in args.columns.split(",")] if args.columns else None
    try:
        with connect(conn_str, auth_manager=auth, verbose=verbose) as cn:
            result = write_table_data(
                cn, rows, args.table, server, columns=columns, verbose=verbose, **bulk_options(args, config)
            )
    except (ValueError, pyodbc.Error) as e:
        print(f"ERROR: [Server: {server}] Failed to write {args.input} to {args.table}: {e}")
        if verbose:
            traceback.print_exc()
        return 1

    print(f"[{server}] Wrote {result.rows_copied} rows to "
          f"{result.destination_database}.{result.destination_table} in {result.elapsed:.1f}s")
    return 0
