"""
Objective: General utility functions (.env loading, config loading, identifier handling).
"""
import os
import yaml
from typing import List, Optional, Tuple

DEFAULT_SCHEMA = "dbo"


def load_dotenv(path: str = ".env") -> None:
    """Loads environment variables from a .env file."""
    if not os.path.exists(path):
        return
    with open(path, "r", encoding="utf-8") as f:
        for ln in f:
            ln = ln.strip()
            if not ln or ln.startswith("#") or "=" not in ln:
                continue
            k, v = ln.split("=", 1)
            k = k.strip()
            v = v.strip().strip("'\"")
            if k and k not in os.environ:
                os.environ[k] = v


def load_config(path: str = "config.yaml") -> dict:
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    return {}


def bracket_ident(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def split_identifier(name: str) -> List[str]:
    """
    Splits a dotted SQL Server name into its parts.
    Bracketed parts may contain dots, and ']]' inside brackets is an escaped ']'.
    """
    parts = []
    current = []
    i = 0
    in_brackets = False
    quoted = False
    while i < len(name):
        ch = name[i]
        if in_brackets:
            if ch == "]":
                if i + 1 < len(name) and name[i + 1] == "]":
                    current.append("]")
                    i += 2
                    continue
                in_brackets = False
            else:
                current.append(ch)
        elif ch == "[" and not current:
            in_brackets = True
            quoted = True
        elif ch == ".":
            parts.append("".join(current) if quoted else "".join(current).strip())
            current = []
            quoted = False
        else:
            current.append(ch)
        i += 1
    if in_brackets:
        raise ValueError(f"Unterminated bracket in name: {name}")
    parts.append("".join(current) if quoted else "".join(current).strip())
    if any(p == "" for p in parts):
        raise ValueError(f"Invalid object name: {name}")
    return parts


def split_table_name(name: str) -> Tuple[Optional[str], str, str]:
    """Returns (database, schema, table) from a one-, two- or three-part name."""
    parts = split_identifier(name)
    if len(parts) == 1:
        return None, DEFAULT_SCHEMA, parts[0]
    if len(parts) == 2:
        return None, parts[0], parts[1]
    if len(parts) == 3:
        return parts[0], parts[1], parts[2]
    raise ValueError(f"Too many name parts in: {name}")


def quote_table_name(schema: str, table: str) -> str:
    return f"{bracket_ident(schema)}.{bracket_ident(table)}"
