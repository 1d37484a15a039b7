"""
Objective: Recover the source of modules created WITH ENCRYPTION.

SQL Server XORs the UTF-16 text of an encrypted module with a keystream that
only depends on the object, so a second definition of the same length,
applied to the same object and then rolled back, yields the keystream:

    plain = secret XOR known_plain XOR known_secret

The encrypted blobs live in sys.sysobjvalues, which is only readable over
the Dedicated Admin Connection.

In UTF8 mode each byte of the encoded text takes one 16-bit code unit, while
the server stores one code unit per character. Text outside ASCII therefore
shifts the alignment: a stand-in for an object with a non-ASCII name gets the
wrong padding, and non-ASCII characters in a definition do not decode.
"""
import os
import traceback
import pyodbc
from typing import Iterable, List, NamedTuple, Optional, Tuple
from ..core.filesystem import script_path, write_if_changed
from ..core.utils import bracket_ident, split_identifier

ENCODINGS = {
    "ascii": "ascii",
    "utf8": "utf-8",
    "utf-8": "utf-8",
}

QUERY_DIR = os.path.join(os.path.dirname(__file__), "..", "queries")


class DecryptionError(Exception):
    pass


class RollbackError(DecryptionError):
    """The stand-in could not be rolled back and the connection was closed."""


class EncryptedObject(NamedTuple):
    object_id: int
    schema: str
    name: str
    type: str
    type_desc: str
    parent_schema: Optional[str] = None
    parent_name: Optional[str] = None
    is_instead_of: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.schema}.{self.name}"

    @property
    def quoted_name(self) -> str:
        return f"{bracket_ident(self.schema)}.{bracket_ident(self.name)}"


class DecryptedObject(NamedTuple):
    server: str
    database: str
    type: str
    schema: str
    name: str
    full_name: str
    script: str


def resolve_encoding(encoding: str) -> str:
    codec = ENCODINGS.get((encoding or "").lower())
    if codec is None:
        raise ValueError(f"Unsupported encoding '{encoding}', expected one of: ASCII, UTF8")
    return codec


def encode_definition(text: str, encoding: str = "ascii") -> bytes:
    """
    Encodes module text the way it lines up with the encrypted blob: every
    encoded byte becomes the low byte of a 16-bit little-endian code unit.
    A multi-byte UTF8 character takes several code units, so this only
    matches the stored text for ASCII input.
    """
    codec = resolve_encoding(encoding)
    try:
        raw = text.encode(codec)
    except UnicodeEncodeError as e:
        raise DecryptionError(f"Definition cannot be encoded as {encoding}: {e}")
    return bytes(b for byte in raw for b in (byte, 0))


def decrypt_data(secret: bytes, known_plain: bytes, known_secret: bytes, encoding: str = "ascii") -> str:
    codec = resolve_encoding(encoding)
    if len(known_plain) < len(secret):
        raise DecryptionError(
            f"Known plaintext is {len(known_plain)} bytes, shorter than the {len(secret)} byte secret"
        )
    if len(known_secret) < len(secret):
        raise DecryptionError(
            f"Known secret is {len(known_secret)} bytes, shorter than the {len(secret)} byte secret"
        )

    result = bytearray()
    # The cipher works on 16-bit code units; only the low byte of each carries text.
    for i in range(0, len(secret), 2):
        result.append(secret[i] ^ known_plain[i] ^ known_secret[i])
    return result.decode(codec, errors="replace")


def stand_in_statement(obj: EncryptedObject) -> str:
    """Minimal ALTER ... WITH ENCRYPTION statement valid for the object's kind."""
    name = obj.quoted_name
    kind = obj.type.strip()
    if kind == "P":
        return f"ALTER PROCEDURE {name} WITH ENCRYPTION AS RETURN 0;"
    if kind == "V":
        return f"ALTER VIEW {name} WITH ENCRYPTION AS SELECT 1 AS c;"
    if kind == "FN":
        return f"ALTER FUNCTION {name}() RETURNS INT WITH ENCRYPTION AS BEGIN RETURN 0 END;"
    if kind == "IF":
        return f"ALTER FUNCTION {name}() RETURNS TABLE WITH ENCRYPTION AS RETURN SELECT 1 AS c;"
    if kind == "TF":
        return f"ALTER FUNCTION {name}() RETURNS @t TABLE (c INT) WITH ENCRYPTION AS BEGIN RETURN END;"
    if kind == "TR":
        if not obj.parent_name:
            raise DecryptionError(f"Trigger {obj.full_name} has no parent table")
        parent = f"{bracket_ident(obj.parent_schema or obj.schema)}.{bracket_ident(obj.parent_name)}"
        timing = "INSTEAD OF" if obj.is_instead_of else "AFTER"
        return f"ALTER TRIGGER {name} ON {parent} WITH ENCRYPTION {timing} INSERT AS RETURN;"
    raise DecryptionError(f"Object type '{kind}' of {obj.full_name} cannot be decrypted")


def build_known_plain(obj: EncryptedObject, secret_length: int, encoding: str = "ascii") -> Tuple[str, str]:
    """
    Returns (stored_definition, statement) for the stand-in.

    SQL Server keeps an altered module with ALTER rewritten to CREATE, so the
    stored text is one character longer than the statement. Both are padded
    with leading spaces until the stored text fills secret_length bytes.
    """
    statement = stand_in_statement(obj)
    stored = "CREATE" + statement[len("ALTER"):]
    units = len(encode_definition(stored, encoding)) // 2
    padding = secret_length // 2 - units
    if padding < 0:
        raise DecryptionError(
            f"Encrypted definition of {obj.full_name} is shorter than the minimal stand-in definition"
        )
    return " " * padding + stored, " " * padding + statement


def _read_query(name: str) -> str:
    with open(os.path.join(QUERY_DIR, name), "r", encoding="utf-8") as f:
        return f.read()


def read_secret(cur: pyodbc.Cursor, obj: EncryptedObject) -> bytes:
    cur.execute(_read_query("object_secret.sql"), obj.object_id)
    row = cur.fetchone()
    if not row or row[0] is None:
        raise DecryptionError(
            f"No encrypted definition found for {obj.full_name} in sys.sysobjvalues "
            "(a Dedicated Admin Connection is required)"
        )
    return bytes(row[0])


def known_secret_for(conn: pyodbc.Connection, obj: EncryptedObject, statement: str) -> bytes:
    """
    Applies the stand-in inside a transaction, reads its secret back and always
    rolls back. If the rollback fails the connection is closed with the
    transaction still open, so the server discards it.
    """
    autocommit = conn.autocommit
    conn.autocommit = False
    cur = conn.cursor()
    try:
        cur.execute(statement)
        return read_secret(cur, obj)
    finally:
        cur.close()
        try:
            conn.rollback()
        except pyodbc.Error as e:
            # autocommit stays off, switching it back on would commit the stand-in
            conn.close()
            raise RollbackError(
                f"Rollback of the stand-in definition for {obj.full_name} failed, "
                f"the connection was closed without committing, check the object: {e}"
            )
        conn.autocommit = autocommit


def list_encrypted_objects(conn: pyodbc.Connection, names: Optional[Iterable[str]] = None) -> List[EncryptedObject]:
    cur = conn.cursor()
    cur.execute(_read_query("encrypted_objects.sql"))
    rows = cur.fetchall()
    cur.close()

    objects = [
        EncryptedObject(
            object_id=row.ObjectId,
            schema=row.SchemaName,
            name=row.ObjectName,
            type=(row.ObjectType or "").strip(),
            type_desc=row.TypeDesc,
            parent_schema=row.ParentSchema,
            parent_name=row.ParentName,
            is_instead_of=bool(row.IsInsteadOf),
        )
        for row in rows
    ]
    if not names:
        return objects

    wanted = set()
    for n in names:
        wanted.add(".".join(split_identifier(n)).lower())
    return [o for o in objects if o.name.lower() in wanted or o.full_name.lower() in wanted]


def decrypt_object(conn: pyodbc.Connection, obj: EncryptedObject, encoding: str = "ascii") -> str:
    cur = conn.cursor()
    try:
        secret = read_secret(cur, obj)
    finally:
        cur.close()

    stored, statement = build_known_plain(obj, len(secret), encoding)
    known_plain = encode_definition(stored, encoding)
    known_secret = known_secret_for(conn, obj, statement)
    return decrypt_data(secret, known_plain, known_secret, encoding)


def decrypt_objects(
    conn: pyodbc.Connection,
    server_name: str,
    db_name: str,
    names: Optional[Iterable[str]] = None,
    encoding: str = "ascii",
    export_destination: Optional[str] = None,
    dry_run: bool = False,
    verbose: bool = False
) -> Tuple[List[DecryptedObject], int]:
    """
    Decrypts every encrypted module in the database (or the named ones).
    A failing object is reported and skipped. A failed rollback closes the
    connection and ends the run for this database.
    Returns (decrypted_objects, failed_count).
    """
    resolve_encoding(encoding)
    objects = list_encrypted_objects(conn, names)

    if verbose:
        print(f"DEBUG: [Server: {server_name}] found {len(objects)} encrypted objects in {db_name}")

    if not objects:
        print(f"[{server_name}] No encrypted objects found in {db_name}.")
        return [], 0

    results = []
    failed = 0
    for position, obj in enumerate(objects):
        try:
            script = decrypt_object(conn, obj, encoding)
        except RollbackError as e:
            skipped = len(objects) - position - 1
            failed += 1 + skipped
            print(f"ERROR: [Server: {server_name}] Failed to decrypt {db_name}.{obj.full_name} ({obj.type_desc}): {e}")
            if skipped:
                print(f"ERROR: [Server: {server_name}] Connection closed, {skipped} remaining objects in {db_name} not decrypted")
            break
        except (DecryptionError, pyodbc.Error) as e:
            failed += 1
            print(f"ERROR: [Server: {server_name}] Failed to decrypt {db_name}.{obj.full_name} ({obj.type_desc}): {e}")
            if verbose:
                traceback.print_exc()
            continue

        decrypted = DecryptedObject(
            server=server_name,
            database=db_name,
            type=obj.type_desc,
            schema=obj.schema,
            name=obj.name,
            full_name=obj.full_name,
            script=script,
        )
        results.append(decrypted)

        if export_destination:
            dest_file = script_path(export_destination, server_name, db_name, obj.type_desc, obj.schema, obj.name)
            if dry_run:
                if verbose:
                    print(f"WOULD WRITE: {dest_file}")
            elif write_if_changed(dest_file, decrypted.script.rstrip() + "\n"):
                if verbose:
                    print(f"WROTE: {dest_file}")
            elif verbose:
                print(f"SKIPPED (unchanged): {dest_file}")

    print(f"[{server_name}] Decrypted {len(results)} objects in {db_name}, {failed} failed.")
    return results, failed
