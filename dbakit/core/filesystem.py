import os
import re
import hashlib
import tempfile


def sanitise_filename(name: str) -> str:
    """Sanitises a string to be safe for filenames."""
    name = re.sub(r"[^\w.-]", "_", name)
    name = re.sub(r"__+", "_", name).strip("_")
    return name or "unnamed"


def script_path(root: str, server: str, database: str, type_desc: str, schema: str, name: str) -> str:
    """
    Layout: <root>/<server>/<database>/<TYPE_DESC>/<schema>.<name>.sql
    Named instances (HOST\\INSTANCE) become HOST_INSTANCE.
    """
    return os.path.join(
        root,
        sanitise_filename(server),
        sanitise_filename(database),
        sanitise_filename(type_desc),
        f"{sanitise_filename(schema)}.{sanitise_filename(name)}.sql",
    )


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def is_different(path: str, content: str) -> bool:
    """Checks if the content is different from the file at path."""
    if not os.path.exists(path):
        return True
    with open(path, "rb") as f:
        existing_content = f.read()
    return _digest(existing_content) != _digest(content.encode("utf-8"))


def write_if_changed(path: str, content: str) -> bool:
    """Writes content to path atomically, only if it has changed. Returns True if written."""
    if not is_different(path, content):
        return False

    dirn = os.path.dirname(path) or "."
    os.makedirs(dirn, exist_ok=True)
    fd, tmppath = tempfile.mkstemp(dir=dirn, prefix=".tmp_")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content.encode("utf-8"))
        os.replace(tmppath, path)
        return True
    except OSError:
        if os.path.exists(tmppath):
            os.remove(tmppath)
        raise
