"""
JSON table files: one ``<table>.json`` per table holding a list of row dicts.

Writes:
  • Exclusive fcntl.flock() on a ``.lock`` sidecar around every read-modify-write.
  • Data written to a temp file in the same directory, then os.replace()d,
    so readers never observe a half-written table.
"""
import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from typing import Any, Dict, List


def table_path(db_path: str, name: str) -> str:
    return os.path.join(db_path, f"{name}.json")


def read_table(filepath: str) -> List[Dict[str, Any]]:
    """Return all rows of a table file; a missing file is an empty table."""
    if not os.path.exists(filepath):
        return []
    with open(filepath, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"Corrupt table file (expected list): {filepath}")
    return data


def write_table(filepath: str, rows: List[Dict[str, Any]]) -> None:
    directory = os.path.dirname(filepath) or '.'
    fd, tmp = tempfile.mkstemp(prefix='.tmp-', suffix='.json', dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(rows, f, ensure_ascii=False, indent=1)
        os.replace(tmp, filepath)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


@contextmanager
def locked(filepath: str):
    """Hold an exclusive POSIX lock for *filepath* (via its .lock sidecar)."""
    with open(filepath + '.lock', 'a+') as lock:
        fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock.fileno(), fcntl.LOCK_UN)
