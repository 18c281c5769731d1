# PRD: Core Module - SQLite Connection Helper
# Reference: docs/ARCHITECTURE.md - "Risk store"
#
# Every citadel-risk SQLite database goes through `connect()` instead of
# raw `sqlite3.connect()` so each connection gets:
#
#   - WAL journal mode (scheduled syncs write while the CLI reads)
#   - busy_timeout to ride out SQLITE_BUSY under contention
#   - foreign_keys enforcement (transition audit rows reference risks)

import sqlite3
from pathlib import Path
from typing import Union


def connect(
    db_path: Union[str, Path],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode and safe PRAGMAs.

    Args:
        db_path: Path to the database file, or ``":memory:"``.
        row_factory: If True, set conn.row_factory = sqlite3.Row.
        check_same_thread: Passed to sqlite3.connect().
    """
    conn = sqlite3.connect(str(db_path), check_same_thread=check_same_thread)
    if str(db_path) != ":memory:":
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn
