# Core Module - SQLite Connections
#
# ThreatStore opens its database through connect().  The scheduler thread
# writes threats and sync status while the API/CLI read them, and a manual
# sync may overlap a scheduled one, so every file-backed connection runs
# in WAL mode with a busy timeout.  Foreign keys are switched on because
# classifications cascade-delete with their threat.

import sqlite3
from pathlib import Path
from typing import Union

MEMORY_DB = ":memory:"
BUSY_TIMEOUT_MS = 5000

# Applied to every connection, in order.
_PRAGMAS = (
    f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}",
    "PRAGMA foreign_keys=ON",
)


def connect(
    db_path: Union[str, Path],
    *,
    row_factory: bool = False,
    check_same_thread: bool = True,
) -> sqlite3.Connection:
    """Open the ingestion database, creating its directory if needed.

    ``row_factory=True`` returns rows as ``sqlite3.Row``.  Pass
    ``check_same_thread=False`` when the connection is shared between the
    scheduler thread and request handlers.
    """
    target = str(db_path)
    in_memory = target == MEMORY_DB
    if not in_memory:
        Path(target).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(target, check_same_thread=check_same_thread)
    if not in_memory:
        conn.execute("PRAGMA journal_mode=WAL")
    for pragma in _PRAGMAS:
        conn.execute(pragma)
    if row_factory:
        conn.row_factory = sqlite3.Row
    return conn
