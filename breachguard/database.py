"""
Database access used by backups and configuration fixes.

``DatabaseAdapter`` is the seam between the backup manager and whatever
database the site runs on.  Tables are exported as portable SQL statements
(DROP / CREATE / INSERT) so that a restore is a plain script replay.
``SQLiteAdapter`` is the bundled implementation.
"""

import logging
import re
import sqlite3
from abc import ABC, abstractmethod
from contextlib import closing
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote_identifier(name: str) -> str:
    if not _IDENT_RE.match(name):
        raise ValueError(f"Invalid table name: {name!r}")
    return f'"{name}"'


def sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "X'" + bytes(value).hex() + "'"
    return "'" + str(value).replace("'", "''") + "'"


class DatabaseAdapter(ABC):
    """Minimal database interface for backup, restore and option changes."""

    table_prefix: str = ""

    def table_name(self, logical: str) -> str:
        return self.table_prefix + logical

    @abstractmethod
    def table_exists(self, table: str) -> bool:
        ...

    @abstractmethod
    def export_table(self, table: str) -> Tuple[str, int]:
        """SQL script recreating *table* with its rows, and the row count."""

    @abstractmethod
    def execute_script(self, script: str) -> None:
        ...

    @abstractmethod
    def rows(self, table: str) -> Set[Tuple]:
        ...

    @abstractmethod
    def get_options(self, names: Iterable[str]) -> Dict[str, Optional[str]]:
        ...

    @abstractmethod
    def set_options(self, values: Dict[str, Optional[str]]) -> None:
        """Write option values; None deletes the option."""


class SQLiteAdapter(DatabaseAdapter):
    def __init__(self, path: str, table_prefix: str = "wp_"):
        self.path = path
        self.table_prefix = table_prefix

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path, timeout=10.0)

    def table_exists(self, table: str) -> bool:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name=?",
                               (table,)).fetchone()
        return row is not None

    def export_table(self, table: str) -> Tuple[str, int]:
        ident = quote_identifier(table)
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT sql FROM sqlite_master WHERE type='table' AND name=?",
                               (table,)).fetchone()
            if row is None:
                raise LookupError(f"Table {table} does not exist")
            create_sql = row[0]
            indexes = [r[0] for r in conn.execute(
                "SELECT sql FROM sqlite_master WHERE type='index' AND tbl_name=? AND sql IS NOT NULL "
                "ORDER BY name", (table,))]
            rows = conn.execute(f"SELECT * FROM {ident} ORDER BY rowid").fetchall()

        lines: List[str] = [f"DROP TABLE IF EXISTS {ident};", create_sql.rstrip(";") + ";"]
        for values in rows:
            lines.append(f"INSERT INTO {ident} VALUES ({', '.join(sql_literal(v) for v in values)});")
        lines.extend(sql.rstrip(";") + ";" for sql in indexes)
        return "\n".join(lines) + "\n", len(rows)

    def execute_script(self, script: str) -> None:
        with closing(self._connect()) as conn:
            try:
                conn.executescript("BEGIN;\n" + script + "\nCOMMIT;")
            except sqlite3.Error:
                if conn.in_transaction:
                    conn.rollback()
                raise

    def rows(self, table: str) -> Set[Tuple]:
        with closing(self._connect()) as conn:
            return set(conn.execute(f"SELECT * FROM {quote_identifier(table)}").fetchall())

    def get_options(self, names: Iterable[str]) -> Dict[str, Optional[str]]:
        table = quote_identifier(self.table_name("options"))
        values: Dict[str, Optional[str]] = {}
        with closing(self._connect()) as conn:
            for name in names:
                row = conn.execute(f"SELECT option_value FROM {table} WHERE option_name=?",
                                   (name,)).fetchone()
                values[name] = row[0] if row else None
        return values

    def set_options(self, values: Dict[str, Optional[str]]) -> None:
        table = quote_identifier(self.table_name("options"))
        with closing(self._connect()) as conn:
            with conn:
                for name, value in values.items():
                    if value is None:
                        conn.execute(f"DELETE FROM {table} WHERE option_name=?", (name,))
                        continue
                    cur = conn.execute(f"UPDATE {table} SET option_value=? WHERE option_name=?",
                                       (value, name))
                    if cur.rowcount == 0:
                        conn.execute(f"INSERT INTO {table} (option_name, option_value) VALUES (?, ?)",
                                     (name, value))
        logger.debug("Updated %d option(s)", len(values))
