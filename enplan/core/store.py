from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
import sqlite3
import threading
from typing import Iterable, Iterator, Optional, Sequence, Union

import pandas as pd

from enplan.io_utils import get_logger

from .errors import DataError, StoreIOError
from .param_table import INF, PARAMETERS, SET_TABLES


logger = get_logger(__name__)

SCHEMA_VERSION = 1
RESULT_TABLE_PREFIX = "v"

# One writer per store file inside this process.
_WRITE_LOCKS: dict[str, threading.Lock] = {}
_WRITE_LOCKS_GUARD = threading.Lock()


def _write_lock(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _WRITE_LOCKS_GUARD:
        if key not in _WRITE_LOCKS:
            _WRITE_LOCKS[key] = threading.Lock()
        return _WRITE_LOCKS[key]


def _quote(name: str) -> str:
    return '"' + str(name).replace('"', '""') + '"'


def _column_type(col: str) -> str:
    if col == "y":
        return "INTEGER"
    if col == "val":
        return "REAL"
    return "TEXT"


def schema_statements() -> list[str]:
    """DDL for an empty scenario store."""
    stmts = ["CREATE TABLE IF NOT EXISTS Version (version INTEGER PRIMARY KEY)"]
    for name in SET_TABLES:
        if name == "STORAGE":
            stmts.append(
                "CREATE TABLE IF NOT EXISTS STORAGE (val TEXT PRIMARY KEY, \"desc\" TEXT, "
                "netzeroyear INTEGER NOT NULL DEFAULT 1, netzerotg1 INTEGER NOT NULL DEFAULT 0, "
                "netzerotg2 INTEGER NOT NULL DEFAULT 0)"
            )
        else:
            stmts.append(f"CREATE TABLE IF NOT EXISTS {name} (val TEXT PRIMARY KEY, \"desc\" TEXT)")
    stmts.extend(
        [
            "CREATE TABLE IF NOT EXISTS NODE (val TEXT PRIMARY KEY, \"desc\" TEXT, r TEXT)",
            'CREATE TABLE IF NOT EXISTS TSGROUP1 (name TEXT PRIMARY KEY, "desc" TEXT, "order" INTEGER NOT NULL, '
            "multiplier REAL NOT NULL DEFAULT 1)",
            'CREATE TABLE IF NOT EXISTS TSGROUP2 (name TEXT PRIMARY KEY, "desc" TEXT, "order" INTEGER NOT NULL, '
            "multiplier REAL NOT NULL DEFAULT 1)",
            "CREATE TABLE IF NOT EXISTS LTsGroup (id INTEGER PRIMARY KEY, l TEXT UNIQUE, lorder INTEGER, "
            "tg2 TEXT, tg1 TEXT)",
            "CREATE TABLE IF NOT EXISTS TransmissionLine (id TEXT PRIMARY KEY, n1 TEXT, n2 TEXT, f TEXT, "
            "maxflow REAL, reactance REAL, yconstruction INTEGER, capitalcost REAL, fixedcost REAL, "
            "variablecost REAL, operationallife INTEGER, efficiency REAL, interestrate REAL)",
            "CREATE TABLE IF NOT EXISTS TransmissionModelingEnabled (id INTEGER PRIMARY KEY, r TEXT, f TEXT, "
            "y INTEGER, type INTEGER DEFAULT 1)",
            "CREATE TABLE IF NOT EXISTS DefaultParams (id INTEGER PRIMARY KEY AUTOINCREMENT, "
            "tablename TEXT UNIQUE, val REAL)",
        ]
    )
    for name, spec in PARAMETERS.items():
        cols = ", ".join(f"{c} {_column_type(c)}" for c in spec.index)
        stmts.append(f"CREATE TABLE IF NOT EXISTS {name} (id INTEGER PRIMARY KEY, {cols}, val REAL)")
    return stmts


class ScenarioStore:
    """
    Scenario database handle.

    Reads go through pandas. Writes run inside one transaction and are
    serialized per database file.
    """

    def __init__(self, path: Union[str, Path], *, must_exist: bool = True, timeout: float = 30.0) -> None:
        self.path = Path(path)
        self.timeout = timeout
        if must_exist and not self.path.exists():
            raise DataError(f"Scenario database not found: {self.path}")

    def __repr__(self) -> str:
        return f"ScenarioStore({str(self.path)!r})"

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(str(self.path), timeout=self.timeout, isolation_level=None)
        except sqlite3.Error as exc:
            raise StoreIOError(f"Cannot open {self.path}: {exc}") from exc
        try:
            yield conn
        finally:
            conn.close()

    def list_tables(self) -> list[str]:
        with self.connect() as conn:
            try:
                rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name").fetchall()
            except sqlite3.Error as exc:
                raise StoreIOError(f"Cannot list tables in {self.path}: {exc}") from exc
        return [r[0] for r in rows]

    def table_exists(self, name: str) -> bool:
        with self.connect() as conn:
            try:
                row = conn.execute(
                    "SELECT 1 FROM sqlite_master WHERE type IN ('table', 'view') AND name = ?", (name,)
                ).fetchone()
            except sqlite3.Error as exc:
                raise StoreIOError(f"Cannot inspect {self.path}: {exc}") from exc
        return row is not None

    def table_columns(self, name: str) -> list[str]:
        with self.connect() as conn:
            try:
                rows = conn.execute(f"PRAGMA table_info({_quote(name)})").fetchall()
            except sqlite3.Error as exc:
                raise StoreIOError(f"Cannot inspect {name} in {self.path}: {exc}") from exc
        return [r[1] for r in rows]

    def read_table(self, name: str, *, order_by: Optional[str] = None) -> pd.DataFrame:
        sql = f"SELECT * FROM {_quote(name)}"
        if order_by:
            sql += f" ORDER BY {order_by}"
        with self.connect() as conn:
            try:
                df = pd.read_sql_query(sql, conn)
            except (sqlite3.Error, pd.errors.DatabaseError) as exc:
                raise StoreIOError(f"Cannot read {name} from {self.path}: {exc}") from exc
        df.columns = [str(c).strip() for c in df.columns]
        return df

    def execute(self, statements: Iterable[Union[str, tuple[str, Sequence]]]) -> None:
        """Run statements in one transaction; roll back everything on failure."""
        with _write_lock(self.path), self.connect() as conn:
            try:
                conn.execute("BEGIN")
                for stmt in statements:
                    if isinstance(stmt, tuple):
                        conn.execute(stmt[0], stmt[1])
                    else:
                        conn.execute(stmt)
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreIOError(f"Transaction on {self.path} failed: {exc}") from exc

    def result_tables(self) -> list[str]:
        return [name for name in self.list_tables() if name.startswith(RESULT_TABLE_PREFIX)]

    def replace_result_tables(self, tables: dict[str, pd.DataFrame], *, clear_existing: bool = True) -> None:
        """
        Write result tables in one transaction.

        With clear_existing every prior result table is dropped first, so the
        store only holds the families of the latest run.
        """
        with _write_lock(self.path), self.connect() as conn:
            try:
                conn.execute("BEGIN")
                if clear_existing:
                    prior = conn.execute(
                        "SELECT name FROM sqlite_master WHERE type = 'table' AND name LIKE ?",
                        (RESULT_TABLE_PREFIX + "%",),
                    ).fetchall()
                    for (name,) in prior:
                        if name.startswith(RESULT_TABLE_PREFIX):
                            conn.execute(f"DROP TABLE IF EXISTS {_quote(name)}")
                for name in sorted(tables):
                    df = tables[name]
                    cols = list(df.columns)
                    conn.execute(f"DROP TABLE IF EXISTS {_quote(name)}")
                    col_sql = ", ".join(
                        f"{_quote(c)} {'TEXT' if c == 'solvedtm' else _column_type(c)}" for c in cols
                    )
                    conn.execute(f"CREATE TABLE {_quote(name)} ({col_sql})")
                    if not df.empty:
                        placeholders = ", ".join("?" for _ in cols)
                        conn.executemany(
                            f"INSERT INTO {_quote(name)} VALUES ({placeholders})",
                            df.astype(object).itertuples(index=False, name=None),
                        )
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreIOError(f"Writing result tables to {self.path} failed: {exc}") from exc
        logger.info("Wrote %d result tables to %s", len(tables), self.path)


def create_store(path: Union[str, Path], *, defaultvals: bool = True) -> ScenarioStore:
    """Create an empty scenario database; optionally populate DefaultParams with built-in defaults."""
    path = Path(path)
    if path.exists():
        raise StoreIOError(f"Refusing to overwrite existing database: {path}")
    store = ScenarioStore(path, must_exist=False)
    stmts: list = list(schema_statements())
    stmts.append(("INSERT INTO Version (version) VALUES (?)", (SCHEMA_VERSION,)))
    if defaultvals:
        for name, spec in PARAMETERS.items():
            if spec.default is None or spec.default == INF:
                continue
            stmts.append(("INSERT INTO DefaultParams (tablename, val) VALUES (?, ?)", (name, float(spec.default))))
    store.execute(stmts)
    logger.info("Created scenario database %s", path)
    return store


def set_parameter_default(path: Union[str, Path], table: str, val: float) -> None:
    """Insert or replace the DefaultParams row for one parameter table."""
    if table not in PARAMETERS:
        raise DataError(f"Unknown parameter table: {table}")
    store = ScenarioStore(path)
    store.execute(
        [
            ("DELETE FROM DefaultParams WHERE tablename = ?", (table,)),
            ("INSERT INTO DefaultParams (tablename, val) VALUES (?, ?)", (table, float(val))),
        ]
    )
    logger.info("Default for %s set to %s", table, val)


def drop_result_tables(path: Union[str, Path]) -> list[str]:
    """Drop every result table (names starting with 'v') in one transaction."""
    store = ScenarioStore(path)
    names = store.result_tables()
    store.execute([f"DROP TABLE IF EXISTS {_quote(n)}" for n in names])
    logger.info("Dropped %d result tables from %s", len(names), path)
    return names


def compact_store(path: Union[str, Path]) -> None:
    """Reclaim free pages after large deletes."""
    store = ScenarioStore(path)
    with _write_lock(store.path), store.connect() as conn:
        try:
            conn.execute("VACUUM")
        except sqlite3.Error as exc:
            raise StoreIOError(f"VACUUM on {path} failed: {exc}") from exc
    logger.info("Compacted %s", path)
