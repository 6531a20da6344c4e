#!/usr/bin/env python3
"""
Xata-to-PostgreSQL Migrator
===========================

Copies every table of the ``public`` schema of a Xata (PostgreSQL-compatible)
database into a plain PostgreSQL server, without pg_dump / pg_restore.

Migration phases (each phase finishes for ALL tables before the next starts):
  Phase 1: Introspection : tables, columns (catalog-formatted types), primary keys;
                           xata_private defaults dropped, nextval() ints -> SERIAL/BIGSERIAL
  Phase 2: Schema        : DROP TABLE IF EXISTS ... CASCADE, then CREATE TABLE
  Phase 3: Data          : server-side cursor on source -> COPY FROM STDIN on target

The destination is always rewritten: tables present on the source are dropped
and recreated.  The run stops at the first failure; nothing is retried.

Requirements:
  pip install psycopg2-binary python-dotenv tqdm

Configuration (CLI flag > environment > .env file):
  XATA_DATABASE_URL   source connection string
  DATABASE_URL        destination connection string

Usage:
  python xata_to_pg_migrator.py
  python xata_to_pg_migrator.py --source-url postgresql://... --dest-url postgresql://...

  # Print the generated DDL without touching the destination:
  python xata_to_pg_migrator.py --no-execute --output-file schema.sql

  # Recreate the tables but copy no rows:
  python xata_to_pg_migrator.py --schema-only
"""

from __future__ import annotations

import argparse
import datetime
import enum
import io
import logging
import os
import re
import sys
import textwrap
import time
import traceback
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import psycopg2
import psycopg2.extensions
from dotenv import load_dotenv
from tqdm import tqdm

# =============================================================================
# Module-level logger, configured in setup_logging()
# =============================================================================
log = logging.getLogger("xata_to_pg_migrator")

# =============================================================================
# Defaults (overridden by CLI / env vars)
# =============================================================================
SOURCE_URL_ENV = "XATA_DATABASE_URL"
DEST_URL_ENV = "DATABASE_URL"
DEFAULT_ENV_FILE = ".env"
DEFAULT_SCHEMA = "public"
DEFAULT_FETCH_SIZE = 1000
LOG_DIR = "migration_logs"

# =============================================================================
# Xata-specific artifacts that do not exist on a vanilla PostgreSQL server
# =============================================================================
XATA_PRIVATE_MARKERS = ("xata_private", "::xata_")
SEQUENCE_DEFAULT_MARKER = "nextval("

# format_type() spellings of the integer families that have a SERIAL twin
_INTEGER_TYPE_PATTERN = re.compile(r"^(?:integer|int4|int)$", re.IGNORECASE)
_BIGINT_TYPE_PATTERN = re.compile(r"^(?:bigint|int8)$", re.IGNORECASE)
SERIAL_TYPES = frozenset({"SERIAL", "BIGSERIAL"})

# COPY text format escapes
_COPY_NULL = "\\N"
_COPY_ESCAPES = str.maketrans({
    "\\": "\\\\",
    "\t": "\\t",
    "\n": "\\n",
    "\r": "\\r",
})


# #############################################################################
#  SECTION 1: Errors
# #############################################################################

class MigrationError(Exception):
    """Base class for fatal migration errors; carries the phase and table."""

    phase = "migration"

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.table = table

    def __str__(self) -> str:
        if self.table:
            return f'[{self.phase}] table "{self.table}": {self.message}'
        return f"[{self.phase}] {self.message}"


class ConfigurationError(MigrationError):
    """Missing or invalid connection parameters."""
    phase = "config"


class DatabaseConnectionError(MigrationError):
    """Source or destination unreachable at startup."""
    phase = "connect"


class IntrospectionError(MigrationError):
    """Catalog query failed on the source."""
    phase = "introspect"


class SchemaApplyError(MigrationError):
    """DROP / CREATE failed on the destination."""
    phase = "schema"


class DataTransferError(MigrationError):
    """Source read or destination COPY failed."""
    phase = "data"


# #############################################################################
#  SECTION 2: Schema model
# #############################################################################

@dataclass
class Column:
    """Column as reported by the source catalog."""
    name: str
    data_type: str
    nullable: bool = True
    default: Optional[str] = None


@dataclass
class Table:
    """Table definition; column order is catalog order and COPY order."""
    name: str
    columns: List[Column] = field(default_factory=list)
    primary_key: List[str] = field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def serial_columns(self) -> List[Column]:
        return [c for c in self.columns if c.data_type.upper() in SERIAL_TYPES]


# #############################################################################
#  SECTION 3: Configuration & connections
# #############################################################################

@dataclass
class MigrationConfig:
    """Run configuration, built once in main() and passed down explicitly."""
    source_url: str
    dest_url: Optional[str]
    schema: str = DEFAULT_SCHEMA
    fetch_size: int = DEFAULT_FETCH_SIZE
    statement_timeout_ms: int = 0
    schema_only: bool = False
    no_execute: bool = False
    show_progress: bool = True


def describe_dsn(url: str) -> str:
    """Render host:port/dbname for logs, without credentials."""
    try:
        params = psycopg2.extensions.parse_dsn(url)
    except psycopg2.ProgrammingError:
        return "<invalid dsn>"
    host = params.get("host", "localhost")
    port = params.get("port", "5432")
    dbname = params.get("dbname", params.get("user", ""))
    return f"{host}:{port}/{dbname}"


def validate_url(name: str, url: Optional[str]) -> str:
    if not url or not url.strip():
        raise ConfigurationError(f"{name} is not set")
    try:
        psycopg2.extensions.parse_dsn(url)
    except psycopg2.ProgrammingError as exc:
        raise ConfigurationError(f"{name} is not a valid connection string: {exc}") from exc
    return url.strip()


def load_config(args: argparse.Namespace, environ: Mapping[str, str]) -> MigrationConfig:
    """Resolve CLI flags and environment into a MigrationConfig."""
    source_url = validate_url(SOURCE_URL_ENV, args.source_url or environ.get(SOURCE_URL_ENV))
    dest_raw = args.dest_url or environ.get(DEST_URL_ENV)
    if args.no_execute and not dest_raw:
        dest_url = None
    else:
        dest_url = validate_url(DEST_URL_ENV, dest_raw)

    if args.fetch_size < 1:
        raise ConfigurationError(f"--fetch-size must be positive, got {args.fetch_size}")
    if args.statement_timeout < 0:
        raise ConfigurationError(f"--statement-timeout must be >= 0, got {args.statement_timeout}")

    return MigrationConfig(
        source_url=source_url,
        dest_url=dest_url,
        fetch_size=args.fetch_size,
        statement_timeout_ms=args.statement_timeout,
        schema_only=args.schema_only,
        no_execute=args.no_execute,
        show_progress=not args.no_progress,
    )


def connect(url: str, role: str, statement_timeout_ms: int = 0):
    """Open a psycopg2 connection (transactional; named cursors need it)."""
    log.debug("Opening %s connection to %s", role, describe_dsn(url))
    kwargs = {}
    if statement_timeout_ms:
        kwargs["options"] = f"-c statement_timeout={statement_timeout_ms}"
    t0 = time.time()
    try:
        conn = psycopg2.connect(url, **kwargs)
        conn.set_client_encoding("UTF8")
    except psycopg2.Error as exc:
        raise DatabaseConnectionError(
            f"unable to connect to {role} database {describe_dsn(url)}: {str(exc).strip()}"
        ) from exc
    log.debug("%s connection established in %.3fs", role.capitalize(), time.time() - t0)
    return conn


def _rollback_quietly(conn, role: str) -> None:
    """Best-effort rollback; a dead connection must not mask the original error."""
    try:
        conn.rollback()
    except psycopg2.Error as exc:
        log.debug("Rollback on %s connection failed: %s", role, str(exc).strip())


# #############################################################################
#  SECTION 4: Catalog reader
# #############################################################################

_LIST_TABLES_SQL = """
    SELECT tablename
      FROM pg_catalog.pg_tables
     WHERE schemaname = %s
"""

# format_type() keeps array and typmod syntax (text[], varchar(64), numeric(10,2))
_COLUMNS_SQL = """
    SELECT a.attname,
           format_type(a.atttypid, a.atttypmod),
           a.attnotnull,
           pg_get_expr(d.adbin, d.adrelid)
      FROM pg_catalog.pg_attribute a
      JOIN pg_catalog.pg_class c ON a.attrelid = c.oid
      JOIN pg_catalog.pg_namespace n ON c.relnamespace = n.oid
      LEFT JOIN pg_catalog.pg_attrdef d ON a.attrelid = d.adrelid AND a.attnum = d.adnum
     WHERE n.nspname = %s
       AND c.relname = %s
       AND a.attnum > 0
       AND NOT a.attisdropped
     ORDER BY a.attnum
"""

_PRIMARY_KEY_SQL = """
    SELECT kcu.column_name
      FROM information_schema.table_constraints tc
      JOIN information_schema.key_column_usage kcu
        ON tc.constraint_name = kcu.constraint_name
       AND tc.table_schema = kcu.table_schema
       AND tc.table_name = kcu.table_name
     WHERE tc.constraint_type = 'PRIMARY KEY'
       AND tc.table_schema = %s
       AND tc.table_name = %s
     ORDER BY kcu.ordinal_position
"""


def list_tables(conn, schema: str = DEFAULT_SCHEMA) -> List[str]:
    """Table names in *schema*, in whatever order the catalog returns them."""
    try:
        with conn.cursor() as cur:
            cur.execute(_LIST_TABLES_SQL, (schema,))
            return [row[0] for row in cur.fetchall()]
    except psycopg2.Error as exc:
        raise IntrospectionError(f"failed to list tables: {str(exc).strip()}") from exc


def fetch_columns(conn, schema: str, table: str) -> List[Column]:
    try:
        with conn.cursor() as cur:
            cur.execute(_COLUMNS_SQL, (schema, table))
            rows = cur.fetchall()
    except psycopg2.Error as exc:
        raise IntrospectionError(f"failed to get columns: {str(exc).strip()}", table) from exc
    return [
        Column(name=name, data_type=data_type, nullable=not not_null, default=default)
        for name, data_type, not_null, default in rows
    ]


def fetch_primary_key(conn, schema: str, table: str) -> List[str]:
    try:
        with conn.cursor() as cur:
            cur.execute(_PRIMARY_KEY_SQL, (schema, table))
            return [row[0] for row in cur.fetchall()]
    except psycopg2.Error as exc:
        raise IntrospectionError(f"failed to get primary key: {str(exc).strip()}", table) from exc


def introspect_schema(conn, schema: str = DEFAULT_SCHEMA) -> List[Table]:
    """Build the schema snapshot: every table with its columns and primary key."""
    log.info("[DISCOVER] Listing tables in schema %s...", schema)
    names = list_tables(conn, schema)
    log.info("[DISCOVER] Found %d table(s)", len(names))

    tables: List[Table] = []
    for i, name in enumerate(names, 1):
        table = Table(
            name=name,
            columns=fetch_columns(conn, schema, name),
            primary_key=fetch_primary_key(conn, schema, name),
        )
        log.debug("  [%d/%d] %s: %d column(s), pk=%s",
                  i, len(names), name, len(table.columns), table.primary_key or "-")
        tables.append(table)
    # Release the catalog snapshot; later phases start fresh transactions.
    try:
        conn.commit()
    except psycopg2.Error as exc:
        raise IntrospectionError(f"failed to release catalog snapshot: {str(exc).strip()}") from exc
    return tables


# #############################################################################
#  SECTION 5: Type / default sanitizer
# #############################################################################

def _is_xata_private(default: str) -> bool:
    return any(marker in default for marker in XATA_PRIVATE_MARKERS)


def sanitize_column(column: Column) -> Column:
    """Return *column* with Xata-only defaults removed and sequence ints as SERIAL."""
    default = column.default
    data_type = column.data_type

    if default is not None and _is_xata_private(default):
        default = None

    if default is not None and SEQUENCE_DEFAULT_MARKER in default:
        if _INTEGER_TYPE_PATTERN.match(data_type):
            data_type, default = "SERIAL", None
        elif _BIGINT_TYPE_PATTERN.match(data_type):
            data_type, default = "BIGSERIAL", None

    if default == column.default and data_type == column.data_type:
        return column
    return replace(column, data_type=data_type, default=default)


def sanitize_tables(tables: List[Table]) -> int:
    """Sanitize every column in place. Returns the number of columns changed."""
    changed = 0
    for table in tables:
        for idx, column in enumerate(table.columns):
            clean = sanitize_column(column)
            if clean is column:
                continue
            changed += 1
            log.debug("  [SANITIZE] %s.%s: type %s -> %s, default %r -> %r",
                      table.name, column.name, column.data_type, clean.data_type,
                      column.default, clean.default)
            table.columns[idx] = clean
    return changed


# #############################################################################
#  SECTION 6: Schema writer
# #############################################################################

def quote_ident(name: str) -> str:
    # Embedded double quotes are not escaped.
    return f'"{name}"'


def build_drop_table_ddl(table: Table) -> str:
    return f"DROP TABLE IF EXISTS {quote_ident(table.name)} CASCADE"


def _column_definition(column: Column) -> str:
    parts = [quote_ident(column.name), column.data_type]
    if not column.nullable:
        parts.append("NOT NULL")
    if column.default is not None:
        parts.append(f"DEFAULT {column.default}")
    return " ".join(parts)


def build_create_table_ddl(table: Table) -> str:
    """CREATE TABLE with columns in snapshot order and an optional PRIMARY KEY."""
    items = [_column_definition(c) for c in table.columns]
    if table.primary_key:
        items.append(f"PRIMARY KEY ({', '.join(quote_ident(k) for k in table.primary_key)})")
    return f"CREATE TABLE {quote_ident(table.name)} ({', '.join(items)})"


def render_schema_script(tables: Sequence[Table], source: str = "") -> str:
    """Full DDL script for the snapshot, as it would be applied."""
    lines = [
        "-- Auto-generated by xata_to_pg_migrator.py",
        f"-- Timestamp: {datetime.datetime.now().isoformat()}",
    ]
    if source:
        lines.append(f"-- Source: {source}")
    lines.append(f"-- Tables: {len(tables)}")
    lines.append("")
    for table in tables:
        lines.append(f"-- ========== {table.name} ==========")
        lines.append(build_drop_table_ddl(table) + ";")
        lines.append(build_create_table_ddl(table) + ";")
        lines.append("")
    return "\n".join(lines)


def apply_schema(conn, tables: Sequence[Table]) -> int:
    """Drop and recreate every table on the destination, one commit per table."""
    pad = len(str(len(tables)))
    for idx, table in enumerate(tables, 1):
        create_ddl = build_create_table_ddl(table)
        try:
            with conn.cursor() as cur:
                cur.execute(build_drop_table_ddl(table))
                cur.execute(create_ddl)
            conn.commit()
        except psycopg2.Error as exc:
            _rollback_quietly(conn, "destination")
            log.debug("    DDL was:\n%s", create_ddl)
            raise SchemaApplyError(f"failed to create table: {str(exc).strip()}", table.name) from exc
        log.info("  [%*d/%d] OK    %s  (%d columns)", pad, idx, len(tables), table.name, len(table.columns))
    return len(tables)


# #############################################################################
#  SECTION 7: Progress reporting
# #############################################################################

class NullProgress:
    """Progress sink that ignores every notification."""

    def start(self, table: str, total: int) -> None:
        pass

    def advance(self, count: int) -> None:
        pass

    def finish(self, table: str, count: int) -> None:
        pass


class TqdmProgress(NullProgress):
    """One tqdm bar per table."""

    def __init__(self, stream=None):
        self._stream = stream or sys.stdout
        self._bar = None

    def start(self, table: str, total: int) -> None:
        self._bar = tqdm(total=total, desc=f"  {table}", unit="rows",
                         unit_scale=True, file=self._stream, leave=True)

    def advance(self, count: int) -> None:
        if self._bar is not None:
            self._bar.update(count - self._bar.n)

    def finish(self, table: str, count: int) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None


class ProgressRows:
    """Row iterator that reports the running row count after each row it yields."""

    def __init__(self, rows: Iterable[Tuple], on_row: Callable[[int], None]):
        self._rows = iter(rows)
        self._on_row = on_row
        self.count = 0

    def __iter__(self) -> "ProgressRows":
        return self

    def __next__(self) -> Tuple:
        row = next(self._rows)
        self.count += 1
        self._on_row(self.count)
        return row


# #############################################################################
#  SECTION 8: Row streamer
# #############################################################################

def format_copy_row(row: Sequence[Optional[str]]) -> str:
    """Encode one row for COPY ... FROM STDIN (text format)."""
    return "\t".join(
        _COPY_NULL if value is None else str(value).translate(_COPY_ESCAPES)
        for value in row
    ) + "\n"


class CopyRowStream(io.TextIOBase):
    """File-like COPY source that pulls rows only when the reader asks for data."""

    def __init__(self, rows: Iterable[Sequence[Optional[str]]]):
        self._iterator = iter(rows)
        self._buffer = ""
        self._exhausted = False

    def readable(self) -> bool:
        return True

    def read(self, size: Optional[int] = -1) -> str:
        if size is None:
            size = -1
        while (size < 0 or len(self._buffer) < size) and not self._exhausted:
            try:
                row = next(self._iterator)
            except StopIteration:
                self._exhausted = True
                break
            self._buffer += format_copy_row(row)

        if size < 0:
            data, self._buffer = self._buffer, ""
            return data
        data = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return data


def count_rows(conn, table: Table) -> int:
    with conn.cursor() as cur:
        cur.execute(f"SELECT count(*) FROM {quote_ident(table.name)}")
        row = cur.fetchone()
    return int(row[0]) if row else 0


def build_select_sql(table: Table) -> str:
    # ::text hands each value over in its type's own text form; COPY parses it back.
    cols = ", ".join(f"{quote_ident(c)}::text" for c in table.column_names)
    return f"SELECT {cols} FROM {quote_ident(table.name)}"


def build_copy_sql(table: Table) -> str:
    cols = ", ".join(quote_ident(c) for c in table.column_names)
    return f"COPY {quote_ident(table.name)} ({cols}) FROM STDIN"


def _cursor_name(index: int, table: Table) -> str:
    slug = re.sub(r"[^a-z0-9_]", "_", table.name.lower())[:40]
    return f"xata_copy_{index}_{slug}"


def reset_serial_sequences(conn, table: Table) -> None:
    """Move SERIAL/BIGSERIAL sequences past the copied keys."""
    with conn.cursor() as cur:
        for column in table.serial_columns:
            cur.execute(
                f"SELECT setval(pg_get_serial_sequence(%s, %s), "
                f"COALESCE(MAX({quote_ident(column.name)}), 0) + 1, false) "
                f"FROM {quote_ident(table.name)}",
                (quote_ident(table.name), column.name),
            )
            log.debug("    Sequence for %s.%s reset", table.name, column.name)


def copy_table(source, dest, table: Table, progress: Optional[NullProgress] = None,
               fetch_size: int = DEFAULT_FETCH_SIZE, index: int = 0) -> int:
    """Stream every row of *table* from source to destination. Returns rows copied.

    Rows are committed on the destination once the whole COPY succeeds; a
    failure rolls back only the open COPY and leaves earlier tables untouched.
    """
    progress = progress or NullProgress()
    try:
        total = count_rows(source, table)
        if total == 0:
            source.commit()
            return 0
    except psycopg2.Error as exc:
        _rollback_quietly(source, "source")
        raise DataTransferError(f"failed to count rows: {str(exc).strip()}", table.name) from exc

    progress.start(table.name, total)
    copied = 0
    try:
        with source.cursor(name=_cursor_name(index, table)) as src_cur:
            src_cur.itersize = fetch_size
            src_cur.execute(build_select_sql(table))
            rows = ProgressRows(src_cur, progress.advance)
            with dest.cursor() as dst_cur:
                dst_cur.copy_expert(build_copy_sql(table), CopyRowStream(rows))
            copied = rows.count
        if table.serial_columns:
            reset_serial_sequences(dest, table)
        dest.commit()
        source.commit()
    except psycopg2.Error as exc:
        _rollback_quietly(dest, "destination")
        _rollback_quietly(source, "source")
        raise DataTransferError(f"failed to copy data: {str(exc).strip()}", table.name) from exc
    finally:
        progress.finish(table.name, copied)

    if copied != total:
        log.warning("    %s: counted %d row(s) before copy, streamed %d", table.name, total, copied)
    return copied


def copy_all_tables(source, dest, tables: Sequence[Table], progress: Optional[NullProgress] = None,
                    fetch_size: int = DEFAULT_FETCH_SIZE) -> Dict[str, int]:
    """Copy tables one at a time in snapshot order. Returns rows copied per table."""
    per_table: Dict[str, int] = {}
    pad = len(str(len(tables)))
    for idx, table in enumerate(tables, 1):
        t0 = time.time()
        copied = copy_table(source, dest, table, progress, fetch_size, idx)
        per_table[table.name] = copied
        if copied:
            log.info("  [%*d/%d] OK    %s  (%d rows, %.2fs)",
                     pad, idx, len(tables), table.name, copied, time.time() - t0)
        else:
            log.info("  [%*d/%d] SKIP  %s  (empty)", pad, idx, len(tables), table.name)
    return per_table


# #############################################################################
#  SECTION 9: Orchestrator
# #############################################################################

class MigrationState(enum.Enum):
    CONNECTED = "connected"
    SCHEMA_INTROSPECTED = "schema_introspected"
    SCHEMA_APPLIED = "schema_applied"
    DATA_COPIED = "data_copied"
    DONE = "done"
    FAILED = "failed"


def _phase_banner(title: str) -> None:
    log.info("=" * 72)
    log.info(title)
    log.info("=" * 72)


def migrate(source, dest, config: MigrationConfig, progress: Optional[NullProgress] = None,
            stats: Optional[Dict] = None) -> Dict:
    """Run introspection, schema and data phases in order; stop at the first error."""
    if stats is None:
        stats = {}
    stats.update({
        "state": MigrationState.CONNECTED,
        "tables_total": 0,
        "tables_created": 0,
        "tables_copied": 0,
        "tables_empty": 0,
        "rows_copied": 0,
        "columns_sanitized": 0,
        "per_table": {},
    })

    try:
        _phase_banner("PHASE 1: SCHEMA INTROSPECTION")
        tables = introspect_schema(source, config.schema)
        stats["tables_total"] = len(tables)
        stats["columns_sanitized"] = sanitize_tables(tables)
        log.info("  %d table(s), %d column(s) sanitized", len(tables), stats["columns_sanitized"])
        stats["state"] = MigrationState.SCHEMA_INTROSPECTED

        _phase_banner("PHASE 2: SCHEMA CREATION")
        stats["tables_created"] = apply_schema(dest, tables)
        stats["state"] = MigrationState.SCHEMA_APPLIED

        if config.schema_only:
            log.info("Skipping data transfer (--schema-only)")
        else:
            _phase_banner("PHASE 3: DATA TRANSFER")
            per_table = copy_all_tables(source, dest, tables, progress, config.fetch_size)
            stats["per_table"] = per_table
            stats["tables_copied"] = sum(1 for n in per_table.values() if n)
            stats["tables_empty"] = sum(1 for n in per_table.values() if not n)
            stats["rows_copied"] = sum(per_table.values())
            stats["state"] = MigrationState.DATA_COPIED
    except MigrationError:
        stats["state"] = MigrationState.FAILED
        raise

    stats["state"] = MigrationState.DONE
    return stats


# #############################################################################
#  SECTION 10: Logging & run log
# #############################################################################

def setup_logging(log_dir: str, log_level: str = "INFO") -> Path:
    """Configure dual logging: console (log_level+) and file (DEBUG+)."""
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = Path(log_dir) / f"xata_to_pg_{timestamp}.log"

    for handler in list(log.handlers):
        log.removeHandler(handler)
        handler.close()
    log.setLevel(logging.DEBUG)

    fh = logging.FileHandler(str(log_file), encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter("%(asctime)s  %(levelname)-8s  %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
    log.addHandler(fh)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    ch.setFormatter(logging.Formatter("%(levelname)-8s  %(message)s"))
    log.addHandler(ch)

    log.info("Log file: %s", log_file)
    return log_file


def _write_run_log(log_dir: str, stats: Dict, elapsed: float, source: str, dest: str,
                   failure: Optional[MigrationError]) -> Path:
    """Write the run status log: metadata, per-table row counts, failure if any."""
    os.makedirs(log_dir, exist_ok=True)
    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    run_log_file = Path(log_dir) / f"xata_to_pg_run_{timestamp}.txt"

    state = stats.get("state")
    lines: List[str] = []
    lines.append("=" * 80)
    lines.append("XATA-TO-POSTGRESQL MIGRATION: RUN LOG")
    lines.append("=" * 80)
    lines.append(f"Timestamp       : {datetime.datetime.now().isoformat()}")
    lines.append(f"Source          : {source}")
    lines.append(f"Destination     : {dest}")
    lines.append(f"Final state     : {state.value if isinstance(state, MigrationState) else state}")
    lines.append(f"Tables          : {stats.get('tables_total', 0)}")
    lines.append(f"Tables created  : {stats.get('tables_created', 0)}")
    lines.append(f"Tables copied   : {stats.get('tables_copied', 0)}")
    lines.append(f"Tables empty    : {stats.get('tables_empty', 0)}")
    lines.append(f"Rows copied     : {stats.get('rows_copied', 0)}")
    lines.append(f"Elapsed         : {elapsed:.2f}s")
    lines.append("")

    per_table = stats.get("per_table") or {}
    if per_table:
        lines.append("-" * 80)
        lines.append("ROWS PER TABLE")
        lines.append("-" * 80)
        lines.append("table\trows")
        for name, count in per_table.items():
            lines.append(f"{name}\t{count}")
        lines.append("")

    if failure is not None:
        lines.append("-" * 80)
        lines.append("FAILURE")
        lines.append("-" * 80)
        lines.append("phase\ttable\terror_message")
        safe_msg = failure.message.replace("\n", " | ").replace("\t", " ")
        lines.append(f"{failure.phase}\t{failure.table or ''}\t{safe_msg}")
        lines.append("")
    else:
        lines.append("No errors. All tables migrated successfully.")
        lines.append("")

    lines.append("=" * 80)
    lines.append("END OF RUN LOG")
    lines.append("=" * 80)

    run_log_file.write_text("\n".join(lines), encoding="utf-8")
    return run_log_file


# #############################################################################
#  SECTION 11: Main
# #############################################################################

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Migrate a Xata database (public schema) into plain PostgreSQL.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent(f"""\
            Connection strings come from --source-url / --dest-url, or from the
            {SOURCE_URL_ENV} / {DEST_URL_ENV} environment variables (a .env file
            in the working directory is loaded first, without overriding).

            Destination tables with the same names are DROPPED and recreated.

            Examples:
              python xata_to_pg_migrator.py
              python xata_to_pg_migrator.py --schema-only
              python xata_to_pg_migrator.py --no-execute --output-file schema.sql
        """),
    )
    parser.add_argument("--source-url", default=None, help=f"Source connection string (or {SOURCE_URL_ENV} env)")
    parser.add_argument("--dest-url", default=None, help=f"Destination connection string (or {DEST_URL_ENV} env)")
    parser.add_argument("--env-file", default=DEFAULT_ENV_FILE, help=f"dotenv file to load (default: {DEFAULT_ENV_FILE})")
    parser.add_argument("--schema-only", action="store_true", help="Recreate tables on the destination but copy no rows")
    parser.add_argument("--no-execute", action="store_true",
                        help="Introspect the source and print the DDL; the destination is not contacted")
    parser.add_argument("--output-file", default=None, help="Write the generated DDL script to this file")
    parser.add_argument("--fetch-size", type=int, default=DEFAULT_FETCH_SIZE,
                        help=f"Rows per server-side cursor round trip (default: {DEFAULT_FETCH_SIZE})")
    parser.add_argument("--statement-timeout", type=int, default=0,
                        help="statement_timeout in ms for both connections (default: 0 = none)")
    parser.add_argument("--no-progress", action="store_true", help="Disable per-table progress bars")
    parser.add_argument("--log-dir", default=LOG_DIR, help=f"Directory for logs (default: {LOG_DIR})")
    parser.add_argument("--log-level", default="INFO", choices=("DEBUG", "INFO", "WARNING", "ERROR"))
    return parser


def _close_quietly(conn, role: str) -> None:
    if conn is None:
        return
    try:
        conn.close()
        log.debug("%s connection closed.", role.capitalize())
    except psycopg2.Error as exc:
        log.warning("Error closing %s connection: %s", role, exc)


def main(argv: Optional[List[str]] = None) -> None:
    run_start = time.time()
    args = build_arg_parser().parse_args(argv)

    log_file = setup_logging(args.log_dir, args.log_level)
    log.info("=" * 72)
    log.info("XATA-TO-POSTGRESQL MIGRATOR: STARTED")
    log.info("=" * 72)

    if os.path.isfile(args.env_file):
        load_dotenv(args.env_file, override=False)
        log.debug("Loaded environment from %s", args.env_file)
    else:
        log.info("No .env file found, relying on environment variables")

    try:
        config = load_config(args, os.environ)
    except ConfigurationError as exc:
        log.error("%s", exc)
        sys.exit(1)

    source_desc = describe_dsn(config.source_url)
    dest_desc = describe_dsn(config.dest_url) if config.dest_url else "-"
    log.info("Source     : %s", source_desc)
    log.info("Destination: %s", dest_desc)

    stats: Dict = {"state": MigrationState.CONNECTED}
    failure: Optional[MigrationError] = None
    source_conn = dest_conn = None
    try:
        log.info("Connecting to source (Xata)...")
        source_conn = connect(config.source_url, "source", config.statement_timeout_ms)
        log.info("Source connected.")

        if config.no_execute:
            tables = introspect_schema(source_conn, config.schema)
            stats["tables_total"] = len(tables)
            stats["columns_sanitized"] = sanitize_tables(tables)
            script = render_schema_script(tables, source_desc)
            if args.output_file:
                try:
                    Path(args.output_file).write_text(script, encoding="utf-8")
                except OSError as exc:
                    raise MigrationError(f"failed to write DDL script to {args.output_file}: {exc}") from exc
                log.info("DDL written to: %s (%d tables)", args.output_file, len(tables))
            else:
                print(script)
            log.info("NO-EXECUTE mode: destination was NOT contacted.")
            stats["state"] = MigrationState.DONE
        else:
            log.info("Connecting to destination (PostgreSQL)...")
            dest_conn = connect(config.dest_url, "destination", config.statement_timeout_ms)
            log.info("Destination connected.")

            progress = TqdmProgress() if config.show_progress else NullProgress()
            migrate(source_conn, dest_conn, config, progress, stats)
    except MigrationError as exc:
        failure = exc
        stats["state"] = MigrationState.FAILED
        log.error("Migration failed: %s", exc)
        log.debug("Traceback:\n%s", traceback.format_exc())
    except KeyboardInterrupt:
        failure = MigrationError("interrupted by user")
        stats["state"] = MigrationState.FAILED
        log.error("Migration interrupted; partially copied rows are left in place.")
    finally:
        _close_quietly(source_conn, "source")
        _close_quietly(dest_conn, "destination")

    elapsed = time.time() - run_start
    _phase_banner("MIGRATION SUMMARY")
    log.info("  Tables     : %d", stats.get("tables_total", 0))
    log.info("  Created    : %d", stats.get("tables_created", 0))
    log.info("  Copied     : %d (%d empty)", stats.get("tables_copied", 0), stats.get("tables_empty", 0))
    log.info("  Rows       : %d", stats.get("rows_copied", 0))
    log.info("  Elapsed    : %.2fs (%.1f min)", elapsed, elapsed / 60)

    run_log = _write_run_log(args.log_dir, stats, elapsed, source_desc, dest_desc, failure)
    log.info("  Log file   : %s", log_file)
    log.info("  Run log    : %s", run_log)
    log.info("=" * 72)

    if failure is not None:
        sys.exit(1)
    log.info("Migration completed successfully!")


if __name__ == "__main__":
    main()
