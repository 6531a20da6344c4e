"""
Shared pytest fixtures: in-memory stand-ins for psycopg2 connections.

FakeDatabase answers the catalog, count, select and setval queries issued by
xata_to_pg_migrator.py from a plain dict of table definitions, records every
statement it sees, and captures COPY payloads so tests can decode them.
"""

import re
from typing import Dict, List, Optional

import psycopg2
import pytest

_TABLE_FROM_PATTERN = re.compile(r'FROM "([^"]*)"')
_COPY_TABLE_PATTERN = re.compile(r'^COPY "([^"]*)"')
_COPY_UNESCAPES = {"t": "\t", "n": "\n", "r": "\r", "\\": "\\"}


def parse_copy_text(data: str) -> List[tuple]:
    """Decode a COPY text-format payload back into tuples of str / None."""
    rows = []
    for line in data.split("\n"):
        if not line:
            continue
        values = []
        for raw in line.split("\t"):
            if raw == "\\N":
                values.append(None)
            else:
                values.append(re.sub(r"\\(.)", lambda m: _COPY_UNESCAPES.get(m.group(1), m.group(1)), raw))
        rows.append(tuple(values))
    return rows


class FakeCursor:
    def __init__(self, db: "FakeDatabase", name: Optional[str] = None):
        self.db = db
        self.name = name
        self.itersize = 2000
        self.rowcount = -1
        self._results: List[tuple] = []
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def close(self):
        self.closed = True

    def execute(self, query, params=None):
        self.db.record(query, params)
        self.db.maybe_fail(query)
        self._results = self.db.answer(query, params)
        self.rowcount = len(self._results)

    def fetchone(self):
        return self._results.pop(0) if self._results else None

    def fetchall(self):
        rows, self._results = self._results, []
        return rows

    def __iter__(self):
        while self._results:
            row = self._results.pop(0)
            self.db.fetched += 1
            self.db.journal.append((self.db.label, "fetch", row))
            yield row
            fail_after = self.db.fail_fetch_after
            if fail_after is not None and self.db.fetched >= fail_after:
                raise psycopg2.OperationalError("server closed the connection unexpectedly")

    def copy_expert(self, sql, file, size=8192):
        self.db.record(sql, None)
        table = _COPY_TABLE_PATTERN.match(sql).group(1)
        chunks = []
        while True:
            chunk = file.read(size)
            if not chunk:
                break
            self.db.journal.append((self.db.label, "push", chunk))
            chunks.append(chunk)
        self.db.maybe_fail(sql)
        self.db.copied[table] = self.db.copied.get(table, "") + "".join(chunks)
        self.rowcount = len(parse_copy_text("".join(chunks)))


class FakeConnection:
    def __init__(self, db: "FakeDatabase"):
        self.db = db
        self.autocommit = False
        self.closed = 0
        self.encoding = None

    def cursor(self, name=None):
        if name is not None:
            self.db.named_cursors.append(name)
        return FakeCursor(self.db, name)

    def set_client_encoding(self, encoding):
        self.encoding = encoding

    def commit(self):
        self.db.commits += 1
        self.db.journal.append((self.db.label, "commit", None))
        if self.db.fail_commit is not None:
            raise self.db.fail_commit
        self.db.committed.update(self.db.copied)

    def rollback(self):
        self.db.rollbacks += 1
        self.db.journal.append((self.db.label, "rollback", None))
        if self.db.fail_rollback is not None:
            raise self.db.fail_rollback
        self.db.copied = dict(self.db.committed)

    def close(self):
        self.closed = 1


class FakeDatabase:
    """Dict-backed database: {name: {"columns": [...], "pk": [...], "rows": [...]}}."""

    def __init__(self, tables: Optional[Dict[str, dict]] = None, label: str = "db",
                 journal: Optional[list] = None):
        self.tables = tables or {}
        self.label = label
        self.journal = journal if journal is not None else []
        self.executed: List[str] = []
        self.params: List[Optional[tuple]] = []
        self.named_cursors: List[str] = []
        self.copied: Dict[str, str] = {}
        self.committed: Dict[str, str] = {}
        self.fail_on: Dict[str, Exception] = {}
        self.fail_fetch_after: Optional[int] = None
        self.fail_commit: Optional[Exception] = None
        self.fail_rollback: Optional[Exception] = None
        self.fetched = 0
        self.commits = 0
        self.rollbacks = 0

    def connect(self) -> FakeConnection:
        return FakeConnection(self)

    def record(self, query, params):
        text = " ".join(str(query).split())
        self.executed.append(text)
        self.params.append(params)
        self.journal.append((self.label, "execute", text))

    def maybe_fail(self, query):
        for fragment, exc in self.fail_on.items():
            if fragment in query:
                raise exc

    def answer(self, query, params):
        text = " ".join(str(query).split())
        if "pg_catalog.pg_tables" in text:
            return [(name,) for name in self.tables]
        if "format_type(" in text:
            return list(self.tables[params[1]]["columns"])
        if "key_column_usage" in text:
            return [(col,) for col in self.tables[params[1]].get("pk", [])]
        if text.startswith("SELECT count(*)") or text.startswith("SELECT COUNT(*)"):
            table = _TABLE_FROM_PATTERN.search(text).group(1)
            return [(len(self.tables[table].get("rows", [])),)]
        if text.startswith("SELECT setval("):
            return [(1,)]
        if text.startswith("SELECT ") and "::text" in text:
            table = _TABLE_FROM_PATTERN.search(text).group(1)
            return [tuple(row) for row in self.tables[table].get("rows", [])]
        return []

    def statements(self, prefix: str) -> List[str]:
        return [s for s in self.executed if s.startswith(prefix)]


@pytest.fixture
def journal():
    return []


@pytest.fixture
def users_source_tables():
    """The users table as Xata reports it, plus a table nobody has written to."""
    return {
        "users": {
            "columns": [
                ("id", "integer", True, "nextval('users_id_seq'::regclass)"),
                ("name", "text", True, None),
                ("note", "text", False, "'xata_private.foo()'"),
            ],
            "pk": ["id"],
            "rows": [
                ("1", "alice", None),
                ("2", "bob", "tab\there"),
                ("3", "carol", "back\\slash\nnewline"),
            ],
        },
        "audit_log": {
            "columns": [
                ("event_id", "bigint", True, "nextval('audit_log_event_id_seq'::regclass)"),
                ("tags", "text[]", False, None),
            ],
            "pk": ["event_id"],
            "rows": [],
        },
    }


@pytest.fixture
def source_db(users_source_tables, journal):
    return FakeDatabase(users_source_tables, label="source", journal=journal)


@pytest.fixture
def dest_db(journal):
    return FakeDatabase({}, label="dest", journal=journal)
