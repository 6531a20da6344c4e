#!/usr/bin/env python3
"""
Table Row Count Report: compare row counts between Xata (source) and PostgreSQL (destination).

Run after xata_to_pg_migrator.py to check that every table arrived complete.
Tables come from the source catalog (public schema) unless one or more
--table-list files are given.  Each table gets SELECT COUNT(*) on both
databases, bounded by a per-query statement_timeout, and the results go to a
CSV report.

Features:
  - Parallel processing (configurable workers), one connection pair per worker
  - Per-query timeout; status set to "timeout" if exceeded
  - Output: CSV with table_name, source_row_count, source_status,
    dest_row_count, dest_status, match
  - Exit status 1 when any table differs or could not be counted

Usage:
  python table_rowcount_report.py
  python table_rowcount_report.py --table-list tables.txt -o report.csv
  python table_rowcount_report.py --workers 4 --timeout 60

Input format (one table per line):
  users
  audit_log
  # comments and blank lines are skipped
"""

from __future__ import annotations

import argparse
import csv
import os
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Optional

import psycopg2
import psycopg2.extensions
from dotenv import load_dotenv

import xata_to_pg_migrator as migrator

FIELDNAMES = ["table_name", "source_row_count", "source_status", "dest_row_count", "dest_status", "match"]


def _read_table_list(paths: list[str]) -> list[str]:
    """Read table names from text files, one per line, keeping first-seen order."""
    tables: list[str] = []
    seen: set[str] = set()
    for path in paths:
        p = Path(path)
        if not p.exists():
            print(f"Warning: table list file not found: {path}", file=sys.stderr, flush=True)
            continue
        with open(p, encoding="utf-8-sig") as f:
            for ln in f:
                ln = ln.strip()
                if not ln or ln.startswith("#"):
                    continue
                if ln not in seen:
                    seen.add(ln)
                    tables.append(ln)
    return tables


def _get_count(conn, table: str) -> tuple[Optional[int], str]:
    """Run SELECT COUNT(*). Returns (count, status) where status is 'ok', 'timeout', or 'error:...'."""
    try:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*) FROM {migrator.quote_ident(table)}")
            row = cur.fetchone()
        return (int(row[0]) if row else 0, "ok")
    except psycopg2.extensions.QueryCanceledError:
        return (None, "timeout")
    except psycopg2.Error as e:
        return (None, f"error:{str(e).strip()[:100]}")


class _WorkerConnections:
    """Per-thread connection pair; every connection opened is closed by close_all()."""

    def __init__(self, source_url: str, dest_url: str, timeout_ms: int):
        self._urls = {"source": source_url, "destination": dest_url}
        self._timeout_ms = timeout_ms
        self._tls = threading.local()
        self._opened: list = []
        self._lock = threading.Lock()

    def get(self, role: str):
        conn = getattr(self._tls, role, None)
        if conn is None:
            conn = migrator.connect(self._urls[role], role, self._timeout_ms)
            conn.autocommit = True
            setattr(self._tls, role, conn)
            with self._lock:
                self._opened.append(conn)
        return conn

    def close_all(self) -> None:
        with self._lock:
            for conn in self._opened:
                try:
                    conn.close()
                except psycopg2.Error:
                    pass
            self._opened.clear()


def _process_table(table: str, connections: _WorkerConnections) -> dict:
    """Count one table on both sides. Returns a row dict for the CSV."""
    row_data = {
        "table_name": table,
        "source_row_count": "",
        "source_status": "",
        "dest_row_count": "",
        "dest_status": "",
        "match": "",
    }

    # Each side is counted on its own; a connect failure is reported only where it happened.
    for role, prefix in (("source", "source"), ("destination", "dest")):
        try:
            count, status = _get_count(connections.get(role), table)
        except migrator.DatabaseConnectionError as e:
            count, status = None, f"error:{e.message[:80]}"
        row_data[f"{prefix}_row_count"] = str(count) if count is not None else ""
        row_data[f"{prefix}_status"] = status

    if row_data["source_status"] == "ok" and row_data["dest_status"] == "ok":
        row_data["match"] = "yes" if row_data["source_row_count"] == row_data["dest_row_count"] else "no"
    return row_data


def build_report(tables: list[str], source_url: str, dest_url: str,
                 workers: int = 8, timeout_sec: float = 30) -> list[dict]:
    """Count every table on both databases. Rows come back in input order."""
    connections = _WorkerConnections(source_url, dest_url, int(timeout_sec * 1000))
    rows: list[dict] = []
    done = 0
    try:
        with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
            futures = {executor.submit(_process_table, table, connections): table for table in tables}
            for fut in as_completed(futures):
                rows.append(fut.result())
                done += 1
                if done % 100 == 0 or done == len(tables):
                    print(f"  {done}/{len(tables)} tables processed", flush=True)
    finally:
        connections.close_all()

    order = {name: i for i, name in enumerate(tables)}
    rows.sort(key=lambda r: order[r["table_name"]])
    return rows


def write_csv(rows: list[dict], output: str) -> Path:
    out_path = Path(output)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    with open(out_path, "w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=FIELDNAMES)
        w.writeheader()
        w.writerows(rows)
    return out_path


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="Compare table row counts between Xata (source) and PostgreSQL (destination).",
    )
    parser.add_argument(
        "--table-list",
        action="append",
        default=None,
        metavar="FILE",
        help="Table list file(s), one table per line. Can be repeated. Default: all source tables.",
    )
    parser.add_argument(
        "-o",
        "--output",
        default="table_rowcount_report.csv",
        help="Output CSV path (default: table_rowcount_report.csv)",
    )
    parser.add_argument("--workers", type=int, default=8, help="Number of parallel workers (default: 8)")
    parser.add_argument("--timeout", type=int, default=30, help="Query timeout in seconds (default: 30)")
    parser.add_argument("--source-url", default=None, help=f"Source connection string (or {migrator.SOURCE_URL_ENV} env)")
    parser.add_argument("--dest-url", default=None, help=f"Destination connection string (or {migrator.DEST_URL_ENV} env)")
    parser.add_argument("--env-file", default=migrator.DEFAULT_ENV_FILE, help="dotenv file to load (default: .env)")
    args = parser.parse_args(argv)

    if os.path.isfile(args.env_file):
        load_dotenv(args.env_file, override=False)

    try:
        source_url = migrator.validate_url(migrator.SOURCE_URL_ENV,
                                           args.source_url or os.environ.get(migrator.SOURCE_URL_ENV))
        dest_url = migrator.validate_url(migrator.DEST_URL_ENV,
                                         args.dest_url or os.environ.get(migrator.DEST_URL_ENV))
    except migrator.ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr, flush=True)
        sys.exit(1)

    if args.table_list:
        tables = _read_table_list(args.table_list)
    else:
        try:
            conn = migrator.connect(source_url, "source")
            try:
                tables = migrator.list_tables(conn)
            finally:
                conn.close()
        except migrator.MigrationError as e:
            print(f"Error: {e}", file=sys.stderr, flush=True)
            sys.exit(1)

    if not tables:
        print("Error: no tables to compare.", file=sys.stderr, flush=True)
        sys.exit(1)

    print(f"Source     : {migrator.describe_dsn(source_url)}", flush=True)
    print(f"Destination: {migrator.describe_dsn(dest_url)}", flush=True)
    print(f"Loaded {len(tables)} table(s). Workers: {args.workers}, Timeout: {args.timeout}s", flush=True)
    print("Processing...", flush=True)

    start = time.perf_counter()
    rows = build_report(tables, source_url, dest_url, args.workers, float(args.timeout))
    elapsed = time.perf_counter() - start

    out_path = write_csv(rows, args.output)

    matched = sum(1 for r in rows if r["match"] == "yes")
    mismatched = sum(1 for r in rows if r["match"] == "no")
    timeouts = sum(1 for r in rows if "timeout" in (r["source_status"], r["dest_status"]))
    errors = sum(1 for r in rows if not r["match"]) - timeouts

    print(f"\nCompleted in {elapsed:.1f}s", flush=True)
    print(f"Report written to: {out_path}", flush=True)
    print("Summary:", flush=True)
    print(f"  match={matched}, mismatch={mismatched}, timeout={timeouts}, error={errors}", flush=True)
    for r in rows:
        if r["match"] == "no":
            print(f"  MISMATCH {r['table_name']}: source={r['source_row_count']} dest={r['dest_row_count']}", flush=True)

    if mismatched or timeouts or errors:
        sys.exit(1)


if __name__ == "__main__":
    main()
