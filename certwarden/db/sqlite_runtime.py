#!/usr/bin/env python3
#
# certwarden/db/sqlite_runtime.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""SQLite plumbing shared by the certificate store: timestamps, connections, transactions.

Every ``timestamp`` column round-trips as an aware UTC datetime. Naive
datetimes are refused on write; a value that cannot be parsed on read comes
back as ``None`` (an unknown expiry is treated as due for renewal, never as
expired).
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

_log = logging.getLogger(__name__)

_BUSY_TIMEOUT_SECONDS = 30.0
_WAL_ATTEMPTS = 5
_CHECKPOINT_MODES = ("PASSIVE", "FULL", "RESTART", "TRUNCATE")


def _adapt_timestamp(value: datetime) -> str:
	if value.tzinfo is None:
		raise ValueError("Refusing to store a naive datetime")
	return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _convert_timestamp(raw: bytes) -> Optional[datetime]:
	text = raw.decode("utf-8", errors="replace")
	try:
		value = datetime.fromisoformat(text[:-1] + "+00:00" if text.endswith("Z") else text)
	except ValueError:
		_log.error("SQLITE_BAD_TIMESTAMP value=%r read as NULL", text)
		return None
	if value.tzinfo is None:
		value = value.replace(tzinfo=timezone.utc)
	return value.astimezone(timezone.utc)


# Process-global registration
sqlite3.register_adapter(datetime, _adapt_timestamp)
sqlite3.register_converter("timestamp", _convert_timestamp)


_open: set[sqlite3.Connection] = set()
_open_lock = threading.Lock()


def _use_wal(conn: sqlite3.Connection) -> None:
	"""Switch the database to WAL; another worker may briefly hold the lock."""
	for attempt in range(1, _WAL_ATTEMPTS + 1):
		try:
			if conn.execute("PRAGMA journal_mode").fetchone()[0].upper() != "WAL":
				conn.execute("PRAGMA journal_mode=WAL")
			return
		except sqlite3.OperationalError as exc:
			if "locked" not in str(exc).lower() or attempt == _WAL_ATTEMPTS:
				raise
			pause = 0.1 * 2 ** (attempt - 1)
			_log.debug("SQLITE_WAL_LOCKED attempt=%d/%d retry_in=%.1fs", attempt, _WAL_ATTEMPTS, pause)
			time.sleep(pause)


def connect(db_path: Path) -> sqlite3.Connection:
	"""Open a tracked connection (row factory, WAL, foreign keys)."""
	db_path.parent.mkdir(parents=True, exist_ok=True)
	conn = sqlite3.connect(
		str(db_path),
		detect_types=sqlite3.PARSE_DECLTYPES,
		check_same_thread=False,
		timeout=_BUSY_TIMEOUT_SECONDS,
	)
	conn.row_factory = sqlite3.Row
	_use_wal(conn)
	conn.execute("PRAGMA foreign_keys=ON")
	with _open_lock:
		_open.add(conn)
	return conn


def close_connection(conn: sqlite3.Connection) -> None:
	with _open_lock:
		_open.discard(conn)
	conn.close()


def close_all_connections() -> int:
	"""Close every connection still tracked (shutdown, test teardown)."""
	with _open_lock:
		leftovers = list(_open)
		_open.clear()
	closed = 0
	for conn in leftovers:
		try:
			conn.close()
		except sqlite3.Error as exc:
			_log.warning("SQLITE_CLOSE_FAILED %s", exc)
		else:
			closed += 1
	return closed


def checkpoint_wal(db_path: Path, mode: str = "TRUNCATE") -> dict[str, Any]:
	"""Checkpoint the WAL on a throwaway connection.

	Counters are -1 when the checkpoint could not run.
	"""
	mode = mode.strip().upper()
	if mode not in _CHECKPOINT_MODES:
		mode = "TRUNCATE"
	result: dict[str, Any] = {"mode": mode, "busy": -1, "log_frames": -1, "checkpointed_frames": -1}
	try:
		conn = sqlite3.connect(str(db_path), timeout=_BUSY_TIMEOUT_SECONDS)
	except sqlite3.Error as exc:
		_log.warning("SQLITE_CHECKPOINT_FAILED mode=%s: %s", mode, exc)
		return result
	try:
		row = conn.execute(f"PRAGMA wal_checkpoint({mode})").fetchone()
		if row:
			result.update(busy=int(row[0]), log_frames=int(row[1]), checkpointed_frames=int(row[2]))
	except sqlite3.Error as exc:
		_log.warning("SQLITE_CHECKPOINT_FAILED mode=%s: %s", mode, exc)
	finally:
		conn.close()
	return result


@contextmanager
def transaction(conn: sqlite3.Connection, *, immediate: bool = False) -> Iterator[None]:
	"""Commit on success, roll back on any exception.

	Only the outermost block owns the transaction; nested blocks join it.
	``immediate`` takes the write lock up front (claims, compare-and-set).
	"""
	if conn.in_transaction:
		yield
		return
	conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
	try:
		yield
	except BaseException:
		if conn.in_transaction:
			conn.rollback()
		raise
	conn.commit()


def row_to_dict(row: sqlite3.Row | None, *, exclude: tuple[str, ...] = ()) -> dict[str, Any] | None:
	if row is None:
		return None
	return {key: row[key] for key in row.keys() if key not in exclude}
