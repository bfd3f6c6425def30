#!/usr/bin/env python3
#
# certwarden/db/sqlite_leader.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Single-row leader lock: only the holder runs renewal passes and monitoring sweeps.

The holder refreshes ``acquired_at`` on every heartbeat. Another worker may
take the row over once the heartbeat is older than :data:`LEADER_TTL` or the
holder's PID has disappeared from this host.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from datetime import timedelta

from ..utils.time import utcnow
from .sqlite_runtime import transaction

_log = logging.getLogger(__name__)

LEADER_TTL = timedelta(seconds=60)


def _pid_alive(pid: int) -> bool:
	try:
		os.kill(pid, 0)
	except ProcessLookupError:
		return False
	except OSError:
		# Exists but belongs to someone else
		return True
	return True


def try_acquire_leader_lock(conn: sqlite3.Connection) -> bool:
	"""Take or refresh the lock; True when this process holds it afterwards."""
	me = os.getpid()
	now = utcnow()
	try:
		with transaction(conn, immediate=True):
			row = conn.execute("SELECT pid, acquired_at FROM app_lock WHERE id = 1").fetchone()
			if row is not None and row["pid"] != me:
				stale = row["acquired_at"] is None or row["acquired_at"] < now - LEADER_TTL
				if not stale and _pid_alive(int(row["pid"])):
					return False
				_log.info("LEADER_TAKEOVER previous_pid=%s pid=%d", row["pid"], me)
			conn.execute(
				"INSERT OR REPLACE INTO app_lock (id, pid, acquired_at) VALUES (1, ?, ?)",
				(me, now),
			)
		return True
	except sqlite3.Error as exc:
		_log.warning("LEADER_LOCK_FAILED pid=%d: %s", me, exc)
		return False


def release_leader_lock(conn: sqlite3.Connection) -> bool:
	"""Drop the lock row if this process still owns it."""
	try:
		with transaction(conn):
			conn.execute("DELETE FROM app_lock WHERE id = 1 AND pid = ?", (os.getpid(),))
		return True
	except sqlite3.Error as exc:
		_log.warning("LEADER_RELEASE_FAILED pid=%d: %s", os.getpid(), exc)
		return False
