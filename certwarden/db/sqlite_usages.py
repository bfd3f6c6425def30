#!/usr/bin/env python3
#
# certwarden/db/sqlite_usages.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate usage records (which service consumes which certificate)."""

from __future__ import annotations

import sqlite3
from typing import Optional

from ..utils.time import utcnow
from .sqlite_runtime import transaction


def add_usage(
	conn: sqlite3.Connection,
	certificate_id: int,
	service_name: str,
	service_config_path: Optional[str] = None,
) -> int:
	with transaction(conn):
		cur = conn.execute(
			"""
			INSERT INTO certificate_usages (
				certificate_id, service_name, service_config_path, usage_start_date, is_active
			)
			VALUES (?, ?, ?, ?, 1)
			""",
			(certificate_id, service_name, service_config_path, utcnow()),
		)
		return int(cur.lastrowid)


def get_usage(conn: sqlite3.Connection, usage_id: int) -> Optional[sqlite3.Row]:
	return conn.execute("SELECT * FROM certificate_usages WHERE id = ?", (usage_id,)).fetchone()


def list_usages(conn: sqlite3.Connection, certificate_id: int, *, active_only: bool = False) -> list[sqlite3.Row]:
	sql = "SELECT * FROM certificate_usages WHERE certificate_id = ?"
	if active_only:
		sql += " AND is_active = 1"
	return conn.execute(sql + " ORDER BY id", (certificate_id,)).fetchall()


def end_usage(conn: sqlite3.Connection, usage_id: int) -> bool:
	"""Mark one usage inactive. Returns False if it does not exist or already ended."""
	with transaction(conn):
		cur = conn.execute(
			"UPDATE certificate_usages SET is_active = 0, usage_end_date = ? WHERE id = ? AND is_active = 1",
			(utcnow(), usage_id),
		)
		return cur.rowcount > 0


def end_all_usages(conn: sqlite3.Connection, certificate_id: int) -> int:
	"""Mark every active usage of a certificate inactive; returns how many."""
	with transaction(conn):
		cur = conn.execute(
			"""
			UPDATE certificate_usages SET is_active = 0, usage_end_date = ?
			WHERE certificate_id = ? AND is_active = 1
			""",
			(utcnow(), certificate_id),
		)
		return cur.rowcount
