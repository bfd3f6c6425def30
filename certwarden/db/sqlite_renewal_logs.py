#!/usr/bin/env python3
#
# certwarden/db/sqlite_renewal_logs.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Append-only renewal audit trail."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Optional

from ..utils.time import utcnow
from .sqlite_runtime import transaction


def append_renewal_log(
	conn: sqlite3.Connection,
	*,
	certificate_id: int,
	renewal_type: str,
	status: str,
	old_expires_at: Optional[datetime] = None,
	new_expires_at: Optional[datetime] = None,
	error_message: Optional[str] = None,
	attempt_duration_ms: Optional[int] = None,
) -> int:
	"""Insert one renewal log entry and return its ID.

	Joins the caller's transaction when there is one, so the log entry and
	the certificate update commit together.
	"""
	with transaction(conn):
		cur = conn.execute(
			"""
			INSERT INTO renewal_logs (
				certificate_id, renewal_type, status, old_expires_at, new_expires_at,
				error_message, attempt_duration_ms, created_at
			)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?)
			""",
			(
				certificate_id,
				getattr(renewal_type, "value", renewal_type),
				getattr(status, "value", status),
				old_expires_at,
				new_expires_at,
				error_message,
				attempt_duration_ms,
				utcnow(),
			),
		)
		return int(cur.lastrowid)


def list_renewal_logs(
	conn: sqlite3.Connection,
	certificate_id: int,
	*,
	page: int = 1,
	page_size: int = 10,
) -> tuple[list[sqlite3.Row], int]:
	"""One page of a certificate's log entries (newest first) plus the total."""
	page = max(1, page)
	page_size = max(1, page_size)
	total = conn.execute(
		"SELECT COUNT(*) FROM renewal_logs WHERE certificate_id = ?",
		(certificate_id,),
	).fetchone()[0]
	cur = conn.execute(
		"""
		SELECT * FROM renewal_logs WHERE certificate_id = ?
		ORDER BY id DESC LIMIT ? OFFSET ?
		""",
		(certificate_id, page_size, (page - 1) * page_size),
	)
	return cur.fetchall(), int(total)
