#!/usr/bin/env python3
#
# certwarden/db/sqlite_certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate record queries and mutations."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from ..utils.time import utcnow
from .sqlite_runtime import transaction

_log = logging.getLogger(__name__)

# Columns never returned by the API
SECRET_COLUMNS = (
	"private_key",
	"staged_certificate_pem",
	"staged_chain_pem",
	"staged_private_key",
	"renewal_claimed_by",
)

_UPDATABLE_COLUMNS = frozenset({
	"certificate_name",
	"subject_alt_names",
	"status",
	"issuer",
	"serial_number",
	"issued_at",
	"expires_at",
	"auto_renew",
	"renewal_days_before",
	"last_renewal_attempt",
	"last_error",
	"last_error_detail",
	"challenge_type",
	"acme_account_email",
	"is_active",
	"certificate_pem",
	"chain_pem",
	"private_key",
	"staged_certificate_pem",
	"staged_chain_pem",
	"staged_private_key",
	"monitoring_enabled",
	"warning_days",
	"critical_days",
	"consecutive_failures",
	"escalated_at",
	"retry_not_before",
})

_BOOL_COLUMNS = frozenset({"auto_renew", "is_active", "monitoring_enabled"})

# A claim older than this belongs to a crashed worker
RENEWAL_CLAIM_TTL = timedelta(hours=1)


def _encode(column: str, value: Any) -> Any:
	if column in _BOOL_COLUMNS and value is not None:
		return int(bool(value))
	if column == "subject_alt_names" and value is not None and not isinstance(value, str):
		return json.dumps(list(value))
	if isinstance(value, Enum):
		return value.value
	return value


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_certificate(conn: sqlite3.Connection, cert_id: int) -> Optional[sqlite3.Row]:
	cur = conn.execute("SELECT * FROM certificates WHERE id = ?", (cert_id,))
	return cur.fetchone()


def get_active_by_domain(conn: sqlite3.Connection, domain: str) -> Optional[sqlite3.Row]:
	cur = conn.execute(
		"SELECT * FROM certificates WHERE domain_name = ? AND is_active = 1",
		(domain,),
	)
	return cur.fetchone()


def list_by_domain(conn: sqlite3.Connection, domain: str) -> list[sqlite3.Row]:
	cur = conn.execute(
		"SELECT * FROM certificates WHERE domain_name = ? ORDER BY is_active DESC, id DESC",
		(domain,),
	)
	return cur.fetchall()


def list_certificates_paginated(
	conn: sqlite3.Connection,
	*,
	page: int = 1,
	page_size: int = 20,
	status: str | None = None,
	include_inactive: bool = False,
) -> tuple[list[sqlite3.Row], int]:
	"""Return one page of certificates (newest first) and the total count."""
	page = max(1, page)
	page_size = max(1, page_size)
	clauses: list[str] = []
	params: list[Any] = []
	if not include_inactive:
		clauses.append("is_active = 1")
	if status:
		clauses.append("status = ?")
		params.append(status)
	where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

	total = conn.execute(f"SELECT COUNT(*) FROM certificates {where}", params).fetchone()[0]
	cur = conn.execute(
		f"SELECT * FROM certificates {where} ORDER BY id DESC LIMIT ? OFFSET ?",
		[*params, page_size, (page - 1) * page_size],
	)
	return cur.fetchall(), int(total)


def list_active_certificates(conn: sqlite3.Connection) -> list[sqlite3.Row]:
	cur = conn.execute("SELECT * FROM certificates WHERE is_active = 1 ORDER BY id")
	return cur.fetchall()


def list_by_status(conn: sqlite3.Connection, statuses: tuple[str, ...]) -> list[sqlite3.Row]:
	"""Active certificates in any of *statuses*."""
	if not statuses:
		return []
	marks = ",".join("?" for _ in statuses)
	cur = conn.execute(
		f"SELECT * FROM certificates WHERE is_active = 1 AND status IN ({marks}) ORDER BY id",
		statuses,
	)
	return cur.fetchall()


def get_certificates_by_ids(conn: sqlite3.Connection, ids: list[int]) -> list[sqlite3.Row]:
	if not ids:
		return []
	marks = ",".join("?" for _ in ids)
	cur = conn.execute(f"SELECT * FROM certificates WHERE id IN ({marks})", list(ids))
	return cur.fetchall()


def list_expiring(conn: sqlite3.Connection, now: datetime, days: int) -> list[sqlite3.Row]:
	"""Active, not yet expired certificates expiring within *days*, soonest first."""
	horizon = now + timedelta(days=days)
	rows = [
		row for row in list_active_certificates(conn)
		if row["expires_at"] is not None and now < row["expires_at"] <= horizon
	]
	rows.sort(key=lambda r: r["expires_at"])
	return rows


def count_by_column(conn: sqlite3.Connection, column: str) -> dict[str, int]:
	"""Count active certificates grouped by ``status`` or ``certificate_type``."""
	if column not in ("status", "certificate_type"):
		raise ValueError(f"Cannot group by {column!r}")
	cur = conn.execute(
		f"SELECT {column} AS k, COUNT(*) AS n FROM certificates WHERE is_active = 1 GROUP BY {column}"
	)
	return {row["k"]: int(row["n"]) for row in cur.fetchall()}


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def create_certificate(
	conn: sqlite3.Connection,
	*,
	certificate_name: str,
	domain_name: str,
	certificate_type: str,
	status: str,
	**fields: Any,
) -> int:
	"""Insert a certificate row and return its ID.

	Extra keyword arguments must be updatable columns (material, flags, ...).
	Raises sqlite3.IntegrityError when the domain already has an active row.
	"""
	unknown = set(fields) - _UPDATABLE_COLUMNS
	if unknown:
		raise ValueError(f"Unknown certificate columns: {sorted(unknown)}")
	now = utcnow()
	columns = ["certificate_name", "domain_name", "certificate_type", "status", "created_at", "updated_at"]
	values: list[Any] = [
		certificate_name,
		domain_name,
		_encode("certificate_type", certificate_type),
		_encode("status", status),
		now,
		now,
	]
	for column, value in fields.items():
		columns.append(column)
		values.append(_encode(column, value))

	with transaction(conn):
		cur = conn.execute(
			f"INSERT INTO certificates ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
			values,
		)
		return int(cur.lastrowid)


def update_certificate(conn: sqlite3.Connection, cert_id: int, **changes: Any) -> bool:
	"""Update columns of one certificate. Returns True if the row exists."""
	unknown = set(changes) - _UPDATABLE_COLUMNS
	if unknown:
		raise ValueError(f"Unknown certificate columns: {sorted(unknown)}")
	if not changes:
		return get_certificate(conn, cert_id) is not None

	assignments = [f"{column} = ?" for column in changes]
	params = [_encode(column, value) for column, value in changes.items()]
	assignments.append("updated_at = ?")
	params.extend([utcnow(), cert_id])
	with transaction(conn):
		cur = conn.execute(f"UPDATE certificates SET {', '.join(assignments)} WHERE id = ?", params)
		return cur.rowcount > 0


def delete_certificate(conn: sqlite3.Connection, cert_id: int) -> bool:
	"""Hard delete; renewal logs and usage history are kept."""
	with transaction(conn):
		cur = conn.execute("DELETE FROM certificates WHERE id = ?", (cert_id,))
		return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Renewal claim (single in-flight renewal per certificate, across workers)
# ---------------------------------------------------------------------------

def claim_renewal(
	conn: sqlite3.Connection,
	cert_id: int,
	owner: str,
	*,
	stale_after: timedelta = RENEWAL_CLAIM_TTL,
) -> bool:
	"""Mark the certificate as being renewed by *owner*.

	Returns False while another owner holds a claim younger than
	*stale_after*. Claims left behind by a crashed worker expire.
	"""
	now = utcnow()
	with transaction(conn, immediate=True):
		row = conn.execute(
			"SELECT renewal_claimed_at, renewal_claimed_by FROM certificates WHERE id = ?",
			(cert_id,),
		).fetchone()
		if row is None:
			return False
		claimed_at = row["renewal_claimed_at"]
		if claimed_at is not None and now - claimed_at < stale_after:
			return False
		if claimed_at is not None:
			_log.warning(
				"RENEWAL_CLAIM_STALE cert_id=%d previous_owner=%s taken_over",
				cert_id, row["renewal_claimed_by"],
			)
		conn.execute(
			"UPDATE certificates SET renewal_claimed_at = ?, renewal_claimed_by = ? WHERE id = ?",
			(now, owner, cert_id),
		)
		return True


def release_renewal(conn: sqlite3.Connection, cert_id: int, owner: str) -> None:
	with transaction(conn):
		conn.execute(
			"""
			UPDATE certificates SET renewal_claimed_at = NULL, renewal_claimed_by = NULL
			WHERE id = ? AND renewal_claimed_by = ?
			""",
			(cert_id, owner),
		)


def is_renewal_claimed(
	conn: sqlite3.Connection,
	cert_id: int,
	*,
	stale_after: timedelta = RENEWAL_CLAIM_TTL,
) -> bool:
	row = conn.execute("SELECT renewal_claimed_at FROM certificates WHERE id = ?", (cert_id,)).fetchone()
	if row is None or row["renewal_claimed_at"] is None:
		return False
	return utcnow() - row["renewal_claimed_at"] < stale_after


def compare_and_set_status(
	conn: sqlite3.Connection,
	cert_id: int,
	expected: str,
	target: str,
	**changes: Any,
) -> bool:
	"""Move *cert_id* from *expected* to *target* status (plus *changes*).

	Returns False when the status changed underneath us.
	"""
	unknown = set(changes) - _UPDATABLE_COLUMNS
	if unknown:
		raise ValueError(f"Unknown certificate columns: {sorted(unknown)}")
	assignments = ["status = ?", "updated_at = ?"]
	params: list[Any] = [_encode("status", target), utcnow()]
	for column, value in changes.items():
		assignments.append(f"{column} = ?")
		params.append(_encode(column, value))
	params.extend([cert_id, _encode("status", expected)])
	with transaction(conn):
		cur = conn.execute(
			f"UPDATE certificates SET {', '.join(assignments)} WHERE id = ? AND status = ?",
			params,
		)
		return cur.rowcount > 0
