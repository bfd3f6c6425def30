#!/usr/bin/env python3
#
# certwarden/db/sqlite_settings.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Key/value settings table helpers."""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any

from ..utils.time import utcnow
from .sqlite_runtime import transaction

_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Settings operations
# ---------------------------------------------------------------------------

def set_settings(conn: sqlite3.Connection, values: dict[str, str]) -> None:
	"""Upsert several settings in one transaction."""
	if not values:
		return
	now = utcnow()
	with transaction(conn):
		conn.executemany(
			"""
			INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
			ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
			""",
			[(key, value, now) for key, value in values.items()],
		)


def get_settings_with_prefix(conn: sqlite3.Connection, prefix: str) -> dict[str, str]:
	"""Return all settings whose key starts with *prefix*, keyed without it."""
	cur = conn.execute(
		"SELECT key, value FROM settings WHERE substr(key, 1, ?) = ?",
		(len(prefix), prefix),
	)
	return {row["key"][len(prefix):]: row["value"] for row in cur.fetchall()}


def get_json_settings(conn: sqlite3.Connection, prefix: str) -> dict[str, Any]:
	"""Load JSON-encoded settings under *prefix*; undecodable entries are skipped."""
	values: dict[str, Any] = {}
	for key, raw in get_settings_with_prefix(conn, prefix).items():
		try:
			values[key] = json.loads(raw)
		except json.JSONDecodeError:
			_log.warning("SETTINGS_CORRUPT key=%s%s ignored", prefix, key)
	return values


def set_json_settings(conn: sqlite3.Connection, prefix: str, values: dict[str, Any]) -> None:
	"""Persist *values* as JSON under *prefix* atomically."""
	set_settings(conn, {f"{prefix}{key}": json.dumps(value) for key, value in values.items()})
