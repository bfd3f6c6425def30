#!/usr/bin/env python3
#
# certwarden/db/sqlite_schema.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""SQLite schema initialization."""

from __future__ import annotations

import logging
import sqlite3

from .sqlite_runtime import transaction

_log = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Schema Initialization
# ─────────────────────────────────────────────────────────────────────────────


def init_schema(conn: sqlite3.Connection) -> None:
	"""Create the complete schema (idempotent)."""
	with transaction(conn):
		# Certificates. Private key columns hold vault-encrypted PEM only.
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS certificates (
				id INTEGER PRIMARY KEY AUTOINCREMENT,
				certificate_name TEXT NOT NULL,
				domain_name TEXT NOT NULL,
				subject_alt_names TEXT,
				certificate_type TEXT NOT NULL,
				status TEXT NOT NULL,
				issuer TEXT,
				serial_number TEXT,
				issued_at timestamp,
				expires_at timestamp,
				auto_renew INTEGER NOT NULL DEFAULT 1,
				renewal_days_before INTEGER NOT NULL DEFAULT 30,
				last_renewal_attempt timestamp,
				last_error TEXT,
				last_error_detail TEXT,
				challenge_type TEXT,
				acme_account_email TEXT,
				is_active INTEGER NOT NULL DEFAULT 1,
				certificate_pem TEXT,
				chain_pem TEXT,
				private_key TEXT,
				staged_certificate_pem TEXT,
				staged_chain_pem TEXT,
				staged_private_key TEXT,
				monitoring_enabled INTEGER NOT NULL DEFAULT 1,
				warning_days INTEGER,
				critical_days INTEGER,
				consecutive_failures INTEGER NOT NULL DEFAULT 0,
				escalated_at timestamp,
				retry_not_before timestamp,
				renewal_claimed_at timestamp,
				renewal_claimed_by TEXT,
				created_at timestamp NOT NULL,
				updated_at timestamp NOT NULL
			)
			"""
		)
		# At most one active certificate per domain
		conn.execute(
			"""
			CREATE UNIQUE INDEX IF NOT EXISTS idx_certificates_active_domain
			ON certificates(domain_name) WHERE is_active = 1
			"""
		)
		conn.execute("CREATE INDEX IF NOT EXISTS idx_certificates_status ON certificates(status)")
		conn.execute("CREATE INDEX IF NOT EXISTS idx_certificates_expires_at ON certificates(expires_at)")

		# Renewal audit trail (append-only). certificate_id is a reference,
		# not ownership: entries outlive a hard-deleted certificate.
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS renewal_logs (
				id INTEGER PRIMARY KEY AUTOINCREMENT,
				certificate_id INTEGER NOT NULL,
				renewal_type TEXT NOT NULL,
				status TEXT NOT NULL,
				old_expires_at timestamp,
				new_expires_at timestamp,
				error_message TEXT,
				attempt_duration_ms INTEGER,
				created_at timestamp NOT NULL
			)
			"""
		)
		conn.execute(
			"CREATE INDEX IF NOT EXISTS idx_renewal_logs_certificate ON renewal_logs(certificate_id, id)"
		)
		conn.execute(
			"""
			CREATE TRIGGER IF NOT EXISTS trg_renewal_logs_immutable
			BEFORE UPDATE ON renewal_logs
			BEGIN
				SELECT RAISE(ABORT, 'renewal_logs is append-only');
			END
			"""
		)
		conn.execute(
			"""
			CREATE TRIGGER IF NOT EXISTS trg_renewal_logs_no_delete
			BEFORE DELETE ON renewal_logs
			BEGIN
				SELECT RAISE(ABORT, 'renewal_logs is append-only');
			END
			"""
		)

		# Services consuming a certificate. Ended usages are kept as history,
		# including for hard-deleted certificates.
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS certificate_usages (
				id INTEGER PRIMARY KEY AUTOINCREMENT,
				certificate_id INTEGER NOT NULL,
				service_name TEXT NOT NULL,
				service_config_path TEXT,
				usage_start_date timestamp NOT NULL,
				usage_end_date timestamp,
				is_active INTEGER NOT NULL DEFAULT 1
			)
			"""
		)
		conn.execute(
			"CREATE INDEX IF NOT EXISTS idx_certificate_usages_certificate ON certificate_usages(certificate_id)"
		)

		# Runtime settings
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS settings (
				key TEXT PRIMARY KEY,
				value TEXT NOT NULL,
				updated_at timestamp NOT NULL
			)
			"""
		)

		# Leader election (only one worker runs periodic jobs)
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS app_lock (
				id INTEGER PRIMARY KEY CHECK (id = 1),
				pid INTEGER NOT NULL,
				acquired_at timestamp NOT NULL
			)
			"""
		)
	_log.debug("Schema initialized")
