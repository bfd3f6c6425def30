#!/usr/bin/env python3
#
# tests/conftest.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Shared fixtures: a fresh SQLite database per test plus the core components."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from certwarden.certs.events import EventBus
from certwarden.certs.material import generate_self_signed
from certwarden.certs.monitoring import MonitoringEvaluator
from certwarden.certs.runtime_config import ConfigManager
from certwarden.certs.state import CertificateStatus, CertificateType
from certwarden.db.sqlite_certificates import create_certificate, get_certificate
from certwarden.db.sqlite_runtime import close_all_connections, close_connection, connect
from certwarden.db.sqlite_schema import init_schema
from certwarden.utils import vault
from certwarden.utils.config import Config
from certwarden.utils.time import utcnow

SECRET = "test-secret-key"


@pytest.fixture(autouse=True)
def _close_connections():
	yield
	close_all_connections()


@pytest.fixture
def secret_key() -> str:
	return SECRET


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
	path = tmp_path / "certwarden.db"
	conn = connect(path)
	try:
		init_schema(conn)
	finally:
		close_connection(conn)
	return path


@pytest.fixture
def app_config(tmp_path: Path, db_path: Path) -> Config:
	acme_dir = tmp_path / "acme"
	acme_dir.mkdir(exist_ok=True)
	return Config(
		base_dir=tmp_path,
		db_path=db_path,
		data_dir=tmp_path,
		acme_dir=acme_dir,
		secret_key=SECRET,
		acme_directory="https://acme.test/directory",
		acme_alt_directory="https://alt.acme.test/directory",
	)


@pytest.fixture
def config(db_path: Path) -> ConfigManager:
	manager = ConfigManager(db_path)
	manager.load()
	return manager


@pytest.fixture
def events() -> EventBus:
	return EventBus()


@pytest.fixture
def evaluator(db_path: Path, config: ConfigManager, events: EventBus) -> MonitoringEvaluator:
	return MonitoringEvaluator(db_path, config, events)


@pytest.fixture
def insert_cert(db_path: Path):
	"""Insert a certificate row directly; returns its id.

	``expires_in_days=None`` stores no expiry (never issued); ``material``
	stores real certificate material instead of synthetic dates.
	"""
	counter = {"n": 0}

	def _insert(
		domain: str | None = None,
		*,
		cert_type: CertificateType = CertificateType.SELF_SIGNED,
		status: CertificateStatus = CertificateStatus.ACTIVE,
		expires_in_days: float | None = 60,
		material=None,
		**fields,
	) -> int:
		counter["n"] += 1
		domain = domain or f"host{counter['n']}.example.com"
		now = utcnow()
		if material is not None:
			fields = {**_material_columns(material), **fields}
		elif expires_in_days is not None:
			fields.setdefault("issued_at", now - timedelta(days=30))
			fields.setdefault("expires_at", now + timedelta(days=expires_in_days))
		conn = connect(db_path)
		try:
			return create_certificate(
				conn,
				certificate_name=domain,
				domain_name=domain,
				certificate_type=cert_type,
				status=status,
				**fields,
			)
		finally:
			close_connection(conn)

	return _insert


@pytest.fixture
def fetch_cert(db_path: Path):
	def _fetch(cert_id: int):
		conn = connect(db_path)
		try:
			return get_certificate(conn, cert_id)
		finally:
			close_connection(conn)

	return _fetch


@pytest.fixture(scope="session")
def self_signed():
	"""Real self-signed material, cached per (domain, days)."""
	cache = {}

	def _make(domain: str = "example.com", days: int = 90):
		key = (domain, days)
		if key not in cache:
			cache[key] = generate_self_signed(domain, days)
		return cache[key]

	return _make


def _material_columns(material) -> dict:
	"""Certificate columns for *material*, key encrypted with the test secret."""
	return {
		"issuer": material.issuer,
		"serial_number": material.serial_number,
		"issued_at": material.issued_at,
		"expires_at": material.expires_at,
		"subject_alt_names": material.subject_alt_names,
		"certificate_pem": material.certificate_pem,
		"chain_pem": material.chain_pem,
		"private_key": vault.encrypt(material.private_key_pem, SECRET),
	}
