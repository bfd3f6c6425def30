#!/usr/bin/env python3
#
# certwarden/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Process configuration read from the environment.

Only deployment facts live here (paths, secrets, CA endpoints). Everything an
operator tunes at runtime is stored in the database, see
:mod:`certwarden.certs.runtime_config`.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path

_log = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]

LETSENCRYPT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"
LETSENCRYPT_STAGING_DIRECTORY = "https://acme-staging-v02.api.letsencrypt.org/directory"
ZEROSSL_DIRECTORY = "https://acme.zerossl.com/v2/DV90"

_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
_TRUTHY = ("1", "true", "yes", "on")


class ConfigValidationError(Exception):
	"""The environment cannot produce a usable configuration."""


@dataclass(frozen=True)
class Config:
	base_dir: Path
	db_path: Path
	data_dir: Path
	acme_dir: Path
	log_level: str = "INFO"
	secret_key: str = ""
	api_token: str = ""
	acme_directory: str = LETSENCRYPT_DIRECTORY
	acme_alt_directory: str = ZEROSSL_DIRECTORY
	dns_hook: str = ""


def _unquote(value: str) -> str:
	value = value.strip()
	if len(value) >= 2 and value[0] in "'\"":
		closing = value.find(value[0], 1)
		if closing > 0:
			return value[1:closing]
	return value.split(" #", 1)[0].strip()


def load_dotenv(path: Path | None = None) -> int:
	"""Seed ``os.environ`` from a ``settings.env`` file.

	Accepts ``KEY=VALUE`` and ``export KEY=VALUE`` lines; comments and blank
	lines are skipped. Variables already present in the environment win.
	Returns how many variables were set.
	"""
	path = path or PROJECT_ROOT / "settings.env"
	if not path.is_file():
		return 0
	applied = 0
	for line in path.read_text(encoding="utf-8").splitlines():
		line = line.strip()
		if line.startswith("#") or "=" not in line:
			continue
		key, _, value = line.partition("=")
		key = key.removeprefix("export ").strip()
		if key and key not in os.environ:
			os.environ[key] = _unquote(value)
			applied += 1
	return applied


def _env(name: str, default: str = "") -> str:
	return os.getenv(name, "").strip() or default


def _prepare_dir(path: Path) -> Path:
	if path.exists() and not path.is_dir():
		raise ConfigValidationError(f"Not a directory: {path}")
	try:
		path.mkdir(parents=True, exist_ok=True)
	except OSError as exc:
		raise ConfigValidationError(f"Cannot create {path}: {exc}") from exc
	return path


def _secret_key() -> str:
	secret = _env("CERTWARDEN_SECRET_KEY")
	if secret:
		return secret
	if "pytest" in sys.modules:
		_log.debug("CONFIG_EPHEMERAL_SECRET under pytest")
		return "pytest-only-secret"
	raise ConfigValidationError(
		"CERTWARDEN_SECRET_KEY is required to encrypt private keys. "
		"Generate one with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
	)


def load_config() -> Config:
	"""Build :class:`Config` from the environment (after applying ``settings.env``)."""
	load_dotenv()

	data_dir = _prepare_dir(Path(_env("CERTWARDEN_DATA_DIR", str(PROJECT_ROOT / "data"))).resolve())
	acme_dir = _prepare_dir(data_dir / "acme")

	log_level = _env("LOG_LEVEL", "INFO").upper()
	if log_level not in _LOG_LEVELS:
		_log.warning("CONFIG_BAD_LOG_LEVEL value=%s using INFO", log_level)
		log_level = "INFO"

	if _env("CERTWARDEN_ACME_STAGING").lower() in _TRUTHY:
		primary = LETSENCRYPT_STAGING_DIRECTORY
	else:
		primary = _env("CERTWARDEN_ACME_DIRECTORY", LETSENCRYPT_DIRECTORY)

	dns_hook = _env("CERTWARDEN_DNS_HOOK")
	if dns_hook and not Path(dns_hook).is_file():
		raise ConfigValidationError(f"CERTWARDEN_DNS_HOOK is not a file: {dns_hook}")

	return Config(
		base_dir=PROJECT_ROOT,
		db_path=data_dir / "certwarden.db",
		data_dir=data_dir,
		acme_dir=acme_dir,
		log_level=log_level,
		secret_key=_secret_key(),
		api_token=_env("CERTWARDEN_API_TOKEN"),
		acme_directory=primary,
		acme_alt_directory=_env("CERTWARDEN_ACME_ALT_DIRECTORY", ZEROSSL_DIRECTORY),
		dns_hook=dns_hook,
	)
