#!/usr/bin/env python3
#
# certwarden/certs/runtime_config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Operator-tunable runtime configuration, persisted in the settings table.

Readers always get an immutable snapshot; :meth:`ConfigManager.update` is the
only mutation path and swaps the snapshot only after the new values were
validated and persisted.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError, model_validator

from ..db.sqlite_runtime import close_connection, connect
from ..db.sqlite_settings import get_json_settings, set_json_settings
from ..errors import InvalidRequest

_log = logging.getLogger(__name__)

_SETTINGS_PREFIX = "runtime."


class RuntimeConfig(BaseModel):
	"""Lifecycle knobs shared by the scheduler, executor and monitoring."""

	model_config = ConfigDict(frozen=True, extra="forbid")

	auto_renew_enabled: bool = True
	renewal_days_before: int = Field(default=30, ge=1, le=365)
	scheduler_enabled: bool = True
	scheduler_interval_hours: float = Field(default=24.0, gt=0, le=24 * 7)
	monitor_interval_hours: float = Field(default=4.0, gt=0, le=24 * 7)
	batch_size: int = Field(default=10, ge=1, le=1000)
	max_concurrent: int = Field(default=3, ge=1, le=64)
	notifications_enabled: bool = True
	admin_emails: tuple[EmailStr, ...] = ()
	warning_days: int = Field(default=30, ge=0, le=365)
	critical_days: int = Field(default=7, ge=0, le=365)
	max_consecutive_failures: int = Field(default=3, ge=1, le=100)
	escalation_cooldown_hours: float = Field(default=24.0, ge=0)
	self_signed_validity_days: int = Field(default=365, ge=1, le=3650)
	acme_timeout_seconds: float = Field(default=300.0, ge=5, le=3600)

	@model_validator(mode="after")
	def thresholds_ordered(self) -> "RuntimeConfig":
		if self.critical_days > self.warning_days:
			raise ValueError("critical_days must not exceed warning_days")
		return self


ConfigListener = Callable[[RuntimeConfig, RuntimeConfig], None]


def _format_validation_error(exc: ValidationError) -> str:
	parts = []
	for err in exc.errors():
		loc = ".".join(str(p) for p in err.get("loc", ())) or "config"
		parts.append(f"{loc}: {err.get('msg')}")
	return "; ".join(parts)


class ConfigManager:
	"""Process-wide holder of the current :class:`RuntimeConfig`."""

	def __init__(self, db_path: Path) -> None:
		self._db_path = db_path
		self._lock = threading.Lock()
		self._listeners: list[ConfigListener] = []
		self._current = RuntimeConfig()

	@property
	def current(self) -> RuntimeConfig:
		return self._current

	def load(self) -> RuntimeConfig:
		"""(Re)load persisted values; unknown or invalid entries fall back to defaults."""
		conn = connect(self._db_path)
		try:
			stored = get_json_settings(conn, _SETTINGS_PREFIX)
		finally:
			close_connection(conn)

		known = {k: v for k, v in stored.items() if k in RuntimeConfig.model_fields}
		try:
			config = RuntimeConfig.model_validate(known)
		except ValidationError as exc:
			_log.warning("RUNTIME_CONFIG_INVALID %s - using defaults", _format_validation_error(exc))
			config = RuntimeConfig()
		with self._lock:
			self._current = config
		return config

	def subscribe(self, listener: ConfigListener) -> None:
		self._listeners.append(listener)

	def update(self, changes: dict[str, Any]) -> RuntimeConfig:
		"""Apply a partial update atomically and notify listeners.

		Raises:
			InvalidRequest: unknown keys or values failing validation.
		"""
		unknown = set(changes) - set(RuntimeConfig.model_fields)
		if unknown:
			raise InvalidRequest(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

		with self._lock:
			old = self._current
			merged = {**old.model_dump(), **changes}
			try:
				new = RuntimeConfig.model_validate(merged)
			except ValidationError as exc:
				raise InvalidRequest(_format_validation_error(exc)) from exc

			conn = connect(self._db_path)
			try:
				set_json_settings(conn, _SETTINGS_PREFIX, new.model_dump(mode="json"))
			finally:
				close_connection(conn)
			self._current = new

		changed = sorted(k for k in changes if getattr(old, k) != getattr(new, k))
		_log.info("RUNTIME_CONFIG_UPDATED keys=%s", ",".join(changed) or "-")
		for listener in list(self._listeners):
			try:
				listener(old, new)
			except Exception:
				_log.exception("RUNTIME_CONFIG listener failed")
		return new
