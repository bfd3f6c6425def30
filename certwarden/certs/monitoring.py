#!/usr/bin/env python3
#
# certwarden/certs/monitoring.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Expiry classification and the monitoring evaluator.

:func:`classify` is a pure function. :class:`MonitoringEvaluator` applies it
to stored certificates, drives the ACTIVE -> RENEWAL_NEEDED and
-> EXPIRED transitions and publishes alerts; it never delivers notifications
itself.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from ..db.sqlite_certificates import (
	compare_and_set_status,
	get_certificate,
	is_renewal_claimed,
	list_active_certificates,
	update_certificate,
)
from ..db.sqlite_runtime import close_connection, connect
from ..utils.time import days_until, utcnow
from .events import AlertRaised, EventBus
from .runtime_config import ConfigManager
from .state import CertificateStatus, can_transition

_log = logging.getLogger(__name__)


class Classification(str, Enum):
	OK = "OK"
	WARNING = "WARNING"
	CRITICAL = "CRITICAL"
	EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class Thresholds:
	warning_days: int
	critical_days: int


@dataclass(frozen=True)
class Evaluation:
	certificate_id: int
	domain_name: str
	classification: Classification
	days_until_expiry: int | None
	status: str
	transitioned: bool = False

	def to_dict(self) -> dict[str, Any]:
		return {
			"certificate_id": self.certificate_id,
			"domain_name": self.domain_name,
			"classification": self.classification.value,
			"days_until_expiry": self.days_until_expiry,
			"status": self.status,
			"transitioned": self.transitioned,
		}


def effective_thresholds(cert: Mapping[str, Any], defaults: Thresholds) -> Thresholds:
	"""Per-certificate overrides fall back to the global thresholds."""
	warning = cert["warning_days"] if cert["warning_days"] is not None else defaults.warning_days
	critical = cert["critical_days"] if cert["critical_days"] is not None else defaults.critical_days
	return Thresholds(warning_days=warning, critical_days=min(critical, warning))


def classify(cert: Mapping[str, Any], now: datetime, thresholds: Thresholds) -> Classification:
	"""Classify a certificate against warning/critical thresholds.

	A certificate without a known expiry (issuance still pending) is OK.
	An ERROR certificate inside the warning window is already CRITICAL.
	"""
	expires_at = cert["expires_at"]
	if expires_at is None:
		return Classification.OK
	if now > expires_at:
		return Classification.EXPIRED

	remaining = expires_at - now
	if remaining <= timedelta(days=thresholds.critical_days):
		return Classification.CRITICAL
	within_warning = remaining <= timedelta(days=thresholds.warning_days)
	if within_warning and cert["status"] == CertificateStatus.ERROR.value:
		return Classification.CRITICAL
	if within_warning:
		return Classification.WARNING
	return Classification.OK


def within_lead_window(cert: Mapping[str, Any], now: datetime) -> bool:
	"""True when ``expires_at - now <= renewal_days_before`` (unknown expiry counts as due)."""
	expires_at = cert["expires_at"]
	if expires_at is None:
		return True
	return expires_at - now <= timedelta(days=int(cert["renewal_days_before"]))


class MonitoringEvaluator:
	"""Re-evaluates stored certificates and raises alerts."""

	def __init__(self, db_path: Path, config: ConfigManager, events: EventBus) -> None:
		self._db_path = db_path
		self._config = config
		self._events = events
		self._last_seen: dict[int, Classification] = {}
		self._lock = threading.Lock()

	def default_thresholds(self) -> Thresholds:
		cfg = self._config.current
		return Thresholds(warning_days=cfg.warning_days, critical_days=cfg.critical_days)

	def evaluate_certificate(
		self,
		conn: sqlite3.Connection,
		cert: sqlite3.Row,
		now: datetime | None = None,
	) -> Evaluation:
		now = now or utcnow()
		cert_id = int(cert["id"])
		status = CertificateStatus(cert["status"])
		thresholds = effective_thresholds(cert, self.default_thresholds())
		classification = classify(cert, now, thresholds)
		days = days_until(cert["expires_at"], now)

		target: CertificateStatus | None = None
		if classification is Classification.EXPIRED:
			if status in (CertificateStatus.ACTIVE, CertificateStatus.RENEWAL_NEEDED, CertificateStatus.ERROR):
				target = CertificateStatus.EXPIRED
		elif status is CertificateStatus.ACTIVE and cert["expires_at"] is not None:
			if classification in (Classification.WARNING, Classification.CRITICAL) or within_lead_window(cert, now):
				target = CertificateStatus.RENEWAL_NEEDED

		transitioned = False
		# A renewal in flight owns the record; it re-evaluates when done
		if target is not None and can_transition(status, target) and not is_renewal_claimed(conn, cert_id):
			transitioned = compare_and_set_status(conn, cert_id, status.value, target.value)
			if transitioned:
				_log.info(
					"CERT_STATUS cert_id=%d domain=%s %s->%s classification=%s days=%s",
					cert_id, cert["domain_name"], status.value, target.value, classification.value, days,
				)
				status = target

		if cert["monitoring_enabled"]:
			self._maybe_alert(cert, classification, days)
		self._maybe_escalate(conn, cert, classification, days, now)

		return Evaluation(
			certificate_id=cert_id,
			domain_name=cert["domain_name"],
			classification=classification,
			days_until_expiry=days,
			status=status.value,
			transitioned=transitioned,
		)

	def _maybe_alert(self, cert: sqlite3.Row, classification: Classification, days: int | None) -> None:
		"""Alert when a certificate enters a non-OK classification."""
		cert_id = int(cert["id"])
		with self._lock:
			previous = self._last_seen.get(cert_id)
			self._last_seen[cert_id] = classification
		if classification is Classification.OK or classification == previous:
			return
		self._events.publish(AlertRaised(
			certificate_id=cert_id,
			domain_name=cert["domain_name"],
			classification=classification.value,
			days_until_expiry=days,
			reason=f"certificate is {classification.value.lower()}",
		))

	def _maybe_escalate(
		self,
		conn: sqlite3.Connection,
		cert: sqlite3.Row,
		classification: Classification,
		days: int | None,
		now: datetime,
	) -> None:
		"""Critical alert after N consecutive automatic failures, rate-limited by a cooldown."""
		cfg = self._config.current
		failures = int(cert["consecutive_failures"] or 0)
		if failures < cfg.max_consecutive_failures:
			return
		escalated_at = cert["escalated_at"]
		if escalated_at is not None and now - escalated_at < timedelta(hours=cfg.escalation_cooldown_hours):
			return
		update_certificate(conn, int(cert["id"]), escalated_at=now)
		self._events.publish(AlertRaised(
			certificate_id=int(cert["id"]),
			domain_name=cert["domain_name"],
			classification=Classification.CRITICAL.value,
			days_until_expiry=days,
			reason=f"{failures} consecutive automatic renewal failures (last error: {cert['last_error']})",
			escalated=True,
		))

	def evaluate_id(self, cert_id: int, now: datetime | None = None) -> Evaluation | None:
		conn = connect(self._db_path)
		try:
			cert = get_certificate(conn, cert_id)
			if cert is None or not cert["is_active"]:
				return None
			return self.evaluate_certificate(conn, cert, now)
		finally:
			close_connection(conn)

	def evaluate_all(self, now: datetime | None = None) -> list[Evaluation]:
		"""Re-evaluate every active certificate (the periodic monitoring pass)."""
		now = now or utcnow()
		conn = connect(self._db_path)
		try:
			results = []
			for cert in list_active_certificates(conn):
				try:
					results.append(self.evaluate_certificate(conn, cert, now))
				except Exception:
					_log.exception("MONITORING_FAILED cert_id=%s", cert["id"])
			counts: dict[str, int] = {}
			for item in results:
				counts[item.classification.value] = counts.get(item.classification.value, 0) + 1
			_log.info(
				"MONITORING_PASS total=%d %s",
				len(results),
				" ".join(f"{k.lower()}={v}" for k, v in sorted(counts.items())) or "-",
			)
			return results
		finally:
			close_connection(conn)

	def forget(self, cert_id: int) -> None:
		with self._lock:
			self._last_seen.pop(cert_id, None)
