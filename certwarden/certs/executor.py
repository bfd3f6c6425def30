#!/usr/bin/env python3
#
# certwarden/certs/executor.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Single-certificate renewal / issuance.

One call to :meth:`RenewalExecutor.renew` is one attempt: it claims the
certificate, obtains new material along the path its type dictates, and
commits the certificate update together with exactly one renewal log entry.
Failures are recorded and re-raised, never retried here; retrying is the
scheduler's job on its next pass.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import sqlite3
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Optional

from ..db.sqlite_certificates import claim_renewal, compare_and_set_status, get_certificate, release_renewal, update_certificate
from ..db.sqlite_renewal_logs import append_renewal_log
from ..db.sqlite_runtime import close_connection, connect, transaction
from ..errors import (
	AcmeError,
	Cancelled,
	CertificateNotFound,
	CertWardenError,
	InvalidRequest,
	InvalidStateTransition,
	ManualRenewalRequired,
	RateLimited,
	RenewalInProgress,
)
from ..utils import vault
from ..utils.time import isoformat, utcnow
from .events import EventBus, RenewalCompleted
from .material import CertificateMaterial, generate_self_signed, matches_domain, parse_material
from .monitoring import MonitoringEvaluator, within_lead_window
from .runtime_config import ConfigManager
from .state import CertificateStatus, CertificateType, ChallengeType, RenewalKind, RenewalOutcome, can_transition, transition

if TYPE_CHECKING:
	from ..acme.client import AcmeOrderClient

_log = logging.getLogger(__name__)

_UNEXPECTED = "UnexpectedError"


@dataclass(frozen=True)
class RenewalResult:
	certificate_id: int
	domain_name: str
	renewal_type: RenewalKind
	outcome: RenewalOutcome
	old_expires_at: datetime | None
	new_expires_at: datetime | None
	duration_ms: int
	short_circuited: bool = False

	def to_dict(self) -> dict[str, Any]:
		return {
			"certificate_id": self.certificate_id,
			"domain_name": self.domain_name,
			"renewal_type": self.renewal_type.value,
			"outcome": self.outcome.value,
			"old_expires_at": isoformat(self.old_expires_at),
			"new_expires_at": isoformat(self.new_expires_at),
			"duration_ms": self.duration_ms,
			"short_circuited": self.short_circuited,
		}


def _claim_owner() -> str:
	return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def validate_uploaded(material: CertificateMaterial, domain: str, now: datetime) -> None:
	"""Reject material that does not cover *domain* or is already expired."""
	if not matches_domain(material.names, domain):
		raise InvalidRequest(f"Certificate does not cover {domain} (names: {', '.join(material.names) or 'none'})")
	if material.expires_at <= now:
		raise InvalidRequest(f"Certificate expired on {isoformat(material.expires_at)}")


class RenewalExecutor:
	"""Executes renewals and initial issuance for one certificate at a time."""

	def __init__(
		self,
		db_path: Path,
		config: ConfigManager,
		evaluator: MonitoringEvaluator,
		events: EventBus,
		*,
		secret_key: str,
		acme_clients: Mapping[CertificateType, "AcmeOrderClient"] | None = None,
	) -> None:
		self._db_path = db_path
		self._config = config
		self._evaluator = evaluator
		self._events = events
		self._secret_key = secret_key
		self._acme_clients = dict(acme_clients or {})

	async def renew(
		self,
		cert_id: int,
		kind: RenewalKind | str = RenewalKind.MANUAL,
		*,
		abort: Optional[asyncio.Event] = None,
	) -> RenewalResult:
		"""Run one renewal attempt for *cert_id*.

		Raises:
			CertificateNotFound: no active certificate with that id.
			InvalidStateTransition: the certificate is revoked.
			RenewalInProgress: another attempt holds the certificate.
			RateLimited: the CA's back-off window has not elapsed yet.
			CertWardenError: the attempt failed (already recorded).
		"""
		kind = RenewalKind(kind)
		owner = _claim_owner()
		conn = connect(self._db_path)
		try:
			cert = self._load(conn, cert_id)
			if cert["status"] == CertificateStatus.REVOKED.value:
				raise InvalidStateTransition(f"Certificate {cert_id} is revoked and cannot be renewed")
			if not claim_renewal(conn, cert_id, owner):
				_log.info("RENEWAL_SKIPPED cert_id=%d domain=%s reason=in_progress", cert_id, cert["domain_name"])
				raise RenewalInProgress(f"A renewal of certificate {cert_id} is already in progress")

			result: RenewalResult | None = None
			error_code: str | None = None
			try:
				# Latest committed state, now that we own the record
				cert = self._load(conn, cert_id)
				self._check_backoff(cert)
				started = time.monotonic()
				_log.info(
					"RENEWAL_START cert_id=%d domain=%s type=%s kind=%s status=%s",
					cert_id, cert["domain_name"], cert["certificate_type"], kind.value, cert["status"],
				)
				try:
					result = await self._attempt(conn, cert, kind, abort, started)
				except CertWardenError as exc:
					error_code = exc.code
					self._record_failure(conn, cert, kind, exc, exc.code, exc.detail, started)
					raise
				except asyncio.CancelledError:
					error_code = Cancelled.code
					self._record_failure(conn, cert, kind, None, Cancelled.code, "Renewal cancelled", started)
					raise
				except Exception as exc:
					error_code = _UNEXPECTED
					_log.exception("RENEWAL_UNEXPECTED cert_id=%d domain=%s", cert_id, cert["domain_name"])
					self._record_failure(conn, cert, kind, None, _UNEXPECTED, str(exc) or type(exc).__name__, started)
					raise
			finally:
				release_renewal(conn, cert_id, owner)
				if result is not None or error_code is not None:
					self._completed(cert, kind, result, error_code)
			return result
		finally:
			close_connection(conn)

	# ------------------------------------------------------------------

	def _load(self, conn: sqlite3.Connection, cert_id: int) -> sqlite3.Row:
		cert = get_certificate(conn, cert_id)
		if cert is None or not cert["is_active"]:
			raise CertificateNotFound(f"Certificate {cert_id} not found")
		return cert

	def _check_backoff(self, cert: sqlite3.Row) -> None:
		retry_not_before = cert["retry_not_before"]
		if retry_not_before is None:
			return
		remaining = (retry_not_before - utcnow()).total_seconds()
		if remaining > 0:
			raise RateLimited(
				f"CA rate limit for {cert['domain_name']} in effect until {isoformat(retry_not_before)}",
				retry_after=int(remaining) + 1,
			)

	async def _attempt(
		self,
		conn: sqlite3.Connection,
		cert: sqlite3.Row,
		kind: RenewalKind,
		abort: Optional[asyncio.Event],
		started: float,
	) -> RenewalResult:
		cert_id = int(cert["id"])
		status = CertificateStatus(cert["status"])
		now = utcnow()

		if (
			kind is RenewalKind.AUTOMATIC
			and status is not CertificateStatus.EXPIRED
			and cert["expires_at"] is not None
			and not within_lead_window(cert, now)
		):
			return self._short_circuit(conn, cert, kind, started)

		if status is CertificateStatus.EXPIRED:
			transition(status, CertificateStatus.PENDING, fresh_issuance=True)
			if not compare_and_set_status(conn, cert_id, status.value, CertificateStatus.PENDING.value):
				raise InvalidStateTransition(f"Certificate {cert_id} changed status during renewal")
			status = CertificateStatus.PENDING

		cert_type = CertificateType(cert["certificate_type"])
		staged_consumed = False
		if cert_type.is_acme:
			material = await self._issue_acme(cert, cert_type, abort)
		elif cert_type is CertificateType.USER_UPLOADED:
			material = self._staged_material(cert, now)
			staged_consumed = True
		else:
			validity = self._config.current.self_signed_validity_days
			material = await asyncio.to_thread(generate_self_signed, cert["domain_name"], validity)

		target = transition(status, CertificateStatus.ACTIVE)
		duration_ms = int((time.monotonic() - started) * 1000)
		changes: dict[str, Any] = {
			"status": target,
			"issuer": material.issuer,
			"serial_number": material.serial_number,
			"issued_at": material.issued_at,
			"expires_at": material.expires_at,
			"subject_alt_names": material.subject_alt_names,
			"certificate_pem": material.certificate_pem,
			"chain_pem": material.chain_pem,
			"private_key": vault.encrypt(material.private_key_pem, self._secret_key) if material.private_key_pem else None,
			"last_renewal_attempt": utcnow(),
			"last_error": None,
			"last_error_detail": None,
			"consecutive_failures": 0,
			"escalated_at": None,
			"retry_not_before": None,
		}
		if staged_consumed:
			changes.update(staged_certificate_pem=None, staged_chain_pem=None, staged_private_key=None)

		with transaction(conn):
			update_certificate(conn, cert_id, **changes)
			append_renewal_log(
				conn,
				certificate_id=cert_id,
				renewal_type=kind,
				status=RenewalOutcome.SUCCESS,
				old_expires_at=cert["expires_at"],
				new_expires_at=material.expires_at,
				attempt_duration_ms=duration_ms,
			)

		_log.info(
			"RENEWAL_SUCCESS cert_id=%d domain=%s kind=%s serial=%s expires=%s duration_ms=%d",
			cert_id, cert["domain_name"], kind.value, material.serial_number,
			isoformat(material.expires_at), duration_ms,
		)
		return RenewalResult(
			certificate_id=cert_id,
			domain_name=cert["domain_name"],
			renewal_type=kind,
			outcome=RenewalOutcome.SUCCESS,
			old_expires_at=cert["expires_at"],
			new_expires_at=material.expires_at,
			duration_ms=duration_ms,
		)

	def _short_circuit(
		self,
		conn: sqlite3.Connection,
		cert: sqlite3.Row,
		kind: RenewalKind,
		started: float,
	) -> RenewalResult:
		"""Current material is outside the lead window: nothing to issue."""
		cert_id = int(cert["id"])
		status = CertificateStatus(cert["status"])
		duration_ms = int((time.monotonic() - started) * 1000)
		with transaction(conn):
			if status is not CertificateStatus.ACTIVE and can_transition(status, CertificateStatus.ACTIVE):
				update_certificate(
					conn, cert_id,
					status=CertificateStatus.ACTIVE,
					last_error=None,
					last_error_detail=None,
					consecutive_failures=0,
				)
			append_renewal_log(
				conn,
				certificate_id=cert_id,
				renewal_type=kind,
				status=RenewalOutcome.SUCCESS,
				old_expires_at=cert["expires_at"],
				new_expires_at=cert["expires_at"],
				error_message="current certificate outside renewal window",
				attempt_duration_ms=duration_ms,
			)
		_log.info("RENEWAL_NOT_DUE cert_id=%d domain=%s expires=%s", cert_id, cert["domain_name"], isoformat(cert["expires_at"]))
		return RenewalResult(
			certificate_id=cert_id,
			domain_name=cert["domain_name"],
			renewal_type=kind,
			outcome=RenewalOutcome.SUCCESS,
			old_expires_at=cert["expires_at"],
			new_expires_at=cert["expires_at"],
			duration_ms=duration_ms,
			short_circuited=True,
		)

	async def _issue_acme(
		self,
		cert: sqlite3.Row,
		cert_type: CertificateType,
		abort: Optional[asyncio.Event],
	) -> CertificateMaterial:
		client = self._acme_clients.get(cert_type)
		if client is None:
			raise AcmeError(f"No ACME client configured for {cert_type.value}")
		cfg = self._config.current
		email = cert["acme_account_email"] or (cfg.admin_emails[0] if cfg.admin_emails else None)
		if not email:
			raise InvalidRequest("No ACME account email on the certificate and no admin email configured")
		challenge = cert["challenge_type"] or ChallengeType.HTTP_01.value
		issued = await client.issue(
			cert["domain_name"],
			email,
			challenge,
			abort=abort,
			max_wait=cfg.acme_timeout_seconds,
		)
		return issued.material

	def _staged_material(self, cert: sqlite3.Row, now: datetime) -> CertificateMaterial:
		if not cert["staged_certificate_pem"] or not cert["staged_private_key"]:
			raise ManualRenewalRequired(
				f"Certificate {cert['id']} was uploaded manually; upload replacement material first"
			)
		key_pem = vault.decrypt(cert["staged_private_key"], self._secret_key)
		material = parse_material(cert["staged_certificate_pem"], key_pem, cert["staged_chain_pem"])
		validate_uploaded(material, cert["domain_name"], now)
		return material

	def _record_failure(
		self,
		conn: sqlite3.Connection,
		cert: sqlite3.Row,
		kind: RenewalKind,
		exc: CertWardenError | None,
		code: str,
		detail: str,
		started: float,
	) -> None:
		"""Persist a failed attempt: status ERROR plus one Failed log entry."""
		cert_id = int(cert["id"])
		now = utcnow()
		duration_ms = int((time.monotonic() - started) * 1000)
		with transaction(conn):
			current = get_certificate(conn, cert_id)
			changes: dict[str, Any] = {
				"last_error": code,
				"last_error_detail": detail[:2000],
				"last_renewal_attempt": now,
			}
			if current is not None and can_transition(current["status"], CertificateStatus.ERROR):
				changes["status"] = CertificateStatus.ERROR
			if kind is RenewalKind.AUTOMATIC and current is not None:
				changes["consecutive_failures"] = int(current["consecutive_failures"] or 0) + 1
			if isinstance(exc, RateLimited):
				changes["retry_not_before"] = now + timedelta(seconds=exc.retry_after)
			update_certificate(conn, cert_id, **changes)
			append_renewal_log(
				conn,
				certificate_id=cert_id,
				renewal_type=kind,
				status=RenewalOutcome.FAILED,
				old_expires_at=cert["expires_at"],
				error_message=f"{code}: {detail}"[:2000],
				attempt_duration_ms=duration_ms,
			)
		_log.error(
			"RENEWAL_FAILED cert_id=%d domain=%s kind=%s code=%s detail=%s",
			cert_id, cert["domain_name"], kind.value, code, detail,
		)

	def _completed(
		self,
		cert: sqlite3.Row,
		kind: RenewalKind,
		result: RenewalResult | None,
		error_code: str | None,
	) -> None:
		cert_id = int(cert["id"])
		self._events.publish(RenewalCompleted(
			certificate_id=cert_id,
			domain_name=cert["domain_name"],
			renewal_type=kind.value,
			outcome=(RenewalOutcome.SUCCESS if result is not None else RenewalOutcome.FAILED).value,
			error_code=error_code,
			new_expires_at=result.new_expires_at if result is not None else None,
		))
		try:
			self._evaluator.evaluate_id(cert_id)
		except Exception:
			_log.exception("MONITORING_FAILED cert_id=%d after renewal", cert_id)
