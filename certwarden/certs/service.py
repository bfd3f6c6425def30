#!/usr/bin/env python3
#
# certwarden/certs/service.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Administrative certificate operations behind the REST surface."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Optional

from ..db.sqlite_certificates import (
	SECRET_COLUMNS,
	claim_renewal,
	count_by_column,
	create_certificate,
	delete_certificate,
	get_active_by_domain,
	get_certificate,
	is_renewal_claimed,
	list_by_domain,
	list_certificates_paginated,
	list_expiring,
	release_renewal,
	update_certificate,
)
from ..db.sqlite_renewal_logs import list_renewal_logs
from ..db.sqlite_runtime import close_connection, connect, row_to_dict, transaction
from ..db.sqlite_usages import add_usage, end_all_usages, end_usage, get_usage, list_usages
from ..errors import (
	CertificateNotFound,
	DomainConflict,
	InvalidRequest,
	RenewalInProgress,
	UnsupportedChallenge,
	UsageConflict,
	UsageNotFound,
)
from ..utils import vault
from ..utils.time import days_until, isoformat, utcnow
from .events import EventBus
from .executor import RenewalExecutor, RenewalResult, validate_uploaded
from .material import CertificateMaterial, export_material, generate_self_signed, parse_material
from .monitoring import MonitoringEvaluator, classify, effective_thresholds
from .runtime_config import ConfigManager
from .scheduler import BatchResult, RenewalScheduler
from .state import CertificateStatus, CertificateType, ChallengeType, RenewalKind, transition

if TYPE_CHECKING:
	from ..acme.challenges import ChallengeDriver, ChallengeRegistry
	from ..acme.client import AcmeOrderClient

_log = logging.getLogger(__name__)

_DOMAIN_RE = re.compile(
	r"^(\*\.)?(?=.{1,253}$)([a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$"
)
EXPIRING_SOON_DAYS = 30


def normalize_domain(domain: str) -> str:
	"""Lower-case and validate a DNS name (a leading ``*.`` wildcard is allowed)."""
	value = (domain or "").strip().lower().rstrip(".")
	if not _DOMAIN_RE.match(value):
		raise InvalidRequest(f"Invalid domain name: {domain!r}")
	return value


def public_certificate(row: sqlite3.Row, now=None) -> dict[str, Any]:
	"""API view of a certificate row: no key material, decoded SANs, ISO timestamps."""
	data = row_to_dict(row, exclude=SECRET_COLUMNS + ("renewal_claimed_at",))
	for key, value in list(data.items()):
		if hasattr(value, "isoformat"):
			data[key] = isoformat(value)
	for key in ("auto_renew", "is_active", "monitoring_enabled"):
		data[key] = bool(data[key])
	try:
		data["subject_alt_names"] = json.loads(row["subject_alt_names"] or "[]")
	except json.JSONDecodeError:
		data["subject_alt_names"] = []
	data["days_until_expiry"] = days_until(row["expires_at"], now or utcnow())
	data["renewal_in_progress"] = row["renewal_claimed_at"] is not None
	data["has_staged_upload"] = bool(row["staged_certificate_pem"])
	return data


def _log_entry(row: sqlite3.Row) -> dict[str, Any]:
	data = row_to_dict(row)
	for key in ("old_expires_at", "new_expires_at", "created_at"):
		data[key] = isoformat(data[key])
	return data


class CertificateService:
	"""Glue between the REST layer and the lifecycle components.

	Initial ACME issuance runs as a background task; everything else
	completes within the call.
	"""

	def __init__(
		self,
		db_path: Path,
		*,
		secret_key: str,
		config: ConfigManager,
		events: EventBus,
		evaluator: MonitoringEvaluator,
		executor: RenewalExecutor,
		scheduler: RenewalScheduler,
		acme_clients: Mapping[CertificateType, "AcmeOrderClient"] | None = None,
		drivers: Mapping[ChallengeType, "ChallengeDriver"] | None = None,
		challenges: Optional["ChallengeRegistry"] = None,
	) -> None:
		self._db_path = db_path
		self._secret_key = secret_key
		self.config = config
		self.events = events
		self.evaluator = evaluator
		self.executor = executor
		self.scheduler = scheduler
		self._acme_clients = dict(acme_clients or {})
		self._drivers = dict(drivers or {})
		self._challenges = challenges
		self._tasks: set[asyncio.Task] = set()

	def _connect(self) -> sqlite3.Connection:
		return connect(self._db_path)

	def _require(self, conn: sqlite3.Connection, cert_id: int, *, active: bool = True) -> sqlite3.Row:
		cert = get_certificate(conn, cert_id)
		if cert is None or (active and not cert["is_active"]):
			raise CertificateNotFound(f"Certificate {cert_id} not found")
		return cert

	def _ensure_domain_free(self, conn: sqlite3.Connection, domain: str) -> None:
		existing = get_active_by_domain(conn, domain)
		if existing is not None:
			raise DomainConflict(f"{domain} already has an active certificate (id {existing['id']})")

	def _insert(self, conn: sqlite3.Connection, domain: str, **fields: Any) -> int:
		try:
			return create_certificate(conn, domain_name=domain, **fields)
		except sqlite3.IntegrityError as exc:
			# Lost a race against a concurrent create for the same domain
			raise DomainConflict(f"{domain} already has an active certificate") from exc

	# ------------------------------------------------------------------
	# Lookups
	# ------------------------------------------------------------------

	def get(self, cert_id: int) -> dict[str, Any]:
		conn = self._connect()
		try:
			return public_certificate(self._require(conn, cert_id, active=False))
		finally:
			close_connection(conn)

	def list_certificates(self, *, page: int = 1, page_size: int = 20, status: str | None = None, include_inactive: bool = False) -> dict[str, Any]:
		if status is not None:
			try:
				status = CertificateStatus(status.upper()).value
			except ValueError as exc:
				raise InvalidRequest(f"Unknown status {status!r}") from exc
		conn = self._connect()
		try:
			rows, total = list_certificates_paginated(
				conn, page=page, page_size=page_size, status=status, include_inactive=include_inactive,
			)
			now = utcnow()
			return {
				"items": [public_certificate(r, now) for r in rows],
				"total": total,
				"page": page,
				"page_size": page_size,
			}
		finally:
			close_connection(conn)

	def by_domain(self, domain: str) -> list[dict[str, Any]]:
		domain = normalize_domain(domain)
		conn = self._connect()
		try:
			now = utcnow()
			return [public_certificate(r, now) for r in list_by_domain(conn, domain)]
		finally:
			close_connection(conn)

	def active_by_domain(self, domain: str) -> dict[str, Any]:
		domain = normalize_domain(domain)
		conn = self._connect()
		try:
			cert = get_active_by_domain(conn, domain)
			if cert is None:
				raise CertificateNotFound(f"No active certificate for {domain}")
			return public_certificate(cert)
		finally:
			close_connection(conn)

	def check_domain(self, domain: str) -> dict[str, Any]:
		domain = normalize_domain(domain)
		conn = self._connect()
		try:
			cert = get_active_by_domain(conn, domain)
		finally:
			close_connection(conn)
		return {
			"domain": domain,
			"has_active_certificate": cert is not None,
			"certificate_id": int(cert["id"]) if cert is not None else None,
			"status": cert["status"] if cert is not None else None,
		}

	# ------------------------------------------------------------------
	# Creation
	# ------------------------------------------------------------------

	async def request_acme(
		self,
		domain: str,
		email: str,
		challenge_type: str = ChallengeType.HTTP_01.value,
		*,
		certificate_type: CertificateType | str = CertificateType.FREE_ACME,
		certificate_name: str | None = None,
		auto_renew: bool = True,
		renewal_days_before: int | None = None,
	) -> dict[str, Any]:
		"""Create a PENDING certificate and start issuance in the background."""
		domain = normalize_domain(domain)
		try:
			cert_type = CertificateType(certificate_type)
		except ValueError as exc:
			raise InvalidRequest(f"Unknown certificate type {certificate_type!r}") from exc
		if not cert_type.is_acme:
			raise InvalidRequest(f"{cert_type.value} certificates are not issued via ACME")
		try:
			challenge = ChallengeType(challenge_type)
		except ValueError as exc:
			raise UnsupportedChallenge(f"Unknown challenge type {challenge_type!r}") from exc
		if challenge not in self._drivers:
			raise UnsupportedChallenge(f"{challenge.value} provisioning is not configured")
		if domain.startswith("*.") and challenge is not ChallengeType.DNS_01:
			raise UnsupportedChallenge("Wildcard certificates require dns-01")
		if cert_type not in self._acme_clients:
			raise InvalidRequest(f"No ACME directory configured for {cert_type.value}")

		conn = self._connect()
		try:
			self._ensure_domain_free(conn, domain)
			cert_id = self._insert(
				conn,
				domain,
				certificate_name=certificate_name or domain,
				certificate_type=cert_type,
				status=CertificateStatus.PENDING,
				auto_renew=auto_renew,
				renewal_days_before=renewal_days_before or self.config.current.renewal_days_before,
				challenge_type=challenge.value,
				acme_account_email=email,
			)
			cert = get_certificate(conn, cert_id)
		finally:
			close_connection(conn)

		_log.info("CERT_REQUESTED cert_id=%d domain=%s type=%s challenge=%s", cert_id, domain, cert_type.value, challenge.value)
		self._spawn(self._issue_in_background(cert_id))
		return public_certificate(cert)

	def _spawn(self, coro) -> None:
		task = asyncio.create_task(coro)
		self._tasks.add(task)
		task.add_done_callback(self._tasks.discard)

	async def _issue_in_background(self, cert_id: int) -> None:
		try:
			await self.executor.renew(cert_id, RenewalKind.MANUAL, abort=self.scheduler.abort_event)
		except asyncio.CancelledError:
			raise
		except Exception as exc:
			# Already recorded on the certificate and in its renewal log
			_log.info("CERT_ISSUANCE_FAILED cert_id=%d error=%s", cert_id, getattr(exc, "code", type(exc).__name__))

	async def shutdown(self, timeout: float = 5.0) -> None:
		"""Abort background issuance and wait briefly for it to record its outcome."""
		self.scheduler.abort()
		tasks = list(self._tasks)
		if not tasks:
			return
		_, pending = await asyncio.wait(tasks, timeout=timeout)
		for task in pending:
			task.cancel()
		if pending:
			await asyncio.gather(*pending, return_exceptions=True)

	def _validated_upload(self, domain: str, certificate_pem: str, private_key_pem: str, chain_pem: str | None) -> CertificateMaterial:
		material = parse_material(certificate_pem, private_key_pem, chain_pem)
		validate_uploaded(material, domain, utcnow())
		return material

	def upload(
		self,
		domain: str,
		certificate_pem: str,
		private_key_pem: str,
		chain_pem: str | None = None,
		*,
		certificate_name: str | None = None,
	) -> dict[str, Any]:
		"""Store operator-supplied material as an ACTIVE UserUploaded certificate."""
		domain = normalize_domain(domain)
		material = self._validated_upload(domain, certificate_pem, private_key_pem, chain_pem)
		conn = self._connect()
		try:
			self._ensure_domain_free(conn, domain)
			cert_id = self._insert(
				conn,
				domain,
				certificate_name=certificate_name or domain,
				certificate_type=CertificateType.USER_UPLOADED,
				status=CertificateStatus.ACTIVE,
				auto_renew=False,
				renewal_days_before=self.config.current.renewal_days_before,
				**self._material_columns(material),
			)
		finally:
			close_connection(conn)
		_log.info("CERT_UPLOADED cert_id=%d domain=%s expires=%s", cert_id, domain, isoformat(material.expires_at))
		self.evaluator.evaluate_id(cert_id)
		return self.get(cert_id)

	def stage_upload(
		self,
		cert_id: int,
		certificate_pem: str,
		private_key_pem: str,
		chain_pem: str | None = None,
	) -> dict[str, Any]:
		"""Stage replacement material for an uploaded certificate's next renewal."""
		conn = self._connect()
		try:
			cert = self._require(conn, cert_id)
			if cert["certificate_type"] != CertificateType.USER_UPLOADED.value:
				raise InvalidRequest("Only uploaded certificates take replacement material")
			if cert["status"] == CertificateStatus.REVOKED.value:
				raise InvalidRequest("Certificate is revoked")
			material = self._validated_upload(cert["domain_name"], certificate_pem, private_key_pem, chain_pem)
			update_certificate(
				conn,
				cert_id,
				staged_certificate_pem=material.certificate_pem,
				staged_chain_pem=material.chain_pem,
				staged_private_key=vault.encrypt(private_key_pem, self._secret_key),
			)
		finally:
			close_connection(conn)
		_log.info("CERT_UPLOAD_STAGED cert_id=%d expires=%s", cert_id, isoformat(material.expires_at))
		return self.get(cert_id)

	async def create_self_signed(
		self,
		domain: str,
		*,
		certificate_name: str | None = None,
		validity_days: int | None = None,
		auto_renew: bool = True,
	) -> dict[str, Any]:
		domain = normalize_domain(domain)
		validity = validity_days or self.config.current.self_signed_validity_days
		conn = self._connect()
		try:
			self._ensure_domain_free(conn, domain)
		finally:
			close_connection(conn)

		material = await asyncio.to_thread(generate_self_signed, domain, validity)
		conn = self._connect()
		try:
			cert_id = self._insert(
				conn,
				domain,
				certificate_name=certificate_name or domain,
				certificate_type=CertificateType.SELF_SIGNED,
				status=CertificateStatus.ACTIVE,
				auto_renew=auto_renew,
				renewal_days_before=min(self.config.current.renewal_days_before, max(1, validity - 1)),
				**self._material_columns(material),
			)
		finally:
			close_connection(conn)
		_log.info("CERT_SELF_SIGNED cert_id=%d domain=%s validity_days=%d", cert_id, domain, validity)
		return self.get(cert_id)

	def _material_columns(self, material: CertificateMaterial) -> dict[str, Any]:
		return {
			"issuer": material.issuer,
			"serial_number": material.serial_number,
			"issued_at": material.issued_at,
			"expires_at": material.expires_at,
			"subject_alt_names": material.subject_alt_names,
			"certificate_pem": material.certificate_pem,
			"chain_pem": material.chain_pem,
			"private_key": vault.encrypt(material.private_key_pem, self._secret_key),
		}

	# ------------------------------------------------------------------
	# Renewal
	# ------------------------------------------------------------------

	async def renew(self, cert_id: int, *, force: bool = False) -> RenewalResult:
		kind = RenewalKind.FORCED if force else RenewalKind.MANUAL
		return await self.executor.renew(cert_id, kind, abort=self.scheduler.abort_event)

	async def batch_renew(self, certificate_ids: list[int] | None = None) -> BatchResult:
		return await self.scheduler.run_pass(RenewalKind.MANUAL, certificate_ids or ())

	def renewal_needed(self) -> list[dict[str, Any]]:
		conn = self._connect()
		try:
			now = utcnow()
			return [public_certificate(r, now) for r in self.scheduler.due_certificates(conn, now)]
		finally:
			close_connection(conn)

	def renewal_logs(self, cert_id: int, *, page: int = 1, page_size: int = 10) -> dict[str, Any]:
		conn = self._connect()
		try:
			self._require(conn, cert_id, active=False)
			rows, total = list_renewal_logs(conn, cert_id, page=page, page_size=page_size)
			return {
				"items": [_log_entry(r) for r in rows],
				"total": total,
				"page": page,
				"page_size": page_size,
			}
		finally:
			close_connection(conn)

	# ------------------------------------------------------------------
	# Deletion / revocation
	# ------------------------------------------------------------------

	def delete(self, cert_id: int, *, hard: bool = False, force: bool = False) -> dict[str, Any]:
		"""Soft (deactivate) or hard delete; active usages block unless forced."""
		conn = self._connect()
		try:
			cert = self._require(conn, cert_id, active=not hard)
			# Usages and the certificate change together or not at all
			with transaction(conn, immediate=True):
				if is_renewal_claimed(conn, cert_id):
					raise RenewalInProgress(f"Certificate {cert_id} is being renewed")
				usages = list_usages(conn, cert_id, active_only=True)
				if usages and not force:
					names = ", ".join(u["service_name"] for u in usages)
					raise UsageConflict(f"Certificate {cert_id} is in use by: {names} (use force to delete anyway)")
				ended = end_all_usages(conn, cert_id) if usages else 0
				if hard:
					delete_certificate(conn, cert_id)
				else:
					update_certificate(conn, cert_id, is_active=False, auto_renew=False)
			if ended:
				_log.warning("CERT_DELETE_IN_USE cert_id=%d domain=%s ended_usages=%d", cert_id, cert["domain_name"], ended)
		finally:
			close_connection(conn)
		self.evaluator.forget(cert_id)
		_log.info("CERT_DELETED cert_id=%d hard=%s", cert_id, hard)
		return {"certificate_id": cert_id, "hard": hard, "ended_usages": ended}

	async def revoke(self, cert_id: int, *, reason: str = "unspecified", local_only: bool = False) -> dict[str, Any]:
		owner = f"revoke:{cert_id}:{id(self)}"
		conn = self._connect()
		try:
			cert = self._require(conn, cert_id)
			transition(cert["status"], CertificateStatus.REVOKED)
			if not claim_renewal(conn, cert_id, owner):
				raise RenewalInProgress(f"Certificate {cert_id} is being renewed")
			try:
				cert_type = CertificateType(cert["certificate_type"])
				if cert_type.is_acme and not local_only and cert["certificate_pem"]:
					client = self._acme_clients.get(cert_type)
					if client is None:
						raise InvalidRequest(f"No ACME directory configured for {cert_type.value}")
					email = cert["acme_account_email"]
					if not email:
						raise InvalidRequest("Certificate has no ACME account email")
					await client.revoke(cert["certificate_pem"], email, reason)
				update_certificate(conn, cert_id, status=CertificateStatus.REVOKED, auto_renew=False)
			finally:
				release_renewal(conn, cert_id, owner)
		finally:
			close_connection(conn)
		self.evaluator.forget(cert_id)
		_log.warning("CERT_REVOKED cert_id=%d reason=%s local_only=%s", cert_id, reason, local_only)
		return self.get(cert_id)

	# ------------------------------------------------------------------
	# Per-certificate settings and monitoring
	# ------------------------------------------------------------------

	def set_auto_renew(self, cert_id: int, enabled: bool, renewal_days_before: int | None = None) -> dict[str, Any]:
		conn = self._connect()
		try:
			self._require(conn, cert_id)
			changes: dict[str, Any] = {"auto_renew": enabled}
			if renewal_days_before is not None:
				changes["renewal_days_before"] = renewal_days_before
			update_certificate(conn, cert_id, **changes)
		finally:
			close_connection(conn)
		_log.info("CERT_AUTO_RENEW cert_id=%d enabled=%s", cert_id, enabled)
		self.evaluator.evaluate_id(cert_id)
		return self.get(cert_id)

	def set_monitoring(
		self,
		cert_id: int,
		*,
		enabled: bool | None = None,
		warning_days: int | None = None,
		critical_days: int | None = None,
	) -> dict[str, Any]:
		conn = self._connect()
		try:
			cert = self._require(conn, cert_id)
			cfg = self.config.current
			warning = warning_days if warning_days is not None else (cert["warning_days"] if cert["warning_days"] is not None else cfg.warning_days)
			critical = critical_days if critical_days is not None else (cert["critical_days"] if cert["critical_days"] is not None else cfg.critical_days)
			if critical > warning:
				raise InvalidRequest("critical_days must not exceed warning_days")
			changes: dict[str, Any] = {}
			if enabled is not None:
				changes["monitoring_enabled"] = enabled
			if warning_days is not None:
				changes["warning_days"] = warning_days
			if critical_days is not None:
				changes["critical_days"] = critical_days
			update_certificate(conn, cert_id, **changes)
		finally:
			close_connection(conn)
		self.evaluator.forget(cert_id)
		self.evaluator.evaluate_id(cert_id)
		return self.get(cert_id)

	def monitoring_status(self, cert_id: int) -> dict[str, Any]:
		"""Classification as of now, without side effects."""
		conn = self._connect()
		try:
			cert = self._require(conn, cert_id)
		finally:
			close_connection(conn)
		now = utcnow()
		thresholds = effective_thresholds(cert, self.evaluator.default_thresholds())
		classification = classify(cert, now, thresholds)
		return {
			"certificate_id": cert_id,
			"domain_name": cert["domain_name"],
			"classification": classification.value,
			"days_until_expiry": days_until(cert["expires_at"], now),
			"status": cert["status"],
			"monitoring_enabled": bool(cert["monitoring_enabled"]),
			"warning_days": thresholds.warning_days,
			"critical_days": thresholds.critical_days,
		}

	def check(self, cert_id: int) -> dict[str, Any]:
		evaluation = self.evaluator.evaluate_id(cert_id)
		if evaluation is None:
			raise CertificateNotFound(f"Certificate {cert_id} not found")
		return evaluation.to_dict()

	def expiring(self, days: int) -> list[dict[str, Any]]:
		if days < 0:
			raise InvalidRequest("days must be >= 0")
		conn = self._connect()
		try:
			now = utcnow()
			return [public_certificate(r, now) for r in list_expiring(conn, now, days)]
		finally:
			close_connection(conn)

	def statistics(self) -> dict[str, Any]:
		conn = self._connect()
		try:
			by_status = count_by_column(conn, "status")
			by_type = count_by_column(conn, "certificate_type")
			expiring_soon = len(list_expiring(conn, utcnow(), EXPIRING_SOON_DAYS))
		finally:
			close_connection(conn)
		return {
			"total": sum(by_status.values()),
			"active": by_status.get(CertificateStatus.ACTIVE.value, 0),
			"expired": by_status.get(CertificateStatus.EXPIRED.value, 0),
			"renewal_needed": by_status.get(CertificateStatus.RENEWAL_NEEDED.value, 0),
			"error": by_status.get(CertificateStatus.ERROR.value, 0),
			"expiring_soon": expiring_soon,
			"by_status": {s.value: by_status.get(s.value, 0) for s in CertificateStatus},
			"by_type": {t.value: by_type.get(t.value, 0) for t in CertificateType},
		}

	def alerts(self, limit: int = 50) -> list[dict[str, Any]]:
		return [alert.to_dict() for alert in self.events.recent_alerts(limit)]

	# ------------------------------------------------------------------
	# Usages
	# ------------------------------------------------------------------

	def usages(self, cert_id: int, *, active_only: bool = False) -> list[dict[str, Any]]:
		conn = self._connect()
		try:
			self._require(conn, cert_id, active=False)
			return [_usage_view(u) for u in list_usages(conn, cert_id, active_only=active_only)]
		finally:
			close_connection(conn)

	def add_usage(self, cert_id: int, service_name: str, service_config_path: str | None = None) -> dict[str, Any]:
		conn = self._connect()
		try:
			self._require(conn, cert_id)
			usage_id = add_usage(conn, cert_id, service_name, service_config_path)
			usage = get_usage(conn, usage_id)
		finally:
			close_connection(conn)
		_log.info("CERT_USAGE_ADDED cert_id=%d usage_id=%d service=%s", cert_id, usage_id, service_name)
		return _usage_view(usage)

	def end_usage(self, usage_id: int) -> dict[str, Any]:
		conn = self._connect()
		try:
			if not end_usage(conn, usage_id):
				raise UsageNotFound(f"No active usage {usage_id}")
			usage = get_usage(conn, usage_id)
		finally:
			close_connection(conn)
		return _usage_view(usage)

	# ------------------------------------------------------------------
	# Export and challenge diagnostics
	# ------------------------------------------------------------------

	def export(self, cert_id: int, fmt: str, password: str | None = None) -> tuple[bytes, str, str]:
		"""Return (body, media type, filename)."""
		conn = self._connect()
		try:
			cert = self._require(conn, cert_id)
		finally:
			close_connection(conn)
		if not cert["certificate_pem"]:
			raise InvalidRequest(f"Certificate {cert_id} has no issued material yet")
		key_pem = vault.decrypt(cert["private_key"], self._secret_key) if cert["private_key"] else None
		material = parse_material(cert["certificate_pem"], key_pem, cert["chain_pem"])
		body, media_type, ext = export_material(fmt, cert["certificate_name"], material, password)
		filename = f"{cert['domain_name'].replace('*', '_wildcard')}.{ext}"
		_log.info("CERT_EXPORTED cert_id=%d format=%s", cert_id, ext)
		return body, media_type, filename

	def challenges(self, domain: str, challenge_type: str | None = None) -> list[dict[str, Any]]:
		domain = normalize_domain(domain)
		if self._challenges is None:
			return []
		ctype = None
		if challenge_type:
			try:
				ctype = ChallengeType(challenge_type)
			except ValueError as exc:
				raise UnsupportedChallenge(f"Unknown challenge type {challenge_type!r}") from exc
		return [c.to_dict() for c in self._challenges.find(domain, ctype)]

	async def verify_challenge(self, domain: str, challenge_type: str, token: str) -> dict[str, Any]:
		"""Self-check that an in-flight challenge artifact is visible from here."""
		domain = normalize_domain(domain)
		try:
			ctype = ChallengeType(challenge_type)
		except ValueError as exc:
			raise UnsupportedChallenge(f"Unknown challenge type {challenge_type!r}") from exc
		driver = self._drivers.get(ctype)
		if driver is None:
			raise UnsupportedChallenge(f"{ctype.value} provisioning is not configured")
		challenge = self._challenges.get(token) if self._challenges is not None else None
		if challenge is None or challenge.domain != domain or challenge.challenge_type is not ctype:
			raise InvalidRequest(f"No in-flight {ctype.value} challenge for {domain} with that token")
		visible = await driver.provisioner.verify(domain, challenge.artifact_name, challenge.artifact_value)
		return {"domain": domain, "challenge_type": ctype.value, "token": token, "visible": visible}


def _usage_view(row: sqlite3.Row) -> dict[str, Any]:
	data = row_to_dict(row)
	data["is_active"] = bool(data["is_active"])
	for key in ("usage_start_date", "usage_end_date"):
		data[key] = isoformat(data[key])
	return data
