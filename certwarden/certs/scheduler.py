#!/usr/bin/env python3
#
# certwarden/certs/scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Batch renewal passes under a concurrency cap."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from ..db.sqlite_certificates import get_certificates_by_ids, list_by_status
from ..db.sqlite_runtime import close_connection, connect
from ..errors import CertWardenError, RenewalInProgress
from ..utils.time import isoformat, utcnow
from .executor import RenewalExecutor
from .monitoring import MonitoringEvaluator, within_lead_window
from .runtime_config import ConfigManager
from .state import CertificateStatus, RenewalKind

_log = logging.getLogger(__name__)

_RENEWABLE = (CertificateStatus.RENEWAL_NEEDED.value, CertificateStatus.ERROR.value)

SUCCEEDED = "SUCCEEDED"
FAILED = "FAILED"
SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class BatchItem:
	certificate_id: int
	domain_name: str
	outcome: str
	error_code: str | None = None
	detail: str | None = None

	def to_dict(self) -> dict[str, Any]:
		return {
			"certificate_id": self.certificate_id,
			"domain_name": self.domain_name,
			"outcome": self.outcome,
			"error_code": self.error_code,
			"detail": self.detail,
		}


@dataclass
class BatchResult:
	kind: RenewalKind
	started_at: datetime
	finished_at: datetime | None = None
	items: list[BatchItem] = field(default_factory=list)

	def _count(self, outcome: str) -> int:
		return sum(1 for item in self.items if item.outcome == outcome)

	@property
	def total(self) -> int:
		return len(self.items)

	@property
	def succeeded(self) -> int:
		return self._count(SUCCEEDED)

	@property
	def failed(self) -> int:
		return self._count(FAILED)

	@property
	def skipped(self) -> int:
		return self._count(SKIPPED)

	def to_dict(self) -> dict[str, Any]:
		return {
			"kind": self.kind.value,
			"started_at": isoformat(self.started_at),
			"finished_at": isoformat(self.finished_at),
			"total": self.total,
			"succeeded": self.succeeded,
			"failed": self.failed,
			"skipped": self.skipped,
			"items": [item.to_dict() for item in self.items],
		}


def _backing_off(cert: sqlite3.Row, now: datetime) -> bool:
	return cert["retry_not_before"] is not None and cert["retry_not_before"] > now


def _expiry_order(cert: sqlite3.Row) -> tuple[bool, datetime | None, int]:
	# Never-issued certificates (no expiry) first, then oldest expiry
	return (cert["expires_at"] is not None, cert["expires_at"], int(cert["id"]))


class RenewalScheduler:
	"""Selects due certificates and renews them with at most ``max_concurrent`` in flight.

	Overlapping passes (periodic and manual) are allowed; the executor's
	per-certificate claim decides who renews a certificate selected by both.
	"""

	def __init__(
		self,
		db_path: Path,
		config: ConfigManager,
		executor: RenewalExecutor,
		evaluator: MonitoringEvaluator | None = None,
	) -> None:
		self._db_path = db_path
		self._config = config
		self._executor = executor
		self._evaluator = evaluator
		self._abort = asyncio.Event()
		self.last_result: BatchResult | None = None
		self._running = 0

	@property
	def running(self) -> bool:
		return self._running > 0

	@property
	def abort_event(self) -> asyncio.Event:
		return self._abort

	def due_certificates(self, conn: sqlite3.Connection, now: datetime | None = None) -> list[sqlite3.Row]:
		"""Every certificate the automatic predicate selects, oldest expiry first."""
		now = now or utcnow()
		due = [
			cert for cert in list_by_status(conn, _RENEWABLE)
			if cert["auto_renew"] and within_lead_window(cert, now) and not _backing_off(cert, now)
		]
		due.sort(key=_expiry_order)
		return due

	def select_due(
		self,
		conn: sqlite3.Connection,
		now: datetime | None = None,
		forced_ids: Iterable[int] = (),
	) -> list[sqlite3.Row]:
		"""Forced certificates first (in request order), then due ones, capped at ``batch_size``."""
		now = now or utcnow()
		cfg = self._config.current

		forced_order = list(dict.fromkeys(int(i) for i in forced_ids))
		by_id = {int(c["id"]): c for c in get_certificates_by_ids(conn, forced_order)}
		selected: list[sqlite3.Row] = []
		for cert_id in forced_order:
			cert = by_id.get(cert_id)
			if cert is None or not cert["is_active"] or cert["status"] == CertificateStatus.REVOKED.value:
				_log.info("BATCH_FORCED_IGNORED cert_id=%d reason=not_renewable", cert_id)
				continue
			if _backing_off(cert, now):
				_log.info("BATCH_FORCED_IGNORED cert_id=%d reason=rate_limited", cert_id)
				continue
			selected.append(cert)

		if cfg.auto_renew_enabled:
			seen = {int(c["id"]) for c in selected}
			selected.extend(c for c in self.due_certificates(conn, now) if int(c["id"]) not in seen)

		return selected[: cfg.batch_size]

	async def run_pass(
		self,
		kind: RenewalKind | str = RenewalKind.AUTOMATIC,
		forced_ids: Iterable[int] = (),
		*,
		abort: Optional[asyncio.Event] = None,
	) -> BatchResult:
		"""Renew every selected certificate; one failure never stops the others."""
		kind = RenewalKind(kind)
		forced = {int(i) for i in forced_ids}
		abort = abort or self._abort
		cfg = self._config.current
		result = BatchResult(kind=kind, started_at=utcnow())

		conn = connect(self._db_path)
		try:
			selected = self.select_due(conn, result.started_at, forced_ids)
		finally:
			close_connection(conn)

		queue: asyncio.Queue[sqlite3.Row] = asyncio.Queue()
		for cert in selected:
			queue.put_nowait(cert)

		async def worker() -> None:
			while True:
				try:
					cert = queue.get_nowait()
				except asyncio.QueueEmpty:
					return
				result.items.append(await self._renew_one(cert, kind, forced, abort))

		self._running += 1
		try:
			workers = min(cfg.max_concurrent, len(selected))
			_log.info("BATCH_START kind=%s selected=%d workers=%d", kind.value, len(selected), workers)
			await asyncio.gather(*(worker() for _ in range(workers)))
		finally:
			self._running -= 1
			result.finished_at = utcnow()
			self.last_result = result

		_log.info(
			"BATCH_DONE kind=%s total=%d succeeded=%d failed=%d skipped=%d",
			kind.value, result.total, result.succeeded, result.failed, result.skipped,
		)
		return result

	async def _renew_one(
		self,
		cert: sqlite3.Row,
		kind: RenewalKind,
		forced: set[int],
		abort: asyncio.Event,
	) -> BatchItem:
		cert_id = int(cert["id"])
		domain = cert["domain_name"]
		if abort.is_set():
			return BatchItem(cert_id, domain, SKIPPED, "Cancelled", "batch aborted before start")
		attempt_kind = RenewalKind.FORCED if cert_id in forced else kind
		try:
			await self._executor.renew(cert_id, attempt_kind, abort=abort)
		except RenewalInProgress as exc:
			return BatchItem(cert_id, domain, SKIPPED, exc.code, exc.detail)
		except CertWardenError as exc:
			return BatchItem(cert_id, domain, FAILED, exc.code, exc.detail)
		except Exception as exc:
			_log.exception("BATCH_WORKER_ERROR cert_id=%d", cert_id)
			return BatchItem(cert_id, domain, FAILED, "UnexpectedError", str(exc))
		return BatchItem(cert_id, domain, SUCCEEDED)

	async def run_scheduled(self) -> BatchResult | None:
		"""Periodic entry point: refresh statuses, then run an automatic pass."""
		if not self._config.current.scheduler_enabled:
			_log.info("BATCH_SKIPPED reason=scheduler_disabled")
			return None
		if self._evaluator is not None:
			await asyncio.to_thread(self._evaluator.evaluate_all)
		return await self.run_pass(RenewalKind.AUTOMATIC)

	def abort(self) -> None:
		"""Ask in-flight passes to stop at their next poll boundary."""
		self._abort.set()

	def status(self) -> dict[str, Any]:
		cfg = self._config.current
		return {
			"enabled": cfg.scheduler_enabled,
			"auto_renew_enabled": cfg.auto_renew_enabled,
			"interval_hours": cfg.scheduler_interval_hours,
			"batch_size": cfg.batch_size,
			"max_concurrent": cfg.max_concurrent,
			"running": self.running,
			"last_result": self.last_result.to_dict() if self.last_result else None,
		}
