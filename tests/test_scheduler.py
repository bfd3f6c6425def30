#!/usr/bin/env python3
#
# tests/test_scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

import asyncio
from datetime import timedelta

import pytest

from certwarden.certs.scheduler import FAILED, SKIPPED, SUCCEEDED, RenewalScheduler
from certwarden.certs.state import CertificateStatus, RenewalKind
from certwarden.db.sqlite_runtime import close_connection, connect
from certwarden.errors import OrderTimeout, RenewalInProgress
from certwarden.utils.time import utcnow


class TrackingExecutor:
	"""Records calls and peak parallelism instead of renewing."""

	def __init__(self, *, fail=(), busy=(), delay: float = 0.02) -> None:
		self.fail = set(fail)
		self.busy = set(busy)
		self.delay = delay
		self.calls: list[tuple[int, RenewalKind]] = []
		self.in_flight = 0
		self.peak = 0

	async def renew(self, cert_id, kind, *, abort=None):
		self.in_flight += 1
		self.peak = max(self.peak, self.in_flight)
		try:
			await asyncio.sleep(self.delay)
			self.calls.append((cert_id, kind))
			if cert_id in self.fail:
				raise OrderTimeout("order stuck")
			if cert_id in self.busy:
				raise RenewalInProgress("already running")
		finally:
			self.in_flight -= 1


def _due(insert_cert, n: int = 1, **fields) -> list[int]:
	fields.setdefault("status", CertificateStatus.RENEWAL_NEEDED)
	fields.setdefault("expires_in_days", 5)
	return [insert_cert(**fields) for _ in range(n)]


def _select(db_path, scheduler, forced=()):
	conn = connect(db_path)
	try:
		return [int(c["id"]) for c in scheduler.select_due(conn, forced_ids=forced)]
	finally:
		close_connection(conn)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def test_due_predicate(db_path, config, insert_cert):
	scheduler = RenewalScheduler(db_path, config, TrackingExecutor())
	later = utcnow() + timedelta(hours=1)

	never_issued = insert_cert(status=CertificateStatus.ERROR, expires_in_days=None)
	needed = insert_cert(status=CertificateStatus.RENEWAL_NEEDED, expires_in_days=5)
	errored = insert_cert(status=CertificateStatus.ERROR, expires_in_days=2)
	insert_cert(status=CertificateStatus.ACTIVE, expires_in_days=5)
	insert_cert(status=CertificateStatus.RENEWAL_NEEDED, expires_in_days=5, auto_renew=False)
	insert_cert(status=CertificateStatus.RENEWAL_NEEDED, expires_in_days=60)
	insert_cert(status=CertificateStatus.RENEWAL_NEEDED, expires_in_days=5, retry_not_before=later)
	insert_cert(status=CertificateStatus.RENEWAL_NEEDED, expires_in_days=5, is_active=False)
	insert_cert(status=CertificateStatus.EXPIRED, expires_in_days=-3)
	insert_cert(status=CertificateStatus.REVOKED, expires_in_days=5)

	# Never issued first, then soonest expiry
	assert _select(db_path, scheduler) == [never_issued, errored, needed]


def test_per_certificate_lead_time(db_path, config, insert_cert):
	scheduler = RenewalScheduler(db_path, config, TrackingExecutor())
	wide = insert_cert(status=CertificateStatus.RENEWAL_NEEDED, expires_in_days=45, renewal_days_before=60)
	insert_cert(status=CertificateStatus.RENEWAL_NEEDED, expires_in_days=45)

	assert _select(db_path, scheduler) == [wide]


def test_forced_ids_come_first_and_bypass_predicate(db_path, config, insert_cert):
	scheduler = RenewalScheduler(db_path, config, TrackingExecutor())
	(due,) = _due(insert_cert)
	healthy = insert_cert(status=CertificateStatus.ACTIVE, expires_in_days=80)
	revoked = insert_cert(status=CertificateStatus.REVOKED)

	assert _select(db_path, scheduler, forced=[healthy, revoked, 999, due]) == [healthy, due]


def test_auto_renew_switch_limits_selection_to_forced(db_path, config, insert_cert):
	scheduler = RenewalScheduler(db_path, config, TrackingExecutor())
	_due(insert_cert, 2)
	healthy = insert_cert(status=CertificateStatus.ACTIVE, expires_in_days=80)
	config.update({"auto_renew_enabled": False})

	assert _select(db_path, scheduler) == []
	assert _select(db_path, scheduler, forced=[healthy]) == [healthy]


def test_batch_size_caps_selection(db_path, config, insert_cert):
	scheduler = RenewalScheduler(db_path, config, TrackingExecutor())
	ids = _due(insert_cert, 5)
	config.update({"batch_size": 3})

	assert len(_select(db_path, scheduler)) == 3
	assert set(_select(db_path, scheduler)) <= set(ids)


# ---------------------------------------------------------------------------
# Passes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_pass_respects_concurrency_cap(db_path, config, insert_cert):
	executor = TrackingExecutor()
	scheduler = RenewalScheduler(db_path, config, executor)
	ids = _due(insert_cert, 10)
	config.update({"batch_size": 10, "max_concurrent": 3})

	result = await scheduler.run_pass()

	assert executor.peak == 3
	assert sorted(cert_id for cert_id, _ in executor.calls) == sorted(ids)
	assert (result.total, result.succeeded, result.failed, result.skipped) == (10, 10, 0, 0)
	assert all(kind is RenewalKind.AUTOMATIC for _, kind in executor.calls)
	assert scheduler.last_result is result
	assert not scheduler.running


@pytest.mark.asyncio
async def test_one_failure_does_not_stop_the_pass(db_path, config, insert_cert):
	ids = _due(insert_cert, 4)
	executor = TrackingExecutor(fail=[ids[1]], busy=[ids[2]])
	scheduler = RenewalScheduler(db_path, config, executor)

	result = await scheduler.run_pass(RenewalKind.MANUAL)

	outcomes = {item.certificate_id: item for item in result.items}
	assert outcomes[ids[0]].outcome == SUCCEEDED
	assert outcomes[ids[1]].outcome == FAILED
	assert outcomes[ids[1]].error_code == "OrderTimeout"
	assert outcomes[ids[2]].outcome == SKIPPED
	assert outcomes[ids[3]].outcome == SUCCEEDED
	assert result.to_dict()["failed"] == 1


@pytest.mark.asyncio
async def test_forced_items_run_as_forced(db_path, config, insert_cert):
	executor = TrackingExecutor()
	scheduler = RenewalScheduler(db_path, config, executor)
	(due,) = _due(insert_cert)
	healthy = insert_cert(status=CertificateStatus.ACTIVE, expires_in_days=80)

	await scheduler.run_pass(RenewalKind.MANUAL, forced_ids=[healthy])

	assert dict(executor.calls) == {healthy: RenewalKind.FORCED, due: RenewalKind.MANUAL}


@pytest.mark.asyncio
async def test_aborted_pass_skips_remaining_items(db_path, config, insert_cert):
	executor = TrackingExecutor()
	scheduler = RenewalScheduler(db_path, config, executor)
	_due(insert_cert, 3)
	scheduler.abort()

	result = await scheduler.run_pass()

	assert executor.calls == []
	assert result.skipped == 3
	assert {item.error_code for item in result.items} == {"Cancelled"}


@pytest.mark.asyncio
async def test_empty_pass(db_path, config):
	result = await RenewalScheduler(db_path, config, TrackingExecutor()).run_pass()
	assert result.total == 0
	assert result.finished_at is not None


@pytest.mark.asyncio
async def test_scheduled_run_refreshes_statuses_first(db_path, config, evaluator, insert_cert):
	executor = TrackingExecutor()
	scheduler = RenewalScheduler(db_path, config, executor, evaluator)
	drifting = insert_cert(status=CertificateStatus.ACTIVE, expires_in_days=5)

	result = await scheduler.run_scheduled()

	assert result.succeeded == 1
	assert executor.calls == [(drifting, RenewalKind.AUTOMATIC)]


@pytest.mark.asyncio
async def test_scheduled_run_disabled(db_path, config, insert_cert):
	executor = TrackingExecutor()
	scheduler = RenewalScheduler(db_path, config, executor)
	_due(insert_cert)
	config.update({"scheduler_enabled": False})

	assert await scheduler.run_scheduled() is None
	assert executor.calls == []
	assert scheduler.status()["enabled"] is False
