#!/usr/bin/env python3
#
# tests/test_job_scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

import asyncio

import pytest

from certwarden.utils.scheduler import Scheduler


async def _noop() -> None:
	return None


def test_add_validation():
	scheduler = Scheduler()
	scheduler.add("a", 10, _noop)

	with pytest.raises(ValueError):
		scheduler.add("a", 10, _noop)
	with pytest.raises(ValueError):
		scheduler.add("b", 0.5, _noop)
	with pytest.raises(ValueError):
		scheduler.add("c", 10, _noop, initial_delay=-1, run_on_start=True)
	with pytest.raises(ValueError):
		scheduler.add("d", 10, _noop, initial_delay=5)
	with pytest.raises(KeyError):
		scheduler.set_interval("missing", 10)


@pytest.mark.asyncio
async def test_run_on_start_and_status():
	ran = asyncio.Event()

	async def job() -> None:
		ran.set()

	scheduler = Scheduler()
	scheduler.add("sweep", 3600, job, run_on_start=True)
	await scheduler.start()
	try:
		await asyncio.wait_for(ran.wait(), timeout=2)
		await asyncio.sleep(0)
		(status,) = scheduler.get_status()
		assert status["name"] == "sweep"
		assert status["run_count"] == 1
		assert status["fail_count"] == 0
		assert status["is_running"] is True
		assert status["last_success"] is not None
	finally:
		await scheduler.stop_graceful(timeout=1)

	assert not scheduler.running
	assert scheduler.get_status()[0]["is_running"] is False


@pytest.mark.asyncio
async def test_job_without_run_on_start_waits_for_interval():
	calls = []

	async def job() -> None:
		calls.append(1)

	scheduler = Scheduler()
	scheduler.add("slow", 3600, job)
	await scheduler.start()
	await asyncio.sleep(0.05)
	await scheduler.stop_graceful(timeout=1)

	assert calls == []


@pytest.mark.asyncio
async def test_failure_is_counted_and_loop_survives():
	attempts = 0
	done = asyncio.Event()

	async def flaky() -> None:
		nonlocal attempts
		attempts += 1
		if attempts == 1:
			raise RuntimeError("boom")
		done.set()

	scheduler = Scheduler()
	scheduler.add("flaky", 3600, flaky, run_on_start=True)
	await scheduler.start()
	try:
		# First retry comes after a 2 second backoff, not the full hour
		await asyncio.wait_for(done.wait(), timeout=5)
		await asyncio.sleep(0)
		(status,) = scheduler.get_status()
		assert status["fail_count"] == 1
		assert status["run_count"] == 1
	finally:
		await scheduler.stop_graceful(timeout=1)


@pytest.mark.asyncio
async def test_set_interval_rearms_sleeping_job():
	calls = 0
	second = asyncio.Event()

	async def job() -> None:
		nonlocal calls
		calls += 1
		if calls == 2:
			second.set()

	scheduler = Scheduler()
	scheduler.add("tick", 3600, job, run_on_start=True)
	await scheduler.start()
	try:
		await asyncio.sleep(0.05)
		assert calls == 1
		scheduler.set_interval("tick", 1)
		await asyncio.wait_for(second.wait(), timeout=3)
		assert scheduler.get_status()[0]["interval_seconds"] == 1
	finally:
		await scheduler.stop_graceful(timeout=1)


@pytest.mark.asyncio
async def test_stop_cancels_stuck_job():
	started = asyncio.Event()

	async def stuck() -> None:
		started.set()
		await asyncio.sleep(3600)

	scheduler = Scheduler()
	scheduler.add("stuck", 3600, stuck, run_on_start=True)
	await scheduler.start()
	await asyncio.wait_for(started.wait(), timeout=2)

	with pytest.raises(RuntimeError):
		scheduler.add("late", 10, _noop)

	await scheduler.stop_graceful(timeout=0.1)

	assert not scheduler.running
	assert scheduler.get_status()[0]["run_count"] == 0
