#!/usr/bin/env python3
#
# certwarden/utils/scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Async periodic job runner (renewal passes, monitoring sweeps, leader heartbeat)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, TypedDict

from .time import isoformat, utcnow

_log = logging.getLogger(__name__)

__all__ = ["Scheduler", "JobStatus"]

_MIN_INTERVAL = 1.0
_MAX_BACKOFF = 300.0


class JobStatus(TypedDict):
	name: str
	interval_seconds: float
	last_success: str | None
	last_attempt: str | None
	next_run_at: str | None
	is_running: bool
	run_count: int
	fail_count: int


@dataclass
class _Job:
	name: str
	interval_seconds: float
	func: Callable[[], Awaitable[None]]
	first_delay: float | None = None
	last_success: datetime | None = None
	last_attempt: datetime | None = None
	next_run_at: datetime | None = None
	run_count: int = 0
	fail_count: int = 0
	consecutive_failures: int = 0

	def backoff(self) -> float:
		return min(2 ** self.consecutive_failures, _MAX_BACKOFF) if self.consecutive_failures else 0.0


class Scheduler:
	"""Runs registered coroutines at fixed intervals until stopped.

	Usage::

		scheduler = Scheduler()
		scheduler.add("certificate-renewal", 86400, run_renewal_pass, run_on_start=True)

		# In lifespan:
		await scheduler.start()
		await scheduler.stop_graceful()

	A failing job is retried with exponential backoff (capped at five
	minutes) instead of waiting a whole interval. :meth:`set_interval`
	re-arms a sleeping job so a new cadence applies right away.
	"""

	def __init__(self) -> None:
		self._jobs: dict[str, _Job] = {}
		self._tasks: dict[str, asyncio.Task] = {}
		self._rearm: dict[str, asyncio.Event] = {}
		self._stopping: asyncio.Event | None = None

	@property
	def running(self) -> bool:
		return self._stopping is not None and not self._stopping.is_set()

	def add(
		self,
		name: str,
		interval_seconds: float,
		func: Callable[[], Awaitable[None]],
		*,
		run_on_start: bool = False,
		initial_delay: float = 0.0,
	) -> None:
		"""Register a periodic job (before :meth:`start`).

		Raises:
			RuntimeError: the scheduler is already running.
			ValueError: duplicate name, interval below one second, or a
				negative / orphaned ``initial_delay``.
		"""
		if self.running:
			raise RuntimeError(f"Cannot add job {name!r} while scheduler is running")
		if name in self._jobs:
			raise ValueError(f"Job {name!r} is already registered")
		_check_interval(interval_seconds)
		if initial_delay < 0:
			raise ValueError(f"initial_delay must be >= 0, got {initial_delay}")
		if initial_delay > 0 and not run_on_start:
			raise ValueError("initial_delay requires run_on_start=True")
		self._jobs[name] = _Job(
			name=name,
			interval_seconds=interval_seconds,
			func=func,
			first_delay=initial_delay if run_on_start else None,
		)

	def set_interval(self, name: str, interval_seconds: float) -> None:
		job = self._jobs.get(name)
		if job is None:
			raise KeyError(f"Job {name!r} not found")
		_check_interval(interval_seconds)
		if job.interval_seconds == interval_seconds:
			return
		job.interval_seconds = interval_seconds
		_log.info("SCHEDULER_RETIMED job=%s interval=%ds", name, interval_seconds)
		rearm = self._rearm.get(name)
		if rearm is not None:
			rearm.set()

	async def start(self) -> None:
		if self.running:
			return
		self._stopping = asyncio.Event()
		for job in self._jobs.values():
			self._rearm[job.name] = asyncio.Event()
			self._tasks[job.name] = asyncio.create_task(self._loop(job), name=f"job:{job.name}")
			_log.info("SCHEDULER_STARTED job=%s interval=%ds", job.name, job.interval_seconds)

	async def stop_graceful(self, timeout: float = 5.0) -> None:
		"""Signal every loop to stop; cancel whatever is still running after *timeout*."""
		if not self.running:
			return
		self._stopping.set()
		pending = [t for t in self._tasks.values() if not t.done()]
		if pending:
			_, stubborn = await asyncio.wait(pending, timeout=timeout)
			if stubborn:
				_log.warning("SCHEDULER_FORCED_CANCEL tasks=%d", len(stubborn))
				for task in stubborn:
					task.cancel()
				await asyncio.gather(*stubborn, return_exceptions=True)
		self._tasks.clear()
		self._rearm.clear()
		_log.info("SCHEDULER_STOPPED")

	def _next_delay(self, job: _Job, last_run: float | None, now: float) -> float:
		if last_run is None:
			return job.first_delay or 0.0
		backoff = job.backoff()
		wait = backoff if backoff else job.interval_seconds
		return max(0.0, last_run + wait - now)

	async def _wait(self, job: _Job, delay: float) -> str:
		"""Sleep *delay* seconds; returns ``"stop"``, ``"rearm"`` or ``"due"``."""
		waiters = {
			asyncio.ensure_future(self._stopping.wait()),
			asyncio.ensure_future(self._rearm[job.name].wait()),
		}
		try:
			await asyncio.wait(waiters, timeout=delay, return_when=asyncio.FIRST_COMPLETED)
		finally:
			for waiter in waiters:
				waiter.cancel()
		if self._stopping.is_set():
			return "stop"
		if self._rearm[job.name].is_set():
			return "rearm"
		return "due"

	async def _loop(self, job: _Job) -> None:
		loop = asyncio.get_running_loop()
		last_run: float | None = None if job.first_delay is not None else loop.time()
		try:
			while not self._stopping.is_set():
				self._rearm[job.name].clear()
				delay = self._next_delay(job, last_run, loop.time())
				job.next_run_at = utcnow() + timedelta(seconds=delay)
				outcome = await self._wait(job, delay)
				if outcome == "stop":
					break
				if outcome == "rearm":
					continue
				await self._run_once(job)
				last_run = loop.time()
		except asyncio.CancelledError:
			_log.debug("SCHEDULER_CANCELLED job=%s", job.name)
		finally:
			job.next_run_at = None

	async def _run_once(self, job: _Job) -> None:
		job.last_attempt = utcnow()
		try:
			await job.func()
		except asyncio.CancelledError:
			raise
		except Exception:
			job.fail_count += 1
			job.consecutive_failures += 1
			_log.exception(
				"SCHEDULER_JOB_FAILED job=%s consecutive=%d retry_in=%.0fs",
				job.name, job.consecutive_failures, job.backoff(),
			)
			return
		job.last_success = utcnow()
		job.run_count += 1
		job.consecutive_failures = 0
		_log.info("SCHEDULER_JOB_DONE job=%s run=%d", job.name, job.run_count)

	def get_status(self) -> list[JobStatus]:
		return [
			{
				"name": job.name,
				"interval_seconds": job.interval_seconds,
				"last_success": isoformat(job.last_success),
				"last_attempt": isoformat(job.last_attempt),
				"next_run_at": isoformat(job.next_run_at),
				"is_running": job.name in self._tasks and not self._tasks[job.name].done(),
				"run_count": job.run_count,
				"fail_count": job.fail_count,
			}
			for job in self._jobs.values()
		]


def _check_interval(interval_seconds: float) -> None:
	if interval_seconds < _MIN_INTERVAL:
		raise ValueError(f"interval_seconds must be >= {_MIN_INTERVAL}, got {interval_seconds}")
