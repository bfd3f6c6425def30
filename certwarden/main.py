#!/usr/bin/env python3
#
# certwarden/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI application factory and startup lifecycle wiring."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .acme.challenges import ChallengeDriver, ChallengeRegistry, Dns01Driver, Http01Driver
from .acme.client import AccountStore, AcmeOrderClient
from .acme.provisioners import CommandDnsProvisioner, Http01Provisioner, Http01TokenStore
from .api import acme as acme_api
from .api import certificates as certificates_api
from .api import config as config_api
from .api.auth import require_token
from .api.response import error_response
from .certs.events import EventBus
from .certs.executor import RenewalExecutor
from .certs.monitoring import MonitoringEvaluator
from .certs.runtime_config import ConfigManager, RuntimeConfig
from .certs.scheduler import RenewalScheduler
from .certs.service import CertificateService
from .certs.state import CertificateType, ChallengeType
from .db.sqlite_leader import release_leader_lock, try_acquire_leader_lock
from .db.sqlite_runtime import (
	checkpoint_wal,
	close_all_connections,
	close_connection,
	connect,
)
from .db.sqlite_schema import init_schema
from .errors import CertWardenError
from .utils.config import Config, load_config
from .utils.rate_limit import limiter
from .utils.request_id import RequestIDMiddleware
from .utils.scheduler import Scheduler

_log = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
_LEVEL_COLORS = {
	logging.DEBUG: "36",
	logging.INFO: "32",
	logging.WARNING: "33",
	logging.ERROR: "31",
	logging.CRITICAL: "35",
}
_QUIET_LOGGERS = ("httpcore", "httpx", "hpack", "watchfiles")

_LEADER_HEARTBEAT_SECONDS = 20.0
_SHUTDOWN_TIMEOUT_SECONDS = 5.0

_RENEWAL_JOB = "certificate-renewal"
_MONITORING_JOB = "certificate-monitoring"
_HEARTBEAT_JOB = "leader-heartbeat"


class _TTYFormatter(logging.Formatter):
	"""Colors the level column when stdout is a terminal."""

	def formatMessage(self, record: logging.LogRecord) -> str:
		line = super().formatMessage(record)
		color = _LEVEL_COLORS.get(record.levelno)
		if color is None:
			return line
		padded = f"{record.levelname:<8}"
		return line.replace(padded, f"\033[{color}m{padded}\033[0m", 1)


def _setup_logging(log_level: str) -> None:
	"""Route every logger (uvicorn included) through one stdout handler."""
	level = getattr(logging, log_level, logging.INFO)
	formatter_cls = _TTYFormatter if sys.stdout.isatty() else logging.Formatter
	handler = logging.StreamHandler(sys.stdout)
	handler.setFormatter(formatter_cls(fmt=_LOG_FORMAT, datefmt=_LOG_DATEFMT))
	logging.basicConfig(level=level, handlers=[handler], force=True)

	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		server_log = logging.getLogger(name)
		server_log.handlers.clear()
		server_log.setLevel(level)
		server_log.propagate = True
	for name in _QUIET_LOGGERS:
		logging.getLogger(name).setLevel(logging.WARNING)


def _build_drivers(cfg: Config, store: Http01TokenStore, registry: ChallengeRegistry) -> dict[ChallengeType, ChallengeDriver]:
	"""HTTP-01 is always available; DNS-01 only with a configured provisioning hook."""
	drivers: dict[ChallengeType, ChallengeDriver] = {
		ChallengeType.HTTP_01: Http01Driver(Http01Provisioner(store), registry=registry),
	}
	if cfg.dns_hook:
		drivers[ChallengeType.DNS_01] = Dns01Driver(CommandDnsProvisioner(cfg.dns_hook), registry=registry)
	else:
		_log.info("DNS-01 disabled: CERTWARDEN_DNS_HOOK not set")
	return drivers


async def _certificate_error_handler(request: Request, exc: CertWardenError):
	if exc.status_code >= 500:
		_log.warning("API_ERROR path=%s code=%s detail=%s", request.url.path, exc.code, exc.detail)
	return error_response(exc)


@asynccontextmanager
async def _lifespan(app: FastAPI):
	"""Application lifespan manager."""
	cfg: Config = app.state.cfg
	manager: ConfigManager = app.state.config_manager
	renewal: RenewalScheduler = app.state.renewal_scheduler
	evaluator: MonitoringEvaluator = app.state.evaluator
	service: CertificateService = app.state.service
	is_leader = False

	conn = connect(cfg.db_path)
	try:
		init_schema(conn)
		is_leader = try_acquire_leader_lock(conn)
	finally:
		close_connection(conn)

	runtime = manager.load()
	_log.info("LEADER_ELECTION pid=%d leader=%s", os.getpid(), is_leader)
	if not cfg.api_token:
		_log.warning("CERTWARDEN_API_TOKEN is not set: the REST API is unauthenticated")

	# Periodic jobs run on the leader only
	scheduler: Scheduler | None = None
	if is_leader:
		scheduler = Scheduler()

		async def _run_renewal() -> None:
			"""Scheduled task: automatic renewal pass."""
			await renewal.run_scheduled()

		async def _run_monitoring() -> None:
			"""Scheduled task: re-evaluate expiry of every active certificate."""
			await asyncio.to_thread(evaluator.evaluate_all)

		async def _heartbeat() -> None:
			conn = connect(cfg.db_path)
			try:
				if not try_acquire_leader_lock(conn):
					_log.warning("LEADER_LOST pid=%d", os.getpid())
			finally:
				close_connection(conn)

		scheduler.add(
			_RENEWAL_JOB,
			runtime.scheduler_interval_hours * 3600,
			_run_renewal,
			run_on_start=True,
			initial_delay=30.0,
		)
		scheduler.add(
			_MONITORING_JOB,
			runtime.monitor_interval_hours * 3600,
			_run_monitoring,
			run_on_start=True,
			initial_delay=5.0,
		)
		scheduler.add(_HEARTBEAT_JOB, _LEADER_HEARTBEAT_SECONDS, _heartbeat)

		def _retime(old: RuntimeConfig, new: RuntimeConfig) -> None:
			if old.scheduler_interval_hours != new.scheduler_interval_hours:
				scheduler.set_interval(_RENEWAL_JOB, new.scheduler_interval_hours * 3600)
			if old.monitor_interval_hours != new.monitor_interval_hours:
				scheduler.set_interval(_MONITORING_JOB, new.monitor_interval_hours * 3600)

		manager.subscribe(_retime)
		await scheduler.start()

	app.state.scheduler = scheduler
	app.state.is_leader = is_leader

	_log.info("CERTWARDEN_STARTED pid=%d leader=%s jobs=%d", os.getpid(), is_leader, len(scheduler.get_status()) if scheduler else 0)

	yield

	# Abort in-flight renewals first so they record Cancelled at the next poll boundary
	await service.shutdown(timeout=_SHUTDOWN_TIMEOUT_SECONDS)
	if scheduler:
		await scheduler.stop_graceful(timeout=_SHUTDOWN_TIMEOUT_SECONDS)

	if is_leader:
		conn = connect(cfg.db_path)
		try:
			release_leader_lock(conn)
		finally:
			close_connection(conn)

	closed_connections = close_all_connections()
	checkpoint = checkpoint_wal(cfg.db_path, mode="TRUNCATE")
	_log.info(
		"SQLITE_SHUTDOWN connections_closed=%d checkpoint_mode=%s busy=%s log_frames=%s checkpointed_frames=%s",
		closed_connections,
		checkpoint.get("mode"),
		checkpoint.get("busy"),
		checkpoint.get("log_frames"),
		checkpoint.get("checkpointed_frames"),
	)
	_log.info("CERTWARDEN_STOPPED pid=%d", os.getpid())


def create_app(cfg: Config | None = None) -> FastAPI:
	"""Application factory for CertWarden."""
	if cfg is None:
		cfg = load_config()
		_setup_logging(cfg.log_level)

	app = FastAPI(
		title="CertWarden",
		description="TLS certificate lifecycle service",
		version="0.1.0",
		lifespan=_lifespan,
		docs_url="/api/docs",
		redoc_url="/api/redoc",
	)

	# ─── COMPONENTS ──────────────────────────────────────────
	manager = ConfigManager(cfg.db_path)
	events = EventBus(delivery_enabled=lambda: manager.current.notifications_enabled)
	evaluator = MonitoringEvaluator(cfg.db_path, manager, events)

	http01_store = Http01TokenStore(cfg.acme_dir)
	registry = ChallengeRegistry()
	drivers = _build_drivers(cfg, http01_store, registry)
	accounts = AccountStore(cfg.acme_dir)
	acme_clients = {
		CertificateType.FREE_ACME: AcmeOrderClient(cfg.acme_directory, accounts, drivers),
		CertificateType.FREE_ALT: AcmeOrderClient(cfg.acme_alt_directory, accounts, drivers),
	}

	executor = RenewalExecutor(
		cfg.db_path, manager, evaluator, events,
		secret_key=cfg.secret_key,
		acme_clients=acme_clients,
	)
	renewal = RenewalScheduler(cfg.db_path, manager, executor, evaluator)
	service = CertificateService(
		cfg.db_path,
		secret_key=cfg.secret_key,
		config=manager,
		events=events,
		evaluator=evaluator,
		executor=executor,
		scheduler=renewal,
		acme_clients=acme_clients,
		drivers=drivers,
		challenges=registry,
	)

	app.state.cfg = cfg
	app.state.db_path = cfg.db_path
	app.state.config_manager = manager
	app.state.events = events
	app.state.evaluator = evaluator
	app.state.http01_store = http01_store
	app.state.renewal_scheduler = renewal
	app.state.service = service
	app.state.scheduler = None
	app.state.is_leader = False

	# ─── MIDDLEWARE ──────────────────────────────────────────
	app.add_middleware(RequestIDMiddleware)

	app.state.limiter = limiter
	app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
	app.add_exception_handler(CertWardenError, _certificate_error_handler)

	# ─── ROUTES ──────────────────────────────────────────────
	app.include_router(acme_api.well_known_router)
	guarded = [Depends(require_token)]
	# ACME routes first: /certificates/acme/* must win over /certificates/{cert_id}
	app.include_router(acme_api.router, prefix="/api", dependencies=guarded)
	app.include_router(certificates_api.router, prefix="/api", dependencies=guarded)
	app.include_router(config_api.router, prefix="/api", dependencies=guarded)

	return app
