#!/usr/bin/env python3
#
# certwarden/certs/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate lifecycle core: state machine, monitoring, renewal and scheduling."""

from .events import AlertRaised, EventBus, RenewalCompleted
from .executor import RenewalExecutor, RenewalResult
from .monitoring import Classification, MonitoringEvaluator, classify
from .runtime_config import ConfigManager, RuntimeConfig
from .scheduler import BatchResult, RenewalScheduler
from .service import CertificateService
from .state import CertificateStatus, CertificateType, ChallengeType, RenewalKind, RenewalOutcome

__all__ = [
	"AlertRaised",
	"BatchResult",
	"CertificateService",
	"CertificateStatus",
	"CertificateType",
	"ChallengeType",
	"Classification",
	"ConfigManager",
	"EventBus",
	"MonitoringEvaluator",
	"RenewalCompleted",
	"RenewalExecutor",
	"RenewalKind",
	"RenewalOutcome",
	"RenewalResult",
	"RenewalScheduler",
	"RuntimeConfig",
	"classify",
]
