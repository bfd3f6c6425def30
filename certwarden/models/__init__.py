#!/usr/bin/env python3
#
# certwarden/models/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Pydantic models for CertWarden."""

from .certificates import (
	AcmeCertificateRequest,
	AutoRenewUpdate,
	BatchRenewRequest,
	CertificateUpload,
	ChallengeVerifyRequest,
	MonitoringUpdate,
	RenewRequest,
	RevokeRequest,
	SelfSignedRequest,
	StagedUpload,
	UsageCreate,
)

__all__ = [
	"AcmeCertificateRequest",
	"AutoRenewUpdate",
	"BatchRenewRequest",
	"CertificateUpload",
	"ChallengeVerifyRequest",
	"MonitoringUpdate",
	"RenewRequest",
	"RevokeRequest",
	"SelfSignedRequest",
	"StagedUpload",
	"UsageCreate",
]
