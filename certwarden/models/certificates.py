#!/usr/bin/env python3
#
# certwarden/models/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate-related request payloads."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

_PEM_MAX = 64 * 1024


class _Payload(BaseModel):
	# Front-end sends camelCase, scripts tend to send snake_case
	model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class AcmeCertificateRequest(_Payload):
	"""Request a certificate from an ACME CA."""
	domain: str = Field(..., min_length=1, max_length=253, alias="domainName")
	email: EmailStr
	challenge_type: Literal["http-01", "dns-01"] = Field("http-01", alias="challengeType")
	certificate_type: Literal["FREE_ACME", "FREE_ALT"] = Field("FREE_ACME", alias="certificateType")
	certificate_name: Optional[str] = Field(None, max_length=128, alias="certificateName")
	auto_renew: bool = Field(True, alias="autoRenew")
	renewal_days_before: Optional[int] = Field(None, ge=1, le=365, alias="renewalDaysBefore")


class CertificateUpload(_Payload):
	"""Operator-supplied certificate material."""
	domain: str = Field(..., min_length=1, max_length=253, alias="domainName")
	certificate_pem: str = Field(..., min_length=1, max_length=_PEM_MAX, alias="certificate")
	private_key_pem: str = Field(..., min_length=1, max_length=_PEM_MAX, alias="privateKey")
	chain_pem: Optional[str] = Field(None, max_length=_PEM_MAX, alias="chain")
	certificate_name: Optional[str] = Field(None, max_length=128, alias="certificateName")


class StagedUpload(_Payload):
	"""Replacement material for an uploaded certificate, used by its next renewal."""
	certificate_pem: str = Field(..., min_length=1, max_length=_PEM_MAX, alias="certificate")
	private_key_pem: str = Field(..., min_length=1, max_length=_PEM_MAX, alias="privateKey")
	chain_pem: Optional[str] = Field(None, max_length=_PEM_MAX, alias="chain")


class SelfSignedRequest(_Payload):
	domain: str = Field(..., min_length=1, max_length=253, alias="domainName")
	certificate_name: Optional[str] = Field(None, max_length=128, alias="certificateName")
	validity_days: Optional[int] = Field(None, ge=1, le=3650, alias="validityDays")
	auto_renew: bool = Field(True, alias="autoRenew")


class RenewRequest(_Payload):
	force: bool = False


class BatchRenewRequest(_Payload):
	"""Manual batch pass; listed ids are included regardless of the selection predicate."""
	certificate_ids: list[int] = Field(default_factory=list, max_length=1000, alias="certificateIds")


class AutoRenewUpdate(_Payload):
	enabled: bool
	renewal_days_before: Optional[int] = Field(None, ge=1, le=365, alias="renewalDaysBefore")


class MonitoringUpdate(_Payload):
	enabled: Optional[bool] = None
	warning_days: Optional[int] = Field(None, ge=0, le=365, alias="warningDays")
	critical_days: Optional[int] = Field(None, ge=0, le=365, alias="criticalDays")

	@model_validator(mode="after")
	def thresholds_ordered(self) -> "MonitoringUpdate":
		if self.warning_days is not None and self.critical_days is not None and self.critical_days > self.warning_days:
			raise ValueError("criticalDays must not exceed warningDays")
		return self


class RevokeRequest(_Payload):
	reason: Literal["unspecified", "keyCompromise", "affiliationChanged", "superseded", "cessationOfOperation"] = "unspecified"
	local_only: bool = Field(False, alias="localOnly")


class UsageCreate(_Payload):
	service_name: str = Field(..., min_length=1, max_length=128, alias="serviceName")
	service_config_path: Optional[str] = Field(None, max_length=512, alias="serviceConfigPath")


class ChallengeVerifyRequest(_Payload):
	domain: str = Field(..., min_length=1, max_length=253, alias="domainName")
	challenge_type: Literal["http-01", "dns-01"] = Field(..., alias="challengeType")
	token: str = Field(..., min_length=1, max_length=256)
