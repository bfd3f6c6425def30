#!/usr/bin/env python3
#
# certwarden/errors.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Error taxonomy shared by the certificate lifecycle components.

Every error carries a stable ``code`` (stored verbatim as a certificate's
``last_error``) and the HTTP status the REST layer renders it with.
"""

from __future__ import annotations


class CertWardenError(Exception):
	"""Base class for all lifecycle errors."""

	code = "CertWardenError"
	status_code = 500

	def __init__(self, detail: str = "") -> None:
		super().__init__(detail or self.code)
		self.detail = detail or self.code

	def to_dict(self) -> dict[str, str]:
		return {"status": "error", "code": self.code, "detail": self.detail}


# ---------------------------------------------------------------------------
# Validation (rejected synchronously, no side effects)
# ---------------------------------------------------------------------------

class InvalidRequest(CertWardenError):
	code = "InvalidRequest"
	status_code = 400


class UnsupportedChallenge(CertWardenError):
	code = "UnsupportedChallenge"
	status_code = 400


class UnsupportedExportFormat(CertWardenError):
	code = "UnsupportedExportFormat"
	status_code = 400


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

class CertificateNotFound(CertWardenError):
	code = "CertificateNotFound"
	status_code = 404


class UsageNotFound(CertWardenError):
	code = "UsageNotFound"
	status_code = 404


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------

class InvalidStateTransition(CertWardenError):
	code = "InvalidStateTransition"
	status_code = 409


class RenewalInProgress(CertWardenError):
	code = "RenewalInProgress"
	status_code = 409


class DomainConflict(CertWardenError):
	code = "DomainConflict"
	status_code = 409


class UsageConflict(CertWardenError):
	code = "UsageConflict"
	status_code = 409


class ManualRenewalRequired(CertWardenError):
	code = "ManualRenewalRequired"
	status_code = 409


# ---------------------------------------------------------------------------
# Protocol (ACME server and challenge provisioning)
# ---------------------------------------------------------------------------

class AcmeError(CertWardenError):
	"""The ACME server rejected a request or returned something unusable."""

	code = "AcmeError"
	status_code = 502


class ChallengeValidationFailed(AcmeError):
	code = "ChallengeValidationFailed"


class ValidationTimeout(ChallengeValidationFailed):
	"""The ACME server did not confirm the challenge within the poll budget."""

	code = "ValidationTimeout"


class OrderTimeout(AcmeError):
	code = "OrderTimeout"


class ProvisioningFailed(AcmeError):
	"""The external capability could not publish the challenge artifact."""

	code = "ProvisioningFailed"


class RateLimited(CertWardenError):
	"""The CA asked us to back off; callers must wait ``retry_after`` seconds."""

	code = "RateLimited"
	status_code = 429

	def __init__(self, detail: str = "", retry_after: int = 3600) -> None:
		super().__init__(detail)
		self.retry_after = max(0, int(retry_after))


class Cancelled(CertWardenError):
	"""Attempt aborted cooperatively (shutdown or aborted batch)."""

	code = "Cancelled"
	status_code = 503
