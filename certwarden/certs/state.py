#!/usr/bin/env python3
#
# certwarden/certs/state.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate lifecycle enums and the status state machine."""

from __future__ import annotations

from enum import Enum

from ..errors import InvalidStateTransition


class CertificateStatus(str, Enum):
	PENDING = "PENDING"
	ACTIVE = "ACTIVE"
	RENEWAL_NEEDED = "RENEWAL_NEEDED"
	ERROR = "ERROR"
	EXPIRED = "EXPIRED"
	REVOKED = "REVOKED"


class CertificateType(str, Enum):
	FREE_ACME = "FREE_ACME"          # primary ACME CA (Let's Encrypt)
	FREE_ALT = "FREE_ALT"            # alternate ACME CA (ZeroSSL)
	USER_UPLOADED = "USER_UPLOADED"
	SELF_SIGNED = "SELF_SIGNED"

	@property
	def is_acme(self) -> bool:
		return self in (CertificateType.FREE_ACME, CertificateType.FREE_ALT)


class ChallengeType(str, Enum):
	HTTP_01 = "http-01"
	DNS_01 = "dns-01"


class RenewalKind(str, Enum):
	MANUAL = "MANUAL"
	AUTOMATIC = "AUTOMATIC"
	FORCED = "FORCED"


class RenewalOutcome(str, Enum):
	SUCCESS = "SUCCESS"
	FAILED = "FAILED"
	PENDING = "PENDING"


S = CertificateStatus

# Allowed edges. REVOKED is terminal; EXPIRED only leaves through a fresh
# issuance (PENDING) or revocation, never straight back to ACTIVE.
_TRANSITIONS: dict[CertificateStatus, frozenset[CertificateStatus]] = {
	S.PENDING: frozenset({S.ACTIVE, S.ERROR, S.REVOKED}),
	S.ACTIVE: frozenset({S.ACTIVE, S.RENEWAL_NEEDED, S.ERROR, S.EXPIRED, S.REVOKED}),
	S.RENEWAL_NEEDED: frozenset({S.ACTIVE, S.ERROR, S.EXPIRED, S.REVOKED}),
	S.ERROR: frozenset({S.ERROR, S.ACTIVE, S.RENEWAL_NEEDED, S.EXPIRED, S.REVOKED}),
	S.EXPIRED: frozenset({S.PENDING, S.REVOKED}),
	S.REVOKED: frozenset(),
}


def can_transition(
	current: CertificateStatus | str,
	target: CertificateStatus | str,
	*,
	fresh_issuance: bool = False,
) -> bool:
	current = CertificateStatus(current)
	target = CertificateStatus(target)
	if current is S.EXPIRED and target is S.PENDING:
		return fresh_issuance
	return target in _TRANSITIONS[current]


def transition(
	current: CertificateStatus | str,
	target: CertificateStatus | str,
	*,
	fresh_issuance: bool = False,
) -> CertificateStatus:
	"""Validate a status change and return the target status.

	``fresh_issuance`` marks an explicit new issuance request, the only way
	an EXPIRED certificate may re-enter PENDING.

	Raises:
		InvalidStateTransition: the edge is not part of the lifecycle.
	"""
	if not can_transition(current, target, fresh_issuance=fresh_issuance):
		raise InvalidStateTransition(
			f"Cannot move certificate from {CertificateStatus(current).value} "
			f"to {CertificateStatus(target).value}"
		)
	return CertificateStatus(target)
