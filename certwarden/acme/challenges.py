#!/usr/bin/env python3
#
# certwarden/acme/challenges.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Challenge drivers for HTTP-01 and DNS-01.

A driver publishes the artifact via its provisioner, tells the ACME server
it is ready, polls for a terminal status and always removes the artifact
again, whatever the outcome.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from ..certs.state import ChallengeType
from ..errors import AcmeError, ChallengeValidationFailed, ValidationTimeout
from ..utils.time import isoformat, utcnow
from .protocol import AcmeSession, PollPolicy, b64url, poll_until, raise_for_problem, sha256
from .provisioners import ChallengeProvisioner

if TYPE_CHECKING:
	from .client import AcmeAccount

_log = logging.getLogger(__name__)


class ChallengeStatus(str, Enum):
	PENDING = "PENDING"
	VALID = "VALID"
	INVALID = "INVALID"


@dataclass(frozen=True)
class AcmeChallenge:
	"""One challenge of one order attempt; never persisted."""
	domain: str
	challenge_type: ChallengeType
	token: str
	key_authorization: str
	artifact_name: str
	artifact_value: str
	status: ChallengeStatus = ChallengeStatus.PENDING
	created_at: datetime = field(default_factory=utcnow)

	def to_dict(self) -> dict[str, Any]:
		# The key authorization itself is not exposed
		return {
			"domain": self.domain,
			"challenge_type": self.challenge_type.value,
			"token": self.token,
			"artifact_name": self.artifact_name,
			"artifact_value": self.artifact_value,
			"status": self.status.value,
			"created_at": isoformat(self.created_at),
		}


class ChallengeRegistry:
	"""Challenges of in-flight order attempts, for diagnostics."""

	def __init__(self) -> None:
		self._items: dict[str, AcmeChallenge] = {}
		self._lock = threading.Lock()

	def put(self, challenge: AcmeChallenge) -> None:
		with self._lock:
			self._items[challenge.token] = challenge

	def set_status(self, token: str, status: ChallengeStatus) -> None:
		with self._lock:
			item = self._items.get(token)
			if item is not None:
				self._items[token] = replace(item, status=status)

	def discard(self, token: str) -> None:
		with self._lock:
			self._items.pop(token, None)

	def get(self, token: str) -> Optional[AcmeChallenge]:
		with self._lock:
			return self._items.get(token)

	def find(self, domain: str, challenge_type: ChallengeType | None = None) -> list[AcmeChallenge]:
		with self._lock:
			items = list(self._items.values())
		return [
			c for c in items
			if c.domain == domain and (challenge_type is None or c.challenge_type is challenge_type)
		]


class ChallengeDriver(ABC):
	"""Publishes, validates and cleans up one challenge type."""

	challenge_type: ChallengeType

	def __init__(
		self,
		provisioner: ChallengeProvisioner,
		*,
		poll_policy: PollPolicy | None = None,
		registry: ChallengeRegistry | None = None,
	) -> None:
		self.provisioner = provisioner
		self.poll_policy = poll_policy or PollPolicy()
		self.registry = registry or ChallengeRegistry()

	@abstractmethod
	def artifact(self, domain: str, token: str, key_authorization: str) -> tuple[str, str]:
		"""(name, value) the provisioner must publish."""

	async def fulfill(
		self,
		session: AcmeSession,
		account: "AcmeAccount",
		domain: str,
		challenge: dict[str, Any],
		*,
		abort: Optional[asyncio.Event] = None,
		poll_policy: PollPolicy | None = None,
	) -> AcmeChallenge:
		"""Run the challenge to a terminal status.

		Raises:
			ProvisioningFailed: the artifact could not be published.
			ChallengeValidationFailed: the server marked the challenge invalid.
			ValidationTimeout: no terminal status within the poll budget.
		"""
		token = challenge.get("token", "")
		challenge_url = challenge.get("url", "")
		if not token or not challenge_url:
			raise AcmeError(f"Malformed {self.challenge_type.value} challenge for {domain}")

		key_auth = f"{token}.{account.thumbprint}"
		name, value = self.artifact(domain, token, key_auth)
		record = AcmeChallenge(
			domain=domain,
			challenge_type=self.challenge_type,
			token=token,
			key_authorization=key_auth,
			artifact_name=name,
			artifact_value=value,
		)
		self.registry.put(record)
		try:
			await self.provisioner.publish(domain, name, value)
			_log.info("ACME_CHALLENGE_PUBLISHED domain=%s type=%s", domain, self.challenge_type.value)

			resp = await session.post(challenge_url, {}, account.key, account.url)
			if resp.status_code not in (200, 202):
				raise_for_problem(resp, f"Failed to respond to {self.challenge_type.value} challenge")

			async def fetch() -> dict[str, Any]:
				r = await session.post(challenge_url, None, account.key, account.url)
				if r.status_code != 200:
					raise_for_problem(r, "Failed to poll challenge")
				return r.json()

			result = await poll_until(
				fetch,
				lambda c: c.get("status") in ("valid", "invalid"),
				poll_policy or self.poll_policy,
				on_timeout=lambda c: ValidationTimeout(
					f"{self.challenge_type.value} challenge for {domain} still "
					f"{(c or {}).get('status', 'pending')} after poll budget"
				),
				abort=abort,
			)
			if result.get("status") == "invalid":
				self.registry.set_status(token, ChallengeStatus.INVALID)
				error = result.get("error") or {}
				detail = error.get("detail") or error.get("type") or "validation rejected"
				raise ChallengeValidationFailed(f"{self.challenge_type.value} challenge for {domain} invalid: {detail}")

			self.registry.set_status(token, ChallengeStatus.VALID)
			_log.info("ACME_CHALLENGE_VALID domain=%s type=%s", domain, self.challenge_type.value)
			return replace(record, status=ChallengeStatus.VALID)
		finally:
			self.registry.discard(token)
			# Also after a failed publish: it may have left a partial artifact
			await self._cleanup(domain, name, value)

	async def _cleanup(self, domain: str, name: str, value: str) -> None:
		# Shielded so a cancelled attempt still removes its artifact
		try:
			await asyncio.shield(self.provisioner.remove(domain, name, value))
		except asyncio.CancelledError:
			_log.warning("ACME_CHALLENGE_CLEANUP domain=%s interrupted by cancellation", domain)
			raise
		except Exception as exc:
			_log.error("ACME_CHALLENGE_CLEANUP_FAILED domain=%s name=%s: %s", domain, name, exc)


class Http01Driver(ChallengeDriver):
	challenge_type = ChallengeType.HTTP_01

	def artifact(self, domain: str, token: str, key_authorization: str) -> tuple[str, str]:
		return token, key_authorization


class Dns01Driver(ChallengeDriver):
	challenge_type = ChallengeType.DNS_01

	def artifact(self, domain: str, token: str, key_authorization: str) -> tuple[str, str]:
		base = domain[2:] if domain.startswith("*.") else domain
		return f"_acme-challenge.{base}", b64url(sha256(key_authorization.encode("ascii")))


__all__ = [
	"AcmeChallenge",
	"ChallengeDriver",
	"ChallengeRegistry",
	"ChallengeStatus",
	"Dns01Driver",
	"Http01Driver",
]
