#!/usr/bin/env python3
#
# certwarden/acme/client.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME v2 order client: account reuse, order, challenge, finalize, download."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import httpx

from ..certs.material import CertificateMaterial, build_csr, generate_private_key, parse_material, private_key_to_pem
from ..certs.state import ChallengeType
from ..errors import (
	AcmeError,
	ChallengeValidationFailed,
	InvalidRequest,
	OrderTimeout,
	UnsupportedChallenge,
	ValidationTimeout,
)
from .challenges import ChallengeDriver
from .protocol import AccountKey, AcmeSession, PollPolicy, b64url, check_abort, poll_until, raise_for_problem

_log = logging.getLogger(__name__)

_PEM_CHAIN = "application/pem-certificate-chain"

# RFC 5280 CRLReason codes accepted by ACME revokeCert
REVOCATION_REASONS = {
	"unspecified": 0,
	"keyCompromise": 1,
	"affiliationChanged": 3,
	"superseded": 4,
	"cessationOfOperation": 5,
}


@dataclass(frozen=True)
class AcmeAccount:
	"""Registered account; shared read-only between concurrent orders."""
	email: str
	url: str
	key: AccountKey

	@property
	def thumbprint(self) -> str:
		return self.key.thumbprint


@dataclass(frozen=True)
class IssuedCertificate:
	material: CertificateMaterial
	order_url: str

	@property
	def expires_at(self) -> datetime:
		return self.material.expires_at


class AccountStore:
	"""Persists one account key + URL per (directory, email).

	Registration is serialized per account so concurrent first orders do not
	register twice; afterwards the cached account is handed out as-is.
	"""

	def __init__(self, base_dir: Path) -> None:
		self.base_dir = base_dir
		self._accounts: dict[tuple[str, str], AcmeAccount] = {}
		self._locks: dict[tuple[str, str], asyncio.Lock] = {}

	def _paths(self, directory_url: str, email: str) -> tuple[Path, Path]:
		slug = hashlib.sha256(f"{directory_url}|{email.lower()}".encode("utf-8")).hexdigest()[:24]
		folder = self.base_dir / slug
		return folder / "account_key.pem", folder / "account.json"

	def _load_or_create_key(self, key_path: Path) -> AccountKey:
		if key_path.exists():
			return AccountKey.from_pem(key_path.read_bytes())
		key_path.parent.mkdir(parents=True, exist_ok=True)
		key = AccountKey.generate()
		key_path.write_bytes(key.to_pem())
		key_path.chmod(0o600)
		_log.info("Created new ACME account key in %s", key_path.parent)
		return key

	async def get(self, session: AcmeSession, email: str) -> AcmeAccount:
		cache_key = (session.directory_url, email.lower())
		cached = self._accounts.get(cache_key)
		if cached is not None:
			return cached
		lock = self._locks.setdefault(cache_key, asyncio.Lock())
		async with lock:
			cached = self._accounts.get(cache_key)
			if cached is None:
				cached = await self._register_or_fetch(session, email)
				self._accounts[cache_key] = cached
			return cached

	async def _register_or_fetch(self, session: AcmeSession, email: str) -> AcmeAccount:
		key_path, meta_path = self._paths(session.directory_url, email)
		key = await asyncio.to_thread(self._load_or_create_key, key_path)

		if meta_path.exists():
			try:
				meta = json.loads(meta_path.read_text(encoding="utf-8"))
			except (OSError, json.JSONDecodeError):
				meta = {}
			if meta.get("thumbprint") == key.thumbprint and meta.get("url"):
				_log.info("Using existing ACME account: %s", meta["url"])
				return AcmeAccount(email=email, url=meta["url"], key=key)
			_log.warning("Account key changed (thumbprint mismatch). Re-registering.")

		# newAccount is idempotent for a known key: the server returns 200 + Location
		resp = await session.post(
			session.endpoint("newAccount"),
			{"termsOfServiceAgreed": True, "contact": [f"mailto:{email}"]},
			key,
		)
		if resp.status_code not in (200, 201):
			raise_for_problem(resp, "Failed to register ACME account")
		url = resp.headers.get("Location")
		if not url:
			raise AcmeError("No account URL in ACME response")

		meta_path.write_text(json.dumps({"url": url, "thumbprint": key.thumbprint, "email": email}), encoding="utf-8")
		_log.info("Registered ACME account: %s", url)
		return AcmeAccount(email=email, url=url, key=key)


class AcmeOrderClient:
	"""Drives one certificate order end-to-end against one ACME directory."""

	def __init__(
		self,
		directory_url: str,
		accounts: AccountStore,
		drivers: dict[ChallengeType, ChallengeDriver],
		*,
		poll_policy: PollPolicy | None = None,
		transport: httpx.AsyncBaseTransport | None = None,
		http_timeout: float = 30.0,
	) -> None:
		self.directory_url = directory_url
		self.accounts = accounts
		self.drivers = drivers
		self.poll_policy = poll_policy or PollPolicy()
		self._transport = transport
		self._http_timeout = http_timeout

	def _http(self) -> httpx.AsyncClient:
		return httpx.AsyncClient(timeout=self._http_timeout, transport=self._transport)

	async def issue(
		self,
		domain: str,
		email: str,
		challenge_type: ChallengeType | str,
		*,
		abort: Optional[asyncio.Event] = None,
		max_wait: float | None = None,
	) -> IssuedCertificate:
		"""Obtain a certificate for *domain*.

		*max_wait* bounds the whole issuance (challenge, order and finalization
		polls together); it defaults to the poll policy's ``max_wait``.

		Raises:
			UnsupportedChallenge: challenge type not offered or not provisionable.
			ChallengeValidationFailed: the authorization failed or timed out.
			OrderTimeout: the order did not become ready/valid in time.
			RateLimited: the CA asked us to back off.
			Cancelled: *abort* was set at a poll boundary.
		"""
		try:
			challenge_type = ChallengeType(challenge_type)
		except ValueError as exc:
			raise UnsupportedChallenge(f"Unknown challenge type {challenge_type!r}") from exc
		driver = self.drivers.get(challenge_type)
		if driver is None:
			raise UnsupportedChallenge(f"No provisioning capability configured for {challenge_type.value}")
		deadline = asyncio.get_running_loop().time() + (self.poll_policy.max_wait if max_wait is None else max_wait)

		async with self._http() as http:
			session = AcmeSession(http, self.directory_url)
			await session.load_directory()
			account = await self.accounts.get(session, email)
			check_abort(abort)

			order_url, order = await self._new_order(session, account, domain)
			_log.info("ACME_ORDER domain=%s status=%s url=%s", domain, order.get("status"), order_url)
			if order.get("status") == "valid":
				# Finalized by an earlier attempt whose key we no longer hold
				_log.warning("ACME_ORDER_ALREADY_VALID domain=%s url=%s requesting a fresh order", domain, order_url)
				order_url, order = await self._new_order(session, account, domain)

			if order.get("status") == "pending":
				for authz_url in order.get("authorizations", []):
					await self._authorize(
						session, account, domain, authz_url, driver, challenge_type,
						self._remaining(deadline, domain, "challenge"), abort,
					)
				order = await self._poll_order(
					session, account, order_url,
					lambda o: o.get("status") in ("ready", "valid", "invalid"),
					self._remaining(deadline, domain, "order"), abort,
				)

			status = order.get("status")
			if status == "invalid":
				raise ChallengeValidationFailed(f"Order for {domain} became invalid: {_order_error(order)}")
			if status == "valid":
				raise AcmeError(f"CA returned an already finalized order for {domain}; its private key is not held here")
			if status != "ready":
				raise AcmeError(f"Unexpected order status {status!r} for {domain}")

			key = generate_private_key()
			order = await self._finalize(
				session, account, order_url, order, domain, key,
				self._remaining(deadline, domain, "finalization"), abort,
			)
			pem = await self._download(session, account, order)

		material = parse_material(pem, private_key_to_pem(key))
		_log.info(
			"ACME_ISSUED domain=%s serial=%s expires=%s",
			domain, material.serial_number, material.expires_at.isoformat(),
		)
		return IssuedCertificate(material=material, order_url=order_url)

	def _remaining(self, deadline: float, domain: str, phase: str) -> PollPolicy:
		"""Poll policy limited to what is left of the issuance budget."""
		left = deadline - asyncio.get_running_loop().time()
		if left <= 0:
			raise OrderTimeout(f"ACME time budget for {domain} used up before {phase}")
		return self.poll_policy.with_max_wait(left)

	async def _new_order(self, session: AcmeSession, account: AcmeAccount, domain: str) -> tuple[str, dict]:
		resp = await session.post(
			session.endpoint("newOrder"),
			{"identifiers": [{"type": "dns", "value": domain}]},
			account.key,
			account.url,
		)
		if resp.status_code not in (200, 201):
			raise_for_problem(resp, f"Failed to create order for {domain}")
		order_url = resp.headers.get("Location")
		if not order_url:
			raise AcmeError("No order URL in ACME response")
		return order_url, resp.json()

	async def _authorize(
		self,
		session: AcmeSession,
		account: AcmeAccount,
		domain: str,
		authz_url: str,
		driver: ChallengeDriver,
		challenge_type: ChallengeType,
		policy: PollPolicy,
		abort: Optional[asyncio.Event],
	) -> None:
		resp = await session.post(authz_url, None, account.key, account.url)
		if resp.status_code != 200:
			raise_for_problem(resp, "Failed to fetch authorization")
		authz = resp.json()
		if authz.get("status") == "valid":
			# Still valid from a previous order for this domain
			return
		if authz.get("status") != "pending":
			raise ChallengeValidationFailed(f"Authorization for {domain} is {authz.get('status')}")

		challenge = next((c for c in authz.get("challenges", []) if c.get("type") == challenge_type.value), None)
		if challenge is None:
			offered = ", ".join(sorted(c.get("type", "?") for c in authz.get("challenges", [])))
			raise UnsupportedChallenge(f"{challenge_type.value} not offered for {domain} (offered: {offered or 'none'})")

		try:
			await driver.fulfill(session, account, domain, challenge, abort=abort, poll_policy=policy)
		except ValidationTimeout as exc:
			raise ChallengeValidationFailed(exc.detail) from exc

	async def _poll_order(self, session, account, order_url, done, policy, abort) -> dict:
		async def fetch() -> dict[str, Any]:
			resp = await session.post(order_url, None, account.key, account.url)
			if resp.status_code != 200:
				raise_for_problem(resp, "Failed to poll order")
			return resp.json()

		return await poll_until(
			fetch,
			done,
			policy,
			on_timeout=lambda o: OrderTimeout(
				f"Order still {(o or {}).get('status', 'pending')} after poll budget"
			),
			abort=abort,
		)

	async def _finalize(self, session, account, order_url, order, domain, key, policy, abort) -> dict:
		resp = await session.post(order["finalize"], {"csr": b64url(build_csr(domain, key))}, account.key, account.url)
		if resp.status_code not in (200, 201):
			raise_for_problem(resp, f"Failed to finalize order for {domain}")
		order = resp.json()
		if order.get("status") != "valid":
			order = await self._poll_order(
				session, account, order_url,
				lambda o: o.get("status") in ("valid", "invalid"),
				policy, abort,
			)
		if order.get("status") == "invalid":
			raise AcmeError(f"Finalization for {domain} failed: {_order_error(order)}")
		return order

	async def _download(self, session: AcmeSession, account: AcmeAccount, order: dict) -> str:
		cert_url = order.get("certificate")
		if not cert_url:
			raise AcmeError("No certificate URL in order")
		resp = await session.post(cert_url, None, account.key, account.url, accept=_PEM_CHAIN)
		if resp.status_code != 200:
			raise_for_problem(resp, "Failed to download certificate")
		return resp.text

	async def revoke(self, certificate_pem: str, email: str, reason: str = "unspecified") -> None:
		"""Revoke a certificate issued to *email*'s account."""
		if reason not in REVOCATION_REASONS:
			raise InvalidRequest(f"Unknown revocation reason {reason!r}")
		from cryptography import x509
		from cryptography.hazmat.primitives import serialization

		der = x509.load_pem_x509_certificate(certificate_pem.encode("ascii")).public_bytes(serialization.Encoding.DER)
		async with self._http() as http:
			session = AcmeSession(http, self.directory_url)
			await session.load_directory()
			account = await self.accounts.get(session, email)
			resp = await session.post(
				session.endpoint("revokeCert"),
				{"certificate": b64url(der), "reason": REVOCATION_REASONS[reason]},
				account.key,
				account.url,
			)
			if resp.status_code != 200:
				raise_for_problem(resp, "Failed to revoke certificate")
		_log.info("ACME_REVOKED reason=%s", reason)


def _order_error(order: dict) -> str:
	error = order.get("error") or {}
	return error.get("detail") or error.get("type") or "no detail"
