#!/usr/bin/env python3
#
# certwarden/acme/protocol.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME (RFC 8555) wire helpers: JWS signing, nonces, problem documents, polling."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Iterator, Optional

import httpx
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from ..errors import AcmeError, Cancelled, CertWardenError, RateLimited

_log = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER = 3600
_PROBLEM_PREFIX = "urn:ietf:params:acme:error:"


def b64url(data: bytes) -> str:
	"""Base64url encode without padding."""
	return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def sha256(data: bytes) -> bytes:
	return hashlib.sha256(data).digest()


def jwk_thumbprint(jwk: dict) -> str:
	"""Calculate JWK thumbprint (RFC 7638)."""
	if jwk.get("kty") == "EC":
		canonical = {"crv": jwk["crv"], "kty": "EC", "x": jwk["x"], "y": jwk["y"]}
	elif jwk.get("kty") == "RSA":
		canonical = {"e": jwk["e"], "kty": "RSA", "n": jwk["n"]}
	else:
		raise ValueError(f"Unsupported key type: {jwk.get('kty')}")
	canonical_json = json.dumps(canonical, separators=(",", ":"), sort_keys=True)
	return b64url(sha256(canonical_json.encode("utf-8")))


# ---------------------------------------------------------------------------
# Account key (EC P-256, ES256)
# ---------------------------------------------------------------------------

class AccountKey:
	"""EC P-256 account key with JWK/ES256 helpers."""

	def __init__(self, key: ec.EllipticCurvePrivateKey) -> None:
		if not isinstance(key.curve, ec.SECP256R1):
			raise ValueError("Account key must be a P-256 key")
		self._key = key
		numbers = key.public_key().public_numbers()
		self.jwk = {
			"kty": "EC",
			"crv": "P-256",
			"x": b64url(numbers.x.to_bytes(32, "big")),
			"y": b64url(numbers.y.to_bytes(32, "big")),
		}
		self.thumbprint = jwk_thumbprint(self.jwk)

	@classmethod
	def generate(cls) -> "AccountKey":
		return cls(ec.generate_private_key(ec.SECP256R1()))

	@classmethod
	def from_pem(cls, pem: bytes) -> "AccountKey":
		key = serialization.load_pem_private_key(pem, password=None)
		if not isinstance(key, ec.EllipticCurvePrivateKey):
			raise ValueError("Account key is not an EC key")
		return cls(key)

	def to_pem(self) -> bytes:
		return self._key.private_bytes(
			encoding=serialization.Encoding.PEM,
			format=serialization.PrivateFormat.PKCS8,
			encryption_algorithm=serialization.NoEncryption(),
		)

	def sign(self, data: bytes) -> bytes:
		"""ES256 signature as r || s (32 bytes each)."""
		r, s = decode_dss_signature(self._key.sign(data, ec.ECDSA(hashes.SHA256())))
		return r.to_bytes(32, "big") + s.to_bytes(32, "big")


# ---------------------------------------------------------------------------
# Problem documents
# ---------------------------------------------------------------------------

def problem_type(resp: httpx.Response) -> str:
	try:
		body = resp.json()
	except ValueError:
		return ""
	value = body.get("type", "") if isinstance(body, dict) else ""
	return value[len(_PROBLEM_PREFIX):] if value.startswith(_PROBLEM_PREFIX) else value


def parse_acme_error(resp: httpx.Response) -> str:
	"""Extract a human readable message from an ACME problem document."""
	try:
		error = resp.json()
	except ValueError:
		return resp.text[:500] or f"HTTP {resp.status_code}"
	if not isinstance(error, dict):
		return resp.text[:500]
	detail = error.get("detail", "")
	error_type = error.get("type", "")
	if detail:
		return f"{detail} ({error_type})" if error_type else detail
	return error_type or f"HTTP {resp.status_code}"


def parse_retry_after(value: Optional[str], *, now: Optional[datetime] = None) -> int:
	"""Retry-After as seconds (delta-seconds or HTTP-date); default one hour."""
	if not value:
		return DEFAULT_RETRY_AFTER
	value = value.strip()
	if value.isdigit():
		return int(value)
	try:
		when = parsedate_to_datetime(value)
	except (TypeError, ValueError):
		return DEFAULT_RETRY_AFTER
	if when.tzinfo is None:
		when = when.replace(tzinfo=timezone.utc)
	now = now or datetime.now(timezone.utc)
	return max(0, int((when - now).total_seconds()))


def raise_for_problem(resp: httpx.Response, context: str) -> None:
	"""Map a failed ACME response onto RateLimited or AcmeError."""
	kind = problem_type(resp)
	if resp.status_code == 429 or kind == "rateLimited":
		retry_after = parse_retry_after(resp.headers.get("Retry-After"))
		raise RateLimited(f"{context}: {parse_acme_error(resp)}", retry_after=retry_after)
	raise AcmeError(f"{context}: {parse_acme_error(resp)}")


# ---------------------------------------------------------------------------
# Polling with exponential backoff
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PollPolicy:
	"""Bounded exponential backoff for status polls."""
	initial_delay: float = 1.0
	factor: float = 2.0
	max_delay: float = 30.0
	max_attempts: int = 20
	max_wait: float = 300.0

	def delays(self) -> Iterator[float]:
		"""Sleep durations between attempts, stopping at either budget."""
		delay = self.initial_delay
		waited = 0.0
		for _ in range(max(0, self.max_attempts - 1)):
			step = min(delay, self.max_delay, self.max_wait - waited)
			if step <= 0:
				return
			yield step
			waited += step
			delay *= self.factor

	def with_max_wait(self, max_wait: float) -> "PollPolicy":
		return PollPolicy(
			initial_delay=self.initial_delay,
			factor=self.factor,
			max_delay=self.max_delay,
			max_attempts=self.max_attempts,
			max_wait=max_wait,
		)


def check_abort(abort: Optional[asyncio.Event]) -> None:
	if abort is not None and abort.is_set():
		raise Cancelled("Renewal aborted")


async def _sleep_or_abort(delay: float, abort: Optional[asyncio.Event]) -> None:
	if abort is None:
		await asyncio.sleep(delay)
		return
	try:
		await asyncio.wait_for(abort.wait(), timeout=delay)
	except asyncio.TimeoutError:
		return
	raise Cancelled("Renewal aborted")


async def poll_until(
	fetch: Callable[[], Awaitable[dict[str, Any]]],
	done: Callable[[dict[str, Any]], bool],
	policy: PollPolicy,
	*,
	on_timeout: Callable[[dict[str, Any] | None], CertWardenError],
	abort: Optional[asyncio.Event] = None,
) -> dict[str, Any]:
	"""Call *fetch* until *done* accepts the resource or the budget runs out.

	The abort event is checked at every poll boundary (raises Cancelled).
	"""
	check_abort(abort)
	resource = await fetch()
	if done(resource):
		return resource
	for delay in policy.delays():
		await _sleep_or_abort(delay, abort)
		resource = await fetch()
		if done(resource):
			return resource
	raise on_timeout(resource)


# ---------------------------------------------------------------------------
# Session: directory, nonces and signed requests
# ---------------------------------------------------------------------------

class AcmeSession:
	"""One conversation with an ACME server (directory + nonce pool)."""

	def __init__(self, http: httpx.AsyncClient, directory_url: str) -> None:
		self.http = http
		self.directory_url = directory_url
		self.directory: dict[str, Any] = {}
		self._nonce: Optional[str] = None

	async def load_directory(self) -> dict[str, Any]:
		try:
			resp = await self.http.get(self.directory_url)
		except httpx.HTTPError as exc:
			raise AcmeError(f"ACME directory unreachable: {exc}") from exc
		if resp.status_code != 200:
			raise_for_problem(resp, "Failed to fetch ACME directory")
		self.directory = resp.json()
		return self.directory

	def endpoint(self, name: str) -> str:
		url = self.directory.get(name)
		if not url:
			raise AcmeError(f"ACME directory has no {name!r} endpoint")
		return url

	async def _get_nonce(self) -> str:
		if self._nonce:
			nonce, self._nonce = self._nonce, None
			return nonce
		url = self.endpoint("newNonce")
		resp = await self.http.head(url)
		if "Replay-Nonce" not in resp.headers:
			# Some servers only answer GET
			resp = await self.http.get(url)
		if "Replay-Nonce" not in resp.headers:
			raise AcmeError("Failed to obtain ACME nonce")
		return resp.headers["Replay-Nonce"]

	def _jws(self, url: str, payload: Optional[dict], key: AccountKey, kid: Optional[str], nonce: str) -> dict:
		protected: dict[str, Any] = {"alg": "ES256", "nonce": nonce, "url": url}
		if kid:
			protected["kid"] = kid
		else:
			protected["jwk"] = key.jwk
		protected_b64 = b64url(json.dumps(protected).encode("utf-8"))
		# payload None means POST-as-GET (empty payload)
		payload_b64 = "" if payload is None else b64url(json.dumps(payload).encode("utf-8"))
		signature = key.sign(f"{protected_b64}.{payload_b64}".encode("ascii"))
		return {"protected": protected_b64, "payload": payload_b64, "signature": b64url(signature)}

	async def post(
		self,
		url: str,
		payload: Optional[dict],
		key: AccountKey,
		kid: Optional[str] = None,
		*,
		accept: Optional[str] = None,
	) -> httpx.Response:
		"""Signed POST; a badNonce rejection is retried once with a fresh nonce."""
		headers = {"Content-Type": "application/jose+json"}
		if accept:
			headers["Accept"] = accept
		for attempt in (1, 2):
			body = self._jws(url, payload, key, kid, await self._get_nonce())
			try:
				resp = await self.http.post(url, json=body, headers=headers)
			except httpx.HTTPError as exc:
				raise AcmeError(f"ACME request to {url} failed: {exc}") from exc
			if "Replay-Nonce" in resp.headers:
				self._nonce = resp.headers["Replay-Nonce"]
			if resp.status_code == 400 and problem_type(resp) == "badNonce" and attempt == 1:
				_log.debug("ACME badNonce for %s, retrying", url)
				continue
			return resp
		return resp
