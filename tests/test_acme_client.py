#!/usr/bin/env python3
#
# tests/test_acme_client.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Order flow against an in-process fake ACME server (httpx.MockTransport)."""

import asyncio
import base64
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from certwarden.acme.challenges import Http01Driver
from certwarden.acme.client import AccountStore, AcmeOrderClient
from certwarden.acme.protocol import PollPolicy, b64url
from certwarden.acme.provisioners import Http01Provisioner, Http01TokenStore
from certwarden.certs.state import ChallengeType
from certwarden.errors import (
	AcmeError,
	ChallengeValidationFailed,
	InvalidRequest,
	OrderTimeout,
	RateLimited,
	UnsupportedChallenge,
)

BASE = "https://acme.test"
DIRECTORY = f"{BASE}/directory"
EMAIL = "admin@example.com"
FAST = PollPolicy(initial_delay=0.01, factor=1.0, max_delay=0.01, max_attempts=3, max_wait=1.0)


def _b64decode(value: str) -> bytes:
	return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _payload(request: httpx.Request):
	body = json.loads(request.content or b"{}")
	raw = body.get("payload", "")
	return json.loads(_b64decode(raw)) if raw else None


class FakeAcmeServer:
	"""Just enough RFC 8555 to drive one order per test."""

	def __init__(
		self,
		*,
		challenge_result: str = "valid",
		order_stuck: bool = False,
		rate_limited: bool = False,
		bad_nonce_once: bool = False,
		offered: tuple[str, ...] = ("http-01", "dns-01"),
		processing_polls: int = 0,
		stale_valid_orders: int = 0,
	) -> None:
		self.challenge_result = challenge_result
		self.order_stuck = order_stuck
		self.rate_limited = rate_limited
		self.bad_nonce_once = bad_nonce_once
		self.offered = offered
		self.processing_polls = processing_polls
		self.stale_valid_orders = stale_valid_orders
		self.order_status = "pending"
		self.domain = None
		self.requests: list[tuple[str, object]] = []
		self.download_accept = None
		self._nonce = 0

		self.ca_key = ec.generate_private_key(ec.SECP256R1())
		self.ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Fake Test CA")])
		now = datetime.now(timezone.utc)
		self.ca_cert = (
			x509.CertificateBuilder()
			.subject_name(self.ca_name)
			.issuer_name(self.ca_name)
			.public_key(self.ca_key.public_key())
			.serial_number(x509.random_serial_number())
			.not_valid_before(now - timedelta(days=1))
			.not_valid_after(now + timedelta(days=365))
			.add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
			.sign(self.ca_key, hashes.SHA256())
		)
		self.leaf_pem = None

	def transport(self) -> httpx.MockTransport:
		return httpx.MockTransport(self.handle)

	def posts_to(self, path: str) -> list:
		return [payload for p, payload in self.requests if p == path]

	def _reply(self, status: int, body=None, *, headers=None, text=None) -> httpx.Response:
		self._nonce += 1
		merged = {"Replay-Nonce": f"nonce-{self._nonce}", **(headers or {})}
		if text is not None:
			return httpx.Response(status, text=text, headers=merged)
		return httpx.Response(status, json=body if body is not None else {}, headers=merged)

	def _order(self) -> dict:
		order = {
			"status": self.order_status,
			"identifiers": [{"type": "dns", "value": self.domain}],
			"authorizations": [f"{BASE}/acme/authz/1"],
			"finalize": f"{BASE}/acme/order/1/finalize",
		}
		if self.order_status == "valid":
			order["certificate"] = f"{BASE}/acme/cert/1"
		return order

	def _issue(self, csr_der: bytes) -> str:
		csr = x509.load_der_x509_csr(csr_der)
		san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
		now = datetime.now(timezone.utc)
		leaf = (
			x509.CertificateBuilder()
			.subject_name(csr.subject)
			.issuer_name(self.ca_name)
			.public_key(csr.public_key())
			.serial_number(x509.random_serial_number())
			.not_valid_before(now - timedelta(minutes=1))
			.not_valid_after(now + timedelta(days=90))
			.add_extension(san, critical=False)
			.sign(self.ca_key, hashes.SHA256())
		)
		pem = leaf.public_bytes(serialization.Encoding.PEM) + self.ca_cert.public_bytes(serialization.Encoding.PEM)
		return pem.decode("ascii")

	def handle(self, request: httpx.Request) -> httpx.Response:
		path = request.url.path
		if path == "/directory":
			return httpx.Response(200, json={
				"newNonce": f"{BASE}/acme/new-nonce",
				"newAccount": f"{BASE}/acme/new-account",
				"newOrder": f"{BASE}/acme/new-order",
				"revokeCert": f"{BASE}/acme/revoke-cert",
			})
		if path == "/acme/new-nonce":
			return self._reply(200)

		payload = _payload(request)
		self.requests.append((path, payload))

		if path == "/acme/new-account":
			return self._reply(201, {"status": "valid"}, headers={"Location": f"{BASE}/acme/acct/1"})

		if path == "/acme/new-order":
			if self.bad_nonce_once:
				self.bad_nonce_once = False
				return self._reply(400, {"type": "urn:ietf:params:acme:error:badNonce", "detail": "stale nonce"})
			if self.rate_limited:
				return self._reply(
					429,
					{"type": "urn:ietf:params:acme:error:rateLimited", "detail": "too many certificates"},
					headers={"Retry-After": "120"},
				)
			self.domain = payload["identifiers"][0]["value"]
			if self.stale_valid_orders:
				self.stale_valid_orders -= 1
				stale = {**self._order(), "status": "valid", "certificate": f"{BASE}/acme/cert/0"}
				return self._reply(201, stale, headers={"Location": f"{BASE}/acme/order/0"})
			return self._reply(201, self._order(), headers={"Location": f"{BASE}/acme/order/1"})

		if path == "/acme/authz/1":
			return self._reply(200, {
				"status": "pending",
				"identifier": {"type": "dns", "value": self.domain},
				"challenges": [
					{"type": t, "url": f"{BASE}/acme/chall/{t}", "token": f"tok-{t}", "status": "pending"}
					for t in self.offered
				],
			})

		if path.startswith("/acme/chall/"):
			if payload == {}:
				return self._reply(200, {"status": "processing"})
			if self.processing_polls:
				self.processing_polls -= 1
				return self._reply(200, {"status": "processing"})
			body = {"status": self.challenge_result}
			if self.challenge_result == "invalid":
				body["error"] = {"detail": "Invalid response from http://example.com"}
				self.order_status = "invalid"
			elif self.challenge_result == "valid" and not self.order_stuck:
				self.order_status = "ready"
			return self._reply(200, body)

		if path == "/acme/order/1":
			return self._reply(200, self._order())

		if path == "/acme/order/1/finalize":
			self.leaf_pem = self._issue(_b64decode(payload["csr"]))
			self.order_status = "valid"
			return self._reply(200, self._order())

		if path == "/acme/cert/1":
			self.download_accept = request.headers.get("accept")
			return self._reply(200, text=self.leaf_pem)

		if path == "/acme/revoke-cert":
			return self._reply(200)

		return self._reply(404, {"type": "urn:ietf:params:acme:error:malformed"})


@pytest.fixture
def token_store(tmp_path):
	return Http01TokenStore(tmp_path / "challenges")


def _client(server: FakeAcmeServer, tmp_path, token_store, accounts=None) -> AcmeOrderClient:
	drivers = {ChallengeType.HTTP_01: Http01Driver(Http01Provisioner(token_store))}
	return AcmeOrderClient(
		DIRECTORY,
		accounts or AccountStore(tmp_path / "accounts"),
		drivers,
		poll_policy=FAST,
		transport=server.transport(),
	)


@pytest.mark.asyncio
async def test_issue_returns_material_for_domain(tmp_path, token_store):
	server = FakeAcmeServer()
	client = _client(server, tmp_path, token_store)

	issued = await client.issue("example.com", EMAIL, "http-01")

	assert "example.com" in issued.material.names
	assert issued.material.private_key_pem
	assert issued.material.chain_pem.startswith("-----BEGIN CERTIFICATE-----")
	assert timedelta(days=89) < issued.expires_at - datetime.now(timezone.utc) <= timedelta(days=90)
	assert issued.order_url == f"{BASE}/acme/order/1"
	assert server.download_accept == "application/pem-certificate-chain"
	# The HTTP-01 token is gone once the challenge completed
	assert token_store.get("tok-http-01") is None


@pytest.mark.asyncio
async def test_account_is_registered_once_and_reused(tmp_path, token_store):
	server = FakeAcmeServer()
	client = _client(server, tmp_path, token_store)

	await client.issue("example.com", EMAIL, "http-01")
	server.order_status = "pending"
	await client.issue("example.com", EMAIL, "http-01")
	assert len(server.posts_to("/acme/new-account")) == 1

	# A fresh process finds the stored account
	server.order_status = "pending"
	restarted = _client(server, tmp_path, token_store, accounts=AccountStore(tmp_path / "accounts"))
	await restarted.issue("example.com", EMAIL, "http-01")
	assert len(server.posts_to("/acme/new-account")) == 1
	assert server.posts_to("/acme/new-account")[0]["contact"] == [f"mailto:{EMAIL}"]


@pytest.mark.asyncio
async def test_challenge_not_offered_is_unsupported(tmp_path, token_store):
	server = FakeAcmeServer(offered=("dns-01",))
	client = _client(server, tmp_path, token_store)

	with pytest.raises(UnsupportedChallenge, match="not offered"):
		await client.issue("example.com", EMAIL, "http-01")


@pytest.mark.asyncio
async def test_challenge_without_driver_is_unsupported_before_any_request(tmp_path, token_store):
	server = FakeAcmeServer()
	client = _client(server, tmp_path, token_store)

	with pytest.raises(UnsupportedChallenge):
		await client.issue("example.com", EMAIL, "dns-01")
	with pytest.raises(UnsupportedChallenge):
		await client.issue("example.com", EMAIL, "tls-alpn-01")
	assert server.requests == []


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after(tmp_path, token_store):
	client = _client(FakeAcmeServer(rate_limited=True), tmp_path, token_store)

	with pytest.raises(RateLimited) as excinfo:
		await client.issue("example.com", EMAIL, "http-01")
	assert excinfo.value.retry_after == 120
	assert "too many certificates" in excinfo.value.detail


@pytest.mark.asyncio
async def test_bad_nonce_is_retried_once(tmp_path, token_store):
	server = FakeAcmeServer(bad_nonce_once=True)
	client = _client(server, tmp_path, token_store)

	issued = await client.issue("example.com", EMAIL, "http-01")

	assert "example.com" in issued.material.names
	assert len(server.posts_to("/acme/new-order")) == 2


@pytest.mark.asyncio
async def test_invalid_challenge_fails_validation(tmp_path, token_store):
	client = _client(FakeAcmeServer(challenge_result="invalid"), tmp_path, token_store)

	with pytest.raises(ChallengeValidationFailed, match="Invalid response"):
		await client.issue("example.com", EMAIL, "http-01")
	assert token_store.get("tok-http-01") is None


@pytest.mark.asyncio
async def test_challenge_poll_budget_exhausted(tmp_path, token_store):
	client = _client(FakeAcmeServer(challenge_result="pending"), tmp_path, token_store)

	with pytest.raises(ChallengeValidationFailed) as excinfo:
		await client.issue("example.com", EMAIL, "http-01")
	assert type(excinfo.value) is ChallengeValidationFailed
	assert excinfo.value.code == "ChallengeValidationFailed"


@pytest.mark.asyncio
async def test_order_that_never_becomes_ready_times_out(tmp_path, token_store):
	client = _client(FakeAcmeServer(order_stuck=True), tmp_path, token_store)

	with pytest.raises(OrderTimeout):
		await client.issue("example.com", EMAIL, "http-01")


@pytest.mark.asyncio
async def test_revoke_sends_reason_code(tmp_path, token_store):
	server = FakeAcmeServer()
	client = _client(server, tmp_path, token_store)
	issued = await client.issue("example.com", EMAIL, "http-01")

	await client.revoke(issued.material.certificate_pem, EMAIL, "superseded")

	(payload,) = server.posts_to("/acme/revoke-cert")
	der = x509.load_pem_x509_certificate(issued.material.certificate_pem.encode()).public_bytes(serialization.Encoding.DER)
	assert payload == {"certificate": b64url(der), "reason": 4}


@pytest.mark.asyncio
async def test_revoke_rejects_unknown_reason(tmp_path, token_store):
	client = _client(FakeAcmeServer(), tmp_path, token_store)
	with pytest.raises(InvalidRequest):
		await client.revoke("irrelevant", EMAIL, "because")


@pytest.mark.asyncio
async def test_time_budget_covers_the_whole_issuance(tmp_path, token_store):
	# Eight slow challenge polls use most of the budget; the order then stays pending
	server = FakeAcmeServer(order_stuck=True, processing_polls=8)
	steady = PollPolicy(initial_delay=0.1, factor=1.0, max_delay=0.1, max_attempts=100, max_wait=30.0)
	client = AcmeOrderClient(
		DIRECTORY,
		AccountStore(tmp_path / "accounts"),
		{ChallengeType.HTTP_01: Http01Driver(Http01Provisioner(token_store))},
		poll_policy=steady,
		transport=server.transport(),
	)
	loop = asyncio.get_running_loop()

	started = loop.time()
	with pytest.raises(OrderTimeout):
		await client.issue("example.com", EMAIL, "http-01", max_wait=1.0)
	elapsed = loop.time() - started

	assert server.processing_polls == 0
	assert elapsed < 1.5


@pytest.mark.asyncio
async def test_exhausted_budget_fails_before_next_phase(tmp_path, token_store):
	server = FakeAcmeServer()
	client = _client(server, tmp_path, token_store)

	with pytest.raises(OrderTimeout, match="used up"):
		await client.issue("example.com", EMAIL, "http-01", max_wait=0)
	assert server.posts_to("/acme/chall/http-01") == []


@pytest.mark.asyncio
async def test_stale_valid_order_is_replaced_by_a_fresh_one(tmp_path, token_store):
	server = FakeAcmeServer(stale_valid_orders=1)
	client = _client(server, tmp_path, token_store)

	issued = await client.issue("example.com", EMAIL, "http-01")

	assert "example.com" in issued.material.names
	assert len(server.posts_to("/acme/new-order")) == 2
	assert issued.order_url == f"{BASE}/acme/order/1"


@pytest.mark.asyncio
async def test_ca_repeating_a_finalized_order_is_an_error(tmp_path, token_store):
	server = FakeAcmeServer(stale_valid_orders=2)
	client = _client(server, tmp_path, token_store)

	with pytest.raises(AcmeError, match="finalized order"):
		await client.issue("example.com", EMAIL, "http-01")
	assert server.posts_to("/acme/order/0/finalize") == []
