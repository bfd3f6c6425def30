#!/usr/bin/env python3
#
# tests/test_challenges.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

import asyncio
from types import SimpleNamespace

import httpx
import pytest

from certwarden.acme.challenges import ChallengeRegistry, ChallengeStatus, Dns01Driver, Http01Driver
from certwarden.acme.protocol import PollPolicy, b64url, sha256
from certwarden.acme.provisioners import Http01Provisioner, Http01TokenStore
from certwarden.errors import Cancelled, ChallengeValidationFailed, ProvisioningFailed, ValidationTimeout

FAST = PollPolicy(initial_delay=0.01, factor=1.0, max_delay=0.01, max_attempts=3, max_wait=1.0)
ACCOUNT = SimpleNamespace(key=object(), url="https://acme.test/acct/1", thumbprint="THUMB")
CHALLENGE = {"type": "http-01", "url": "https://acme.test/chall/1", "token": "tok_123", "status": "pending"}


class FakeSession:
	"""Answers challenge POSTs with a scripted sequence of statuses."""

	def __init__(self, statuses, error=None):
		self.statuses = list(statuses)
		self.error = error
		self.posts = []

	async def post(self, url, payload, key, kid=None, *, accept=None):
		self.posts.append((url, payload))
		if payload == {}:
			return httpx.Response(200, json={"status": "pending"})
		status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
		body = {"status": status}
		if status == "invalid" and self.error:
			body["error"] = self.error
		return httpx.Response(200, json=body)


class FakeProvisioner:
	def __init__(self, fail_publish=False):
		self.fail_publish = fail_publish
		self.published = []
		self.removed = []

	async def publish(self, domain, name, value):
		if self.fail_publish:
			raise ProvisioningFailed(f"cannot publish for {domain}")
		self.published.append((domain, name, value))

	async def remove(self, domain, name, value):
		self.removed.append((domain, name, value))

	async def verify(self, domain, name, value):
		return (domain, name, value) in self.published


@pytest.mark.asyncio
async def test_http01_success_publishes_and_cleans_up():
	provisioner = FakeProvisioner()
	registry = ChallengeRegistry()
	driver = Http01Driver(provisioner, poll_policy=FAST, registry=registry)
	session = FakeSession(["pending", "valid"])

	result = await driver.fulfill(session, ACCOUNT, "example.com", CHALLENGE)

	assert result.status is ChallengeStatus.VALID
	assert provisioner.published == [("example.com", "tok_123", "tok_123.THUMB")]
	assert provisioner.removed == provisioner.published
	assert registry.find("example.com") == []
	# Readiness signal uses an empty JSON object, polls use POST-as-GET
	assert session.posts[0] == (CHALLENGE["url"], {})
	assert all(payload is None for _, payload in session.posts[1:])


@pytest.mark.asyncio
async def test_invalid_challenge_fails_and_cleans_up():
	provisioner = FakeProvisioner()
	driver = Http01Driver(provisioner, poll_policy=FAST)
	session = FakeSession(["invalid"], error={"detail": "connection refused"})

	with pytest.raises(ChallengeValidationFailed, match="connection refused"):
		await driver.fulfill(session, ACCOUNT, "example.com", CHALLENGE)
	assert len(provisioner.removed) == 1


@pytest.mark.asyncio
async def test_pending_challenge_times_out_and_cleans_up():
	provisioner = FakeProvisioner()
	driver = Http01Driver(provisioner, poll_policy=FAST)

	with pytest.raises(ValidationTimeout):
		await driver.fulfill(FakeSession(["pending"]), ACCOUNT, "example.com", CHALLENGE)
	assert len(provisioner.removed) == 1


@pytest.mark.asyncio
async def test_failed_publish_still_cleans_up():
	provisioner = FakeProvisioner(fail_publish=True)
	driver = Http01Driver(provisioner, poll_policy=FAST)
	session = FakeSession(["valid"])

	with pytest.raises(ProvisioningFailed):
		await driver.fulfill(session, ACCOUNT, "example.com", CHALLENGE)
	assert provisioner.removed == [("example.com", "tok_123", "tok_123.THUMB")]
	assert session.posts == []


@pytest.mark.asyncio
async def test_abort_cancels_at_poll_boundary():
	provisioner = FakeProvisioner()
	driver = Http01Driver(provisioner, poll_policy=FAST)
	abort = asyncio.Event()
	abort.set()

	with pytest.raises(Cancelled):
		await driver.fulfill(FakeSession(["pending"]), ACCOUNT, "example.com", CHALLENGE, abort=abort)
	assert len(provisioner.removed) == 1


def test_dns01_artifact():
	driver = Dns01Driver(FakeProvisioner())
	name, value = driver.artifact("*.example.com", "tok", "tok.THUMB")

	assert name == "_acme-challenge.example.com"
	assert value == b64url(sha256(b"tok.THUMB"))


def test_token_store_is_shared_between_instances(tmp_path):
	writer = Http01TokenStore(tmp_path)
	reader = Http01TokenStore(tmp_path)

	writer.put("tok_abc", "tok_abc.THUMB")
	assert reader.get("tok_abc") == "tok_abc.THUMB"

	writer.discard("tok_abc")
	assert reader.get("tok_abc") is None


def test_token_store_entries_expire(tmp_path):
	store = Http01TokenStore(tmp_path, ttl=-1)
	store.put("tok_old", "value")

	assert Http01TokenStore(tmp_path).get("tok_old") is None


@pytest.mark.asyncio
async def test_http01_provisioner_rejects_malformed_tokens(tmp_path):
	provisioner = Http01Provisioner(Http01TokenStore(tmp_path))
	with pytest.raises(ProvisioningFailed):
		await provisioner.publish("example.com", "../etc/passwd", "x")


@pytest.mark.asyncio
async def test_http01_self_check(tmp_path):
	def handler(request: httpx.Request) -> httpx.Response:
		assert request.url.path == "/.well-known/acme-challenge/tok_1"
		return httpx.Response(200, text="tok_1.THUMB\n")

	provisioner = Http01Provisioner(Http01TokenStore(tmp_path), transport=httpx.MockTransport(handler))
	assert await provisioner.verify("example.com", "tok_1", "tok_1.THUMB")
	assert not await provisioner.verify("example.com", "tok_1", "other")
