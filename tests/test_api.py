#!/usr/bin/env python3
#
# tests/test_api.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""REST surface, driven through FastAPI's TestClient."""

import sqlite3
from dataclasses import replace

import pytest
from cryptography.hazmat.primitives.serialization import pkcs12
from fastapi.testclient import TestClient

from certwarden import create_app
from certwarden.certs import service as service_mod
from certwarden.utils.rate_limit import limiter


@pytest.fixture(autouse=True)
def _no_rate_limits():
	limiter.enabled = False
	yield
	limiter.enabled = True


@pytest.fixture
def app(app_config):
	return create_app(app_config)


@pytest.fixture
def client(app):
	return TestClient(app)


def _self_signed(client, domain="app.example.com", **extra) -> dict:
	resp = client.post("/api/certificates/self-signed", json={"domainName": domain, **extra})
	assert resp.status_code == 201, resp.text
	return resp.json()["data"]


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------

def test_create_self_signed_and_fetch(client):
	cert = _self_signed(client, validityDays=90)

	assert cert["status"] == "ACTIVE"
	assert cert["certificate_type"] == "SELF_SIGNED"
	assert cert["subject_alt_names"] == ["app.example.com"]
	assert cert["days_until_expiry"] in (89, 90)
	for secret in ("private_key", "staged_private_key", "certificate_pem"):
		assert secret not in cert

	resp = client.get(f"/api/certificates/{cert['id']}")
	assert resp.status_code == 200
	assert resp.json()["data"]["domain_name"] == "app.example.com"


def test_duplicate_domain_conflicts(client):
	_self_signed(client)
	resp = client.post("/api/certificates/self-signed", json={"domainName": "APP.example.com"})

	assert resp.status_code == 409
	assert resp.json()["code"] == "DomainConflict"


def test_invalid_domain_is_rejected(client):
	resp = client.post("/api/certificates/self-signed", json={"domainName": "not a domain"})
	assert resp.status_code == 400
	assert resp.json() == {"status": "error", "code": "InvalidRequest", "detail": "Invalid domain name: 'not a domain'"}


def test_unknown_certificate_is_404(client):
	resp = client.get("/api/certificates/4242")
	assert resp.status_code == 404
	assert resp.json()["code"] == "CertificateNotFound"


def test_listing_statistics_and_domain_lookups(client):
	first = _self_signed(client, "a.example.com")
	_self_signed(client, "b.example.com")

	listing = client.get("/api/certificates", params={"size": 1}).json()["data"]
	assert listing["total"] == 2
	assert len(listing["items"]) == 1

	stats = client.get("/api/certificates/statistics").json()["data"]
	assert stats["total"] == 2
	assert stats["active"] == 2
	assert stats["by_type"]["SELF_SIGNED"] == 2

	check = client.get("/api/certificates/domain/a.example.com/check").json()["data"]
	assert check == {
		"domain": "a.example.com",
		"has_active_certificate": True,
		"certificate_id": first["id"],
		"status": "ACTIVE",
	}
	assert client.get("/api/certificates/domain/c.example.com/active").status_code == 404


def test_manual_renewal_and_logs(client):
	cert = _self_signed(client)

	resp = client.post(f"/api/certificates/{cert['id']}/renew")
	assert resp.status_code == 200
	assert resp.json()["data"]["outcome"] == "SUCCESS"

	logs = client.get(f"/api/certificates/{cert['id']}/renewal-logs").json()["data"]
	assert logs["total"] == 1
	assert logs["items"][0]["renewal_type"] == "MANUAL"
	assert logs["items"][0]["status"] == "SUCCESS"


def test_batch_renew_forces_listed_ids(client):
	cert = _self_signed(client)

	result = client.post("/api/certificates/batch/renew", json={"certificateIds": [cert["id"]]}).json()["data"]

	assert result["total"] == 1
	assert result["succeeded"] == 1
	assert result["items"][0]["certificate_id"] == cert["id"]


def test_delete_blocked_by_active_usage_unless_forced(client):
	cert = _self_signed(client)
	usage = client.post(f"/api/certificates/{cert['id']}/usage", json={"serviceName": "nginx"})
	assert usage.status_code == 201

	blocked = client.delete(f"/api/certificates/{cert['id']}")
	assert blocked.status_code == 409
	assert blocked.json()["code"] == "UsageConflict"
	assert "nginx" in blocked.json()["detail"]

	forced = client.delete(f"/api/certificates/{cert['id']}", params={"force": True})
	assert forced.status_code == 200
	assert forced.json()["data"] == {"certificate_id": cert["id"], "hard": False, "ended_usages": 1}

	usages = client.get(f"/api/certificates/{cert['id']}/usage").json()["data"]
	assert [u["is_active"] for u in usages] == [False]
	assert client.get(f"/api/certificates/{cert['id']}").json()["data"]["is_active"] is False
	# The domain is free again
	_self_signed(client)


def test_revoked_certificate_cannot_be_renewed(client):
	cert = _self_signed(client)

	revoked = client.post(f"/api/certificates/{cert['id']}/revoke", json={"reason": "superseded"})
	assert revoked.status_code == 200
	assert revoked.json()["data"]["status"] == "REVOKED"

	resp = client.post(f"/api/certificates/{cert['id']}/renew")
	assert resp.status_code == 409
	assert resp.json()["code"] == "InvalidStateTransition"


def test_monitoring_settings(client):
	cert = _self_signed(client, validityDays=20)

	status = client.get(f"/api/certificates/{cert['id']}/monitoring").json()["data"]
	assert status["classification"] == "WARNING"

	resp = client.patch(f"/api/certificates/{cert['id']}/monitoring", json={"warningDays": 10})
	assert resp.status_code == 200
	assert client.get(f"/api/certificates/{cert['id']}/monitoring").json()["data"]["classification"] == "OK"

	bad = client.patch(f"/api/certificates/{cert['id']}/monitoring", json={"criticalDays": 15})
	assert bad.status_code == 400


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def test_export_pem_bundle(client):
	cert = _self_signed(client)

	resp = client.get(f"/api/certificates/{cert['id']}/export", params={"format": "pem"})

	assert resp.status_code == 200
	assert resp.headers["content-type"].startswith("application/x-pem-file")
	assert 'filename="app.example.com.pem"' in resp.headers["content-disposition"]
	assert b"-----BEGIN CERTIFICATE-----" in resp.content
	assert b"PRIVATE KEY-----" in resp.content


def test_export_pfx_uses_header_password(client):
	cert = _self_signed(client)

	resp = client.get(
		f"/api/certificates/{cert['id']}/export",
		params={"format": "pfx"},
		headers={"X-Export-Password": "s3cret"},
	)

	assert resp.status_code == 200
	key, leaf, _ = pkcs12.load_key_and_certificates(resp.content, b"s3cret")
	assert key is not None
	assert leaf is not None


def test_export_unknown_format(client):
	cert = _self_signed(client)
	resp = client.get(f"/api/certificates/{cert['id']}/export", params={"format": "jks"})
	assert resp.status_code == 400
	assert resp.json()["code"] == "UnsupportedExportFormat"


# ---------------------------------------------------------------------------
# ACME requests and challenges
# ---------------------------------------------------------------------------

def test_wildcard_requires_dns01(client):
	resp = client.post(
		"/api/certificates/request/acme",
		json={"domainName": "*.example.com", "email": "ops@example.com", "challengeType": "http-01"},
	)
	assert resp.status_code == 400
	assert resp.json()["code"] == "UnsupportedChallenge"


def test_dns01_without_hook_is_unsupported(client):
	resp = client.post(
		"/api/certificates/request/acme",
		json={"domainName": "example.com", "email": "ops@example.com", "challengeType": "dns-01"},
	)
	assert resp.status_code == 400
	assert resp.json()["code"] == "UnsupportedChallenge"


def test_acme_request_payload_is_validated(client):
	resp = client.post(
		"/api/certificates/request/acme",
		json={"domainName": "example.com", "email": "not-an-email"},
	)
	assert resp.status_code == 422


def test_well_known_serves_published_token(client, app):
	app.state.http01_store.put("tok_abc", "tok_abc.THUMB")

	resp = client.get("/.well-known/acme-challenge/tok_abc")
	assert resp.status_code == 200
	assert resp.text == "tok_abc.THUMB"

	assert client.get("/.well-known/acme-challenge/unknown").status_code == 404
	assert client.get("/.well-known/acme-challenge/bad%20token").status_code == 404


def test_challenge_listing_is_empty_without_orders(client):
	resp = client.get("/api/certificates/acme/challenge", params={"domainName": "example.com"})
	assert resp.status_code == 200
	assert resp.json()["data"] == []


# ---------------------------------------------------------------------------
# Runtime configuration
# ---------------------------------------------------------------------------

def test_config_read_and_update(client):
	current = client.get("/api/config").json()["data"]
	assert current["batch_size"] == 10

	resp = client.patch("/api/config", json={"batch_size": 5, "admin_emails": ["ops@example.com"]})
	assert resp.status_code == 200
	assert resp.json()["data"]["batch_size"] == 5
	assert client.get("/api/config").json()["data"]["admin_emails"] == ["ops@example.com"]


@pytest.mark.parametrize(
	"changes",
	[
		{"critical_days": 40},
		{"batch_size": 0},
		{"no_such_key": True},
		{"admin_emails": ["nope"]},
	],
)
def test_config_rejects_invalid_updates(client, changes):
	resp = client.patch("/api/config", json=changes)
	assert resp.status_code == 400
	assert resp.json()["code"] == "InvalidRequest"
	assert client.get("/api/config").json()["data"]["batch_size"] == 10


# ---------------------------------------------------------------------------
# Auth, request IDs, lifespan
# ---------------------------------------------------------------------------

def test_api_token_is_enforced(app_config):
	client = TestClient(create_app(replace(app_config, api_token="t0ken")))

	assert client.get("/api/certificates").status_code == 401
	assert client.get("/api/certificates", headers={"Authorization": "Bearer wrong"}).status_code == 401
	assert client.get("/api/certificates", headers={"Authorization": "Bearer t0ken"}).status_code == 200
	# The ACME validator never authenticates
	assert client.get("/.well-known/acme-challenge/missing").status_code == 404


def test_request_id_is_echoed(client):
	resp = client.get("/api/config", headers={"X-Request-ID": "abc-123"})
	assert resp.headers["X-Request-ID"] == "abc-123"
	generated = client.get("/api/config", headers={"X-Request-ID": "bad id with spaces"})
	assert generated.headers["X-Request-ID"] != "bad id with spaces"


def test_lifespan_starts_periodic_jobs_on_leader(app):
	with TestClient(app) as client:
		status = client.get("/api/scheduler/status").json()["data"]

	assert status["leader"] is True
	assert {job["name"] for job in status["jobs"]} == {
		"certificate-renewal",
		"certificate-monitoring",
		"leader-heartbeat",
	}
	assert status["renewal"]["enabled"] is True


def test_failed_delete_leaves_usages_active(app, monkeypatch):
	client = TestClient(app, raise_server_exceptions=False)
	cert = _self_signed(client)
	client.post(f"/api/certificates/{cert['id']}/usage", json={"serviceName": "nginx"})

	def _broken_update(*args, **kwargs):
		raise sqlite3.OperationalError("disk I/O error")

	original = service_mod.update_certificate
	monkeypatch.setattr(service_mod, "update_certificate", _broken_update)
	resp = client.delete(f"/api/certificates/{cert['id']}", params={"force": True})
	assert resp.status_code == 500
	monkeypatch.setattr(service_mod, "update_certificate", original)

	usages = client.get(f"/api/certificates/{cert['id']}/usage").json()["data"]
	assert [u["is_active"] for u in usages] == [True]
	assert client.get(f"/api/certificates/{cert['id']}").json()["data"]["is_active"] is True
