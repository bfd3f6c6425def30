#!/usr/bin/env python3
#
# certwarden/acme/provisioners.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Challenge provisioning capabilities.

A provisioner makes a challenge artifact discoverable by the ACME validator:
an HTTP-01 token served under ``/.well-known/acme-challenge/`` or a DNS-01
TXT record. Drivers only talk to the :class:`ChallengeProvisioner` protocol.
"""

from __future__ import annotations

import asyncio
import fcntl
import json
import logging
import re
import time
from pathlib import Path
from typing import Optional, Protocol

import httpx

from ..errors import ProvisioningFailed

_log = logging.getLogger(__name__)

# Challenge TTL in seconds (10 minutes)
CHALLENGE_TTL = 600
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_\-]+$")
_HOOK_TIMEOUT_SECONDS = 60.0


class ChallengeProvisioner(Protocol):
	async def publish(self, domain: str, name: str, value: str) -> None: ...

	async def remove(self, domain: str, name: str, value: str) -> None: ...

	async def verify(self, domain: str, name: str, value: str) -> bool: ...


def is_valid_token(token: str) -> bool:
	return bool(_TOKEN_RE.match(token or ""))


# ---------------------------------------------------------------------------
# HTTP-01: token store served by the well-known route
# ---------------------------------------------------------------------------

class Http01TokenStore:
	"""Key authorizations for pending HTTP-01 challenges.

	Entries live in memory (fast path) and in a locked JSON file so any
	worker process can answer the validator's request.
	"""

	def __init__(self, state_dir: Path, *, ttl: float = CHALLENGE_TTL) -> None:
		state_dir.mkdir(parents=True, exist_ok=True)
		self._file = state_dir / ".challenges.json"
		self._ttl = ttl
		self._pending: dict[str, str] = {}

	def _mutate(self, token: str, key_auth: Optional[str]) -> None:
		"""Add (key_auth set) or drop a token under an exclusive file lock."""
		self._file.touch(exist_ok=True)
		with open(self._file, "r+", encoding="utf-8") as f:
			fcntl.flock(f.fileno(), fcntl.LOCK_EX)
			content = f.read()
			try:
				entries = json.loads(content) if content else {}
			except json.JSONDecodeError:
				_log.warning("ACME challenge store corrupt, resetting")
				entries = {}
			now = time.time()
			entries = {
				t: e for t, e in entries.items()
				if isinstance(e, dict) and e.get("expires", 0) > now
			}
			if key_auth is None:
				entries.pop(token, None)
			else:
				entries[token] = {"key_auth": key_auth, "expires": now + self._ttl}
			f.seek(0)
			f.truncate()
			f.write(json.dumps(entries))
			f.flush()

	def put(self, token: str, key_auth: str) -> None:
		self._pending[token] = key_auth
		self._mutate(token, key_auth)

	def discard(self, token: str) -> None:
		self._pending.pop(token, None)
		self._mutate(token, None)

	def get(self, token: str) -> Optional[str]:
		if token in self._pending:
			return self._pending[token]
		if not self._file.exists():
			return None
		try:
			entries = json.loads(self._file.read_text(encoding="utf-8") or "{}")
		except (OSError, json.JSONDecodeError):
			return None
		entry = entries.get(token)
		if isinstance(entry, dict) and entry.get("expires", 0) > time.time():
			return entry.get("key_auth")
		return None


class Http01Provisioner:
	"""Publishes HTTP-01 tokens into the token store served by this app."""

	def __init__(self, store: Http01TokenStore, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
		self.store = store
		self._transport = transport

	async def publish(self, domain: str, name: str, value: str) -> None:
		if not is_valid_token(name):
			raise ProvisioningFailed(f"Refusing to publish malformed token for {domain}")
		try:
			await asyncio.to_thread(self.store.put, name, value)
		except OSError as exc:
			raise ProvisioningFailed(f"Cannot store HTTP-01 token for {domain}: {exc}") from exc

	async def remove(self, domain: str, name: str, value: str) -> None:
		await asyncio.to_thread(self.store.discard, name)

	async def verify(self, domain: str, name: str, value: str) -> bool:
		"""Fetch the token over plain HTTP the way the validator will."""
		url = f"http://{domain}/.well-known/acme-challenge/{name}"
		try:
			async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
				resp = await client.get(url)
		except httpx.HTTPError as exc:
			_log.info("ACME_SELF_CHECK domain=%s type=http-01 unreachable: %s", domain, exc)
			return False
		return resp.status_code == 200 and resp.text.strip() == value


# ---------------------------------------------------------------------------
# DNS-01: external hook executable
# ---------------------------------------------------------------------------

class CommandDnsProvisioner:
	"""Manages ``_acme-challenge`` TXT records through an operator-supplied hook.

	The hook is invoked as ``<hook> add|remove|check <record-name> <value>``
	and must exit 0 on success. ``propagation_delay`` seconds are waited after
	a successful add so secondaries can pick the record up.
	"""

	def __init__(self, hook: str, *, propagation_delay: float = 30.0, timeout: float = _HOOK_TIMEOUT_SECONDS) -> None:
		self.hook = hook
		self.propagation_delay = propagation_delay
		self.timeout = timeout

	async def _run(self, action: str, name: str, value: str) -> tuple[int, str]:
		try:
			proc = await asyncio.create_subprocess_exec(
				self.hook, action, name, value,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
			)
		except OSError as exc:
			return -1, str(exc)
		try:
			_, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
		except asyncio.TimeoutError:
			if proc.returncode is None:
				proc.kill()
				await proc.communicate()
			return -1, f"hook timed out after {self.timeout:.0f}s"
		return proc.returncode or 0, (stderr or b"").decode("utf-8", errors="replace").strip()

	async def publish(self, domain: str, name: str, value: str) -> None:
		code, err = await self._run("add", name, value)
		if code != 0:
			raise ProvisioningFailed(f"DNS hook failed to add {name}: {err or f'exit {code}'}")
		if self.propagation_delay > 0:
			await asyncio.sleep(self.propagation_delay)

	async def remove(self, domain: str, name: str, value: str) -> None:
		code, err = await self._run("remove", name, value)
		if code != 0:
			raise ProvisioningFailed(f"DNS hook failed to remove {name}: {err or f'exit {code}'}")

	async def verify(self, domain: str, name: str, value: str) -> bool:
		code, _ = await self._run("check", name, value)
		return code == 0
