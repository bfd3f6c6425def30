#!/usr/bin/env python3
#
# certwarden/utils/vault.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Private keys at rest: Fernet tokens keyed by PBKDF2(secret key, per-value salt).

Stored form is ``pkv1:<salt hex>:<fernet token>``. The secret key never
touches the database, so a dump of ``certificates`` does not leak keys.
"""

from __future__ import annotations

import base64
import logging
import secrets

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

_log = logging.getLogger(__name__)

_PREFIX = "pkv1:"
_SALT_BYTES = 16
_ITERATIONS = 480_000


def _fernet(secret_key: str, salt: bytes) -> Fernet:
	if not secret_key:
		raise ValueError("No secret key configured for private key encryption")
	kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=_ITERATIONS)
	return Fernet(base64.urlsafe_b64encode(kdf.derive(secret_key.encode("utf-8"))))


def is_encrypted(value: str | None) -> bool:
	return bool(value) and value.startswith(_PREFIX)


def encrypt(plaintext: str, secret_key: str) -> str:
	salt = secrets.token_bytes(_SALT_BYTES)
	token = _fernet(secret_key, salt).encrypt(plaintext.encode("utf-8"))
	return f"{_PREFIX}{salt.hex()}:{token.decode('ascii')}"


def decrypt(stored: str, secret_key: str) -> str:
	"""Reverse :func:`encrypt`.

	Raises ValueError for plaintext input, a malformed value, or a secret key
	that does not match the one used to encrypt.
	"""
	if not is_encrypted(stored):
		raise ValueError("Value is not an encrypted private key")
	salt_hex, _, token = stored[len(_PREFIX):].partition(":")
	try:
		salt = bytes.fromhex(salt_hex)
		if len(salt) != _SALT_BYTES or not token:
			raise ValueError("malformed")
		return _fernet(secret_key, salt).decrypt(token.encode("ascii")).decode("utf-8")
	except (InvalidToken, ValueError) as exc:
		_log.error("VAULT_DECRYPT_FAILED")
		raise ValueError("Cannot decrypt private key (wrong CERTWARDEN_SECRET_KEY?)") from exc
