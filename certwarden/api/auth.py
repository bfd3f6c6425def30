#!/usr/bin/env python3
#
# certwarden/api/auth.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Bearer-token guard for the REST surface."""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..utils.config import Config
from ..utils.deps import get_config

_log = logging.getLogger(__name__)
_security = HTTPBearer(auto_error=False)


def _get_client_ip(request: Request) -> str:
	return request.client.host if request.client else "unknown"


def require_token(
	request: Request,
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_security),
	cfg: Config = Depends(get_config),
) -> None:
	"""FastAPI dependency enforcing ``CERTWARDEN_API_TOKEN`` (no-op when unset)."""
	expected = cfg.api_token
	if not expected:
		return
	supplied = credentials.credentials if credentials and credentials.credentials else ""
	# Constant-time comparison
	if not supplied or not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
		_log.info("AUTH_REJECTED ip=%s path=%s", _get_client_ip(request), request.url.path)
		raise HTTPException(
			status_code=401,
			detail="Invalid or missing API token",
			headers={"WWW-Authenticate": "Bearer"},
		)
