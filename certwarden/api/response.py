#!/usr/bin/env python3
#
# certwarden/api/response.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Common API response helpers."""

from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse

from ..errors import CertWardenError, RateLimited


def ok_response(
	*,
	message: str | None = None,
	data: Any = None,
	**extra: Any,
) -> dict[str, Any]:
	"""Build a normalized success response with a stable ``status`` field."""
	payload: dict[str, Any] = {"status": "ok"}
	if message is not None:
		payload["message"] = message
	if data is not None:
		payload["data"] = data
	if extra:
		payload.update(extra)
	return payload


def error_response(exc: CertWardenError) -> JSONResponse:
	"""Render a lifecycle error as ``{"status": "error", "code", "detail"}``."""
	headers = {}
	if isinstance(exc, RateLimited):
		headers["Retry-After"] = str(exc.retry_after)
	return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers or None)
