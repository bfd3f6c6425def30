#!/usr/bin/env python3
#
# certwarden/api/acme.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME challenge routes: the HTTP-01 responder and challenge diagnostics."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from ..acme.provisioners import is_valid_token
from ..certs.service import CertificateService
from ..models.certificates import ChallengeVerifyRequest
from ..utils.deps import get_service
from ..utils.rate_limit import RATE_LIMIT_API, limiter
from .response import ok_response

_log = logging.getLogger(__name__)

# Public: the ACME validator fetches tokens without credentials
well_known_router = APIRouter(tags=["acme"])
router = APIRouter(tags=["acme"])

__all__ = ["router", "well_known_router"]


@well_known_router.get("/.well-known/acme-challenge/{token}", response_class=PlainTextResponse)
def acme_challenge_response(token: str, request: Request):
	"""Serve the key authorization for a pending HTTP-01 challenge."""
	if not is_valid_token(token):
		raise HTTPException(status_code=404, detail="Not found")
	store = request.app.state.http01_store
	key_auth = store.get(token) if store is not None else None
	if key_auth is None:
		_log.debug("ACME_CHALLENGE_MISS token=%s...", token[:8])
		raise HTTPException(status_code=404, detail="Not found")
	return key_auth


@router.get("/certificates/acme/challenge")
def get_challenges(
	domain: str = Query(..., alias="domainName", min_length=1, max_length=253),
	challenge_type: Optional[str] = Query(None, alias="challengeType"),
	service: CertificateService = Depends(get_service),
):
	"""In-flight challenges for a domain (diagnostics)."""
	return ok_response(data=service.challenges(domain, challenge_type))


@router.post("/certificates/acme/verify")
@limiter.limit(RATE_LIMIT_API)
async def verify_challenge(
	request: Request,
	payload: ChallengeVerifyRequest,
	service: CertificateService = Depends(get_service),
):
	"""Check that an in-flight challenge artifact is publicly visible."""
	result = await service.verify_challenge(payload.domain, payload.challenge_type, payload.token)
	return ok_response(data=result)
