#!/usr/bin/env python3
#
# certwarden/api/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate lifecycle API routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from ..certs.service import CertificateService
from ..models.certificates import (
	AcmeCertificateRequest,
	AutoRenewUpdate,
	BatchRenewRequest,
	CertificateUpload,
	MonitoringUpdate,
	RenewRequest,
	RevokeRequest,
	SelfSignedRequest,
	StagedUpload,
	UsageCreate,
)
from ..utils.deps import get_service
from ..utils.rate_limit import RATE_LIMIT_API, RATE_LIMIT_HEAVY, RATE_LIMIT_ISSUE, limiter
from .response import ok_response

_log = logging.getLogger(__name__)

router = APIRouter(tags=["certificates"])

__all__ = ["router"]


# ---------------------------------------------------------------------------
# Collection-level routes (registered before /certificates/{cert_id})
# ---------------------------------------------------------------------------

@router.get("/certificates")
def list_certificates(
	page: int = Query(1, ge=1),
	size: int = Query(20, ge=1, le=200),
	status: Optional[str] = None,
	include_inactive: bool = False,
	service: CertificateService = Depends(get_service),
):
	"""List certificates (paginated, newest first)."""
	return ok_response(data=service.list_certificates(
		page=page, page_size=size, status=status, include_inactive=include_inactive,
	))


@router.get("/certificates/statistics")
def certificate_statistics(service: CertificateService = Depends(get_service)):
	return ok_response(data=service.statistics())


@router.get("/certificates/renewal/needed")
def renewal_needed(service: CertificateService = Depends(get_service)):
	"""Certificates the next automatic pass would renew."""
	return ok_response(data=service.renewal_needed())


@router.get("/certificates/expiring")
def expiring_certificates(
	days: int = Query(30, ge=0, le=3650),
	service: CertificateService = Depends(get_service),
):
	return ok_response(data=service.expiring(days))


@router.get("/certificates/domain/{domain}")
def certificates_by_domain(domain: str, service: CertificateService = Depends(get_service)):
	return ok_response(data=service.by_domain(domain))


@router.get("/certificates/domain/{domain}/active")
def active_certificate_by_domain(domain: str, service: CertificateService = Depends(get_service)):
	return ok_response(data=service.active_by_domain(domain))


@router.get("/certificates/domain/{domain}/check")
def check_domain(domain: str, service: CertificateService = Depends(get_service)):
	return ok_response(data=service.check_domain(domain))


@router.post("/certificates/request/acme", status_code=202)
@limiter.limit(RATE_LIMIT_ISSUE)
async def request_acme_certificate(
	request: Request,
	payload: AcmeCertificateRequest,
	service: CertificateService = Depends(get_service),
):
	"""Create a PENDING certificate; issuance continues in the background."""
	cert = await service.request_acme(
		payload.domain,
		payload.email,
		payload.challenge_type,
		certificate_type=payload.certificate_type,
		certificate_name=payload.certificate_name,
		auto_renew=payload.auto_renew,
		renewal_days_before=payload.renewal_days_before,
	)
	return ok_response(message="Certificate issuance started", data=cert)


@router.post("/certificates/upload", status_code=201)
@limiter.limit(RATE_LIMIT_API)
def upload_certificate(
	request: Request,
	payload: CertificateUpload,
	service: CertificateService = Depends(get_service),
):
	cert = service.upload(
		payload.domain,
		payload.certificate_pem,
		payload.private_key_pem,
		payload.chain_pem,
		certificate_name=payload.certificate_name,
	)
	return ok_response(message="Certificate uploaded", data=cert)


@router.post("/certificates/self-signed", status_code=201)
@limiter.limit(RATE_LIMIT_HEAVY)
async def create_self_signed(
	request: Request,
	payload: SelfSignedRequest,
	service: CertificateService = Depends(get_service),
):
	cert = await service.create_self_signed(
		payload.domain,
		certificate_name=payload.certificate_name,
		validity_days=payload.validity_days,
		auto_renew=payload.auto_renew,
	)
	return ok_response(message="Self-signed certificate created", data=cert)


@router.post("/certificates/batch/renew")
@limiter.limit(RATE_LIMIT_HEAVY)
async def batch_renew(
	request: Request,
	payload: Optional[BatchRenewRequest] = None,
	service: CertificateService = Depends(get_service),
):
	"""Run a manual batch pass (listed ids are forced in)."""
	result = await service.batch_renew(payload.certificate_ids if payload else None)
	return ok_response(data=result.to_dict())


@router.delete("/certificates/usage/{usage_id}")
def end_usage(usage_id: int, service: CertificateService = Depends(get_service)):
	return ok_response(message="Usage ended", data=service.end_usage(usage_id))


@router.get("/alerts")
def recent_alerts(
	limit: int = Query(50, ge=1, le=200),
	service: CertificateService = Depends(get_service),
):
	return ok_response(data=service.alerts(limit))


# ---------------------------------------------------------------------------
# Single certificate
# ---------------------------------------------------------------------------

@router.get("/certificates/{cert_id}")
def get_certificate(cert_id: int, service: CertificateService = Depends(get_service)):
	return ok_response(data=service.get(cert_id))


@router.delete("/certificates/{cert_id}")
def delete_certificate(
	cert_id: int,
	hard: bool = False,
	force: bool = False,
	service: CertificateService = Depends(get_service),
):
	"""Soft delete (deactivate) or hard delete; active usages need ``force``."""
	return ok_response(message="Certificate deleted", data=service.delete(cert_id, hard=hard, force=force))


@router.post("/certificates/{cert_id}/renew")
@limiter.limit(RATE_LIMIT_HEAVY)
async def renew_certificate(
	request: Request,
	cert_id: int,
	payload: Optional[RenewRequest] = None,
	service: CertificateService = Depends(get_service),
):
	result = await service.renew(cert_id, force=bool(payload and payload.force))
	return ok_response(message="Certificate renewed", data=result.to_dict())


@router.post("/certificates/{cert_id}/upload")
@limiter.limit(RATE_LIMIT_API)
def stage_upload(
	request: Request,
	cert_id: int,
	payload: StagedUpload,
	service: CertificateService = Depends(get_service),
):
	"""Stage replacement material; the next renewal of this certificate uses it."""
	cert = service.stage_upload(cert_id, payload.certificate_pem, payload.private_key_pem, payload.chain_pem)
	return ok_response(message="Replacement material staged", data=cert)


@router.post("/certificates/{cert_id}/revoke")
@limiter.limit(RATE_LIMIT_HEAVY)
async def revoke_certificate(
	request: Request,
	cert_id: int,
	payload: Optional[RevokeRequest] = None,
	service: CertificateService = Depends(get_service),
):
	payload = payload or RevokeRequest()
	cert = await service.revoke(cert_id, reason=payload.reason, local_only=payload.local_only)
	return ok_response(message="Certificate revoked", data=cert)


@router.patch("/certificates/{cert_id}/auto-renew")
def update_auto_renew(
	cert_id: int,
	payload: AutoRenewUpdate,
	service: CertificateService = Depends(get_service),
):
	return ok_response(data=service.set_auto_renew(cert_id, payload.enabled, payload.renewal_days_before))


@router.get("/certificates/{cert_id}/monitoring")
def get_monitoring(cert_id: int, service: CertificateService = Depends(get_service)):
	return ok_response(data=service.monitoring_status(cert_id))


@router.patch("/certificates/{cert_id}/monitoring")
def update_monitoring(
	cert_id: int,
	payload: MonitoringUpdate,
	service: CertificateService = Depends(get_service),
):
	cert = service.set_monitoring(
		cert_id,
		enabled=payload.enabled,
		warning_days=payload.warning_days,
		critical_days=payload.critical_days,
	)
	return ok_response(data=cert)


@router.post("/certificates/{cert_id}/check")
def check_certificate(cert_id: int, service: CertificateService = Depends(get_service)):
	"""Re-evaluate expiry now (may transition status and raise alerts)."""
	return ok_response(data=service.check(cert_id))


@router.get("/certificates/{cert_id}/renewal-logs")
def renewal_logs(
	cert_id: int,
	page: int = Query(1, ge=1),
	size: int = Query(10, ge=1, le=100),
	service: CertificateService = Depends(get_service),
):
	return ok_response(data=service.renewal_logs(cert_id, page=page, page_size=size))


@router.get("/certificates/{cert_id}/usage")
def list_usages(
	cert_id: int,
	active_only: bool = False,
	service: CertificateService = Depends(get_service),
):
	return ok_response(data=service.usages(cert_id, active_only=active_only))


@router.post("/certificates/{cert_id}/usage", status_code=201)
def add_usage(
	cert_id: int,
	payload: UsageCreate,
	service: CertificateService = Depends(get_service),
):
	return ok_response(data=service.add_usage(cert_id, payload.service_name, payload.service_config_path))


@router.get("/certificates/{cert_id}/export")
@limiter.limit(RATE_LIMIT_HEAVY)
def export_certificate(
	request: Request,
	cert_id: int,
	format: str = Query("pem", max_length=8),
	x_export_password: Optional[str] = Header(None),
	service: CertificateService = Depends(get_service),
):
	"""Download certificate material (``pem`` bundle or ``pfx``)."""
	body, media_type, filename = service.export(cert_id, format, x_export_password)
	return Response(
		content=body,
		media_type=media_type,
		headers={"Content-Disposition": f'attachment; filename="{filename}"'},
	)
