#!/usr/bin/env python3
#
# certwarden/api/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Runtime configuration and scheduler status routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Request

from ..certs.runtime_config import ConfigManager
from ..certs.service import CertificateService
from ..utils.deps import get_config_manager, get_service
from .response import ok_response

router = APIRouter(tags=["config"])

__all__ = ["router"]


@router.get("/config")
def get_runtime_config(manager: ConfigManager = Depends(get_config_manager)):
	return ok_response(data=manager.current.model_dump(mode="json"))


@router.patch("/config")
def update_runtime_config(
	changes: dict[str, Any] = Body(...),
	manager: ConfigManager = Depends(get_config_manager),
):
	"""Apply a partial update; unknown keys or invalid values are rejected as a whole."""
	new = manager.update(changes)
	return ok_response(message="Configuration updated", data=new.model_dump(mode="json"))


@router.get("/scheduler/status")
def scheduler_status(
	request: Request,
	service: CertificateService = Depends(get_service),
):
	periodic = request.app.state.scheduler
	return ok_response(data={
		"renewal": service.scheduler.status(),
		"jobs": periodic.get_status() if periodic is not None else [],
		"leader": bool(getattr(request.app.state, "is_leader", False)),
	})
