#!/usr/bin/env python3
#
# certwarden/utils/deps.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI dependency helpers."""

from __future__ import annotations

from fastapi import Request


def get_config(request: Request):
	"""Get the process configuration from app state."""
	return request.app.state.cfg


def get_service(request: Request):
	"""Get the certificate service wired in create_app()."""
	return request.app.state.service


def get_config_manager(request: Request):
	"""Get the runtime configuration manager."""
	return request.app.state.config_manager
