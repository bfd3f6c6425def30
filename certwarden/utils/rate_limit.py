#!/usr/bin/env python3
#
# certwarden/utils/rate_limit.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Rate limiting configuration using slowapi."""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

# Rate limit presets
RATE_LIMIT_DEFAULT = "60/minute"
RATE_LIMIT_ISSUE = "5/minute"      # New ACME orders (CA-side rate limits are strict)
RATE_LIMIT_HEAVY = "10/minute"     # Renewals, batch passes, exports
RATE_LIMIT_API = "120/minute"      # General API operations

limiter = Limiter(key_func=get_remote_address)

__all__ = [
	"RATE_LIMIT_API",
	"RATE_LIMIT_DEFAULT",
	"RATE_LIMIT_HEAVY",
	"RATE_LIMIT_ISSUE",
	"limiter",
]
