#!/usr/bin/env python3
#
# main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

# CertWarden development server.
# Production runs ``uvicorn certwarden:create_app --factory`` behind a proxy.
#

import os

import uvicorn


def _port() -> int:
	raw = os.environ.get("CERTWARDEN_PORT", "8000")
	try:
		return int(raw)
	except ValueError:
		print(f"Ignoring invalid CERTWARDEN_PORT={raw!r}, using 8000")
		return 8000


if __name__ == "__main__":
	uvicorn.run(
		"certwarden:create_app",
		factory=True,
		host=os.environ.get("CERTWARDEN_HOST", "0.0.0.0"),
		port=_port(),
		reload=os.environ.get("CERTWARDEN_DEV_RELOAD", "").strip().lower() in ("1", "true", "yes"),
		# create_app installs the handlers uvicorn logs through
		log_config=None,
	)
