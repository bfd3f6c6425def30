#!/usr/bin/env python3
#
# certwarden/acme/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME v2 client: order flow, challenge drivers and provisioning capabilities."""

from .challenges import AcmeChallenge, ChallengeDriver, ChallengeRegistry, ChallengeStatus, Dns01Driver, Http01Driver
from .client import AccountStore, AcmeAccount, AcmeOrderClient, IssuedCertificate
from .protocol import PollPolicy
from .provisioners import ChallengeProvisioner, CommandDnsProvisioner, Http01Provisioner, Http01TokenStore

__all__ = [
	"AccountStore",
	"AcmeAccount",
	"AcmeChallenge",
	"AcmeOrderClient",
	"ChallengeDriver",
	"ChallengeProvisioner",
	"ChallengeRegistry",
	"ChallengeStatus",
	"CommandDnsProvisioner",
	"Dns01Driver",
	"Http01Driver",
	"Http01Provisioner",
	"Http01TokenStore",
	"IssuedCertificate",
	"PollPolicy",
]
