#!/usr/bin/env python3
#
# certwarden/certs/material.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""X.509 helpers: parsing, key checks, CSR/self-signed generation and export.

Only what the lifecycle needs is read from a certificate: validity window,
issuer, serial and the names it covers.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from ..errors import InvalidRequest, UnsupportedExportFormat
from ..utils.time import utcnow

_log = logging.getLogger(__name__)

_PEM_BEGIN = "-----BEGIN CERTIFICATE-----"
_PEM_END = "-----END CERTIFICATE-----"

DOMAIN_KEY_SIZE = 2048
EXPORT_FORMATS = ("pem", "pfx")


@dataclass
class CertificateMaterial:
	"""Parsed leaf certificate plus the PEM blobs it came with."""
	certificate_pem: str
	chain_pem: str
	private_key_pem: str | None
	issuer: str
	serial_number: str
	issued_at: datetime
	expires_at: datetime
	common_name: str | None
	subject_alt_names: list[str] = field(default_factory=list)

	@property
	def names(self) -> list[str]:
		names = list(self.subject_alt_names)
		if self.common_name and self.common_name not in names:
			names.append(self.common_name)
		return names


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def split_pem_chain(pem: str) -> list[str]:
	"""Split a PEM bundle into individual certificate blocks (leaf first)."""
	blocks: list[str] = []
	rest = pem or ""
	while _PEM_BEGIN in rest:
		start = rest.find(_PEM_BEGIN)
		end = rest.find(_PEM_END, start)
		if end == -1:
			break
		end += len(_PEM_END)
		blocks.append(rest[start:end] + "\n")
		rest = rest[end:]
	return blocks


def _name_attr(name: x509.Name, oid: x509.ObjectIdentifier) -> str | None:
	attrs = name.get_attributes_for_oid(oid)
	return str(attrs[0].value) if attrs else None


def _describe_issuer(cert: x509.Certificate) -> str:
	cn = _name_attr(cert.issuer, NameOID.COMMON_NAME)
	org = _name_attr(cert.issuer, NameOID.ORGANIZATION_NAME)
	if cn and org:
		return f"{org} ({cn})"
	return cn or org or cert.issuer.rfc4514_string() or "Unknown"


def _subject_alt_names(cert: x509.Certificate) -> list[str]:
	try:
		ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
	except x509.ExtensionNotFound:
		return []
	return [name.lower() for name in ext.value.get_values_for_type(x509.DNSName)]


def load_private_key(key_pem: str):
	try:
		return serialization.load_pem_private_key(key_pem.encode("utf-8"), password=None)
	except (ValueError, TypeError) as exc:
		raise InvalidRequest("Private key is not a valid unencrypted PEM key") from exc


def _public_key_der(public_key) -> bytes:
	return public_key.public_bytes(
		serialization.Encoding.DER,
		serialization.PublicFormat.SubjectPublicKeyInfo,
	)


def parse_material(
	certificate_pem: str,
	private_key_pem: str | None = None,
	chain_pem: str | None = None,
) -> CertificateMaterial:
	"""Parse a leaf (optionally bundled with its chain) and verify the key.

	Raises:
		InvalidRequest: unparseable PEM, or a key that does not belong to the leaf.
	"""
	blocks = split_pem_chain(certificate_pem)
	if not blocks:
		raise InvalidRequest("No PEM certificate found")
	try:
		cert = x509.load_pem_x509_certificate(blocks[0].encode("ascii"))
	except ValueError as exc:
		raise InvalidRequest("Certificate PEM could not be parsed") from exc

	chain_blocks = blocks[1:] + split_pem_chain(chain_pem or "")

	if private_key_pem:
		key = load_private_key(private_key_pem)
		if _public_key_der(key.public_key()) != _public_key_der(cert.public_key()):
			raise InvalidRequest("Private key does not match certificate")

	return CertificateMaterial(
		certificate_pem=blocks[0],
		chain_pem="".join(chain_blocks),
		private_key_pem=private_key_pem,
		issuer=_describe_issuer(cert),
		serial_number=format(cert.serial_number, "x"),
		issued_at=cert.not_valid_before_utc,
		expires_at=cert.not_valid_after_utc,
		common_name=(_name_attr(cert.subject, NameOID.COMMON_NAME) or "").lower() or None,
		subject_alt_names=_subject_alt_names(cert),
	)


def matches_domain(names: list[str], domain: str) -> bool:
	"""True when *domain* is covered by one of *names* (single-label wildcards)."""
	domain = domain.lower().rstrip(".")
	for name in names:
		name = name.lower().rstrip(".")
		if name == domain:
			return True
		if name.startswith("*."):
			suffix = name[1:]
			head = domain[: -len(suffix)] if domain.endswith(suffix) else ""
			if head and "." not in head:
				return True
	return False


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def generate_private_key() -> rsa.RSAPrivateKey:
	return rsa.generate_private_key(public_exponent=65537, key_size=DOMAIN_KEY_SIZE)


def private_key_to_pem(key) -> str:
	return key.private_bytes(
		encoding=serialization.Encoding.PEM,
		format=serialization.PrivateFormat.PKCS8,
		encryption_algorithm=serialization.NoEncryption(),
	).decode("ascii")


def _san_entry(domain: str) -> x509.GeneralName:
	try:
		return x509.IPAddress(ipaddress.ip_address(domain))
	except ValueError:
		return x509.DNSName(domain)


def build_csr(domain: str, key) -> bytes:
	"""DER-encoded CSR with the domain as CN and SAN (required by ACME CAs)."""
	csr = (
		x509.CertificateSigningRequestBuilder()
		.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
		.add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
		.sign(key, hashes.SHA256())
	)
	return csr.public_bytes(serialization.Encoding.DER)


def generate_self_signed(
	domain: str,
	validity_days: int,
	*,
	now: datetime | None = None,
) -> CertificateMaterial:
	"""Create a fresh key and a self-signed certificate valid for *validity_days*."""
	now = now or utcnow()
	key = generate_private_key()
	name = x509.Name([
		x509.NameAttribute(NameOID.COMMON_NAME, domain),
		x509.NameAttribute(NameOID.ORGANIZATION_NAME, "CertWarden self-signed"),
	])
	cert = (
		x509.CertificateBuilder()
		.subject_name(name)
		.issuer_name(name)
		.public_key(key.public_key())
		.serial_number(x509.random_serial_number())
		.not_valid_before(now - timedelta(minutes=5))
		.not_valid_after(now + timedelta(days=validity_days))
		.add_extension(x509.SubjectAlternativeName([_san_entry(domain)]), critical=False)
		.add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
		.sign(key, hashes.SHA256())
	)
	cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
	return parse_material(cert_pem, private_key_to_pem(key))


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def export_pem(material: CertificateMaterial, *, include_key: bool = True) -> bytes:
	"""Leaf, chain and (optionally) key concatenated as one PEM bundle."""
	parts = [material.certificate_pem, material.chain_pem]
	if include_key and material.private_key_pem:
		parts.append(material.private_key_pem)
	return "".join(p if p.endswith("\n") else p + "\n" for p in parts if p).encode("ascii")


def export_pkcs12(
	friendly_name: str,
	material: CertificateMaterial,
	password: str | None = None,
) -> bytes:
	"""PKCS#12 (.pfx) container with key, leaf and chain."""
	if not material.private_key_pem:
		raise InvalidRequest("Certificate has no private key to export")
	key = load_private_key(material.private_key_pem)
	cert = x509.load_pem_x509_certificate(material.certificate_pem.encode("ascii"))
	cas = [x509.load_pem_x509_certificate(b.encode("ascii")) for b in split_pem_chain(material.chain_pem)]
	if password:
		encryption = serialization.BestAvailableEncryption(password.encode("utf-8"))
	else:
		encryption = serialization.NoEncryption()
	return pkcs12.serialize_key_and_certificates(
		friendly_name.encode("utf-8"),
		key,
		cert,
		cas or None,
		encryption,
	)


def export_material(
	fmt: str,
	friendly_name: str,
	material: CertificateMaterial,
	password: str | None = None,
) -> tuple[bytes, str, str]:
	"""Return (body, media type, file extension) for an export format."""
	fmt = (fmt or "").lower()
	if fmt == "pem":
		return export_pem(material), "application/x-pem-file", "pem"
	if fmt == "pfx":
		return export_pkcs12(friendly_name, material, password), "application/x-pkcs12", "pfx"
	raise UnsupportedExportFormat(f"Export format {fmt!r} is not supported (use one of: {', '.join(EXPORT_FORMATS)})")
