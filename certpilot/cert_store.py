# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""On-disk certificate storage.

Layout: ``<root>/<domain>/cert.pem``, ``privkey.pem`` and ``chain.pem``.
The three files are staged under temporary names and renamed into place
together; a failed save leaves the previous set untouched.
"""
from datetime import datetime, timezone
from typing import List, Set, Tuple
import logging
import os
import re
import tempfile

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .errors import CertificateNotFound, PersistenceFailed
from .models import CertificateBundle, StoredPaths

log = logging.getLogger(__name__)

CERT_FILE = "cert.pem"
KEY_FILE = "privkey.pem"
CHAIN_FILE = "chain.pem"

DOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?)+$")


def validate_domain(domain: str) -> str:
    """Normalize ``domain`` and reject anything that is not a plain hostname."""
    name = (domain or "").strip().rstrip(".").lower()
    if len(name) > 253 or not DOMAIN_RE.match(name):
        raise ValueError(f"Invalid domain name: {domain!r}")
    return name


def split_fullchain(fullchain_pem: bytes) -> Tuple[bytes, bytes]:
    """Split a PEM bundle into (leaf, intermediates).

    When the bundle holds only the leaf, the leaf doubles as the chain so
    that chain.pem is never empty.
    """
    certs = x509.load_pem_x509_certificates(fullchain_pem)
    leaf = certs[0].public_bytes(serialization.Encoding.PEM)
    rest = b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certs[1:])
    return leaf, rest or leaf


def not_valid_after(cert: x509.Certificate) -> datetime:
    value = getattr(cert, "not_valid_after_utc", None)
    if value is None:
        value = cert.not_valid_after
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def days_until_expiry(pem_data: bytes) -> int:
    cert = x509.load_pem_x509_certificate(pem_data)
    delta = not_valid_after(cert) - datetime.now(timezone.utc)
    return delta.days


def certificate_names(pem_data: bytes) -> Set[str]:
    cert = x509.load_pem_x509_certificate(pem_data)
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return set()
    return set(san.value.get_values_for_type(x509.DNSName))


def _stage(directory: str, data: bytes, mode: int) -> str:
    """Write ``data`` to a temporary file in ``directory`` and return its path."""
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
    except BaseException:
        os.unlink(tmp)
        raise
    return tmp


def _discard(paths) -> None:
    for path in paths:
        if path and os.path.lexists(path):
            os.unlink(path)


def _replace_all(files: List[Tuple[str, bytes, int]]) -> None:
    """Put every ``(path, data, mode)`` in place, or none of them.

    All contents are staged first. Existing files are hard-linked aside
    before each rename so that a failed rename can put the previous set
    back.
    """
    staged, backups, placed = [], [], []
    try:
        for path, data, mode in files:
            staged.append(_stage(os.path.dirname(path), data, mode))
        for (path, _, _), tmp in zip(files, staged):
            backup = None
            if os.path.exists(path):
                backup = f"{tmp}.old"
                os.link(path, backup)
            backups.append(backup)
            os.replace(tmp, path)
            placed.append(path)
    except BaseException:
        for path, backup in zip(placed, backups):
            if backup is None:
                os.unlink(path)
            else:
                os.replace(backup, path)
        _discard(staged)
        _discard(backups)
        raise
    _discard(backups)


class CertificateStore:

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def domain_dir(self, domain: str) -> str:
        return os.path.join(self.root, validate_domain(domain))

    def paths(self, domain: str) -> StoredPaths:
        d = self.domain_dir(domain)
        return StoredPaths(cert_path=os.path.join(d, CERT_FILE),
                           key_path=os.path.join(d, KEY_FILE),
                           chain_path=os.path.join(d, CHAIN_FILE))

    def save(self, domain: str, cert: bytes, key: bytes, chain: bytes) -> StoredPaths:
        """Write the three PEM files; any failure raises PersistenceFailed."""
        paths = self.paths(domain)
        for label, blob in (("certificate", cert), ("private key", key), ("chain", chain)):
            if not blob:
                raise PersistenceFailed(f"{domain}: refusing to store an empty {label}")
        try:
            os.makedirs(os.path.dirname(paths.cert_path), exist_ok=True)
            _replace_all([(paths.key_path, key, 0o600),
                          (paths.cert_path, cert, 0o644),
                          (paths.chain_path, chain, 0o644)])
        except OSError as e:
            raise PersistenceFailed(
                f"{domain}: certificate was issued but could not be written to {self.root}: {e}") from e
        log.info("Saved certificate for %s to %s", domain, os.path.dirname(paths.cert_path))
        return paths

    def exists(self, domain: str) -> bool:
        p = self.paths(domain)
        return all(os.path.exists(x) for x in (p.cert_path, p.key_path, p.chain_path))

    def load(self, domain: str) -> CertificateBundle:
        p = self.paths(domain)
        try:
            with open(p.cert_path, "rb") as f:
                cert = f.read()
            with open(p.key_path, "rb") as f:
                key = f.read()
            with open(p.chain_path, "rb") as f:
                chain = f.read()
        except FileNotFoundError as e:
            raise CertificateNotFound(f"no stored certificate for {domain}") from e
        return CertificateBundle(cert=cert, key=key, chain=chain)

    def list_domains(self) -> List[str]:
        if not os.path.isdir(self.root):
            return []
        return sorted(d for d in os.listdir(self.root)
                      if not d.startswith(".") and os.path.isfile(os.path.join(self.root, d, CERT_FILE)))

    def days_until_expiry(self, domain: str) -> int:
        return days_until_expiry(self.load(domain).cert)

    def certificate_domains(self, domain: str) -> Set[str]:
        return certificate_names(self.load(domain).cert)
