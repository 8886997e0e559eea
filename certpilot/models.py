# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Data model for issuance attempts and the DNS objects they touch."""
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
import threading
import uuid

from .errors import InvalidTransition

# Let's Encrypt certificates are valid for 90 days
CERT_LIFETIME = timedelta(days=90)

CHALLENGE_PREFIX = "_acme-challenge."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RequestStatus(str, Enum):
    PENDING = "pending"
    DNS_CHALLENGE_PUBLISHED = "dns_challenge_published"
    AWAITING_PROPAGATION = "awaiting_propagation"
    AWAITING_CA_VALIDATION = "awaiting_ca_validation"
    FINALIZING = "finalizing"
    ISSUED = "issued"
    INSTALLED = "installed"
    ERROR = "error"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self not in ACTIVE_STATUSES


ACTIVE_STATUSES: FrozenSet[RequestStatus] = frozenset({
    RequestStatus.PENDING,
    RequestStatus.DNS_CHALLENGE_PUBLISHED,
    RequestStatus.AWAITING_PROPAGATION,
    RequestStatus.AWAITING_CA_VALIDATION,
    RequestStatus.FINALIZING,
})

# Forward-only progression; every active state may also fall to ERROR.
TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.DNS_CHALLENGE_PUBLISHED, RequestStatus.ERROR}),
    RequestStatus.DNS_CHALLENGE_PUBLISHED: frozenset({RequestStatus.AWAITING_PROPAGATION, RequestStatus.ERROR}),
    RequestStatus.AWAITING_PROPAGATION: frozenset({RequestStatus.AWAITING_CA_VALIDATION, RequestStatus.ERROR}),
    RequestStatus.AWAITING_CA_VALIDATION: frozenset({RequestStatus.FINALIZING, RequestStatus.ERROR}),
    RequestStatus.FINALIZING: frozenset({RequestStatus.ISSUED, RequestStatus.ERROR}),
    RequestStatus.ISSUED: frozenset({RequestStatus.INSTALLED, RequestStatus.EXPIRED}),
    RequestStatus.INSTALLED: frozenset({RequestStatus.EXPIRED}),
    RequestStatus.ERROR: frozenset(),
    RequestStatus.EXPIRED: frozenset(),
}


@dataclass(frozen=True)
class ZoneHandle:
    """A hosted zone as the DNS provider knows it."""
    id: str
    name: str


@dataclass(frozen=True)
class ChangeHandle:
    id: str
    status: str = "PENDING"


@dataclass(frozen=True)
class DnsChallengeRecord:
    """A published ``_acme-challenge`` TXT record, owned by one workflow."""
    name: str
    value: str
    zone: ZoneHandle


@dataclass(frozen=True)
class StoredPaths:
    cert_path: str
    key_path: str
    chain_path: str


@dataclass(frozen=True)
class CertificateBundle:
    cert: bytes
    key: bytes
    chain: bytes


def challenge_name(domain: str) -> str:
    return CHALLENGE_PREFIX + domain.rstrip(".")


@dataclass
class CertificateRequest:
    """One issuance attempt for one domain.

    Mutated only through :meth:`advance` and :meth:`fail` by the worker that
    owns it; readers take a consistent copy with :meth:`snapshot`.
    """
    domain: str
    tenant_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RequestStatus = RequestStatus.PENDING
    order_handle: Optional[str] = None
    challenge_token: Optional[str] = None
    expected_digest: Optional[str] = None
    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    chain_path: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    issue_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    install_date: Optional[datetime] = None
    install_warnings: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False, compare=False)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def advance(self, status: RequestStatus, **fields) -> None:
        """Move to ``status`` and set ``fields`` atomically.

        Raises InvalidTransition if the status table does not allow the move.
        """
        with self._lock:
            self._advance_locked(status, fields)

    def _advance_locked(self, status: RequestStatus, fields: dict) -> None:
        if status not in TRANSITIONS[self.status]:
            raise InvalidTransition(f"{self.domain}: {self.status.value} -> {status.value}")
        for name, value in fields.items():
            if not hasattr(self, name) or name.startswith("_"):
                raise AttributeError(name)
            setattr(self, name, value)
        self.status = status
        self.updated_at = utcnow()

    def begin_finalizing(self, cancel: threading.Event) -> bool:
        """Enter ``finalizing`` unless ``cancel`` is already set."""
        with self._lock:
            if cancel.is_set():
                return False
            self._advance_locked(RequestStatus.FINALIZING, {})
            return True

    def request_cancel(self, cancel: threading.Event) -> bool:
        """Set ``cancel``; False if the request is already finalizing."""
        with self._lock:
            cancel.set()
            return self.status != RequestStatus.FINALIZING

    def fail(self, code: str, message: str) -> None:
        self.advance(RequestStatus.ERROR, error_code=code, error_message=message)

    def mark_issued(self, paths: StoredPaths, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        self.advance(RequestStatus.ISSUED,
                     cert_path=paths.cert_path,
                     key_path=paths.key_path,
                     chain_path=paths.chain_path,
                     issue_date=now,
                     expiry_date=now + CERT_LIFETIME)

    def note_install_warnings(self, warnings: List[str]) -> None:
        with self._lock:
            self.install_warnings = list(warnings)
            self.updated_at = utcnow()

    def snapshot(self) -> "CertificateRequest":
        with self._lock:
            return replace(self, install_warnings=list(self.install_warnings))

    def to_dict(self) -> dict:
        snap = self.snapshot()
        out = {}
        for name in ("id", "domain", "tenant_id", "order_handle", "challenge_token",
                     "expected_digest", "cert_path", "key_path", "chain_path",
                     "error_code", "error_message"):
            out[name] = getattr(snap, name)
        out["status"] = snap.status.value
        for name in ("issue_date", "expiry_date", "install_date", "created_at", "updated_at"):
            value = getattr(snap, name)
            out[name] = value.isoformat() if value else None
        out["install_warnings"] = snap.install_warnings
        return out
