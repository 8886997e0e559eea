# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Background execution of issuance workflows.

CertificateManager is what the application layer talks to. submit() returns
straight away with a ``pending`` request; the workflow runs on a bounded
thread pool and callers poll get() (or block in wait()) for the outcome.

Guarantees:
- at most one active request per domain; a second submit() for the same
  domain raises IssuanceInProgress instead of running in parallel
- at most ``orders_per_account`` workflows talk to the CA account at once
- cancel() stops a queued or waiting request promptly; a request that is
  already finalizing is left to finish
"""
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional
import logging
import threading

from .cert_store import CertificateStore, validate_domain
from .dns_provider import DnsRecordManager, make_record_manager
from .errors import (CertPilotError, CertificateNotFound, InstallFailed, InvalidTransition,
                     IssuanceCancelled, IssuanceInProgress)
from .issuance import IssuanceWorkflow
from .ledger import ChallengeLedger
from .models import CertificateRequest, RequestStatus, utcnow
from .propagation import PropagationVerifier

log = logging.getLogger(__name__)


class CertificateManager:

    def __init__(self, settings, secret_provider, ca, store: CertificateStore,
                 verifier: Optional[PropagationVerifier] = None,
                 dns_factory: Callable = make_record_manager,
                 ledger: Optional[ChallengeLedger] = None,
                 installer=None,
                 clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.secret_provider = secret_provider
        self.ca = ca
        self.store = store
        self.verifier = verifier or PropagationVerifier(
            settings.propagation.resolvers,
            timeout=settings.propagation.timeout,
            require_all=settings.propagation.require_all)
        self.dns_factory = dns_factory
        self.ledger = ledger
        self.installer = installer
        self.clock = clock

        self._lock = threading.Lock()
        self._requests: Dict[str, CertificateRequest] = {}
        self._active: Dict[str, str] = {}
        self._cancel: Dict[str, threading.Event] = {}
        self._futures: Dict[str, Future] = {}
        self._workflows: Dict[str, IssuanceWorkflow] = {}
        self._dns: Dict[str, DnsRecordManager] = {}
        self._order_slots = threading.BoundedSemaphore(settings.issuance.orders_per_account)
        self._executor = ThreadPoolExecutor(max_workers=settings.issuance.workers,
                                            thread_name_prefix="certpilot-issue")

    def start(self) -> int:
        """Sweep challenge records orphaned by an earlier crash."""
        return self.sweep_stale_challenges()

    def shutdown(self, wait: bool = True, cancel_active: bool = False) -> None:
        if cancel_active:
            with self._lock:
                ids = list(self._active.values())
            for request_id in ids:
                self.cancel(request_id)
        self._executor.shutdown(wait=wait)

    def record_manager(self, tenant_id: str) -> DnsRecordManager:
        """Return the tenant's record manager, built once from its credentials."""
        with self._lock:
            dns = self._dns.get(tenant_id)
        if dns is None:
            dns = self.dns_factory(self.secret_provider.get_credentials(tenant_id))
            with self._lock:
                dns = self._dns.setdefault(tenant_id, dns)
        return dns

    def submit(self, domain: str, tenant_id: str) -> CertificateRequest:
        domain = validate_domain(domain)
        with self._lock:
            current = self._active.get(domain)
            if current is not None:
                raise IssuanceInProgress(
                    f"{domain} already has request {current} in {self._requests[current].status.value}")
            req = CertificateRequest(domain=domain, tenant_id=tenant_id)
            cancel = threading.Event()
            self._requests[req.id] = req
            self._active[domain] = req.id
            self._cancel[req.id] = cancel
        log.info("Queued issuance for %s (tenant %s, request %s)", domain, tenant_id, req.id)
        try:
            future = self._executor.submit(self._run, req, cancel)
        except RuntimeError as e:
            req.fail("InternalError", f"InternalError: {e}")
            self._finished(req.id)
            raise
        with self._lock:
            self._futures[req.id] = future
        future.add_done_callback(lambda f, request_id=req.id: self._finished(request_id))
        return req.snapshot()

    def _run(self, req: CertificateRequest, cancel: threading.Event) -> None:
        try:
            dns = self.record_manager(req.tenant_id)
            # a queued request may wait here for an account slot
            while not self._order_slots.acquire(timeout=0.5):
                if cancel.is_set():
                    raise IssuanceCancelled("cancelled before start")
            try:
                if cancel.is_set():
                    raise IssuanceCancelled("cancelled before start")
                workflow = IssuanceWorkflow(req, self.ca, dns, self.verifier, self.store,
                                            self.settings.issuance, ledger=self.ledger,
                                            cancel=cancel, clock=self.clock)
                with self._lock:
                    self._workflows[req.id] = workflow
                workflow.run()
            finally:
                self._order_slots.release()
        except CertPilotError as e:
            log.error("Issuance for %s failed before it started: %s", req.domain, e.describe())
            if req.is_active:
                req.fail(e.code, e.describe())
        except Exception as e:
            log.exception("Unexpected failure while running issuance for %s", req.domain)
            if req.is_active:
                req.fail("InternalError", f"InternalError: {type(e).__name__}: {e}")
        finally:
            # released before the future resolves
            self._finished(req.id)

    def _finished(self, request_id: str) -> None:
        with self._lock:
            req = self._requests.get(request_id)
            if req is not None and self._active.get(req.domain) == request_id:
                del self._active[req.domain]
            self._workflows.pop(request_id, None)
            self._cancel.pop(request_id, None)
            self._futures.pop(request_id, None)

    def _get(self, request_id: str) -> CertificateRequest:
        with self._lock:
            req = self._requests.get(request_id)
        if req is None:
            raise CertificateNotFound(f"unknown request {request_id}")
        return req

    def get(self, request_id: str) -> CertificateRequest:
        return self._get(request_id).snapshot()

    def find(self, domain: str, tenant_id: Optional[str] = None) -> Optional[CertificateRequest]:
        """Most recent request for ``domain`` (and tenant, when given)."""
        domain = validate_domain(domain)
        with self._lock:
            matches = [r for r in self._requests.values()
                       if r.domain == domain and (tenant_id is None or r.tenant_id == tenant_id)]
        if not matches:
            return None
        return max(matches, key=lambda r: r.created_at).snapshot()

    def list_requests(self, tenant_id: Optional[str] = None) -> List[CertificateRequest]:
        with self._lock:
            reqs = list(self._requests.values())
        return [r.snapshot() for r in sorted(reqs, key=lambda r: r.created_at)
                if tenant_id is None or r.tenant_id == tenant_id]

    def wait(self, request_id: str, timeout: Optional[float] = None) -> CertificateRequest:
        """Block until the request's workflow is done (or ``timeout`` passes)."""
        req = self._get(request_id)
        with self._lock:
            future = self._futures.get(request_id)
        if future is not None:
            try:
                future.result(timeout=timeout)
            except FutureTimeout:
                log.debug("Request %s still %s after %ss", request_id, req.status.value, timeout)
            except CancelledError:
                log.debug("Request %s was cancelled before it started", request_id)
        return req.snapshot()

    def cancel(self, request_id: str) -> bool:
        """Ask a request to stop; return True if it stops without finishing.

        During ``finalizing`` the flag is recorded but the CA call is allowed
        to complete, and False is returned.
        """
        req = self._get(request_id)
        with self._lock:
            if not req.is_active:
                return False
            event = self._cancel.get(request_id)
            future = self._futures.get(request_id)
        if event is None:
            return False
        if not req.request_cancel(event):
            log.info("Cancellation of %s deferred until finalization completes", req.domain)
            return False
        if future is not None and future.cancel():
            req.fail(IssuanceCancelled.code, IssuanceCancelled("cancelled before start").describe())
        log.info("Cancelled issuance for %s (request %s)", req.domain, request_id)
        return True

    def install(self, request_id: str, targets: Iterable[str]) -> CertificateRequest:
        """Install an issued certificate on every target; ``installed`` only if all succeed."""
        req = self._get(request_id)
        if req.status != RequestStatus.ISSUED:
            raise InvalidTransition(f"{req.domain}: cannot install from {req.status.value}")
        if self.installer is None:
            raise InstallFailed("no certificate installer configured")
        bundle = self.store.load(req.domain)
        warnings = []
        for target in targets:
            try:
                self.installer.install(target, bundle, req.domain)
            except InstallFailed as e:
                log.warning("Install of %s on %s failed: %s", req.domain, target, e.detail)
                warnings.append(e.describe())
        if warnings:
            req.note_install_warnings(warnings)
        else:
            req.advance(RequestStatus.INSTALLED, install_date=self.clock(), install_warnings=[])
        return req.snapshot()

    def refresh_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Move issued/installed requests past their expiry date to ``expired``."""
        now = now or self.clock()
        expired = []
        with self._lock:
            reqs = list(self._requests.values())
        for req in reqs:
            if req.status in (RequestStatus.ISSUED, RequestStatus.INSTALLED) and req.expiry_date \
                    and req.expiry_date <= now:
                req.advance(RequestStatus.EXPIRED)
                log.info("Certificate for %s expired on %s", req.domain, req.expiry_date.date())
                expired.append(req.id)
        return expired

    def needs_renewal(self, domain: str, days: int, expected_names=None) -> Optional[str]:
        """Return why ``domain`` should be (re)issued, or None if it is fine."""
        try:
            remaining = self.store.days_until_expiry(domain)
            names = self.store.certificate_domains(domain)
        except CertificateNotFound:
            return "missing"
        except ValueError as e:
            log.warning("Stored certificate for %s is unreadable: %s", domain, e)
            return "unreadable"
        if remaining <= days:
            return f"expires in {remaining} days"
        if expected_names is not None and set(expected_names) != names:
            return "domain changes"
        return None

    def sweep_stale_challenges(self, now: Optional[datetime] = None) -> int:
        if self.ledger is None:
            return 0
        max_age = timedelta(hours=self.settings.issuance.stale_challenge_hours)
        swept = 0
        for tenant_id, record in self.ledger.stale(max_age, now=now):
            try:
                dns = self.record_manager(tenant_id)
            except CertPilotError as e:
                log.warning("Cannot sweep %s for tenant %s: %s", record.name, tenant_id, e.describe())
                continue
            log.info("Sweeping stale challenge record %s in zone %s", record.name, record.zone.name)
            try:
                dns.delete_txt(record.zone, record.name, record.value)
            except CertPilotError as e:
                # left in the ledger for the next sweep
                log.warning("Failed to delete %s: %s", record.name, e.describe())
                continue
            self.ledger.remove(record)
            swept += 1
        return swept
