# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""The DNS-01 issuance workflow for a single CertificateRequest.

Flow, one status per step:

  pending                  resolve the hosted zone (before any CA traffic),
                           register, open the order, compute and publish the
                           challenge TXT records
  dns_challenge_published  pre-wait so older cached answers can expire
  awaiting_propagation     poll public resolvers; on timeout either fail
                           (PropagationTimeout) or carry on after a grace delay
  awaiting_ca_validation   answer the challenges and poll the CA until valid,
                           invalid or the validation timeout
  finalizing               submit the CSR, download the chain, write files
  issued

Any failure moves the request to ``error`` with the taxonomy code in front of
the message. Whatever the outcome, every published TXT record is removed
afterwards (best effort).

Network trouble in the first four steps is retried with exponential backoff.
Finalization is not retried, and cancellation is ignored once it has started
so the CA order is never left half way.
"""
from typing import Callable, List, Optional
import logging
import threading
import time

from .acme_client import create_csr
from .cert_store import split_fullchain
from .challenge import compute_dns01_value
from .errors import (CertPilotError, DnsProviderError, FinalizeFailed, IssuanceCancelled,
                     OrderFailed, PropagationTimeout, TransientError, ValidationFailed)
from .models import CertificateRequest, DnsChallengeRecord, RequestStatus, challenge_name, utcnow
from .retry import call_with_backoff, sleep_or_cancel

log = logging.getLogger(__name__)


class IssuanceWorkflow:

    def __init__(self, request: CertificateRequest, ca, dns, verifier, store, settings,
                 ledger=None, cancel: Optional[threading.Event] = None,
                 clock: Callable = utcnow):
        self.request = request
        self.ca = ca
        self.dns = dns
        self.verifier = verifier
        self.store = store
        self.settings = settings
        self.ledger = ledger
        self.cancel = cancel or threading.Event()
        self.clock = clock
        self.records: List[DnsChallengeRecord] = []
        self.finalizing = False

    def run(self) -> CertificateRequest:
        req = self.request
        log.info("Starting issuance for %s (request %s)", req.domain, req.id)
        try:
            self._issue()
        except CertPilotError as e:
            self._fail(e.code, e.describe())
        except Exception as e:
            log.exception("Unexpected failure while issuing %s", req.domain)
            self._fail("InternalError", f"InternalError: {type(e).__name__}: {e}")
        finally:
            self._cleanup()
        log.info("Issuance for %s finished with status %s", req.domain, req.status.value)
        return req

    def _fail(self, code: str, message: str) -> None:
        req = self.request
        if not req.is_active:
            log.error("%s: %s (request already %s)", req.domain, message, req.status.value)
            return
        log.error("Issuance for %s failed in %s: %s", req.domain, req.status.value, message)
        req.fail(code, message)

    def _check_cancel(self) -> None:
        if self.cancel.is_set():
            raise IssuanceCancelled("cancelled by request")

    def _retry(self, func, *args, escalate=None, what: str = ""):
        s = self.settings
        try:
            return call_with_backoff(func, *args, attempts=s.network_retries, base_delay=s.backoff_base,
                                     cancel=self.cancel, what=what)
        except TransientError as e:
            if escalate is None:
                raise
            raise escalate(f"{what}: {e.detail} (gave up after {s.network_retries} attempts)") from e

    def _advance(self, status: RequestStatus, **fields) -> None:
        self.request.advance(status, **fields)
        log.info("%s -> %s", self.request.domain, status.value)

    def _issue(self) -> None:
        req = self.request
        s = self.settings

        # fail fast on a missing zone, before the CA sees anything
        zone = self._retry(self.dns.resolve_hosted_zone, req.domain,
                           escalate=DnsProviderError, what=f"resolve hosted zone for {req.domain}")
        self._check_cancel()

        # the acme library binds the CSR to the order, so the key is made now
        # and held in memory until the certificate is written
        csr_pem, key_pem = create_csr([req.domain])
        self._retry(self.ca.register, escalate=OrderFailed, what="ACME account registration")
        order = self._retry(self.ca.new_order, csr_pem, escalate=OrderFailed, what=f"ACME order for {req.domain}")
        pending = self._retry(self.ca.dns01_challenges, order, escalate=OrderFailed, what="fetch authorizations")
        thumbprint = self.ca.thumbprint

        for ch in pending:
            self._check_cancel()
            record_zone = zone if ch.domain == req.domain else self._retry(
                self.dns.resolve_hosted_zone, ch.domain, escalate=DnsProviderError,
                what=f"resolve hosted zone for {ch.domain}")
            record = DnsChallengeRecord(name=challenge_name(ch.domain),
                                        value=compute_dns01_value(ch.token, thumbprint),
                                        zone=record_zone)
            # tracked before the write so a partial publish still gets cleaned up
            self.records.append(record)
            if self.ledger is not None:
                self.ledger.record(req.tenant_id, record)
            self._retry(self.dns.upsert_txt, record.zone, record.name, record.value, s.txt_ttl,
                        escalate=DnsProviderError, what=f"publish {record.name}")

        first = pending[0] if pending else None
        self._advance(RequestStatus.DNS_CHALLENGE_PUBLISHED,
                      order_handle=self.ca.order_handle(order),
                      challenge_token=first.token if first else None,
                      expected_digest=self.records[0].value if self.records else None)

        self._advance(RequestStatus.AWAITING_PROPAGATION)
        if self.records:
            sleep_or_cancel(s.pre_propagation_wait, self.cancel)
            self._wait_for_propagation()

        self._advance(RequestStatus.AWAITING_CA_VALIDATION)
        for ch in pending:
            self._check_cancel()
            self._retry(self.ca.answer_challenge, ch, escalate=ValidationFailed,
                        what=f"answer challenge for {ch.domain}")
        self._wait_for_validation(pending)

        if not req.begin_finalizing(self.cancel):
            raise IssuanceCancelled("cancelled by request")
        log.info("%s -> %s", req.domain, RequestStatus.FINALIZING.value)
        self.finalizing = True
        fullchain = self.ca.finalize(order, s.finalize_timeout)
        if isinstance(fullchain, str):
            fullchain = fullchain.encode("ascii")
        try:
            leaf, chain = split_fullchain(fullchain)
        except ValueError as e:
            raise FinalizeFailed(f"CA returned an unreadable certificate chain: {e}") from e
        paths = self.store.save(req.domain, leaf, key_pem, chain)
        req.mark_issued(paths, now=self.clock())
        log.info("%s -> %s (expires %s)", req.domain, RequestStatus.ISSUED.value, req.expiry_date.date())

    def _wait_for_propagation(self) -> None:
        s = self.settings
        missing = []
        for record in self.records:
            if not self.verifier.wait_for_txt(record.name, record.value, s.propagation_attempts,
                                              s.propagation_interval, cancel=self.cancel):
                missing.append(record.name)
        if not missing:
            return
        if not s.proceed_on_propagation_timeout:
            raise PropagationTimeout(f"TXT not visible on public resolvers: {', '.join(missing)}")
        # the CA resolves through its own resolvers and may already see the record
        log.warning("TXT not visible for %s after %d attempts; notifying CA after %ss grace",
                    ", ".join(missing), s.propagation_attempts, s.propagation_grace)
        sleep_or_cancel(s.propagation_grace, self.cancel)

    def _wait_for_validation(self, pending) -> None:
        s = self.settings
        deadline = time.monotonic() + s.validation_timeout
        waiting = list(pending)
        while waiting:
            still = []
            for ch in waiting:
                status, detail = self._retry(self.ca.challenge_status, ch, escalate=ValidationFailed,
                                             what=f"poll authorization for {ch.domain}")
                if status == "valid":
                    log.info("CA validated %s", ch.domain)
                elif status == "invalid":
                    raise ValidationFailed(f"{ch.domain}: {detail or 'challenge rejected by CA'}")
                else:
                    still.append(ch)
            waiting = still
            if not waiting:
                return
            if time.monotonic() >= deadline:
                raise ValidationFailed(
                    f"CA did not validate {', '.join(c.domain for c in waiting)} within {s.validation_timeout}s")
            sleep_or_cancel(s.validation_poll_interval, self.cancel)

    def _cleanup(self) -> None:
        for record in self.records:
            try:
                self.dns.delete_txt(record.zone, record.name, record.value)
            except Exception as e:
                # the certificate outcome is already final; never escalate
                log.warning("Cleanup of %s failed: %s", record.name, e)
            if self.ledger is not None:
                try:
                    self.ledger.remove(record)
                except OSError as e:
                    log.warning("Could not drop %s from the challenge ledger: %s", record.name, e)
