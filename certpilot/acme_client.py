# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""ACME v2 client wrapper around the `acme` library (from the certbot project).

AcmeClient covers the CA side of one DNS-01 issuance:
- create/load the account key and register (or re-find) the account
- open an order for a CSR and list the dns-01 challenges it needs
- tell the CA a challenge is ready and poll its authorization
- finalize the order and download the full chain

It never touches DNS; the issuance workflow publishes records and computes
the TXT digest itself. Library and network exceptions are translated into the
certpilot error taxonomy at this boundary: connection problems and CA
``serverInternal`` responses become TransientError, everything else a fatal
error for the step that raised it.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple
import datetime
import logging
import os
import threading

import josepy as jose
import requests
from acme import challenges, client as acme_client, errors as acme_errors, messages
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509 import NameOID

from .challenge import jwk_thumbprint
from .errors import (ChallengeUnavailable, FinalizeFailed, OrderFailed, TransientError,
                     ValidationFailed)

log = logging.getLogger(__name__)

_TRANSIENT_ACME_CODES = {"serverInternal", "badNonce"}


@dataclass
class DnsChallenge:
    """A pending dns-01 challenge for one identifier of an order."""
    domain: str
    token: str
    challb: object = None
    authzr: object = None


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return True
    if isinstance(exc, messages.Error):
        return exc.code in _TRANSIENT_ACME_CODES
    return False


def _problem(exc: Exception) -> str:
    if isinstance(exc, messages.Error):
        return exc.detail or str(exc)
    return f"{type(exc).__name__}: {exc}"


def create_csr(domains: Iterable[str], key=None) -> Tuple[bytes, bytes]:
    """Build a CSR for ``domains`` and return (csr_pem, key_pem).

    The key is a fresh RSA key unless one is given; it is the certificate's
    own key, never the account key.
    """
    domains = list(domains)
    if key is None:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
    alt_names = [x509.DNSName(d) for d in domains]
    csr = x509.CertificateSigningRequestBuilder().subject_name(name).add_extension(
        x509.SubjectAlternativeName(alt_names), critical=False)
    csr = csr.sign(key, hashes.SHA256())
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption())
    return csr.public_bytes(serialization.Encoding.PEM), key_pem


class AcmeClient:
    def __init__(self, directory_url: str, email: Optional[str] = None,
                 account_key_path: str = "account.key",
                 user_agent: str = "certpilot", timeout: int = 45):
        if not directory_url:
            raise ValueError("an explicit ACME directory URL is required")
        self.directory_url = directory_url
        self.email = email
        self.account_key_path = account_key_path
        self.user_agent = user_agent
        self.timeout = timeout
        # account key and client will be created lazily
        self.account_key = None
        self.jwk = None
        self.acme = None
        self.regr = None
        self._lock = threading.Lock()

    def generate_account_key(self, bits: int = 2048):
        key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
        self.account_key = key
        return key

    def load_or_create_account_key(self, path: Optional[str] = None) -> rsa.RSAPrivateKey:
        path = path or self.account_key_path
        if os.path.exists(path):
            with open(path, "rb") as f:
                key = serialization.load_pem_private_key(f.read(), password=None)
            if not isinstance(key, rsa.RSAPrivateKey):
                raise ValueError("Account key is not an RSA private key")
            self.account_key = key
            return key
        key = self.generate_account_key()
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key.private_bytes(
                serialization.Encoding.PEM,
                serialization.PrivateFormat.TraditionalOpenSSL,
                serialization.NoEncryption()))
        log.info("Created new ACME account key at %s", path)
        return key

    @property
    def thumbprint(self) -> str:
        if self.account_key is None:
            self.load_or_create_account_key()
        return jwk_thumbprint(self.account_key.public_key())

    def register(self):
        """Create the account, or find the existing one for this key.

        Safe to call repeatedly and from several workers; the registration is
        done once per process.
        """
        with self._lock:
            if self.regr is not None:
                return self.regr
            if self.account_key is None:
                self.load_or_create_account_key()
            self.jwk = jose.JWKRSA(key=self.account_key)
            try:
                net = acme_client.ClientNetwork(self.jwk, user_agent=self.user_agent, timeout=self.timeout)
                directory = acme_client.ClientV2.get_directory(self.directory_url, net)
                acme = acme_client.ClientV2(directory, net=net)
                new_reg = messages.NewRegistration.from_data(email=self.email, terms_of_service_agreed=True)
                try:
                    regr = acme.new_account(new_reg)
                    log.info("Created ACME account: %s", regr.uri)
                except acme_errors.ConflictError as ce:
                    # Same key already registered: reuse it. query_registration
                    # also attaches the account (kid) to the network client.
                    log.info("Account already exists at %s, reusing it", ce.location)
                    regr = acme.query_registration(
                        messages.RegistrationResource(uri=ce.location, body=messages.Registration()))
            except (messages.Error, acme_errors.Error, requests.exceptions.RequestException) as e:
                if _is_transient(e):
                    raise TransientError(f"ACME account registration: {_problem(e)}") from e
                raise OrderFailed(f"ACME account registration failed: {_problem(e)}") from e
            self.acme = acme
            self.regr = regr
            return regr

    def new_order(self, csr_pem: bytes):
        self.register()
        try:
            order = self.acme.new_order(csr_pem)
        except (messages.Error, acme_errors.Error, requests.exceptions.RequestException) as e:
            if _is_transient(e):
                raise TransientError(f"ACME new-order: {_problem(e)}") from e
            raise OrderFailed(f"ACME new-order failed: {_problem(e)}") from e
        log.info("Created ACME order %s", order.uri)
        return order

    @staticmethod
    def order_handle(order) -> str:
        return order.uri

    def dns01_challenges(self, order) -> List[DnsChallenge]:
        """Return the dns-01 challenge of every authorization still pending.

        Authorizations the CA already considers valid (reused from an earlier
        order) need no challenge and are skipped.
        """
        found = []
        for authzr in order.authorizations:
            domain = authzr.body.identifier.value
            if authzr.body.status == messages.STATUS_VALID:
                log.info("Authorization for %s is already valid", domain)
                continue
            challb = next((c for c in authzr.body.challenges if isinstance(c.chall, challenges.DNS01)), None)
            if challb is None:
                offered = ", ".join(c.chall.typ for c in authzr.body.challenges)
                raise ChallengeUnavailable(f"CA offered no dns-01 challenge for {domain} (offered: {offered})")
            found.append(DnsChallenge(domain=domain, token=challb.chall.encode("token"),
                                      challb=challb, authzr=authzr))
        return found

    def answer_challenge(self, challenge: DnsChallenge) -> None:
        try:
            self.acme.answer_challenge(challenge.challb, challenge.challb.chall.response(self.jwk))
        except (messages.Error, acme_errors.Error, requests.exceptions.RequestException) as e:
            if _is_transient(e):
                raise TransientError(f"ACME challenge response for {challenge.domain}: {_problem(e)}") from e
            raise ValidationFailed(f"CA refused challenge response for {challenge.domain}: {_problem(e)}") from e
        log.info("Notified CA that dns-01 challenge for %s is ready", challenge.domain)

    def challenge_status(self, challenge: DnsChallenge) -> Tuple[str, Optional[str]]:
        """Poll the authorization once and return (status, error detail)."""
        try:
            authzr, _ = self.acme.poll(challenge.authzr)
        except (messages.Error, acme_errors.Error, requests.exceptions.RequestException) as e:
            if _is_transient(e):
                raise TransientError(f"ACME authorization poll for {challenge.domain}: {_problem(e)}") from e
            raise ValidationFailed(f"ACME authorization poll for {challenge.domain} failed: {_problem(e)}") from e
        challenge.authzr = authzr
        detail = None
        for c in authzr.body.challenges:
            if isinstance(c.chall, challenges.DNS01) and c.error is not None:
                detail = c.error.detail or str(c.error)
        return authzr.body.status.name, detail

    def finalize(self, order, timeout: float = 90) -> str:
        """Finalize the order with its CSR and return the full chain PEM.

        Not retried: a failure here leaves the order to the CA and the request
        has to start over.
        """
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=timeout)
        try:
            finalized = self.acme.finalize_order(order, deadline)
        except (messages.Error, acme_errors.Error, requests.exceptions.RequestException) as e:
            raise FinalizeFailed(f"order finalization failed: {_problem(e)}") from e
        fullchain = finalized.fullchain_pem
        if not fullchain:
            raise FinalizeFailed("CA returned an empty certificate chain")
        return fullchain
