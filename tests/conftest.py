# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Shared fakes: a DNS record manager, a CA, a propagation verifier."""
from datetime import datetime, timedelta, timezone
import threading

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509 import NameOID

from certpilot.acme_client import DnsChallenge
from certpilot.cert_store import CertificateStore
from certpilot.challenge import jwk_thumbprint
from certpilot.config import settings_from_dict
from certpilot.credentials import YamlSecretProvider
from certpilot.dns_provider import DnsRecordManager
from certpilot.models import ChangeHandle, ZoneHandle

FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

_KEYS = {}


def rsa_key(label="default"):
    """RSA keys are slow to make; share one per label across the session."""
    if label not in _KEYS:
        _KEYS[label] = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return _KEYS[label]


def make_cert(subject, public_key, issuer=None, issuer_key=None, days=90, names=None, ca=False):
    now = datetime.now(timezone.utc)
    subject_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject)])
    builder = (x509.CertificateBuilder()
               .subject_name(subject_name)
               .issuer_name(issuer.subject if issuer is not None else subject_name)
               .public_key(public_key)
               .serial_number(x509.random_serial_number())
               .not_valid_before(now - timedelta(days=1))
               .not_valid_after(now + timedelta(days=days)))
    if names:
        builder = builder.add_extension(x509.SubjectAlternativeName([x509.DNSName(n) for n in names]),
                                        critical=False)
    if ca:
        builder = builder.add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
    return builder.sign(issuer_key or rsa_key("ca"), hashes.SHA256())


def pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM)


def key_pem(key):
    return key.private_bytes(serialization.Encoding.PEM,
                             serialization.PrivateFormat.TraditionalOpenSSL,
                             serialization.NoEncryption())


def self_signed(domain, days=90, names=None):
    """Return (cert_pem, key_pem) for a throwaway leaf certificate."""
    key = rsa_key("leaf")
    cert = make_cert(domain, key.public_key(), issuer_key=key, days=days, names=names or [domain])
    return pem(cert), key_pem(key)


class FakeDns(DnsRecordManager):
    def __init__(self, zones=None):
        self.zones = zones if zones is not None else [ZoneHandle(id="Z1", name="test")]
        self.records = {}
        self.upserts = []
        self.deletes = []
        self.upsert_errors = []
        self.delete_error = None

    def list_zones(self):
        return list(self.zones)

    def upsert_txt(self, zone, name, value, ttl=60):
        if self.upsert_errors:
            raise self.upsert_errors.pop(0)
        self.upserts.append((zone.id, name, value, ttl))
        self.records[name] = value
        return ChangeHandle(id=f"C{len(self.upserts)}", status="INSYNC")

    def delete_txt(self, zone, name, value):
        self.deletes.append((zone.id, name, value))
        if self.delete_error is not None:
            raise self.delete_error
        if self.records.get(name) == value:
            del self.records[name]


class FakeOrder:
    def __init__(self, uri, csr_pem):
        self.uri = uri
        self.csr_pem = csr_pem
        csr = x509.load_pem_x509_csr(csr_pem)
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        self.domains = san.value.get_values_for_type(x509.DNSName)
        self.public_key = csr.public_key()


class FakeCA:
    """Stands in for AcmeClient; issues leaf + intermediate for the CSR key."""

    def __init__(self):
        self.account_key = rsa_key("account")
        self.registered = 0
        self.orders = []
        self.answered = []
        self.status = "valid"
        self.detail = None
        self.register_error = None
        self.finalize_error = None
        self.finalize_started = threading.Event()
        self.finalize_gate = None
        self.intermediate_key = rsa_key("ca")
        self.intermediate = make_cert("Fake Intermediate", self.intermediate_key.public_key(),
                                      issuer_key=self.intermediate_key, days=365, ca=True)

    @property
    def thumbprint(self):
        return jwk_thumbprint(self.account_key.public_key())

    def register(self):
        if self.register_error is not None:
            raise self.register_error
        self.registered += 1

    def new_order(self, csr_pem):
        order = FakeOrder(f"https://ca.test/order/{len(self.orders) + 1}", csr_pem)
        self.orders.append(order)
        return order

    @staticmethod
    def order_handle(order):
        return order.uri

    def dns01_challenges(self, order):
        return [DnsChallenge(domain=d, token=f"token-{d}") for d in order.domains]

    def answer_challenge(self, ch):
        self.answered.append(ch.domain)

    def challenge_status(self, ch):
        if self.status == "invalid":
            return "invalid", self.detail or "Incorrect TXT record"
        return self.status, None

    def finalize(self, order, timeout=90):
        self.finalize_started.set()
        if self.finalize_gate is not None:
            self.finalize_gate.wait(5)
        if self.finalize_error is not None:
            raise self.finalize_error
        leaf = make_cert(order.domains[0], order.public_key, issuer=self.intermediate,
                         issuer_key=self.intermediate_key, names=order.domains)
        return (pem(leaf) + pem(self.intermediate)).decode("ascii")


class FakeVerifier:
    def __init__(self, visible=True):
        self.visible = visible
        self.calls = []

    def wait_for_txt(self, name, expected, max_attempts=10, interval=15.0, cancel=None):
        self.calls.append((name, expected, max_attempts))
        return self.visible


class FakeInstaller:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.installed = []

    def install(self, target, bundle, name):
        from certpilot.errors import InstallFailed
        if target in self.failing:
            raise InstallFailed(f"{target}: connection refused")
        self.installed.append((target, name))


def quick_config(root, **issuance):
    values = {
        "workers": 4,
        "pre_propagation_wait": 0,
        "propagation_attempts": 2,
        "propagation_interval": 0,
        "propagation_grace": 0,
        "validation_timeout": 2,
        "validation_poll_interval": 0.01,
        "network_retries": 3,
        "backoff_base": 0,
    }
    values.update(issuance)
    return {
        "acme": {"directory": "staging", "email": "ops@example.test"},
        "storage": {"root": str(root)},
        "issuance": values,
    }


@pytest.fixture
def settings(tmp_path):
    return settings_from_dict(quick_config(tmp_path / "certs"))


@pytest.fixture
def store(settings):
    return CertificateStore(settings.storage_root)


@pytest.fixture
def fake_dns():
    return FakeDns()


@pytest.fixture
def fake_ca():
    return FakeCA()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def secrets():
    return YamlSecretProvider({"tenants": {"acme-corp": {"provider": "route53", "api_key": "AK", "api_secret": "S"}}})


@pytest.fixture
def invalid_ca(fake_ca):
    fake_ca.status = "invalid"
    return fake_ca

