# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Settings loaded from config.yaml.

Example::

    acme:
      directory: staging            # staging | production | https://...
      email: ops@example.com
      account_key: account.key
    storage:
      root: /etc/certpilot/certificates
    issuance:
      workers: 4
      pre_propagation_wait: 90
      propagation_attempts: 10
      propagation_interval: 15
      proceed_on_propagation_timeout: true
    propagation:
      resolvers: [8.8.8.8, 1.1.1.1, 9.9.9.9]
    certificates:
      - domain: app.example.com
        tenant: default
        f5_targets: [bigip1.example.com]

The ACME directory has no default. Production CAs rate limit hard, so
talking to one has to be asked for explicitly.
"""
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional
import logging
import os

import yaml

from .errors import ConfigError
from .propagation import DEFAULT_RESOLVERS

log = logging.getLogger(__name__)

ACME_DIRECTORIES = {
    "production": "https://acme-v02.api.letsencrypt.org/directory",
    "staging": "https://acme-staging-v02.api.letsencrypt.org/directory",
}


def resolve_directory(value: Optional[str]) -> str:
    if not value:
        raise ConfigError("acme.directory must be set to 'staging', 'production' or a directory URL")
    value = str(value).strip()
    if value.lower() in ACME_DIRECTORIES:
        return ACME_DIRECTORIES[value.lower()]
    if not value.startswith("https://"):
        raise ConfigError(f"acme.directory must be an https URL, got {value!r}")
    return value


@dataclass
class AcmeSettings:
    directory_url: str
    email: Optional[str] = None
    account_key: str = "account.key"
    user_agent: str = "certpilot"
    network_timeout: int = 45


@dataclass
class IssuanceSettings:
    workers: int = 4
    orders_per_account: int = 2
    pre_propagation_wait: float = 90
    propagation_attempts: int = 10
    propagation_interval: float = 15
    proceed_on_propagation_timeout: bool = True
    propagation_grace: float = 60
    validation_timeout: float = 120
    validation_poll_interval: float = 5
    finalize_timeout: float = 90
    txt_ttl: int = 60
    network_retries: int = 3
    backoff_base: float = 2.0
    stale_challenge_hours: float = 6


@dataclass
class PropagationSettings:
    resolvers: List[str] = field(default_factory=lambda: list(DEFAULT_RESOLVERS))
    timeout: float = 5.0
    require_all: bool = True


@dataclass
class CertificateEntry:
    domain: str
    tenant: str = "default"
    f5_targets: List[str] = field(default_factory=list)


@dataclass
class Settings:
    acme: AcmeSettings
    storage_root: str
    ledger_path: Optional[str]
    issuance: IssuanceSettings = field(default_factory=IssuanceSettings)
    propagation: PropagationSettings = field(default_factory=PropagationSettings)
    certificates: List[CertificateEntry] = field(default_factory=list)
    f5_targets: List[str] = field(default_factory=list)

    @property
    def is_staging(self) -> bool:
        return self.acme.directory_url == ACME_DIRECTORIES["staging"]


def _section(cls, data: Optional[Dict[str, Any]], name: str):
    data = dict(data or {})
    defaults = cls()
    known = {f.name for f in fields(cls)}
    for key, value in data.items():
        if key not in known:
            raise ConfigError(f"{name}: unknown option {key!r}")
        default = getattr(defaults, key)
        if isinstance(default, bool):
            if not isinstance(value, bool):
                raise ConfigError(f"{name}.{key} must be true or false, got {value!r}")
        elif isinstance(default, (int, float)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{name}.{key} must be a number, got {value!r}")
            if value < 0:
                raise ConfigError(f"{name}.{key} must not be negative")
    return cls(**data)


def settings_from_dict(data: Dict[str, Any], staging: bool = False, base_dir: str = ".") -> Settings:
    data = data or {}
    acme = dict(data.get("acme") or {})
    directory = "staging" if staging else acme.pop("directory", None)
    acme.pop("directory", None)
    unknown = sorted(set(acme) - {f.name for f in fields(AcmeSettings)})
    if unknown:
        raise ConfigError(f"acme: unknown option(s) {', '.join(unknown)}")
    acme_settings = AcmeSettings(directory_url=resolve_directory(directory), **acme)
    if staging:
        log.info("Using Let's Encrypt STAGING directory: %s", acme_settings.directory_url)

    issuance = _section(IssuanceSettings, data.get("issuance"), "issuance")
    if issuance.workers < 1:
        raise ConfigError("issuance.workers must be at least 1")
    if issuance.orders_per_account < 1:
        raise ConfigError("issuance.orders_per_account must be at least 1")
    if not 1 <= issuance.txt_ttl <= 60:
        raise ConfigError("issuance.txt_ttl must be between 1 and 60 seconds")
    if issuance.propagation_attempts < 1 or issuance.network_retries < 1:
        raise ConfigError("issuance attempt counts must be at least 1")
    propagation = _section(PropagationSettings, data.get("propagation"), "propagation")

    storage = data.get("storage") or {}
    root = storage.get("root")
    if not root:
        raise ConfigError("storage.root must be set")
    root = os.path.join(base_dir, root)
    ledger = storage.get("ledger", os.path.join(root, ".challenges.yaml"))

    certificates = []
    for entry in data.get("certificates") or []:
        if not entry.get("domain"):
            raise ConfigError("every certificates entry needs a domain")
        certificates.append(CertificateEntry(
            domain=entry["domain"],
            tenant=entry.get("tenant", "default"),
            f5_targets=list(entry.get("f5_targets") or [])))

    if not os.path.isabs(acme_settings.account_key):
        acme_settings.account_key = os.path.join(base_dir, acme_settings.account_key)

    return Settings(acme=acme_settings, storage_root=root, ledger_path=ledger,
                    issuance=issuance, propagation=propagation,
                    certificates=certificates, f5_targets=list(data.get("f5_targets") or []))


def load_settings(path: str, staging: bool = False) -> Settings:
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    return settings_from_dict(data, staging=staging, base_dir=os.path.dirname(os.path.abspath(path)))
