# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Secret provider: DNS credentials per tenant.

credentials.yaml layout::

    tenants:
      default:
        provider: route53
        api_key: AKIA...
        api_secret: ...
        region: us-east-1
      lab:
        provider: rfc2136
        api_key: acme-update.       # TSIG key name
        api_secret: base64secret==  # TSIG secret
        server: ns1.lab.example
        port: 53
        algorithm: hmac-sha256
        zones: [lab.example]
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

import yaml

from .errors import ConfigError, CredentialsNotFound

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DnsCredentials:
    provider: str
    api_key: Optional[str] = None
    api_secret: Optional[str] = field(default=None, repr=False)
    region: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)


class SecretProvider(ABC):

    @abstractmethod
    def get_credentials(self, tenant_id: str) -> DnsCredentials:
        """Return the DNS credentials for ``tenant_id`` or raise CredentialsNotFound."""


def load_yaml(path):
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


class YamlSecretProvider(SecretProvider):
    """Reads the ``tenants`` block of a credentials document."""

    _KNOWN = ("provider", "api_key", "api_secret", "region")

    def __init__(self, data: Dict[str, Any]):
        tenants = (data or {}).get("tenants") or {}
        if not isinstance(tenants, dict):
            raise ConfigError("credentials: 'tenants' must be a mapping")
        self._tenants = tenants

    @classmethod
    def from_file(cls, path: str) -> "YamlSecretProvider":
        try:
            return cls(load_yaml(path))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Cannot read credentials file {path}: {e}") from e

    def tenants(self):
        return sorted(self._tenants)

    def get_credentials(self, tenant_id: str) -> DnsCredentials:
        entry = self._tenants.get(tenant_id)
        if not entry:
            raise CredentialsNotFound(f"no DNS credentials for tenant {tenant_id!r}")
        if not entry.get("provider"):
            raise ConfigError(f"credentials for tenant {tenant_id!r} do not name a provider")
        options = {k: v for k, v in entry.items() if k not in self._KNOWN}
        return DnsCredentials(
            provider=str(entry["provider"]),
            api_key=entry.get("api_key"),
            api_secret=entry.get("api_secret"),
            region=entry.get("region"),
            options=options,
        )
