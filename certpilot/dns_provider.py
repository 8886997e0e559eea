# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""DNS record manager interface shared by the provider backends.

A record manager is built once per tenant credential set and handed to the
issuance workflow; nothing here touches process-wide SDK configuration.
"""
from abc import ABC, abstractmethod
from typing import Iterable, Optional
import logging

from .errors import ConfigError, ZoneNotFound
from .models import ChangeHandle, ZoneHandle

log = logging.getLogger(__name__)

# Upper bound on challenge record TTL; keeps the propagation worst case short.
MAX_CHALLENGE_TTL = 60


def normalize_name(name: str) -> str:
    return name.strip().rstrip(".").lower()


def find_zone_for_fqdn(fqdn: str, zones: Iterable[ZoneHandle]) -> Optional[ZoneHandle]:
    """Choose the longest zone name that equals or is a suffix of ``fqdn``."""
    fqdn = normalize_name(fqdn)
    cand = None
    for z in zones:
        name = normalize_name(z.name)
        if fqdn == name or fqdn.endswith("." + name):
            if cand is None or len(name) > len(normalize_name(cand.name)):
                cand = z
    return cand


def clamp_ttl(ttl: int) -> int:
    return max(1, min(int(ttl), MAX_CHALLENGE_TTL))


class DnsRecordManager(ABC):
    """TXT record operations needed for DNS-01.

    upsert_txt must be safe to repeat with the same value. delete_txt is best
    effort: it runs after the certificate outcome is already decided, so it
    logs failures instead of raising.
    """

    @abstractmethod
    def list_zones(self) -> Iterable[ZoneHandle]:
        """Return the hosted zones this credential set can edit."""

    def resolve_hosted_zone(self, domain: str) -> ZoneHandle:
        zone = find_zone_for_fqdn(domain, self.list_zones())
        if zone is None:
            raise ZoneNotFound(f"no hosted zone matches {normalize_name(domain)}")
        log.debug("Resolved hosted zone for %s: %s (%s)", domain, zone.name, zone.id)
        return zone

    @abstractmethod
    def upsert_txt(self, zone: ZoneHandle, name: str, value: str, ttl: int = MAX_CHALLENGE_TTL) -> ChangeHandle:
        """Create or replace the TXT record set ``name`` with the single ``value``."""

    @abstractmethod
    def delete_txt(self, zone: ZoneHandle, name: str, value: str) -> None:
        """Remove ``value`` from the TXT record set ``name``; never raises."""


def make_record_manager(credentials) -> DnsRecordManager:
    """Build the record manager for one tenant's DnsCredentials."""
    provider = (credentials.provider or "").lower()
    if provider == "route53":
        from .dns_route53 import Route53RecordManager
        return Route53RecordManager.from_credentials(credentials)
    if provider == "rfc2136":
        from .dns_rfc2136 import Rfc2136RecordManager
        return Rfc2136RecordManager.from_credentials(credentials)
    raise ConfigError(f"Unknown DNS provider {credentials.provider!r}")
