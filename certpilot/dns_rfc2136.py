# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""RFC2136 backend for the DNS record manager.

Uses dnspython to send (optionally TSIG-signed) dynamic updates to the
primary server of a zone. Zones come from the tenant configuration when
listed there; otherwise the zone apex is discovered by walking up the labels
of the name until an SOA answers.
"""
from typing import List, Optional
import logging

import dns.exception
import dns.message
import dns.name
import dns.query
import dns.rcode
import dns.rdatatype
import dns.resolver
import dns.tsig
import dns.tsigkeyring
import dns.update

from .dns_provider import DnsRecordManager, MAX_CHALLENGE_TTL, clamp_ttl, find_zone_for_fqdn, normalize_name
from .errors import ConfigError, DnsProviderError, TransientError, ZoneNotFound
from .models import ChangeHandle, ZoneHandle

log = logging.getLogger(__name__)

TSIG_ALGORITHMS = {
    'hmac-md5': dns.tsig.HMAC_MD5,
    'hmac-sha1': dns.tsig.HMAC_SHA1,
    'hmac-sha224': dns.tsig.HMAC_SHA224,
    'hmac-sha256': dns.tsig.HMAC_SHA256,
    'hmac-sha384': dns.tsig.HMAC_SHA384,
    'hmac-sha512': dns.tsig.HMAC_SHA512,
}

# rcodes worth another try; anything else from the server is a refusal
_TRANSIENT_RCODES = {dns.rcode.SERVFAIL}


class Rfc2136RecordManager(DnsRecordManager):

    def __init__(self, server: str, port: int = 53,
                 key_name: Optional[str] = None, key: Optional[str] = None,
                 algorithm: Optional[str] = None,
                 zones: Optional[List[str]] = None,
                 timeout: float = 10.0):
        self.server = server
        self.port = port
        self.timeout = timeout
        self.zones = [normalize_name(z) for z in (zones or [])]
        self.keyring = None
        self.key_name = None
        self.algorithm = None
        if key_name and key:
            self.key_name = dns.name.from_text(key_name)
            self.keyring = dns.tsigkeyring.from_text({key_name: key})
            if algorithm:
                algo = TSIG_ALGORITHMS.get(algorithm.lower())
                if algo is None:
                    raise ConfigError(f"Unsupported TSIG algorithm {algorithm!r}")
                self.algorithm = algo

    @classmethod
    def from_credentials(cls, credentials) -> "Rfc2136RecordManager":
        opts = credentials.options or {}
        server = opts.get("server")
        if not server:
            raise ConfigError("rfc2136 credentials need a 'server'")
        return cls(server, port=int(opts.get("port", 53)),
                   key_name=credentials.api_key, key=credentials.api_secret,
                   algorithm=opts.get("algorithm"), zones=opts.get("zones"),
                   timeout=float(opts.get("timeout", 10)))

    def _sign(self, msg):
        if self.keyring:
            msg.use_tsig(keyring=self.keyring, keyname=self.key_name, algorithm=self.algorithm or dns.tsig.default_algorithm)
        return msg

    def _send(self, msg, what: str):
        try:
            response = dns.query.tcp(msg, self.server, port=self.port, timeout=self.timeout)
        except (dns.exception.Timeout, OSError) as e:
            raise TransientError(f"{what} to {self.server}:{self.port} failed: {e}") from e
        except dns.exception.DNSException as e:
            raise DnsProviderError(f"{what} to {self.server}:{self.port} failed: {e}") from e
        rcode = response.rcode()
        if rcode != dns.rcode.NOERROR:
            text = dns.rcode.to_text(rcode)
            if rcode in _TRANSIENT_RCODES:
                raise TransientError(f"{what} answered {text}")
            raise DnsProviderError(f"{what} answered {text}")
        return response

    def list_zones(self) -> List[ZoneHandle]:
        return [ZoneHandle(id=z, name=z) for z in self.zones]

    def _has_soa(self, candidate: str) -> bool:
        q = self._sign(dns.message.make_query(candidate, 'SOA', use_edns=True))
        try:
            response = self._send(q, f"SOA query for {candidate}")
        except DnsProviderError:
            # NXDOMAIN or REFUSED: not a zone apex on this server
            return False
        return any(rrset.rdtype == dns.rdatatype.SOA and normalize_name(rrset.name.to_text()) == candidate
                   for rrset in response.answer)

    def resolve_hosted_zone(self, domain: str) -> ZoneHandle:
        if self.zones:
            zone = find_zone_for_fqdn(domain, self.list_zones())
            if zone is None:
                raise ZoneNotFound(f"no configured zone matches {normalize_name(domain)}")
            return zone
        labels = normalize_name(domain).split('.')
        # walk from the full name up, stopping short of the TLD
        for i in range(len(labels) - 1):
            candidate = '.'.join(labels[i:])
            if self._has_soa(candidate):
                log.debug("Discovered SOA for %s; using zone %s", domain, candidate)
                return ZoneHandle(id=candidate, name=candidate)
        raise ZoneNotFound(f"no SOA found on {self.server} for {normalize_name(domain)}")

    def _update(self, zone: ZoneHandle):
        if self.keyring:
            return dns.update.Update(zone.name, keyring=self.keyring, keyname=self.key_name,
                                     keyalgorithm=self.algorithm or dns.tsig.default_algorithm)
        return dns.update.Update(zone.name)

    @staticmethod
    def _relative(zone: ZoneHandle, name: str) -> str:
        name = normalize_name(name)
        if name.endswith('.' + zone.name):
            return name[:-(len(zone.name) + 1)]
        if name == zone.name:
            return '@'
        raise DnsProviderError(f"{name} is not inside zone {zone.name}")

    def upsert_txt(self, zone: ZoneHandle, name: str, value: str, ttl: int = MAX_CHALLENGE_TTL) -> ChangeHandle:
        rel = self._relative(zone, name)
        u = self._update(zone)
        # delete + add in one message replaces the set, so repeats stay single-valued
        u.delete(rel, 'TXT')
        u.add(rel, clamp_ttl(ttl), 'TXT', '"%s"' % value)
        log.debug("Sending DNS update to %s:%s for zone %s: %s -> %s", self.server, self.port, zone.name, rel, value)
        response = self._send(u, f"DNS update for {name}")
        log.info("Published TXT %s in zone %s", name, zone.name)
        return ChangeHandle(id=str(response.id), status="INSYNC")

    def delete_txt(self, zone: ZoneHandle, name: str, value: str) -> None:
        try:
            rel = self._relative(zone, name)
            u = self._update(zone)
            u.delete(rel, 'TXT', '"%s"' % value)
            self._send(u, f"DNS delete for {name}")
            log.info("Removed TXT %s from zone %s", name, zone.name)
        except (DnsProviderError, TransientError, dns.exception.DNSException) as e:
            log.warning("Failed to remove TXT record for %s: %s", name, e)
