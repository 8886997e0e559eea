# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""AWS Route 53 backend for the DNS record manager.

Uses a boto3 client built from the tenant's own credentials. Route 53 stores
TXT values quoted, and a DELETE must repeat the record set exactly (TTL
included), so deletes look the current set up first.
"""
from typing import List, Optional, Tuple
import logging

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, ConnectionError as BotoConnectionError, ReadTimeoutError

from .dns_provider import DnsRecordManager, MAX_CHALLENGE_TTL, clamp_ttl, normalize_name
from .errors import DnsProviderError, TransientError
from .models import ChangeHandle, ZoneHandle

log = logging.getLogger(__name__)

_TRANSIENT_CODES = {"Throttling", "ThrottlingException", "PriorRequestNotComplete",
                    "ServiceUnavailable", "InternalFailure", "RequestTimeout"}


def _quote(value: str) -> str:
    return '"%s"' % value


def _unquote(value: str) -> str:
    # long values come back as several quoted strings: "abc" "def"
    parts = value.strip().split('" "')
    return "".join(p.strip('"') for p in parts)


def _fqdn(name: str) -> str:
    return normalize_name(name) + "."


def _translate(exc: Exception, what: str) -> Exception:
    if isinstance(exc, ClientError):
        err = exc.response.get("Error", {})
        code = err.get("Code", "")
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0
        msg = f"Route 53 {what} failed ({code}): {err.get('Message', exc)}"
        if code in _TRANSIENT_CODES or status >= 500:
            return TransientError(msg)
        return DnsProviderError(msg)
    if isinstance(exc, (BotoConnectionError, ReadTimeoutError)):
        return TransientError(f"Route 53 {what} failed: {exc}")
    return DnsProviderError(f"Route 53 {what} failed: {exc}")


class Route53RecordManager(DnsRecordManager):

    def __init__(self, client, include_private: bool = False):
        self.client = client
        self.include_private = include_private

    @classmethod
    def from_credentials(cls, credentials) -> "Route53RecordManager":
        opts = credentials.options or {}
        boto_config = BotoConfig(
            retries={"max_attempts": int(opts.get("max_attempts", 3)), "mode": "standard"},
            connect_timeout=int(opts.get("connect_timeout", 10)),
            read_timeout=int(opts.get("read_timeout", 30)),
        )
        kwargs = {"region_name": credentials.region or "us-east-1", "config": boto_config}
        if credentials.api_key:
            kwargs["aws_access_key_id"] = credentials.api_key
        if credentials.api_secret:
            kwargs["aws_secret_access_key"] = credentials.api_secret
        client = boto3.client("route53", **kwargs)
        return cls(client, include_private=bool(opts.get("include_private", False)))

    def list_zones(self) -> List[ZoneHandle]:
        zones = []
        try:
            paginator = self.client.get_paginator("list_hosted_zones")
            for page in paginator.paginate():
                for z in page.get("HostedZones", []):
                    if z.get("Config", {}).get("PrivateZone") and not self.include_private:
                        continue
                    # Id comes back as /hostedzone/Z123
                    zones.append(ZoneHandle(id=z["Id"].split("/")[-1], name=normalize_name(z["Name"])))
        except (BotoCoreError, ClientError) as e:
            raise _translate(e, "list_hosted_zones") from e
        return zones

    def _change(self, zone: ZoneHandle, *changes: Tuple[str, dict]) -> ChangeHandle:
        """Submit ``(action, record_set)`` pairs as one batch, which Route 53 applies atomically."""
        try:
            resp = self.client.change_resource_record_sets(
                HostedZoneId=zone.id,
                ChangeBatch={
                    "Comment": "certpilot dns-01 challenge",
                    "Changes": [{"Action": action, "ResourceRecordSet": rrset} for action, rrset in changes],
                },
            )
        except (BotoCoreError, ClientError) as e:
            what = ", ".join(f"{action} {rrset['Name']}" for action, rrset in changes)
            raise _translate(e, what) from e
        info = resp.get("ChangeInfo", {})
        return ChangeHandle(id=info.get("Id", ""), status=info.get("Status", "PENDING"))

    def upsert_txt(self, zone: ZoneHandle, name: str, value: str, ttl: int = MAX_CHALLENGE_TTL) -> ChangeHandle:
        # UPSERT replaces the whole set, so repeating it never duplicates values
        record_set = {
            "Name": _fqdn(name),
            "Type": "TXT",
            "TTL": clamp_ttl(ttl),
            "ResourceRecords": [{"Value": _quote(value)}],
        }
        change = self._change(zone, ("UPSERT", record_set))
        log.info("Published TXT %s in zone %s (change %s)", name, zone.name, change.id)
        return change

    def _find_txt_set(self, zone: ZoneHandle, name: str) -> Optional[dict]:
        fqdn = _fqdn(name)
        resp = self.client.list_resource_record_sets(
            HostedZoneId=zone.id, StartRecordName=fqdn, StartRecordType="TXT", MaxItems="1")
        for rrset in resp.get("ResourceRecordSets", []):
            if rrset.get("Name", "").lower() == fqdn and rrset.get("Type") == "TXT":
                return rrset
        return None

    def delete_txt(self, zone: ZoneHandle, name: str, value: str) -> None:
        try:
            rrset = self._find_txt_set(zone, name)
            if rrset is None:
                log.debug("TXT %s already absent from zone %s", name, zone.name)
                return
            records = rrset.get("ResourceRecords", [])
            remaining = [r for r in records if _unquote(r["Value"]) != value]
            if len(remaining) == len(records):
                log.debug("TXT %s in zone %s no longer holds our value", name, zone.name)
                return
            changes = [("DELETE", rrset)]
            if remaining:
                # other values shared the set (e.g. a parallel SAN); put them back
                changes.append(("CREATE", dict(rrset, ResourceRecords=remaining)))
            self._change(zone, *changes)
            log.info("Removed TXT %s from zone %s", name, zone.name)
        except (BotoCoreError, ClientError, TransientError, DnsProviderError) as e:
            log.warning("Failed to remove TXT record %s from zone %s: %s", name, zone.name, e)
