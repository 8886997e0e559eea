# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
from unittest import mock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from certpilot.credentials import DnsCredentials
from certpilot.dns_provider import make_record_manager
from certpilot.dns_route53 import Route53RecordManager
from certpilot.errors import ConfigError, DnsProviderError, TransientError, ZoneNotFound
from certpilot.models import ZoneHandle

ZONE = ZoneHandle(id="Z1", name="example.test")
NAME = "_acme-challenge.app.example.test"


def client_error(code, status=400):
    return ClientError({"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
                       "ChangeResourceRecordSets")


@pytest.fixture
def client():
    c = mock.Mock()
    c.get_paginator.return_value.paginate.return_value = [
        {"HostedZones": [
            {"Id": "/hostedzone/Z1", "Name": "example.test.", "Config": {"PrivateZone": False}},
            {"Id": "/hostedzone/Z2", "Name": "app.example.test.", "Config": {"PrivateZone": False}},
        ]},
        {"HostedZones": [
            {"Id": "/hostedzone/Z3", "Name": "internal.example.test.", "Config": {"PrivateZone": True}},
        ]},
    ]
    c.change_resource_record_sets.return_value = {"ChangeInfo": {"Id": "/change/C1", "Status": "PENDING"}}
    return c


def test_list_zones_strips_prefix_and_skips_private(client):
    zones = Route53RecordManager(client).list_zones()
    assert zones == [ZoneHandle("Z1", "example.test"), ZoneHandle("Z2", "app.example.test")]
    assert len(Route53RecordManager(client, include_private=True).list_zones()) == 3


def test_resolve_hosted_zone_prefers_longest_suffix(client):
    r53 = Route53RecordManager(client)
    assert r53.resolve_hosted_zone("www.app.example.test").id == "Z2"
    assert r53.resolve_hosted_zone("example.test").id == "Z1"
    with pytest.raises(ZoneNotFound):
        r53.resolve_hosted_zone("example.org")
    # a label boundary is required, not just a string suffix
    with pytest.raises(ZoneNotFound):
        r53.resolve_hosted_zone("badexample.test")


def test_upsert_is_idempotent(client):
    r53 = Route53RecordManager(client)
    first = r53.upsert_txt(ZONE, NAME, "digest", ttl=60)
    r53.upsert_txt(ZONE, NAME, "digest", ttl=60)
    assert first.id == "/change/C1"
    assert client.change_resource_record_sets.call_count == 2
    for call in client.change_resource_record_sets.call_args_list:
        change = call.kwargs["ChangeBatch"]["Changes"][0]
        assert call.kwargs["HostedZoneId"] == "Z1"
        assert change["Action"] == "UPSERT"
        assert change["ResourceRecordSet"] == {
            "Name": NAME + ".", "Type": "TXT", "TTL": 60, "ResourceRecords": [{"Value": '"digest"'}]}


def test_upsert_clamps_ttl(client):
    Route53RecordManager(client).upsert_txt(ZONE, NAME, "digest", ttl=3600)
    change = client.change_resource_record_sets.call_args.kwargs["ChangeBatch"]["Changes"][0]
    assert change["ResourceRecordSet"]["TTL"] == 60


def test_upsert_error_translation(client):
    r53 = Route53RecordManager(client)
    client.change_resource_record_sets.side_effect = client_error("Throttling")
    with pytest.raises(TransientError):
        r53.upsert_txt(ZONE, NAME, "digest")
    client.change_resource_record_sets.side_effect = client_error("InternalError", status=503)
    with pytest.raises(TransientError):
        r53.upsert_txt(ZONE, NAME, "digest")
    client.change_resource_record_sets.side_effect = client_error("AccessDenied", status=403)
    with pytest.raises(DnsProviderError):
        r53.upsert_txt(ZONE, NAME, "digest")
    client.change_resource_record_sets.side_effect = EndpointConnectionError(endpoint_url="https://route53")
    with pytest.raises(TransientError):
        r53.upsert_txt(ZONE, NAME, "digest")


def test_delete_removes_exact_record_set(client):
    rrset = {"Name": NAME + ".", "Type": "TXT", "TTL": 60, "ResourceRecords": [{"Value": '"digest"'}]}
    client.list_resource_record_sets.return_value = {"ResourceRecordSets": [rrset]}
    Route53RecordManager(client).delete_txt(ZONE, NAME, "digest")
    change = client.change_resource_record_sets.call_args.kwargs["ChangeBatch"]["Changes"][0]
    assert change == {"Action": "DELETE", "ResourceRecordSet": rrset}


def test_delete_keeps_other_values(client):
    rrset = {"Name": NAME + ".", "Type": "TXT", "TTL": 60,
             "ResourceRecords": [{"Value": '"digest"'}, {"Value": '"other"'}]}
    client.list_resource_record_sets.return_value = {"ResourceRecordSets": [rrset]}
    Route53RecordManager(client).delete_txt(ZONE, NAME, "digest")
    # one batch, so the other value is never missing
    client.change_resource_record_sets.assert_called_once()
    actions = client.change_resource_record_sets.call_args.kwargs["ChangeBatch"]["Changes"]
    assert [a["Action"] for a in actions] == ["DELETE", "CREATE"]
    assert actions[0]["ResourceRecordSet"] == rrset
    assert actions[1]["ResourceRecordSet"]["ResourceRecords"] == [{"Value": '"other"'}]


def test_delete_absent_record_is_quiet(client):
    client.list_resource_record_sets.return_value = {"ResourceRecordSets": [
        {"Name": "_acme-challenge.zzz.example.test.", "Type": "TXT", "ResourceRecords": []}]}
    Route53RecordManager(client).delete_txt(ZONE, NAME, "digest")
    client.change_resource_record_sets.assert_not_called()


def test_delete_never_raises(client):
    client.list_resource_record_sets.side_effect = client_error("AccessDenied", status=403)
    Route53RecordManager(client).delete_txt(ZONE, NAME, "digest")


def test_multi_string_values_are_joined(client):
    rrset = {"Name": NAME + ".", "Type": "TXT", "TTL": 60, "ResourceRecords": [{"Value": '"dig" "est"'}]}
    client.list_resource_record_sets.return_value = {"ResourceRecordSets": [rrset]}
    Route53RecordManager(client).delete_txt(ZONE, NAME, "digest")
    assert client.change_resource_record_sets.call_count == 1


def test_factory_builds_client_from_tenant_credentials():
    creds = DnsCredentials(provider="route53", api_key="AKIA1", api_secret="s3cret", region="eu-west-1")
    with mock.patch("certpilot.dns_route53.boto3.client") as factory:
        r53 = make_record_manager(creds)
    assert isinstance(r53, Route53RecordManager)
    args, kwargs = factory.call_args
    assert args == ("route53",)
    assert kwargs["aws_access_key_id"] == "AKIA1"
    assert kwargs["aws_secret_access_key"] == "s3cret"
    assert kwargs["region_name"] == "eu-west-1"


def test_factory_rejects_unknown_provider():
    with pytest.raises(ConfigError):
        make_record_manager(DnsCredentials(provider="cloudflare"))
