# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
from unittest import mock

import pytest
import requests

from certpilot.errors import InstallFailed
from certpilot.installer import F5Installer
from certpilot.models import CertificateBundle

BUNDLE = CertificateBundle(cert=b"LEAF\n", key=b"KEY\n", chain=b"INTERMEDIATE\n")


def response(status=200, body=None):
    r = mock.Mock()
    r.status_code = status
    r.text = "" if body is None else str(body)
    r.json.return_value = body or {}
    if status >= 400:
        r.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    return r


class FakeBigIp:
    def __init__(self, profile_exists=True, fail=None):
        self.calls = []
        self.profile_exists = profile_exists
        self.fail = fail

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        path = url.split("bigip.test", 1)[1]
        self.calls.append((method, path, headers or {}, kwargs))
        if self.fail and self.fail == (method, path):
            return response(500, "boom")
        if path == "/mgmt/shared/authn/login":
            return response(body={"token": {"token": "T0K"}})
        if path == "/mgmt/tm/transaction" and method == "POST":
            return response(body={"transId": 77})
        if path.startswith("/mgmt/tm/ltm/profile/client-ssl/") and method == "GET":
            return response(200 if self.profile_exists else 404)
        return response()


def installer(device):
    session = mock.Mock()
    session.request.side_effect = device.request
    return F5Installer("admin", "pw", session=session)


def test_install_uploads_and_updates_existing_profile():
    device = FakeBigIp()
    installer(device).install("bigip.test", BUNDLE, "example.test")
    steps = [(m, p) for m, p, _, _ in device.calls]
    assert steps == [
        ("POST", "/mgmt/shared/authn/login"),
        ("POST", "/mgmt/shared/file-transfer/uploads/le_example.test.key"),
        ("POST", "/mgmt/shared/file-transfer/uploads/le_example.test.crt"),
        ("POST", "/mgmt/tm/transaction"),
        ("PUT", "/mgmt/tm/sys/file/ssl-key/le_example.test.key"),
        ("PUT", "/mgmt/tm/sys/file/ssl-cert/le_example.test.crt"),
        ("PATCH", "/mgmt/tm/transaction/77"),
        ("GET", "/mgmt/tm/ltm/profile/client-ssl/le_example.test"),
        ("PATCH", "/mgmt/tm/ltm/profile/client-ssl/le_example.test"),
        ("DELETE", "/mgmt/shared/authz/tokens/T0K"),
    ]
    cert_upload = device.calls[2]
    assert cert_upload[3]["data"] == b"LEAF\nINTERMEDIATE\n"
    assert cert_upload[2]["Content-Range"] == "0-17/18"
    assert device.calls[4][2]["X-F5-REST-Coordination-Id"] == "77"
    assert all(c[2].get("X-F5-Auth-Token") == "T0K" for c in device.calls[1:])


def test_install_creates_missing_profile():
    device = FakeBigIp(profile_exists=False)
    installer(device).install("bigip.test", BUNDLE, "example.test")
    create = [c for c in device.calls if c[:2] == ("POST", "/mgmt/tm/ltm/profile/client-ssl")]
    assert create[0][3]["json"] == {"name": "le_example.test", "cert": "le_example.test.crt",
                                    "key": "le_example.test.key", "defaultsFrom": "clientssl"}


def test_leaf_only_chain_is_not_duplicated():
    device = FakeBigIp()
    bundle = CertificateBundle(cert=b"LEAF\n", key=b"KEY\n", chain=b"LEAF\n")
    installer(device).install("bigip.test", bundle, "example.test")
    assert device.calls[2][3]["data"] == b"LEAF\n"


def test_http_failure_is_install_failed_and_logs_out():
    device = FakeBigIp(fail=("PUT", "/mgmt/tm/sys/file/ssl-cert/le_example.test.crt"))
    with pytest.raises(InstallFailed) as exc:
        installer(device).install("bigip.test", BUNDLE, "example.test")
    assert "bigip.test" in exc.value.detail
    assert device.calls[-1][:2] == ("DELETE", "/mgmt/shared/authz/tokens/T0K")


def test_missing_token():
    device = FakeBigIp()
    device.request = mock.Mock(return_value=response(body={}))
    with pytest.raises(InstallFailed):
        installer(device).install("bigip.test", BUNDLE, "example.test")
