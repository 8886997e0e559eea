# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Certificate installers: push an issued certificate onto a target host.

F5Installer talks to the BIG-IP iControl REST API. It logs in for a token,
uploads the key and full chain, swaps both file objects inside one
transaction and points a client-ssl profile at them. Object names derive from
the domain: ``le_<domain>.crt``, ``le_<domain>.key`` and profile
``le_<domain>``.
"""
from abc import ABC, abstractmethod
from typing import Optional
import logging

import requests
import urllib3
from urllib3.exceptions import InsecureRequestWarning

from .errors import InstallFailed
from .models import CertificateBundle

log = logging.getLogger(__name__)

UPLOAD_DIR = "/var/config/rest/downloads"


class CertificateInstaller(ABC):

    @abstractmethod
    def install(self, target: str, bundle: CertificateBundle, name: str) -> None:
        """Install ``bundle`` on ``target`` under ``name``; raise InstallFailed."""


class F5Installer(CertificateInstaller):
    def __init__(self, username: str, password: str, verify_ssl: bool = False, timeout: int = 30,
                 session: Optional[requests.Session] = None):
        self.username = username
        self.password = password
        self.verify = verify_ssl
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify_ssl
        if not verify_ssl:
            urllib3.disable_warnings(InsecureRequestWarning)

    def _call(self, method: str, host: str, path: str, token: Optional[str] = None, **kwargs):
        headers = kwargs.pop("headers", {})
        if token:
            headers["X-F5-Auth-Token"] = token
        r = self.session.request(method, f"https://{host}{path}", headers=headers, timeout=self.timeout, **kwargs)
        if r.status_code >= 400 and not (method == "GET" and r.status_code == 404):
            log.error("%s %s on %s failed: %s - %s", method, path, host, r.status_code, r.text[:200])
            r.raise_for_status()
        return r

    def login(self, host: str) -> str:
        r = self._call("POST", host, "/mgmt/shared/authn/login", json={
            "username": self.username,
            "password": self.password,
            "loginProviderName": "tmos",
        })
        token = r.json().get("token", {}).get("token")
        if not token:
            raise InstallFailed(f"{host} returned no auth token")
        return token

    def logout(self, host: str, token: str) -> None:
        try:
            self._call("DELETE", host, f"/mgmt/shared/authz/tokens/{token}", token=token)
        except requests.RequestException:
            log.debug("Failed to delete token on %s", host, exc_info=True)

    def upload(self, host: str, token: str, content: bytes, filename: str) -> None:
        log.debug("Uploading %s to %s (%d bytes)", filename, host, len(content))
        self._call("POST", host, f"/mgmt/shared/file-transfer/uploads/{filename}", token=token, data=content,
                   headers={"Content-Type": "application/octet-stream",
                            "Content-Range": f"0-{len(content) - 1}/{len(content)}"})

    def _replace_files(self, host: str, token: str, cert_name: str, key_name: str) -> None:
        tx_id = self._call("POST", host, "/mgmt/tm/transaction", token=token, json={}).json().get("transId")
        if not tx_id:
            raise InstallFailed(f"Failed to start transaction on {host}")
        coord = {"X-F5-REST-Coordination-Id": str(tx_id)}
        self._call("PUT", host, f"/mgmt/tm/sys/file/ssl-key/{key_name}", token=token, headers=dict(coord),
                   json={"sourcePath": f"file:{UPLOAD_DIR}/{key_name}"})
        self._call("PUT", host, f"/mgmt/tm/sys/file/ssl-cert/{cert_name}", token=token, headers=dict(coord),
                   json={"sourcePath": f"file:{UPLOAD_DIR}/{cert_name}"})
        self._call("PATCH", host, f"/mgmt/tm/transaction/{tx_id}", token=token, json={"state": "VALIDATING"})

    def _point_profile(self, host: str, token: str, profile: str, cert_name: str, key_name: str) -> None:
        path = f"/mgmt/tm/ltm/profile/client-ssl/{profile}"
        if self._call("GET", host, path, token=token).status_code == 404:
            log.info("Creating SSL client profile %s on %s", profile, host)
            self._call("POST", host, "/mgmt/tm/ltm/profile/client-ssl", token=token, json={
                "name": profile, "cert": cert_name, "key": key_name, "defaultsFrom": "clientssl"})
        else:
            log.info("Updating SSL client profile %s on %s", profile, host)
            self._call("PATCH", host, path, token=token, json={"cert": cert_name, "key": key_name})

    def install(self, target: str, bundle: CertificateBundle, name: str) -> None:
        base = f"le_{name}"
        cert_name, key_name = f"{base}.crt", f"{base}.key"
        token = None
        try:
            token = self.login(target)
            self.upload(target, token, bundle.key, key_name)
            # the device serves what it is given; send leaf plus intermediates
            chain = b"" if bundle.chain == bundle.cert else bundle.chain
            self.upload(target, token, bundle.cert + chain, cert_name)
            self._replace_files(target, token, cert_name, key_name)
            self._point_profile(target, token, base, cert_name, key_name)
        except requests.RequestException as e:
            raise InstallFailed(f"{target}: {e}") from e
        finally:
            if token:
                self.logout(target, token)
        log.info("Installed %s on %s", name, target)
