# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Exception taxonomy for certificate issuance.

Every failure that can end a CertificateRequest maps to one of these classes.
The class ``code`` is what gets stored next to the human readable message, so
operators can tell "never issued" (FinalizeFailed) apart from "issued but not
saved" (PersistenceFailed) without parsing text.
"""


class CertPilotError(Exception):
    code = "CertPilotError"

    def __init__(self, detail: str = "", *, retryable: bool = False):
        self.detail = detail
        self.retryable = retryable
        super().__init__(detail)

    def describe(self) -> str:
        """Return the ``<Code>: <detail>`` form stored on the request."""
        if self.detail:
            return f"{self.code}: {self.detail}"
        return self.code


class ConfigError(CertPilotError):
    code = "ConfigError"


class CredentialsNotFound(CertPilotError):
    code = "CredentialsNotFound"


class ZoneNotFound(CertPilotError):
    code = "ZoneNotFound"


class DnsProviderError(CertPilotError):
    code = "DnsProviderError"


class ChallengeUnavailable(CertPilotError):
    code = "ChallengeUnavailable"


class PropagationTimeout(CertPilotError):
    code = "PropagationTimeout"


class OrderFailed(CertPilotError):
    code = "OrderFailed"


class ValidationFailed(CertPilotError):
    code = "ValidationFailed"


class FinalizeFailed(CertPilotError):
    code = "FinalizeFailed"


class PersistenceFailed(CertPilotError):
    code = "PersistenceFailed"


class CertificateNotFound(CertPilotError):
    code = "CertificateNotFound"


class IssuanceInProgress(CertPilotError):
    code = "IssuanceInProgress"


class IssuanceCancelled(CertPilotError):
    code = "IssuanceCancelled"


class InvalidTransition(CertPilotError):
    code = "InvalidTransition"


class InstallFailed(CertPilotError):
    code = "InstallFailed"


class TransientError(CertPilotError):
    """A network-level failure that is worth retrying with backoff."""
    code = "TransientError"

    def __init__(self, detail: str = "", *, retryable: bool = True):
        super().__init__(detail, retryable=retryable)
