# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Poll public resolvers until a challenge TXT record becomes visible.

The check runs against several independent recursive resolvers rather than
the authoritative server: the CA validates through its own resolvers, and a
value that only the primary serves is not yet good enough.

wait_for_txt() returns False when the attempts run out. Whether to go ahead
anyway is the caller's decision.
"""
from typing import Callable, Iterable, List, Optional
import logging
import threading

import dns.exception
import dns.name
import dns.resolver

from .retry import sleep_or_cancel

log = logging.getLogger(__name__)

DEFAULT_RESOLVERS = ("8.8.8.8", "1.1.1.1", "9.9.9.9")

# record not visible yet: keep polling
_NOT_YET = (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers,
            dns.resolver.LifetimeTimeout, dns.exception.Timeout)

# the name itself is broken: polling cannot help
_MALFORMED = (dns.name.EmptyLabel, dns.name.LabelTooLong, dns.name.NameTooLong,
              dns.name.BadEscape, dns.exception.SyntaxError)


def _make_resolver(nameserver: str, timeout: float) -> dns.resolver.Resolver:
    resolver = dns.resolver.Resolver(configure=False)
    resolver.nameservers = [nameserver]
    resolver.timeout = timeout
    resolver.lifetime = timeout
    resolver.cache = None
    return resolver


def txt_values(answer) -> List[str]:
    """Concatenate the character-strings of each TXT rdata."""
    values = []
    for rdata in answer:
        values.append(b"".join(rdata.strings).decode("utf-8", errors="replace"))
    return values


class PropagationVerifier:

    def __init__(self, nameservers: Iterable[str] = DEFAULT_RESOLVERS,
                 timeout: float = 5.0,
                 require_all: bool = True,
                 resolver_factory: Optional[Callable[[str, float], object]] = None):
        self.nameservers = list(nameservers)
        if not self.nameservers:
            raise ValueError("at least one resolver is required")
        self.timeout = timeout
        self.require_all = require_all
        self._resolver_factory = resolver_factory or _make_resolver

    def _visible_at(self, nameserver: str, name: str, expected: str) -> bool:
        resolver = self._resolver_factory(nameserver, self.timeout)
        try:
            answer = resolver.resolve(name, "TXT")
        except _NOT_YET as e:
            log.debug("TXT %s not visible at %s yet: %s", name, nameserver, e.__class__.__name__)
            return False
        except _MALFORMED:
            raise
        except dns.exception.DNSException as e:
            # e.g. YXDOMAIN or a bad response from this resolver; try again later
            log.debug("TXT %s lookup at %s failed: %s", name, nameserver, e)
            return False
        return expected in txt_values(answer)

    def check(self, name: str, expected: str) -> bool:
        """One round across every resolver."""
        seen = [self._visible_at(ns, name, expected) for ns in self.nameservers]
        return all(seen) if self.require_all else any(seen)

    def wait_for_txt(self, name: str, expected: str, max_attempts: int = 10,
                     interval: float = 15.0, cancel: Optional[threading.Event] = None) -> bool:
        """Poll up to ``max_attempts`` times, ``interval`` seconds apart."""
        for attempt in range(1, max_attempts + 1):
            try:
                if self.check(name, expected):
                    log.info("TXT %s visible after %d attempt(s)", name, attempt)
                    return True
            except _MALFORMED as e:
                log.error("Cannot query TXT %s: %s", name, e)
                return False
            if attempt < max_attempts:
                log.debug("TXT %s not propagated (attempt %d/%d), waiting %ss", name, attempt, max_attempts, interval)
                sleep_or_cancel(interval, cancel)
        log.warning("TXT %s not visible after %d attempts", name, max_attempts)
        return False
