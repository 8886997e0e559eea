# Copyright (c) 2025 Tim Riker
# SPDX-License-Identifier: MIT
"""Ledger of challenge TXT records that are currently published.

DNS providers are not transactional: a crash between publishing a record and
cleaning it up leaves an orphan behind. Each record is written here before it
is published and dropped after it is deleted, so the next start can sweep
whatever is left over.
"""
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
import logging
import os
import tempfile
import threading

import yaml

from .models import DnsChallengeRecord, ZoneHandle, utcnow

log = logging.getLogger(__name__)


class ChallengeLedger:

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.Lock()
        self._entries: List[dict] = self._read()

    def _read(self) -> List[dict]:
        if not self.path or not os.path.exists(self.path):
            return []
        with open(self.path, "r") as f:
            data = yaml.safe_load(f) or {}
        return list(data.get("challenges") or [])

    def _flush(self) -> None:
        if not self.path:
            return
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".ledger-")
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump({"challenges": self._entries}, f, default_flow_style=False)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    @staticmethod
    def _matches(entry: dict, record: DnsChallengeRecord) -> bool:
        return (entry["name"] == record.name and entry["value"] == record.value
                and entry["zone_id"] == record.zone.id)

    def record(self, tenant_id: str, record: DnsChallengeRecord, now: Optional[datetime] = None) -> None:
        with self._lock:
            if any(self._matches(e, record) for e in self._entries):
                return
            self._entries.append({
                "tenant_id": tenant_id,
                "name": record.name,
                "value": record.value,
                "zone_id": record.zone.id,
                "zone_name": record.zone.name,
                "published_at": (now or utcnow()).isoformat(),
            })
            self._flush()

    def remove(self, record: DnsChallengeRecord) -> None:
        with self._lock:
            kept = [e for e in self._entries if not self._matches(e, record)]
            if len(kept) != len(self._entries):
                self._entries = kept
                self._flush()

    def entries(self) -> List[Tuple[str, DnsChallengeRecord, datetime]]:
        with self._lock:
            out = []
            for e in self._entries:
                rec = DnsChallengeRecord(name=e["name"], value=e["value"],
                                         zone=ZoneHandle(id=e["zone_id"], name=e["zone_name"]))
                out.append((e["tenant_id"], rec, datetime.fromisoformat(e["published_at"])))
            return out

    def stale(self, max_age: timedelta, now: Optional[datetime] = None) -> List[Tuple[str, DnsChallengeRecord]]:
        cutoff = (now or utcnow()) - max_age
        return [(tenant, rec) for tenant, rec, published in self.entries() if published < cutoff]
