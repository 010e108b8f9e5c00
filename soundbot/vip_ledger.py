"""VIP ledger — capacity-bounded, time-limited VIP membership.

Members join by purchase or by stealing a slot from someone else. Expiry is
lazy: expired records are ignored by every query and dropped the next time
the ledger is mutated (or swept by the scheduler).

The ledger is the single source of truth for capacity and duplicate checks;
it never consults the platform's own VIP list.
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum

from .utils import now_utc


@dataclass(frozen=True)
class VipRecord:
    username: str
    grant_date: datetime
    expiry_date: datetime

    @classmethod
    def grant(cls, username: str, now: datetime, duration_days: int) -> VipRecord:
        return cls(username, now, now + timedelta(days=duration_days))


def is_expired(record: VipRecord, now: datetime | None = None) -> bool:
    return (now or now_utc()) > record.expiry_date


class PurchaseStatus(Enum):
    GRANTED = "granted"
    RENEWED = "renewed"
    CAPACITY_REACHED = "capacity_reached"
    ALREADY_MEMBER = "already_member"


@dataclass(frozen=True)
class VipPurchaseResult:
    status: PurchaseStatus
    record: VipRecord | None = None

    @property
    def success(self) -> bool:
        return self.status in (PurchaseStatus.GRANTED, PurchaseStatus.RENEWED)


@dataclass(frozen=True)
class StealResult:
    success: bool
    victim: str | None = None
    roll: int = -1
    reason: str = ""


class VipLedger:
    """In-memory VIP membership with single-writer semantics."""

    def __init__(
        self,
        rng: random.Random | None = None,
        logger: logging.Logger | None = None,
        renew_on_repurchase: bool = True,
    ) -> None:
        self._rng = rng or random.Random()
        self._logger = logger or logging.getLogger("soundbot.vip")
        self._renew_on_repurchase = renew_on_repurchase
        self._lock = threading.Lock()
        # username_lower → record (keeps the original display casing inside)
        self._records: dict[str, VipRecord] = {}

    def configure(self, renew_on_repurchase: bool) -> None:
        self._renew_on_repurchase = renew_on_repurchase

    # ══════════════════════════════════════════════════════════
    #  Snapshot I/O
    # ══════════════════════════════════════════════════════════

    def load(self, records: list[VipRecord]) -> None:
        """Replace the ledger with a persisted snapshot."""
        table: dict[str, VipRecord] = {}
        for record in records:
            key = record.username.lower()
            if key in table:
                self._logger.warning("Duplicate VIP record for %s — keeping the later expiry", record.username)
                if table[key].expiry_date >= record.expiry_date:
                    continue
            table[key] = record
        with self._lock:
            self._records = table
        self._logger.info("Loaded %d VIP record(s)", len(table))

    def snapshot(self) -> list[VipRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.grant_date)

    # ══════════════════════════════════════════════════════════
    #  Queries
    # ══════════════════════════════════════════════════════════

    def members(self, now: datetime | None = None) -> list[VipRecord]:
        now = now or now_utc()
        with self._lock:
            return [r for r in self._records.values() if not is_expired(r, now)]

    def is_member(self, username: str, now: datetime | None = None) -> bool:
        now = now or now_utc()
        with self._lock:
            record = self._records.get(username.lower())
        return record is not None and not is_expired(record, now)

    def get(self, username: str) -> VipRecord | None:
        with self._lock:
            return self._records.get(username.lower())

    def __len__(self) -> int:
        return len(self.members())

    # ══════════════════════════════════════════════════════════
    #  Mutations
    # ══════════════════════════════════════════════════════════

    def _purge_expired_locked(self, now: datetime) -> list[VipRecord]:
        expired = [r for r in self._records.values() if is_expired(r, now)]
        for record in expired:
            del self._records[record.username.lower()]
        return expired

    def sweep(self, now: datetime | None = None) -> list[VipRecord]:
        """Drop expired records eagerly; returns what was removed."""
        now = now or now_utc()
        with self._lock:
            expired = self._purge_expired_locked(now)
        if expired:
            self._logger.info(
                "Expired VIP: %s", ", ".join(r.username for r in expired),
            )
        return expired

    def purchase(
        self,
        username: str,
        duration_days: int,
        capacity: int,
        now: datetime | None = None,
    ) -> VipPurchaseResult:
        now = now or now_utc()
        key = username.lower()
        with self._lock:
            self._purge_expired_locked(now)

            existing = self._records.get(key)
            if existing is not None:
                if not self._renew_on_repurchase:
                    self._logger.info("%s is already VIP", username)
                    return VipPurchaseResult(PurchaseStatus.ALREADY_MEMBER, existing)
                renewed = replace(
                    existing,
                    grant_date=now,
                    expiry_date=now + timedelta(days=duration_days),
                )
                self._records[key] = renewed
                self._logger.info("%s renewed VIP for %d days", username, duration_days)
                return VipPurchaseResult(PurchaseStatus.RENEWED, renewed)

            if len(self._records) >= capacity:
                self._logger.info("No free VIP slots for %s (%d/%d)", username, len(self._records), capacity)
                return VipPurchaseResult(PurchaseStatus.CAPACITY_REACHED)

            record = VipRecord.grant(username, now, duration_days)
            self._records[key] = record
        self._logger.info("%s became VIP for %d days", username, duration_days)
        return VipPurchaseResult(PurchaseStatus.GRANTED, record)

    def steal(
        self,
        thief: str,
        success_chance_percent: int,
        duration_days: int,
        now: datetime | None = None,
    ) -> StealResult:
        """Try to take a random member's slot.

        The chance roll always happens first so a seeded generator gives
        reproducible sequences whether or not there is anyone to rob.
        """
        now = now or now_utc()
        thief_key = thief.lower()
        with self._lock:
            roll = self._rng.randrange(100)
            if roll >= success_chance_percent:
                self._logger.info(
                    "%s failed to steal VIP (roll %d, chance %d%%)", thief, roll, success_chance_percent,
                )
                return StealResult(False, roll=roll, reason="chance")

            self._purge_expired_locked(now)
            candidates = [r for k, r in self._records.items() if k != thief_key]
            if not candidates:
                self._logger.info("%s rolled a steal but there is nobody to rob", thief)
                return StealResult(False, roll=roll, reason="no_victims")

            victim = candidates[self._rng.randrange(len(candidates))]
            del self._records[victim.username.lower()]

            existing = self._records.get(thief_key)
            if existing is not None:
                self._records[thief_key] = replace(
                    existing,
                    grant_date=now,
                    expiry_date=now + timedelta(days=duration_days),
                )
            else:
                self._records[thief_key] = VipRecord.grant(thief, now, duration_days)

        self._logger.info("%s stole VIP from %s", thief, victim.username)
        return StealResult(True, victim=victim.username, roll=roll)
