"""Candidate queue: dedup, priority order and rejection cooldowns for discovered tokens."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

import config
from utils.addressing import normalize_mint, short_mint

logger = logging.getLogger(__name__)

STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_REJECTED = "rejected"
STATUS_PROCESSED = "processed"

EXITED_PREFIX = "exited_"
RECENTLY_TRADED_REASON = "recently_traded_startup"


@dataclass
class Candidate:
    """A discovered token. Market fields are a prioritization snapshot, not ground truth."""

    mint: str
    symbol: str
    discovered_at: float = field(default_factory=time.time)
    age_minutes: float | None = None
    bonding_progress: float | None = None
    market_cap: float | None = None
    trade_count: int | None = None
    has_socials: bool = False
    priority: float | None = None
    source: str = "poll"


@dataclass
class QueueEntry:
    candidate: Candidate
    priority: float
    seq: int
    status: str = STATUS_QUEUED
    added_at: float = 0.0
    rejected_at: float | None = None
    reject_reason: str = ""


@dataclass
class RejectionRecord:
    timestamp: float
    reason: str

    @property
    def exited(self) -> bool:
        return self.reason.startswith(EXITED_PREFIX)


def compute_priority(candidate: Candidate) -> float:
    """Score 0..100 from the snapshot; bonding progress near 47.5% ranks highest."""
    priority = 50.0
    progress = candidate.bonding_progress
    if progress is not None:
        if 25.0 <= progress <= 70.0:
            priority = 100.0 - abs(progress - 47.5)
        elif progress < 25.0:
            priority = 30.0 + progress
        else:
            priority = 30.0 + (100.0 - progress)

    mcap = candidate.market_cap or 0.0
    if mcap >= 20_000:
        priority += 10
    elif mcap >= 15_000:
        priority += 5

    trades = candidate.trade_count or 0
    if trades >= 20:
        priority += 5
    elif trades >= 10:
        priority += 2

    if candidate.has_socials:
        priority += 3
    return max(0.0, min(100.0, priority))


class CandidateQueue:
    """Priority queue of candidates with a per-mint rejection cooldown.

    At most one live entry (queued or processing) exists per mint. Ordering is
    priority descending, ties broken by insertion order. When full, the
    lowest-priority queued entry is evicted (newest loses a tie), and a new
    candidate that would itself be the lowest is refused.
    """

    def __init__(
        self,
        max_size: int | None = None,
        cooldown_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._max_size = max_size
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._entries: dict[str, QueueEntry] = {}
        self._rejections: dict[str, RejectionRecord] = {}
        self._processed: set[str] = set()
        self._seq = 0
        self.total_added = 0
        self.total_evicted = 0

    @property
    def max_size(self) -> int:
        if self._max_size is not None:
            return max(1, int(self._max_size))
        return max(1, int(getattr(config, "QUEUE_MAX_SIZE", 50)))

    @property
    def cooldown_seconds(self) -> float:
        if self._cooldown_seconds is not None:
            return max(0.0, float(self._cooldown_seconds))
        return max(0.0, float(getattr(config, "QUEUE_COOLDOWN_MINUTES", 15.0)) * 60.0)

    def _queued(self) -> list[QueueEntry]:
        return [e for e in self._entries.values() if e.status == STATUS_QUEUED]

    @staticmethod
    def _rank(entry: QueueEntry) -> tuple[float, int]:
        # max() over this key picks highest priority, then lowest seq.
        return (entry.priority, -entry.seq)

    def _rejection_active(self, mint: str, now: float) -> bool:
        record = self._rejections.get(mint)
        if record is None:
            return False
        if now - record.timestamp >= self.cooldown_seconds:
            del self._rejections[mint]
            return False
        return True

    def add(self, candidate: Candidate) -> bool:
        mint = normalize_mint(candidate.mint)
        if not mint:
            return False
        candidate.mint = mint
        now = self._clock()
        if mint in self._processed:
            return False
        if self._rejection_active(mint, now):
            return False
        existing = self._entries.get(mint)
        if existing is not None:
            if existing.status == STATUS_QUEUED:
                existing.candidate = candidate
            return False

        priority = candidate.priority if candidate.priority is not None else compute_priority(candidate)
        self._seq += 1
        entry = QueueEntry(candidate=candidate, priority=float(priority), seq=self._seq, added_at=now)

        queued = self._queued()
        if len(queued) >= self.max_size:
            worst = min(queued, key=self._rank)
            if self._rank(entry) <= self._rank(worst):
                logger.debug("QUEUE_FULL_DROP mint=%s priority=%.1f", short_mint(mint), entry.priority)
                return False
            del self._entries[worst.candidate.mint]
            self.total_evicted += 1
            logger.debug(
                "QUEUE_EVICT mint=%s priority=%.1f for=%s",
                short_mint(worst.candidate.mint),
                worst.priority,
                short_mint(mint),
            )

        self._entries[mint] = entry
        self.total_added += 1
        logger.debug("QUEUE_ADD symbol=%s mint=%s priority=%.1f", candidate.symbol, short_mint(mint), entry.priority)
        return True

    def get_next(self) -> Candidate | None:
        self.cleanup_expired_rejections()
        queued = self._queued()
        if not queued:
            return None
        best = max(queued, key=self._rank)
        best.status = STATUS_PROCESSING
        return best.candidate

    def peek(self) -> Candidate | None:
        queued = self._queued()
        if not queued:
            return None
        return max(queued, key=self._rank).candidate

    def get_all_queued(self) -> list[Candidate]:
        return [e.candidate for e in sorted(self._queued(), key=self._rank, reverse=True)]

    def mark_processed(self, mint: str) -> None:
        mint = normalize_mint(mint)
        self._entries.pop(mint, None)
        self._rejections.pop(mint, None)
        self._processed.add(mint)

    def mark_rejected(self, mint: str, reason: str) -> None:
        mint = normalize_mint(mint)
        now = self._clock()
        entry = self._entries.pop(mint, None)
        if entry is not None:
            entry.status = STATUS_REJECTED
            entry.rejected_at = now
            entry.reject_reason = reason
        self._rejections[mint] = RejectionRecord(timestamp=now, reason=str(reason))
        if reason.startswith(EXITED_PREFIX):
            # A finished trade re-enters through the exit cooldown.
            self._processed.discard(mint)
        logger.debug("QUEUE_REJECT mint=%s reason=%s", short_mint(mint), reason)

    def mark_recently_traded(self, mints: list[str] | set[str]) -> int:
        count = 0
        for mint in mints:
            if normalize_mint(mint):
                self.mark_rejected(mint, RECENTLY_TRADED_REASON)
                count += 1
        return count

    def release(self, mint: str) -> None:
        """Return a processing entry to the queue (transient skip)."""
        entry = self._entries.get(normalize_mint(mint))
        if entry is not None and entry.status == STATUS_PROCESSING:
            entry.status = STATUS_QUEUED

    def discard(self, mint: str) -> None:
        """Drop a live entry without a cooldown so rediscovery can re-add it."""
        self._entries.pop(normalize_mint(mint), None)

    def cleanup_expired_rejections(self) -> int:
        now = self._clock()
        cooldown = self.cooldown_seconds
        expired = [mint for mint, rec in self._rejections.items() if now - rec.timestamp >= cooldown]
        for mint in expired:
            del self._rejections[mint]
        if expired:
            logger.debug("QUEUE_COOLDOWN_EXPIRED count=%s", len(expired))
        return len(expired)

    def is_queued(self, mint: str) -> bool:
        return normalize_mint(mint) in self._entries

    def is_rejected(self, mint: str) -> bool:
        return self._rejection_active(normalize_mint(mint), self._clock())

    def rejection_for(self, mint: str) -> RejectionRecord | None:
        mint = normalize_mint(mint)
        if not self._rejection_active(mint, self._clock()):
            return None
        return self._rejections.get(mint)

    def get_stats(self) -> dict[str, object]:
        queued = self._queued()
        top = max(queued, key=self._rank) if queued else None
        now = self._clock()
        cooldown = self.cooldown_seconds
        return {
            "queue_size": len(queued),
            "processing": sum(1 for e in self._entries.values() if e.status == STATUS_PROCESSING),
            "active_rejections": sum(1 for r in self._rejections.values() if now - r.timestamp < cooldown),
            "processed": len(self._processed),
            "total_added": self.total_added,
            "total_evicted": self.total_evicted,
            "top_symbol": top.candidate.symbol if top else None,
            "top_mint": top.candidate.mint if top else None,
            "top_priority": round(top.priority, 2) if top else None,
        }

    def reset(self) -> None:
        """Forget processed mints; queue and cooldowns stay."""
        self._processed.clear()

    def clear(self) -> None:
        self._entries.clear()
        self._rejections.clear()
        self._processed.clear()
