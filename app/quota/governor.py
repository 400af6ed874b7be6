"""
Quota governor for upstream requests.

Two layers of throttling plus adaptive backoff:
1. Token bucket: 60 requests/minute, refilled lazily at 1 token/second
2. Daily budget: soft cap, hard cap, and named per-category buckets
3. Backoff after upstream errors (429, 403, timeouts, 5xx), escalating when
   errors keep coming

Nothing runs in the background: refill, daily reset and backoff expiry are
all evaluated lazily on each call. Thread-safe via a single lock.
"""
import json
import logging
import math
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional

from app.cache.core import utc_today

logger = logging.getLogger("quota.governor")

RESERVE_BUCKET = "reserve"


class BackoffClass(Enum):
    """Category of upstream failure, each with its own escalation curve."""
    RATE_LIMITED = "rate_limited"            # 429
    FORBIDDEN = "forbidden"                  # 403
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"            # 5xx
    CONSECUTIVE_ERRORS = "consecutive_errors"


@dataclass(frozen=True)
class BackoffCurve:
    initial_ms: int
    max_ms: int


DEFAULT_BACKOFF_CURVES: Dict[BackoffClass, BackoffCurve] = {
    BackoffClass.RATE_LIMITED: BackoffCurve(30_000, 300_000),
    BackoffClass.FORBIDDEN: BackoffCurve(60_000, 600_000),
    BackoffClass.TIMEOUT: BackoffCurve(15_000, 120_000),
    BackoffClass.SERVER_ERROR: BackoffCurve(30_000, 300_000),
    BackoffClass.CONSECUTIVE_ERRORS: BackoffCurve(60_000, 600_000),
}


@dataclass(frozen=True)
class BudgetBucket:
    """Named slice of the daily budget."""
    name: str
    daily_limit: int
    is_protected: bool = False


DEFAULT_BUCKETS: Dict[str, BudgetBucket] = {
    "scoreboard": BudgetBucket("scoreboard", 300, True),
    "game_summary": BudgetBucket("game_summary", 600, True),
    "standings": BudgetBucket("standings", 1, True),
    "schedule": BudgetBucket("schedule", 0, False),
    RESERVE_BUCKET: BudgetBucket(RESERVE_BUCKET, 1099, False),
}


@dataclass
class QuotaConfig:
    capacity: int = 60
    refill_per_second: int = 1
    daily_soft_cap: int = 2000
    daily_hard_cap: int = 2200
    warning_threshold: int = 1800
    buckets: Dict[str, BudgetBucket] = field(default_factory=lambda: dict(DEFAULT_BUCKETS))
    backoff_curves: Dict[BackoffClass, BackoffCurve] = field(
        default_factory=lambda: dict(DEFAULT_BACKOFF_CURVES)
    )
    consecutive_error_threshold: int = 3
    successes_to_halve_backoff: int = 5
    full_reset_after_ms: int = 600_000

    @classmethod
    def from_settings(cls, settings: Any) -> "QuotaConfig":
        protected = set(settings.protected_buckets)
        buckets = {
            name: BudgetBucket(name, limit, name in protected)
            for name, limit in settings.bucket_limits.items()
        }
        if RESERVE_BUCKET not in buckets:
            buckets[RESERVE_BUCKET] = BudgetBucket(RESERVE_BUCKET, 0, False)

        def curve(prefix: str) -> BackoffCurve:
            return BackoffCurve(
                getattr(settings, f"backoff_{prefix}_initial_ms"),
                getattr(settings, f"backoff_{prefix}_max_ms"),
            )

        return cls(
            capacity=settings.token_bucket_capacity,
            refill_per_second=settings.token_refill_per_second,
            daily_soft_cap=settings.daily_soft_cap,
            daily_hard_cap=settings.daily_hard_cap,
            warning_threshold=settings.daily_warning_threshold,
            buckets=buckets,
            backoff_curves={
                BackoffClass.RATE_LIMITED: curve("rate_limited"),
                BackoffClass.FORBIDDEN: curve("forbidden"),
                BackoffClass.TIMEOUT: curve("timeout"),
                BackoffClass.SERVER_ERROR: curve("server_error"),
                BackoffClass.CONSECUTIVE_ERRORS: curve("consecutive"),
            },
            consecutive_error_threshold=settings.consecutive_error_threshold,
            successes_to_halve_backoff=settings.successes_to_halve_backoff,
            full_reset_after_ms=settings.backoff_full_reset_after_ms,
        )


@dataclass
class QuotaState:
    """Everything the governor tracks; serializable across restarts."""
    tokens: float
    last_refill: float  # epoch seconds
    daily_used: int
    last_reset_date: str  # YYYY-MM-DD, UTC
    bucket_usage: Dict[str, int]
    backoff_until: Optional[float] = None  # epoch seconds
    consecutive_errors: int = 0
    current_backoff_ms: int = 0
    consecutive_successes: int = 0
    last_error_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuotaState":
        return cls(
            tokens=float(data["tokens"]),
            last_refill=float(data["last_refill"]),
            daily_used=int(data["daily_used"]),
            last_reset_date=str(data["last_reset_date"]),
            bucket_usage={k: int(v) for k, v in data.get("bucket_usage", {}).items()},
            backoff_until=data.get("backoff_until"),
            consecutive_errors=int(data.get("consecutive_errors", 0)),
            current_backoff_ms=int(data.get("current_backoff_ms", 0)),
            consecutive_successes=int(data.get("consecutive_successes", 0)),
            last_error_at=data.get("last_error_at"),
        )


@dataclass
class QuotaDecision:
    """Result of can_make_request()."""
    allowed: bool
    reason: Optional[str] = None
    retry_after_ms: Optional[int] = None
    blocked_by: Optional[str] = None  # backoff, tokens, hard_cap, bucket, soft_cap


def classify_error(
    status_code: int,
    is_timeout: bool,
    consecutive_errors: int,
    consecutive_threshold: int = 3,
) -> Optional[BackoffClass]:
    """
    Map an upstream failure to a backoff class.

    Returns None for failures that should not trigger backoff (e.g. 404).
    Once consecutive_errors reaches the threshold, any backoff-worthy error
    escalates to CONSECUTIVE_ERRORS.
    """
    if is_timeout:
        backoff_class = BackoffClass.TIMEOUT
    elif status_code == 429:
        backoff_class = BackoffClass.RATE_LIMITED
    elif status_code == 403:
        backoff_class = BackoffClass.FORBIDDEN
    elif status_code >= 500:
        backoff_class = BackoffClass.SERVER_ERROR
    else:
        return None

    if consecutive_errors >= consecutive_threshold:
        return BackoffClass.CONSECUTIVE_ERRORS
    return backoff_class


def next_backoff_ms(previous_ms: int, curve: BackoffCurve) -> int:
    """Initial magnitude on the first error, then doubling up to the max."""
    if previous_ms == 0:
        return curve.initial_ms
    return min(previous_ms * 2, curve.max_ms)


def _iso(epoch: Optional[float]) -> Optional[str]:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, timezone.utc).isoformat().replace("+00:00", "Z")


class QuotaGovernor:
    """
    Process-wide quota tracker for the upstream provider.

    Construct one at startup and inject it wherever upstream calls are made.
    All state changes go through can_make_request / record_request /
    record_success / record_error.
    """

    def __init__(
        self,
        config: Optional[QuotaConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or QuotaConfig()
        self._clock = clock
        self._lock = Lock()
        self._warned_date: Optional[str] = None
        self._state = self._initial_state()

    def _initial_state(self) -> QuotaState:
        now = self._clock()
        return QuotaState(
            tokens=float(self.config.capacity),
            last_refill=now,
            daily_used=0,
            last_reset_date=utc_today(now),
            bucket_usage={name: 0 for name in self.config.buckets},
        )

    def _bucket(self, name: str) -> BudgetBucket:
        bucket = self.config.buckets.get(name)
        if bucket is None:
            logger.debug(f"Unknown bucket '{name}', charging reserve")
            bucket = self.config.buckets[RESERVE_BUCKET]
        return bucket

    # ------------------------------------------------------------------
    # Lazy maintenance (lock must be held)
    # ------------------------------------------------------------------

    def _refill_tokens(self, now: float) -> None:
        elapsed = now - self._state.last_refill
        if elapsed < 0:
            # Clock went backwards; restart the refill interval
            self._state.last_refill = now
            return
        tokens_to_add = math.floor(elapsed) * self.config.refill_per_second
        if tokens_to_add > 0:
            self._state.tokens = min(
                float(self.config.capacity), self._state.tokens + tokens_to_add
            )
            self._state.last_refill = now - (elapsed % 1.0)

    def _reset_if_new_day(self, now: float) -> None:
        today = utc_today(now)
        if self._state.last_reset_date == today:
            return
        logger.info(
            f"New UTC day detected ({self._state.last_reset_date} -> {today}), "
            f"resetting daily quota (previous usage: {self._state.daily_used})"
        )
        self._state.daily_used = 0
        self._state.last_reset_date = today
        self._state.bucket_usage = {name: 0 for name in self.config.buckets}

    def _check_backoff_expiry(self, now: float) -> None:
        if self._state.backoff_until is not None and now >= self._state.backoff_until:
            logger.info("Backoff period expired")
            self._state.backoff_until = None

        last_error = self._state.last_error_at
        if last_error is not None and (now - last_error) * 1000 > self.config.full_reset_after_ms:
            self._state.consecutive_errors = 0
            self._state.current_backoff_ms = 0
            self._state.last_error_at = None
            logger.debug("Error state fully reset after quiet period")

    def _maintain(self, now: float) -> None:
        self._reset_if_new_day(now)
        self._refill_tokens(now)
        self._check_backoff_expiry(now)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def can_make_request(self, bucket: str) -> QuotaDecision:
        """
        Check whether a request charged to `bucket` may go upstream now.

        Gates, in order: active backoff, token bucket, daily hard cap, bucket
        limit, daily soft cap (non-protected buckets only).
        """
        with self._lock:
            now = self._clock()
            self._maintain(now)
            state = self._state

            if state.backoff_until is not None:
                retry_after_ms = int(math.ceil((state.backoff_until - now) * 1000))
                if retry_after_ms > 0:
                    return QuotaDecision(
                        allowed=False,
                        reason="Adaptive backoff active due to upstream errors",
                        retry_after_ms=retry_after_ms,
                        blocked_by="backoff",
                    )

            if state.tokens < 1:
                ms_until_next = int(1000 - (now - state.last_refill) * 1000)
                return QuotaDecision(
                    allowed=False,
                    reason=f"Per-minute rate limit exhausted ({self.config.capacity}/min)",
                    retry_after_ms=max(ms_until_next, 100),
                    blocked_by="tokens",
                )

            if state.daily_used >= self.config.daily_hard_cap:
                return QuotaDecision(
                    allowed=False,
                    reason=f"Daily hard cap exhausted ({self.config.daily_hard_cap}/day)",
                    blocked_by="hard_cap",
                )

            config = self._bucket(bucket)
            if state.bucket_usage.get(config.name, 0) >= config.daily_limit:
                return QuotaDecision(
                    allowed=False,
                    reason=f"Bucket '{config.name}' daily limit ({config.daily_limit}) exhausted",
                    blocked_by="bucket",
                )

            if state.daily_used >= self.config.daily_soft_cap and not config.is_protected:
                return QuotaDecision(
                    allowed=False,
                    reason=(
                        f"Daily soft cap reached ({self.config.daily_soft_cap}), "
                        f"non-protected bucket '{config.name}' blocked"
                    ),
                    blocked_by="soft_cap",
                )

            if state.daily_used >= self.config.warning_threshold and self._warned_date != state.last_reset_date:
                self._warned_date = state.last_reset_date
                logger.warning(
                    f"Approaching daily soft cap: {state.daily_used}/{self.config.daily_soft_cap}"
                )

            return QuotaDecision(allowed=True)

    def record_request(self, bucket: str) -> None:
        """Charge one request. Call only after can_make_request() allowed it."""
        with self._lock:
            now = self._clock()
            self._reset_if_new_day(now)
            self._refill_tokens(now)

            name = self._bucket(bucket).name
            self._state.tokens = max(0.0, self._state.tokens - 1)
            self._state.daily_used += 1
            self._state.bucket_usage[name] = self._state.bucket_usage.get(name, 0) + 1

            logger.debug(
                f"Request recorded: bucket={name} tokens={self._state.tokens:.0f} "
                f"daily={self._state.daily_used} bucket_used={self._state.bucket_usage[name]}"
            )

    def record_success(self) -> None:
        with self._lock:
            self._state.consecutive_successes += 1
            self._state.consecutive_errors = 0

            if self._state.consecutive_successes >= self.config.successes_to_halve_backoff:
                if self._state.current_backoff_ms > 0:
                    self._state.current_backoff_ms //= 2
                    logger.debug(
                        f"Halved backoff after consecutive successes: {self._state.current_backoff_ms}ms"
                    )
                self._state.consecutive_successes = 0

    def record_error(self, status_code: int, is_timeout: bool = False) -> Optional[BackoffClass]:
        """
        Record an upstream failure and start or extend the backoff window.

        Returns the backoff class applied, or None if the error does not
        trigger backoff.
        """
        with self._lock:
            now = self._clock()
            self._check_backoff_expiry(now)
            state = self._state
            state.consecutive_successes = 0
            state.consecutive_errors += 1
            state.last_error_at = now

            backoff_class = classify_error(
                status_code,
                is_timeout,
                state.consecutive_errors,
                self.config.consecutive_error_threshold,
            )
            if backoff_class is None:
                return None

            curve = self.config.backoff_curves[backoff_class]
            state.current_backoff_ms = next_backoff_ms(state.current_backoff_ms, curve)
            state.backoff_until = now + state.current_backoff_ms / 1000

            logger.warning(
                f"Backoff triggered: status={status_code} timeout={is_timeout} "
                f"class={backoff_class.value} backoff={state.current_backoff_ms}ms "
                f"until={_iso(state.backoff_until)} consecutive_errors={state.consecutive_errors}"
            )
            return backoff_class

    @property
    def current_backoff_ms(self) -> int:
        with self._lock:
            return self._state.current_backoff_ms

    def get_status(self) -> Dict[str, Any]:
        """Snapshot for the health endpoint."""
        with self._lock:
            now = self._clock()
            self._maintain(now)
            state = self._state

            buckets = {}
            for name, bucket in self.config.buckets.items():
                used = state.bucket_usage.get(name, 0)
                buckets[name] = {
                    "used": used,
                    "limit": bucket.daily_limit,
                    "remaining": max(0, bucket.daily_limit - used),
                    "protected": bucket.is_protected,
                }

            return {
                "token_bucket": {
                    "tokens": int(state.tokens),
                    "capacity": self.config.capacity,
                },
                "daily": {
                    "used": state.daily_used,
                    "soft_cap": self.config.daily_soft_cap,
                    "hard_cap": self.config.daily_hard_cap,
                    "remaining": max(0, self.config.daily_soft_cap - state.daily_used),
                },
                "buckets": buckets,
                "backoff": {
                    "active": state.backoff_until is not None and state.backoff_until > now,
                    "until": _iso(state.backoff_until),
                    "consecutive_errors": state.consecutive_errors,
                    "current_backoff_ms": state.current_backoff_ms,
                },
                "last_reset_date": state.last_reset_date,
            }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return self._state.to_dict()

    def from_dict(self, data: Dict[str, Any]) -> None:
        state = QuotaState.from_dict(data)
        state.tokens = min(float(self.config.capacity), max(0.0, state.tokens))
        for name in self.config.buckets:
            state.bucket_usage.setdefault(name, 0)
        with self._lock:
            self._state = state
            self._reset_if_new_day(self._clock())

    def save_state(self, path: Path) -> bool:
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
        except OSError as e:
            logger.error(f"Failed to save quota state to {path}: {e}")
            return False
        logger.info(f"Saved quota state to {path}")
        return True

    def load_state(self, path: Path) -> bool:
        path = Path(path)
        if not path.exists():
            return False
        try:
            with open(path, "r", encoding="utf-8") as f:
                self.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable quota state {path}: {e}")
            return False
        logger.info(f"Restored quota state from {path}")
        return True
