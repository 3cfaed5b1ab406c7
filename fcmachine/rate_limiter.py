"""Token buckets and rate limiters for VMM devices."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Callable, Optional, Union

Duration = Union[timedelta, int, float]


@dataclass
class TokenBucket:
    """A token bucket: capacity, one-time burst and refill time in milliseconds."""

    size: Optional[int] = None
    one_time_burst: Optional[int] = None
    refill_time: Optional[int] = None

    def to_dict(self) -> dict:
        """Return the bucket as an API payload, leaving out unset fields."""
        values = {
            "size": self.size,
            "one_time_burst": self.one_time_burst,
            "refill_time": self.refill_time,
        }
        return {key: value for key, value in values.items() if value is not None}


@dataclass
class RateLimiter:
    """A pair of token buckets limiting bandwidth and operations."""

    bandwidth: Optional[TokenBucket] = None
    ops: Optional[TokenBucket] = None

    def to_dict(self) -> dict:
        """Return the limiter as an API payload, leaving out unset buckets."""
        payload = {}
        if self.bandwidth is not None:
            payload["bandwidth"] = self.bandwidth.to_dict()
        if self.ops is not None:
            payload["ops"] = self.ops.to_dict()
        return payload


RateLimiterOpt = Callable[[RateLimiter], None]


def new_rate_limiter(bandwidth: TokenBucket, ops: TokenBucket, *args: RateLimiterOpt) -> RateLimiter:
    """Build a rate limiter from two buckets, then apply each option to it."""
    limiter = RateLimiter(bandwidth=replace(bandwidth), ops=replace(ops))
    for opt in args:
        opt(limiter)
    return limiter


def _to_milliseconds(duration: Duration) -> int:
    if isinstance(duration, timedelta):
        micros = (duration.days * 86_400 + duration.seconds) * 1_000_000 + duration.microseconds
    else:
        micros = int(duration * 1_000_000)
    # Truncate toward zero.
    millis = abs(micros) // 1000
    return -millis if micros < 0 else millis


@dataclass(frozen=True)
class TokenBucketBuilder:
    """Immutable builder for TokenBucket; every method returns a new builder."""

    bucket: TokenBucket = field(default_factory=TokenBucket)

    def with_bucket_size(self, size: int) -> "TokenBucketBuilder":
        """Set the maximum number of tokens."""
        return TokenBucketBuilder(replace(self.bucket, size=size))

    def with_refill_duration(self, duration: Duration) -> "TokenBucketBuilder":
        """Set the refill time from a timedelta or a number of seconds."""
        return TokenBucketBuilder(replace(self.bucket, refill_time=_to_milliseconds(duration)))

    def with_initial_size(self, size: int) -> "TokenBucketBuilder":
        """Set the initial one-time burst of tokens."""
        return TokenBucketBuilder(replace(self.bucket, one_time_burst=size))

    def build(self) -> TokenBucket:
        """Return a new token bucket."""
        return replace(self.bucket)