"""
Pose History Buffer.

Bounded, time-ordered cache of the estimator's own poses (T_M_I), queryable
by timestamp with interpolation.

A failed lookup distinguishes two cases so the caller can choose between
retrying and giving up:
- NOT_YET_AVAILABLE: the timestamp is newer than the newest pose
- NEVER_AVAILABLE: the timestamp fell out of the retention window, predates
  the oldest retained pose, or lies further than the propagation horizon
  from any real sample

Thread model: insert() is called from the estimator output thread and
lookup() from the localization thread. The lock only guards the copy of the
two bracketing samples; interpolation runs outside it.
"""

import bisect
import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import Deque, Optional

from violoc_core.proto.pose_sample import PoseSample
from violoc_core.proto.transformation import Transformation
from violoc_core.localization.clock_aligner import seconds_to_nanoseconds
from violoc_core.metrics import get_metrics

logger = logging.getLogger(__name__)


class LookupStatus(IntEnum):
    """Outcome of a pose lookup."""
    
    AVAILABLE = 0
    NOT_YET_AVAILABLE = 1
    NEVER_AVAILABLE = 2


@dataclass(frozen=True)
class PoseLookupResult:
    """
    Result of PoseLookupBuffer.lookup().
    
    Attributes:
        status: Lookup outcome
        T_M_I: Pose at the requested time (None unless AVAILABLE)
        interpolated: True if the pose was interpolated between two samples
    """
    
    status: LookupStatus
    T_M_I: Optional[Transformation] = None
    interpolated: bool = False
    
    @property
    def is_available(self) -> bool:
        return self.status == LookupStatus.AVAILABLE


@dataclass
class PoseBufferConfig:
    """
    Configuration for the pose history buffer.
    
    Attributes:
        retention_ns: History kept behind the newest sample (ns)
        max_propagation_ns: Max distance from the nearest real sample at
            which a pose may be interpolated (ns)
    """
    
    retention_ns: int = seconds_to_nanoseconds(30.0)
    max_propagation_ns: int = seconds_to_nanoseconds(1.0)
    
    def __post_init__(self):
        """Validate configuration."""
        assert self.retention_ns > 0, "retention must be positive"
        assert self.max_propagation_ns >= 0, "max_propagation cannot be negative"


class PoseLookupBuffer:
    """
    Thread-safe pose history with interpolated lookups.
    
    Usage:
        buffer = PoseLookupBuffer(PoseBufferConfig())
        buffer.insert(PoseSample(t_ns, T_M_I))
        
        result = buffer.lookup(t_query_ns)
        if result.is_available:
            T_M_I = result.T_M_I
        elif result.status == LookupStatus.NOT_YET_AVAILABLE:
            ...  # retry later
    """
    
    def __init__(self, config: Optional[PoseBufferConfig] = None):
        """
        Initialize pose buffer.
        
        Args:
            config: Buffer configuration (uses defaults if None)
        """
        self.config = config or PoseBufferConfig()
        self.metrics = get_metrics()
        
        self._lock = threading.Lock()
        self._timestamps: Deque[int] = deque()
        self._poses: Deque[Transformation] = deque()
    
    def insert(self, sample: PoseSample) -> bool:
        """
        Append a pose sample.
        
        Args:
            sample: Pose sample; timestamps must be non-decreasing
            
        Returns:
            True if stored, False if dropped as out-of-order
        """
        t_ns = sample.timestamp_ns
        with self._lock:
            if self._timestamps and t_ns < self._timestamps[-1]:
                newest = self._timestamps[-1]
                accepted = False
            else:
                if self._timestamps and t_ns == self._timestamps[-1]:
                    self._poses[-1] = sample.T_M_I
                else:
                    self._timestamps.append(t_ns)
                    self._poses.append(sample.T_M_I)
                
                floor_ns = t_ns - self.config.retention_ns
                while self._timestamps and self._timestamps[0] < floor_ns:
                    self._timestamps.popleft()
                    self._poses.popleft()
                accepted = True
        
        if not accepted:
            logger.warning(
                f"Out-of-order pose at t={t_ns}ns (newest {newest}ns), dropped"
            )
            self.metrics.increment_drop('out_of_order')
            return False
        
        self.metrics.increment('poses_in')
        return True
    
    def lookup(self, timestamp_ns: int) -> PoseLookupResult:
        """
        Get the pose at a timestamp.
        
        Args:
            timestamp_ns: Query time in the estimator clock (ns)
            
        Returns:
            PoseLookupResult; AVAILABLE poses at stored timestamps are the
            stored values, unmodified
        """
        bracket = self._copy_bracket(timestamp_ns)
        if isinstance(bracket, LookupStatus):
            return PoseLookupResult(bracket)
        
        (t_before, T_before), (t_after, T_after) = bracket
        if t_before == timestamp_ns:
            return PoseLookupResult(LookupStatus.AVAILABLE, T_before)
        if t_after == timestamp_ns:
            return PoseLookupResult(LookupStatus.AVAILABLE, T_after)
        
        nearest_gap_ns = min(timestamp_ns - t_before, t_after - timestamp_ns)
        if nearest_gap_ns > self.config.max_propagation_ns:
            logger.debug(
                f"Lookup at t={timestamp_ns}ns is {nearest_gap_ns}ns from the nearest pose "
                f"(max {self.config.max_propagation_ns}ns)"
            )
            return PoseLookupResult(LookupStatus.NEVER_AVAILABLE)
        
        self.metrics.record_histogram('pose_lookup_gap_ms', nearest_gap_ns * 1e-6)
        alpha = (timestamp_ns - t_before) / float(t_after - t_before)
        return PoseLookupResult(
            LookupStatus.AVAILABLE,
            T_before.interpolate(T_after, alpha),
            interpolated=True,
        )
    
    def _copy_bracket(self, timestamp_ns: int):
        """
        Copy the samples bracketing timestamp_ns under the lock.
        
        Returns:
            ((t_before, T_before), (t_after, T_after)) or a failure status
        """
        with self._lock:
            if not self._timestamps:
                return LookupStatus.NOT_YET_AVAILABLE
            
            newest_ns = self._timestamps[-1]
            if timestamp_ns > newest_ns:
                return LookupStatus.NOT_YET_AVAILABLE
            
            floor_ns = newest_ns - self.config.retention_ns
            if timestamp_ns < floor_ns or timestamp_ns < self._timestamps[0]:
                return LookupStatus.NEVER_AVAILABLE
            
            idx = bisect.bisect_left(self._timestamps, timestamp_ns)
            if self._timestamps[idx] == timestamp_ns:
                sample = (self._timestamps[idx], self._poses[idx])
                return sample, sample
            
            return (
                (self._timestamps[idx - 1], self._poses[idx - 1]),
                (self._timestamps[idx], self._poses[idx]),
            )
    
    def newest_available_timestamp(self) -> Optional[int]:
        """Timestamp of the newest pose, or None if empty."""
        with self._lock:
            return self._timestamps[-1] if self._timestamps else None
    
    def oldest_timestamp(self) -> Optional[int]:
        """Timestamp of the oldest retained pose, or None if empty."""
        with self._lock:
            return self._timestamps[0] if self._timestamps else None
    
    def clear(self):
        """Drop all buffered poses."""
        with self._lock:
            self._timestamps.clear()
            self._poses.clear()
    
    def __len__(self) -> int:
        with self._lock:
            return len(self._timestamps)
