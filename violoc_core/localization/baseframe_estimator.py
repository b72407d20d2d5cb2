"""
Baseframe Estimator: robust T_G_M from repeated localizations.

Each localization result gives one noisy single-shot estimate of the
transform between the estimator's local frame (M) and the global map frame
(G):

    T_G_M_candidate = T_G_B(localization) * T_M_I(t_localization)^-1

Candidates are collected in a fixed-size ring buffer. Once it holds the
configured minimum count, a RANSAC over the buffered candidates finds the
largest mutually consistent subset and refines it by least squares.

Inlier test (trial transform T vs candidate C):
    angle(T^-1 * C) < orientation_threshold  AND  |p_T - p_C| < position_threshold

Acceptance:
    num_inliers >= ceil(min_num_estimates_before_init * inlier_ratio_threshold)
"""

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import Deque, Optional, Sequence, Tuple
import numpy as np

from violoc_core.errors import InvariantViolation
from violoc_core.proto.transformation import Transformation, average_transformations
from violoc_core.localization.pose_lookup_buffer import LookupStatus, PoseLookupBuffer
from violoc_core.metrics import get_metrics

logger = logging.getLogger(__name__)


@dataclass
class BaseframeEstimatorConfig:
    """
    Configuration for baseframe initialization.
    
    Attributes:
        min_num_estimates_before_init: Candidates to collect before a fit
            (also the candidate buffer capacity)
        inlier_ratio_threshold: Required inlier fraction of the minimum count
        max_ransac_iterations: RANSAC iteration budget
        orientation_threshold_deg: Inlier rotation threshold (deg)
        position_threshold_m: Inlier translation threshold (m)
        ransac_seed: Seed for reproducible sampling (None = non-deterministic)
        clear_candidates_on_success: Empty the candidate buffer after a fit
    """
    
    min_num_estimates_before_init: int = 2
    inlier_ratio_threshold: float = 0.6
    max_ransac_iterations: int = 200
    orientation_threshold_deg: float = 3.0
    position_threshold_m: float = 0.3
    ransac_seed: Optional[int] = None
    clear_candidates_on_success: bool = True
    
    def __post_init__(self):
        """Validate configuration."""
        assert self.min_num_estimates_before_init >= 1, "need at least one estimate"
        assert 0.0 < self.inlier_ratio_threshold <= 1.0, "inlier ratio must be in (0, 1]"
        assert self.max_ransac_iterations >= 1, "need at least one RANSAC iteration"
        assert self.orientation_threshold_deg > 0, "orientation threshold must be positive"
        assert self.position_threshold_m > 0, "position threshold must be positive"
    
    @property
    def min_num_inliers(self) -> int:
        """Inliers required for a successful fit."""
        return int(math.ceil(
            self.min_num_estimates_before_init * self.inlier_ratio_threshold
        ))


class CandidateBaseframeBuffer:
    """
    Fixed-capacity ring buffer of T_G_M candidates.
    
    Insertion order is preserved so a seeded fit is reproducible; once full,
    each insert evicts the oldest candidate.
    """
    
    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"Capacity must be positive: {capacity}")
        self._lock = threading.Lock()
        self._buffer: Deque[Transformation] = deque(maxlen=capacity)
    
    @property
    def capacity(self) -> int:
        return self._buffer.maxlen
    
    def insert(self, T_G_M: Transformation):
        with self._lock:
            self._buffer.append(T_G_M)
    
    def snapshot(self) -> Tuple[Transformation, ...]:
        """Immutable copy of the buffered candidates, oldest first."""
        with self._lock:
            return tuple(self._buffer)
    
    def clear(self):
        with self._lock:
            self._buffer.clear()
    
    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


@dataclass(frozen=True)
class RansacResult:
    """
    Result of transformation_ransac().
    
    Attributes:
        T: Least-squares refined transform over the best inlier set
        num_inliers: Size of the best inlier set
        inlier_indices: Indices (into the input samples) of the inliers
    """
    
    T: Transformation
    num_inliers: int
    inlier_indices: Tuple[int, ...]


def transformation_ransac(
    samples: Sequence[Transformation],
    max_iterations: int,
    orientation_threshold_rad: float,
    position_threshold_m: float,
    rng: Optional[np.random.Generator] = None,
) -> RansacResult:
    """
    Robust consensus over rigid transform samples.
    
    Each iteration draws one sample (the minimal set for a rigid transform
    hypothesis) and counts samples within both thresholds of it. The largest
    inlier set wins (first found on ties) and is refined by least squares.
    
    Args:
        samples: Candidate transforms
        max_iterations: Number of hypotheses to draw
        orientation_threshold_rad: Inlier rotation threshold (rad)
        position_threshold_m: Inlier translation threshold (m)
        rng: Random generator (default: fresh non-deterministic generator)
        
    Returns:
        RansacResult with the refined transform
        
    Raises:
        ValueError: If samples is empty
    """
    if len(samples) == 0:
        raise ValueError("RANSAC needs at least one sample")
    
    rng = rng if rng is not None else np.random.default_rng()
    
    # Pairwise consistency is all a hypothesis needs; compute it once.
    num_samples = len(samples)
    consistent = np.zeros((num_samples, num_samples), dtype=bool)
    for i in range(num_samples):
        for j in range(i, num_samples):
            ok = (
                samples[i].angular_distance(samples[j]) < orientation_threshold_rad and
                samples[i].position_distance(samples[j]) < position_threshold_m
            )
            consistent[i, j] = consistent[j, i] = ok
    
    best_inliers: Optional[np.ndarray] = None
    for hypothesis in rng.integers(0, num_samples, size=max_iterations):
        inliers = np.flatnonzero(consistent[hypothesis])
        if best_inliers is None or len(inliers) > len(best_inliers):
            best_inliers = inliers
            if len(best_inliers) == num_samples:
                break
    
    refined = average_transformations(samples[i] for i in best_inliers)
    return RansacResult(
        T=refined,
        num_inliers=len(best_inliers),
        inlier_indices=tuple(int(i) for i in best_inliers),
    )


class BaseframeStatus(IntEnum):
    """Outcome of one BaseframeEstimator.add_observation() call."""
    
    INITIALIZED = 0
    PENDING = 1                 # Not enough candidates yet
    INSUFFICIENT_CONSENSUS = 2  # Fit below inlier threshold
    POSE_NOT_YET_AVAILABLE = 3
    POSE_NEVER_AVAILABLE = 4


@dataclass(frozen=True)
class BaseframeEstimate:
    """
    Result of a baseframe initialization attempt.
    
    Attributes:
        status: Attempt outcome
        T_G_M: Fitted transform (only for INITIALIZED)
        num_inliers: Inliers of the fit (0 if no fit ran)
        num_candidates: Candidates available to the fit
    """
    
    status: BaseframeStatus
    T_G_M: Optional[Transformation] = None
    num_inliers: int = 0
    num_candidates: int = 0
    
    @property
    def success(self) -> bool:
        return self.status == BaseframeStatus.INITIALIZED


class BaseframeEstimator:
    """
    Collects T_G_M candidates and fits a consensus transform.
    
    Usage:
        estimator = BaseframeEstimator(BaseframeEstimatorConfig())
        
        estimate = estimator.add_observation(t_ns, T_G_B, pose_buffer)
        if estimate.success:
            T_G_M = estimate.T_G_M
    """
    
    def __init__(self, config: Optional[BaseframeEstimatorConfig] = None):
        """
        Initialize baseframe estimator.
        
        Args:
            config: Estimator configuration (uses defaults if None)
        """
        self.config = config or BaseframeEstimatorConfig()
        self.metrics = get_metrics()
        self.candidates = CandidateBaseframeBuffer(self.config.min_num_estimates_before_init)
        self._rng = np.random.default_rng(self.config.ransac_seed)
        self._orientation_threshold_rad = math.radians(self.config.orientation_threshold_deg)
    
    def add_observation(
        self,
        timestamp_ns: int,
        T_G_B: Transformation,
        pose_buffer: PoseLookupBuffer,
    ) -> BaseframeEstimate:
        """
        Add one localization and attempt a fit.
        
        Args:
            timestamp_ns: Localization time in the estimator clock (ns)
            T_G_B: Localized body pose in the global frame
            pose_buffer: Estimator pose history
            
        Returns:
            BaseframeEstimate describing the outcome
        """
        lookup = pose_buffer.lookup(timestamp_ns)
        if lookup.status == LookupStatus.NOT_YET_AVAILABLE:
            logger.warning("Could not get T_M_I for baseframe initialization (not yet available).")
            self.metrics.increment_drop('pose_not_yet_available')
            return BaseframeEstimate(BaseframeStatus.POSE_NOT_YET_AVAILABLE)
        if lookup.status == LookupStatus.NEVER_AVAILABLE:
            logger.warning("Could not get T_M_I for baseframe initialization (never available).")
            self.metrics.increment_drop('pose_never_available')
            return BaseframeEstimate(BaseframeStatus.POSE_NEVER_AVAILABLE)
        
        self.add_candidate(T_G_B * lookup.T_M_I.inverse())
        return self.try_fit()
    
    def add_candidate(self, T_G_M: Transformation):
        """Insert a single-shot T_G_M estimate."""
        self.candidates.insert(T_G_M)
        self.metrics.increment('baseframe_candidates')
    
    def try_fit(self) -> BaseframeEstimate:
        """
        Fit T_G_M over the current candidates.
        
        Returns:
            INITIALIZED with the transform, PENDING or INSUFFICIENT_CONSENSUS
        """
        samples = self.candidates.snapshot()
        num_candidates = len(samples)
        if num_candidates < self.config.min_num_estimates_before_init:
            logger.debug(
                f"Collected {num_candidates}/{self.config.min_num_estimates_before_init} "
                f"baseframe candidates"
            )
            return BaseframeEstimate(BaseframeStatus.PENDING, num_candidates=num_candidates)
        
        result = transformation_ransac(
            samples,
            self.config.max_ransac_iterations,
            self._orientation_threshold_rad,
            self.config.position_threshold_m,
            self._rng,
        )
        if not 0 < result.num_inliers <= num_candidates:
            raise InvariantViolation(
                f"RANSAC reported {result.num_inliers} inliers for {num_candidates} candidates"
            )
        self.metrics.record_histogram('ransac_num_inliers', result.num_inliers)
        
        if result.num_inliers < self.config.min_num_inliers:
            logger.info(
                f"Too few localization transformation inliers "
                f"({result.num_inliers}/{num_candidates})."
            )
            self.metrics.increment_drop('insufficient_consensus')
            return BaseframeEstimate(
                BaseframeStatus.INSUFFICIENT_CONSENSUS,
                num_inliers=result.num_inliers,
                num_candidates=num_candidates,
            )
        
        if self.config.clear_candidates_on_success:
            self.candidates.clear()
        
        self.metrics.increment('baseframe_initializations')
        return BaseframeEstimate(
            BaseframeStatus.INITIALIZED,
            T_G_M=result.T,
            num_inliers=result.num_inliers,
            num_candidates=num_candidates,
        )
    
    def reset(self):
        """Drop all collected candidates."""
        self.candidates.clear()
