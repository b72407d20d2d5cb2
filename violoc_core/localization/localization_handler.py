"""
Localization Handler: fuses map localizations into the motion estimator.

Entry points (may be called from different threads):
- process_pose(): estimator pose stream, feeds the pose history
- process_localization(): localization stream

Per localization:
1. Map the timestamp into the estimator clock (ClockAligner)
2. Route on the localization state:
   - UNINITIALIZED / NOT_LOCALIZED -> BaseframeEstimator; a successful fit
     publishes a new T_G_M snapshot and switches to LOCALIZED
   - LOCALIZED -> correction:
       6-DoF mode: fixed-covariance pose update
       structure mode: ReprojectionGate, then per-camera 2D-3D updates
3. Quality rejections optionally demote LOCALIZED -> NOT_LOCALIZED

In 6-DoF mode the estimator may anchor itself; the handler then starts in
LOCALIZED and every localization is a correction.

Optional pending queue: localizations newer than the newest pose wait in a
bounded queue. They are processed in arrival order on the localization
side (process_localization() or process_pending()) once the pose stream has
caught up, never on the pose thread.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import Deque, List, Optional, Tuple

from violoc_core.errors import InvariantViolation
from violoc_core.proto.estimator_update import EstimatorStatus
from violoc_core.proto.localization_result import LocalizationObservation
from violoc_core.proto.pose_sample import PoseSample
from violoc_core.proto.transformation import Transformation
from violoc_core.localization.active_sensor_map import ActiveSensorMap
from violoc_core.localization.baseframe_estimator import (
    BaseframeEstimator,
    BaseframeEstimatorConfig,
    BaseframeStatus,
)
from violoc_core.localization.camera_model import CameraRig
from violoc_core.localization.clock_aligner import ClockAligner
from violoc_core.localization.estimator_interface import EstimatorInterface
from violoc_core.localization.localization_state import (
    LocalizationState,
    LocalizationStateMachine,
    Route,
)
from violoc_core.localization.measurement_adapter import (
    MeasurementAdapter,
    MeasurementAdapterConfig,
)
from violoc_core.localization.pose_lookup_buffer import (
    LookupStatus,
    PoseBufferConfig,
    PoseLookupBuffer,
)
from violoc_core.localization.reprojection_gate import (
    ReprojectionGate,
    ReprojectionGateConfig,
)
from violoc_core.metrics import get_metrics

logger = logging.getLogger(__name__)


class CorrectionOutcome(IntEnum):
    """Outcome of processing one localization."""
    
    INITIALIZED = 0
    INITIALIZATION_PENDING = 1
    CORRECTION_ACCEPTED = 2
    CORRECTION_REJECTED = 3
    POSE_NOT_YET_AVAILABLE = 4
    POSE_NEVER_AVAILABLE = 5
    QUEUED = 6


@dataclass(frozen=True)
class BaseframeSnapshot:
    """
    Published T_G_M. Replaced as a whole on (re-)initialization.
    
    Attributes:
        T_G_M: Local odometry frame in the global frame
        timestamp_ns: Estimator time of the localization that completed the fit
        num_inliers: RANSAC inliers of the fit
        num_candidates: Candidates the fit ran on
    """
    
    T_G_M: Transformation
    timestamp_ns: int
    num_inliers: int
    num_candidates: int


@dataclass
class LocalizationHandlerConfig:
    """
    Configuration for the localization handler.
    
    Attributes:
        use_6dof_localization: 6-DoF pose updates instead of structure constraints
        estimator_handles_anchoring: In 6-DoF mode, skip baseframe initialization
            because the estimator anchors itself
        use_6dof_for_inactive_cameras: In structure mode, apply a 6-DoF update
            when only inactive cameras have matches
        demote_on_quality_reject: Drop to NOT_LOCALIZED on gate rejection
        buffer_pending_observations: Queue localizations whose pose is not yet
            available instead of dropping them
            (processed on the localization thread, never by process_pose)
        max_pending_observations: Pending queue capacity
        pose_buffer: Pose history configuration
        baseframe: Baseframe estimator configuration
        gate: Reprojection gate configuration
        adapter: Measurement adapter configuration
    """
    
    use_6dof_localization: bool = True
    estimator_handles_anchoring: bool = True
    use_6dof_for_inactive_cameras: bool = False
    demote_on_quality_reject: bool = True
    buffer_pending_observations: bool = False
    max_pending_observations: int = 50
    pose_buffer: PoseBufferConfig = None
    baseframe: BaseframeEstimatorConfig = None
    gate: ReprojectionGateConfig = None
    adapter: MeasurementAdapterConfig = None
    
    def __post_init__(self):
        """Fill sub-configurations and validate."""
        self.pose_buffer = self.pose_buffer or PoseBufferConfig()
        self.baseframe = self.baseframe or BaseframeEstimatorConfig()
        self.gate = self.gate or ReprojectionGateConfig()
        self.adapter = self.adapter or MeasurementAdapterConfig()
        assert self.max_pending_observations > 0, "pending queue needs capacity"
    
    @property
    def initial_state(self) -> LocalizationState:
        """LOCALIZED when baseframe initialization is bypassed."""
        if self.use_6dof_localization and self.estimator_handles_anchoring:
            return LocalizationState.LOCALIZED
        return LocalizationState.UNINITIALIZED


class LocalizationHandler:
    """
    Localization fusion front-end of the motion estimator.
    
    Usage:
        handler = LocalizationHandler(estimator, camera_rig, sensor_map, config)
        
        # estimator output thread
        handler.process_pose(PoseSample(t_ns, T_M_I))
        
        # localization thread
        outcome = handler.process_localization(observation)
    """
    
    def __init__(
        self,
        estimator: EstimatorInterface,
        camera_rig: Optional[CameraRig] = None,
        active_sensor_map: Optional[ActiveSensorMap] = None,
        config: Optional[LocalizationHandlerConfig] = None,
        clock_aligner: Optional[ClockAligner] = None,
    ):
        """
        Initialize localization handler.
        
        Args:
            estimator: External estimator
            camera_rig: Localization cameras (required for structure mode)
            active_sensor_map: Localization -> estimator camera mapping
            config: Handler configuration (uses defaults if None)
            clock_aligner: Localization -> estimator clock mapping (identity if None)
        """
        self.config = config or LocalizationHandlerConfig()
        self.estimator = estimator
        self.clock_aligner = clock_aligner or ClockAligner()
        self.camera_rig = camera_rig or CameraRig([])
        self.active_sensor_map = active_sensor_map or ActiveSensorMap.identity(
            self.camera_rig.num_cameras
        )
        self.metrics = get_metrics()
        
        self.pose_buffer = PoseLookupBuffer(self.config.pose_buffer)
        self.baseframe_estimator = BaseframeEstimator(self.config.baseframe)
        self.state_machine = LocalizationStateMachine(self.config.initial_state)
        self.gate = ReprojectionGate(self.camera_rig, self.active_sensor_map, self.config.gate)
        self.adapter = MeasurementAdapter(estimator, self.config.adapter)
        
        self._baseframe: Optional[BaseframeSnapshot] = None
        self._publish_lock = threading.Lock()
        self._process_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending: Deque[LocalizationObservation] = deque()
        
        if self.config.use_6dof_localization:
            logger.info("Localization mode: 6dof constraints.")
            if (
                self.config.estimator_handles_anchoring and
                self.config.gate.max_gravity_misalignment_deg is not None
            ):
                logger.warning(
                    "Gravity check configured but the estimator handles anchoring; "
                    "no baseframe is published, so the check never runs."
                )
        else:
            logger.info("Localization mode: structure constraints.")
            if self.camera_rig.num_cameras == 0:
                logger.warning("Structure constraints mode without cameras; no match can be scored.")
    
    @property
    def state(self) -> LocalizationState:
        return self.state_machine.state
    
    @property
    def baseframe(self) -> Optional[BaseframeSnapshot]:
        """Current T_G_M snapshot (None before the first fit)."""
        return self._baseframe
    
    def process_pose(self, sample: PoseSample):
        """
        Feed one pose of the estimator's output stream.
        
        Only the pose history lock is taken; queued localizations are
        processed by process_localization() or process_pending().
        
        Args:
            sample: Estimator pose (non-decreasing timestamps)
        """
        self.pose_buffer.insert(sample)
    
    def process_localization(self, observation: LocalizationObservation) -> CorrectionOutcome:
        """
        Process one localization result.
        
        Args:
            observation: Localization result (localization clock)
            
        Returns:
            CorrectionOutcome; QUEUED if held in the pending queue
        """
        self.metrics.increment('localizations_in')
        aligned = observation.with_timestamp(
            self.clock_aligner.to_local_clock(observation.timestamp_ns)
        )
        
        if not self.config.buffer_pending_observations:
            with self._process_lock:
                return self._process_aligned(aligned)
        
        self._enqueue(aligned)
        for processed, outcome in self._drain_pending():
            if processed is aligned:
                return outcome
        return CorrectionOutcome.QUEUED
    
    def process_pending(self) -> List[Tuple[LocalizationObservation, CorrectionOutcome]]:
        """
        Process queued localizations now covered by the pose history.
        
        Call from the localization side (or a worker) when no new localization
        is expected soon, so queued ones do not wait for the next arrival.
        
        Returns:
            (observation, outcome) pairs in processing order
        """
        return self._drain_pending()
    
    def _enqueue(self, observation: LocalizationObservation):
        """Append to the pending queue, evicting the oldest when full."""
        with self._pending_lock:
            if len(self._pending) >= self.config.max_pending_observations:
                dropped = self._pending.popleft()
                logger.warning(
                    f"Pending localization queue full, dropped localization at "
                    f"t={dropped.timestamp_ns}ns"
                )
                self.metrics.increment_drop('queue_full')
            self._pending.append(observation)
    
    def _drain_pending(self) -> List[Tuple[LocalizationObservation, CorrectionOutcome]]:
        """Process queued localizations covered by the pose history, in order."""
        processed = []
        newest_ns = self.pose_buffer.newest_available_timestamp()
        if newest_ns is None:
            return processed
        
        while True:
            with self._pending_lock:
                if not self._pending or self._pending[0].timestamp_ns > newest_ns:
                    return processed
                observation = self._pending.popleft()
            
            with self._process_lock:
                processed.append((observation, self._process_aligned(observation)))
    
    @property
    def num_pending(self) -> int:
        with self._pending_lock:
            return len(self._pending)
    
    def _process_aligned(self, observation: LocalizationObservation) -> CorrectionOutcome:
        """Dispatch on the localization state."""
        if self.state_machine.route() is Route.INITIALIZE:
            return self._initialize_baseframe(observation)
        return self._process_as_update(observation)
    
    def _initialize_baseframe(self, observation: LocalizationObservation) -> CorrectionOutcome:
        """Feed the baseframe estimator; switch to LOCALIZED on a successful fit."""
        estimate = self.baseframe_estimator.add_observation(
            observation.timestamp_ns, observation.T_G_B, self.pose_buffer
        )
        
        if estimate.status == BaseframeStatus.POSE_NOT_YET_AVAILABLE:
            return CorrectionOutcome.POSE_NOT_YET_AVAILABLE
        if estimate.status == BaseframeStatus.POSE_NEVER_AVAILABLE:
            return CorrectionOutcome.POSE_NEVER_AVAILABLE
        if not estimate.success:
            return CorrectionOutcome.INITIALIZATION_PENDING
        
        self._publish_baseframe(BaseframeSnapshot(
            T_G_M=estimate.T_G_M,
            timestamp_ns=observation.timestamp_ns,
            num_inliers=estimate.num_inliers,
            num_candidates=estimate.num_candidates,
        ))
        self.state_machine.mark_localized()
        logger.info(
            f"(Re-)initialized the localization baseframe "
            f"({estimate.num_inliers}/{estimate.num_candidates} inliers): {estimate.T_G_M}"
        )
        return CorrectionOutcome.INITIALIZED
    
    def _publish_baseframe(self, snapshot: BaseframeSnapshot):
        """Swap in a new T_G_M snapshot."""
        with self._publish_lock:
            self._baseframe = snapshot
    
    def _process_as_update(self, observation: LocalizationObservation) -> CorrectionOutcome:
        """Apply a localization as a correction."""
        if self.config.use_6dof_localization:
            return self._process_pose_update(observation)
        return self._process_structure_update(observation)
    
    def _lookup_filter_pose(
        self,
        timestamp_ns: int,
    ) -> Tuple[LookupStatus, Optional[Transformation]]:
        """T_M_I at a timestamp, recording the drop reason on failure."""
        lookup = self.pose_buffer.lookup(timestamp_ns)
        if lookup.status == LookupStatus.NOT_YET_AVAILABLE:
            logger.warning(f"No filter pose yet for localization at t={timestamp_ns}ns, skipped.")
            self.metrics.increment_drop('pose_not_yet_available')
        elif lookup.status == LookupStatus.NEVER_AVAILABLE:
            logger.warning(f"Filter pose for localization at t={timestamp_ns}ns is unavailable, skipped.")
            self.metrics.increment_drop('pose_never_available')
        return lookup.status, lookup.T_M_I
    
    def _process_pose_update(self, observation: LocalizationObservation) -> CorrectionOutcome:
        """6-DoF correction, with the optional gravity check."""
        snapshot = self._baseframe
        if snapshot is not None and self.config.gate.max_gravity_misalignment_deg is not None:
            lookup = self.pose_buffer.lookup(observation.timestamp_ns)
            if lookup.is_available:
                T_G_I_filter = snapshot.T_G_M * lookup.T_M_I
                if not self.gate.check_gravity(observation.T_G_B, T_G_I_filter):
                    self.metrics.increment_drop('gravity_misaligned')
                    return CorrectionOutcome.CORRECTION_REJECTED
            else:
                logger.debug("Gravity check skipped, no filter pose at localization time.")
        
        accepted = self.adapter.apply_pose_update(observation.T_G_B, observation.timestamp_ns)
        return self._finish_update(observation, accepted)
    
    def _process_structure_update(self, observation: LocalizationObservation) -> CorrectionOutcome:
        """2D-3D correction through the reprojection gate."""
        if self.gate.count_active_correspondences(observation) == 0:
            return self._process_inactive_cameras(observation)
        
        status, T_M_I = self._lookup_filter_pose(observation.timestamp_ns)
        if status == LookupStatus.NOT_YET_AVAILABLE:
            return CorrectionOutcome.POSE_NOT_YET_AVAILABLE
        if status == LookupStatus.NEVER_AVAILABLE:
            return CorrectionOutcome.POSE_NEVER_AVAILABLE
        
        snapshot = self._baseframe
        if snapshot is None:
            raise InvariantViolation("LOCALIZED in structure mode without a baseframe")
        
        T_G_I_filter = snapshot.T_G_M * T_M_I
        gate_result = self.gate.evaluate(observation, T_G_I_filter)
        if not gate_result.accepted:
            if self.config.demote_on_quality_reject:
                self.state_machine.mark_not_localized()
            return CorrectionOutcome.CORRECTION_REJECTED
        
        accepted = self.adapter.apply_correspondence_updates(
            self.gate.filter_active_correspondences(observation),
            observation.timestamp_ns,
        )
        return self._finish_update(observation, accepted)
    
    def _process_inactive_cameras(self, observation: LocalizationObservation) -> CorrectionOutcome:
        """No active-camera matches: 6-DoF fallback or reject."""
        if not self.config.use_6dof_for_inactive_cameras:
            logger.debug(
                f"No localization matches for active cameras at t={observation.timestamp_ns}ns."
            )
            self.metrics.increment_drop('no_active_correspondences')
            return CorrectionOutcome.CORRECTION_REJECTED
        
        accepted = self.adapter.apply_pose_update(observation.T_G_B, observation.timestamp_ns)
        if accepted:
            logger.debug(
                "No localization found for active camera, updated the estimator "
                "using 6DoF constraints based on localization from inactive cameras."
            )
        return self._finish_update(observation, accepted)
    
    def _finish_update(self, observation: LocalizationObservation, accepted: bool) -> CorrectionOutcome:
        """Count the result and log estimator-side rejections."""
        if accepted:
            self.metrics.increment('localizations_applied')
            return CorrectionOutcome.CORRECTION_ACCEPTED
        
        if self._query_status().initialized:
            logger.warning(
                f"Estimator rejected localization update at t={observation.timestamp_ns}ns. "
                f"The latency may be too large; consider reducing the localization rate."
            )
        return CorrectionOutcome.CORRECTION_REJECTED
    
    def _query_status(self) -> EstimatorStatus:
        """Estimator status for logging; failures yield an empty status."""
        try:
            return self.estimator.query_status()
        except Exception:
            logger.exception("Estimator status query failed")
            return EstimatorStatus()
    
    def log_estimator_status(self) -> EstimatorStatus:
        """
        Log the estimator's own anchoring against the published baseframe.
        
        Diagnostics only; the result never feeds back into decisions.
        """
        status = self._query_status()
        snapshot = self._baseframe
        if status.localized and status.T_G_M is not None and snapshot is not None:
            logger.info(
                f"Estimator T_G_M differs from baseframe by "
                f"{status.T_G_M.position_distance(snapshot.T_G_M):.3f}m / "
                f"{status.T_G_M.angular_distance(snapshot.T_G_M):.4f}rad"
            )
        else:
            logger.info(
                f"Estimator status: initialized={status.initialized}, "
                f"localized={status.localized}, handler state={self.state.name}"
            )
        return status
    
    def reset(self):
        """Forget baseframe, candidates, poses and pending localizations."""
        self.metrics.log_summary()
        with self._process_lock:
            self.state_machine.reset()
            self.baseframe_estimator.reset()
            self.pose_buffer.clear()
            with self._pending_lock:
                self._pending.clear()
            self._publish_baseframe(None)
        self.metrics.increment('localization_handler_resets')
    
    def get_statistics(self) -> dict:
        """Get handler statistics."""
        baseframe = self._baseframe
        counts = self.metrics.snapshot()
        measurements_in = (
            counts.counters.get('localizations_in', 0) + counts.counters.get('poses_in', 0)
        )
        return {
            'state': self.state.name,
            'localizations_in': counts.counters.get('localizations_in', 0),
            'localizations_applied': counts.counters.get('localizations_applied', 0),
            'baseframe_initializations': counts.counters.get('baseframe_initializations', 0),
            'measurements_dropped': counts.total_dropped(),
            'drop_rate_pct': counts.drop_rate(measurements_in),
            'drop_reasons': {k: v for k, v in counts.drop_reasons.items() if v > 0},
            'uptime_s': self.metrics.get_uptime(),
            'num_poses_buffered': len(self.pose_buffer),
            'num_candidates': len(self.baseframe_estimator.candidates),
            'num_pending': self.num_pending,
            'baseframe': baseframe.T_G_M.to_dict() if baseframe else None,
        }


def create_default_handler(
    estimator: EstimatorInterface,
    camera_rig: Optional[CameraRig] = None,
    active_sensor_map: Optional[ActiveSensorMap] = None,
    use_6dof_localization: bool = True,
) -> LocalizationHandler:
    """
    Create localization handler with default configuration.
    
    Args:
        estimator: External estimator
        camera_rig: Localization cameras (structure mode)
        active_sensor_map: Camera index mapping (identity if None)
        use_6dof_localization: 6-DoF (default) or structure constraints mode
        
    Returns:
        Configured LocalizationHandler
    """
    config = LocalizationHandlerConfig(
        use_6dof_localization=use_6dof_localization,
        estimator_handles_anchoring=use_6dof_localization,
        use_6dof_for_inactive_cameras=False,
        demote_on_quality_reject=True,
        buffer_pending_observations=False,
    )
    return LocalizationHandler(estimator, camera_rig, active_sensor_map, config)
