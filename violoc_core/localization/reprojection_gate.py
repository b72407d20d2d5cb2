"""
Reprojection Gate for correspondence-based localization.

Decides whether a localization result carrying 2D-3D matches is consistent
enough with the current filter estimate to be applied.

For every match of an active camera, the global landmark is reprojected
twice:
- with the filter pose  T_G_I_filter = T_G_M * T_M_I(t)
- with the pose reported by the localizer  T_G_B

A match counts only if both reprojections are valid (not behind the camera,
inside the projection domain). Acceptance:

    success_rate = valid / attempted > min_success_rate
    num_valid > min_num_structure_constraints
    |mean(err_filter) - mean(err_localization)| <= max_mean_reprojection_error_px

Matches of inactive cameras are not scored; they are only counted so the
caller can fall back to a 6-DoF update when no active camera has matches.
"""

import logging
import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, List, Optional, Tuple
import numpy as np

from violoc_core.errors import InvariantViolation
from violoc_core.proto.localization_result import LocalizationObservation
from violoc_core.proto.transformation import Transformation
from violoc_core.localization.active_sensor_map import ActiveSensorMap
from violoc_core.localization.camera_model import CameraRig, PinholeCamera
from violoc_core.metrics import get_metrics

logger = logging.getLogger(__name__)


class GateDecision(IntEnum):
    """Outcome of the reprojection gate."""
    
    ACCEPTED = 0
    REJECTED_LOW_SUCCESS_RATE = 1
    REJECTED_REPROJECTION_ERROR = 2
    NO_ACTIVE_CORRESPONDENCES = 3
    REJECTED_GRAVITY = 4


@dataclass(frozen=True)
class GateResult:
    """
    Result of ReprojectionGate.evaluate().
    
    Attributes:
        decision: Gate outcome
        success_rate: Valid / attempted matches of active cameras
        num_attempted: Matches of active cameras that were reprojected
        num_valid: Matches with both reprojections valid
        num_inactive: Matches of inactive cameras (not scored)
        mean_error_filter_px: Mean reprojection error under the filter pose
        mean_error_localization_px: Mean reprojection error under the localized pose
        mean_error_diff_px: Absolute difference of the two means
    """
    
    decision: GateDecision
    success_rate: float = 0.0
    num_attempted: int = 0
    num_valid: int = 0
    num_inactive: int = 0
    mean_error_filter_px: Optional[float] = None
    mean_error_localization_px: Optional[float] = None
    mean_error_diff_px: Optional[float] = None
    
    @property
    def accepted(self) -> bool:
        return self.decision == GateDecision.ACCEPTED


@dataclass
class ReprojectionGateConfig:
    """
    Configuration for the reprojection gate.
    
    Attributes:
        min_success_rate: Success rate must exceed this
        min_num_structure_constraints: Valid matches must exceed this
        max_mean_reprojection_error_px: Max difference of mean errors (px)
        max_gravity_misalignment_deg: Gravity consistency threshold (deg);
            None disables the check
    """
    
    min_success_rate: float = 0.5
    min_num_structure_constraints: int = 5
    max_mean_reprojection_error_px: float = 100.0
    max_gravity_misalignment_deg: Optional[float] = None
    
    def __post_init__(self):
        """Validate configuration."""
        assert 0.0 <= self.min_success_rate < 1.0, "success rate must be in [0, 1)"
        assert self.min_num_structure_constraints >= 0, "min constraints cannot be negative"
        assert self.max_mean_reprojection_error_px > 0, "pixel threshold must be positive"
        if self.max_gravity_misalignment_deg is not None:
            assert self.max_gravity_misalignment_deg > 0, "gravity threshold must be positive"


def reprojection_error(
    p_G: np.ndarray,
    T_G_C: Transformation,
    camera: PinholeCamera,
    keypoint: np.ndarray,
) -> Optional[float]:
    """
    Reprojection error of a global landmark.
    
    Args:
        p_G: Landmark in the global frame
        T_G_C: Camera pose in the global frame
        camera: Camera model
        keypoint: Measured pixel coordinates
        
    Returns:
        Error in pixels, or None if the point is behind the camera or
        outside the projection domain
    """
    projection = camera.project3(T_G_C.inverse().transform(p_G))
    if not projection.is_valid:
        return None
    return float(np.linalg.norm(projection.keypoint - keypoint))


def gravity_disparity_angle_deg(T_G_B: Transformation, T_G_I: Transformation) -> float:
    """
    Angle between the gravity directions implied by two global poses.
    
    Args:
        T_G_B: Pose reported by the localizer
        T_G_I: Pose of the filter
        
    Returns:
        Angle in degrees, in [0, 180]
    """
    z_axis = np.array([0.0, 0.0, 1.0])
    gravity_filter = T_G_I.rotation.inv().apply(z_axis)
    gravity_localization = T_G_B.rotation.inv().apply(z_axis)
    
    cosine = float(np.dot(gravity_filter, gravity_localization))
    if cosine <= -1.0:
        return 180.0
    if cosine >= 1.0:
        return 0.0
    return math.degrees(math.acos(cosine))


class ReprojectionGate:
    """
    Gate localization matches on reprojection consistency.
    
    Usage:
        gate = ReprojectionGate(camera_rig, sensor_map, config)
        
        result = gate.evaluate(observation, T_G_I_filter)
        if result.accepted:
            matches = gate.filter_active_correspondences(observation)
    """
    
    def __init__(
        self,
        camera_rig: CameraRig,
        active_sensor_map: ActiveSensorMap,
        config: Optional[ReprojectionGateConfig] = None,
    ):
        """
        Initialize reprojection gate.
        
        Args:
            camera_rig: Cameras of the localization subsystem
            active_sensor_map: Localization -> estimator camera index mapping
            config: Gate configuration (uses defaults if None)
        """
        self.camera_rig = camera_rig
        self.active_sensor_map = active_sensor_map
        self.config = config or ReprojectionGateConfig()
        self.metrics = get_metrics()
    
    def count_active_correspondences(self, observation: LocalizationObservation) -> int:
        """Number of matches belonging to active cameras."""
        return sum(
            observation.num_correspondences(cam_idx)
            for cam_idx in range(observation.num_cameras)
            if self.active_sensor_map.is_active(cam_idx)
        )
    
    def compute_reprojection_errors(
        self,
        observation: LocalizationObservation,
        T_G_I_filter: Transformation,
    ) -> Tuple[List[float], List[float], int, int]:
        """
        Reproject all active-camera matches under both poses.
        
        Args:
            observation: Localization result with matches
            T_G_I_filter: Filter body pose in the global frame
            
        Returns:
            (filter_errors, localization_errors, num_attempted, num_inactive);
            the two error lists are aligned and equally long
        """
        if observation.num_cameras > self.camera_rig.num_cameras:
            raise InvariantViolation(
                f"Localization has matches for {observation.num_cameras} cameras, "
                f"rig has {self.camera_rig.num_cameras}"
            )
        
        filter_errors: List[float] = []
        localization_errors: List[float] = []
        num_attempted = 0
        num_inactive = 0
        
        for cam_idx in range(observation.num_cameras):
            num_matches = observation.num_correspondences(cam_idx)
            if num_matches == 0:
                continue
            
            if not self.active_sensor_map.is_active(cam_idx):
                num_inactive += num_matches
                continue
            
            camera = self.camera_rig.get_camera(cam_idx)
            T_C_B = self.camera_rig.get_T_C_B(cam_idx)
            T_G_C_filter = (T_C_B * T_G_I_filter.inverse()).inverse()
            T_G_C_localization = (T_C_B * observation.T_G_B.inverse()).inverse()
            
            keypoints = observation.keypoints_per_camera[cam_idx]
            landmarks = observation.landmarks_per_camera[cam_idx]
            for keypoint, p_G in zip(keypoints, landmarks):
                num_attempted += 1
                error_filter = reprojection_error(p_G, T_G_C_filter, camera, keypoint)
                if error_filter is None:
                    continue
                error_localization = reprojection_error(
                    p_G, T_G_C_localization, camera, keypoint
                )
                if error_localization is None:
                    continue
                filter_errors.append(error_filter)
                localization_errors.append(error_localization)
        
        if len(filter_errors) != len(localization_errors):
            raise InvariantViolation("Reprojection error lists diverged")
        return filter_errors, localization_errors, num_attempted, num_inactive
    
    def evaluate(
        self,
        observation: LocalizationObservation,
        T_G_I_filter: Transformation,
    ) -> GateResult:
        """
        Score a localization result against the filter pose.
        
        Args:
            observation: Localization result (estimator-clock timestamp)
            T_G_I_filter: Filter body pose in the global frame at that time
            
        Returns:
            GateResult with decision and statistics
        """
        if not self.check_gravity(observation.T_G_B, T_G_I_filter):
            self.metrics.increment_drop('gravity_misaligned')
            return GateResult(GateDecision.REJECTED_GRAVITY)
        
        filter_errors, localization_errors, num_attempted, num_inactive = (
            self.compute_reprojection_errors(observation, T_G_I_filter)
        )
        
        if num_attempted == 0:
            return GateResult(
                GateDecision.NO_ACTIVE_CORRESPONDENCES,
                num_inactive=num_inactive,
            )
        
        num_valid = len(filter_errors)
        success_rate = num_valid / num_attempted
        
        if (success_rate <= self.config.min_success_rate or
                num_valid <= self.config.min_num_structure_constraints):
            logger.warning(
                "Most of the localization matches cannot be reprojected into the "
                f"image plane ({num_valid}/{num_attempted}). Will reset the localization."
            )
            self.metrics.increment_drop('low_reprojection_success')
            return GateResult(
                GateDecision.REJECTED_LOW_SUCCESS_RATE,
                success_rate=success_rate,
                num_attempted=num_attempted,
                num_valid=num_valid,
                num_inactive=num_inactive,
            )
        
        mean_filter = float(np.mean(filter_errors))
        mean_localization = float(np.mean(localization_errors))
        diff = abs(mean_filter - mean_localization)
        self.metrics.record_histogram('reprojection_error_diff_px', diff)
        logger.debug(f"Localization reprojection error [px]: {diff:.2f}")
        
        decision = GateDecision.ACCEPTED
        if diff > self.config.max_mean_reprojection_error_px:
            logger.warning(
                f"Mean reprojection error of localization matches, {diff:.2f}, is larger "
                f"than the threshold ({self.config.max_mean_reprojection_error_px}). "
                f"Will reset the localization."
            )
            self.metrics.increment_drop('reprojection_rejected')
            decision = GateDecision.REJECTED_REPROJECTION_ERROR
        
        return GateResult(
            decision,
            success_rate=success_rate,
            num_attempted=num_attempted,
            num_valid=num_valid,
            num_inactive=num_inactive,
            mean_error_filter_px=mean_filter,
            mean_error_localization_px=mean_localization,
            mean_error_diff_px=diff,
        )
    
    def check_gravity(self, T_G_B: Transformation, T_G_I_filter: Transformation) -> bool:
        """
        Gravity consistency check (disabled unless configured).
        
        Returns:
            True if the check passes or is disabled
        """
        threshold = self.config.max_gravity_misalignment_deg
        if threshold is None:
            return True
        
        angle = gravity_disparity_angle_deg(T_G_B, T_G_I_filter)
        if angle > threshold:
            logger.warning(
                f"The gravity direction of the localization is not consistent with the "
                f"filter estimate ({angle:.2f}deg, threshold {threshold}deg). "
                f"Rejected the localization result."
            )
            return False
        return True
    
    def filter_active_correspondences(
        self,
        observation: LocalizationObservation,
    ) -> Dict[int, Tuple[np.ndarray, np.ndarray]]:
        """
        Matches of active cameras keyed by estimator camera index.
        
        Returns:
            {estimator_cam_idx: (keypoints (K, 2), landmarks (K, 3))}
        """
        filtered = {}
        for cam_idx in range(observation.num_cameras):
            est_idx = self.active_sensor_map.get_estimator_index(cam_idx)
            if est_idx is None:
                continue
            filtered[est_idx] = (
                observation.keypoints_per_camera[cam_idx],
                observation.landmarks_per_camera[cam_idx],
            )
        return filtered
