"""
Measurement Adapter.

Packages accepted localization results into the estimator's ingestion
format.

Direct-pose mode: the covariance is fixed by configuration, not derived
from the localization, with orientation (rad^2) in the upper-left block
and position (m^2) in the lower-right block.

Correspondence mode: one call per active camera; the batch is accepted only
if every camera's update was accepted.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import numpy as np

from violoc_core.proto.estimator_update import PoseUpdate
from violoc_core.proto.transformation import Transformation
from violoc_core.localization.estimator_interface import EstimatorInterface
from violoc_core.metrics import get_metrics

logger = logging.getLogger(__name__)


@dataclass
class MeasurementAdapterConfig:
    """
    Configuration for localization measurement packaging.
    
    Attributes:
        orientation_std_rad: Fixed orientation std of a pose update (~2 deg)
        position_std_m: Fixed position std of a pose update
    """
    
    orientation_std_rad: float = 0.04
    position_std_m: float = 0.8
    
    def __post_init__(self):
        """Validate configuration."""
        assert self.orientation_std_rad > 0, "orientation std must be positive"
        assert self.position_std_m > 0, "position std must be positive"
    
    @property
    def orientation_variance(self) -> float:
        return self.orientation_std_rad ** 2
    
    @property
    def position_variance(self) -> float:
        return self.position_std_m ** 2


class MeasurementAdapter:
    """
    Hands accepted localizations to the external estimator.
    
    Usage:
        adapter = MeasurementAdapter(estimator, MeasurementAdapterConfig())
        adapter.apply_pose_update(T_G_B, t_ns)
        accepted = adapter.apply_correspondence_updates(matches, t_ns)
    """
    
    def __init__(
        self,
        estimator: EstimatorInterface,
        config: Optional[MeasurementAdapterConfig] = None,
    ):
        """
        Initialize measurement adapter.
        
        Args:
            estimator: External estimator
            config: Adapter configuration (uses defaults if None)
        """
        self.estimator = estimator
        self.config = config or MeasurementAdapterConfig()
        self.metrics = get_metrics()
        
        covariance = np.zeros((6, 6))
        covariance[:3, :3] = self.config.orientation_variance * np.eye(3)
        covariance[3:, 3:] = self.config.position_variance * np.eye(3)
        self._covariance = covariance
    
    def make_pose_update(self, T_G_B: Transformation, timestamp_ns: int) -> PoseUpdate:
        """
        Build a fixed-covariance 6-DoF update.
        
        Args:
            T_G_B: Localized body pose in the global frame
            timestamp_ns: Estimator clock timestamp
        """
        return PoseUpdate(
            timestamp_ns=timestamp_ns,
            position=T_G_B.position,
            orientation_xyzw=T_G_B.quaternion_xyzw,
            covariance=self._covariance,
        )
    
    def apply_pose_update(self, T_G_B: Transformation, timestamp_ns: int) -> bool:
        """
        Feed a direct pose update.
        
        Returns:
            True once handed over (the estimator may still drop a stale
            update unobserved); False if the estimator raised
        """
        update = self.make_pose_update(T_G_B, timestamp_ns)
        try:
            self.estimator.ingest_pose_update(update)
        except Exception:
            logger.exception(f"Estimator raised on pose update at t={timestamp_ns}ns")
            self.metrics.increment_drop('estimator_rejected')
            return False
        
        self.metrics.increment('pose_updates_sent')
        return True
    
    def apply_correspondence_updates(
        self,
        correspondences: Dict[int, Tuple[np.ndarray, np.ndarray]],
        timestamp_ns: int,
    ) -> bool:
        """
        Feed structure constraints for each active camera.
        
        Args:
            correspondences: {estimator_cam_idx: (keypoints, landmarks)}
            timestamp_ns: Estimator clock timestamp
            
        Returns:
            Logical AND over all per-camera results (False for no cameras)
        """
        if not correspondences:
            return False
        
        accepted = True
        for cam_idx, (keypoints, landmarks) in sorted(correspondences.items()):
            try:
                cam_accepted = bool(self.estimator.ingest_correspondence_update(
                    cam_idx, keypoints, landmarks, timestamp_ns
                ))
            except Exception:
                logger.exception(
                    f"Estimator raised on correspondence update (camera {cam_idx}, "
                    f"t={timestamp_ns}ns)"
                )
                cam_accepted = False
            
            self.metrics.increment('correspondence_updates_sent')
            accepted = accepted and cam_accepted
        
        if not accepted:
            self.metrics.increment_drop('estimator_rejected')
        return accepted
