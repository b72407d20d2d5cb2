"""
Localization Observation Schema.

Output of the map-based localizer: a global pose of the body frame plus,
optionally, the 2D-3D matches per camera that produced it.

Notes:
- timestamp_ns is in the localization subsystem's clock; the handler maps it
  into estimator time with the ClockAligner before any lookup.
- Camera indices are those of the localization subsystem's camera rig, not
  the estimator's (see ActiveSensorMap).
"""

from dataclasses import dataclass, field
from typing import List, Optional
import numpy as np

from .transformation import Transformation


@dataclass(frozen=True, eq=False)
class LocalizationObservation:
    """
    Map-based localization result.
    
    Attributes:
        timestamp_ns: Timestamp in the localization clock (nanoseconds)
        T_G_B: Body pose in the global map frame
        keypoints_per_camera: Per camera, (K, 2) array of image measurements (px)
        landmarks_per_camera: Per camera, (K, 3) array of matched global landmarks (m)
    """
    
    timestamp_ns: int
    T_G_B: Transformation
    keypoints_per_camera: List[np.ndarray] = field(default_factory=list)
    landmarks_per_camera: List[np.ndarray] = field(default_factory=list)
    
    def __post_init__(self):
        """Validate correspondences and normalize array shapes."""
        if len(self.keypoints_per_camera) != len(self.landmarks_per_camera):
            raise ValueError(
                f"Camera count mismatch: {len(self.keypoints_per_camera)} keypoint sets, "
                f"{len(self.landmarks_per_camera)} landmark sets"
            )
        
        keypoints = []
        landmarks = []
        for cam_idx, (kp, lm) in enumerate(
            zip(self.keypoints_per_camera, self.landmarks_per_camera)
        ):
            kp = np.asarray(kp, dtype=float).reshape(-1, 2)
            lm = np.asarray(lm, dtype=float).reshape(-1, 3)
            if kp.shape[0] != lm.shape[0]:
                raise ValueError(
                    f"Camera {cam_idx}: {kp.shape[0]} keypoints vs {lm.shape[0]} landmarks"
                )
            keypoints.append(kp)
            landmarks.append(lm)
        
        object.__setattr__(self, 'timestamp_ns', int(self.timestamp_ns))
        object.__setattr__(self, 'keypoints_per_camera', keypoints)
        object.__setattr__(self, 'landmarks_per_camera', landmarks)
    
    @property
    def num_cameras(self) -> int:
        """Number of cameras with a (possibly empty) match set."""
        return len(self.landmarks_per_camera)
    
    def num_correspondences(self, camera_index: Optional[int] = None) -> int:
        """
        Number of 2D-3D matches.
        
        Args:
            camera_index: Camera to count; all cameras if None
        """
        if camera_index is None:
            return sum(lm.shape[0] for lm in self.landmarks_per_camera)
        return self.landmarks_per_camera[camera_index].shape[0]
    
    @property
    def has_correspondences(self) -> bool:
        """True if any camera has at least one match."""
        return self.num_correspondences() > 0
    
    def with_timestamp(self, timestamp_ns: int) -> 'LocalizationObservation':
        """Copy of this observation re-stamped (e.g. into estimator time)."""
        return LocalizationObservation(
            timestamp_ns=timestamp_ns,
            T_G_B=self.T_G_B,
            keypoints_per_camera=self.keypoints_per_camera,
            landmarks_per_camera=self.landmarks_per_camera,
        )
