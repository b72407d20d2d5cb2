"""
External Estimator Message Schemas.

Formats exchanged with the motion estimator at its ingestion boundary:
- PoseUpdate: direct 6-DoF correction with covariance
- EstimatorStatus: estimator-reported status (diagnostics only)
"""

from dataclasses import dataclass
from typing import Optional
import numpy as np

from .transformation import Transformation


@dataclass(frozen=True, eq=False)
class PoseUpdate:
    """
    Direct 6-DoF pose correction.
    
    Attributes:
        timestamp_ns: Estimator clock timestamp (nanoseconds)
        position: Body position in the global frame (3,)
        orientation_xyzw: Body orientation in the global frame (x, y, z, w)
        covariance: 6x6 covariance; rows 0-2 orientation (rad^2),
            rows 3-5 position (m^2)
    """
    
    timestamp_ns: int
    position: np.ndarray
    orientation_xyzw: np.ndarray
    covariance: np.ndarray
    
    def __post_init__(self):
        """Validate shapes."""
        position = np.array(self.position, dtype=float).reshape(3)
        orientation = np.array(self.orientation_xyzw, dtype=float).reshape(4)
        covariance = np.array(self.covariance, dtype=float)
        if covariance.shape != (6, 6):
            raise ValueError(f"Covariance must be 6x6, got {covariance.shape}")
        if np.any(np.diag(covariance) < 0):
            raise ValueError("Covariance diagonal cannot be negative")
        
        object.__setattr__(self, 'timestamp_ns', int(self.timestamp_ns))
        object.__setattr__(self, 'position', position)
        object.__setattr__(self, 'orientation_xyzw', orientation)
        object.__setattr__(self, 'covariance', covariance)
    
    @property
    def orientation_variance(self) -> np.ndarray:
        """Orientation variances (rad^2)."""
        return np.diag(self.covariance)[:3]
    
    @property
    def position_variance(self) -> np.ndarray:
        """Position variances (m^2)."""
        return np.diag(self.covariance)[3:]
    
    def to_transformation(self) -> Transformation:
        """Pose as a Transformation (T_G_B)."""
        return Transformation(self.position, self.orientation_xyzw)


@dataclass(frozen=True)
class EstimatorStatus:
    """
    Status reported by the external estimator.
    
    Only used for logging; never for control decisions in this core.
    
    Attributes:
        initialized: Estimator has initialized its filter
        localized: Estimator has anchored itself in the global frame
        T_G_M: Estimator's own local-to-global transform, if localized
    """
    
    initialized: bool = False
    localized: bool = False
    T_G_M: Optional[Transformation] = None
