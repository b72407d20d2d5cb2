"""
Pose Sample Schema.

One pose of the motion estimator's trajectory in its local odometry frame,
as delivered on the estimator's pose stream.
"""

from dataclasses import dataclass

from .transformation import Transformation


@dataclass(frozen=True)
class PoseSample:
    """
    Estimator pose at a point in time.
    
    Attributes:
        timestamp_ns: Estimator clock timestamp (nanoseconds, monotonic)
        T_M_I: Body (IMU) pose in the local odometry frame
    """
    
    timestamp_ns: int
    T_M_I: Transformation
    
    def __post_init__(self):
        """Validate pose sample."""
        if not isinstance(self.T_M_I, Transformation):
            raise ValueError(f"T_M_I must be a Transformation, got {type(self.T_M_I)}")
        object.__setattr__(self, 'timestamp_ns', int(self.timestamp_ns))
    
    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'timestamp_ns': self.timestamp_ns,
            'T_M_I': self.T_M_I.to_dict(),
        }
