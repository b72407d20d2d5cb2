"""
Camera projection model and camera rig.

Pinhole model with optional two-term radial distortion. Projection reports a
detailed status so callers can tell a point behind the camera from a point
that merely lands outside the image.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Sequence
import numpy as np

from violoc_core.proto.transformation import Transformation


class ProjectionStatus(IntEnum):
    """Detailed outcome of a 3D -> 2D projection."""
    
    KEYPOINT_VISIBLE = 0
    KEYPOINT_OUTSIDE_IMAGE_BOX = 1
    POINT_BEHIND_CAMERA = 2
    PROJECTION_INVALID = 3


@dataclass(frozen=True)
class ProjectionResult:
    """
    Projection of one point.
    
    Attributes:
        status: Detailed projection status
        keypoint: Pixel coordinates (u, v); None if behind camera or invalid
    """
    
    status: ProjectionStatus
    keypoint: Optional[np.ndarray] = None
    
    @property
    def is_valid(self) -> bool:
        """
        True if a reprojection error can be computed.
        
        A keypoint outside the image box still has well-defined coordinates.
        """
        return self.status in (
            ProjectionStatus.KEYPOINT_VISIBLE,
            ProjectionStatus.KEYPOINT_OUTSIDE_IMAGE_BOX,
        )
    
    @property
    def is_keypoint_visible(self) -> bool:
        return self.status == ProjectionStatus.KEYPOINT_VISIBLE


@dataclass(frozen=True)
class PinholeCamera:
    """
    Pinhole camera with optional radial distortion.
    
    Attributes:
        fx, fy: Focal lengths (px)
        cx, cy: Principal point (px)
        width, height: Image size (px)
        k1, k2: Radial distortion coefficients
        min_depth_m: Points at or closer than this depth count as behind
    """
    
    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int
    k1: float = 0.0
    k2: float = 0.0
    min_depth_m: float = 1e-6
    
    def __post_init__(self):
        """Validate intrinsics."""
        if self.fx <= 0 or self.fy <= 0:
            raise ValueError(f"Focal lengths must be positive: fx={self.fx}, fy={self.fy}")
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Image size must be positive: {self.width}x{self.height}")
    
    def project3(self, p_C: np.ndarray) -> ProjectionResult:
        """
        Project a point given in the camera frame.
        
        Args:
            p_C: 3D point in the camera frame (m)
            
        Returns:
            ProjectionResult with status and pixel coordinates
        """
        p = np.asarray(p_C, dtype=float).reshape(3)
        if not np.all(np.isfinite(p)):
            return ProjectionResult(ProjectionStatus.PROJECTION_INVALID)
        
        if p[2] <= self.min_depth_m:
            return ProjectionResult(ProjectionStatus.POINT_BEHIND_CAMERA)
        
        x, y = p[0] / p[2], p[1] / p[2]
        r2 = x * x + y * y
        radial = 1.0 + self.k1 * r2 + self.k2 * r2 * r2
        if radial <= 0.0:
            # Outside the domain where the distortion model is invertible
            return ProjectionResult(ProjectionStatus.PROJECTION_INVALID)
        
        keypoint = np.array([
            self.fx * x * radial + self.cx,
            self.fy * y * radial + self.cy,
        ])
        
        inside = (
            0.0 <= keypoint[0] < self.width and
            0.0 <= keypoint[1] < self.height
        )
        status = (
            ProjectionStatus.KEYPOINT_VISIBLE if inside
            else ProjectionStatus.KEYPOINT_OUTSIDE_IMAGE_BOX
        )
        return ProjectionResult(status, keypoint)


@dataclass(frozen=True)
class CameraRig:
    """
    Cameras of the localization subsystem with their extrinsics.
    
    Attributes:
        cameras: Camera models, indexed by localization camera index
        T_C_B: Per camera, transform from body frame into camera frame
    """
    
    cameras: Sequence[PinholeCamera]
    T_C_B: Sequence[Transformation] = field(default_factory=list)
    
    def __post_init__(self):
        """Default extrinsics to identity and validate sizes."""
        cameras = tuple(self.cameras)
        extrinsics = tuple(self.T_C_B) or tuple(Transformation() for _ in cameras)
        if len(extrinsics) != len(cameras):
            raise ValueError(
                f"{len(cameras)} cameras but {len(extrinsics)} extrinsics"
            )
        object.__setattr__(self, 'cameras', cameras)
        object.__setattr__(self, 'T_C_B', extrinsics)
    
    @property
    def num_cameras(self) -> int:
        return len(self.cameras)
    
    def get_camera(self, camera_index: int) -> PinholeCamera:
        return self.cameras[camera_index]
    
    def get_T_C_B(self, camera_index: int) -> Transformation:
        return self.T_C_B[camera_index]
    
    def camera_poses(self, T_G_B: Transformation) -> List[Transformation]:
        """Global camera poses T_G_C for a body pose T_G_B."""
        return [(T_C_B * T_G_B.inverse()).inverse() for T_C_B in self.T_C_B]
