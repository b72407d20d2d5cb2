"""
Rigid Transformation Value Type.

Immutable rigid-body transform T_A_B (maps points from frame B into frame A)
made of a position and a unit rotation quaternion.

Frame naming follows the T_<to>_<from> convention used throughout the core:
- G: global (map) frame
- M: local odometry frame of the motion estimator
- I/B: body (IMU) frame
- C: camera frame

Quaternions are stored in scipy order (x, y, z, w) and canonicalized so the
scalar part is non-negative; q and -q therefore collapse to a single
representation and equal transforms compare equal.
"""

from typing import Iterable, Optional, Union
import numpy as np
from scipy.spatial.transform import Rotation, Slerp

ArrayLike = Union[Iterable[float], np.ndarray]

_MIN_QUATERNION_NORM = 1e-12


def _read_only_view(array: np.ndarray) -> np.ndarray:
    view = array.view()
    view.flags.writeable = False
    return view


def canonicalize_quaternion(quaternion_xyzw: ArrayLike) -> np.ndarray:
    """
    Normalize a quaternion and force a non-negative scalar part.
    
    Args:
        quaternion_xyzw: Quaternion (x, y, z, w)
        
    Returns:
        Unit quaternion with w >= 0
        
    Raises:
        ValueError: If the quaternion is non-finite or has zero norm
    """
    q = np.array(quaternion_xyzw, dtype=float).reshape(4)
    if not np.all(np.isfinite(q)):
        raise ValueError(f"Quaternion must be finite: {q}")
    
    norm = np.linalg.norm(q)
    if norm < _MIN_QUATERNION_NORM:
        raise ValueError(f"Quaternion has zero norm: {q}")
    
    q = q / norm
    if q[3] < 0.0:
        q = -q
    return q


class Transformation:
    """
    Immutable rigid transform (position + unit rotation).
    
    Usage:
        T_G_M = Transformation(position=(1.0, 0.0, 0.0))
        T_M_I = Transformation.from_rotation(Rotation.from_euler('z', 90, degrees=True))
        
        T_G_I = T_G_M * T_M_I
        p_G = T_G_I.transform(p_I)
    """
    
    __slots__ = ('_position', '_quaternion')
    
    def __init__(
        self,
        position: ArrayLike = (0.0, 0.0, 0.0),
        quaternion_xyzw: ArrayLike = (0.0, 0.0, 0.0, 1.0),
    ):
        """
        Initialize transformation.
        
        Args:
            position: Translation (x, y, z) in meters
            quaternion_xyzw: Rotation quaternion (x, y, z, w), normalized here
        """
        p = np.array(position, dtype=float).reshape(3)
        if not np.all(np.isfinite(p)):
            raise ValueError(f"Position must be finite: {p}")
        
        # Stored arrays stay private and writable; properties hand out read-only views
        self._position = p
        self._quaternion = canonicalize_quaternion(quaternion_xyzw)
    
    @classmethod
    def identity(cls) -> 'Transformation':
        """Identity transform."""
        return cls()
    
    @classmethod
    def from_rotation(
        cls,
        rotation: Rotation,
        position: ArrayLike = (0.0, 0.0, 0.0),
    ) -> 'Transformation':
        """Build from a scipy Rotation and a position."""
        return cls(position, rotation.as_quat())
    
    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> 'Transformation':
        """
        Build from a 4x4 homogeneous matrix.
        
        Args:
            matrix: 4x4 transform; upper-left 3x3 must be a rotation
        """
        m = np.asarray(matrix, dtype=float)
        if m.shape != (4, 4):
            raise ValueError(f"Expected 4x4 matrix, got shape {m.shape}")
        return cls(m[:3, 3], Rotation.from_matrix(m[:3, :3]).as_quat())
    
    @property
    def position(self) -> np.ndarray:
        """Translation (read-only view)."""
        return _read_only_view(self._position)
    
    @property
    def quaternion_xyzw(self) -> np.ndarray:
        """Canonical rotation quaternion (x, y, z, w) (read-only view)."""
        return _read_only_view(self._quaternion)
    
    @property
    def rotation(self) -> Rotation:
        """Rotation as scipy Rotation."""
        return Rotation.from_quat(self._quaternion)
    
    def rotation_matrix(self) -> np.ndarray:
        """3x3 rotation matrix."""
        return self.rotation.as_matrix()
    
    def as_matrix(self) -> np.ndarray:
        """4x4 homogeneous matrix."""
        m = np.eye(4)
        m[:3, :3] = self.rotation_matrix()
        m[:3, 3] = self._position
        return m
    
    def inverse(self) -> 'Transformation':
        """Inverse transform (T_B_A for T_A_B)."""
        r_inv = self.rotation.inv()
        return Transformation.from_rotation(r_inv, -r_inv.apply(self._position))
    
    def __mul__(self, other: 'Transformation') -> 'Transformation':
        """Compose: (T_A_B * T_B_C) = T_A_C."""
        if not isinstance(other, Transformation):
            return NotImplemented
        r = self.rotation
        return Transformation.from_rotation(
            r * other.rotation,
            r.apply(other._position) + self._position,
        )
    
    def transform(self, points: ArrayLike) -> np.ndarray:
        """
        Transform points from the source frame into the target frame.
        
        Args:
            points: Single point (3,) or array of points (N, 3)
            
        Returns:
            Transformed point(s) with the same shape as the input
        """
        pts = np.array(points, dtype=float)
        return self.rotation.apply(pts) + self._position
    
    def interpolate(self, other: 'Transformation', alpha: float) -> 'Transformation':
        """
        Interpolate towards another transform.
        
        Position is interpolated linearly, rotation by slerp along the
        shortest arc.
        
        Args:
            other: Transform at alpha = 1
            alpha: Interpolation factor in [0, 1]
        """
        if alpha <= 0.0:
            return self
        if alpha >= 1.0:
            return other
        
        key_rotations = Rotation.from_quat(
            np.vstack([self._quaternion, other.quaternion_xyzw])
        )
        rotation = Slerp([0.0, 1.0], key_rotations)([alpha])[0]
        position = (1.0 - alpha) * self._position + alpha * other.position
        return Transformation.from_rotation(rotation, position)
    
    def angular_distance(self, other: 'Transformation') -> float:
        """Angle (rad) of the relative rotation between two transforms."""
        return float((self.rotation.inv() * other.rotation).magnitude())
    
    def position_distance(self, other: 'Transformation') -> float:
        """Euclidean distance (m) between the two positions."""
        return float(np.linalg.norm(self._position - other.position))
    
    def is_close(
        self,
        other: 'Transformation',
        position_tol_m: float = 1e-9,
        angle_tol_rad: float = 1e-9,
    ) -> bool:
        """Check approximate equality within tolerances."""
        return (
            self.position_distance(other) <= position_tol_m and
            self.angular_distance(other) <= angle_tol_rad
        )
    
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Transformation):
            return NotImplemented
        return (
            np.array_equal(self._position, other.position) and
            np.array_equal(self._quaternion, other.quaternion_xyzw)
        )
    
    __hash__ = None
    
    def __repr__(self) -> str:
        p = self._position
        q = self._quaternion
        return (
            f"Transformation(p=[{p[0]:.4f}, {p[1]:.4f}, {p[2]:.4f}], "
            f"q_xyzw=[{q[0]:.4f}, {q[1]:.4f}, {q[2]:.4f}, {q[3]:.4f}])"
        )
    
    def to_dict(self) -> dict:
        """Convert to dictionary for logging/serialization."""
        return {
            'position': self._position.tolist(),
            'quaternion_xyzw': self._quaternion.tolist(),
        }


def average_transformations(
    transforms: Iterable[Transformation],
    weights: Optional[ArrayLike] = None,
) -> Transformation:
    """
    Least-squares average of rigid transforms.
    
    Positions are averaged arithmetically; rotations with the chordal L2 mean
    (scipy Rotation.mean).
    
    Args:
        transforms: Transforms to average (at least one)
        weights: Optional non-negative weights
        
    Returns:
        Canonical averaged transform
    """
    transforms = list(transforms)
    if not transforms:
        raise ValueError("Cannot average an empty set of transforms")
    
    positions = np.vstack([t.position for t in transforms])
    rotations = Rotation.from_quat(np.vstack([t.quaternion_xyzw for t in transforms]))
    
    if weights is None:
        mean_position = positions.mean(axis=0)
        mean_rotation = rotations.mean()
    else:
        w = np.asarray(weights, dtype=float)
        mean_position = np.average(positions, axis=0, weights=w)
        mean_rotation = rotations.mean(weights=w)
    
    return Transformation.from_rotation(mean_rotation, mean_position)
