"""
Pytest configuration and shared fixtures for the localization fusion tests.

Provides synthetic trajectories, a camera rig, a recording estimator and a
scene builder producing exact 2D-3D matches for a known body pose.
"""

import sys
from pathlib import Path
from typing import List, Tuple

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from violoc_core.metrics import reset_metrics
from violoc_core.proto import (
    EstimatorStatus,
    LocalizationObservation,
    PoseSample,
    PoseUpdate,
    Transformation,
)
from violoc_core.localization import (
    CameraRig,
    EstimatorInterface,
    PinholeCamera,
    seconds_to_nanoseconds,
)


# =============================================================================
# Global State
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Give every test its own global metrics collector."""
    reset_metrics()
    yield
    reset_metrics()


# =============================================================================
# Estimator Fixtures
# =============================================================================


class RecordingEstimator(EstimatorInterface):
    """
    Estimator stand-in that records every update it receives.
    
    Args:
        accept_correspondences: Return value of correspondence ingestion
        status: Status reported by query_status()
    """
    
    def __init__(self, accept_correspondences: bool = True, status: EstimatorStatus = None):
        self.accept_correspondences = accept_correspondences
        self.status = status or EstimatorStatus(initialized=True)
        self.pose_updates: List[PoseUpdate] = []
        self.correspondence_updates: List[Tuple[int, np.ndarray, np.ndarray, int]] = []
    
    def ingest_pose_update(self, update: PoseUpdate) -> None:
        self.pose_updates.append(update)
    
    def ingest_correspondence_update(self, camera_index, keypoints, landmarks, timestamp_ns):
        self.correspondence_updates.append((camera_index, keypoints, landmarks, timestamp_ns))
        return self.accept_correspondences
    
    def query_status(self) -> EstimatorStatus:
        return self.status


@pytest.fixture
def recording_estimator() -> RecordingEstimator:
    """Estimator accepting all correspondence updates."""
    return RecordingEstimator()


# =============================================================================
# Geometry Fixtures
# =============================================================================


@pytest.fixture
def pinhole_camera() -> PinholeCamera:
    """
    VGA pinhole camera without distortion.
    
    Returns:
        PinholeCamera with f=400px, principal point at the image center.
    """
    return PinholeCamera(fx=400.0, fy=400.0, cx=320.0, cy=240.0, width=640, height=480)


@pytest.fixture
def camera_rig(pinhole_camera: PinholeCamera) -> CameraRig:
    """Two identical cameras, both at the body origin."""
    return CameraRig(cameras=[pinhole_camera, pinhole_camera])


@pytest.fixture
def T_G_M() -> Transformation:
    """Ground-truth local-to-global transform used in scenarios."""
    return Transformation.from_rotation(
        Rotation.from_euler('z', 30.0, degrees=True),
        (10.0, -4.0, 0.5),
    )


@pytest.fixture
def trajectory() -> List[PoseSample]:
    """
    Estimator trajectory at 10 Hz for 5 s in the local frame.
    
    Moves along x at 1 m/s while yawing slowly.
    """
    samples = []
    for i in range(51):
        t_s = i * 0.1
        T_M_I = Transformation.from_rotation(
            Rotation.from_euler('z', 5.0 * t_s, degrees=True),
            (1.0 * t_s, 0.2 * t_s, 0.0),
        )
        samples.append(PoseSample(seconds_to_nanoseconds(t_s), T_M_I))
    return samples


# =============================================================================
# Helper Functions
# =============================================================================


def make_pose(yaw_deg: float = 0.0, position=(0.0, 0.0, 0.0)) -> Transformation:
    """Transform with a yaw rotation and a position."""
    return Transformation.from_rotation(
        Rotation.from_euler('z', yaw_deg, degrees=True), position
    )


def build_matches(
    T_G_B: Transformation,
    camera: PinholeCamera,
    T_C_B: Transformation = None,
    num_points: int = 20,
    depth_m: float = 5.0,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Exact 2D-3D matches seen by a camera at a known body pose.
    
    Args:
        T_G_B: True body pose in the global frame
        camera: Camera model (distortion-free)
        T_C_B: Camera extrinsics (identity if None)
        num_points: Number of matches
        depth_m: Depth of all landmarks along the optical axis
        
    Returns:
        (keypoints (N, 2), landmarks_G (N, 3))
    """
    T_C_B = T_C_B or Transformation()
    T_G_C = T_G_B * T_C_B.inverse()
    
    rng = np.random.default_rng(7)
    keypoints = np.column_stack([
        rng.uniform(50.0, camera.width - 50.0, num_points),
        rng.uniform(50.0, camera.height - 50.0, num_points),
    ])
    
    rays = np.column_stack([
        (keypoints[:, 0] - camera.cx) / camera.fx,
        (keypoints[:, 1] - camera.cy) / camera.fy,
        np.ones(num_points),
    ])
    landmarks_G = T_G_C.transform(rays * depth_m)
    return keypoints, landmarks_G


def make_observation(
    timestamp_ns: int,
    T_G_B: Transformation,
    matches_per_camera=None,
) -> LocalizationObservation:
    """LocalizationObservation from per-camera (keypoints, landmarks) pairs."""
    matches_per_camera = matches_per_camera or []
    return LocalizationObservation(
        timestamp_ns=timestamp_ns,
        T_G_B=T_G_B,
        keypoints_per_camera=[kp for kp, _ in matches_per_camera],
        landmarks_per_camera=[lm for _, lm in matches_per_camera],
    )


def empty_matches() -> Tuple[np.ndarray, np.ndarray]:
    """Empty match set for a camera."""
    return np.zeros((0, 2)), np.zeros((0, 3))
