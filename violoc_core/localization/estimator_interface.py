"""
Boundary to the external motion estimator.

The estimator is a black box; this module only fixes the calls the fusion
core makes into it. Implementations wrap the actual estimator.
"""

from abc import ABC, abstractmethod

import numpy as np

from violoc_core.proto.estimator_update import EstimatorStatus, PoseUpdate


class EstimatorInterface(ABC):
    """
    Ingestion entry points of the external estimator.
    
    ingest_correspondence_update() is optional: estimators that cannot use
    2D-3D structure constraints keep the default, which rejects every batch.
    """
    
    @abstractmethod
    def ingest_pose_update(self, update: PoseUpdate) -> None:
        """
        Feed a direct 6-DoF pose correction.
        
        The estimator may silently drop stale updates.
        """
    
    def ingest_correspondence_update(
        self,
        camera_index: int,
        keypoints: np.ndarray,
        landmarks: np.ndarray,
        timestamp_ns: int,
    ) -> bool:
        """
        Feed 2D-3D structure constraints of one camera.
        
        Args:
            camera_index: Estimator camera index
            keypoints: (K, 2) image measurements (px)
            landmarks: (K, 3) matched global landmarks (m)
            timestamp_ns: Estimator clock timestamp
            
        Returns:
            True if the estimator accepted the update
        """
        return False
    
    @abstractmethod
    def query_status(self) -> EstimatorStatus:
        """Current estimator status (diagnostics only)."""
