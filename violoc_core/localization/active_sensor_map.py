"""
Active-Sensor Map.

Relates the localization subsystem's camera indices to the estimator's
active camera indices. Built once from index pairs as two unidirectional
lookup tables; a localization camera without a counterpart is inactive.
"""

from typing import Dict, Iterable, Optional, Tuple


class ActiveSensorMap:
    """
    Read-only bidirectional camera index mapping.
    
    Usage:
        sensor_map = ActiveSensorMap([(0, 0)])   # loc cam 0 -> estimator cam 0
        sensor_map.get_estimator_index(1)        # None: inactive
    """
    
    def __init__(self, pairs: Iterable[Tuple[int, int]] = ()):
        """
        Build the mapping.
        
        Args:
            pairs: (localization_index, estimator_index) pairs
            
        Raises:
            ValueError: If an index appears twice on either side
        """
        to_estimator: Dict[int, int] = {}
        to_localization: Dict[int, int] = {}
        for loc_idx, est_idx in pairs:
            if loc_idx in to_estimator:
                raise ValueError(f"Localization camera {loc_idx} mapped twice")
            if est_idx in to_localization:
                raise ValueError(f"Estimator camera {est_idx} mapped twice")
            to_estimator[loc_idx] = est_idx
            to_localization[est_idx] = loc_idx
        
        self._to_estimator = to_estimator
        self._to_localization = to_localization
    
    @classmethod
    def identity(cls, num_cameras: int) -> 'ActiveSensorMap':
        """Every camera active with the same index on both sides."""
        return cls((i, i) for i in range(num_cameras))
    
    def get_estimator_index(self, localization_index: int) -> Optional[int]:
        """Estimator camera index, or None if the camera is inactive."""
        return self._to_estimator.get(localization_index)
    
    def get_localization_index(self, estimator_index: int) -> Optional[int]:
        """Localization camera index for an estimator camera, or None."""
        return self._to_localization.get(estimator_index)
    
    def is_active(self, localization_index: int) -> bool:
        return localization_index in self._to_estimator
    
    def __len__(self) -> int:
        return len(self._to_estimator)
