"""
Protocol Module: Message schemas.

- Transformation: immutable rigid transform value type
- PoseSample: estimator pose stream element
- LocalizationObservation: map-based localization result
- PoseUpdate / EstimatorStatus: external estimator boundary
"""

from .transformation import (
    Transformation,
    average_transformations,
    canonicalize_quaternion,
)
from .pose_sample import PoseSample
from .localization_result import LocalizationObservation
from .estimator_update import (
    PoseUpdate,
    EstimatorStatus,
)

__all__ = [
    'Transformation',
    'average_transformations',
    'canonicalize_quaternion',
    'PoseSample',
    'LocalizationObservation',
    'PoseUpdate',
    'EstimatorStatus',
]
