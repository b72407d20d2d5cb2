"""
Localization Module: fusion of map localizations into the motion estimator.

Key classes:
- ClockAligner: Localization clock -> estimator clock
- PoseLookupBuffer: Estimator pose history with interpolated lookups
- BaseframeEstimator: RANSAC fit of T_G_M from localization candidates
- LocalizationStateMachine: Initialization vs. correction routing
- ReprojectionGate: Reprojection consistency check of 2D-3D matches
- MeasurementAdapter: Packaging of accepted localizations for the estimator
- LocalizationHandler: Wires everything to the pose and localization streams
"""

from .clock_aligner import (
    ClockAligner,
    seconds_to_nanoseconds,
    nanoseconds_to_seconds,
)
from .pose_lookup_buffer import (
    PoseLookupBuffer,
    PoseBufferConfig,
    PoseLookupResult,
    LookupStatus,
)
from .baseframe_estimator import (
    BaseframeEstimator,
    BaseframeEstimatorConfig,
    BaseframeEstimate,
    BaseframeStatus,
    CandidateBaseframeBuffer,
    RansacResult,
    transformation_ransac,
)
from .localization_state import (
    LocalizationState,
    LocalizationStateMachine,
    Route,
    route,
)
from .camera_model import (
    PinholeCamera,
    CameraRig,
    ProjectionStatus,
    ProjectionResult,
)
from .active_sensor_map import ActiveSensorMap
from .reprojection_gate import (
    ReprojectionGate,
    ReprojectionGateConfig,
    GateDecision,
    GateResult,
    gravity_disparity_angle_deg,
    reprojection_error,
)
from .estimator_interface import EstimatorInterface
from .measurement_adapter import (
    MeasurementAdapter,
    MeasurementAdapterConfig,
)
from .localization_handler import (
    LocalizationHandler,
    LocalizationHandlerConfig,
    BaseframeSnapshot,
    CorrectionOutcome,
    create_default_handler,
)

__all__ = [
    # Clock alignment
    'ClockAligner',
    'seconds_to_nanoseconds',
    'nanoseconds_to_seconds',
    # Pose history
    'PoseLookupBuffer',
    'PoseBufferConfig',
    'PoseLookupResult',
    'LookupStatus',
    # Baseframe initialization
    'BaseframeEstimator',
    'BaseframeEstimatorConfig',
    'BaseframeEstimate',
    'BaseframeStatus',
    'CandidateBaseframeBuffer',
    'RansacResult',
    'transformation_ransac',
    # State machine
    'LocalizationState',
    'LocalizationStateMachine',
    'Route',
    'route',
    # Cameras
    'PinholeCamera',
    'CameraRig',
    'ProjectionStatus',
    'ProjectionResult',
    'ActiveSensorMap',
    # Gating
    'ReprojectionGate',
    'ReprojectionGateConfig',
    'GateDecision',
    'GateResult',
    'gravity_disparity_angle_deg',
    'reprojection_error',
    # Estimator boundary
    'EstimatorInterface',
    'MeasurementAdapter',
    'MeasurementAdapterConfig',
    # Handler
    'LocalizationHandler',
    'LocalizationHandlerConfig',
    'BaseframeSnapshot',
    'CorrectionOutcome',
    'create_default_handler',
]
