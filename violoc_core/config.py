"""
Configuration defaults and loaders.

Plain dictionaries hold the deployment defaults; load_handler_config()
turns them (plus overrides) into the dataclass configs the components take.

Usage:
    from violoc_core.config import configure_logging, load_handler_config
    
    configure_logging()
    config = load_handler_config({'use_6dof_localization': False,
                                  'gate': {'max_mean_reprojection_error_px': 50.0}})
"""

import copy
import logging
from typing import Optional

from violoc_core.localization.baseframe_estimator import BaseframeEstimatorConfig
from violoc_core.localization.clock_aligner import seconds_to_nanoseconds
from violoc_core.localization.localization_handler import LocalizationHandlerConfig
from violoc_core.localization.measurement_adapter import MeasurementAdapterConfig
from violoc_core.localization.pose_lookup_buffer import PoseBufferConfig
from violoc_core.localization.reprojection_gate import ReprojectionGateConfig

# Localization fusion configuration
LOCALIZATION_FUSION_CONFIG = {
    "use_6dof_localization": True,            # 6-DoF updates instead of 2D-3D constraints
    "estimator_handles_anchoring": True,      # estimator anchors itself in 6-DoF mode
    "use_6dof_for_inactive_cameras": False,   # 6-DoF fallback for inactive-camera matches
    "demote_on_quality_reject": True,         # LOCALIZED -> NOT_LOCALIZED on gate rejection
    "buffer_pending_observations": False,     # hold localizations until the pose is available
    "max_pending_observations": 50,
    "pose_buffer": {
        "retention_ns": seconds_to_nanoseconds(30.0),
        "max_propagation_ns": seconds_to_nanoseconds(1.0),
    },
    "baseframe": {
        "min_num_estimates_before_init": 2,
        "inlier_ratio_threshold": 0.6,
        "max_ransac_iterations": 200,
        "orientation_threshold_deg": 3.0,
        "position_threshold_m": 0.3,
        "ransac_seed": None,
        "clear_candidates_on_success": True,
    },
    "gate": {
        "min_success_rate": 0.5,
        "min_num_structure_constraints": 5,
        "max_mean_reprojection_error_px": 100.0,
        "max_gravity_misalignment_deg": None,  # gravity check disabled
    },
    "adapter": {
        "orientation_std_rad": 0.04,           # about 2 deg
        "position_std_m": 0.8,
    },
}

# Logging configuration
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}

_SECTION_TYPES = {
    "pose_buffer": PoseBufferConfig,
    "baseframe": BaseframeEstimatorConfig,
    "gate": ReprojectionGateConfig,
    "adapter": MeasurementAdapterConfig,
}


def _merge(base: dict, overrides: dict, path: str = "") -> dict:
    """Recursively merge overrides into a copy of base, rejecting unknown keys."""
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if key not in merged:
            raise ValueError(f"Unknown configuration key: {path}{key}")
        if isinstance(merged[key], dict):
            if not isinstance(value, dict):
                raise ValueError(f"Configuration section {path}{key} must be a dict")
            merged[key] = _merge(merged[key], value, f"{path}{key}.")
        else:
            merged[key] = value
    return merged


def load_handler_config(overrides: Optional[dict] = None) -> LocalizationHandlerConfig:
    """
    Build the handler configuration from defaults and overrides.
    
    Args:
        overrides: Nested dict with the same layout as LOCALIZATION_FUSION_CONFIG
        
    Returns:
        LocalizationHandlerConfig
        
    Raises:
        ValueError: On unknown keys or malformed sections
    """
    values = _merge(LOCALIZATION_FUSION_CONFIG, overrides or {})
    for section, config_type in _SECTION_TYPES.items():
        values[section] = config_type(**values[section])
    return LocalizationHandlerConfig(**values)


def configure_logging(logging_config: Optional[dict] = None):
    """
    Apply the logging configuration to the root and package loggers.
    
    Args:
        logging_config: Dict with 'level' and 'format' (LOGGING_CONFIG if None)
    """
    logging_config = logging_config or LOGGING_CONFIG
    level = getattr(logging, logging_config["level"])
    logging.basicConfig(level=level, format=logging_config["format"])
    logging.getLogger("violoc_core").setLevel(level)
