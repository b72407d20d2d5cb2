"""
VIO Localization Fusion Core Package.

Keeps a drifting onboard motion estimate (VIO) anchored in the global map
frame by fusing it with intermittent map-based localization results.

Package structure:
- proto: Message schemas (poses, localization results, estimator updates)
- localization: Clock alignment, pose history, baseframe RANSAC,
  localization state machine, reprojection gating, measurement adapter
- metrics: Diagnostics, counters, histograms
- config: Configuration defaults, loaders, logging setup
"""

__version__ = "0.1.0"
__author__ = "VIO Localization Team"
