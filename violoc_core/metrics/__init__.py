"""
Metrics Module: Diagnostics, counters, histograms.

Every dropped localization result or pose lookup records a reason code so
that no rejection is silent.

Usage:
    from violoc_core.metrics import get_metrics
    
    metrics = get_metrics()
    metrics.increment('localizations_in')
    metrics.increment_drop('pose_not_yet_available')
    metrics.record_histogram('reprojection_error_diff_px', 1.23)
"""

from .counters import MetricsCollector

# Global singleton for easy access
_global_metrics = None


def get_metrics() -> MetricsCollector:
    """
    Get the global metrics collector singleton.
    
    Returns:
        MetricsCollector instance
    """
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics


def reset_metrics():
    """Reset global metrics (for testing)."""
    global _global_metrics
    _global_metrics = MetricsCollector()


__all__ = ['MetricsCollector', 'get_metrics', 'reset_metrics']
