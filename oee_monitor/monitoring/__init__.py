"""
OEE Monitor - Monitoring Package

This package provides Prometheus metrics collection.
"""

from .application_metrics import ApplicationMetrics, application_metrics

__all__ = ["ApplicationMetrics", "application_metrics"]
