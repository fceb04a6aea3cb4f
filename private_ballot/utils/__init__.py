"""Utilities for the private-ballot protocol."""

from .utils import (
    setup_logging,
    save_results,
    PerformanceMonitor,
    OperationContext,
    create_performance_report,
    get_system_info,
    format_duration,
)

__all__ = [
    'setup_logging',
    'save_results',
    'PerformanceMonitor',
    'OperationContext',
    'create_performance_report',
    'get_system_info',
    'format_duration',
]
