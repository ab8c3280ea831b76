"""Utilities for the round coordinator."""

from .utils import (
    setup_logging,
    save_results,
    PerformanceMonitor,
    PerformanceMetrics,
    create_performance_report,
    create_round_summary,
    format_duration,
    get_system_info,
    validate_environment,
    LoopLock,
)

__all__ = [
    'setup_logging',
    'save_results',
    'PerformanceMonitor',
    'PerformanceMetrics',
    'create_performance_report',
    'create_round_summary',
    'format_duration',
    'get_system_info',
    'validate_environment',
    'LoopLock',
]
