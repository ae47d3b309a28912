"""
Attendance module: per-person daily in/out records from raw terminal scans
"""

from .aggregator import AggregatedRecord, TimeThreshold, aggregate, parse_device_time

__all__ = ['AggregatedRecord', 'TimeThreshold', 'aggregate', 'parse_device_time']
