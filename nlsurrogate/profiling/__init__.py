"""
Profiling package: trace parsing and hotspot ranking.
"""

from nlsurrogate.profiling.hotspots import select_hotspots
from nlsurrogate.profiling.trace import read_trace, simulation_total_time

__all__ = ["read_trace", "select_hotspots", "simulation_total_time"]
