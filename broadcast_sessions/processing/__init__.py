"""
Session reconstruction pipeline: segments -> sessions -> rollups.
"""

from .segment_builder import SegmentBuilder, SegmentSpec, pair_markers, partition_blocks
from .session_stitcher import SessionStitcher, StitchResult, group_segments
from .rollups import RollupAggregator, RollupResult, compute_rollups_from_events
from .rebuild import MaintenanceResult, RebuildResult, SessionRebuilder

__all__ = [
    'SegmentBuilder',
    'SegmentSpec',
    'pair_markers',
    'partition_blocks',
    'SessionStitcher',
    'StitchResult',
    'group_segments',
    'RollupAggregator',
    'RollupResult',
    'compute_rollups_from_events',
    'MaintenanceResult',
    'RebuildResult',
    'SessionRebuilder',
]
