"""
Type definitions for provider return types.
"""

from typing import TypedDict


class SourceInfo(TypedDict, total=False):
    """One playable source as returned to callers of /flixer/extract"""
    quality: str
    title: str
    url: str
    type: str  # always 'hls' for this upstream
    referer: str
    requiresSegmentProxy: bool
    status: str
    language: str
    server: str
