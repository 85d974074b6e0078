# src/chatcore/analytics/__init__.py
"""Session analytics derived from bus events."""

from .session import (
    DailyStats,
    SessionAnalytics,
    SessionMetrics,
    SessionQuality,
    completion_score,
    engagement_score,
    overall_score,
    percentiles,
    responsiveness_score,
)

__all__ = [
    "DailyStats",
    "SessionAnalytics",
    "SessionMetrics",
    "SessionQuality",
    "completion_score",
    "engagement_score",
    "overall_score",
    "percentiles",
    "responsiveness_score",
]
