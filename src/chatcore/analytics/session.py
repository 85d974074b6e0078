# src/chatcore/analytics/session.py
"""
Session Analytics.

A pure consumer of bus events: it derives usage, behaviour and quality
metrics for each conversation session without any component depending on
it. Every event handler catches and logs its own failures so analytics can
never break the component that published the event.

Quality scores computed when a session ends:

- responsiveness: ``max(0, 100 - mean_response_time / max_response_time * 100)``
- engagement: ``min(assistant_messages / max(user_messages, 1) * 50, 100)``
- completion: ``min(duration / ideal_session_duration * 100, 100)``
- overall: ``0.3 * responsiveness + 0.4 * engagement + 0.3 * completion``

Completed sessions roll up into per-day aggregates which outlive the
per-session detail (pruned past ``retention_days``) and are persisted in the
State Store under ``AnalyticsConfig.state_key``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from ..config.models import AnalyticsConfig
from ..events import EventBus, EventName
from ..models import EventRecord, Message, Role, utc_now
from ..scheduling import PeriodicScheduler, PeriodicTask

logger = logging.getLogger(__name__)

AGGREGATION_TASK_NAME = "session_analytics_aggregation"

TIME_RANGES: dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}

WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

SHORT_SESSION_SECONDS = 300.0
SLOW_RESPONSE_SECONDS = 5.0
LOW_QUALITY_SCORE = 70.0


# =============================================================================
# METRIC MODELS
# =============================================================================


class SessionQuality(BaseModel):
    responsiveness: float = 0.0
    engagement: float = 0.0
    completion: float = 0.0
    overall: float = 0.0
    response_times: list[float] = Field(default_factory=list, description="Seconds from user message to reply")


class SessionBehavior(BaseModel):
    average_message_length: float = 0.0
    time_between_messages: list[float] = Field(default_factory=list)
    command_usage: dict[str, int] = Field(default_factory=dict)
    session_switches: int = 0
    clears: int = 0
    compactions: int = 0


class SessionTokenUsage(BaseModel):
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output


class SessionError(BaseModel):
    type: str = "unknown"
    message: str = ""
    timestamp: datetime = Field(default_factory=utc_now)


class SessionMetrics(BaseModel):
    """Everything tracked about one conversation session."""

    session_id: str
    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None
    duration: float | None = Field(default=None, description="Seconds, set when the session ends")
    last_activity: datetime | None = None
    last_user_message_at: datetime | None = None
    paused_seconds: float = Field(default=0.0, description="Time spent ended before being resumed")
    message_count: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    token_usage: SessionTokenUsage = Field(default_factory=SessionTokenUsage)
    commands: list[str] = Field(default_factory=list)
    errors: list[SessionError] = Field(default_factory=list)
    quality: SessionQuality = Field(default_factory=SessionQuality)
    behavior: SessionBehavior = Field(default_factory=SessionBehavior)

    @property
    def is_ended(self) -> bool:
        return self.end_time is not None


class DailyStats(BaseModel):
    session_count: int = 0
    message_count: int = 0
    total_duration: float = 0.0
    total_tokens: int = 0


# =============================================================================
# HELPERS
# =============================================================================


def responsiveness_score(mean_response_time: float, max_response_time: float) -> float:
    return max(0.0, 100.0 - mean_response_time / max_response_time * 100.0)


def engagement_score(assistant_messages: int, user_messages: int) -> float:
    return min(assistant_messages / max(user_messages, 1) * 50.0, 100.0)


def completion_score(duration: float, ideal_duration: float) -> float:
    return min(duration / ideal_duration * 100.0, 100.0)


def overall_score(responsiveness: float, engagement: float, completion: float) -> float:
    return 0.3 * responsiveness + 0.4 * engagement + 0.3 * completion


def percentiles(values: list[float]) -> dict[str, float]:
    """Nearest-rank p50/p95/p99 (index ``floor(n * p)`` of the sorted samples)."""
    if not values:
        return {"p50": 0.0, "p95": 0.0, "p99": 0.0}
    ordered = sorted(values)
    n = len(ordered)
    return {
        "p50": ordered[min(int(n * 0.5), n - 1)],
        "p95": ordered[min(int(n * 0.95), n - 1)],
        "p99": ordered[min(int(n * 0.99), n - 1)],
    }


def _average(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _peaks(counts: list[int], labels: list[Any]) -> list[Any]:
    if not counts or max(counts) == 0:
        return []
    top = max(counts)
    return [label for label, count in zip(labels, counts) if count == top]


# =============================================================================
# SESSION ANALYTICS
# =============================================================================


class SessionAnalytics:
    """
    Derives per-session metrics from Conversation Manager events.

    Args:
        bus: Event bus to listen on.
        config: Tracking switches, retention and scoring constants.
        store: Optional State Store used by :meth:`save` and :meth:`load`.
        scheduler: Shared scheduler for the periodic aggregation task.
            When omitted, the analytics component runs its own.
    """

    def __init__(
        self,
        bus: EventBus,
        config: AnalyticsConfig | None = None,
        store: Any | None = None,
        scheduler: PeriodicScheduler | None = None,
        owner: str = "session_analytics",
    ) -> None:
        self.bus = bus
        self.config = config or AnalyticsConfig()
        self.store = store
        self.owner = owner
        self.current_session: str | None = None
        self._sessions: dict[str, SessionMetrics] = {}
        self._daily: dict[str, DailyStats] = {}
        self._rolled_up: dict[str, DailyStats] = {}
        self._initialized = False
        self._owns_scheduler = scheduler is None
        self.scheduler = scheduler or PeriodicScheduler()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        if self._initialized:
            return
        self.load()
        handlers: dict[EventName, Callable[[EventRecord], None]] = {
            EventName.CONVERSATION_CREATED: self._on_created,
            EventName.CONVERSATION_IMPORTED: self._on_created,
            EventName.MESSAGE_ADDED: self._on_message_added,
            EventName.CONVERSATION_SWITCHED: self._on_switched,
            EventName.CONVERSATION_CLEARED: self._on_cleared,
            EventName.CONVERSATION_COMPACTED: self._on_compacted,
            EventName.CONVERSATION_DELETED: self._on_deleted,
            EventName.SYNC_FAILED: self._on_sync_failed,
        }
        for name, handler in handlers.items():
            self.bus.subscribe(name, handler, owner=self.owner)

        self.scheduler.register(
            PeriodicTask(
                name=AGGREGATION_TASK_NAME,
                callback=self.perform_aggregation,
                interval=self.config.aggregation_interval,
                description="Prune session detail past the retention window",
            )
        )
        if self._owns_scheduler:
            await self.scheduler.start()
        self._initialized = True
        logger.info(f"SessionAnalytics initialized ({len(self._daily)} days of aggregates)")

    async def destroy(self) -> None:
        """End every open session, persist aggregates and drop every subscription."""
        for session_id in [sid for sid, m in self._sessions.items() if not m.is_ended]:
            self.end_session(session_id)
        self.scheduler.unregister(AGGREGATION_TASK_NAME)
        if self._owns_scheduler:
            await self.scheduler.stop()
        self.save()
        self.bus.unsubscribe_owner(self.owner)
        self._sessions.clear()
        self._daily.clear()
        self._rolled_up.clear()
        self._initialized = False
        logger.info("SessionAnalytics destroyed")

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_created(self, record: EventRecord) -> None:
        try:
            self.start_session(record.payload["conversation_id"], started_at=record.timestamp)
        except Exception as e:
            logger.error(f"Failed to track session start: {e}", exc_info=True)

    def _on_message_added(self, record: EventRecord) -> None:
        try:
            message = Message.model_validate(record.payload["message"])
            self.track_message(record.payload["conversation_id"], message)
        except Exception as e:
            logger.error(f"Failed to track message: {e}", exc_info=True)

    def _on_switched(self, record: EventRecord) -> None:
        try:
            conversation_id = record.payload["conversation_id"]
            previous_id = record.payload.get("previous_id")
            if previous_id and previous_id != conversation_id and previous_id in self._sessions:
                self.end_session(previous_id)
            self.current_session = conversation_id
            metrics = self._sessions.get(conversation_id)
            if metrics is not None:
                if metrics.is_ended:
                    self.resume_session(conversation_id, resumed_at=record.timestamp)
                metrics.behavior.session_switches += 1
        except Exception as e:
            logger.error(f"Failed to track session switch: {e}", exc_info=True)

    def _on_cleared(self, record: EventRecord) -> None:
        try:
            metrics = self._sessions.get(record.payload["conversation_id"])
            if metrics is not None:
                metrics.behavior.clears += 1
        except Exception as e:
            logger.error(f"Failed to track conversation clear: {e}", exc_info=True)

    def _on_compacted(self, record: EventRecord) -> None:
        try:
            metrics = self._sessions.get(record.payload["conversation_id"])
            if metrics is not None:
                metrics.behavior.compactions += 1
        except Exception as e:
            logger.error(f"Failed to track compaction: {e}", exc_info=True)

    def _on_deleted(self, record: EventRecord) -> None:
        try:
            conversation_id = record.payload["conversation_id"]
            if conversation_id in self._sessions:
                self.end_session(conversation_id)
            if self.current_session == conversation_id:
                self.current_session = None
        except Exception as e:
            logger.error(f"Failed to track session end: {e}", exc_info=True)

    def _on_sync_failed(self, record: EventRecord) -> None:
        try:
            conversation_id = record.payload.get("conversation_id")
            if conversation_id:
                self.record_error(conversation_id, "sync", record.payload.get("error", ""))
        except Exception as e:
            logger.error(f"Failed to track sync failure: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def start_session(self, session_id: str, started_at: datetime | None = None) -> SessionMetrics | None:
        """Begin tracking a session. Returns None when tracking is disabled."""
        if not self.config.enabled:
            return None
        start = started_at or utc_now()
        metrics = SessionMetrics(session_id=session_id, start_time=start, last_activity=start)
        self._sessions[session_id] = metrics
        self._rolled_up.pop(session_id, None)
        self.current_session = session_id
        logger.debug(f"Tracking session {session_id}")
        return metrics

    def resume_session(self, session_id: str, resumed_at: datetime | None = None) -> SessionMetrics | None:
        """
        Reopen an ended session, e.g. when its conversation becomes current again.

        Counters carry on from where they were; the time spent ended is left
        out of the duration, and ending the session again only adds the
        activity since the previous end to the daily aggregates.

        Returns:
            The reopened metrics, or None if the session is unknown or still open.
        """
        if not self.config.enabled:
            return None
        metrics = self._sessions.get(session_id)
        if metrics is None or metrics.end_time is None:
            return None
        resumed = resumed_at or utc_now()
        metrics.paused_seconds += max((resumed - metrics.end_time).total_seconds(), 0.0)
        metrics.end_time = None
        metrics.duration = None
        metrics.last_activity = resumed
        metrics.last_user_message_at = None
        logger.debug(f"Resumed session {session_id}")
        return metrics.model_copy(deep=True)

    def track_message(self, session_id: str, message: Message) -> None:
        """Account one message. Ended sessions are resumed; untracked sessions are ignored."""
        if not self.config.enabled:
            return
        metrics = self._sessions.get(session_id)
        if metrics is None:
            return
        if metrics.is_ended:
            self.resume_session(session_id, resumed_at=message.timestamp)

        metrics.message_count += 1
        tokens = message.metadata.tokens or 0
        if message.role == Role.USER.value:
            metrics.user_messages += 1
            metrics.token_usage.input += tokens
            if self.config.track_user_behavior:
                self._track_user_behavior(metrics, message)
            metrics.last_user_message_at = message.timestamp
        else:
            metrics.assistant_messages += 1
            if message.role == Role.ASSISTANT.value:
                metrics.token_usage.output += tokens
            else:
                metrics.token_usage.input += tokens
            if self.config.track_performance and message.role == Role.ASSISTANT.value:
                self._track_response(metrics, message)

        if message.metadata.command:
            metrics.commands.append(message.metadata.command)
        metrics.last_activity = message.timestamp

    def _track_user_behavior(self, metrics: SessionMetrics, message: Message) -> None:
        behavior = metrics.behavior
        if metrics.last_activity is not None:
            gap = (message.timestamp - metrics.last_activity).total_seconds()
            behavior.time_between_messages.append(max(gap, 0.0))
        count = metrics.user_messages
        behavior.average_message_length = (behavior.average_message_length * (count - 1) + len(message.content)) / count
        if message.content.startswith("/"):
            command = message.content.split(" ", 1)[0]
            behavior.command_usage[command] = behavior.command_usage.get(command, 0) + 1

    def _track_response(self, metrics: SessionMetrics, message: Message) -> None:
        if metrics.last_user_message_at is None:
            return
        response_time = (message.timestamp - metrics.last_user_message_at).total_seconds()
        if response_time < 0:
            return
        metrics.quality.response_times.append(response_time)
        metrics.quality.responsiveness = responsiveness_score(
            _average(metrics.quality.response_times), self.config.max_response_time
        )
        metrics.last_user_message_at = None

    def record_error(self, session_id: str, error_type: str = "unknown", message: str = "") -> None:
        metrics = self._sessions.get(session_id)
        if metrics is not None:
            metrics.errors.append(SessionError(type=error_type, message=message))

    def end_session(self, session_id: str, ended_at: datetime | None = None) -> SessionMetrics | None:
        """
        Close a session: fix its duration, compute quality scores and roll it
        into the daily aggregates. Ending an already-ended session is a no-op.

        Returns:
            The final metrics, or None if the session is unknown or already ended.
        """
        metrics = self._sessions.get(session_id)
        if metrics is None or metrics.is_ended:
            return None
        end = ended_at or utc_now()
        metrics.end_time = end
        metrics.duration = max((end - metrics.start_time).total_seconds() - metrics.paused_seconds, 0.0)
        self._score(metrics)
        self._aggregate(metrics)
        if self.current_session == session_id:
            self.current_session = None

        quality = metrics.quality.model_dump(exclude={"response_times"})
        logger.info(f"Session {session_id} ended: {metrics.message_count} messages, overall {quality['overall']:.1f}")
        self.bus.publish(EventName.SESSION_ENDED, {"session_id": session_id, "quality": quality})
        return metrics.model_copy(deep=True)

    def _score(self, metrics: SessionMetrics) -> None:
        quality = metrics.quality
        if quality.response_times:
            quality.responsiveness = responsiveness_score(_average(quality.response_times), self.config.max_response_time)
        if metrics.message_count > 0:
            quality.engagement = engagement_score(metrics.assistant_messages, metrics.user_messages)
        quality.completion = completion_score(metrics.duration or 0.0, self.config.ideal_session_duration)
        quality.overall = overall_score(quality.responsiveness, quality.engagement, quality.completion)

    def _aggregate(self, metrics: SessionMetrics) -> None:
        day = metrics.start_time.date().isoformat()
        stats = self._daily.setdefault(day, DailyStats())
        # a resumed session only contributes what happened since it was last rolled up
        previous = self._rolled_up.get(metrics.session_id, DailyStats())
        current = DailyStats(
            session_count=1,
            message_count=metrics.message_count,
            total_duration=metrics.duration or 0.0,
            total_tokens=metrics.token_usage.total,
        )
        stats.session_count += current.session_count - previous.session_count
        stats.message_count += current.message_count - previous.message_count
        stats.total_duration += current.total_duration - previous.total_duration
        stats.total_tokens += current.total_tokens - previous.total_tokens
        self._rolled_up[metrics.session_id] = current

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session_metrics(self, session_id: str) -> SessionMetrics | None:
        metrics = self._sessions.get(session_id)
        return metrics.model_copy(deep=True) if metrics is not None else None

    def get_daily_stats(self) -> dict[str, DailyStats]:
        return {day: stats.model_copy() for day, stats in sorted(self._daily.items())}

    def _sessions_in_range(self, start: datetime, end: datetime) -> list[SessionMetrics]:
        return [m for m in self._sessions.values() if start <= m.start_time <= end]

    def _range_start(self, time_range: str, end: datetime) -> datetime:
        return end - TIME_RANGES.get(time_range, TIME_RANGES["7d"])

    def get_dashboard_data(self, time_range: str = "7d", now: datetime | None = None) -> dict[str, Any]:
        """
        Overview, usage, performance, quality, trends and insights for a time range.

        Args:
            time_range: ``1h``, ``24h``, ``7d``, ``30d`` or ``90d``; anything else means ``7d``.
            now: End of the range (defaults to the current time).
        """
        end = now or utc_now()
        start = self._range_start(time_range, end)
        sessions = self._sessions_in_range(start, end)
        return {
            "time_range": time_range,
            "overview": self._overview(sessions),
            "usage": self._usage(sessions),
            "performance": self._performance(sessions),
            "quality": self._quality(sessions),
            "trends": {
                day: stats.model_dump()
                for day, stats in sorted(self._daily.items())
                if start.date().isoformat() <= day <= end.date().isoformat()
            },
            "insights": self._insights(sessions),
        }

    def _overview(self, sessions: list[SessionMetrics]) -> dict[str, Any]:
        total_messages = sum(s.message_count for s in sessions)
        return {
            "total_sessions": len(sessions),
            "total_messages": total_messages,
            "total_tokens": sum(s.token_usage.total for s in sessions),
            "average_duration": _average([s.duration or 0.0 for s in sessions]),
            "average_messages_per_session": total_messages / len(sessions) if sessions else 0.0,
        }

    def _usage(self, sessions: list[SessionMetrics]) -> dict[str, Any]:
        command_usage: dict[str, int] = {}
        hourly = [0] * 24
        daily = [0] * 7
        for session in sessions:
            for command, count in session.behavior.command_usage.items():
                command_usage[command] = command_usage.get(command, 0) + count
            hourly[session.start_time.hour] += 1
            daily[session.start_time.weekday()] += 1
        return {
            "command_usage": command_usage,
            "hourly_activity": hourly,
            "daily_activity": daily,
            "peak_hours": _peaks(hourly, list(range(24))),
            "peak_days": _peaks(daily, list(WEEKDAYS)),
        }

    def _performance(self, sessions: list[SessionMetrics]) -> dict[str, Any]:
        response_times = [t for s in sessions for t in s.quality.response_times]
        errors_by_type: dict[str, int] = {}
        for session in sessions:
            for error in session.errors:
                errors_by_type[error.type] = errors_by_type.get(error.type, 0) + 1
        total_errors = sum(errors_by_type.values())
        return {
            "average_response_time": _average(response_times),
            "response_time_percentiles": percentiles(response_times),
            "error_rate": total_errors / len(sessions) if sessions else 0.0,
            "errors_by_type": errors_by_type,
        }

    def _quality(self, sessions: list[SessionMetrics]) -> dict[str, Any]:
        overall = [s.quality.overall for s in sessions]
        return {
            "average_scores": {
                "responsiveness": _average([s.quality.responsiveness for s in sessions]),
                "engagement": _average([s.quality.engagement for s in sessions]),
                "completion": _average([s.quality.completion for s in sessions]),
                "overall": _average(overall),
            },
            "score_distribution": {
                "excellent": sum(1 for score in overall if score >= 80),
                "good": sum(1 for score in overall if 60 <= score < 80),
                "fair": sum(1 for score in overall if 40 <= score < 60),
                "poor": sum(1 for score in overall if score < 40),
            },
        }

    def _insights(self, sessions: list[SessionMetrics]) -> list[dict[str, str]]:
        if not sessions:
            return []
        insights: list[dict[str, str]] = []
        if _average([s.duration or 0.0 for s in sessions]) < SHORT_SESSION_SECONDS:
            insights.append(
                {
                    "type": "usage",
                    "level": "info",
                    "message": "Sessions are typically short.",
                    "recommendation": "Consider follow-up prompts to keep conversations going.",
                }
            )
        if self._performance(sessions)["average_response_time"] > SLOW_RESPONSE_SECONDS:
            insights.append(
                {
                    "type": "performance",
                    "level": "warning",
                    "message": "Response times are slower than optimal.",
                    "recommendation": "Check provider health and latency.",
                }
            )
        if self._quality(sessions)["average_scores"]["overall"] < LOW_QUALITY_SCORE:
            insights.append(
                {
                    "type": "quality",
                    "level": "warning",
                    "message": "Overall session quality could be improved.",
                    "recommendation": "Review conversation patterns and response quality.",
                }
            )
        return insights

    def generate_insights(self, time_range: str = "7d", now: datetime | None = None) -> list[dict[str, str]]:
        end = now or utc_now()
        return self._insights(self._sessions_in_range(self._range_start(time_range, end), end))

    # ------------------------------------------------------------------
    # Retention and persistence
    # ------------------------------------------------------------------

    def perform_aggregation(self, now: datetime | None = None) -> list[str]:
        """Drop per-session detail older than the retention window. Daily aggregates are kept."""
        cutoff = (now or utc_now()) - timedelta(days=self.config.retention_days)
        expired = [sid for sid, m in list(self._sessions.items()) if m.start_time < cutoff]
        for session_id in expired:
            del self._sessions[session_id]
            self._rolled_up.pop(session_id, None)
            if self.current_session == session_id:
                self.current_session = None
        if expired:
            logger.info(f"Pruned {len(expired)} sessions past the {self.config.retention_days}-day retention window")
        return expired

    def to_document(self) -> dict[str, Any]:
        return {
            "daily_stats": {day: stats.model_dump() for day, stats in self._daily.items()},
            "last_saved": utc_now().isoformat(),
        }

    def save(self) -> bool:
        """Write the daily aggregates into the State Store. Returns False without a store."""
        if self.store is None:
            return False
        try:
            self.store.set(self.config.state_key, self.to_document())
        except Exception as e:
            logger.error(f"Failed to save session analytics: {e}", exc_info=True)
            return False
        return True

    def load(self) -> bool:
        """Restore the daily aggregates from the State Store. Returns True when a document was found."""
        if self.store is None:
            return False
        document = self.store.get(self.config.state_key)
        if not isinstance(document, dict):
            return False
        try:
            self._daily = {
                day: DailyStats.model_validate(stats) for day, stats in (document.get("daily_stats") or {}).items()
            }
        except Exception as e:
            logger.error(f"Failed to load session analytics: {e}", exc_info=True)
            return False
        return True

    def get_status(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "enabled": self.config.enabled,
            "current_session": self.current_session,
            "tracked_sessions": len(self._sessions),
            "active_sessions": sum(1 for m in self._sessions.values() if not m.is_ended),
            "days_aggregated": len(self._daily),
        }


__all__ = [
    "AGGREGATION_TASK_NAME",
    "DailyStats",
    "SessionAnalytics",
    "SessionBehavior",
    "SessionError",
    "SessionMetrics",
    "SessionQuality",
    "SessionTokenUsage",
    "completion_score",
    "engagement_score",
    "overall_score",
    "percentiles",
    "responsiveness_score",
]
