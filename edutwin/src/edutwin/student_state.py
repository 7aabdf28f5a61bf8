"""
Student State Store

In-memory registry of per-student "digital twin" profiles.

Each profile aggregates behavioral metrics (attention, emotion, engagement),
performance metrics (grades, mastery, quiz results) and personalization hints.
Behavior samples and performance events are kept in append-only logs, and
every record call schedules a personalization refresh as a tracked asyncio
task whose outcome callers can await.
"""

import asyncio
import math
import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from edutwin.exceptions import StudentNotFoundError
from edutwin.logger import get_logger

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

INSUFFICIENT_DATA = "insufficient_data"
TREND_DEADBAND = 10
DEFAULT_WINDOW_DAYS = 7
MIN_WINDOW_SAMPLES = 3

# Refresher signature: (profile, behavior_log, performance_log) -> personalization updates
Refresher = Callable[["StudentProfile", List["BehaviorSample"], List["PerformanceEvent"]], Awaitable[Mapping[str, Any]]]


@dataclass
class BehaviorMetrics:
    """Latest behavioral readings for a student."""
    attention_level: float = 0
    emotional_state: str = "neutral"
    engagement_level: float = 0
    comprehension_rate: float = 0
    last_updated: datetime = field(default_factory=datetime.now)


@dataclass
class PerformanceMetrics:
    """Academic performance folded from performance events."""
    overall_grade: float = 0
    subject_scores: Dict[str, float] = field(default_factory=dict)
    concept_mastery: Dict[str, float] = field(default_factory=dict)
    time_spent_per_topic: Dict[str, float] = field(default_factory=dict)
    quiz_results: List["QuizResult"] = field(default_factory=list)


@dataclass
class AIPersonalization:
    """Personalization hints maintained by the refresher."""
    preferred_explanation_style: str = "visual"
    difficulty_level: str = "medium"
    learning_path: List[str] = field(default_factory=list)
    recommended_resources: List[str] = field(default_factory=list)
    intervention_strategies: List[str] = field(default_factory=list)
    last_updated: Optional[datetime] = None


@dataclass
class StudentProfile:
    """A student's digital twin."""
    id: str
    personal_info: Dict[str, Any] = field(default_factory=dict)
    learning_preferences: Dict[str, Any] = field(default_factory=dict)
    behavior_metrics: BehaviorMetrics = field(default_factory=BehaviorMetrics)
    performance_metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    ai_personalization: AIPersonalization = field(default_factory=AIPersonalization)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class BehaviorSample:
    """One behavioral observation. ``None`` fields leave the profile unchanged."""
    attention_level: Optional[float] = None
    emotional_state: Optional[str] = None
    engagement_level: Optional[float] = None
    comprehension_rate: Optional[float] = None
    timestamp: Optional[datetime] = None


@dataclass
class QuizResult:
    score: float
    quiz_id: Optional[str] = None
    subject: Optional[str] = None
    topic: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass
class SubjectScore:
    subject: str
    score: float


@dataclass
class ConceptMastery:
    concept: str
    level: float


@dataclass
class TimeSpent:
    topic: str
    minutes: float


@dataclass
class LearningSession:
    """Record of a finished AI assistant conversation."""
    subject: str
    topic: str
    duration_minutes: float
    interactions: int
    topics_discussed: List[str] = field(default_factory=list)
    concepts_learned: List[str] = field(default_factory=list)
    help_requests: int = 0
    summary: Optional[Dict[str, Any]] = None


@dataclass
class PerformanceEvent:
    """A performance update; each present sub-field is folded into the profile."""
    quiz_result: Optional[QuizResult] = None
    subject_score: Optional[SubjectScore] = None
    concept_mastery: Optional[ConceptMastery] = None
    time_spent: Optional[TimeSpent] = None
    learning_session: Optional[LearningSession] = None
    timestamp: Optional[datetime] = None


@dataclass
class BehaviorSummary:
    """Aggregate over a student's behavior log within a time window."""
    student_id: str
    window_days: int
    sample_count: int
    average_attention: Optional[int]
    dominant_emotion: Optional[str]
    average_engagement: Optional[int]
    trend: str

    @classmethod
    def insufficient(cls, student_id: str, window_days: int, sample_count: int) -> "BehaviorSummary":
        return cls(
            student_id=student_id,
            window_days=window_days,
            sample_count=sample_count,
            average_attention=None,
            dominant_emotion=None,
            average_engagement=None,
            trend=INSUFFICIENT_DATA,
        )

    @property
    def has_data(self) -> bool:
        return self.trend != INSUFFICIENT_DATA


@dataclass
class AtRiskStudent:
    student_id: str
    profile: StudentProfile
    behavior_summary: BehaviorSummary
    reasons: List[str]


@dataclass
class RefreshOutcome:
    """Result of one personalization refresh."""
    student_id: str
    ok: bool
    error: Optional[str] = None
    completed_at: datetime = field(default_factory=datetime.now)


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def round_half_up(value: Optional[float]) -> Optional[int]:
    """Round .5 away from zero for non-negative metrics (62.5 -> 63)."""
    if value is None:
        return None
    return int(math.floor(value + 0.5))


def _average(values: List[float]) -> Optional[int]:
    return round_half_up(sum(values) / len(values)) if values else None


def _attention_trend(samples: List[BehaviorSample]) -> str:
    """Compare mean attention of the earliest third against the latest third."""
    if len(samples) < MIN_WINDOW_SAMPLES:
        return INSUFFICIENT_DATA

    third = len(samples) // 3
    earliest = [s.attention_level for s in samples[:third] if s.attention_level is not None]
    latest = [s.attention_level for s in samples[-third:] if s.attention_level is not None]
    if not earliest or not latest:
        return "stable"
    diff = _mean(latest) - _mean(earliest)

    if diff > TREND_DEADBAND:
        return "improving"
    if diff < -TREND_DEADBAND:
        return "declining"
    return "stable"


class StudentStateStore:
    """
    Owns every student profile and its history logs.

    Profiles live for the lifetime of the store. An optional async
    ``refresher`` derives personalization hints after each update; it runs as
    a background task per student and its failures are captured in a
    ``RefreshOutcome`` rather than raised.
    """

    def __init__(self, refresher: Optional[Refresher] = None, window_days: int = DEFAULT_WINDOW_DAYS):
        self.window_days = window_days
        self._profiles: Dict[str, StudentProfile] = {}
        self._behavior_logs: Dict[str, List[BehaviorSample]] = {}
        self._performance_logs: Dict[str, List[PerformanceEvent]] = {}
        self._refresher = refresher
        self._refresh_tasks: Dict[str, asyncio.Task] = {}
        self._refresh_outcomes: Dict[str, RefreshOutcome] = {}

    def set_refresher(self, refresher: Optional[Refresher]) -> None:
        self._refresher = refresher

    def create_profile(self, student_id: str, seed: Optional[Mapping[str, Any]] = None) -> StudentProfile:
        """
        Create (or overwrite) a student's profile and reset its history logs.

        Args:
            student_id: Student identifier
            seed: Optional overrides. ``personal_info`` and ``learning_preferences``
                are copied as-is; ``behavior_metrics``, ``performance_metrics`` and
                ``ai_personalization`` are mappings of field overrides.

        Returns:
            The new profile
        """
        seed = seed or {}
        profile = StudentProfile(
            id=student_id,
            personal_info=dict(seed.get("personal_info") or {}),
            learning_preferences=dict(seed.get("learning_preferences") or {}),
            behavior_metrics=BehaviorMetrics(**dict(seed.get("behavior_metrics") or {})),
            performance_metrics=PerformanceMetrics(**dict(seed.get("performance_metrics") or {})),
            ai_personalization=AIPersonalization(**dict(seed.get("ai_personalization") or {})),
        )

        if student_id in self._profiles:
            logger.info(f"🔄 [StudentStateStore] Overwriting existing profile for {student_id}")

        self._profiles[student_id] = profile
        self._behavior_logs[student_id] = []
        self._performance_logs[student_id] = []
        self._refresh_tasks.pop(student_id, None)
        self._refresh_outcomes.pop(student_id, None)

        logger.info(f"✅ [StudentStateStore] Created profile for {student_id}")
        return profile

    def get_profile(self, student_id: str) -> Optional[StudentProfile]:
        return self._profiles.get(student_id)

    def list_profiles(self) -> List[StudentProfile]:
        return list(self._profiles.values())

    def _require_profile(self, student_id: str) -> StudentProfile:
        profile = self._profiles.get(student_id)
        if profile is None:
            logger.warning(f"⚠️ [StudentStateStore] Student profile not found: {student_id}")
            raise StudentNotFoundError(student_id)
        return profile

    async def record_behavior(self, student_id: str, sample: BehaviorSample) -> StudentProfile:
        """
        Merge a behavior sample into the profile and append it to the log.

        Raises:
            StudentNotFoundError: No profile exists (nothing is mutated)
        """
        profile = self._require_profile(student_id)
        now = datetime.now()
        metrics = profile.behavior_metrics

        if sample.attention_level is not None:
            metrics.attention_level = sample.attention_level
        if sample.emotional_state is not None:
            metrics.emotional_state = sample.emotional_state
        if sample.engagement_level is not None:
            metrics.engagement_level = sample.engagement_level
        if sample.comprehension_rate is not None:
            metrics.comprehension_rate = sample.comprehension_rate
        # last_updated never moves backwards
        metrics.last_updated = max(metrics.last_updated, now)

        stored = sample if sample.timestamp is not None else replace(sample, timestamp=now)
        self._behavior_logs[student_id].append(stored)
        profile.updated_at = now

        logger.debug(
            f"📊 [StudentStateStore] Behavior recorded for {student_id}: "
            f"attention={metrics.attention_level}, emotion={metrics.emotional_state}"
        )

        self._schedule_refresh(student_id, profile)
        return profile

    async def record_performance(self, student_id: str, event: PerformanceEvent) -> StudentProfile:
        """
        Fold a performance event into the profile and append it to the log.

        Quiz results append; subject scores, concept mastery and time spent are
        keyed and last write wins.

        Raises:
            StudentNotFoundError: No profile exists (nothing is mutated)
        """
        profile = self._require_profile(student_id)
        now = datetime.now()
        metrics = profile.performance_metrics

        if event.quiz_result is not None:
            quiz = event.quiz_result
            metrics.quiz_results.append(quiz if quiz.timestamp is not None else replace(quiz, timestamp=now))
        if event.subject_score is not None:
            metrics.subject_scores[event.subject_score.subject] = event.subject_score.score
        if event.concept_mastery is not None:
            metrics.concept_mastery[event.concept_mastery.concept] = event.concept_mastery.level
        if event.time_spent is not None:
            metrics.time_spent_per_topic[event.time_spent.topic] = event.time_spent.minutes

        stored = event if event.timestamp is not None else replace(event, timestamp=now)
        self._performance_logs[student_id].append(stored)
        profile.updated_at = now

        logger.debug(f"📈 [StudentStateStore] Performance recorded for {student_id}")

        self._schedule_refresh(student_id, profile)
        return profile

    async def record_learning_session(self, student_id: str, session: LearningSession) -> StudentProfile:
        """Append a finished assistant session to the performance log."""
        return await self.record_performance(student_id, PerformanceEvent(learning_session=session))

    def behavior_history(self, student_id: str) -> List[BehaviorSample]:
        return list(self._behavior_logs.get(student_id, []))

    def performance_history(self, student_id: str) -> List[PerformanceEvent]:
        return list(self._performance_logs.get(student_id, []))

    def analyze_behavior_window(
        self,
        student_id: str,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> BehaviorSummary:
        """
        Summarize the behavior samples recorded within the last ``window_days``.

        Fewer than three samples in the window yields the insufficient-data
        summary, whose averages are ``None``. An average is also ``None`` when
        no sample in the window carries that metric. ``window_days`` defaults
        to the store's configured window.

        Raises:
            StudentNotFoundError: No profile exists
        """
        self._require_profile(student_id)
        window_days = window_days or self.window_days
        cutoff = (now or datetime.now()) - timedelta(days=window_days)
        samples = [s for s in self._behavior_logs.get(student_id, []) if s.timestamp >= cutoff]

        if len(samples) < MIN_WINDOW_SAMPLES:
            return BehaviorSummary.insufficient(student_id, window_days, len(samples))

        attention = [s.attention_level for s in samples if s.attention_level is not None]
        engagement = [s.engagement_level for s in samples if s.engagement_level is not None]
        emotions = Counter(s.emotional_state for s in samples if s.emotional_state)

        return BehaviorSummary(
            student_id=student_id,
            window_days=window_days,
            sample_count=len(samples),
            average_attention=_average(attention),
            dominant_emotion=emotions.most_common(1)[0][0] if emotions else "neutral",
            average_engagement=_average(engagement),
            trend=_attention_trend(samples),
        )

    def list_at_risk_students(self, window_days: Optional[int] = None) -> List[AtRiskStudent]:
        """
        Scan every profile and return those matching at least one risk condition.

        Behavior-based conditions are only evaluated when the window has
        enough samples; the grade condition always applies.
        """
        at_risk = []

        for student_id, profile in self._profiles.items():
            summary = self.analyze_behavior_window(student_id, window_days)
            reasons = []

            if summary.average_attention is not None and summary.average_attention < 60:
                reasons.append("Low attention level")
            if summary.average_engagement is not None and summary.average_engagement < 50:
                reasons.append("Low engagement")
            if profile.performance_metrics.overall_grade < 70:
                reasons.append("Poor academic performance")
            if summary.dominant_emotion == "frustrated":
                reasons.append("Frequent frustration")
            if summary.dominant_emotion == "confused":
                reasons.append("Frequent confusion")
            if summary.trend == "declining":
                reasons.append("Declining attention trend")

            if reasons:
                at_risk.append(AtRiskStudent(student_id, profile, summary, reasons))

        structured_logger.info(
            f"🔍 [StudentStateStore] {len(at_risk)} of {len(self._profiles)} students at risk",
            data={entry.student_id: entry.reasons for entry in at_risk},
        )
        return at_risk

    def _schedule_refresh(self, student_id: str, profile: StudentProfile) -> None:
        if self._refresher is None:
            return
        previous = self._refresh_tasks.get(student_id)
        self._refresh_tasks[student_id] = asyncio.create_task(
            self._run_refresh(student_id, profile, previous)
        )

    async def _run_refresh(
        self,
        student_id: str,
        profile: StudentProfile,
        previous: Optional[asyncio.Task]
    ) -> RefreshOutcome:
        # Refreshes for one student apply in scheduling order
        if previous is not None and not previous.done():
            await asyncio.wait([previous])

        try:
            updates = await self._refresher(
                profile,
                self.behavior_history(student_id),
                self.performance_history(student_id),
            )
            personalization = profile.ai_personalization
            for key, value in (updates or {}).items():
                if key != "last_updated" and hasattr(personalization, key):
                    setattr(personalization, key, value)
            personalization.last_updated = datetime.now()
            outcome = RefreshOutcome(student_id=student_id, ok=True)
            structured_logger.debug(
                f"✅ [StudentStateStore] Personalization refreshed for {student_id}",
                data={"updated": sorted(updates or {})},
            )
        except Exception as e:
            structured_logger.error(
                f"❌ [StudentStateStore] Error updating personalization for {student_id}",
                error=e,
                data={"student_id": student_id},
            )
            outcome = RefreshOutcome(student_id=student_id, ok=False, error=str(e))

        if self._profiles.get(student_id) is profile:
            self._refresh_outcomes[student_id] = outcome
        return outcome

    async def wait_for_refresh(self, student_id: str) -> Optional[RefreshOutcome]:
        """Await the most recently scheduled refresh for a student, if any."""
        task = self._refresh_tasks.get(student_id)
        if task is None:
            return self._refresh_outcomes.get(student_id)
        return await task

    def last_refresh(self, student_id: str) -> Optional[RefreshOutcome]:
        return self._refresh_outcomes.get(student_id)

    async def drain(self) -> None:
        """Wait for every pending refresh task."""
        pending = [task for task in self._refresh_tasks.values() if not task.done()]
        if pending:
            await asyncio.gather(*pending)
