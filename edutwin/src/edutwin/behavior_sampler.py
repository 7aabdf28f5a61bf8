"""
Behavior Sampler

Periodically captures a behavioral snapshot (attention, emotion, gaze,
posture, interaction) for the student in session and classifies it into an
engagement and intervention recommendation.

Snapshots come from a ``BehaviorSource``. The default source simulates
plausible sensor data; tests plug in a scripted one. Classification asks the
model for a JSON-schema answer and falls back to a fixed rule table.
"""

import asyncio
import inspect
import logging
import random
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Union

from edutwin.exceptions import LLMError, SamplerSessionActiveError
from edutwin.llm_client import CamelModel, LLMGateway
from edutwin.logger import get_logger
from edutwin.student_state import BehaviorSample, round_half_up

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

EMOTIONS = ["focused", "confident", "neutral", "confused", "frustrated", "engaged", "tired"]
EMOTION_WEIGHTS = [0.3, 0.2, 0.2, 0.1, 0.05, 0.1, 0.05]

GAZE_AREAS = ["screen_center", "screen_top", "screen_bottom", "off_screen", "notes", "distraction"]
GAZE_WEIGHTS = [0.6, 0.15, 0.1, 0.05, 0.08, 0.02]


@dataclass
class BehaviorSnapshot:
    """Raw behavioral reading for one sampling tick."""
    attention_level: float
    gaze_area: str
    gaze_x: float
    gaze_y: float
    gaze_duration: float
    blink_rate: float
    eye_openness: float
    emotion: str
    emotion_confidence: float
    valence: float
    arousal: float
    head_pitch: float
    head_yaw: float
    head_roll: float
    fidgeting: float
    posture: str
    hand_gestures: str
    mouse_activity: float
    keyboard_activity: float
    scroll_behavior: str
    page_engagement: float


class BehaviorSource(Protocol):
    def capture(self) -> BehaviorSnapshot:
        ...


def weighted_choice(rng: random.Random, choices: List[str], weights: List[float]) -> str:
    roll = rng.random()
    cumulative = 0.0
    for choice, weight in zip(choices, weights):
        cumulative += weight
        if roll <= cumulative:
            return choice
    return choices[-1]


def time_of_day_modifier(hour: int) -> float:
    """Attention dips after lunch and late in the evening."""
    if 13 <= hour <= 15:
        return 0.85
    if hour >= 20:
        return 0.8
    return 1.0


class SimulatedBehaviorSource:
    """Weighted-random stand-in for webcam and interaction sensors."""

    def __init__(self, rng: Optional[random.Random] = None, clock: Optional[Callable[[], datetime]] = None):
        self.rng = rng or random.Random()
        self.clock = clock or datetime.now

    def capture(self) -> BehaviorSnapshot:
        rng = self.rng
        base_attention = 75 + rng.random() * 20
        modifier = time_of_day_modifier(self.clock().hour)
        attention = base_attention * modifier + (rng.random() - 0.5) * 10

        return BehaviorSnapshot(
            attention_level=max(0.0, min(100.0, attention)),
            gaze_area=weighted_choice(rng, GAZE_AREAS, GAZE_WEIGHTS),
            gaze_x=rng.random(),
            gaze_y=rng.random(),
            gaze_duration=1 + rng.random() * 4,
            blink_rate=12 + rng.random() * 8,
            eye_openness=0.7 + rng.random() * 0.3,
            emotion=weighted_choice(rng, EMOTIONS, EMOTION_WEIGHTS),
            emotion_confidence=0.6 + rng.random() * 0.4,
            valence=rng.random() * 2 - 1,
            arousal=rng.random() * 2 - 1,
            head_pitch=(rng.random() - 0.5) * 30,
            head_yaw=(rng.random() - 0.5) * 20,
            head_roll=(rng.random() - 0.5) * 10,
            fidgeting=rng.random() * 0.5,
            posture="slouched" if rng.random() > 0.7 else "upright",
            hand_gestures="active" if rng.random() > 0.8 else "still",
            mouse_activity=rng.random() * 100,
            keyboard_activity=rng.random() * 200,
            scroll_behavior="active" if rng.random() > 0.5 else "minimal",
            page_engagement=0.3 + rng.random() * 0.7,
        )


class ScriptedBehaviorSource:
    """Replays a fixed sequence of snapshots, repeating the last one when exhausted."""

    def __init__(self, snapshots: Iterable[BehaviorSnapshot]):
        self.snapshots = list(snapshots)
        if not self.snapshots:
            raise ValueError("ScriptedBehaviorSource needs at least one snapshot")
        self._index = 0

    def capture(self) -> BehaviorSnapshot:
        snapshot = self.snapshots[min(self._index, len(self.snapshots) - 1)]
        self._index += 1
        return snapshot


class BehaviorClassification(CamelModel):
    engagement_level: float
    attention_quality: str
    learning_state: str
    recommended_interventions: List[str]
    difficulty_adjustment: str
    alert_level: str


def fallback_classification(snapshot: BehaviorSnapshot) -> BehaviorClassification:
    """Rule table used whenever the model cannot classify a snapshot."""
    attention = snapshot.attention_level
    learning_state = "optimal"
    alert_level = "normal"
    interventions = []

    if attention < 50:
        learning_state = "distracted"
        alert_level = "high"
        interventions.append("Provide attention-grabbing content")
        interventions.append("Take a short break")
    elif attention < 70:
        learning_state = "moderately_focused"
        alert_level = "medium"
        interventions.append("Increase interactivity")

    if snapshot.emotion in ("confused", "frustrated"):
        interventions.append("Provide additional explanation")
        interventions.append("Offer alternative learning approach")
        alert_level = "high"

    if attention > 80:
        quality = "excellent"
    elif attention > 60:
        quality = "good"
    else:
        quality = "needs_improvement"

    if attention < 50:
        difficulty = "decrease"
    elif attention > 85:
        difficulty = "increase"
    else:
        difficulty = "maintain"

    return BehaviorClassification(
        engagement_level=round_half_up(snapshot.page_engagement * 100),
        attention_quality=quality,
        learning_state=learning_state,
        recommended_interventions=interventions,
        difficulty_adjustment=difficulty,
        alert_level=alert_level,
    )


@dataclass
class SamplerConfig:
    attention_tracking: bool = True
    emotion_detection: bool = True
    engagement_monitoring: bool = True
    interval_seconds: Optional[float] = None


@dataclass
class SampleRecord:
    """One classified snapshot within a session."""
    timestamp: datetime
    student_id: str
    session_id: str
    snapshot: BehaviorSnapshot
    classification: BehaviorClassification

    def to_behavior_sample(self) -> BehaviorSample:
        return BehaviorSample(
            attention_level=round_half_up(self.snapshot.attention_level),
            emotional_state=self.snapshot.emotion,
            engagement_level=self.classification.engagement_level,
            timestamp=self.timestamp,
        )


@dataclass
class SessionSummary:
    duration_minutes: float
    average_attention: int
    dominant_emotion: str
    engagement_trend: str
    total_data_points: int
    alerts_triggered: int


@dataclass
class SamplingSession:
    session_id: str
    student_id: str
    start_time: datetime
    config: SamplerConfig
    data: List[SampleRecord] = field(default_factory=list)
    end_time: Optional[datetime] = None
    summary: Optional[SessionSummary] = None


@dataclass
class BehaviorState:
    """Latest reading of the active session."""
    timestamp: datetime
    attention_level: float
    emotion: str
    engagement_level: float
    learning_state: str
    alert_level: str


def calculate_trend(values: List[float]) -> str:
    """Earliest third vs latest third with a +/-10 deadband."""
    if len(values) < 3:
        return "insufficient_data"

    third = len(values) // 3
    earlier = values[:third]
    recent = values[-third:]
    diff = sum(recent) / len(recent) - sum(earlier) / len(earlier)

    if diff > 10:
        return "improving"
    if diff < -10:
        return "declining"
    return "stable"


Listener = Callable[[SampleRecord], Union[None, Awaitable[None]]]


class BehaviorSampler:
    """
    Runs one sampling session at a time.

    While a session is active a background task captures and classifies a
    snapshot every ``interval_seconds``. A failed tick is logged and the
    loop keeps going.
    """

    def __init__(
        self,
        gateway: LLMGateway,
        source: Optional[BehaviorSource] = None,
        interval_seconds: float = 5.0
    ):
        self.gateway = gateway
        self.source = source or SimulatedBehaviorSource()
        self.interval_seconds = interval_seconds
        self.session: Optional[SamplingSession] = None
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[Listener] = []
        self._history: Dict[str, List[SamplingSession]] = {}

    @property
    def is_active(self) -> bool:
        return self.session is not None

    async def start(self, student_id: str, config: Optional[SamplerConfig] = None) -> Dict[str, Any]:
        """
        Begin a sampling session for a student.

        Raises:
            SamplerSessionActiveError: A session is already running
        """
        if self.session is not None:
            logger.warning(f"⚠️ [BehaviorSampler] Session already running for {self.session.student_id}")
            raise SamplerSessionActiveError(self.session.student_id)

        config = config or SamplerConfig()
        if config.interval_seconds is None:
            config.interval_seconds = self.interval_seconds

        self.session = SamplingSession(
            session_id=f"session_{uuid.uuid4().hex[:12]}",
            student_id=student_id,
            start_time=datetime.now(),
            config=config,
        )
        self._task = asyncio.create_task(self._sampling_loop(config.interval_seconds))

        logger.info(f"👀 [BehaviorSampler] Started session {self.session.session_id} for {student_id} (interval: {config.interval_seconds}s)")
        return {
            "session_id": self.session.session_id,
            "status": "started",
            "student_id": student_id,
            "start_time": self.session.start_time,
        }

    async def _sampling_loop(self, interval_seconds: float):
        while self.session is not None:
            try:
                await asyncio.sleep(interval_seconds)
                await self.capture_and_analyze()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"❌ [BehaviorSampler] Error in behavior analysis: {e}")

    async def capture_and_analyze(self) -> Optional[SampleRecord]:
        """Capture one snapshot, classify it and notify listeners."""
        session = self.session
        if session is None:
            return None

        snapshot = self.source.capture()
        classification = await self.classify(snapshot)

        # The session may have been stopped while the classification call was pending
        if self.session is not session:
            return None

        record = SampleRecord(
            timestamp=datetime.now(),
            student_id=session.student_id,
            session_id=session.session_id,
            snapshot=snapshot,
            classification=classification,
        )
        session.data.append(record)

        if classification.alert_level == "high":
            logger.warning(
                f"🚨 [BehaviorSampler] High alert for {session.student_id}: "
                f"{classification.learning_state} (attention={snapshot.attention_level:.0f}, emotion={snapshot.emotion})"
            )

        await self._notify(record)
        return record

    async def classify(self, snapshot: BehaviorSnapshot) -> BehaviorClassification:
        if not self.gateway.is_available():
            return fallback_classification(snapshot)

        prompt = f"""
Analyze this student's real-time behavior data and provide insights for educational adaptation:

Eye Tracking:
- Attention Level: {snapshot.attention_level:.1f}%
- Gaze Focus: {snapshot.gaze_area}
- Blink Rate: {snapshot.blink_rate:.1f} per minute
- Eye Openness: {snapshot.eye_openness:.2f}

Facial Expression:
- Detected Emotion: {snapshot.emotion}
- Confidence: {snapshot.emotion_confidence:.2f}
- Emotional Valence: {snapshot.valence:.2f}
- Arousal Level: {snapshot.arousal:.2f}

Physical Behavior:
- Head Pose: Pitch {snapshot.head_pitch:.1f}°, Yaw {snapshot.head_yaw:.1f}°
- Posture: {snapshot.posture}
- Fidgeting Level: {snapshot.fidgeting:.2f}

Interaction Metrics:
- Mouse Activity: {snapshot.mouse_activity:.0f}/min
- Keyboard Activity: {snapshot.keyboard_activity:.0f}/min
- Page Engagement: {snapshot.page_engagement:.2f}

Please analyze and provide:
1. Overall engagement level (0-100)
2. Attention quality assessment
3. Emotional learning state
4. Recommended interventions
5. Difficulty adjustment suggestions
"""
        try:
            return await self.gateway.structured(
                "behavior analysis",
                "You are an expert in educational psychology and behavior analysis. Analyze student behavior data to optimize learning experiences.",
                prompt,
                BehaviorClassification,
                "behavior_analysis",
            )
        except LLMError as e:
            logger.error(f"❌ [BehaviorSampler] Error in AI behavior analysis: {e}")
            return fallback_classification(snapshot)

    def subscribe(self, callback: Listener) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def unsubscribe(self, callback: Listener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    async def _notify(self, record: SampleRecord):
        for callback in list(self._listeners):
            try:
                result = callback(record)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"❌ [BehaviorSampler] Error in behavior update callback: {e}")

    def _summarize(self, session: SamplingSession, end_time: datetime) -> SessionSummary:
        data = session.data
        if not data:
            return SessionSummary(
                duration_minutes=0,
                average_attention=0,
                dominant_emotion="unknown",
                engagement_trend="insufficient_data",
                total_data_points=0,
                alerts_triggered=0,
            )

        duration = (end_time - session.start_time).total_seconds() / 60
        average_attention = sum(r.snapshot.attention_level for r in data) / len(data)
        emotions = Counter(r.snapshot.emotion for r in data)

        return SessionSummary(
            duration_minutes=round(duration, 2),
            average_attention=round_half_up(average_attention),
            dominant_emotion=emotions.most_common(1)[0][0],
            engagement_trend=calculate_trend([r.classification.engagement_level for r in data]),
            total_data_points=len(data),
            alerts_triggered=sum(1 for r in data if r.classification.alert_level == "high"),
        )

    async def stop(self) -> Dict[str, Any]:
        """Stop the active session, archive it and return its summary."""
        session = self.session
        if session is None:
            return {"status": "no_active_session"}

        self.session = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        session.end_time = datetime.now()
        session.summary = self._summarize(session, session.end_time)
        self._history.setdefault(session.student_id, []).append(session)

        structured_logger.success(
            f"[BehaviorSampler] Session {session.session_id} stopped",
            data={
                "student_id": session.student_id,
                "duration_minutes": session.summary.duration_minutes,
                "average_attention": session.summary.average_attention,
                "dominant_emotion": session.summary.dominant_emotion,
                "engagement_trend": session.summary.engagement_trend,
                "alerts_triggered": session.summary.alerts_triggered,
            },
        )
        return {"status": "stopped", "summary": session.summary}

    def history(self, student_id: str, limit: int = 10) -> List[SamplingSession]:
        sessions = self._history.get(student_id, [])
        return sessions[-limit:] if limit > 0 else []

    def current_state(self) -> Optional[BehaviorState]:
        if self.session is None or not self.session.data:
            return None

        latest = self.session.data[-1]
        return BehaviorState(
            timestamp=latest.timestamp,
            attention_level=latest.snapshot.attention_level,
            emotion=latest.snapshot.emotion,
            engagement_level=latest.classification.engagement_level,
            learning_state=latest.classification.learning_state,
            alert_level=latest.classification.alert_level,
        )
