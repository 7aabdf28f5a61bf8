"""
Personalization Planner

Derives advisory learning structures from a student's digital twin:
- Adaptive learning paths (cached per student and subject)
- Real-time content recommendations (cached for 30 minutes)
- Difficulty adaptation decisions with per-student history
- Personalized activity feedback
- Profile-level recommendations used to refresh the twin

Every operation asks the model for a JSON-schema response first and falls
back to fixed rules when the gateway is unavailable or the call fails.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from edutwin.exceptions import LLMError
from edutwin.llm_client import CamelModel, LLMGateway, ModelT
from edutwin.logger import get_logger
from edutwin.student_state import BehaviorSample, BehaviorSummary, PerformanceEvent, StudentProfile

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

DIFFICULTY_LEVELS = ["easy", "medium", "hard"]
RECOMMENDATION_TTL = timedelta(minutes=30)


class LearningTopic(CamelModel):
    id: str
    title: str
    description: str
    difficulty: str
    estimated_time: float
    prerequisites: List[str]
    activities: List[str]
    assessments: List[str]


class LearningPath(CamelModel):
    path_id: str
    topics: List[LearningTopic]
    overall_difficulty: str
    total_estimated_hours: float
    adaptation_triggers: List[str]
    resource_recommendations: List[str]
    intervention_points: List[str]


class ContentRecommendations(CamelModel):
    alternative_explanations: List[str]
    supplementary_resources: List[str]
    practice_activities: List[str]
    assessment_modifications: List[str]
    break_recommendations: List[str]
    motivation_strategies: List[str]
    priority_level: str
    confidence_score: float


class AdaptationDecision(CamelModel):
    new_difficulty: str
    adaptation_type: str
    reason: str
    confidence_score: float
    recommended_actions: List[str]
    monitoring_points: List[str]


class PersonalizedFeedback(CamelModel):
    encouragement: str
    strengths: List[str]
    improvements: List[str]
    next_steps: List[str]
    motivational_message: str
    tone: str


class ProfileRecommendations(CamelModel):
    preferred_explanation_style: str
    difficulty_level: str
    learning_path: List[str]
    intervention_strategies: List[str]
    recommended_resources: List[str]


@dataclass
class PerformanceSample:
    """Recent performance used for difficulty adaptation; ``None`` defers to the profile."""
    average_recent_score: Optional[float] = None
    recent_quiz_scores: List[float] = field(default_factory=list)
    attention_level: Optional[float] = None
    emotional_state: Optional[str] = None
    time_spent: float = 0
    concept_mastery: Dict[str, float] = field(default_factory=dict)
    error_patterns: List[str] = field(default_factory=list)
    help_requests: int = 0


@dataclass
class ActivityResult:
    type: str
    score: Optional[float] = None
    time_spent: float = 0
    attempts: int = 1
    correct_answers: int = 0
    total_questions: int = 0
    mistakes: List[str] = field(default_factory=list)


@dataclass
class AdaptationRecord:
    """One entry of a student's difficulty adaptation history."""
    student_id: str
    previous_difficulty: str
    new_difficulty: str
    adaptation_type: str
    reason: str
    confidence_score: float
    performance_sample: PerformanceSample
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class _CacheEntry:
    value: Any
    created_at: datetime
    context: Dict[str, Any] = field(default_factory=dict)


def _fmt(value: Any) -> str:
    return "N/A" if value is None else str(value)


def _mean(values: List[float]) -> float:
    return sum(values) / len(values)


def fallback_learning_path(subject: str, goals: Optional[Dict[str, Any]] = None) -> LearningPath:
    """Fixed starter path. Only Mathematics is defined and serves every subject."""
    common_paths = {
        "Mathematics": LearningPath(
            path_id=f"math_basic_{int(time.time() * 1000)}",
            topics=[
                LearningTopic(
                    id="math_001",
                    title="Basic Arithmetic",
                    description="Fundamental operations: addition, subtraction, multiplication, division",
                    difficulty="easy",
                    estimated_time=2,
                    prerequisites=[],
                    activities=["Practice problems", "Interactive exercises", "Real-world applications"],
                    assessments=["Quick quiz", "Problem-solving tasks"],
                ),
                LearningTopic(
                    id="math_002",
                    title="Fractions and Decimals",
                    description="Understanding and working with fractions and decimal numbers",
                    difficulty="medium",
                    estimated_time=3,
                    prerequisites=["math_001"],
                    activities=["Visual fraction models", "Decimal conversion practice", "Word problems"],
                    assessments=["Fraction quiz", "Decimal calculations"],
                ),
            ],
            overall_difficulty="medium",
            total_estimated_hours=5,
            adaptation_triggers=["Low quiz scores", "Decreased attention", "Frustration indicators"],
            resource_recommendations=["Khan Academy videos", "Interactive math games", "Practice worksheets"],
            intervention_points=["After each topic assessment", "When attention drops below 60%"],
        )
    }
    return common_paths.get(subject) or common_paths["Mathematics"]


def fallback_content_recommendations(topic: str) -> ContentRecommendations:
    return ContentRecommendations(
        alternative_explanations=[
            "Try visual diagrams and charts",
            "Use real-world examples and analogies",
            "Break down into smaller steps",
        ],
        supplementary_resources=[
            "Educational videos on the topic",
            "Interactive simulations",
            "Additional reading materials",
        ],
        practice_activities=[
            "Complete practice problems",
            "Try interactive exercises",
            "Discuss with study group",
        ],
        assessment_modifications=[
            "Provide more time for completion",
            "Offer hint system",
            "Allow multiple attempts",
        ],
        break_recommendations=[
            "Take a 5-minute break",
            "Do some light stretching",
            "Practice deep breathing",
        ],
        motivation_strategies=[
            "Celebrate small wins",
            "Set achievable goals",
            "Track progress visually",
        ],
        priority_level="medium",
        confidence_score=0.7,
    )


def _raise_difficulty(current: str) -> str:
    if current not in DIFFICULTY_LEVELS:
        return "hard"
    return DIFFICULTY_LEVELS[min(DIFFICULTY_LEVELS.index(current) + 1, len(DIFFICULTY_LEVELS) - 1)]


def _lower_difficulty(current: str) -> str:
    if current not in DIFFICULTY_LEVELS:
        return "easy"
    return DIFFICULTY_LEVELS[max(DIFFICULTY_LEVELS.index(current) - 1, 0)]


def average_recent_score(profile: StudentProfile, sample: PerformanceSample) -> float:
    """Explicit average, else mean of the sample's quiz scores, else the overall grade."""
    if sample.average_recent_score is not None:
        return sample.average_recent_score
    if sample.recent_quiz_scores:
        return _mean(sample.recent_quiz_scores)
    return profile.performance_metrics.overall_grade


def fallback_adaptation_decision(profile: StudentProfile, sample: PerformanceSample) -> AdaptationDecision:
    """
    Rule-based difficulty decision.

    - average > 90 and attention > 80 -> increase
    - average < 60 or frustrated -> decrease
    - otherwise maintain
    """
    current = profile.ai_personalization.difficulty_level
    average = average_recent_score(profile, sample)
    attention = sample.attention_level if sample.attention_level is not None else profile.behavior_metrics.attention_level
    emotion = sample.emotional_state or profile.behavior_metrics.emotional_state

    new_difficulty = current
    adaptation_type = "maintain"
    reason = "Performance within acceptable range"

    if average > 90 and attention > 80:
        new_difficulty = _raise_difficulty(current)
        adaptation_type = "increase"
        reason = "Excellent performance indicates readiness for higher difficulty"
    elif average < 60 or emotion == "frustrated":
        new_difficulty = _lower_difficulty(current)
        adaptation_type = "decrease"
        reason = "Struggling performance requires easier content for confidence building"

    return AdaptationDecision(
        new_difficulty=new_difficulty,
        adaptation_type=adaptation_type,
        reason=reason,
        confidence_score=0.7,
        recommended_actions=["Monitor progress closely", "Provide additional support if needed"],
        monitoring_points=["Next quiz performance", "Attention level changes", "Emotional state updates"],
    )


def fallback_feedback(activity: ActivityResult) -> PersonalizedFeedback:
    score = activity.score or 0
    good = score >= 80
    medium = score >= 60

    if good:
        encouragement = "Great work! You're making excellent progress."
    elif medium:
        encouragement = "Good effort! You're on the right track."
    else:
        encouragement = "Keep trying! Learning takes practice and persistence."

    return PersonalizedFeedback(
        encouragement=encouragement,
        strengths=(
            ["Strong understanding of concepts", "Consistent performance"]
            if good else ["Willingness to learn", "Effort and persistence"]
        ),
        improvements=(
            ["Continue practicing to maintain skills"]
            if good else ["Review challenging concepts", "Practice more problems"]
        ),
        next_steps=[
            "Review any incorrect answers",
            "Practice similar problems",
            "Ask for help if needed",
        ],
        motivational_message="Every step forward is progress. Keep learning!",
        tone="encouraging",
    )


def fallback_profile_recommendations(profile: StudentProfile) -> ProfileRecommendations:
    """Derive style, difficulty, path, interventions and resources from current metrics."""
    # A fresh profile reads 0, which is treated as "no reading yet"
    attention = profile.behavior_metrics.attention_level or 75
    emotion = profile.behavior_metrics.emotional_state or "neutral"
    grade = profile.performance_metrics.overall_grade or 75

    if attention < 60:
        style = "visual"
    elif grade > 85:
        style = "reading"
    else:
        style = "interactive"

    difficulty = "medium"
    if grade > 85 and attention > 80:
        difficulty = "hard"
    elif grade < 65 or emotion == "frustrated":
        difficulty = "easy"

    if grade < 70:
        path = ["Review fundamental concepts", "Practice basic skills", "Build confidence with easier problems"]
    else:
        path = ["Reinforce current knowledge", "Introduce new concepts gradually", "Apply knowledge to complex problems"]

    if emotion == "frustrated" or attention < 50:
        interventions = ["Provide frequent breaks", "Use positive reinforcement", "Simplify explanations"]
    elif attention > 85:
        interventions = ["Increase challenge level", "Provide enrichment activities"]
    else:
        interventions = ["Maintain steady pace", "Check understanding regularly"]

    return ProfileRecommendations(
        preferred_explanation_style=style,
        difficulty_level=difficulty,
        learning_path=path,
        intervention_strategies=interventions,
        recommended_resources=[
            "Interactive practice exercises",
            "Video explanations",
            "Step-by-step tutorials",
            "Progress tracking tools",
        ],
    )


class PersonalizationPlanner:
    """
    Produces advisory personalization data for a student.

    Results are cached in memory; nothing here mutates the student state.
    """

    def __init__(self, gateway: LLMGateway):
        self.gateway = gateway
        self._learning_paths: Dict[Tuple[str, str], _CacheEntry] = {}
        self._content_recommendations: Dict[Tuple[str, str], _CacheEntry] = {}
        self._adaptation_history: Dict[str, List[AdaptationRecord]] = {}

    async def _ask(
        self,
        operation: str,
        system_prompt: str,
        user_prompt: str,
        schema: Type[ModelT],
        schema_name: str,
        fallback: Callable[[], ModelT]
    ) -> ModelT:
        if not self.gateway.is_available():
            structured_logger.warning(
                "⚠️ [PersonalizationPlanner] OpenAI not available, using fallback",
                data={"operation": operation, "schema": schema_name},
            )
            return fallback()

        try:
            return await self.gateway.structured(operation, system_prompt, user_prompt, schema, schema_name)
        except LLMError as e:
            logger.error(f"❌ [PersonalizationPlanner] Error in {operation}: {e}")
            return fallback()

    async def adaptive_learning_path(
        self,
        profile: StudentProfile,
        behavior_summary: BehaviorSummary,
        subject: str,
        goals: Optional[Dict[str, Any]] = None
    ) -> LearningPath:
        """
        Build a learning path for ``subject`` and cache it for the student.

        Args:
            profile: Student profile
            behavior_summary: Output of ``analyze_behavior_window``
            subject: Subject area
            goals: Free-form learning goals

        Returns:
            LearningPath (AI-generated or the fixed fallback)
        """
        goals = goals or {}
        prompt = f"""
Create a personalized learning path for a student based on their digital twin profile:

Student Profile:
- Learning Preferences: {json.dumps(profile.learning_preferences, default=str)}
- Current Performance: {profile.performance_metrics.overall_grade}%
- Attention Level: {_fmt(behavior_summary.average_attention)}%
- Engagement Level: {_fmt(behavior_summary.average_engagement)}%
- Dominant Emotion: {_fmt(behavior_summary.dominant_emotion)}
- Behavior Trend: {behavior_summary.trend}
- Preferred Explanation Style: {profile.ai_personalization.preferred_explanation_style}
- Current Difficulty Level: {profile.ai_personalization.difficulty_level}

Subject: {subject}
Learning Goals: {json.dumps(goals, default=str)}

Create a comprehensive learning path that includes:
1. Sequence of topics/concepts to learn
2. Recommended learning activities for each topic
3. Assessment methods
4. Time allocation suggestions
5. Difficulty progression
6. Adaptation triggers (when to adjust difficulty/approach)
7. Resource recommendations
8. Intervention points for support
"""
        path = await self._ask(
            "personalized learning path creation",
            "You are an expert educational AI that creates personalized learning paths based on student data and learning science principles.",
            prompt,
            LearningPath,
            "adaptive_learning_path",
            lambda: fallback_learning_path(subject, goals),
        )

        self._learning_paths[(profile.id, subject)] = _CacheEntry(value=path, created_at=datetime.now(), context=goals)
        logger.info(f"✅ [PersonalizationPlanner] Learning path ready for {profile.id} ({subject}): {len(path.topics)} topics")
        return path

    def get_cached_learning_path(self, student_id: str, subject: str) -> Optional[LearningPath]:
        entry = self._learning_paths.get((student_id, subject))
        return entry.value if entry else None

    async def content_recommendations(
        self,
        profile: StudentProfile,
        topic: str,
        session_context: Optional[Dict[str, Any]] = None
    ) -> ContentRecommendations:
        """Recommend content for the topic being studied right now."""
        context = session_context or {}
        prompt = f"""
Provide personalized content recommendations for a student currently learning about "{topic}":

Student Context:
- Attention Level: {profile.behavior_metrics.attention_level}%
- Emotional State: {profile.behavior_metrics.emotional_state}
- Comprehension Rate: {profile.behavior_metrics.comprehension_rate}%
- Preferred Learning Style: {profile.ai_personalization.preferred_explanation_style}
- Difficulty Level: {profile.ai_personalization.difficulty_level}

Current Learning Context:
- Time Spent on Topic: {context.get('time_spent', 0)} minutes
- Quiz Attempts: {context.get('quiz_attempts', 0)}
- Last Quiz Score: {_fmt(context.get('last_quiz_score'))}
- Struggling Areas: {json.dumps(context.get('struggling_areas', []), default=str)}

Performance History:
- Overall Grade: {profile.performance_metrics.overall_grade}%
- Subject Scores: {json.dumps(profile.performance_metrics.subject_scores, default=str)}

Provide recommendations for:
1. Alternative explanation approaches
2. Supplementary resources
3. Practice activities
4. Assessment modifications
5. Break recommendations
6. Motivation strategies
"""
        recommendations = await self._ask(
            "content recommendations generation",
            "You are an adaptive learning system that provides real-time content recommendations to optimize student learning experiences.",
            prompt,
            ContentRecommendations,
            "content_recommendations",
            lambda: fallback_content_recommendations(topic),
        )

        self._content_recommendations[(profile.id, topic)] = _CacheEntry(
            value=recommendations, created_at=datetime.now(), context=context
        )
        return recommendations

    def get_cached_content_recommendations(
        self,
        student_id: str,
        topic: str,
        now: Optional[datetime] = None
    ) -> Optional[ContentRecommendations]:
        """Cached recommendations, or ``None`` once they are 30 minutes old."""
        entry = self._content_recommendations.get((student_id, topic))
        if entry is None:
            return None
        if (now or datetime.now()) - entry.created_at >= RECOMMENDATION_TTL:
            return None
        return entry.value

    async def difficulty_adaptation(
        self,
        profile: StudentProfile,
        performance_sample: PerformanceSample
    ) -> AdaptationDecision:
        """
        Decide whether to raise, lower or keep the student's difficulty.

        The decision is appended to the student's adaptation history. The
        profile itself is left unchanged.
        """
        prompt = f"""
Analyze student performance and recommend curriculum difficulty adaptation:

Current Student State:
- Current Difficulty Level: {profile.ai_personalization.difficulty_level}
- Overall Grade: {profile.performance_metrics.overall_grade}%
- Attention Level: {profile.behavior_metrics.attention_level}%
- Emotional State: {profile.behavior_metrics.emotional_state}
- Comprehension Rate: {profile.behavior_metrics.comprehension_rate}%

Recent Performance:
- Average Recent Score: {_fmt(performance_sample.average_recent_score)}
- Quiz Scores: {json.dumps(performance_sample.recent_quiz_scores)}
- Time Spent Learning: {performance_sample.time_spent} minutes
- Concept Mastery: {json.dumps(performance_sample.concept_mastery)}
- Error Patterns: {json.dumps(performance_sample.error_patterns)}
- Help Requests: {performance_sample.help_requests}

Determine if difficulty should be:
1. Increased (if student is performing very well with minimal challenge)
2. Decreased (if student is struggling significantly)
3. Maintained (if current level is appropriate)

Consider both immediate performance and longer-term learning goals.
"""
        decision = await self._ask(
            "curriculum adaptation decision",
            "You are an adaptive learning algorithm that makes intelligent decisions about curriculum difficulty based on student performance data.",
            prompt,
            AdaptationDecision,
            "adaptation_decision",
            lambda: fallback_adaptation_decision(profile, performance_sample),
        )

        record = AdaptationRecord(
            student_id=profile.id,
            previous_difficulty=profile.ai_personalization.difficulty_level,
            new_difficulty=decision.new_difficulty,
            adaptation_type=decision.adaptation_type,
            reason=decision.reason,
            confidence_score=decision.confidence_score,
            performance_sample=performance_sample,
        )
        self._adaptation_history.setdefault(profile.id, []).append(record)

        logger.info(
            f"📊 [PersonalizationPlanner] Difficulty {decision.adaptation_type} for {profile.id}: "
            f"{record.previous_difficulty} → {record.new_difficulty}"
        )
        return decision

    def get_adaptation_history(self, student_id: str, limit: int = 10) -> List[AdaptationRecord]:
        history = self._adaptation_history.get(student_id, [])
        return history[-limit:] if limit > 0 else []

    async def personalized_feedback(self, profile: StudentProfile, activity_result: ActivityResult) -> PersonalizedFeedback:
        prompt = f"""
Generate personalized feedback for a student based on their learning activity:

Student Profile:
- Learning Style: {profile.ai_personalization.preferred_explanation_style}
- Current Emotional State: {profile.behavior_metrics.emotional_state}
- Attention Level: {profile.behavior_metrics.attention_level}%
- Overall Performance: {profile.performance_metrics.overall_grade}%

Activity Data:
- Activity Type: {activity_result.type}
- Score/Result: {_fmt(activity_result.score)}
- Time Taken: {activity_result.time_spent} minutes
- Attempts: {activity_result.attempts}
- Correct Answers: {activity_result.correct_answers}
- Total Questions: {activity_result.total_questions}
- Mistakes Made: {json.dumps(activity_result.mistakes)}

Provide encouraging, specific, and actionable feedback that:
1. Acknowledges the student's effort
2. Highlights strengths
3. Addresses areas for improvement
4. Provides specific next steps
5. Maintains motivation
"""
        return await self._ask(
            "personalized feedback generation",
            "You are a supportive educational AI that provides personalized, encouraging feedback to help students learn and grow.",
            prompt,
            PersonalizedFeedback,
            "personalized_feedback",
            lambda: fallback_feedback(activity_result),
        )

    async def profile_recommendations(
        self,
        profile: StudentProfile,
        behavior_log: List[BehaviorSample],
        performance_log: List[PerformanceEvent]
    ) -> ProfileRecommendations:
        recent_quizzes = profile.performance_metrics.quiz_results[-3:]
        patterns = "\n".join(
            f"- Attention: {_fmt(b.attention_level)}%, Emotion: {_fmt(b.emotional_state)}, Engagement: {_fmt(b.engagement_level)}%"
            for b in behavior_log[-5:]
        )
        prompt = f"""
As an AI education specialist, analyze this student's digital twin data and provide personalized learning recommendations:

Student Profile:
- Attention Level: {profile.behavior_metrics.attention_level}%
- Emotional State: {profile.behavior_metrics.emotional_state}
- Engagement Level: {profile.behavior_metrics.engagement_level}%
- Comprehension Rate: {profile.behavior_metrics.comprehension_rate}%

Recent Performance:
- Overall Grade: {profile.performance_metrics.overall_grade}
- Recent Quiz Results: {', '.join(str(q.score) for q in recent_quizzes)}
- Logged Performance Events: {len(performance_log)}

Behavior Patterns (last 5 sessions):
{patterns}

Please provide recommendations for:
1. Preferred explanation style (visual, auditory, kinesthetic, reading)
2. Optimal difficulty level (easy, medium, hard)
3. Learning path suggestions
4. Specific intervention strategies
"""
        return await self._ask(
            "personalized recommendations generation",
            "You are an expert educational AI that provides personalized learning recommendations based on student digital twin data.",
            prompt,
            ProfileRecommendations,
            "personalization_recommendations",
            lambda: fallback_profile_recommendations(profile),
        )

    async def refresh(
        self,
        profile: StudentProfile,
        behavior_log: List[BehaviorSample],
        performance_log: List[PerformanceEvent]
    ) -> Dict[str, Any]:
        """Personalization updates for the state store, keyed by profile field name."""
        recommendations = await self.profile_recommendations(profile, behavior_log, performance_log)
        return recommendations.model_dump()
