"""
Unit Tests for the Student State Store

Tests profile defaults, record contracts, behavior window analysis,
at-risk detection and the personalization refresh channel.
"""

import os
import sys
from datetime import datetime, timedelta

import pytest

# Add project root to path
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
sys.path.insert(0, os.path.join(project_root, "edutwin", "src"))

from edutwin.exceptions import StudentNotFoundError
from edutwin.student_state import (
    BehaviorSample,
    ConceptMastery,
    LearningSession,
    PerformanceEvent,
    QuizResult,
    StudentStateStore,
    SubjectScore,
    TimeSpent,
)


async def record_attention(store, student_id, values, engagement=70, emotion="focused", timestamp=None):
    for value in values:
        await store.record_behavior(student_id, BehaviorSample(
            attention_level=value,
            engagement_level=engagement,
            emotional_state=emotion,
            timestamp=timestamp,
        ))


class TestProfiles:
    """Test profile creation and defaults."""

    def test_defaults(self, store):
        store.create_profile("s1")
        profile = store.get_profile("s1")

        assert profile.id == "s1"
        assert profile.personal_info == {}
        assert profile.learning_preferences == {}
        assert profile.behavior_metrics.attention_level == 0
        assert profile.behavior_metrics.emotional_state == "neutral"
        assert profile.behavior_metrics.engagement_level == 0
        assert profile.behavior_metrics.comprehension_rate == 0
        assert profile.performance_metrics.overall_grade == 0
        assert profile.performance_metrics.subject_scores == {}
        assert profile.performance_metrics.concept_mastery == {}
        assert profile.performance_metrics.time_spent_per_topic == {}
        assert profile.performance_metrics.quiz_results == []
        assert profile.ai_personalization.preferred_explanation_style == "visual"
        assert profile.ai_personalization.difficulty_level == "medium"
        assert profile.ai_personalization.learning_path == []
        assert profile.ai_personalization.recommended_resources == []

    def test_seed_overrides_only_given_fields(self, store):
        profile = store.create_profile("s1", seed={
            "personal_info": {"name": "Ada"},
            "performance_metrics": {"overall_grade": 88},
        })

        assert profile.personal_info == {"name": "Ada"}
        assert profile.performance_metrics.overall_grade == 88
        assert profile.behavior_metrics.emotional_state == "neutral"

    def test_unknown_profile_is_none(self, store):
        assert store.get_profile("ghost") is None

    @pytest.mark.asyncio
    async def test_create_twice_overwrites_and_resets_logs(self, store):
        store.create_profile("s1")
        await store.record_behavior("s1", BehaviorSample(attention_level=80))

        profile = store.create_profile("s1")

        assert profile.behavior_metrics.attention_level == 0
        assert store.behavior_history("s1") == []


class TestRecordBehavior:
    """Test behavior recording."""

    @pytest.mark.asyncio
    async def test_unknown_student_fails_without_mutation(self, store):
        with pytest.raises(StudentNotFoundError) as exc_info:
            await store.record_behavior("ghost", BehaviorSample(attention_level=80))

        assert exc_info.value.student_id == "ghost"
        assert store.get_profile("ghost") is None
        assert store.behavior_history("ghost") == []

    @pytest.mark.asyncio
    async def test_merges_only_present_fields(self, store):
        store.create_profile("s1")
        await store.record_behavior("s1", BehaviorSample(attention_level=80, engagement_level=65))
        profile = await store.record_behavior("s1", BehaviorSample(emotional_state="confused"))

        assert profile.behavior_metrics.attention_level == 80
        assert profile.behavior_metrics.engagement_level == 65
        assert profile.behavior_metrics.emotional_state == "confused"
        assert len(store.behavior_history("s1")) == 2

    @pytest.mark.asyncio
    async def test_last_updated_never_decreases(self, store):
        store.create_profile("s1")
        first = (await store.record_behavior("s1", BehaviorSample(attention_level=70))).behavior_metrics.last_updated
        second = (await store.record_behavior("s1", BehaviorSample(attention_level=71))).behavior_metrics.last_updated

        assert second >= first

    @pytest.mark.asyncio
    async def test_log_entries_are_timestamped_copies(self, store):
        store.create_profile("s1")
        sample = BehaviorSample(attention_level=70)
        await store.record_behavior("s1", sample)

        stored = store.behavior_history("s1")[0]
        assert sample.timestamp is None
        assert stored.timestamp is not None
        assert stored.attention_level == 70


class TestRecordPerformance:
    """Test performance folding."""

    @pytest.mark.asyncio
    async def test_unknown_student_fails(self, store):
        with pytest.raises(StudentNotFoundError):
            await store.record_performance("ghost", PerformanceEvent(subject_score=SubjectScore("Math", 90)))

        assert store.performance_history("ghost") == []

    @pytest.mark.asyncio
    async def test_folds_by_key_last_write_wins(self, store):
        store.create_profile("s1")
        await store.record_performance("s1", PerformanceEvent(
            subject_score=SubjectScore("Mathematics", 72),
            concept_mastery=ConceptMastery("fractions", 0.4),
            time_spent=TimeSpent("Algebra", 15),
        ))
        profile = await store.record_performance("s1", PerformanceEvent(
            subject_score=SubjectScore("Mathematics", 85),
            concept_mastery=ConceptMastery("fractions", 0.7),
            time_spent=TimeSpent("Algebra", 20),
        ))

        metrics = profile.performance_metrics
        assert metrics.subject_scores == {"Mathematics": 85}
        assert metrics.concept_mastery == {"fractions": 0.7}
        assert metrics.time_spent_per_topic == {"Algebra": 20}
        assert len(store.performance_history("s1")) == 2

    @pytest.mark.asyncio
    async def test_quiz_results_append(self, store):
        store.create_profile("s1")
        await store.record_performance("s1", PerformanceEvent(quiz_result=QuizResult(score=70, quiz_id="q1")))
        profile = await store.record_performance("s1", PerformanceEvent(quiz_result=QuizResult(score=90, quiz_id="q2")))

        assert [q.score for q in profile.performance_metrics.quiz_results] == [70, 90]
        assert all(q.timestamp is not None for q in profile.performance_metrics.quiz_results)

    @pytest.mark.asyncio
    async def test_learning_session_goes_to_performance_log(self, store):
        store.create_profile("s1")
        session = LearningSession(subject="Mathematics", topic="Algebra", duration_minutes=12.5, interactions=5)

        await store.record_learning_session("s1", session)

        history = store.performance_history("s1")
        assert len(history) == 1
        assert history[0].learning_session.topic == "Algebra"


class TestBehaviorWindow:
    """Test windowed behavior analysis."""

    @pytest.mark.asyncio
    async def test_insufficient_data_sentinel(self, store):
        store.create_profile("s1")
        await record_attention(store, "s1", [80, 90])

        summary = store.analyze_behavior_window("s1")

        assert summary.trend == "insufficient_data"
        assert summary.average_attention is None
        assert summary.average_engagement is None
        assert summary.dominant_emotion is None
        assert summary.sample_count == 2
        assert not summary.has_data

    @pytest.mark.asyncio
    async def test_old_samples_fall_outside_window(self, store):
        store.create_profile("s1")
        await record_attention(store, "s1", [80, 80, 80], timestamp=datetime.now() - timedelta(days=10))
        await record_attention(store, "s1", [60, 60])

        summary = store.analyze_behavior_window("s1", window_days=7)

        assert summary.trend == "insufficient_data"
        assert summary.sample_count == 2

    @pytest.mark.asyncio
    async def test_averages_and_dominant_emotion(self, store):
        store.create_profile("s1")
        await record_attention(store, "s1", [70, 80], engagement=60, emotion="focused")
        await record_attention(store, "s1", [91], engagement=61, emotion="confused")

        summary = store.analyze_behavior_window("s1")

        assert summary.average_attention == 80
        assert summary.average_engagement == 60
        assert summary.dominant_emotion == "focused"

    @pytest.mark.parametrize("values, trend", [
        ([50, 50, 50, 70, 70, 70, 90, 90, 90], "improving"),
        ([90, 90, 90, 70, 70, 70, 50, 50, 50], "declining"),
        ([70] * 9, "stable"),
        ([70, 72, 75, 74, 76, 78], "stable"),
    ])
    @pytest.mark.asyncio
    async def test_trend_by_thirds(self, store, values, trend):
        store.create_profile("s1")
        await record_attention(store, "s1", values)

        assert store.analyze_behavior_window("s1").trend == trend

    def test_unknown_student_fails(self, store):
        with pytest.raises(StudentNotFoundError):
            store.analyze_behavior_window("ghost")

    @pytest.mark.asyncio
    async def test_averages_round_half_up(self, store):
        store.create_profile("s1")
        await record_attention(store, "s1", [62, 63, 62, 63], engagement=50)
        await store.record_behavior("s1", BehaviorSample(engagement_level=51))

        summary = store.analyze_behavior_window("s1")

        assert summary.average_attention == 63
        assert summary.average_engagement == 50

    @pytest.mark.asyncio
    async def test_missing_metric_averages_to_none(self, store):
        store.create_profile("s1")
        for _ in range(3):
            await store.record_behavior("s1", BehaviorSample(engagement_level=80, emotional_state="focused"))

        summary = store.analyze_behavior_window("s1")

        assert summary.has_data
        assert summary.average_attention is None
        assert summary.average_engagement == 80
        assert summary.trend == "stable"

    @pytest.mark.asyncio
    async def test_window_defaults_to_store_setting(self):
        store = StudentStateStore(window_days=1)
        store.create_profile("s1")
        await record_attention(store, "s1", [80, 80, 80], timestamp=datetime.now() - timedelta(days=2))

        assert store.window_days == 1
        assert store.analyze_behavior_window("s1").sample_count == 0
        assert store.analyze_behavior_window("s1", window_days=7).sample_count == 3


class TestAtRiskStudents:
    """Test at-risk detection."""

    @pytest.mark.asyncio
    async def test_reasons_for_struggling_student(self, store):
        store.create_profile("low")
        await record_attention(store, "low", [45, 40, 42], engagement=30, emotion="frustrated")

        at_risk = {entry.student_id: entry for entry in store.list_at_risk_students()}

        assert set(at_risk["low"].reasons) == {
            "Low attention level",
            "Low engagement",
            "Poor academic performance",
            "Frequent frustration",
        }

    @pytest.mark.asyncio
    async def test_healthy_student_not_listed(self, store):
        store.create_profile("ok", seed={"performance_metrics": {"overall_grade": 88}})
        await record_attention(store, "ok", [90, 88, 92], engagement=80, emotion="focused")

        assert [entry.student_id for entry in store.list_at_risk_students()] == []

    @pytest.mark.asyncio
    async def test_confusion_and_declining_trend(self, store):
        store.create_profile("s1", seed={"performance_metrics": {"overall_grade": 90}})
        await record_attention(store, "s1", [95, 95, 95, 80, 80, 80, 65, 65, 65], engagement=70, emotion="confused")

        (entry,) = store.list_at_risk_students()

        assert entry.reasons == ["Frequent confusion", "Declining attention trend"]

    @pytest.mark.asyncio
    async def test_samples_without_attention_do_not_flag_low_attention(self, store):
        store.create_profile("s1", seed={"performance_metrics": {"overall_grade": 90}})
        for _ in range(3):
            await store.record_behavior("s1", BehaviorSample(engagement_level=80, emotional_state="focused"))

        assert store.list_at_risk_students() == []

    def test_fresh_profile_flagged_only_for_grade(self, store):
        store.create_profile("new")

        (entry,) = store.list_at_risk_students()

        assert entry.reasons == ["Poor academic performance"]
        assert entry.behavior_summary.trend == "insufficient_data"


class TestPersonalizationRefresh:
    """Test the refresh task and its error channel."""

    @pytest.mark.asyncio
    async def test_refresh_merges_updates(self):
        seen = {}

        async def refresher(profile, behavior_log, performance_log):
            seen["behavior"] = len(behavior_log)
            return {"difficulty_level": "hard", "learning_path": ["Step 1"], "unknown_key": 1}

        store = StudentStateStore(refresher=refresher)
        store.create_profile("s1")
        await store.record_behavior("s1", BehaviorSample(attention_level=90))

        outcome = await store.wait_for_refresh("s1")

        profile = store.get_profile("s1")
        assert outcome.ok is True
        assert outcome.error is None
        assert profile.ai_personalization.difficulty_level == "hard"
        assert profile.ai_personalization.learning_path == ["Step 1"]
        assert profile.ai_personalization.last_updated is not None
        assert seen["behavior"] == 1
        assert store.last_refresh("s1") is outcome

    @pytest.mark.asyncio
    async def test_refresh_failure_is_observable_not_raised(self):
        async def refresher(profile, behavior_log, performance_log):
            raise RuntimeError("planner exploded")

        store = StudentStateStore(refresher=refresher)
        store.create_profile("s1")

        profile = await store.record_performance("s1", PerformanceEvent(subject_score=SubjectScore("Math", 80)))
        outcome = await store.wait_for_refresh("s1")

        assert profile.performance_metrics.subject_scores == {"Math": 80}
        assert outcome.ok is False
        assert "planner exploded" in outcome.error
        assert profile.ai_personalization.difficulty_level == "medium"

    @pytest.mark.asyncio
    async def test_no_refresher_means_no_outcome(self, store):
        store.create_profile("s1")
        await store.record_behavior("s1", BehaviorSample(attention_level=90))

        assert await store.wait_for_refresh("s1") is None

    @pytest.mark.asyncio
    async def test_refreshes_apply_in_order(self):
        calls = []

        async def refresher(profile, behavior_log, performance_log):
            calls.append(len(behavior_log))
            return {"learning_path": [f"after {len(behavior_log)}"]}

        store = StudentStateStore(refresher=refresher)
        store.create_profile("s1")
        await store.record_behavior("s1", BehaviorSample(attention_level=80))
        await store.record_behavior("s1", BehaviorSample(attention_level=85))
        await store.drain()

        assert len(calls) == 2
        assert store.get_profile("s1").ai_personalization.learning_path == ["after 2"]
