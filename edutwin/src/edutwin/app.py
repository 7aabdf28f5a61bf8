"""
Service Wiring

Builds every EduTwin service once and connects them:
- The personalization planner refreshes the student state store
- Behavior samples are recorded into the store for students with a profile
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from edutwin.behavior_sampler import BehaviorSampler, BehaviorSource, SampleRecord
from edutwin.config import Settings
from edutwin.conversation import ConversationManager
from edutwin.llm_client import LLMGateway
from edutwin.logger import get_logger, setup_logging
from edutwin.personalization import PersonalizationPlanner
from edutwin.student_state import StudentStateStore

logger = get_logger(__name__)


@dataclass
class EduTwinServices:
    settings: Settings
    gateway: LLMGateway
    store: StudentStateStore
    planner: PersonalizationPlanner
    sampler: BehaviorSampler
    conversations: ConversationManager

    async def shutdown(self) -> None:
        """Stop sampling and wait for pending personalization refreshes."""
        await self.sampler.stop()
        await self.store.drain()


def build_services(
    settings: Optional[Settings] = None,
    client: Optional[Any] = None,
    source: Optional[BehaviorSource] = None,
    configure_logging: bool = True
) -> EduTwinServices:
    """
    Construct the service graph.

    Args:
        settings: Explicit settings (read from the environment when omitted)
        client: Pre-built OpenAI client passed to the gateway
        source: Behavior source for the sampler (simulated when omitted)
        configure_logging: Install the console log handler
    """
    settings = settings or Settings.from_env()

    if configure_logging:
        setup_logging(
            level=getattr(logging, settings.log_level, logging.INFO),
            use_colors=settings.log_colors,
        )

    gateway = LLMGateway.from_settings(settings, client=client)
    planner = PersonalizationPlanner(gateway)
    store = StudentStateStore(refresher=planner.refresh, window_days=settings.behavior_window_days)
    sampler = BehaviorSampler(
        gateway,
        source=source,
        interval_seconds=settings.behavior_sample_interval_seconds,
    )
    conversations = ConversationManager(gateway, store)

    async def record_sample(record: SampleRecord) -> None:
        if store.get_profile(record.student_id) is None:
            return
        await store.record_behavior(record.student_id, record.to_behavior_sample())

    sampler.subscribe(record_sample)

    logger.success("[EduTwin] Services ready", data={
        "model": settings.openai_model,
        "ai": "enabled" if gateway.is_available() else "fallback only",
        "behavior_interval_seconds": settings.behavior_sample_interval_seconds,
        "behavior_window_days": settings.behavior_window_days,
    })
    return EduTwinServices(
        settings=settings,
        gateway=gateway,
        store=store,
        planner=planner,
        sampler=sampler,
        conversations=conversations,
    )
