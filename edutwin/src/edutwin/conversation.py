"""
Conversation Manager

Owns the AI learning assistant's conversations. Each student has at most one
active conversation at a time:

    no conversation --start--> active --end--> ended

Every turn classifies the student's intent by keyword, builds a context from
recent messages and the student's digital twin, and asks the model for a
reply. When the model is unavailable or the call fails, a canned reply keyed
by intent is used instead.
"""

import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from edutwin.exceptions import ConversationConflictError, ConversationNotFoundError, LLMError
from edutwin.llm_client import CamelModel, LLMGateway
from edutwin.logger import get_logger
from edutwin.student_state import LearningSession, StudentProfile, StudentStateStore

logger = logging.getLogger(__name__)
structured_logger = get_logger(__name__)

# Checked in order; first keyword hit wins
INTENT_KEYWORDS = [
    ("explanation", ["explain", "what is", "how does", "why", "help me understand"]),
    ("question", ["?", "can you", "would you", "is it true", "do you know"]),
    ("problem_solving", ["solve", "calculate", "find", "compute", "work out"]),
    ("quiz_request", ["quiz", "test", "practice", "questions", "challenge"]),
    ("concept_check", ["correct", "right", "wrong", "check", "verify"]),
    ("clarification", ["confused", "don't understand", "unclear", "lost"]),
    ("encouragement", ["struggling", "difficult", "hard", "frustrated", "help"]),
    ("summary", ["summarize", "recap", "review", "overview", "main points"]),
]

SUBJECT_KEYWORDS = [
    "math", "mathematics", "algebra", "geometry", "calculus",
    "physics", "chemistry", "biology", "history", "english",
    "literature", "science", "computer science", "programming",
]

INTENT_PROMPTS = {
    "explanation": "Focus on providing clear, step-by-step explanations. Use the student's preferred learning style.",
    "problem_solving": "Guide the student through problem-solving steps. Don't just give the answer - help them understand the process.",
    "quiz_request": "Create appropriate quiz questions based on the current topic and difficulty level.",
    "clarification": "Be extra patient and try alternative explanation approaches. The student is confused.",
    "encouragement": "Be especially supportive and motivating. The student may be struggling.",
    "summary": "Provide a concise but comprehensive summary of the key points.",
}

FALLBACK_RESPONSES = {
    "explanation": "I'd be happy to explain this concept! However, I'm having some technical difficulties right now. Could you try asking your question again, or I can provide some general guidance on the topic?",
    "problem_solving": "I can help you solve this step by step. Let me break down the problem... Actually, I'm experiencing some technical issues. Could you rephrase your question or try again in a moment?",
    "quiz_request": "I'd love to create a quiz for you! Unfortunately, I'm having some connectivity issues right now. In the meantime, you could try reviewing your notes or textbook for practice questions.",
    "general": "Thank you for your message! I'm here to help with your learning, but I'm experiencing some technical difficulties. Please try asking your question again, and I'll do my best to assist you.",
}

GENERIC_WELCOME = (
    "Hello! I'm your AI Learning Assistant. I'm here to help you learn, answer questions, "
    "and support your educational journey. What would you like to explore today?"
)

RECENT_MESSAGE_LIMIT = 6
CONTEXT_TRUNCATE_CHARS = 200
MAX_CONCEPTS_PER_TURN = 3


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


@dataclass
class Message:
    id: str
    role: MessageRole
    content: str
    type: str = "text"
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)
    attachments: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ConversationContext:
    subject: str = "General"
    current_topic: str = ""
    learning_objectives: List[str] = field(default_factory=list)
    difficulty: str = "medium"
    preferred_style: str = "mixed"


@dataclass
class ConversationMetadata:
    total_messages: int = 0
    topics_discussed: List[str] = field(default_factory=list)
    help_requests: int = 0
    concepts_explained: List[str] = field(default_factory=list)


class ConversationSummary(CamelModel):
    key_topics: List[str]
    concepts_learned: List[str]
    help_areas: List[str]
    overall_progress: str


class WelcomeMessage(CamelModel):
    greeting: str
    acknowledgment: str
    support_offer: str
    invitation: str


@dataclass
class Conversation:
    id: str
    student_id: str
    context: ConversationContext
    start_time: datetime = field(default_factory=datetime.now)
    messages: List[Message] = field(default_factory=list)
    metadata: ConversationMetadata = field(default_factory=ConversationMetadata)
    status: ConversationStatus = ConversationStatus.ACTIVE
    end_time: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    summary: Optional[ConversationSummary] = None

    def append(self, message: Message) -> None:
        self.messages.append(message)
        self.metadata.total_messages = len(self.messages)
        self.last_activity = message.timestamp


@dataclass
class AssistantReply:
    message: Message
    conversation: Conversation
    intent: str


@dataclass
class ConversationEndResult:
    conversation_id: str
    summary: ConversationSummary
    duration_minutes: float
    message_count: int
    topics_discussed: List[str]


@dataclass
class _ReplyDraft:
    content: str
    type: str
    metadata: Dict[str, Any]


ChunkSink = Callable[[str], Union[None, Awaitable[None]]]


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def classify_intent(text: str) -> str:
    lowered = text.lower()
    for intent, keywords in INTENT_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return intent
    return "general"


def classify_response_type(intent: str, response: str) -> str:
    if intent == "quiz_request" or "Question:" in response or "Quiz:" in response:
        return "quiz"
    if intent == "problem_solving" and ("Step" in response or "Solution:" in response):
        return "solution"
    if intent == "explanation" or len(response) > 300:
        return "explanation"
    return "text"


def extract_topics(text: str) -> List[str]:
    lowered = text.lower()
    return [subject for subject in SUBJECT_KEYWORDS if subject in lowered]


def extract_concepts(response: str) -> List[str]:
    """Sentence-length heuristic: short sentences are treated as concept statements."""
    concepts = [sentence.strip() for sentence in response.split(".") if 10 < len(sentence) < 50]
    return concepts[:MAX_CONCEPTS_PER_TURN]


def fallback_reply(intent: str) -> _ReplyDraft:
    return _ReplyDraft(
        content=FALLBACK_RESPONSES.get(intent, FALLBACK_RESPONSES["general"]),
        type="text",
        metadata={"fallback": True, "intent": intent},
    )


def fallback_welcome(profile: StudentProfile, subject: Optional[str]) -> str:
    """Template greeting keyed off attention, emotion and explanation style."""
    name = profile.personal_info.get("name") or "there"
    subject = subject or "your studies"
    # Zero means nothing has been measured yet
    attention = profile.behavior_metrics.attention_level or 75
    emotion = profile.behavior_metrics.emotional_state or "ready to learn"
    style = profile.ai_personalization.preferred_explanation_style or "interactive"

    greeting = f"Hello {name}! I'm your AI Learning Assistant."

    if attention >= 80:
        acknowledgment = f"I can see you're highly focused and {emotion} - that's fantastic for learning!"
    elif attention >= 60:
        acknowledgment = f"You're showing good focus levels and seem {emotion}. Great mindset for learning!"
    else:
        acknowledgment = "I notice you might need some extra support today, and that's perfectly okay!"

    if style == "visual":
        support = f"I'm here to help you with visual explanations, diagrams, step-by-step breakdowns, and anything else you need for {subject}."
    elif style == "auditory":
        support = f"I can provide detailed explanations, discuss concepts, and talk through problems to help you with {subject}."
    else:
        support = f"I'm here to help you with explanations, practice problems, quizzes, and personalized guidance for {subject}."

    invitation = "What would you like to explore or learn about today?"
    return f"{greeting}\n\n{acknowledgment}\n\n{support}\n\n{invitation}"


class ConversationManager:
    """
    AI learning assistant conversations, one active slot per student.

    Conversations are kept after they end so they can be looked up by id.
    """

    def __init__(self, gateway: LLMGateway, store: StudentStateStore):
        self.gateway = gateway
        self.store = store
        self._conversations: Dict[str, Conversation] = {}
        self._active: Dict[str, str] = {}

    def get_active(self, student_id: str) -> Optional[Conversation]:
        conversation_id = self._active.get(student_id)
        return self._conversations.get(conversation_id) if conversation_id else None

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def get_history(self, student_id: str, limit: int = 20) -> Optional[List[Message]]:
        """Most recent messages of the active conversation, or ``None`` without one."""
        conversation = self.get_active(student_id)
        if conversation is None:
            return None
        return conversation.messages[-limit:] if limit > 0 else []

    def _require_active(self, student_id: str) -> Conversation:
        conversation = self.get_active(student_id)
        if conversation is None:
            raise ConversationNotFoundError(student_id)
        return conversation

    async def start(self, student_id: str, context: Optional[Mapping[str, Any]] = None) -> Conversation:
        """
        Open a conversation and post a welcome message.

        Args:
            student_id: Student identifier (a profile is optional)
            context: Optional ``subject``, ``current_topic`` and ``learning_objectives``

        Raises:
            ConversationConflictError: The student already has an active conversation
        """
        existing = self.get_active(student_id)
        if existing is not None:
            logger.warning(f"⚠️ [ConversationManager] {student_id} already in conversation {existing.id}")
            raise ConversationConflictError(student_id, existing.id)

        context = context or {}
        profile = self.store.get_profile(student_id)

        conversation = Conversation(
            id=_new_id("conv"),
            student_id=student_id,
            context=ConversationContext(
                subject=context.get("subject") or "General",
                current_topic=context.get("current_topic") or "",
                learning_objectives=list(context.get("learning_objectives") or []),
                difficulty=profile.ai_personalization.difficulty_level if profile else "medium",
                preferred_style=profile.ai_personalization.preferred_explanation_style if profile else "mixed",
            ),
        )

        # Claim the slot before awaiting so an overlapping start sees the conflict
        self._conversations[conversation.id] = conversation
        self._active[student_id] = conversation.id

        try:
            content, metadata = await self._welcome(profile, context)
        except BaseException:
            self._active.pop(student_id, None)
            self._conversations.pop(conversation.id, None)
            raise

        conversation.append(Message(
            id=_new_id("msg"),
            role=MessageRole.ASSISTANT,
            content=content,
            type="welcome",
            metadata=metadata,
        ))

        logger.info(f"💬 [ConversationManager] Started {conversation.id} for {student_id} ({conversation.context.subject})")
        return conversation

    async def _welcome(self, profile: Optional[StudentProfile], context: Mapping[str, Any]):
        if profile is None:
            return GENERIC_WELCOME, {"personalized": False, "reason": "no_profile"}

        subject = context.get("subject")
        if not self.gateway.is_available():
            return fallback_welcome(profile, subject), {"personalized": True, "fallback": True, "reason": "openai_unavailable"}

        prompt = f"""
Create a personalized welcome message for a student starting a learning session:

Student Context:
- Name: {profile.personal_info.get('name') or 'Student'}
- Current Attention Level: {profile.behavior_metrics.attention_level}%
- Emotional State: {profile.behavior_metrics.emotional_state}
- Recent Performance: {profile.performance_metrics.overall_grade}%
- Preferred Learning Style: {profile.ai_personalization.preferred_explanation_style}
- Subject Focus: {subject or 'General Learning'}
- Current Topic: {context.get('current_topic') or 'Not specified'}

Create a warm, encouraging welcome that:
1. Acknowledges their current state
2. References their learning preferences
3. Mentions available support
4. Invites them to start learning

Keep it concise but personal.
"""
        try:
            welcome = await self.gateway.structured(
                "personalized welcome message generation",
                "You are a friendly, supportive AI learning assistant that creates personalized welcome messages for students.",
                prompt,
                WelcomeMessage,
                "welcome_message",
            )
        except LLMError as e:
            logger.error(f"❌ [ConversationManager] Error generating personalized welcome: {e}")
            return fallback_welcome(profile, subject), {
                "personalized": True,
                "fallback": True,
                "reason": "api_error",
                "error": str(e),
            }

        content = f"{welcome.greeting}\n\n{welcome.acknowledgment}\n\n{welcome.support_offer}\n\n{welcome.invitation}"
        return content, {"personalized": True, "components": welcome.to_dict(), "source": "openai"}

    def _build_messages(
        self,
        conversation: Conversation,
        history: List[Message],
        intent: str,
        text: str,
        attachments: Optional[List[Dict[str, Any]]] = None
    ) -> List[Dict[str, str]]:
        profile = self.store.get_profile(conversation.student_id)
        attention = (profile.behavior_metrics.attention_level if profile else 0) or 75
        emotion = (profile.behavior_metrics.emotional_state if profile else None) or "neutral"
        grade = (profile.performance_metrics.overall_grade if profile else 0) or 75
        style = (profile.ai_personalization.preferred_explanation_style if profile else None) or "mixed"
        difficulty = (profile.ai_personalization.difficulty_level if profile else None) or "medium"

        system_prompt = f"""You are an AI Learning Assistant helping a student with their studies. You are knowledgeable, patient, encouraging, and adaptive to the student's needs.

Student Context:
- Attention Level: {attention}%
- Emotional State: {emotion}
- Performance Level: {grade}%
- Learning Style: {style}
- Difficulty Level: {difficulty}
- Current Subject: {conversation.context.subject}
- Current Topic: {conversation.context.current_topic}

Guidelines:
- Adapt your explanation style to the student's learning preference
- Consider their current emotional state and attention level
- Provide encouragement and support
- Break down complex concepts into understandable parts
- Use examples and analogies when helpful
- Ask follow-up questions to check understanding"""
        if intent in INTENT_PROMPTS:
            system_prompt += f"\n\n{INTENT_PROMPTS[intent]}"

        user_prompt = text
        if attachments:
            names = ", ".join(str(a.get("name", "attachment")) for a in attachments)
            user_prompt += f"\n\nNote: The student has attached files: {names}"
        if conversation.context.current_topic:
            user_prompt += f"\n\nCurrent learning topic: {conversation.context.current_topic}"

        recent = [
            {"role": m.role.value, "content": m.content[:CONTEXT_TRUNCATE_CHARS]}
            for m in history[-RECENT_MESSAGE_LIMIT:]
        ]
        return [{"role": "system", "content": system_prompt}, *recent, {"role": "user", "content": user_prompt}]

    async def _reply(self, messages: List[Dict[str, str]], intent: str) -> _ReplyDraft:
        if not self.gateway.is_available():
            return fallback_reply(intent)

        try:
            reply = await self.gateway.chat(
                "AI response generation",
                messages,
                temperature=self.gateway.temperature,
                max_tokens=self.gateway.max_tokens,
            )
        except LLMError as e:
            logger.error(f"❌ [ConversationManager] Error generating AI response: {e}")
            draft = fallback_reply(intent)
            draft.metadata["error"] = str(e)
            return draft

        return _ReplyDraft(
            content=reply.content,
            type=classify_response_type(intent, reply.content),
            metadata={
                "intent": intent,
                "confidence": 0.9 if reply.finish_reason == "stop" else 0.7,
                "model": reply.model,
                "tokens": reply.total_tokens,
                "source": "openai",
            },
        )

    def _update_metadata(self, conversation: Conversation, text: str, intent: str, response: str) -> None:
        metadata = conversation.metadata
        for topic in extract_topics(text):
            if topic not in metadata.topics_discussed:
                metadata.topics_discussed.append(topic)

        if intent in ("clarification", "encouragement"):
            metadata.help_requests += 1

        if intent == "explanation":
            metadata.concepts_explained.extend(extract_concepts(response))

    async def process_message(
        self,
        student_id: str,
        text: str,
        message_type: str = "text",
        attachments: Optional[List[Dict[str, Any]]] = None
    ) -> AssistantReply:
        """
        Handle one student turn.

        Raises:
            ConversationNotFoundError: No active conversation for the student
        """
        conversation = self._require_active(student_id)
        history = list(conversation.messages)

        conversation.append(Message(
            id=_new_id("msg"),
            role=MessageRole.USER,
            content=text,
            type=message_type,
            attachments=list(attachments or []),
        ))

        intent = classify_intent(text)
        draft = await self._reply(self._build_messages(conversation, history, intent, text, attachments), intent)

        message = Message(
            id=_new_id("msg"),
            role=MessageRole.ASSISTANT,
            content=draft.content,
            type=draft.type,
            metadata=draft.metadata,
        )

        if conversation.status is ConversationStatus.ACTIVE:
            conversation.append(message)
            self._update_metadata(conversation, text, intent, draft.content)
        else:
            logger.warning(f"⚠️ [ConversationManager] {conversation.id} ended before the reply arrived; reply not stored")

        logger.debug(f"💬 [ConversationManager] {student_id} intent={intent} type={draft.type}")
        return AssistantReply(message=message, conversation=conversation, intent=intent)

    async def stream_response(self, student_id: str, text: str, on_chunk: ChunkSink) -> Message:
        """
        Stream the reply to ``on_chunk`` as it arrives.

        Both messages are stored only after the stream completes. When the model
        call fails the fallback reply is delivered as a single chunk and nothing
        is stored. Errors raised by ``on_chunk`` propagate to the caller.

        Raises:
            ConversationNotFoundError: No active conversation for the student
        """
        conversation = self._require_active(student_id)
        intent = classify_intent(text)
        messages = self._build_messages(conversation, list(conversation.messages), intent, text)

        try:
            parts = []
            async for delta in self.gateway.stream("AI response streaming", messages):
                parts.append(delta)
                await _deliver(on_chunk, delta)
            full_response = "".join(parts)
        except LLMError as e:
            logger.error(f"❌ [ConversationManager] Error in streaming response: {e}")
            draft = fallback_reply(intent)
            await _deliver(on_chunk, draft.content)
            return Message(
                id=_new_id("msg"),
                role=MessageRole.ASSISTANT,
                content=draft.content,
                type=draft.type,
                metadata=draft.metadata,
            )

        user_message = Message(id=_new_id("msg"), role=MessageRole.USER, content=text)
        ai_message = Message(
            id=_new_id("msg"),
            role=MessageRole.ASSISTANT,
            content=full_response,
            type=classify_response_type(intent, full_response),
            metadata={"intent": intent, "streamed": True},
        )

        if conversation.status is ConversationStatus.ACTIVE:
            conversation.append(user_message)
            conversation.append(ai_message)
            self._update_metadata(conversation, text, intent, full_response)
        return ai_message

    async def _summarize(self, conversation: Conversation) -> ConversationSummary:
        metadata = conversation.metadata
        if len(conversation.messages) < 3:
            return ConversationSummary(
                key_topics=list(metadata.topics_discussed),
                concepts_learned=metadata.concepts_explained[:5],
                help_areas=[],
                overall_progress="minimal_interaction",
            )

        fallback = ConversationSummary(
            key_topics=list(metadata.topics_discussed),
            concepts_learned=metadata.concepts_explained[:5],
            help_areas=["Unable to analyze"],
            overall_progress="completed_session",
        )
        if not self.gateway.is_available():
            return fallback

        minutes = round((datetime.now() - conversation.start_time).total_seconds() / 60)
        key_messages = "\n".join(f"{m.role.value}: {m.content[:100]}..." for m in conversation.messages[-10:])
        prompt = f"""
Summarize this learning conversation between a student and AI assistant:

Conversation Context:
- Subject: {conversation.context.subject}
- Topic: {conversation.context.current_topic}
- Message Count: {metadata.total_messages}
- Duration: {minutes} minutes

Key Messages:
{key_messages}

Provide a summary including:
1. Main topics discussed
2. Key concepts learned
3. Areas where student needed help
4. Overall learning progress assessment
"""
        try:
            return await self.gateway.structured(
                "conversation summary generation",
                "You are an educational AI that creates concise learning session summaries.",
                prompt,
                ConversationSummary,
                "conversation_summary",
            )
        except LLMError as e:
            logger.error(f"❌ [ConversationManager] Error generating conversation summary: {e}")
            return fallback

    async def end(self, student_id: str) -> Optional[ConversationEndResult]:
        """Close the active conversation; ``None`` when there is none."""
        conversation = self.get_active(student_id)
        if conversation is None:
            return None

        summary = await self._summarize(conversation)
        conversation.end_time = datetime.now()
        conversation.summary = summary
        conversation.status = ConversationStatus.ENDED
        self._active.pop(student_id, None)

        duration = (conversation.end_time - conversation.start_time).total_seconds() / 60
        session = LearningSession(
            subject=conversation.context.subject,
            topic=conversation.context.current_topic,
            duration_minutes=duration,
            interactions=conversation.metadata.total_messages,
            topics_discussed=list(conversation.metadata.topics_discussed),
            concepts_learned=list(conversation.metadata.concepts_explained),
            help_requests=conversation.metadata.help_requests,
            summary=summary.to_dict(),
        )
        try:
            await self.store.record_learning_session(student_id, session)
        except Exception as e:
            logger.error(f"❌ [ConversationManager] Error updating student learning history: {e}")

        structured_logger.success(f"[ConversationManager] Ended {conversation.id}", data={
            "student_id": student_id,
            "messages": conversation.metadata.total_messages,
            "duration_minutes": round(duration, 2),
            "topics": conversation.metadata.topics_discussed,
            "overall_progress": summary.overall_progress,
        })
        return ConversationEndResult(
            conversation_id=conversation.id,
            summary=summary,
            duration_minutes=duration,
            message_count=conversation.metadata.total_messages,
            topics_discussed=list(conversation.metadata.topics_discussed),
        )


async def _deliver(sink: ChunkSink, chunk: str) -> None:
    result = sink(chunk)
    if inspect.isawaitable(result):
        await result
