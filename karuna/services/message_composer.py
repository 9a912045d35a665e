"""Check-in message composition.

Two stages: a deterministic template stage that always produces a message,
and an optional AI stage that may replace it. The AI stage is bounded by a
timeout and any failure in it falls back to the template text.
"""

import asyncio
import random
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import structlog
from openai import AsyncOpenAI

from karuna.config import Settings, get_settings
from karuna.models.engine import (
    AIMessageRequest,
    AIMessageResponse,
    MessageConstraints,
    MessageTone,
    TimeOfDay,
    UserContext,
)
from karuna.models.rule import (
    CHECK_IN_TYPE_INFO,
    ActionType,
    CheckInPriority,
    CheckInType,
    ProactiveRule,
)
from karuna.models.signal import Signal, SignalType
from karuna.services.errors import CompositionTimeoutError
from karuna.services.signal_analysis import DEFAULT_FIELDS, read_field, to_snake

logger = structlog.get_logger(__name__)

MIN_MESSAGE_LENGTH = 20
AI_CONFIDENCE = 0.9

FORBIDDEN_TOPICS = (
    "death",
    "dying",
    "end of life",
    "terminal",
    "will",
    "funeral",
    "politics",
    "religion",
    "money",
    "finances",
    "debt",
)

CLINICAL_TERMS = ("patient", "condition", "symptoms", "diagnosis", "treatment")

AVOID_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (r"you should", r"you must", r"you need to", r"don't forget", r"remember to")
)

GREETINGS = {
    TimeOfDay.MORNING: "Good morning",
    TimeOfDay.AFTERNOON: "Good afternoon",
    TimeOfDay.EVENING: "Good evening",
    TimeOfDay.NIGHT: "Hi there",
}

CAREGIVER_SUGGESTION = "Would you like me to let your caregiver know?"

# Pre-approved messages used when a template cannot be rendered
FALLBACK_MESSAGES: dict[CheckInType, tuple[str, ...]] = {
    CheckInType.STEP_NUDGE: (
        "A short walk might feel nice right about now. Even just a few steps can make a difference!",
        "How about stretching your legs a bit? The fresh air could be refreshing.",
        "When you have a moment, a little movement can help you feel more energized.",
    ),
    CheckInType.WEATHER_ALERT: (
        "The weather outside needs some attention today. Please take care!",
        "Just a heads up about the weather. You might want to plan accordingly.",
        "Weather conditions are worth noting today. Stay comfortable!",
    ),
    CheckInType.MEDICATION_REMINDER: (
        "This is a gentle reminder about your medications. Taking them regularly helps you stay healthy.",
        "Have you had a chance to take your medications? They're an important part of your daily routine.",
        "Just checking in about your medications. Let me know if you need any help!",
    ),
    CheckInType.APPOINTMENT_REMINDER: (
        "You have something on your calendar coming up. Would you like me to tell you more?",
        "Just a friendly reminder about your upcoming appointment. I'm here if you need help preparing.",
        "There's an appointment to remember today. Let me know if you need any details!",
    ),
    CheckInType.WELLBEING_CHECK: (
        "Hi there! I just wanted to check in and see how you're doing today.",
        "Hello! Hope you're having a nice day. How are you feeling?",
        "Just stopping by to say hi and see how things are going for you.",
    ),
    CheckInType.INACTIVITY_CHECK: (
        "Haven't heard from you in a bit. Just checking to make sure everything is okay!",
        "Hi! It's been quiet for a while. Just wanted to make sure you're doing alright.",
        "Checking in to see how you're doing. Everything okay on your end?",
    ),
    CheckInType.HYDRATION_REMINDER: (
        "Have you had some water lately? Staying hydrated is so important!",
        "This is your friendly reminder to drink some water. Your body will thank you!",
        "How about a nice glass of water? Keeping hydrated helps you feel your best.",
    ),
    CheckInType.REST_SUGGESTION: (
        "You've been active! Maybe it's a good time for a little rest.",
        "Taking breaks is important. How about a moment to relax?",
        "A little rest can go a long way. You deserve a break!",
    ),
}

FOLLOW_UPS: dict[str, dict[Optional[CheckInType], tuple[str, ...]]] = {
    "positive": {
        CheckInType.STEP_NUDGE: ("That's wonderful! Enjoy your walk!", "Great! Every step counts!"),
        CheckInType.MEDICATION_REMINDER: (
            "Perfect! Taking care of yourself is so important.",
            "Wonderful! Keep up the great routine!",
        ),
        CheckInType.WELLBEING_CHECK: (
            "So glad to hear that! Have a lovely day!",
            "That makes me happy to hear!",
        ),
        None: ("That's great!", "Wonderful to hear!"),
    },
    "negative": {
        CheckInType.WELLBEING_CHECK: (
            "I'm sorry to hear that. I'm here if you need to talk.",
            "That's okay. Would you like me to call someone?",
        ),
        CheckInType.INACTIVITY_CHECK: (
            "Is there anything I can help with? I'm here for you.",
            "Would you like me to reach out to your caregiver?",
        ),
        None: (
            "That's okay. Let me know if you need anything.",
            "No worries at all. I'm here when you need me.",
        ),
    },
    "neutral": {
        None: ("Sounds good! I'm here if you need me.", "Alright! Just let me know if anything comes up."),
    },
    "caregiver": {
        None: (
            "I've let your caregiver know. They'll be in touch soon.",
            "Okay, I'm reaching out to your caregiver now.",
        ),
    },
}

_RESPONSE_KINDS = {
    ActionType.POSITIVE: "positive",
    ActionType.NEGATIVE: "negative",
    ActionType.NEUTRAL: "neutral",
    ActionType.ACTION: "neutral",
    ActionType.CALL_CAREGIVER: "caregiver",
}

# placeholder -> (signal type, field)
PLACEHOLDER_SOURCES: dict[str, tuple[SignalType, str]] = {
    "steps": (SignalType.STEPS, "current"),
    "temperature": (SignalType.WEATHER, "temperature"),
    "condition": (SignalType.WEATHER, "condition"),
    "next_event": (SignalType.CALENDAR, "next_event"),
    "missed_doses": (SignalType.MEDICATION, "missed_doses"),
    "pending_doses": (SignalType.MEDICATION, "pending_doses"),
    "minutes_since_activity": (SignalType.INACTIVITY, "minutes_since_activity"),
}

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][\w.]*)\s*\}\}")
_SENTENCE_END = re.compile(r"[.!?](?=\s|$)")

SYSTEM_PROMPT = """You are Karuna, a warm and caring AI assistant for elderly users. You're generating a brief check-in message.

STRICT GUIDELINES:
- Keep messages between {min_length} and {max_length} characters
- Use a {tone}, supportive tone
- NEVER be condescending or talk down to the user
- NEVER mention death, dying, illness severity, finances, politics, or religion
- NEVER use phrases like "you should", "you must", "don't forget" - instead use gentle suggestions
- Address the user warmly but not patronizingly
- Be conversational, not clinical
- Focus on the positive action, not the problem
- One clear message only - no multiple paragraphs

The message is a {display_name} ({icon}).
Time of day: {time_of_day}.
{name_line}"""


class MessageGenerator(Protocol):
    """Text-generation collaborator used by the AI stage."""

    async def generate(self, request: AIMessageRequest) -> AIMessageResponse: ...


@dataclass
class ComposedMessage:
    """Title, message and suggestion for a new check-in."""

    title: str
    message: str
    suggestion: Optional[str] = None
    source: str = "template"  # template | fallback | ai


def check_guardrails(message: str, max_length: int = 150) -> Optional[str]:
    """Return why a generated message is unacceptable, or None if it passes."""
    if len(message) < MIN_MESSAGE_LENGTH:
        return "too_short"
    if len(message) > max_length * 1.5:
        return "too_long"

    lowered = message.lower()
    for topic in FORBIDDEN_TOPICS:
        if re.search(rf"\b{re.escape(topic)}\b", lowered):
            return f"forbidden_topic:{topic}"
    for pattern in AVOID_PATTERNS:
        if pattern.search(message):
            return f"discouraged_phrase:{pattern.pattern}"
    for term in CLINICAL_TERMS:
        if re.search(rf"\b{term}\b", lowered):
            return f"clinical_term:{term}"
    return None


def truncate_message(message: str, max_length: int) -> str:
    """Cap a message at ``max_length``, preferring a sentence boundary."""
    message = message.strip()
    if len(message) <= max_length:
        return message

    head = message[:max_length]
    sentence_ends = [m.end() for m in _SENTENCE_END.finditer(head)]
    if sentence_ends:
        return head[: sentence_ends[-1]].strip()

    head = message[: max_length - 1]
    if " " in head:
        head = head[: head.rindex(" ")]
    return head.rstrip(" ,;:-") + "…"


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, int):
        return f"{value:,}"
    if isinstance(value, float):
        return f"{value:g}"
    if isinstance(value, Mapping):
        for key in ("title", "name"):
            if key in value:
                return str(value[key])
        raise KeyError("unformattable mapping")
    return str(value)


def signal_field_value(signal: Signal, field: str) -> Any:
    """Field of a signal value; scalar signals answer their default field."""
    if not isinstance(signal.value, Mapping):
        if DEFAULT_FIELDS.get(signal.type) == field and signal.value is not None:
            return signal.value
        raise KeyError(field)
    return read_field(signal.value, field)


def tone_for(rule: ProactiveRule) -> MessageTone:
    if rule.priority == CheckInPriority.URGENT:
        return MessageTone.CONCERNED
    if rule.type in (CheckInType.WELLBEING_CHECK, CheckInType.INACTIVITY_CHECK):
        return MessageTone.GENTLE
    if rule.type in (CheckInType.STEP_NUDGE, CheckInType.HYDRATION_REMINDER):
        return MessageTone.ENCOURAGING
    return MessageTone.WARM


class MessageComposer:
    """Turns a triggered rule and its signal context into check-in text."""

    def __init__(
        self,
        generator: Optional[MessageGenerator] = None,
        settings: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings or get_settings()
        self.generator = generator
        self._rng = rng or random.Random()

    def render_template(
        self,
        template: str,
        signals: Mapping[SignalType, Signal],
        user_context: UserContext,
    ) -> str:
        """Substitute ``{{placeholder}}`` values.

        Raises:
            KeyError: If a placeholder cannot be resolved
        """

        def replace(match: re.Match) -> str:
            return self._resolve(match.group(1), signals, user_context)

        return _PLACEHOLDER.sub(replace, template)

    def _resolve(
        self, placeholder: str, signals: Mapping[SignalType, Signal], user_context: UserContext
    ) -> str:
        name = to_snake(placeholder)

        if name == "greeting":
            return GREETINGS[user_context.time_of_day]
        if name == "name":
            return user_context.name or "there"

        if "." in name:
            type_name, field = name.split(".", 1)
            try:
                signal_type = SignalType(type_name)
            except ValueError:
                raise KeyError(placeholder)
        elif name in PLACEHOLDER_SOURCES:
            signal_type, field = PLACEHOLDER_SOURCES[name]
        else:
            raise KeyError(placeholder)

        signal = signals.get(signal_type)
        if signal is None:
            raise KeyError(placeholder)
        return format_value(signal_field_value(signal, field))

    def fallback_message(self, check_in_type: CheckInType) -> str:
        messages = FALLBACK_MESSAGES.get(check_in_type, FALLBACK_MESSAGES[CheckInType.WELLBEING_CHECK])
        return self._rng.choice(messages)

    def craft_follow_up(self, check_in_type: CheckInType, response_kind: ActionType) -> str:
        """Short acknowledgement shown after the user answers a check-in."""
        by_type = FOLLOW_UPS[_RESPONSE_KINDS.get(ActionType(response_kind), "neutral")]
        options = by_type.get(check_in_type) or by_type[None]
        return self._rng.choice(options)

    async def compose(
        self,
        rule: ProactiveRule,
        signals: Mapping[SignalType, Signal],
        user_context: UserContext,
        matched_signals: Optional[list[Signal]] = None,
    ) -> ComposedMessage:
        """Compose the text of a check-in for a triggered rule. Never raises
        for generation problems; the template or fallback text is used instead.
        """
        max_length = self.settings.message_max_length
        title = CHECK_IN_TYPE_INFO[rule.type].title

        source = "template"
        try:
            message = self.render_template(rule.message_template, signals, user_context)
        except KeyError as e:
            logger.warning("template_placeholder_unresolved", rule_id=rule.id, placeholder=str(e))
            message = self.fallback_message(rule.type)
            source = "fallback"

        suggestion = self._suggestion(rule, signals, user_context)

        if self.generator is not None and self.settings.ai_enhancement_enabled:
            request = AIMessageRequest(
                check_in_type=rule.type,
                signals=matched_signals if matched_signals is not None else list(signals.values()),
                user_context=user_context,
                constraints=MessageConstraints(
                    max_length=max_length,
                    tone=tone_for(rule),
                    avoid_topics=list(FORBIDDEN_TOPICS),
                ),
            )
            response = await self._generate(rule, request)
            if response is not None and self._accept(rule, response, max_length):
                message = response.message
                suggestion = response.suggestion or suggestion
                source = "ai"

        return ComposedMessage(
            title=title,
            message=truncate_message(message, max_length),
            suggestion=truncate_message(suggestion, max_length) if suggestion else None,
            source=source,
        )

    def _suggestion(
        self, rule: ProactiveRule, signals: Mapping[SignalType, Signal], user_context: UserContext
    ) -> Optional[str]:
        wellbeing = signals.get(SignalType.WELLBEING)
        if wellbeing is not None and isinstance(wellbeing.value, Mapping):
            if wellbeing.value.get("suggest_caregiver_call"):
                return CAREGIVER_SUGGESTION

        if not rule.suggestion:
            return None
        try:
            return self.render_template(rule.suggestion, signals, user_context)
        except KeyError:
            return None

    async def _generate(
        self, rule: ProactiveRule, request: AIMessageRequest
    ) -> Optional[AIMessageResponse]:
        timeout = self.settings.composition_timeout_seconds
        try:
            try:
                return await asyncio.wait_for(self.generator.generate(request), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise CompositionTimeoutError(timeout) from e
        except CompositionTimeoutError as e:
            logger.warning("message_generation_timeout", rule_id=rule.id, timeout=e.timeout)
        except Exception as e:
            logger.warning(
                "message_generation_failed",
                rule_id=rule.id,
                error=str(e),
                error_type=type(e).__name__,
            )
        return None

    def _accept(self, rule: ProactiveRule, response: AIMessageResponse, max_length: int) -> bool:
        if response.confidence < self.settings.ai_min_confidence:
            logger.info(
                "generated_message_rejected",
                rule_id=rule.id,
                reason="low_confidence",
                confidence=response.confidence,
            )
            return False

        reason = check_guardrails(response.message, max_length)
        if reason is not None:
            logger.info("generated_message_rejected", rule_id=rule.id, reason=reason)
            return False
        return True


class OpenAIMessageGenerator:
    """Generates check-in messages with an OpenAI chat model."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        """Lazy-load OpenAI client."""
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.settings.openai_api_key)
        return self._client

    def build_messages(self, request: AIMessageRequest) -> list[dict]:
        info = CHECK_IN_TYPE_INFO[request.check_in_type]
        context = request.user_context
        system_prompt = SYSTEM_PROMPT.format(
            min_length=MIN_MESSAGE_LENGTH,
            max_length=request.constraints.max_length,
            tone=request.constraints.tone.value,
            display_name=info.display_name.lower(),
            icon=info.icon,
            time_of_day=context.time_of_day.value,
            name_line=f"User's name: {context.name}" if context.name else "",
        )
        user_prompt = (
            "Generate a brief, caring check-in message based on these signals:\n"
            f"{format_signals(request.signals)}\n\n"
            f"Remember: {request.constraints.max_length} characters max. "
            "Be warm but not patronizing."
        )
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

    async def generate(self, request: AIMessageRequest) -> AIMessageResponse:
        """Generate a message. Errors from the OpenAI client propagate."""
        response = await self.client.chat.completions.create(
            model=self.settings.openai_model,
            messages=self.build_messages(request),
            max_tokens=120,
            temperature=0.7,
        )
        message = (response.choices[0].message.content or "").strip().strip('"')

        reason = check_guardrails(message, request.constraints.max_length)
        if reason is not None:
            logger.info("generated_message_failed_guardrails", reason=reason)
            return AIMessageResponse(message=message, confidence=0.0)

        logger.debug("message_generated", model=self.settings.openai_model, length=len(message))
        return AIMessageResponse(message=message, confidence=AI_CONFIDENCE)


def format_signals(signals: list[Signal]) -> str:
    """Signal summary lines for the generation prompt."""
    lines = []
    for signal in signals:
        if not isinstance(signal.value, Mapping):
            lines.append(f"- {signal.type.value}: {signal.value}")
            continue
        value = {to_snake(k): v for k, v in signal.value.items()}
        if signal.type == SignalType.STEPS:
            lines.append(
                f"- Steps: {value.get('current')} of {value.get('goal')} goal "
                f"({value.get('percentage')}%)"
            )
        elif signal.type == SignalType.WEATHER:
            lines.append(f"- Weather: {value.get('temperature')}°F, {value.get('condition')}")
        elif signal.type == SignalType.MEDICATION:
            next_dose = value.get("next_dose")
            if isinstance(next_dose, Mapping):
                lines.append(f"- Next medication: {next_dose.get('name')} at {next_dose.get('time')}")
            if value.get("missed_doses"):
                lines.append(f"- Missed doses today: {value['missed_doses']}")
        elif signal.type == SignalType.INACTIVITY:
            lines.append(f"- Minutes since last activity: {value.get('minutes_since_activity')}")
    return "\n".join(lines) or "No specific signals"
