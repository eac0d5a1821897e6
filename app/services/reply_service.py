"""Reply drafting for auto-replies.

Drafters never raise for content problems: they return ``Result.failure`` and
the orchestrator turns that into a REPLY_FAILED outcome.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import ContentGenerationError
from app.logging_config import get_logger
from app.models import Message
from app.services.contact_service import is_placeholder_name
from app.services.flow_state import QuestionKey
from app.services.llm import LLMProvider, OpenAIProvider
from app.services.result import Result

logger = get_logger("reply_service")

HISTORY_LIMIT = 10

QUESTION_TEMPLATES = {
    QuestionKey.NAME: "May I have your full name, please?",
    QuestionKey.SERVICE: (
        "Which service can we help you with? For example company setup, golden visa or visa renewal."
    ),
    QuestionKey.NATIONALITY: "What is your nationality?",
    QuestionKey.EMAIL: "Which email address should we send the details to?",
    QuestionKey.EXPIRY_DATE: "When does your current visa expire? Please share the exact date, e.g. 15/03/2027.",
    QuestionKey.PARTNERS_COUNT: "How many partners or shareholders will the company have?",
    QuestionKey.VISAS_COUNT: "How many residence visas will you need?",
}

CLOSING_TEMPLATE = "A consultant will review your request and get back to you shortly."


@dataclass
class ReplyContext:
    conversation_id: int
    channel: str
    inbound_text: str
    contact_name: Optional[str] = None
    known_fields: dict[str, Any] = field(default_factory=dict)
    next_question: Optional[QuestionKey] = None
    history: list[dict] = field(default_factory=list)

    @property
    def display_name(self) -> Optional[str]:
        if is_placeholder_name(self.contact_name):
            return None
        return self.contact_name.split()[0]


def load_history(db: Session, conversation_id: int, limit: int = HISTORY_LIMIT) -> list[dict]:
    """Last ``limit`` messages as chat-completion turns, oldest first."""
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
        .all()
    )
    history = []
    for message in reversed(rows):
        if not message.body:
            continue
        role = "user" if message.direction == "INBOUND" else "assistant"
        history.append({"role": role, "content": message.body})
    return history


class ReplyDrafter(ABC):
    @abstractmethod
    def draft(self, context: ReplyContext) -> Result[str]:
        pass


class QuestionReplyDrafter(ReplyDrafter):
    """Templated qualification questions; no external calls."""

    def draft(self, context: ReplyContext) -> Result[str]:
        name = context.display_name
        if context.next_question is None:
            greeting = f"Thank you, {name}!" if name else "Thank you!"
            return Result.success(f"{greeting} {CLOSING_TEMPLATE}")

        question = QUESTION_TEMPLATES.get(context.next_question)
        if question is None:
            return Result.failure(f"No template for {context.next_question}", "draft_error")
        if name and context.next_question != QuestionKey.NAME:
            return Result.success(f"Thanks, {name}. {question}")
        return Result.success(question)


SYSTEM_PROMPT = (
    "You are the assistant of a UAE business setup and visa consultancy, replying on {channel}. "
    "Reply briefly and politely in the language of the customer. Never quote prices or promise timelines. "
    "Known details about the customer: {known}. "
    "{instruction}"
)


class LLMReplyDrafter(ReplyDrafter):
    def __init__(self, provider: LLMProvider, model: Optional[str] = None):
        self.provider = provider
        self.model = model

    def _instruction(self, context: ReplyContext) -> str:
        if context.next_question is None:
            return f"All details are collected; tell the customer that {CLOSING_TEMPLATE.lower()}"
        question = QUESTION_TEMPLATES[context.next_question]
        return f'End your reply with exactly one question: "{question}"'

    def build_messages(self, context: ReplyContext) -> list[dict]:
        known = {k: v for k, v in context.known_fields.items() if not k.startswith("qualification_")}
        known.pop("asked_questions", None)
        system = SYSTEM_PROMPT.format(
            channel=context.channel,
            known=known or "none yet",
            instruction=self._instruction(context),
        )
        messages = [{"role": "system", "content": system}]
        messages.extend(context.history)
        if not context.history or context.history[-1].get("content") != context.inbound_text:
            messages.append({"role": "user", "content": context.inbound_text})
        return messages

    def draft(self, context: ReplyContext) -> Result[str]:
        try:
            response = self.provider.generate(self.build_messages(context), model=self.model)
        except ContentGenerationError as e:
            logger.error(
                "Reply drafting failed",
                extra={"context": {"conversation_id": context.conversation_id, "error": str(e)}},
            )
            return Result.from_exception(e, "draft_error")

        content = (response.content or "").strip()
        if not content:
            return Result.failure("Empty reply from model", "draft_error")
        return Result.success(content)


def get_reply_drafter() -> ReplyDrafter:
    """LLM drafter when an OpenAI key is configured, templates otherwise."""
    if settings.openai_api_key:
        provider = OpenAIProvider(
            settings.openai_api_key,
            default_model=settings.openai_model,
            timeout_seconds=settings.openai_timeout_seconds,
        )
        return LLMReplyDrafter(provider)
    return QuestionReplyDrafter()
