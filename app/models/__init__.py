from app.models.contact import Contact
from app.models.conversation import Conversation
from app.models.inbound_dedup import InboundMessageDedup
from app.models.lead import Lead
from app.models.message import Message
from app.models.outbound_log import OutboundMessageLog, QuestionCooldown
from app.models.outbox_message import OutboundJob
from app.models.task import Task

__all__ = [
    "Contact",
    "Lead",
    "Conversation",
    "Message",
    "InboundMessageDedup",
    "OutboundMessageLog",
    "QuestionCooldown",
    "Task",
    "OutboundJob",
]
