from enum import Enum


class PipelineStage(str, Enum):
    RECEIVED = "RECEIVED"
    ADMITTED = "ADMITTED"
    IDENTITY_RESOLVED = "IDENTITY_RESOLVED"
    CONVERSATION_RESOLVED = "CONVERSATION_RESOLVED"
    FIELDS_EXTRACTED = "FIELDS_EXTRACTED"
    TASKS_CREATED = "TASKS_CREATED"
    REPLY_DECISION = "REPLY_DECISION"
    AUTO_REPLY_QUEUED = "AUTO_REPLY_QUEUED"
    AUTO_REPLIED = "AUTO_REPLIED"
    SKIPPED_ASSIGNED = "SKIPPED_ASSIGNED"
    SKIPPED_NO_CONTENT = "SKIPPED_NO_CONTENT"
    REPLY_FAILED = "REPLY_FAILED"
    DUPLICATE = "DUPLICATE"
    FINALIZED = "FINALIZED"


REPLY_OUTCOMES = (
    PipelineStage.AUTO_REPLY_QUEUED,
    PipelineStage.AUTO_REPLIED,
    PipelineStage.SKIPPED_ASSIGNED,
    PipelineStage.SKIPPED_NO_CONTENT,
    PipelineStage.REPLY_FAILED,
)

VALID_TRANSITIONS = {
    PipelineStage.RECEIVED: [PipelineStage.ADMITTED, PipelineStage.DUPLICATE],
    PipelineStage.ADMITTED: [PipelineStage.IDENTITY_RESOLVED, PipelineStage.FINALIZED],
    PipelineStage.IDENTITY_RESOLVED: [PipelineStage.CONVERSATION_RESOLVED, PipelineStage.FINALIZED],
    PipelineStage.CONVERSATION_RESOLVED: [PipelineStage.FIELDS_EXTRACTED, PipelineStage.FINALIZED],
    PipelineStage.FIELDS_EXTRACTED: [PipelineStage.TASKS_CREATED, PipelineStage.FINALIZED],
    PipelineStage.TASKS_CREATED: [PipelineStage.REPLY_DECISION, PipelineStage.FINALIZED],
    PipelineStage.REPLY_DECISION: list(REPLY_OUTCOMES) + [PipelineStage.FINALIZED],
    PipelineStage.AUTO_REPLY_QUEUED: [PipelineStage.FINALIZED],
    PipelineStage.AUTO_REPLIED: [PipelineStage.FINALIZED],
    PipelineStage.SKIPPED_ASSIGNED: [PipelineStage.FINALIZED],
    PipelineStage.SKIPPED_NO_CONTENT: [PipelineStage.FINALIZED],
    PipelineStage.REPLY_FAILED: [PipelineStage.FINALIZED],
    PipelineStage.DUPLICATE: [],
    PipelineStage.FINALIZED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: PipelineStage, to_state: PipelineStage):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: PipelineStage, to_state: PipelineStage) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: PipelineStage, to_state: PipelineStage) -> PipelineStage:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def is_terminal(stage: PipelineStage) -> bool:
    return not VALID_TRANSITIONS.get(stage)


class PipelineRun:
    """Tracks one event's walk through the stages; every step is validated."""

    def __init__(self, stage: PipelineStage = PipelineStage.RECEIVED):
        self.stage = stage
        self.history = [stage]
        self.outcome = None

    def advance(self, to_state: PipelineStage) -> PipelineStage:
        self.stage = transition(self.stage, to_state)
        self.history.append(self.stage)
        if self.stage in REPLY_OUTCOMES or self.stage == PipelineStage.DUPLICATE:
            self.outcome = self.stage
        return self.stage
