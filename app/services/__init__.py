from app.services.state_machine import (
    InvalidTransitionError,
    PipelineRun,
    PipelineStage,
    can_transition,
    is_terminal,
    transition,
)
