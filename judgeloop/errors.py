"""Exception hierarchy for the refinement loop."""

from typing import Optional


class JudgeLoopError(Exception):
    """Base class for all errors raised by judgeloop."""


class ValidationError(JudgeLoopError):
    """A request or agent configuration is malformed.

    Raised before a request enters ``pending``.
    """


class AgentInvocationError(JudgeLoopError):
    """A single judge or optimizer call failed.

    Recovered locally: the judge is excluded for the current iteration, or
    the previous prompt is reused when the optimizer fails.
    """

    def __init__(self, message: str, agent_id: Optional[str] = None):
        super().__init__(message)
        self.agent_id = agent_id


class GenerationError(JudgeLoopError):
    """The image generation client failed. Retried up to a fixed bound."""


class UnrecoverableError(JudgeLoopError):
    """Ends the request with status ``failed`` and reason ``ERROR``."""


class PersistenceConflictError(JudgeLoopError):
    """A write targeted a terminal or concurrently modified record."""


class InvalidTransitionError(JudgeLoopError):
    """A status transition not permitted by the request state machine."""
