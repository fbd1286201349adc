"""
Onboarding Saga — durable engine primitives.

Step execution with replay, push cancellation, kill switch, bounded
retry with escalation, parallel join, divergence scoring, audit chain.
Nothing in this package knows about onboarding stages.
"""

from saga.errors import (
    IllegalTransition,
    SagaError,
    StageTimeoutError,
    TerminatedError,
    TransientError,
    ValidationError,
    WaitPending,
    WorkflowNotFound,
)
