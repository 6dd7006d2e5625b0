"""
Execution layer for step side effects.

This package provides the adapter contract with its live (proxy) and
recorded (replay) implementations, plus the abort signal they share.
"""

from .adapters import (
    DatabasePayload,
    ExecuteResult,
    ExecutionAdapter,
    LiveAdapter,
    RecordedAdapter,
    RecordingNotFoundError,
    RequestPayload,
    ShellPayload,
    StepContext,
    NO_RECORDING_MESSAGE
)
from .cancel import AbortSignal, StepCancelled

__all__ = [
    'AbortSignal',
    'StepCancelled',
    'DatabasePayload',
    'ExecuteResult',
    'ExecutionAdapter',
    'LiveAdapter',
    'RecordedAdapter',
    'RecordingNotFoundError',
    'RequestPayload',
    'ShellPayload',
    'StepContext',
    'NO_RECORDING_MESSAGE'
]
