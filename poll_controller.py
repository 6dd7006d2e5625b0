"""
Polling controller: bounded GET retry loop with success/failure predicates.

State goes idle -> polling -> success | failure. Every transition is
reported through `on_update` with a copy of the state, so a viewer can show
the attempt count and current stage while the loop is suspended.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from execution import AbortSignal, RequestPayload, StepCancelled, StepContext
from expressions import evaluate_field_condition, extract_saves
from runner_config import POLL_INTERVAL_MS, POLL_MAX_ATTEMPTS

logger = logging.getLogger(__name__)


@dataclass
class PollState:
    status: str = "idle"  # idle, polling, success, failure
    attempt: int = 0
    max_attempts: int = 0
    current_stage: Optional[str] = None
    last_response: Any = None
    error: Optional[str] = None


@dataclass
class PollOutcome:
    """Terminal result of one poll run. `saved` is extracted, not yet written."""
    reason: str  # success, failed, timeout, cancelled
    data: Any = None
    status: int = 0
    attempts: int = 0
    saved: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.reason == "success"


def resolve_poll_limits(interval: Optional[int], max_attempts: Optional[int],
                        settings: Any = None) -> tuple[int, int]:
    """Step value, else script-wide polling settings, else runner defaults."""
    defaults = getattr(settings, "polling", None)
    if interval is None and defaults is not None:
        interval = defaults.interval
    if max_attempts is None and defaults is not None:
        max_attempts = defaults.max_attempts
    return (
        interval if interval is not None else POLL_INTERVAL_MS,
        max_attempts if max_attempts is not None else POLL_MAX_ATTEMPTS,
    )


class PollController:
    """Runs one poll invocation; create a new controller per invocation."""

    def __init__(
        self,
        adapter: Any,
        interval_ms: int = POLL_INTERVAL_MS,
        max_attempts: int = POLL_MAX_ATTEMPTS,
        on_update: Callable[[PollState], None] | None = None,
    ):
        self.adapter = adapter
        self.interval_ms = interval_ms
        self.max_attempts = max_attempts
        self.on_update = on_update
        self.state = PollState(max_attempts=max_attempts)

    def _update(self, **changes: Any):
        self.state = replace(self.state, **changes)
        if self.on_update:
            self.on_update(replace(self.state))

    @staticmethod
    def current_stage(stages: list, data: Any) -> Optional[str]:
        for stage in stages:
            if evaluate_field_condition(stage.when, data):
                return stage.label
        return None

    async def run(
        self,
        url: str,
        success_when: str,
        context: StepContext,
        signal: AbortSignal,
        failure_when: Optional[str] = None,
        stages: list | None = None,
        save: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
    ) -> PollOutcome:
        """
        Poll `url` until a predicate matches or attempts run out.

        Transport errors and HTTP >= 400 count as inconclusive attempts.
        A missing recording is not inconclusive and propagates.
        """
        stages = stages or []
        self._update(status="polling", attempt=0, current_stage=None,
                     last_response=None, error=None)

        for attempt in range(1, self.max_attempts + 1):
            if signal.aborted:
                return self._cancelled(attempt - 1)

            self._update(attempt=attempt)

            try:
                result = await self.adapter.request(
                    RequestPayload(method="GET", url=url, headers=dict(headers or {})),
                    context,
                    signal,
                )
            except StepCancelled:
                return self._cancelled(attempt)

            if result.error or result.status >= 400:
                logger.debug(f"Poll attempt {attempt} inconclusive: {result.error or result.status}")
            else:
                data = result.data
                if success_when and evaluate_field_condition(success_when, data):
                    self._update(status="success", last_response=data)
                    return PollOutcome(
                        reason="success",
                        data=data,
                        status=result.status,
                        attempts=attempt,
                        saved=extract_saves(save or {}, data, result.status),
                    )

                if failure_when and evaluate_field_condition(failure_when, data):
                    message = f"Job failed: {json.dumps(data, default=str)}"
                    self._update(status="failure", last_response=data, error=message)
                    return PollOutcome(reason="failed", data=data, status=result.status,
                                       attempts=attempt, error=message)

                self._update(last_response=data, current_stage=self.current_stage(stages, data))

            if attempt < self.max_attempts:
                try:
                    await signal.sleep(self.interval_ms / 1000)
                except StepCancelled:
                    return self._cancelled(attempt)

        message = f"Polling timeout after {self.max_attempts} attempts"
        self._update(status="failure", error=message)
        return PollOutcome(reason="timeout", data=self.state.last_response,
                           attempts=self.max_attempts, error=message)

    def _cancelled(self, attempts: int) -> PollOutcome:
        self._update(status="failure", error="Polling cancelled")
        return PollOutcome(reason="cancelled", data=self.state.last_response,
                           attempts=attempts, error="Polling cancelled")
