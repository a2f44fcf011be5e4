"""
Run context.

The caller owns one RunContext per (source, version) pipeline and passes it
to every orchestrator operation. It holds the inputs of the run, the
current PipelineState, the activity log and the cancellation token, so no
orchestrator state lives in module globals or on the orchestrator itself.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from rewriteflow.orchestrator.activity import ActivityLog
from rewriteflow.orchestrator.eta import DEFAULT_ETA_SETTINGS, EtaSettings
from rewriteflow.orchestrator.state import Event, PipelineState, reduce

logger = logging.getLogger(__name__)

StateListener = Callable[[PipelineState], None]


class CancellationToken:
    """Cooperative stop flag for the processing loop.

    Besides the flag itself it offers an interruptible sleep, so a stop
    request does not have to wait out a backoff delay.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return early when cancelled.

        Returns:
            True if the token was cancelled
        """
        if seconds <= 0:
            await asyncio.sleep(0)
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        return self.cancelled


@dataclass
class RunContext:
    """Everything one pipeline run needs, owned by the caller.

    Attributes:
        source_id: Identifier of the source document
        source_version_id: Identifier of the source version being rewritten
        notes: Approved notes driving the rewrite
        protected_items: Items the rewrite must preserve
        state: Current pipeline state (replaced on every dispatch)
        activity: Bounded activity log
        cancel_token: Stop flag for the processing loop
        eta_settings: ETA estimator settings
    """

    source_id: str
    source_version_id: str
    notes: list[Any] = field(default_factory=list)
    protected_items: list[Any] = field(default_factory=list)
    state: PipelineState = field(default_factory=PipelineState)
    activity: ActivityLog = field(default_factory=ActivityLog)
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    eta_settings: EtaSettings = DEFAULT_ETA_SETTINGS
    _listeners: list[StateListener] = field(default_factory=list, repr=False)

    def dispatch(self, event: Event) -> PipelineState:
        """Apply an event to the state and notify listeners of changes."""
        previous = self.state
        self.state = reduce(previous, event, self.eta_settings)
        if self.state is not previous:
            for listener in list(self._listeners):
                try:
                    listener(self.state)
                except Exception as e:
                    logger.warning(f"State listener failed: {e}")
        return self.state

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
