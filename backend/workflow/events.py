"""
Session-scoped pub/sub channel.

Every review session owns one bus. Handlers registered on one session never
see events from another one.
"""

from collections import defaultdict
from typing import Any, Callable, DefaultDict, List

from backend.core.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[[str, Any], None]

# Event names published by the workflow
STATE_CHANGED = "state_changed"
STEP_FAILED = "step_failed"
EXTRACTION_LOGGED = "extraction_logged"
MAPPING_REQUESTED = "mapping_requested"
APPROVAL_TRANSITION = "approval_transition"
APPROVAL_FINALIZED = "approval_finalized"

WILDCARD = "*"


class WorkflowEventBus:
    """Synchronous publish/subscribe for a single workflow session."""

    def __init__(self, session_id: str = ""):
        self.session_id = session_id
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        """
        Register ``handler`` for ``event`` (``"*"`` for everything).

        Returns:
            A callable that removes the subscription
        """
        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers.get(event, []):
                self._handlers[event].remove(handler)

        return unsubscribe

    def publish(self, event: str, payload: Any = None) -> int:
        """
        Deliver ``payload`` to the handlers of ``event``, then wildcard handlers.

        A failing handler is logged and skipped.

        Returns:
            Number of handlers that ran without raising
        """
        handlers = list(self._handlers.get(event, []))
        if event != WILDCARD:
            handlers += self._handlers.get(WILDCARD, [])

        delivered = 0
        for handler in handlers:
            try:
                handler(event, payload)
                delivered += 1
            except Exception as e:
                logger.error(
                    "event_handler_failed",
                    session_id=self.session_id,
                    event_name=event,
                    error=str(e),
                )
        return delivered

    def subscriber_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))
