"""Progress event names and a best-effort fan-out emitter."""

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[[str, dict[str, Any]], None]

WORKSPACE_CREATED = "workspace_created"
QUESTION_STATE = "question_state"
ALL_QUESTIONS_COMPLETE = "all_questions_complete"
DOCUMENT_INITIALIZED = "document_initialized"
DOCUMENT_CONTENT = "document_content"
INITIAL_VIEWS_START = "initial_views_start"
INITIAL_VIEW_UPDATE = "initial_view_update"
INITIAL_VIEWS_COMPLETE = "initial_views_complete"
DISCUSSION_START = "discussion_start"
ROUND_START = "round_start"
ENTRY_UPDATE = "entry_update"
ROUND_COMPLETE = "round_complete"
CONTINUATION_ANALYZING = "continuation_analyzing"
CONTINUATION_DECISION = "continuation_decision"
USER_INPUT_ANALYZING = "user_input_analyzing"
USER_INPUT_NEEDED = "user_input_needed"
USER_INPUT_RECEIVED = "user_input_received"
CONSENSUS_START = "consensus_start"
CONSENSUS_COMPLETE = "consensus_complete"
PLAN_START = "plan_start"
PLAN_COMPLETE = "plan_complete"
PLAN_CONTENT = "plan_content"
DISCUSSION_COMPLETE = "discussion_complete"
WORKFLOW_COMPLETE = "workflow_complete"


class ProgressEmitter:
    """Delivers events to subscribed listeners in subscription order.

    Delivery never affects the workflow: a listener that raises is logged
    and the remaining listeners still run.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, name: str, **payload: Any) -> None:
        logger.debug("event %s %s", name, {k: v for k, v in payload.items() if k != "content"})
        for listener in list(self._listeners):
            try:
                listener(name, payload)
            except Exception:
                logger.exception("Progress listener failed on %s", name)
