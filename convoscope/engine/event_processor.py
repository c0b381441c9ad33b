"""Applies decoded stream events to the live state store.

One handler per event type. Handlers are synchronous: each commits
its effect to the store through a reducer, then updates the read-side
aggregates (transcripts, edges, version counters). A failing handler
is logged and never interrupts the stream.
"""
from __future__ import annotations

import logging
import time
import uuid
from collections import Counter
from collections.abc import Callable
from datetime import datetime

from convoscope.adapters.events import (
    AgentMessageReceived,
    AgentMessageSent,
    BranchCompleted,
    BranchStarted,
    ConfigReloaded,
    InboundMessage,
    OutboundMessage,
    StreamEvent,
    TaskUpdated,
    ToolCompleted,
    ToolStarted,
    TypingState,
    WorkerCompleted,
    WorkerStarted,
    WorkerStatus,
)
from convoscope.engine import reducers
from convoscope.engine.aggregation import ActivityEdges, TranscriptLog, VersionCounters
from convoscope.engine.models import (
    DEFAULT_BRANCH_DESCRIPTION,
    LIFECYCLE_STATUSES,
    MessageRole,
    ProcessType,
    now_instant,
    utcnow,
)
from convoscope.engine.store import LiveStateStore
from convoscope.shared.models.timeline import TimelineMessage
from convoscope.shared.models.transcript import (
    ActionStep,
    TextPart,
    ToolCallPart,
    ToolResultStep,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[StreamEvent], None]


class EventProcessor:
    """Owns the per-event state machine for workers, branches and messages.

    Events that reference a process nobody knows about ("orphans") are
    absorbed, but logged at WARNING and counted in ``orphan_counts`` by
    event type: a steady trickle of them usually means the upstream
    stream is losing events.
    """

    def __init__(
        self,
        store: LiveStateStore,
        *,
        versions: VersionCounters | None = None,
        transcripts: TranscriptLog | None = None,
        edges: ActivityEdges | None = None,
        now: Callable[[], datetime] = utcnow,
        instant: Callable[[], float] = now_instant,
    ) -> None:
        self._store = store
        self.versions = versions or VersionCounters()
        self.transcripts = transcripts or TranscriptLog()
        self.edges = edges or ActivityEdges()
        self._now = now
        self._instant = instant
        self.orphan_counts: Counter[str] = Counter()

        self._handlers: dict[str, EventHandler] = {
            "inbound_message": self._handle_inbound_message,
            "outbound_message": self._handle_outbound_message,
            "typing_state": self._handle_typing_state,
            "worker_started": self._handle_worker_started,
            "worker_status": self._handle_worker_status,
            "worker_completed": self._handle_worker_completed,
            "branch_started": self._handle_branch_started,
            "branch_completed": self._handle_branch_completed,
            "tool_started": self._handle_tool_started,
            "tool_completed": self._handle_tool_completed,
            "agent_message_sent": self._handle_agent_message,
            "agent_message_received": self._handle_agent_message,
            "task_updated": self._handle_task_updated,
            "config_reloaded": self._handle_config_reloaded,
        }

    # ── dispatch ─────────────────────────────────────────────────────

    @property
    def handlers(self) -> dict[str, EventHandler]:
        """Handler table keyed by wire event type, for the stream client."""
        return dict(self._handlers)

    def process(self, event: StreamEvent) -> None:
        """Apply one event. Unknown event types are ignored."""
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.debug("Ignoring event type %s", event.event_type)
            return
        try:
            handler(event)
        except Exception:
            logger.exception("Error processing event: %s", event.event_type)

    def _orphan(self, event_type: str, process_id: str, detail: str) -> None:
        self.orphan_counts[event_type] += 1
        logger.warning(
            "Orphan %s for %s: %s (total=%d)",
            event_type, process_id, detail, self.orphan_counts[event_type],
        )

    def _completion_target(self, process_id: str, declared: str | None) -> str | None:
        """Conversation whose record/item a completion event should finalize."""
        channel_id = self._store.resolve_channel(process_id, declared)
        if channel_id is not None:
            return channel_id
        if declared is not None:
            state = self._store.get(declared)
            if state is not None and state.find_item(process_id) is not None:
                return declared
        return None

    # ── messages ─────────────────────────────────────────────────────

    def _message_id(self, prefix: str) -> str:
        return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4()}"

    def _handle_inbound_message(self, event: InboundMessage) -> None:
        item = TimelineMessage(
            id=self._message_id("in"),
            role=MessageRole.USER,
            content=event.text,
            created_at=self._now(),
            sender_name=event.sender_name or event.sender_id,
            sender_id=event.sender_id,
        )
        self._store.update(event.channel_id, lambda s: reducers.append_item(s, item))

    def _handle_outbound_message(self, event: OutboundMessage) -> None:
        item = TimelineMessage(
            id=self._message_id("out"),
            role=MessageRole.ASSISTANT,
            content=event.text,
            created_at=self._now(),
            sender_name=event.agent_id,
            sender_id=None,
        )

        def reply(state):
            state = reducers.append_item(state, item)
            return state.evolve(is_typing=False) if state.is_typing else state

        self._store.update(event.channel_id, reply)

    def _handle_typing_state(self, event: TypingState) -> None:
        self._store.update(
            event.channel_id,
            lambda s: s if s.is_typing == event.is_typing else s.evolve(is_typing=event.is_typing),
        )

    # ── workers ──────────────────────────────────────────────────────

    def _handle_worker_started(self, event: WorkerStarted) -> None:
        worker_id = event.worker_id
        # A (re)started worker begins with no outstanding calls and an
        # empty transcript.
        self._store.clear_pending_calls(worker_id)
        if event.channel_id is None:
            logger.debug("worker_started %s without channel; not tracked", worker_id)
        else:
            started_at = self._instant()
            started_dt = self._now()
            self._store.update(
                event.channel_id,
                lambda s: reducers.start_worker(s, worker_id, event.task, started_at, started_dt),
            )
        self.transcripts.reset(worker_id)
        self.versions.bump_worker()

    def _handle_worker_status(self, event: WorkerStatus) -> None:
        worker_id = event.worker_id
        channel_id = self._store.resolve_channel(worker_id, event.channel_id)
        if channel_id is None and event.channel_id is not None:
            # The run item may still be materialized from history.
            state = self._store.get(event.channel_id)
            if state is not None and state.find_item(worker_id) is not None:
                channel_id = event.channel_id
        if channel_id is None:
            self._orphan(event.event_type, worker_id, "no conversation holds it")
        else:
            self._store.update(
                channel_id,
                lambda s: reducers.set_worker_status(s, worker_id, event.status),
                create=False,
            )

        if event.status and event.status not in LIFECYCLE_STATUSES:
            self.transcripts.append(
                worker_id, ActionStep(content=(TextPart(event.status),)),
            )
        self.versions.bump_worker()

    def _handle_worker_completed(self, event: WorkerCompleted) -> None:
        worker_id = event.worker_id
        channel_id = self._completion_target(worker_id, event.channel_id)
        if channel_id is None:
            self._orphan(event.event_type, worker_id, "no active record or run item")
        else:
            completed_dt = self._now()
            self._store.update(
                channel_id,
                lambda s: reducers.complete_worker(
                    s, worker_id, event.result, completed_dt, success=event.success,
                ),
                create=False,
            )
        self._store.clear_pending_calls(worker_id)
        self.versions.bump_worker()

    # ── branches ─────────────────────────────────────────────────────

    def _handle_branch_started(self, event: BranchStarted) -> None:
        if event.channel_id is None:
            logger.debug("branch_started %s without channel; not tracked", event.branch_id)
            return
        branch_id = event.branch_id
        description = event.description or DEFAULT_BRANCH_DESCRIPTION
        self._store.clear_pending_calls(branch_id)
        started_at = self._instant()
        started_dt = self._now()
        self._store.update(
            event.channel_id,
            lambda s: reducers.start_branch(s, branch_id, description, started_at, started_dt),
        )

    def _handle_branch_completed(self, event: BranchCompleted) -> None:
        branch_id = event.branch_id
        channel_id = self._completion_target(branch_id, event.channel_id)
        if channel_id is None:
            self._orphan(event.event_type, branch_id, "no active record or run item")
            return
        completed_dt = self._now()
        self._store.update(
            channel_id,
            lambda s: reducers.complete_branch(s, branch_id, event.conclusion, completed_dt),
            create=False,
        )
        self._store.clear_pending_calls(branch_id)

    # ── tools ────────────────────────────────────────────────────────

    def _handle_tool_started(self, event: ToolStarted) -> None:
        process_id = event.process_id
        channel_id = self._store.resolve_channel(process_id, event.channel_id)
        if channel_id is not None:
            self._store.update(
                channel_id,
                lambda s: reducers.tool_started(s, process_id, event.tool_name),
                create=False,
            )
        elif event.process_type is not ProcessType.CHANNEL:
            logger.debug(
                "tool_started %s for untracked %s %s",
                event.tool_name, event.process_type.value, process_id,
            )

        if event.process_type is ProcessType.WORKER:
            call_id = self._store.push_pending_call(process_id, event.tool_name)
            self.transcripts.append(process_id, ActionStep(content=(
                ToolCallPart(id=call_id, name=event.tool_name, args=event.args or ""),
            )))
            self.versions.bump_worker()

    def _handle_tool_completed(self, event: ToolCompleted) -> None:
        process_id = event.process_id
        channel_id = self._store.resolve_channel(process_id, event.channel_id)
        if channel_id is not None:
            self._store.update(
                channel_id,
                lambda s: reducers.tool_completed(s, process_id, event.tool_name),
                create=False,
            )

        if event.process_type is ProcessType.WORKER:
            call_id = self._store.pop_pending_call(process_id, event.tool_name)
            if call_id is None:
                call_id = (
                    f"{process_id}:{event.tool_name}:"
                    f"{self.transcripts.step_count(process_id)}"
                )
                self._orphan(
                    event.event_type, process_id,
                    f"no pending {event.tool_name} call, using {call_id}",
                )
            self.transcripts.append(process_id, ToolResultStep(
                call_id=call_id, name=event.tool_name, text=event.result or "",
            ))
            self.versions.bump_worker()

    # ── cross-agent and misc ─────────────────────────────────────────

    def _handle_agent_message(self, event: AgentMessageSent | AgentMessageReceived) -> None:
        self.edges.mark(event.from_agent_id, event.to_agent_id)

    def _handle_task_updated(self, event: TaskUpdated) -> None:
        logger.debug(
            "Task #%d %s (%s) for agent %s",
            event.task_number, event.action, event.status, event.agent_id,
        )
        self.versions.bump_task()

    def _handle_config_reloaded(self, event: ConfigReloaded) -> None:
        logger.info("Server configuration reloaded")
