"""
LEDGER ENGINE: STATE MACHINE

Lifecycle table for ledger entities (payouts today). Each registered edge
carries a handler that performs the write and an optional guard that can
veto it with a reason.

Handlers own persistence and must compare-and-set on the source state, so
two callers racing the same edge cannot both succeed. The machine itself
keeps no per-entity state.

Usage:
    machine = StateMachine("payout", clock=utcnow)
    machine.register("requested", "pending", approve_handler)
    machine.register("processing", "completed", complete_handler, guard=has_utr)

    result = await machine.transition(payout_doc, "pending", context={...})
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Any, Optional, Callable, Awaitable, List, Tuple
import logging

from core.settlement_clock import utcnow, to_storage

logger = logging.getLogger(__name__)


class StateMachineError(Exception):
    pass


class InvalidTransitionError(StateMachineError):
    """No edge registered from the entity's current state to the target."""

    def __init__(self, entity: str, from_state: str, to_state: str, allowed: Optional[List[str]] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []
        hint = f" (from '{from_state}' only: {', '.join(self.allowed)})" if self.allowed else ""
        super().__init__(f"{entity} cannot move '{from_state}' -> '{to_state}'{hint}")


class GuardConditionError(StateMachineError):
    """The edge exists but its guard refused the context."""

    def __init__(self, entity: str, from_state: str, to_state: str, reason: str):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        super().__init__(f"{entity} '{from_state}' -> '{to_state}' refused: {reason}")


# async def handler(entity_doc, context) -> updated entity_doc
Handler = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Dict[str, Any]]]
# async def guard(entity_doc, context) -> (allowed, reason)
Guard = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Tuple[bool, str]]]


@dataclass(frozen=True)
class Edge:
    from_state: str
    to_state: str
    handler: Handler
    guard: Optional[Guard] = None
    description: str = ""


class StateMachine:

    def __init__(
        self,
        entity_name: str,
        status_field: str = "status",
        clock: Callable[[], datetime] = utcnow
    ):
        self.entity_name = entity_name
        self.status_field = status_field
        self.clock = clock
        self._edges: Dict[Tuple[str, str], Edge] = {}

    def register(
        self,
        from_state: str,
        to_state: str,
        handler: Handler,
        guard: Optional[Guard] = None,
        description: str = ""
    ) -> "StateMachine":
        key = (from_state, to_state)
        if key in self._edges:
            logger.warning(f"[STATE_MACHINE] {self.entity_name}: replacing edge '{from_state}' -> '{to_state}'")
        self._edges[key] = Edge(from_state, to_state, handler, guard, description)
        return self

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        return [dst for (src, dst) in self._edges if src == from_state]

    def get_source_states(self, to_state: str) -> List[str]:
        return [src for (src, dst) in self._edges if dst == to_state]

    async def transition(
        self,
        entity_doc: Dict[str, Any],
        to_state: str,
        context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Run the edge from the entity's current state to `to_state`.

        Returns {"status": "success", "from_state", "to_state",
        "handler_result", "transitioned_at"}. Raises InvalidTransitionError,
        GuardConditionError, or whatever the handler raises.
        """
        context = context or {}

        from_state = entity_doc.get(self.status_field)
        if from_state is None:
            raise StateMachineError(f"{self.entity_name} has no '{self.status_field}' field")

        edge = self._edges.get((from_state, to_state))
        if edge is None:
            raise InvalidTransitionError(
                self.entity_name, from_state, to_state, self.get_allowed_transitions(from_state)
            )

        if edge.guard is not None:
            allowed, reason = await edge.guard(entity_doc, context)
            if not allowed:
                raise GuardConditionError(self.entity_name, from_state, to_state, reason)

        logger.info(f"[STATE_MACHINE] {self.entity_name}: '{from_state}' -> '{to_state}'")
        try:
            handler_result = await edge.handler(entity_doc, context)
        except Exception as e:
            logger.warning(f"[STATE_MACHINE] {self.entity_name} '{from_state}' -> '{to_state}' failed: {e}")
            raise

        return {
            "status": "success",
            "from_state": from_state,
            "to_state": to_state,
            "handler_result": handler_result or {},
            "transitioned_at": to_storage(self.clock()),
        }

    def get_history_entry(
        self,
        from_state: Optional[str],
        to_state: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """One element of the entity's state_history array."""
        return {
            "from_state": from_state,
            "to_state": to_state,
            "transitioned_at": to_storage(self.clock()),
            "transitioned_by": user_id,
            "metadata": metadata or {},
        }

    def __repr__(self):
        return f"StateMachine({self.entity_name}, edges={len(self._edges)})"
