"""
In-memory engine collaborators: executions, correlation keys, scheduled
action calls and trigger events.

Every store guards its records with a ``threading.Lock`` and hands out
copies, so callers never mutate shared state directly. None of the stores
serialise concurrent handlers for the same execution; handlers must read
the persisted state and check it before writing.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

EXECUTION_STARTED = "started"
EXECUTION_FINISHED = "finished"
EXECUTION_FAILED = "failed"


# -----------------------------------------------------------------------
# Executions
# -----------------------------------------------------------------------

class ExecutionStore:
    """Execution records with per-execution metadata and KV correlation."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, Dict[str, Any]] = {}
        # (key, value) -> execution id
        self._kv_index: Dict[tuple, str] = {}

    def create(self, node_id: str, input_data: Optional[Dict[str, Any]] = None) -> "Execution":
        execution_id = str(uuid.uuid4())
        record = {
            "id": execution_id,
            "node_id": node_id,
            "state": EXECUTION_STARTED,
            "input": input_data or {},
            "metadata": {},
            "kv": {},
            "outputs": [],
            "failure": None,
            "created_at": time.time(),
            "finished_at": None,
        }
        with self._lock:
            self._records[execution_id] = record
        return Execution(self, execution_id)

    def get(self, execution_id: str) -> Optional["Execution"]:
        with self._lock:
            if execution_id not in self._records:
                return None
        return Execution(self, execution_id)

    def snapshot(self, execution_id: str) -> Optional[Dict[str, Any]]:
        """Return a deep copy of the raw record (for inspection and tests)."""
        with self._lock:
            record = self._records.get(execution_id)
            return copy.deepcopy(record) if record else None

    def list_executions(self, node_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(r)
                for r in self._records.values()
                if node_id is None or r["node_id"] == node_id
            ]

    def find_by_kv(self, key: str, value: str) -> Optional["Execution"]:
        """Resolve a correlation value to the execution that recorded it."""
        if not value:
            return None
        with self._lock:
            execution_id = self._kv_index.get((key, value))
        if execution_id is None:
            return None
        return Execution(self, execution_id)

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._kv_index.clear()

    # -- Record access (used by Execution) --------------------------------

    def _read(self, execution_id: str, field_name: str) -> Any:
        with self._lock:
            return copy.deepcopy(self._records[execution_id][field_name])

    def _write(self, execution_id: str, **fields: Any) -> None:
        with self._lock:
            self._records[execution_id].update(copy.deepcopy(fields))

    def _set_kv(self, execution_id: str, key: str, value: str) -> None:
        with self._lock:
            self._records[execution_id]["kv"][key] = value
            self._kv_index[(key, value)] = execution_id

    def _append_output(self, execution_id: str, output: Dict[str, Any]) -> None:
        with self._lock:
            record = self._records[execution_id]
            record["outputs"].append(copy.deepcopy(output))
            record["state"] = EXECUTION_FINISHED
            record["finished_at"] = time.time()


class Execution:
    """Handle onto one execution record in an :class:`ExecutionStore`."""

    def __init__(self, store: ExecutionStore, execution_id: str) -> None:
        self._store = store
        self.id = execution_id

    @property
    def node_id(self) -> str:
        return self._store._read(self.id, "node_id")

    @property
    def state(self) -> str:
        return self._store._read(self.id, "state")

    @property
    def outputs(self) -> List[Dict[str, Any]]:
        return self._store._read(self.id, "outputs")

    @property
    def failure(self) -> Optional[Dict[str, Any]]:
        return self._store._read(self.id, "failure")

    def is_finished(self) -> bool:
        return self.state != EXECUTION_STARTED

    # -- Metadata -----------------------------------------------------------

    def get_metadata(self) -> Dict[str, Any]:
        return self._store._read(self.id, "metadata")

    def set_metadata(self, metadata: Dict[str, Any]) -> None:
        self._store._write(self.id, metadata=metadata)

    # -- Correlation --------------------------------------------------------

    def set_kv(self, key: str, value: str) -> None:
        self._store._set_kv(self.id, key, value)

    def get_kv(self, key: str) -> Optional[str]:
        return self._store._read(self.id, "kv").get(key)

    # -- Terminal transitions -------------------------------------------------

    def emit(self, channel: str, payload_type: str, payloads: List[Any]) -> None:
        """Write an output and finish the execution.

        No deduplication happens here; callers check :meth:`is_finished`
        before emitting.
        """
        self._store._append_output(self.id, {
            "channel": channel,
            "type": payload_type,
            "payloads": payloads,
            "timestamp": time.time(),
        })
        logger.info("Execution %s emitted on channel '%s'", self.id, channel)

    def fail(self, reason: str, message: str) -> None:
        self._store._write(
            self.id,
            state=EXECUTION_FAILED,
            failure={"reason": reason, "message": message},
            finished_at=time.time(),
        )
        logger.info("Execution %s failed (%s): %s", self.id, reason, message)


# -----------------------------------------------------------------------
# Scheduled action calls
# -----------------------------------------------------------------------

@dataclass
class ScheduledCall:
    execution_id: str
    name: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    due_at: float = 0.0


class ActionScheduler:
    """Deferred, at-least-once wake-ups ("run this action after D seconds")."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: List[ScheduledCall] = []

    def schedule(
        self,
        execution_id: str,
        name: str,
        parameters: Dict[str, Any],
        delay: float,
        now: Optional[float] = None,
    ) -> ScheduledCall:
        now = time.time() if now is None else now
        call = ScheduledCall(execution_id, name, dict(parameters), now + max(delay, 0.0))
        with self._lock:
            self._calls.append(call)
        logger.debug("Scheduled action '%s' for execution %s in %.1fs", name, execution_id, delay)
        return call

    def pop_due(self, now: Optional[float] = None) -> List[ScheduledCall]:
        """Remove and return every call whose due time has passed, oldest first."""
        now = time.time() if now is None else now
        with self._lock:
            due = [c for c in self._calls if c.due_at <= now]
            self._calls = [c for c in self._calls if c.due_at > now]
        return sorted(due, key=lambda c: c.due_at)

    def pending(self, execution_id: Optional[str] = None) -> List[ScheduledCall]:
        with self._lock:
            return [
                c for c in self._calls
                if execution_id is None or c.execution_id == execution_id
            ]

    def reset(self) -> None:
        with self._lock:
            self._calls.clear()


class ActionRequests:
    """An :class:`ActionScheduler` bound to one execution."""

    def __init__(self, scheduler: ActionScheduler, execution_id: str) -> None:
        self._scheduler = scheduler
        self._execution_id = execution_id

    def schedule_action_call(self, name: str, parameters: Dict[str, Any], delay: float) -> None:
        self._scheduler.schedule(self._execution_id, name, parameters, delay)


# -----------------------------------------------------------------------
# Trigger events
# -----------------------------------------------------------------------

class EventLog:
    """Events emitted by triggers, keyed by node."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: Dict[str, List[Dict[str, Any]]] = {}

    def emit(self, node_id: str, payload_type: str, data: Dict[str, Any]) -> None:
        event = {"type": payload_type, "data": copy.deepcopy(data), "timestamp": time.time()}
        with self._lock:
            self._events.setdefault(node_id, []).append(event)
        logger.info("Trigger %s emitted '%s'", node_id, payload_type)

    def events_for(self, node_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._events.get(node_id, []))

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


class NodeEvents:
    """An :class:`EventLog` bound to one trigger node."""

    def __init__(self, log: EventLog, node_id: str) -> None:
        self._log = log
        self._node_id = node_id

    def emit(self, payload_type: str, data: Dict[str, Any]) -> None:
        self._log.emit(self._node_id, payload_type, data)
