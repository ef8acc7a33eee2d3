"""Scripted remote operations for demos and tests.

Payload keys:
    polls          Polls before the operation reports done (default 1, 0 = done at submit)
    fail           "submit" or "poll" to raise from that call
    error          Message used when failing
    error_message  Remote-side error reported with the final done status
Non-mapping payloads use the defaults.
"""

import threading
from typing import Any, Dict, List, Tuple

from ..driver.backends import RemoteOperations
from ..driver.errors import PollError, SubmitError
from ..driver.models import OperationStatus


class SimulatedOperations(RemoteOperations):
    """In-memory remote side whose behaviour is scripted by each payload.

    Operation state lives in this object, so handles only resolve within
    the process that created them.
    """

    def __init__(self):
        self.operations: Dict[str, Dict[str, Any]] = {}
        self.submit_calls: List[Any] = []
        self.poll_calls: List[Any] = []
        self._lock = threading.Lock()

    def submit(self, payload: Any) -> Tuple[Dict[str, str], OperationStatus]:
        script = payload if isinstance(payload, dict) else {}

        with self._lock:
            self.submit_calls.append(payload)
            if script.get("fail") == "submit":
                raise SubmitError(script.get("error", "simulated submit failure"))

            operation_id = f"sim-{len(self.operations) + 1}"
            polls_required = int(script.get("polls", 1))
            self.operations[operation_id] = {
                "polls_required": polls_required,
                "polls_seen": 0,
                "script": script,
            }

        handle = {"operation_id": operation_id}
        if polls_required <= 0:
            return handle, self._done_status(script)
        return handle, OperationStatus(done=False, message="queued")

    def poll(self, handle: Any) -> OperationStatus:
        with self._lock:
            self.poll_calls.append(handle)

            try:
                operation = self.operations[handle["operation_id"]]
            except (TypeError, KeyError) as e:
                raise PollError(f"Unknown handle: {handle!r}") from e

            script = operation["script"]
            if script.get("fail") == "poll":
                raise PollError(script.get("error", "simulated poll failure"))

            operation["polls_seen"] += 1
            polls_seen = operation["polls_seen"]

        if polls_seen >= operation["polls_required"]:
            return self._done_status(script)

        return OperationStatus(
            done=False,
            message=f"{polls_seen}/{operation['polls_required']} polls",
        )

    def submit_count(self, payload: Any) -> int:
        """How many times payload was submitted."""
        return sum(1 for submitted in self.submit_calls if submitted == payload)

    def _done_status(self, script: Dict[str, Any]) -> OperationStatus:
        error_message = script.get("error_message")
        if error_message:
            return OperationStatus(done=True, error_message=error_message)
        return OperationStatus(done=True, message="finished")
