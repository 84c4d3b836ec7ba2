"""Fan-out/fan-in work functions that track one child task per sub-unit."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from task_relay.tasks.checkpoints import Checkpoint
from task_relay.tasks.definitions import RunParams
from task_relay.tasks.models import TaskStatus, TaskUpdate, TaskView
from task_relay.tasks.response import ErrorPayload, TaskResult

C = TypeVar("C", bound=Checkpoint)


class SubUnitState(str, Enum):
    """Per-sub-unit lifecycle; terminal states mirror the child's status."""

    PENDING = "pending"
    INVALID = "invalid"
    TRIGGERED = "triggered"
    SUCCESS = "success"
    FAILURE = "failure"
    ABORTED = "aborted"


_CHILD_STATE = {
    TaskStatus.PENDING: SubUnitState.TRIGGERED,
    TaskStatus.RUNNING: SubUnitState.TRIGGERED,
    TaskStatus.SUCCESS: SubUnitState.SUCCESS,
    TaskStatus.FAILURE: SubUnitState.FAILURE,
    TaskStatus.ABORTED: SubUnitState.ABORTED,
}


@dataclass(frozen=True, slots=True)
class SubUnit:
    """One partition of the coordinator input."""

    key: str
    kind: str
    dispatchable: bool


@dataclass(slots=True)
class ReconcileReport:
    """Buckets of one reconciliation pass over all sub-units."""

    done: list[str]
    failed: list[str]
    aborted: list[str]
    invalid: list[str]
    files: list[dict[str, Any]]
    pending: list[SubUnit]

    @property
    def settled(self) -> int:
        return len(self.done) + len(self.failed) + len(self.aborted) + len(self.invalid)

    def to_output(self) -> dict[str, Any]:
        return {
            "done": self.done,
            "failed": self.failed,
            "aborted": self.aborted,
            "invalid": self.invalid,
            "files": self.files,
        }


class ChildTaskCoordinator(Generic[C]):
    """Work function that dispatches one child per sub-unit and reconciles them.

    An invocation is in one of two phases, decided by the checkpoint:

    - dispatch: validate the input (fatal, first invocation only), create a
      child for every dispatchable sub-unit that has none yet, mark the
      checkpoint as dispatched and continue;
    - reconcile: list children by parent id, classify them by terminal
      status and finish once every sub-unit is accounted for.

    Children are matched to sub-units by key, so re-running either phase
    with the same checkpoint never creates a second child for a sub-unit.
    Subclasses implement the hooks below.
    """

    child_definition_id: str

    def sub_units(self, checkpoint: C) -> Sequence[SubUnit]:
        raise NotImplementedError

    def validate(self, params: RunParams[C]) -> ErrorPayload | None:
        raise NotImplementedError

    def is_dispatched(self, checkpoint: C) -> bool:
        raise NotImplementedError

    def mark_dispatched(self, checkpoint: C) -> C:
        raise NotImplementedError

    def child_input(self, checkpoint: C, unit: SubUnit) -> dict[str, Any]:
        raise NotImplementedError

    def child_key(self, child: TaskView) -> str | None:
        raise NotImplementedError

    def child_name(self, params: RunParams[C], unit: SubUnit) -> str:
        return f"{params.task.name} - {unit.key}"

    def __call__(self, params: RunParams[C]) -> TaskResult:
        if params.is_aborted():
            return self._abort_children(params)
        if not self.is_dispatched(params.input):
            error = self.validate(params)
            if error is not None:
                params.logger.warning("Input rejected with %s: %s", error.code, error.message)
                return params.response.error(error)
            return self._dispatch(params)
        return self._reconcile(params)

    def _dispatch(self, params: RunParams[C]) -> TaskResult:
        children = self._children_by_key(params)
        created = 0
        for unit in self.sub_units(params.input):
            if not unit.dispatchable or unit.key in children:
                continue
            if params.is_aborted():
                return self._abort_children(params)
            if params.is_close_to_timeout():
                params.logger.info("Close to timeout after dispatching %d children", created)
                return params.response.continue_(params.input)
            child = params.store.create_task(
                definition_id=self.child_definition_id,
                input=self.child_input(params.input, unit),
                name=self.child_name(params, unit),
                parent_id=params.task.task_id,
            )
            children[unit.key] = child
            created += 1
            params.logger.info("Dispatched child %s for %s (%s)", child.task_id, unit.key, unit.kind)

        params.logger.info("Dispatch complete: %d new, %d total children", created, len(children))
        return params.response.continue_(self.mark_dispatched(params.input))

    def _reconcile(self, params: RunParams[C]) -> TaskResult:
        units = self.sub_units(params.input)
        report = self.classify(units, self._children_by_key(params))
        if report.pending:
            # A dispatched checkpoint whose child went missing: dispatch again.
            params.logger.warning(
                "%d sub-units have no child task; dispatching again",
                len(report.pending),
            )
            return self._dispatch(params)
        if report.settled < len(units):
            params.logger.info("Waiting for children: %d/%d settled", report.settled, len(units))
            return params.response.continue_(params.input)
        return params.response.done(output=report.to_output())

    def classify(
        self,
        units: Sequence[SubUnit],
        children: dict[str, TaskView],
    ) -> ReconcileReport:
        report = ReconcileReport(done=[], failed=[], aborted=[], invalid=[], files=[], pending=[])
        buckets = {
            SubUnitState.SUCCESS: report.done,
            SubUnitState.FAILURE: report.failed,
            SubUnitState.ABORTED: report.aborted,
        }
        for unit in units:
            child = children.get(unit.key)
            if not unit.dispatchable:
                state = SubUnitState.INVALID
                report.invalid.append(unit.key)
            elif child is None:
                state = SubUnitState.PENDING
                report.pending.append(unit)
            else:
                state = _CHILD_STATE[child.status]
                bucket = buckets.get(state)
                if bucket is not None:
                    bucket.append(child.task_id)
            report.files.append(
                {
                    "key": unit.key,
                    "type": unit.kind,
                    "state": state.value,
                    "taskId": child.task_id if child is not None else None,
                },
            )
        return report

    def _abort_children(self, params: RunParams[C]) -> TaskResult:
        for child in params.store.list_tasks(parent_id=params.task.task_id).items:
            if child.status.is_terminal or child.abort_requested:
                continue
            params.store.update_task(child.task_id, TaskUpdate(abort_requested=True))
            params.logger.info("Requested abort of child %s", child.task_id)
        return params.response.aborted()

    def _children_by_key(self, params: RunParams[C]) -> dict[str, TaskView]:
        children: dict[str, TaskView] = {}
        for child in params.store.list_tasks(parent_id=params.task.task_id).items:
            key = self.child_key(child)
            if key is not None and child.definition_id == self.child_definition_id:
                children.setdefault(key, child)
        return children
