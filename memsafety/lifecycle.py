# memsafety/lifecycle.py
"""
Per-variable lifecycle state machine.

Every tracked variable moves through

    UNALLOCATED ──Allocate──▶ ALLOCATED ──Free──▶ FREED
                                  │
                                  └──Escape (return/store)──▶ ESCAPED

Operations are fed in discovery order.  Scope exits are interleaved by
offset (innermost first) so that an ALLOCATED handle still owned by a
closing scope can be marked as a leak candidate.  A fresh Allocate after
FREED or ESCAPED, or any re-binding of the name, starts a new instance;
the finished instance keeps its full history.

The machine only *marks* candidates; the detectors decide severity and
confidence from the marks and the scope tree.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from memsafety.catalog import EscapeVia, OpKind, Operation
from memsafety.scopes import Scope, ScopeTree

logger = logging.getLogger(__name__)


class LifecycleState(Enum):
    UNALLOCATED = "unallocated"
    ALLOCATED = "allocated"
    FREED = "freed"
    ESCAPED = "escaped"


class CandidateKind(Enum):
    LEAK = "leak"
    USE_AFTER_FREE = "use-after-free"
    DOUBLE_FREE = "double-free"
    OVERFLOW = "overflow"


@dataclass(frozen=True)
class Candidate:
    """
    A transition the machine flagged for the detectors.

    ``trigger`` is the operation that caused the mark (None for a scope
    exit).  ``origin`` is the earlier operation it relates to: the
    allocation for leaks and overflows, the free for use-after-free and
    double-free.
    """
    kind: CandidateKind
    variable: str
    offset: int
    line: int
    owner_scope_id: int
    trigger: Optional[Operation] = None
    origin: Optional[Operation] = None
    ambiguous: bool = False
    scope_closed: bool = True
    size: Optional[int] = None
    reason: str = ""


@dataclass(frozen=True)
class Transition:
    offset: int
    operation: Optional[Operation]
    state: LifecycleState
    candidate: Optional[Candidate] = None

    @property
    def is_scope_exit(self) -> bool:
        return self.operation is None


@dataclass(frozen=True)
class VariableLifecycle:
    """Ordered state history of one variable instance within its owning scope."""
    name: str
    scope_id: int
    history: Tuple[Transition, ...]
    shared: bool = False

    @property
    def final_state(self) -> LifecycleState:
        if not self.history:
            return LifecycleState.UNALLOCATED
        return self.history[-1].state

    @property
    def candidates(self) -> List[Candidate]:
        return [t.candidate for t in self.history if t.candidate is not None]


@dataclass(frozen=True)
class LifecycleTable:
    """All lifecycles of one buffer, in instance creation order."""
    lifecycles: Tuple[VariableLifecycle, ...] = ()

    def __iter__(self) -> Iterator[VariableLifecycle]:
        return iter(self.lifecycles)

    def __len__(self) -> int:
        return len(self.lifecycles)

    def candidates(self, *kinds: CandidateKind) -> List[Candidate]:
        found = []
        for lifecycle in self.lifecycles:
            for cand in lifecycle.candidates:
                if not kinds or cand.kind in kinds:
                    found.append(cand)
        return found

    def for_variable(self, name: str) -> List[VariableLifecycle]:
        return [lc for lc in self.lifecycles if lc.name == name]


# ---------------------------------------------------------------------------
# Machine
# ---------------------------------------------------------------------------

@dataclass
class _Instance:
    seq: int
    name: str
    owner: int
    state: LifecycleState = LifecycleState.UNALLOCATED
    history: List[Transition] = field(default_factory=list)
    shared: bool = False
    size: Optional[int] = None
    alloc_op: Optional[Operation] = None
    free_op: Optional[Operation] = None
    # Re-allocation after a free that happened only inside this
    # conditional scope; the other path still sees the freed block.
    realloc_scope: Optional[int] = None
    prior_free: Optional[Operation] = None
    ambiguity_reported: bool = False

    def freeze(self) -> VariableLifecycle:
        return VariableLifecycle(
            name=self.name,
            scope_id=self.owner,
            history=tuple(self.history),
            shared=self.shared,
        )


class LifecycleMachine:
    """
    Replays operations against the scope tree and produces a
    :class:`LifecycleTable`.  One machine per analysis; not reusable.
    """

    def __init__(self, tree: ScopeTree) -> None:
        self.tree = tree
        self._live: Dict[str, List[_Instance]] = {}
        self._done: List[_Instance] = []
        self._closed: Set[int] = set()
        self._seq = 0

    def run(self, operations: Sequence[Operation]) -> LifecycleTable:
        exits = [s for s in self.tree.exits() if s.end_offset is not None]
        unclosed = [s for s in self.tree.exits() if s.end_offset is None]
        pending = 0

        for op in operations:
            while pending < len(exits) and exits[pending].end_offset <= op.offset:
                self._exit(exits[pending])
                pending += 1
            self._step(op)

        for scope in exits[pending:]:
            self._exit(scope)
        for scope in reversed(unclosed):
            self._exit(scope)
        self._exit(self.tree.root)

        # anything left is owned by a scope that never appeared in the tree
        for instances in self._live.values():
            self._done.extend(instances)
        self._live.clear()

        ordered = sorted(self._done, key=lambda inst: inst.seq)
        table = LifecycleTable(tuple(inst.freeze() for inst in ordered))
        logger.debug(
            "Lifecycle: %d operations, %d instances, %d candidates",
            len(operations), len(table), len(table.candidates()),
        )
        return table

    # ── instance bookkeeping ─────────────────────────────────────────

    def _new(self, name: str, owner: int) -> _Instance:
        inst = _Instance(seq=self._seq, name=name, owner=owner)
        self._seq += 1
        self._live.setdefault(name, []).append(inst)
        return inst

    def _retire(self, inst: _Instance) -> None:
        live = self._live.get(inst.name, [])
        if inst in live:
            live.remove(inst)
        self._done.append(inst)

    def _lookup(self, op: Operation) -> Optional[_Instance]:
        for inst in reversed(self._live.get(op.target, [])):
            if self.tree.is_within(op.scope_id, inst.owner):
                return inst
        return None

    def _default_owner(self, scope_id: int) -> int:
        func = self.tree.enclosing_function(scope_id)
        return func.id if func is not None else self.tree.root.id

    def _record(
        self,
        inst: _Instance,
        op: Optional[Operation],
        offset: int,
        candidate: Optional[Candidate] = None,
    ) -> None:
        inst.history.append(Transition(offset, op, inst.state, candidate))

    def _candidate(
        self,
        kind: CandidateKind,
        inst: _Instance,
        op: Optional[Operation],
        origin: Optional[Operation],
        **extra,
    ) -> Candidate:
        where = op if op is not None else origin
        return Candidate(
            kind=kind,
            variable=inst.name,
            offset=where.offset if where is not None else 0,
            line=where.line if where is not None else 0,
            owner_scope_id=inst.owner,
            trigger=op,
            origin=origin,
            size=inst.size,
            **extra,
        )

    def _leak(self, inst: _Instance, op: Optional[Operation], reason: str,
              scope_closed: bool = True) -> Optional[Candidate]:
        if inst.shared or inst.alloc_op is None:
            return None
        # leaks are reported at the allocation site
        return Candidate(
            kind=CandidateKind.LEAK,
            variable=inst.name,
            offset=inst.alloc_op.offset,
            line=inst.alloc_op.line,
            owner_scope_id=inst.owner,
            trigger=op,
            origin=inst.alloc_op,
            scope_closed=scope_closed,
            size=inst.size,
            reason=reason,
        )

    def _conditional_scope(self, scope_id: int, owner: int) -> Optional[int]:
        for scope in self.tree.chain(scope_id):
            if scope.id == owner:
                return None
            if scope.kind.is_conditional:
                return scope.id
        return None

    # ── scope exit ───────────────────────────────────────────────────

    def _exit(self, scope: Scope) -> None:
        self._closed.add(scope.id)
        closed = scope.end_offset is not None
        offset = scope.end_offset if closed else (self.tree.root.end_offset or 0)
        for instances in list(self._live.values()):
            for inst in [i for i in instances if i.owner == scope.id]:
                cand = None
                if inst.state is LifecycleState.ALLOCATED:
                    what = scope.name or scope.kind.value
                    cand = self._leak(
                        inst, None,
                        reason=f"end of {what} scope" if closed
                        else f"{what} scope that is never closed",
                        scope_closed=closed,
                    )
                self._record(inst, None, offset, cand)
                self._retire(inst)

    # ── operations ───────────────────────────────────────────────────

    def _step(self, op: Operation) -> None:
        inst = self._lookup(op)

        if op.declares and op.kind in (OpKind.ALLOCATE, OpKind.REASSIGN):
            if inst is not None and inst.owner == op.scope_id:
                self._rebind(inst, op)
            inst = self._new(op.target, op.scope_id)

        handler = {
            OpKind.ALLOCATE: self._allocate,
            OpKind.FREE: self._free,
            OpKind.ACCESS: self._access,
            OpKind.ESCAPE: self._escape,
            OpKind.REASSIGN: self._reassign,
        }[op.kind]
        handler(inst, op)

    def _rebind(self, inst: _Instance, op: Operation) -> None:
        """Close *inst* because its name is bound to something new."""
        cand = None
        if inst.state is LifecycleState.ALLOCATED and not op.self_referential:
            cand = self._leak(inst, op, reason=f"overwritten at line {op.line}")
        self._record(inst, op, op.offset, cand)
        self._retire(inst)

    def _allocate(self, inst: Optional[_Instance], op: Operation) -> None:
        if inst is None:
            inst = self._new(op.target, self._default_owner(op.scope_id))
        elif inst.state is LifecycleState.ALLOCATED and op.self_referential:
            inst.size = op.size
            inst.alloc_op = op
            self._record(inst, op, op.offset)
            return
        elif inst.state is not LifecycleState.UNALLOCATED:
            previous = inst
            self._rebind(previous, op)
            inst = self._new(op.target, previous.owner)
            if previous.state is LifecycleState.FREED:
                inst.realloc_scope = self._conditional_scope(op.scope_id, inst.owner)
                inst.prior_free = previous.free_op

        inst.state = LifecycleState.ALLOCATED
        inst.size = op.size
        inst.alloc_op = op
        self._record(inst, op, op.offset)

    def _free(self, inst: Optional[_Instance], op: Operation) -> None:
        if inst is None:
            # freeing a handle of unknown origin (parameter, global)
            inst = self._new(op.target, self._default_owner(op.scope_id))
            inst.state = LifecycleState.FREED
            inst.free_op = op
            self._record(inst, op, op.offset)
            return

        cand = None
        if inst.state is LifecycleState.ALLOCATED:
            inst.state = LifecycleState.FREED
            inst.free_op = op
        elif inst.state is LifecycleState.FREED:
            cand = self._candidate(CandidateKind.DOUBLE_FREE, inst, op, inst.free_op)
        self._record(inst, op, op.offset, cand)

    def _access(self, inst: Optional[_Instance], op: Operation) -> None:
        if inst is None:
            return
        cand = None
        if inst.state is LifecycleState.FREED:
            cand = self._candidate(CandidateKind.USE_AFTER_FREE, inst, op, inst.free_op)
        elif inst.state is LifecycleState.ALLOCATED:
            cand = self._ambiguous_use(inst, op) or self._overflow(inst, op)
        self._record(inst, op, op.offset, cand)

    def _escape(self, inst: Optional[_Instance], op: Operation) -> None:
        if inst is None:
            return
        cand = None
        if inst.state is LifecycleState.FREED:
            cand = self._candidate(
                CandidateKind.USE_AFTER_FREE, inst, op, inst.free_op,
                reason=f"dangling pointer escapes via {op.escape_via.value}"
                if op.escape_via else "",
            )
        elif inst.state is LifecycleState.ALLOCATED:
            if op.escape_via is EscapeVia.CALL:
                inst.shared = True
            else:
                inst.state = LifecycleState.ESCAPED
        self._record(inst, op, op.offset, cand)

    def _reassign(self, inst: Optional[_Instance], op: Operation) -> None:
        if inst is None:
            return
        if op.declares or inst.state is LifecycleState.UNALLOCATED:
            self._record(inst, op, op.offset)
            return
        if inst.state is LifecycleState.ESCAPED:
            self._record(inst, op, op.offset)
            return
        if inst.state is LifecycleState.ALLOCATED and op.self_referential:
            self._record(inst, op, op.offset)
            return
        previous = inst
        self._rebind(previous, op)
        inst = self._new(op.target, previous.owner)
        self._record(inst, op, op.offset)

    # ── candidate checks ─────────────────────────────────────────────

    def _ambiguous_use(self, inst: _Instance, op: Operation) -> Optional[Candidate]:
        if (inst.realloc_scope is None or inst.ambiguity_reported
                or inst.realloc_scope not in self._closed):
            return None
        inst.ambiguity_reported = True
        return self._candidate(
            CandidateKind.USE_AFTER_FREE, inst, op, inst.prior_free,
            ambiguous=True,
            reason="re-allocated only on one path after being freed",
        )

    def _overflow(self, inst: _Instance, op: Operation) -> Optional[Candidate]:
        if inst.size is None:
            return None
        if op.write_length is not None and op.write_length > inst.size:
            return self._candidate(
                CandidateKind.OVERFLOW, inst, op, inst.alloc_op,
                reason=f"{op.callee or 'write'} of {op.write_length} bytes",
            )
        if op.index is not None and op.index >= inst.size:
            return self._candidate(
                CandidateKind.OVERFLOW, inst, op, inst.alloc_op,
                reason=f"write to index {op.index}",
            )
        return None


def track_lifecycles(tree: ScopeTree, operations: Iterable[Operation]) -> LifecycleTable:
    return LifecycleMachine(tree).run(list(operations))


__all__ = [
    "LifecycleState",
    "CandidateKind",
    "Candidate",
    "Transition",
    "VariableLifecycle",
    "LifecycleTable",
    "LifecycleMachine",
    "track_lifecycles",
]
