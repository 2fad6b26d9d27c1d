"""Ledger of optimistic mutations that have not settled yet."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from .models import MutationKind, PendingAction, QueryRecord

BATCH_SCOPE = "batch"


class PendingActionLedger:
    """In-flight mutations in submission order, owned by the sync engine.

    Besides open actions it keeps a settle sequence: every confirmed action
    bumps a counter and remembers which record it touched, so a merge can
    tell whether a record settled after its remote read started.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self._actions: dict[str, PendingAction] = {}
        self._sequence = 0
        self._settled: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._actions)

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._actions

    def register(
        self,
        kind: MutationKind,
        query_id: str,
        *,
        previous: QueryRecord | None = None,
        changes: dict[str, Any] | None = None,
    ) -> PendingAction:
        action = PendingAction(
            action_id=f"{kind}_{query_id}_{uuid4().hex[:8]}",
            query_id=query_id,
            kind=kind,
            created_at=self._clock(),
            previous=previous,
            changes=dict(changes or {}),
        )
        self._actions[action.action_id] = action
        return action

    def get(self, action_id: str) -> PendingAction | None:
        return self._actions.get(action_id)

    def replace(self, action: PendingAction) -> None:
        if action.action_id in self._actions:
            self._actions[action.action_id] = action

    def confirm(self, action_id: str, *, query_ids: list[str] | None = None) -> PendingAction | None:
        """Drop a confirmed action and record the settle for the merge guard."""
        action = self._actions.pop(action_id, None)
        if action is None:
            return None
        self._sequence += 1
        for query_id in query_ids or [action.query_id]:
            self._settled[query_id] = self._sequence
        return action

    def discard(self, action_id: str) -> PendingAction | None:
        """Drop a rolled-back action; nothing settled remotely."""
        return self._actions.pop(action_id, None)

    def actions(self) -> tuple[PendingAction, ...]:
        return tuple(self._actions.values())

    def actions_for(self, query_id: str) -> list[PendingAction]:
        return [action for action in self._actions.values() if action.query_id == query_id]

    def actions_after(self, action_id: str, query_id: str) -> list[PendingAction]:
        """Open actions on ``query_id`` submitted after ``action_id``."""
        later: list[PendingAction] = []
        seen = False
        for action in self._actions.values():
            if action.action_id == action_id:
                seen = True
                continue
            if seen and action.query_id == query_id:
                later.append(action)
        return later

    def pending_query_ids(self) -> set[str]:
        return {action.query_id for action in self._actions.values()}

    def mark(self) -> int:
        """Current settle sequence; pass it back to ``settled_since``."""
        return self._sequence

    def settled_since(self, mark: int) -> set[str]:
        return {query_id for query_id, seq in self._settled.items() if seq > mark}

    def forget_settled(self, up_to: int) -> None:
        self._settled = {query_id: seq for query_id, seq in self._settled.items() if seq > up_to}

    def clear(self) -> None:
        self._actions.clear()
        self._settled.clear()
