"""Escrow mirror state machine.

The mirror may only move along these edges. When a chain read shows the
escrow further along than the mirror, :func:`path_between` supplies the
intermediate states so the timeline never skips one.
"""

from __future__ import annotations

from collections import deque

from escrow_guard.storage.models import MirrorStatus

VALID_TRANSITIONS: dict[MirrorStatus, frozenset[MirrorStatus]] = {
    MirrorStatus.PENDING: frozenset({MirrorStatus.FUNDED, MirrorStatus.CANCELLED}),
    MirrorStatus.FUNDED: frozenset(
        {
            MirrorStatus.COMPLETED,
            MirrorStatus.DISPUTED,
            MirrorStatus.CANCELLED,
            MirrorStatus.EXPIRED,
        }
    ),
    MirrorStatus.DISPUTED: frozenset({MirrorStatus.RESOLVED}),
    # Resolution settles to the winner's side: seller -> completed, buyer -> cancelled.
    MirrorStatus.RESOLVED: frozenset({MirrorStatus.COMPLETED, MirrorStatus.CANCELLED}),
    MirrorStatus.COMPLETED: frozenset(),
    MirrorStatus.CANCELLED: frozenset(),
    MirrorStatus.EXPIRED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, nxt in VALID_TRANSITIONS.items() if not nxt)


def is_valid_transition(current: MirrorStatus, target: MirrorStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def is_terminal(status: MirrorStatus) -> bool:
    return status in TERMINAL_STATES


def path_between(current: MirrorStatus, target: MirrorStatus) -> list[MirrorStatus] | None:
    """Shortest sequence of states leading from *current* to *target*.

    The result excludes *current* and ends with *target*; it is empty when
    both are equal and ``None`` when *target* is unreachable.
    """
    if current == target:
        return []
    previous: dict[MirrorStatus, MirrorStatus] = {}
    queue = deque([current])
    while queue:
        state = queue.popleft()
        # Sorted for a deterministic path when several exist.
        for nxt in sorted(VALID_TRANSITIONS[state], key=lambda s: s.value):
            if nxt in previous or nxt == current:
                continue
            previous[nxt] = state
            if nxt == target:
                path = [nxt]
                while path[-1] != current and previous[path[-1]] != current:
                    path.append(previous[path[-1]])
                return list(reversed(path))
            queue.append(nxt)
    return None
