"""
Undo log for in-place bookkeeping changes.

Owners route every mutation of their containers and records through the
log. While a checkpoint is open each change records how to revert itself,
so rolling back costs time proportional to the changes made since the
checkpoint, not to the size of the state.
"""

from dataclasses import dataclass
from typing import Any, Callable, List, MutableMapping, MutableSequence, MutableSet

_MISSING = object()


@dataclass(frozen=True)
class Checkpoint:
    """Token returned by ``UndoLog.checkpoint``."""
    epoch: int


def _put_back(mapping: MutableMapping, key: Any, old: Any) -> None:
    if old is _MISSING:
        del mapping[key]
    else:
        mapping[key] = old


class UndoLog:
    """
    Records reversible changes since the latest checkpoint.

    Only the latest checkpoint can be rolled back to. Rolling back keeps the
    checkpoint open, so the same token may be used again.
    """

    def __init__(self):
        self._entries: List[Callable[[], None]] = []
        self._epoch = 0
        self._recording = False

    def checkpoint(self) -> Checkpoint:
        """Start recording from the current state. Older checkpoints expire."""
        self._epoch += 1
        self._entries = []
        self._recording = True
        return Checkpoint(self._epoch)

    def rollback(self, checkpoint: Checkpoint) -> None:
        """
        Revert every change made since ``checkpoint``.

        Raises:
            ValueError: A newer checkpoint was taken since.
        """
        if not self._recording or checkpoint.epoch != self._epoch:
            raise ValueError(f"Checkpoint {checkpoint.epoch} has expired (current {self._epoch})")
        while self._entries:
            self._entries.pop()()

    def __len__(self) -> int:
        return len(self._entries)

    def _record(self, undo: Callable[[], None]) -> None:
        if self._recording:
            self._entries.append(undo)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def setattr(self, obj: Any, name: str, value: Any) -> None:
        old = getattr(obj, name)
        setattr(obj, name, value)
        self._record(lambda: setattr(obj, name, old))

    def setitem(self, mapping: MutableMapping, key: Any, value: Any) -> None:
        old = mapping.get(key, _MISSING)
        mapping[key] = value
        self._record(lambda: _put_back(mapping, key, old))

    def pop(self, mapping: MutableMapping, key: Any, default: Any = _MISSING) -> Any:
        if key not in mapping:
            if default is _MISSING:
                raise KeyError(key)
            return default
        old = mapping.pop(key)
        self._record(lambda: mapping.__setitem__(key, old))
        return old

    def append(self, sequence: MutableSequence, item: Any) -> None:
        sequence.append(item)
        self._record(sequence.pop)

    def remove(self, sequence: MutableSequence, item: Any) -> None:
        index = sequence.index(item)
        del sequence[index]
        self._record(lambda: sequence.insert(index, item))

    def add(self, members: MutableSet, item: Any) -> None:
        if item not in members:
            members.add(item)
            self._record(lambda: members.discard(item))

    def discard(self, members: MutableSet, item: Any) -> None:
        if item in members:
            members.discard(item)
            self._record(lambda: members.add(item))
