"""
Abstract interface of the incremental optimization engine.

Engines place each factor at some internal location (for iSAM2, an index in
the nonlinear factor graph). Callers never see locations: they hold opaque
FactorSlot handles that the engine's SlotRegistry maps to the current
location and invalidates once the factor is deleted.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, List, Optional

import numpy as np

from vio_backend.common.data_structures import BiasEstimate, Pose
from vio_backend.common.errors import OptimizationFailed, StaleSlotHandle
from vio_backend.estimation.factors import Factor, Key, OrientedPlane

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FactorSlot:
    """Generation-checked handle to a factor inside an engine."""
    handle: int
    generation: int


class SlotRegistry:
    """
    Issues FactorSlot handles and maps them to engine locations.

    A released handle number may be reissued, but always with a new
    generation, so the old FactorSlot stays stale.
    """

    def __init__(self):
        self._locations: Dict[int, Hashable] = {}
        self._generations: Dict[int, int] = {}
        self._free_handles: List[int] = []
        self._next_handle = 0

    def issue(self, location: Hashable) -> FactorSlot:
        if self._free_handles:
            handle = self._free_handles.pop()
        else:
            handle = self._next_handle
            self._next_handle += 1
        generation = self._generations.get(handle, -1) + 1
        self._generations[handle] = generation
        self._locations[handle] = location
        return FactorSlot(handle, generation)

    def resolve(self, slot: FactorSlot) -> Hashable:
        """
        Raises:
            StaleSlotHandle: The slot was released or never issued.
        """
        if (slot.handle not in self._locations
                or self._generations.get(slot.handle) != slot.generation):
            raise StaleSlotHandle(f"Slot {slot} does not name a live factor")
        return self._locations[slot.handle]

    def release(self, slot: FactorSlot) -> Hashable:
        location = self.resolve(slot)
        del self._locations[slot.handle]
        self._free_handles.append(slot.handle)
        return location

    def relocate(self, slot: FactorSlot, location: Hashable) -> None:
        """Move a live factor without invalidating its handle."""
        self.resolve(slot)
        self._locations[slot.handle] = location

    def remap(self, mapping: Dict[Hashable, Hashable]) -> None:
        """Move live factors whose location is a key of ``mapping``."""
        for handle, location in self._locations.items():
            if location in mapping:
                self._locations[handle] = mapping[location]

    def is_live(self, slot: FactorSlot) -> bool:
        try:
            self.resolve(slot)
        except StaleSlotHandle:
            return False
        return True

    def live_count(self) -> int:
        return len(self._locations)


@dataclass
class OptimizationBatch:
    """
    One incremental update.

    Attributes:
        new_values: Initial values of variables entering the problem
        new_factors: Factors to add, in order
        delete_slots: Factors to remove
        modified_slots: Live factors whose content changed, with the new content
    """
    new_values: Dict[Key, Any] = field(default_factory=dict)
    new_factors: List[Factor] = field(default_factory=list)
    delete_slots: List[FactorSlot] = field(default_factory=list)
    modified_slots: Dict[FactorSlot, Factor] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.new_values or self.new_factors or self.delete_slots or self.modified_slots)


@dataclass
class EngineResult:
    """
    Outcome of an update.

    Attributes:
        values: Full current estimate
        new_slots: One slot per new factor, in submission order
        iterations: Solver iterations performed
        error: Final cost, when the engine reports it
    """
    values: Dict[Key, Any]
    new_slots: List[FactorSlot]
    iterations: int = 1
    error: Optional[float] = None


@dataclass
class SolveOutcome:
    """What an engine implementation reports back from ``_solve``."""
    values: Dict[Key, Any]
    new_locations: List[Hashable]
    relocations: Dict[FactorSlot, Hashable] = field(default_factory=dict)
    iterations: int = 1
    error: Optional[float] = None


def is_finite_value(value: Any) -> bool:
    """Whether an estimated value contains only finite numbers."""
    if isinstance(value, Pose):
        return bool(np.all(np.isfinite(value.rotation)) and np.all(np.isfinite(value.position)))
    if isinstance(value, BiasEstimate):
        return bool(np.all(np.isfinite(value.as_vector())))
    if isinstance(value, OrientedPlane):
        return bool(np.all(np.isfinite(value.normal)) and np.isfinite(value.distance))
    return bool(np.all(np.isfinite(np.asarray(value, dtype=float))))


class OptimizationEngine(ABC):
    """
    Base class for incremental optimization engines.

    ``update`` validates every slot before the engine is touched and only
    changes the slot registry after a successful solve. An update that
    fails after ``_solve`` ran is handed to ``_discard`` so the engine can
    return to its last committed problem.
    """

    def __init__(self):
        self.registry = SlotRegistry()

    def update(self, batch: OptimizationBatch) -> EngineResult:
        """
        Apply one incremental update.

        Raises:
            StaleSlotHandle: A deleted or modified slot is not live.
            OptimizationFailed: The engine failed or produced a non-finite
                estimate.
        """
        delete_locations = [self.registry.resolve(slot) for slot in batch.delete_slots]
        modified_locations = {
            slot: self.registry.resolve(slot) for slot in batch.modified_slots
        }
        overlap = set(batch.delete_slots) & set(batch.modified_slots)
        if overlap:
            raise ValueError(f"Slots both deleted and modified: {sorted(overlap, key=lambda s: s.handle)}")

        try:
            outcome = self._solve(batch, delete_locations, modified_locations)
            self._check(batch, outcome)
        except Exception as exc:
            self._discard()
            if isinstance(exc, OptimizationFailed):
                raise
            raise OptimizationFailed(f"{type(self).__name__} update failed: {exc}") from exc
        self._commit()

        for slot in batch.delete_slots:
            self.registry.release(slot)
        for slot, location in outcome.relocations.items():
            self.registry.relocate(slot, location)
        new_slots = [self.registry.issue(location) for location in outcome.new_locations]

        logger.debug(
            f"Engine update: +{len(batch.new_factors)} factors, "
            f"-{len(batch.delete_slots)} factors, ~{len(batch.modified_slots)} modified, "
            f"{self.registry.live_count()} live"
        )
        return EngineResult(
            values=outcome.values,
            new_slots=new_slots,
            iterations=outcome.iterations,
            error=outcome.error
        )

    @staticmethod
    def _check(batch: OptimizationBatch, outcome: SolveOutcome) -> None:
        for key, value in outcome.values.items():
            if not is_finite_value(value):
                raise OptimizationFailed(f"Non-finite estimate for {key}")

        if len(outcome.new_locations) != len(batch.new_factors):
            raise OptimizationFailed(
                f"Engine placed {len(outcome.new_locations)} of {len(batch.new_factors)} factors"
            )

    def _commit(self) -> None:
        """Accept the problem left by the last ``_solve``."""
        pass

    def _discard(self) -> None:
        """
        Return to the problem as it was before the last ``_solve``.

        Called whenever ``_solve`` raised or its outcome was rejected.
        Engines may move live factors and must report that through
        ``registry.remap``.
        """
        pass

    @abstractmethod
    def _solve(
        self,
        batch: OptimizationBatch,
        delete_locations: List[Hashable],
        modified_locations: Dict[FactorSlot, Hashable]
    ) -> SolveOutcome:
        """Engine-specific update with already resolved locations."""
        pass

    @abstractmethod
    def estimate(self) -> Dict[Key, Any]:
        """Current estimate of all variables."""
        pass
