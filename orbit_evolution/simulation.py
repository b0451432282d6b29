"""
orbit_evolution/simulation.py - Deterministic simulation oracle and its observable output
"""
import logging
from collections.abc import Sequence
from typing import Iterable, NamedTuple, Optional, Tuple

import numpy as np

from .config import SimulationParameters
from .genome import OrbitalGenome
from .physics import (
    DEFAULT_GRAVITATIONAL_CONSTANT, BodyState, advance, resolve_overlaps,
)

logger = logging.getLogger(__name__)


class Snapshot(NamedTuple):
    """Observable summary of one simulation tick"""
    elapsed: float
    total_mass: float
    mass_count: int


class Trajectory(Sequence):
    """Read-only, ordered sequence of snapshots stored column-wise.

    Indexing yields Snapshot tuples; the column properties expose the same data
    as read-only arrays so expressions can be evaluated over every tick at once.
    """

    def __init__(self, elapsed, total_mass, mass_count):
        self._elapsed = self._frozen(elapsed, np.float64)
        self._total_mass = self._frozen(total_mass, np.float64)
        self._mass_count = self._frozen(mass_count, np.int64)
        if not len(self._elapsed) == len(self._total_mass) == len(self._mass_count):
            raise ValueError("Trajectory columns must have equal length")

    @staticmethod
    def _frozen(values, dtype) -> np.ndarray:
        array = np.array(values, dtype=dtype).reshape(-1)
        array.flags.writeable = False
        return array

    @classmethod
    def from_snapshots(cls, snapshots: Iterable[Snapshot]) -> 'Trajectory':
        rows = list(snapshots)
        return cls(
            elapsed=[s.elapsed for s in rows],
            total_mass=[s.total_mass for s in rows],
            mass_count=[s.mass_count for s in rows],
        )

    @property
    def elapsed(self) -> np.ndarray:
        return self._elapsed

    @property
    def total_mass(self) -> np.ndarray:
        return self._total_mass

    @property
    def mass_count(self) -> np.ndarray:
        return self._mass_count

    def __len__(self) -> int:
        return len(self._elapsed)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return Trajectory(self._elapsed[index], self._total_mass[index],
                              self._mass_count[index])
        return Snapshot(float(self._elapsed[index]), float(self._total_mass[index]),
                        int(self._mass_count[index]))

    def __repr__(self) -> str:
        return f"Trajectory(ticks={len(self)})"


def observe(state: BodyState, elapsed: float,
            scored_area: Optional[Tuple[float, float]] = None) -> Snapshot:
    """Summarize the bodies inside the scored area (all bodies when None)"""
    if scored_area is None:
        mask = np.ones(len(state), dtype=bool)
    else:
        half = np.asarray(scored_area, dtype=np.float64) / 2.0
        mask = np.all(np.abs(state.position) <= half, axis=1)
    return Snapshot(elapsed, float(state.mass[mask].sum()), int(mask.sum()))


def run(genome: OrbitalGenome, max_ticks: int, fixed_dt: float,
        gravitational_constant: float = DEFAULT_GRAVITATIONAL_CONSTANT,
        scored_area: Optional[Tuple[float, float]] = None) -> Trajectory:
    """Simulate a genome and record one snapshot per tick.

    Stops after the tick on which one or no bodies remain, or after max_ticks.
    The genome is not modified; every call owns its own state.
    """
    state = resolve_overlaps(BodyState.from_genome(genome))
    elapsed, total_mass, mass_count = [], [], []
    for tick in range(max_ticks):
        advance(state, fixed_dt, gravitational_constant)
        state = resolve_overlaps(state)
        snapshot = observe(state, (tick + 1) * fixed_dt, scored_area)
        elapsed.append(snapshot.elapsed)
        total_mass.append(snapshot.total_mass)
        mass_count.append(snapshot.mass_count)
        if len(state) <= 1:
            logger.debug("Genome %s collapsed after %d ticks", genome.genome_id, tick + 1)
            break
    return Trajectory(elapsed, total_mass, mass_count)


class SimulationOracle:
    """Runs genomes under a fixed set of simulation settings"""

    def __init__(self, settings: SimulationParameters = None):
        self.settings = settings or SimulationParameters()

    def run(self, genome: OrbitalGenome, max_ticks: int = None,
            fixed_dt: float = None) -> Trajectory:
        settings = self.settings
        return run(
            genome,
            settings.max_ticks if max_ticks is None else max_ticks,
            settings.fixed_dt if fixed_dt is None else fixed_dt,
            gravitational_constant=settings.gravitational_constant,
            scored_area=settings.scored_area,
        )
