"""
orbit_evolution/physics.py - Planar gravity, overlap detection and body merging
"""
from typing import List, Tuple

import numpy as np
from scipy.spatial.distance import cdist

from .genome import OrbitalGenome

DEFAULT_GRAVITATIONAL_CONSTANT = 1000.0


class BodyState:
    """Mutable per-simulation state of the live bodies, one row per body"""

    def __init__(self, mass: np.ndarray, position: np.ndarray,
                 velocity: np.ndarray, radius: np.ndarray):
        self.mass = np.asarray(mass, dtype=np.float64).reshape(-1)
        self.position = np.asarray(position, dtype=np.float64).reshape(-1, 2)
        self.velocity = np.asarray(velocity, dtype=np.float64).reshape(-1, 2)
        self.radius = np.asarray(radius, dtype=np.float64).reshape(-1)

    @classmethod
    def from_genome(cls, genome: OrbitalGenome) -> 'BodyState':
        bodies = genome.bodies
        return cls(
            mass=[b.mass for b in bodies],
            position=[(b.x, b.y) for b in bodies],
            velocity=[(b.vx, b.vy) for b in bodies],
            radius=[b.radius for b in bodies],
        )

    def __len__(self) -> int:
        return len(self.mass)


def accelerations(state: BodyState, gravitational_constant: float) -> np.ndarray:
    """Newtonian acceleration of every body due to every other body"""
    if len(state) < 2:
        return np.zeros_like(state.position)
    # offsets[i, j] points from body i to body j
    offsets = state.position[np.newaxis, :, :] - state.position[:, np.newaxis, :]
    dist_sq = np.sum(offsets ** 2, axis=-1)
    np.fill_diagonal(dist_sq, np.inf)
    with np.errstate(all='ignore'):
        inv_cube = dist_sq ** -1.5
        weights = gravitational_constant * inv_cube * state.mass[np.newaxis, :]
        return np.einsum('ij,ijk->ik', weights, offsets)


def advance(state: BodyState, dt: float,
            gravitational_constant: float = DEFAULT_GRAVITATIONAL_CONSTANT) -> None:
    """Semi-implicit Euler step: update velocities first, then positions"""
    state.velocity += accelerations(state, gravitational_constant) * dt
    state.position += state.velocity * dt


def collide(state: BodyState) -> List[Tuple[int, int]]:
    """Index pairs (i < j) of bodies whose circles overlap"""
    if len(state) < 2:
        return []
    distances = cdist(state.position, state.position)
    reach = state.radius[:, np.newaxis] + state.radius[np.newaxis, :]
    overlapping = np.triu(distances < reach, k=1)
    return [(int(i), int(j)) for i, j in np.argwhere(overlapping)]


def _find(parents: List[int], i: int) -> int:
    while parents[i] != i:
        parents[i] = parents[parents[i]]
        i = parents[i]
    return i


def merge_collisions(state: BodyState, pairs: List[Tuple[int, int]]) -> BodyState:
    """Merge every transitively overlapping group into its lowest-index body.

    Mass and momentum are conserved, the merged body sits at the group's
    centre of mass and keeps the group's total volume.
    """
    if not pairs:
        return state
    parents = list(range(len(state)))
    for i, j in pairs:
        root_i, root_j = _find(parents, i), _find(parents, j)
        if root_i != root_j:
            parents[max(root_i, root_j)] = min(root_i, root_j)

    groups = {}
    for i in range(len(state)):
        groups.setdefault(_find(parents, i), []).append(i)

    mass, position, velocity, radius = [], [], [], []
    for root in sorted(groups):
        members = groups[root]
        m = state.mass[members]
        total = m.sum()
        mass.append(total)
        position.append((state.position[members] * m[:, np.newaxis]).sum(axis=0) / total)
        velocity.append((state.velocity[members] * m[:, np.newaxis]).sum(axis=0) / total)
        radius.append(np.cbrt(np.sum(state.radius[members] ** 3)))
    return BodyState(mass, position, velocity, radius)


def resolve_overlaps(state: BodyState) -> BodyState:
    """Merge repeatedly until no two bodies overlap"""
    pairs = collide(state)
    while pairs:
        state = merge_collisions(state, pairs)
        pairs = collide(state)
    return state
