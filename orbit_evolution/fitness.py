"""
orbit_evolution/fitness.py - Fitness scoring of simulation trajectories
"""
from typing import Callable, Dict, Sequence, Union

import numpy as np

from .ast_nodes import ASTNode, evaluate_many
from .config import AGGREGATIONS, EvolutionConfig, SimulationParameters
from .genome import OrbitalGenome
from .parser import compile_expression
from .simulation import Snapshot, Trajectory, run

# Each reducer sees one expression value per tick, in tick order.
# np.max propagates NaN, so a single NaN tick makes the max NaN.
_REDUCERS: Dict[str, Callable[[np.ndarray], float]] = {
    'final': lambda values: values[-1],
    'sum': np.sum,
    'max': np.max,
}


def score(expression: ASTNode, snapshots: Sequence[Snapshot],
          aggregation: str = 'final') -> float:
    """Reduce an expression evaluated over a trajectory to one fitness value.

    Non-finite results are returned unchanged. An empty trajectory scores NaN.
    """
    if aggregation not in _REDUCERS:
        raise ValueError(f"Unknown aggregation {aggregation!r}; expected one of {AGGREGATIONS}")
    if len(snapshots) == 0:
        return float('nan')
    if not isinstance(snapshots, Trajectory):
        snapshots = Trajectory.from_snapshots(snapshots)
    values = evaluate_many(expression, snapshots)
    with np.errstate(all='ignore'):
        return float(_REDUCERS[aggregation](values))


class FitnessScorer:
    """A compiled scoring expression together with its aggregation"""

    def __init__(self, expression: Union[str, ASTNode], aggregation: str = 'final'):
        if isinstance(expression, str):
            expression = compile_expression(expression)
        if aggregation not in _REDUCERS:
            raise ValueError(f"Unknown aggregation {aggregation!r}; expected one of {AGGREGATIONS}")
        self.expression = expression
        self.aggregation = aggregation

    @classmethod
    def from_config(cls, config: EvolutionConfig) -> 'FitnessScorer':
        return cls(config.scoring_expression, config.aggregation)

    def score(self, snapshots: Sequence[Snapshot]) -> float:
        return score(self.expression, snapshots, self.aggregation)

    def __repr__(self) -> str:
        return f"FitnessScorer('{self.expression}', aggregation={self.aggregation!r})"


def evaluate_genome(genome: OrbitalGenome, settings: SimulationParameters,
                    scorer: FitnessScorer) -> float:
    """Simulate one genome and score its trajectory"""
    trajectory = run(
        genome,
        settings.max_ticks,
        settings.fixed_dt,
        gravitational_constant=settings.gravitational_constant,
        scored_area=settings.scored_area,
    )
    return scorer.score(trajectory)
