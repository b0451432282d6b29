"""
orbit_evolution - Evolving planetary systems against a user-defined scoring expression

A genetic algorithm where genomes are sets of planets (mass, position,
velocity, radius). Each genome is simulated under planar gravity with
merging collisions, and the resulting trajectory is scored by an arithmetic
expression over elapsed time, total mass and mass count.
"""

__version__ = "0.1.0"
__author__ = "Orbit Evolution Project"

from .ast_nodes import (
    ASTNode, Constant, Elapsed, TotalMass, MassCount, UnaryOp, BinaryOp,
    UnaryOperator, BinaryOperator, evaluate, evaluate_many, simplify,
    VARIABLES, FUNCTIONS
)
from .parser import ParseError, parse_expression, compile_expression
from .genome import Body, OrbitalGenome, random_genome, crossover, mutate
from .simulation import Snapshot, Trajectory, SimulationOracle, run
from .fitness import FitnessScorer, score, evaluate_genome
from .population import Population
from .config import (
    ConfigError, EvolutionConfig, GenomeParameters, MutationParameters,
    SimulationParameters, load_config
)
from .archive import EvolutionArchive, PersistenceError, RunState
from .driver import DriverState, EvolutionDriver

__all__ = [
    'ASTNode', 'Constant', 'Elapsed', 'TotalMass', 'MassCount', 'UnaryOp', 'BinaryOp',
    'UnaryOperator', 'BinaryOperator', 'evaluate', 'evaluate_many', 'simplify',
    'VARIABLES', 'FUNCTIONS',
    'ParseError', 'parse_expression', 'compile_expression',
    'Body', 'OrbitalGenome', 'random_genome', 'crossover', 'mutate',
    'Snapshot', 'Trajectory', 'SimulationOracle', 'run',
    'FitnessScorer', 'score', 'evaluate_genome',
    'Population',
    'ConfigError', 'EvolutionConfig', 'GenomeParameters', 'MutationParameters',
    'SimulationParameters', 'load_config',
    'EvolutionArchive', 'PersistenceError', 'RunState',
    'DriverState', 'EvolutionDriver'
]
