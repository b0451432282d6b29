"""
orbit_evolution/config.py - Run configuration, YAML loading and validation
"""
import dataclasses
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

import yaml

logger = logging.getLogger(__name__)

AGGREGATIONS = ('final', 'sum', 'max')
SELECTION_POLICIES = ('tournament', 'proportional')


class ConfigError(ValueError):
    """Raised when a configuration file cannot be understood"""


def _fix_invalid(section, path: str, name: str, message: str,
                 predicate: Callable[[Any], bool]) -> None:
    """Reset an invalid field to its default, warning about the dotted path"""
    value = getattr(section, name)
    try:
        valid = predicate(value)
    except TypeError:
        valid = False
    if not valid:
        default = type(section)().__getattribute__(name)
        logger.warning("Invalid %s.%s: %r %s; using default %r",
                       path, name, value, message, default)
        setattr(section, name, default)


def _finite(value) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


@dataclass
class GenomeParameters:
    """How new bodies and seed genomes are generated"""
    min_bodies: int = 3
    max_bodies: int = 12
    # Bodies spawn uniformly in [-position_range, position_range] on both axes.
    position_range: float = 2000.0
    velocity_stddev: float = 20.0
    mass_mean: float = 500.0
    mass_stddev: float = 400.0
    min_mass: float = 1.0
    density: float = 0.1

    def fix_invalid(self, path: str = 'genome') -> None:
        _fix_invalid(self, path, 'min_bodies', 'must be >= 1',
                     lambda v: isinstance(v, int) and v >= 1)
        _fix_invalid(self, path, 'max_bodies', 'must be >= min_bodies',
                     lambda v: isinstance(v, int) and v >= self.min_bodies)
        _fix_invalid(self, path, 'position_range', 'must be > 0',
                     lambda v: _finite(v) and v > 0)
        _fix_invalid(self, path, 'velocity_stddev', 'must be >= 0',
                     lambda v: _finite(v) and v >= 0)
        _fix_invalid(self, path, 'mass_mean', 'must be finite', _finite)
        _fix_invalid(self, path, 'mass_stddev', 'must be >= 0',
                     lambda v: _finite(v) and v >= 0)
        _fix_invalid(self, path, 'min_mass', 'must be > 0',
                     lambda v: _finite(v) and v > 0)
        _fix_invalid(self, path, 'density', 'must be > 0',
                     lambda v: _finite(v) and v > 0)


@dataclass
class MutationParameters:
    """How offspring are perturbed"""
    # Probability that any single scalar field of a body is perturbed.
    rate: float = 0.1
    # Maximum absolute perturbation of a field.
    magnitude: float = 10.0
    add_body_probability: float = 0.05
    remove_body_probability: float = 0.05

    def fix_invalid(self, path: str = 'mutation') -> None:
        for name in ('rate', 'add_body_probability', 'remove_body_probability'):
            _fix_invalid(self, path, name, 'must be in range [0, 1]',
                         lambda v: _finite(v) and 0 <= v <= 1)
        _fix_invalid(self, path, 'magnitude', 'must be >= 0',
                     lambda v: _finite(v) and v >= 0)


@dataclass
class SimulationParameters:
    """Physics settings for the fitness oracle"""
    # 3750 ticks of 16ms is one minute of simulated time.
    max_ticks: int = 3750
    fixed_dt: float = 0.016
    gravitational_constant: float = 1000.0
    # (width, height) of the origin-centred region whose bodies are observed.
    # None observes every body.
    scored_area: Optional[Tuple[float, float]] = None

    def fix_invalid(self, path: str = 'simulation') -> None:
        _fix_invalid(self, path, 'max_ticks', 'must be > 0',
                     lambda v: isinstance(v, int) and v > 0)
        _fix_invalid(self, path, 'fixed_dt', 'must be > 0',
                     lambda v: _finite(v) and v > 0)
        _fix_invalid(self, path, 'gravitational_constant', 'must be finite', _finite)
        _fix_invalid(self, path, 'scored_area', 'must be None or [width >= 0, height >= 0]',
                     lambda v: v is None or (len(v) == 2 and all(_finite(d) and d >= 0 for d in v)))
        if self.scored_area is not None:
            self.scored_area = (float(self.scored_area[0]), float(self.scored_area[1]))


@dataclass
class EvolutionConfig:
    """Configuration for an evolution run"""
    scoring_expression: str = 'total_mass * mass_count'
    aggregation: str = 'final'

    population_size: int = 40
    elitism_count: int = 2
    selection: str = 'tournament'
    tournament_size: int = 3
    crossover_rate: float = 1.0

    # Termination. None disables a criterion.
    max_generations: Optional[int] = 50
    target_fitness: Optional[float] = None
    stall_generations: Optional[int] = None

    seed: int = 0
    # 0 evaluates genomes in-process.
    workers: int = 0
    # Number of archived genomes to keep after each checkpoint. None keeps all.
    keep_top: Optional[int] = None

    genome: GenomeParameters = field(default_factory=GenomeParameters)
    mutation: MutationParameters = field(default_factory=MutationParameters)
    simulation: SimulationParameters = field(default_factory=SimulationParameters)

    def fix_invalid(self, path: str = 'evolution') -> 'EvolutionConfig':
        """Replace invalid values with defaults, logging each replacement"""
        _fix_invalid(self, path, 'scoring_expression', 'must be a string',
                     lambda v: isinstance(v, str))
        _fix_invalid(self, path, 'aggregation', f"must be one of {AGGREGATIONS}",
                     lambda v: v in AGGREGATIONS)
        _fix_invalid(self, path, 'population_size', 'must be >= 1',
                     lambda v: isinstance(v, int) and v >= 1)
        _fix_invalid(self, path, 'elitism_count', 'must be in range [0, population_size]',
                     lambda v: isinstance(v, int) and 0 <= v <= self.population_size)
        _fix_invalid(self, path, 'selection', f"must be one of {SELECTION_POLICIES}",
                     lambda v: v in SELECTION_POLICIES)
        _fix_invalid(self, path, 'tournament_size', 'must be >= 1',
                     lambda v: isinstance(v, int) and v >= 1)
        _fix_invalid(self, path, 'crossover_rate', 'must be in range [0, 1]',
                     lambda v: _finite(v) and 0 <= v <= 1)
        _fix_invalid(self, path, 'max_generations', 'must be None or >= 1',
                     lambda v: v is None or (isinstance(v, int) and v >= 1))
        _fix_invalid(self, path, 'target_fitness', 'must be None or a number',
                     lambda v: v is None or isinstance(v, (int, float)))
        _fix_invalid(self, path, 'stall_generations', 'must be None or >= 1',
                     lambda v: v is None or (isinstance(v, int) and v >= 1))
        _fix_invalid(self, path, 'seed', 'must be an integer >= 0',
                     lambda v: isinstance(v, int) and v >= 0)
        _fix_invalid(self, path, 'workers', 'must be >= 0',
                     lambda v: isinstance(v, int) and v >= 0)
        _fix_invalid(self, path, 'keep_top', 'must be None or >= 1',
                     lambda v: v is None or (isinstance(v, int) and v >= 1))
        self.genome.fix_invalid(f"{path}.genome")
        self.mutation.fix_invalid(f"{path}.mutation")
        self.simulation.fix_invalid(f"{path}.simulation")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


_SECTIONS = {
    'genome': GenomeParameters,
    'mutation': MutationParameters,
    'simulation': SimulationParameters,
}


def _build(cls, data: Dict[str, Any], path: str):
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a mapping, got {type(data).__name__}")
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown option(s) in {path}: {', '.join(unknown)}")
    values = dict(data)
    if cls is EvolutionConfig:
        for name, section_cls in _SECTIONS.items():
            if name in values:
                values[name] = _build(section_cls, values[name] or {}, f"{path}.{name}")
    return cls(**values)


def config_from_dict(data: Optional[Dict[str, Any]]) -> EvolutionConfig:
    """Build a validated config from plain data, e.g. parsed YAML"""
    config = _build(EvolutionConfig, data or {}, 'evolution')
    return config.fix_invalid()


def load_config(path: str) -> EvolutionConfig:
    """Load a YAML config file; the top level may be wrapped in 'evolution:'"""
    with open(path, 'r') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as err:
            raise ConfigError(f"Could not parse {path}: {err}") from err
    if isinstance(data, dict) and set(data) == {'evolution'}:
        data = data['evolution']
    return config_from_dict(data)
