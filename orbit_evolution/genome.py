"""
orbit_evolution/genome.py - Orbital genome representation, operators and JSON serialization
"""
import dataclasses
import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np

from .config import GenomeParameters, MutationParameters

# Mass and radius never drop to or below zero after mutation.
MIN_POSITIVE = 1e-6

BODY_FIELDS = ('mass', 'x', 'y', 'vx', 'vy', 'radius')


@dataclass(frozen=True)
class Body:
    """Initial state of one massive body"""
    mass: float
    x: float
    y: float
    vx: float
    vy: float
    radius: float

    def to_dict(self) -> Dict[str, float]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Body':
        return cls(**{name: float(data[name]) for name in BODY_FIELDS})


def radius_from_mass(mass: float, density: float) -> float:
    """Radius of a sphere with the given mass and density"""
    # M = 4/3 * pi * r^3 * D
    return (3.0 * mass / (4.0 * math.pi * density)) ** (1.0 / 3.0)


@dataclass(frozen=True)
class OrbitalGenome:
    """One candidate orbital system"""
    genome_id: str
    bodies: Tuple[Body, ...]
    generation: int = 0
    parent_ids: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, 'bodies', tuple(self.bodies))
        object.__setattr__(self, 'parent_ids', tuple(self.parent_ids))

    def __len__(self) -> int:
        return len(self.bodies)

    @property
    def total_mass(self) -> float:
        return sum(body.mass for body in self.bodies)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize genome to dictionary"""
        return {
            'genome_id': self.genome_id,
            'generation': self.generation,
            'parent_ids': list(self.parent_ids),
            'bodies': [body.to_dict() for body in self.bodies],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OrbitalGenome':
        """Deserialize genome from dictionary"""
        return cls(
            genome_id=data['genome_id'],
            bodies=tuple(Body.from_dict(body) for body in data['bodies']),
            generation=data.get('generation', 0),
            parent_ids=tuple(data.get('parent_ids', ())),
        )

    def to_json(self, filename: str = None) -> str:
        """Serialize to JSON string or file"""
        json_str = json.dumps(self.to_dict(), indent=2)
        if filename:
            with open(filename, 'w') as f:
                f.write(json_str)
        return json_str

    @classmethod
    def from_json(cls, json_data: str = None, filename: str = None) -> 'OrbitalGenome':
        """Deserialize from JSON string or file"""
        if filename:
            with open(filename, 'r') as f:
                json_data = f.read()
        return cls.from_dict(json.loads(json_data))

    def __str__(self) -> str:
        lines = [f"Genome {self.genome_id} (generation {self.generation}, "
                 f"parents: {', '.join(self.parent_ids) or 'none'}):"]
        lines.append(f"  Bodies: {len(self.bodies)}, Total mass: {self.total_mass:.3f}")
        for body in self.bodies[:10]:
            lines.append(f"  m={body.mass:.3f} r={body.radius:.3f} "
                         f"pos=({body.x:.2f}, {body.y:.2f}) vel=({body.vx:.2f}, {body.vy:.2f})")
        if len(self.bodies) > 10:
            lines.append(f"  ... {len(self.bodies) - 10} more")
        return '\n'.join(lines)


def make_genome_id(generation: int, index: int) -> str:
    """Run-unique id for the index-th genome created in a generation"""
    return f"g{generation:05d}-{index:04d}"


def random_body(rng: np.random.Generator, params: GenomeParameters) -> Body:
    """Generate a body at a random position with random velocity and mass"""
    extent = params.position_range
    x = float(rng.uniform(-extent, extent))
    y = float(rng.uniform(-extent, extent))
    vx = float(rng.normal(0.0, params.velocity_stddev))
    vy = float(rng.normal(0.0, params.velocity_stddev))
    mass = max(params.min_mass, float(rng.normal(params.mass_mean, params.mass_stddev)))
    return Body(mass=mass, x=x, y=y, vx=vx, vy=vy,
                radius=radius_from_mass(mass, params.density))


def random_genome(rng: np.random.Generator, params: GenomeParameters,
                  genome_id: str, generation: int = 0) -> OrbitalGenome:
    """Generate a new orbital system from scratch"""
    num_bodies = int(rng.integers(params.min_bodies, params.max_bodies, endpoint=True))
    bodies = tuple(random_body(rng, params) for _ in range(num_bodies))
    return OrbitalGenome(genome_id=genome_id, bodies=bodies, generation=generation)


def crossover(parent_a: OrbitalGenome, parent_b: OrbitalGenome, rng: np.random.Generator,
              genome_id: str, generation: int) -> OrbitalGenome:
    """Uniform crossover: each body slot comes from either parent with equal odds.

    Slots past the end of the shorter parent survive only when the parent
    that was picked for that slot has one.
    """
    bodies = []
    for slot in range(max(len(parent_a), len(parent_b))):
        donor = parent_a if rng.random() < 0.5 else parent_b
        if slot < len(donor):
            bodies.append(dataclasses.replace(donor.bodies[slot]))
    return OrbitalGenome(
        genome_id=genome_id,
        bodies=tuple(bodies),
        generation=generation,
        parent_ids=(parent_a.genome_id, parent_b.genome_id),
    )


def _perturb_body(body: Body, rng: np.random.Generator, params: MutationParameters) -> Body:
    values = {}
    for name in BODY_FIELDS:
        value = getattr(body, name)
        if rng.random() < params.rate:
            value += float(rng.uniform(-params.magnitude, params.magnitude))
        values[name] = value
    values['mass'] = max(values['mass'], MIN_POSITIVE)
    values['radius'] = max(values['radius'], MIN_POSITIVE)
    return Body(**values)


def mutate(genome: OrbitalGenome, rng: np.random.Generator, params: MutationParameters,
           body_params: Optional[GenomeParameters] = None) -> OrbitalGenome:
    """Return a perturbed copy of the genome; the input is left untouched.

    Order is remove, modify, add so that new bodies are never perturbed and
    doomed bodies never consume perturbation draws. Adding a body requires
    body_params.
    """
    bodies = list(genome.bodies)

    if bodies and params.remove_body_probability > 0 and rng.random() < params.remove_body_probability:
        del bodies[int(rng.integers(len(bodies)))]

    bodies = [_perturb_body(body, rng, params) for body in bodies]

    if (body_params is not None and params.add_body_probability > 0
            and rng.random() < params.add_body_probability):
        bodies.append(random_body(rng, body_params))

    return dataclasses.replace(genome, bodies=tuple(bodies))
