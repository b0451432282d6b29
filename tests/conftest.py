"""
Shared fixtures: small, fast configurations and hand-built genomes.
"""

import pytest

from orbit_evolution.config import config_from_dict
from orbit_evolution.genome import Body, OrbitalGenome


def make_config(**overrides):
    """A config small enough to evolve a few generations in well under a second."""
    data = {
        'population_size': 6,
        'elitism_count': 1,
        'max_generations': 3,
        'seed': 7,
        'genome': {'min_bodies': 2, 'max_bodies': 4},
        'simulation': {'max_ticks': 20},
    }
    for key, value in overrides.items():
        if isinstance(value, dict):
            data.setdefault(key, {}).update(value)
        else:
            data[key] = value
    return config_from_dict(data)


def make_body(x=0.0, y=0.0, vx=0.0, vy=0.0, mass=10.0, radius=1.0):
    return Body(mass=mass, x=x, y=y, vx=vx, vy=vy, radius=radius)


def make_genome(*bodies, genome_id='test', generation=0):
    return OrbitalGenome(genome_id=genome_id, bodies=tuple(bodies), generation=generation)


@pytest.fixture
def small_config():
    return make_config()
