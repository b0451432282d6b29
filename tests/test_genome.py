"""
Tests for the orbital genome, its generators and genetic operators.
"""

import math

import numpy as np
import pytest

from orbit_evolution.config import GenomeParameters, MutationParameters
from orbit_evolution.genome import (
    MIN_POSITIVE, Body, OrbitalGenome, crossover, make_genome_id, mutate,
    radius_from_mass, random_body, random_genome,
)

from conftest import make_body, make_genome


def genome_with(n, genome_id='g', offset=0.0):
    bodies = [make_body(x=offset + 100.0 * i, y=float(i), vx=1.0, vy=-1.0,
                        mass=10.0 + i, radius=1.0 + i) for i in range(n)]
    return make_genome(*bodies, genome_id=genome_id)


class TestGeneration:
    """Random bodies and seed genomes."""

    def test_body_count_within_bounds(self):
        params = GenomeParameters(min_bodies=2, max_bodies=5)
        rng = np.random.default_rng(0)
        counts = {len(random_genome(rng, params, f"g{i}")) for i in range(200)}
        assert counts == {2, 3, 4, 5}

    def test_bodies_respect_parameters(self):
        params = GenomeParameters(position_range=50.0, mass_mean=0.0, mass_stddev=10.0, min_mass=2.0)
        rng = np.random.default_rng(1)
        for _ in range(100):
            body = random_body(rng, params)
            assert -50.0 <= body.x <= 50.0
            assert -50.0 <= body.y <= 50.0
            assert body.mass >= 2.0
            assert body.radius == pytest.approx(radius_from_mass(body.mass, params.density))

    def test_radius_from_mass(self):
        # A sphere of radius 1 and density 1 weighs 4/3 pi.
        assert radius_from_mass(4.0 / 3.0 * math.pi, 1.0) == pytest.approx(1.0)
        assert radius_from_mass(8.0, 0.1) > radius_from_mass(1.0, 0.1)

    def test_same_seed_same_genome(self):
        params = GenomeParameters()
        a = random_genome(np.random.default_rng(42), params, 'a')
        b = random_genome(np.random.default_rng(42), params, 'a')
        assert a == b

    def test_genome_ids(self):
        assert make_genome_id(3, 12) == 'g00003-0012'
        genome = random_genome(np.random.default_rng(0), GenomeParameters(), 'x', generation=4)
        assert genome.genome_id == 'x'
        assert genome.generation == 4
        assert genome.parent_ids == ()


class TestCrossover:
    """Uniform per-slot crossover."""

    def test_each_slot_comes_from_a_parent(self):
        a, b = genome_with(4, 'a'), genome_with(4, 'b', offset=5000.0)
        child = crossover(a, b, np.random.default_rng(3), 'c', 1)
        assert len(child) == 4
        for slot, body in enumerate(child.bodies):
            assert body in (a.bodies[slot], b.bodies[slot])

    def test_both_parents_contribute_over_many_children(self):
        a, b = genome_with(6, 'a'), genome_with(6, 'b', offset=5000.0)
        rng = np.random.default_rng(5)
        donors = set()
        for _ in range(20):
            child = crossover(a, b, rng, 'c', 1)
            for slot, body in enumerate(child.bodies):
                donors.add('a' if body == a.bodies[slot] else 'b')
        assert donors == {'a', 'b'}

    def test_parents_are_unmodified_and_not_aliased(self):
        a, b = genome_with(3, 'a'), genome_with(3, 'b', offset=5000.0)
        before = (a.to_dict(), b.to_dict())
        child = crossover(a, b, np.random.default_rng(0), 'c', 1)
        assert (a.to_dict(), b.to_dict()) == before
        for slot, body in enumerate(child.bodies):
            assert body is not a.bodies[slot]
            assert body is not b.bodies[slot]

    def test_lineage(self):
        a, b = genome_with(2, 'a'), genome_with(2, 'b')
        child = crossover(a, b, np.random.default_rng(0), 'child', 7)
        assert child.genome_id == 'child'
        assert child.generation == 7
        assert child.parent_ids == ('a', 'b')

    def test_unequal_parents(self):
        short, long = genome_with(2, 'short'), genome_with(6, 'long', offset=5000.0)
        rng = np.random.default_rng(11)
        for _ in range(30):
            child = crossover(short, long, rng, 'c', 1)
            assert 2 <= len(child) <= 6
            for slot, body in enumerate(child.bodies[:2]):
                assert body in (short.bodies[slot], long.bodies[slot])

    def test_deterministic(self):
        a, b = genome_with(5, 'a'), genome_with(5, 'b', offset=5000.0)
        first = crossover(a, b, np.random.default_rng(9), 'c', 1)
        second = crossover(a, b, np.random.default_rng(9), 'c', 1)
        assert first == second


class TestMutation:
    """Field perturbation and structural mutation."""

    def test_zero_rate_changes_nothing(self):
        genome = genome_with(3)
        params = MutationParameters(rate=0.0, magnitude=10.0,
                                    add_body_probability=0.0, remove_body_probability=0.0)
        assert mutate(genome, np.random.default_rng(0), params) == genome

    def test_perturbation_is_bounded(self):
        genome = genome_with(4)
        params = MutationParameters(rate=1.0, magnitude=5.0,
                                    add_body_probability=0.0, remove_body_probability=0.0)
        mutant = mutate(genome, np.random.default_rng(0), params)
        assert len(mutant) == len(genome)
        for old, new in zip(genome.bodies, mutant.bodies):
            for name in ('mass', 'x', 'y', 'vx', 'vy', 'radius'):
                assert abs(getattr(new, name) - getattr(old, name)) <= 5.0 + 1e-9
            assert new != old

    def test_mass_and_radius_stay_positive(self):
        genome = make_genome(*[make_body(mass=0.5, radius=0.5) for _ in range(5)])
        params = MutationParameters(rate=1.0, magnitude=100.0,
                                    add_body_probability=0.0, remove_body_probability=0.0)
        rng = np.random.default_rng(2)
        for _ in range(50):
            mutant = mutate(genome, rng, params)
            for body in mutant.bodies:
                assert body.mass >= MIN_POSITIVE
                assert body.radius >= MIN_POSITIVE

    def test_input_is_untouched_and_identity_kept(self):
        genome = genome_with(3, 'keep')
        before = genome.to_dict()
        params = MutationParameters(rate=1.0, magnitude=5.0)
        mutant = mutate(genome, np.random.default_rng(0), params)
        assert genome.to_dict() == before
        assert mutant.genome_id == 'keep'

    def test_remove_body(self):
        genome = genome_with(3)
        params = MutationParameters(rate=0.0, add_body_probability=0.0, remove_body_probability=1.0)
        assert len(mutate(genome, np.random.default_rng(0), params)) == 2

    def test_remove_from_empty_genome(self):
        genome = make_genome()
        params = MutationParameters(rate=0.0, add_body_probability=0.0, remove_body_probability=1.0)
        assert len(mutate(genome, np.random.default_rng(0), params)) == 0

    def test_add_body_needs_body_parameters(self):
        genome = genome_with(3)
        params = MutationParameters(rate=0.0, add_body_probability=1.0, remove_body_probability=0.0)
        assert len(mutate(genome, np.random.default_rng(0), params)) == 3
        grown = mutate(genome, np.random.default_rng(0), params, GenomeParameters())
        assert len(grown) == 4
        assert grown.bodies[:3] == genome.bodies

    def test_deterministic(self):
        genome = genome_with(4)
        params = MutationParameters(rate=0.5, magnitude=3.0)
        first = mutate(genome, np.random.default_rng(8), params, GenomeParameters())
        second = mutate(genome, np.random.default_rng(8), params, GenomeParameters())
        assert first == second


class TestSerialization:
    """Lossless dict and JSON serialization."""

    def test_json_round_trip(self, tmp_path):
        genome = random_genome(np.random.default_rng(4), GenomeParameters(), 'g00002-0003', 2)
        genome = OrbitalGenome(genome.genome_id, genome.bodies, genome.generation, ('p1', 'p2'))
        assert OrbitalGenome.from_json(genome.to_json()) == genome

        path = tmp_path / "genome.json"
        genome.to_json(str(path))
        assert OrbitalGenome.from_json(filename=str(path)) == genome

    def test_body_dict(self):
        body = Body(mass=1.5, x=-2.0, y=3.25, vx=0.1, vy=-0.2, radius=0.75)
        assert Body.from_dict(body.to_dict()) == body

    def test_summary(self):
        genome = genome_with(2, 'g1')
        assert len(genome) == 2
        assert genome.total_mass == 21.0
        assert 'g1' in str(genome)
