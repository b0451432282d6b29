"""
Tests for ranking, selection and reproduction.
"""

import math

import numpy as np
import pytest

from orbit_evolution.population import Population, is_finite, rank_order

from conftest import make_body, make_config, make_genome

NAN = float('nan')


def scored_population(fitnesses, generation=0):
    genomes = [make_genome(make_body(x=100.0 * i), make_body(x=100.0 * i + 50.0),
                           genome_id=f"p{i}", generation=generation)
               for i in range(len(fitnesses))]
    return Population(genomes, generation, fitnesses)


class TestRanking:
    """Non-finite fitness always ranks last."""

    def test_rank_order(self):
        fitnesses = [1.0, NAN, 3.0, math.inf, -math.inf, 2.0, 3.0]
        assert rank_order(fitnesses) == [2, 6, 5, 0, 1, 3, 4]

    def test_is_finite(self):
        assert is_finite(0.0)
        assert not is_finite(NAN)
        assert not is_finite(math.inf)
        assert not is_finite(None)

    def test_ranked_and_best(self):
        population = scored_population([NAN, 5.0, math.inf, -1.0])
        assert [g.genome_id for g, _ in population.ranked()] == ['p1', 'p3', 'p0', 'p2']
        assert [g.genome_id for g, _ in population.get_best(3)] == ['p1', 'p3']

    def test_unscored_population_cannot_rank(self):
        population = Population([make_genome(genome_id='a')])
        assert not population.is_scored
        with pytest.raises(ValueError):
            population.ranked()

    def test_fitness_count_must_match(self):
        with pytest.raises(ValueError):
            Population([make_genome(genome_id='a')], 0, [1.0, 2.0])


class TestSelection:
    """Parent selection policies."""

    def test_only_finite_genomes_are_selected(self):
        population = scored_population([NAN, math.inf, 4.0, -math.inf])
        rng = np.random.default_rng(0)
        for _ in range(20):
            assert population.tournament_selection(rng, 3).genome_id == 'p2'
            assert population.roulette_selection(rng).genome_id == 'p2'

    def test_all_non_finite_falls_back_to_whole_population(self):
        population = scored_population([NAN, NAN, math.inf])
        rng = np.random.default_rng(0)
        picked = {population.tournament_selection(rng, 1).genome_id for _ in range(50)}
        assert picked == {'p0', 'p1', 'p2'}

    def test_full_tournament_picks_the_best(self):
        population = scored_population([1.0, 9.0, 3.0, 2.0])
        rng = np.random.default_rng(1)
        assert population.tournament_selection(rng, 4).genome_id == 'p1'
        assert population.tournament_selection(rng, 10).genome_id == 'p1'

    def test_roulette_favours_fitter_genomes(self):
        population = scored_population([0.0, 1000.0])
        rng = np.random.default_rng(2)
        picks = [population.roulette_selection(rng).genome_id for _ in range(50)]
        assert picks.count('p1') >= 45

    def test_roulette_handles_negative_fitness(self):
        population = scored_population([-500.0, -10.0, -20.0])
        rng = np.random.default_rng(3)
        picks = {population.roulette_selection(rng).genome_id for _ in range(50)}
        assert picks <= {'p0', 'p1', 'p2'}
        assert 'p1' in picks

    def test_policy_from_config(self):
        population = scored_population([NAN, 4.0])
        rng = np.random.default_rng(0)
        for selection in ('tournament', 'proportional'):
            config = make_config(selection=selection)
            assert population.select_parent(rng, config).genome_id == 'p1'


class TestEvolve:
    """Breeding the next generation."""

    def test_population_size_is_constant(self):
        config = make_config(population_size=5, elitism_count=2)
        population = scored_population([1.0, 2.0, NAN, 4.0, 3.0])
        child = population.evolve(config, np.random.default_rng(0))
        assert len(child) == 5
        assert child.generation == 1
        assert not child.is_scored

    def test_elites_carried_over_unchanged(self):
        config = make_config(population_size=4, elitism_count=2)
        population = scored_population([1.0, 2.0, NAN, 4.0])
        child = population.evolve(config, np.random.default_rng(0))
        assert child.genomes[0] is population.genomes[3]
        assert child.genomes[1] is population.genomes[1]

    def test_non_finite_genomes_are_never_elites(self):
        config = make_config(population_size=4, elitism_count=3)
        population = scored_population([NAN, math.inf, 1.0, 2.0])
        child = population.evolve(config, np.random.default_rng(0))
        assert [g.genome_id for g in child.genomes[:2]] == ['p3', 'p2']
        assert child.genomes[2].genome_id == 'g00001-0002'
        assert child.genomes[3].genome_id == 'g00001-0003'

    def test_all_non_finite_population_still_breeds(self):
        config = make_config(population_size=3, elitism_count=1)
        population = scored_population([NAN, NAN, -math.inf])
        child = population.evolve(config, np.random.default_rng(0))
        assert [g.genome_id for g in child.genomes] == ['g00001-0000', 'g00001-0001', 'g00001-0002']

    def test_offspring_lineage(self):
        config = make_config(population_size=4, elitism_count=0, crossover_rate=1.0)
        population = scored_population([1.0, 2.0, 3.0, 4.0])
        child = population.evolve(config, np.random.default_rng(0))
        for genome in child.genomes:
            assert genome.generation == 1
            assert len(genome.parent_ids) == 2
            assert set(genome.parent_ids) <= {'p0', 'p1', 'p2', 'p3'}

    def test_no_crossover_copies_one_parent(self):
        config = make_config(population_size=4, elitism_count=0, crossover_rate=0.0)
        population = scored_population([1.0, 2.0, 3.0, 4.0])
        child = population.evolve(config, np.random.default_rng(0))
        for genome in child.genomes:
            assert len(genome.parent_ids) == 1

    def test_parents_are_untouched(self):
        config = make_config(population_size=4, elitism_count=1)
        population = scored_population([1.0, 2.0, 3.0, 4.0])
        before = [g.to_dict() for g in population.genomes]
        population.evolve(config, np.random.default_rng(0))
        assert [g.to_dict() for g in population.genomes] == before

    def test_deterministic(self):
        config = make_config(population_size=6, elitism_count=1)
        population = scored_population([1.0, 2.0, 3.0, NAN, 5.0, 6.0])
        first = population.evolve(config, np.random.default_rng(12))
        second = population.evolve(config, np.random.default_rng(12))
        assert [g.to_dict() for g in first.genomes] == [g.to_dict() for g in second.genomes]

    def test_random_seed_population(self):
        config = make_config(population_size=5)
        population = Population.random(config, np.random.default_rng(0))
        assert len(population) == 5
        assert [g.genome_id for g in population.genomes] == [f"g00000-000{i}" for i in range(5)]
        assert all(2 <= len(g) <= 4 for g in population.genomes)


class TestStats:
    """Population statistics."""

    def test_stats_over_finite_values(self):
        stats = scored_population([1.0, NAN, 3.0, math.inf]).get_stats()
        assert stats['population_size'] == 4
        assert stats['non_finite'] == 2
        assert stats['fitness']['max'] == 3.0
        assert stats['fitness']['min'] == 1.0
        assert stats['fitness']['mean'] == 2.0
        assert stats['bodies']['mean'] == 2.0

    def test_stats_without_finite_values(self):
        stats = scored_population([NAN, NAN]).get_stats()
        assert stats['non_finite'] == 2
        assert 'fitness' not in stats

    def test_unscored_stats(self):
        stats = Population([make_genome(genome_id='a')], 3).get_stats()
        assert stats['generation'] == 3
        assert 'fitness' not in stats
