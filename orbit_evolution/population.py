"""
orbit_evolution/population.py - Population ranking, parent selection and reproduction
"""
import dataclasses
import math
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import EvolutionConfig
from .genome import OrbitalGenome, crossover, make_genome_id, mutate, random_genome

ScoredGenome = Tuple[OrbitalGenome, float]


def is_finite(fitness: Optional[float]) -> bool:
    return fitness is not None and math.isfinite(fitness)


def rank_order(fitnesses: Sequence[float]) -> List[int]:
    """Indices ordered best first.

    Finite fitness sorts descending. NaN and +-inf all rank below every
    finite value and keep their population order. Ties keep population order.
    """
    finite = [i for i, f in enumerate(fitnesses) if is_finite(f)]
    non_finite = [i for i, f in enumerate(fitnesses) if not is_finite(f)]
    finite.sort(key=lambda i: -fitnesses[i])
    return finite + non_finite


class Population:
    """A generation of genomes and, once evaluated, their fitness"""

    def __init__(self, genomes: Sequence[OrbitalGenome], generation: int = 0,
                 fitnesses: Optional[Sequence[float]] = None):
        self.genomes = list(genomes)
        self.generation = generation
        self.fitnesses = None if fitnesses is None else [float(f) for f in fitnesses]
        if self.fitnesses is not None and len(self.fitnesses) != len(self.genomes):
            raise ValueError("Expected one fitness value per genome")

    @classmethod
    def random(cls, config: EvolutionConfig, rng: np.random.Generator,
               generation: int = 0) -> 'Population':
        """Seed a population of freshly generated genomes"""
        genomes = [random_genome(rng, config.genome, make_genome_id(generation, i), generation)
                   for i in range(config.population_size)]
        return cls(genomes, generation)

    def __len__(self) -> int:
        return len(self.genomes)

    @property
    def is_scored(self) -> bool:
        return self.fitnesses is not None

    def with_fitness(self, fitnesses: Sequence[float]) -> 'Population':
        return Population(self.genomes, self.generation, fitnesses)

    def scored(self) -> List[ScoredGenome]:
        self._require_scores()
        return list(zip(self.genomes, self.fitnesses))

    def ranked(self) -> List[ScoredGenome]:
        """(genome, fitness) pairs, best first"""
        self._require_scores()
        return [(self.genomes[i], self.fitnesses[i]) for i in rank_order(self.fitnesses)]

    def get_best(self, n: int = 1) -> List[ScoredGenome]:
        """Best n genomes with finite fitness"""
        return [pair for pair in self.ranked() if is_finite(pair[1])][:n]

    def _require_scores(self):
        if self.fitnesses is None:
            raise ValueError(f"Generation {self.generation} has not been evaluated")

    def _selection_pool(self) -> List[ScoredGenome]:
        finite = [pair for pair in self.scored() if is_finite(pair[1])]
        # With nothing finite to prefer, every genome is equally eligible.
        return finite or self.scored()

    def tournament_selection(self, rng: np.random.Generator,
                             tournament_size: int = 3) -> OrbitalGenome:
        """Best of a uniformly drawn tournament, without replacement"""
        pool = self._selection_pool()
        size = min(tournament_size, len(pool))
        picks = rng.choice(len(pool), size=size, replace=False)
        best = max(picks, key=lambda i: pool[i][1] if is_finite(pool[i][1]) else -math.inf)
        return pool[best][0]

    def roulette_selection(self, rng: np.random.Generator) -> OrbitalGenome:
        """Fitness-proportional selection over fitness shifted to be positive"""
        pool = self._selection_pool()
        fitnesses = np.array([f if is_finite(f) else 0.0 for _, f in pool])
        with np.errstate(all='ignore'):
            adjusted = fitnesses - fitnesses.min() + 0.01
            cumulative = np.cumsum(adjusted)
        total = cumulative[-1]
        if not np.isfinite(total) or total <= 0:
            return pool[int(rng.integers(len(pool)))][0]
        pick = rng.uniform(0, total)
        index = int(np.searchsorted(cumulative, pick, side='left'))
        return pool[min(index, len(pool) - 1)][0]

    def select_parent(self, rng: np.random.Generator, config: EvolutionConfig) -> OrbitalGenome:
        if config.selection == 'proportional':
            return self.roulette_selection(rng)
        return self.tournament_selection(rng, config.tournament_size)

    def evolve(self, config: EvolutionConfig, rng: np.random.Generator) -> 'Population':
        """Breed the next, unevaluated generation.

        The best elitism_count genomes with finite fitness are carried over
        unchanged; the rest are offspring of selected parents.
        """
        generation = self.generation + 1
        new_genomes = [genome for genome, _ in self.get_best(config.elitism_count)]

        while len(new_genomes) < config.population_size:
            genome_id = make_genome_id(generation, len(new_genomes))
            parent1 = self.select_parent(rng, config)
            if rng.random() < config.crossover_rate:
                parent2 = self.select_parent(rng, config)
                child = crossover(parent1, parent2, rng, genome_id, generation)
            else:
                child = dataclasses.replace(parent1, genome_id=genome_id, generation=generation,
                                            parent_ids=(parent1.genome_id,))
            new_genomes.append(mutate(child, rng, config.mutation, config.genome))

        return Population(new_genomes, generation)

    def get_stats(self) -> Dict[str, Any]:
        """Get population statistics"""
        stats = {
            'generation': self.generation,
            'population_size': len(self.genomes),
            'bodies': {
                'mean': float(np.mean([len(g) for g in self.genomes])) if self.genomes else 0.0,
            },
        }
        if self.fitnesses is None:
            return stats

        finite = [f for f in self.fitnesses if is_finite(f)]
        stats['non_finite'] = len(self.fitnesses) - len(finite)
        if finite:
            stats['fitness'] = {
                'min': min(finite),
                'max': max(finite),
                'mean': float(np.mean(finite)),
                'std': float(np.std(finite)),
            }
        return stats
