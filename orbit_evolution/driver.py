"""
orbit_evolution/driver.py - Generational evolution loop with checkpointing and cancellation
"""
import enum
import logging
import signal
import threading
from concurrent.futures import Executor, ProcessPoolExecutor
from itertools import repeat
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .archive import EvolutionArchive, RunState
from .config import EvolutionConfig
from .fitness import FitnessScorer, evaluate_genome
from .genome import OrbitalGenome
from .population import Population, ScoredGenome, is_finite

logger = logging.getLogger(__name__)


class DriverState(enum.Enum):
    INITIALIZING = 'initializing'
    EVALUATING = 'evaluating'
    SELECTING = 'selecting'
    REPRODUCING = 'reproducing'
    CHECKPOINTING = 'checkpointing'
    TERMINATED = 'terminated'


def _ignore_sigint():
    # Interrupts are handled by the driver between generations.
    signal.signal(signal.SIGINT, signal.SIG_IGN)


class EvolutionDriver:
    """Runs generations until a termination criterion holds.

    Each generation is evaluated, ranked, bred into the next generation and
    checkpointed before the termination check. The driver's random generator
    is the only source of randomness and is only used on the calling thread,
    so a run is reproducible from its seed regardless of worker count.
    """

    def __init__(self, config: EvolutionConfig, archive: Optional[EvolutionArchive] = None,
                 on_generation: Optional[Callable[['EvolutionDriver', Dict[str, Any]], None]] = None):
        self.config = config
        self.archive = archive
        self.on_generation = on_generation
        # Compiling up front surfaces ParseError before any simulation runs.
        self.scorer = FitnessScorer.from_config(config)

        self.state = DriverState.INITIALIZING
        self.rng: Optional[np.random.Generator] = None
        self.population: Optional[Population] = None
        self.last_scored: Optional[Population] = None
        self.best_genome: Optional[OrbitalGenome] = None
        self.best_fitness = float('nan')
        self.stall = 0
        self.termination_reason: Optional[str] = None
        self.history: List[Dict[str, Any]] = []
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Request termination at the next generation boundary; safe from signal handlers"""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def best(self) -> Optional[ScoredGenome]:
        if self.best_genome is None:
            return None
        return self.best_genome, self.best_fitness

    def initialize(self) -> bool:
        """Resume from the archive's latest checkpoint or seed generation 0.

        Returns True when a checkpoint was resumed.
        """
        self.state = DriverState.INITIALIZING
        self.rng = np.random.default_rng(self.config.seed)
        checkpoint = None
        if self.archive is not None:
            self.archive.register_run(self.config.to_dict())
            checkpoint = self.archive.load_latest()

        if checkpoint is None:
            self.population = Population.random(self.config, self.rng)
            logger.info("Seeded generation 0 with %d genomes", len(self.population))
            return False

        self.rng.bit_generator.state = checkpoint.rng_state
        self.population = Population(checkpoint.pending, checkpoint.generation)
        if checkpoint.scored:
            genomes, fitnesses = zip(*checkpoint.scored)
            self.last_scored = Population(genomes, checkpoint.generation - 1, fitnesses)
        self.best_genome = checkpoint.best_genome
        self.best_fitness = checkpoint.best_fitness
        self.stall = checkpoint.stall
        logger.info("Resumed run %s at generation %d (best fitness %s)",
                    checkpoint.run_id, checkpoint.generation, self.best_fitness)
        return True

    def evaluate(self, population: Population, executor: Optional[Executor] = None) -> Population:
        """Score every genome, keeping population order"""
        settings = self.config.simulation
        if executor is None:
            fitnesses = [evaluate_genome(genome, settings, self.scorer)
                         for genome in population.genomes]
        else:
            chunksize = max(1, len(population) // (4 * max(1, self.config.workers)))
            fitnesses = list(executor.map(evaluate_genome, population.genomes,
                                          repeat(settings), repeat(self.scorer),
                                          chunksize=chunksize))
        return population.with_fitness(fitnesses)

    def _update_best(self, scored: Population) -> None:
        leaders = scored.get_best(1)
        if leaders and (not is_finite(self.best_fitness) or leaders[0][1] > self.best_fitness):
            self.best_genome, self.best_fitness = leaders[0]
            self.stall = 0
        else:
            self.stall += 1

    def _termination_reason(self, generation: int) -> Optional[str]:
        """Why the run should stop after the given evaluated generation, if it should"""
        config = self.config
        if (config.target_fitness is not None and is_finite(self.best_fitness)
                and self.best_fitness >= config.target_fitness):
            return 'target fitness reached'
        if config.stall_generations is not None and self.stall >= config.stall_generations:
            return f"no improvement for {self.stall} generations"
        if config.max_generations is not None and generation + 1 >= config.max_generations:
            return 'generation limit reached'
        return None

    def _checkpoint(self, scored: Population, next_population: Population,
                    reason: Optional[str]) -> None:
        if self.archive is None:
            return
        self.archive.save_generation(RunState(
            run_id=self.archive.run_id,
            generation=next_population.generation,
            pending=next_population.genomes,
            scored=scored.scored(),
            rng_state=self.rng.bit_generator.state,
            best_genome=self.best_genome,
            best_fitness=self.best_fitness,
            stall=self.stall,
            finished=reason is not None,
            reason=reason,
        ))
        if self.config.keep_top is not None:
            self.archive.prune(self.config.keep_top)

    def _terminate(self, reason: str) -> None:
        self.state = DriverState.TERMINATED
        self.termination_reason = reason
        logger.info("Evolution terminated: %s; best fitness %s", reason, self.best_fitness)

    def step(self, executor: Optional[Executor] = None) -> Optional[str]:
        """Evaluate, breed and checkpoint one generation.

        Returns the termination reason, or None to continue.
        """
        self.state = DriverState.EVALUATING
        scored = self.evaluate(self.population, executor)
        self._update_best(scored)

        self.state = DriverState.SELECTING
        stats = scored.get_stats()
        stats['best_ever'] = self.best_fitness
        self._log_stats(stats)
        reason = self._termination_reason(scored.generation)

        self.state = DriverState.REPRODUCING
        next_population = scored.evolve(self.config, self.rng)

        self.state = DriverState.CHECKPOINTING
        self._checkpoint(scored, next_population, reason)
        # Advance only once the checkpoint is durable.
        self.last_scored = scored
        self.population = next_population
        self.history.append(stats)
        if self.on_generation is not None:
            self.on_generation(self, stats)
        return reason

    def _log_stats(self, stats: Dict[str, Any]) -> None:
        fitness = stats.get('fitness')
        if fitness is None:
            logger.info("Generation %d: no finite fitness (%d non-finite)",
                        stats['generation'], stats['non_finite'])
            return
        logger.info("Generation %d: best %.4f mean %.4f std %.4f, %d non-finite, "
                    "%.1f bodies on average, best ever %.4f",
                    stats['generation'], fitness['max'], fitness['mean'], fitness['std'],
                    stats['non_finite'], stats['bodies']['mean'], stats['best_ever'])

    def run(self) -> Optional[ScoredGenome]:
        """Run to termination and return the best-ever (genome, fitness)"""
        resumed = self.initialize()
        if resumed:
            reason = self._termination_reason(self.population.generation - 1)
            if reason is not None:
                self._terminate(reason)
                return self.best

        executor = None
        if self.config.workers > 0:
            executor = ProcessPoolExecutor(max_workers=self.config.workers,
                                           initializer=_ignore_sigint)
        try:
            while True:
                if self.cancelled:
                    self._terminate('cancelled')
                    break
                reason = self.step(executor)
                if reason is not None:
                    self._terminate(reason)
                    break
        finally:
            if executor is not None:
                executor.shutdown()
        return self.best
