"""
orbit_evolution/archive.py - SQLite persistence of evolution runs and checkpoints
"""
import json
import logging
import math
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .genome import BODY_FIELDS, Body, OrbitalGenome
from .population import is_finite, rank_order

logger = logging.getLogger(__name__)

ScoredGenome = Tuple[OrbitalGenome, float]

SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
    run_id      TEXT PRIMARY KEY,
    created_at  TEXT NOT NULL,
    config_json TEXT NOT NULL,
    expression  TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS genomes (
    run_id      TEXT NOT NULL,
    genome_id   TEXT NOT NULL,
    generation  INTEGER NOT NULL,
    parent_ids  TEXT NOT NULL,
    PRIMARY KEY (run_id, genome_id)
);
CREATE TABLE IF NOT EXISTS bodies (
    run_id      TEXT NOT NULL,
    genome_id   TEXT NOT NULL,
    slot        INTEGER NOT NULL,
    mass        REAL,
    x           REAL,
    y           REAL,
    vx          REAL,
    vy          REAL,
    radius      REAL,
    PRIMARY KEY (run_id, genome_id, slot)
);
CREATE TABLE IF NOT EXISTS scored (
    run_id      TEXT NOT NULL,
    generation  INTEGER NOT NULL,
    idx         INTEGER NOT NULL,
    genome_id   TEXT NOT NULL,
    fitness     REAL,
    PRIMARY KEY (run_id, generation, idx)
);
CREATE TABLE IF NOT EXISTS pending (
    run_id      TEXT NOT NULL,
    generation  INTEGER NOT NULL,
    idx         INTEGER NOT NULL,
    genome_id   TEXT NOT NULL,
    PRIMARY KEY (run_id, generation, idx)
);
CREATE TABLE IF NOT EXISTS checkpoints (
    run_id          TEXT NOT NULL,
    generation      INTEGER NOT NULL,
    rng_state       TEXT NOT NULL,
    best_genome_id  TEXT,
    best_fitness    REAL,
    stall           INTEGER NOT NULL,
    finished        INTEGER NOT NULL,
    reason          TEXT,
    saved_at        TEXT NOT NULL,
    PRIMARY KEY (run_id, generation)
);
"""


class PersistenceError(RuntimeError):
    """Raised when the archive cannot be read or written"""


def _to_sql(value: float) -> Optional[float]:
    # SQLite has no NaN; NULL stands in for it. Infinities are stored as-is.
    return None if math.isnan(value) else value


def _from_sql(value: Optional[float]) -> float:
    return float('nan') if value is None else float(value)


@dataclass
class RunState:
    """Everything needed to resume a run after the last completed generation.

    `generation` numbers the pending, not yet evaluated population; `scored`
    is the generation before it.
    """
    run_id: str
    generation: int
    pending: List[OrbitalGenome]
    scored: List[ScoredGenome]
    rng_state: Dict[str, Any]
    best_genome: Optional[OrbitalGenome] = None
    best_fitness: float = float('nan')
    stall: int = 0
    finished: bool = False
    reason: Optional[str] = None
    saved_at: str = field(default_factory=lambda: datetime.now().isoformat())


class EvolutionArchive:
    """Archive of evolution runs, their genomes and checkpoints in one SQLite file"""

    def __init__(self, path: str, run_id: str = 'default'):
        self.path = path
        self.run_id = run_id
        try:
            self.conn = sqlite3.connect(path)
            with self.conn:
                self.conn.executescript(SCHEMA)
        except sqlite3.Error as err:
            raise PersistenceError(f"Could not open archive {path}: {err}") from err

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> 'EvolutionArchive':
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _query(self, sql: str, params: tuple = ()) -> List[tuple]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as err:
            raise PersistenceError(f"Archive query failed: {err}") from err

    # Runs

    def register_run(self, config: Dict[str, Any]) -> None:
        """Record the configuration of this run unless it is already known"""
        try:
            with self.conn:
                self.conn.execute(
                    "INSERT OR IGNORE INTO runs (run_id, created_at, config_json, expression) "
                    "VALUES (?, ?, ?, ?)",
                    (self.run_id, datetime.now().isoformat(), json.dumps(config),
                     config.get('scoring_expression', '')))
        except sqlite3.Error as err:
            raise PersistenceError(f"Could not register run {self.run_id}: {err}") from err

    def load_run_config(self) -> Optional[Dict[str, Any]]:
        rows = self._query("SELECT config_json FROM runs WHERE run_id = ?", (self.run_id,))
        return json.loads(rows[0][0]) if rows else None

    def list_runs(self) -> List[Dict[str, Any]]:
        rows = self._query(
            "SELECT r.run_id, r.created_at, r.expression, MAX(c.generation) "
            "FROM runs r LEFT JOIN checkpoints c ON c.run_id = r.run_id "
            "GROUP BY r.run_id ORDER BY r.created_at, r.run_id")
        return [{'run_id': run_id, 'created_at': created_at, 'expression': expression,
                 'generations': generation or 0}
                for run_id, created_at, expression, generation in rows]

    # Genomes

    def _store_genome(self, genome: OrbitalGenome) -> None:
        cursor = self.conn.execute(
            "INSERT OR IGNORE INTO genomes (run_id, genome_id, generation, parent_ids) "
            "VALUES (?, ?, ?, ?)",
            (self.run_id, genome.genome_id, genome.generation, json.dumps(list(genome.parent_ids))))
        if cursor.rowcount == 0:
            # Genome ids are unique within a run and genomes are immutable.
            return
        self.conn.executemany(
            "INSERT INTO bodies (run_id, genome_id, slot, mass, x, y, vx, vy, radius) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [(self.run_id, genome.genome_id, slot,
              *(_to_sql(getattr(body, name)) for name in BODY_FIELDS))
             for slot, body in enumerate(genome.bodies)])

    def load_genome(self, genome_id: str) -> Optional[OrbitalGenome]:
        rows = self._query(
            "SELECT generation, parent_ids FROM genomes WHERE run_id = ? AND genome_id = ?",
            (self.run_id, genome_id))
        if not rows:
            return None
        generation, parent_ids = rows[0]
        body_rows = self._query(
            "SELECT mass, x, y, vx, vy, radius FROM bodies "
            "WHERE run_id = ? AND genome_id = ? ORDER BY slot",
            (self.run_id, genome_id))
        bodies = tuple(Body(*(_from_sql(v) for v in row)) for row in body_rows)
        return OrbitalGenome(genome_id=genome_id, bodies=bodies, generation=generation,
                             parent_ids=tuple(json.loads(parent_ids)))

    def _require_genome(self, genome_id: str) -> OrbitalGenome:
        genome = self.load_genome(genome_id)
        if genome is None:
            raise PersistenceError(f"Genome {genome_id} of run {self.run_id} is missing")
        return genome

    # Checkpoints

    def save_generation(self, state: RunState) -> None:
        """Write a checkpoint atomically: either all of it lands or none of it"""
        if state.run_id != self.run_id:
            raise ValueError(f"State belongs to run {state.run_id}, archive holds {self.run_id}")
        scored_generation = state.generation - 1
        try:
            with self.conn:
                for genome, _ in state.scored:
                    self._store_genome(genome)
                for genome in state.pending:
                    self._store_genome(genome)
                if state.best_genome is not None:
                    self._store_genome(state.best_genome)
                self.conn.execute("DELETE FROM scored WHERE run_id = ? AND generation = ?",
                                  (self.run_id, scored_generation))
                self.conn.executemany(
                    "INSERT INTO scored (run_id, generation, idx, genome_id, fitness) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [(self.run_id, scored_generation, idx, genome.genome_id, _to_sql(fitness))
                     for idx, (genome, fitness) in enumerate(state.scored)])
                self.conn.execute("DELETE FROM pending WHERE run_id = ? AND generation = ?",
                                  (self.run_id, state.generation))
                self.conn.executemany(
                    "INSERT INTO pending (run_id, generation, idx, genome_id) VALUES (?, ?, ?, ?)",
                    [(self.run_id, state.generation, idx, genome.genome_id)
                     for idx, genome in enumerate(state.pending)])
                self.conn.execute(
                    "INSERT OR REPLACE INTO checkpoints (run_id, generation, rng_state, "
                    "best_genome_id, best_fitness, stall, finished, reason, saved_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (self.run_id, state.generation, json.dumps(state.rng_state),
                     state.best_genome.genome_id if state.best_genome is not None else None,
                     _to_sql(state.best_fitness), state.stall, int(state.finished),
                     state.reason, state.saved_at))
        except sqlite3.Error as err:
            raise PersistenceError(
                f"Could not checkpoint generation {scored_generation} of run {self.run_id}: {err}"
            ) from err
        logger.debug("Checkpointed run %s at generation %d", self.run_id, scored_generation)

    def load_latest(self) -> Optional[RunState]:
        """The most recent checkpoint of this run, or None if there is none"""
        rows = self._query(
            "SELECT generation, rng_state, best_genome_id, best_fitness, stall, finished, "
            "reason, saved_at FROM checkpoints WHERE run_id = ? "
            "ORDER BY generation DESC LIMIT 1",
            (self.run_id,))
        if not rows:
            return None
        generation, rng_state, best_id, best_fitness, stall, finished, reason, saved_at = rows[0]

        pending = [self._require_genome(genome_id) for (genome_id,) in self._query(
            "SELECT genome_id FROM pending WHERE run_id = ? AND generation = ? ORDER BY idx",
            (self.run_id, generation))]
        scored = [(self._require_genome(genome_id), _from_sql(fitness))
                  for genome_id, fitness in self._query(
                      "SELECT genome_id, fitness FROM scored "
                      "WHERE run_id = ? AND generation = ? ORDER BY idx",
                      (self.run_id, generation - 1))]
        return RunState(
            run_id=self.run_id,
            generation=generation,
            pending=pending,
            scored=scored,
            rng_state=json.loads(rng_state),
            best_genome=self._require_genome(best_id) if best_id is not None else None,
            best_fitness=_from_sql(best_fitness),
            stall=stall,
            finished=bool(finished),
            reason=reason,
            saved_at=saved_at,
        )

    def best_ever(self) -> Optional[ScoredGenome]:
        """Best genome with finite fitness recorded by the latest checkpoint"""
        rows = self._query(
            "SELECT best_genome_id, best_fitness FROM checkpoints WHERE run_id = ? "
            "ORDER BY generation DESC LIMIT 1",
            (self.run_id,))
        if not rows or rows[0][0] is None:
            return None
        return self._require_genome(rows[0][0]), _from_sql(rows[0][1])

    # Maintenance and reporting

    def prune(self, keep_top: int) -> int:
        """Drop archived genomes outside the top keep_top by fitness.

        Genomes referenced by the latest checkpoint (its pending and scored
        populations and the best-ever genome) are always kept. Fitness
        history in the scored table is left intact. Returns the number of
        genomes removed.
        """
        latest = self._query(
            "SELECT generation, best_genome_id FROM checkpoints WHERE run_id = ? "
            "ORDER BY generation DESC LIMIT 1",
            (self.run_id,))
        protected = set()
        if latest:
            generation, best_id = latest[0]
            protected.add(best_id)
            protected.update(row[0] for row in self._query(
                "SELECT genome_id FROM pending WHERE run_id = ? AND generation = ?",
                (self.run_id, generation)))
            protected.update(row[0] for row in self._query(
                "SELECT genome_id FROM scored WHERE run_id = ? AND generation = ?",
                (self.run_id, generation - 1)))

        # Best finite fitness each genome ever achieved; NaN when never finite.
        ids = [row[0] for row in self._query(
            "SELECT genome_id FROM genomes WHERE run_id = ? ORDER BY generation, genome_id",
            (self.run_id,))]
        best = dict.fromkeys(ids, float('nan'))
        for genome_id, fitness in self._query(
                "SELECT genome_id, fitness FROM scored WHERE run_id = ?", (self.run_id,)):
            fitness = _from_sql(fitness)
            if genome_id in best and is_finite(fitness) and not fitness <= best[genome_id]:
                best[genome_id] = fitness
        order = rank_order([best[genome_id] for genome_id in ids])
        keep = {ids[i] for i in order[:keep_top]} | protected
        doomed = [(self.run_id, genome_id) for genome_id in ids if genome_id not in keep]
        if not doomed:
            return 0
        try:
            with self.conn:
                self.conn.executemany(
                    "DELETE FROM bodies WHERE run_id = ? AND genome_id = ?", doomed)
                self.conn.executemany(
                    "DELETE FROM genomes WHERE run_id = ? AND genome_id = ?", doomed)
                if latest:
                    self.conn.execute(
                        "DELETE FROM pending WHERE run_id = ? AND generation < ?",
                        (self.run_id, latest[0][0]))
        except sqlite3.Error as err:
            raise PersistenceError(f"Could not prune run {self.run_id}: {err}") from err
        logger.info("Pruned %d genomes from run %s", len(doomed), self.run_id)
        return len(doomed)

    def generation_history(self) -> List[Dict[str, Any]]:
        """Per-generation fitness statistics over finite values"""
        rows = self._query(
            "SELECT generation, fitness FROM scored WHERE run_id = ? ORDER BY generation, idx",
            (self.run_id,))
        by_generation: Dict[int, List[float]] = {}
        for generation, fitness in rows:
            by_generation.setdefault(generation, []).append(_from_sql(fitness))

        history = []
        for generation, fitnesses in sorted(by_generation.items()):
            finite = [f for f in fitnesses if is_finite(f)]
            entry = {
                'generation': generation,
                'population_size': len(fitnesses),
                'non_finite': len(fitnesses) - len(finite),
            }
            if finite:
                entry['fitness'] = {
                    'min': min(finite),
                    'max': max(finite),
                    'mean': float(np.mean(finite)),
                    'std': float(np.std(finite)),
                }
            history.append(entry)
        return history

    def export_summary_report(self) -> str:
        """Generate a summary report of this run"""
        history = self.generation_history()
        if not history:
            return f"No evolution data for run {self.run_id}"
        state = self.load_latest()

        report_lines = []
        report_lines.append("=" * 60)
        report_lines.append(f"EVOLUTION SUMMARY REPORT: {self.run_id}")
        report_lines.append("=" * 60)

        config = self.load_run_config() or {}
        report_lines.append(f"Scoring expression: {config.get('scoring_expression', 'N/A')}")
        report_lines.append(f"Aggregation: {config.get('aggregation', 'N/A')}")
        report_lines.append(f"Generations evaluated: {len(history)}")
        report_lines.append(f"Population size: {history[-1]['population_size']}")
        if state is not None:
            status = f"finished ({state.reason})" if state.finished else "resumable"
            report_lines.append(f"Status: {status}")
            report_lines.append(f"Last checkpoint: {state.saved_at}")

        report_lines.append("\n" + "-" * 40)
        report_lines.append("FITNESS EVOLUTION")
        report_lines.append("-" * 40)

        first, last = history[0], history[-1]
        for label, entry in (("Initial", first), ("Final", last)):
            fitness = entry.get('fitness')
            if fitness:
                report_lines.append(f"{label} best fitness: {fitness['max']:.4f}")
                report_lines.append(f"{label} avg fitness: {fitness['mean']:.4f}")
            else:
                report_lines.append(f"{label} best fitness: N/A")
            report_lines.append(f"{label} non-finite genomes: {entry['non_finite']}")

        best = self.best_ever()
        report_lines.append("\n" + "-" * 40)
        report_lines.append("BEST EVER")
        report_lines.append("-" * 40)
        if best is None:
            report_lines.append("No genome with finite fitness")
        else:
            genome, fitness = best
            report_lines.append(f"Fitness: {fitness:.4f}")
            report_lines.append(str(genome))

        return "\n".join(report_lines)
