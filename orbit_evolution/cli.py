"""
orbit_evolution/cli.py - Command-line interface
"""
import logging
import os
import signal
import sys
import time

import click

from .archive import EvolutionArchive, PersistenceError
from .ast_nodes import evaluate
from .config import ConfigError, EvolutionConfig, config_from_dict, load_config
from .driver import EvolutionDriver
from .fitness import FitnessScorer
from .genome import OrbitalGenome
from .parser import ParseError, compile_expression, parse_expression
from .simulation import SimulationOracle, Snapshot

# Options that may change when a stored run is resumed.
RESUMABLE_OPTIONS = ('max_generations', 'target_fitness', 'stall_generations', 'workers', 'keep_top')


def setup_logging(verbose: bool = False):
    """Setup basic logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stderr)
        ]
    )


@click.group()
def cli():
    """Orbit Evolution - Evolve planetary systems against a scoring expression"""
    pass


def _format_fitness(value) -> str:
    return 'N/A' if value is None else f"{value:.4f}"


@cli.command()
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True, dir_okay=False),
              help='YAML configuration file')
@click.option('--db', default='evolution.db', help='SQLite archive file')
@click.option('--run-id', default='default', help='Run name inside the archive')
@click.option('--generations', '-g', type=int, help='Generation limit')
@click.option('--population', '-p', type=int, help='Population size')
@click.option('--expression', '-e', help='Scoring expression')
@click.option('--aggregation', type=click.Choice(['final', 'sum', 'max']),
              help='How per-tick scores become one fitness')
@click.option('--target', type=float, help='Stop once best fitness reaches this value')
@click.option('--stall', type=int, help='Stop after this many generations without improvement')
@click.option('--seed', type=int, help='Random seed')
@click.option('--workers', '-w', type=int, help='Worker processes (0 evaluates in-process)')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
def evolve(config_path, db, run_id, generations, population, expression, aggregation,
           target, stall, seed, workers, verbose):
    """Evolve orbital systems, resuming the run if the archive already holds it"""
    setup_logging(verbose)
    overrides = {
        'max_generations': generations,
        'population_size': population,
        'scoring_expression': expression,
        'aggregation': aggregation,
        'target_fitness': target,
        'stall_generations': stall,
        'seed': seed,
        'workers': workers,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}

    archive = None
    try:
        archive = EvolutionArchive(db, run_id)
        stored = archive.load_run_config()
        if stored is not None:
            ignored = sorted(set(overrides) - set(RESUMABLE_OPTIONS))
            if config_path:
                ignored.append(f"config file {config_path}")
            if ignored:
                click.echo(f"Resuming run {run_id}; ignoring {', '.join(ignored)}", err=True)
            stored.update({k: v for k, v in overrides.items() if k in RESUMABLE_OPTIONS})
            config = config_from_dict(stored)
        else:
            config = load_config(config_path) if config_path else EvolutionConfig()
            config = config_from_dict({**config.to_dict(), **overrides})
        driver = EvolutionDriver(config, archive, on_generation=_echo_generation)
    except (ConfigError, ParseError, PersistenceError) as err:
        if archive is not None:
            archive.close()
        raise click.ClickException(str(err))

    click.echo(f"Run {run_id}: population {config.population_size}, "
               f"scoring '{driver.scorer.expression}' ({config.aggregation})")

    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: driver.cancel())
    start_time = time.time()
    try:
        best = driver.run()
    except PersistenceError as err:
        raise click.ClickException(str(err))
    finally:
        signal.signal(signal.SIGINT, previous_handler)
        archive.close()

    click.echo(f"Stopped: {driver.termination_reason} after {time.time() - start_time:.1f}s")
    if best is None:
        click.echo("No genome reached a finite fitness")
    else:
        genome, fitness = best
        click.echo(f"Best fitness: {fitness:.4f} ({genome.genome_id}, {len(genome)} bodies)")


def _echo_generation(driver: EvolutionDriver, stats):
    fitness = stats.get('fitness', {})
    click.echo(f"Gen {stats['generation']:4d}: "
               f"Best={_format_fitness(fitness.get('max'))} "
               f"Avg={_format_fitness(fitness.get('mean'))} "
               f"NonFinite={stats['non_finite']} "
               f"BestEver={stats['best_ever']:.4f}")


@cli.command()
@click.argument('expression')
@click.option('--elapsed', type=float, default=0.0, help='Value bound to elapsed')
@click.option('--total-mass', type=float, default=0.0, help='Value bound to total_mass')
@click.option('--mass-count', type=int, default=0, help='Value bound to mass_count')
def check(expression, elapsed, total_mass, mass_count):
    """Parse a scoring expression and evaluate it once"""
    try:
        tree = parse_expression(expression)
    except ParseError as err:
        raise click.ClickException(str(err))
    simplified = compile_expression(expression)
    snapshot = Snapshot(elapsed, total_mass, mass_count)
    click.echo(f"Parsed:     {tree}")
    click.echo(f"Simplified: {simplified}")
    click.echo(f"Depth:      {simplified.get_depth()}")
    click.echo(f"Value:      {evaluate(simplified, snapshot)}")


@cli.command()
@click.option('--db', default='evolution.db', type=click.Path(exists=True, dir_okay=False),
              help='SQLite archive file')
@click.option('--run-id', default='default', help='Run name inside the archive')
@click.option('--out', '-o', type=click.Path(dir_okay=False), help='Write the genome JSON here')
def best(db, run_id, out):
    """Print the best-ever genome of a run as JSON"""
    try:
        with EvolutionArchive(db, run_id) as archive:
            result = archive.best_ever()
    except PersistenceError as err:
        raise click.ClickException(str(err))
    if result is None:
        raise click.ClickException(f"Run {run_id} has no genome with finite fitness")
    genome, fitness = result
    click.echo(genome.to_json(out))
    click.echo(f"Fitness: {fitness}", err=True)


@cli.command()
@click.option('--db', default='evolution.db', help='SQLite archive file')
@click.option('--run-id', default='default', help='Run name inside the archive')
@click.option('--genome', 'genome_path', type=click.Path(exists=True, dir_okay=False),
              help='Genome JSON file; defaults to the run\'s best-ever genome')
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True, dir_okay=False),
              help='YAML configuration to score with instead of the run\'s own')
def replay(db, run_id, genome_path, config_path):
    """Re-simulate a genome and print its trajectory summary and score"""
    stored, stored_best = None, None
    try:
        if os.path.exists(db):
            with EvolutionArchive(db, run_id) as archive:
                stored = archive.load_run_config()
                stored_best = archive.best_ever()
        if config_path:
            config = load_config(config_path)
        else:
            config = config_from_dict(stored) if stored is not None else EvolutionConfig()
        if genome_path:
            genome = OrbitalGenome.from_json(filename=genome_path)
        elif stored_best is not None:
            genome = stored_best[0]
        else:
            raise click.ClickException("No genome to replay; pass --genome")
        scorer = FitnessScorer.from_config(config)
    except (ConfigError, ParseError, PersistenceError) as err:
        raise click.ClickException(str(err))

    trajectory = SimulationOracle(config.simulation).run(genome)
    final = trajectory[-1]
    click.echo(f"Genome {genome.genome_id}: {len(genome)} bodies")
    click.echo(f"Ticks simulated: {len(trajectory)}")
    click.echo(f"Final snapshot: elapsed={final.elapsed:.3f} "
               f"total_mass={final.total_mass:.3f} mass_count={final.mass_count}")
    click.echo(f"Fitness: {scorer.score(trajectory)}")


@cli.command()
@click.option('--db', default='evolution.db', type=click.Path(exists=True, dir_okay=False),
              help='SQLite archive file')
@click.option('--run-id', help='Run name inside the archive; lists runs when omitted')
def report(db, run_id):
    """Summarize a run, or list the runs in an archive"""
    try:
        with EvolutionArchive(db, run_id or 'default') as archive:
            if run_id is None:
                runs = archive.list_runs()
                if not runs:
                    click.echo("No runs archived")
                for run in runs:
                    click.echo(f"{run['run_id']}: {run['generations']} generations, "
                               f"'{run['expression']}' (created {run['created_at']})")
                return
            click.echo(archive.export_summary_report())
    except PersistenceError as err:
        raise click.ClickException(str(err))


if __name__ == '__main__':
    cli()
