"""
main.py — Command-line entry points for the EOL Checker.
serve runs the HTTP surface, worker runs the queue lanes, schedule is what
cron calls once a day to start the auto-check chain (crontab prints that entry).
"""

import sys
import threading
from datetime import datetime

import click
import uvicorn

from config import PROJECT_ROOT, SCHEDULE, SERVER, validate_config
from engine import build_engine
from monitoring import get_logger, setup_logging
from server import create_app
from task_queue import CLEANUP
from worker import LANES, run_workers

logger = get_logger("main")


def _bootstrap(title: str):
    """Logging, config warnings and engine for one command."""
    setup_logging()

    logger.info("=" * 60)
    logger.info(f"EOL CHECKER — {title}")
    logger.info(f"Timestamp: {datetime.now().isoformat()}")
    logger.info("=" * 60)

    for warning in validate_config():
        logger.warning(f"Config: {warning}")

    return build_engine()


@click.group()
def cli():
    """EOL Checker - lifecycle status checks for catalog parts"""
    pass


@cli.command()
@click.option("--host", default=SERVER["host"], help="Interface to bind")
@click.option("--port", default=SERVER["port"], type=int, help="Port to listen on")
@click.option("--with-worker/--no-worker", default=True, help="Run the queue worker in the same process")
def serve(host, port, with_worker):
    """Run the HTTP API (scraper callbacks, manual checks, status)"""
    engine = _bootstrap("HTTP server")
    if with_worker:
        threading.Thread(target=run_workers, args=(engine,), name="workers", daemon=True).start()

    uvicorn.run(create_app(engine), host=host, port=port)


@cli.command()
@click.option("--lane", "lanes", multiple=True, help="Lane to run (repeatable, default: all)")
def worker(lanes):
    """Run queue workers until interrupted"""
    for lane in lanes:
        if lane not in LANES:
            raise click.BadParameter(f"unknown lane '{lane}' (choose from {', '.join(LANES)})")

    engine = _bootstrap("Worker")
    run_workers(engine, lanes=list(lanes) or None)


@cli.command()
def schedule():
    """Start today's auto-check chain (cron entry point)"""
    engine = _bootstrap("Scheduled auto-check")
    outcome = engine.scheduler.start(triggered_by="schedule")
    engine.queue.enqueue(CLEANUP, {}, dedup_key="cleanup")
    click.echo(f"Auto-check {'started' if outcome['started'] else 'not started'}: {outcome['reason']}")


@cli.command()
def crontab():
    """Print the crontab entry that runs the daily schedule command"""
    click.echo(f"{SCHEDULE['cron']} cd {PROJECT_ROOT} && {sys.executable} main.py schedule")


@cli.command()
def cleanup():
    """Delete finished jobs older than the retention window"""
    engine = _bootstrap("Cleanup")
    deleted = engine.sweeper.sweep()
    click.echo(f"Deleted {deleted} old job(s)")


@cli.command()
@click.argument("maker")
@click.argument("model")
def check(maker, model):
    """Queue a manual EOL check for one part"""
    engine = _bootstrap(f"Manual check: {maker} {model}")
    outcome = engine.submit_check(maker, model)
    line = f"Job {outcome['jobId']}: {outcome['status']} ({outcome['urlCount']} URLs)"
    if outcome.get("error"):
        line += f" - {outcome['error']}"
    click.echo(line)


@cli.command(name="catalog-add")
@click.argument("sap_number")
@click.argument("maker")
@click.argument("model")
def catalog_add(sap_number, maker, model):
    """Add or update a catalog part"""
    engine = _bootstrap("Catalog update")
    item_id = engine.catalog.upsert_item(sap_number, maker, model)
    click.echo(f"Catalog item #{item_id}: {sap_number} {maker} {model}")


@cli.command(name="dead-letters")
def dead_letters():
    """List tasks that used up their attempts"""
    engine = _bootstrap("Dead letters")
    tasks = engine.queue.dead_letters()
    if not tasks:
        click.echo("No dead-lettered tasks.")
        return
    for task in tasks:
        click.echo(f"#{task.id} | {task.kind} | attempts={task.attempts} | {task.payload} | {task.last_error}")


if __name__ == "__main__":
    cli()
