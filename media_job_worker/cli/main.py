"""
Main CLI entry point for the media job worker

Provides commands to run the worker, submit jobs, and inspect or reset
checkpoints and dead-lettered messages.
"""

import asyncio
import json
import sys
from typing import Optional

import click

from ..core.exceptions import ConfigurationError, ValidationError, JobWorkerError
from ..core.worker import MediaWorker, EXIT_CONFIG_ERROR, build_database, build_transport
from ..models.job import decode_job
from ..services.checkpoint_store import PROGRESS_KEY, create_checkpoint_store
from ..utils.config import WorkerConfig, load_config
from ..utils.logger import setup_logger


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.option('--log-level', '-l', default=None, help='Log level (overrides configuration)')
@click.option('--verbose', '-v', is_flag=True, help='Verbose, human-readable output')
@click.pass_context
def cli(ctx, config, log_level, verbose):
    """Media job worker CLI"""

    ctx.ensure_object(dict)

    try:
        worker_config = load_config(config)
    except ConfigurationError as e:
        click.echo(f"Error loading configuration: {e.message}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    if log_level:
        worker_config.logging.level = log_level

    logger = setup_logger(
        "media_job_worker",
        level=worker_config.logging.level,
        structured=worker_config.logging.structured and not verbose,
        log_file=worker_config.logging.log_file
    )
    ctx.obj['logger'] = logger
    ctx.obj['config'] = worker_config
    ctx.obj['verbose'] = verbose


@cli.command('run')
@click.pass_context
def run_worker(ctx):
    """Start the worker and consume jobs until stopped"""
    config: WorkerConfig = ctx.obj['config']

    try:
        worker = MediaWorker(config)
    except (ConfigurationError, ValueError) as e:
        click.echo(f"Error configuring worker: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    sys.exit(asyncio.run(worker.run()))


@cli.command('submit')
@click.option('--file', 'message_file', type=click.Path(exists=True), help='Job message JSON file')
@click.option('--json', 'message_json', help='Job message as JSON string')
@click.pass_context
def submit_job(ctx, message_file, message_json):
    """Validate a job message and enqueue it"""

    if bool(message_file) == bool(message_json):
        click.echo("Error: pass exactly one of --file or --json", err=True)
        sys.exit(1)

    if message_file:
        with open(message_file, 'r', encoding='utf-8') as f:
            body = f.read()
    else:
        body = message_json

    try:
        job = decode_job(body)
    except ValidationError as e:
        click.echo(f"Error validating job message: {e.message}", err=True)
        sys.exit(1)

    async def _submit():
        transport = build_transport(ctx.obj['config'], recover=False)
        try:
            await transport.connect()
            return await transport.publish(body)
        finally:
            await transport.close()

    try:
        message_id = asyncio.run(_submit())
    except JobWorkerError as e:
        click.echo(f"Error submitting job: {e.message}", err=True)
        sys.exit(1)

    click.echo("Job submitted successfully!")
    click.echo(f"Message ID: {message_id}")
    click.echo(f"Job ID: {job.job_id}")
    click.echo(f"Media: {job.media.name} ({job.media.kind.value})")

    if ctx.obj['verbose']:
        click.echo(f"Job: {json.dumps(job.to_dict(), indent=2, default=str)}")


@cli.group()
@click.pass_context
def checkpoint(ctx):
    """Checkpoint inspection commands"""
    pass


async def _with_store(config: WorkerConfig, action):
    database = build_database(config)
    if database is not None:
        await database.initialize()
    store = create_checkpoint_store(
        config.checkpoint.backend,
        directory=config.checkpoint.directory,
        database_manager=database
    )
    try:
        return await action(store)
    finally:
        await store.close()


@checkpoint.command('show')
@click.argument('job_id')
@click.pass_context
def show_checkpoint(ctx, job_id):
    """Show the stage cursors stored for a job"""

    try:
        cursors = asyncio.run(_with_store(ctx.obj['config'], lambda store: store.get_all(job_id)))
    except JobWorkerError as e:
        click.echo(f"Error reading checkpoint: {e.message}", err=True)
        sys.exit(1)

    if not cursors:
        click.echo(f"No checkpoint for job {job_id}")
        return

    progress = cursors.pop(PROGRESS_KEY, None)
    click.echo(f"Checkpoint for job {job_id}:")
    for stage, cursor in cursors.items():
        click.echo(f"  {stage:<12} {cursor}")
    if progress is not None:
        click.echo(f"  progress     {progress}%")


@checkpoint.command('reset')
@click.argument('job_id')
@click.confirmation_option(prompt='Reset all stage cursors for this job?')
@click.pass_context
def reset_checkpoint(ctx, job_id):
    """Clear a job's checkpoint so it starts from scratch"""

    try:
        asyncio.run(_with_store(ctx.obj['config'], lambda store: store.clear(job_id)))
    except JobWorkerError as e:
        click.echo(f"Error resetting checkpoint: {e.message}", err=True)
        sys.exit(1)

    click.echo(f"Checkpoint for job {job_id} cleared")


@cli.group('dead-letters')
@click.pass_context
def dead_letters(ctx):
    """Dead-letter queue commands"""
    pass


@dead_letters.command('list')
@click.option('--limit', type=int, default=20, help='Maximum entries to show')
@click.pass_context
def list_dead_letters(ctx, limit):
    """List dead-lettered messages, most recent first"""

    async def _list():
        transport = build_transport(ctx.obj['config'], recover=False)
        try:
            await transport.connect()
            return await transport.list_dead_letters(limit)
        finally:
            await transport.close()

    try:
        entries = asyncio.run(_list())
    except JobWorkerError as e:
        click.echo(f"Error listing dead letters: {e.message}", err=True)
        sys.exit(1)

    if not entries:
        click.echo("No dead-lettered messages")
        return

    click.echo(f"{'MESSAGE ID':<34} {'DELIVERIES':<11} REASON")
    click.echo("-" * 80)
    for entry in entries:
        click.echo(f"{entry.get('id', '-'):<34} {entry.get('deliveries', '-')!s:<11} {entry.get('reason', '')}")
        if ctx.obj['verbose']:
            click.echo(f"  body: {entry.get('body', entry.get('raw', ''))}")


@dead_letters.command('requeue')
@click.argument('message_id')
@click.pass_context
def requeue_dead_letter(ctx, message_id):
    """Move a dead-lettered message back to the queue"""

    async def _requeue():
        transport = build_transport(ctx.obj['config'], recover=False)
        try:
            await transport.connect()
            return await transport.requeue_dead_letter(message_id)
        finally:
            await transport.close()

    try:
        found = asyncio.run(_requeue())
    except JobWorkerError as e:
        click.echo(f"Error requeueing message: {e.message}", err=True)
        sys.exit(1)

    if not found:
        click.echo(f"Message {message_id} not found", err=True)
        sys.exit(1)
    click.echo(f"Message {message_id} requeued")


def main(argv: Optional[list] = None):
    """Main CLI entry point"""
    cli(args=argv)


if __name__ == '__main__':
    main()
