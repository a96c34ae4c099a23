#!/usr/bin/env python
"""
Management Script

CLI commands for database management (Flask-Migrate) and sync operations.

Usage:
    # Database migrations
    python manage.py db init
    python manage.py db migrate -m "Add new column"
    python manage.py db upgrade

    # Sync a remote database
    python manage.py sync-run <database_id>
    python manage.py sync-run <database_id> --full --check-deletions

    # Asset download queue
    python manage.py queue-process --batch-size 10
    python manage.py queue-worker
"""
import os
import sys
import time

from flask.cli import with_appcontext
import click
from sqlalchemy import inspect

from notion_sync import create_app
from notion_sync.extensions import db
from notion_sync.services.engine import get_sync_engine
from notion_sync.services.sync.errors import ListingError, LockLostError, SyncInProgressError

app = create_app()


@app.cli.command('db-status')
@with_appcontext
def db_status():
    """Show database connection status and table info."""
    try:
        db.session.execute(db.text('SELECT 1')).fetchone()
        click.echo(click.style('✓ Database connection OK', fg='green'))

        tables = inspect(db.engine).get_table_names()
        click.echo('\nTables in database:')
        for table in tables:
            click.echo(f'  - {table}')
    except Exception as e:
        click.echo(click.style(f'✗ Database error: {e}', fg='red'))


@app.cli.command('sync-run')
@click.argument('database_id')
@click.option('--full', is_flag=True, help='Re-import every record instead of only changed ones.')
@click.option('--check-deletions', is_flag=True, help='Delete local records removed remotely.')
@with_appcontext
def sync_run(database_id, full, check_deletions):
    """Synchronize one remote database."""
    coordinator = get_sync_engine().coordinator
    try:
        stats = coordinator.run(database_id, incremental=not full, check_deletions=check_deletions)
    except SyncInProgressError as e:
        click.echo(click.style(f'✗ {e}', fg='yellow'))
        sys.exit(2)
    except ListingError as e:
        click.echo(click.style(f'✗ {e}', fg='red'))
        sys.exit(1)
    except LockLostError as e:
        click.echo(click.style(f'✗ {e}', fg='red'))
        sys.exit(3)

    summary = stats.summary()
    color = 'green' if summary['failed'] == 0 else 'yellow'
    click.echo(click.style(
        f"✓ total={summary['total']} created={summary['created']} updated={summary['updated']} "
        f"skipped={summary['skipped']} deleted={summary['deleted']} failed={summary['failed']}",
        fg=color
    ))
    for error in stats.errors[:20]:
        click.echo(f"  - {error}")


@app.cli.command('queue-process')
@click.option('--batch-size', type=int, default=None, help='Tasks to claim (default DOWNLOAD_BATCH_SIZE).')
@with_appcontext
def queue_process(batch_size):
    """Run one download queue tick."""
    queue = get_sync_engine().download_queue
    result = queue.process_batch(batch_size)
    click.echo(
        f"claimed={result['claimed']} succeeded={result['succeeded']} "
        f"retried={result['retried']} failed={result['failed']} remaining={queue.queue_size()}"
    )


@app.cli.command('queue-worker')
@click.option('--interval', type=float, default=None, help='Seconds between idle polls.')
def queue_worker(interval):
    """Run the download queue worker in the foreground."""
    from notion_sync.services.sync.media_queue import QueueWorker

    engine = get_sync_engine(app)
    worker = engine.worker or QueueWorker(
        app,
        engine.download_queue,
        interval=interval or app.config.get('QUEUE_WORKER_INTERVAL', 30.0),
    )
    click.echo('Queue worker running, press Ctrl+C to stop')
    worker.start()
    try:
        while worker.running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        click.echo('Stopping queue worker...')
    finally:
        worker.stop()


@app.cli.command('cleanup-stale')
@with_appcontext
def cleanup_stale():
    """Fail stale sync runs and requeue stale downloads."""
    engine = get_sync_engine()
    cleaned = engine.coordinator.cleanup_stale_runs()
    recovered = engine.download_queue.recover_stale()
    if cleaned or recovered:
        click.echo(click.style(f'✓ Cleaned {cleaned} stale runs, requeued {recovered} downloads', fg='green'))
    else:
        click.echo('No stale runs found')


if __name__ == '__main__':
    import subprocess

    if len(sys.argv) > 1 and sys.argv[1] == 'db':
        os.environ['FLASK_APP'] = 'manage.py'
        subprocess.run(['flask'] + sys.argv[1:])
    else:
        app.cli()
