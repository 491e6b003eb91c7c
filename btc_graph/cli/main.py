"""Command-line interface for the graph indexer."""

import signal
import sys
from typing import Optional
import click
import structlog

from btc_graph.models.config import IndexerConfig
from btc_graph.core.indexer import ChainIndexer
from btc_graph.exceptions import ConsistencyError

logger = structlog.get_logger(__name__)


@click.group()
@click.option('--config-file', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--log-level', '-l', default='INFO',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']),
              help='Logging level')
@click.pass_context
def cli(ctx, config_file: Optional[str], log_level: str):
    """Bitcoin Graph Indexer CLI."""
    ctx.ensure_object(dict)

    # Load configuration
    try:
        if config_file:
            # Load from specific file
            config = IndexerConfig(_env_file=config_file)
        else:
            # Load from default .env file or environment
            config = IndexerConfig()

        # Override log level if specified
        config.log_level = log_level

        ctx.obj['config'] = config

    except Exception as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)


def _close(indexer: Optional[ChainIndexer]) -> None:
    if indexer is not None:
        indexer.close()


@cli.command()
@click.pass_context
def init_db(ctx):
    """Create graph tables, constraints and indexes."""
    config = ctx.obj['config']
    indexer = None

    click.echo("Initializing graph store...")

    try:
        indexer = ChainIndexer(config)
        indexer.initialize()
        click.echo("✅ Graph store initialized successfully")

    except Exception as e:
        click.echo(f"❌ Graph store initialization failed: {e}", err=True)
        sys.exit(1)
    finally:
        _close(indexer)


@cli.command()
@click.argument('start', type=click.IntRange(min=0))
@click.argument('end', type=click.IntRange(min=0))
@click.option('--with-height', is_flag=True,
              help='Pin the first block to START when its parent is not indexed')
@click.pass_context
def import_blocks(ctx, start: int, end: int, with_height: bool):
    """Import blocks START..END (inclusive)."""
    config = ctx.obj['config']
    indexer = None

    if start > end:
        click.echo(f"❌ Start height {start} is greater than end height {end}", err=True)
        sys.exit(1)

    try:
        indexer = ChainIndexer(config)
        indexer.initialize()

        click.echo(f"🔄 Importing blocks {start} to {end}...")
        report = indexer.import_range(start, end, anchor=with_height)

        click.echo(f"✅ Imported {len(report.stored)} blocks "
                   f"({len(report.skipped)} already stored)")
        if report.orphans_resolved:
            click.echo(f"🔗 Resolved {report.orphans_resolved} orphan blocks")
        if report.failed_txids:
            click.echo(f"⚠️  Skipped {len(report.failed_txids)} transactions that could not be fetched")

    except Exception as e:
        click.echo(f"❌ Block import failed: {e}", err=True)
        sys.exit(1)
    finally:
        _close(indexer)


@cli.command()
@click.argument('start', type=click.IntRange(min=0), required=False)
@click.argument('poll_interval', type=click.FloatRange(min=0), required=False)
@click.pass_context
def sync(ctx, start: Optional[int], poll_interval: Optional[float]):
    """Continuously synchronize from START, polling every POLL_INTERVAL seconds."""
    config = ctx.obj['config']
    start = start if start is not None else config.sync_start_height
    indexer = None
    previous_handlers = {}
    interval = poll_interval if poll_interval is not None else config.sync_poll_interval

    try:
        indexer = ChainIndexer(config)
        indexer.initialize()

        def handle_signal(signum, frame):
            click.echo("\n🛑 Stopping after the current tick...")
            indexer.scheduler.stop()

        for signum in (signal.SIGINT, signal.SIGTERM):
            previous_handlers[signum] = signal.signal(signum, handle_signal)

        click.echo(f"🔄 Starting continuous synchronization from {start} "
                   f"(poll interval: {interval}s)")
        click.echo("Press Ctrl+C to stop...")
        indexer.sync(start, interval)

        stats = indexer.scheduler.get_stats()
        click.echo(f"✅ Synchronization stopped after {stats['ticks']} ticks "
                   f"({stats['errors']} failed)")

    except ConsistencyError as e:
        click.echo(f"❌ Chain consistency failure, operator action required: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"❌ Synchronization failed: {e}", err=True)
        sys.exit(1)
    finally:
        for signum, handler in previous_handlers.items():
            signal.signal(signum, handler)
        _close(indexer)


@cli.command()
@click.argument('start', type=click.IntRange(min=0))
@click.argument('end', type=click.IntRange(min=0), required=False)
@click.pass_context
def detect_reorg(ctx, start: int, end: Optional[int]):
    """Detect and resolve reorganizations at START (or START..END)."""
    config = ctx.obj['config']
    indexer = None

    try:
        indexer = ChainIndexer(config)

        click.echo(f"🔍 Checking for reorganization at {start}"
                   + (f"..{end}" if end is not None else ""))
        results = indexer.detect_reorg(start, end)

        reorganized = [r for r in results if r.reorganized]
        if not reorganized:
            click.echo("✅ No reorganization detected")
        for result in reorganized:
            click.echo(f"🔀 Reorganization at {result.height}: fork point {result.fork_height}, "
                       f"{len(result.stale_blocks)} blocks marked stale, "
                       f"{len(result.report.stored) if result.report else 0} blocks replayed")

    except ConsistencyError as e:
        click.echo(f"❌ Chain consistency failure, operator action required: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"❌ Reorg detection failed: {e}", err=True)
        sys.exit(1)
    finally:
        _close(indexer)


@cli.command()
@click.pass_context
def resolve_orphans(ctx):
    """Assign heights to orphan blocks whose parent is now known."""
    config = ctx.obj['config']
    indexer = None

    try:
        indexer = ChainIndexer(config)
        result = indexer.resolve_orphans()

        click.echo(f"✅ Resolved {len(result.resolved)} orphan blocks "
                   f"({result.remaining} still waiting for a parent)")

    except Exception as e:
        click.echo(f"❌ Orphan resolution failed: {e}", err=True)
        sys.exit(1)
    finally:
        _close(indexer)


@cli.command()
@click.pass_context
def fix_heights(ctx):
    """Rebuild block heights from genesis."""
    config = ctx.obj['config']
    indexer = None

    try:
        indexer = ChainIndexer(config)
        result = indexer.fix_heights()
        stats = indexer.store.statistics()

        click.echo(f"✅ Heights rebuilt, {len(result.resolved)} orphan blocks resolved")
        click.echo(f"📊 Highest block height: {stats['max_height']}")
        click.echo(f"📊 Blocks without height: {stats['orphan_blocks']}")

    except Exception as e:
        click.echo(f"❌ Height repair failed: {e}", err=True)
        sys.exit(1)
    finally:
        _close(indexer)


@cli.command()
@click.pass_context
def status(ctx):
    """Show graph store statistics."""
    config = ctx.obj['config']
    indexer = None

    try:
        indexer = ChainIndexer(config)
        stats = indexer.status()

        def fmt(value):
            return f"{value:,}" if isinstance(value, int) else "n/a"

        click.echo("📊 Graph Indexer Status")
        click.echo("=" * 40)
        click.echo(f"Provider Tip: {fmt(stats.get('provider_tip'))}")
        click.echo(f"Highest Stored: {fmt(stats.get('max_height'))}")
        click.echo(f"Blocks Behind: {fmt(stats.get('blocks_behind'))}")
        click.echo(f"Blocks: {fmt(stats['blocks'])}")
        click.echo(f"Orphan Blocks: {fmt(stats['orphan_blocks'])}")
        click.echo(f"Stale Blocks: {fmt(stats['stale_blocks'])}")
        click.echo(f"Transactions: {fmt(stats['transactions'])}")
        click.echo(f"Outputs: {fmt(stats['outputs'])} ({fmt(stats['unspent_outputs'])} unspent)")
        click.echo(f"Addresses: {fmt(stats['addresses'])}")

        # Configuration
        click.echo("\n⚙️  Configuration")
        click.echo("=" * 40)
        click.echo(f"Batch Size: {config.sync_batch_size}")
        click.echo(f"Concurrency: {config.sync_concurrency}")
        click.echo(f"Rate Limit: {config.rate_limit_max_requests} per "
                   f"{config.rate_limit_time_window:g}s")

    except Exception as e:
        click.echo(f"❌ Failed to get status: {e}", err=True)
        sys.exit(1)
    finally:
        _close(indexer)


@cli.command()
@click.pass_context
def test_connection(ctx):
    """Test connections to Bitcoin Core and the graph store."""
    config = ctx.obj['config']
    indexer = None

    try:
        indexer = ChainIndexer(config)

        click.echo("🔍 Testing Bitcoin Core RPC connection...")
        rpc_ok = indexer.provider.test_connection()
        if rpc_ok:
            click.echo("✅ Bitcoin Core RPC connection successful")
        else:
            click.echo("❌ Bitcoin Core RPC connection failed")

        click.echo("🔍 Testing database connection...")
        db_ok = indexer.store.test_connection()
        if db_ok:
            click.echo("✅ Database connection successful")
        else:
            click.echo("❌ Database connection failed")

        if not (rpc_ok and db_ok):
            sys.exit(1)

    except Exception as e:
        click.echo(f"❌ Connection test failed: {e}", err=True)
        sys.exit(1)
    finally:
        _close(indexer)


@cli.command()
@click.pass_context
def version(ctx):
    """Show version information."""
    from btc_graph import __version__, __description__

    click.echo(f"Bitcoin Graph Indexer v{__version__}")
    click.echo(__description__)


if __name__ == '__main__':
    cli()
