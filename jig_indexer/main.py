"""Command line entry point for the ownership indexer."""

import asyncio
import json
import logging
import signal
import sys
from contextlib import asynccontextmanager
from typing import Iterable, Optional, Tuple

import click
import structlog
from dotenv import load_dotenv

from jig_indexer.config import settings
from jig_indexer.database import Database, LedgerPersistenceError
from jig_indexer.discovery import DiscoveryIndexer
from jig_indexer.indexer import OwnershipIndexer
from jig_indexer.ledger import Ledger, LedgerStore
from jig_indexer.models import NFTRecord
from jig_indexer.monitoring import MonitoringServer
from jig_indexer.spend_map import SpendMapCache
from jig_indexer.tracer import OwnershipTracer
from jig_indexer.woc_client import WhatsOnChainClient

logger = structlog.get_logger(__name__)


def configure_logging():
    """Configure stdlib logging and structlog from settings."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def open_store():
    """Database plus the ledger store bound to it."""
    database = Database()
    await database.connect()
    await database.create_tables()
    try:
        yield database, LedgerStore(database)
    finally:
        await database.disconnect()


class IndexerService:
    """Long-running service: query API plus discovery runs on demand."""

    def __init__(self, ledger: Ledger, store: LedgerStore, client: WhatsOnChainClient):
        self.ledger = ledger
        self.store = store
        self.discovery = DiscoveryIndexer(ledger, store, client)
        self.lock = asyncio.Lock()
        self.shutdown_event = asyncio.Event()
        self.monitoring: Optional[MonitoringServer] = None
        self.fatal_error: Optional[LedgerPersistenceError] = None

    def enqueue(self, txids: Iterable[str]) -> int:
        return self.discovery.enqueue(txids)

    async def run_discovery(self):
        """Run discovery; only one run touches the ledger at a time."""
        async with self.lock:
            try:
                return await self.discovery.run()
            except LedgerPersistenceError as e:
                logger.error("Ledger could not be saved, shutting down", error=str(e))
                self.fatal_error = e
                self.shutdown_event.set()
                raise

    async def start(self, port: Optional[int] = None):
        """Start the API and block until shutdown.

        Raises:
            LedgerPersistenceError: a discovery run could not save the ledger
        """
        self.monitoring = MonitoringServer(self, port=port)
        await self.monitoring.start()

        self.discovery.seed()
        initial = asyncio.create_task(self.run_discovery())

        await self.shutdown_event.wait()
        await self.stop()
        if not initial.done():
            initial.cancel()
        try:
            await initial
        except asyncio.CancelledError:
            pass
        if self.fatal_error is not None:
            raise self.fatal_error

    async def stop(self):
        """Stop all services."""
        logger.info("Shutting down services")
        if self.monitoring:
            await self.monitoring.stop()

    def handle_signal(self, sig, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {sig}")
        self.shutdown_event.set()


def run(coro):
    """Run a command coroutine, exiting non-zero on failure."""
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


@click.group()
def cli():
    """Run-jig ownership indexer for a BSV NFT collection."""
    load_dotenv()
    configure_logging()


@cli.command("build-spendmap")
@click.argument("address", required=False)
def build_spendmap(address: Optional[str]):
    """Build and store the spend map of ADDRESS (default: minting address)."""
    address = address or settings.minting_address

    async def _build():
        async with open_store() as (database, _):
            async with WhatsOnChainClient(request_delay=settings.build_request_delay) as client:
                spend_maps = SpendMapCache(client, database)
                spend_map = await spend_maps.build(address)
        click.echo(f"{address}: {spend_map.tx_count} txs, {len(spend_map.spends)} spends, "
                   f"{len(spend_map.dust_outputs)} dust outputs")

    run(_build())


@cli.command("index-owners")
@click.option("--start", type=int, default=None, help="Lowest NFT number to trace")
@click.option("--batch", "batch_size", type=int, default=None, help="Maximum NFTs to trace")
@click.option("--refresh", is_flag=True, help="Trace NFTs that already have an owner again")
@click.option("--build-missing", is_flag=True, help="Build the minting address spend map if missing")
def index_owners(start: Optional[int], batch_size: Optional[int], refresh: bool, build_missing: bool):
    """Trace owners of numbered NFTs from their mint outputs."""

    async def _index():
        async with open_store() as (database, store):
            ledger = await store.load()
            async with WhatsOnChainClient() as client:
                spend_maps = SpendMapCache(client, database)
                indexer = OwnershipIndexer(
                    ledger, store, OwnershipTracer(client, spend_maps), spend_maps,
                    auto_build_spend_map=build_missing or None,
                )
                report = await indexer.run(start=start, batch_size=batch_size, refresh=refresh)
        click.echo(f"Done. {report.indexed} indexed, {report.failed} failed, "
                   f"{report.remaining} remaining, {report.unique_owners} unique owners.")

    run(_index())


@cli.command()
@click.option("--txid", "txids", multiple=True, help="Transaction id to queue (repeatable)")
@click.option("--budget", type=int, default=None, help="Maximum queue pops this run")
@click.option("--no-seed", is_flag=True, help="Do not queue the configured seed txids")
def discover(txids: Tuple[str, ...], budget: Optional[int], no_seed: bool):
    """Process queued Run transactions."""

    async def _discover():
        async with open_store() as (_, store):
            ledger = await store.load()
            async with WhatsOnChainClient(request_delay=settings.discovery_request_delay) as client:
                discovery = DiscoveryIndexer(ledger, store, client)
                if not no_seed:
                    discovery.seed()
                discovery.enqueue(txids)
                report = await discovery.run(budget=budget)
        click.echo(f"Discovery done. {report.popped} processed, {report.queued} queued, "
                   f"{report.nfts} NFTs indexed.")

    run(_discover())


@cli.command()
@click.option("--port", type=int, default=None, help="API port")
def serve(port: Optional[int]):
    """Serve the query API and run discovery on demand."""

    async def _serve():
        async with open_store() as (_, store):
            ledger = await store.load()
            async with WhatsOnChainClient(request_delay=settings.discovery_request_delay) as client:
                service = IndexerService(ledger, store, client)
                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, service.handle_signal, sig, None)
                await service.start(port=port)
                await store.flush(ledger)

    run(_serve())


@cli.command("seed-mints")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def seed_mints(path: str):
    """Add numbered NFTs from a JSON file mapping number to mint txid.

    Entries may also be objects with ``mint_txid`` and optional ``name``.
    """
    with open(path, "r", encoding="utf-8") as f:
        entries = json.load(f)

    async def _seed():
        async with open_store() as (_, store):
            ledger = await store.load()
            added = 0
            for number, entry in entries.items():
                if str(number) in ledger.nfts:
                    continue
                if isinstance(entry, str):
                    entry = {"mint_txid": entry}
                ledger.add_nft(NFTRecord(
                    id=str(number),
                    number=int(number),
                    mint_txid=entry["mint_txid"],
                    origin=entry["mint_txid"],
                    name=entry.get("name") or f"{ledger.collection.name} #{number}",
                ))
                added += 1
            await store.flush(ledger)
        click.echo(f"Added {added} NFTs.")

    run(_seed())


@cli.command("export-ledger")
@click.argument("path", type=click.Path(dir_okay=False, writable=True))
def export_ledger(path: str):
    """Write the stored ledger document to PATH as JSON."""

    async def _export():
        async with open_store() as (_, store):
            ledger = await store.load()
        ledger.touch()
        with open(path, "w", encoding="utf-8") as f:
            json.dump(ledger.to_document(), f, indent=2)
        click.echo(f"Exported {len(ledger.nfts)} NFTs to {path}")

    run(_export())


@cli.command()
def stats():
    """Print ledger and spend map statistics."""

    async def _stats():
        async with open_store() as (database, store):
            ledger = await store.load()
            spend_maps = await database.list_spend_maps()
        click.echo(json.dumps({
            **ledger.summary(),
            "unique_owners": ledger.unique_owners(),
            "spend_maps": [
                {**m, "built_at": m["built_at"].isoformat() if m["built_at"] else None}
                for m in spend_maps
            ],
        }, indent=2))

    run(_stats())


@cli.command("reset-ledger")
def reset_ledger():
    """Delete the stored ledger (spend maps are kept)."""
    click.confirm(
        "This will DELETE the indexed ledger. Are you sure?",
        abort=True
    )

    async def _reset():
        async with open_store() as (database, _):
            logger.warning("Resetting ledger", name=settings.ledger_name)
            await database.delete_ledger(settings.ledger_name)
        click.echo("Ledger reset complete")

    run(_reset())


def main():
    cli()


if __name__ == "__main__":
    main()
