import argparse
import logging
import sys
from typing import List, Optional, Sequence, Tuple

from dotenv import load_dotenv

from collection_ledger.config import (
    DEFAULT_CONFIG_PATH,
    ChainSettings,
    ConfigError,
    Settings,
    configure_logging,
    load_settings,
)
from collection_ledger.extractors.logs import ChainLogScanner, iter_ranges
from collection_ledger.extractors.marketplace import CollectionSummary, MarketplaceApiError, MarketplaceClient
from collection_ledger.extractors.rpc import RpcClient
from collection_ledger.extractors.transactions import TransactionInspector
from collection_ledger.handlers.dlq import DeadLetterQueue
from collection_ledger.loaders.checkpoints import (
    OWNERS_LAST_BLOCK,
    SALES_LAST_SYNCED,
    SALES_ONCHAIN_LAST_BLOCK,
    CheckpointStore,
    FileCheckpointStore,
    SqlCheckpointStore,
)
from collection_ledger.loaders.ledger import Ledger
from collection_ledger.transformers.aggregates import compute_rarity_ranks
from collection_ledger.transformers.owners import OwnerFold, fold_owners
from collection_ledger.transformers.sale_detector import SaleDetector
from collection_ledger.transformers.sales import parse_timestamp


logger = logging.getLogger(__name__)

JOBS = ("owners", "onchain-sales", "marketplace-sales", "rarity", "collection-stats", "backfill-owners")
JOB_HELP = (
    "jobs: owners updates current owners incrementally but leaves transfer counts untouched; "
    "backfill-owners rescans from the deploy block and is the only job that refreshes transfer counts"
)


def resolve_range(
    checkpoints: CheckpointStore,
    key: str,
    rpc: RpcClient,
    chain: ChainSettings,
    from_block: Optional[int] = None,
    to_block: Optional[int] = None,
) -> Tuple[int, int, bool]:
    """``(start, head, advance_checkpoint)`` for a block-range job.

    Without overrides the job resumes after the checkpoint, or at the deploy
    block on a first run. An explicit ``--from-block`` that would leave a hole
    after the checkpoint still runs but does not move the checkpoint.
    """
    last = checkpoints.get_block(key)
    resume_at = last + 1 if last is not None else chain.deploy_block
    start = from_block if from_block is not None else resume_at
    head = to_block if to_block is not None else rpc.safe_block_number(chain.confirmations)
    return start, head, start <= resume_at


def _warn_gaps(scanner: ChainLogScanner) -> None:
    for lo, hi in scanner.gaps:
        logger.warning("Blocks %d-%d were skipped; replay with --from-block %d --to-block %d", lo, hi, lo, hi)


def sync_owners(
    scanner: ChainLogScanner,
    ledger: Ledger,
    checkpoints: CheckpointStore,
    chain: ChainSettings,
    from_block: Optional[int] = None,
    to_block: Optional[int] = None,
    dry_run: bool = False,
) -> int:
    """Incremental owner update from the last checkpoint.

    Only ``owner_address`` and ``last_block`` are written. A partial window
    cannot know how often a token moved before it, so ``transfer_count`` is
    left as it is; ``backfill-owners`` rescans from the deploy block and is
    the only job that refreshes it. Returns the number of owner rows written.
    """
    start, head, advance = resolve_range(checkpoints, OWNERS_LAST_BLOCK, scanner.rpc, chain, from_block, to_block)
    if start > head:
        logger.info("No new blocks to process (owners): checkpoint is at %d", start - 1)
        return 0

    logger.info("Owner sync range: %d to %d", start, head)
    updated = 0
    for lo, hi in iter_ranges(start, head, chain.checkpoint_every_blocks):
        fold = fold_owners(scanner.scan_transfers(chain.contract_address, lo, hi))
        _warn_gaps(scanner)
        if dry_run:
            logger.info("[dry-run] blocks %d-%d: %d owner changes", lo, hi, len(fold))
            continue
        updated += ledger.update_owners(fold)
        if advance:
            checkpoints.set(OWNERS_LAST_BLOCK, hi)
    return updated


def backfill_owners(
    scanner: ChainLogScanner,
    ledger: Ledger,
    checkpoints: CheckpointStore,
    chain: ChainSettings,
    to_block: Optional[int] = None,
    dry_run: bool = False,
) -> OwnerFold:
    """Full rescan from the deploy block. Writes owners together with absolute
    transfer counts, so it is the only job that touches ``transfer_count``."""
    head = to_block if to_block is not None else scanner.rpc.safe_block_number(chain.confirmations)
    logger.info("Owner backfill range: %d to %d", chain.deploy_block, head)
    fold = OwnerFold()
    gaps: List[Tuple[int, int]] = []
    for lo, hi in iter_ranges(chain.deploy_block, head, chain.checkpoint_every_blocks):
        fold_owners(scanner.scan_transfers(chain.contract_address, lo, hi), fold)
        _warn_gaps(scanner)
        gaps.extend(scanner.gaps)
        logger.info("Backfill through block %d: %d tokens seen", hi, len(fold))

    if dry_run:
        logger.info("[dry-run] would write owners for %d tokens", len(fold))
        return fold
    ledger.update_owners(fold, with_counts=True)
    if gaps:
        logger.warning("Backfill finished with %d skipped range(s); transfer counts may be low", len(gaps))
    checkpoints.set(OWNERS_LAST_BLOCK, head)
    return fold


def sync_onchain_sales(
    scanner: ChainLogScanner,
    detector: SaleDetector,
    ledger: Ledger,
    checkpoints: CheckpointStore,
    chain: ChainSettings,
    from_block: Optional[int] = None,
    to_block: Optional[int] = None,
    dry_run: bool = False,
) -> int:
    start, head, advance = resolve_range(checkpoints, SALES_ONCHAIN_LAST_BLOCK, scanner.rpc, chain, from_block, to_block)
    if start > head:
        logger.info("No new blocks to process (on-chain sales): checkpoint is at %d", start - 1)
        return 0

    logger.info("On-chain sales range: %d to %d", start, head)
    inserted = 0
    for lo, hi in iter_ranges(start, head, chain.checkpoint_every_blocks):
        events = list(scanner.scan_transfers(chain.contract_address, lo, hi))
        _warn_gaps(scanner)
        logger.info("Blocks %d-%d: %d transfers", lo, hi, len(events))
        sales = detector.detect(events)
        if dry_run:
            logger.info("[dry-run] blocks %d-%d: %d sales detected", lo, hi, len(sales))
            continue
        inserted += ledger.insert_sales(sales)
        ledger.recompute_sale_stats({sale.token_id for sale in sales})
        if advance:
            checkpoints.set(SALES_ONCHAIN_LAST_BLOCK, hi)
    logger.info("On-chain sales sync complete: %d new sales", inserted)
    return inserted


def sync_marketplace_sales(
    client: MarketplaceClient,
    ledger: Ledger,
    checkpoints: CheckpointStore,
    page_size: Optional[int] = None,
    dry_run: bool = False,
) -> int:
    """Insert new marketplace sales page by page.

    The checkpoint is the newest ``sold_at`` seen, not the wall clock, so a
    sale indexed late by the provider is still picked up next run. Pages come
    newest first, so it only moves once every page down to the previous
    checkpoint was read; after a failed page the rows already inserted stay
    and the next run fetches the window again.
    """
    last_synced = parse_timestamp(checkpoints.get(SALES_LAST_SYNCED))
    logger.info("Marketplace sales since %s", last_synced.isoformat() if last_synced else "the beginning")
    fetched = 0
    inserted = 0
    newest = None
    try:
        for records in client.iter_pages_since(last_synced, page_size):
            if not records:
                continue
            fetched += len(records)
            page_newest = max(record.sold_at for record in records)
            newest = page_newest if newest is None else max(newest, page_newest)
            if dry_run:
                continue
            inserted += ledger.insert_sales(records)
            ledger.recompute_sale_stats({record.token_id for record in records})
    except MarketplaceApiError as exc:
        logger.error(
            "Marketplace sync stopped at %s (HTTP %s) after %d sales, %d inserted; checkpoint left at %s: %s",
            exc.endpoint, exc.status, fetched, inserted, last_synced, exc,
        )
        return inserted

    if not fetched:
        logger.info("No new marketplace sales")
        return 0
    if dry_run:
        logger.info("[dry-run] %d marketplace sales fetched", fetched)
        return 0
    checkpoints.set(SALES_LAST_SYNCED, newest.isoformat())
    logger.info("Marketplace sales sync complete: %d new sales", inserted)
    return inserted


def recompute_rarity(ledger: Ledger, dry_run: bool = False) -> int:
    if dry_run:
        ranks = compute_rarity_ranks(ledger.token_scores())
        logger.info("[dry-run] would rank %d tokens", len(ranks))
        return len(ranks)
    return ledger.recompute_rarity_ranks()


def snapshot_collection_stats(client: MarketplaceClient, ledger: Ledger, dry_run: bool = False) -> CollectionSummary:
    summary = client.get_collection_summary()
    logger.info(
        "Collection floor %s, 24h volume %s, holders %s",
        summary.floor_price, summary.volume_24h, summary.total_holders,
    )
    if not dry_run:
        ledger.record_collection_stats(summary)
    return summary


def build_checkpoints(settings: Settings, ledger: Ledger) -> CheckpointStore:
    if settings.state.backend == "file":
        return FileCheckpointStore(settings.state.path)
    return SqlCheckpointStore(ledger.engine)


def build_scanner(settings: Settings, dlq: DeadLetterQueue) -> ChainLogScanner:
    chain = settings.chain
    rpc = RpcClient.from_url(chain.rpc_url, rate_limit_per_second=chain.rate_limit_per_second)
    return ChainLogScanner(
        rpc,
        batch_blocks=chain.batch_blocks,
        min_batch_blocks=chain.min_batch_blocks,
        sleep_seconds=chain.log_sleep,
        dlq=dlq,
    )


def build_marketplace(settings: Settings) -> MarketplaceClient:
    if settings.marketplace is None:
        raise ConfigError("Missing marketplace section in config")
    return MarketplaceClient.from_settings(settings.marketplace)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="NFT collection sales and ownership ledger sync", epilog=JOB_HELP)
    parser.add_argument("job", choices=JOBS)
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH)
    parser.add_argument("--from-block", type=int, default=None)
    parser.add_argument("--to-block", type=int, default=None)
    parser.add_argument("--page-size", type=int, default=None, help="Marketplace page size")
    parser.add_argument("--dry-run", action="store_true", help="Fetch and detect only; no ledger or checkpoint writes")
    return parser.parse_args(argv)


def run(args: argparse.Namespace, settings: Settings) -> None:
    ledger = Ledger.from_url(
        settings.database.url,
        sale_chunk_size=settings.database.sale_chunk_size,
        owner_chunk_size=settings.database.owner_chunk_size,
    )
    ledger.create_all()
    checkpoints = build_checkpoints(settings, ledger)
    chain = settings.chain

    if args.job in ("marketplace-sales", "collection-stats"):
        client = build_marketplace(settings)
        if args.job == "marketplace-sales":
            sync_marketplace_sales(client, ledger, checkpoints, args.page_size, dry_run=args.dry_run)
        else:
            snapshot_collection_stats(client, ledger, dry_run=args.dry_run)
        return

    if args.job == "rarity":
        recompute_rarity(ledger, dry_run=args.dry_run)
        return

    dlq = DeadLetterQueue(settings.state.dlq_path)
    scanner = build_scanner(settings, dlq)
    if args.job == "owners":
        sync_owners(scanner, ledger, checkpoints, chain, args.from_block, args.to_block, dry_run=args.dry_run)
    elif args.job == "backfill-owners":
        backfill_owners(scanner, ledger, checkpoints, chain, args.to_block, dry_run=args.dry_run)
    else:
        inspector = TransactionInspector(scanner.rpc, sleep_seconds=chain.tx_sleep)
        detector = SaleDetector(inspector, chain.wrapped_token_address, dlq=dlq)
        sync_onchain_sales(scanner, detector, ledger, checkpoints, chain, args.from_block, args.to_block, dry_run=args.dry_run)
        if detector.failed:
            logger.warning("%d transaction(s) could not be inspected, see %s", len(detector.failed), settings.state.dlq_path)


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    try:
        settings = load_settings(args.config)
        configure_logging(settings.log_level)
        logger.info("Starting %s%s", args.job, " (dry run)" if args.dry_run else "")
        run(args, settings)
    except ConfigError as exc:
        configure_logging()
        logger.error("Configuration error: %s", exc)
        return 2
    logger.info("%s finished", args.job)
    return 0


def _job_entrypoint(job: str) -> int:
    return main([job, *sys.argv[1:]])


def sync_owners_cli() -> int:
    return _job_entrypoint("owners")


def sync_sales_onchain_cli() -> int:
    return _job_entrypoint("onchain-sales")


def sync_sales_cli() -> int:
    return _job_entrypoint("marketplace-sales")


def recompute_rarity_cli() -> int:
    return _job_entrypoint("rarity")


def snapshot_collection_stats_cli() -> int:
    return _job_entrypoint("collection-stats")


def backfill_owners_cli() -> int:
    return _job_entrypoint("backfill-owners")


if __name__ == "__main__":
    sys.exit(main())
