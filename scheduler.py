import asyncio
import logging
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence, TypeVar

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

import database
from config import Settings
from merge import merge_fetched_details
from models import DetailResult, EnrichmentReport, MovieRecord
from tmdb import Lookup, make_lookup

logger = logging.getLogger(__name__)

BATCH_SIZE = 8
BATCH_DELAY = 1.2  # seconds between batches, keeps us under TMDb rate limits

_COUNTERS = {"cover": "posters", "director": "directors", "year": "years", "country": "countries"}

Progress = Callable[[int, int], None]
T = TypeVar("T")

_enrich_lock = asyncio.Lock()
_enrich_state: dict[str, object] = {"is_running": False, "processed": 0, "total": 0}
_scheduler: Optional[AsyncIOScheduler] = None


class MissingApiKeyError(Exception):
    pass


def select_incomplete(records: Sequence[MovieRecord]) -> list[MovieRecord]:
    return [record for record in records if record.is_incomplete]


def iter_batches(items: Sequence[T], size: int) -> Iterator[list[T]]:
    if size < 1:
        raise ValueError("batch size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


async def fetch_details(
    records: Sequence[MovieRecord],
    lookup: Lookup,
    batch_size: int = BATCH_SIZE,
    batch_delay: float = BATCH_DELAY,
    progress: Optional[Progress] = None,
) -> tuple[dict[str, DetailResult], EnrichmentReport]:
    """
    Look up details for every incomplete record.

    Batches run one after another with a pause between them; lookups inside a
    batch run concurrently and a failed lookup only costs its own record.
    Returns the fetched details keyed by record id, and a report holding only
    the total and processed counts.
    """
    pending = select_incomplete(records)
    report = EnrichmentReport(total=len(pending))
    fetched: dict[str, DetailResult] = {}
    if not pending:
        report.nothing_to_do = True
        return fetched, report

    batches = list(iter_batches(pending, batch_size))
    for number, batch in enumerate(batches, start=1):
        if progress:
            progress(report.processed, report.total)
        logger.info("Fetching details for batch %d/%d (%d records)", number, len(batches), len(batch))

        results = await asyncio.gather(
            *(lookup(record.title) for record in batch), return_exceptions=True
        )
        for record, result in zip(batch, results):
            report.processed += 1
            if isinstance(result, BaseException):
                logger.error("Lookup failed for %r: %s", record.title, result)
                continue
            fetched[record.id] = result

        if number < len(batches):
            await asyncio.sleep(batch_delay)

    if progress:
        progress(report.processed, report.total)
    return fetched, report


def apply_details(
    records: Sequence[MovieRecord],
    fetched: dict[str, DetailResult],
    report: EnrichmentReport,
) -> tuple[list[MovieRecord], EnrichmentReport]:
    """
    Fill-only merge of fetched details into records, matched by id. Ids with
    no record are ignored. The fill counters are recounted from scratch, so
    the same details can be applied again to a newer copy of the store.
    """
    report = EnrichmentReport(total=report.total, processed=report.processed)
    merged: list[MovieRecord] = []
    for record in records:
        details = fetched.get(record.id)
        if details is not None:
            record, changed = merge_fetched_details(record, details)
            if changed:
                report.records_touched += 1
                for field in changed:
                    counter = _COUNTERS[field]
                    setattr(report, counter, getattr(report, counter) + 1)
        merged.append(record)
    return merged, report


async def enrich_records(
    records: Sequence[MovieRecord],
    lookup: Lookup,
    batch_size: int = BATCH_SIZE,
    batch_delay: float = BATCH_DELAY,
    progress: Optional[Progress] = None,
) -> tuple[list[MovieRecord], EnrichmentReport]:
    """Fetch and merge details for the incomplete records, keeping their order."""
    fetched, report = await fetch_details(records, lookup, batch_size, batch_delay, progress)
    if report.nothing_to_do:
        return list(records), report
    return apply_details(records, fetched, report)


def _set_progress(processed: int, total: int) -> None:
    _enrich_state["processed"] = processed
    _enrich_state["total"] = total


async def enrich_store(
    lookup: Lookup,
    db_path: Path = database.DB_PATH,
    batch_size: int = BATCH_SIZE,
    batch_delay: float = BATCH_DELAY,
    progress: Optional[Progress] = None,
) -> EnrichmentReport:
    """
    Backfill the whole collection: read it once, fetch, write it back.

    Edits made while lookups are in flight are kept: on a stale write the
    store is reloaded and the fetched details are merged into it again.
    """
    snapshot = await database.load_store(db_path)
    fetched, report = await fetch_details(
        snapshot.records, lookup, batch_size, batch_delay, progress
    )
    if report.nothing_to_do:
        logger.info("All records already have their details.")
        return report

    for attempt in range(1, database.SAVE_ATTEMPTS + 1):
        records, applied = apply_details(snapshot.records, fetched, report)
        try:
            await database.save_store(records, snapshot.revision, db_path)
            break
        except database.StaleStoreError as exc:
            if attempt == database.SAVE_ATTEMPTS:
                raise
            logger.warning("Collection changed during backfill (%s), merging again.", exc)
            snapshot = await database.load_store(db_path)

    logger.info(
        "Enrichment complete: %d records updated (posters %d, directors %d, years %d, countries %d)",
        applied.records_touched,
        applied.posters,
        applied.directors,
        applied.years,
        applied.countries,
    )
    return applied


async def run_enrichment(
    settings: Settings,
    db_path: Path = database.DB_PATH,
) -> Optional[EnrichmentReport]:
    """
    Run a full backfill against TMDb.
    Returns the report, or None if a run was already in progress.
    """
    api_key = await database.resolve_api_key(settings.tmdb_api_key, db_path)
    if not api_key:
        raise MissingApiKeyError("set a TMDb API key before fetching details")

    if _enrich_state["is_running"]:
        logger.info("Enrichment already in progress, skipping.")
        return None

    async with _enrich_lock:
        if _enrich_state["is_running"]:
            return None
        _enrich_state["is_running"] = True

    try:
        _set_progress(0, 0)
        async with httpx.AsyncClient(timeout=settings.request_timeout) as client:
            return await enrich_store(
                make_lookup(client, settings, api_key),
                db_path,
                settings.batch_size,
                settings.batch_delay,
                progress=_set_progress,
            )
    finally:
        _enrich_state["is_running"] = False


def get_enrichment_state() -> bool:
    return bool(_enrich_state["is_running"])


def get_progress() -> dict[str, object]:
    return dict(_enrich_state)


async def _scheduled_backfill(settings: Settings, db_path: Path) -> None:
    try:
        await run_enrichment(settings, db_path)
    except MissingApiKeyError:
        logger.warning("Scheduled backfill skipped: no TMDb API key configured.")


def start_scheduler(settings: Settings, cron_expr: str, db_path: Path = database.DB_PATH) -> None:
    """Create and start the APScheduler with the periodic backfill job."""
    global _scheduler

    minute, hour, day, month, day_of_week = cron_expr.split()

    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        _scheduled_backfill,
        "cron",
        args=[settings, db_path],
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=day_of_week,
    )
    _scheduler.start()
    logger.info("Scheduler started. Cron: %s", cron_expr)


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown()
        _scheduler = None
