import logging
import math
from pathlib import Path
from typing import Iterable, Optional

import database
from csv_codec import decode_csv, export_bytes, export_filename, sort_by_rating_date
from merge import assign_unique_ids, dedup_against_store, merge_fetched_details
from models import (
    CollectionPage,
    Cover,
    ImportReport,
    MovieEdit,
    MovieRecord,
    parse_rating_date,
    utc_now,
)
from scheduler import BATCH_DELAY, BATCH_SIZE, enrich_records
from tmdb import Lookup

logger = logging.getLogger(__name__)

MOVIES_PER_PAGE = 6


class RecordNotFoundError(LookupError):
    def __init__(self, record_id: str):
        super().__init__(f"movie {record_id} not found")
        self.record_id = record_id


class RecordValidationError(ValueError):
    pass


class EmptyCollectionError(Exception):
    pass


def _require_date(value: Optional[str]) -> str:
    if not value or not value.strip():
        raise RecordValidationError("viewing date is required")
    parsed = parse_rating_date(value)
    if parsed is None:
        raise RecordValidationError(f"invalid viewing date: {value!r}")
    return parsed.isoformat()


async def add_movie(
    title: str,
    rating_date: Optional[str],
    rating: Optional[float] = None,
    review: Optional[str] = None,
    lookup: Optional[Lookup] = None,
    db_path: Path = database.DB_PATH,
) -> MovieRecord:
    """Add one movie by hand, filling poster/director/year/country from TMDb when possible."""
    title = (title or "").strip()
    if not title:
        raise RecordValidationError("title is required")
    record = MovieRecord(
        title=title,
        rating_date=_require_date(rating_date),
        rating=rating,
        review=review.strip() if review else None,
    )
    if lookup is not None:
        details = await lookup(title)
        record, changed = merge_fetched_details(record, details)
        logger.info("Added %r with fetched fields: %s", title, ", ".join(changed) or "none")

    snapshot = await database.load_store(db_path)
    await database.save_store([*snapshot.records, record], snapshot.revision, db_path)
    return record


async def edit_movie(
    record_id: str, changes: MovieEdit, db_path: Path = database.DB_PATH
) -> MovieRecord:
    snapshot = await database.load_store(db_path)
    index = next((i for i, r in enumerate(snapshot.records) if r.id == record_id), None)
    if index is None:
        raise RecordNotFoundError(record_id)
    current = snapshot.records[index]

    title = changes.title.strip()
    if not title:
        raise RecordValidationError("title is required")
    rating_date = current.rating_date
    if changes.rating_date and changes.rating_date.strip():
        rating_date = _require_date(changes.rating_date)

    updated = current.model_copy(
        update={
            "title": title,
            "year": changes.year,
            "rating_date": rating_date,
            "rating": changes.rating,
            "review": _clean(changes.review),
            "director": _clean(changes.director),
            "country": _clean(changes.country),
            "cover": Cover.from_raw(_clean(changes.cover_url)),
            "link": _clean(changes.link),
            "updated_at": utc_now(),
        }
    )
    records = list(snapshot.records)
    records[index] = updated
    await database.save_store(records, snapshot.revision, db_path)
    return updated


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip() or None


async def delete_movie(record_id: str, db_path: Path = database.DB_PATH) -> None:
    snapshot = await database.load_store(db_path)
    remaining = [r for r in snapshot.records if r.id != record_id]
    if len(remaining) == len(snapshot.records):
        raise RecordNotFoundError(record_id)
    await database.save_store(remaining, snapshot.revision, db_path)


async def delete_movies(record_ids: Iterable[str], db_path: Path = database.DB_PATH) -> int:
    """Delete every listed movie that still exists. Returns how many were removed."""
    doomed = set(record_ids)
    snapshot = await database.load_store(db_path)
    remaining = [r for r in snapshot.records if r.id not in doomed]
    deleted = len(snapshot.records) - len(remaining)
    if deleted:
        await database.save_store(remaining, snapshot.revision, db_path)
    return deleted


async def delete_all(db_path: Path = database.DB_PATH) -> int:
    snapshot = await database.load_store(db_path)
    if snapshot.records:
        await database.save_store([], snapshot.revision, db_path)
    return len(snapshot.records)


async def import_csv(
    text: str,
    lookup: Optional[Lookup] = None,
    batch_size: int = BATCH_SIZE,
    batch_delay: float = BATCH_DELAY,
    db_path: Path = database.DB_PATH,
) -> ImportReport:
    """
    Import a collection CSV: decode, drop movies already in the store, fetch
    missing details for the new ones, then write the store once. If the store
    changed during the lookups, duplicates are checked again against it.
    """
    decoded = decode_csv(text)
    snapshot = await database.load_store(db_path)
    dedup = dedup_against_store(decoded.records, snapshot.records)
    to_add = assign_unique_ids(dedup.to_add, (r.id for r in snapshot.records))

    report = ImportReport(
        accepted=decoded.accepted,
        rejected=decoded.rejected,
        added=len(to_add),
        skipped=dedup.skipped,
    )
    if not to_add:
        logger.info("Import found no new movies in %d rows.", decoded.accepted)
        return report

    candidates = to_add
    if lookup is not None:
        to_add, report.enrichment = await enrich_records(to_add, lookup, batch_size, batch_delay)
    enriched = {record.id: record for record in to_add}

    for attempt in range(1, database.SAVE_ATTEMPTS + 1):
        try:
            await database.save_store([*snapshot.records, *to_add], snapshot.revision, db_path)
            break
        except database.StaleStoreError as exc:
            if attempt == database.SAVE_ATTEMPTS:
                raise
            logger.warning("Collection changed during import (%s), checking duplicates again.", exc)
            snapshot = await database.load_store(db_path)
            # dedup on the decoded years, not the fetched ones
            recheck = dedup_against_store(candidates, snapshot.records)
            candidates = recheck.to_add
            report.skipped += recheck.skipped
            to_add = assign_unique_ids(
                [enriched[record.id] for record in candidates],
                (r.id for r in snapshot.records),
            )
            report.added = len(to_add)
            if not to_add:
                logger.info("Import found no new movies after the collection changed.")
                return report

    logger.info(
        "Imported %d movies, skipped %d duplicates, rejected %d rows.",
        report.added,
        report.skipped,
        report.rejected,
    )
    return report


async def export_csv(prefix: str, db_path: Path = database.DB_PATH) -> tuple[str, bytes]:
    records = await database.get_all_records(db_path)
    if not records:
        raise EmptyCollectionError("no movies to export")
    return export_filename(prefix), export_bytes(records)


async def list_page(
    page: int = 1, per_page: int = MOVIES_PER_PAGE, db_path: Path = database.DB_PATH
) -> CollectionPage:
    """One page of the collection, newest viewing date first. Out-of-range pages are clamped."""
    records = sort_by_rating_date(await database.get_all_records(db_path))
    total_pages = max(1, math.ceil(len(records) / per_page))
    page = min(max(page, 1), total_pages)
    start = (page - 1) * per_page
    return CollectionPage(
        records=records[start:start + per_page],
        page=page,
        total_pages=total_pages,
        total_records=len(records),
    )
