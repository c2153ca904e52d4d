from typing import Any, Iterable, NamedTuple

from models import Cover, DetailResult, MovieRecord, new_record_id

# Fields a detail lookup may fill, in reporting order.
MERGE_FIELDS = ("cover", "director", "year", "country")


class DedupResult(NamedTuple):
    to_add: list[MovieRecord]
    skipped: int


def is_duplicate(a: MovieRecord, b: MovieRecord) -> bool:
    """Same title (case-sensitive) and same year, where two missing years match."""
    return a.title == b.title and a.year == b.year


def dedup_against_store(
    candidates: Iterable[MovieRecord], existing: list[MovieRecord]
) -> DedupResult:
    """
    Drop candidates already present in the store. Candidates are not compared
    with each other, so repeats inside one import are all kept.
    """
    keys = {(record.title, record.year) for record in existing}
    to_add: list[MovieRecord] = []
    skipped = 0
    for candidate in candidates:
        if (candidate.title, candidate.year) in keys:
            skipped += 1
        else:
            to_add.append(candidate)
    return DedupResult(to_add=to_add, skipped=skipped)


def merge_fetched_details(
    record: MovieRecord, details: DetailResult
) -> tuple[MovieRecord, list[str]]:
    """
    Fill empty fields of a record from looked-up details.
    Populated fields are never overwritten and updated_at is left alone.
    Returns the (possibly new) record and the names of the fields filled.
    """
    update: dict[str, Any] = {}
    if record.cover.needs_fetch and details.poster_url:
        update["cover"] = Cover.of(details.poster_url)
    if record.director is None and details.director:
        update["director"] = details.director
    if record.year is None and details.year is not None:
        update["year"] = details.year
    if record.country is None and details.country:
        update["country"] = details.country

    if not update:
        return record, []
    changed = [field for field in MERGE_FIELDS if field in update]
    return record.model_copy(update=update), changed


def assign_unique_ids(records: list[MovieRecord], taken: Iterable[str]) -> list[MovieRecord]:
    """Give a fresh id to any record whose id is already used."""
    seen = set(taken)
    result: list[MovieRecord] = []
    for record in records:
        if record.id in seen:
            record = record.model_copy(update={"id": new_record_id()})
        seen.add(record.id)
        result.append(record)
    return result
