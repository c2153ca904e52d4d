import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from urllib.parse import quote

import httpx
from fastapi import BackgroundTasks, FastAPI
from fastapi.requests import Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

import collection
import database
import scheduler
from config import settings
from csv_codec import CsvFormatError, MissingColumnsError
from models import CollectionPage, ImportReport, MovieEdit, MovieRecord
from tmdb import Lookup, make_lookup

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class NewMovie(BaseModel):
    title: str
    rating_date: Optional[str] = None
    rating: Optional[float] = None
    review: Optional[str] = None


class BulkDelete(BaseModel):
    ids: list[str] = Field(default_factory=list)
    all: bool = False


class ApiKeyUpdate(BaseModel):
    api_key: Optional[str] = None


@asynccontextmanager
async def _lookup() -> AsyncIterator[Optional[Lookup]]:
    """A TMDb lookup for this request, or None when no key is configured."""
    api_key = await database.resolve_api_key(settings.tmdb_api_key, settings.db_path)
    if not api_key:
        yield None
        return
    async with httpx.AsyncClient(timeout=settings.request_timeout) as client:
        yield make_lookup(client, settings, api_key)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await database.init_db(settings.db_path)
    if settings.backfill_schedule:
        scheduler.start_scheduler(settings, settings.backfill_schedule, settings.db_path)
    yield
    scheduler.stop_scheduler()


app = FastAPI(lifespan=lifespan)


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.exception_handler(collection.RecordNotFoundError)
async def not_found_handler(request: Request, exc: collection.RecordNotFoundError):
    return _error(404, exc)


@app.exception_handler(MissingColumnsError)
async def missing_columns_handler(request: Request, exc: MissingColumnsError):
    return JSONResponse(status_code=400, content={"detail": str(exc), "columns": exc.columns})


@app.exception_handler(CsvFormatError)
@app.exception_handler(collection.RecordValidationError)
@app.exception_handler(database.InvalidApiKeyError)
async def validation_handler(request: Request, exc: ValueError):
    return _error(400, exc)


@app.exception_handler(collection.EmptyCollectionError)
async def empty_handler(request: Request, exc: collection.EmptyCollectionError):
    return _error(404, exc)


@app.exception_handler(scheduler.MissingApiKeyError)
@app.exception_handler(database.StaleStoreError)
async def conflict_handler(request: Request, exc: Exception):
    return _error(409, exc)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/movies", response_model=CollectionPage)
async def list_movies(page: int = 1):
    return await collection.list_page(page, db_path=settings.db_path)


@app.post("/movies", response_model=MovieRecord, status_code=201)
async def add_movie(movie: NewMovie):
    async with _lookup() as lookup:
        return await collection.add_movie(
            movie.title,
            movie.rating_date,
            rating=movie.rating,
            review=movie.review,
            lookup=lookup,
            db_path=settings.db_path,
        )


@app.put("/movies/{record_id}", response_model=MovieRecord)
async def edit_movie(record_id: str, changes: MovieEdit):
    return await collection.edit_movie(record_id, changes, settings.db_path)


@app.delete("/movies/{record_id}")
async def delete_movie(record_id: str):
    await collection.delete_movie(record_id, settings.db_path)
    return {"deleted": 1}


@app.post("/movies/delete")
async def delete_movies(selection: BulkDelete):
    if selection.all:
        deleted = await collection.delete_all(settings.db_path)
    else:
        deleted = await collection.delete_movies(selection.ids, settings.db_path)
    return {"deleted": deleted}


@app.post("/import", response_model=ImportReport)
async def import_csv(request: Request):
    body = await request.body()
    try:
        text = body.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise CsvFormatError("CSV must be UTF-8 text") from exc
    async with _lookup() as lookup:
        return await collection.import_csv(
            text,
            lookup=lookup,
            batch_size=settings.batch_size,
            batch_delay=settings.batch_delay,
            db_path=settings.db_path,
        )


@app.get("/export")
async def export_csv():
    filename, content = await collection.export_csv(settings.export_prefix, settings.db_path)
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}"},
    )


@app.get("/status")
async def status():
    return scheduler.get_progress()


@app.post("/enrich")
async def enrich(background_tasks: BackgroundTasks):
    if scheduler.get_enrichment_state():
        return {"status": "already_running"}
    if not await database.resolve_api_key(settings.tmdb_api_key, settings.db_path):
        raise scheduler.MissingApiKeyError("set a TMDb API key before fetching details")
    records = await database.get_all_records(settings.db_path)
    if not scheduler.select_incomplete(records):
        return {"status": "nothing_to_do"}

    background_tasks.add_task(scheduler.run_enrichment, settings, settings.db_path)
    return {"status": "started"}


@app.put("/settings/api-key")
async def update_api_key(update: ApiKeyUpdate):
    stored = await database.set_api_key(update.api_key, settings.db_path)
    return {"configured": stored is not None}
