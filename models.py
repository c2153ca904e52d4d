import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

# Default "No Image" poster of the original web collection. Stored records and
# exports use it to mean "poster never fetched".
PLACEHOLDER_POSTER_URL = (
    "data:image/svg+xml;base64,PHN2ZyB4bWxucz0iaHR0cDovL3d3dy53My5vcmcvMjAwMC9zdmciIHdpZHRoPSIyMDAi"
    "IGhlaWdodD0iMjAwIiB2aWV3Qm94PSIwIDAgMjQgMjQiIGZpbGw9IiNFNkYyRkYiIHN0cm9rZT0iIzRhNGI2ZSIgc3Ryb2tl"
    "LXdpZHRoPSIxIj48cmVjdCB3aWR0aD0iMTgiIGhlaWdodD0iMTgiIHg9IjMiIHk9IjMiIHJ4PSIyIiByeT0iMiIgc3Ryb2tl"
    "PSIjOWVhNmJjIiBmaWxsPSIjMmEyYjQ1Ii8+PHBhdGggZD0iTTMgMTJsNi02IDYgNi0zIDMiIGZpbGw9Im5vbmUiIHN0cm9r"
    "ZS1saW5lY2FwPSJyb3VuZCIgc3Ryb2tlLWxpbmVqb2luPSJyb3VuZCIgc3Ryb2tlPSIjOWVhNmJjIi8+PGNpcmNsZSBjeD0i"
    "OSIgY3k9IjkiIHI9IjEiIGZpbGw9IiM5ZWE2YmMiLz48dGV4dCB4PSI1MHUiIHk9IjcwJSIgZm9udC1mYW1pbHk9InNhbnMt"
    "c2VyaWYiIGZvbnQtc2l6ZT0iMTZweCIgZmlsbD0iI2U2ZjJmZiIgdGV4dC1hbmNob3I9Im1pZGRsZSI+Tm8gSW1hZ2U8L3Rl"
    "eHQ+PC9zdmc+"
)

_DATE_FORMATS = ("%Y/%m/%d", "%Y.%m.%d")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_record_id() -> str:
    return uuid.uuid4().hex


def parse_rating_date(value: Optional[str]) -> Optional[date]:
    """Parse a viewing date. Returns None when absent or not a real date."""
    if not value or not value.strip():
        return None
    text = value.strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


class CoverState(str, Enum):
    UNSET = "unset"
    PLACEHOLDER = "placeholder"
    SET = "set"


class Cover(BaseModel):
    state: CoverState = CoverState.UNSET
    url: Optional[str] = None

    @model_validator(mode="after")
    def _check_url(self) -> "Cover":
        if self.state is CoverState.SET and not self.url:
            raise ValueError("a set cover needs a url")
        if self.state is not CoverState.SET:
            self.url = None
        return self

    @classmethod
    def unset(cls) -> "Cover":
        return cls()

    @classmethod
    def placeholder(cls) -> "Cover":
        return cls(state=CoverState.PLACEHOLDER)

    @classmethod
    def of(cls, url: str) -> "Cover":
        return cls(state=CoverState.SET, url=url)

    @classmethod
    def from_raw(cls, value: Optional[str]) -> "Cover":
        """Build from the flat persisted/CSV value."""
        if value is None or not value.strip():
            return cls.unset()
        if value == PLACEHOLDER_POSTER_URL:
            return cls.placeholder()
        return cls.of(value)

    def to_raw(self) -> Optional[str]:
        if self.state is CoverState.SET:
            return self.url
        if self.state is CoverState.PLACEHOLDER:
            return PLACEHOLDER_POSTER_URL
        return None

    @property
    def needs_fetch(self) -> bool:
        return self.state is not CoverState.SET


class MovieRecord(BaseModel):
    id: str = Field(default_factory=new_record_id)
    title: str
    year: Optional[int] = None
    rating_date: Optional[str] = None  # YYYY-MM-DD; legacy rows may hold free text
    rating: Optional[float] = None
    review: Optional[str] = None
    director: Optional[str] = None
    country: Optional[str] = None
    cover: Cover = Field(default_factory=Cover)
    link: Optional[str] = None
    created_at: str = Field(default_factory=utc_now)
    updated_at: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_text(cls, value: Any) -> Any:
        # Legacy stores used numeric ids.
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("title")
    @classmethod
    def _title_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must not be empty")
        return value

    @field_validator("rating_date", "review", "director", "country", "link", mode="before")
    @classmethod
    def _blank_is_absent(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("year", "rating", mode="before")
    @classmethod
    def _blank_number_is_absent(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def cover_url(self) -> Optional[str]:
        return self.cover.to_raw()

    @property
    def is_incomplete(self) -> bool:
        return (
            self.cover.needs_fetch
            or self.director is None
            or self.year is None
            or self.country is None
        )

    def parsed_rating_date(self) -> Optional[date]:
        return parse_rating_date(self.rating_date)

    def to_storage(self) -> dict[str, Any]:
        """Flat form kept in the store; key names follow the collection's JSON."""
        return {
            "id": self.id,
            "title": self.title,
            "year": self.year,
            "ratingDate": self.rating_date,
            "rating": self.rating,
            "review": self.review,
            "director": self.director,
            "country": self.country,
            "coverUrl": self.cover.to_raw(),
            "link": self.link,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_storage(cls, data: dict[str, Any]) -> "MovieRecord":
        fields: dict[str, Any] = {
            "id": data["id"],
            "title": data["title"],
            "year": data.get("year"),
            "rating_date": data.get("ratingDate"),
            "rating": data.get("rating"),
            "review": data.get("review"),
            "director": data.get("director"),
            "country": data.get("country"),
            "cover": Cover.from_raw(data.get("coverUrl")),
            "link": data.get("link"),
            "updated_at": data.get("updatedAt"),
        }
        if data.get("createdAt"):
            fields["created_at"] = data["createdAt"]
        return cls(**fields)


class DetailResult(BaseModel):
    poster_url: Optional[str] = None
    director: Optional[str] = None
    year: Optional[int] = None
    country: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return all(
            value is None for value in (self.poster_url, self.director, self.year, self.country)
        )


class EnrichmentReport(BaseModel):
    total: int = 0
    processed: int = 0
    records_touched: int = 0
    posters: int = 0
    directors: int = 0
    years: int = 0
    countries: int = 0
    nothing_to_do: bool = False


class ImportReport(BaseModel):
    accepted: int = 0
    rejected: int = 0
    added: int = 0
    skipped: int = 0
    enrichment: Optional[EnrichmentReport] = None


class CollectionPage(BaseModel):
    records: list[MovieRecord] = Field(default_factory=list)
    page: int = 1
    total_pages: int = 1
    total_records: int = 0


class MovieEdit(BaseModel):
    """Values from the edit form. Blank fields clear, except a blank viewing date keeps the old one."""

    title: str
    year: Optional[int] = None
    rating_date: Optional[str] = None
    rating: Optional[float] = None
    review: Optional[str] = None
    director: Optional[str] = None
    country: Optional[str] = None
    cover_url: Optional[str] = None
    link: Optional[str] = None

    @field_validator("year", "rating", mode="before")
    @classmethod
    def _blank_number_is_absent(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value
