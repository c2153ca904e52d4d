import logging
import math
import re
from datetime import date
from typing import NamedTuple, Optional

from models import Cover, MovieRecord, new_record_id, parse_rating_date, utc_now

logger = logging.getLogger(__name__)

BOM = "\ufeff"

COL_TITLE = "电影/电视剧/番组"
COL_RATING = "个人评分"
COL_RATING_DATE = "观影日期"
COL_REVIEW = "我的短评"
COL_YEAR = "上映年份"
COL_COUNTRY = "制片国家"
COL_LINK = "条目链接"
COL_DIRECTOR = "导演"
COL_COVER_URL = "海报URL"
COL_ID = "内部ID"
COL_CREATED_AT = "添加日期"
COL_UPDATED_AT = "最后修改日期"

REQUIRED_COLUMNS = (COL_TITLE, COL_RATING_DATE)

EXPORT_COLUMNS = (
    COL_TITLE,
    COL_RATING,
    COL_RATING_DATE,
    COL_REVIEW,
    COL_YEAR,
    COL_COUNTRY,
    COL_LINK,
    COL_DIRECTOR,
    COL_COVER_URL,
    COL_ID,
    COL_CREATED_AT,
    COL_UPDATED_AT,
)

_LEADING_YEAR = re.compile(r"^\d{4}")
_QUOTE_TRIGGERS = (",", "\n", "\r", '"')


class CsvFormatError(ValueError):
    """The file as a whole cannot be imported."""


class MissingColumnsError(CsvFormatError):
    def __init__(self, columns: list[str]):
        super().__init__(f"missing required columns: {', '.join(columns)}")
        self.columns = columns


class DecodeResult(NamedTuple):
    records: list[MovieRecord]
    accepted: int
    rejected: int


def encode_field(value: object) -> str:
    """
    Quote a value when it holds a separator or a double quote, or when it has
    edge whitespace that an unquoted field would lose on import.
    """
    if value is None:
        return ""
    text = str(value)
    if text != text.strip() or any(char in text for char in _QUOTE_TRIGGERS):
        return '"' + text.replace('"', '""') + '"'
    return text


def decode_field(raw: str) -> str:
    """Undo encode_field: drop one layer of surrounding quotes and un-double inner ones."""
    if len(raw) >= 2 and raw.startswith('"') and raw.endswith('"'):
        return raw[1:-1].replace('""', '"')
    return raw


def _split_rows(text: str) -> list[list[str]]:
    """
    Split CSV text into rows of raw (still quoted) fields.
    Commas and line breaks (LF, CRLF or a lone CR) only separate when outside
    a quoted span; inside one they are kept as written.
    """
    rows: list[list[str]] = []
    fields: list[str] = []
    current: list[str] = []
    in_quotes = False

    def end_field() -> None:
        fields.append("".join(current).strip())
        current.clear()

    def end_row() -> None:
        end_field()
        if len(fields) > 1 or fields[0]:
            rows.append(list(fields))
        fields.clear()

    for index, char in enumerate(text):
        if char == '"':
            # A doubled quote flips twice, leaving the state unchanged.
            in_quotes = not in_quotes
            current.append(char)
        elif char == "," and not in_quotes:
            end_field()
        elif char == "\r" and not in_quotes:
            if text[index + 1:index + 2] != "\n":
                end_row()
        elif char == "\n" and not in_quotes:
            end_row()
        else:
            current.append(char)
    end_row()
    return rows


def _parse_rating(value: str) -> Optional[float]:
    try:
        rating = float(value)
    except ValueError:
        return None
    return rating if math.isfinite(rating) else None


def _parse_year(value: str) -> Optional[int]:
    match = _LEADING_YEAR.match(value)
    return int(match.group(0)) if match else None


def decode_csv(text: str) -> DecodeResult:
    """
    Parse an exported/third-party collection CSV into new records.
    Raises CsvFormatError for a structurally unusable file; bad rows are logged
    and skipped.
    """
    if text.startswith(BOM):
        text = text[len(BOM):]
    rows = _split_rows(text)
    if len(rows) < 2:
        raise CsvFormatError("CSV needs a header row and at least one data row")

    headers = [decode_field(cell).strip() for cell in rows[0]]
    missing = [column for column in REQUIRED_COLUMNS if column not in headers]
    if missing:
        raise MissingColumnsError(missing)

    header_index: dict[str, int] = {}
    for index, header in enumerate(headers):
        header_index.setdefault(header, index)

    records: list[MovieRecord] = []
    rejected = 0
    created_at = utc_now()
    for row_number, raw_row in enumerate(rows[1:], start=2):
        values = [decode_field(cell) for cell in raw_row]

        def column(name: str) -> str:
            index = header_index.get(name)
            if index is None or index >= len(values):
                return ""
            return values[index]

        title = column(COL_TITLE)
        rating_date = column(COL_RATING_DATE).strip()
        if not title.strip() or not rating_date or parse_rating_date(rating_date) is None:
            logger.warning(
                "Skipping CSV row %d: missing title/viewing date or invalid date (%r)",
                row_number,
                raw_row,
            )
            rejected += 1
            continue

        records.append(
            MovieRecord(
                id=column(COL_ID).strip() or new_record_id(),
                title=title,
                rating_date=rating_date,
                rating=_parse_rating(column(COL_RATING).strip()),
                review=column(COL_REVIEW),
                year=_parse_year(column(COL_YEAR).strip()),
                country=column(COL_COUNTRY),
                link=column(COL_LINK),
                director=column(COL_DIRECTOR),
                cover=Cover.from_raw(column(COL_COVER_URL)),
                created_at=created_at,
            )
        )

    logger.info("Decoded CSV: %d accepted, %d rejected", len(records), rejected)
    return DecodeResult(records=records, accepted=len(records), rejected=rejected)


def sort_by_rating_date(records: list[MovieRecord]) -> list[MovieRecord]:
    """Newest viewing date first; records without a usable date go last, in input order."""

    def key(record: MovieRecord) -> tuple[int, int]:
        parsed = record.parsed_rating_date()
        if parsed is None:
            return (1, 0)
        return (0, -parsed.toordinal())

    return sorted(records, key=key)


def encode_csv(records: list[MovieRecord]) -> str:
    lines = [",".join(EXPORT_COLUMNS)]
    for record in sort_by_rating_date(records):
        lines.append(
            ",".join(
                encode_field(value)
                for value in (
                    record.title,
                    record.rating,
                    record.rating_date,
                    record.review,
                    record.year,
                    record.country,
                    record.link,
                    record.director,
                    record.cover_url,
                    record.id,
                    record.created_at,
                    record.updated_at,
                )
            )
        )
    return "\n".join(lines)


def export_bytes(records: list[MovieRecord]) -> bytes:
    """CSV text with a BOM so spreadsheet tools pick up UTF-8."""
    return (BOM + encode_csv(records)).encode("utf-8")


def export_filename(prefix: str, day: Optional[date] = None) -> str:
    day = day or date.today()
    return f"{prefix}_{day.isoformat()}.csv"
