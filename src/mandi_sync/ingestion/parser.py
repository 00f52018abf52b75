"""Raw price API row parser producing canonical PriceRecords."""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timezone
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, ValidationError

from mandi_sync.core.models import PriceRecord, RawRow, SourceTag

logger = logging.getLogger(__name__)

_DATE_FORMATS = ("%d-%m-%Y", "%d/%m/%Y", "%Y-%m-%d")

_MISSING_NUMBERS = {"", "na", "n/a", "nr", "-", "null", "none"}


class RowRejection(BaseModel):
    """A raw row that could not be turned into a PriceRecord."""

    model_config = ConfigDict(frozen=True)

    reason: str
    raw: RawRow


class RecordParser:
    """Maps raw price API rows onto PriceRecord.

    The API has shipped the same logical field under several names over
    time (``Arrival_Date`` vs ``arrival_date``, several spellings of the
    arrivals quantity). Each logical field therefore has a priority-ordered
    list of accepted aliases; the first alias present with a non-empty
    value wins.

    Rows missing any of the required fields are rejected, never returned
    half-filled.
    """

    FIELD_ALIASES: ClassVar[dict[str, tuple[str, ...]]] = {
        "arrival_date": ("Arrival_Date", "arrival_date", "ArrivalDate"),
        "state": ("State", "state"),
        "district": ("District", "district"),
        "market": ("Market", "market"),
        "commodity": ("Commodity", "commodity"),
        "variety": ("Variety", "variety"),
        "grade": ("Grade", "grade"),
        "min_price": ("Min_Price", "min_price", "Min_x0020_Price"),
        "max_price": ("Max_Price", "max_price", "Max_x0020_Price"),
        "modal_price": ("Modal_Price", "modal_price", "Modal_x0020_Price"),
        "arrival_quantity": (
            "Arrivals_in_Quintal",
            "arrivals_in_quintal",
            "Arrival_Quantity",
            "arrival_quantity",
            "Arrivals",
            "arrivals",
        ),
    }

    REQUIRED_TEXT_FIELDS: ClassVar[tuple[str, ...]] = (
        "state",
        "district",
        "market",
        "commodity",
    )

    def __init__(self, source: SourceTag = SourceTag.GOVERNMENT_API) -> None:
        self._source = source

    def parse(
        self,
        rows: list[RawRow],
        default_date: date | None = None,
    ) -> list[PriceRecord]:
        """Transform raw rows, dropping the ones that fail validation.

        Args:
            rows: Raw API rows.
            default_date: Used for rows without an arrival date, normally
                the date being synced.

        Returns:
            Canonical records in input order.
        """
        synced_at = datetime.now(timezone.utc)
        records: list[PriceRecord] = []
        rejected = 0
        for raw in rows:
            result = self.parse_row(raw, default_date, synced_at=synced_at)
            if isinstance(result, RowRejection):
                rejected += 1
                logger.debug("Dropping row: %s", result.reason)
                continue
            records.append(result)

        if rejected:
            logger.info(
                "Dropped %d of %d rows failing validation", rejected, len(rows)
            )
        return records

    def parse_row(
        self,
        raw: RawRow,
        default_date: date | None = None,
        *,
        synced_at: datetime | None = None,
    ) -> PriceRecord | RowRejection:
        """Transform one raw row into a PriceRecord or a RowRejection."""
        raw_date = self._pick(raw, "arrival_date")
        if raw_date is None:
            arrival_date = default_date
        else:
            arrival_date = parse_date(raw_date)
            if arrival_date is None:
                return RowRejection(reason=f"unparsable arrival_date {raw_date!r}", raw=raw)
        if arrival_date is None:
            return RowRejection(reason="missing arrival_date", raw=raw)

        text: dict[str, str | None] = {}
        for field in (*self.REQUIRED_TEXT_FIELDS, "variety", "grade"):
            text[field] = _clean_text(self._pick(raw, field))
        missing = [f for f in self.REQUIRED_TEXT_FIELDS if not text[f]]
        if missing:
            return RowRejection(reason=f"missing {', '.join(missing)}", raw=raw)

        modal_price = parse_number(self._pick(raw, "modal_price"))
        try:
            return PriceRecord(
                arrival_date=arrival_date,
                state=text["state"],
                district=text["district"],
                market=text["market"],
                commodity=text["commodity"],
                variety=text["variety"],
                grade=text["grade"],
                min_price=parse_number(self._pick(raw, "min_price")),
                max_price=parse_number(self._pick(raw, "max_price")),
                modal_price=modal_price if modal_price is not None else 0.0,
                arrival_quantity=parse_number(self._pick(raw, "arrival_quantity")),
                source=self._source,
                synced_at=synced_at or datetime.now(timezone.utc),
            )
        except ValidationError as e:
            return RowRejection(reason=f"invalid row: {e.error_count()} errors", raw=raw)

    def _pick(self, raw: RawRow, field: str) -> Any:
        """Value of the first alias of ``field`` present and non-empty."""
        for alias in self.FIELD_ALIASES[field]:
            value = raw.get(alias)
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            return value
        return None


def parse_date(value: Any) -> date | None:
    """Parse DD-MM-YYYY, DD/MM/YYYY or ISO YYYY-MM-DD; None if unparsable."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    # Some rows carry a time component ("2025-11-03T00:00:00")
    text = text.split("T", 1)[0].split(" ", 1)[0]
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_number(value: Any) -> float | None:
    """Parse a numeric field, tolerating thousands separators; None on failure."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().replace(",", "")
        if text.lower() in _MISSING_NUMBERS:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    return number if math.isfinite(number) else None


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
