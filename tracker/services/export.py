"""
Same-day history: CSV export and route points.
"""
import csv
import io
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, Optional

import structlog
from pydantic import ValidationError

from tracker.schemas import HistoryRecord
from tracker.store_client import device_path

logger = structlog.get_logger("export")

CSV_HEADER = ["Timestamp", "Latitude", "Longitude", "Speed", "Altitude", "Satellites"]


def start_of_local_day_ms(now: Optional[datetime] = None) -> int:
    """Epoch ms of local midnight for ``now`` (default: current time)."""
    now = (now or datetime.now().astimezone()).astimezone()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(midnight.timestamp() * 1000)


def iso_timestamp(epoch_ms: float) -> str:
    """UTC ISO-8601 with millisecond precision: 2024-01-23T08:00:00.000Z."""
    dt = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def export_filename(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"vehicle_data_{now.astimezone(timezone.utc).date().isoformat()}.csv"


def _cell(value) -> str:
    return "" if value is None else str(value)


def to_csv(records: Iterable[HistoryRecord]) -> str:
    """Header line plus one line per record, in the order given."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for record in records:
        writer.writerow([
            iso_timestamp(record.timestamp),
            _cell(record.latitude),
            _cell(record.longitude),
            _cell(record.speed),
            _cell(record.altitude),
            _cell(record.satellites),
        ])
    return buffer.getvalue()


class ExportService:
    """Range queries over /devices/D/history starting at local midnight."""

    def __init__(self, store, device_id: str, clock: Callable[[], datetime] = None):
        self.store = store
        self.device_id = device_id
        self._clock = clock or (lambda: datetime.now().astimezone())

    @property
    def history_path(self) -> str:
        return device_path(self.device_id, "history")

    async def _query_today(self) -> list:
        start = start_of_local_day_ms(self._clock())
        return await self.store.query_range(self.history_path, order_by="timestamp", start_at=start)

    async def export_today(self) -> Iterator[HistoryRecord]:
        """One-shot iterator over today's records, oldest first. May be empty."""
        rows = await self._query_today()
        return self._records(rows)

    @staticmethod
    def _records(rows: list) -> Iterator[HistoryRecord]:
        for row in rows:
            try:
                yield HistoryRecord.model_validate(row)
            except ValidationError:
                logger.warning("Skipping malformed history record")

    async def export_today_csv(self) -> tuple[str, str]:
        """(filename, CSV document) for today's history."""
        records = await self.export_today()
        return export_filename(self._clock()), to_csv(records)

    async def route_today(self) -> list[tuple[float, float]]:
        """Today's (lat, lng) breadcrumbs, oldest first."""
        return [(r.latitude, r.longitude) for r in await self.export_today()]
