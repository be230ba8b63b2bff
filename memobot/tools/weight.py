"""Body-weight tools backed by the ``measurements`` table."""

import datetime as dt
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

import structlog
from pydantic import BaseModel, Field

from ..storage.database import DatabaseManager, format_ts, utc_now

logger = structlog.get_logger()


class LogWeightArgs(BaseModel):
    weight_kg: float = Field(gt=0, le=500, description="Body weight in kilograms")
    date: Optional[dt.date] = Field(
        None, description="Measurement date (YYYY-MM-DD); defaults to today"
    )


class WeightHistoryArgs(BaseModel):
    days: int = Field(30, ge=1, le=365, description="How many days back to look")


class LogWeightTool:
    """Record a daily weight measurement (one per date, last write wins)."""

    name: str = "log_weight"
    description: str = (
        "Log the user's body weight in kilograms for a date (default today). "
        "Call this when the user mentions weighing themselves."
    )
    args_model = LogWeightArgs
    truncation = "none"

    def __init__(self, db_manager: DatabaseManager, timezone: str = "UTC") -> None:
        self.db = db_manager
        self._tz = ZoneInfo(timezone)

    def today(self) -> dt.date:
        return datetime.now(self._tz).date()

    async def run(self, args: LogWeightArgs) -> str:
        day = args.date or self.today()
        async with self.db.get_connection() as conn:
            await conn.execute(
                """INSERT INTO measurements (date, weight_kg, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(date) DO UPDATE SET
                    weight_kg = excluded.weight_kg,
                    updated_at = excluded.updated_at""",
                (day.isoformat(), args.weight_kg, format_ts(utc_now())),
            )
            await conn.commit()

        logger.info("Weight logged", date=day.isoformat(), weight_kg=args.weight_kg)
        return f"Logged weight: {args.weight_kg} kg on {day.isoformat()}"


class WeightHistoryTool:
    """List recent weight measurements, newest first."""

    name: str = "weight_history"
    description: str = "List the user's logged body weights for the last N days."
    args_model = WeightHistoryArgs
    truncation = "lines"

    def __init__(self, db_manager: DatabaseManager, timezone: str = "UTC") -> None:
        self.db = db_manager
        self._tz = ZoneInfo(timezone)

    async def run(self, args: WeightHistoryArgs) -> str:
        since = datetime.now(self._tz).date() - timedelta(days=args.days)
        async with self.db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT date, weight_kg FROM measurements WHERE date >= ? ORDER BY date DESC",
                (since.isoformat(),),
            )
            rows = await cursor.fetchall()

        if not rows:
            return f"No weight measurements in the last {args.days} days."
        return "\n".join(f"{row['date']}: {row['weight_kg']} kg" for row in rows)
