"""API usage accounting."""

from typing import Optional

import structlog

from ..storage.database import DatabaseManager, format_ts, utc_now
from .interface import Usage

logger = structlog.get_logger()

# Approximate pricing per 1M tokens (input/output)
MODEL_PRICING = {
    "claude-sonnet-4-6": (3.00, 15.00),
    "claude-sonnet-4-5": (3.00, 15.00),
    "claude-opus-4-1": (15.00, 75.00),
    "claude-haiku-4-5": (1.00, 5.00),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4o": (2.50, 10.00),
    "gpt-4.1": (2.00, 8.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "gpt-4.1-nano": (0.10, 0.40),
    "text-embedding-3-small": (0.02, 0.0),
    "text-embedding-3-large": (0.13, 0.0),
}


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimate cost based on known pricing."""
    pricing = MODEL_PRICING.get(model, (1.0, 3.0))
    return (input_tokens * pricing[0] + output_tokens * pricing[1]) / 1_000_000


class UsageRecorder:
    """Writes one ``api_usage`` row per engine or embedding call.

    Recording is best effort: failures are logged, never raised.
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None) -> None:
        self._db = db_manager

    async def record(
        self,
        provider: str,
        model: str,
        purpose: str,
        usage: Usage,
        latency_ms: Optional[int] = None,
    ) -> None:
        if not self._db:
            return

        try:
            async with self._db.get_connection() as conn:
                await conn.execute(
                    """INSERT INTO api_usage
                    (provider, model, purpose, input_tokens, output_tokens,
                     cost_usd, latency_ms, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        provider,
                        model,
                        purpose,
                        usage.input_tokens,
                        usage.output_tokens,
                        usage.cost_usd,
                        latency_ms,
                        format_ts(utc_now()),
                    ),
                )
                await conn.commit()
        except Exception as exc:
            logger.warning("Failed to record API usage", error=str(exc), purpose=purpose)

    async def total_cost_since(self, since) -> float:
        """Summed estimated cost of calls after ``since``."""
        if not self._db:
            return 0.0
        async with self._db.get_connection() as conn:
            cursor = await conn.execute(
                "SELECT COALESCE(SUM(cost_usd), 0) FROM api_usage WHERE created_at >= ?",
                (format_ts(since),),
            )
            row = await cursor.fetchone()
            return float(row[0])
