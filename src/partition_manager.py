"""
Monthly partition maintenance for the statistics snapshot table.

`video_stats_snapshots` is range-partitioned by snapshot time. Partitions are
named `{table}_{YYYYMM}` and cover [first of month, first of next month).
The maintenance job makes sure the current month and the next N months
always have a partition before any data lands in them.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from config import PARTITION_LOOKAHEAD_MONTHS, STATS_SNAPSHOT_TABLE
from errors import PartitionCreateConflict
from utils.metrics_utils import PARTITION_RESULTS

logger = logging.getLogger(__name__)

IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def add_months(day: date, months: int) -> date:
    """First day of the month `months` after the month containing `day`."""
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


@dataclass(frozen=True)
class PartitionDescriptor:
    """One month of the partitioned table: [range_start, range_end)."""

    table_name: str
    range_start: date
    range_end: date

    @property
    def partition_name(self) -> str:
        return f"{self.table_name}_{self.range_start:%Y%m}"


def monthly_partitions(table_name: str, today: date, lookahead_months: int) -> List[PartitionDescriptor]:
    """
    Contiguous month-aligned ranges for the month containing `today` and the
    `lookahead_months` months after it.
    """
    return [
        PartitionDescriptor(table_name, add_months(today, offset), add_months(today, offset + 1))
        for offset in range(lookahead_months + 1)
    ]


class PartitionOutcome(str, Enum):
    CREATED = "created"
    EXISTS = "exists"
    FAILED = "failed"


@dataclass(frozen=True)
class PartitionResult:
    descriptor: PartitionDescriptor
    outcome: PartitionOutcome
    error: Optional[str] = None


class PostgresPartitionStore:
    """
    Partition DDL against PostgreSQL through an SQLAlchemy async engine.

    Identifiers cannot be bound as parameters in DDL, so table and partition
    names are validated against IDENTIFIER_RE before being quoted.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    @staticmethod
    def _quote(identifier: str) -> str:
        if not IDENTIFIER_RE.match(identifier):
            raise ValueError(f"Invalid SQL identifier: {identifier!r}")
        return f'"{identifier}"'

    async def partition_exists(self, partition_name: str) -> bool:
        async with self.engine.connect() as conn:
            result = await conn.execute(
                text("SELECT to_regclass(:name) IS NOT NULL"), {"name": partition_name}
            )
            return bool(result.scalar())

    async def create_partition(self, descriptor: PartitionDescriptor):
        ddl = (
            f"CREATE TABLE IF NOT EXISTS {self._quote(descriptor.partition_name)} "
            f"PARTITION OF {self._quote(descriptor.table_name)} "
            f"FOR VALUES FROM ('{descriptor.range_start.isoformat()}') "
            f"TO ('{descriptor.range_end.isoformat()}')"
        )
        async with self.engine.begin() as conn:
            await conn.execute(text(ddl))


class PartitionManager:
    """
    Args:
        store: Object with async partition_exists(name) and create_partition(descriptor)
        table_name: Partitioned parent table
    """

    def __init__(self, store, table_name: str = STATS_SNAPSHOT_TABLE):
        self.store = store
        self.table_name = table_name

    async def ensure_future_partitions(
        self,
        lookahead_months: int = PARTITION_LOOKAHEAD_MONTHS,
        today: Optional[date] = None,
    ) -> List[PartitionResult]:
        """
        Create any missing partition from the current month through
        `lookahead_months` months ahead.

        Each month is independent: a failure is logged as a warning and the
        remaining months are still processed. Existing partitions are left
        untouched.

        Returns:
            One PartitionResult per month, in calendar order
        """
        today = today or date.today()
        results = []

        for descriptor in monthly_partitions(self.table_name, today, lookahead_months):
            name = descriptor.partition_name
            try:
                if await self.store.partition_exists(name):
                    result = PartitionResult(descriptor, PartitionOutcome.EXISTS)
                    logger.debug(f"Partition {name} already exists")
                else:
                    await self.store.create_partition(descriptor)
                    result = PartitionResult(descriptor, PartitionOutcome.CREATED)
                    logger.info(
                        f"Created partition {name} [{descriptor.range_start}, {descriptor.range_end})"
                    )
            except Exception as e:
                conflict = PartitionCreateConflict(name, str(e))
                logger.warning(f"Could not create partition {conflict}")
                result = PartitionResult(descriptor, PartitionOutcome.FAILED, str(conflict))

            PARTITION_RESULTS.labels(outcome=result.outcome.value).inc()
            results.append(result)

        return results
