"""
Declares the repeatable jobs the system should have and reconciles the
queues against that set.

Reconciliation removes every registered repeatable job that is not in the
canonical set and (re-)registers every canonical one, so redeploying with a
changed region list or cadence heals the schedule without manual cleanup.
Running it repeatedly converges on the same set.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from config import (
    QUEUE_SYNC,
    QUEUE_TRENDING_REFRESH,
    SCHEDULE_TIMEZONE,
    SUPPORTED_REGION_CODES,
    SYNC_SCHEDULES,
    TRENDING_REFRESH_INTERVAL,
)
from job_queue import JobDescriptor, JobOptions, JobQueue, RepeatOptions
from models import Platform

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    """Per-queue changes made by one reconcile() call."""

    removed: Dict[str, List[str]] = field(default_factory=dict)
    added: Dict[str, List[str]] = field(default_factory=dict)
    kept: Dict[str, List[str]] = field(default_factory=dict)
    updated: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return any(self.removed.values()) or any(self.added.values()) or any(self.updated.values())


def refresh_descriptor(platform: Platform, region: str, interval_seconds: int = TRENDING_REFRESH_INTERVAL) -> JobDescriptor:
    return JobDescriptor(
        queue_name=QUEUE_TRENDING_REFRESH,
        name=f"refresh:{platform.value}:{region}",
        data={"platform": platform.value, "region": region},
        options=JobOptions(
            repeat=RepeatOptions(every_ms=interval_seconds * 1000),
            job_id=f"trending-refresh:{platform.value}:{region}",
        ),
    )


def sync_descriptor(name: str, pattern: str, tz: str = SCHEDULE_TIMEZONE) -> JobDescriptor:
    return JobDescriptor(
        queue_name=QUEUE_SYNC,
        name=name,
        data={},
        options=JobOptions(repeat=RepeatOptions(pattern=pattern, tz=tz), job_id=name),
    )


class JobScheduler:
    """
    Args:
        queues: Queue name -> JobQueue for every queue that can hold repeatables
        platforms: Platforms to schedule refreshes for (those with credentials)
        regions: Region codes to schedule refreshes for
        refresh_interval: Seconds between refreshes of one platform x region
        sync_schedules: Sync job name -> cron pattern
    """

    def __init__(
        self,
        queues: Dict[str, JobQueue],
        platforms: Iterable[Platform],
        regions: Iterable[str] = SUPPORTED_REGION_CODES,
        refresh_interval: int = TRENDING_REFRESH_INTERVAL,
        sync_schedules: Optional[Dict[str, str]] = None,
    ):
        self.queues = queues
        self.platforms = list(platforms)
        self.regions = list(regions)
        self.refresh_interval = refresh_interval
        self.sync_schedules = SYNC_SCHEDULES if sync_schedules is None else sync_schedules

    def canonical_descriptors(self) -> List[JobDescriptor]:
        """Every repeatable job the system should have, in a stable order."""
        descriptors = [
            refresh_descriptor(platform, region, self.refresh_interval)
            for platform in self.platforms
            for region in self.regions
        ]
        descriptors.extend(
            sync_descriptor(name, pattern) for name, pattern in self.sync_schedules.items()
        )
        return descriptors

    async def reconcile(self) -> ReconcileReport:
        """
        Make each queue's repeatable set equal the canonical set.

        Algorithm:
            1. Group canonical descriptors by queue, keyed by repeat key
            2. For every managed queue, list its registered descriptors and
               remove those whose key is not in the group
            3. Register canonical descriptors that are missing or whose stored
               options differ (schedule of an unchanged key is kept)
        """
        report = ReconcileReport()

        canonical: Dict[str, Dict[str, JobDescriptor]] = {name: {} for name in self.queues}
        for descriptor in self.canonical_descriptors():
            if descriptor.queue_name not in self.queues:
                raise KeyError(f"No queue configured for {descriptor.queue_name}")
            queue = self.queues[descriptor.queue_name]
            merged = descriptor.model_copy(update={"options": queue.merge_options(descriptor.options)})
            canonical[descriptor.queue_name][merged.repeat_key] = merged

        for queue_name, queue in self.queues.items():
            wanted = canonical[queue_name]
            registered = {descriptor.repeat_key: descriptor for descriptor in await queue.list_repeatable()}

            removed = sorted(set(registered) - set(wanted))
            for repeat_key in removed:
                await queue.remove_repeatable(repeat_key)

            added, updated, kept = [], [], []
            for repeat_key, descriptor in wanted.items():
                current = registered.get(repeat_key)
                if current == descriptor:
                    kept.append(repeat_key)
                    continue
                (added if current is None else updated).append(repeat_key)
                await queue.add_repeatable(descriptor)

            report.removed[queue_name] = removed
            report.added[queue_name] = added
            report.updated[queue_name] = updated
            report.kept[queue_name] = sorted(kept)

            logger.info(
                f"Reconciled {queue_name}: {len(added)} added, {len(updated)} updated, {len(removed)} removed, "
                f"{len(report.kept[queue_name])} unchanged"
            )

        return report
