"""
Repeatable-job schedule reconciliation tests.
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))
sys.path.insert(0, os.path.dirname(__file__))

import pytest

from config import QUEUE_SYNC, QUEUE_TRENDING_REFRESH
from job_queue import JobOptions, JobQueue
from models import Platform
from scheduler import JobScheduler, refresh_descriptor, sync_descriptor

SYNC = {"stats-aggregation": "0 2 * * *", "partition-management": "0 0 1 * *"}


def make_queues(fake_redis, clock):
    return {
        QUEUE_TRENDING_REFRESH: JobQueue(fake_redis, QUEUE_TRENDING_REFRESH, clock=clock.ms),
        QUEUE_SYNC: JobQueue(fake_redis, QUEUE_SYNC, clock=clock.ms),
    }


class TestDescriptors:
    def test_refresh_descriptor(self):
        descriptor = refresh_descriptor(Platform.YOUTUBE, "US", interval_seconds=1800)

        assert descriptor.queue_name == QUEUE_TRENDING_REFRESH
        assert descriptor.data == {"platform": "YOUTUBE", "region": "US"}
        assert descriptor.options.repeat.every_ms == 1_800_000
        assert descriptor.repeat_key == "refresh:YOUTUBE:US:trending-refresh:YOUTUBE:US:every:1800000"

    def test_sync_descriptor(self):
        descriptor = sync_descriptor("stats-aggregation", "0 2 * * *")

        assert descriptor.queue_name == QUEUE_SYNC
        assert descriptor.options.repeat.pattern == "0 2 * * *"
        assert descriptor.options.job_id == "stats-aggregation"

    def test_canonical_set_is_platforms_times_regions_plus_sync(self, fake_redis, clock):
        scheduler = JobScheduler(
            make_queues(fake_redis, clock),
            platforms=[Platform.YOUTUBE, Platform.TIKTOK],
            regions=["US", "JP", "BR"],
            sync_schedules=SYNC,
        )

        descriptors = scheduler.canonical_descriptors()

        assert len(descriptors) == 2 * 3 + len(SYNC)
        assert len({d.repeat_key for d in descriptors}) == len(descriptors)


class TestReconcile:
    @pytest.mark.asyncio
    async def test_reconcile_registers_canonical_set(self, fake_redis, clock):
        """
        Algorithm:
            1. Reconcile 2 platforms x 3 regions plus 2 sync jobs
            2. Refresh queue holds 6 repeatables, sync queue holds 2
        """
        queues = make_queues(fake_redis, clock)
        scheduler = JobScheduler(
            queues, platforms=[Platform.YOUTUBE, Platform.TIKTOK], regions=["US", "JP", "BR"], sync_schedules=SYNC
        )

        report = await scheduler.reconcile()

        assert len(await queues[QUEUE_TRENDING_REFRESH].list_repeatable()) == 6
        assert len(await queues[QUEUE_SYNC].list_repeatable()) == 2
        assert report.changed

    @pytest.mark.asyncio
    async def test_reconcile_is_idempotent(self, fake_redis, clock):
        queues = make_queues(fake_redis, clock)
        scheduler = JobScheduler(queues, platforms=[Platform.YOUTUBE], regions=["US", "GB"], sync_schedules=SYNC)

        await scheduler.reconcile()
        keys_before = {name: [d.repeat_key for d in await q.list_repeatable()] for name, q in queues.items()}
        second = await scheduler.reconcile()
        keys_after = {name: [d.repeat_key for d in await q.list_repeatable()] for name, q in queues.items()}

        assert keys_before == keys_after
        assert not second.changed
        assert second.kept[QUEUE_TRENDING_REFRESH] == keys_after[QUEUE_TRENDING_REFRESH]

    @pytest.mark.asyncio
    async def test_removed_region_is_unscheduled(self, fake_redis, clock):
        """
        A region dropped from the configuration disappears from the schedule
        on the next reconcile.
        """
        queues = make_queues(fake_redis, clock)
        await JobScheduler(queues, platforms=[Platform.YOUTUBE], regions=["US", "GB"], sync_schedules={}).reconcile()

        report = await JobScheduler(
            queues, platforms=[Platform.YOUTUBE], regions=["US"], sync_schedules={}
        ).reconcile()

        keys = [d.repeat_key for d in await queues[QUEUE_TRENDING_REFRESH].list_repeatable()]
        assert len(keys) == 1
        assert "refresh:YOUTUBE:US" in keys[0]
        assert len(report.removed[QUEUE_TRENDING_REFRESH]) == 1
        assert "GB" in report.removed[QUEUE_TRENDING_REFRESH][0]

    @pytest.mark.asyncio
    async def test_changed_cadence_replaces_entry(self, fake_redis, clock):
        queues = make_queues(fake_redis, clock)
        await JobScheduler(
            queues, platforms=[Platform.YOUTUBE], regions=["US"], refresh_interval=1800, sync_schedules={}
        ).reconcile()

        await JobScheduler(
            queues, platforms=[Platform.YOUTUBE], regions=["US"], refresh_interval=900, sync_schedules={}
        ).reconcile()

        (descriptor,) = await queues[QUEUE_TRENDING_REFRESH].list_repeatable()
        assert descriptor.options.repeat.every_ms == 900_000

    @pytest.mark.asyncio
    async def test_without_platforms_only_sync_scheduled(self, fake_redis, clock):
        queues = make_queues(fake_redis, clock)

        await JobScheduler(queues, platforms=[], regions=["US"], sync_schedules=SYNC).reconcile()

        assert [d.repeat_key for d in await queues[QUEUE_TRENDING_REFRESH].list_repeatable()] == []
        assert len(await queues[QUEUE_SYNC].list_repeatable()) == 2

    @pytest.mark.asyncio
    async def test_registered_jobs_carry_queue_defaults(self, fake_redis, clock):
        queues = make_queues(fake_redis, clock)

        await JobScheduler(queues, platforms=[Platform.YOUTUBE], regions=["US"], sync_schedules={}).reconcile()

        (descriptor,) = await queues[QUEUE_TRENDING_REFRESH].list_repeatable()
        assert descriptor.options.attempts == 3
        assert descriptor.options.backoff.delay_ms == 5_000

    @pytest.mark.asyncio
    async def test_changed_queue_defaults_update_descriptor(self, fake_redis, clock):
        """
        Algorithm:
            1. Reconcile with the configured queue defaults
            2. Reconcile again with different retry defaults on the same queue
            3. The descriptor is re-registered (reported as updated) and keeps
               its next run time
        """
        queues = make_queues(fake_redis, clock)
        scheduler = JobScheduler(queues, platforms=[Platform.YOUTUBE], regions=["US"], sync_schedules={})
        await scheduler.reconcile()
        (repeat_key,) = [d.repeat_key for d in await queues[QUEUE_TRENDING_REFRESH].list_repeatable()]
        next_run = await fake_redis.zscore(queues[QUEUE_TRENDING_REFRESH].key("repeat"), repeat_key)

        queues[QUEUE_TRENDING_REFRESH] = JobQueue(
            fake_redis, QUEUE_TRENDING_REFRESH, default_options=JobOptions(attempts=5), clock=clock.ms
        )
        report = await JobScheduler(queues, platforms=[Platform.YOUTUBE], regions=["US"], sync_schedules={}).reconcile()

        assert report.updated[QUEUE_TRENDING_REFRESH] == [repeat_key]
        assert report.changed
        (descriptor,) = await queues[QUEUE_TRENDING_REFRESH].list_repeatable()
        assert descriptor.options.attempts == 5
        assert await fake_redis.zscore(queues[QUEUE_TRENDING_REFRESH].key("repeat"), repeat_key) == next_run

    @pytest.mark.asyncio
    async def test_unreadable_registration_dropped(self, fake_redis, clock):
        queues = make_queues(fake_redis, clock)
        refresh_queue = queues[QUEUE_TRENDING_REFRESH]
        await fake_redis.hset(refresh_queue.key("repeat:opts"), "garbage", "{not json")
        await fake_redis.zadd(refresh_queue.key("repeat"), {"garbage": 0})

        await JobScheduler(queues, platforms=[Platform.YOUTUBE], regions=["US"], sync_schedules={}).reconcile()

        assert "garbage" not in await fake_redis.hgetall(refresh_queue.key("repeat:opts"))
        assert await fake_redis.zscore(refresh_queue.key("repeat"), "garbage") is None
        assert len(await refresh_queue.list_repeatable()) == 1

    @pytest.mark.asyncio
    async def test_missing_queue_rejected(self, fake_redis, clock):
        queues = {QUEUE_SYNC: JobQueue(fake_redis, QUEUE_SYNC, clock=clock.ms)}
        scheduler = JobScheduler(queues, platforms=[Platform.YOUTUBE], regions=["US"], sync_schedules={})

        with pytest.raises(KeyError):
            await scheduler.reconcile()
