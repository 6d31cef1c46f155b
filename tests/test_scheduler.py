import pytest

from stealthpay.workers.scheduler import StealthWorkerScheduler

from factories import PROGRAM_ID, make_bundle, make_wallet, payment_tx


@pytest.fixture
def scheduler(container):
    return StealthWorkerScheduler(container.indexer, container.validator, container.invalidator, container.settings)


def test_all_jobs_are_registered(scheduler):
    scheduler.setup_jobs()

    ids = {job.id for job in scheduler.scheduler.get_jobs()}
    assert ids == {
        "index_stealth_events",
        "reprocess_withdrawals",
        "rescan_attribution",
        "validate_balances",
        "cleanup_caches",
    }


@pytest.mark.asyncio
async def test_index_job_runs_a_cycle(scheduler, repo, reader):
    keys, registered = make_wallet("user-a")
    repo.add_viewing_key(registered)
    reader.add_transaction(PROGRAM_ID, payment_tx(100, make_bundle(keys), 1000))

    await scheduler.index_stealth_events()

    assert len(repo.payments) == 1


@pytest.mark.asyncio
async def test_stopped_scheduler_skips_validation(scheduler, repo, reader):
    keys, registered = make_wallet("user-a")
    repo.add_viewing_key(registered)
    bundle = make_bundle(keys)
    reader.add_transaction(PROGRAM_ID, payment_tx(100, bundle, 1000))
    await scheduler.index_stealth_events()

    scheduler.stop_event.set()
    await scheduler.validate_balances()

    assert await repo.get_address_cache(bundle.stealth_address, scheduler.settings.chain_id) is None


def test_slow_profile_indexes_every_two_minutes(settings):
    settings.indexer_speed = "slow"
    scheduler = StealthWorkerScheduler(None, None, None, settings)

    scheduler.setup_jobs()

    trigger = scheduler.scheduler.get_job("index_stealth_events").trigger
    assert trigger.interval.total_seconds() == 120
