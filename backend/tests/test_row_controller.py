"""Tests for the row controller and row registry."""

import asyncio

import pytest

from conftest import PAUSE, analysis, wait_for
from landing_translator.core.exceptions import RowBusyError, ServiceError
from landing_translator.core.orchestration import (
    BatchCoordinator,
    ConvergenceOutcome,
    ItemKey,
    PublishStage,
    RowController,
    RowRegistry,
    TranslationItem,
    plain_translate_runner,
)
from landing_translator.models.database.enums import ItemStatus

PUBLISH_OK = (
    b'{"step": "images", "total": 1}\n{"current": 1}\n'
    b'{"step": "upload"}\n{"step": "done", "url": "https://pages.test/de"}\n'
)


@pytest.fixture
def row(item, services, store, config):
    return RowController(item, services, store, config_factory=lambda _: config)


@pytest.fixture
def translated_row(row):
    row.item.id = "tr-1"
    row.item.status = ItemStatus.TRANSLATED
    return row


# =============================================================================
# Translate and cancel
# =============================================================================


@pytest.mark.asyncio
async def test_translate_runs_loop_and_tracks_progress(row, services, store):
    seen = []
    services.hooks["analyze"] = lambda: seen.append((row.busy, row.operation))
    services.analyses = [analysis(93)]

    result = await row.translate()

    assert result.outcome == ConvergenceOutcome.CONVERGED
    assert seen == [(True, "translate")]
    assert not row.busy
    assert row.snapshot()["progress"] is None
    assert row.snapshot()["last_result"]["outcome"] == "converged"
    assert len(store.saves) == 1


@pytest.mark.asyncio
async def test_second_operation_while_busy_is_rejected(row, services):
    services.gates["analyze"] = asyncio.Event()
    task = asyncio.create_task(row.translate())
    await wait_for(lambda: services.count("analyze") == 1)

    assert row.snapshot()["progress"] == "translating"
    with pytest.raises(RowBusyError):
        await row.translate()

    services.gates["analyze"].set()
    await task


@pytest.mark.asyncio
async def test_cancel_is_terminal_and_second_cancel_is_noop(row, services, store):
    services.gates["analyze"] = asyncio.Event()
    services.analyses = [analysis(40, ("a", "b"))]
    task = asyncio.create_task(row.translate())
    await wait_for(lambda: services.count("analyze") == 1)

    assert row.cancel() is True
    assert row.cancel() is False
    assert row.item.status == ItemStatus.ERROR
    assert row.item.error_message == "Cancelled"
    assert row.snapshot()["progress"] is None

    services.gates["analyze"].set()
    result = await task

    assert result.outcome == ConvergenceOutcome.CANCELLED
    assert services.count("apply_fix") == 0
    assert store.saves[-1].error_message == "Cancelled"
    assert len(store.saves) == 1
    assert row.cancel() is False


@pytest.mark.asyncio
async def test_cancel_while_final_save_is_pending_is_noop(row, services, store):
    gate = asyncio.Event()
    pending = []
    store_save = store.save

    async def gated_save(saved):
        pending.append(saved)
        await gate.wait()
        await store_save(saved)

    store.save = gated_save
    services.analyses = [analysis(92)]
    task = asyncio.create_task(row.translate())
    await wait_for(lambda: pending)

    assert row.cancel() is False
    gate.set()
    result = await task

    assert result.outcome == ConvergenceOutcome.CONVERGED
    assert row.item.status == ItemStatus.TRANSLATED
    assert row.item.error_message is None
    assert [(s.status, s.error_message) for s in store.saves] == [(ItemStatus.TRANSLATED, None)]


@pytest.mark.asyncio
async def test_cancel_while_publish_result_is_saved_is_noop(translated_row, services, store):
    gate = asyncio.Event()
    pending = []
    store_save = store.save

    async def gated_save(saved):
        pending.append(saved)
        await gate.wait()
        await store_save(saved)

    store.save = gated_save
    services.publish_chunks = [PUBLISH_OK]
    task = asyncio.create_task(translated_row.publish())
    await wait_for(lambda: pending)

    assert translated_row.cancel() is False
    gate.set()
    run = await task

    assert run.stage == PublishStage.DONE
    assert store.saves[-1].status == ItemStatus.PUBLISHED


def test_cancel_with_nothing_in_flight_is_noop(row):
    assert row.cancel() is False
    assert row.item.status == ItemStatus.NONE


@pytest.mark.asyncio
async def test_each_operation_gets_a_fresh_token(row, services):
    services.gates["analyze"] = asyncio.Event()
    task = asyncio.create_task(row.translate())
    await wait_for(lambda: services.count("analyze") == 1)
    row.cancel()
    services.gates["analyze"].set()
    await task

    del services.gates["analyze"]
    services.analyses = [analysis(90)]
    result = await row.translate()

    assert result.outcome == ConvergenceOutcome.CONVERGED
    assert row.item.status == ItemStatus.TRANSLATED


@pytest.mark.asyncio
async def test_improve_requires_translation(row):
    with pytest.raises(ValueError):
        await row.improve()


# =============================================================================
# Publish
# =============================================================================


@pytest.mark.asyncio
async def test_publish_persists_published_url_once(translated_row, services, store):
    services.publish_chunks = [PUBLISH_OK]
    snapshots = []

    run = await translated_row.publish(listener=snapshots.append)

    assert run.stage == PublishStage.DONE
    assert translated_row.item.status == ItemStatus.PUBLISHED
    assert translated_row.item.published_url == "https://pages.test/de"
    assert len(store.saves) == 1
    assert snapshots[-1]["finished"] is True

    # Same lifecycle: no new request, no second write
    again = await translated_row.publish()
    assert again is run
    assert services.publish_opened == 1
    assert len(store.saves) == 1


@pytest.mark.asyncio
async def test_publish_error_persists_reason(translated_row, services, store):
    services.publish_chunks = [b'{"step": "deploy"}\n{"step": "error", "message": "Bucket not found"}\n']

    run = await translated_row.publish()

    assert run.stage == PublishStage.ERROR
    assert translated_row.item.status == ItemStatus.ERROR
    assert store.saves[-1].error_message == "Bucket not found"


@pytest.mark.asyncio
async def test_publish_non_2xx_persists_reason(translated_row, services, store):
    services.publish_error = ServiceError("Publish failed (403)", status_code=403)

    await translated_row.publish()

    assert store.saves[-1].status == ItemStatus.ERROR
    assert store.saves[-1].error_message == "Publish failed (403)"


@pytest.mark.asyncio
async def test_publish_requires_translation(row):
    with pytest.raises(ValueError):
        await row.publish()


@pytest.mark.asyncio
async def test_publish_join_shares_in_flight_run(translated_row, services):
    services.publish_chunks = [PAUSE, PUBLISH_OK]
    joined = []

    first = asyncio.create_task(translated_row.publish())
    await wait_for(lambda: services.publish_opened == 1)
    second = asyncio.create_task(translated_row.publish(listener=joined.append))
    await asyncio.sleep(0)
    services.publish_gate.set()

    runs = await asyncio.gather(first, second)

    assert runs[0] is runs[1]
    assert services.publish_opened == 1
    assert joined[0]["stage"] == "starting"
    assert joined[-1]["stage"] == "done"


@pytest.mark.asyncio
async def test_cancel_during_publish_persists_cancelled(translated_row, services, store):
    services.publish_chunks = [b'{"step": "images", "total": 9}\n', PAUSE, PUBLISH_OK]

    task = asyncio.create_task(translated_row.publish())
    await wait_for(lambda: translated_row.snapshot()["publish"]["stage"] == "images")
    assert translated_row.cancel() is True
    run = await task

    assert run.cancelled is True
    assert run.stage == PublishStage.IMAGES
    assert store.saves[-1].error_message == "Cancelled"
    assert len(store.saves) == 1


@pytest.mark.asyncio
async def test_close_publish_opens_new_lifecycle(translated_row, services):
    services.publish_chunks = [PUBLISH_OK]
    await translated_row.publish()

    assert await translated_row.close_publish() is True
    assert translated_row.snapshot()["publish"] is None

    await translated_row.publish()
    assert services.publish_opened == 2


@pytest.mark.asyncio
async def test_close_publish_cancels_in_flight_publish(translated_row, services, store):
    services.publish_chunks = [PAUSE, PUBLISH_OK]

    task = asyncio.create_task(translated_row.publish())
    await wait_for(lambda: services.publish_opened == 1)

    assert await translated_row.close_publish() is False
    run = await task

    assert run.cancelled is True
    assert store.saves[-1].error_message == "Cancelled"


@pytest.mark.asyncio
async def test_close_publish_without_publish(row):
    assert await row.close_publish() is False


# =============================================================================
# Registry
# =============================================================================


@pytest.mark.asyncio
async def test_registry_creates_rows_and_registers_runners(services, store):
    coordinator = BatchCoordinator(plain_translate_runner(services, store))
    rows = RowRegistry(services, store, coordinator)
    key = ItemKey("page-1", "fr")

    row = await rows.get(key)

    assert await rows.get(key) is row
    assert row.item.status == ItemStatus.NONE
    assert coordinator.has_runner(key)

    assert rows.dispose(key) is True
    assert not coordinator.has_runner(key)
    assert rows.peek(key) is None


@pytest.mark.asyncio
async def test_registry_loads_persisted_item(services, store):
    await store.save(
        TranslationItem(page_id="page-1", language="it", id="tr-it", status=ItemStatus.TRANSLATED)
    )
    rows = RowRegistry(services, store, BatchCoordinator(plain_translate_runner(services, store)))

    row = await rows.get(ItemKey("page-1", "it"))

    assert row.item.id == "tr-it"
    assert row.item.status == ItemStatus.TRANSLATED


@pytest.mark.asyncio
async def test_batch_runs_registered_row(services, store):
    coordinator = BatchCoordinator(plain_translate_runner(services, store))
    rows = RowRegistry(services, store, coordinator)
    await rows.get(ItemKey("page-1", "de"))

    batch = coordinator.create_batch([ItemKey("page-1", "de"), ItemKey("page-1", "fr")])
    await coordinator.run_batch(batch)

    # Rich row analyzes, plain item does not
    assert services.calls_to("analyze")[0][1] == "tr-page-1-de"
    assert services.count("analyze") == 1
    assert store.items[ItemKey("page-1", "fr")].status == ItemStatus.TRANSLATED
