"""Tests for the publish progress consumer and its state machine."""

import asyncio
import json

import pytest

from conftest import PAUSE, wait_for
from landing_translator.core.exceptions import ServiceError
from landing_translator.core.orchestration import (
    CancellationToken,
    LineBuffer,
    PublishProgressConsumer,
    PublishRun,
    PublishStage,
)
from landing_translator.core.orchestration.models import STAGE_ORDER
from landing_translator.core.orchestration.publish import STREAM_ENDED_REASON


def ndjson(*records) -> bytes:
    return b"".join(json.dumps(r).encode() + b"\n" for r in records)


FULL_STREAM = ndjson(
    {"step": "images", "current": 0, "total": 3, "message": "Compressing images"},
    {"current": 1},
    {"current": 2},
    {"current": 3},
    {"step": "deploy", "message": "Deploying"},
    {"step": "upload", "message": "Uploading"},
    {"step": "done", "url": "https://pages.test/de/landing"},
)


# =============================================================================
# Line buffer
# =============================================================================


def test_line_buffer_joins_lines_split_across_chunks():
    buffer = LineBuffer()

    assert buffer.feed(b'{"step": "ima') == []
    assert buffer.feed(b'ges"}\n{"cur') == ['{"step": "images"}']
    assert buffer.feed(b'rent": 1}\n') == ['{"current": 1}']
    assert buffer.flush() == []


def test_line_buffer_decodes_multibyte_characters_split_across_chunks():
    buffer = LineBuffer()
    encoded = '{"message": "Übertragung"}\n'.encode("utf-8")

    lines = buffer.feed(encoded[:14]) + buffer.feed(encoded[14:])

    assert lines == ['{"message": "Übertragung"}']


def test_line_buffer_flushes_trailing_line():
    buffer = LineBuffer()
    buffer.feed(b'{"step": "done"}')

    assert buffer.flush() == ['{"step": "done"}']


# =============================================================================
# State machine
# =============================================================================


def test_partial_record_updates_only_present_fields():
    run = PublishRun()
    run.apply_line('{"step": "images", "current": 1, "total": 5, "message": "Compressing"}')

    run.apply_line('{"current": 3}')

    assert run.stage == PublishStage.IMAGES
    assert run.current == 3
    assert run.total == 5
    assert run.message == "Compressing"


def test_backward_step_is_ignored_but_other_fields_apply():
    run = PublishRun()
    run.apply_line('{"step": "deploy", "total": 2}')

    run.apply_line('{"step": "images", "current": 1, "message": "late"}')

    assert run.stage == PublishStage.DEPLOY
    assert run.current == 1
    assert run.message == "late"


def test_unknown_step_is_ignored():
    run = PublishRun()

    run.apply_line('{"step": "warming-up", "message": "Preparing"}')

    assert run.stage == PublishStage.STARTING
    assert run.message == "Preparing"


def test_current_is_clamped_to_total():
    run = PublishRun()
    run.apply_line('{"step": "images", "total": 2}')

    run.apply_line('{"current": 7}')

    assert run.current == 2


def test_lowered_total_clamps_current():
    run = PublishRun()
    run.apply_line('{"step": "images", "current": 4, "total": 5}')

    changed = run.apply_line('{"total": 2}')

    assert changed is True
    assert run.total == 2
    assert run.current == 2


def test_malformed_lines_are_skipped():
    run = PublishRun()

    for line in ["not json", "[1, 2]", '{"current": "three"}', "   ", '"done"']:
        assert run.apply_line(line) is False

    assert run.snapshot()["stage"] == "starting"
    assert run.current == 0


def test_nothing_changes_after_terminal_stage():
    run = PublishRun()
    run.apply_line('{"step": "done", "url": "https://pages.test/x"}')

    assert run.apply_line('{"step": "error", "message": "late failure"}') is False

    assert run.stage == PublishStage.DONE
    assert run.error_message is None


def test_error_step_carries_message():
    run = PublishRun()
    run.apply_line('{"step": "deploy"}')

    run.apply_line('{"step": "error", "message": "Deploy quota reached"}')

    assert run.stage == PublishStage.ERROR
    assert run.error_message == "Deploy quota reached"


# =============================================================================
# Consumer
# =============================================================================


@pytest.mark.asyncio
async def test_consume_full_stream_with_arbitrary_chunking(services):
    # Split into 7-byte chunks so records straddle chunk boundaries
    services.publish_chunks = [FULL_STREAM[i:i + 7] for i in range(0, len(FULL_STREAM), 7)]
    consumer = PublishProgressConsumer(services, "tr-1")
    snapshots = []
    consumer.subscribe(snapshots.append)

    run = await consumer.consume()

    assert run.stage == PublishStage.DONE
    assert run.published_url == "https://pages.test/de/landing"
    assert run.current == 3 and run.total == 3
    assert snapshots[-1]["finished"] is True

    # Observed stages never go backwards
    order = [STAGE_ORDER.index(PublishStage(s["stage"])) for s in snapshots]
    assert order == sorted(order)


@pytest.mark.asyncio
async def test_unterminated_final_line_is_parsed(services):
    services.publish_chunks = [ndjson({"step": "upload"}), b'{"step": "done", "url": "https://p.test"}']

    run = await PublishProgressConsumer(services, "tr-1").consume()

    assert run.stage == PublishStage.DONE
    assert run.published_url == "https://p.test"


@pytest.mark.asyncio
async def test_stream_ending_early_is_an_error(services):
    services.publish_chunks = [ndjson({"step": "images", "total": 4}, {"current": 2})]

    run = await PublishProgressConsumer(services, "tr-1").consume()

    assert run.stage == PublishStage.ERROR
    assert run.error_message == STREAM_ENDED_REASON


@pytest.mark.asyncio
async def test_non_2xx_response_is_an_error_not_an_exception(services):
    services.publish_error = ServiceError("Publish failed (502)", status_code=502, transient=True)

    run = await PublishProgressConsumer(services, "tr-1").consume()

    assert run.stage == PublishStage.ERROR
    assert run.error_message == "Publish failed (502)"


@pytest.mark.asyncio
async def test_transport_error_mid_stream_is_an_error(services):
    services.publish_chunks = [
        ndjson({"step": "deploy"}),
        ServiceError("Publish stream interrupted: connection reset", transient=True),
    ]

    run = await PublishProgressConsumer(services, "tr-1").consume()

    assert run.stage == PublishStage.ERROR
    assert "connection reset" in run.error_message


@pytest.mark.asyncio
async def test_cancel_interrupts_stream_read(services):
    token = CancellationToken()
    services.publish_chunks = [ndjson({"step": "images", "total": 10}), PAUSE, FULL_STREAM]
    consumer = PublishProgressConsumer(services, "tr-1", token)

    task = asyncio.create_task(consumer.consume())
    await wait_for(lambda: consumer.run.stage == PublishStage.IMAGES)
    token.cancel()
    run = await task

    assert run.cancelled is True
    assert run.stage == PublishStage.IMAGES
    assert run.error_message is None
    assert run.finished


@pytest.mark.asyncio
async def test_cancel_before_start_reads_nothing(services):
    token = CancellationToken()
    token.cancel()
    services.publish_chunks = [FULL_STREAM]

    run = await PublishProgressConsumer(services, "tr-1", token).consume()

    assert run.cancelled is True
    assert run.stage == PublishStage.STARTING


@pytest.mark.asyncio
async def test_consume_is_at_most_once_per_lifecycle(services):
    services.publish_chunks = [PAUSE, FULL_STREAM]
    consumer = PublishProgressConsumer(services, "tr-1")

    first = asyncio.create_task(consumer.consume())
    second = asyncio.create_task(consumer.consume())
    await wait_for(lambda: services.publish_opened == 1)
    services.publish_gate.set()
    runs = await asyncio.gather(first, second)

    assert runs[0] is runs[1]
    assert services.publish_opened == 1

    # A finished run is returned again without a new request
    await consumer.consume()
    assert services.publish_opened == 1

    assert consumer.close() is True
    await consumer.consume()
    assert services.publish_opened == 2


@pytest.mark.asyncio
async def test_close_reports_unpublished_run(services):
    services.publish_error = ServiceError("Publish failed (500)")
    consumer = PublishProgressConsumer(services, "tr-1")
    await consumer.consume()

    assert consumer.close() is False
    assert consumer.run.stage == PublishStage.STARTING
