from contextlib import asynccontextmanager

import pytest

from wardaqi.worker import RefreshConsumer


class FakeMessage:
    routing_key = "ward_narrative_refresh"
    delivery_tag = 1

    def __init__(self, body: bytes):
        self.body = body
        self.nacked = False

    @asynccontextmanager
    async def process(self, requeue=False, ignore_processed=False):
        yield

    async def nack(self, requeue=True):
        self.nacked = True


class FakeJob:
    def __init__(self):
        self.segments = []

    async def refresh_segment(self, start, count):
        self.segments.append((start, count))
        return ["W01"]


@pytest.fixture
def job():
    return FakeJob()


async def test_valid_message_runs_refresh(job):
    message = FakeMessage(b'{"start": 6, "count": 6}')
    await RefreshConsumer(job).process_message(message)
    assert job.segments == [(6, 6)]
    assert not message.nacked


@pytest.mark.parametrize("body", [b"not json", b'{"start": -1, "count": 5}', b'{"count": 5}', b"\xff\xfe"])
async def test_invalid_message_is_rejected(job, body):
    message = FakeMessage(body)
    await RefreshConsumer(job).process_message(message)
    assert message.nacked
    assert job.segments == []
