import asyncio

import pytest

from shard_ingestor.channels import TableChannel
from shard_ingestor.errors import ChannelClosedError


@pytest.mark.asyncio
async def test_batches_arrive_in_send_order():
    channel = TableChannel("s1.events")
    channel.send((1, 2))
    channel.send((3,))

    assert await channel.receive() == (1, 2)
    assert await channel.receive() == (3,)


@pytest.mark.asyncio
async def test_receive_waits_for_send():
    channel = TableChannel("s1.events")
    pending = asyncio.ensure_future(channel.receive())
    await asyncio.sleep(0)
    assert not pending.done()

    channel.send(("a",))

    assert await asyncio.wait_for(pending, timeout=1) == ("a",)


@pytest.mark.asyncio
async def test_close_drains_then_ends_iteration():
    channel = TableChannel("s1.events")
    channel.send((1,))
    channel.send((2,))
    channel.close()

    received = [batch async for batch in channel]

    assert received == [(1,), (2,)]
    assert await channel.receive() is None


@pytest.mark.asyncio
async def test_close_wakes_waiting_receiver():
    channel = TableChannel("s1.events")
    pending = asyncio.ensure_future(channel.receive())
    await asyncio.sleep(0)

    channel.close()

    assert await asyncio.wait_for(pending, timeout=1) is None


def test_send_after_close_raises():
    channel = TableChannel("s1.events")
    channel.close()
    with pytest.raises(ChannelClosedError):
        channel.send((1,))


def test_second_close_raises():
    channel = TableChannel("s1.events")
    channel.close()
    with pytest.raises(ChannelClosedError):
        channel.close()


def test_full_channel_drops_oldest_batch():
    channel = TableChannel("s1.events", maxsize=2)
    channel.send((1,))
    channel.send((2,))
    channel.send((3,))

    assert len(channel) == 2
    assert channel.dropped == 1


@pytest.mark.asyncio
async def test_full_channel_keeps_newest_batches():
    channel = TableChannel("s1.events", maxsize=2)
    for batch in [(1,), (2,), (3,), (4,)]:
        channel.send(batch)
    channel.close()

    assert [batch async for batch in channel] == [(3,), (4,)]
    assert channel.dropped == 2


def test_unbounded_channel_never_drops():
    channel = TableChannel("s1.events", maxsize=0)
    for i in range(500):
        channel.send((i,))
    assert len(channel) == 500
    assert channel.dropped == 0
