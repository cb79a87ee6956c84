import asyncio

from foreman.infra.channel import channel


async def test_items_arrive_in_order_and_iteration_ends_on_close():
    sender, receiver = channel("t")
    for i in range(3):
        assert sender.send(i)
    sender.close()

    assert [item async for item in receiver] == [0, 1, 2]
    assert await receiver.recv() is None


async def test_iteration_waits_for_every_clone():
    sender, receiver = channel("t")
    clone = sender.clone()
    sender.send("a")
    sender.close()
    clone.send("b")

    collected = []

    async def consume():
        async for item in receiver:
            collected.append(item)

    task = asyncio.create_task(consume())
    await asyncio.sleep(0)
    assert not task.done()

    clone.close()
    await task
    assert collected == ["a", "b"]


async def test_send_after_close_is_dropped():
    sender, receiver = channel("t")
    sender.close()
    sender.close()
    assert sender.send("late") is False
    assert receiver.drain() == []


async def test_send_after_receiver_close_is_dropped():
    sender, receiver = channel("t")
    receiver.close()
    assert sender.closed
    assert sender.send("x") is False


async def test_drain_returns_buffered_items():
    sender, receiver = channel("t")
    sender.send(1)
    sender.send(2)
    assert receiver.drain() == [1, 2]
    assert receiver.try_recv() is None


async def test_context_manager_closes_sender():
    sender, receiver = channel("t")
    with sender:
        sender.send("x")
    assert [item async for item in receiver] == ["x"]
