import asyncio
import time

from aiogram.fsm.storage.memory import MemoryStorage

from checkout.sessions import ChatSequencer, Session, SessionStore, Stage


async def test_session_round_trips_through_storage():
    store = SessionStore(MemoryStorage(), ttl_sec=60)
    await store.save(Session(chat_id=5, handle="@eve", stage=Stage.NETWORK_CHOICE, plan_id=2))

    session = await store.get(5)

    assert session.stage is Stage.NETWORK_CHOICE
    assert session.plan_id == 2
    assert session.order_id is None
    assert await store.get(6) is None


async def test_idle_session_expires():
    store = SessionStore(MemoryStorage(), ttl_sec=60)
    stale = Session(chat_id=5, handle="@eve", stage=Stage.AWAITING_EMAIL, updated_at=time.time() - 120)
    await store.storage.set_data(store._key(5), stale.to_data())

    assert await store.get(5) is None
    assert await store.storage.get_data(store._key(5)) == {}


async def test_sequencer_runs_one_chat_in_arrival_order():
    sequencer = ChatSequencer()
    log = []

    async def worker(name, chat_id, delay):
        async with sequencer.hold(chat_id):
            log.append(f"{name}:start")
            await asyncio.sleep(delay)
            log.append(f"{name}:end")

    await asyncio.gather(worker("a", 1, 0.02), worker("b", 1, 0), worker("c", 1, 0))

    assert log == ["a:start", "a:end", "b:start", "b:end", "c:start", "c:end"]
    assert sequencer.active_chats() == 0


async def test_sequencer_lets_different_chats_overlap():
    sequencer = ChatSequencer()
    log = []

    async def worker(name, chat_id, delay):
        async with sequencer.hold(chat_id):
            log.append(f"{name}:start")
            await asyncio.sleep(delay)
            log.append(f"{name}:end")

    await asyncio.gather(worker("a", 1, 0.02), worker("b", 2, 0))

    assert log.index("b:start") < log.index("a:end")
