import anyio
import pytest

from conftest import FakeChannel
from spbridge_osc import Message
from spbridge_protocol import (
    AckEvent,
    BootErrorEvent,
    BufferNewlineAndIndent,
    EventBus,
    EventLog,
    ExitedEvent,
    LogEvent,
    MixerAmp,
    ProtocolDispatcher,
    RuntimeErrorEvent,
    SaveAndRunBuffer,
    SyntaxErrorEvent,
    classify,
)


pytestmark = pytest.mark.anyio


# ---------------------------------------------------------------------------
# classification
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("address,log_type", [
    ("/log/info", "info"),
    ("/log/error", "error"),
    ("/log/multi_message", "multi_message"),
])
def test_log_addresses(address, log_type):
    events = classify(Message(address, (1, "thread", 0.5, "message")))
    assert events == [LogEvent(log_type, (1, "thread", 0.5, "message"))]


def test_boot_error():
    assert classify(Message("/exited-with-boot-error", ("no sound card",))) == [
        BootErrorEvent("no sound card")
    ]


def test_runtime_error_coerces_numbers():
    events = classify(Message("/error", ("4", "boom", "trace", "12")))
    assert events == [RuntimeErrorEvent(job_id=4, message="boom", backtrace="trace", line_number=12)]


def test_syntax_error():
    msg = Message("/syntax_error", (3, "bad token", "x = 1 +", 10, "10: x = 1 +"))
    assert classify(msg) == [SyntaxErrorEvent(
        job_id=3,
        message="bad token",
        line_string="x = 1 +",
        line_number=10,
        line_number_string="10: x = 1 +",
    )]


def test_short_argument_lists_do_not_raise():
    [event] = classify(Message("/error", ("job",)))
    assert event.job_id is None
    assert event.message is None


def test_exited_and_ack_are_isolated_by_default():
    assert classify(Message("/exited")) == [ExitedEvent()]
    assert classify(Message("/ack", (42,))) == [AckEvent(42)]


def test_legacy_fallthrough_adds_ack_after_exited():
    assert classify(Message("/exited"), legacy_fallthrough=True) == [ExitedEvent(), AckEvent(None)]
    assert classify(Message("/ack", (42,)), legacy_fallthrough=True) == [AckEvent(42)]


def test_unknown_address_yields_nothing():
    assert classify(Message("/cue", ("x",))) == []


def test_event_to_dict_carries_kind():
    assert AckEvent(7).to_dict() == {"kind": "ack", "id": 7}
    assert ExitedEvent().to_dict() == {"kind": "exited"}


def test_command_field_order_is_wire_order():
    msg = BufferNewlineAndIndent(77, "ws.rb", "code", 3, 4, 1).to_message()
    assert msg == Message("/buffer-newline-and-indent", (77, "ws.rb", "code", 3, 4, 1))
    assert SaveAndRunBuffer(77, "b", "c", "b").to_message().args == (77, "b", "c", "b")
    assert MixerAmp(77, 0.5).to_message().args == (77, 0.5, 0)


# ---------------------------------------------------------------------------
# event bus
# ---------------------------------------------------------------------------

async def test_bus_filters_by_kind_and_supports_async_callbacks():
    bus = EventBus()
    everything, errors = [], []

    async def on_error(event):
        errors.append(event)

    bus.subscribe(everything.append)
    bus.subscribe(on_error, kinds=["runtime_error", "syntax_error"])

    await bus.publish(ExitedEvent())
    await bus.publish(RuntimeErrorEvent(1, "m", "b", 2))

    assert len(everything) == 2
    assert errors == [RuntimeErrorEvent(1, "m", "b", 2)]


async def test_bus_cancelled_subscription_stops_receiving():
    bus = EventBus()
    seen = []
    sub = bus.subscribe(seen.append)
    await bus.publish(ExitedEvent())
    sub.cancel()
    sub.cancel()
    await bus.publish(ExitedEvent())
    assert seen == [ExitedEvent()]


async def test_bus_isolates_failing_subscribers():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    bus.subscribe(broken)
    bus.subscribe(seen.append)
    await bus.publish(ExitedEvent())
    assert seen == [ExitedEvent()]


def test_bus_rejects_unknown_kinds():
    with pytest.raises(ValueError):
        EventBus().subscribe(print, kinds=["nope"])


# ---------------------------------------------------------------------------
# event log
# ---------------------------------------------------------------------------

async def test_event_log_poll_and_wait():
    events = EventLog()
    await events.append(ExitedEvent())
    entries, cursor = await events.poll(0)
    assert [e.event for e in entries] == [ExitedEvent()]
    assert cursor == 1

    entries, cursor, timed_out = await events.wait(cursor, 0.05)
    assert (entries, cursor, timed_out) == ([], 1, True)

    async with anyio.create_task_group() as tg:
        async def later():
            await anyio.sleep(0.02)
            await events.append(AckEvent(3))
        tg.start_soon(later)
        entries, cursor, timed_out = await events.wait(1, 2)

    assert not timed_out
    assert [e.to_dict()["data"] for e in entries] == [{"kind": "ack", "id": 3}]


async def test_event_log_limit_keeps_cursor_monotonic():
    events = EventLog(limit=2)
    for i in range(5):
        await events.append(AckEvent(i))
    entries, cursor = await events.poll(0)
    assert cursor == 5
    assert [e.seq for e in entries] == [3, 4]
    assert [e.event.id for e in events.tail(1)] == [4]


# ---------------------------------------------------------------------------
# dispatcher
# ---------------------------------------------------------------------------

async def run_dispatcher(messages, legacy_fallthrough=False, subscriber=None):
    inbound, outbound = FakeChannel(), FakeChannel()
    bus = EventBus()
    seen = []
    bus.subscribe(seen.append)
    if subscriber is not None:
        bus.subscribe(subscriber)
    dispatcher = ProtocolDispatcher(inbound, outbound, bus, legacy_fallthrough)

    with anyio.fail_after(2):
        async with anyio.create_task_group() as tg:
            tg.start_soon(dispatcher.run)
            for message in messages:
                await inbound.inject(message.address, *message.args)
            while dispatcher.received < len(messages):
                await anyio.sleep(0.01)
            await inbound.aclose()
    return seen, outbound


async def test_syntax_error_event_then_ack():
    msg = Message("/syntax_error", (3, "bad token", "x = 1 +", 10, "10: x = 1 +"))
    seen, outbound = await run_dispatcher([msg])
    assert seen == [SyntaxErrorEvent(3, "bad token", "x = 1 +", 10, "10: x = 1 +")]
    assert outbound.sent == [Message("/ack", ())]


async def test_every_message_is_acked_exactly_once():
    messages = [
        Message("/log/info", ("a",)),
        Message("/exited"),
        Message("/ack", (9,)),
        Message("/some/unknown", (1, 2)),
        Message("/error", ()),
    ]
    seen, outbound = await run_dispatcher(messages)
    assert outbound.sent == [Message("/ack", ())] * len(messages)
    assert [e.kind for e in seen] == ["log", "exited", "ack", "runtime_error"]


async def test_fallthrough_flag_reaches_dispatcher():
    seen, outbound = await run_dispatcher([Message("/exited")], legacy_fallthrough=True)
    assert seen == [ExitedEvent(), AckEvent(None)]
    assert outbound.addresses() == ["/ack"]


async def test_ack_sent_even_when_subscriber_fails():
    def broken(event):
        raise RuntimeError("boom")

    seen, outbound = await run_dispatcher([Message("/exited")], subscriber=broken)
    assert outbound.addresses() == ["/ack"]


async def test_ack_failure_does_not_stop_dispatch():
    inbound, outbound = FakeChannel(), FakeChannel()
    outbound.fail = True
    seen = []
    bus = EventBus()
    bus.subscribe(seen.append)
    dispatcher = ProtocolDispatcher(inbound, outbound, bus)

    with anyio.fail_after(2):
        async with anyio.create_task_group() as tg:
            tg.start_soon(dispatcher.run)
            await inbound.inject("/exited")
            await inbound.inject("/ack", 1)
            while dispatcher.received < 2:
                await anyio.sleep(0.01)
            await inbound.aclose()

    assert seen == [ExitedEvent(), AckEvent(1)]
    assert outbound.sent == []
