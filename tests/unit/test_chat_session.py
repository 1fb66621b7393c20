import asyncio
import json
import logging

import pytest

from chatengine.errors import AssistantHTTPError
from chatengine.session import ChatSession, ReconcileOutcome
from chatengine.session.coordinator import INTERRUPTED_MESSAGE
from chatengine.session.model import (
    ConversationMessage,
    HistoryItem,
    MessageRole,
    MessageStatus,
    PendingRequestMarker,
)
from chatengine.settings import SessionSettings
from chatengine.storage.keys import storage_keys
from chatengine.util.json import dumps_compact
from chatengine.util.time import now_ms
from tests.session_utils import ScriptedBackend

pytestmark = pytest.mark.unit

USER = MessageRole.USER
ASSISTANT = MessageRole.ASSISTANT
READY = MessageStatus.READY
PENDING = MessageStatus.PENDING
ERROR = MessageStatus.ERROR
GUEST = storage_keys(None)


def _make_session(backend, store, clock, ids, settings, identity=None) -> ChatSession:
    return ChatSession(
        backend,
        store,
        identity=identity,
        settings=settings,
        clock=clock,
        id_factory=ids,
    )


def _seed(store, messages, marker=None, keys=GUEST) -> None:
    store.set(keys.messages, dumps_compact([m.to_dict() for m in messages]))
    if marker is not None:
        store.set(keys.marker, dumps_compact(marker.to_dict()))


def _summary(messages):
    return [(m.role, m.content, m.status) for m in messages]


def test_send_message_round_trip(store, clock, ids, session_settings):
    backend = ScriptedBackend("Hi there")

    async def scenario():
        session = _make_session(backend, store, clock, ids, session_settings)
        assert session.open() is ReconcileOutcome.IDLE
        task = session.submit_prompt("  Hello ")
        assert _summary(session.messages[-2:]) == [
            (USER, "Hello", READY),
            (ASSISTANT, "Analyzing your question...", PENDING),
        ]
        assert session.is_sending
        marker = session.marker
        assert marker is not None and marker.prompt == "Hello"
        assert marker.id == session.messages[-1].id
        assert marker.user_message_id == session.messages[-2].id
        await task
        await session.wait_idle()
        return session

    session = asyncio.run(scenario())

    assert _summary(session.messages) == [
        (ASSISTANT, "Welcome!", READY),
        (USER, "Hello", READY),
        (ASSISTANT, "Hi there", READY),
    ]
    assert session.marker is None
    assert not session.is_sending
    assert session.error is None
    user, reply = session.messages[1:]
    assert reply.created_at > user.created_at
    stored = json.loads(store.get(GUEST.messages))
    assert stored[-1]["content"] == "Hi there"


def test_send_message_returns_final_reply(store, clock, ids, session_settings):
    backend = ScriptedBackend("Answer")

    async def scenario():
        async with _make_session(backend, store, clock, ids, session_settings) as session:
            return await session.send_message("Question")

    reply = asyncio.run(scenario())

    assert reply.role is ASSISTANT
    assert reply.status is READY
    assert reply.content == "Answer"


def test_blank_prompt_is_ignored(store, clock, ids, session_settings, backend):
    async def scenario():
        async with _make_session(backend, store, clock, ids, session_settings) as session:
            result = await session.send_message("   ")
            return result, session.messages

    result, messages = asyncio.run(scenario())

    assert result is None
    assert len(messages) == 1
    assert backend.requests == []


def test_only_one_request_in_flight(store, clock, ids, session_settings):
    backend = ScriptedBackend(hold=True)

    async def scenario():
        session = _make_session(backend, store, clock, ids, session_settings)
        session.open()
        first = session.submit_prompt("one")
        rejected = [session.submit_prompt("two"), session.submit_prompt("three")]
        await asyncio.sleep(0)
        count_while_busy = len(session.messages)
        backend.release("done")
        await first
        await session.wait_idle()
        return session, rejected, count_while_busy

    session, rejected, count_while_busy = asyncio.run(scenario())

    assert rejected == [None, None]
    assert count_while_busy == 3
    assert backend.prompts == ["one"]
    assert [m.content for m in session.messages] == ["Welcome!", "one", "done"]


def test_history_excludes_unfinished_replies(store, clock, ids, session_settings):
    backend = ScriptedBackend(
        AssistantHTTPError("Upstream exploded", status_code=500),
        "second answer",
        "third answer",
    )

    async def scenario():
        async with _make_session(backend, store, clock, ids, session_settings) as session:
            await session.send_message("first")
            await session.send_message("second")
            await session.send_message("third")

    asyncio.run(scenario())

    third = backend.requests[2]
    assert third.history == (
        HistoryItem(ASSISTANT, "Welcome!"),
        HistoryItem(USER, "first"),
        HistoryItem(USER, "second"),
        HistoryItem(ASSISTANT, "second answer"),
        HistoryItem(USER, "third"),
    )
    for request in backend.requests:
        contents = [item.content for item in request.history]
        assert "Upstream exploded" not in contents
        assert "Analyzing your question..." not in contents
        assert request.history[-1] == HistoryItem(USER, request.prompt)
        assert len(request.history) <= session_settings.context_window


def test_history_is_bounded_by_context_window(store, clock, ids):
    settings = SessionSettings(context_window=3, welcome_message="Welcome!")
    backend = ScriptedBackend()

    async def scenario():
        async with _make_session(backend, store, clock, ids, settings) as session:
            for index in range(4):
                await session.send_message(f"q{index}")

    asyncio.run(scenario())

    assert [item.content for item in backend.requests[-1].history] == ["q2", "ok", "q3"]


def test_log_keeps_most_recent_messages(store, clock, ids):
    settings = SessionSettings(max_history=4, welcome_message="Welcome!")
    backend = ScriptedBackend(*[f"a{index}" for index in range(5)])

    async def scenario():
        async with _make_session(backend, store, clock, ids, settings) as session:
            for index in range(5):
                await session.send_message(f"q{index}")
            return session.messages

    messages = asyncio.run(scenario())

    assert [m.content for m in messages] == ["q3", "a3", "q4", "a4"]


def test_terminal_messages_stay_terminal(store, clock, ids, session_settings):
    backend = ScriptedBackend(AssistantHTTPError("nope", status_code=503))

    async def scenario():
        async with _make_session(backend, store, clock, ids, session_settings) as session:
            reply = await session.send_message("hi")
            session.reconcile()
            await session.wait_idle()
            return reply, session

    reply, session = asyncio.run(scenario())

    assert reply.status is ERROR
    assert session.messages[-1].status is ERROR
    assert len(backend.requests) == 1


def test_abort_marks_message_interrupted(store, clock, ids, session_settings):
    backend = ScriptedBackend(hold=True)
    errors: list[str | None] = []
    sending: list[bool] = []

    async def scenario():
        session = _make_session(backend, store, clock, ids, session_settings)
        session.events.error_changed.connect(errors.append)
        session.events.sending_changed.connect(sending.append)
        session.open()
        task = session.submit_prompt("slow question")
        await asyncio.sleep(0)
        assert session.stop()
        await task
        await session.wait_idle()
        return session

    session = asyncio.run(scenario())

    assert _summary(session.messages[-1:]) == [(ASSISTANT, INTERRUPTED_MESSAGE, ERROR)]
    assert session.marker is None
    assert not session.is_sending
    assert session.error == INTERRUPTED_MESSAGE
    assert errors == [INTERRUPTED_MESSAGE]
    assert sending == [True, False]
    assert len(backend.requests) == 1


def test_closing_session_interrupts_request(store, clock, ids, session_settings):
    backend = ScriptedBackend(hold=True)

    async def scenario():
        session = _make_session(backend, store, clock, ids, session_settings)
        session.open()
        session.submit_prompt("question")
        await asyncio.sleep(0)
        await session.aclose()
        return session

    session = asyncio.run(scenario())

    assert session.closed
    assert session.messages[-1].status is ERROR
    assert store.get(GUEST.marker) is None
    assert session.submit_prompt("again") is None


def test_corrupt_log_starts_with_greeting(store, clock, ids, session_settings, backend):
    store.set(GUEST.messages, "[{not json")

    async def scenario():
        async with _make_session(backend, store, clock, ids, session_settings) as session:
            return session.messages

    messages = asyncio.run(scenario())

    assert _summary(messages) == [(ASSISTANT, "Welcome!", READY)]
    assert backend.requests == []


def test_orphan_marker_is_reconstructed_and_resumed(store, clock, ids, session_settings):
    backend = ScriptedBackend("Pong")
    marker = PendingRequestMarker(id="a1", prompt="Ping", history=(), created_at=clock() - 60_000)
    store.set(GUEST.marker, dumps_compact(marker.to_dict()))

    async def scenario():
        session = _make_session(backend, store, clock, ids, session_settings)
        outcome = session.open()
        await session.wait_idle()
        return outcome, session

    outcome, session = asyncio.run(scenario())

    assert outcome is ReconcileOutcome.RECONSTRUCTED
    assert backend.prompts == ["Ping"]
    assert backend.requests[0].history == ()
    assert _summary(session.messages) == [
        (ASSISTANT, "Welcome!", READY),
        (USER, "Ping", READY),
        (ASSISTANT, "Pong", READY),
    ]
    assert session.messages[-1].id == "a1"
    assert session.marker is None


def test_reconstructed_request_resumes_on_next_pass(store, clock, ids, session_settings):
    backend = ScriptedBackend("Pong")
    marker = PendingRequestMarker(id="a1", prompt="Ping", history=(), created_at=clock())
    store.set(GUEST.marker, dumps_compact(marker.to_dict()))

    async def scenario():
        session = _make_session(backend, store, clock, ids, session_settings)
        first = session.open()
        second = session.reconcile()
        sending_after_second = session.is_sending
        await session.wait_idle()
        return first, second, sending_after_second, session

    first, second, sending_after_second, session = asyncio.run(scenario())

    assert first is ReconcileOutcome.RECONSTRUCTED
    assert second is ReconcileOutcome.RESUMED
    assert sending_after_second
    assert len(backend.requests) == 1
    assert session.messages[-1].content == "Pong"
    assert session.marker is None


def test_interrupted_request_resumes_after_restart(store, clock, ids, session_settings):
    backend = ScriptedBackend("Recovered")
    user = ConversationMessage("u1", USER, "Question", READY, clock() - 5_000)
    pending = ConversationMessage("a1", ASSISTANT, "Analyzing your question...", PENDING, clock() - 4_999)
    marker = PendingRequestMarker(
        id="a1",
        prompt="Question",
        history=(HistoryItem(USER, "Question"),),
        created_at=clock() - 4_998,
        user_message_id="u1",
    )
    _seed(store, [user, pending], marker)

    async def scenario():
        session = _make_session(backend, store, clock, ids, session_settings)
        first = session.open()
        second = session.reconcile()
        await session.wait_idle()
        return first, second, session

    first, second, session = asyncio.run(scenario())

    assert first is ReconcileOutcome.RESUMED
    assert second is ReconcileOutcome.BUSY
    assert len(backend.requests) == 1
    assert _summary(session.messages) == [
        (USER, "Question", READY),
        (ASSISTANT, "Recovered", READY),
    ]


def test_fresh_marker_waits_for_debounce(store, clock, ids, session_settings):
    backend = ScriptedBackend()
    user = ConversationMessage("u1", USER, "Question", READY, clock() - 2)
    pending = ConversationMessage("a1", ASSISTANT, "Analyzing your question...", PENDING, clock() - 1)
    marker = PendingRequestMarker("a1", "Question", (), clock() - 100, "u1")
    _seed(store, [user, pending], marker)

    async def scenario():
        session = _make_session(backend, store, clock, ids, session_settings)
        outcomes = [session.open(), session.reconcile()]
        requests_while_waiting = len(backend.requests)
        clock.advance(400)
        outcomes.append(session.reconcile())
        await session.wait_idle()
        await session.aclose()
        return outcomes, requests_while_waiting

    outcomes, requests_while_waiting = asyncio.run(scenario())

    assert outcomes == [
        ReconcileOutcome.WAITING,
        ReconcileOutcome.WAITING,
        ReconcileOutcome.RESUMED,
    ]
    assert requests_while_waiting == 0
    assert len(backend.requests) == 1


def test_waiting_pass_reruns_after_debounce(store, ids):
    backend = ScriptedBackend("late")
    settings = SessionSettings(resume_debounce_ms=50, welcome_message="Welcome!")

    async def scenario():
        start = now_ms()
        user = ConversationMessage("u1", USER, "Question", READY, start - 2)
        pending = ConversationMessage("a1", ASSISTANT, "Analyzing your question...", PENDING, start - 1)
        _seed(store, [user, pending], PendingRequestMarker("a1", "Question", (), start, "u1"))
        session = ChatSession(backend, store, settings=settings, id_factory=ids)
        outcome = session.open()
        await asyncio.sleep(0.3)
        await session.wait_idle()
        await session.aclose()
        return outcome, session.messages

    outcome, messages = asyncio.run(scenario())

    assert outcome is ReconcileOutcome.WAITING
    assert len(backend.requests) == 1
    assert messages[-1].content == "late"


def test_orphan_pending_message_is_repaired_once(store, clock, ids, session_settings):
    backend = ScriptedBackend("Repaired answer")
    _seed(
        store,
        [
            ConversationMessage("u1", USER, "Question", READY, 1),
            ConversationMessage("a1", ASSISTANT, "Analyzing your question...", PENDING, 2),
        ],
    )

    async def scenario():
        session = _make_session(backend, store, clock, ids, session_settings)
        outcome = session.open()
        await session.wait_idle()
        session.reconcile()
        await session.wait_idle()
        return outcome, session

    outcome, session = asyncio.run(scenario())

    assert outcome is ReconcileOutcome.REPAIRED
    assert backend.prompts == ["Question"]
    assert session.messages[-1].content == "Repaired answer"
    assert session.marker is None


def test_dead_end_orphan_stays_pending(store, clock, ids, session_settings, backend, caplog):
    _seed(store, [ConversationMessage("a1", ASSISTANT, "Analyzing your question...", PENDING, 1)])

    async def scenario():
        session = _make_session(backend, store, clock, ids, session_settings)
        with caplog.at_level(logging.WARNING, logger="chatengine"):
            outcome = session.open()
        await session.wait_idle()
        return outcome, session

    outcome, session = asyncio.run(scenario())

    assert outcome is ReconcileOutcome.DEAD_END
    assert session.messages[0].status is PENDING
    assert backend.requests == []
    assert "has no preceding user prompt" in caplog.text


def test_dead_end_orphan_is_trimmed_like_any_old_message(store, clock, ids):
    settings = SessionSettings(max_history=4, welcome_message="Welcome!")
    backend = ScriptedBackend("a3")
    _seed(
        store,
        [
            ConversationMessage("a0", ASSISTANT, "Analyzing your question...", PENDING, 1),
            ConversationMessage("u1", USER, "q1", READY, 2),
            ConversationMessage("a1", ASSISTANT, "a1", READY, 3),
            ConversationMessage("u2", USER, "q2", READY, 4),
            ConversationMessage("a2", ASSISTANT, "a2", READY, 5),
        ],
    )

    async def scenario():
        async with _make_session(backend, store, clock, ids, settings) as session:
            await session.send_message("q3")
            return session.messages

    messages = asyncio.run(scenario())

    assert [m.content for m in messages] == ["q2", "a2", "q3", "a3"]
    assert all(m.status is READY for m in messages)


def test_marker_for_completed_message_is_discarded(store, clock, ids, session_settings, backend):
    _seed(
        store,
        [
            ConversationMessage("u1", USER, "Question", READY, 1),
            ConversationMessage("a1", ASSISTANT, "Done", READY, 2),
        ],
        PendingRequestMarker("a1", "Question", (), 3, "u1"),
    )

    async def scenario():
        async with _make_session(backend, store, clock, ids, session_settings) as session:
            return session.preview_reconciliation(), session

    plan, session = asyncio.run(scenario())

    assert plan.outcome is ReconcileOutcome.IDLE
    assert store.get(GUEST.marker) is None
    assert backend.requests == []
    assert session.messages[-1].content == "Done"


def test_identity_switch_isolates_conversations(store, clock, ids, session_settings):
    backend = ScriptedBackend(hold=True)
    alice = storage_keys("alice")
    bob = storage_keys("bob")

    async def scenario():
        session = _make_session(backend, store, clock, ids, session_settings, identity="alice")
        session.open()
        session.submit_prompt("secret plans")
        await asyncio.sleep(0)
        outcome = session.switch_identity("bob")
        await session.wait_idle()
        return outcome, session

    outcome, session = asyncio.run(scenario())

    assert outcome is ReconcileOutcome.BUSY
    assert session.identity == "bob"
    assert _summary(session.messages) == [(ASSISTANT, "Welcome!", READY)]
    assert session.error is None
    alice_log = json.loads(store.get(alice.messages))
    assert alice_log[-1]["status"] == "error"
    assert alice_log[-1]["content"] == INTERRUPTED_MESSAGE
    assert store.get(alice.marker) is None
    assert store.get(bob.marker) is None
    bob_raw = store.get(bob.messages)
    assert bob_raw is None or "secret plans" not in bob_raw


def test_clear_history_refused_while_sending(store, clock, ids, session_settings):
    backend = ScriptedBackend(hold=True)

    async def scenario():
        session = _make_session(backend, store, clock, ids, session_settings)
        session.open()
        task = session.submit_prompt("question")
        await asyncio.sleep(0)
        refused = session.clear_history()
        backend.release("answer")
        await task
        await session.wait_idle()
        accepted = session.clear_history()
        await session.wait_idle()
        return refused, accepted, session

    refused, accepted, session = asyncio.run(scenario())

    assert refused is False
    assert accepted is True
    assert _summary(session.messages) == [(ASSISTANT, "Welcome!", READY)]
    assert session.marker is None


def test_clear_error_keeps_log(store, clock, ids, session_settings):
    backend = ScriptedBackend(AssistantHTTPError("Service down", status_code=503), "fine")

    async def scenario():
        async with _make_session(backend, store, clock, ids, session_settings) as session:
            await session.send_message("first")
            error = session.error
            before = session.messages
            session.clear_error()
            after_clear = (session.error, session.messages)
            await session.send_message("second")
            return error, before, after_clear, session.error

    error, before, (cleared_error, after), final_error = asyncio.run(scenario())

    assert error == "Service down"
    assert cleared_error is None
    assert after == before
    assert final_error is None


def test_events_report_changes(store, clock, ids, session_settings):
    backend = ScriptedBackend("reply")
    changes: list[int] = []
    plans: list[object] = []

    async def scenario():
        session = _make_session(backend, store, clock, ids, session_settings)
        session.events.messages_changed.connect(lambda messages: changes.append(len(messages)))
        session.events.reconciled.connect(plans.append)
        async with session:
            await session.send_message("hello")

    asyncio.run(scenario())

    assert changes[0] == 1
    assert 3 in changes
    assert plans and plans[0].outcome is ReconcileOutcome.IDLE


def test_reconcile_events_are_logged(store, clock, ids, session_settings, caplog):
    backend = ScriptedBackend("Pong")
    marker = PendingRequestMarker("a1", "Ping", (), clock() - 10_000)
    store.set(GUEST.marker, dumps_compact(marker.to_dict()))

    async def scenario():
        session = _make_session(backend, store, clock, ids, session_settings)
        session.open()
        await session.wait_idle()

    with caplog.at_level(logging.INFO, logger="chatengine"):
        asyncio.run(scenario())

    outcomes = [
        record.json["payload"]["outcome"]
        for record in caplog.records
        if getattr(record, "json", {}).get("event") == "RECONCILE"
    ]
    assert outcomes[:2] == ["reconstructed", "resumed"]
