import asyncio

import pytest

from widgetgen.models import ConversationMessage, DraftWidget, GenerationRequest, WidgetManifest
from widgetgen.sessions import SessionManager, get_step_label, get_step_progress


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _manager(**kwargs):
    return SessionManager(**kwargs)


def _request():
    return GenerationRequest(description="A countdown timer")


def test_create_session_starts_active_with_preparing_event():
    manager = _manager()
    session = manager.create_session(_request())
    assert session.id.startswith("gen-")
    assert session.status == "active"
    stored = manager.get_session(session.id)
    assert [u.step for u in stored.progress_updates] == ["preparing"]
    assert stored.progress_updates[0].progress == 0


def test_session_ids_are_unique():
    manager = _manager()
    ids = {manager.create_session(_request()).id for _ in range(10_000)}
    assert len(ids) == 10_000


def test_returned_sessions_are_copies():
    manager = _manager()
    session = manager.create_session(_request())
    copy = manager.get_session(session.id)
    copy.status = "failed"
    copy.progress_updates.clear()
    fresh = manager.get_session(session.id)
    assert fresh.status == "active"
    assert len(fresh.progress_updates) == 1


def test_progress_is_recorded_in_order_and_clamped():
    manager = _manager()
    sid = manager.create_session(_request()).id
    assert manager.update_progress(sid, "building-prompt", "Building prompt", 15)
    assert manager.update_progress(sid, "calling-ai", "Calling AI", 250)
    updates = manager.get_session(sid).progress_updates
    assert [u.step for u in updates] == ["preparing", "building-prompt", "calling-ai"]
    assert updates[-1].progress == 100


def test_unknown_session_is_rejected():
    manager = _manager()
    assert manager.get_session("gen-missing") is None
    assert manager.update_progress("gen-missing", "validating", "x", 80) is False
    assert manager.complete_session("gen-missing") is False
    assert manager.cancel_session("gen-missing") is False


def test_complete_is_terminal():
    manager = _manager()
    sid = manager.create_session(_request()).id
    assert manager.complete_session(sid) is True
    assert manager.get_session(sid).status == "complete"
    assert manager.fail_session(sid, "late failure") is False
    assert manager.cancel_session(sid) is False
    manager.update_progress(sid, "failed", "ignored", -1)
    session = manager.get_session(sid)
    assert session.status == "complete"
    assert session.progress_updates[-1].step == "failed"


def test_fail_records_error_and_negative_progress():
    manager = _manager()
    sid = manager.create_session(_request()).id
    assert manager.fail_session(sid, "AI provider timed out") is True
    session = manager.get_session(sid)
    assert session.status == "failed"
    assert session.error == "AI provider timed out"
    assert session.progress_updates[-1].progress == -1


def test_cancel_sets_status_and_emits_failed_event():
    manager = _manager()
    sid = manager.create_session(_request()).id
    assert manager.cancel_session(sid) is True
    session = manager.get_session(sid)
    assert session.status == "cancelled"
    assert session.error == "Generation cancelled"
    assert session.progress_updates[-1].step == "failed"
    assert manager.is_cancelled(sid) is True


def test_listeners_receive_updates_until_unsubscribed():
    manager = _manager()
    sid = manager.create_session(_request()).id
    seen = []
    unsubscribe = manager.on_progress(sid, lambda u: seen.append(u.step))
    manager.update_progress(sid, "validating", "Validating", 80)
    unsubscribe()
    manager.update_progress(sid, "creating-draft", "Creating draft", 95)
    assert seen == ["validating"]


def test_failing_listener_does_not_break_others():
    manager = _manager()
    sid = manager.create_session(_request()).id
    seen = []

    def broken(update):
        raise RuntimeError("boom")

    manager.on_progress(sid, broken)
    manager.on_progress(sid, lambda u: seen.append(u.progress))
    assert manager.update_progress(sid, "validating", "Validating", 80) is True
    assert seen == [80]


def test_async_listener_runs_on_running_loop():
    manager = _manager()
    sid = manager.create_session(_request()).id
    seen = []

    async def listener(update):
        seen.append(update.step)

    async def scenario():
        manager.on_progress(sid, listener)
        manager.update_progress(sid, "validating", "Validating", 80)
        await asyncio.sleep(0)
        await asyncio.sleep(0)

    asyncio.run(scenario())
    assert seen == ["validating"]


def test_widgets_and_messages_accumulate():
    manager = _manager()
    sid = manager.create_session(_request()).id
    draft = DraftWidget(id="draft-1", manifest=WidgetManifest(id="timer"), markup="<div></div>")
    assert manager.add_widget(sid, draft)
    assert manager.add_message(sid, ConversationMessage(role="user", content="bigger"))
    session = manager.get_session(sid)
    assert [w.id for w in session.widgets] == ["draft-1"]
    assert session.messages[0].content == "bigger"
    assert manager.add_widget("gen-missing", draft) is False


def test_cleanup_evicts_only_idle_terminal_sessions():
    clock = FakeClock()
    manager = _manager(retention_seconds=60, clock=clock)
    done = manager.create_session(_request()).id
    running = manager.create_session(_request()).id
    manager.complete_session(done)

    clock.now += 30
    assert manager.cleanup() == 0

    clock.now += 60
    assert manager.cleanup() == 1
    assert manager.get_session(done) is None
    assert manager.get_session(running) is not None


def test_create_session_evicts_stale_sessions():
    clock = FakeClock()
    manager = _manager(retention_seconds=60, clock=clock, cleanup_interval=30)
    done = manager.create_session(_request()).id
    running = manager.create_session(_request()).id
    manager.complete_session(done)
    seen = []
    manager.on_progress(done, lambda u: seen.append(u.step))

    clock.now += 120
    fresh = manager.create_session(_request()).id
    assert manager.get_session(done) is None
    assert manager.get_session(running) is not None
    assert {s.id for s in manager.list_sessions()} == {running, fresh}
    assert manager.update_progress(done, "validating", "late", 80) is False
    assert seen == []


def test_cleanup_is_throttled_between_creates():
    clock = FakeClock()
    manager = _manager(retention_seconds=0, clock=clock, cleanup_interval=30)
    done = manager.create_session(_request()).id
    manager.complete_session(done)
    clock.now += 10
    manager.create_session(_request())
    assert manager.get_session(done) is not None


@pytest.mark.parametrize(
    "step, label, progress",
    [
        ("preparing", "Preparing", 0),
        ("calling-ai", "Calling AI", 50),
        ("complete", "Complete", 100),
        ("failed", "Failed", -1),
        ("mystery", "mystery", 0),
    ],
)
def test_step_config(step, label, progress):
    assert get_step_label(step) == label
    assert get_step_progress(step) == progress
