import asyncio

import pytest
from pydantic import ValidationError

from widgetgen.drafts import DraftStore
from widgetgen.models import GenerationRequest
from widgetgen.providers import ProviderError, ProviderRegistry
from widgetgen.generator import WidgetGenerator


def _request(**kwargs):
    kwargs.setdefault("description", "A countdown timer that emits a tick every second")
    return GenerationRequest(**kwargs)


def test_generate_success_creates_draft_and_completes(make_generator):
    generator, provider = make_generator()
    result = asyncio.run(generator.generate(_request()))

    assert result.success is True
    assert result.error_kind is None
    assert result.widget is not None
    assert result.widget.id.startswith("draft-")
    assert result.widget.metadata.mode == "new"
    assert result.widget.conversation_id == result.session_id
    assert result.validation.valid is True
    assert result.quality is not None
    assert result.metadata.provider == "stub"
    assert result.metadata.model == "stub-model"

    session = generator.get_session(result.session_id)
    assert session.status == "complete"
    assert [w.id for w in session.widgets] == [result.widget.id]
    assert generator.drafts.get_draft(result.widget.id) is not None

    record = generator.metrics.get_record(result.metrics_id)
    assert record.result == "success"
    assert record.quality_score == result.quality.overall

    call = provider.calls[0]
    assert "countdown timer" in call["prompt"]
    assert "PROTOCOL" in call["system_prompt"]
    assert call["temperature"] == generator.config.temperature


def test_core_only_manifest_generates_successfully(make_generator, widget_json):
    manifest = {"id": "countdown-timer", "name": "Countdown Timer", "version": "1.0.0", "entry": "index.html"}
    generator, _ = make_generator(widget_json(manifest=manifest))
    result = asyncio.run(generator.generate(_request(description="A countdown timer", mode="new")))

    assert result.success is True, result.errors
    assert result.error_kind is None
    assert generator.get_session(result.session_id).status == "complete"
    assert {w.rule for w in result.validation.warnings} >= {"manifest.recommended"}
    assert generator.metrics.get_record(result.metrics_id).result == "success"


def test_generate_emits_steps_in_order(make_generator):
    generator, _ = make_generator()
    result = asyncio.run(generator.generate(_request()))
    updates = generator.get_session(result.session_id).progress_updates
    assert [u.step for u in updates] == [
        "preparing",
        "building-prompt",
        "calling-ai",
        "parsing-response",
        "validating",
        "scoring-quality",
        "creating-draft",
        "complete",
    ]
    progress = [u.progress for u in updates]
    assert progress == sorted(progress)
    assert progress[-1] == 100


def test_quality_scoring_can_be_disabled(make_generator):
    generator, _ = make_generator()
    generator.update_config(enable_quality_scoring=False)
    result = asyncio.run(generator.generate(_request()))
    assert result.success is True
    assert result.quality is None
    steps = [u.step for u in generator.get_session(result.session_id).progress_updates]
    assert "scoring-quality" not in steps


def test_missing_handshake_is_injected(make_generator, widget_json, timer_markup):
    markup = timer_markup.replace("window.parent.postMessage({ type: 'READY' }, '*');", "")
    generator, _ = make_generator(widget_json(markup=markup))
    result = asyncio.run(generator.generate(_request()))
    assert result.success is True
    assert "READY" in result.widget.markup


def test_invalid_widget_still_produces_draft(make_generator, widget_json, timer_markup):
    markup = timer_markup.replace("init();\n", "init();\n  eval('1 + 1');\n")
    generator, _ = make_generator(widget_json(markup=markup))
    result = asyncio.run(generator.generate(_request()))

    assert result.success is False
    assert result.error_kind == "validation"
    assert result.widget is not None
    assert any("eval" in e for e in result.errors)
    assert generator.metrics.get_record(result.metrics_id).result == "partial"
    assert generator.get_session(result.session_id).status == "complete"


def test_unparseable_response_fails_session(make_generator):
    generator, _ = make_generator("Sorry, I can only describe the widget in words.")
    result = asyncio.run(generator.generate(_request()))

    assert result.success is False
    assert result.error_kind == "parse"
    assert result.widget is None
    session = generator.get_session(result.session_id)
    assert session.status == "failed"
    assert session.progress_updates[-1].step == "failed"
    assert session.progress_updates[-1].progress == -1
    assert generator.metrics.get_record(result.metrics_id).result == "failure"


def test_provider_error_is_reported(make_generator):
    generator, _ = make_generator(ProviderError("upstream returned 500", provider="stub", status_code=500))
    result = asyncio.run(generator.generate(_request()))
    assert result.success is False
    assert result.error_kind == "provider"
    assert "upstream returned 500" in result.errors[0]
    assert generator.get_session(result.session_id).error == result.errors[0]


def test_unexpected_provider_exception_never_raises(make_generator):
    generator, _ = make_generator(RuntimeError("socket closed"))
    result = asyncio.run(generator.generate(_request()))
    assert result.success is False
    assert result.error_kind == "provider"
    assert result.errors == ["socket closed"]


class BrokenDraftStore(DraftStore):
    def create_draft(self, *args, **kwargs):
        raise OSError("disk full")


def test_draft_storage_failure_is_not_a_validation_error(make_generator):
    generator, _ = make_generator(drafts=BrokenDraftStore(None))
    result = asyncio.run(generator.generate(_request()))
    assert result.success is False
    assert result.error_kind == "storage"
    assert result.errors == ["disk full"]
    assert generator.get_session(result.session_id).status == "failed"


def test_no_configured_provider():
    generator = WidgetGenerator(providers=ProviderRegistry({}))
    result = asyncio.run(generator.generate(_request()))
    assert result.success is False
    assert result.error_kind == "provider"
    assert "No AI provider configured" in result.errors[0]


def test_requested_model_is_passed_through(make_generator):
    generator, _ = make_generator()
    result = asyncio.run(generator.generate(_request(model="vendor/custom-model")))
    assert result.metadata.model == "vendor/custom-model"
    assert result.widget.metadata.model == "vendor/custom-model"


def test_iterate_refines_within_session(make_generator):
    generator, provider = make_generator()

    async def scenario():
        first = await generator.generate(_request())
        second = await generator.iterate(first.session_id, "Make the digits bigger")
        return first, second

    first, second = asyncio.run(scenario())
    assert second.success is True
    assert second.session_id == first.session_id
    assert second.widget.id != first.widget.id
    assert second.widget.metadata.mode == "modification"
    assert second.widget.metadata.prompt == "Make the digits bigger"
    assert provider.calls[1]["temperature"] == generator.config.iteration_temperature
    assert "Make the digits bigger" in provider.calls[1]["prompt"]

    session = generator.get_session(first.session_id)
    assert session.status == "complete"
    assert [w.id for w in session.widgets] == [first.widget.id, second.widget.id]
    assert [m.role for m in session.messages] == ["user", "assistant"]
    assert session.messages[1].widget_id == second.widget.id


def test_iterate_unknown_session(make_generator):
    generator, provider = make_generator()
    result = asyncio.run(generator.iterate("gen-missing", "bigger"))
    assert result.success is False
    assert result.error_kind == "not_found"
    assert result.session_id is None
    assert provider.calls == []


def test_iterate_failure_keeps_terminal_status(make_generator, widget_json):
    generator, _ = make_generator(widget_json(), "not json at all")

    async def scenario():
        first = await generator.generate(_request())
        second = await generator.iterate(first.session_id, "Add a pause button")
        return first, second

    first, second = asyncio.run(scenario())
    assert second.error_kind == "parse"
    session = generator.get_session(first.session_id)
    assert session.status == "complete"
    assert session.progress_updates[-1].step == "failed"
    assert len(session.widgets) == 1


def test_create_variation_starts_new_session(make_generator):
    generator, provider = make_generator()

    async def scenario():
        source = await generator.generate(_request())
        variation = await generator.create_variation(source.widget.id, "A retro flip-clock look")
        return source, variation

    source, variation = asyncio.run(scenario())
    assert variation.success is True
    assert variation.session_id != source.session_id
    assert variation.widget.metadata.mode == "variation"
    assert variation.widget.metadata.source_widget_id == source.widget.id
    assert provider.calls[1]["temperature"] == generator.config.variation_temperature
    assert "A retro flip-clock look" in provider.calls[1]["prompt"]


def test_create_variation_unknown_source(make_generator):
    generator, _ = make_generator()
    result = asyncio.run(generator.create_variation("draft-missing", "anything"))
    assert result.error_kind == "not_found"
    assert result.widget is None


class SlowProvider:
    name = "slow"
    model = "slow-model"
    configured = True

    def __init__(self):
        self.started = asyncio.Event()

    async def generate(self, prompt, **kwargs):
        self.started.set()
        await asyncio.sleep(30)
        raise AssertionError("provider call should have been cancelled")


def test_cancel_interrupts_inflight_provider_call():
    async def scenario():
        provider = SlowProvider()
        generator = WidgetGenerator(providers=ProviderRegistry({"openrouter": provider}))
        task = asyncio.create_task(generator.generate(_request()))
        await asyncio.wait_for(provider.started.wait(), timeout=5)
        session_id = generator.sessions.list_sessions()[0].id
        assert generator.cancel_session(session_id) is True
        result = await asyncio.wait_for(task, timeout=5)
        return generator, session_id, result

    generator, session_id, result = asyncio.run(scenario())
    assert result.success is False
    assert result.error_kind == "cancelled"
    session = generator.get_session(session_id)
    assert session.status == "cancelled"
    assert session.progress_updates[-1].step == "failed"
    assert generator.metrics.get_record(result.metrics_id).result == "failure"


def test_start_generation_returns_while_running():
    async def scenario():
        provider = SlowProvider()
        generator = WidgetGenerator(providers=ProviderRegistry({"openrouter": provider}))
        session = generator.start_generation(_request())
        assert generator.get_session(session.id).status == "active"
        await asyncio.wait_for(provider.started.wait(), timeout=5)
        assert generator.get_session(session.id).current_step == "calling-ai"
        assert generator.cancel_session(session.id) is True
        for _ in range(500):
            if generator.metrics.recent():
                break
            await asyncio.sleep(0.01)
        return generator, session.id

    generator, session_id = asyncio.run(scenario())
    assert generator.get_session(session_id).status == "cancelled"
    assert [r.result for r in generator.metrics.recent()] == ["failure"]


def test_cancel_unknown_session(make_generator):
    generator, _ = make_generator()
    assert generator.cancel_session("gen-missing") is False


def test_on_progress_streams_updates(make_generator):
    generator, _ = make_generator()
    seen = []

    async def scenario():
        session = generator.sessions.create_session(_request())
        generator.on_progress(session.id, lambda u: seen.append(u.step))
        generator.sessions.update_progress(session.id, "validating", "Validating", 80)

    asyncio.run(scenario())
    assert seen == ["validating"]


def test_update_config_validates(make_generator):
    generator, _ = make_generator()
    config = generator.update_config(temperature=0.2, max_tokens=2048)
    assert config.temperature == 0.2
    assert generator.config.max_tokens == 2048
    with pytest.raises(ValidationError):
        generator.update_config(temperature=5)
    assert generator.config.temperature == 0.2
