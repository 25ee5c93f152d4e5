import json

import pytest

from widgetgen import parsing
from widgetgen.parsing import ResponseParser, ensure_ready_signal, has_ready_signal


def _strip_ready(markup):
    return markup.replace("window.parent.postMessage({ type: 'READY' }, '*');", "")


def test_direct_json_round_trip(widget_json, timer_manifest, timer_markup):
    result = ResponseParser().parse(widget_json(explanation="Counts down"))
    assert result.success is True
    assert result.strategy == "direct_json"
    assert result.widget.markup == timer_markup
    assert result.widget.manifest.id == timer_manifest()["id"]
    assert result.widget.explanation == "Counts down"


@pytest.mark.parametrize(
    "wrap, expected",
    [
        (lambda body: body, "direct_json"),
        (lambda body: body[:-1] + ",}", "direct_json"),
        (lambda body: "Here is your widget:\n```json\n" + body + "\n```\nEnjoy!", "fenced_block"),
        (lambda body: "Sure! " + body + " Let me know if you want changes.", "outer_braces"),
    ],
    ids=["plain", "trailing-comma", "fenced", "prose-wrapped"],
)
def test_strategy_table(widget_json, wrap, expected):
    result = ResponseParser().parse(wrap(widget_json()))
    assert result.success is True, result.error
    assert result.strategy == expected


def test_whole_json_wins_over_fence_inside_markup(timer_manifest, timer_markup):
    markup = timer_markup.replace("</body>", "<pre>```js\nconsole.log('demo')\n```</pre>\n</body>")
    body = json.dumps({"manifest": timer_manifest(), "html": markup})
    assert parsing._FENCE_RE.search(body) is not None
    result = ResponseParser().parse(body)
    assert result.success is True
    assert result.strategy == "direct_json"
    assert "```js" in result.widget.markup


def test_first_successful_strategy_wins(timer_manifest, timer_markup):
    widget = parsing.attempt_direct_json(json.dumps({"manifest": timer_manifest(), "html": timer_markup}))
    parser = ResponseParser(strategies=(("first", lambda raw: widget), ("second", lambda raw: widget)))
    assert parser.parse("anything").strategy == "first"


@pytest.mark.parametrize(
    "extra",
    [
        {"events": ["tick"]},
        {"capabilities": ["storage"]},
        {"events": {"emits": [{"name": "tick"}]}},
        {"io": ["tick"], "inputs": ["reset"]},
        {"kind": 2, "description": {"en": "timer"}},
    ],
    ids=["events-list", "capabilities-list", "emits-objects", "io-list", "odd-scalars"],
)
def test_loosely_typed_optional_fields_still_parse(timer_markup, extra):
    manifest = {"id": "countdown-timer", "name": "Countdown Timer", "version": "1.0.0", "entry": "index.html"}
    manifest.update(extra)
    result = ResponseParser().parse(json.dumps({"manifest": manifest, "html": timer_markup}))
    assert result.success is True, result.error
    assert result.strategy == "direct_json"
    key = next(iter(extra))
    assert result.widget.manifest.to_dict()[key] == extra[key]


def test_manual_field_extraction_on_broken_json(timer_manifest, timer_markup):
    broken = (
        '{"manifest": ' + json.dumps(timer_manifest())
        + ', "html": ' + json.dumps(timer_markup)
        + ', "explanation": "almost json" "oops": }'
    )
    assert parsing.attempt_outer_braces(broken) is None
    result = ResponseParser().parse(broken)
    assert result.success is True
    assert result.strategy == "manual_fields"
    assert result.widget.markup == timer_markup
    assert result.widget.explanation == "almost json"


def test_smart_quotes_are_normalized(widget_json):
    body = widget_json().replace('"manifest"', "“manifest”", 1)
    result = ResponseParser().parse(body)
    assert result.success is True


def test_markup_key_is_accepted(timer_manifest, timer_markup):
    body = json.dumps({"manifest": timer_manifest(), "markup": timer_markup})
    assert ResponseParser().parse(body).success is True


def test_plain_prose_fails_with_raw_preview():
    prose = "I'm sorry, I cannot build that widget today. " * 50
    result = ResponseParser().parse(prose)
    assert result.success is False
    assert result.widget is None
    assert "Could not extract" in result.error
    assert len(result.raw) == parsing.RAW_PREVIEW_LIMIT


def test_empty_response():
    result = ResponseParser().parse("   ")
    assert result.success is False
    assert result.error == "Empty response from model"


@pytest.mark.parametrize("missing", ["id", "name", "version", "entry"])
def test_missing_core_manifest_field_is_rejected(widget_json, timer_manifest, missing):
    manifest = timer_manifest()
    manifest.pop(missing)
    result = ResponseParser().parse(widget_json(manifest))
    assert result.success is False
    assert missing in result.error


def test_short_markup_is_rejected(widget_json):
    short = "<div></div><script>window.parent.postMessage({ type: 'READY' }, '*');</script>"
    result = ResponseParser().parse(widget_json(markup=short))
    assert result.success is False
    assert "too short" in result.error


def test_missing_html_is_rejected(timer_manifest):
    result = ResponseParser().parse(json.dumps({"manifest": timer_manifest()}))
    assert result.success is False


def test_strict_parse_requires_handshake(widget_json, timer_markup):
    result = ResponseParser().parse(widget_json(markup=_strip_ready(timer_markup)))
    assert result.success is False
    assert "READY" in result.error


@pytest.mark.parametrize(
    "snippet",
    [
        "window.parent.postMessage({ type: 'READY' }, '*');",
        'window.parent.postMessage({"type": "READY"}, "*");',
        "window.parent.postMessage({ source: 'widget', type: 'READY' }, '*');",
        "parent.postMessage({type:`READY`}, '*')",
    ],
)
def test_ready_signal_variants(snippet):
    assert has_ready_signal("<script>" + snippet + "</script>") is True


def test_ready_signal_is_case_sensitive():
    assert has_ready_signal("window.parent.postMessage({ type: 'ready' }, '*');") is False
    assert has_ready_signal("") is False


def test_parse_and_ensure_ready_injects_once(widget_json, timer_markup):
    raw = widget_json(markup=_strip_ready(timer_markup))
    result = ResponseParser().parse_and_ensure_ready(raw)
    assert result.success is True
    assert result.ready_injected is True
    fixed = result.widget.markup
    assert fixed.count("type: 'READY'") == 1
    assert has_ready_signal(fixed)
    # injected inside the last script block
    assert fixed.index("type: 'READY'") < fixed.rindex("</script>")

    again, injected = ensure_ready_signal(fixed)
    assert injected is False
    assert again == fixed


def test_parse_and_ensure_ready_leaves_compliant_markup_alone(widget_json, timer_markup):
    result = ResponseParser().parse_and_ensure_ready(widget_json())
    assert result.ready_injected is False
    assert result.widget.markup == timer_markup


def test_injection_without_script_goes_before_body():
    markup = "<html><body><div>hello</div></body></html>"
    fixed, injected = ensure_ready_signal(markup)
    assert injected is True
    assert fixed.endswith("</body></html>")
    assert "<script>" + parsing.READY_SIGNAL_SNIPPET + "</script>" in fixed


def test_injection_appends_when_no_body():
    fixed, injected = ensure_ready_signal("<div>fragment</div>")
    assert injected is True
    assert fixed.startswith("<div>fragment</div>")
    assert fixed.rstrip().endswith("</script>")


def test_strategy_exception_does_not_stop_chain(widget_json):
    def explode(raw):
        raise RuntimeError("bad strategy")

    parser = ResponseParser(strategies=(("explode", explode),) + parsing.STRATEGIES)
    result = parser.parse(widget_json())
    assert result.success is True
    assert result.strategy == "direct_json"
