from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import pytest

from widgetgen.drafts import DraftStore
from widgetgen.generator import WidgetGenerator
from widgetgen.metrics import MetricsStore
from widgetgen.providers import ProviderRegistry, ProviderResponse
from widgetgen.sessions import SessionManager

TIMER_MARKUP = """<!DOCTYPE html>
<html>
<head>
<style>
  .timer { display: flex; gap: 8px; border-radius: 8px; transition: all 0.2s ease; color: var(--sn-text-primary); }
  .timer button:hover { opacity: 0.9; }
</style>
</head>
<body>
<div class="timer"><span id="value">10</span><button id="start">Start</button></div>
<script>
  let remaining = 10;
  function init() {
    if (!window.WidgetAPI) { setTimeout(init, 50); return; }
    document.getElementById('start').addEventListener('click', () => {
      remaining -= 1;
      document.getElementById('value').textContent = String(remaining);
      window.WidgetAPI.emitEvent({ type: 'countdown-timer:tick', scope: 'canvas', payload: { remaining } });
    });
  }
  init();
  window.parent.postMessage({ type: 'READY' }, '*');
</script>
</body>
</html>"""


def timer_manifest(**overrides: Any) -> Dict[str, Any]:
    manifest: Dict[str, Any] = {
        "id": "countdown-timer",
        "name": "Countdown Timer",
        "version": "1.0.0",
        "entry": "index.html",
        "kind": "2d",
        "capabilities": {"draggable": True, "resizable": True},
        "io": {"outputs": [{"id": "tick", "type": "number"}]},
        "events": {"emits": ["countdown-timer:tick"]},
    }
    manifest.update(overrides)
    return manifest


def widget_json(manifest: Optional[Dict[str, Any]] = None, markup: str = TIMER_MARKUP, **extra: Any) -> str:
    payload: Dict[str, Any] = {"manifest": manifest or timer_manifest(), "html": markup}
    payload.update(extra)
    return json.dumps(payload)


class StubProvider:
    """Scripted provider: replays responses in order, repeating the last one."""

    name = "stub"
    model = "stub-model"
    configured = True

    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, prompt, *, system_prompt=None, max_tokens=None, temperature=None, model=None):
        self.calls.append(
            {"prompt": prompt, "system_prompt": system_prompt, "max_tokens": max_tokens, "temperature": temperature}
        )
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return ProviderResponse(content=item, model=model or self.model, name=self.name)


@pytest.fixture
def make_generator():
    def _make(*responses: Any, **kwargs: Any):
        provider = StubProvider(list(responses) or [widget_json()])
        kwargs.setdefault("sessions", SessionManager())
        kwargs.setdefault("drafts", DraftStore(None))
        kwargs.setdefault("metrics", MetricsStore(None))
        generator = WidgetGenerator(providers=ProviderRegistry({"openrouter": provider}), **kwargs)
        return generator, provider

    return _make


@pytest.fixture
def timer_markup() -> str:
    return TIMER_MARKUP


@pytest.fixture(name="timer_manifest")
def timer_manifest_fixture():
    return timer_manifest


@pytest.fixture(name="widget_json")
def widget_json_fixture():
    return widget_json


@pytest.fixture(name="stub_provider")
def stub_provider_fixture():
    return StubProvider
