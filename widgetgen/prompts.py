from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from widgetgen.models import GenerationRequest, ImageReference, WidgetManifest

PROMPT_VERSION = "widget-generation-v3"

_PROTOCOL_RULES = """
WIDGET PROTOCOL v3.0 (MANDATORY):
- Widgets run inside a sandboxed iframe and talk to the host ONLY through window.parent.postMessage and the injected WidgetAPI.
- On load you MUST announce readiness: window.parent.postMessage({ type: 'READY' }, '*');
- WidgetAPI is injected asynchronously. Guard every use:
    function init() { if (!window.WidgetAPI) { setTimeout(init, 50); return; } /* setup */ }
- Emit outputs with window.WidgetAPI.emitEvent({ type: 'widget-id:event-name', scope: 'canvas', payload: {...} })
  or window.WidgetAPI.emitOutput('port-id', value) for pipeline ports.
- Receive inputs with window.WidgetAPI.onEvent('event:type', handler) or window.WidgetAPI.onInput('port-id', handler).
- Persist state with window.WidgetAPI.setState({...}) and restore it with window.WidgetAPI.getState().
- Never touch parent.document, top.document, document.cookie, eval, new Function or document.write.
"""

_DESIGN_TOKENS = """
DESIGN TOKENS (available as CSS custom properties):
--sn-bg-primary, --sn-bg-secondary, --sn-bg-tertiary, --sn-text-primary, --sn-text-secondary,
--sn-accent-primary, --sn-accent-blue, --sn-accent-green, --sn-accent-red, --sn-border-subtle,
--sn-radius-md, --sn-radius-lg, --sn-transition-fast. Prefer var(--sn-*) over hard-coded colors.
"""

OUTPUT_FORMAT = """
OUTPUT FORMAT (STRICT):
Return ONLY one JSON object. No markdown fences, no prose outside the JSON.
{
  "manifest": {
    "id": "kebab-case-id",
    "name": "Human Name",
    "version": "1.0.0",
    "description": "What the widget does",
    "entry": "index.html",
    "kind": "2d",
    "capabilities": { "draggable": true, "resizable": true },
    "io": {
      "inputs": [ { "id": "port-id", "name": "Port Name", "type": "event|string|number|boolean|object|array|any", "description": "..." } ],
      "outputs": [ { "id": "port-id", "name": "Port Name", "type": "...", "description": "..." } ]
    },
    "events": { "emits": ["port-id"], "listens": ["port-id"] }
  },
  "html": "<!DOCTYPE html>... complete document with inline CSS and JS ...",
  "explanation": "One short paragraph on how to use the widget"
}
Escape quotes and newlines inside "html" so the JSON stays valid.
Every emit call must use an io.outputs id; every listener must handle an io.inputs id.
"""

MODE_FRAMING: Dict[str, str] = {
    "new": "Create a brand-new widget from the description below.",
    "template": "Create a reusable template widget from the description below. Keep labels and colors easy to customize.",
    "variation": "Create a variation of an existing widget. Keep its purpose, change what the description asks for.",
    "iterate": "Refine an existing widget according to the user's feedback.",
}

COMPLEXITY_GUIDANCE: Dict[str, str] = {
    "basic": "Complexity: basic. Simple functionality, clean look, a single clear interaction.",
    "standard": "Complexity: standard. Polished UI with hover states, transitions and sensible defaults.",
    "advanced": "Complexity: advanced. Animations, micro-interactions, keyboard support and smooth UX.",
    "professional": "Complexity: professional. Production-ready: loading and error states, accessibility, persistence.",
}

STYLE_GUIDANCE: Dict[str, str] = {
    "minimal": "Visual style: MINIMAL. Light backgrounds, system sans-serif, subtle borders, no shadows, generous whitespace.",
    "polished": "Visual style: POLISHED. Soft gradients, 8-12px radii, subtle shadows, hover transitions, modern feel.",
    "glass": "Visual style: GLASS. Dark gradient backdrop, translucent panels with backdrop-filter blur, thin light borders.",
    "neon": "Visual style: NEON. Near-black background, cyan/magenta/lime accents, glowing box-shadows and text-shadows.",
    "retro": "Visual style: RETRO. Saturated 8-bit palette, hard offset shadows, chunky borders, monospace type.",
    "elaborate": "Visual style: ELABORATE. Animated gradients, layered effects, keyframe animations, playful motion.",
}

FEATURE_REQUIREMENTS: Dict[str, str] = {
    "animations": "Add meaningful animations and transitions (CSS transitions or @keyframes).",
    "persistence": "Persist user state with WidgetAPI.setState and restore it with WidgetAPI.getState on init.",
    "keyboard_shortcuts": "Support keyboard shortcuts for the primary actions; buttons and keys must call the same function.",
    "accessibility": "Use semantic elements, aria-labels and visible focus states; meet WCAG AA contrast.",
    "responsive": "Layout must adapt from 160px to 600px wide using flex/grid and @media queries.",
    "sound": "Provide optional sound feedback generated with the Web Audio API; no external audio files.",
    "pipeline_io": "Expose pipeline ports with emitOutput/onInput so the widget can be chained with others.",
}


def _json_block(data: Any) -> str:
    try:
        return json.dumps(data, ensure_ascii=False, indent=2)
    except (TypeError, ValueError):
        return str(data)


def _manifest_dict(manifest: Union[WidgetManifest, Mapping[str, Any]]) -> Dict[str, Any]:
    if isinstance(manifest, WidgetManifest):
        return manifest.to_dict()
    return dict(manifest)


def mode_section(mode: str) -> str:
    return MODE_FRAMING.get(mode, MODE_FRAMING["new"])


def complexity_section(complexity: str) -> str:
    return COMPLEXITY_GUIDANCE.get(complexity, COMPLEXITY_GUIDANCE["standard"])


def style_section(style: str) -> str:
    return STYLE_GUIDANCE.get(style, STYLE_GUIDANCE["polished"])


def features_section(features: Mapping[str, bool]) -> str:
    lines: List[str] = []
    for name, enabled in features.items():
        if not enabled:
            continue
        text = FEATURE_REQUIREMENTS.get(name)
        if text is None:
            text = f"Include support for: {name.replace('_', ' ')}."
        lines.append(f"- {text}")
    if not lines:
        return ""
    return "FEATURE REQUIREMENTS:\n" + "\n".join(lines)


def io_section(inputs: Iterable[str], outputs: Iterable[str]) -> str:
    ins = [p for p in inputs if p]
    outs = [p for p in outputs if p]
    if not ins and not outs:
        return ""
    lines = ["I/O PORTS (declare exactly these in manifest.io and wire them in code):"]
    if ins:
        lines.append("- inputs: " + ", ".join(ins))
    if outs:
        lines.append("- outputs: " + ", ".join(outs))
    return "\n".join(lines)


def family_section(family_context: Optional[str]) -> str:
    if not family_context or not family_context.strip():
        return ""
    return (
        "WIDGET FAMILY CONTEXT:\n"
        "This widget joins an existing family. Match its naming, event namespace and visual language:\n"
        f"{family_context.strip()}"
    )


def image_section(refs: Iterable[ImageReference]) -> str:
    lines: List[str] = []
    for idx, ref in enumerate(refs, start=1):
        parts = [ref.description.strip() or "reference image"]
        if ref.focus:
            parts.append(f"borrow its {ref.focus}")
        if ref.url:
            parts.append(f"({ref.url})")
        lines.append(f"{idx}. " + ", ".join(parts))
    if not lines:
        return ""
    return "VISUAL REFERENCES (take inspiration, do not embed the images):\n" + "\n".join(lines)


def _join(sections: Iterable[str]) -> str:
    return "\n\n".join(s.strip() for s in sections if s and s.strip()) + "\n"


class PromptBuilder:
    """Renders generation requests into prompt text. Holds no state."""

    version = PROMPT_VERSION

    def build_system_prompt(self) -> str:
        return _join(
            [
                "You are an expert widget developer for a visual canvas application. "
                "You write self-contained HTML widgets (inline CSS and JS) that follow the host protocol exactly.",
                _PROTOCOL_RULES,
                _DESIGN_TOKENS,
                OUTPUT_FORMAT,
            ]
        )

    def build_generation_prompt(self, request: GenerationRequest) -> str:
        return _join(
            [
                mode_section(request.mode),
                f'Widget description: "{request.description}"',
                complexity_section(request.complexity),
                style_section(request.style_preset),
                features_section(request.features),
                io_section(request.input_ports, request.output_ports),
                family_section(request.family_context),
                image_section(request.image_references),
                OUTPUT_FORMAT,
            ]
        )

    def build_iteration_prompt(
        self,
        markup: str,
        manifest: Union[WidgetManifest, Mapping[str, Any]],
        feedback: str,
    ) -> str:
        return _join(
            [
                mode_section("iterate"),
                f"User feedback:\n{feedback}",
                "Keep everything the feedback does not mention. Keep the manifest id and bump the patch version.",
                f"Current manifest:\n{_json_block(_manifest_dict(manifest))}",
                f"Current widget HTML:\n{markup}",
                OUTPUT_FORMAT,
            ]
        )

    def build_variation_prompt(
        self,
        markup: str,
        manifest: Union[WidgetManifest, Mapping[str, Any]],
        description: str,
    ) -> str:
        return _join(
            [
                mode_section("variation"),
                f"Requested variation:\n{description}",
                "Give the variation a new manifest id and name; keep the same io ports unless asked otherwise.",
                f"Source manifest:\n{_json_block(_manifest_dict(manifest))}",
                f"Source widget HTML:\n{markup}",
                OUTPUT_FORMAT,
            ]
        )
