from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from widgetgen.models import AutoWireResult, CanvasWidget, ConnectionSuggestion, PortCompatibility
from widgetgen.ports import PortDetector, extract_ports

log = logging.getLogger(__name__)

DEFAULT_MIN_COMPATIBILITY = 0.5
DEFAULT_MAX_SUGGESTIONS = 10

COMPATIBILITY_LABELS: Tuple[Tuple[float, str, str], ...] = (
    (0.8, "Excellent", "#22c55e"),
    (0.6, "Good", "#84cc16"),
    (0.4, "Possible", "#eab308"),
)
WEAK_LABEL = ("Weak", "#ef4444")


def get_compatibility_label(score: float) -> Tuple[str, str]:
    """Return (label, color) for a compatibility score."""
    for threshold, label, color in COMPATIBILITY_LABELS:
        if score >= threshold:
            return label, color
    return WEAK_LABEL


class ConnectionSuggester:
    def __init__(self, detector: Optional[PortDetector] = None) -> None:
        self.detector = detector or PortDetector()

    def analyze_connections(
        self,
        generated: CanvasWidget,
        canvas_widgets: Iterable[CanvasWidget],
        min_compatibility: float = DEFAULT_MIN_COMPATIBILITY,
        max_suggestions: int = DEFAULT_MAX_SUGGESTIONS,
    ) -> AutoWireResult:
        gen_inputs, gen_outputs = extract_ports(generated.manifest)

        suggestions: List[ConnectionSuggestion] = []
        seen: Set[str] = set()
        analyzed = 0
        for other in canvas_widgets:
            if other.id == generated.id:
                continue
            analyzed += 1
            for compat, outgoing in self.detector.detect_directed_ports(generated.manifest, other.manifest):
                if compat.level == "incompatible" or compat.score < min_compatibility:
                    continue
                suggestion = self._build(generated, other, compat, outgoing)
                if suggestion.id in seen:
                    continue
                seen.add(suggestion.id)
                suggestions.append(suggestion)

        suggestions.sort(key=lambda s: -s.compatibility)
        if max_suggestions >= 0:
            suggestions = suggestions[:max_suggestions]
        log.info(
            "connections.analyze: widget=%s analyzed=%d suggestions=%d",
            generated.id, analyzed, len(suggestions),
        )
        return AutoWireResult(
            generated_widget_id=generated.id,
            suggestions=suggestions,
            analyzed_widgets=analyzed,
            inputs=gen_inputs,
            outputs=gen_outputs,
        )

    def _build(
        self,
        generated: CanvasWidget,
        other: CanvasWidget,
        compat: PortCompatibility,
        outgoing: bool,
    ) -> ConnectionSuggestion:
        source, target = (generated, other) if outgoing else (other, generated)
        return ConnectionSuggestion(
            id=f"{source.id}:{compat.output.name}->{target.id}:{compat.input.name}",
            direction="outgoing" if outgoing else "incoming",
            source_widget_id=source.id,
            source_widget_name=source.name,
            target_widget_id=target.id,
            target_widget_name=target.name,
            source_port=compat.output,
            target_port=compat.input,
            compatibility=compat.score,
            reason=compat.reason,
            description=(
                f'Connect "{compat.output.name}" from {source.name} '
                f'to "{compat.input.name}" on {target.name}'
            ),
        )


def group_suggestions_by_widget(
    suggestions: Sequence[ConnectionSuggestion],
) -> Dict[str, List[ConnectionSuggestion]]:
    """Group by the widget on the other end of each suggestion, first-seen order."""
    groups: Dict[str, List[ConnectionSuggestion]] = OrderedDict()
    for s in suggestions:
        key = s.target_widget_id if s.direction == "outgoing" else s.source_widget_id
        groups.setdefault(key, []).append(s)
    return groups


def suggest_common_connections(widget: CanvasWidget) -> List[str]:
    """Plain-language wiring hints from port names and types alone."""
    inputs, outputs = extract_ports(widget.manifest)
    hints: List[str] = []
    for port in outputs:
        lower = port.name.lower()
        if "tick" in lower or "timer" in lower:
            hints.append(f'Connect "{port.name}" to a display or counter to show elapsed time')
        elif "click" in lower or "press" in lower:
            hints.append(f'Use "{port.name}" to trigger actions in other widgets (toggle, increment, play)')
        elif "complete" in lower or "finish" in lower or "done" in lower:
            hints.append(f'Chain "{port.name}" to start the next step, such as a notification or sound')
        elif port.type == "number":
            hints.append(f'Feed "{port.name}" into a progress bar, gauge or chart')
        elif port.type == "string":
            hints.append(f'Show "{port.name}" in a text or label widget')
        elif port.type == "color":
            hints.append(f'Drive theme or background color of other widgets with "{port.name}"')
    for port in inputs:
        lower = port.name.lower()
        if "reset" in lower or "clear" in lower:
            hints.append(f'Wire a button\'s click output to "{port.name}" to reset this widget')
        elif "start" in lower or "play" in lower or "toggle" in lower:
            hints.append(f'Trigger "{port.name}" from a button or timer event')
        elif port.type in ("number", "string"):
            hints.append(f'"{port.name}" accepts {port.type} values from sliders, inputs or counters')
    return hints
