from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from widgetgen.models import (
    ParsedWidget,
    QualityAnalysis,
    QualityScore,
    QualityTier,
    ValidationResult,
    WidgetManifest,
)
from widgetgen.protocol import ProtocolValidator

log = logging.getLogger(__name__)

QUALITY_WEIGHTS: Dict[str, float] = {
    "protocol": 0.4,
    "code_quality": 0.3,
    "visual_quality": 0.2,
    "functionality": 0.1,
}

MAX_SUGGESTIONS = 5

CODE_BASE = 80
# (pattern, delta, suggestion when the rule counts against the widget)
CODE_RULES: Tuple[Tuple[re.Pattern[str], int, Optional[str]], ...] = (
    (
        re.compile(r"if\s*\(\s*!\s*window\.WidgetAPI\s*\)[^}]*setTimeout", re.DOTALL),
        10,
        "Retry init until window.WidgetAPI is available",
    ),
    (re.compile(r"\btry\s*\{"), 5, "Wrap event handlers in try/catch"),
    (re.compile(r"\beval\s*\("), -20, "Remove eval(); it is blocked inside the sandbox"),
    (re.compile(r"new\s+Function\s*\("), -20, "Replace new Function() with plain functions"),
    (re.compile(r"document\.write\s*\("), -15, "Build DOM nodes instead of calling document.write()"),
    (re.compile(r"\.innerHTML\s*=\s*[^'\"`\s]"), -10, "Use textContent when inserting dynamic values"),
)
NO_VAR_BONUS = 5
_VAR_DECL_RE = re.compile(r"\bvar\s+[A-Za-z_$]")

VISUAL_BASE = 50
VISUAL_RULES: Tuple[Tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"transition\s*:"), 10),
    (re.compile(r":hover"), 10),
    (re.compile(r"var\(--"), 10),
    (re.compile(r"@keyframes|animation\s*:"), 5),
    (re.compile(r"border-radius"), 5),
    (re.compile(r"display\s*:\s*(?:flex|grid)"), 5),
    (re.compile(r"@media"), 5),
)
NO_STYLE_PENALTY = -20
_STYLE_RE = re.compile(r"<style[\s>]|style\s*=\s*['\"]", re.IGNORECASE)

FUNCTIONALITY_BASE = 40
_EMIT_RE = re.compile(r"\b(?:emitEvent|emitOutput|emit)\s*\(")
_LISTEN_RE = re.compile(r"\b(?:onEvent|onInput|on)\s*\(")
_STATE_RE = re.compile(r"\b(?:setState|getState)\s*\(")
_CLICK_RE = re.compile(r"addEventListener\s*\(\s*['\"]click['\"]|onclick\s*=", re.IGNORECASE)
EMITS_BONUS = 15
LISTENS_BONUS = 15
STATE_BONUS = 10
CLICK_BONUS = 10
DECLARED_EVENTS_BONUS = 10

WidgetLike = Union[ParsedWidget, Mapping[str, Any]]


def clamp(value: float, low: int = 0, high: int = 100) -> int:
    return int(max(low, min(high, round(value))))


def _unpack(widget: WidgetLike) -> Tuple[Dict[str, Any], str]:
    if isinstance(widget, ParsedWidget):
        return widget.manifest.to_dict(), widget.markup
    manifest = widget.get("manifest") or {}
    if isinstance(manifest, WidgetManifest):
        manifest = manifest.to_dict()
    markup = widget.get("markup")
    if not isinstance(markup, str):
        markup = widget.get("html") or ""
    return dict(manifest), markup


def declared_events(manifest: Mapping[str, Any]) -> List[str]:
    names: List[str] = []
    events = manifest.get("events")
    if isinstance(events, dict):
        for key in ("emits", "listens"):
            for name in events.get(key) or []:
                if isinstance(name, str) and name not in names:
                    names.append(name)
    return names


def score_code_quality(markup: str) -> Tuple[int, List[str]]:
    score = CODE_BASE
    suggestions: List[str] = []
    for pattern, delta, hint in CODE_RULES:
        hit = bool(pattern.search(markup))
        if hit:
            score += delta
        # bonuses suggest when missing, penalties when present
        if hint and hit == (delta < 0):
            suggestions.append(hint)
    if not _VAR_DECL_RE.search(markup):
        score += NO_VAR_BONUS
    else:
        suggestions.append("Prefer const/let over var")
    return clamp(score), suggestions


def score_visual_quality(markup: str) -> Tuple[int, List[str]]:
    score = VISUAL_BASE
    suggestions: List[str] = []
    if not _STYLE_RE.search(markup):
        score += NO_STYLE_PENALTY
        suggestions.append("Add a <style> block; the widget has no styling")
    for pattern, delta in VISUAL_RULES:
        if pattern.search(markup):
            score += delta
    if "var(--" not in markup:
        suggestions.append("Use var(--sn-*) design tokens so the widget follows the canvas theme")
    if ":hover" not in markup:
        suggestions.append("Add hover states to interactive elements")
    return clamp(score), suggestions


def score_functionality(markup: str, manifest: Mapping[str, Any]) -> Tuple[int, List[str]]:
    score = FUNCTIONALITY_BASE
    suggestions: List[str] = []
    if _EMIT_RE.search(markup):
        score += EMITS_BONUS
    else:
        suggestions.append("Emit events or outputs so other widgets can react")
    if _LISTEN_RE.search(markup):
        score += LISTENS_BONUS
    if _STATE_RE.search(markup):
        score += STATE_BONUS
    else:
        suggestions.append("Persist state with WidgetAPI.setState")
    if _CLICK_RE.search(markup):
        score += CLICK_BONUS
    names = declared_events(manifest)
    if names:
        used = sum(1 for n in names if n in markup)
        score += DECLARED_EVENTS_BONUS * used / len(names)
        if used < len(names):
            suggestions.append("Use every event declared in manifest.events")
    return clamp(score), suggestions


class QualityAnalyzer:
    """Deterministic 0-100 quality score over four weighted axes.

    The protocol axis is the validator's own score; the other three come from
    regex rule sets over the markup and manifest. No clock, no randomness.
    """

    def __init__(
        self,
        validator: Optional[ProtocolValidator] = None,
        weights: Optional[Mapping[str, float]] = None,
        max_suggestions: int = MAX_SUGGESTIONS,
    ) -> None:
        self.validator = validator or ProtocolValidator()
        self.weights = dict(QUALITY_WEIGHTS)
        if weights:
            self.weights.update(weights)
        self.max_suggestions = max_suggestions

    def analyze(
        self,
        widget: WidgetLike,
        validation: Optional[ValidationResult] = None,
    ) -> QualityAnalysis:
        manifest, markup = _unpack(widget)
        if validation is None:
            validation = self.validator.validate_widget({"manifest": manifest, "markup": markup})

        code, code_hints = score_code_quality(markup)
        visual, visual_hints = score_visual_quality(markup)
        func, func_hints = score_functionality(markup, manifest)
        protocol = clamp(validation.score)

        overall = clamp(
            protocol * self.weights["protocol"]
            + code * self.weights["code_quality"]
            + visual * self.weights["visual_quality"]
            + func * self.weights["functionality"]
        )
        score = QualityScore(
            overall=overall,
            protocol=protocol,
            code_quality=code,
            visual_quality=visual,
            functionality=func,
        )
        suggestions = self._suggestions(validation.suggestions, code_hints + visual_hints + func_hints)
        log.debug(
            "quality.analyze: overall=%d protocol=%d code=%d visual=%d func=%d",
            overall, protocol, code, visual, func,
        )
        return QualityAnalysis(score=score, validation=validation, suggestions=suggestions)

    def quick_assess(self, widget: WidgetLike) -> QualityTier:
        manifest, markup = _unpack(widget)
        checks = [
            bool(manifest.get("id") and manifest.get("name") and manifest.get("version")),
            "WidgetAPI" in markup,
            "READY" in markup,
            bool(_STYLE_RE.search(markup)),
            bool(_EMIT_RE.search(markup) or _LISTEN_RE.search(markup)),
            not any(p.search(markup) for p, delta, _ in CODE_RULES if delta < 0),
        ]
        points = sum(checks)
        if points >= 5:
            return "excellent"
        if points >= 4:
            return "good"
        if points >= 2:
            return "basic"
        return "poor"

    def _suggestions(self, preferred: List[str], heuristic: List[str]) -> List[str]:
        out: List[str] = []
        for text in list(preferred) + list(heuristic):
            if text and text not in out:
                out.append(text)
            if len(out) >= self.max_suggestions:
                break
        return out
