from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from widgetgen.models import ParsedWidget, ParseResult, WidgetManifest

log = logging.getLogger(__name__)

MIN_MARKUP_LENGTH = 100
RAW_PREVIEW_LIMIT = 1000

# Accepted spellings of the startup handshake. The host only needs to see a
# postMessage carrying type READY; models emit it with either key order.
READY_SIGNAL_PATTERNS: Tuple[re.Pattern[str], ...] = (
    re.compile(r"postMessage\s*\(\s*\{\s*type\s*:\s*['\"`]READY['\"`]"),
    re.compile(r"postMessage\s*\(\s*\{\s*['\"]type['\"]\s*:\s*['\"`]READY['\"`]"),
    re.compile(r"postMessage\s*\(\s*\{[^}]*?,\s*['\"]?type['\"]?\s*:\s*['\"`]READY['\"`]", re.DOTALL),
)
READY_SIGNAL_SNIPPET = "window.parent.postMessage({ type: 'READY' }, '*');"

_FENCE_RE = re.compile(r"```(?:json|javascript|js)?\s*([\s\S]*?)```", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_MANIFEST_KEY_RE = re.compile(r"\"manifest\"\s*:\s*\{")
_MARKUP_FIELD_RE = re.compile(r"\"(?:html|markup)\"\s*:\s*\"((?:[^\"\\]|\\.)*)\"", re.DOTALL)
_EXPLANATION_FIELD_RE = re.compile(r"\"explanation\"\s*:\s*\"((?:[^\"\\]|\\.)*)\"", re.DOTALL)
_SCRIPT_CLOSE_RE = re.compile(r"</script\s*>", re.IGNORECASE)
_BODY_CLOSE_RE = re.compile(r"</body\s*>", re.IGNORECASE)


def clean_json_text(text: str) -> str:
    """Strip wrapping whitespace, normalize smart quotes and drop trailing commas."""
    s = (text or "").strip().lstrip("﻿")
    s = s.replace("“", '"').replace("”", '"').replace("’", "'")
    return _TRAILING_COMMA_RE.sub(r"\1", s)


def has_ready_signal(markup: str) -> bool:
    if not isinstance(markup, str) or not markup:
        return False
    return any(p.search(markup) for p in READY_SIGNAL_PATTERNS)


def ensure_ready_signal(markup: str) -> Tuple[str, bool]:
    """Return (markup, injected). Injects a single handshake call when none is present.

    Preference: inside the last script block, then a new script before </body>,
    then a new script appended at the end.
    """
    if has_ready_signal(markup):
        return markup, False
    closes = list(_SCRIPT_CLOSE_RE.finditer(markup))
    if closes:
        idx = closes[-1].start()
        return f"{markup[:idx]}\n{READY_SIGNAL_SNIPPET}\n{markup[idx:]}", True
    tag = f"<script>{READY_SIGNAL_SNIPPET}</script>"
    body = _BODY_CLOSE_RE.search(markup)
    if body:
        idx = body.start()
        return f"{markup[:idx]}{tag}\n{markup[idx:]}", True
    return f"{markup}\n{tag}", True


def _balanced_slice(s: str, start: int) -> Optional[str]:
    """Return the {...} region opening at s[start], honoring JSON strings."""
    in_str = False
    esc = False
    depth = 0
    for i in range(start, len(s)):
        ch = s[i]
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return s[start : i + 1]
    return None


def _load_object(text: str) -> Optional[Dict[str, Any]]:
    """json.loads on the text as-is, then once more after cleaning; dicts only."""
    if not text:
        return None
    try:
        data = json.loads(text.strip())
    except ValueError:
        try:
            data = json.loads(clean_json_text(text))
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


def _widget_from_payload(payload: Optional[Dict[str, Any]]) -> Optional[ParsedWidget]:
    if not payload:
        return None
    manifest = payload.get("manifest")
    markup = payload.get("markup")
    if not isinstance(markup, str):
        markup = payload.get("html")
    if not isinstance(manifest, dict) or not isinstance(markup, str):
        return None
    explanation = payload.get("explanation")
    try:
        return ParsedWidget(
            manifest=WidgetManifest.model_validate(manifest),
            markup=markup,
            explanation=explanation if isinstance(explanation, str) else None,
        )
    except ValidationError as exc:
        log.debug("parsing.payload: manifest rejected: %s", exc)
        return None


def attempt_direct_json(raw: str) -> Optional[ParsedWidget]:
    return _widget_from_payload(_load_object(raw))


def attempt_fenced_block(raw: str) -> Optional[ParsedWidget]:
    m = _FENCE_RE.search(raw or "")
    if not m:
        return None
    return _widget_from_payload(_load_object(m.group(1)))


def attempt_outer_braces(raw: str) -> Optional[ParsedWidget]:
    text = raw or ""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return _widget_from_payload(_load_object(text[start : end + 1]))


def _decode_json_string(body: str) -> Optional[str]:
    try:
        return json.loads(f'"{body}"')
    except ValueError:
        return None


def attempt_manual_fields(raw: str) -> Optional[ParsedWidget]:
    """Last resort for broken JSON: pull the manifest object and markup string independently."""
    text = raw or ""
    m = _MANIFEST_KEY_RE.search(text)
    if not m:
        return None
    region = _balanced_slice(text, m.end() - 1)
    manifest = _load_object(region) if region else None
    if manifest is None:
        return None
    markup_match = _MARKUP_FIELD_RE.search(text)
    if not markup_match:
        return None
    markup = _decode_json_string(markup_match.group(1))
    if markup is None:
        return None
    payload: Dict[str, Any] = {"manifest": manifest, "markup": markup}
    expl_match = _EXPLANATION_FIELD_RE.search(text)
    if expl_match:
        payload["explanation"] = _decode_json_string(expl_match.group(1))
    return _widget_from_payload(payload)


Strategy = Callable[[str], Optional[ParsedWidget]]

STRATEGIES: Tuple[Tuple[str, Strategy], ...] = (
    ("direct_json", attempt_direct_json),
    ("fenced_block", attempt_fenced_block),
    ("outer_braces", attempt_outer_braces),
    ("manual_fields", attempt_manual_fields),
)


def structural_problems(widget: ParsedWidget, require_ready: bool = True) -> List[str]:
    problems: List[str] = []
    missing = widget.manifest.missing_core_fields()
    if missing:
        problems.append(f"manifest missing required fields: {', '.join(missing)}")
    if len(widget.markup) < MIN_MARKUP_LENGTH:
        problems.append(f"markup too short ({len(widget.markup)} < {MIN_MARKUP_LENGTH} chars)")
    if require_ready and not has_ready_signal(widget.markup):
        problems.append("markup does not send the READY handshake")
    return problems


class ResponseParser:
    """Recover a widget from raw model text through an ordered strategy chain."""

    def __init__(self, strategies: Tuple[Tuple[str, Strategy], ...] = STRATEGIES) -> None:
        self.strategies = strategies

    def parse(self, raw_text: str) -> ParseResult:
        return self._run_chain(raw_text, require_ready=True)

    def parse_and_ensure_ready(self, raw_text: str) -> ParseResult:
        result = self._run_chain(raw_text, require_ready=False)
        if not result.success or result.widget is None:
            return result
        markup, injected = ensure_ready_signal(result.widget.markup)
        if injected:
            log.info("parsing.ready: injected READY handshake manifest_id=%s", result.widget.manifest.id)
            widget = result.widget.model_copy(update={"markup": markup})
            return result.model_copy(update={"widget": widget, "ready_injected": True})
        return result

    def _run_chain(self, raw_text: str, require_ready: bool) -> ParseResult:
        text = raw_text if isinstance(raw_text, str) else ""
        if not text.strip():
            return ParseResult(success=False, error="Empty response from model", raw="")
        last_problems: List[str] = []
        for name, attempt in self.strategies:
            try:
                widget = attempt(text)
            except Exception as exc:
                log.warning("parsing.chain: strategy=%s raised %r", name, exc)
                continue
            if widget is None:
                continue
            problems = structural_problems(widget, require_ready=require_ready)
            if problems:
                log.debug("parsing.chain: strategy=%s rejected: %s", name, "; ".join(problems))
                last_problems = problems
                continue
            log.debug("parsing.chain: strategy=%s accepted", name)
            return ParseResult(success=True, widget=widget, strategy=name)
        if last_problems:
            error = "Widget failed structural validation: " + "; ".join(last_problems)
        else:
            error = "Could not extract a widget (manifest + html) from the model response"
        log.warning("parsing.chain: no strategy succeeded len=%d error=%s", len(text), error)
        return ParseResult(success=False, error=error, raw=text[:RAW_PREVIEW_LIMIT])
