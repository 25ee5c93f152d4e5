from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Tuple

from jsonschema.validators import Draft202012Validator

from widgetgen.models import ValidationIssue, ValidationResult, WidgetManifest
from widgetgen.parsing import has_ready_signal

log = logging.getLogger(__name__)

MANIFEST_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string", "pattern": r"^[a-z][a-z0-9-]*$"},
        "name": {"type": "string", "minLength": 1},
        "version": {"type": "string", "pattern": r"^\d+\.\d+\.\d+(-[A-Za-z0-9.]+)?$"},
        "entry": {"type": "string", "pattern": r"\.(html|js|ts|tsx)$"},
        "kind": {"enum": ["2d", "3d", "audio", "video", "hybrid"]},
        "capabilities": {
            "type": "object",
            "properties": {
                "draggable": {"type": "boolean"},
                "resizable": {"type": "boolean"},
            },
            "required": ["draggable", "resizable"],
        },
        "events": {
            "type": "object",
            "properties": {
                "emits": {"type": "array", "items": {"type": "string"}},
                "listens": {"type": "array", "items": {"type": "string"}},
            },
        },
        "io": {
            "type": "object",
            "properties": {
                "inputs": {"type": "array"},
                "outputs": {"type": "array"},
            },
        },
    },
    "required": ["id", "name", "version", "entry"],
}

# Missing ones lower the score but do not make a widget invalid.
RECOMMENDED_FIELDS: Tuple[str, ...] = ("kind", "capabilities")

_MANIFEST_VALIDATOR = Draft202012Validator(MANIFEST_SCHEMA)

# (pattern, label, severity)
DANGEROUS_PATTERNS: Tuple[Tuple[re.Pattern[str], str, str], ...] = (
    (re.compile(r"\beval\s*\("), "eval()", "error"),
    (re.compile(r"new\s+Function\s*\("), "new Function()", "error"),
    (re.compile(r"document\.write\s*\("), "document.write()", "error"),
    (re.compile(r"parent\.document"), "parent.document access", "error"),
    (re.compile(r"top\.document"), "top.document access", "error"),
    (re.compile(r"\.innerHTML\s*=\s*[^'\"`\s]"), "innerHTML with variable", "warning"),
    (re.compile(r"document\.cookie"), "cookie access", "warning"),
    (re.compile(r"(?:local|session)Storage\.(?:get|set)Item"), "web storage access", "warning"),
    (re.compile(r"fetch\s*\(\s*['\"`]https?:"), "external HTTP fetch", "warning"),
    (re.compile(r"XMLHttpRequest"), "XMLHttpRequest", "warning"),
)

_INIT_GUARD_RE = re.compile(r"if\s*\(\s*!\s*window\.WidgetAPI\s*\)|window\.WidgetAPI\s*&&")
_EMIT_TYPE_RE = re.compile(r"emitEvent\s*\(\s*\{\s*type\s*:\s*['\"`]([^'\"`]+)['\"`]")
_EVENT_NAME_RE = re.compile(r"^[a-z][a-z0-9-]*:[a-z][a-z0-9-]*$")


def _rule_slug(label: str) -> str:
    return re.sub(r"[^a-zA-Z]", "", label)


def _port_names(manifest: Mapping[str, Any], key: str) -> List[str]:
    names: List[str] = []
    legacy = manifest.get(key)
    if isinstance(legacy, dict):
        names.extend(str(k) for k in legacy.keys())
    io = manifest.get("io")
    if isinstance(io, dict) and isinstance(io.get(key), list):
        for port in io[key]:
            if isinstance(port, str):
                names.append(port)
            elif isinstance(port, dict):
                name = port.get("id") or port.get("name")
                if isinstance(name, str):
                    names.append(name)
    seen = set()
    return [n for n in names if not (n in seen or seen.add(n))]


class ProtocolValidator:
    """Structural and protocol compliance checks for a generated widget."""

    def validate_widget(self, widget: Mapping[str, Any]) -> ValidationResult:
        manifest = widget.get("manifest") or {}
        if isinstance(manifest, WidgetManifest):
            manifest = manifest.to_dict()
        markup = widget.get("markup")
        if not isinstance(markup, str):
            markup = widget.get("html") or ""
        checks: List[ValidationIssue] = []
        passed = 0

        manifest_checks, manifest_passed = self.validate_manifest(manifest)
        checks.extend(manifest_checks)
        passed += manifest_passed

        code_checks, code_passed = self.validate_code(markup, manifest)
        checks.extend(code_checks)
        passed += code_passed

        consistency = self.validate_consistency(markup, manifest)
        checks.extend(consistency)
        return self._compile(checks, passed)

    def validate_manifest(self, manifest: Mapping[str, Any]) -> Tuple[List[ValidationIssue], int]:
        issues: List[ValidationIssue] = []
        for err in _MANIFEST_VALIDATOR.iter_errors(dict(manifest)):
            loc = ".".join(str(p) for p in err.path) or "(root)"
            issues.append(
                ValidationIssue(
                    rule=f"manifest.{err.validator}",
                    message=f"manifest {loc}: {err.message}",
                    severity="error",
                    location=f"manifest.{loc}" if loc != "(root)" else "manifest",
                    suggestion=self._manifest_suggestion(err.validator, loc, manifest),
                )
            )
        for direction in ("inputs", "outputs"):
            legacy = manifest.get(direction)
            if not isinstance(legacy, dict):
                continue
            for name, schema in legacy.items():
                if not isinstance(schema, dict) or "type" not in schema:
                    issues.append(
                        ValidationIssue(
                            rule=f"manifest.{direction}.schema",
                            message=f"{direction[:-1]} \"{name}\" must have a type property",
                            severity="error",
                            location=f"manifest.{direction}.{name}",
                        )
                    )
        for field in RECOMMENDED_FIELDS:
            if field not in manifest:
                issues.append(
                    ValidationIssue(
                        rule="manifest.recommended",
                        message=f"manifest is missing recommended field \"{field}\"",
                        severity="warning",
                        location=f"manifest.{field}",
                        suggestion=self._manifest_suggestion("recommended", field, manifest),
                    )
                )
        passed = 0 if any(i.severity == "error" for i in issues) else 1
        return issues, passed

    def _manifest_suggestion(self, keyword: str, loc: str, manifest: Mapping[str, Any]) -> str:
        if loc == "id" and isinstance(manifest.get("id"), str):
            return "Use a kebab-case id such as " + re.sub(r"[^a-z0-9-]", "-", manifest["id"].lower()).strip("-")
        if loc == "version":
            return 'Use a semver version such as "1.0.0"'
        if loc.startswith("capabilities") or (keyword == "required" and "capabilities" in loc):
            return 'Add "capabilities": {"draggable": true, "resizable": true}'
        if loc == "kind":
            return 'Add "kind": "2d" (or 3d, audio, video, hybrid)'
        if keyword == "required":
            return "Add the missing manifest fields (id, name, version, entry)"
        return f"Fix manifest field {loc}"

    def validate_code(self, markup: str, manifest: Mapping[str, Any]) -> Tuple[List[ValidationIssue], int]:
        issues: List[ValidationIssue] = []
        passed = 0
        for pattern, label, severity in DANGEROUS_PATTERNS:
            if pattern.search(markup):
                issues.append(
                    ValidationIssue(
                        rule=f"security.{_rule_slug(label)}",
                        message=f"Dangerous pattern detected: {label}",
                        severity=severity,  # type: ignore[arg-type]
                        location="markup",
                        suggestion=(
                            f"Remove {label}; it is blocked inside the widget sandbox"
                            if severity == "error"
                            else f"Check whether {label} is really needed"
                        ),
                    )
                )
            else:
                passed += 1

        if has_ready_signal(markup):
            passed += 1
        else:
            issues.append(
                ValidationIssue(
                    rule="protocol.ready",
                    message="Widget never sends the READY handshake",
                    severity="error",
                    location="markup",
                    suggestion="Call window.parent.postMessage({ type: 'READY' }, '*') once the widget has loaded",
                )
            )

        if "WidgetAPI" in markup:
            if _INIT_GUARD_RE.search(markup):
                passed += 1
            else:
                issues.append(
                    ValidationIssue(
                        rule="protocol.initCheck",
                        message="Widget should check for WidgetAPI availability before using it",
                        severity="warning",
                        location="markup",
                        suggestion="Add: if (!window.WidgetAPI) { setTimeout(init, 50); return; }",
                    )
                )

        widget_id = manifest.get("id") or "widget"
        for event_type in _EMIT_TYPE_RE.findall(markup):
            if not _EVENT_NAME_RE.match(event_type) and ":" not in event_type:
                issues.append(
                    ValidationIssue(
                        rule="protocol.eventNaming",
                        message=f'Event type "{event_type}" should follow the "namespace:event-name" pattern',
                        severity="warning",
                        location="markup",
                        suggestion=f'Consider "{widget_id}:{event_type}"',
                    )
                )
        if "emitEvent" in markup and "scope:" not in markup:
            issues.append(
                ValidationIssue(
                    rule="protocol.eventScope",
                    message="Events should specify a scope (canvas, widget or global)",
                    severity="warning",
                    location="markup",
                    suggestion="Add scope: 'canvas' to your emitEvent calls",
                )
            )
        return issues, passed

    def validate_consistency(self, markup: str, manifest: Mapping[str, Any]) -> List[ValidationIssue]:
        issues: List[ValidationIssue] = []
        for name in _port_names(manifest, "outputs"):
            pattern = re.compile(r"['\"`]" + re.escape(name) + r"['\"`]|:" + re.escape(name) + r"\b")
            if not pattern.search(markup):
                issues.append(
                    ValidationIssue(
                        rule="consistency.outputUsed",
                        message=f'Declared output "{name}" is never emitted',
                        severity="warning",
                        suggestion=f'Emit "{name}" when its value changes',
                    )
                )
        for name in _port_names(manifest, "inputs"):
            pattern = re.compile(r"['\"`]" + re.escape(name) + r"['\"`]")
            if not pattern.search(markup):
                issues.append(
                    ValidationIssue(
                        rule="consistency.inputHandled",
                        message=f'Declared input "{name}" is never handled',
                        severity="warning",
                        suggestion=f'Add a handler for the "{name}" input',
                    )
                )
        return issues

    def _compile(self, issues: List[ValidationIssue], passed: int) -> ValidationResult:
        errors = [i for i in issues if i.severity == "error"]
        warnings = [i for i in issues if i.severity == "warning"]
        total = passed + len(errors) + len(warnings)
        ratio = (passed / total) if total else 1.0
        score = round(ratio * 100 - len(errors) * 2 - len(warnings) * 0.5)
        score = max(0, min(100, score))
        suggestions: List[str] = []
        for issue in errors + warnings:
            if issue.suggestion and issue.suggestion not in suggestions:
                suggestions.append(issue.suggestion)
        log.debug("protocol.compile: errors=%d warnings=%d score=%d", len(errors), len(warnings), score)
        return ValidationResult(
            valid=not errors,
            score=score,
            errors=errors,
            warnings=warnings,
            suggestions=suggestions,
        )
