from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from widgetgen.models import PortCompatibility, PortDefinition, WidgetManifest

PORT_TYPES = ("event", "string", "number", "boolean", "array", "object", "any", "color", "date", "unknown")

_TYPE_ALIASES: Dict[str, str] = {
    "string": "string", "text": "string",
    "number": "number", "int": "number", "integer": "number", "float": "number",
    "boolean": "boolean", "bool": "boolean",
    "array": "array", "list": "array",
    "object": "object", "json": "object",
    "event": "event", "trigger": "event", "signal": "event",
    "any": "any", "*": "any",
    "color": "color", "hex": "color",
    "date": "date", "datetime": "date", "timestamp": "date",
}

# Checked in order; first hit wins.
_DESCRIPTION_HINTS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("text", "string", "message"), "string"),
    (("number", "count", "value", "progress"), "number"),
    (("toggle", "enabled", "active"), "boolean"),
    (("list", "items", "array"), "array"),
    (("data", "state", "config"), "object"),
    (("click", "trigger", "press"), "event"),
    (("color", "rgb", "hex"), "color"),
)

TYPE_COMPATIBILITY: Dict[str, Tuple[str, ...]] = {
    "event": ("event", "any"),
    "string": ("string", "any", "color"),
    "number": ("number", "any", "boolean"),
    "boolean": ("boolean", "any", "number"),
    "array": ("array", "any", "object"),
    "object": ("object", "any", "array"),
    "any": ("any", "string", "number", "boolean", "array", "object", "event", "color", "date"),
    "color": ("color", "string", "any"),
    "date": ("date", "string", "number", "any"),
    "unknown": ("any", "unknown"),
}

EXACT_MATCH_SCORE = 0.5
CONVERTIBLE_SCORE = 0.3
NAME_SIMILARITY_WEIGHT = 0.3
SAME_DOMAIN_BONUS = 0.2

_CAMEL_SPLIT_RE = re.compile(r"[A-Z]?[a-z0-9]+|[A-Z]+(?![a-z])")


def infer_port_type(port_def: Optional[Mapping[str, Any]]) -> str:
    if not port_def:
        return "unknown"
    type_str = str(port_def.get("type") or "").lower()
    desc = str(port_def.get("description") or "").lower()
    if type_str in _TYPE_ALIASES:
        return _TYPE_ALIASES[type_str]
    for words, kind in _DESCRIPTION_HINTS:
        if any(w in desc for w in words):
            return kind
    return "unknown"


def infer_type_from_name(name: str) -> str:
    lower = name.lower()
    if any(w in lower for w in ("click", "press", "trigger")):
        return "event"
    if lower.endswith((".started", ".stopped", ".complete")):
        return "event"
    if any(w in lower for w in ("progress", "value", "count", "tick", "timer")):
        return "number"
    if any(w in lower for w in ("text", "message", "content", "title", "label", "name")):
        return "string"
    if any(w in lower for w in ("enabled", "active", "visible")):
        return "boolean"
    if lower.startswith(("is", "has", "can")):
        return "boolean"
    if any(w in lower for w in ("data", "state", "config")):
        return "object"
    if "color" in lower or "rgb" in lower:
        return "color"
    return "unknown"


def _manifest_dict(manifest: Union[WidgetManifest, Mapping[str, Any]]) -> Dict[str, Any]:
    if isinstance(manifest, WidgetManifest):
        return manifest.to_dict()
    return dict(manifest or {})


def _io_ports(raw: Any, direction: str, source: str, ports: List[PortDefinition]) -> None:
    if not isinstance(raw, list):
        return
    for port in raw:
        if isinstance(port, str):
            name, kind, description = port, infer_type_from_name(port), None
        elif isinstance(port, dict):
            name = port.get("id") or port.get("name") or "unknown"
            description = port.get("description")
            kind = infer_port_type(port) if port.get("type") else infer_type_from_name(name)
        else:
            continue
        if any(p.name == name for p in ports):
            continue
        ports.append(
            PortDefinition(
                name=name,
                type=kind,
                description=description,
                direction=direction,  # type: ignore[arg-type]
                source_list=source,
            )
        )


def extract_ports(
    manifest: Union[WidgetManifest, Mapping[str, Any]],
) -> Tuple[List[PortDefinition], List[PortDefinition]]:
    """Return (inputs, outputs) from both the legacy port maps and the io lists."""
    data = _manifest_dict(manifest)
    inputs: List[PortDefinition] = []
    outputs: List[PortDefinition] = []
    for key, direction, bucket in (("inputs", "input", inputs), ("outputs", "output", outputs)):
        legacy = data.get(key)
        if isinstance(legacy, dict):
            for name, definition in legacy.items():
                definition = definition if isinstance(definition, dict) else {}
                bucket.append(
                    PortDefinition(
                        name=str(name),
                        type=infer_port_type(definition),
                        description=definition.get("description"),
                        direction=direction,  # type: ignore[arg-type]
                        source_list=key,
                    )
                )
    io = data.get("io")
    if isinstance(io, dict):
        _io_ports(io.get("inputs"), "input", "io.inputs", inputs)
        _io_ports(io.get("outputs"), "output", "io.outputs", outputs)
    return inputs, outputs


def are_types_compatible(output_type: str, input_type: str) -> bool:
    if output_type == input_type or "any" in (output_type, input_type):
        return True
    return input_type in TYPE_COMPATIBILITY.get(output_type, ())


def _name_tokens(name: str) -> List[str]:
    tokens: List[str] = []
    for part in re.split(r"[._\-\s]+", name):
        tokens.extend(t.lower() for t in _CAMEL_SPLIT_RE.findall(part))
    return tokens


def name_similarity(a: str, b: str) -> float:
    flat_a = re.sub(r"[._\-]", "", a.lower())
    flat_b = re.sub(r"[._\-]", "", b.lower())
    if not flat_a or not flat_b:
        return 0.0
    if flat_a == flat_b:
        return 1.0
    if flat_a in flat_b or flat_b in flat_a:
        return 0.7
    tokens_a = _name_tokens(a)
    tokens_b = _name_tokens(b)
    common = [t for t in tokens_a if t in tokens_b]
    if not common:
        return 0.0
    return len(common) / max(len(tokens_a), len(tokens_b))


def port_compatibility(output: PortDefinition, input: PortDefinition) -> PortCompatibility:
    if not are_types_compatible(output.type, input.type):
        return PortCompatibility(
            output=output,
            input=input,
            score=0.0,
            level="incompatible",
            reason=f"Type mismatch: {output.type} -> {input.type}",
        )
    conversion = None
    if output.type == input.type:
        score = EXACT_MATCH_SCORE
        level = "exact"
        reason = "Exact type match"
    else:
        score = CONVERTIBLE_SCORE
        level = "convertible"
        reason = f"Convertible: {output.type} -> {input.type}"
        conversion = f"convert_{output.type}_to_{input.type}"

    similarity = name_similarity(output.name, input.name)
    score += similarity * NAME_SIMILARITY_WEIGHT
    if similarity > 0.7:
        reason += ", names match"
    if output.name.split(".")[0] == input.name.split(".")[0]:
        score += SAME_DOMAIN_BONUS
        reason += ", same domain"
    return PortCompatibility(
        output=output,
        input=input,
        score=round(min(1.0, score), 4),
        level=level,  # type: ignore[arg-type]
        reason=reason,
        conversion=conversion,
    )


class PortDetector:
    """Port extraction and pairwise compatibility between two manifests."""

    def extract_ports(self, manifest):
        return extract_ports(manifest)

    def detect_compatible_ports(
        self,
        widget_a: Union[WidgetManifest, Mapping[str, Any]],
        widget_b: Union[WidgetManifest, Mapping[str, Any]],
    ) -> List[PortCompatibility]:
        return [compat for compat, _ in self.detect_directed_ports(widget_a, widget_b)]

    def detect_directed_ports(
        self,
        widget_a: Union[WidgetManifest, Mapping[str, Any]],
        widget_b: Union[WidgetManifest, Mapping[str, Any]],
    ) -> List[Tuple[PortCompatibility, bool]]:
        """Like detect_compatible_ports, but each pair is tagged True when it runs a -> b."""
        inputs_a, outputs_a = extract_ports(widget_a)
        inputs_b, outputs_b = extract_ports(widget_b)
        found: List[Tuple[PortCompatibility, bool]] = []
        for outputs, inputs, a_to_b in ((outputs_a, inputs_b, True), (outputs_b, inputs_a, False)):
            for out in outputs:
                for inp in inputs:
                    compat = port_compatibility(out, inp)
                    if compat.score > 0:
                        found.append((compat, a_to_b))
        found.sort(key=lambda pair: -pair[0].score)
        return found
