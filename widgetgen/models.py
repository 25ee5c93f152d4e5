from __future__ import annotations

import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

GenerationMode = Literal["new", "variation", "iterate", "template"]
ComplexityLevel = Literal["basic", "standard", "advanced", "professional"]
StylePreset = Literal["minimal", "polished", "glass", "neon", "retro", "elaborate"]
ProviderType = Literal["auto", "openrouter", "groq"]
SessionStatus = Literal["active", "complete", "failed", "cancelled"]
GenerationStep = Literal[
    "preparing",
    "building-prompt",
    "calling-ai",
    "parsing-response",
    "validating",
    "scoring-quality",
    "creating-draft",
    "complete",
    "failed",
]
ErrorKind = Literal["parse", "validation", "provider", "storage", "not_found", "cancelled"]
QualityTier = Literal["excellent", "good", "basic", "poor"]
GenerationOutcome = Literal["success", "partial", "failure"]


def _now() -> float:
    return time.time()


class ImageReference(BaseModel):
    description: str = ""
    url: Optional[str] = None
    focus: Optional[str] = Field(default=None, description="What to borrow: layout, palette, typography...")


class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    mode: GenerationMode = "new"
    complexity: ComplexityLevel = "standard"
    style_preset: StylePreset = "polished"
    features: Dict[str, bool] = Field(default_factory=dict)
    provider: Optional[ProviderType] = None
    model: Optional[str] = None
    source_widget_id: Optional[str] = None
    input_ports: List[str] = Field(default_factory=list)
    output_ports: List[str] = Field(default_factory=list)
    family_context: Optional[str] = None
    image_references: List[ImageReference] = Field(default_factory=list)


class WidgetManifest(BaseModel):
    """Widget metadata. Required core fields plus whatever else the model emitted."""

    model_config = ConfigDict(extra="allow")

    id: str = ""
    name: str = ""
    version: str = ""
    entry: str = ""
    # Shape of the rest is checked by ProtocolValidator, not here.
    description: Any = None
    kind: Any = None
    capabilities: Any = None
    events: Any = None
    inputs: Any = None
    outputs: Any = None
    io: Any = None

    def missing_core_fields(self) -> List[str]:
        missing = []
        for field in ("id", "name", "version", "entry"):
            value = getattr(self, field)
            if not isinstance(value, str) or not value.strip():
                missing.append(field)
        return missing

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class ParsedWidget(BaseModel):
    manifest: WidgetManifest
    markup: str
    explanation: Optional[str] = None


class ParseResult(BaseModel):
    success: bool
    widget: Optional[ParsedWidget] = None
    error: Optional[str] = None
    raw: Optional[str] = None
    strategy: Optional[str] = None
    ready_injected: bool = False


class ValidationIssue(BaseModel):
    rule: str
    message: str
    severity: Literal["error", "warning", "info"] = "error"
    location: Optional[str] = None
    suggestion: Optional[str] = None


class ValidationResult(BaseModel):
    valid: bool
    score: int = Field(ge=0, le=100)
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class QualityScore(BaseModel):
    overall: int
    protocol: int
    code_quality: int
    visual_quality: int
    functionality: int


class QualityAnalysis(BaseModel):
    score: QualityScore
    validation: ValidationResult
    suggestions: List[str] = Field(default_factory=list)


class ProgressUpdate(BaseModel):
    step: GenerationStep
    message: str
    progress: int
    timestamp: float = Field(default_factory=_now)


class ConversationMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    widget_id: Optional[str] = None
    timestamp: float = Field(default_factory=_now)


class DraftMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    prompt: str = ""
    model: Optional[str] = None
    provider: Optional[str] = None
    mode: Literal["new", "modification", "variation"] = "new"
    source_widget_id: Optional[str] = None


class DraftWidget(BaseModel):
    id: str
    manifest: WidgetManifest
    markup: str
    conversation_id: Optional[str] = None
    metadata: DraftMetadata = Field(default_factory=DraftMetadata)
    validation: Optional[ValidationResult] = None
    created_at: float = Field(default_factory=_now)
    updated_at: float = Field(default_factory=_now)


class GenerationSession(BaseModel):
    id: str
    request: GenerationRequest
    status: SessionStatus = "active"
    progress_updates: List[ProgressUpdate] = Field(default_factory=list)
    widgets: List[DraftWidget] = Field(default_factory=list)
    messages: List[ConversationMessage] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: float = Field(default_factory=_now)
    last_activity: float = Field(default_factory=_now)

    @property
    def current_step(self) -> Optional[str]:
        return self.progress_updates[-1].step if self.progress_updates else None

    @property
    def progress(self) -> int:
        return self.progress_updates[-1].progress if self.progress_updates else 0

    @property
    def is_terminal(self) -> bool:
        return self.status != "active"


class PortDefinition(BaseModel):
    name: str
    type: str = "unknown"
    description: Optional[str] = None
    direction: Literal["input", "output"] = "output"
    source_list: Optional[str] = None


class PortCompatibility(BaseModel):
    output: PortDefinition
    input: PortDefinition
    score: float = Field(ge=0.0, le=1.0)
    level: Literal["exact", "compatible", "convertible", "incompatible"]
    reason: str = ""
    conversion: Optional[str] = None


class CanvasWidget(BaseModel):
    id: str
    manifest: WidgetManifest

    @property
    def name(self) -> str:
        return self.manifest.name or self.id


class ConnectionSuggestion(BaseModel):
    id: str
    direction: Literal["outgoing", "incoming"]
    source_widget_id: str
    source_widget_name: str
    target_widget_id: str
    target_widget_name: str
    source_port: PortDefinition
    target_port: PortDefinition
    compatibility: float = Field(ge=0.0, le=1.0)
    reason: str = ""
    description: str = ""


class AutoWireResult(BaseModel):
    generated_widget_id: str
    suggestions: List[ConnectionSuggestion] = Field(default_factory=list)
    analyzed_widgets: int = 0
    inputs: List[PortDefinition] = Field(default_factory=list)
    outputs: List[PortDefinition] = Field(default_factory=list)


class GenerationRecord(BaseModel):
    id: str
    type: Literal["widget", "image", "pipeline", "skill"] = "widget"
    prompt_version_id: str
    user_prompt: str
    result: GenerationOutcome
    error_message: Optional[str] = None
    quality_score: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=_now)


class GeneratorConfig(BaseModel):
    default_provider: ProviderType = "auto"
    max_tokens: int = Field(default=8000, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    iteration_temperature: float = Field(default=0.4, ge=0.0, le=2.0)
    variation_temperature: float = Field(default=0.8, ge=0.0, le=2.0)
    enable_quality_scoring: bool = True


class ResultMetadata(BaseModel):
    model: Optional[str] = None
    provider: Optional[str] = None
    duration_ms: int = 0
    timestamp: float = Field(default_factory=_now)


class GenerationResult(BaseModel):
    success: bool
    widget: Optional[DraftWidget] = None
    quality: Optional[QualityScore] = None
    validation: Optional[ValidationResult] = None
    explanation: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    session_id: Optional[str] = None
    metrics_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    metadata: Optional[ResultMetadata] = None
