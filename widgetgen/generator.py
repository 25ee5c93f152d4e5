from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from widgetgen.drafts import DraftStore
from widgetgen.metrics import MetricsStore, redis_client_from_env
from widgetgen.models import (
    ConversationMessage,
    DraftMetadata,
    ErrorKind,
    GenerationRequest,
    GenerationResult,
    GenerationSession,
    GeneratorConfig,
    QualityScore,
    ResultMetadata,
)
from widgetgen.parsing import ResponseParser
from widgetgen.prompts import PROMPT_VERSION, PromptBuilder
from widgetgen.protocol import ProtocolValidator
from widgetgen.providers import ProviderError, ProviderRegistry
from widgetgen.quality import QualityAnalyzer
from widgetgen.sessions import FAILED_PROGRESS, ProgressListener, SessionManager, get_step_progress

log = logging.getLogger(__name__)

try:
    LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "8000"))
except Exception:
    LLM_MAX_TOKENS = 8000
try:
    TEMPERATURE = float(os.getenv("TEMPERATURE", "0.7"))
except Exception:
    TEMPERATURE = 0.7

# Step a flow was in when an unexpected exception escaped, mapped to the reported kind.
_STEP_ERROR_KIND: Dict[str, ErrorKind] = {
    "preparing": "provider",
    "building-prompt": "provider",
    "calling-ai": "provider",
    "parsing-response": "parse",
    "validating": "validation",
    "scoring-quality": "validation",
    "creating-draft": "storage",
}


class _FlowFailure(Exception):
    def __init__(self, kind: ErrorKind, errors: List[str], suggestions: Optional[List[str]] = None) -> None:
        super().__init__(errors[0] if errors else kind)
        self.kind = kind
        self.errors = errors
        self.suggestions = suggestions or []


class _Flow:
    """Per-call bookkeeping shared by generate, iterate and create_variation."""

    def __init__(self, session_id: str, request: GenerationRequest, draft_mode: str) -> None:
        self.session_id = session_id
        self.request = request
        self.draft_mode = draft_mode
        self.step = "preparing"
        self.started = time.monotonic()
        self.provider_name: Optional[str] = None
        self.model: Optional[str] = None

    def metadata(self) -> ResultMetadata:
        return ResultMetadata(
            model=self.model,
            provider=self.provider_name,
            duration_ms=int((time.monotonic() - self.started) * 1000),
        )


class WidgetGenerator:
    """Orchestrates prompt -> provider -> parse -> validate -> score -> draft.

    Every public coroutine returns a GenerationResult; failures never raise.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        sessions: Optional[SessionManager] = None,
        drafts: Optional[DraftStore] = None,
        metrics: Optional[MetricsStore] = None,
        validator: Optional[ProtocolValidator] = None,
        analyzer: Optional[QualityAnalyzer] = None,
        parser: Optional[ResponseParser] = None,
        prompts: Optional[PromptBuilder] = None,
        config: Optional[GeneratorConfig] = None,
    ) -> None:
        self.providers = providers
        self.sessions = sessions or SessionManager()
        self.drafts = drafts or DraftStore(None)
        self.metrics = metrics or MetricsStore(None)
        self.validator = validator or ProtocolValidator()
        self.analyzer = analyzer or QualityAnalyzer(self.validator)
        self.parser = parser or ResponseParser()
        self.prompts = prompts or PromptBuilder()
        self.config = config or GeneratorConfig(max_tokens=LLM_MAX_TOKENS, temperature=TEMPERATURE)
        self._inflight: Dict[str, "asyncio.Task[Any]"] = {}
        self._cancelled: Set[str] = set()
        self._background: Set["asyncio.Task[GenerationResult]"] = set()

    # -- public surface ---------------------------------------------------

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        session = self.sessions.create_session(request)
        return await self._generate_in(session.id, request)

    def start_generation(self, request: GenerationRequest) -> GenerationSession:
        """Create the session now and run the generation as a task on the running loop.

        The returned session id can be cancelled or observed while the task runs.
        """
        session = self.sessions.create_session(request)
        task = asyncio.get_running_loop().create_task(self._generate_in(session.id, request))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        log.info("generator.start: session=%s", session.id)
        return session

    async def _generate_in(self, session_id: str, request: GenerationRequest) -> GenerationResult:
        flow = _Flow(session_id, request, draft_mode="new")
        log.info("generator.generate: session=%s mode=%s", session_id, request.mode)

        def build() -> str:
            return self.prompts.build_generation_prompt(request)

        return await self._run(flow, build, self.config.temperature, task="widget")

    async def iterate(self, session_id: str, feedback: str) -> GenerationResult:
        session = self.sessions.get_session(session_id)
        if session is None:
            return self._not_found(f"Session not found: {session_id}")
        if not session.widgets:
            return GenerationResult(
                success=False,
                errors=["No widget in session to iterate on"],
                session_id=session_id,
                error_kind="not_found",
            )
        last = session.widgets[-1]
        self._cancelled.discard(session_id)
        self.sessions.add_message(session_id, ConversationMessage(role="user", content=feedback))
        flow = _Flow(session_id, session.request, draft_mode="modification")
        log.info("generator.iterate: session=%s base_widget=%s", session_id, last.id)

        def build() -> str:
            return self.prompts.build_iteration_prompt(last.markup, last.manifest, feedback)

        result = await self._run(
            flow, build, self.config.iteration_temperature, task="iterate", user_prompt=feedback
        )
        if result.widget is not None:
            self.sessions.add_message(
                session_id,
                ConversationMessage(
                    role="assistant",
                    content=result.explanation or "Widget refined successfully",
                    widget_id=result.widget.id,
                ),
            )
        return result

    async def create_variation(self, source_widget_id: str, description: str) -> GenerationResult:
        source = self.drafts.get_draft(source_widget_id)
        if source is None:
            return self._not_found(f"Source widget not found: {source_widget_id}")
        request = GenerationRequest(
            description=description,
            mode="variation",
            source_widget_id=source_widget_id,
            provider=source.metadata.provider if source.metadata.provider in ("openrouter", "groq") else None,
        )
        session = self.sessions.create_session(request)
        flow = _Flow(session.id, request, draft_mode="variation")
        log.info("generator.variation: session=%s source=%s", session.id, source_widget_id)

        def build() -> str:
            return self.prompts.build_variation_prompt(source.markup, source.manifest, description)

        return await self._run(flow, build, self.config.variation_temperature, task="variation")

    def get_session(self, session_id: str) -> Optional[GenerationSession]:
        return self.sessions.get_session(session_id)

    def cancel_session(self, session_id: str) -> bool:
        task = self._inflight.get(session_id)
        cancelled = self.sessions.cancel_session(session_id)
        if task is not None and not task.done():
            self._cancelled.add(session_id)
            task.cancel()
            cancelled = True
        if cancelled:
            log.info("generator.cancel: session=%s", session_id)
        return cancelled

    def on_progress(self, session_id: str, callback: ProgressListener) -> Callable[[], None]:
        return self.sessions.on_progress(session_id, callback)

    def update_config(self, **partial: Any) -> GeneratorConfig:
        """Merge and re-validate; raises pydantic.ValidationError on bad values."""
        merged = self.config.model_dump()
        merged.update(partial)
        self.config = GeneratorConfig.model_validate(merged)
        log.info("generator.config: updated fields=%s", ",".join(sorted(partial)))
        return self.config

    # -- shared skeleton --------------------------------------------------

    async def _run(
        self,
        flow: _Flow,
        build_prompt: Callable[[], str],
        temperature: float,
        task: str,
        user_prompt: Optional[str] = None,
    ) -> GenerationResult:
        prompt_text = user_prompt if user_prompt is not None else flow.request.description
        try:
            return await self._steps(flow, build_prompt, temperature, task, prompt_text)
        except _FlowFailure as failure:
            return self._fail(flow, failure.kind, failure.errors, failure.suggestions, prompt_text)
        except ProviderError as exc:
            return self._fail(flow, "provider", [str(exc)], [], prompt_text)
        except asyncio.CancelledError:
            if flow.session_id not in self._cancelled and not self.sessions.is_cancelled(flow.session_id):
                raise
            return self._fail(flow, "cancelled", ["Generation cancelled"], [], prompt_text)
        except Exception as exc:
            log.exception("generator.run: unexpected failure session=%s step=%s", flow.session_id, flow.step)
            kind = _STEP_ERROR_KIND.get(flow.step, "provider")
            return self._fail(flow, kind, [str(exc) or exc.__class__.__name__], [], prompt_text)
        finally:
            self._inflight.pop(flow.session_id, None)
            self._cancelled.discard(flow.session_id)

    async def _steps(
        self,
        flow: _Flow,
        build_prompt: Callable[[], str],
        temperature: float,
        task: str,
        prompt_text: str,
    ) -> GenerationResult:
        sid = flow.session_id
        self._step(flow, "building-prompt", "Building prompt")
        system_prompt = self.prompts.build_system_prompt()
        prompt = build_prompt()

        provider = self.providers.select(flow.request.provider or self.config.default_provider, task=task)
        flow.provider_name = getattr(provider, "name", None)
        flow.model = flow.request.model or getattr(provider, "model", None)
        self._check_cancelled(flow)
        self._step(flow, "calling-ai", f"Generating with {flow.provider_name or 'provider'}")
        response = await self._call_provider(
            sid,
            provider.generate(
                prompt,
                system_prompt=system_prompt,
                max_tokens=self.config.max_tokens,
                temperature=temperature,
                **({"model": flow.request.model} if flow.request.model else {}),
            ),
        )
        flow.model = response.model or flow.model
        flow.provider_name = response.name or flow.provider_name
        self._check_cancelled(flow)

        self._step(flow, "parsing-response", "Parsing response")
        parsed = self.parser.parse_and_ensure_ready(response.content)
        if not parsed.success or parsed.widget is None:
            raise _FlowFailure("parse", [parsed.error or "Failed to parse AI response"])
        widget = parsed.widget

        self._step(flow, "validating", "Validating widget protocol")
        validation = self.validator.validate_widget(
            {"manifest": widget.manifest.to_dict(), "markup": widget.markup}
        )

        quality: Optional[QualityScore] = None
        suggestions = list(validation.suggestions)
        if self.config.enable_quality_scoring:
            self._step(flow, "scoring-quality", "Analyzing quality")
            analysis = self.analyzer.analyze(widget, validation)
            quality = analysis.score
            suggestions = analysis.suggestions

        self._check_cancelled(flow)
        self._step(flow, "creating-draft", "Creating draft")
        draft = self.drafts.create_draft(
            widget.manifest,
            widget.markup,
            DraftMetadata(
                prompt=prompt_text,
                model=flow.model,
                provider=flow.provider_name,
                mode=flow.draft_mode,  # type: ignore[arg-type]
                source_widget_id=flow.request.source_widget_id,
            ),
            conversation_id=sid,
        )
        draft = self.drafts.set_validation_result(draft.id, validation) or draft
        self.sessions.add_widget(sid, draft)
        self._step(flow, "complete", "Widget ready")

        errors = [issue.message for issue in validation.errors]
        outcome = "success" if validation.valid else "partial"
        metrics_id = self._record(
            flow,
            prompt_text,
            outcome,
            error_message="; ".join(errors) or None,
            quality_score=quality.overall if quality else None,
            extra={"widget_id": draft.id, "ready_injected": parsed.ready_injected, "strategy": parsed.strategy},
        )
        log.info(
            "generator.done: session=%s draft=%s valid=%s quality=%s",
            sid, draft.id, validation.valid, quality.overall if quality else None,
        )
        return GenerationResult(
            success=validation.valid,
            widget=draft,
            quality=quality,
            validation=validation,
            explanation=widget.explanation,
            errors=errors,
            suggestions=suggestions,
            session_id=sid,
            metrics_id=metrics_id,
            error_kind=None if validation.valid else "validation",
            metadata=flow.metadata(),
        )

    async def _call_provider(self, session_id: str, call: Awaitable[Any]) -> Any:
        task = asyncio.ensure_future(call)
        self._inflight[session_id] = task
        try:
            return await task
        finally:
            self._inflight.pop(session_id, None)

    def _step(self, flow: _Flow, step: str, message: str) -> None:
        flow.step = step
        self.sessions.update_progress(flow.session_id, step, message, get_step_progress(step))

    def _check_cancelled(self, flow: _Flow) -> None:
        if flow.session_id in self._cancelled or self.sessions.is_cancelled(flow.session_id):
            raise _FlowFailure("cancelled", ["Generation cancelled"])

    def _fail(
        self,
        flow: _Flow,
        kind: ErrorKind,
        errors: List[str],
        suggestions: List[str],
        prompt_text: str,
    ) -> GenerationResult:
        message = errors[0] if errors else "Generation failed"
        if kind == "cancelled":
            recorded = self.sessions.is_cancelled(flow.session_id)
        else:
            recorded = self.sessions.fail_session(flow.session_id, message)
        if not recorded:
            # iterate runs on a session that is already terminal
            self.sessions.update_progress(flow.session_id, "failed", message, FAILED_PROGRESS)
        log.warning("generator.fail: session=%s kind=%s error=%s", flow.session_id, kind, message)
        metrics_id = self._record(flow, prompt_text, "failure", error_message=message, extra={"error_kind": kind})
        return GenerationResult(
            success=False,
            errors=errors,
            suggestions=suggestions,
            session_id=flow.session_id,
            metrics_id=metrics_id,
            error_kind=kind,
            metadata=flow.metadata(),
        )

    def _not_found(self, message: str) -> GenerationResult:
        log.info("generator.not_found: %s", message)
        return GenerationResult(success=False, errors=[message], error_kind="not_found")

    def _record(
        self,
        flow: _Flow,
        prompt_text: str,
        outcome: str,
        error_message: Optional[str] = None,
        quality_score: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        metadata: Dict[str, Any] = {
            "session_id": flow.session_id,
            "mode": flow.draft_mode,
            "provider": flow.provider_name,
            "model": flow.model,
            "duration_ms": int((time.monotonic() - flow.started) * 1000),
        }
        metadata.update(extra or {})
        try:
            return self.metrics.add_record(
                "widget",
                PROMPT_VERSION,
                prompt_text,
                outcome,
                error_message=error_message,
                quality_score=quality_score,
                metadata=metadata,
            )
        except (OSError, ValidationError) as exc:
            log.warning("generator.metrics: failed to record session=%s: %s", flow.session_id, exc)
            return None


def build_generator(
    providers: Optional[ProviderRegistry] = None,
    **overrides: Any,
) -> WidgetGenerator:
    """Wire long-lived default services from the environment."""
    validator = overrides.pop("validator", None) or ProtocolValidator()
    return WidgetGenerator(
        providers=providers or ProviderRegistry(),
        sessions=overrides.pop("sessions", None) or SessionManager(),
        drafts=overrides.pop("drafts", None) or DraftStore(),
        metrics=overrides.pop("metrics", None) or MetricsStore(redis_client=redis_client_from_env()),
        validator=validator,
        analyzer=overrides.pop("analyzer", None) or QualityAnalyzer(validator),
        **overrides,
    )
