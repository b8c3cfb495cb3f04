"""Conversation session state and the controller that owns "what happens next"."""

from __future__ import annotations

import itertools
import threading
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from luna.config import Settings, get_settings
from luna.contracts.intents import (
    ActionCandidate,
    ActionKind,
    ExecutionResult,
    IncompleteActionCandidate,
    InformationalAnswer,
    ResolverContext,
    ResponseItem,
)
from luna.contracts.messages import ActionPreview, ActionStatus, ClarifyInfo, Message
from luna.contracts.session import SessionSnapshot
from luna.errors import LunaError
from luna.logging_config import get_logger, session_context
from luna.orchestration.playbooks import (
    PLAYBOOKS,
    PlaybookDefinition,
    PlaybookRunner,
    PlaybookStep,
    StepOutcome,
    StepView,
    StepViewFn,
    render_template,
)
from luna.orchestration.slots import SlotFiller
from luna.services.domain import DomainAPI
from luna.services.resolver import IntentResolver
from luna.services.sanitize import normalize_command, sanitize_history, sanitize_text
from luna.services.telemetry import TelemetryCollector

logger = get_logger(__name__)

# Errors from the resolver / domain boundary that become retryable messages.
RECOVERABLE_ERRORS = (LunaError, ValidationError, OSError)

RESOLVER_FAILURE_TEXT = "Sorry, something went wrong. Please try again."
PREVIEW_TEXT = "Here's what I'll do. Confirm to proceed."
STEP_FAILED_TEXT = 'This step failed. Retry it, or type "skip" to move on.'

DEFAULT_TITLES: dict[ActionKind, str] = {
    ActionKind.CREATE_TASK: 'Create task "{title}"',
    ActionKind.UPDATE_TASK_STATUS: 'Set "{task_title}" to {new_status}',
    ActionKind.CREATE_PROGRAMME: 'Create programme "{name}"',
    ActionKind.UPDATE_PROGRAMME_STATUS: 'Set "{programme_name}" to {programme_status}',
    ActionKind.UPDATE_PROGRAMME_FIELDS: 'Update {update_field} of "{programme_name}"',
    ActionKind.RUN_PLAYBOOK: "Run {playbook_id}",
    ActionKind.PLAYBOOK_STEP: "{step_id}",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error_text(exc: BaseException) -> str:
    text = getattr(exc, "message", None) or str(exc) or type(exc).__name__
    return str(text).rstrip(".")


class ConversationSession:
    """Explicit per-conversation state handle.

    Only the SessionController mutates it. The busy flag doubles as the
    one-in-flight-request mutex for resolver and domain calls.
    """

    def __init__(
        self,
        session_id: str | None = None,
        role: str = "member",
        page_context: str | None = None,
        max_messages: int = 200,
    ):
        if max_messages <= 0:
            raise ValueError("max_messages must be > 0")
        self.session_id = session_id or str(uuid.uuid4())
        self.role = role
        self.page_context = page_context
        self.messages: list[Message] = []
        self.clarify: ClarifyInfo | None = None
        self.held_candidate: ActionCandidate | None = None
        self.held_origin_text: str | None = None
        self.supplied_fields: set[str] = set()
        self.playbook: PlaybookRunner | None = None
        self.playbook_action_id: str | None = None
        self.playbook_history: list[dict[str, Any]] = []
        self.superseded_message_ids: set[str] = set()
        self.created_at = _now()
        self.last_active = self.created_at
        self._max_messages = max_messages
        self._busy = False
        self._lock = threading.Lock()
        self._message_seq = itertools.count(1)
        self._action_seq = itertools.count(1)

    @property
    def typing(self) -> bool:
        return self._busy

    def try_begin(self) -> bool:
        """Claim the session for one operation; False if already busy."""
        with self._lock:
            if self._busy:
                return False
            self._busy = True
            return True

    def end(self) -> None:
        with self._lock:
            self._busy = False

    def next_message_id(self) -> str:
        return f"msg-{next(self._message_seq)}"

    def next_action_id(self) -> str:
        return f"action-{next(self._action_seq)}"

    def append(self, message: Message) -> None:
        self.messages.append(message)
        if len(self.messages) > self._max_messages:
            self.messages = self.messages[-self._max_messages :]
        self.last_active = _now()

    def find_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def find_action(self, action_id: str) -> ActionPreview | None:
        for message in reversed(self.messages):
            if message.action is not None and message.action.id == action_id:
                return message.action
        return None

    def pending_standalone_previews(self) -> list[ActionPreview]:
        return [
            m.action for m in self.messages
            if m.action is not None and m.action.is_pending and not m.action.belongs_to_playbook
        ]

    def current_step_preview(self) -> ActionPreview | None:
        if self.playbook is None or self.playbook_action_id is None:
            return None
        return self.find_action(self.playbook_action_id)

    def is_retryable(self, message: Message) -> bool:
        return message.retry_content is not None and message.id not in self.superseded_message_ids

    def snapshot(self) -> SessionSnapshot:
        progress = None
        if self.playbook is not None and self.playbook.is_running:
            progress = self.playbook.progress()
        return SessionSnapshot(
            session_id=self.session_id,
            role=self.role,
            page_context=self.page_context,
            typing=self.typing,
            messages=[m.model_copy(deep=True) for m in self.messages],
            clarify=self.clarify.model_copy() if self.clarify else None,
            playbook=progress,
            playbook_history=[dict(h) for h in self.playbook_history],
            superseded_message_ids=sorted(self.superseded_message_ids),
            created_at=self.created_at,
            last_active=self.last_active,
        )


class SessionController:
    """Single authority over conversation state transitions.

    Exposes send_message, confirm_action, cancel_action, retry_message and
    abort_playbook. Each takes the session explicitly and returns the
    assistant message it appended, or None when the call was a no-op.
    """

    def __init__(
        self,
        resolver: IntentResolver,
        domain_api: DomainAPI,
        settings: Settings | None = None,
        telemetry: TelemetryCollector | None = None,
        playbooks: dict[str, PlaybookDefinition] | None = None,
        step_views: dict[str, StepViewFn] | None = None,
    ):
        self.resolver = resolver
        self.domain_api = domain_api
        self.settings = settings or get_settings()
        self.telemetry = telemetry
        self.playbooks = dict(playbooks) if playbooks is not None else dict(PLAYBOOKS)
        self.step_views = dict(step_views or {})
        self.slots = SlotFiller(extra_required=self._playbook_required_fields)

    # Public operations

    def send_message(self, session: ConversationSession, text: str) -> Message | None:
        """Append the user turn and exactly one assistant response."""
        cleaned = sanitize_text(text, self.settings.max_message_length)
        if not cleaned:
            return None
        if not session.try_begin():
            logger.info("luna_send_rejected_busy", session_id=session.session_id)
            return None

        try:
            with session_context(session.session_id):
                session.append(Message(id=session.next_message_id(), role="user", content=cleaned))
                logger.info("luna_message_received", length=len(cleaned))
                self._emit(session, "message_sent", message_length=len(cleaned))
                reply = self._respond(session, cleaned)
                session.append(reply)
                return reply
        finally:
            session.end()

    def confirm_action(self, session: ConversationSession, action_id: str) -> Message | None:
        """Execute a pending preview through the Domain API."""
        preview = session.find_action(action_id)
        if preview is None or not preview.is_pending:
            logger.info("luna_confirm_ignored", action_id=action_id)
            return None
        if not session.try_begin():
            logger.info("luna_confirm_rejected_busy", action_id=action_id)
            return None

        try:
            with session_context(session.session_id):
                # Another operation may have settled the preview before the flag was claimed.
                if not preview.is_pending:
                    logger.info("luna_confirm_ignored", action_id=action_id)
                    return None
                reply = self._confirm(session, preview)
                session.append(reply)
                return reply
        finally:
            session.end()

    def cancel_action(self, session: ConversationSession, action_id: str) -> Message | None:
        """Cancel a pending preview; playbook steps are skipped and the playbook advances.

        Cancelling a preview that is no longer pending is a no-op.
        """
        preview = session.find_action(action_id)
        if preview is None or not preview.is_pending:
            return None
        if not session.try_begin():
            return None

        try:
            with session_context(session.session_id):
                if not preview.is_pending:
                    return None
                preview.transition(ActionStatus.CANCELLED)
                self._emit(session, "action_cancelled", action_type=preview.action_type.value)
                logger.info("luna_action_cancelled", action_id=preview.id)
                if preview.playbook_step is None or preview.id != session.playbook_action_id:
                    return None
                reply = self._skip_current_step(session)
                session.append(reply)
                return reply
        finally:
            session.end()

    def retry_message(self, session: ConversationSession, message_id: str) -> Message | None:
        """Re-run the command behind a failed message; the failed message is superseded."""
        failed = session.find_message(message_id)
        if failed is None or not session.is_retryable(failed) or session.typing:
            return None
        assert failed.retry_content is not None

        runner = session.playbook
        if (
            failed.retry_playbook_step is not None
            and runner is not None
            and runner.is_running
            and runner.run_id == failed.retry_playbook_run
            and runner.current_step == failed.retry_playbook_step
        ):
            if not session.try_begin():
                return None
            try:
                with session_context(session.session_id):
                    session.superseded_message_ids.add(message_id)
                    current = session.current_step_preview()
                    if current is not None and current.is_pending:
                        current.transition(ActionStatus.CANCELLED)
                    reply = self._step_message(session, intro="Retrying this step.")
                    session.append(reply)
                    return reply
            finally:
                session.end()

        session.superseded_message_ids.add(message_id)
        reply = self.send_message(session, failed.retry_content)
        if reply is None:
            session.superseded_message_ids.discard(message_id)
        return reply

    def abort_playbook(self, session: ConversationSession) -> Message | None:
        """Abort the running playbook; confirmed steps are not undone."""
        if session.playbook is None or not session.playbook.is_running:
            return None
        if not session.try_begin():
            return None
        try:
            with session_context(session.session_id):
                reply = self._abort_playbook(session)
                session.append(reply)
                return reply
        finally:
            session.end()

    # Turn routing

    def _respond(self, session: ConversationSession, text: str) -> Message:
        key = normalize_command(text)
        playbook_live = session.playbook is not None and session.playbook.is_running

        if key in self.settings.cancel_keywords:
            return self._handle_cancel(session)
        if session.clarify is not None:
            return self._fill_clarify(session, text)
        if playbook_live and key in self.settings.abort_keywords:
            return self._abort_playbook(session)
        if playbook_live and key in self.settings.skip_keywords and self._current_step_skippable(session):
            return self._skip_current_step(session)
        if playbook_live and key in self.settings.next_keywords:
            return self._confirm_current_step(session, text)
        return self._resolve(session, text)

    def _confirm_current_step(self, session: ConversationSession, text: str) -> Message:
        preview = session.current_step_preview()
        if preview is not None and preview.is_pending:
            return self._confirm(session, preview)
        if preview is not None and preview.status == ActionStatus.ERROR:
            return Message(id=session.next_message_id(), role="assistant", content=STEP_FAILED_TEXT)
        return self._resolve(session, text)

    def _confirm(self, session: ConversationSession, preview: ActionPreview) -> Message:
        """Run one pending preview to confirmed or error; the caller appends the reply."""
        preview.transition(ActionStatus.CONFIRMING)
        if preview.action_type == ActionKind.PLAYBOOK_STEP and preview.payload.get("step_kind") != "action":
            result = ExecutionResult()
        else:
            try:
                result = self.domain_api.execute(preview.action_type, dict(preview.payload))
            except RECOVERABLE_ERRORS as exc:
                preview.transition(ActionStatus.ERROR)
                return self._execution_failure(session, preview, exc)
            except Exception as exc:
                # A preview never stays in confirming.
                preview.transition(ActionStatus.ERROR)
                logger.error("luna_action_crashed", action_id=preview.id, exc_info=True)
                return self._execution_failure(session, preview, exc)

        preview.result_href = result.result_href
        preview.result_message = result.result_message
        preview.transition(ActionStatus.CONFIRMED)
        logger.info("luna_action_confirmed", action_id=preview.id, action_type=preview.action_type.value)
        self._emit(session, "action_confirmed", action_type=preview.action_type.value)

        if preview.playbook_step is not None:
            step = session.playbook.current() if session.playbook else None
            intro = result.result_message or (f"{step.title} done." if step else "Done.")
            return self._advance_playbook(session, preview.playbook_step, "completed", result.context, intro)

        items = []
        if result.result_href:
            items.append(ResponseItem(label="View result", detail=result.result_message, href=result.result_href))
        return Message(
            id=session.next_message_id(),
            role="assistant",
            content=result.result_message or "Done!",
            items=items,
        )

    def _handle_cancel(self, session: ConversationSession) -> Message:
        parts: list[str] = []
        if session.clarify is not None:
            logger.info("luna_clarify_cancelled", field=session.clarify.field)
            self._clear_clarify(session)
            parts.append("Cancelled.")
        for preview in session.pending_standalone_previews():
            preview.transition(ActionStatus.CANCELLED)
            self._emit(session, "action_cancelled", action_type=preview.action_type.value)
            if not parts:
                parts.append("Cancelled.")

        if session.playbook is not None and session.playbook.is_running and self._current_step_skippable(session):
            reply = self._skip_current_step(session, prefix=" ".join(parts))
            return reply

        text = "Cancelled. What else can I help with?" if parts else "Nothing to cancel. What else can I help with?"
        return Message(id=session.next_message_id(), role="assistant", content=text)

    def _resolve(self, session: ConversationSession, text: str) -> Message:
        # History excludes the turn being resolved.
        context = ResolverContext(
            role=session.role,
            page_context=session.page_context,
            history=sanitize_history(
                session.messages[:-1],
                self.settings.max_history_entries,
                self.settings.max_message_length,
            ),
            pending_candidate=session.held_candidate,
            playbook_active=session.playbook is not None and session.playbook.is_running,
        )
        try:
            outcome = self.resolver.resolve(text, context)
        except RECOVERABLE_ERRORS as exc:
            logger.warning("luna_resolver_failed", error_type=type(exc).__name__)
            self._emit(session, "error", stage="resolve", error_type=type(exc).__name__)
            return Message(
                id=session.next_message_id(),
                role="assistant",
                content=RESOLVER_FAILURE_TEXT,
                retry_content=text,
            )

        if isinstance(outcome, InformationalAnswer):
            self._emit(session, "intent_resolved", outcome="informational")
            return Message(
                id=session.next_message_id(),
                role="assistant",
                content=outcome.text,
                items=list(outcome.items),
            )
        if isinstance(outcome, ActionCandidate):
            self._emit(session, "intent_resolved", outcome="action", kind=outcome.kind.value)
            session.supplied_fields = set()
            if isinstance(outcome, IncompleteActionCandidate):
                return self._advance_candidate(
                    session, outcome, text, example_hint=outcome.example, hinted_field=outcome.missing_field
                )
            return self._advance_candidate(session, outcome, text)

        logger.warning("luna_unknown_outcome", outcome_type=type(outcome).__name__)
        return Message(
            id=session.next_message_id(),
            role="assistant",
            content=RESOLVER_FAILURE_TEXT,
            retry_content=text,
        )

    # Clarify mode

    def _fill_clarify(self, session: ConversationSession, text: str) -> Message:
        clarify = session.clarify
        candidate = session.held_candidate
        assert clarify is not None and candidate is not None
        candidate = self.slots.fill(candidate, clarify.field, text)
        session.supplied_fields.add(clarify.field)
        session.clarify = None
        logger.info("luna_clarify_filled", field=clarify.field)
        return self._advance_candidate(session, candidate, session.held_origin_text or text)

    def _advance_candidate(
        self,
        session: ConversationSession,
        candidate: ActionCandidate,
        origin_text: str,
        example_hint: str | None = None,
        hinted_field: str | None = None,
    ) -> Message:
        refusal = self._playbook_refusal(session, candidate)
        if refusal is not None:
            self._clear_clarify(session)
            return refusal

        clarify = self.slots.next_clarify(
            candidate,
            supplied=session.supplied_fields,
            example_hint=example_hint,
            hinted_field=hinted_field,
        )
        if clarify is not None:
            session.clarify = clarify
            session.held_candidate = candidate
            session.held_origin_text = origin_text
            self._emit(session, "clarify_requested", field=clarify.field, kind=candidate.kind.value)
            return Message(
                id=session.next_message_id(),
                role="assistant",
                content=self.slots.question_for(clarify),
                clarify=clarify,
            )

        self._clear_clarify(session)
        if candidate.kind == ActionKind.RUN_PLAYBOOK:
            return self._start_playbook(session, candidate, origin_text)
        if candidate.kind == ActionKind.PLAYBOOK_STEP:
            return Message(
                id=session.next_message_id(),
                role="assistant",
                content="Playbook steps can only be run from inside a playbook.",
            )
        return self._preview_message(session, candidate, origin_text)

    def _clear_clarify(self, session: ConversationSession) -> None:
        session.clarify = None
        session.held_candidate = None
        session.held_origin_text = None
        session.supplied_fields = set()

    def _playbook_required_fields(self, candidate: ActionCandidate) -> tuple[str, ...]:
        if candidate.kind != ActionKind.RUN_PLAYBOOK:
            return ()
        definition = self.playbooks.get(str(candidate.params.get("playbook_id") or ""))
        if definition is not None and definition.requires_target:
            return ("target_name",)
        return ()

    # Previews

    def _preview_message(
        self,
        session: ConversationSession,
        candidate: ActionCandidate,
        origin_text: str,
    ) -> Message:
        # One live standalone preview per session.
        for stale in session.pending_standalone_previews():
            stale.transition(ActionStatus.CANCELLED)
            self._emit(session, "action_cancelled", action_type=stale.action_type.value, reason="superseded")

        preview = ActionPreview(
            id=session.next_action_id(),
            action_type=candidate.kind,
            title=candidate.title or render_template(DEFAULT_TITLES[candidate.kind], candidate.params),
            fields=self.slots.preview_fields(candidate),
            payload=dict(candidate.params),
            origin_text=origin_text,
        )
        logger.info("luna_action_previewed", action_id=preview.id, action_type=preview.action_type.value)
        self._emit(session, "action_previewed", action_type=preview.action_type.value)
        return Message(id=session.next_message_id(), role="assistant", content=PREVIEW_TEXT, action=preview)

    def _execution_failure(
        self,
        session: ConversationSession,
        preview: ActionPreview,
        exc: BaseException,
    ) -> Message:
        logger.warning(
            "luna_action_failed",
            action_id=preview.id,
            action_type=preview.action_type.value,
            error_type=type(exc).__name__,
        )
        self._emit(session, "action_failed", action_type=preview.action_type.value, error=_error_text(exc))
        retry_step = preview.playbook_step if preview.origin_text else None
        run_id = None
        if retry_step is not None and session.playbook is not None:
            run_id = session.playbook.run_id
        return Message(
            id=session.next_message_id(),
            role="assistant",
            content=f"Action failed: {_error_text(exc)}. Please try again.",
            retry_content=preview.origin_text or None,
            retry_playbook_step=retry_step,
            retry_playbook_run=run_id,
        )

    # Playbooks

    def _playbook_refusal(self, session: ConversationSession, candidate: ActionCandidate) -> Message | None:
        """Refuse unknown playbooks and roles outside the playbook's audience before any clarify."""
        if candidate.kind != ActionKind.RUN_PLAYBOOK:
            return None
        playbook_id = str(candidate.params.get("playbook_id") or "")
        if not playbook_id:
            return None
        definition = self.playbooks.get(playbook_id)
        if definition is None:
            return Message(
                id=session.next_message_id(),
                role="assistant",
                content=f'I don\'t know a playbook called "{playbook_id}".',
            )
        if not definition.allows(session.role):
            logger.info("luna_playbook_refused", playbook_id=playbook_id, role=session.role)
            return Message(
                id=session.next_message_id(),
                role="assistant",
                content=f"{definition.name} is available to managers and admins only.",
            )
        return None

    def _start_playbook(
        self,
        session: ConversationSession,
        candidate: ActionCandidate,
        origin_text: str,
    ) -> Message:
        definition = self.playbooks[str(candidate.params.get("playbook_id"))]
        intro = ""
        if session.playbook is not None and session.playbook.is_running:
            previous = session.playbook.definition.name
            self._stop_runner(session)
            intro = f"{previous} stopped. "

        context = {k: v for k, v in candidate.params.items() if k != "playbook_id"}
        session.playbook = PlaybookRunner(definition, context=context, origin_text=origin_text)
        logger.info("luna_playbook_started", playbook_id=definition.id)
        self._emit(session, "playbook_started", playbook_id=definition.id, target=context.get("target_name"))
        intro += f"Starting {definition.name} ({session.playbook.total_steps} steps)."
        return self._step_message(session, intro=intro)

    def _step_view(self, runner: PlaybookRunner, step: PlaybookStep) -> StepView | None:
        view_fn = self.step_views.get(step.view) if step.view else None
        if view_fn is None:
            return None
        try:
            return view_fn(dict(runner.context))
        except RECOVERABLE_ERRORS as exc:
            logger.warning("luna_step_view_failed", step_id=step.id, error_type=type(exc).__name__)
            return None

    def _step_message(self, session: ConversationSession, intro: str = "") -> Message:
        """Show the current step, auto-skipping steps whose view reports nothing to do."""
        runner = session.playbook
        assert runner is not None
        notes = [intro.strip()] if intro.strip() else []
        while True:
            index = runner.current_step
            assert index is not None
            step = runner.definition.steps[index]
            view = self._step_view(runner, step)
            if view is not None and view.context:
                runner.context.update(view.context)
            if view is None or not view.auto_skip:
                break
            notes.append(" ".join(p for p in (view.text, f"Skipped {step.title}.") if p))
            logger.info("luna_playbook_step_auto_skipped", playbook_id=runner.definition.id, step=index)
            next_step = runner.resolve(index, "skipped")
            self._emit(session, "playbook_step_skipped", playbook_id=runner.definition.id, step=index, auto=True)
            if next_step is None:
                return self._finish_playbook(session, "\n\n".join(notes))

        text, fields = step.render(runner.context)
        items: list[ResponseItem] = []
        if view is not None:
            text = view.text or text
            fields = view.fields if view.fields is not None else fields
            items = list(view.items)
        preview = ActionPreview(
            id=session.next_action_id(),
            action_type=ActionKind.PLAYBOOK_STEP,
            title=f"{runner.definition.name}: {step.title}",
            fields=fields,
            payload={
                "playbook_id": runner.definition.id,
                "step_id": step.id,
                "step_kind": step.kind,
                "context": dict(runner.context),
            },
            origin_text=runner.origin_text,
            playbook_step=index,
        )
        session.playbook_action_id = preview.id
        header = f"Step {index + 1} of {runner.total_steps}: {step.title}"
        content = "\n\n".join(p for p in (*notes, header, text) if p)
        return Message(
            id=session.next_message_id(),
            role="assistant",
            content=content,
            items=items,
            action=preview,
            playbook_progress=runner.progress(),
        )

    def _current_step_skippable(self, session: ConversationSession) -> bool:
        preview = session.current_step_preview()
        return preview is not None and preview.status in (ActionStatus.PENDING, ActionStatus.ERROR)

    def _skip_current_step(self, session: ConversationSession, prefix: str = "") -> Message:
        runner = session.playbook
        assert runner is not None and runner.current_step is not None
        preview = session.current_step_preview()
        if preview is not None and preview.is_pending:
            preview.transition(ActionStatus.CANCELLED)
        step = runner.current()
        intro = " ".join(p for p in (prefix, f"Skipped {step.title if step else 'step'}.") if p)
        return self._advance_playbook(session, runner.current_step, "skipped", None, intro)

    def _advance_playbook(
        self,
        session: ConversationSession,
        index: int,
        outcome: StepOutcome,
        context_update: dict[str, Any] | None,
        intro: str,
    ) -> Message:
        runner = session.playbook
        assert runner is not None
        next_step = runner.resolve(index, outcome, context_update)
        self._emit(
            session,
            "playbook_step_completed" if outcome == "completed" else "playbook_step_skipped",
            playbook_id=runner.definition.id,
            step=index,
        )
        if next_step is not None:
            return self._step_message(session, intro=intro)
        return self._finish_playbook(session, intro)

    def _finish_playbook(self, session: ConversationSession, intro: str) -> Message:
        runner = session.playbook
        assert runner is not None
        session.playbook_history.append(runner.audit())
        session.playbook = None
        session.playbook_action_id = None
        logger.info("luna_playbook_completed", playbook_id=runner.definition.id)
        self._emit(
            session,
            "playbook_completed",
            playbook_id=runner.definition.id,
            steps_completed=len(runner.completed),
            steps_skipped=len(runner.skipped),
        )
        content = "\n\n".join(p for p in (intro, runner.completion_text()) if p)
        return Message(id=session.next_message_id(), role="assistant", content=content)

    def _abort_playbook(self, session: ConversationSession) -> Message:
        runner = session.playbook
        assert runner is not None
        name = runner.definition.name
        self._stop_runner(session)
        return Message(
            id=session.next_message_id(),
            role="assistant",
            content=f"{name} cancelled. Steps already confirmed are kept. What else can I help with?",
        )

    def _stop_runner(self, session: ConversationSession) -> None:
        runner = session.playbook
        assert runner is not None
        preview = session.current_step_preview()
        if preview is not None and preview.is_pending:
            preview.transition(ActionStatus.CANCELLED)
        at_step = runner.current_step
        runner.abort()
        session.playbook_history.append(runner.audit())
        session.playbook = None
        session.playbook_action_id = None
        logger.info("luna_playbook_aborted", playbook_id=runner.definition.id, at_step=at_step)
        self._emit(session, "playbook_aborted", playbook_id=runner.definition.id, at_step=at_step)

    def _emit(self, session: ConversationSession, event_type: Any, **metadata: Any) -> None:
        if self.telemetry is not None:
            self.telemetry.emit(session.session_id, event_type, **metadata)
