"""Integration tests for the session controller: clarify, previews, playbooks, failures."""

from datetime import date

import pytest

from luna.config import Settings
from luna.contracts.intents import (
    ActionKind,
    CompleteActionCandidate,
    InformationalAnswer,
    ResolverContext,
)
from luna.contracts.messages import ActionStatus
from luna.deps import create_resolver, create_step_views
from luna.errors import ExecutionError, ResolverError
from luna.logging_config import get_session_id
from luna.orchestration.quick_actions import quick_actions_for_role, run_quick_action
from luna.orchestration.session import (
    RESOLVER_FAILURE_TEXT,
    STEP_FAILED_TEXT,
    ConversationSession,
    SessionController,
)
from luna.services.domain import InMemoryDomainAPI
from luna.services.telemetry import TelemetryCollector


class ScriptedResolver:
    """Returns scripted outcomes for exact texts, otherwise defers to keyword routing."""

    def __init__(self, domain, script=None):
        self.script = dict(script or {})
        self.inner = create_resolver(domain)
        self.contexts: list[ResolverContext] = []

    def resolve(self, text, context):
        self.contexts.append(context)
        if text in self.script:
            return self.script[text]
        return self.inner.resolve(text, context)


class FlakyResolver:
    """Fails the first ``failures`` calls with ResolverError."""

    def __init__(self, failures=1):
        self.failures = failures
        self.calls = 0

    def resolve(self, text, context):
        self.calls += 1
        if self.calls <= self.failures:
            raise ResolverError("Resolver unreachable", resolver="flaky")
        return InformationalAnswer(text=f"answer to {text}")


class BrokenResolver:
    """Raises an error the controller does not recover from."""

    def resolve(self, text, context):
        raise RuntimeError("bug in resolver")


class CrashingDomain(InMemoryDomainAPI):
    """Raises a non-Luna error on the next execute call when armed."""

    def __init__(self):
        super().__init__()
        self.crash_next = False

    def execute(self, action_type, payload):
        if self.crash_next:
            self.crash_next = False
            raise RuntimeError("disk full")
        return super().execute(action_type, payload)


class RacingSession(ConversationSession):
    """Runs ``before_claim`` once, just before the busy flag is taken."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.before_claim = None

    def try_begin(self):
        if self.before_claim is not None:
            hook, self.before_claim = self.before_claim, None
            hook()
        return super().try_begin()


ADD_TASK = "Add task Fix login bug"
ADD_TASK_CANDIDATE = CompleteActionCandidate(kind=ActionKind.CREATE_TASK, params={"title": "Fix login bug"})


def make_controller(resolver=None, domain=None, telemetry=None, step_views=None):
    domain = domain or InMemoryDomainAPI()
    resolver = resolver or ScriptedResolver(domain, {ADD_TASK: ADD_TASK_CANDIDATE})
    return SessionController(
        resolver=resolver,
        domain_api=domain,
        settings=Settings(_env_file=None),
        telemetry=telemetry,
        step_views=step_views,
    )


class TestClarifyFlow:
    """Scenario A and the clarify-mode policy."""

    def test_create_task_asks_for_title_then_previews(self):
        """"Create a task" enters clarify mode; the answer fills the title."""
        controller = make_controller()
        session = ConversationSession()

        reply = controller.send_message(session, "Create a task")
        assert reply.clarify is not None
        assert reply.clarify.waiting_for == "Task title"
        assert session.clarify is not None
        assert reply.action is None

        reply = controller.send_message(session, "Fix login bug")
        assert session.clarify is None
        assert reply.action is not None
        assert reply.action.status == ActionStatus.PENDING
        assert [(f.label, f.value) for f in reply.action.fields] == [("Title", "Fix login bug")]
        assert reply.action.title == 'Create task "Fix login bug"'

    def test_answer_that_looks_like_a_command_is_literal(self):
        """A clarify answer is taken literally even if it matches a command."""
        controller = make_controller()
        session = ConversationSession()
        controller.send_message(session, "Create a task")

        reply = controller.send_message(session, "Show my tasks")

        assert reply.action.payload == {"title": "Show my tasks"}

    def test_placeholder_word_accepted_when_typed(self):
        """A user-typed value is never re-asked, even if it looks generic."""
        controller = make_controller()
        session = ConversationSession()
        controller.send_message(session, "Create a task")

        reply = controller.send_message(session, "Task")

        assert reply.clarify is None
        assert reply.action.payload == {"title": "Task"}

    def test_cancel_keyword_clears_clarify(self):
        """Cancelling in clarify mode drops the held candidate."""
        controller = make_controller()
        session = ConversationSession()
        controller.send_message(session, "Create a task")

        reply = controller.send_message(session, "Never mind")

        assert reply.content.startswith("Cancelled")
        assert session.clarify is None
        assert session.held_candidate is None
        assert all(m.action is None for m in session.messages)

    def test_field_is_not_asked_twice(self):
        """Once a field is filled, the next question is for the next field."""
        controller = make_controller()
        session = ConversationSession()
        controller.resolver.script["Update a task"] = CompleteActionCandidate(
            kind=ActionKind.UPDATE_TASK_STATUS, params={}
        )

        first = controller.send_message(session, "Update a task")
        second = controller.send_message(session, "Write report")
        third = controller.send_message(session, "done")

        assert first.clarify.field == "task_title"
        assert second.clarify.field == "new_status"
        assert third.action.payload == {"task_title": "Write report", "new_status": "done"}


class TestPreviews:
    """Confirm and cancel of standalone previews."""

    def test_confirm_executes_and_links(self):
        """Confirm calls the domain API and records the deep link."""
        domain = InMemoryDomainAPI()
        controller = make_controller(domain=domain)
        session = ConversationSession()
        preview = controller.send_message(session, ADD_TASK).action

        reply = controller.confirm_action(session, preview.id)

        assert preview.status == ActionStatus.CONFIRMED
        assert preview.result_href.startswith("/tasks/")
        assert preview.result_message == 'Task "Fix login bug" created.'
        assert reply.items[0].href == preview.result_href
        assert domain.executed == [(ActionKind.CREATE_TASK, {"title": "Fix login bug"})]

    def test_confirm_twice_is_noop(self):
        """A confirmed preview cannot be confirmed again."""
        domain = InMemoryDomainAPI()
        controller = make_controller(domain=domain)
        session = ConversationSession()
        preview = controller.send_message(session, ADD_TASK).action
        controller.confirm_action(session, preview.id)
        count = len(session.messages)

        assert controller.confirm_action(session, preview.id) is None
        assert len(session.messages) == count
        assert len(domain.executed) == 1

    def test_cancel_is_idempotent(self):
        """Cancelling twice leaves the preview cancelled without error."""
        controller = make_controller()
        session = ConversationSession()
        preview = controller.send_message(session, ADD_TASK).action

        controller.cancel_action(session, preview.id)
        controller.cancel_action(session, preview.id)

        assert preview.status == ActionStatus.CANCELLED

    def test_cancelled_preview_cannot_be_confirmed(self):
        """No resurrection of a cancelled preview."""
        domain = InMemoryDomainAPI()
        controller = make_controller(domain=domain)
        session = ConversationSession()
        preview = controller.send_message(session, ADD_TASK).action
        controller.cancel_action(session, preview.id)

        assert controller.confirm_action(session, preview.id) is None
        assert domain.executed == []

    def test_new_preview_supersedes_pending_one(self):
        """Only one standalone preview is pending at a time."""
        controller = make_controller()
        session = ConversationSession()
        first = controller.send_message(session, ADD_TASK).action
        second = controller.send_message(session, ADD_TASK).action

        assert first.status == ActionStatus.CANCELLED
        assert second.status == ActionStatus.PENDING
        assert first.id != second.id

    def test_cancel_keyword_cancels_pending_preview(self):
        """Typing cancel drops the pending preview."""
        controller = make_controller()
        session = ConversationSession()
        preview = controller.send_message(session, ADD_TASK).action

        reply = controller.send_message(session, "cancel")

        assert preview.status == ActionStatus.CANCELLED
        assert reply.content == "Cancelled. What else can I help with?"

    def test_cancel_with_nothing_pending(self):
        """Scenario E: cancel with nothing live is a no-op acknowledgement."""
        controller = make_controller()
        session = ConversationSession()

        reply = controller.send_message(session, "cancel")

        assert reply.content == "Nothing to cancel. What else can I help with?"
        assert reply.action is None
        assert session.clarify is None
        assert session.playbook is None
        assert len(session.messages) == 2


class TestMessageLogProperties:
    """Log growth and the typing mutex."""

    def test_each_send_adds_exactly_two(self):
        """Every successful send appends one user and one assistant message."""
        controller = make_controller()
        session = ConversationSession(role="manager")
        for text in ["Create a task", "Fix login bug", "cancel", "Weekly review", "next", "skip", "abort", "hello"]:
            before = len(session.messages)
            controller.send_message(session, text)
            assert len(session.messages) == before + 2
            assert session.messages[-2].role == "user"
            assert session.messages[-1].role == "assistant"

    def test_blank_input_ignored(self):
        """Whitespace-only input appends nothing."""
        controller = make_controller()
        session = ConversationSession()
        assert controller.send_message(session, "   ") is None
        assert session.messages == []

    def test_send_while_typing_is_noop(self):
        """A send issued while a resolution is in flight is rejected, not queued."""
        session = ConversationSession()
        results = []

        class ReentrantResolver:
            def resolve(self, text, context):
                results.append(controller.send_message(session, "second"))
                results.append(session.typing)
                return InformationalAnswer(text="first answer")

        controller = make_controller(resolver=ReentrantResolver())

        reply = controller.send_message(session, "first")

        assert results == [None, True]
        assert reply.content == "first answer"
        assert [m.content for m in session.messages] == ["first", "first answer"]
        assert session.typing is False

    def test_confirm_while_typing_is_noop(self):
        """Confirm is also blocked while the session is busy."""
        session = ConversationSession()
        seen = []

        class ConfirmingResolver:
            def resolve(self, text, context):
                if text == ADD_TASK:
                    return ADD_TASK_CANDIDATE
                seen.append(controller.confirm_action(session, session.pending_standalone_previews()[0].id))
                return InformationalAnswer(text="ok")

        controller = make_controller(resolver=ConfirmingResolver())
        preview = controller.send_message(session, ADD_TASK).action
        controller.send_message(session, "anything")

        assert seen == [None]
        assert preview.status == ActionStatus.PENDING

    def test_history_excludes_current_turn(self):
        """The resolver sees prior turns only."""
        domain = InMemoryDomainAPI()
        resolver = ScriptedResolver(domain)
        controller = make_controller(resolver=resolver, domain=domain)
        session = ConversationSession()

        controller.send_message(session, "hello")
        controller.send_message(session, "again")

        assert resolver.contexts[0].history == []
        assert [h.content for h in resolver.contexts[1].history][0] == "hello"
        assert len(resolver.contexts[1].history) == 2

    def test_unexpected_error_propagates_and_releases(self):
        """Programming errors are not swallowed and leave the session usable."""
        controller = make_controller(resolver=BrokenResolver())
        session = ConversationSession()

        with pytest.raises(RuntimeError):
            controller.send_message(session, "hello")
        assert session.typing is False

    def test_session_id_bound_only_during_operation(self):
        """Log lines inside an operation carry the session id; nothing leaks afterwards."""
        session = ConversationSession()
        seen = []

        class RecordingResolver:
            def resolve(self, text, context):
                seen.append(get_session_id())
                return InformationalAnswer(text="ok")

        controller = make_controller(resolver=RecordingResolver())
        controller.send_message(session, "hello")

        assert seen == [session.session_id]
        assert get_session_id() is None

    def test_confirm_after_preview_settled_elsewhere_is_noop(self):
        """A preview cancelled between lookup and claiming the session is left alone."""
        controller = make_controller()
        session = RacingSession()
        preview = controller.send_message(session, ADD_TASK).action
        session.before_claim = lambda: preview.transition(ActionStatus.CANCELLED)

        assert controller.confirm_action(session, preview.id) is None
        assert preview.status == ActionStatus.CANCELLED
        assert len(session.messages) == 2
        assert session.typing is False

    def test_cancel_after_confirm_started_elsewhere_is_noop(self):
        """Cancel does not fight a confirm that won the race."""
        controller = make_controller()
        session = RacingSession()
        preview = controller.send_message(session, ADD_TASK).action
        session.before_claim = lambda: preview.transition(ActionStatus.CONFIRMING)

        assert controller.cancel_action(session, preview.id) is None
        assert preview.status == ActionStatus.CONFIRMING
        assert session.typing is False


class TestFailureRecovery:
    """Scenario D and resolver failures."""

    def test_execution_failure_then_retry(self):
        """A failed confirm yields a retryable message that re-runs the command."""
        domain = InMemoryDomainAPI()
        controller = make_controller(domain=domain)
        session = ConversationSession()
        preview = controller.send_message(session, ADD_TASK).action
        domain.fail_next(1)

        failure = controller.confirm_action(session, preview.id)

        assert preview.status == ActionStatus.ERROR
        assert failure.retry_content == ADD_TASK
        assert "Domain API unavailable" in failure.content

        before = len(session.messages)
        reply = controller.retry_message(session, failure.id)

        assert len(session.messages) == before + 2
        assert session.messages[-2].content == ADD_TASK
        assert reply.action.status == ActionStatus.PENDING
        assert reply.action.id != preview.id
        assert failure.id in session.superseded_message_ids

    def test_unexpected_domain_error_settles_step(self):
        """A non-Luna error from the Domain API marks the step failed, so it can be retried or skipped."""
        domain = CrashingDomain()
        domain.add_programme("Pilot")
        controller = make_controller(domain=domain)
        session = ConversationSession(role="manager")
        controller.send_message(session, "Start programme")
        verify = controller.send_message(session, "Pilot")
        activate = controller.confirm_action(session, verify.action.id)
        domain.crash_next = True

        failure = controller.confirm_action(session, activate.action.id)

        assert activate.action.status == ActionStatus.ERROR
        assert failure.content == "Action failed: disk full. Please try again."
        assert failure.retry_playbook_step == 1
        assert session.typing is False

        reply = controller.send_message(session, "skip")

        assert reply.playbook_progress.skipped == {1}
        assert reply.playbook_progress.current_step == 2

    def test_unexpected_domain_error_on_standalone_preview(self):
        """Standalone previews also end in error rather than staying in confirming."""
        domain = CrashingDomain()
        controller = make_controller(domain=domain)
        session = ConversationSession()
        preview = controller.send_message(session, ADD_TASK).action
        domain.crash_next = True

        failure = controller.confirm_action(session, preview.id)

        assert preview.status == ActionStatus.ERROR
        assert failure.retry_content == ADD_TASK

    def test_retry_only_once(self):
        """A superseded failure no longer offers retry."""
        domain = InMemoryDomainAPI()
        controller = make_controller(domain=domain)
        session = ConversationSession()
        preview = controller.send_message(session, ADD_TASK).action
        domain.fail_next(1)
        failure = controller.confirm_action(session, preview.id)
        controller.retry_message(session, failure.id)
        count = len(session.messages)

        assert controller.retry_message(session, failure.id) is None
        assert len(session.messages) == count

    def test_retry_on_normal_message_is_noop(self):
        """Messages without retry content cannot be retried."""
        controller = make_controller()
        session = ConversationSession()
        reply = controller.send_message(session, "hello")
        assert controller.retry_message(session, reply.id) is None

    def test_resolver_failure_is_retryable(self):
        """Resolver errors become a retry bubble and no preview."""
        resolver = FlakyResolver(failures=1)
        controller = make_controller(resolver=resolver)
        session = ConversationSession()

        failure = controller.send_message(session, "team summary")

        assert failure.content == RESOLVER_FAILURE_TEXT
        assert failure.retry_content == "team summary"
        assert failure.action is None

        reply = controller.retry_message(session, failure.id)
        assert reply.content == "answer to team summary"
        assert resolver.calls == 2


class TestPlaybooks:
    """Scenario C, skip versus abort, and multi-step execution."""

    def test_weekly_review_confirm_advances(self):
        """Confirming step 0 emits step 1 without a new user message."""
        controller = make_controller()
        session = ConversationSession(role="manager")

        start = controller.send_message(session, "Weekly review")
        assert start.playbook_progress.current_step == 0
        assert start.playbook_progress.total_steps == 3
        before = len(session.messages)

        reply = controller.confirm_action(session, start.action.id)

        assert len(session.messages) == before + 1
        assert reply.role == "assistant"
        assert reply.playbook_progress.completed == {0}
        assert reply.playbook_progress.current_step == 1
        assert reply.action.playbook_step == 1
        assert session.playbook.invariant_holds()

    def test_next_keyword_confirms_current_step(self):
        """Typing "next" during a playbook confirms the step like the confirm button."""
        controller = make_controller()
        session = ConversationSession(role="manager")
        start = controller.send_message(session, "Weekly review")
        before = len(session.messages)

        reply = controller.send_message(session, "next")

        assert len(session.messages) == before + 2
        assert "no playbook" not in reply.content
        assert start.action.status == ActionStatus.CONFIRMED
        assert reply.playbook_progress.completed == {0}
        assert reply.playbook_progress.current_step == 1

        reply = controller.send_message(session, "OK")
        assert reply.playbook_progress.current_step == 2

    def test_next_keyword_on_failed_step_points_at_retry(self):
        """"next" on a failed action step does not re-run it silently."""
        domain = InMemoryDomainAPI()
        domain.add_programme("Pilot")
        controller = make_controller(domain=domain)
        session = ConversationSession(role="manager")
        controller.send_message(session, "Start programme")
        verify = controller.send_message(session, "Pilot")
        activate = controller.confirm_action(session, verify.action.id)
        domain.fail_next(1)
        controller.confirm_action(session, activate.action.id)

        reply = controller.send_message(session, "next")

        assert reply.content == STEP_FAILED_TEXT
        assert session.playbook.current_step == 1
        assert activate.action.status == ActionStatus.ERROR

    def test_next_keyword_without_playbook_is_orphaned(self):
        """Outside a playbook "next" gets the explanatory answer."""
        controller = make_controller()
        session = ConversationSession(role="manager")

        reply = controller.send_message(session, "next")

        assert "no playbook running" in reply.content

    def test_member_cannot_start_playbook(self):
        """Playbooks are refused for roles outside their audience."""
        controller = make_controller()
        session = ConversationSession(role="member")

        reply = controller.send_message(session, "Weekly review")

        assert "managers and admins only" in reply.content
        assert session.playbook is None

    def test_cancel_action_skips_step(self):
        """Cancelling a step preview skips it and moves on."""
        controller = make_controller()
        session = ConversationSession(role="manager")
        start = controller.send_message(session, "Weekly review")

        reply = controller.cancel_action(session, start.action.id)

        assert start.action.status == ActionStatus.CANCELLED
        assert reply.playbook_progress.skipped == {0}
        assert reply.playbook_progress.current_step == 1

    def test_skip_and_cancel_keywords_skip_step(self):
        """Typing skip or cancel skips only the current step."""
        controller = make_controller()
        session = ConversationSession(role="manager")
        controller.send_message(session, "Weekly review")

        controller.send_message(session, "skip")
        reply = controller.send_message(session, "cancel")

        assert reply.playbook_progress.skipped == {0, 1}
        assert reply.playbook_progress.current_step == 2
        assert session.playbook.is_running

    def test_abort_keyword_ends_playbook_and_keeps_audit(self):
        """Abort stops the whole playbook; confirmed steps stay confirmed."""
        controller = make_controller()
        session = ConversationSession(role="manager")
        start = controller.send_message(session, "Weekly review")
        run_id = session.playbook.run_id
        step1 = controller.confirm_action(session, start.action.id).action

        reply = controller.send_message(session, "abort")

        assert "cancelled" in reply.content
        assert session.playbook is None
        assert start.action.status == ActionStatus.CONFIRMED
        assert step1.status == ActionStatus.CANCELLED
        assert session.playbook_history == [
            {
                "playbook_id": "weekly_review",
                "run_id": run_id,
                "status": "aborted",
                "completed": [0],
                "skipped": [],
                "total_steps": 3,
            }
        ]

    def test_abort_playbook_operation(self):
        """abort_playbook is a no-op without a live playbook."""
        controller = make_controller()
        session = ConversationSession(role="manager")
        assert controller.abort_playbook(session) is None

        controller.send_message(session, "Weekly review")
        reply = controller.abort_playbook(session)

        assert reply.content.startswith("Weekly review cancelled")
        assert session.playbook is None

    def test_playbook_completes(self):
        """Resolving the last step appends a completion message with no action."""
        controller = make_controller()
        session = ConversationSession(role="manager")
        reply = controller.send_message(session, "Weekly review")
        reply = controller.confirm_action(session, reply.action.id)
        reply = controller.cancel_action(session, reply.action.id)
        reply = controller.confirm_action(session, reply.action.id)

        assert reply.action is None
        assert "Weekly review complete" in reply.content
        assert session.playbook is None
        assert session.playbook_history[-1]["status"] == "completed"
        assert session.playbook_history[-1]["completed"] == [0, 2]
        assert session.playbook_history[-1]["skipped"] == [1]

    def test_close_programme_end_to_end(self):
        """Target clarify, domain steps and step results flow through the context."""
        domain = InMemoryDomainAPI()
        programme_id = domain.add_programme("Pilot", status="active")
        domain.add_task("a", programme_id=programme_id)
        domain.add_task("b", programme_id=programme_id)
        controller = make_controller(domain=domain)
        session = ConversationSession(role="admin")

        ask = controller.send_message(session, "Close programme")
        assert ask.clarify.field == "target_name"
        assert ask.clarify.waiting_for == "Programme name"

        reply = controller.send_message(session, "Pilot")
        assert reply.playbook_progress.playbook_id == "close_programme"
        assert reply.playbook_progress.total_steps == 4

        reply = controller.confirm_action(session, reply.action.id)
        reply = controller.confirm_action(session, reply.action.id)
        assert reply.content.startswith("2 tasks marked as done.")
        reply = controller.confirm_action(session, reply.action.id)
        assert 'Tasks completed: 2.' in reply.content
        reply = controller.confirm_action(session, reply.action.id)

        assert domain.programmes[programme_id]["status"] == "completed"
        assert '"Pilot" is closed.' in reply.content
        assert session.playbook is None

    def test_failed_step_stays_current_and_retries_same_step(self):
        """A failed step does not advance; retry re-emits that step."""
        domain = InMemoryDomainAPI()
        domain.add_programme("Pilot")
        controller = make_controller(domain=domain)
        session = ConversationSession(role="manager")
        controller.send_message(session, "Start programme")
        verify = controller.send_message(session, "Pilot")
        activate = controller.confirm_action(session, verify.action.id)
        domain.fail_next(1)

        failure = controller.confirm_action(session, activate.action.id)

        assert activate.action.status == ActionStatus.ERROR
        assert session.playbook.current_step == 1
        assert failure.retry_playbook_step == 1
        assert failure.retry_content == "Start programme"

        retry = controller.retry_message(session, failure.id)

        assert retry.action.playbook_step == 1
        assert retry.action.status == ActionStatus.PENDING
        assert retry.playbook_progress.completed == {0}
        nxt = controller.confirm_action(session, retry.action.id)
        assert nxt.playbook_progress.current_step == 2

    def test_failed_step_can_be_skipped(self):
        """Skip still works after a step failed."""
        domain = InMemoryDomainAPI()
        domain.add_programme("Pilot")
        controller = make_controller(domain=domain)
        session = ConversationSession(role="manager")
        controller.send_message(session, "Start programme")
        verify = controller.send_message(session, "Pilot")
        activate = controller.confirm_action(session, verify.action.id)
        domain.fail_next(1)
        controller.confirm_action(session, activate.action.id)

        reply = controller.send_message(session, "skip")

        assert reply.playbook_progress.skipped == {1}
        assert reply.playbook_progress.current_step == 2

    def test_retry_from_earlier_run_does_not_duplicate_step(self):
        """A failure from an aborted run never re-emits a step of a later run."""
        domain = InMemoryDomainAPI()
        for name in ("Alpha", "Beta"):
            programme_id = domain.add_programme(name, status="active")
            domain.add_task(f"{name} task", programme_id=programme_id)
        controller = make_controller(domain=domain)
        session = ConversationSession(role="manager")

        controller.send_message(session, "Close programme")
        audit = controller.send_message(session, "Alpha")
        complete = controller.confirm_action(session, audit.action.id)
        domain.fail_next(1)
        failure = controller.confirm_action(session, complete.action.id)
        controller.send_message(session, "abort")

        controller.send_message(session, "Close programme")
        audit = controller.send_message(session, "Beta")
        current = controller.confirm_action(session, audit.action.id)
        assert session.playbook.current_step == failure.retry_playbook_step

        reply = controller.retry_message(session, failure.id)

        pending_steps = [
            m.action for m in session.messages
            if m.action is not None and m.action.belongs_to_playbook and m.action.is_pending
        ]
        assert pending_steps == [current.action]
        assert reply.action is None
        assert reply.clarify.field == "target_name"
        assert session.playbook.current_step == 1

    def test_starting_second_playbook_aborts_first(self):
        """Only one playbook runs per session."""
        domain = InMemoryDomainAPI()
        domain.add_programme("Pilot")
        controller = make_controller(domain=domain)
        session = ConversationSession(role="manager")
        first = controller.send_message(session, "Weekly review")

        controller.send_message(session, "Start programme")
        reply = controller.send_message(session, "Pilot")

        assert reply.content.startswith("Weekly review stopped.")
        assert first.action.status == ActionStatus.CANCELLED
        assert session.playbook.definition.id == "start_programme"
        assert session.playbook_history[0]["status"] == "aborted"

    def test_progress_invariant_after_every_resolution(self):
        """completed and skipped stay disjoint and current is the lowest open index."""
        controller = make_controller()
        session = ConversationSession(role="manager")
        reply = controller.send_message(session, "Weekly review")
        for op in ("confirm", "cancel"):
            if op == "confirm":
                reply = controller.confirm_action(session, reply.action.id)
            else:
                reply = controller.cancel_action(session, reply.action.id)
            progress = reply.playbook_progress
            assert not progress.completed & progress.skipped
            resolved = progress.completed | progress.skipped
            assert progress.current_step == min(i for i in range(progress.total_steps) if i not in resolved)
            assert session.playbook.invariant_holds()


class TestLiveSteps:
    """Playbook steps that show live data and skip themselves when there is nothing to do."""

    def test_weekly_review_steps_show_team_data(self):
        """Each weekly review check lists the matching records."""
        domain = InMemoryDomainAPI()
        domain.add_task("Quarterly report", due_date="2020-01-01")
        domain.add_task("Fix VPN", status="blocked")
        domain.add_member("Ana", last_checkin="2020-01-06")
        domain.add_member("Ben", last_checkin=date.today().isoformat())
        controller = make_controller(domain=domain, step_views=create_step_views(domain))
        session = ConversationSession(role="manager")

        overdue = controller.send_message(session, "Weekly review")
        assert "1 overdue task across the team:" in overdue.content
        assert [i.label for i in overdue.items] == ["Quarterly report"]
        assert overdue.items[0].href.startswith("/tasks/")

        blockers = controller.send_message(session, "next")
        assert [i.label for i in blockers.items] == ["Fix VPN"]

        checkins = controller.send_message(session, "next")
        assert [i.label for i in checkins.items] == ["Ana"]
        assert checkins.action.payload["context"]["missing_checkins"] == 1

    def test_audit_lists_open_tasks_and_fills_context(self):
        """The audit step lists open tasks and records their count for later steps."""
        domain = InMemoryDomainAPI()
        programme_id = domain.add_programme("Pilot", status="active")
        domain.add_task("a", programme_id=programme_id)
        domain.add_task("b", status="blocked", programme_id=programme_id)
        domain.add_task("c", status="done", programme_id=programme_id)
        controller = make_controller(domain=domain, step_views=create_step_views(domain))
        session = ConversationSession(role="manager")
        controller.send_message(session, "Close programme")

        audit = controller.send_message(session, "Pilot")

        assert sorted(i.label for i in audit.items) == ["a", "b"]
        rows = {f.label: f.value for f in audit.action.fields}
        assert rows["Open tasks"] == "2"
        assert rows["Breakdown"] == "1 blocked, 1 todo"
        assert audit.action.payload["context"]["open_task_count"] == 2

        complete = controller.confirm_action(session, audit.action.id)
        assert 'Mark 2 open tasks in "Pilot" as done?' in complete.content

    def test_complete_tasks_auto_skipped_when_nothing_open(self):
        """With no open tasks the completion step is skipped without asking."""
        domain = InMemoryDomainAPI()
        programme_id = domain.add_programme("Pilot", status="active")
        domain.add_task("shipped", status="done", programme_id=programme_id)
        controller = make_controller(domain=domain, step_views=create_step_views(domain))
        session = ConversationSession(role="manager")
        controller.send_message(session, "Close programme")
        audit = controller.send_message(session, "Pilot")
        assert '"Pilot" has no open tasks.' in audit.content

        reply = controller.confirm_action(session, audit.action.id)

        assert "No open tasks to complete. Skipped Complete Open Tasks." in reply.content
        assert reply.playbook_progress.current_step == 2
        assert reply.playbook_progress.skipped == {1}
        assert reply.action.title == "Close Programme: Mark Programme Completed"
        assert session.playbook.invariant_holds()

        summary = controller.confirm_action(session, reply.action.id)
        assert "Tasks completed: 0." in summary.content
        done = controller.confirm_action(session, summary.action.id)
        assert session.playbook_history[-1]["skipped"] == [1]
        assert '"Pilot" is closed.' in done.content

    def test_already_active_programme_skips_activation(self):
        """Start programme skips activation for an active programme."""
        domain = InMemoryDomainAPI()
        domain.add_programme("Pilot", status="active")
        controller = make_controller(domain=domain, step_views=create_step_views(domain))
        session = ConversationSession(role="manager")
        controller.send_message(session, "Start programme")

        verify = controller.send_message(session, "Pilot")
        assert '"Pilot" is already active.' in verify.content

        reply = controller.confirm_action(session, verify.action.id)

        assert reply.playbook_progress.skipped == {1}
        assert reply.playbook_progress.current_step == 2
        assert reply.action.payload["step_id"] == "kickoff"
        assert domain.executed == []

    def test_step_view_failure_falls_back_to_static_step(self):
        """A failing view leaves the step usable with its static prompt."""

        def unavailable(context):
            raise ExecutionError("reporting down", action_type="team_overdue")

        controller = make_controller(step_views={"team_overdue": unavailable})
        session = ConversationSession(role="manager")

        reply = controller.send_message(session, "Weekly review")

        assert "Review overdue tasks across your team." in reply.content
        assert reply.items == []
        assert reply.action.status == ActionStatus.PENDING


class TestQuickActions:
    """Scenario B."""

    def test_team_overdue_chip_is_plain_send(self):
        """A chip behaves exactly like typing its prompt."""
        domain = InMemoryDomainAPI()
        domain.add_task("Quarterly report", due_date="2020-01-01")
        controller = make_controller(domain=domain)
        session = ConversationSession(role="manager")
        chip = next(a for a in quick_actions_for_role("manager") if a.label == "Team overdue")

        reply = run_quick_action(controller, session, chip)

        assert session.messages[-2].content == chip.prompt
        assert reply.items
        assert reply.items[0].label == "Quarterly report"
        assert reply.action is None


class TestTelemetry:
    """Telemetry events emitted by the controller."""

    def test_clarify_to_confirm_events(self):
        """The create-task flow emits events in order."""
        telemetry = TelemetryCollector()
        controller = make_controller(telemetry=telemetry)
        session = ConversationSession()

        controller.send_message(session, "Create a task")
        preview = controller.send_message(session, "Fix login bug").action
        controller.confirm_action(session, preview.id)

        assert [e.event_type for e in telemetry.get_events()] == [
            "message_sent",
            "intent_resolved",
            "clarify_requested",
            "message_sent",
            "action_previewed",
            "action_confirmed",
        ]
        assert {e.session_id for e in telemetry.get_events()} == {session.session_id}


class TestSnapshot:
    """Session snapshots."""

    def test_snapshot_is_detached(self):
        """Snapshots copy state instead of sharing it."""
        controller = make_controller()
        session = ConversationSession(role="manager")
        controller.send_message(session, "Weekly review")

        snapshot = session.snapshot()
        snapshot.messages.clear()

        assert len(session.messages) == 2
        assert snapshot.playbook.current_step == 0
        assert snapshot.typing is False
