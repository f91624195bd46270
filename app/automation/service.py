"""Host-facing facade over the workflow controller.

The HTTP layer and the CLI both go through :class:`WorkflowService`: it owns
the authentication gate, run bookkeeping in the audit store, and builds a
fresh :class:`WorkflowController` for every run once the previous run has
released its browser session.
"""

from __future__ import annotations

import json
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import audit, config
from .audit import SqliteAuditSink
from .config_validation import Entrypoint, validate_runtime_config
from .error_codes import AuthenticationError, WorkflowStateError
from .logging_utils import _automation_event
from .ports import PortalSession, WorkItemSource
from .processors import VerifiedStepsProcessor, load_steps
from .selectors import load_selector_overrides
from .session import PlaywrightPortalSession, PortalCredentials
from .telemetry import RunTelemetry
from .utils import setup_run_logger, short_error_message
from .workflow import ItemProcessor, WorkflowController, WorkflowSettings, WorkflowState, WorkflowStatus
from .worklist import ListingWorkItemSource, QueueWorkItemSource

SessionBuilder = Callable[[PortalCredentials], PortalSession]
CredentialsProvider = Callable[[], Optional[PortalCredentials]]


def _playwright_session(credentials: PortalCredentials) -> PortalSession:
    selectors = load_selector_overrides(config.PLAYBOOK_FILE)
    return PlaywrightPortalSession(credentials, selectors=selectors).start()


class WorkflowService:
    def __init__(
        self,
        *,
        session_builder: SessionBuilder = _playwright_session,
        credentials_provider: CredentialsProvider = PortalCredentials.from_env,
        processor: Optional[ItemProcessor] = None,
        settings: Optional[WorkflowSettings] = None,
    ) -> None:
        self._session_builder = session_builder
        self._credentials_provider = credentials_provider
        self._processor = processor
        self._settings = settings
        self._lock = threading.Lock()
        self._controller: Optional[WorkflowController] = None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(
        self,
        mode: Optional[str],
        *,
        items: Optional[Sequence[str]] = None,
        trigger: Entrypoint = "api",
        background: bool = True,
    ) -> WorkflowState:
        """Start a run.

        Raises ``ValueError`` for an unknown mode or invalid configuration,
        :class:`WorkflowStateError` when a run is active and
        :class:`AuthenticationError` when no credentials are configured.
        """

        canonical = config.parse_mode(mode) if mode else config.parse_mode(config.WORKFLOW_MODE_DEFAULT)
        if canonical is None:
            raise ValueError(f"Unknown workflow mode: {mode!r}")
        validate_runtime_config(trigger, mode=canonical)

        with self._lock:
            previous = self._controller
            if previous is not None:
                if previous.status().is_running:
                    raise WorkflowStateError("already running")
                # One browser session at a time: the old loop must have closed its session.
                if not previous.join(self._release_grace()):
                    _automation_event("state", phase="start_rejected", reason="previous_run_releasing", trigger=trigger)
                    raise WorkflowStateError("previous run still releasing its session")

            credentials = self._credentials_provider()
            if credentials is None:
                _automation_event("error", phase="start", kind="not_authenticated", trigger=trigger)
                raise AuthenticationError("not authenticated")

            processor = self._processor or self._load_processor()
            source: WorkItemSource
            if items:
                source = QueueWorkItemSource(items, handled=audit.was_item_handled)
            else:
                source = ListingWorkItemSource()

            audit.initialize_schema()
            params = {"items": list(items or []), "playbook": str(config.PLAYBOOK_FILE)}
            run_id = audit.create_run(trigger, canonical, json.dumps(params))
            log_path = setup_run_logger()
            _automation_event("state", phase="run_created", run_id=run_id, mode=canonical, log_file=str(log_path))

            controller = WorkflowController(
                self._session_factory(credentials, source),
                source,
                processor,
                SqliteAuditSink(run_id=run_id, mode=canonical),
                settings=self._settings,
                telemetry_factory=RunTelemetry,
                on_finish=lambda state: self._close_run(run_id, state),
            )
            self._controller = controller

        try:
            return controller.start(canonical, background=background, run_id=run_id)
        except Exception as exc:
            audit.mark_run_failed(run_id, short_error_message(exc))
            raise

    def pause(self) -> WorkflowState:
        controller = self._controller
        return controller.pause() if controller else WorkflowState()

    def resume(self) -> WorkflowState:
        controller = self._controller
        return controller.resume() if controller else WorkflowState()

    def stop(self) -> WorkflowState:
        controller = self._controller
        return controller.stop() if controller else WorkflowState()

    def continue_next(self) -> WorkflowState:
        controller = self._controller
        if controller is None:
            raise WorkflowStateError("no workflow run to continue")
        return controller.continue_next()

    def status(self) -> WorkflowState:
        controller = self._controller
        return controller.status() if controller else WorkflowState()

    def join(self, timeout: Optional[float] = None) -> bool:
        controller = self._controller
        return controller.join(timeout) if controller else True

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def statistics(self) -> Dict[str, Any]:
        """Today's processing statistics; empty when the store is unavailable."""

        try:
            return audit.processing_stats()
        except Exception as exc:  # noqa: BLE001
            _automation_event("error", phase="statistics", kind="collaborator_failure", error=short_error_message(exc))
            return {}

    def results(self, run_id: Optional[int] = None, limit: int = 500) -> List[Dict[str, Any]]:
        return audit.list_item_results(run_id=run_id, limit=limit)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _session_factory(
        self, credentials: PortalCredentials, source: WorkItemSource
    ) -> Callable[[], PortalSession]:
        def _factory() -> PortalSession:
            session = self._session_builder(credentials)
            bind = getattr(source, "bind", None)
            if callable(bind):
                bind(session.port)
            return session

        return _factory

    def _release_grace(self) -> float:
        settings = self._settings or WorkflowSettings.from_config()
        return settings.release_timeout

    def _load_processor(self) -> ItemProcessor:
        if not config.PLAYBOOK_FILE.exists():
            raise ValueError(f"No playbook found at {config.PLAYBOOK_FILE}")
        return VerifiedStepsProcessor(load_steps(config.PLAYBOOK_FILE))

    def _close_run(self, run_id: int, state: WorkflowState) -> None:
        if state.status == WorkflowStatus.COMPLETED:
            audit.mark_run_completed(run_id, state.processed_count)
        elif state.status == WorkflowStatus.ERROR:
            audit.mark_run_failed(run_id, state.last_error or "unknown error", state.processed_count)
        else:
            audit.mark_run_stopped(run_id, state.processed_count)


__all__ = ["WorkflowService"]
