import asyncio
import logging

from eventconsole.assignments import AssignmentResolver
from eventconsole.baseline import BaselineTracker
from eventconsole.config import Config
from eventconsole.confirm import ConfirmationStateMachine, DialogSurface, KeyboardChannel
from eventconsole.fetch_cache import FetchDedupCache
from eventconsole.remote import BackendApi, RemoteStore, drain_question_queue, normalize_events
from eventconsole.selection import SelectionReconciler
from eventconsole.state import Renderer, SessionState
from eventconsole.tokens import TokenGenerator, collect_participant_tokens
from eventconsole.utils import normalize_key

logger = logging.getLogger(__name__)


class AdminConsole:
    """
    Wires the coordination components over one session state.

    Args:
        config: Console configuration.
        store: Remote store; built from `config` if omitted.
        api: Backend API client; built from `config.api_url` if omitted and
            an endpoint is configured.
        surface: Confirmation dialog front end.
        renderer: Presentation callbacks.
        keyboard: Key channel shared with the front end.
    """

    def __init__(
        self,
        config: Config,
        store=None,
        api=None,
        surface: DialogSurface | None = None,
        renderer: Renderer | None = None,
        keyboard: KeyboardChannel | None = None,
    ):
        self.config = config
        self.store = store or RemoteStore(
            config.normalized_base_url(),
            auth_token=config.auth_token,
            timeout=config.request_timeout,
        )
        self.api = api
        if self.api is None and config.api_url:
            self.api = BackendApi(
                config.api_url, self._id_token, timeout=config.request_timeout
            )
        self.renderer = renderer or Renderer()
        self.state = SessionState()
        self.fetch_cache = FetchDedupCache()

        self.baseline = BaselineTracker(self.state)
        self.assignments = AssignmentResolver(
            self.state,
            self.store,
            renderer=self.renderer,
            cache=self.fetch_cache,
            cancel_label=config.cancel_label,
            staff_group_key=config.staff_group_key,
            staff_label=config.staff_label,
            absent_label=config.absent_label,
        )
        self.selection = SelectionReconciler(
            self.state,
            self.baseline,
            resolver=self.assignments,
            renderer=self.renderer,
            focus_targets=config.focus_targets,
        )
        self.tokens = TokenGenerator(self.state, self.store, ttl=config.token_snapshot_ttl)
        self.confirmation = ConfirmationStateMachine(surface, keyboard)

    def _id_token(self, force: bool = False) -> str:
        if force:
            logger.debug("id token refresh requested; reusing the configured token")
        return self.config.id_token or ""

    async def start(self) -> None:
        """
        Loads the initial session data.

        The token snapshot and the event collection are fetched together,
        then the roster of the selected event is loaded and the backend is
        asked to process its question queue.
        """
        await asyncio.gather(
            self.tokens.ensure_snapshot(force=True),
            self.load_events(preserve_selection=False),
        )
        if self.state.selected_event_id:
            await self.assignments.load_for_event(self.state.selected_event_id)
        if self.api is not None:
            await drain_question_queue(self.api)

    async def aclose(self) -> None:
        await self.store.aclose()
        if self.api is not None:
            await self.api.aclose()

    def clear_status(self) -> None:
        self.state.status_message = ""
        self.state.status_variant = ""

    def set_status(self, message: str, variant: str = "") -> None:
        """Records the status line shown to the admin."""
        self.state.status_message = message
        self.state.status_variant = variant
        if variant == "error":
            logger.warning(message)
        else:
            logger.info(message)

    async def load_events(
        self,
        preserve_selection: bool = True,
        preserve_status: bool = False,
        force: bool = False,
    ):
        """
        Fetches the event collection and reconciles the selection against it.

        A failed fetch leaves the current events untouched.

        Args:
            preserve_selection: Keep the current selection where possible.
            preserve_status: Keep the current status message.
            force: Also drop in-flight roster fetches and reload the roster
                of the selected event.

        Returns:
            list[Event]: The installed events.
        """
        if force:
            self.fetch_cache.clear()
        previous_event_id = self.state.selected_event_id if preserve_selection else None
        previous_schedule_id = self.state.selected_schedule_id if preserve_selection else None
        previous_events = list(self.state.events)

        try:
            events_branch, schedules_branch = await asyncio.gather(
                self.store.fetch_value("questionIntake/events"),
                self.store.fetch_value("questionIntake/schedules"),
            )
        except Exception:
            logger.error("failed to load events", exc_info=True)
            self.set_status("イベント一覧の読み込みに失敗しました。", "error")
            raise

        self.state.events = normalize_events(events_branch, schedules_branch)
        self.selection.finalize_load(
            preserve_selection=preserve_selection,
            previous_event_id=previous_event_id,
            previous_schedule_id=previous_schedule_id,
            previous_events_snapshot=previous_events,
            preserve_status=preserve_status,
        )
        notice = self.selection.consume_notice()
        if notice:
            self.set_status(notice, "error")
        if force and self.state.selected_event_id:
            await self.assignments.load_for_event(self.state.selected_event_id)
        return self.state.events

    async def issue_tokens(self, count: int) -> list[str]:
        """Mints `count` tokens against a fresh-enough snapshot of issued ones."""
        await self.tokens.ensure_snapshot()
        return [self.tokens.generate() for _ in range(count)]

    async def delete_event(self, event_id: str) -> bool:
        """
        Deletes an event with its schedules, participants and tokens.

        Args:
            event_id: Event to delete.

        Returns:
            bool: False if the admin declined, True once deleted.

        Raises:
            ValueError: If `event_id` is blank.
        """
        event_id = normalize_key(event_id)
        if not event_id:
            raise ValueError("event id is required")
        event = self.state.get_event(event_id)
        label = event.name if event and event.name else event_id

        confirmed = await self.confirmation.confirm(
            title="イベントの削除",
            description=(
                f"イベント「{label}」と、その日程・参加者・発行済みリンクを"
                "すべて削除します。よろしいですか？"
            ),
            confirm_label="削除する",
            cancel_label="キャンセル",
            tone="danger",
        )
        if not confirmed:
            return False

        participants = await self.store.fetch_value(f"questionIntake/participants/{event_id}")
        tokens = collect_participant_tokens(participants)
        updates = {
            f"questionIntake/events/{event_id}": None,
            f"questionIntake/schedules/{event_id}": None,
            f"questionIntake/participants/{event_id}": None,
        }
        for token in tokens:
            updates[f"questionIntake/tokens/{token}"] = None
        await self.store.update(updates)
        self.tokens.forget(tokens)

        if self.state.selected_event_id == event_id:
            self.state.selected_event_id = None
            self.state.selected_schedule_id = None
            self.state.participants = []
            self.baseline.capture_baseline([], ready=False)
        self.state.gl_roster.pop(event_id, None)
        self.state.gl_assignments.pop(event_id, None)

        await self.load_events(preserve_selection=False)
        self.set_status(f"イベント「{label}」を削除しました。", "success")
        return True
