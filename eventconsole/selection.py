"""Event, schedule and deep-link selection reconciliation."""

import asyncio
import logging
from urllib.parse import parse_qs

from eventconsole.assignments import AssignmentResolver
from eventconsole.baseline import BaselineTracker
from eventconsole.models import Event, Schedule, ScheduleOverride, InitialSelection
from eventconsole.state import Renderer, SessionState, override_key
from eventconsole.utils import natural_sort_key, normalize_key

logger = logging.getLogger(__name__)

FOCUS_TARGETS = ("participants", "schedules", "events")


def _first_param(params: dict, *names: str) -> str:
    for name in names:
        values = params.get(name)
        if values:
            return normalize_key(values[0])
    return ""


class SelectionReconciler:
    """
    Keeps the event -> schedule selection consistent across event reloads.

    Args:
        state: Shared session state.
        baseline: Tracker reset whenever the selected event changes.
        resolver: Roster owner, asked to load data for a newly selected event.
        renderer: Presentation callbacks.
        focus_targets: Accepted values of the deep-link focus hint.
    """

    def __init__(
        self,
        state: SessionState,
        baseline: BaselineTracker,
        resolver: AssignmentResolver | None = None,
        renderer: Renderer | None = None,
        focus_targets=FOCUS_TARGETS,
    ):
        self.state = state
        self.baseline = baseline
        self.resolver = resolver
        self.renderer = renderer or Renderer()
        self.focus_targets = {target.lower() for target in focus_targets}
        self._background_loads: set[asyncio.Task] = set()

    def parse_deep_link(self, query: str) -> InitialSelection | None:
        """
        Registers the one-shot selection named by a URL query string.

        Args:
            query: Query string, with or without the leading "?".

        Returns:
            InitialSelection | None: The pending selection, if an event id was given.
        """
        try:
            params = parse_qs((query or "").lstrip("?"), keep_blank_values=True)
        except (TypeError, ValueError):
            logger.debug("failed to parse deep link", exc_info=True)
            return None

        event_id = _first_param(params, "eventId", "event")
        if event_id:
            self.state.initial_selection = InitialSelection(
                event_id=event_id,
                schedule_id=_first_param(params, "scheduleId", "schedule") or None,
                schedule_label=_first_param(params, "scheduleLabel", "scheduleName") or None,
                event_label=_first_param(params, "eventName", "eventLabel") or None,
                location=_first_param(params, "location") or None,
                start_at=_first_param(params, "startAt") or None,
                end_at=_first_param(params, "endAt") or None,
            )
            self.state.initial_selection_applied = False

        focus = _first_param(params, "focus", "view").lower()
        if focus and focus in self.focus_targets:
            self.state.initial_focus_target = focus
        return self.state.initial_selection

    def get_schedule_record(self, event_id: str | None, schedule_id: str | None) -> Schedule | None:
        event = self.state.get_event(event_id)
        return event.get_schedule(schedule_id) if event else None

    def resolve_schedule_context(
        self, event_id: str | None, schedule_id: str | None
    ) -> Schedule | ScheduleOverride | None:
        """Returns the canonical schedule, else its override, else None."""
        schedule = self.get_schedule_record(event_id, schedule_id)
        if schedule is not None:
            return schedule
        if not event_id or not schedule_id:
            return None
        return self.state.schedule_overrides.get(override_key(event_id, schedule_id))

    def finalize_load(
        self,
        preserve_selection: bool = True,
        previous_event_id: str | None = None,
        previous_schedule_id: str | None = None,
        previous_events_snapshot: list[Event] | None = None,
        preserve_status: bool = False,
    ) -> None:
        """
        Reconciles the selection after the event collection was (re)fetched.

        A pending deep link takes priority, then the preserved previous
        selection; otherwise the selection is cleared. Runs synchronously to
        completion, including the re-render calls.

        Args:
            preserve_selection: Keep the previous selection where it still exists.
            previous_event_id: Event selected before the reload.
            previous_schedule_id: Schedule selected before the reload.
            previous_events_snapshot: Event collection before the reload, used
                to keep showing a schedule deleted mid-session.
            preserve_status: Passed through to the participant context render.
        """
        state = self.state
        if not preserve_selection:
            state.selected_event_id = None
            state.selected_schedule_id = None

        notice = None
        initial = state.initial_selection
        if not state.initial_selection_applied and initial and initial.event_id:
            notice = self._apply_initial_selection(initial)
        elif preserve_selection and previous_event_id and state.get_event(previous_event_id):
            self._restore_previous_selection(
                previous_event_id, previous_schedule_id, previous_events_snapshot or []
            )
        elif preserve_selection:
            state.selected_event_id = None
            state.selected_schedule_id = None

        self.refresh_location_history()
        state.initial_selection_notice = notice
        self.renderer.render_events()
        self.renderer.render_schedules()
        self.renderer.update_participant_context(preserve_status=preserve_status)

    def _apply_initial_selection(self, initial: InitialSelection) -> str | None:
        state = self.state
        event = state.get_event(initial.event_id)
        if event is None:
            state.selected_event_id = None
            state.selected_schedule_id = None
            label = initial.event_label or initial.event_id
            logger.warning(f"deep-linked event {initial.event_id!r} not found")
            # stays pending so the next load can retry
            return f"指定されたイベント「{label}」が見つかりません。"

        state.selected_event_id = event.id
        schedule_id = initial.schedule_id
        if not schedule_id:
            state.selected_schedule_id = None
        else:
            key = override_key(event.id, schedule_id)
            if event.get_schedule(schedule_id) is not None:
                state.schedule_overrides.pop(key, None)
            else:
                existing = state.schedule_overrides.get(key)
                state.schedule_overrides[key] = existing or ScheduleOverride(
                    event_id=event.id,
                    event_name=initial.event_label or event.name or event.id,
                    schedule_id=schedule_id,
                    schedule_label=initial.schedule_label or schedule_id,
                    location=initial.location or "",
                    start_at=initial.start_at or "",
                    end_at=initial.end_at or "",
                )
            state.selected_schedule_id = schedule_id

        state.initial_selection_applied = True
        state.initial_selection = None
        return None

    def _restore_previous_selection(
        self,
        event_id: str,
        schedule_id: str | None,
        previous_events: list[Event],
    ) -> None:
        state = self.state
        state.selected_event_id = event_id
        if not schedule_id:
            state.selected_schedule_id = None
            return

        key = override_key(event_id, schedule_id)
        has_schedule = self.get_schedule_record(event_id, schedule_id) is not None
        has_override = key in state.schedule_overrides
        if not has_schedule and not has_override:
            previous_event = next((e for e in previous_events if e.id == event_id), None)
            previous_schedule = previous_event.get_schedule(schedule_id) if previous_event else None
            if previous_schedule is not None:
                state.schedule_overrides[key] = ScheduleOverride(
                    event_id=event_id,
                    event_name=previous_event.name or event_id,
                    schedule_id=schedule_id,
                    schedule_label=previous_schedule.label or schedule_id,
                    location=previous_schedule.location,
                    start_at=previous_schedule.start_at,
                    end_at=previous_schedule.end_at,
                )
                has_override = True

        state.selected_schedule_id = schedule_id if has_schedule or has_override else None
        if has_schedule:
            state.schedule_overrides.pop(key, None)

    def refresh_location_history(self) -> set[str]:
        """Recomputes the known locations from schedules and overrides."""
        history = set()
        for event in self.state.events:
            for schedule in event.schedules:
                location = normalize_key(schedule.location)
                if location:
                    history.add(location)
        for override in self.state.schedule_overrides.values():
            location = normalize_key(override.location)
            if location:
                history.add(location)
        self.state.location_history = history
        return history

    def location_options(self, preferred: str = "") -> list[str]:
        """Sorted location suggestions for the schedule form."""
        options = {normalize_key(value) for value in self.state.location_history}
        event = self.state.get_event(self.state.selected_event_id)
        if event is not None:
            options.update(normalize_key(s.location) for s in event.schedules)
        options.add(normalize_key(preferred))
        options.discard("")
        return sorted(options, key=natural_sort_key)

    def consume_focus_target(self) -> str:
        """Returns and clears the deep-link focus hint."""
        target = self.state.initial_focus_target
        self.state.initial_focus_target = ""
        return target if target in self.focus_targets else ""

    def consume_notice(self) -> str | None:
        notice = self.state.initial_selection_notice
        self.state.initial_selection_notice = None
        return notice

    def select_event(self, event_id: str, next_schedule_id: str | None = None) -> None:
        """
        Selects an event on behalf of the admin.

        Any pending deep link is dropped. Switching events resets the
        participant list and baseline and starts loading the event's roster.

        Args:
            event_id: Event to select.
            next_schedule_id: Schedule to select along with it.
        """
        state = self.state
        state.initial_selection = None
        state.initial_selection_applied = True

        if state.selected_event_id == event_id:
            if next_schedule_id and state.selected_schedule_id != next_schedule_id:
                self.select_schedule(next_schedule_id)
            else:
                self.renderer.update_participant_context(preserve_status=bool(next_schedule_id))
            return

        state.selected_event_id = event_id
        state.selected_schedule_id = next_schedule_id or None
        state.participants = []
        self.baseline.capture_baseline([], ready=False)
        self.renderer.render_events()
        self.renderer.render_schedules()
        self.renderer.render_participants()
        self._start_roster_load(event_id)
        self.renderer.update_participant_context(preserve_status=bool(next_schedule_id))

    def select_schedule(self, schedule_id: str | None) -> None:
        """Selects a schedule within the selected event."""
        state = self.state
        state.initial_selection = None
        state.initial_selection_applied = True
        state.selected_schedule_id = schedule_id or None
        event_id = state.selected_event_id
        if event_id and schedule_id and self.get_schedule_record(event_id, schedule_id):
            state.schedule_overrides.pop(override_key(event_id, schedule_id), None)
        self.renderer.render_schedules()
        self.renderer.update_participant_context(preserve_status=False)

    def _start_roster_load(self, event_id: str) -> None:
        if self.resolver is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("no running loop, roster load deferred")
            return
        task = loop.create_task(self.resolver.load_for_event(event_id))
        self._background_loads.add(task)
        task.add_done_callback(self._finish_roster_load)

    def _finish_roster_load(self, task: asyncio.Task) -> None:
        self._background_loads.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("background roster load failed", exc_info=error)
