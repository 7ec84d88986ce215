from eventconsole.models import Event, GlAssignmentEntry, GlProfile, InitialSelection, ScheduleOverride


def override_key(event_id: str, schedule_id: str) -> str:
    """Key under which a schedule override is registered."""
    return f"{event_id}::{schedule_id}"


class SessionState:
    """
    Mutable state shared by the admin console components.

    Every component receives the same instance and only reads or writes the
    attributes belonging to its own concern. All mutation happens on the
    event loop thread, so no locking is required.
    """

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        """Return every slice to its initial, empty value."""
        # events and selection
        self.events: list[Event] = []
        self.selected_event_id: str | None = None
        self.selected_schedule_id: str | None = None
        self.schedule_overrides: dict[str, ScheduleOverride] = {}
        self.location_history: set[str] = set()

        # one-shot deep link
        self.initial_selection: InitialSelection | None = None
        self.initial_selection_applied = False
        self.initial_selection_notice: str | None = None
        self.initial_focus_target = ""

        # participants and baseline
        self.participants: list[dict] = []
        self.saved_participant_entries: list[dict] = []
        self.saved_participants: list[dict] = []
        self.last_saved_signature = ""
        self.participant_baseline_ready = False

        # group leader roster and assignments, keyed by event id
        self.gl_roster: dict[str, dict[str, GlProfile]] = {}
        self.gl_assignments: dict[str, dict[str, GlAssignmentEntry]] = {}

        # participant tokens
        self.token_records: dict = {}
        self.known_tokens: set[str] = set()
        self.token_snapshot_fetched_at = 0.0

        # status line
        self.status_message = ""
        self.status_variant = ""

    def get_event(self, event_id: str | None) -> Event | None:
        """Returns the fetched event with `event_id`, or None."""
        if not event_id:
            return None
        for event in self.events:
            if event.id == event_id:
                return event
        return None


class Renderer:
    """
    Presentation callbacks invoked by the core.

    The default implementation does nothing; front ends subclass it. Every
    method must be safe to call redundantly.
    """

    def render_events(self) -> None:
        pass

    def render_schedules(self) -> None:
        pass

    def render_participants(self) -> None:
        pass

    def update_participant_context(self, preserve_status: bool = False) -> None:
        pass
