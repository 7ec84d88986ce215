"""Group leader roster and assignment normalization."""

import asyncio
import logging
from typing import NamedTuple

from eventconsole.fetch_cache import FetchDedupCache
from eventconsole.models import GlAssignment, GlAssignmentEntry, GlProfile, GroupLeader
from eventconsole.state import Renderer, SessionState
from eventconsole.utils import fold_label, natural_sort_key, normalize_key

logger = logging.getLogger(__name__)

CANCEL_LABEL = "キャンセル"
GL_STAFF_GROUP_KEY = "__gl_staff__"
GL_STAFF_LABEL = "運営待機"
ABSENT_LABEL = "欠席"

# raw spellings are compared after fold_label(), so full-width forms match too
STATUS_SPELLINGS = {
    "team": "team",
    "absent": "absent",
    "欠席": "absent",
    "staff": "staff",
    "運営": "staff",
    "運営待機": "staff",
}

# keys of a legacy record that are record fields rather than schedule ids
RESERVED_FIELDS = frozenset(
    ["status", "teamId", "updatedAt", "updatedByUid", "updatedByName", "schedules"]
)


class LegacyRecord(NamedTuple):
    """Outer key is a leader id; the record carries a fallback plus overrides."""

    gl_id: str
    fallback: GlAssignment
    sibling_overrides: dict[str, GlAssignment]
    explicit_overrides: dict[str, GlAssignment]


class ScheduledRecord(NamedTuple):
    """Outer key is a schedule id mapping leader ids to assignments."""

    schedule_id: str
    assignments: dict[str, GlAssignment]


def classify_status(raw_status) -> str:
    """
    Folds a raw status spelling onto a canonical status.

    Args:
        raw_status: Status value from the store, in any supported spelling.

    Returns:
        str: "team", "absent", "staff", or "" when unrecognized.
    """
    return STATUS_SPELLINGS.get(fold_label(raw_status), "")


def _coerce_int(value) -> int:
    try:
        return int(float(value or 0))
    except (TypeError, ValueError, OverflowError):
        return 0


def normalize_assignment(raw) -> GlAssignment | None:
    """
    Normalizes one raw assignment record.

    A record without a recognized status but with a team id is a team
    assignment. A record with neither, or a team status without a team id,
    carries no assignment and yields None.

    Args:
        raw: Raw record from the store.

    Returns:
        GlAssignment | None: The normalized assignment.
    """
    if not isinstance(raw, dict):
        return None
    status = classify_status(raw.get("status"))
    team_id = normalize_key(raw.get("teamId"))
    if not status and team_id:
        status = "team"
    if not status or (status == "team" and not team_id):
        return None
    return GlAssignment(
        status=status,
        team_id=team_id,
        updated_at=_coerce_int(raw.get("updatedAt")),
        updated_by_name=normalize_key(raw.get("updatedByName")),
        updated_by_uid=normalize_key(raw.get("updatedByUid")),
    )


def _collect_overrides(items) -> dict[str, GlAssignment]:
    overrides = {}
    for schedule_id, value in items:
        key = normalize_key(schedule_id)
        if not key:
            continue
        assignment = normalize_assignment(value)
        if assignment is not None:
            overrides[key] = assignment
    return overrides


def parse_assignment_record(outer_key, outer_value) -> LegacyRecord | ScheduledRecord | None:
    """
    Decides which of the two stored shapes a top-level entry uses.

    An entry is legacy when the record itself normalizes to a valid fallback
    assignment. Otherwise the outer key is taken as a schedule id.

    Args:
        outer_key: Top-level key of the raw assignments branch.
        outer_value: Value stored under `outer_key`.

    Returns:
        LegacyRecord | ScheduledRecord | None: The parsed entry, or None if
        it is malformed.
    """
    if not isinstance(outer_value, dict):
        return None
    key = normalize_key(outer_key)
    if not key:
        return None

    fallback = normalize_assignment(outer_value)
    if fallback is not None:
        siblings = _collect_overrides(
            (name, value)
            for name, value in outer_value.items()
            if name not in RESERVED_FIELDS
        )
        explicit_raw = outer_value.get("schedules")
        explicit = (
            _collect_overrides(explicit_raw.items())
            if isinstance(explicit_raw, dict)
            else {}
        )
        return LegacyRecord(key, fallback, siblings, explicit)

    assignments = {}
    for gl_id, value in outer_value.items():
        gl_key = normalize_key(gl_id)
        if not gl_key:
            continue
        assignment = normalize_assignment(value)
        if assignment is not None:
            assignments[gl_key] = assignment
    return ScheduledRecord(key, assignments)


def normalize_assignments(raw) -> dict[str, GlAssignmentEntry]:
    """
    Merges both stored shapes into one map of leader id to entry.

    For a legacy record, sibling overrides are applied first and the
    explicit `schedules` sub-map second, so the sub-map wins for a schedule
    defined in both places.

    Args:
        raw: Raw assignments branch for one event.

    Returns:
        dict[str, GlAssignmentEntry]: Canonical entries keyed by leader id.
    """
    entries: dict[str, GlAssignmentEntry] = {}
    if not isinstance(raw, dict):
        return entries

    def ensure_entry(gl_id: str) -> GlAssignmentEntry:
        if gl_id not in entries:
            entries[gl_id] = GlAssignmentEntry()
        return entries[gl_id]

    for outer_key, outer_value in raw.items():
        record = parse_assignment_record(outer_key, outer_value)
        if record is None:
            logger.debug(f"skipping malformed assignment record {outer_key!r}")
            continue
        if isinstance(record, LegacyRecord):
            entry = ensure_entry(record.gl_id)
            entry.fallback = record.fallback
            entry.schedules.update(record.sibling_overrides)
            entry.schedules.update(record.explicit_overrides)
        else:
            for gl_id, assignment in record.assignments.items():
                ensure_entry(gl_id).schedules[record.schedule_id] = assignment
    return entries


def normalize_roster(raw) -> dict[str, GlProfile]:
    """
    Normalizes the raw application branch into roster profiles.

    Args:
        raw: Raw roster branch keyed by leader id.

    Returns:
        dict[str, GlProfile]: Profiles keyed by leader id.
    """
    roster: dict[str, GlProfile] = {}
    if not isinstance(raw, dict):
        return roster
    for gl_id, value in raw.items():
        key = normalize_key(gl_id)
        if not key or not isinstance(value, dict):
            continue
        roster[key] = GlProfile(
            id=key,
            name=normalize_key(value.get("name") or value.get("fullName")),
            phonetic=normalize_key(value.get("phonetic") or value.get("furigana")),
            grade=normalize_key(value.get("grade")),
            faculty=normalize_key(value.get("faculty")),
            department=normalize_key(value.get("department")),
            email=normalize_key(value.get("email")),
            club=normalize_key(value.get("club")),
            source_type=(
                "internal" if value.get("sourceType") == "internal" else "external"
            ),
        )
    return roster


def resolve(entry: GlAssignmentEntry | None, schedule_id: str | None) -> GlAssignment | None:
    """
    Returns the effective assignment of `entry` for `schedule_id`.

    The schedule-keyed override wins; otherwise the fallback applies.
    """
    if entry is None:
        return None
    key = normalize_key(schedule_id)
    if key and key in entry.schedules:
        return entry.schedules[key]
    return entry.fallback


class AssignmentResolver:
    """
    Owns the roster and assignment maps of the session.

    Args:
        state: Shared session state; only `gl_roster`, `gl_assignments` and
            `selected_event_id` are used.
        store: Remote store exposing `fetch_value(path)`.
        renderer: Presentation callbacks.
        cache: Fetch deduplication cache; a private one is created if omitted.
    """

    def __init__(
        self,
        state: SessionState,
        store,
        renderer: Renderer | None = None,
        cache: FetchDedupCache | None = None,
        cancel_label: str = CANCEL_LABEL,
        staff_group_key: str = GL_STAFF_GROUP_KEY,
        staff_label: str = GL_STAFF_LABEL,
        absent_label: str = ABSENT_LABEL,
    ):
        self.state = state
        self.store = store
        self.renderer = renderer or Renderer()
        self.cache = cache or FetchDedupCache()
        self.cancel_label = cancel_label
        self.staff_group_key = staff_group_key
        self.staff_label = staff_label
        self.absent_label = absent_label

    def get_roster(self, event_id: str) -> dict[str, GlProfile] | None:
        return self.state.gl_roster.get(normalize_key(event_id))

    def get_assignments(self, event_id: str) -> dict[str, GlAssignmentEntry] | None:
        return self.state.gl_assignments.get(normalize_key(event_id))

    def collect_group_leaders(
        self,
        group_key,
        event_id: str | None = None,
        roster: dict[str, GlProfile] | None = None,
        assignments: dict[str, GlAssignmentEntry] | None = None,
        schedule_id: str | None = None,
    ) -> list[GroupLeader]:
        """
        Lists the leaders attached to a participant group for one schedule.

        The cancellation group collects absent leaders, the staff group
        collects staff leaders, and any other key collects team leaders whose
        team id equals the key.

        Args:
            group_key: Group label or team id.
            event_id: Event whose installed maps are used when `roster` or
                `assignments` is not given.
            roster: Explicit roster map.
            assignments: Explicit assignment map.
            schedule_id: Schedule used to resolve overrides.

        Returns:
            list[GroupLeader]: Leaders sorted by name, numbers in numeric order.
        """
        if assignments is None:
            assignments = self.get_assignments(event_id)
        if roster is None:
            roster = self.get_roster(event_id)
        if assignments is None or roster is None:
            return []

        raw_key = normalize_key(group_key)
        folded_key = fold_label(raw_key)
        is_cancel_group = folded_key == fold_label(self.cancel_label)
        is_staff_group = raw_key == self.staff_group_key or folded_key == fold_label(
            self.staff_label
        )

        leaders = []
        for gl_id, entry in assignments.items():
            assignment = resolve(entry, schedule_id)
            if assignment is None:
                continue
            if assignment.status == "team":
                if is_cancel_group or is_staff_group or assignment.team_id != raw_key:
                    continue
            elif assignment.status == "absent":
                if not is_cancel_group:
                    continue
            elif assignment.status == "staff":
                if not is_staff_group:
                    continue

            profile = roster.get(gl_id)
            name = profile.name if profile and profile.name else gl_id
            meta_parts = []
            if assignment.status == "absent":
                meta_parts.append(self.absent_label)
            elif assignment.status == "staff":
                meta_parts.append(self.staff_label)
            if profile and profile.faculty:
                meta_parts.append(profile.faculty)
            if profile and profile.department and profile.department != profile.faculty:
                meta_parts.append(profile.department)
            leaders.append(GroupLeader(name=name, meta=" / ".join(meta_parts)))

        leaders.sort(key=lambda leader: natural_sort_key(leader.name))
        return leaders

    async def load_for_event(self, event_id: str, force: bool = False) -> None:
        """
        Fetches and installs the roster and assignments of one event.

        Concurrent calls for the same event share one fetch. On failure,
        empty maps are installed so consumers never see a missing entry, and
        the error is raised to the caller that started the fetch; callers
        that joined it only log the failure.

        Args:
            event_id: Event to load.
            force: Refetch even if a fetch is already in flight.
        """
        key = normalize_key(event_id)
        if not key:
            return
        joined = not force and self.cache.in_flight(key)
        try:
            await self.cache.run(key, lambda: self._fetch_and_install(key), force=force)
        except Exception:
            if joined:
                logger.debug(f"joined roster fetch for {key!r} failed")
                return
            raise

    async def _fetch_and_install(self, key: str) -> None:
        try:
            roster_raw, assignments_raw = await asyncio.gather(
                self.store.fetch_value(f"glIntake/applications/{key}"),
                self.store.fetch_value(f"glAssignments/{key}"),
            )
            roster = normalize_roster(roster_raw or {})
            assignments = normalize_assignments(assignments_raw or {})
            self.state.gl_roster[key] = roster
            self.state.gl_assignments[key] = assignments
            logger.info(
                f"loaded {len(roster)} leaders and {len(assignments)} assignments for {key}"
            )
        except Exception:
            logger.error(f"failed to load group leader roster for {key}", exc_info=True)
            self.state.gl_roster.setdefault(key, {})
            self.state.gl_assignments.setdefault(key, {})
            raise
        finally:
            if normalize_key(self.state.selected_event_id) == key:
                self.renderer.render_participants()
