from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

AssignmentStatus = Literal["team", "absent", "staff"]


class Schedule(BaseModel):
    """A single session slot within an event."""

    id: str
    label: str = ""
    location: str = ""
    date: str = ""
    start_at: str = ""
    end_at: str = ""
    created_at: int = 0
    updated_at: int = 0
    participant_count: int = 0


class Event(BaseModel):
    """An event and its ordered schedules."""

    id: str
    name: str = ""
    created_at: int = 0
    updated_at: int = 0
    schedules: list[Schedule] = Field(default_factory=list)

    def get_schedule(self, schedule_id: str | None) -> Schedule | None:
        """Returns the schedule with `schedule_id`, or None if absent."""
        if not schedule_id:
            return None
        for schedule in self.schedules:
            if schedule.id == schedule_id:
                return schedule
        return None


class ScheduleOverride(BaseModel):
    """Placeholder schedule descriptor for a schedule missing from the fetched event."""

    event_id: str
    event_name: str = ""
    schedule_id: str
    schedule_label: str = ""
    location: str = ""
    start_at: str = ""
    end_at: str = ""


class GlProfile(BaseModel):
    """Roster entry for a volunteer group leader."""

    id: str
    name: str = ""
    phonetic: str = ""
    grade: str = ""
    faculty: str = ""
    department: str = ""
    email: str = ""
    club: str = ""
    source_type: Literal["internal", "external"] = "external"


class GlAssignment(BaseModel):
    """One resolved assignment status for a group leader."""

    model_config = ConfigDict(frozen=True)

    status: AssignmentStatus
    team_id: str = ""
    updated_at: int = 0
    updated_by_name: str = ""
    updated_by_uid: str = ""


class GlAssignmentEntry(BaseModel):
    """All assignments for one group leader within an event."""

    fallback: GlAssignment | None = None
    schedules: dict[str, GlAssignment] = Field(default_factory=dict)


class GroupLeader(BaseModel):
    """Display row for a group leader attached to a participant group."""

    name: str
    meta: str = ""


class InitialSelection(BaseModel):
    """Deep-link selection waiting to be applied on the next event load."""

    event_id: str
    schedule_id: str | None = None
    schedule_label: str | None = None
    event_label: str | None = None
    location: str | None = None
    start_at: str | None = None
    end_at: str | None = None
