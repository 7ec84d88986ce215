"""Tests for group leader roster and assignment normalization."""

import asyncio

import pytest

from eventconsole.assignments import (
    AssignmentResolver,
    LegacyRecord,
    ScheduledRecord,
    classify_status,
    normalize_assignments,
    normalize_roster,
    parse_assignment_record,
    resolve,
)
from eventconsole.models import GroupLeader
from eventconsole.remote import RemoteError
from fakes import FakeStore, RecordingRenderer


def _resolver(state, store=None, renderer=None) -> AssignmentResolver:
    return AssignmentResolver(state, store or FakeStore(), renderer=renderer)


class TestClassifyStatus:
    """Tests for folding raw status spellings."""

    def test_ascii_spellings(self):
        assert classify_status("absent") == "absent"
        assert classify_status(" Staff ") == "staff"
        assert classify_status("TEAM") == "team"

    def test_japanese_spellings(self):
        assert classify_status("欠席") == "absent"
        assert classify_status("運営") == "staff"
        assert classify_status("運営待機") == "staff"

    def test_full_width_spellings(self):
        assert classify_status("ａｂｓｅｎｔ") == "absent"
        assert classify_status("ＳＴＡＦＦ") == "staff"

    def test_unknown_spellings(self):
        assert classify_status("unavailable") == ""
        assert classify_status(None) == ""
        assert classify_status("") == ""


class TestNormalizeAssignments:
    """Tests for merging the legacy and scheduled assignment shapes."""

    def test_legacy_record_sets_fallback(self):
        entries = normalize_assignments({"g1": {"status": "欠席"}})
        assert entries["g1"].fallback.status == "absent"
        assert entries["g1"].schedules == {}

    def test_team_id_without_status_is_team(self):
        entries = normalize_assignments({"g1": {"teamId": " 3 "}})
        assert entries["g1"].fallback.status == "team"
        assert entries["g1"].fallback.team_id == "3"

    def test_record_without_status_or_team_is_dropped(self):
        entries = normalize_assignments({"g1": {"updatedAt": 5}})
        assert "g1" not in entries

    def test_team_status_without_team_id_is_dropped(self):
        entries = normalize_assignments({"g1": {"status": "team", "teamId": "  "}})
        assert "g1" not in entries

    def test_legacy_sibling_keys_are_schedule_overrides(self):
        raw = {
            "g1": {
                "status": "team",
                "teamId": "1",
                "updatedAt": 100,
                "S1": {"status": "absent"},
            }
        }
        entry = normalize_assignments(raw)["g1"]
        assert entry.fallback.team_id == "1"
        assert entry.fallback.updated_at == 100
        assert set(entry.schedules) == {"S1"}
        assert entry.schedules["S1"].status == "absent"

    def test_explicit_schedules_map_wins_over_sibling(self):
        raw = {
            "g1": {
                "status": "team",
                "teamId": "1",
                "S1": {"status": "absent"},
                "schedules": {"S1": {"status": "staff"}, "S2": {"teamId": "4"}},
            }
        }
        entry = normalize_assignments(raw)["g1"]
        assert entry.schedules["S1"].status == "staff"
        assert entry.schedules["S2"].team_id == "4"

    def test_scheduled_shape(self):
        raw = {"S1": {"g1": {"teamId": "2"}, "g2": {"status": "staff"}}}
        entries = normalize_assignments(raw)
        assert entries["g1"].fallback is None
        assert entries["g1"].schedules["S1"].team_id == "2"
        assert entries["g2"].schedules["S1"].status == "staff"

    def test_both_shapes_merge_into_one_entry(self):
        raw = {
            "g1": {"status": "team", "teamId": "1"},
            "S2": {"g1": {"status": "absent"}},
        }
        entry = normalize_assignments(raw)["g1"]
        assert entry.fallback.team_id == "1"
        assert entry.schedules["S2"].status == "absent"

    def test_malformed_records_are_skipped(self):
        raw = {
            "g1": "not-a-record",
            "g2": None,
            "": {"status": "staff"},
            "S1": {"g3": ["bad"], "g4": {"status": "staff"}},
        }
        entries = normalize_assignments(raw)
        assert set(entries) == {"g4"}

    def test_overflowing_timestamp_is_zeroed(self):
        entries = normalize_assignments(
            {
                "g1": {"status": "absent", "updatedAt": "1e999"},
                "g2": {"status": "staff", "updatedAt": float("inf")},
                "g3": {"status": "staff", "updatedAt": 7},
            }
        )
        assert entries["g1"].fallback.updated_at == 0
        assert entries["g2"].fallback.updated_at == 0
        assert entries["g3"].fallback.updated_at == 7

    def test_non_mapping_payload(self):
        assert normalize_assignments(None) == {}
        assert normalize_assignments(["g1"]) == {}

    def test_statuses_stay_closed(self):
        raw = {
            "g1": {"status": "unavailable", "teamId": "5"},
            "g2": {"status": "参加不可"},
            "g3": {"status": "ｓｔａｆｆ", "S1": {"status": "team"}},
            "S9": {"g4": {"status": "??"}, "g5": {"teamId": "7"}},
        }
        entries = normalize_assignments(raw)
        for entry in entries.values():
            assignments = list(entry.schedules.values())
            if entry.fallback is not None:
                assignments.append(entry.fallback)
            for assignment in assignments:
                assert assignment.status in {"team", "absent", "staff"}
                if assignment.status == "team":
                    assert assignment.team_id
        assert entries["g1"].fallback.team_id == "5"
        assert "g2" not in entries
        assert entries["g3"].schedules == {}


class TestParseAssignmentRecord:
    """Tests for shape detection of a single top-level entry."""

    def test_legacy(self):
        record = parse_assignment_record("g1", {"status": "staff"})
        assert isinstance(record, LegacyRecord)
        assert record.gl_id == "g1"

    def test_scheduled(self):
        record = parse_assignment_record("S1", {"g1": {"status": "staff"}})
        assert isinstance(record, ScheduledRecord)
        assert record.schedule_id == "S1"

    def test_malformed(self):
        assert parse_assignment_record("S1", "x") is None
        assert parse_assignment_record(" ", {"status": "staff"}) is None


class TestResolve:
    """Tests for schedule override precedence."""

    def test_override_beats_fallback(self):
        entry = normalize_assignments(
            {"g1": {"status": "team", "teamId": "1", "S1": {"status": "absent"}}}
        )["g1"]
        assert resolve(entry, "S1").status == "absent"
        assert resolve(entry, " S1 ").status == "absent"

    def test_fallback_when_no_override(self):
        entry = normalize_assignments(
            {"g1": {"status": "team", "teamId": "1", "S1": {"status": "absent"}}}
        )["g1"]
        assert resolve(entry, "S2").team_id == "1"
        assert resolve(entry, None).team_id == "1"

    def test_missing_entry(self):
        assert resolve(None, "S1") is None


class TestNormalizeRoster:
    """Tests for roster profile normalization."""

    def test_profile_fields(self):
        roster = normalize_roster(
            {
                "g1": {
                    "fullName": " 田中 太郎 ",
                    "furigana": "タナカ",
                    "faculty": "理工学部",
                    "sourceType": "internal",
                },
                "g2": {"name": "Sato", "sourceType": "INTERNAL"},
            }
        )
        assert roster["g1"].name == "田中 太郎"
        assert roster["g1"].phonetic == "タナカ"
        assert roster["g1"].source_type == "internal"
        assert roster["g2"].source_type == "external"

    def test_malformed_entries_skipped(self):
        assert normalize_roster({"g1": "x", "": {"name": "a"}}) == {}
        assert normalize_roster(None) == {}


class TestCollectGroupLeaders:
    """Tests for listing the leaders attached to a participant group."""

    def test_cancel_group_lists_absent_leaders(self, state):
        roster = normalize_roster({"g1": {"name": "田中"}})
        assignments = normalize_assignments({"g1": {"status": "欠席"}})
        leaders = _resolver(state).collect_group_leaders(
            "キャンセル", roster=roster, assignments=assignments
        )
        assert leaders == [GroupLeader(name="田中", meta="欠席")]

    def test_staff_group_by_key_and_label(self, state):
        roster = normalize_roster({"g1": {"name": "A", "faculty": "文学部"}})
        assignments = normalize_assignments({"g1": {"status": "staff"}})
        resolver = _resolver(state)
        by_key = resolver.collect_group_leaders(
            "__gl_staff__", roster=roster, assignments=assignments
        )
        by_label = resolver.collect_group_leaders(
            "運営待機", roster=roster, assignments=assignments
        )
        assert by_key == by_label == [GroupLeader(name="A", meta="運営待機 / 文学部")]

    def test_team_group_matches_team_id(self, state):
        roster = normalize_roster(
            {
                "g1": {"name": "A", "faculty": "工学部", "department": "工学部"},
                "g2": {"name": "B", "faculty": "工学部", "department": "機械工学科"},
                "g3": {"name": "C"},
            }
        )
        assignments = normalize_assignments(
            {"g1": {"teamId": "1"}, "g2": {"teamId": "1"}, "g3": {"teamId": "2"}}
        )
        leaders = _resolver(state).collect_group_leaders(
            " 1 ", roster=roster, assignments=assignments
        )
        assert leaders == [
            GroupLeader(name="A", meta="工学部"),
            GroupLeader(name="B", meta="工学部 / 機械工学科"),
        ]

    def test_team_leaders_excluded_from_cancel_group(self, state):
        assignments = normalize_assignments({"g1": {"teamId": "キャンセル"}})
        leaders = _resolver(state).collect_group_leaders(
            "キャンセル", roster={}, assignments=assignments
        )
        assert leaders == []

    def test_schedule_override_applies(self, state):
        assignments = normalize_assignments(
            {"g1": {"teamId": "1", "S1": {"status": "absent"}}}
        )
        resolver = _resolver(state)
        assert resolver.collect_group_leaders(
            "1", roster={}, assignments=assignments, schedule_id="S1"
        ) == []
        assert resolver.collect_group_leaders(
            "キャンセル", roster={}, assignments=assignments, schedule_id="S1"
        ) == [GroupLeader(name="g1", meta="欠席")]

    def test_numeric_aware_name_order(self, state):
        roster = normalize_roster(
            {"a": {"name": "GL10"}, "b": {"name": "GL2"}, "c": {"name": "GL1"}}
        )
        assignments = normalize_assignments(
            {"a": {"teamId": "1"}, "b": {"teamId": "1"}, "c": {"teamId": "1"}}
        )
        leaders = _resolver(state).collect_group_leaders(
            "1", roster=roster, assignments=assignments
        )
        assert [leader.name for leader in leaders] == ["GL1", "GL2", "GL10"]

    def test_uses_installed_maps_for_event(self, state):
        state.gl_roster["E1"] = normalize_roster({"g1": {"name": "田中"}})
        state.gl_assignments["E1"] = normalize_assignments({"g1": {"status": "欠席"}})
        leaders = _resolver(state).collect_group_leaders("キャンセル", event_id="E1")
        assert [leader.name for leader in leaders] == ["田中"]

    def test_not_loaded_event(self, state):
        assert _resolver(state).collect_group_leaders("1", event_id="E404") == []


class TestLoadForEvent:
    """Tests for the single-flight roster fetch."""

    def _store(self, **overrides) -> FakeStore:
        return FakeStore(
            {
                "glIntake/applications/E1": {"g1": {"name": "田中"}},
                "glAssignments/E1": {"g1": {"teamId": "1"}},
            },
            **overrides,
        )

    @pytest.mark.asyncio
    async def test_installs_maps(self, state):
        store = self._store()
        await _resolver(state, store).load_for_event("E1")
        assert state.gl_roster["E1"]["g1"].name == "田中"
        assert state.gl_assignments["E1"]["g1"].fallback.team_id == "1"

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_fetch(self, state):
        store = self._store()
        store.gate = asyncio.Event()
        resolver = _resolver(state, store)

        first = asyncio.ensure_future(resolver.load_for_event("E1"))
        second = asyncio.ensure_future(resolver.load_for_event("E1"))
        await asyncio.sleep(0)
        store.gate.set()
        await asyncio.gather(first, second)

        assert sorted(store.calls) == ["glAssignments/E1", "glIntake/applications/E1"]
        assert not resolver.cache.in_flight("E1")

    @pytest.mark.asyncio
    async def test_failure_installs_empty_maps(self, state):
        store = self._store(fail_paths={"glAssignments/E1"})
        store.gate = asyncio.Event()
        resolver = _resolver(state, store)

        first = asyncio.ensure_future(resolver.load_for_event("E1"))
        second = asyncio.ensure_future(resolver.load_for_event("E1"))
        await asyncio.sleep(0)
        store.gate.set()
        results = await asyncio.gather(first, second, return_exceptions=True)

        # the caller that started the fetch sees the error, the joiner does not
        assert isinstance(results[0], RemoteError)
        assert results[1] is None
        assert state.gl_roster["E1"] == {}
        assert state.gl_assignments["E1"] == {}

    @pytest.mark.asyncio
    async def test_next_call_after_failure_retries(self, state):
        store = self._store(fail_paths={"glAssignments/E1"})
        resolver = _resolver(state, store)
        with pytest.raises(RemoteError):
            await resolver.load_for_event("E1")

        store.fail_paths.clear()
        await resolver.load_for_event("E1")
        assert len(store.calls) == 4
        assert "g1" in state.gl_assignments["E1"]

    @pytest.mark.asyncio
    async def test_renders_participants_for_selected_event(self, state):
        renderer = RecordingRenderer()
        state.selected_event_id = "E1"
        await _resolver(state, self._store(), renderer).load_for_event("E1")
        assert renderer.count("participants") == 1

    @pytest.mark.asyncio
    async def test_no_render_for_other_event(self, state):
        renderer = RecordingRenderer()
        state.selected_event_id = "E2"
        await _resolver(state, self._store(), renderer).load_for_event("E1")
        assert renderer.count("participants") == 0

    @pytest.mark.asyncio
    async def test_blank_event_id_is_ignored(self, state):
        store = self._store()
        await _resolver(state, store).load_for_event("  ")
        assert store.calls == []
