"""Participant baseline snapshots and unsaved-change detection."""

import copy
import json
import logging

from eventconsole.state import SessionState

logger = logging.getLogger(__name__)

# (field, display label) pairs compared when diffing participant lists
PARTICIPANT_DIFF_FIELDS = [
    ("name", "氏名"),
    ("phonetic", "フリガナ"),
    ("gender", "性別"),
    ("department", "学部学科"),
    ("teamNumber", "班番号"),
    ("phone", "携帯電話"),
    ("email", "メールアドレス"),
]


def _text(value) -> str:
    return "" if value is None else str(value)


def snapshot_participant(entry) -> dict:
    """
    Projects a participant record onto the fields that matter for diffs.

    Args:
        entry: Raw participant mapping.

    Returns:
        dict: Flat string-valued snapshot.
    """
    if not isinstance(entry, dict):
        entry = {}
    return {
        "participantId": _text(entry.get("participantId") or entry.get("id") or ""),
        "name": _text(entry.get("name") or ""),
        "phonetic": _text(entry.get("phonetic") or entry.get("furigana") or ""),
        "gender": _text(entry.get("gender") or ""),
        "department": _text(entry.get("department") or entry.get("groupNumber") or ""),
        "teamNumber": _text(entry.get("teamNumber") or entry.get("groupNumber") or ""),
        "phone": _text(entry.get("phone") or ""),
        "email": _text(entry.get("email") or ""),
        "rowKey": _text(entry.get("rowKey") or ""),
    }


def snapshot_participant_list(entries) -> list[dict]:
    return [snapshot_participant(entry) for entry in entries or []]


def signature_for_entries(entries) -> str:
    """Content signature of a participant list; equal lists give equal signatures."""
    rows = []
    for snapshot in snapshot_participant_list(entries):
        rows.append(
            [
                snapshot["participantId"],
                snapshot["name"],
                snapshot["phonetic"],
                snapshot["gender"],
                snapshot["teamNumber"],
                snapshot["department"],
                snapshot["phone"],
                snapshot["email"],
            ]
        )
    return json.dumps(rows, ensure_ascii=False)


def clone_entry(entry) -> dict:
    """
    Copies a participant entry without ever raising.

    Tries a deep copy, then a JSON round trip, then a shallow copy, logging
    each fallback.
    """
    if not isinstance(entry, dict):
        return {}
    try:
        return copy.deepcopy(entry)
    except Exception:
        logger.warning("deep copy of participant entry failed, using JSON", exc_info=True)
    try:
        return json.loads(json.dumps(entry, default=str))
    except Exception:
        logger.warning("JSON copy of participant entry failed, using shallow copy", exc_info=True)
        return dict(entry)


def diff_participant_lists(current, baseline) -> dict[str, list]:
    """
    Compares the live participant list against the baseline.

    Records are matched by participant id, or row key when the id is blank.
    Records with neither are always reported as added.

    Args:
        current: Live participant entries.
        baseline: Accepted participant entries.

    Returns:
        dict[str, list]: "added", "updated" and "removed" lists. Each updated
        item holds "previous", "current" and per-field "changes".
    """
    current_snapshots = snapshot_participant_list(current)
    baseline_snapshots = snapshot_participant_list(baseline)

    baseline_by_key = {}
    for snapshot in baseline_snapshots:
        key = snapshot["participantId"] or snapshot["rowKey"]
        if key and key not in baseline_by_key:
            baseline_by_key[key] = snapshot

    matched = set()
    added = []
    updated = []
    for snapshot in current_snapshots:
        key = snapshot["participantId"] or snapshot["rowKey"]
        previous = baseline_by_key.get(key) if key else None
        if previous is None:
            added.append(snapshot)
            continue
        matched.add(key)
        changes = [
            {
                "field": field,
                "label": label,
                "previous": previous[field],
                "current": snapshot[field],
            }
            for field, label in PARTICIPANT_DIFF_FIELDS
            if previous[field] != snapshot[field]
        ]
        if changes:
            updated.append({"previous": previous, "current": snapshot, "changes": changes})

    removed = [
        snapshot
        for key, snapshot in baseline_by_key.items()
        if key not in matched
    ]
    return {"added": added, "updated": updated, "removed": removed}


class BaselineTracker:
    """Keeps the accepted participant snapshot and reports divergence from it."""

    def __init__(self, state: SessionState):
        self.state = state

    def capture_baseline(self, entries=None, ready: bool = True) -> None:
        """
        Stores a copy of `entries` as the accepted state.

        Args:
            entries: Participant entries; defaults to the live collection.
            ready: Whether the baseline reflects a completed load.
        """
        entries = self.state.participants if entries is None else entries
        entries = list(entries or [])
        self.state.saved_participant_entries = [clone_entry(entry) for entry in entries]
        self.state.saved_participants = snapshot_participant_list(entries)
        self.state.last_saved_signature = signature_for_entries(entries)
        self.state.participant_baseline_ready = bool(ready)

    def has_unsaved_changes(self) -> bool:
        return signature_for_entries(self.state.participants) != self.state.last_saved_signature

    def pending_changes(self) -> dict[str, list]:
        """Field-level diff of the live collection against the baseline."""
        return diff_participant_lists(
            self.state.participants, self.state.saved_participant_entries
        )
