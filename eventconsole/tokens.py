"""Participant token minting against a short-lived snapshot of issued tokens."""

import logging
import random
import secrets
import time
from typing import Callable, Iterable

from eventconsole.state import SessionState
from eventconsole.utils import base64url_from_bytes

logger = logging.getLogger(__name__)

TOKEN_LENGTH = 32
MIN_TOKEN_LENGTH = 12
TOKEN_BYTES = 24
TOKENS_PATH = "questionIntake/tokens"


def collect_participant_tokens(branch) -> set[str]:
    """
    Gathers the distinct tokens of an event's participants.

    Args:
        branch: Raw participant branch, schedule id -> participant id -> record.

    Returns:
        set[str]: Non-blank tokens; malformed schedules and records are skipped.
    """
    tokens = set()
    if not isinstance(branch, dict):
        return tokens
    for schedule_branch in branch.values():
        if not isinstance(schedule_branch, dict):
            continue
        for participant in schedule_branch.values():
            if not isinstance(participant, dict):
                continue
            token = str(participant.get("token") or "").strip()
            if token:
                tokens.add(token)
    return tokens


class TokenGenerator:
    """
    Mints URL-safe participant tokens that do not collide with issued ones.

    Args:
        state: Shared session state; uses the token slice only.
        store: Remote store exposing `fetch_value(path)`.
        ttl: Seconds a fetched snapshot stays fresh.
        random_bytes: Strong random source taking a byte count, or None when
            unavailable.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        state: SessionState,
        store,
        ttl: float = 10.0,
        random_bytes: Callable[[int], bytes] | None = secrets.token_bytes,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state = state
        self.store = store
        self.ttl = ttl
        self.random_bytes = random_bytes
        self.clock = clock

    def snapshot_is_fresh(self) -> bool:
        fetched_at = self.state.token_snapshot_fetched_at
        return bool(fetched_at) and self.clock() - fetched_at < self.ttl

    async def ensure_snapshot(self, force: bool = False) -> dict:
        """
        Returns the known token records, refetching them when stale.

        Args:
            force: Refetch even if the snapshot is still fresh.

        Returns:
            dict: Token records keyed by token.
        """
        if not force and self.snapshot_is_fresh():
            return self.state.token_records
        records = await self.store.fetch_value(TOKENS_PATH)
        if not isinstance(records, dict):
            records = {}
        self.state.token_records = records
        self.state.known_tokens = set(records.keys())
        self.state.token_snapshot_fetched_at = self.clock()
        logger.debug(f"token snapshot refreshed with {len(records)} tokens")
        return self.state.token_records

    def _candidate(self) -> str:
        if self.random_bytes is not None:
            raw = self.random_bytes(TOKEN_BYTES)
        else:
            seed = f"{random.random()}::{int(time.time() * 1000)}::{random.random()}"
            raw = seed.encode("utf-8")
        return base64url_from_bytes(raw)[:TOKEN_LENGTH]

    def generate(self, existing: set[str] | None = None) -> str:
        """
        Mints one token and records it in the known set.

        Args:
            existing: Known tokens to avoid; defaults to the session's set.
                The set is updated in place with the new token.

        Returns:
            str: A token of exactly 32 URL-safe characters.
        """
        used = self.state.known_tokens if existing is None else existing
        while True:
            candidate = self._candidate()
            if len(candidate) < MIN_TOKEN_LENGTH:
                continue
            if candidate in used:
                logger.debug("token collision, regenerating")
                continue
            used.add(candidate)
            return candidate

    def forget(self, tokens: Iterable[str]) -> None:
        """Drops tokens from the known set and the cached records."""
        for token in tokens:
            self.state.known_tokens.discard(token)
            self.state.token_records.pop(token, None)
