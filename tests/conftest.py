from __future__ import annotations

import threading
import time
from collections import deque
from pathlib import Path
from typing import Any

import pytest

from game_designer.models import OracleRequest, RequestKind
from game_designer.session import Session
from game_designer.state_store import SessionStore
from game_designer.tools import GameDesignTools


class ScriptedOracle:
    """Oracle double that replays queued decisions (or raises queued exceptions) in order."""

    def __init__(self, *decisions: Any) -> None:
        self._decisions: deque[Any] = deque(decisions)
        self._guard = threading.Lock()
        self.requests: list[OracleRequest] = []

    def queue(self, *decisions: Any) -> None:
        with self._guard:
            self._decisions.extend(decisions)

    def kinds(self) -> list[RequestKind]:
        return [request.kind for request in self.requests]

    def request(self, session: Session, request: OracleRequest, *, deadline: float) -> Any:
        assert deadline > time.monotonic(), "deadline must lie in the future"
        with self._guard:
            self.requests.append(request)
            if not self._decisions:
                raise AssertionError(f"unexpected oracle request: {request.kind.value}")
            item = self._decisions.popleft()
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(session, request)
        return item


@pytest.fixture
def oracle() -> ScriptedOracle:
    return ScriptedOracle()


@pytest.fixture
def store(tmp_path: Path) -> SessionStore:
    return SessionStore(tmp_path / "state")


@pytest.fixture
def tools(store: SessionStore, oracle: ScriptedOracle) -> GameDesignTools:
    return GameDesignTools(store, oracle, oracle_timeout_seconds=30.0, expand_brief=False)
