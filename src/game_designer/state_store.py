from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from pydantic import ValidationError

from .canonical import payload_checksum
from .errors import InvalidToolArguments, PersistenceError, SessionAlreadyExists, SessionNotFound
from .models import utc_now
from .session import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")

SNAPSHOT_SCHEMA_VERSION = 1
_SESSION_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")

# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the snapshot can be atomically
    replaced via ``os.replace`` without disturbing the lock handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically (temp file, fsync, ``os.replace``)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _file_stamp(path: Path) -> tuple[int, int] | None:
    try:
        stat = path.stat()
    except FileNotFoundError:
        return None
    return (stat.st_mtime_ns, stat.st_size)


def validate_session_name(session_name: Any) -> str:
    """Return ``session_name`` if it is usable as a snapshot file stem.

    Raises:
        InvalidToolArguments: If the name is empty or contains unsafe characters.
    """
    if not isinstance(session_name, str) or not session_name.strip():
        raise InvalidToolArguments("sessionName must be a non-empty string")
    if not _SESSION_NAME_RE.fullmatch(session_name):
        raise InvalidToolArguments(
            "sessionName may only contain letters, digits, '.', '_' and '-', must start with a "
            f"letter or digit and be at most 128 characters, got: {session_name!r}"
        )
    return session_name


@dataclass
class _CachedSession:
    session: Session
    stamp: tuple[int, int] | None


# ---------------------------------------------------------------------------
# SessionStore
# ---------------------------------------------------------------------------

class SessionStore:
    """Owns every session and serializes mutation per session name.

    Each session name has its own in-process lock plus an ``fcntl`` lock on a
    sidecar file, so calls for one session are strictly serialized (also
    across processes sharing ``root``) while different sessions run in
    parallel. Operations run on a deep copy of the cached session; the copy
    is persisted and only then published to the cache, so a failed call
    leaves both memory and disk untouched.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.sessions_dir = root / "sessions"
        self._cache: dict[str, _CachedSession] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.ensure_structure()

    def ensure_structure(self) -> None:
        try:
            self.sessions_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"cannot create session directory {self.sessions_dir}: {exc}") from exc

    def session_path(self, session_name: str) -> Path:
        return self.sessions_dir / f"{validate_session_name(session_name)}.json"

    def list_sessions(self) -> list[str]:
        return sorted(path.name[: -len(".json")] for path in self.sessions_dir.glob("*.json"))

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def _lock_for(self, session_name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(session_name)
            if lock is None:
                lock = threading.Lock()
                self._locks[session_name] = lock
            return lock

    @contextmanager
    def _session_lock(self, session_name: str) -> Iterator[Path]:
        path = self.session_path(session_name)
        with self._lock_for(session_name), ExitStack() as stack:
            try:
                stack.enter_context(_locked_file(path))
            except OSError as exc:
                raise PersistenceError(f"cannot lock session '{session_name}': {exc}") from exc
            yield path

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def create(self, session_name: str, build: Callable[[], Session]) -> Session:
        """Create and persist a new session built by ``build``.

        ``build`` runs under the session lock, so an oracle call it makes (the
        design document) cannot race a second ``designNew`` for the same name.

        Args:
            session_name: Validated name; becomes the snapshot file stem.
            build: Factory returning a session named ``session_name``.

        Returns:
            A detached copy of the persisted session.

        Raises:
            InvalidToolArguments: If ``session_name`` is not a valid name.
            SessionAlreadyExists: If a snapshot (or cached session) already exists.
            PersistenceError: If the snapshot cannot be written.
        """
        with self._session_lock(session_name) as path:
            if session_name in self._cache or path.exists():
                raise SessionAlreadyExists(session_name)
            session = build()
            if session.session_name != session_name:
                raise ValueError(f"built session is named '{session.session_name}', expected '{session_name}'")
            self._persist(path, session)
            logger.info("Created session '%s'", session_name)
            return session.model_copy(deep=True)

    def with_session(self, session_name: str, fn: Callable[[Session], T]) -> T:
        """Run ``fn`` against the named session under its lock and persist the result.

        The snapshot is written before the lock is released and before the
        result is returned. If ``fn`` raises, or the write fails, nothing is
        persisted and the cached session is left as it was. A call that leaves
        the session unchanged does not rewrite the snapshot.

        Args:
            session_name: Session to operate on.
            fn: Operation applied to a deep copy of the session.

        Returns:
            Whatever ``fn`` returned.

        Raises:
            ValueError: If ``fn`` left the session violating its invariants.
            SessionNotFound: If no snapshot exists for ``session_name``.
            PersistenceError: If the snapshot cannot be read or written.
        """
        with self._session_lock(session_name) as path:
            current = self._load(session_name, path)
            working = current.model_copy(deep=True)
            result = fn(working)
            if working != current:
                working.check_invariants()
                working.updated_at = utc_now()
                self._persist(path, working)
            return result

    def read(self, session_name: str) -> Session:
        """Return a detached copy of the named session.

        Raises:
            SessionNotFound: If no snapshot exists for ``session_name``.
            PersistenceError: If the snapshot is unreadable or corrupt.
        """
        with self._session_lock(session_name) as path:
            return self._load(session_name, path).model_copy(deep=True)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _load(self, session_name: str, path: Path) -> Session:
        stamp = _file_stamp(path)
        if stamp is None:
            self._cache.pop(session_name, None)
            raise SessionNotFound(session_name)
        cached = self._cache.get(session_name)
        if cached is not None and cached.stamp == stamp:
            return cached.session
        session = read_snapshot(path)
        if session.session_name != session_name:
            raise PersistenceError(
                f"snapshot at {path} belongs to session '{session.session_name}', not '{session_name}'"
            )
        self._cache[session_name] = _CachedSession(session=session, stamp=stamp)
        logger.debug("Loaded session '%s' from %s", session_name, path)
        return session

    def _persist(self, path: Path, session: Session) -> None:
        write_snapshot(path, session)
        self._cache[session.session_name] = _CachedSession(
            session=session.model_copy(deep=True),
            stamp=_file_stamp(path),
        )


def snapshot_document(session: Session) -> dict[str, Any]:
    payload = session.model_dump(mode="json")
    return {
        "schema_version": SNAPSHOT_SCHEMA_VERSION,
        "checksum": payload_checksum(payload),
        "saved_at": utc_now().isoformat(),
        "session": payload,
    }


def write_snapshot(path: Path, session: Session) -> None:
    """Atomically write the versioned snapshot of ``session`` to ``path``.

    Raises:
        PersistenceError: If the file cannot be written.
    """
    try:
        _atomic_write_text(path, json.dumps(snapshot_document(session), indent=2, ensure_ascii=False))
    except OSError as exc:
        logger.error("Failed to persist session '%s' to %s: %s", session.session_name, path, exc)
        raise PersistenceError(f"failed to write session '{session.session_name}': {exc}") from exc


def read_snapshot(path: Path) -> Session:
    """Read, verify and validate a session snapshot.

    Fields this version does not know about are ignored, and the checksum is
    computed over the payload exactly as stored so they do not break it.

    Raises:
        PersistenceError: If the file is unreadable, corrupt or fails validation.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise PersistenceError(f"snapshot at {path} contains invalid UTF-8 data") from exc
    except OSError as exc:
        raise PersistenceError(f"cannot read snapshot at {path}: {exc}") from exc
    if not text.strip():
        raise PersistenceError(f"snapshot at {path} is empty")
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise PersistenceError(f"snapshot at {path} is not valid JSON: {exc}") from exc

    if not isinstance(document, dict) or not isinstance(document.get("session"), dict):
        raise PersistenceError(f"snapshot at {path} has no session payload")
    version = document.get("schema_version")
    if not isinstance(version, int) or version < 1:
        raise PersistenceError(f"snapshot at {path} has invalid schema_version {version!r}")
    if version > SNAPSHOT_SCHEMA_VERSION:
        logger.warning(
            "Snapshot at %s has schema_version %d (newer than %d); unknown fields are ignored",
            path,
            version,
            SNAPSHOT_SCHEMA_VERSION,
        )
    payload = document["session"]
    checksum = document.get("checksum")
    if checksum is not None and checksum != payload_checksum(payload):
        raise PersistenceError(f"snapshot at {path} failed checksum verification")
    try:
        return Session.model_validate(payload)
    except ValidationError as exc:
        raise PersistenceError(f"snapshot at {path} failed validation: {exc}") from exc
