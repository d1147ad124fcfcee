"""
Echo Chat - Persistence
=========================
File-backed storage for user credentials and the message audit log.

1. Credentials (data/users.json)
   - One JSON document: {"users": {<casefolded name>: <User>}}.
   - Loaded once into memory, rewritten atomically on every mutation.
   - Usernames are unique case-insensitively; the record keeps the
     casing it was registered with.

2. Message log (data/messages.jsonl)
   - Append-only, one MessageRecord per line.
   - Never read back by the chat core; load() exists for auditing.

Both classes are synchronous and thread-safe. Async callers run them
through asyncio.to_thread so file I/O never stalls the event loop.
"""

import json
import os
import threading
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ValidationError

from chatserver.errors import DuplicateUser, PersistenceUnavailable
from chatserver.logger import ServerLogger


# =============================================================================
# Records (Pydantic)
# =============================================================================

class User(BaseModel):
    """A registered chat user. The password is only ever stored as a bcrypt hash."""
    username: str
    password_hash: str
    is_online: bool = False
    connected_at: str | None = None
    created_at: str


class MessageRecord(BaseModel):
    """One accepted chat line. Immutable once written."""
    sender: str
    content: str
    timestamp: str
    visibility: Literal["public", "private"] = "public"
    target: str | None = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def user_key(username: str) -> str:
    """Normalize a username for uniqueness checks and lookups."""
    return username.casefold()


# =============================================================================
# Credential Store
# =============================================================================

class CredentialStore:
    """
    Persists username -> password hash and online/offline status.

    Attributes:
        path:    Full path to users.json.
        _users:  In-memory copy of every record, keyed by user_key().
    """

    def __init__(self, data_dir: str, logger: ServerLogger | None = None):
        """
        Open (or create) the credential store.

        Args:
            data_dir: Directory holding users.json. Created if missing.
            logger:   Logger for non-fatal store events.

        Raises:
            PersistenceUnavailable: If the directory cannot be created or the
                existing file is unreadable or corrupt.
        """
        self.path = os.path.join(data_dir, "users.json")
        self.logger = logger or ServerLogger(echo=False)
        self._lock = threading.Lock()

        try:
            os.makedirs(data_dir, exist_ok=True)
        except OSError as e:
            raise PersistenceUnavailable(f"Cannot create data directory {data_dir}: {e}") from e

        self._users: dict[str, User] = self._load()

    def find_by_username(self, username: str) -> User | None:
        """Return a copy of the record for username, or None."""
        with self._lock:
            user = self._users.get(user_key(username))
            return user.model_copy() if user else None

    def create(self, username: str, password_hash: str) -> User:
        """
        Create a new, offline user record.

        Raises:
            DuplicateUser: If the (case-insensitive) name is already taken.
            PersistenceUnavailable: If the store cannot be written.
        """
        key = user_key(username)
        with self._lock:
            if key in self._users:
                raise DuplicateUser(username)
            user = User(username=username, password_hash=password_hash, created_at=_now())
            self._users[key] = user
            try:
                self._save()
            except PersistenceUnavailable:
                del self._users[key]
                raise
            return user.model_copy()

    def set_online(self, username: str, online: bool) -> None:
        """
        Flip a user's online flag. Idempotent.

        Going online also refreshes connected_at. A missing record is logged
        and ignored.

        Raises:
            PersistenceUnavailable: If the store cannot be written.
        """
        key = user_key(username)
        with self._lock:
            user = self._users.get(key)
            if user is None:
                self.logger.warning(f"set_online({online}) for unknown user '{username}' ignored")
                return
            previous = user.model_copy()
            user.is_online = online
            if online:
                user.connected_at = _now()
            try:
                self._save()
            except PersistenceUnavailable:
                self._users[key] = previous
                raise

    def reset_all_offline(self) -> int:
        """
        Mark every record offline.

        Called once at start-up: the in-memory session registry is empty, so
        any persisted online flag is left over from a previous crash.

        Returns:
            Number of records that were repaired.
        """
        with self._lock:
            stale = [u for u in self._users.values() if u.is_online]
            if not stale:
                return 0
            for user in stale:
                user.is_online = False
            self._save()
            return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._users)

    # -- Internal helpers ------------------------------------------------------

    def _load(self) -> dict[str, User]:
        """Load users.json from disk (empty store if the file is missing)."""
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return {
                key: User.model_validate(record)
                for key, record in data.get("users", {}).items()
            }
        except (OSError, json.JSONDecodeError, ValidationError, AttributeError) as e:
            raise PersistenceUnavailable(f"Cannot read {self.path}: {e}") from e

    def _save(self) -> None:
        """Write users.json atomically (temp file + replace). Caller holds the lock."""
        data = {"users": {key: user.model_dump() for key, user in self._users.items()}}
        tmp_path = self.path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise PersistenceUnavailable(f"Cannot write {self.path}: {e}") from e


# =============================================================================
# Message Log
# =============================================================================

class MessageLog:
    """
    Append-only audit log of accepted chat messages.

    Attributes:
        path: Full path to messages.jsonl.
    """

    def __init__(self, data_dir: str):
        """
        Args:
            data_dir: Directory holding messages.jsonl. Created if missing.

        Raises:
            PersistenceUnavailable: If the directory cannot be created or the
                log is not writable.
        """
        self.path = os.path.join(data_dir, "messages.jsonl")
        self._lock = threading.Lock()
        try:
            os.makedirs(data_dir, exist_ok=True)
            # Touch the file so an unwritable location fails at start-up
            with open(self.path, "a", encoding="utf-8"):
                pass
        except OSError as e:
            raise PersistenceUnavailable(f"Cannot open {self.path}: {e}") from e

    def append(self, record: MessageRecord) -> None:
        """
        Append one record.

        Raises:
            PersistenceUnavailable: If the write fails.
        """
        line = json.dumps(record.model_dump(), ensure_ascii=False)
        try:
            with self._lock:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except OSError as e:
            raise PersistenceUnavailable(f"Cannot append to {self.path}: {e}") from e

    def load(self) -> list[MessageRecord]:
        """Read every record back, skipping lines that fail to parse."""
        records = []
        if not os.path.exists(self.path):
            return records
        with self._lock:
            with open(self.path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(MessageRecord.model_validate_json(line))
                    except ValidationError:
                        continue
        return records
