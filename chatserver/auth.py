"""
Echo Chat - Authentication Handshake
======================================
The one-shot credential exchange that every connection runs before any
chat traffic is accepted.

Security model:
- One account per username (case-insensitive), stored as a bcrypt hash
- Unknown usernames are registered on first use (auth.auto_register)
- A username that is already online is rejected BEFORE the password is
  checked, so a second login never reveals whether the password matched
- Plaintext passwords are never stored or logged

Flow (first frame of a connection):
    1. Parse {"username": ..., "password": ...}      -> BadCredentialsFormat
    2. Under registry.claim(username):
       a. Look the user up                            -> ServiceUnavailable
       b. Unknown: register (or UnknownUser)
       c. Online already                              -> AlreadyOnline
       d. Password mismatch                           -> WrongPassword
       e. Mark online (bounded write), register the session
"""

import asyncio
import json

import bcrypt
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from chatserver.errors import (
    AlreadyOnline,
    BadCredentialsFormat,
    DuplicateUser,
    PersistenceUnavailable,
    ServiceUnavailable,
    UnknownUser,
    WrongPassword,
)
from chatserver.logger import ServerLogger
from chatserver.registry import SessionRegistry
from chatserver.session import Session
from chatserver.store import CredentialStore, User

# bcrypt only looks at the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72

CREDENTIALS_HINT = 'expected {"username": "<name>", "password": "<password>"}'


class Credentials(BaseModel):
    """First frame of every connection."""
    model_config = ConfigDict(strict=True)

    username: str = Field(..., min_length=1, max_length=32, pattern=r"^\S+$")
    password: str = Field(..., min_length=1)

    @field_validator("password")
    @classmethod
    def _fits_bcrypt(cls, value: str) -> str:
        if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"password longer than {MAX_PASSWORD_BYTES} bytes")
        return value


def hash_password(password: str, rounds: int = 12) -> str:
    """Salted bcrypt hash of a plaintext password."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Constant-time check of a plaintext password against a bcrypt hash."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Corrupt hash in the store
        return False


class AuthHandshake:
    """
    Runs the credential exchange against the store and the registry.

    Attributes:
        store:         Credential store (username -> hash, online flag).
        registry:      Live session registry.
        auto_register: Create accounts for unknown usernames.
        bcrypt_rounds: Cost factor for new hashes.
        store_timeout: Upper bound in seconds for each store call.
    """

    def __init__(
        self,
        store: CredentialStore,
        registry: SessionRegistry,
        logger: ServerLogger | None = None,
        auto_register: bool = True,
        bcrypt_rounds: int = 12,
        store_timeout: float = 5.0,
    ):
        self.store = store
        self.registry = registry
        self.logger = logger or ServerLogger(echo=False)
        self.auto_register = auto_register
        self.bcrypt_rounds = bcrypt_rounds
        self.store_timeout = store_timeout
        self._reconciling: set[asyncio.Task] = set()

    @staticmethod
    def parse(raw: str) -> Credentials:
        """
        Decode the first frame.

        Raises:
            BadCredentialsFormat: Not JSON, not an object, or a field is
                missing, empty, not a string, or malformed.
        """
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            raise BadCredentialsFormat(CREDENTIALS_HINT)
        if not isinstance(payload, dict):
            raise BadCredentialsFormat(CREDENTIALS_HINT)
        try:
            return Credentials.model_validate(payload)
        except ValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err["loc"]})
            detail = f"invalid {', '.join(fields)}; {CREDENTIALS_HINT}" if fields else CREDENTIALS_HINT
            raise BadCredentialsFormat(detail)

    async def authenticate(self, session: Session, raw: str) -> User:
        """
        Run the handshake for one connection.

        On success the session is AUTHENTICATED, registered, and the user is
        marked online. The join notice is left to the caller.

        Returns:
            The user record (as it was before going online).

        Raises:
            HandshakeRejected: One of its subclasses, with the reason.
        """
        creds = self.parse(raw)

        async with self.registry.claim(creds.username):
            user = await self._store_call(self.store.find_by_username, creds.username)
            if user is None:
                user = await self._register(creds)
            else:
                await self._check_existing(user, creds)

            await self.set_online(user.username, True)
            session.authenticate(user.username)
            self.registry.add(session)

        self.logger.connection(f"'{user.username}' authenticated from {session.peer}")
        return user

    async def _register(self, creds: Credentials) -> User:
        """Create a record for a never-seen username."""
        if not self.auto_register:
            raise UnknownUser(f"no account named '{creds.username}'")

        password_hash = await asyncio.to_thread(hash_password, creds.password, self.bcrypt_rounds)
        try:
            user = await self._store_call(self.store.create, creds.username, password_hash)
        except DuplicateUser:
            # Created by someone else between lookup and create
            user = await self._store_call(self.store.find_by_username, creds.username)
            if user is None:
                raise ServiceUnavailable("credential store is inconsistent, try again later")
            await self._check_existing(user, creds)
            return user

        self.logger.connection(f"Registered new user '{user.username}'")
        return user

    async def _check_existing(self, user: User, creds: Credentials) -> None:
        # Online check comes first: never reveal whether the password matched
        if user.is_online or self.registry.find(user.username) is not None:
            raise AlreadyOnline(f"'{user.username}' is already online")
        matches = await asyncio.to_thread(verify_password, creds.password, user.password_hash)
        if not matches:
            raise WrongPassword("incorrect password")

    async def set_online(self, username: str, online: bool) -> None:
        """
        Write the online flag, bounded by store_timeout.

        The caller holds registry.claim(username). A worker thread cannot be
        cancelled, so a write that times out may still land later; when it
        does, the flag is rewritten to match the registry.

        Raises:
            ServiceUnavailable: The write failed or timed out.
        """
        write = asyncio.ensure_future(asyncio.to_thread(self.store.set_online, username, online))
        try:
            await self._bounded(asyncio.shield(write))
        except ServiceUnavailable:
            if not write.done():
                task = asyncio.create_task(self._reconcile(username, write, online))
                self._reconciling.add(task)
                task.add_done_callback(self._reconciling.discard)
            raise

    async def _reconcile(self, username: str, write: asyncio.Future, written: bool) -> None:
        """Wait for a late online-flag write, then make the flag match the registry."""
        landed = True
        try:
            await write
        except PersistenceUnavailable as e:
            landed = False
            self.logger.error(f"Late online-flag write for '{username}' failed: {e}")
        async with self.registry.claim(username):
            online = self.registry.find(username) is not None
            if landed and online == written:
                return
            try:
                await self.set_online(username, online)
            except ServiceUnavailable:
                return
        self.logger.warning(f"Online flag for '{username}' reset to {online} after a late write")

    async def _store_call(self, fn, *args):
        """Run a blocking store call in a worker thread, bounded by store_timeout."""
        return await self._bounded(asyncio.to_thread(fn, *args))

    async def _bounded(self, call):
        try:
            return await asyncio.wait_for(call, timeout=self.store_timeout)
        except asyncio.TimeoutError:
            self.logger.error(f"Credential store timed out after {self.store_timeout}s")
            raise ServiceUnavailable("credential store timed out, try again later")
        except PersistenceUnavailable as e:
            self.logger.error(f"Credential store unavailable: {e}")
            raise ServiceUnavailable("credential store unavailable, try again later")
