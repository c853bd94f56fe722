"""
Preference reconciliation between a fast local copy and an authoritative
remote copy.

The local store answers immediately so the page can render with the user's
last known choice; the remote store is the system of record and wins once it
answers. Writes are optimistic: the in-session value changes at once, the
local copy is written synchronously and the remote copy is written in the
background. A failed remote write is recorded in the diagnostic log and is
never rolled back.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, List, Optional, TypeVar

from scopedrop.utils.error_monitoring import DiagnosticLog, ResilienceError


T = TypeVar('T')


class StoreError(ResilienceError):
    """Local or remote preference I/O failed"""
    pass


class PreferenceSource(Enum):
    LOCAL = "local"
    REMOTE = "remote"
    DEFAULT = "default"


class SyncPhase(Enum):
    UNINITIALIZED = "uninitialized"
    LOCAL_LOADED = "local_loaded"
    RECONCILED = "reconciled"


@dataclass(frozen=True)
class PreferenceState(Generic[T]):
    """The reconciled in-memory view of one preference"""
    value: Optional[T]
    source: PreferenceSource
    pending: bool = False
    phase: SyncPhase = SyncPhase.UNINITIALIZED


@dataclass(frozen=True)
class ValueCodec:
    """Converts preference values to and from the string-only local store"""
    encode: Callable[[Any], str]
    decode: Callable[[str], Any]


def _decode_bool(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered == 'true':
        return True
    if lowered == 'false':
        return False
    raise ValueError(f"not a boolean: {raw!r}")


BOOL_CODEC = ValueCodec(encode=lambda v: 'true' if v else 'false', decode=_decode_bool)
JSON_CODEC = ValueCodec(encode=json.dumps, decode=json.loads)


class LocalPreferenceStore(ABC):
    """Synchronous best-effort platform storage. Never raises."""

    @abstractmethod
    def get(self, name: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, name: str, value: str) -> None:
        ...


class RemotePreferenceStore(ABC):
    """Authoritative store. Both calls raise StoreError on failure."""

    @abstractmethod
    async def get(self, identity: str, name: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def upsert(self, identity: str, name: str, value: Any) -> None:
        ...


class IdentityProvider(ABC):

    @abstractmethod
    def current_identity(self) -> Optional[str]:
        ...


class PreferenceSync(Generic[T]):
    """
    Reconciles a single named preference.

    Phases move UNINITIALIZED -> LOCAL_LOADED -> RECONCILED; `pending` is
    True while a remote write is outstanding. `on_change` runs on every
    transition, not only when the value differs, so it has to be idempotent.
    """

    def __init__(
        self,
        name: str,
        local_store: LocalPreferenceStore,
        remote_store: Optional[RemotePreferenceStore],
        identity_provider: Optional[IdentityProvider],
        diagnostics: DiagnosticLog,
        default: Optional[T] = None,
        default_factory: Optional[Callable[[], T]] = None,
        codec: ValueCodec = BOOL_CODEC,
        on_change: Optional[Callable[[Optional[T]], None]] = None,
    ) -> None:
        self.name = name
        self.local_store = local_store
        self.remote_store = remote_store
        self.identity_provider = identity_provider
        self.diagnostics = diagnostics
        self.default = default
        self.default_factory = default_factory
        self.codec = codec
        self.on_change = on_change

        self._state: PreferenceState = PreferenceState(value=None, source=PreferenceSource.DEFAULT)
        self._writes: List[asyncio.Task] = []
        self._write_lock: Optional[asyncio.Lock] = None
        # once the user sets a value, it stays authoritative for this session
        self._user_wrote = False
        self.logger = logging.getLogger(__name__)

    @property
    def state(self) -> PreferenceState:
        return self._state

    @property
    def value(self) -> Optional[T]:
        return self._state.value

    @property
    def pending(self) -> bool:
        return self._state.pending

    @property
    def phase(self) -> SyncPhase:
        return self._state.phase

    def load_local(self) -> PreferenceState:
        """Adopt the local copy if present, otherwise the default."""
        if self._user_wrote:
            self._transition(source=PreferenceSource.LOCAL, phase=SyncPhase.LOCAL_LOADED)
            return self._state

        raw = self._read_local()
        value: Optional[T] = None
        source = PreferenceSource.DEFAULT
        if raw is not None:
            try:
                value = self.codec.decode(raw)
                source = PreferenceSource.LOCAL
            except (ValueError, TypeError) as e:
                self.logger.warning(f"Ignoring undecodable local value for '{self.name}': {e}")
        if source is PreferenceSource.DEFAULT:
            value = self._resolve_default()

        self._transition(value=value, source=source, phase=SyncPhase.LOCAL_LOADED)
        return self._state

    async def reconcile(self) -> PreferenceState:
        """Let the remote copy win, if the caller is identified and it answers."""
        if self._state.phase is SyncPhase.UNINITIALIZED:
            self.load_local()

        identity = self._identity()
        if identity is None or self.remote_store is None:
            self.logger.debug(f"Skipping remote reconciliation for '{self.name}': no identity")
            return self._state

        if self._user_wrote:
            self.logger.debug(f"Skipping remote reconciliation for '{self.name}': set during this session")
            return self._state

        try:
            remote_value = await self.remote_store.get(identity, self.name)
        except Exception as e:
            self.logger.warning(f"Remote read for '{self.name}' failed: {e}")
            self.diagnostics.record(self.name, e)
            return self._state

        if remote_value is None:
            return self._state
        if self._user_wrote:
            self.logger.info(f"Discarding remote value for '{self.name}': changed locally during read")
            return self._state

        self._write_local(remote_value)
        self._transition(value=remote_value, source=PreferenceSource.REMOTE, phase=SyncPhase.RECONCILED)
        return self._state

    async def initialize(self) -> PreferenceState:
        self.load_local()
        return await self.reconcile()

    def set(self, value: T) -> Optional[asyncio.Task]:
        """
        Apply `value` optimistically.

        The local copy is written before this returns. The remote write, if
        the caller is identified, runs as a task which is returned so callers
        can await it; `pending` stays True until every queued write settles.
        Raises RuntimeError, before touching any state, if a remote write is
        needed and no event loop is running.
        """
        identity = self._identity()
        loop = None
        if identity is not None and self.remote_store is not None:
            loop = asyncio.get_running_loop()

        if self._state.phase is SyncPhase.UNINITIALIZED:
            self.load_local()

        self._user_wrote = True
        self._write_local(value)

        if loop is None:
            self._transition(value=value, source=PreferenceSource.LOCAL)
            return None

        self._transition(value=value, source=PreferenceSource.LOCAL, pending=True)
        task = loop.create_task(self._write_remote(identity, value))
        self._writes.append(task)
        task.add_done_callback(self._on_write_done)
        return task

    def toggle(self) -> Optional[asyncio.Task]:
        if self._state.phase is SyncPhase.UNINITIALIZED:
            self.load_local()
        return self.set(not self._state.value)

    async def flush(self) -> None:
        """Wait for every outstanding remote write."""
        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    async def _write_remote(self, identity: str, value: T) -> bool:
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            try:
                await self.remote_store.upsert(identity, self.name, value)
                return True
            except Exception as e:
                # local value stays authoritative for the session
                self.logger.warning(f"Remote write for '{self.name}' failed: {e}")
                self.diagnostics.record(self.name, e)
                return False

    def _on_write_done(self, task: asyncio.Task) -> None:
        if task in self._writes:
            self._writes.remove(task)
        if not self._writes and self._state.pending:
            self._transition(pending=False)

    def _transition(self, **changes: Any) -> None:
        current = self._state
        self._state = PreferenceState(
            value=changes.get('value', current.value),
            source=changes.get('source', current.source),
            pending=changes.get('pending', current.pending),
            phase=changes.get('phase', current.phase),
        )
        if self.on_change is not None:
            try:
                self.on_change(self._state.value)
            except Exception as e:
                self.logger.error(f"Preference effect for '{self.name}' failed: {e}")

    def _resolve_default(self) -> Optional[T]:
        if self.default_factory is not None:
            try:
                return self.default_factory()
            except Exception as e:
                self.logger.warning(f"Default factory for '{self.name}' failed: {e}")
        return self.default

    def _identity(self) -> Optional[str]:
        if self.identity_provider is None:
            return None
        return self.identity_provider.current_identity()

    def _read_local(self) -> Optional[str]:
        try:
            return self.local_store.get(self.name)
        except Exception as e:
            self.logger.warning(f"Local read for '{self.name}' failed: {e}")
            return None

    def _write_local(self, value: Any) -> None:
        try:
            self.local_store.set(self.name, self.codec.encode(value))
        except Exception as e:
            self.logger.warning(f"Local write for '{self.name}' failed: {e}")
