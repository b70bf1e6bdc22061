import re
import time
import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from app.core.config import Settings
from app.core.errors import (
    ChunkConflict, IncompleteUpload, InvalidIndex, SessionClosed, SizeExceeded,
    StorageFailure, UnknownSession, UploadError
)
from app.services.audit import AuditEvent, AuditSink, LoggingAuditSink
from app.services.locks import KeyedLock
from app.services.policy import UploadPolicy, run_pipeline, unique_name
from app.services.staging import StagingArea
from app.services.storage.base import BaseStorage
from app.services.storage.factory import get_storage

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
NAME_ATTEMPTS = 3


class SessionStatus(str, Enum):
    OPEN = "open"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ChunkRecord:
    size: int
    digest: str


@dataclass
class UploadSession:
    session_id: str
    declared_name: str
    total_size: int
    expected_chunk_count: int
    created_at: float
    last_activity: float
    owner: Optional[str] = None
    received: Dict[int, ChunkRecord] = field(default_factory=dict)
    total_bytes_written: int = 0
    status: SessionStatus = SessionStatus.OPEN
    permanent_name: Optional[str] = None
    location: Optional[str] = None
    mime_type: Optional[str] = None
    error: Optional[UploadError] = None

    @property
    def missing_indices(self) -> List[int]:
        return [i for i in range(self.expected_chunk_count) if i not in self.received]


@dataclass(frozen=True)
class AppendResult:
    session_id: str
    chunk_index: int
    duplicate: bool
    received_chunks: int
    expected_chunks: int
    total_bytes_written: int


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    status: SessionStatus
    declared_name: str
    total_size: int
    expected_chunks: int
    received_indices: Tuple[int, ...]
    missing_indices: Tuple[int, ...]
    total_bytes_written: int
    permanent_name: Optional[str]
    location: Optional[str]
    mime_type: Optional[str]
    error_kind: Optional[str]


class UploadAssembler:
    """
    Assembles chunked uploads and finalizes them into validated, uniquely
    named files in the permanent store.

    Operations on one session are serialized by a per-session lock; sessions
    never share a lock. Blocking I/O, sniffing and image decoding run in
    worker threads.
    """

    def __init__(
        self,
        staging: StagingArea,
        storage: BaseStorage,
        policy: UploadPolicy,
        audit: Optional[AuditSink] = None,
        idle_timeout: float = 30 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.staging = staging
        self.storage = storage
        self.policy = policy
        self.audit = audit or LoggingAuditSink()
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._sessions: Dict[str, UploadSession] = {}
        self._locks = KeyedLock()

    # ------------------------------------------------------------------
    # Chunk append
    # ------------------------------------------------------------------

    async def append_chunk(
        self,
        session_id: str,
        chunk_index: int,
        chunk_bytes: bytes,
        declared_name: str,
        total_size: int,
        total_chunks: int,
        owner: Optional[str] = None,
        client_address: Optional[str] = None,
    ) -> AppendResult:
        try:
            self._check_session_id(session_id)
            async with self._locks.hold(session_id):
                result = await self._append_locked(
                    session_id, chunk_index, chunk_bytes,
                    declared_name, total_size, total_chunks, owner,
                )
        except UploadError as e:
            self._emit("append", session_id, client_address, e.kind, f"chunk {chunk_index}: {e.message}")
            raise

        outcome = "duplicate" if result.duplicate else "accepted"
        self._emit("append", session_id, client_address, outcome, f"chunk {chunk_index}")
        return result

    async def _append_locked(self, session_id, chunk_index, chunk_bytes,
                             declared_name, total_size, total_chunks, owner) -> AppendResult:
        session = self._sessions.get(session_id)
        if session is None:
            if chunk_index != 0:
                raise UnknownSession(f"Upload session {session_id} is not open", session_id)
            session = self._open(session_id, declared_name, total_size, total_chunks, owner)
        self._check_owner(session, owner)

        if session.status != SessionStatus.OPEN:
            raise SessionClosed(
                f"Upload session {session_id} is {session.status.value} and accepts no more chunks",
                session_id,
            )
        if not 0 <= chunk_index < session.expected_chunk_count:
            raise InvalidIndex(
                f"Invalid chunk index {chunk_index}, expected 0-{session.expected_chunk_count - 1}",
                session_id,
            )

        digest = hashlib.sha256(chunk_bytes).hexdigest()
        existing = session.received.get(chunk_index)
        if existing is not None:
            if existing.digest != digest:
                raise ChunkConflict(
                    f"Chunk {chunk_index} already received with different content", session_id
                )
            logger.debug(f"Duplicate chunk {chunk_index} for session {session_id}")
            session.last_activity = self._clock()
            return self._append_result(session, chunk_index, duplicate=True)

        new_total = session.total_bytes_written + len(chunk_bytes)
        limit = min(self.policy.max_size, session.total_size)
        if new_total > limit:
            error = SizeExceeded(
                f"Chunk {chunk_index} brings upload to {new_total} bytes, limit is {limit} bytes",
                session_id,
            )
            await self._reject(session, error)
            raise error

        try:
            await asyncio.to_thread(self.staging.save_chunk, session_id, chunk_index, chunk_bytes)
        except OSError as e:
            logger.error(f"Error saving chunk {chunk_index} for session {session_id}: {e}")
            raise StorageFailure(f"Could not stage chunk {chunk_index}: {e}", session_id) from e

        session.received[chunk_index] = ChunkRecord(size=len(chunk_bytes), digest=digest)
        session.total_bytes_written = new_total
        session.last_activity = self._clock()
        return self._append_result(session, chunk_index, duplicate=False)

    def _open(self, session_id, declared_name, total_size, total_chunks, owner) -> UploadSession:
        if total_chunks < 1:
            raise InvalidIndex(f"total_chunks must be at least 1, got {total_chunks}", session_id)
        if total_size < 0:
            raise InvalidIndex(f"total_size must not be negative, got {total_size}", session_id)
        if total_size > self.policy.max_size:
            raise SizeExceeded(
                f"Declared size {total_size} exceeds maximum of {self.policy.max_size} bytes",
                session_id,
            )

        now = self._clock()
        session = UploadSession(
            session_id=session_id,
            declared_name=declared_name,
            total_size=total_size,
            expected_chunk_count=total_chunks,
            created_at=now,
            last_activity=now,
            owner=owner,
        )
        self._sessions[session_id] = session
        logger.info(
            f"Opened upload session {session_id}: {declared_name!r}, "
            f"{total_size} bytes in {total_chunks} chunks"
        )
        return session

    @staticmethod
    def _append_result(session: UploadSession, chunk_index: int, duplicate: bool) -> AppendResult:
        return AppendResult(
            session_id=session.session_id,
            chunk_index=chunk_index,
            duplicate=duplicate,
            received_chunks=len(session.received),
            expected_chunks=session.expected_chunk_count,
            total_bytes_written=session.total_bytes_written,
        )

    # ------------------------------------------------------------------
    # Finalize
    # ------------------------------------------------------------------

    async def finalize(self, session_id: str, client_address: Optional[str] = None,
                       owner: Optional[str] = None) -> str:
        """
        Validate the assembled upload and move it into the permanent store.

        Returns the generated permanent name. Repeated calls on a completed
        session return the same name; on a rejected session they raise the
        original validation error. When owner is given, sessions opened by
        anyone else are reported as unknown.
        """
        try:
            self._check_session_id(session_id)
            async with self._locks.hold(session_id):
                name, replayed = await self._finalize_locked(session_id, owner)
        except UploadError as e:
            self._emit("finalize", session_id, client_address, e.kind, e.message)
            raise

        self._emit("finalize", session_id, client_address, "complete",
                   f"{name} (replayed)" if replayed else name)
        return name

    async def _finalize_locked(self, session_id: str, owner: Optional[str]) -> Tuple[str, bool]:
        session = self._get(session_id)
        self._check_owner(session, owner)

        if session.status == SessionStatus.COMPLETE:
            return session.permanent_name, True
        if session.error is not None:
            # a fresh instance per replay, the stored one keeps its first traceback
            raise type(session.error)(session.error.message, session_id)

        missing = session.missing_indices
        if missing:
            more = "..." if len(missing) > 10 else ""
            raise IncompleteUpload(f"Upload incomplete, missing chunks: {missing[:10]}{more}", session_id)
        if session.total_bytes_written != session.total_size:
            raise IncompleteUpload(
                f"Received {session.total_bytes_written} bytes, declared {session.total_size}",
                session_id,
            )

        session.status = SessionStatus.FINALIZING
        try:
            merged = await asyncio.to_thread(
                self.staging.merge_chunks, session_id, session.expected_chunk_count
            )
        except OSError as e:
            session.status = SessionStatus.OPEN
            logger.error(f"Error merging chunks for session {session_id}: {e}")
            raise StorageFailure(f"Could not assemble upload: {e}", session_id) from e

        try:
            outcome = await asyncio.to_thread(
                run_pipeline, self.policy, merged["path"], session.declared_name
            )
        except UploadError as e:
            e.session_id = session_id
            await self._reject(session, e)
            raise
        except OSError as e:
            session.status = SessionStatus.OPEN
            raise StorageFailure(f"Could not read assembled upload: {e}", session_id) from e

        try:
            name = await self._reserve_name(outcome.name)
            location = await self.storage.store(merged["path"], name, outcome.mime_type)
        except StorageFailure as e:
            e.session_id = session_id
            self._fail_store(session, e)
            raise
        except Exception as e:
            error = StorageFailure(f"Could not store upload: {e}", session_id)
            self._fail_store(session, error)
            raise error from e

        session.permanent_name = name
        session.location = location
        session.mime_type = outcome.mime_type
        session.status = SessionStatus.COMPLETE
        session.last_activity = self._clock()
        await self._discard_staging(session_id)
        logger.info(f"Upload session {session_id} finalized as {name} ({outcome.mime_type}, {outcome.size} bytes)")
        return name, False

    def _fail_store(self, session: UploadSession, error: StorageFailure) -> None:
        # keep the assembled artifact in staging for inspection
        session.error = error
        session.last_activity = self._clock()
        logger.error(f"Store failed for session {session.session_id}, left in finalizing: {error.message}")

    async def _reserve_name(self, sanitized) -> str:
        for _ in range(NAME_ATTEMPTS):
            candidate = unique_name(sanitized)
            if not await self.storage.exists(candidate):
                return candidate
        raise StorageFailure(f"Could not generate an unused name for {sanitized.base}")

    # ------------------------------------------------------------------
    # Status, abort, garbage collection
    # ------------------------------------------------------------------

    def status(self, session_id: str) -> SessionSnapshot:
        session = self._get(session_id)
        return SessionSnapshot(
            session_id=session.session_id,
            status=session.status,
            declared_name=session.declared_name,
            total_size=session.total_size,
            expected_chunks=session.expected_chunk_count,
            received_indices=tuple(sorted(session.received)),
            missing_indices=tuple(session.missing_indices),
            total_bytes_written=session.total_bytes_written,
            permanent_name=session.permanent_name,
            location=session.location,
            mime_type=session.mime_type,
            error_kind=session.error.kind if session.error else None,
        )

    def owner_of(self, session_id: str) -> Optional[str]:
        session = self._sessions.get(session_id)
        return session.owner if session else None

    async def abort(self, session_id: str, client_address: Optional[str] = None,
                    owner: Optional[str] = None) -> None:
        try:
            self._check_session_id(session_id)
            async with self._locks.hold(session_id):
                session = self._get(session_id)
                self._check_owner(session, owner)
                if session.status != SessionStatus.OPEN:
                    raise SessionClosed(f"Upload session {session_id} is {session.status.value}", session_id)
                await self._discard_staging(session_id)
                del self._sessions[session_id]
        except UploadError as e:
            self._emit("abort", session_id, client_address, e.kind, e.message)
            raise
        self._emit("abort", session_id, client_address, "aborted")

    async def collect_idle(self, now: Optional[float] = None) -> List[str]:
        """
        Discard open sessions idle past the timeout, deleting their staging,
        and purge terminal records of the same age. Sessions in use or left
        in finalizing are kept.
        """
        if now is None:
            now = self._clock()
        expired = []
        for session_id in list(self._sessions):
            if self._locks.busy(session_id):
                continue
            async with self._locks.hold(session_id):
                session = self._sessions.get(session_id)
                if session is None or now - session.last_activity < self.idle_timeout:
                    continue
                if session.status == SessionStatus.FINALIZING:
                    continue
                if session.status == SessionStatus.OPEN:
                    await self._discard_staging(session_id)
                    expired.append(session_id)
                    self._emit("expire", session_id, None, "expired",
                               f"{len(session.received)}/{session.expected_chunk_count} chunks received")
                del self._sessions[session_id]
        if expired:
            logger.info(f"Garbage-collected {len(expired)} idle upload sessions")
        return expired

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get(self, session_id: str) -> UploadSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(f"Upload session {session_id} not found", session_id)
        return session

    @staticmethod
    def _check_owner(session: UploadSession, owner: Optional[str]) -> None:
        if owner is not None and session.owner != owner:
            raise UnknownSession(f"Upload session {session.session_id} not found", session.session_id)

    @staticmethod
    def _check_session_id(session_id: str) -> None:
        if not SESSION_ID_PATTERN.match(session_id or ""):
            raise UnknownSession("Malformed upload session id", session_id)

    async def _reject(self, session: UploadSession, error: UploadError) -> None:
        session.status = SessionStatus.REJECTED
        session.error = error
        session.last_activity = self._clock()
        await self._discard_staging(session.session_id)
        logger.warning(f"Rejected upload session {session.session_id}: {error.kind}: {error.message}")

    async def _discard_staging(self, session_id: str) -> None:
        try:
            await asyncio.to_thread(self.staging.cleanup_session, session_id)
        except OSError as e:
            logger.error(f"Error cleaning up staging for session {session_id}: {e}")

    def _emit(self, action: str, session_id: str, client_address: Optional[str],
              outcome: str, detail: Optional[str] = None) -> None:
        self.audit.emit(AuditEvent(
            action=action,
            session_id=session_id or "",
            client_address=client_address,
            outcome=outcome,
            detail=detail,
        ))


def build_assembler(settings: Settings, audit: Optional[AuditSink] = None,
                    storage: Optional[BaseStorage] = None) -> UploadAssembler:
    return UploadAssembler(
        staging=StagingArea(settings.STAGING_PATH),
        storage=storage or get_storage(settings),
        policy=UploadPolicy.from_settings(settings),
        audit=audit,
        idle_timeout=settings.SESSION_IDLE_TIMEOUT_SECONDS,
    )
