"""Module with the table of terminal sessions owned by a single client connection."""

from dataclasses import dataclass
from enum import auto, Enum
from functools import partial
import os
from typing import Callable, Dict, List, Mapping, Optional, Union

from outpost.logger import log
from outpost.relay.backend import Backend, BackendKind, Signal, start_backend
from outpost.rpc import INVALID_REQUEST, Message, RpcError

SessionKey = Union[str, int]

BackendFactory = Callable[[str, str, int, int, Mapping[str, str], bool], Backend]


class SessionState(Enum):
    """Lifecycle state of a terminal session."""

    STARTING = auto()
    READY = auto()
    CLOSED = auto()


@dataclass
class Session:
    """A terminal session and the backend running its shell."""

    key: SessionKey
    backend: Backend
    cwd: str
    state: SessionState = SessionState.STARTING

    @property
    def kind(self) -> BackendKind:
        return self.backend.kind


class SessionRegistry:
    """
    Table of active sessions of one connection, keyed by session key.

    The session key is the id of the terminal.create request and every frame of the
    session carries it as id: exactly one ready frame, any number of data frames
    and exactly one exit frame. After the exit frame the session is removed and all
    further events of its backend are discarded.

    The registry is the only code that mutates the table and it is only used from
    the event loop of the relay, so it needs no locking.
    """

    def __init__(
        self,
        emit: Callable[[Message], None],
        shell: str,
        term: str,
        use_pty: bool = True,
        backend_factory: BackendFactory = start_backend,
    ) -> None:
        """Instantiate an empty registry that emits frames through emit."""
        self._emit = emit

        self._shell = shell
        self._term = term
        self._use_pty = use_pty

        self._backend_factory = backend_factory

        self._sessions: Dict[SessionKey, Session] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: SessionKey) -> bool:
        return key in self._sessions

    def get(self, key: SessionKey) -> Optional[Session]:
        return self._sessions.get(key)

    @property
    def backends(self) -> List[Backend]:
        return [session.backend for session in self._sessions.values()]

    def create(self, key: SessionKey, cwd: str, cols: int, rows: int) -> Session:
        """
        Start a shell for a new session and announce it with the ready frame.

        Raises SessionCreationError if no backend could be started at all.
        """
        if key in self._sessions:
            raise RpcError(INVALID_REQUEST, f"session {key} already exists")

        env = dict(os.environ)
        env["TERM"] = self._term

        backend = self._backend_factory(
            self._shell, cwd, cols, rows, env, self._use_pty
        )

        session = Session(key, backend, cwd)
        self._sessions[key] = session

        backend.on_data = partial(self._on_data, session)
        backend.on_exit = partial(self._on_exit, session)

        self._emit(
            Message.response(
                key,
                {
                    "type": "ready",
                    "pid": backend.pid,
                    "shell": backend.shell,
                    "backend": backend.kind.value,
                },
            )
        )
        session.state = SessionState.READY

        log.info(f"{backend.kind.value} session {key} ready (pid {backend.pid})")

        return session

    def input(self, key: SessionKey, data: str) -> None:
        """Forward input to a session, input for unknown sessions is ignored."""
        session = self._sessions.get(key)

        if session is None or session.state == SessionState.CLOSED:
            log.warning(f"session {key} not found for input")
            return

        session.backend.write(data)

    def resize(self, key: SessionKey, cols: int, rows: int) -> None:
        session = self._sessions.get(key)

        if session is not None and session.state != SessionState.CLOSED:
            session.backend.resize(cols, rows)

    def kill(self, key: SessionKey, sig: Signal = None) -> None:
        """
        Send a signal to a session.

        Killing an unknown or already closed session does nothing. The session stays
        registered until its backend reports the exit.
        """
        session = self._sessions.get(key)

        if session is None or session.state == SessionState.CLOSED:
            log.debug(f"session {key} already closed")
            return

        log.info(f"killing session {key} with {sig or 'SIGTERM'}")
        session.backend.kill(sig)

    def close_all(self) -> List[Backend]:
        """
        Kill every session because the owning connection was closed.

        No frames are emitted for these sessions anymore. The killed backends are
        returned so that the caller can wait for them to exit.
        """
        backends = []

        for key, session in list(self._sessions.items()):
            session.state = SessionState.CLOSED
            session.backend.kill()

            backends.append(session.backend)

            log.info(f"killed session {key}")

        self._sessions.clear()

        return backends

    def _on_data(self, session: Session, data: str) -> None:
        if session.state == SessionState.CLOSED:
            return

        self._emit(Message.response(session.key, {"type": "data", "data": data}))

    def _on_exit(self, session: Session, exit_code: int, sig: Optional[int]) -> None:
        if session.state == SessionState.CLOSED:
            return

        session.state = SessionState.CLOSED

        if self._sessions.get(session.key) is session:
            del self._sessions[session.key]

        result = {"type": "exit", "exitCode": exit_code}
        if sig is not None:
            result["signal"] = sig

        self._emit(Message.response(session.key, result))

        log.info(f"session {session.key} exited with code {exit_code}")
