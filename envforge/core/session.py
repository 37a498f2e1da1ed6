"""Session activator — scoped, reversible activation of an EnvironmentDescriptor.

A Session moves through ``Created -> Active -> Deactivated``; the last
state is terminal. Two modes:

- detached (``target=None``): activation snapshots ``os.environ`` and
  computes the layered environment for child processes; nothing in the
  invoking process changes.
- in-place (``target=<mapping>``, typically ``os.environ``): activation
  writes the layered values into the mapping and records what it
  replaced; deactivation puts back exactly what was there.
"""

from __future__ import annotations

import atexit
import logging
import os
import signal
import subprocess
import threading
import uuid
from collections.abc import Iterable, Iterator, Mapping, MutableMapping, Sequence
from contextlib import contextmanager

from envforge.core.cancellation import CancellationToken
from envforge.core.errors import (
    ActivationError,
    AlreadyActiveError,
    EnvironmentWriteFailedError,
    InvalidSessionTransitionError,
)
from envforge.models.environment import ENV_MARKER, SESSION_MARKER, EnvironmentDescriptor
from envforge.models.session import VALID_TRANSITIONS, SessionState

logger = logging.getLogger(__name__)

DEFAULT_PURE_KEEP: tuple[str, ...] = (
    "HOME",
    "USER",
    "LOGNAME",
    "TERM",
    "SHELL",
    "LANG",
    "LC_ALL",
    "TZ",
    "TMPDIR",
)


def layer_environment(
    env: EnvironmentDescriptor,
    host: Mapping[str, str],
    *,
    pure: bool = False,
    keep: Iterable[str] = DEFAULT_PURE_KEEP,
    session_id: str = "",
) -> dict[str, str]:
    """Layer *env* over *host* the way a session's processes see it.

    Search-path variables are prefixed onto the host value; every other
    variable replaces it. In pure mode only the *keep* variables survive
    from the host.
    """
    if pure:
        kept = set(keep)
        layered = {key: value for key, value in host.items() if key in kept}
    else:
        layered = dict(host)
    for key, value in env.variables.items():
        current = layered.get(key)
        if env.is_search_path(key) and current:
            layered[key] = f"{value}{os.pathsep}{current}"
        else:
            layered[key] = value
    layered[SESSION_MARKER] = session_id
    layered[ENV_MARKER] = f"{env.name}@{env.digest}"
    return layered


def exit_status(returncode: int) -> int:
    """Shell-style exit status: a child killed by signal N exits 128 + N."""
    if returncode < 0:
        return 128 - returncode
    return returncode


def _default_interrupt() -> None:
    signal.signal(signal.SIGINT, signal.SIG_DFL)


@contextmanager
def _interrupt_goes_to_child() -> Iterator[bool]:
    """Ignore SIGINT in this process while a foreground child runs.

    Yields whether the disposition was changed; only the main thread
    may install signal handlers.
    """
    if threading.current_thread() is not threading.main_thread():
        yield False
        return
    previous = signal.signal(signal.SIGINT, signal.SIG_IGN)
    try:
        yield True
    finally:
        signal.signal(signal.SIGINT, previous)


class Session:
    """One activation of an EnvironmentDescriptor.

    Parameters
    ----------
    env:
        The composed environment.
    target:
        Mapping to activate into, or None for a detached session.
    pure:
        Drop host variables except *keep*.
    shell_hook:
        Shell snippet run in each child before its command.
    keep:
        Host variables preserved in pure mode.
    shell:
        Shell used for the hook.
    """

    def __init__(
        self,
        env: EnvironmentDescriptor,
        *,
        target: MutableMapping[str, str] | None = None,
        pure: bool = False,
        shell_hook: str = "",
        keep: Iterable[str] = DEFAULT_PURE_KEEP,
        shell: str = "/bin/sh",
    ) -> None:
        self.env = env
        self.session_id = uuid.uuid4().hex
        self.pure = pure
        self.shell_hook = shell_hook
        self._target = target
        self._keep = tuple(keep)
        self._shell = shell
        self._state = SessionState.CREATED
        self._saved: dict[str, str | None] = {}
        self._child_env: dict[str, str] = {}

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is SessionState.ACTIVE

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in VALID_TRANSITIONS[self._state]:
            raise InvalidSessionTransitionError(
                f"Session {self.session_id[:8]} cannot go from "
                f"{self._state.value} to {new_state.value}"
            )
        self._state = new_state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def activate(self, *, cancel: CancellationToken | None = None) -> Session:
        if cancel is not None:
            cancel.raise_if_cancelled("activation")
        if self._state is SessionState.ACTIVE:
            raise AlreadyActiveError(f"Session {self.session_id[:8]} is already active")
        if self._state is SessionState.DEACTIVATED:
            raise InvalidSessionTransitionError(
                f"Session {self.session_id[:8]} was deactivated; create a new session"
            )

        host = dict(self._target) if self._target is not None else dict(os.environ)
        if host.get(SESSION_MARKER):
            raise AlreadyActiveError(
                f"Environment already belongs to session {host[SESSION_MARKER][:8]} "
                f"({host.get(ENV_MARKER, '?')})"
            )
        layered = layer_environment(
            self.env, host, pure=self.pure, keep=self._keep, session_id=self.session_id
        )

        if self._target is not None:
            self._write(host, layered)
            atexit.register(self.deactivate)
        else:
            self._child_env = layered
        self._transition(SessionState.ACTIVE)
        logger.info(
            "Activated session %s for %s (%d variables).",
            self.session_id[:8], self.env.name, len(self.env.variables),
        )
        return self

    def deactivate(self) -> None:
        """Restore the pre-activation environment. No-op unless active."""
        if self._state is not SessionState.ACTIVE:
            return
        if self._target is not None:
            self._restore(self._saved)
            atexit.unregister(self.deactivate)
        self._saved = {}
        self._child_env = {}
        self._transition(SessionState.DEACTIVATED)
        logger.info("Deactivated session %s.", self.session_id[:8])

    def __enter__(self) -> Session:
        if self._state is SessionState.CREATED:
            self.activate()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.deactivate()

    # ------------------------------------------------------------------
    # In-place writes
    # ------------------------------------------------------------------

    def _write(self, host: Mapping[str, str], layered: Mapping[str, str]) -> None:
        assert self._target is not None
        saved: dict[str, str | None] = {}
        key = ""
        try:
            for key in [k for k in host if k not in layered]:
                saved[key] = host[key]
                del self._target[key]
            for key, value in layered.items():
                if host.get(key) == value:
                    continue
                saved[key] = host.get(key)
                self._target[key] = value
        except (OSError, ValueError, TypeError, KeyError) as exc:
            self._restore(saved)
            raise EnvironmentWriteFailedError(key, str(exc)) from exc
        self._saved = saved

    def _restore(self, saved: Mapping[str, str | None]) -> None:
        assert self._target is not None
        for key, value in saved.items():
            if value is None:
                self._target.pop(key, None)
            else:
                self._target[key] = value

    # ------------------------------------------------------------------
    # Child processes
    # ------------------------------------------------------------------

    def environ(self) -> dict[str, str]:
        """The environment a child process of this session receives."""
        if not self.is_active:
            raise ActivationError(f"Session {self.session_id[:8]} is not active")
        if self._target is not None:
            return dict(self._target)
        return dict(self._child_env)

    def command(self, argv: Sequence[str]) -> list[str]:
        """Wrap *argv* so the shell hook runs first, when there is one."""
        if not self.shell_hook:
            return list(argv)
        script = f'{self.shell_hook}\nexec "$@"'
        return [self._shell, "-c", script, "envforge-hook", *argv]

    def run(self, argv: Sequence[str], **kwargs: object) -> int:
        """Run *argv* inside the session and return its exit code.

        Ctrl-C reaches the child through the terminal, so this process
        ignores SIGINT until the child exits. A child killed by a signal
        returns the negated signal number; see :func:`exit_status`.
        """
        if not argv:
            raise ValueError("run() needs a command")
        env = self.environ()
        try:
            with _interrupt_goes_to_child() as ignoring:
                if ignoring:
                    # an ignored disposition survives exec
                    kwargs.setdefault("preexec_fn", _default_interrupt)
                completed = subprocess.run(self.command(argv), env=env, check=False, **kwargs)
        except OSError as exc:
            raise ActivationError(f"Could not start {argv[0]!r}: {exc}") from exc
        return completed.returncode


class SessionActivator:
    """Creates and activates sessions.

    Parameters
    ----------
    keep:
        Host variables preserved by pure sessions.
    shell:
        Shell used to run a declaration's shell hook.
    """

    def __init__(
        self, *, keep: Iterable[str] = DEFAULT_PURE_KEEP, shell: str = "/bin/sh"
    ) -> None:
        self._keep = tuple(keep)
        self._shell = shell

    def activate(
        self,
        env: EnvironmentDescriptor,
        *,
        target: MutableMapping[str, str] | None = None,
        pure: bool = False,
        shell_hook: str = "",
        cancel: CancellationToken | None = None,
    ) -> Session:
        """Create a session for *env* and activate it."""
        session = Session(
            env,
            target=target,
            pure=pure,
            shell_hook=shell_hook,
            keep=self._keep,
            shell=self._shell,
        )
        return session.activate(cancel=cancel)
