from __future__ import annotations

import logging
from typing import Callable, List, Optional

from .models import AppState


logger = logging.getLogger(__name__)

Subscriber = Callable[[AppState], None]
Mutator = Callable[[AppState], None]


class StaleSessionError(Exception):
    """Raised when a commit targets an epoch that is no longer current."""
    pass


class SessionStore:
    """
    In-memory holder for the observable `AppState` of one client session.

    Usage
    - `begin_epoch()` starts a new session (connect, identity change,
      disconnect) and returns its epoch number. State is reset to empty.
    - `commit(mutator, if_epoch=epoch)` applies `mutator` to a copy of the
      current state and publishes it, but only if `if_epoch` is still the
      current epoch. Otherwise `StaleSessionError` is raised and nothing
      changes (optimistic lock keyed by the epoch captured at dispatch time).
    - `subscribe(fn)` registers an observer called with every new snapshot;
      the returned callable unsubscribes.
    """

    def __init__(self, initial: Optional[AppState] = None) -> None:
        self._state = initial or AppState.empty()
        self._epoch = 0
        self._subscribers: List[Subscriber] = []

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def state(self) -> AppState:
        return self._state

    def begin_epoch(self, initial: Optional[AppState] = None) -> int:
        self._epoch += 1
        self._state = initial or AppState.empty()
        self._publish()
        return self._epoch

    def commit(self, mutator: Mutator, *, if_epoch: Optional[int] = None) -> AppState:
        if if_epoch is not None and if_epoch != self._epoch:
            raise StaleSessionError(
                f"epoch {if_epoch} is stale (current epoch {self._epoch})"
            )
        draft = self._state.model_copy(deep=True)
        mutator(draft)
        self._state = draft
        self._publish()
        return draft

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        self._subscribers.append(fn)

        def _unsubscribe() -> None:
            try:
                self._subscribers.remove(fn)
            except ValueError:
                pass

        return _unsubscribe

    def _publish(self) -> None:
        snapshot = self._state
        for fn in list(self._subscribers):
            try:
                fn(snapshot)
            except Exception:
                # One broken observer must not starve the others
                logger.exception("State subscriber %r failed", fn)
