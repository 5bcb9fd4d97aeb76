"""
BaseService -- abstract base for the kernel's stateful services.

Responsibility:
    Provides the common constructor and transaction contract for every
    service that reads or writes posting state (claims, audit events, jobs,
    periods, reference data).

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Every public operation runs in its own short transaction opened from
      the injected ``sessionmaker`` and is committed before it returns, so
      concurrent handlers observe each step immediately.
    - Services never hold a session between calls.

Failure modes:
    - Any exception inside ``_scope()`` rolls the transaction back and
      propagates unchanged.
"""

from abc import ABC
from contextlib import contextmanager
from typing import Generator

from sqlalchemy.orm import Session, sessionmaker

from posting_kernel.db.engine import session_scope
from posting_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for kernel services.

    Contract:
        Accepts a ``sessionmaker`` and an optional ``Clock``.  Subclasses
        wrap each public operation in ``with self._scope() as session``.

    Non-goals:
        - Does NOT share a session with the caller.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    @property
    def clock(self) -> Clock:
        return self._clock

    @contextmanager
    def _scope(self) -> Generator[Session, None, None]:
        with session_scope(self._session_factory) as session:
            yield session
