"""Database layer - engine, base classes, types, and immutability listeners."""

from posting_kernel.db.base import Base, TrackedBase, UTCDateTime, UUIDString
from posting_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from posting_kernel.db.types import ZERO, round_money, to_decimal

__all__ = [
    "Base",
    "TrackedBase",
    "UTCDateTime",
    "UUIDString",
    "create_tables",
    "get_engine",
    "get_session_factory",
    "init_engine_from_url",
    "reset_engine",
    "session_scope",
    "ZERO",
    "round_money",
    "to_decimal",
]
