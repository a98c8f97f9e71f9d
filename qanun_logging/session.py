"""
Session id propagation for log lines.

Each document review session gets its own id; everything logged inside
``session_scope`` carries it as ``sessionId``.
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from .logger import session_id_var


def get_session_id() -> Optional[str]:
    """Return the session id bound to the current context."""
    return session_id_var.get()


@contextmanager
def session_scope(session_id: Optional[str]) -> Iterator[Optional[str]]:
    """Bind ``session_id`` for the duration of the block, then restore."""
    token = session_id_var.set(session_id)
    try:
        yield session_id
    finally:
        session_id_var.reset(token)
