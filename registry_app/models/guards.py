"""
Mapper-level guards for append-only tables.

Version rows, change sources and audit entries are written once and then only
superseded. The listeners below refuse any flush that would rewrite or remove
them, so the guarantee holds no matter which code path touches the session.
"""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.orm import object_session


class ImmutableRecordError(RuntimeError):
    """Raised when an append-only row would be updated or deleted."""


def _refuse_update(mapper, connection, target) -> None:
    session = object_session(target)
    # Collection changes (e.g. a new version appended to a source) leave the row itself untouched.
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    raise ImmutableRecordError(f"{type(target).__name__} {getattr(target, 'id', None)} is append-only")


def _refuse_delete(mapper, connection, target) -> None:
    raise ImmutableRecordError(f"{type(target).__name__} {getattr(target, 'id', None)} cannot be deleted")


def append_only(model_cls):
    """Class decorator registering the update/delete guards on ``model_cls``."""

    event.listen(model_cls, "before_update", _refuse_update)
    event.listen(model_cls, "before_delete", _refuse_delete)
    return model_cls
