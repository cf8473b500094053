"""The narrow storage capability the observer service runs against.

Callers pass an :class:`Executor` into every service call. A SQLAlchemy
``Session`` satisfies it; whoever opened the session decides when to commit,
so several service calls can share one transaction.
"""
from __future__ import annotations

from typing import Any, Protocol

from sqlalchemy.dialects import postgresql, sqlite


class Executor(Protocol):
    def execute(self, statement: Any, params: Any = None, **kw: Any) -> Any: ...

    def scalar(self, statement: Any, params: Any = None, **kw: Any) -> Any: ...

    def scalars(self, statement: Any, params: Any = None, **kw: Any) -> Any: ...

    def get(self, entity: Any, ident: Any, **kw: Any) -> Any: ...

    def add(self, instance: Any, _warn: bool = True) -> None: ...

    def flush(self, objects: Any = None) -> None: ...

    def get_bind(self, *args: Any, **kw: Any) -> Any: ...


_UPSERT_DIALECTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def upsert_statement(executor: Executor, model):
    """Return an ``INSERT`` construct supporting ``on_conflict_do_*`` for the bound dialect."""
    dialect = executor.get_bind().dialect.name
    try:
        insert = _UPSERT_DIALECTS[dialect]
    except KeyError:
        raise RuntimeError(f"Atomic upsert is not supported on dialect '{dialect}'") from None
    return insert(model)
