from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.engine import Engine

from common.db import from_db_timestamp


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def rows_to_dicts(rows: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    return [dict(row) for row in rows]


def ts(value: Optional[str]):
    return from_db_timestamp(value)


class Repository:
    """Base de los repositorios: SQL ``text()`` síncrono sobre un Engine.

    Todas las consultas filtran por ``org_id``. Los métodos son bloqueantes;
    los endpoints los llaman con ``run_in_threadpool``.
    """

    def __init__(self, engine: Engine):
        self._engine = engine
