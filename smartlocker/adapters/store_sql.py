import copy
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from smartlocker.adapters.db_models import Base, DocumentRow
from smartlocker.adapters.store import (
    BaseStateStore,
    WriteRule,
    get_in,
    join_path,
    merge_fields,
    set_in,
    split_path,
)
from smartlocker.domain.errors import TransportError

"""
Backend SQL (SQLAlchemy async) del store de documentos.

Granularidad: una fila por documento de profundidad 2 ("coleccion/clave").
Lecturas o escrituras mas profundas operan dentro del JSON de la fila;
lecturas menos profundas arman el arbol con todas las filas del prefijo.
compare_and_set usa la columna version (UPDATE ... WHERE version = :v).
"""

logger = logging.getLogger(__name__)

DOC_DEPTH = 2


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _doc_key(parts: List[str]) -> str:
    return "/".join(parts[:DOC_DEPTH])


class SqlStateStore(BaseStateStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], rules: Optional[List[WriteRule]] = None):
        super().__init__(rules)
        self.session_factory = session_factory

    async def _read(self, path: str) -> Any:
        parts = split_path(path)
        try:
            async with self.session_factory() as session:
                if len(parts) >= DOC_DEPTH:
                    row = await session.get(DocumentRow, _doc_key(parts))
                    if row is None:
                        return None
                    return copy.deepcopy(get_in(row.value, parts[DOC_DEPTH:]))

                stmt = select(DocumentRow)
                if parts:
                    stmt = stmt.where(DocumentRow.path.like(f"{join_path(*parts)}/%"))
                rows = (await session.execute(stmt)).scalars().all()
        except DBAPIError as dbex:
            raise TransportError(str(dbex.__cause__ or dbex)) from dbex

        tree: Dict = {}
        for row in rows:
            tree = set_in(tree, split_path(row.path)[len(parts):], row.value)
        return tree or None

    async def _write(self, writes: Dict[str, Any]) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for path, value in writes.items():
                        await self._write_one(session, split_path(path), value)
        except DBAPIError as dbex:
            raise TransportError(str(dbex.__cause__ or dbex)) from dbex

    async def _write_one(self, session: AsyncSession, parts: List[str], value: Any) -> None:
        if len(parts) < DOC_DEPTH:
            # reemplazo de una coleccion entera (o del root)
            stmt = delete(DocumentRow)
            if parts:
                stmt = stmt.where(DocumentRow.path.like(f"{join_path(*parts)}/%"))
            await session.execute(stmt)
            if value is None:
                return
            if not isinstance(value, dict):
                raise ValueError(f"cannot store a scalar at {join_path(*parts)!r}")
            for key, child in value.items():
                await self._write_one(session, parts + [key], child)
            return

        key = _doc_key(parts)
        row = await session.get(DocumentRow, key)
        if len(parts) == DOC_DEPTH:
            new_value = copy.deepcopy(value)
        else:
            current = row.value if row is not None else None
            new_value = merge_fields(current, {join_path(*parts[DOC_DEPTH:]): value})

        if new_value is None or new_value == {}:
            if row is not None:
                await session.delete(row)
            return
        if row is None:
            session.add(DocumentRow(path=key, value=new_value, version=1))
        else:
            row.value = new_value
            row.version = row.version + 1

    async def _cas(self, path: str, expected: Any, new: Any) -> bool:
        parts = split_path(path)
        if len(parts) < DOC_DEPTH:
            raise ValueError("compare_and_set works on documents or their fields")
        key = _doc_key(parts)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    row = await session.get(DocumentRow, key)
                    current = get_in(row.value, parts[DOC_DEPTH:]) if row is not None else None
                    if current != expected:
                        return False

                    if len(parts) == DOC_DEPTH:
                        new_value = copy.deepcopy(new)
                    else:
                        new_value = merge_fields(row.value if row is not None else None, {join_path(*parts[DOC_DEPTH:]): new})

                    if row is None:
                        session.add(DocumentRow(path=key, value=new_value, version=1))
                        return True

                    stmt = (
                        update(DocumentRow)
                        .where(DocumentRow.path == key, DocumentRow.version == row.version)
                        .values(value=new_value, version=row.version + 1)
                        .execution_options(synchronize_session=False)
                    )
                    res = await session.execute(stmt)
                    return res.rowcount == 1
        except IntegrityError:
            # otra sesion inserto el documento primero
            return False
        except DBAPIError as dbex:
            raise TransportError(str(dbex.__cause__ or dbex)) from dbex
