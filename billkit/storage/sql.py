# billkit/storage/sql.py
import uuid
from typing import Any, Dict, List, Optional, Sequence, Type

from sqlalchemy import delete, func, inspect, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..core.exceptions import BillingError
from ..models.customer import CustomerRecord
from ..models.payment import PaymentRecord
from ..models.subscription import SubscriptionRecord
from ..models.time_travel import TimeTravelRecord
from .base import CUSTOMER, PAYMENT, SUBSCRIPTION, TIME_TRAVEL, Record, SortBy, StorageAdapter, Where, plain, plain_record

TABLE_MODELS = {
    CUSTOMER: CustomerRecord,
    SUBSCRIPTION: SubscriptionRecord,
    PAYMENT: PaymentRecord,
    TIME_TRAVEL: TimeTravelRecord,
}


def _fields(orm_model) -> Dict[str, str]:
    """Storage field name (column name) -> mapped attribute name"""
    return {prop.columns[0].name: prop.key for prop in inspect(orm_model).column_attrs}


class SQLAlchemyStorageAdapter(StorageAdapter):
    """Durable storage over the billkit ORM tables using an async session factory"""

    id = "sqlalchemy"

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        self._field_maps = {name: _fields(model) for name, model in TABLE_MODELS.items()}

    def _model(self, model: str) -> Type:
        try:
            return TABLE_MODELS[model]
        except KeyError:
            raise BillingError(f"Unknown storage model: {model}")

    def _column(self, model: str, field: str):
        attr = self._field_maps[model].get(field)
        if attr is None:
            raise BillingError(f"Unknown field {field} on {model}")
        return getattr(self._model(model), attr)

    def _values(self, model: str, data: Record) -> Dict[str, Any]:
        field_map = self._field_maps[model]
        return {field_map[key]: value for key, value in plain_record(data).items() if key in field_map}

    def _to_record(self, model: str, obj) -> Record:
        return {field: getattr(obj, attr) for field, attr in self._field_maps[model].items()}

    def _clause(self, model: str, where: Where):
        column = self._column(model, where.field)
        value = plain(where.value)
        op = where.operator

        if op == "eq":
            return column.is_(None) if value is None else column == value
        if op == "ne":
            return column.is_not(None) if value is None else column != value
        if op == "gt":
            return column > value
        if op == "gte":
            return column >= value
        if op == "lt":
            return column < value
        if op == "lte":
            return column <= value
        if op == "in":
            return column.in_(list(value or []))
        if op == "contains":
            return column.contains(value, autoescape=True)
        if op == "starts_with":
            return column.startswith(value, autoescape=True)
        return column.endswith(value, autoescape=True)

    def _clauses(self, model: str, where: Optional[Sequence[Where]]) -> List:
        return [self._clause(model, w) for w in (where or [])]

    async def create(self, model: str, data: Record) -> Record:
        orm_model = self._model(model)
        values = self._values(model, data)
        values.setdefault("id", str(uuid.uuid4()))

        async with self.session_factory() as session:
            async with session.begin():
                obj = orm_model(**values)
                session.add(obj)
            return self._to_record(model, obj)

    async def find_one(self, model: str, where: Sequence[Where]) -> Optional[Record]:
        rows = await self.find_many(model, where, limit=1)
        return rows[0] if rows else None

    async def find_many(
        self,
        model: str,
        where: Optional[Sequence[Where]] = None,
        sort_by: Optional[SortBy] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Record]:
        query = select(self._model(model)).where(*self._clauses(model, where))

        if sort_by is not None:
            column = self._column(model, sort_by.field)
            order = column.desc() if sort_by.direction == "desc" else column.asc()
            query = query.order_by(order.nulls_last())
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [self._to_record(model, obj) for obj in result.scalars().all()]

    async def update(self, model: str, where: Sequence[Where], update: Record) -> Optional[Record]:
        query = select(self._model(model)).where(*self._clauses(model, where)).limit(1)
        values = self._values(model, update)

        async with self.session_factory() as session:
            async with session.begin():
                obj = (await session.execute(query)).scalar_one_or_none()
                if obj is None:
                    return None
                for attr, value in values.items():
                    setattr(obj, attr, value)
            return self._to_record(model, obj)

    async def update_many(self, model: str, where: Sequence[Where], update_data: Record) -> int:
        statement = (
            update(self._model(model))
            .where(*self._clauses(model, where))
            .values(**self._values(model, update_data))
        )
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(statement)
            return result.rowcount

    async def delete(self, model: str, where: Sequence[Where]) -> None:
        query = select(self._model(model)).where(*self._clauses(model, where)).limit(1)
        async with self.session_factory() as session:
            async with session.begin():
                obj = (await session.execute(query)).scalar_one_or_none()
                if obj is not None:
                    await session.delete(obj)

    async def delete_many(self, model: str, where: Sequence[Where]) -> int:
        statement = delete(self._model(model)).where(*self._clauses(model, where))
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(statement)
            return result.rowcount

    async def count(self, model: str, where: Optional[Sequence[Where]] = None) -> int:
        query = select(func.count()).select_from(self._model(model)).where(*self._clauses(model, where))
        async with self.session_factory() as session:
            return (await session.execute(query)).scalar_one()
