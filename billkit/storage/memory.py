# billkit/storage/memory.py
import copy
import uuid
from typing import Any, Dict, List, Optional, Sequence

from .base import Record, SortBy, StorageAdapter, Where, plain, plain_record


def _compare(value: Any, operator: str, target: Any) -> bool:
    if operator == "eq":
        return value == target
    if operator == "ne":
        return value != target
    if operator == "in":
        return value in (target or [])

    if operator in ("contains", "starts_with", "ends_with"):
        if not isinstance(value, str) or not isinstance(target, str):
            return False
        if operator == "contains":
            return target in value
        if operator == "starts_with":
            return value.startswith(target)
        return value.endswith(target)

    # Ordering comparisons never match a missing value
    if value is None or target is None:
        return False
    try:
        if operator == "gt":
            return value > target
        if operator == "gte":
            return value >= target
        if operator == "lt":
            return value < target
        if operator == "lte":
            return value <= target
    except TypeError:
        return False
    return False


def matches(record: Record, where: Sequence[Where]) -> bool:
    return all(_compare(record.get(w.field), w.operator, plain(w.value)) for w in where)


def _sorted(records: List[Record], sort_by: Optional[SortBy]) -> List[Record]:
    if sort_by is None:
        return records

    present = [r for r in records if r.get(sort_by.field) is not None]
    missing = [r for r in records if r.get(sort_by.field) is None]
    present.sort(key=lambda r: r[sort_by.field], reverse=sort_by.direction == "desc")
    # Nulls last in both directions
    return present + missing


class MemoryStorageAdapter(StorageAdapter):
    """
    In-process storage for tests and development.

    Each instance owns its own tables; records are deep-copied on the way
    in and out so callers never hold references into the store.
    """

    id = "memory"

    def __init__(self):
        self._tables: Dict[str, Dict[str, Record]] = {}

    def _table(self, model: str) -> Dict[str, Record]:
        return self._tables.setdefault(model, {})

    def _select(self, model: str, where: Optional[Sequence[Where]]) -> List[Record]:
        # Insertion order keeps unsorted results stable
        return [r for r in self._table(model).values() if matches(r, where or [])]

    async def create(self, model: str, data: Record) -> Record:
        record = copy.deepcopy(plain_record(data))
        record.setdefault("id", str(uuid.uuid4()))
        self._table(model)[record["id"]] = record
        return copy.deepcopy(record)

    async def find_one(self, model: str, where: Sequence[Where]) -> Optional[Record]:
        found = self._select(model, where)
        return copy.deepcopy(found[0]) if found else None

    async def find_many(
        self,
        model: str,
        where: Optional[Sequence[Where]] = None,
        sort_by: Optional[SortBy] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Record]:
        records = _sorted(self._select(model, where), sort_by)
        start = offset or 0
        end = start + limit if limit is not None else None
        return [copy.deepcopy(r) for r in records[start:end]]

    async def update(self, model: str, where: Sequence[Where], update: Record) -> Optional[Record]:
        found = self._select(model, where)
        if not found:
            return None
        record = found[0]
        record.update(copy.deepcopy(plain_record(update)))
        return copy.deepcopy(record)

    async def update_many(self, model: str, where: Sequence[Where], update: Record) -> int:
        found = self._select(model, where)
        values = plain_record(update)
        for record in found:
            record.update(copy.deepcopy(values))
        return len(found)

    async def delete(self, model: str, where: Sequence[Where]) -> None:
        found = self._select(model, where)
        if found:
            del self._table(model)[found[0]["id"]]

    async def delete_many(self, model: str, where: Sequence[Where]) -> int:
        found = self._select(model, where)
        table = self._table(model)
        for record in found:
            del table[record["id"]]
        return len(found)

    async def count(self, model: str, where: Optional[Sequence[Where]] = None) -> int:
        return len(self._select(model, where))
