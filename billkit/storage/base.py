# billkit/storage/base.py
"""
Storage adapter interface.

The engine only speaks this vocabulary: named models, lists of Where
clauses, one SortBy, limit/offset. Backends translate it to whatever they
store records in.
"""
import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

CUSTOMER = "customer"
SUBSCRIPTION = "subscription"
PAYMENT = "payment"
TIME_TRAVEL = "time_travel_state"

MODELS = (CUSTOMER, SUBSCRIPTION, PAYMENT, TIME_TRAVEL)

OPERATORS = (
    "eq", "ne", "gt", "gte", "lt", "lte", "in", "contains", "starts_with", "ends_with",
)

Record = Dict[str, Any]


@dataclass(frozen=True)
class Where:
    field: str
    operator: str
    value: Any

    def __post_init__(self):
        if self.operator not in OPERATORS:
            raise ValueError(f"Unsupported where operator: {self.operator}")


@dataclass(frozen=True)
class SortBy:
    field: str
    direction: str = "asc"


def eq(field: str, value: Any) -> Where:
    return Where(field, "eq", value)


def plain(value: Any) -> Any:
    """Strip enums down to their stored value, recursively for lists"""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [plain(item) for item in value]
    return value


def plain_record(data: Record) -> Record:
    return {key: plain(value) for key, value in data.items()}


class StorageAdapter(ABC):
    id = "abstract"

    @abstractmethod
    async def create(self, model: str, data: Record) -> Record:
        ...

    @abstractmethod
    async def find_one(self, model: str, where: Sequence[Where]) -> Optional[Record]:
        ...

    @abstractmethod
    async def find_many(
        self,
        model: str,
        where: Optional[Sequence[Where]] = None,
        sort_by: Optional[SortBy] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[Record]:
        ...

    @abstractmethod
    async def update(self, model: str, where: Sequence[Where], update: Record) -> Optional[Record]:
        ...

    @abstractmethod
    async def update_many(self, model: str, where: Sequence[Where], update: Record) -> int:
        ...

    @abstractmethod
    async def delete(self, model: str, where: Sequence[Where]) -> None:
        ...

    @abstractmethod
    async def delete_many(self, model: str, where: Sequence[Where]) -> int:
        ...

    @abstractmethod
    async def count(self, model: str, where: Optional[Sequence[Where]] = None) -> int:
        ...
