"""Request/response types for the Gripp API and sync results."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

__all__ = [
    "EQUALS",
    "GREATEREQUALS",
    "LESS",
    "LESSEQUALS",
    "BETWEEN",
    "Filter",
    "Paging",
    "Ordering",
    "RequestOptions",
    "CallDescriptor",
    "PagingInfo",
    "RemoteResult",
    "EntitySyncResult",
    "RunResult",
]

# Filter operators understood by the API
EQUALS = "equals"
GREATEREQUALS = "greaterequals"
LESS = "less"
LESSEQUALS = "lessequals"
BETWEEN = "between"


@dataclass(frozen=True)
class Filter:
    """A single `{field, operator, value}` filter triple."""

    field: str
    operator: str
    value: Any
    value2: Any = None

    def to_dict(self) -> dict:
        data = {"field": self.field, "operator": self.operator, "value": self.value}
        if self.value2 is not None:
            data["value2"] = self.value2
        return data


@dataclass(frozen=True)
class Paging:
    firstresult: int = 0
    maxresults: int = 250

    def to_dict(self) -> dict:
        return {"firstresult": self.firstresult, "maxresults": self.maxresults}


@dataclass(frozen=True)
class Ordering:
    field: str
    direction: str = "asc"

    def to_dict(self) -> dict:
        return {"field": self.field, "direction": self.direction}


@dataclass(frozen=True)
class RequestOptions:
    """Second element of the `params` pair: paging and orderings."""

    paging: Optional[Paging] = None
    orderings: tuple[Ordering, ...] = ()

    def to_dict(self) -> dict:
        data: dict = {}
        if self.paging is not None:
            data["paging"] = self.paging.to_dict()
        if self.orderings:
            data["orderings"] = [o.to_dict() for o in self.orderings]
        return data


@dataclass(frozen=True)
class CallDescriptor:
    """One JSON-RPC style call as sent on the wire."""

    method: str
    filters: tuple[Filter, ...] = ()
    options: RequestOptions = field(default_factory=RequestOptions)
    id: int = 0

    def to_dict(self) -> dict:
        return {
            "method": self.method,
            "params": [[f.to_dict() for f in self.filters], self.options.to_dict()],
            "id": self.id,
        }


@dataclass
class PagingInfo:
    """Paging block echoed back by the API."""

    firstresult: int = 0
    maxresults: int = 0
    count: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> "PagingInfo":
        return cls(
            firstresult=int(data.get("firstresult") or 0),
            maxresults=int(data.get("maxresults") or 0),
            count=int(data.get("count") or 0),
        )


@dataclass
class RemoteResult:
    """Deserialized result of one call."""

    rows: list[dict]
    paging: Optional[PagingInfo] = None
    more_items: Optional[bool] = None

    @classmethod
    def from_payload(cls, result: Any) -> "RemoteResult":
        """Build from the `result` member of a response element.

        The API answers either with a bare array of rows or with an object
        holding `rows` plus optional paging metadata.
        """
        if isinstance(result, list):
            return cls(rows=result)

        rows = result.get("rows") or []
        paging = result.get("paging")
        more = result.get("more_items_in_collection")
        return cls(
            rows=list(rows),
            paging=PagingInfo.from_dict(paging) if isinstance(paging, dict) else None,
            more_items=bool(more) if more is not None else None,
        )


@dataclass
class EntitySyncResult:
    """Outcome of one entity routine."""

    entity: str
    status: str = "pending"
    mode: str = "full"
    rows_synced: int = 0
    rows_skipped: int = 0
    pages_fetched: int = 0
    pages_skipped: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[dict] = None

    @property
    def partial_failures(self) -> int:
        return self.pages_skipped + self.rows_skipped

    @property
    def success(self) -> bool:
        return self.status == "success"


@dataclass
class RunResult:
    """Outcome of a full run over several entities."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    entities: list[EntitySyncResult] = field(default_factory=list)
    error: Optional[dict] = None
    stopped: bool = False

    @property
    def success(self) -> bool:
        return self.error is None and all(
            r.success or r.status == "skipped" for r in self.entities
        )

    @property
    def rows_synced(self) -> int:
        return sum(r.rows_synced for r in self.entities)

    def get(self, entity: str) -> Optional[EntitySyncResult]:
        for result in self.entities:
            if result.entity == entity:
                return result
        return None
