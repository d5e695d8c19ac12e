from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

AttributeValue = Union[str, Sequence[str], None]


@dataclass(frozen=True)
class UserRecord:
    """Snapshot of one directory user as listed at the start of a run.

    Attribute values are plain strings or lists of strings. The snapshot is
    never updated after a merge; changes only go to the remote directory.
    """

    id: str
    user_principal_name: str
    attributes: Mapping[str, AttributeValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        frozen = {
            name: tuple(value) if isinstance(value, list) else value
            for name, value in dict(self.attributes).items()
        }
        object.__setattr__(self, "attributes", MappingProxyType(frozen))

    def get(self, attribute: str) -> AttributeValue:
        return self.attributes.get(attribute)

    @classmethod
    def from_graph(cls, item: Mapping[str, Any], attributes: Iterable[str]) -> "UserRecord":
        return cls(
            id=str(item["id"]),
            user_principal_name=str(item.get("userPrincipalName") or ""),
            attributes={name: item.get(name) for name in attributes},
        )


@dataclass(frozen=True)
class MatchedPair:
    source: UserRecord
    destination: UserRecord


@dataclass(frozen=True)
class Difference:
    attribute: str
    source_value: str
    destination_value: str

    def describe(self) -> str:
        return f"{self.attribute}: '{self.source_value}' -> '{self.destination_value}'"


class Decision(str, Enum):
    MERGE_TO_DESTINATION = "merge_to_destination"
    MERGE_TO_SOURCE = "merge_to_source"
    SKIP = "skip"
    FLAG = "flag"


class FlaggedEntry(BaseModel):
    source_upn: str
    destination_upn: str
    differences: str
    note: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @classmethod
    def from_pair(
        cls, pair: MatchedPair, differences: Sequence[Difference], note: Optional[str]
    ) -> "FlaggedEntry":
        return cls(
            source_upn=pair.source.user_principal_name,
            destination_upn=pair.destination.user_principal_name,
            differences=" | ".join(diff.describe() for diff in differences),
            note=note or None,
        )


@dataclass
class SessionCounters:
    processed: int = 0
    with_differences: int = 0
    merged_to_destination: int = 0
    merged_to_source: int = 0
    skipped: int = 0
    no_match: int = 0
    errors: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, values: Mapping[str, int]) -> "SessionCounters":
        known = {f.name for f in fields(cls)}
        return cls(**{k: int(v) for k, v in values.items() if k in known})


class Checkpoint(BaseModel):
    """Persisted progress of a reconciliation run."""

    processed: List[str] = Field(default_factory=list)
    merged_to_destination: int = 0
    merged_to_source: int = 0
    skipped: int = 0
    errors: int = 0
    with_differences: int = 0
    no_match: int = 0
    flagged: List[FlaggedEntry] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    @field_validator("processed")
    @classmethod
    def unique_processed(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(value))

    @classmethod
    def capture(
        cls,
        processed: Iterable[str],
        counters: SessionCounters,
        flagged: Iterable[FlaggedEntry],
    ) -> "Checkpoint":
        values = counters.as_dict()
        values.pop("processed")
        return cls(processed=list(processed), flagged=list(flagged), **values)

    def counters(self) -> SessionCounters:
        return SessionCounters(
            processed=len(self.processed),
            with_differences=self.with_differences,
            merged_to_destination=self.merged_to_destination,
            merged_to_source=self.merged_to_source,
            skipped=self.skipped,
            no_match=self.no_match,
            errors=self.errors,
        )
