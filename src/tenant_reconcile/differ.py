from __future__ import annotations

from typing import Any, Iterable, List

from .models import Difference, UserRecord

LIST_SEPARATOR = "; "


def serialize_value(value: Any) -> str:
    """Render an attribute value for comparison and display.

    Absent values become an empty string and multi-valued attributes are
    joined in their listed order.
    """
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return LIST_SEPARATOR.join("" if item is None else str(item) for item in value)
    return str(value)


def unique_attributes(attributes: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(attributes))


def diff(source: UserRecord, destination: UserRecord, attributes: Iterable[str]) -> List[Difference]:
    # Exact comparison: case and whitespace differences are reported.
    differences: List[Difference] = []
    for attribute in unique_attributes(attributes):
        source_value = serialize_value(source.get(attribute))
        destination_value = serialize_value(destination.get(attribute))
        if source_value != destination_value:
            differences.append(
                Difference(
                    attribute=attribute,
                    source_value=source_value,
                    destination_value=destination_value,
                )
            )
    return differences
