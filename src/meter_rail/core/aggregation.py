"""
Aggregation Reducers

Reduce the raw events of one (meter, user, period) into a single value.
Reducers are pure: the same events always produce the same aggregate,
which is what makes recomputation idempotent.
"""

from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple
import json


class AggregationType(Enum):
    """Reduction applied to a meter's events."""
    COUNT = "count"
    SUM = "sum"
    MAX = "max"
    UNIQUE = "unique"
    DURATION = "duration"


def _distinct_key(properties: Optional[Mapping[str, Any]], unique_property: Optional[str]) -> Optional[str]:
    """
    Key under which an event counts as distinct.

    With a unique_property, the value of that property (None when absent,
    so the event is ignored). Without one, the canonical JSON of the whole
    property payload.
    """
    properties = properties or {}
    if unique_property:
        if unique_property not in properties or properties[unique_property] is None:
            return None
        return json.dumps(properties[unique_property], sort_keys=True, default=str)
    return json.dumps(properties, sort_keys=True, default=str)


def aggregate_events(
    aggregation_type: AggregationType,
    events: Iterable[Any],
    unique_property: Optional[str] = None,
) -> Tuple[float, int]:
    """
    Aggregate events.

    Events need `event_value` and `properties` attributes (UsageEvent rows).

    Returns (aggregate_value, event_count).
    """
    aggregation_type = AggregationType(aggregation_type)
    values = []
    distinct = set()
    count = 0

    for event in events:
        count += 1
        values.append(float(event.event_value))
        if aggregation_type == AggregationType.UNIQUE:
            key = _distinct_key(event.properties, unique_property)
            if key is not None:
                distinct.add(key)

    if count == 0:
        return 0.0, 0

    if aggregation_type == AggregationType.COUNT:
        value = float(count)
    elif aggregation_type in (AggregationType.SUM, AggregationType.DURATION):
        value = sum(values)
    elif aggregation_type == AggregationType.MAX:
        value = max(values)
    else:
        value = float(len(distinct))

    return value, count


def summarize_by_key(rows: Iterable[Dict[str, Any]], key: str) -> Dict[str, float]:
    """Sum aggregate_value of aggregate rows grouped by a column."""
    totals: Dict[str, float] = {}
    for row in rows:
        group = row[key]
        totals[group] = totals.get(group, 0.0) + float(row["aggregate_value"] or 0)
    return totals
