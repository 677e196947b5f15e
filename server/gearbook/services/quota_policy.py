"""Layered quota policy values and the most-permissive merge.

Each quota dimension is a tagged value:

* ``UNSET``: the layer is absent, contributes nothing.
* ``UNLIMITED``: the layer is present but leaves the field empty.
* ``Limit(n)``: a numeric cap.

Merging is associative and commutative with ``UNSET`` as identity, so the
order in which role overrides are applied never matters. Note that a present
layer with an empty field produces ``UNLIMITED``, and ``UNLIMITED`` beats any
number: a role override that only raises ``max_active_count`` lifts the other
three shared limits too.
"""

from dataclasses import dataclass, fields, replace
from datetime import timedelta
from enum import Enum
from typing import Any, Iterable, Optional

from ..models.quota import CLASS_ONLY_FIELDS, SHARED_LIMIT_FIELDS

# Trailing windows for the rolling hour limits, ending at "now"
HOURS_7D_WINDOW = timedelta(days=7)
HOURS_30D_WINDOW = timedelta(days=30)


class LimitKind(str, Enum):
    UNSET = "unset"
    UNLIMITED = "unlimited"
    LIMIT = "limit"


@dataclass(frozen=True)
class LimitValue:
    kind: LimitKind
    value: Optional[int] = None

    @classmethod
    def limit(cls, value: int) -> "LimitValue":
        return cls(LimitKind.LIMIT, value)

    @classmethod
    def from_column(cls, value: Optional[int]) -> "LimitValue":
        """Interpret a nullable column of a layer row that exists."""
        return UNLIMITED if value is None else cls.limit(value)

    @property
    def is_limited(self) -> bool:
        return self.kind == LimitKind.LIMIT

    def as_optional(self) -> Optional[int]:
        """Numeric cap, or None when nothing caps this dimension."""
        return self.value if self.is_limited else None

    def __repr__(self) -> str:
        if self.is_limited:
            return f"Limit({self.value})"
        return self.kind.name


UNSET = LimitValue(LimitKind.UNSET)
UNLIMITED = LimitValue(LimitKind.UNLIMITED)


def merge_most_permissive(a: LimitValue, b: LimitValue) -> LimitValue:
    """Combine two layers' values for one dimension, keeping the looser one."""
    if a.kind == LimitKind.UNSET:
        return b
    if b.kind == LimitKind.UNSET:
        return a
    if a.kind == LimitKind.UNLIMITED or b.kind == LimitKind.UNLIMITED:
        return UNLIMITED
    return a if a.value >= b.value else b


@dataclass(frozen=True)
class EffectiveQuotaLimits:
    """Merged limits for one (guild, roles, resource class) request. Not persisted."""

    max_active_count: LimitValue = UNSET
    max_overlap_count: LimitValue = UNSET
    max_hours_7d: LimitValue = UNSET
    max_hours_30d: LimitValue = UNSET
    max_duration_hours: LimitValue = UNSET
    min_lead_time_minutes: LimitValue = UNSET
    max_lead_time_days: LimitValue = UNSET

    @classmethod
    def from_layer(cls, row: Any, class_fields: bool = False) -> "EffectiveQuotaLimits":
        """Build the values contributed by one existing policy row."""
        names = SHARED_LIMIT_FIELDS + (CLASS_ONLY_FIELDS if class_fields else ())
        return cls(**{name: LimitValue.from_column(getattr(row, name)) for name in names})

    def merge_shared(self, other: "EffectiveQuotaLimits") -> "EffectiveQuotaLimits":
        """Most-permissive merge of the four shared dimensions; class-only fields keep self's values."""
        return replace(
            self,
            **{
                name: merge_most_permissive(getattr(self, name), getattr(other, name))
                for name in SHARED_LIMIT_FIELDS
            },
        )

    def with_class_constraints(self, class_layer: "EffectiveQuotaLimits") -> "EffectiveQuotaLimits":
        """Take duration and lead-time limits straight from the class layer."""
        return replace(self, **{name: getattr(class_layer, name) for name in CLASS_ONLY_FIELDS})

    def to_optional_dict(self) -> dict[str, Optional[int]]:
        return {f.name: getattr(self, f.name).as_optional() for f in fields(self)}


def merge_layers(base: EffectiveQuotaLimits, overrides: Iterable[EffectiveQuotaLimits]) -> EffectiveQuotaLimits:
    result = base
    for layer in overrides:
        result = result.merge_shared(layer)
    return result
