"""
Field policy table for merging fetched snapshots into persisted entities.

One table per entity type says how each field behaves on update; the merge
engine applies it generically.
"""

import enum
from typing import Any, Dict, List, Mapping, Optional


class FieldPolicy(str, enum.Enum):
    # Snapshot value always replaces the stored value
    ALWAYS_OVERWRITE = "always_overwrite"
    # Replaces only when the snapshot carries a value (not None)
    OVERWRITE_IF_PRESENT = "overwrite_if_present"
    # Boolean that never goes back from True
    STICKY_TRUE = "sticky_true"


LISTING_FIELD_POLICIES: Dict[str, FieldPolicy] = {
    "title": FieldPolicy.ALWAYS_OVERWRITE,
    "price": FieldPolicy.ALWAYS_OVERWRITE,
    "stock": FieldPolicy.ALWAYS_OVERWRITE,
    "status": FieldPolicy.ALWAYS_OVERWRITE,
    "health_score": FieldPolicy.ALWAYS_OVERWRITE,

    "category_id": FieldPolicy.OVERWRITE_IF_PRESENT,
    "permalink": FieldPolicy.OVERWRITE_IF_PRESENT,
    "description": FieldPolicy.OVERWRITE_IF_PRESENT,
    "thumbnail": FieldPolicy.OVERWRITE_IF_PRESENT,
    "pictures": FieldPolicy.OVERWRITE_IF_PRESENT,
    "pictures_count": FieldPolicy.OVERWRITE_IF_PRESENT,
    "variations_count": FieldPolicy.OVERWRITE_IF_PRESENT,
    "visits_last_7d": FieldPolicy.OVERWRITE_IF_PRESENT,
    "sales_last_7d": FieldPolicy.OVERWRITE_IF_PRESENT,

    "has_video": FieldPolicy.STICKY_TRUE,
    "has_clips": FieldPolicy.STICKY_TRUE,
}

# Values used only when a field is absent at creation time
LISTING_CREATE_DEFAULTS: Dict[str, Any] = {
    "pictures_count": 0,
    "variations_count": 0,
}


def merge_sticky_true(prior: Optional[bool], incoming: Optional[bool]) -> Optional[bool]:
    """
    Merge a tri-state boolean that must not regress from True.

    True wins; a confirmed False applies only over a non-True prior; None
    (undetectable) keeps the prior value.
    """
    if prior is True or incoming is True:
        return True
    if incoming is False:
        return False
    return prior


def merge_value(policy: FieldPolicy, prior: Any, incoming: Any) -> Any:
    if policy is FieldPolicy.ALWAYS_OVERWRITE:
        return incoming
    if policy is FieldPolicy.OVERWRITE_IF_PRESENT:
        return incoming if incoming is not None else prior
    if policy is FieldPolicy.STICKY_TRUE:
        return merge_sticky_true(prior, incoming)
    raise ValueError(f"Unknown field policy: {policy}")


def creation_values(incoming: Mapping[str, Any], policies: Mapping[str, FieldPolicy],
                    defaults: Mapping[str, Any]) -> Dict[str, Any]:
    """Initial column values for a new entity; sticky fields start as the raw signal (None stays None)."""
    values = {}
    for field_name in policies:
        value = incoming.get(field_name)
        if value is None:
            value = defaults.get(field_name)
        values[field_name] = value
    return values


def apply_policies(entity: Any, incoming: Mapping[str, Any],
                   policies: Mapping[str, FieldPolicy]) -> List[str]:
    """
    Merge ``incoming`` into ``entity`` in place.

    Returns:
        Names of fields whose value actually changed.
    """
    changed = []
    for field_name, policy in policies.items():
        prior = getattr(entity, field_name)
        merged = merge_value(policy, prior, incoming.get(field_name))
        if not same_value(prior, merged):
            setattr(entity, field_name, merged)
            changed.append(field_name)
    return changed


def same_value(a: Any, b: Any) -> bool:
    # Numeric columns come back as Decimal while snapshots carry floats
    if a is None or b is None:
        return a is b
    if isinstance(a, bool) or isinstance(b, bool):
        return a == b
    try:
        return float(a) == float(b)
    except (TypeError, ValueError):
        return a == b
