import math
from typing import Any, Iterable, List, Mapping, Optional

from provider_trust_engine.trust.errors import InvalidProfileUpdate
from provider_trust_engine.trust.protected_fields import EDITABLE_FIELDS, PROTECTED_FIELDS

COORDINATE_TOLERANCE = 1e-7


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def values_equal(proposed: Any, current: Any) -> bool:
    if isinstance(proposed, str) and isinstance(current, str):
        return proposed.strip() == current.strip()
    if _is_number(proposed) and _is_number(current):
        return math.isclose(proposed, current, rel_tol=0.0, abs_tol=COORDINATE_TOLERANCE)
    return proposed == current


def diff(
    proposed_update: Mapping[str, Any],
    snapshot: Optional[Mapping[str, Any]],
    protected_fields: Iterable[str] = PROTECTED_FIELDS,
) -> List[str]:
    """Return the protected keys of ``proposed_update`` whose value differs from ``snapshot``.

    A key absent from the snapshot counts as modified when the update sets it.
    The order follows the update's key order.
    """
    protected = set(protected_fields)
    snapshot = snapshot or {}
    modified: List[str] = []
    for key, value in proposed_update.items():
        if key not in protected:
            continue
        if key not in snapshot:
            if value is not None:
                modified.append(key)
            continue
        if not values_equal(value, snapshot[key]):
            modified.append(key)
    return modified


def validate_profile_update(update: Mapping[str, Any]) -> None:
    if not update:
        raise InvalidProfileUpdate("Profile update is empty")
    unknown = sorted(key for key in update if key not in EDITABLE_FIELDS)
    if unknown:
        raise InvalidProfileUpdate(
            f"Unknown profile fields: {', '.join(unknown)}", unknown_fields=unknown
        )
