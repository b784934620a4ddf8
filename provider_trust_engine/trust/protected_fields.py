"""Declared provider profile fields.

Both the update-validation path and the revocation diff read from this module.
"""

from typing import Dict, FrozenSet, Iterable, List

PROTECTED_FIELDS: FrozenSet[str] = frozenset(
    {
        "name",
        "facilityNameFr",
        "facilityNameAr",
        "phone",
        "email",
        "address",
        "city",
        "area",
        "postalCode",
        "legalRegistrationNumber",
        "contactPersonName",
        "contactPersonRole",
        "lat",
        "lng",
    }
)

NON_SENSITIVE_FIELDS: FrozenSet[str] = frozenset(
    {
        "description",
        "services",
        "specialties",
        "specialty",
        "schedule",
        "accessibilityFeatures",
        "accessible",
        "homeVisitAvailable",
        "emergency",
        "gallery",
        "image",
        "socialLinks",
        "website",
        "insuranceAccepted",
        "insurances",
        "consultationFee",
        "languages",
        "departments",
        "keywords",
        "equipment",
        "imagingTypes",
        "bloodTypes",
        "stockStatus",
        "urgentNeed",
        "productCategories",
        "offersRental",
        "offersDelivery",
    }
)

EDITABLE_FIELDS: FrozenSet[str] = PROTECTED_FIELDS | NON_SENSITIVE_FIELDS

PROTECTED_FIELD_LABELS: Dict[str, str] = {
    "name": "Facility name",
    "facilityNameFr": "Name (French)",
    "facilityNameAr": "Name (Arabic)",
    "phone": "Phone",
    "email": "Official email",
    "address": "Address",
    "city": "City",
    "area": "Area",
    "postalCode": "Postal code",
    "legalRegistrationNumber": "Legal registration number",
    "contactPersonName": "Contact name",
    "contactPersonRole": "Contact role",
    "lat": "GPS location",
    "lng": "GPS location",
}


def is_protected(field_key: str) -> bool:
    return field_key in PROTECTED_FIELDS


def describe_modified_fields(modified_fields: Iterable[str], limit: int = 2) -> str:
    """Human summary for admins: at most ``limit`` labels, then "and N others"."""
    modified = list(modified_fields)
    labels: List[str] = []
    for key in modified:
        label = PROTECTED_FIELD_LABELS.get(key, key)
        if label not in labels:
            labels.append(label)
    if len(labels) > limit:
        return f"{', '.join(labels[:limit])} and {len(labels) - limit} others"
    return ", ".join(labels)
