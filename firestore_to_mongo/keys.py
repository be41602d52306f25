"""Natural-key resolution for source records."""

import re
from typing import Any, Mapping, Optional, Tuple

from .exceptions import RecordValidationError

USERS_COLLECTION = "users"

EMAIL_RE = re.compile(r"^[^@\s/]+@[^@\s/]+\.[^@\s/]+$")


def looks_like_email(value: Any) -> bool:
    return isinstance(value, str) and bool(EMAIL_RE.match(value.strip()))


def key_text(value: Any) -> Optional[str]:
    """Usable key text, or None for missing / blank values."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (dict, list, tuple)):
        return None
    text = str(value).strip()
    return text or None


def resolve_user_key(document_id: str, fields: Mapping[str, Any]) -> Optional[str]:
    """email field, else an email-shaped document id, else uid, else the document id."""
    email = key_text(fields.get("email"))
    if email:
        return email
    if looks_like_email(document_id):
        return document_id.strip()
    return key_text(fields.get("uid")) or key_text(document_id)


def resolve_key(collection_name: str, document_id: str, fields: Optional[Mapping[str, Any]]) -> Optional[str]:
    """
    Natural key for a top-level record.

    The ``id`` field wins when present and non-empty, otherwise the Firestore
    document id. The users collection is addressed by email instead. Returns
    None when nothing usable exists; callers decide how to report that.
    """
    fields = fields or {}
    if collection_name == USERS_COLLECTION:
        return resolve_user_key(document_id, fields)
    return key_text(fields.get("id")) or key_text(document_id)


def resolve_composite_key(parent_key: Optional[str], document_id: str) -> Optional[Tuple[str, str]]:
    """(parent natural key, document id) for sub-collection records."""
    parent = key_text(parent_key)
    child = key_text(document_id)
    if parent is None or child is None:
        return None
    return parent, child


def require_key(collection_name: str, document_id: str, fields: Optional[Mapping[str, Any]]) -> str:
    key = resolve_key(collection_name, document_id, fields)
    if key is None:
        raise RecordValidationError(collection_name, document_id)
    return key


def require_composite_key(collection_name: str, parent_key: Optional[str], document_id: str) -> Tuple[str, str]:
    key = resolve_composite_key(parent_key, document_id)
    if key is None:
        raise RecordValidationError(collection_name, document_id, "no parent key or document id")
    return key
