"""
Record shapes: how a normalized Firestore document is projected into a
MongoDB document. The plan refers to shapes by name.

  document      all fields as-is (the default)
  app_user      the slim account record the backend authenticates against
  user_profile  the full profile the UI reads, plus id/email/uid

Shapes never invent time-based values (no "now" defaults) so that running
the migration twice over the same source produces the same target.
"""

from typing import Any, Callable, Dict, Optional

from .exceptions import ConfigurationError
from .keys import key_text, looks_like_email
from .models import SourceRecord
from .normalize import to_millis

Shape = Callable[[SourceRecord, Dict[str, Any], str], Dict[str, Any]]


def _first(fields: Dict[str, Any], *names: str) -> Any:
    for name in names:
        value = fields.get(name)
        if value not in (None, ""):
            return value
    return None


def _user_email(record: SourceRecord) -> Optional[str]:
    email = key_text(record.fields.get("email"))
    if email:
        return email
    if looks_like_email(record.document_id):
        return record.document_id.strip()
    return None


def _user_uid(record: SourceRecord) -> str:
    return key_text(record.fields.get("uid")) or record.document_id


def shape_document(record: SourceRecord, fields: Dict[str, Any], key: str) -> Dict[str, Any]:
    return dict(fields)


def shape_app_user(record: SourceRecord, fields: Dict[str, Any], key: str) -> Dict[str, Any]:
    roles = fields.get("roles")
    doc = {
        "uid": _user_uid(record),
        "email": _user_email(record),
        "phone": _first(fields, "phoneNumber", "phone"),
        "roles": roles if isinstance(roles, list) and roles else ["user"],
        "status": fields.get("status") or "active",
        "mfaEnrolled": bool(fields.get("mfaEnrolled")),
    }
    display_name = _first(fields, "name", "displayName")
    if display_name is not None:
        doc["displayName"] = display_name
    photo = _first(fields, "avatarUrl", "photoURL")
    if photo is not None:
        doc["photoURL"] = photo
    created_at = to_millis(fields.get("createdAt"))
    if created_at is not None:
        doc["createdAt"] = created_at
    last_login = to_millis(fields.get("lastLoginAt"))
    if last_login is None:
        last_login = to_millis(fields.get("updatedAt"))
    if last_login is not None:
        doc["lastLoginAt"] = last_login
    return doc


def shape_user_profile(record: SourceRecord, fields: Dict[str, Any], key: str) -> Dict[str, Any]:
    doc = dict(fields)
    doc["email"] = _user_email(record)
    doc["uid"] = _user_uid(record)
    return doc


SHAPES: Dict[str, Shape] = {
    "document": shape_document,
    "app_user": shape_app_user,
    "user_profile": shape_user_profile,
}


def get_shape(name: str) -> Shape:
    try:
        return SHAPES[name]
    except KeyError:
        raise ConfigurationError(f"Unknown record shape {name!r}; known: {', '.join(sorted(SHAPES))}") from None
