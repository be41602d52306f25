"""
Firestore service-account resolution.

Credentials are looked up through an ordered chain of providers; the first
provider that is configured wins:

  1. FIREBASE_SERVICE_ACCOUNT_KEY_BASE64  base64-encoded service-account JSON
  2. FIREBASE_CREDENTIALS_FILE            path to the JSON (as given, then ../path)
  3. FIREBASE_SERVICE_ACCOUNT_KEY         inline JSON, optionally quoted
  4. FIREBASE_PROJECT_ID + FIREBASE_CLIENT_EMAIL + FIREBASE_PRIVATE_KEY

A provider that is not configured returns None and the next one is tried.
A provider that is configured but broken raises ConfigurationError; we do
not silently fall through to a different identity.
"""

import base64
import binascii
import json
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from google.auth.exceptions import GoogleAuthError
from google.cloud import firestore
from google.oauth2 import service_account

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
DEFAULT_DATABASE_ID = "(default)"

ServiceAccountInfo = Dict[str, Any]


class CredentialProvider:
    """One way of finding a service-account JSON."""

    name = "provider"

    def load(self, env: Mapping[str, str]) -> Optional[ServiceAccountInfo]:
        raise NotImplementedError


class Base64EnvProvider(CredentialProvider):
    name = "FIREBASE_SERVICE_ACCOUNT_KEY_BASE64"

    def load(self, env):
        raw = env.get(self.name)
        if not raw:
            return None
        try:
            decoded = base64.b64decode(raw, validate=False).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ConfigurationError(f"{self.name} is not valid base64: {e}") from e
        return _parse_json(decoded, self.name)


class CredentialsFileProvider(CredentialProvider):
    name = "FIREBASE_CREDENTIALS_FILE"

    def __init__(self, cwd: Optional[Path] = None):
        self.cwd = cwd

    def load(self, env):
        raw = env.get(self.name)
        if not raw:
            return None
        cwd = self.cwd or Path.cwd()
        given = Path(raw)
        candidates = [given if given.is_absolute() else cwd / given, cwd.parent / raw]
        for path in candidates:
            if path.is_file():
                logger.debug(f"Reading service account from {path}")
                return _parse_json(path.read_text(encoding="utf-8"), f"{self.name} ({path})")
        tried = ", ".join(str(p) for p in candidates)
        raise ConfigurationError(f"{self.name} points to a missing file (tried {tried})")


class InlineJsonProvider(CredentialProvider):
    name = "FIREBASE_SERVICE_ACCOUNT_KEY"

    def load(self, env):
        raw = env.get(self.name)
        if not raw:
            return None
        raw = raw.strip()
        # Strip quotes if present (.env files and CI secrets often keep them)
        if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
            raw = raw[1:-1]
        return _parse_json(raw, self.name)


class DiscreteEnvProvider(CredentialProvider):
    name = "FIREBASE_PROJECT_ID/FIREBASE_CLIENT_EMAIL/FIREBASE_PRIVATE_KEY"

    def load(self, env):
        project_id = env.get("FIREBASE_PROJECT_ID")
        client_email = env.get("FIREBASE_CLIENT_EMAIL")
        private_key = env.get("FIREBASE_PRIVATE_KEY")
        if not (project_id and client_email and private_key):
            return None
        return {
            "type": "service_account",
            "project_id": project_id,
            "client_email": client_email,
            "private_key": private_key.replace("\\n", "\n"),
            "token_uri": DEFAULT_TOKEN_URI,
        }


DEFAULT_PROVIDERS: Tuple[CredentialProvider, ...] = (
    Base64EnvProvider(),
    CredentialsFileProvider(),
    InlineJsonProvider(),
    DiscreteEnvProvider(),
)


def resolve_service_account(
    env: Optional[Mapping[str, str]] = None,
    providers: Sequence[CredentialProvider] = DEFAULT_PROVIDERS,
) -> Tuple[str, ServiceAccountInfo]:
    """Return (provider name, service-account info) from the first configured provider."""
    env = os.environ if env is None else env
    for provider in providers:
        info = provider.load(env)
        if info is None:
            continue
        if not isinstance(info, dict):
            raise ConfigurationError(f"{provider.name} does not contain a JSON object")
        info.setdefault("token_uri", DEFAULT_TOKEN_URI)
        logger.info(f"Using Firebase credentials from {provider.name}")
        return provider.name, info
    names: List[str] = [p.name for p in providers]
    raise ConfigurationError("Missing Firebase Admin credentials. Set one of: " + ", ".join(names))


def build_credentials(info: ServiceAccountInfo) -> service_account.Credentials:
    """Turn service-account info into google-auth credentials, without any network I/O."""
    try:
        return service_account.Credentials.from_service_account_info(info)
    except (ValueError, KeyError, GoogleAuthError) as e:
        raise ConfigurationError(f"Invalid Firebase service account: {e}") from e


@contextmanager
def open_firestore(
    info: ServiceAccountInfo,
    database_id: str = DEFAULT_DATABASE_ID,
) -> Iterator[firestore.Client]:
    """Yield a Firestore client for the service account and close it on exit."""
    creds = build_credentials(info)
    project_id = info.get("project_id")
    if not project_id:
        raise ConfigurationError("Firebase service account has no project_id")
    client = firestore.Client(project=project_id, database=database_id, credentials=creds)
    logger.info(f"Firestore client ready: project={project_id}, database={database_id}")
    try:
        yield client
    finally:
        client.close()
        logger.debug("Firestore client closed")


def _parse_json(raw: str, label: str) -> ServiceAccountInfo:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{label} is not valid JSON: {e}") from e
