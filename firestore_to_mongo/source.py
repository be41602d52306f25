"""Read side: enumerate Firestore collections and their sub-collections."""

import logging
import sys
from typing import List, Optional

from google.api_core.exceptions import (
    Aborted,
    DeadlineExceeded,
    GoogleAPICallError,
    InternalServerError,
    NotFound,
    PermissionDenied,
    RetryError,
    ServiceUnavailable,
    Unauthenticated,
)
from google.cloud import firestore

from .exceptions import SourceUnavailableError, TransientIOError
from .models import SourceRecord
from .retry import NO_RETRY, RetryPolicy

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (ServiceUnavailable, DeadlineExceeded, InternalServerError, Aborted, RetryError)


class FirestoreSource:
    """
    Two-level reader over a Firestore database.

    Every call is a fresh full read of the collection; results are
    materialised so a retry re-reads from the start instead of resuming a
    half-consumed stream.
    """

    def __init__(self, client: firestore.Client, retry: RetryPolicy = NO_RETRY):
        self.client = client
        self.retry = retry

    def preflight(self, collection_name: str) -> None:
        """Read a single document so permission problems surface before any write."""
        try:
            _ = next(iter(self.client.collection(collection_name).limit(1).stream()), None)
        except (PermissionDenied, Unauthenticated) as e:
            print(
                f"[FATAL] PermissionDenied on SOURCE (project={self.client.project}).\n"
                "Fixes:\n"
                " - Enable firestore.googleapis.com on the project.\n"
                " - Grant the service account roles/datastore.viewer (or higher).\n"
                " - Ensure the database name exists (Console → Firestore → Databases).\n",
                file=sys.stderr,
            )
            raise SourceUnavailableError(f"Firestore refused access: {e}") from e
        except (GoogleAPICallError, RetryError) as e:
            raise SourceUnavailableError(f"Firestore is not reachable: {e}") from e

    def list_top_level(self, collection_name: str) -> List[SourceRecord]:
        return self.retry.call(
            self._read,
            collection_name,
            None,
            description=f"read {collection_name}",
        )

    def list_subcollection(self, parent_path: str, sub_name: str) -> List[SourceRecord]:
        """
        Documents of ``parent_path/sub_name``. A sub-collection that cannot be
        read is logged and treated as empty so the parent's migration goes on.
        """
        try:
            return self.retry.call(
                self._read,
                sub_name,
                parent_path,
                description=f"read {parent_path}/{sub_name}",
            )
        except TransientIOError as e:
            logger.warning(f"[WARN] Giving up on {parent_path}/{sub_name}, treating as empty: {e}")
        except (PermissionDenied, NotFound) as e:
            logger.warning(f"[WARN] Cannot read {parent_path}/{sub_name} ({type(e).__name__}), treating as empty")
        except GoogleAPICallError as e:
            logger.warning(f"[WARN] Read of {parent_path}/{sub_name} failed, treating as empty: {e}")
        return []

    def _read(self, collection_name: str, parent_path: Optional[str]) -> List[SourceRecord]:
        if parent_path:
            col = self.client.document(parent_path).collection(collection_name)
        else:
            col = self.client.collection(collection_name)
        try:
            return [
                SourceRecord(
                    collection_name=collection_name,
                    document_id=snap.id,
                    fields=snap.to_dict() or {},
                    parent_path=parent_path,
                )
                for snap in col.stream()
            ]
        except TRANSIENT_ERRORS as e:
            where = f"{parent_path}/{collection_name}" if parent_path else collection_name
            raise TransientIOError(f"Firestore read of {where} failed: {e}", e) from e
