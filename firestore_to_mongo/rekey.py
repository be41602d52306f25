"""
Re-key a user collection from uid to email.

Every record is considered once:

  Pending  -> Skipped        no email, or already stored under its email
  Pending  -> Migrated       --apply: merged copy written under the email,
                             with uid=<old key> and migratedFromUid=True
  Migrated -> DeletedSource  --apply --delete-old: old record removed

Without --apply nothing is written; records that would move stay Pending
and are only reported.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from google.api_core.exceptions import GoogleAPICallError, RetryError
from google.cloud import firestore
from pymongo.database import Database
from pymongo.errors import PyMongoError

from .exceptions import TransientIOError
from .models import IdentityMapping, MappingStatus, RekeySummary
from .retry import NO_RETRY, RetryPolicy

logger = logging.getLogger(__name__)

PROVENANCE_FLAG = "migratedFromUid"

StoredRecord = Tuple[str, Dict[str, Any]]


class KeyedCollection:
    """A collection whose records are addressed by a single string key."""

    label = "collection"

    def list_records(self) -> List[StoredRecord]:
        raise NotImplementedError

    def write_merged(self, key: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        """Remove the record; False when nothing was removed."""
        raise NotImplementedError


class MongoKeyedCollection(KeyedCollection):
    """Records in MongoDB keyed by ``key_field`` (``id`` for migrated collections)."""

    def __init__(self, db: Database, collection_name: str, key_field: str = "id"):
        self.collection = db[collection_name]
        self.key_field = key_field
        self.label = f"mongo:{collection_name}.{key_field}"
        # stored key values (int, ObjectId, ...) by their text form
        self._stored_keys: Dict[str, Any] = {}

    def list_records(self):
        try:
            records = []
            for doc in self.collection.find({self.key_field: {"$exists": True}}):
                key = str(doc[self.key_field])
                self._stored_keys[key] = doc[self.key_field]
                records.append((key, {k: v for k, v in doc.items() if k != "_id"}))
            return records
        except PyMongoError as e:
            raise TransientIOError(f"Reading {self.label} failed: {e}", e) from e

    def write_merged(self, key, fields):
        payload = {k: v for k, v in fields.items() if k != "_id"}
        if self.key_field != "_id":
            payload[self.key_field] = key
        try:
            self.collection.update_one({self.key_field: key}, {"$set": payload}, upsert=True)
        except PyMongoError as e:
            raise TransientIOError(f"Writing {self.label}/{key} failed: {e}", e) from e

    def delete(self, key):
        try:
            result = self.collection.delete_one({self.key_field: self._stored_keys.get(key, key)})
        except PyMongoError as e:
            raise TransientIOError(f"Deleting {self.label}/{key} failed: {e}", e) from e
        return result.deleted_count > 0


class FirestoreKeyedCollection(KeyedCollection):
    """Firestore documents keyed by their document id."""

    def __init__(self, client: firestore.Client, collection_name: str):
        self.collection = client.collection(collection_name)
        self.label = f"firestore:{collection_name}"

    def list_records(self):
        try:
            return [(snap.id, snap.to_dict() or {}) for snap in self.collection.stream()]
        except (GoogleAPICallError, RetryError) as e:
            raise TransientIOError(f"Reading {self.label} failed: {e}", e) from e

    def write_merged(self, key, fields):
        try:
            self.collection.document(key).set(fields, merge=True)
        except (GoogleAPICallError, RetryError) as e:
            raise TransientIOError(f"Writing {self.label}/{key} failed: {e}", e) from e

    def delete(self, key):
        try:
            self.collection.document(key).delete()
        except (GoogleAPICallError, RetryError) as e:
            raise TransientIOError(f"Deleting {self.label}/{key} failed: {e}", e) from e
        return True


def derive_new_key(fields: Dict[str, Any]) -> Optional[str]:
    email = fields.get("email")
    if isinstance(email, str) and email.strip():
        return email.strip()
    return None


def plan_mappings(records: List[StoredRecord]) -> List[IdentityMapping]:
    """Scan pass: decide, without touching storage, what happens to each record."""
    mappings = []
    for old_key, fields in records:
        new_key = derive_new_key(fields)
        mapping = IdentityMapping(old_key=old_key, new_key=new_key)
        if new_key is None:
            mapping.status = MappingStatus.SKIPPED
            mapping.reason = "no email field"
        elif new_key == old_key:
            mapping.status = MappingStatus.SKIPPED
            mapping.reason = "already keyed by email"
        mappings.append(mapping)
    return mappings


def rekey_collection(
    store: KeyedCollection,
    apply: bool = False,
    delete_old: bool = False,
    retry: RetryPolicy = NO_RETRY,
) -> Tuple[RekeySummary, List[IdentityMapping]]:
    logger.info(f"[rekey] Scanning {store.label}...")
    records = retry.call(store.list_records, description=f"scan {store.label}")
    fields_by_key = dict(records)
    mappings = plan_mappings(records)
    summary = RekeySummary(considered=len(mappings))

    for mapping in mappings:
        if mapping.status is MappingStatus.SKIPPED:
            summary.skipped += 1
            if mapping.reason == "no email field":
                logger.info(f"- skip: {mapping.old_key} has no email field")
            continue

        if not apply:
            logger.info(f"[DRY-RUN] would migrate: {mapping.old_key} -> {mapping.new_key}")
            continue

        logger.info(f"- migrate: {mapping.old_key} -> {mapping.new_key}")
        payload = dict(fields_by_key[mapping.old_key])
        payload["uid"] = mapping.old_key
        payload[PROVENANCE_FLAG] = True
        try:
            retry.call(store.write_merged, mapping.new_key, payload,
                       description=f"write {store.label}/{mapping.new_key}")
        except TransientIOError as e:
            logger.error(f"[ERROR] Could not copy {mapping.old_key} -> {mapping.new_key}: {e}")
            summary.failed += 1
            continue
        mapping.status = MappingStatus.MIGRATED
        summary.migrated += 1

        if delete_old:
            try:
                deleted = retry.call(store.delete, mapping.old_key,
                                     description=f"delete {store.label}/{mapping.old_key}")
            except TransientIOError as e:
                logger.error(f"[ERROR] Copied {mapping.old_key} but could not delete it: {e}")
                summary.failed += 1
                continue
            if not deleted:
                logger.error(f"[ERROR] Copied {mapping.old_key} but the old record was not found to delete")
                summary.failed += 1
                continue
            mapping.status = MappingStatus.DELETED_SOURCE
            summary.deleted += 1

    return summary, mappings
