"""
Plan-driven Firestore -> MongoDB migration.

For every plan entry, in order:

  1. read the top-level collection,
  2. normalize, shape and key every document (un-keyable ones are skipped),
  3. upsert in unordered batches, plus any companion collections,
  4. fan out into the entry's sub-collections for each parent that was
     written, keying children by (parent natural key, document id).

Record and batch failures are logged and counted; they never stop the run.
SIGINT/SIGTERM let the in-flight batch finish and then stop cleanly.
"""

import logging
import signal
import threading
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Set

from google.api_core.exceptions import GoogleAPICallError
from pymongo.errors import PyMongoError
from tqdm import tqdm

from .exceptions import PartialBatchFailure, RecordValidationError, TransientIOError
from .keys import require_composite_key, require_key
from .models import (
    CollectionStats,
    MigrationPlanEntry,
    MigrationSummary,
    NaturalKey,
    NormalizedRecord,
    SourceRecord,
    SubcollectionSpec,
    UpsertBatchResult,
)
from .normalize import normalize_fields
from .retry import NO_RETRY, RetryPolicy
from .shapes import get_shape
from .source import FirestoreSource
from .writer import MongoWriter, chunked

logger = logging.getLogger(__name__)


class GracefulShutdown:
    """Turns SIGINT/SIGTERM into a flag checked between batches."""

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self):
        self.requested = False
        self._previous = {}

    def request(self, signum=None, frame=None) -> None:
        if not self.requested:
            name = signal.Signals(signum).name if signum else "stop request"
            logger.warning(f"Received {name}, finishing the current batch and stopping...")
        self.requested = True

    def __enter__(self) -> "GracefulShutdown":
        # signal.signal only works from the main thread
        if threading.current_thread() is threading.main_thread():
            for sig in self.SIGNALS:
                self._previous[sig] = signal.signal(sig, self.request)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)
        self._previous.clear()


class Migrator:
    def __init__(
        self,
        source: FirestoreSource,
        writer: MongoWriter,
        retry: RetryPolicy = NO_RETRY,
        batch_size: int = 500,
        show_progress: bool = True,
        shutdown: Optional[GracefulShutdown] = None,
    ):
        self.source = source
        self.writer = writer
        self.retry = retry
        self.batch_size = batch_size
        self.show_progress = show_progress
        self.shutdown = shutdown or GracefulShutdown()
        self._seen: Dict[str, Set[NaturalKey]] = defaultdict(set)
        self._summary = MigrationSummary()

    # ---------- public ----------

    def run(self, plan: Sequence[MigrationPlanEntry]) -> MigrationSummary:
        self._seen = defaultdict(set)
        self._summary = MigrationSummary()
        for entry in plan:
            if self._stopping():
                break
            parents = self._migrate_entry(entry)
            for sub in entry.subcollections:
                if self._stopping():
                    break
                self._migrate_subcollection(entry, sub, parents)
        self._summary.cancelled = self.shutdown.requested
        logger.info(
            f"Migration {'cancelled' if self._summary.cancelled else 'complete'}. "
            f"Documents upserted/updated: {self._summary.total_migrated}"
        )
        return self._summary

    # ---------- top-level collections ----------

    def _migrate_entry(self, entry: MigrationPlanEntry) -> Dict[str, str]:
        """Migrate one top-level collection; returns {natural key: Firestore path} of written parents."""
        stats = self._summary.collection(entry.target_collection)
        for companion in entry.companions:
            self._summary.collection(companion.target_collection)

        try:
            records = self.source.list_top_level(entry.source_collection)
        except (TransientIOError, GoogleAPICallError) as e:
            logger.error(f"[ERROR] Could not read {entry.source_collection}, skipping it: {e}")
            return {}
        stats.read += len(records)
        logger.info(f"Found {len(records)} {entry.source_collection} docs.")

        shape = get_shape(entry.shape)
        main: List[NormalizedRecord] = []
        companions: Dict[str, List[NormalizedRecord]] = {c.target_collection: [] for c in entry.companions}
        parents: Dict[str, str] = {}

        for record in tqdm(records, desc=f"Preparing {entry.source_collection}", unit="doc",
                           disable=not self.show_progress):
            try:
                fields = normalize_fields(record.fields)
                key = require_key(entry.source_collection, record.document_id, fields)
                doc = shape(record, fields, key)
                doc[entry.key_field] = key
                c_docs = {}
                for companion in entry.companions:
                    c_doc = get_shape(companion.shape)(record, fields, key)
                    c_doc[entry.key_field] = key
                    c_docs[companion.target_collection] = c_doc
            except RecordValidationError as e:
                logger.warning(f"[WARN] Skipping {record.path}: {e.reason}")
                stats.skipped += 1
                continue
            except Exception as e:
                logger.error(f"[ERROR] Skipping {record.path}, could not prepare it: {e!r}")
                stats.skipped += 1
                continue
            natural_key = (key,)
            if not self._claim(entry.target_collection, natural_key, record, stats):
                continue

            main.append(NormalizedRecord(natural_key, entry.target_collection, doc, record.path))
            for target, c_doc in c_docs.items():
                companions[target].append(NormalizedRecord(natural_key, target, c_doc, record.path))
            parents[key] = record.path

        failed = self._write(entry.target_collection, entry.key_fields, main, stats)
        for target, c_records in companions.items():
            self._write(target, entry.key_fields, c_records, self._summary.collection(target))
        self._log_collection(entry.target_collection, stats)
        for target in companions:
            self._log_collection(target, self._summary.collection(target))

        for natural_key in failed:
            parents.pop(natural_key[0], None)
        return parents

    # ---------- sub-collection fan-out ----------

    def _migrate_subcollection(self, entry: MigrationPlanEntry, sub: SubcollectionSpec,
                               parents: Dict[str, str]) -> None:
        stats = self._summary.collection(sub.target_collection)
        shape = get_shape(sub.shape)
        buffer: List[NormalizedRecord] = []

        for parent_key, parent_path in tqdm(parents.items(), total=len(parents), unit="parent",
                                            desc=f"Fan-out {entry.source_collection}/*/{sub.name}",
                                            disable=not self.show_progress):
            if self._stopping():
                break
            children = self.source.list_subcollection(parent_path, sub.name)
            stats.read += len(children)
            for record in children:
                try:
                    natural_key = require_composite_key(sub.target_collection, parent_key, record.document_id)
                    doc = shape(record, normalize_fields(record.fields), natural_key[1])
                    doc[sub.parent_key_field] = natural_key[0]
                    doc[sub.key_field] = natural_key[1]
                except RecordValidationError as e:
                    logger.warning(f"[WARN] Skipping {record.path}: {e.reason}")
                    stats.skipped += 1
                    continue
                except Exception as e:
                    logger.error(f"[ERROR] Skipping {record.path}, could not prepare it: {e!r}")
                    stats.skipped += 1
                    continue
                if not self._claim(sub.target_collection, natural_key, record, stats):
                    continue
                buffer.append(NormalizedRecord(natural_key, sub.target_collection, doc, record.path))
            if len(buffer) >= self.batch_size:
                self._write(sub.target_collection, sub.key_fields, buffer, stats)
                buffer = []

        if buffer and not self._stopping():
            self._write(sub.target_collection, sub.key_fields, buffer, stats)
        self._log_collection(f"{sub.target_collection} (from {entry.source_collection}/*/{sub.name})", stats)

    # ---------- helpers ----------

    def _claim(self, target: str, natural_key: NaturalKey, record: SourceRecord, stats: CollectionStats) -> bool:
        """First record with a given key in a target collection wins for this run."""
        seen = self._seen[target]
        if natural_key in seen:
            logger.warning(f"[WARN] Duplicate key {natural_key} for {target} from {record.path}, skipping")
            stats.duplicates += 1
            return False
        seen.add(natural_key)
        return True

    def _write(self, target: str, key_fields: Sequence[str], records: Sequence[NormalizedRecord],
               stats: CollectionStats) -> List[NaturalKey]:
        """Upsert ``records`` in batches; returns the keys that could not be written."""
        failed: List[NaturalKey] = []
        for batch in chunked(records, self.batch_size):
            if self._stopping():
                break
            result = self._write_batch(target, key_fields, batch)
            stats.add_batch(result)
            failed.extend(result.failed_keys)
        return failed

    def _write_batch(self, target: str, key_fields: Sequence[str],
                     batch: Sequence[NormalizedRecord]) -> UpsertBatchResult:
        try:
            return self.retry.call(
                self.writer.upsert_batch, target, key_fields, batch,
                description=f"upsert {len(batch)} into {target}",
            )
        except PartialBatchFailure as e:
            logger.warning(f"[WARN] {e}")
            return e.result
        except (TransientIOError, PyMongoError) as e:
            logger.error(f"[ERROR] Batch of {len(batch)} into {target} failed: {e}")
            for record in batch:
                logger.error(f"[ERROR]   not written: {target} key={record.natural_key} source={record.source_path}")
            return UpsertBatchResult(failed_keys=[r.natural_key for r in batch])

    def _stopping(self) -> bool:
        return self.shutdown.requested

    @staticmethod
    def _log_collection(label: str, stats: CollectionStats) -> None:
        counts = stats.as_dict()
        logger.info(
            f"{label}: read={counts['read']} migrated={counts['migrated']} "
            f"(upserted={counts['upserted']} modified={counts['modified']} unchanged={counts['unchanged']}) "
            f"skipped={counts['skipped']} duplicates={counts['duplicates']} failed={counts['failed']}"
        )
