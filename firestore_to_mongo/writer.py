"""Write side: idempotent, unordered bulk upserts into MongoDB."""

import logging
from contextlib import contextmanager
from typing import Iterable, Iterator, List, Sequence, Set, Tuple

from pymongo import ASCENDING, MongoClient, UpdateOne
from pymongo.database import Database
from pymongo.errors import (
    AutoReconnect,
    BulkWriteError,
    ConnectionFailure,
    NetworkTimeout,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)
from pymongo.errors import ConfigurationError as MongoConfigurationError

from .config import MongoSettings
from .exceptions import ConfigurationError, PartialBatchFailure, TargetUnavailableError, TransientIOError
from .models import NaturalKey, NormalizedRecord, UpsertBatchResult

logger = logging.getLogger(__name__)

SERVER_SELECTION_TIMEOUT_MS = 10_000

TRANSIENT_ERRORS = (AutoReconnect, NetworkTimeout, ServerSelectionTimeoutError, ConnectionFailure)

# IndexOptionsConflict, IndexKeySpecsConflict, IndexAlreadyExists
INDEX_EXISTS_CODES = {85, 86, 68}


def index_name(key_fields: Sequence[str]) -> str:
    return "uniq_" + "_".join(key_fields)


@contextmanager
def open_mongo(settings: MongoSettings) -> Iterator[Database]:
    """Yield the target database and close the client on exit."""
    try:
        client = MongoClient(settings.uri, serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS)
    except (MongoConfigurationError, ValueError) as e:
        # bad ports and options surface as ValueError from the URI parser
        raise ConfigurationError(f"Invalid MONGODB_URI: {e}") from e
    try:
        yield client[settings.database]
    finally:
        client.close()
        logger.debug("MongoDB client closed")


def ping_mongo(db: Database) -> None:
    try:
        db.client.admin.command("ping")
    except PyMongoError as e:
        raise TargetUnavailableError(f"MongoDB is not reachable: {e}") from e


class MongoWriter:
    """
    Upserts NormalizedRecords by their natural key.

    Each record becomes ``UpdateOne({key fields}, {"$set": fields}, upsert=True)``;
    the full field map is replaced on every run, so re-running with the same
    source data leaves the target unchanged (0 upserted, 0 modified).
    The writer never retries; callers wrap ``upsert_batch`` in a RetryPolicy.

    Batches are unordered: when some operations fail the rest still commit,
    and PartialBatchFailure carries the counts plus the failed keys.
    """

    def __init__(self, db: Database):
        self.db = db
        self._indexed: Set[Tuple[str, Tuple[str, ...]]] = set()

    def ping(self) -> None:
        ping_mongo(self.db)

    def ensure_unique_index(self, collection_name: str, key_fields: Sequence[str]) -> None:
        marker = (collection_name, tuple(key_fields))
        if marker in self._indexed:
            return
        spec = [(f, ASCENDING) for f in key_fields]
        try:
            self.db[collection_name].create_index(spec, unique=True, name=index_name(key_fields))
            logger.debug(f"Unique index on {collection_name}({', '.join(key_fields)}) ready")
        except OperationFailure as e:
            if e.code not in INDEX_EXISTS_CODES:
                raise
            logger.info(f"Index on {collection_name}({', '.join(key_fields)}) already exists: {e.details}")
        except TRANSIENT_ERRORS as e:
            raise TransientIOError(f"create_index on {collection_name} failed: {e}", e) from e
        self._indexed.add(marker)

    def upsert_batch(
        self,
        collection_name: str,
        key_fields: Sequence[str],
        records: Sequence[NormalizedRecord],
    ) -> UpsertBatchResult:
        if not records:
            return UpsertBatchResult()
        self.ensure_unique_index(collection_name, key_fields)

        ops: List[UpdateOne] = []
        keys: List[NaturalKey] = []
        for record in records:
            filter_doc = {f: record.fields[f] for f in key_fields}
            ops.append(UpdateOne(filter_doc, {"$set": record.fields}, upsert=True))
            keys.append(record.natural_key)

        try:
            result = self.db[collection_name].bulk_write(ops, ordered=False)
        except BulkWriteError as e:
            raise PartialBatchFailure(collection_name, _partial_result(collection_name, e.details, keys)) from e
        except TRANSIENT_ERRORS as e:
            raise TransientIOError(f"bulk_write to {collection_name} failed: {e}", e) from e

        return UpsertBatchResult(
            upserted_count=result.upserted_count,
            modified_count=result.modified_count,
            matched_count=result.matched_count,
        )


def _partial_result(collection_name: str, details: dict, keys: Sequence[NaturalKey]) -> UpsertBatchResult:
    failed: List[NaturalKey] = []
    for err in details.get("writeErrors", []):
        key = keys[err["index"]] if 0 <= err.get("index", -1) < len(keys) else None
        logger.error(
            f"[ERROR] write to {collection_name} failed for key={key}: "
            f"code={err.get('code')} {err.get('errmsg', '')}"
        )
        if key is not None:
            failed.append(key)
    for err in details.get("writeConcernErrors", []):
        logger.error(f"[ERROR] write concern error on {collection_name}: {err.get('errmsg', err)}")
    return UpsertBatchResult(
        upserted_count=details.get("nUpserted", 0),
        modified_count=details.get("nModified", 0),
        matched_count=details.get("nMatched", 0),
        failed_keys=failed,
    )


def chunked(items: Iterable, size: int) -> Iterable[list]:
    batch = []
    for item in items:
        batch.append(item)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch
