"""Records, plan entries and result types shared by the migration tools."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

NaturalKey = Tuple[str, ...]


@dataclass(frozen=True)
class SourceRecord:
    """One Firestore document as read from the source."""

    collection_name: str
    document_id: str
    fields: Dict[str, Any]
    parent_path: Optional[str] = None

    @property
    def path(self) -> str:
        if self.parent_path:
            return f"{self.parent_path}/{self.collection_name}/{self.document_id}"
        return f"{self.collection_name}/{self.document_id}"


@dataclass
class NormalizedRecord:
    """A record ready for MongoDB: timestamps are epoch millis, key fields are set."""

    natural_key: NaturalKey
    target_collection: str
    fields: Dict[str, Any]
    source_path: str = ""


@dataclass(frozen=True)
class CompanionSpec:
    """An extra projection of the same source document written under the same key."""

    target_collection: str
    shape: str = "document"


@dataclass(frozen=True)
class SubcollectionSpec:
    name: str
    target_collection: str
    parent_key_field: str
    key_field: str = "id"
    shape: str = "document"

    @property
    def key_fields(self) -> Tuple[str, str]:
        return (self.parent_key_field, self.key_field)


@dataclass(frozen=True)
class MigrationPlanEntry:
    source_collection: str
    target_collection: str
    key_field: str = "id"
    shape: str = "document"
    companions: Tuple[CompanionSpec, ...] = ()
    subcollections: Tuple[SubcollectionSpec, ...] = ()

    @property
    def has_subcollections(self) -> bool:
        return bool(self.subcollections)

    @property
    def key_fields(self) -> Tuple[str]:
        return (self.key_field,)


@dataclass
class UpsertBatchResult:
    upserted_count: int = 0
    modified_count: int = 0
    matched_count: int = 0
    failed_keys: List[NaturalKey] = field(default_factory=list)

    @property
    def migrated(self) -> int:
        return self.upserted_count + self.modified_count


@dataclass
class CollectionStats:
    """Running counters for one target collection."""

    read: int = 0
    upserted: int = 0
    modified: int = 0
    matched: int = 0
    skipped: int = 0
    duplicates: int = 0
    failed: int = 0

    @property
    def migrated(self) -> int:
        return self.upserted + self.modified

    def add_batch(self, result: UpsertBatchResult) -> None:
        self.upserted += result.upserted_count
        self.modified += result.modified_count
        self.matched += result.matched_count
        self.failed += len(result.failed_keys)

    def as_dict(self) -> Dict[str, int]:
        return {
            "read": self.read,
            "migrated": self.migrated,
            "upserted": self.upserted,
            "modified": self.modified,
            "unchanged": max(self.matched - self.modified, 0),
            "skipped": self.skipped,
            "duplicates": self.duplicates,
            "failed": self.failed,
        }


@dataclass
class MigrationSummary:
    stats: Dict[str, CollectionStats] = field(default_factory=dict)
    cancelled: bool = False

    def collection(self, name: str) -> CollectionStats:
        if name not in self.stats:
            self.stats[name] = CollectionStats()
        return self.stats[name]

    @property
    def total_migrated(self) -> int:
        return sum(s.migrated for s in self.stats.values())

    @property
    def per_collection(self) -> Dict[str, int]:
        return {name: s.migrated for name, s in self.stats.items()}

    @property
    def total_skipped(self) -> int:
        return sum(s.skipped + s.duplicates for s in self.stats.values())

    @property
    def total_failed(self) -> int:
        return sum(s.failed for s in self.stats.values())

    def as_dict(self) -> Dict[str, Any]:
        return {
            "totalMigrated": self.total_migrated,
            "perCollection": self.per_collection,
            "skipped": self.total_skipped,
            "failed": self.total_failed,
            "cancelled": self.cancelled,
        }


class MappingStatus(str, Enum):
    PENDING = "Pending"
    SKIPPED = "Skipped"
    MIGRATED = "Migrated"
    DELETED_SOURCE = "DeletedSource"


@dataclass
class IdentityMapping:
    old_key: str
    new_key: Optional[str]
    status: MappingStatus = MappingStatus.PENDING
    reason: str = ""


@dataclass
class RekeySummary:
    considered: int = 0
    migrated: int = 0
    skipped: int = 0
    deleted: int = 0
    failed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "considered": self.considered,
            "migrated": self.migrated,
            "skipped": self.skipped,
            "deleted": self.deleted,
        }
