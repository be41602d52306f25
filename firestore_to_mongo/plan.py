"""Loading and validating the declarative migration plan."""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import yaml

from .config import DEFAULT_PLAN_FILE
from .exceptions import ConfigurationError
from .models import CompanionSpec, MigrationPlanEntry, SubcollectionSpec
from .shapes import get_shape

logger = logging.getLogger(__name__)


def load_plan(path: Optional[Union[str, Path]] = None) -> List[MigrationPlanEntry]:
    """Read a plan YAML file (the bundled one by default)."""
    plan_path = Path(path) if path else DEFAULT_PLAN_FILE
    if not plan_path.exists():
        raise ConfigurationError(f"Migration plan not found: {plan_path}")
    try:
        with open(plan_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Migration plan {plan_path} is not valid YAML: {e}") from e
    plan = parse_plan(data)
    logger.debug(f"Loaded {len(plan)} plan entries from {plan_path}")
    return plan


def parse_plan(data: Dict[str, Any]) -> List[MigrationPlanEntry]:
    if not isinstance(data, dict) or not isinstance(data.get("collections"), list):
        raise ConfigurationError("Migration plan needs a top-level 'collections' list")
    plan = [_parse_entry(raw, i) for i, raw in enumerate(data["collections"])]
    _check_targets(plan)
    return plan


def select_entries(plan: Sequence[MigrationPlanEntry], only: Optional[Iterable[str]]) -> List[MigrationPlanEntry]:
    """Keep the entries whose source collection is named in ``only`` (all when empty)."""
    wanted = set(only or ())
    if not wanted:
        return list(plan)
    unknown = wanted - {e.source_collection for e in plan}
    if unknown:
        raise ConfigurationError(f"Not in the migration plan: {', '.join(sorted(unknown))}")
    return [e for e in plan if e.source_collection in wanted]


def _parse_entry(raw: Any, index: int) -> MigrationPlanEntry:
    if isinstance(raw, str):
        return MigrationPlanEntry(source_collection=raw, target_collection=raw)
    if not isinstance(raw, dict) or not raw.get("source"):
        raise ConfigurationError(f"Plan entry #{index + 1} needs a 'source' collection name")

    source = str(raw["source"])
    shape = str(raw.get("shape", "document"))
    get_shape(shape)

    companions = []
    for c in raw.get("companions") or []:
        if not isinstance(c, dict) or not c.get("target"):
            raise ConfigurationError(f"Companion of {source} needs a 'target'")
        c_shape = str(c.get("shape", "document"))
        get_shape(c_shape)
        companions.append(CompanionSpec(target_collection=str(c["target"]), shape=c_shape))

    subcollections = []
    for s in raw.get("subcollections") or []:
        if not isinstance(s, dict) or not s.get("name") or not s.get("parent_key_field"):
            raise ConfigurationError(f"Sub-collection of {source} needs 'name' and 'parent_key_field'")
        s_shape = str(s.get("shape", "document"))
        get_shape(s_shape)
        subcollections.append(
            SubcollectionSpec(
                name=str(s["name"]),
                target_collection=str(s.get("target") or s["name"]),
                parent_key_field=str(s["parent_key_field"]),
                key_field=str(s.get("key_field", "id")),
                shape=s_shape,
            )
        )

    return MigrationPlanEntry(
        source_collection=source,
        target_collection=str(raw.get("target") or source),
        key_field=str(raw.get("key_field", "id")),
        shape=shape,
        companions=tuple(companions),
        subcollections=tuple(subcollections),
    )


def _check_targets(plan: Sequence[MigrationPlanEntry]) -> None:
    """A target collection must always be addressed by the same key fields."""
    seen: Dict[str, tuple] = {}

    def claim(target: str, key_fields: tuple, owner: str) -> None:
        if target in seen and seen[target] != key_fields:
            raise ConfigurationError(
                f"{owner} writes {target} keyed by {key_fields}, "
                f"but another entry keys it by {seen[target]}"
            )
        seen[target] = key_fields

    for entry in plan:
        claim(entry.target_collection, entry.key_fields, entry.source_collection)
        for companion in entry.companions:
            claim(companion.target_collection, entry.key_fields, entry.source_collection)
        for sub in entry.subcollections:
            claim(sub.target_collection, sub.key_fields, f"{entry.source_collection}/{sub.name}")
