"""
Schema mapping: derive logical collections from other collections.

A mapping declares how a target collection's fields are built from a source
collection's fields. When a query needs a collection that no selected source
physically holds, ``synthesize`` builds it from any active mapping whose
source collection is available.

Mappings can be declared in YAML:

    mappings:
      - id: 1
        name: customers-to-users
        source: {source_id: 2, collection: customers}
        target: {source_id: 1, collection: users}
        rules:
          - {sourceField: _id, targetField: uid}
          - {sourceField: email, targetField: email, type: transform, transform: toLowerCase}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field as PydanticField

from docfed.errors import ConfigError, MappingSynthesisError
from docfed.models import Field, SourceId
from docfed.values import Row, ValueKind

logger = logging.getLogger(__name__)

TransformFn = Callable[[Any], Any]


class RuleKind(Enum):
    """How a mapping rule produces its target value."""
    DIRECT = "direct"        # Copy verbatim
    TRANSFORM = "transform"  # Apply a named built-in transform
    CUSTOM = "custom"        # Apply a caller-registered function


class MappingStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class MappingDirection(Enum):
    SOURCE_TO_TARGET = "source-to-target"
    TARGET_TO_SOURCE = "target-to-source"


@dataclass(frozen=True)
class CollectionRef:
    """A collection on a specific data source."""
    source_id: SourceId
    collection: str

    def __str__(self) -> str:
        return f"{self.source_id}/{self.collection}"


@dataclass(frozen=True)
class MappingRule:
    """Field-level rule: ``source_field`` -> ``target_field``."""
    source_field: str
    target_field: str
    kind: RuleKind = RuleKind.DIRECT
    transform_name: Optional[str] = None


@dataclass
class SchemaMapping:
    """A declared mapping from one collection's shape to another's."""
    id: SourceId
    source: CollectionRef
    target: CollectionRef
    rules: List[MappingRule] = field(default_factory=list)
    status: MappingStatus = MappingStatus.ACTIVE
    name: str = ""

    @property
    def is_active(self) -> bool:
        return self.status is MappingStatus.ACTIVE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchemaMapping":
        """Build from a plain dict (snake_case or the API's camelCase)."""
        try:
            model = SchemaMappingModel.model_validate(data)
        except ValueError as e:
            raise ConfigError(f"Invalid schema mapping: {e}") from e
        return model.to_mapping()


# =============================================================================
# Transforms
# =============================================================================

def _to_upper(value: Any) -> Any:
    return value.upper() if isinstance(value, str) else value


def _to_lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def _trim(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def _to_number(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    text = value.strip()
    try:
        return int(text)
    except ValueError:
        return float(text)


def _to_string(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _to_date(value: Any) -> Any:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        # Epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    return value


_BUILTIN_TRANSFORMS: Dict[str, TransformFn] = {
    "toUpperCase": _to_upper,
    "toLowerCase": _to_lower,
    "trim": _trim,
    "toNumber": _to_number,
    "toString": _to_string,
    "toDate": _to_date,
}

_ALIASES = {
    "uppercase": "toUpperCase",
    "lowercase": "toLowerCase",
    "to-number": "toNumber",
    "to-string": "toString",
    "to-date": "toDate",
}

# Result kind of type-changing transforms, for schema derivation
_OUTPUT_KINDS = {
    "toNumber": ValueKind.NUMBER.value,
    "toString": ValueKind.STRING.value,
    "toDate": ValueKind.DATE.value,
}


class TransformRegistry:
    """
    Named value transforms used by mapping rules.

    ``transform`` rules resolve against built-ins plus anything added with
    ``register``; ``custom`` rules resolve against functions added with
    ``register_custom``.
    """

    def __init__(self):
        self._transforms: Dict[str, TransformFn] = dict(_BUILTIN_TRANSFORMS)
        self._custom: Dict[str, TransformFn] = {}

    def register(self, name: str, fn: TransformFn) -> None:
        self._transforms[name] = fn

    def register_custom(self, name: str, fn: TransformFn) -> None:
        self._custom[name] = fn

    def names(self) -> List[str]:
        return sorted(self._transforms) + sorted(_ALIASES)

    def resolve(self, name: Optional[str]) -> TransformFn:
        """Look up a transform. Raises MappingSynthesisError if unknown."""
        if not name:
            raise MappingSynthesisError("Transform rule has no transform name")
        canonical = _ALIASES.get(name, name)
        fn = self._transforms.get(canonical)
        if fn is None:
            raise MappingSynthesisError(
                f"Unknown transform '{name}'", {"transform": name}
            )
        return fn

    def resolve_custom(self, name: Optional[str]) -> Optional[TransformFn]:
        if not name:
            return None
        return self._custom.get(name)

    def output_kind(self, name: Optional[str]) -> Optional[str]:
        """Value kind produced by a transform, if it changes the kind."""
        if not name:
            return None
        return _OUTPUT_KINDS.get(_ALIASES.get(name, name))


default_transforms = TransformRegistry()


# =============================================================================
# Application
# =============================================================================

def _rule_function(
    mapping: SchemaMapping,
    rule: MappingRule,
    transforms: TransformRegistry,
) -> Optional[TransformFn]:
    """The function a rule applies, or None for a verbatim copy."""
    if rule.kind is RuleKind.TRANSFORM:
        try:
            return transforms.resolve(rule.transform_name)
        except MappingSynthesisError as e:
            logger.warning(
                f"{e.kind} in mapping {mapping.id} "
                f"({rule.source_field} -> {rule.target_field}): {e.message}; "
                "passing values through unchanged"
            )
            return None
    if rule.kind is RuleKind.CUSTOM:
        return transforms.resolve_custom(rule.transform_name)
    return None


def apply_mapping(
    rows: Iterable[Row],
    mapping: SchemaMapping,
    direction: MappingDirection = MappingDirection.SOURCE_TO_TARGET,
    transforms: Optional[TransformRegistry] = None,
) -> List[Row]:
    """
    Map rows through a mapping's rules.

    Fields absent on a row are omitted from the mapped row. In the
    target-to-source direction, fields are mapped back with identity
    transforms. A mapping with no rules returns copies of the rows.
    """
    transforms = transforms or default_transforms

    if not mapping.rules:
        return [dict(row) for row in rows]

    forward = direction is MappingDirection.SOURCE_TO_TARGET
    plan = []
    for rule in mapping.rules:
        if forward:
            plan.append((rule, rule.source_field, rule.target_field,
                         _rule_function(mapping, rule, transforms)))
        else:
            plan.append((rule, rule.target_field, rule.source_field, None))

    failed: set = set()
    result = []
    for row in rows:
        mapped: Row = {}
        for rule, from_field, to_field, fn in plan:
            if from_field not in row:
                continue
            value = row[from_field]
            if fn is not None:
                try:
                    value = fn(value)
                except Exception as e:
                    if rule not in failed:
                        failed.add(rule)
                        err = MappingSynthesisError(
                            f"Transform '{rule.transform_name}' failed on field "
                            f"'{from_field}': {e}"
                        )
                        logger.warning(
                            f"{err.kind} in mapping {mapping.id}: {err.message}; "
                            "passing values through unchanged"
                        )
                    value = row[from_field]
            mapped[to_field] = value
        result.append(mapped)

    return result


def synthesize(
    mappings: Iterable[SchemaMapping],
    available: Dict[str, List[Row]],
    transforms: Optional[TransformRegistry] = None,
) -> Dict[str, List[Row]]:
    """
    Synthesize logical collections missing from ``available``.

    For every active mapping whose target collection is absent but whose
    source collection is present, derive the target rows. Returns only the
    newly derived collections; ``available`` is never modified. When several
    mappings target the same absent collection, the first one wins.
    """
    derived: Dict[str, List[Row]] = {}

    for mapping in mappings:
        if not mapping.is_active:
            continue
        target = mapping.target.collection
        source = mapping.source.collection
        if target in available or target in derived:
            continue
        if source not in available:
            continue

        derived[target] = apply_mapping(available[source], mapping, transforms=transforms)
        logger.debug(
            f"Synthesized {len(derived[target])} rows for '{target}' "
            f"from '{source}' via mapping {mapping.id}"
        )

    return derived


def synthesize_schema(
    mapping: SchemaMapping,
    source_schema: List[Field],
    transforms: Optional[TransformRegistry] = None,
) -> List[Field]:
    """Derive a mapping target's schema from its source collection schema."""
    transforms = transforms or default_transforms
    by_name = {f.name: f for f in source_schema}

    if not mapping.rules:
        return list(source_schema)

    schema = []
    for rule in mapping.rules:
        source_field = by_name.get(rule.source_field)
        if source_field is None:
            continue
        type_name = source_field.type
        if rule.kind is RuleKind.TRANSFORM:
            type_name = transforms.output_kind(rule.transform_name) or type_name
        schema.append(Field(name=rule.target_field, type=type_name))
    return schema


def find_mapping_for(
    mappings: Iterable[SchemaMapping],
    collection: str,
) -> Optional[SchemaMapping]:
    """First active mapping that targets ``collection``."""
    for mapping in mappings:
        if mapping.is_active and mapping.target.collection == collection:
            return mapping
    return None


# =============================================================================
# Declarative loading
# =============================================================================

class CollectionRefModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_id: Union[int, str] = PydanticField(..., alias="sourceId")
    collection: str


class MappingRuleModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_field: str = PydanticField(..., alias="sourceField")
    target_field: str = PydanticField(..., alias="targetField")
    type: RuleKind = RuleKind.DIRECT
    transform: Optional[str] = None

    def to_rule(self) -> MappingRule:
        return MappingRule(
            source_field=self.source_field,
            target_field=self.target_field,
            kind=self.type,
            transform_name=self.transform,
        )


class SchemaMappingModel(BaseModel):
    """Validated form of a mapping declaration."""
    model_config = ConfigDict(populate_by_name=True)

    id: Union[int, str]
    name: str = ""
    source: Optional[CollectionRefModel] = None
    target: Optional[CollectionRefModel] = None
    # Flat form used by the API layer
    source_id: Optional[Union[int, str]] = PydanticField(None, alias="sourceId")
    source_collection: Optional[str] = PydanticField(None, alias="sourceCollection")
    target_id: Optional[Union[int, str]] = PydanticField(None, alias="targetId")
    target_collection: Optional[str] = PydanticField(None, alias="targetCollection")
    rules: List[MappingRuleModel] = PydanticField(default_factory=list, alias="mappingRules")
    status: MappingStatus = MappingStatus.ACTIVE

    def to_mapping(self) -> SchemaMapping:
        source = self._ref(self.source, self.source_id, self.source_collection, "source")
        target = self._ref(self.target, self.target_id, self.target_collection, "target")
        return SchemaMapping(
            id=self.id,
            name=self.name,
            source=source,
            target=target,
            rules=[r.to_rule() for r in self.rules],
            status=self.status,
        )

    @staticmethod
    def _ref(
        nested: Optional[CollectionRefModel],
        source_id: Optional[Union[int, str]],
        collection: Optional[str],
        side: str,
    ) -> CollectionRef:
        if nested is not None:
            return CollectionRef(source_id=nested.source_id, collection=nested.collection)
        if source_id is None or not collection:
            raise ConfigError(f"Mapping is missing its {side} collection")
        return CollectionRef(source_id=source_id, collection=collection)


def load_mappings_yaml(content: str) -> List[SchemaMapping]:
    """
    Load schema mappings from a YAML document.

    The document is either a list of mappings or a dict with a
    ``mappings`` list.
    """
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid mapping YAML: {e}") from e

    if doc is None:
        return []
    if isinstance(doc, dict):
        doc = doc.get("mappings", [])
    if not isinstance(doc, list):
        raise ConfigError("Mapping YAML must be a list or contain a 'mappings' list")

    return [SchemaMapping.from_dict(item) for item in doc]
