"""Schema validation for on-disk documents.

Each check yields one tagged result per field instead of a bare boolean, so
callers can log exactly which fields of a metadata or registry document were
missing or mistyped.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from mcp_release_runner.errors import ValidationError


@dataclass(frozen=True)
class Schema:
    """Expected fields of a JSON object.

    Field specs are a type, a tuple of types, or a nested Schema.
    """
    name: str
    fields: Dict[str, Union[type, Tuple[type, ...], "Schema"]]
    optional: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class FieldResult:
    field: str
    ok: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ValidationResult:
    """Validation result with per-field details"""
    is_valid: bool
    fields: List[FieldResult] = field(default_factory=list)

    @property
    def errors(self) -> List[str]:
        return [f"{r.field}: {r.error}" for r in self.fields if not r.ok]


PLATFORM_SCHEMA = Schema("platform", {"os": str, "arch": str})

BINARY_METADATA_SCHEMA = Schema(
    "metadata",
    {
        "repo": str,
        "version": str,
        "platform": PLATFORM_SCHEMA,
        "binaryPath": str,
        "installDate": str,
        "checksum": (str, type(None)),
    },
    optional=frozenset({"checksum"}),
)

CACHE_ENTRY_SCHEMA = Schema(
    "cache_entry",
    {"metadata": BINARY_METADATA_SCHEMA, "lastUsed": str, "usageCount": int},
)

REGISTRY_ENTRY_SCHEMA = Schema(
    "entry",
    {
        "repo": str,
        "binaryName": str,
        "version": str,
        "installDate": str,
        "lastUsed": str,
        "platform": PLATFORM_SCHEMA,
    },
)

REGISTRY_SCHEMA = Schema(
    "registry", {"version": str, "entries": dict, "lastUpdated": str}
)


def _type_name(expected: Union[type, Tuple[type, ...]]) -> str:
    if isinstance(expected, tuple):
        return " | ".join(t.__name__ for t in expected)
    return expected.__name__


def _matches(value: Any, expected: Union[type, Tuple[type, ...]]) -> bool:
    # bool is an int subclass but never a valid count
    if isinstance(value, bool) and expected is int:
        return False
    return isinstance(value, expected)


def check_fields(data: Any, schema: Schema, prefix: str = "") -> List[FieldResult]:
    """Check every field of ``data`` against ``schema``."""
    label = prefix or schema.name
    if not isinstance(data, dict):
        return [FieldResult(label, False, f"expected object, got {type(data).__name__}")]

    results = []
    for name, expected in schema.fields.items():
        path = f"{label}.{name}"
        if name not in data:
            if name in schema.optional:
                continue
            results.append(FieldResult(path, False, "missing"))
        elif isinstance(expected, Schema):
            results.extend(check_fields(data[name], expected, path))
        elif _matches(data[name], expected):
            results.append(FieldResult(path, True))
        else:
            results.append(
                FieldResult(
                    path,
                    False,
                    f"expected {_type_name(expected)}, got {type(data[name]).__name__}",
                )
            )
    return results


def validate(data: Any, schema: Schema) -> ValidationResult:
    results = check_fields(data, schema)
    return ValidationResult(is_valid=all(r.ok for r in results), fields=results)


def require_valid(data: Any, schema: Schema) -> None:
    """Raise ValidationError unless ``data`` satisfies ``schema``."""
    result = validate(data, schema)
    if not result.is_valid:
        raise ValidationError(
            f"Invalid {schema.name} document", errors=result.errors
        )
