from __future__ import annotations

from dataclasses import dataclass
import hashlib
from math import gcd
from typing import Any, Iterable, Sequence

from franchisecore.core.errors import PartitionValueError


STRATEGY_RANGE = "range"
STRATEGY_HASH = "hash"
STRATEGY_LIST = "list"
STRATEGIES = frozenset({STRATEGY_RANGE, STRATEGY_HASH, STRATEGY_LIST})

PARTITION_TYPES = frozenset({"location", "region", "time", "custom"})

_RANGE_SEPARATOR = ".."
_HASH_SEPARATOR = "/"


@dataclass(frozen=True)
class RangeBound:
    # Half-open interval [lower, upper); None means unbounded on that side.
    lower: Any
    upper: Any
    numeric: bool

    def contains(self, value: str) -> bool:
        probe = _coerce(value, self.numeric)
        if probe is None:
            return False
        if self.lower is not None and probe < self.lower:
            return False
        if self.upper is not None and probe >= self.upper:
            return False
        return True

    def overlaps(self, other: "RangeBound") -> bool:
        if self.numeric != other.numeric:
            # Mixed numeric/text bounds cannot be ordered; treat as colliding.
            return True
        lower_ok = self.upper is None or other.lower is None or other.lower < self.upper
        upper_ok = other.upper is None or self.lower is None or self.lower < other.upper
        return lower_ok and upper_ok


@dataclass(frozen=True)
class HashBucket:
    remainder: int
    modulus: int

    def contains(self, value: str) -> bool:
        return stable_hash(value) % self.modulus == self.remainder

    def overlaps(self, other: "HashBucket") -> bool:
        # Buckets share values exactly when remainders agree modulo gcd(moduli).
        divisor = gcd(self.modulus, other.modulus)
        return self.remainder % divisor == other.remainder % divisor


def stable_hash(value: str) -> int:
    # Process-independent hash so routing is deterministic across workers.
    digest = hashlib.sha256(str(value).encode("utf-8")).hexdigest()
    return int(digest[:16], 16)


def _coerce(raw: Any, numeric: bool) -> Any:
    if raw is None:
        return None
    if numeric:
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None
    return str(raw)


def _is_number(raw: str) -> bool:
    try:
        float(raw)
    except ValueError:
        return False
    return True


def parse_range(value: str) -> RangeBound:
    if _RANGE_SEPARATOR not in value:
        raise PartitionValueError(f"Range value must look like 'lower..upper': {value!r}")
    lower_raw, upper_raw = (part.strip() for part in value.split(_RANGE_SEPARATOR, 1))
    present = [part for part in (lower_raw, upper_raw) if part]
    numeric = bool(present) and all(_is_number(part) for part in present)
    lower = _coerce(lower_raw, numeric) if lower_raw else None
    upper = _coerce(upper_raw, numeric) if upper_raw else None
    if lower is not None and upper is not None and not lower < upper:
        raise PartitionValueError(f"Range lower bound must be below upper bound: {value!r}")
    return RangeBound(lower=lower, upper=upper, numeric=numeric)


def parse_hash(value: str) -> HashBucket:
    parts = value.split(_HASH_SEPARATOR)
    if len(parts) != 2:
        raise PartitionValueError(f"Hash value must look like 'remainder/modulus': {value!r}")
    try:
        remainder, modulus = int(parts[0]), int(parts[1])
    except ValueError as exc:
        raise PartitionValueError(f"Hash remainder and modulus must be integers: {value!r}") from exc
    if modulus <= 0 or not 0 <= remainder < modulus:
        raise PartitionValueError(f"Hash bucket out of range: {value!r}")
    return HashBucket(remainder=remainder, modulus=modulus)


def normalize_values(strategy: str, values: Iterable[str]) -> tuple[str, ...]:
    # Validate shape per strategy and return a de-duplicated, order-preserving tuple.
    if strategy not in STRATEGIES:
        raise PartitionValueError(f"Unsupported partition strategy: {strategy}")
    cleaned: list[str] = []
    for raw in values:
        item = str(raw).strip()
        if item and item not in cleaned:
            cleaned.append(item)
    if not cleaned:
        raise PartitionValueError("Partition requires at least one value")
    if strategy in {STRATEGY_RANGE, STRATEGY_HASH} and len(cleaned) != 1:
        raise PartitionValueError(f"{strategy} partitions take exactly one bound")
    if strategy == STRATEGY_RANGE:
        parse_range(cleaned[0])
    elif strategy == STRATEGY_HASH:
        parse_hash(cleaned[0])
    return tuple(cleaned)


def overlapping_values(
    strategy: str, candidate: Sequence[str], existing: Sequence[str]
) -> list[str]:
    # Return the candidate values that collide with an existing partition's values.
    if strategy == STRATEGY_LIST:
        existing_set = set(existing)
        return [value for value in candidate if value in existing_set]
    if strategy == STRATEGY_RANGE:
        bounds = [parse_range(value) for value in existing]
        return [value for value in candidate if any(parse_range(value).overlaps(b) for b in bounds)]
    if strategy == STRATEGY_HASH:
        buckets = [parse_hash(value) for value in existing]
        return [value for value in candidate if any(parse_hash(value).overlaps(b) for b in buckets)]
    raise PartitionValueError(f"Unsupported partition strategy: {strategy}")


def value_matches(strategy: str, partition_values: Sequence[str], value: str) -> bool:
    if strategy == STRATEGY_LIST:
        return str(value) in partition_values
    if strategy == STRATEGY_RANGE:
        return any(parse_range(item).contains(value) for item in partition_values)
    if strategy == STRATEGY_HASH:
        return any(parse_hash(item).contains(value) for item in partition_values)
    return False


def _sql_literal(value: Any) -> str:
    if isinstance(value, float):
        return repr(value)
    return "'" + str(value).replace("'", "''") + "'"


def bound_clause(strategy: str, values: Sequence[str]) -> str:
    # Render the PostgreSQL FOR VALUES clause for a validated partition.
    if strategy == STRATEGY_LIST:
        return "FOR VALUES IN (" + ", ".join(_sql_literal(value) for value in values) + ")"
    if strategy == STRATEGY_RANGE:
        bound = parse_range(values[0])
        lower = "MINVALUE" if bound.lower is None else _sql_literal(bound.lower)
        upper = "MAXVALUE" if bound.upper is None else _sql_literal(bound.upper)
        return f"FOR VALUES FROM ({lower}) TO ({upper})"
    if strategy == STRATEGY_HASH:
        # Bucket membership uses stable_hash, which PostgreSQL hash partitions would not match.
        raise PartitionValueError("Hash partitions are routed from metadata and have no table bound")
    raise PartitionValueError(f"Unsupported partition strategy: {strategy}")
