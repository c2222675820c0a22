from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli
import yaml
from loguru import logger

from warehouse_quality.domain.errors import ConfigurationError
from warehouse_quality.domain.models.catalog import RuleCatalog
from warehouse_quality.domain.models.dataset import Column, ColumnType, Dataset
from warehouse_quality.domain.models.rule import Rule, RuleKind, Severity, Transform
from warehouse_quality.infrastructure.rules import engine

RULE_FIELDS = (
    "id",
    "dataset",
    "kind",
    "columns",
    "severity",
    "description",
    "source",
    "reference_dataset",
    "identity",
)

_NUMBERS = frozenset({ColumnType.INTEGER, ColumnType.DECIMAL})
_DATES = frozenset({ColumnType.DATE, ColumnType.INTEGER, ColumnType.TEXT})
_STRINGS = frozenset({ColumnType.TEXT, ColumnType.ENUM})

# declared types a rule kind can read; integer and text dates are parsed
VALUE_TYPES = {
    RuleKind.NUMERIC_RANGE: _NUMBERS,
    RuleKind.CROSS_FIELD_ARITHMETIC: _NUMBERS,
    RuleKind.DATE_ORDER: _DATES,
    RuleKind.DATE_RANGE: _DATES,
    RuleKind.NO_UNWANTED_WHITESPACE: _STRINGS,
}


def _read(path: Path) -> dict[str, Any]:
    suffix = path.suffix.lower()
    try:
        if suffix == ".toml":
            with path.open("rb") as f:
                return tomli.load(f)
        if suffix in (".yaml", ".yml"):
            with path.open("r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
    except (OSError, tomli.TOMLDecodeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"cannot read catalog {path}: {exc}") from exc
    raise ConfigurationError(f"unsupported catalog format {path.suffix!r} ({path})")


def _enum(enum_type, value: Any, where: str):
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise ConfigurationError(f"{where}: {value!r} is not one of {allowed}") from None


def parse_rule(raw: dict[str, Any], defaults: dict[str, Any] | None = None) -> Rule:
    spec = {**(defaults or {}), **raw}
    rule_id = spec.get("id")
    if not rule_id:
        raise ConfigurationError(f"rule without id: {raw}")
    for name in ("dataset", "kind", "severity"):
        if not spec.get(name):
            raise ConfigurationError(f"rule '{rule_id}' is missing '{name}'")

    params = dict(spec.pop("params", {}) or {})
    params.update({key: value for key, value in spec.items() if key not in RULE_FIELDS})

    columns = spec.get("columns", ())
    if isinstance(columns, str):
        columns = (columns,)

    rule = Rule(
        id=str(rule_id),
        dataset=spec["dataset"],
        kind=_enum(RuleKind, spec["kind"], f"rule '{rule_id}' kind"),
        columns=tuple(columns),
        params=params,
        severity=_enum(Severity, spec["severity"], f"rule '{rule_id}' severity"),
        description=spec.get("description", ""),
        source=spec.get("source"),
        reference_dataset=spec.get("reference_dataset"),
        identity=tuple(spec.get("identity", ())),
    )
    engine.check_rule(rule)
    return rule


def parse_transform(raw: dict[str, Any]) -> Transform:
    transform_id = raw.get("id")
    if not transform_id:
        raise ConfigurationError(f"transform without id: {raw}")
    kind = _enum(RuleKind, raw.get("kind", RuleKind.LATEST_WINS_DEDUP.value), f"transform '{transform_id}' kind")
    if kind is not RuleKind.LATEST_WINS_DEDUP:
        raise ConfigurationError(
            f"transform '{transform_id}': only latest_wins_dedup can be used as a transform"
        )
    missing = [name for name in ("dataset", "key_columns", "recency_column") if not raw.get(name)]
    if missing:
        raise ConfigurationError(f"transform '{transform_id}' is missing {missing}")
    return Transform(
        id=str(transform_id),
        dataset=raw["dataset"],
        key_columns=tuple(raw["key_columns"]),
        recency_column=raw["recency_column"],
        tie_breakers=tuple(raw.get("tie_breakers", ())),
        description=raw.get("description", ""),
    )


def parse_dataset(raw: dict[str, Any]) -> Dataset:
    identifier = raw.get("id")
    if not identifier:
        raise ConfigurationError(f"dataset without id: {raw}")
    columns = raw.get("columns", {})
    if isinstance(columns, dict):
        columns = [{"name": name, "type": kind} for name, kind in columns.items()]
    return Dataset(
        identifier=identifier,
        columns=tuple(
            Column(
                name=column["name"],
                type=_enum(ColumnType, column["type"], f"dataset '{identifier}' column"),
            )
            for column in columns
        ),
    )


def check_columns(catalog: RuleCatalog) -> None:
    """
    Rules must only name columns their dataset declares, when a schema is declared,
    and the declared type must be one the rule kind can read.
    """
    for rule in catalog.rules:
        schema = catalog.schema(rule.dataset)
        if schema is None or not schema.columns:
            continue
        unknown = [c for c in engine.required_columns(rule) if schema.column(c) is None]
        if unknown:
            raise ConfigurationError(
                f"rule '{rule.id}' names columns {unknown} not declared for {rule.dataset}"
            )
        accepted = VALUE_TYPES.get(rule.kind)
        if accepted is None:
            continue
        for name in engine.required_columns(rule):
            column = schema.column(name)
            if name in rule.identity or column.type in accepted:
                continue
            raise ConfigurationError(
                f"rule '{rule.id}' ({rule.kind.value}) cannot read "
                f"{column.type.value} column '{name}'"
            )


def load_catalog(path: Path, _seen: frozenset[Path] = frozenset()) -> RuleCatalog:
    """
    Load a catalog from TOML or YAML.

    `include` lists other catalog files (relative to this one) whose rules and
    transforms are composed ahead of this file's own. `defaults` are merged into
    every rule of this file, e.g. a shared `dataset` or `severity`.
    """
    path = path.resolve()
    if path in _seen:
        raise ConfigurationError(f"catalog include cycle through {path}")
    raw = _read(path)

    included = [
        load_catalog(path.parent / child, _seen | {path}) for child in raw.get("include", ())
    ]
    defaults = raw.get("defaults", {})
    own = RuleCatalog(
        name=raw.get("name", path.stem),
        rules=tuple(parse_rule(dict(item), defaults) for item in raw.get("rules", ())),
        transforms=tuple(parse_transform(dict(item)) for item in raw.get("transforms", ())),
        schemas=tuple(parse_dataset(dict(item)) for item in raw.get("datasets", ())),
    )
    catalog = RuleCatalog.union(*included, own, name=own.name)
    check_columns(catalog)
    logger.info(
        "loaded catalog {} from {}: {} rules, {} transforms",
        catalog.name,
        path,
        len(catalog.rules),
        len(catalog.transforms),
    )
    return catalog
