from __future__ import annotations

from dataclasses import dataclass, field

from warehouse_quality.domain.errors import ConfigurationError
from warehouse_quality.domain.models.dataset import Dataset
from warehouse_quality.domain.models.rule import Rule, Transform


@dataclass(frozen=True)
class RuleCatalog:
    """
    Ordered rules and the transforms they read from.

    A dataset's catalog is usually the union of several check groups, e.g.
    key checks + formatting checks: `RuleCatalog.union(keys, formatting)`.
    """

    name: str
    rules: tuple[Rule, ...] = field(default_factory=tuple)
    transforms: tuple[Transform, ...] = field(default_factory=tuple)
    schemas: tuple[Dataset, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "rules", tuple(self.rules))
        object.__setattr__(self, "transforms", tuple(self.transforms))
        object.__setattr__(self, "schemas", tuple(self.schemas))

    def __add__(self, other: "RuleCatalog") -> "RuleCatalog":
        return RuleCatalog.union(self, other, name=self.name)

    def __len__(self) -> int:
        return len(self.rules)

    @classmethod
    def union(cls, *catalogs: "RuleCatalog", name: str | None = None) -> "RuleCatalog":
        rules: list[Rule] = []
        transforms: list[Transform] = []
        schemas: list[Dataset] = []
        for catalog in catalogs:
            rules.extend(catalog.rules)
            transforms.extend(t for t in catalog.transforms if t not in transforms)
            schemas.extend(s for s in catalog.schemas if s not in schemas)
        merged = cls(
            name=name or "+".join(c.name for c in catalogs),
            rules=tuple(rules),
            transforms=tuple(transforms),
            schemas=tuple(schemas),
        )
        merged.validate()
        return merged

    def datasets(self) -> tuple[str, ...]:
        seen: dict[str, None] = {}
        for rule in self.rules:
            seen.setdefault(rule.dataset, None)
        return tuple(seen)

    def for_dataset(self, dataset: str) -> "RuleCatalog":
        rules = tuple(rule for rule in self.rules if rule.dataset == dataset)
        wanted = {rule.source for rule in rules if rule.source}
        return RuleCatalog(
            name=f"{self.name}:{dataset}",
            rules=rules,
            transforms=tuple(t for t in self.transforms if t.id in wanted),
            schemas=tuple(s for s in self.schemas if s.identifier == dataset),
        )

    def rule(self, rule_id: str) -> Rule:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        raise KeyError(rule_id)

    def schema(self, dataset: str) -> Dataset | None:
        for schema in self.schemas:
            if schema.identifier == dataset:
                return schema
        return None

    def transform(self, transform_id: str) -> Transform:
        for transform in self.transforms:
            if transform.id == transform_id:
                return transform
        raise KeyError(transform_id)

    def validate(self) -> None:
        rule_ids = [rule.id for rule in self.rules]
        duplicates = sorted({rid for rid in rule_ids if rule_ids.count(rid) > 1})
        if duplicates:
            raise ConfigurationError(f"duplicate rule ids: {duplicates}")

        transform_ids = [t.id for t in self.transforms]
        duplicates = sorted({tid for tid in transform_ids if transform_ids.count(tid) > 1})
        if duplicates:
            raise ConfigurationError(f"duplicate transform ids: {duplicates}")

        schema_ids = [s.identifier for s in self.schemas]
        duplicates = sorted({sid for sid in schema_ids if schema_ids.count(sid) > 1})
        if duplicates:
            raise ConfigurationError(f"conflicting schemas for datasets: {duplicates}")

        transforms = {t.id: t for t in self.transforms}
        for rule in self.rules:
            if rule.source is None:
                continue
            transform = transforms.get(rule.source)
            if transform is None:
                raise ConfigurationError(
                    f"rule '{rule.id}' reads from unknown transform '{rule.source}'"
                )
            if transform.dataset != rule.dataset:
                raise ConfigurationError(
                    f"rule '{rule.id}' targets {rule.dataset} but transform "
                    f"'{transform.id}' reads {transform.dataset}"
                )
