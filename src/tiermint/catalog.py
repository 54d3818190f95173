# -*- coding: utf-8 -*-
"""Immutable rarity pools loaded from a categorization document."""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import catalog_invalid, unknown_identifier, unknown_tier
from .types import Identifier, Rarity


def _normalise_ids(values: Any) -> list[str]:
    if not isinstance(values, list):
        raise ValueError("tier members must be a list")
    normalised: list[str] = []
    for value in values:
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise ValueError(f"identifier must be a string or integer, got {value!r}")
        text = str(value).strip()
        if not text:
            raise ValueError("identifier must not be empty")
        normalised.append(text)
    return normalised


class CategorizationDocument(BaseModel):
    """Categorization file as published by the collection tooling."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    common: list[str] = Field(default_factory=list, validation_alias=AliasChoices("Common", "common"))
    rare: list[str] = Field(default_factory=list, validation_alias=AliasChoices("Rare", "rare"))
    legendary: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("Legendary", "legendary")
    )
    legendary_1of1: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("Legendary 1-of-1", "legendary_1of1", "legendary 1-of-1"),
    )

    @field_validator("common", "rare", "legendary", "legendary_1of1", mode="before")
    @classmethod
    def _coerce_members(cls, value: Any) -> list[str]:
        return _normalise_ids(value)

    def members(self) -> dict[Rarity, tuple[Identifier, ...]]:
        return {
            Rarity.COMMON: tuple(self.common),
            Rarity.RARE: tuple(self.rare),
            Rarity.LEGENDARY: tuple(self.legendary),
            Rarity.LEGENDARY_1OF1: tuple(self.legendary_1of1),
        }


@dataclass(frozen=True, slots=True)
class RarityPool:
    rarity: Rarity
    members: tuple[Identifier, ...]

    def __len__(self) -> int:
        return len(self.members)


class PoolCatalog:
    """Read-only view over the four rarity pools.

    Pool order defines allocation priority. Instances are never mutated after
    construction, so concurrent readers need no synchronisation.
    """

    def __init__(self, pools: Mapping[Rarity, tuple[Identifier, ...]]) -> None:
        seen: dict[Identifier, Rarity] = {}
        index: dict[Identifier, tuple[Rarity, int]] = {}
        built: dict[Rarity, RarityPool] = {}
        for rarity in Rarity:
            members = tuple(pools.get(rarity, ()))
            for position, identifier in enumerate(members):
                owner = seen.get(identifier)
                if owner is not None:
                    where = "within" if owner is rarity else f"across {owner.value} and"
                    raise catalog_invalid(f"duplicate identifier {identifier} {where} {rarity.value}")
                seen[identifier] = rarity
                index[identifier] = (rarity, position)
            built[rarity] = RarityPool(rarity=rarity, members=members)
        self._pools = built
        self._index = index

    @classmethod
    def load(cls, source: str | Path | Mapping[str, Any]) -> "PoolCatalog":
        """Build a catalog from a JSON file path or an already parsed mapping."""

        if isinstance(source, Mapping):
            raw: Any = source
        else:
            path = Path(source)
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except FileNotFoundError as exc:
                raise catalog_invalid(f"categorization file not found: {path}", cause=exc) from exc
            except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
                raise catalog_invalid(f"unreadable categorization file {path}: {exc}", cause=exc) from exc
        if not isinstance(raw, Mapping):
            raise catalog_invalid("categorization document must be a JSON object")
        try:
            document = CategorizationDocument.model_validate(dict(raw))
        except ValidationError as exc:
            raise catalog_invalid(str(exc), cause=exc) from exc
        return cls(document.members())

    @staticmethod
    def _tier(tier: Rarity | str) -> Rarity:
        try:
            return Rarity.parse(tier)
        except ValueError as exc:
            raise unknown_tier(tier) from exc

    def pool(self, tier: Rarity | str) -> RarityPool:
        return self._pools[self._tier(tier)]

    def pools(self) -> Iterator[RarityPool]:
        for rarity in Rarity:
            yield self._pools[rarity]

    def size(self, tier: Rarity | str) -> int:
        return len(self.pool(tier))

    def contains(self, tier: Rarity | str, identifier: Identifier) -> bool:
        entry = self._index.get(str(identifier))
        return entry is not None and entry[0] is self._tier(tier)

    def index_of(self, tier: Rarity | str, identifier: Identifier) -> int:
        rarity = self._tier(tier)
        entry = self._index.get(str(identifier))
        if entry is None or entry[0] is not rarity:
            raise unknown_identifier(rarity.value, str(identifier))
        return entry[1]

    def tier_for(self, identifier: Identifier) -> Optional[Rarity]:
        """Return the rarity owning *identifier*, or ``None`` when unknown."""

        entry = self._index.get(str(identifier).strip())
        return entry[0] if entry else None

    def total(self) -> int:
        return len(self._index)


__all__ = ["CategorizationDocument", "PoolCatalog", "RarityPool"]
