"""Resolve a model alias to the variant to run on this machine."""

from __future__ import annotations

from typing import Optional, Sequence

from foundry_local.catalog import Catalog, ModelVariant
from foundry_local.errors import NoCompatibleVariant, VariantNotFound
from foundry_local.hardware import HardwareProfile, rank


def rank_variants(
    candidates: Sequence[ModelVariant],
    profile: HardwareProfile,
) -> list[ModelVariant]:
    """Compatible candidates, best first; publication order breaks ties."""
    compatible = [
        (rank(v.hardware), idx, v)
        for idx, v in enumerate(candidates)
        if profile.supports(v.hardware)
    ]
    compatible.sort(key=lambda t: (t[0], t[1]))
    return [v for _, _, v in compatible]


def select_variant(
    candidates: Sequence[ModelVariant],
    alias: str,
    profile: HardwareProfile,
    variant_id: Optional[str] = None,
) -> ModelVariant:
    """Pure selection over the variants published under *alias*.

    An explicit *variant_id* is returned as-is when it belongs to *alias*,
    whatever hardware it targets.
    """
    if variant_id is not None:
        for v in candidates:
            if v.variant_id == variant_id:
                return v
        raise VariantNotFound(alias, variant_id)
    if not candidates:
        raise VariantNotFound(alias)
    ranked = rank_variants(candidates, profile)
    if not ranked:
        raise NoCompatibleVariant(alias, profile.device_tags())
    return ranked[0]


class VariantSelector:
    def __init__(self, catalog: Catalog) -> None:
        self._catalog = catalog

    def select(
        self,
        alias: str,
        profile: HardwareProfile,
        variant_id: Optional[str] = None,
    ) -> ModelVariant:
        return select_variant(self._catalog.find_variants(alias), alias, profile, variant_id)
