"""Marker gene set resolution against a dataset's genes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple


@dataclass(frozen=True)
class GeneSet:
    """A named marker gene set resolved against a gene panel.

    Attributes:
        name: Cell type / signature name
        genes: Genes as listed in the source file
        resolved: Genes present in the dataset (dataset spelling)
        missing: Listed genes absent from the dataset
    """

    name: str
    genes: Tuple[str, ...]
    resolved: Tuple[str, ...]
    missing: Tuple[str, ...]

    @property
    def coverage(self) -> float:
        return len(self.resolved) / len(self.genes) if self.genes else 0.0


def canonicalize_gene(gene: str) -> str:
    """Normalize a gene symbol for case-insensitive lookup."""
    return gene.strip().upper()


def resolve_gene_sets(
    gene_sets: Mapping[str, Sequence[str]],
    var_names: Iterable[str],
    min_genes: int = 1,
    logger: Optional[logging.Logger] = None,
) -> List[GeneSet]:
    """Resolve gene sets against ``var_names``; drop sets below ``min_genes``.

    Raises
    ------
    ValueError
        If no gene set keeps at least ``min_genes`` genes
    """
    logger = logger or logging.getLogger(__name__)

    lookup: Dict[str, str] = {}
    for name in var_names:
        lookup.setdefault(canonicalize_gene(str(name)), str(name))

    resolved_sets: List[GeneSet] = []
    for set_name, genes in gene_sets.items():
        resolved: List[str] = []
        missing: List[str] = []
        for gene in genes:
            match = lookup.get(canonicalize_gene(gene))
            if match is None:
                missing.append(gene)
            elif match not in resolved:
                resolved.append(match)

        if missing:
            logger.debug(
                "Gene set '%s': missing %d/%d genes: %s",
                set_name,
                len(missing),
                len(genes),
                missing,
            )

        if len(resolved) < min_genes:
            logger.warning(
                "Skipping gene set '%s': %d/%d genes found (< %d)",
                set_name,
                len(resolved),
                len(genes),
                min_genes,
            )
            continue

        resolved_sets.append(
            GeneSet(
                name=set_name,
                genes=tuple(genes),
                resolved=tuple(resolved),
                missing=tuple(missing),
            )
        )

    if not resolved_sets:
        raise ValueError("No gene set has enough genes present in the dataset")

    logger.info("Resolved %d/%d gene sets", len(resolved_sets), len(gene_sets))
    return resolved_sets
