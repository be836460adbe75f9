"""
Immutable hand-off types passed between pipeline stages.

Each stage returns new objects instead of mutating a shared AnnData, so every
stage can be called and tested on its own.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd
from anndata import AnnData


@dataclass(frozen=True, eq=False)
class Layer:
    """Cells of one condition, cut from a source expression matrix.

    Attributes
    ----------
    name : str
        Condition tag shared by every cell of the layer.
    adata : AnnData
        Expression values for the layer's cells (all genes).
    positions : np.ndarray
        Row indices of the layer's cells in the source matrix.
    """

    name: str
    adata: AnnData
    positions: np.ndarray

    @property
    def n_cells(self) -> int:
        return self.adata.n_obs

    @property
    def cell_ids(self) -> pd.Index:
        return self.adata.obs_names


@dataclass(frozen=True, eq=False)
class ReducedEmbedding:
    """Projection of one layer onto a basis shared by all layers.

    Attributes
    ----------
    layer : str
        Name of the projected layer.
    cell_ids : pd.Index
        Cell identifiers, one per row of ``coords``.
    coords : np.ndarray
        Cells x k projected coordinates.
    basis : np.ndarray
        Genes x k loadings used for the projection.
    features : pd.Index
        Genes indexing the rows of ``basis``.
    """

    layer: str
    cell_ids: pd.Index
    coords: np.ndarray
    basis: np.ndarray
    features: pd.Index

    @property
    def n_components(self) -> int:
        return self.coords.shape[1]


@dataclass(frozen=True, order=True)
class Anchor:
    """A trusted cross-condition pair of cells with an alignment score in [0, 1]."""

    layer_a: str
    cell_a: str
    layer_b: str
    cell_b: str
    score: float

    @property
    def pair(self) -> Tuple[str, str]:
        return (self.layer_a, self.layer_b)


@dataclass(frozen=True)
class AnchorSet:
    """Anchors across all layer pairs plus the pairs that produced none."""

    anchors: Tuple[Anchor, ...]
    failures: Mapping[Tuple[str, str], Exception] = field(default_factory=dict)
    params: Mapping[str, object] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.anchors)

    def for_pair(self, layer_a: str, layer_b: str) -> List[Anchor]:
        """Anchors of one pair, oriented so that ``cell_a`` belongs to ``layer_a``."""
        out = []
        for anchor in self.anchors:
            if anchor.pair == (layer_a, layer_b):
                out.append(anchor)
            elif anchor.pair == (layer_b, layer_a):
                out.append(
                    Anchor(
                        layer_a=layer_a,
                        cell_a=anchor.cell_b,
                        layer_b=layer_b,
                        cell_b=anchor.cell_a,
                        score=anchor.score,
                    )
                )
        return out

    def pairs(self) -> List[Tuple[str, str]]:
        seen = []
        for anchor in self.anchors:
            if anchor.pair not in seen:
                seen.append(anchor.pair)
        return seen

    def to_frame(self) -> pd.DataFrame:
        columns = ["layer_a", "cell_a", "layer_b", "cell_b", "score"]
        return pd.DataFrame(
            [
                (a.layer_a, a.cell_a, a.layer_b, a.cell_b, a.score)
                for a in self.anchors
            ],
            columns=columns,
        )


@dataclass(frozen=True, eq=False)
class IntegratedEmbedding:
    """Cells x k embedding of all cells with condition effects removed."""

    cell_ids: pd.Index
    layers: pd.Series
    coords: np.ndarray

    @property
    def n_components(self) -> int:
        return self.coords.shape[1]

    def reindex(self, cell_order) -> "IntegratedEmbedding":
        """Return a copy with rows in ``cell_order``."""
        idx = self.cell_ids.get_indexer(pd.Index(cell_order))
        if (idx < 0).any():
            raise KeyError("cell_order names cells absent from the embedding")
        return IntegratedEmbedding(
            cell_ids=self.cell_ids[idx],
            layers=self.layers.iloc[idx],
            coords=self.coords[idx].copy(),
        )

    def to_frame(self) -> pd.DataFrame:
        columns = [f"dim_{i + 1}" for i in range(self.n_components)]
        return pd.DataFrame(self.coords, index=self.cell_ids, columns=columns)

    def to_anndata(self, adata: AnnData, key: str = "X_integrated") -> AnnData:
        """Return a copy of ``adata`` with the embedding stored in ``.obsm[key]``."""
        out = adata.copy()
        out.obsm[key] = self.reindex(adata.obs_names).coords
        return out


@dataclass(frozen=True)
class DEResult:
    """Differential expression outcome for one gene in one cluster."""

    gene: str
    log2_fold_change: float
    statistic: float
    p_value: float
    p_value_adj: float
    cluster: Optional[str] = None


@dataclass(frozen=True)
class BatchResult:
    """Concatenated results of independent units of work plus their failures."""

    results: pd.DataFrame
    failures: Dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures
