"""
Exception taxonomy for cross-condition integration and differential expression.

Fatal input errors (labels, gene sets, layer sizes) abort a run. ``NoAnchorsError``
and ``EmptyGroupError`` are scoped to one unit of work (a layer pair, a cluster)
so batch runners can collect them without aborting sibling tasks.
"""

from typing import Optional


class CellAlignError(Exception):
    """Base class for all cellalign errors."""


class InvalidLabelError(CellAlignError):
    """Condition labels do not match the cells of the expression matrix."""


class ColumnMismatchError(CellAlignError):
    """Layers disagree on their gene set."""


class InsufficientCellsError(CellAlignError):
    """A layer has fewer cells than the requested number of components."""

    def __init__(self, layer: str, n_cells: int, n_components: int):
        self.layer = layer
        self.n_cells = n_cells
        self.n_components = n_components
        super().__init__(
            f"Layer '{layer}' has {n_cells} cells, fewer than the "
            f"{n_components} requested components"
        )


class NoAnchorsError(CellAlignError):
    """No anchors survived for a pair of layers."""

    def __init__(self, layer_a: str, layer_b: str, reason: Optional[str] = None):
        self.layer_a = layer_a
        self.layer_b = layer_b
        msg = f"No anchors between layers '{layer_a}' and '{layer_b}'"
        if reason:
            msg += f" ({reason})"
        msg += "; try lowering n_neighbors or anchor_score_floor"
        super().__init__(msg)

    @property
    def pair(self):
        return (self.layer_a, self.layer_b)


class EmptyGroupError(CellAlignError):
    """A cluster/condition combination has no cells."""

    def __init__(self, cluster, condition):
        self.cluster = cluster
        self.condition = condition
        super().__init__(
            f"Cluster '{cluster}' has no cells for condition '{condition}'"
        )


class ConfigError(CellAlignError, ValueError):
    """Invalid configuration value."""


class OperationCancelledError(CellAlignError):
    """A long-running search was cancelled through its cancel event."""
