"""
Cross-condition integration and differential expression for scRNA-seq.

Reusable functions for partitioning an expression matrix by condition, fitting a
shared reduction, finding cross-condition anchors, integrating the conditions
into one embedding, and testing conditions against each other per cluster.
"""

from .errors import (
    CellAlignError,
    InvalidLabelError,
    ColumnMismatchError,
    InsufficientCellsError,
    NoAnchorsError,
    EmptyGroupError,
    ConfigError,
    OperationCancelledError,
)

from .types import (
    Layer,
    ReducedEmbedding,
    Anchor,
    AnchorSet,
    IntegratedEmbedding,
    DEResult,
    BatchResult,
)

from .config import (
    IntegrationConfig,
    DEConfig,
    PAdjustMethod,
    load_config,
)

from .partition import (
    partition,
    merge,
)

from .preprocessing import (
    normalize_and_log,
    select_integration_features,
)

from .reduction import fit_shared_pca

from .anchors import (
    find_anchors,
    find_all_anchors,
)

from .integration import integrate

from .clustering import (
    ClusterAssigner,
    LeidenClusterAssigner,
)

from .differential import (
    compare_conditions,
    compare_all_clusters,
    as_records,
)

from .evaluation import (
    condition_mixing_silhouette,
    condition_entropy,
    compare_embeddings,
)

from .pipeline import (
    IntegrationResult,
    run_integration,
)

__version__ = "0.1.0"

__all__ = [
    # Errors
    "CellAlignError",
    "InvalidLabelError",
    "ColumnMismatchError",
    "InsufficientCellsError",
    "NoAnchorsError",
    "EmptyGroupError",
    "ConfigError",
    "OperationCancelledError",
    # Types
    "Layer",
    "ReducedEmbedding",
    "Anchor",
    "AnchorSet",
    "IntegratedEmbedding",
    "DEResult",
    "BatchResult",
    # Configuration
    "IntegrationConfig",
    "DEConfig",
    "PAdjustMethod",
    "load_config",
    # Integration
    "partition",
    "merge",
    "normalize_and_log",
    "select_integration_features",
    "fit_shared_pca",
    "find_anchors",
    "find_all_anchors",
    "integrate",
    "run_integration",
    "IntegrationResult",
    # Clustering
    "ClusterAssigner",
    "LeidenClusterAssigner",
    # Differential expression
    "compare_conditions",
    "compare_all_clusters",
    "as_records",
    # Evaluation
    "condition_mixing_silhouette",
    "condition_entropy",
    "compare_embeddings",
]
