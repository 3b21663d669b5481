"""scatlas: cell-type annotation and reference integration for scRNA-seq data.

This package provides tools for:
- Cell QC with median-absolute-deviation outlier detection
- Library-size and multi-batch normalization with variance modeling
- Gene-set scoring and label assignment with AUCell
- Reference-based label transfer (SingleR-style) with pruning
- Query/reference integration with fastMNN
- Louvain clustering, UMAP and cluster marker detection

Example usage:
    >>> from scatlas.core.annotation import AnnotationEngine
    >>> from scatlas.core.integration import IntegrationEngine
    >>>
    >>> # Annotate a log-normalized query
    >>> result = AnnotationEngine().run(adata, gene_sets="markers.gmt", reference=ref)
    >>>
    >>> # Integrate query and reference
    >>> integrated = IntegrationEngine().run(query, reference)
"""

__version__ = "0.1.0"
