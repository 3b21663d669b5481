"""Core computational modules for scatlas.

This package contains the main analysis engines:
- preprocessing: Cell QC, normalization, variance modeling, feature selection
- annotation: AUCell gene-set scoring and reference label transfer
- integration: Multi-batch PCA and fastMNN batch correction
- clustering: Neighbor graphs, Louvain/Leiden clustering, UMAP, markers
"""
