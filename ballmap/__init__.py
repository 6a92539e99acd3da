"""
Reference mapping of leukemic single cells:

1. Reference building:
    - log(CP10K + 1) library size normalization of the cells
    - subset by the top g highly variable genes
    - scaling of the genes to have mean 0 and variance 1 (saving μ and σ for each gene)
    - PCA (by default, d=20) to embed the reference cells
        in a low-dimensional space, saving the gene loadings (U)
    - Harmony (if the reference has batches) or soft k-means otherwise
    - UMAP model fit on the corrected embedding
    savings:
        - gene means (μ) and standard deviations (σ) used to scale the genes
        - PCA gene loadings
        - clusters' centroids
        - Nr and C

2. Query mapping
    - map query to ref (just count coords in PCAs)
    - assign clusters' memberships (soft k-means clustering with regularisation on entropy)
    - mixture of experts correction for the query batches
    - project into the reference UMAP

3. Mapping error QC
    - mean distance to the k nearest reference cells (or Mahalanobis distance to reference clusters)
    - flag cells above median + t * MAD, per donor or globally

4. Label transferring
    - kNN vote for cell types (with confidence), kNN mean for pseudotime
    - final labels are missing for cells failing mapping QC

5. Donor composition of the predicted labels

The pipeline module runs 2-4 twice: against a hematopoiesis reference,
then for the B-lineage cells against a B-development reference.
"""

from . import preprocessing as pp
from . import tools as tl
from . import datasets
from . import pipeline

__version__ = "0.1.0"
