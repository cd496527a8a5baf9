res = spatWeights.run_weights(
    adata,                          # spots x genes, log-normalised counts
    spatial_key="spatial",          # adata.obsm key with spot coordinates
    k=10,                           # earlier-ordered neighbours per spot
    transform="log1p",              # transform applied to the counts upstream
    stabilize=True,                 # floor variances, clip extreme weights
    n_jobs=8,                       # worker pool for the per-gene fits
    seed=0,
)

# spots x genes weights, also stored in adata.layers["weights"]
w = adata.layers["weights"]

# columns are mean, variance, spatial_variance, length_scale, intercept, converged, status, n_iter
res.table.head()

# genes whose fit was flagged (they carry the floor weight)
res.flagged()

# hand the weights to a ranking method, or rescaled inputs if it takes none
ranked = spatWeights.run_ranking(method, res, matrix, adata.obsm["spatial"])
