# Observed proportions are pushed this far inside (0, 1) so their logits exist
EDGE_LOWER = 0.0001
EDGE_UPPER = 0.9999

# Covariate assigned to homogeneous areas (X = 1 and X = 0 tables)
HOMOGENEOUS_X1_COVARIATE = EDGE_UPPER
HOMOGENEOUS_X0_COVARIATE = EDGE_LOWER
