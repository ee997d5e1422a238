"""
Centralized Constants
=====================

Named defaults shared by the simulator, both estimators and the
comparator. Import from here to keep the two fits on the same
identification anchor and the same numerical tolerances.

Usage:
    from cfa_mem.constants import FACTOR_VARIANCE, ML_TOLERANCE
    # or
    import cfa_mem.constants as C
"""

# =============================================================================
# IDENTIFICATION
# =============================================================================

# Variance of the latent factor. Fixed in the covariance-structure fit
# (std.lv-style identification) and, as its square root, used as the fixed
# random-effect SD of the per-subject latent score in the sampler.
FACTOR_VARIANCE = 1.0

# Minimum number of items for a one-factor model with free residual
# variances to have df >= 0
MIN_IDENTIFIED_ITEMS = 3


# =============================================================================
# SIMULATION DEFAULTS
# =============================================================================

LOADING_CENTER = 0.7
LOADING_SPREAD = 0.2
ERROR_CENTER = 0.5
ERROR_SPREAD = 0.2
ITEM_MEAN_CENTER = 3.0
ITEM_MEAN_SPREAD = 1.0

# Floor applied when clamping drawn residual variances
MIN_RESIDUAL_VARIANCE = 1e-6


# =============================================================================
# ML-CFA OPTIMIZATION
# =============================================================================

ML_TOLERANCE = 1e-9            # Relative change in F_ML between iterations
ML_MAX_ITERATIONS = 500
ML_GRADIENT_TOLERANCE = 1e-5   # Gradient norm accepted at the iteration cap

# Relative eigenvalue threshold below which S is treated as singular
SINGULAR_TOLERANCE = 1e-10

# Residual-variance starting values are floored at this share of the
# observed item variance
START_RESIDUAL_SHARE = 0.1

# Confidence level of the RMSEA interval
RMSEA_CI_LEVEL = 0.90

# Step for finite-differencing the analytic gradient into a Hessian
HESSIAN_STEP = 1e-5


# =============================================================================
# PRIORS (weakly informative; see config.PriorConfig)
# =============================================================================

LOADING_MEAN_PRIOR_MEAN = 1.0    # Positive: breaks the global sign flip
LOADING_MEAN_PRIOR_SD = 0.5
LOADING_SD_SCALE = 1.0
INTERCEPT_MEAN_PRIOR_MEAN = 0.0
INTERCEPT_MEAN_PRIOR_SD = 5.0
INTERCEPT_SD_SCALE = 2.5
RESIDUAL_SD_SCALE = 2.5
HALF_T_DF = 3.0


# =============================================================================
# SAMPLER
# =============================================================================

N_CHAINS = 4
N_WARMUP = 1000
N_DRAWS = 1000

# NUTS
TARGET_ACCEPT = 0.8
MAX_TREE_DEPTH = 10
MAX_ENERGY_ERROR = 1000.0

# Dual averaging (Hoffman & Gelman 2014, section 3.2)
DA_GAMMA = 0.05
DA_T0 = 10.0
DA_KAPPA = 0.75

# Windowed mass-matrix adaptation (Stan defaults)
ADAPT_INIT_BUFFER = 75
ADAPT_TERM_BUFFER = 50
ADAPT_BASE_WINDOW = 25

# Random-walk Metropolis
RWM_TARGET_ACCEPT = 0.234

# Jitter applied to per-chain starting values
INIT_JITTER = 0.1
