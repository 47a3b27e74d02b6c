"""
Configuration for the transit delay model runs.

Paths, sampler defaults and figure settings shared by the CLI and the
plotting module. Command-line flags override the run defaults.
"""

from pathlib import Path

# Project paths
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_ROOT / "data"
DATA_PROCESSED = DATA_DIR / "processed"
MODELS_DIR = PROJECT_ROOT / "models"
REPORTS_DIR = PROJECT_ROOT / "reports"
FIGURES_DIR = REPORTS_DIR / "figures"
TABLES_DIR = REPORTS_DIR / "tables"

DEFAULT_DATASET = DATA_PROCESSED / "cleaned_delay_data.parquet"
DEFAULT_ARTIFACT = MODELS_DIR / "delay_model.nc"

# Data preparation
# Share of rows kept for tractable sampling, and the seed that fixes which rows
SAMPLE_FRACTION = 0.001
SAMPLE_SEED = 853

# Sampler defaults
SAMPLER_CONFIG = {
    "chains": 4,
    "draws": 1000,
    "tune": 1000,
    "random_seed": 853,
    "target_accept": 0.9,
    "max_treedepth": 10,
    "timeout": None,  # seconds, None for no budget
}

# Priors
PRIOR_SCALE = 2.5
SIGMA_RATE = 1.0

# Diagnostics
RHAT_THRESHOLD = 1.1
CREDIBLE_INTERVAL = 0.95

# Synthetic scenario used by --synthetic runs
SYNTHETIC_SCENARIO = {
    "mode_means": {"Bus": 12.0, "Subway": 9.0, "Streetcar": 16.0},
    "noise_sd": 3.0,
    "n_rows": 300,
}

# Visualization settings
VIZ_CONFIG = {
    "figure_size": (10, 6),
    "dpi": 150,
    "style": "seaborn-v0_8-whitegrid",
}
