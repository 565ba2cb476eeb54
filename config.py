"""
Monthly Phenology Configuration Module
======================================
Configuration parameters for the monthly phenology feature pipeline

Complete configuration file with all settings for:
- File paths and composite naming
- Analysis years and index band
- Season detection
- Tiling and parallel processing
- Output and sampling options
"""

import math


# ============================================================================
# FILE PATHS CONFIGURATION
# ============================================================================

# Folder containing monthly vegetation index composites (one GeoTIFF per month)
# Expected format: {FILE_PREFIX}_{INDEX_NAME}_{YEAR}_{MM}.tif
# e.g. monthly_NDVI_2024_01.tif ... monthly_NDVI_2024_12.tif
INPUT_FOLDER = "data/monthly_composites"

# Output folder for phenology rasters, sample tables and plots
OUTPUT_FOLDER = "data/phenology_output"

# Optional point file (GeoJSON / Shapefile / GPKG) with labelled sample points
# Set to None to skip point sampling
SAMPLE_POINTS_PATH = None


# ============================================================================
# INPUT NAMING CONFIGURATION
# ============================================================================

# Filename prefix of the monthly composites
FILE_PREFIX = "monthly"

# Vegetation index carried by the composites (used in file names and outputs)
INDEX_NAME = "NDVI"

# Band holding the index inside each composite (1-based indexing)
INDEX_BAND_INDEX = 1


# ============================================================================
# ANALYSIS YEARS
# ============================================================================

# Each year is processed independently with the same settings
YEARS = [2021, 2022, 2023, 2024]


# ============================================================================
# SEASON DETECTION CONFIGURATION
# ============================================================================

# A month belongs to the growing season candidates when its value exceeds
# THRESHOLD_FRACTION * annual maximum
THRESHOLD_FRACTION = 0.5

# Absolute tolerance when matching monthly values against the seasonal peak
# The earliest matching month is reported as the peak month
PEAK_TOLERANCE = 1e-6


# ============================================================================
# TILING / PARALLEL PROCESSING CONFIGURATION
# ============================================================================

# Edge length (pixels) of the square tiles read from the composites
# Only 12 x TILE_SIZE x TILE_SIZE values are held per worker at once
TILE_SIZE = 512

# Process tiles on a worker pool
# Recommended: True (unless debugging)
USE_PARALLEL_PROCESSING = True

# Number of parallel processes
# None = auto-detect CPU count
N_PROCESSES = None

# Raise at the end of a year when any tile failed
# False = report failed tiles and write them as no-data
FAIL_ON_TILE_ERROR = True


# ============================================================================
# OUTPUT CONFIGURATION
# ============================================================================

# Data type of the phenology raster
OUTPUT_DTYPE = "float32"

# Value written for pixels without any valid month and for failed tiles
NO_DATA_VALUE = math.nan

# Save point / random samples as CSV tables
SAVE_SAMPLES_CSV = True

# Class label column of the sample point file
SAMPLE_LABEL_COLUMN = "class"

# Random pixel samples per seed (0 = disabled)
RANDOM_SAMPLE_SIZE = 0
RANDOM_SAMPLE_SEEDS = [0]

# Save per-pixel phenology plots for PLOT_PIXELS (row, col) positions
SAVE_PLOTS = False
PLOT_PIXELS = []

# Plot configuration
PLOT_DPI = 300              # Resolution for saved plots (dots per inch)
PLOT_FIGSIZE = (12, 6)      # Figure size in inches (width, height)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def get_config_summary():
    """
    Return a formatted summary of current configuration

    Returns:
    --------
    str
        Formatted configuration summary string
    """
    years = ", ".join(str(y) for y in YEARS)
    summary = f"""
    ╔════════════════════════════════════════════════════════════════════════╗
    ║                 MONTHLY PHENOLOGY CONFIGURATION SUMMARY                ║
    ╠════════════════════════════════════════════════════════════════════════╣
    ║ PATHS                                                                  ║
    ╟────────────────────────────────────────────────────────────────────────╢
    ║ Input Folder:      {INPUT_FOLDER:<50s} ║
    ║ Output Folder:     {OUTPUT_FOLDER:<50s} ║
    ║ Sample Points:     {str(SAMPLE_POINTS_PATH):<50s} ║
    ╠════════════════════════════════════════════════════════════════════════╣
    ║ PHENOLOGY SETTINGS                                                     ║
    ╟────────────────────────────────────────────────────────────────────────╢
    ║ Index:             {INDEX_NAME:<50s} ║
    ║ Years:             {years:<50s} ║
    ║ Threshold Frac:    {THRESHOLD_FRACTION:<50.2f} ║
    ║ Peak Tolerance:    {PEAK_TOLERANCE:<50.1e} ║
    ╠════════════════════════════════════════════════════════════════════════╣
    ║ PROCESSING OPTIONS                                                     ║
    ╟────────────────────────────────────────────────────────────────────────╢
    ║ Tile Size:         {TILE_SIZE:<50d} ║
    ║ Parallel Process:  {str(USE_PARALLEL_PROCESSING):<50s} ║
    ║ Processes:         {str(N_PROCESSES):<50s} ║
    ║ Fail On Tile Err:  {str(FAIL_ON_TILE_ERROR):<50s} ║
    ║ Save Samples:      {str(SAVE_SAMPLES_CSV):<50s} ║
    ║ Save Plots:        {str(SAVE_PLOTS):<50s} ║
    ╚════════════════════════════════════════════════════════════════════════╝
    """
    return summary


def validate_config():
    """
    Validate configuration parameters

    Raises:
    -------
    ValueError
        If any configuration parameter is invalid
    """
    # ─────────────────────────────────────────────────────────────
    # Validate season detection parameters
    # ─────────────────────────────────────────────────────────────
    if not (0 < THRESHOLD_FRACTION <= 1):
        raise ValueError("THRESHOLD_FRACTION must be in (0, 1]")

    if PEAK_TOLERANCE < 0:
        raise ValueError("PEAK_TOLERANCE must be >= 0")

    # ─────────────────────────────────────────────────────────────
    # Validate input naming
    # ─────────────────────────────────────────────────────────────
    if INDEX_BAND_INDEX < 1:
        raise ValueError("INDEX_BAND_INDEX must be >= 1 (1-based indexing)")

    if not INDEX_NAME:
        raise ValueError("INDEX_NAME must not be empty")

    if len(YEARS) == 0 or any(int(y) != y or y < 1 for y in YEARS):
        raise ValueError("YEARS must be a non-empty list of positive integers")

    # ─────────────────────────────────────────────────────────────
    # Validate processing parameters
    # ─────────────────────────────────────────────────────────────
    if TILE_SIZE < 1:
        raise ValueError("TILE_SIZE must be >= 1")

    if N_PROCESSES is not None and N_PROCESSES < 1:
        raise ValueError("N_PROCESSES must be None or >= 1")

    if NO_DATA_VALUE is None or NO_DATA_VALUE == 0:
        raise ValueError("NO_DATA_VALUE must be set and non-zero (0 marks an empty season)")

    if OUTPUT_DTYPE not in ('float32', 'float64'):
        raise ValueError("OUTPUT_DTYPE must be 'float32' or 'float64'")

    if RANDOM_SAMPLE_SIZE < 0:
        raise ValueError("RANDOM_SAMPLE_SIZE must be >= 0")

    if any(len(p) != 2 for p in PLOT_PIXELS):
        raise ValueError("PLOT_PIXELS entries must be (row, col) pairs")

    # All validations passed
    print("✓ Configuration validation passed")


def get_phenology_params():
    """Keyword arguments for the phenology extraction functions"""
    return {
        'threshold_fraction': THRESHOLD_FRACTION,
        'peak_tolerance': PEAK_TOLERANCE,
    }


def get_processing_config():
    """
    Get main processing configuration as dictionary

    Returns:
    --------
    dict
        Dictionary with all processing parameters
    """
    return {
        # Paths
        'input_folder': INPUT_FOLDER,
        'output_folder': OUTPUT_FOLDER,
        'sample_points_path': SAMPLE_POINTS_PATH,

        # Input naming
        'file_prefix': FILE_PREFIX,
        'index_name': INDEX_NAME,
        'index_band': INDEX_BAND_INDEX,
        'years': list(YEARS),

        # Phenology
        'threshold_fraction': THRESHOLD_FRACTION,
        'peak_tolerance': PEAK_TOLERANCE,

        # Processing
        'tile_size': TILE_SIZE,
        'parallel': USE_PARALLEL_PROCESSING,
        'n_processes': N_PROCESSES,
        'fail_on_tile_error': FAIL_ON_TILE_ERROR,

        # Output
        'output_dtype': OUTPUT_DTYPE,
        'nodata': NO_DATA_VALUE,
        'save_samples': SAVE_SAMPLES_CSV,
        'sample_label_column': SAMPLE_LABEL_COLUMN,
        'random_sample_size': RANDOM_SAMPLE_SIZE,
        'random_sample_seeds': list(RANDOM_SAMPLE_SEEDS),
        'save_plots': SAVE_PLOTS,
        'plot_pixels': list(PLOT_PIXELS),
        'plot_dpi': PLOT_DPI,
    }
