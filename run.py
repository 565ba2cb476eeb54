"""
Monthly Phenology Main Processing Pipeline
==========================================
Main execution script for:
- Per-year phenology extraction from monthly composites
- Tiled, bounded-memory raster processing
- Parallel processing support
- Sampling, plots and run summary
"""

import os
from multiprocessing import Pool, cpu_count

import numpy as np
import pandas as pd
import rasterio
from rasterio.windows import Window

from config import *
from models import FEATURE_NAMES, PhenologyRunError, TileProcessingError
from phenology import extract_phenology_block, extract_pixel_phenology, imap_bounded, iter_tiles
from Preprocess import catalog_monthly_composites, check_composite_grids
from utils import (
    read_monthly_window, read_pixel_series, open_phenology_raster,
    load_sample_points, sample_features_at_points, random_sample_features,
    plot_pixel_phenology,
)


# ============================================================================
# TILE PROCESSING
# ============================================================================

def process_tile(args):
    """
    Read and process a single tile (wrapper for parallel execution)

    Parameters:
    -----------
    args : tuple
        (tile_id, window, month_files, band_index, threshold_fraction,
        peak_tolerance) with window = (row_off, col_off, n_rows, n_cols)

    Returns:
    --------
    dict
        Tile result; ``error`` holds the failure message when the tile could
        not be read or processed
    """
    tile_id, window, month_files, band_index, threshold_fraction, peak_tolerance = args
    row_off, col_off, n_rows, n_cols = window

    try:
        values, valid = read_monthly_window(month_files, row_off, col_off, n_rows, n_cols, band_index)
        features, no_data = extract_phenology_block(
            values, valid,
            threshold_fraction=threshold_fraction,
            peak_tolerance=peak_tolerance,
        )
    except Exception as e:
        # Reported by the caller as a tile failure
        return {'tile_id': tile_id, 'window': window, 'error': f"{type(e).__name__}: {e}"}

    return {
        'tile_id': tile_id,
        'window': window,
        'features': features,
        'no_data': no_data,
        'error': None,
    }


def features_to_stack(features, no_data, dtype='float32', nodata=np.nan):
    """
    Stack tile features into a (14, rows, cols) band array

    All-missing pixels receive ``nodata`` in every band when ``nodata`` is
    not None; otherwise they keep their 0 values.
    """
    stack = np.stack([features[name] for name in FEATURE_NAMES]).astype(dtype)
    if nodata is not None:
        stack[:, no_data] = nodata
    return stack


def output_profile(grid, dtype='float32', nodata=np.nan):
    """GeoTIFF profile of the phenology raster"""
    profile = {
        'driver': 'GTiff',
        'height': grid['height'],
        'width': grid['width'],
        'count': len(FEATURE_NAMES),
        'dtype': dtype,
        'crs': grid['crs'],
        'transform': grid['transform'],
        'compress': 'lzw',
    }
    if nodata is not None:
        profile['nodata'] = nodata
    return profile


def phenology_output_path(output_folder, index_name, year):
    return os.path.join(output_folder, f"phenology_{index_name}_{year}.tif")


# ============================================================================
# YEAR PROCESSING
# ============================================================================

def process_year(year, input_folder, output_folder,
                 file_prefix="monthly", index_name="NDVI", band_index=1,
                 threshold_fraction=0.5, peak_tolerance=1e-6,
                 tile_size=512, use_parallel=True, n_processes=None,
                 fail_on_tile_error=True, output_dtype='float32', nodata=np.nan,
                 verbose=True):
    """
    Extract phenology features for one analysis year

    Parameters:
    -----------
    year : int
        Analysis year
    input_folder : str
        Folder with the monthly composites
    output_folder : str
        Folder for the phenology raster
    file_prefix : str
        Composite filename prefix
    index_name : str
        Vegetation index name (filenames and outputs)
    band_index : int
        Band holding the index (1-based)
    threshold_fraction : float
        Season-entry threshold as a fraction of the annual maximum
    peak_tolerance : float
        Tolerance for matching the peak month
    tile_size : int
        Tile edge length in pixels
    use_parallel : bool
        Process tiles on a worker pool
    n_processes : int, optional
        Pool size (None = CPU count)
    fail_on_tile_error : bool
        Raise PhenologyRunError when any tile failed
    output_dtype : str
        Raster data type
    nodata : float
        Value for all-missing pixels and failed tiles; must differ from 0,
        which marks an empty season
    verbose : bool
        Print progress

    Returns:
    --------
    dict
        Run summary for the year
    """
    if nodata is None or nodata == 0:
        raise ValueError("nodata must be set and non-zero to keep no-data pixels apart from empty seasons")

    if verbose:
        print(f"\n{'=' * 70}")
        print(f"Processing {index_name} {year}")
        print(f"{'=' * 70}")

    catalog = catalog_monthly_composites(input_folder, year, file_prefix, index_name, verbose=verbose)
    month_files = catalog['files']
    if not month_files:
        raise FileNotFoundError(f"No {index_name} composites for {year} in {input_folder}")

    grid = check_composite_grids(month_files, band_index)
    tiles = list(iter_tiles(grid['height'], grid['width'], tile_size))

    if verbose:
        print(f"  Months available: {sorted(month_files)}")
        print(f"  Grid: {grid['height']} x {grid['width']}, {len(tiles)} tile(s) of {tile_size}")

    os.makedirs(output_folder, exist_ok=True)
    out_path = phenology_output_path(output_folder, index_name, year)

    tasks = [
        (tile_id, window, month_files, band_index, threshold_fraction, peak_tolerance)
        for tile_id, window in enumerate(tiles)
    ]

    failed = []
    n_no_data = 0
    n_empty_season = 0

    with rasterio.open(out_path, 'w', **output_profile(grid, output_dtype, nodata)) as dst:
        for i, name in enumerate(FEATURE_NAMES, start=1):
            dst.set_band_description(i, name)
        dst.update_tags(year=str(year), index=index_name,
                        threshold_fraction=str(threshold_fraction),
                        peak_tolerance=str(peak_tolerance))

        for result in _run_tiles(tasks, use_parallel, n_processes):
            row_off, col_off, n_rows, n_cols = result['window']
            window = Window(col_off, row_off, n_cols, n_rows)

            if result['error'] is not None:
                err = TileProcessingError(result['tile_id'], result['window'], result['error'])
                failed.append(err)
                if verbose:
                    print(f"  ✗ {err}")
                dst.write(np.full((len(FEATURE_NAMES), n_rows, n_cols), nodata, dtype=output_dtype),
                          window=window)
                continue

            features, no_data = result['features'], result['no_data']
            dst.write(features_to_stack(features, no_data, output_dtype, nodata), window=window)
            n_no_data += int(no_data.sum())
            n_empty_season += int(((features['Month_start_val'] == 0) & ~no_data).sum())

    n_pixels = grid['height'] * grid['width']
    if verbose:
        print(f"  ✓ Saved {out_path}")
        print(f"    Pixels: {n_pixels}, no data: {n_no_data}, no season: {n_empty_season}")
        if failed:
            print(f"  ⚠ {len(failed)} tile(s) failed")

    if failed and fail_on_tile_error:
        raise PhenologyRunError(year, failed)

    return {
        'year': year,
        'index': index_name,
        'output': out_path,
        'months_available': len(month_files),
        'missing_months': catalog['missing'],
        'n_tiles': len(tiles),
        'failed_tiles': [e.tile_id for e in failed],
        'n_pixels': n_pixels,
        'n_no_data': n_no_data,
        'n_empty_season': n_empty_season,
    }


def _run_tiles(tasks, use_parallel, n_processes):
    """Yield tile results, on a pool when parallel processing is enabled"""
    n_processes = min(n_processes or cpu_count(), len(tasks)) if tasks else 1
    if not use_parallel or n_processes <= 1:
        for task in tasks:
            yield process_tile(task)
        return

    with Pool(processes=n_processes) as pool:
        yield from imap_bounded(pool, process_tile, tasks, 2 * n_processes)


# ============================================================================
# SAMPLING AND PLOTS
# ============================================================================

def export_samples(raster_path, output_folder, index_name, year,
                   sample_points_path=None, label_column=None,
                   random_sample_size=0, random_sample_seeds=(0,), verbose=True):
    """
    Sample the phenology raster at labelled points and at random pixels

    Returns:
    --------
    list
        Paths of the written CSV files
    """
    written = []
    ds = open_phenology_raster(raster_path)

    if sample_points_path:
        points = load_sample_points(sample_points_path, label_column)
        df = sample_features_at_points(ds, points, label_column=label_column)
        out_csv = os.path.join(output_folder, f"samples_{index_name}_{year}.csv")
        df.to_csv(out_csv, index=False)
        written.append(out_csv)
        if verbose:
            print(f"  ✓ {len(df)} point sample(s) saved: {out_csv}")

    if random_sample_size > 0:
        for seed in random_sample_seeds:
            df = random_sample_features(ds, random_sample_size, seed=seed)
            out_csv = os.path.join(output_folder, f"random_samples_{index_name}_{year}_seed{seed}.csv")
            df.to_csv(out_csv, index=False)
            written.append(out_csv)
            if verbose:
                print(f"  ✓ {len(df)} random sample(s) saved (seed {seed})")

    return written


def plot_pixels(pixels, input_folder, output_folder, year, file_prefix="monthly",
                index_name="NDVI", band_index=1, threshold_fraction=0.5,
                peak_tolerance=1e-6, dpi=300, figsize=(12, 6), verbose=True):
    """Plot the phenology of selected (row, col) pixels"""
    catalog = catalog_monthly_composites(input_folder, year, file_prefix, index_name, verbose=False)
    written = []
    for row, col in pixels:
        try:
            series = read_pixel_series(catalog['files'], row, col, band_index)
            features = extract_pixel_phenology(series, threshold_fraction, peak_tolerance)
            out_png = os.path.join(output_folder, f"phenology_{index_name}_{year}_r{row}_c{col}.png")
            plot_pixel_phenology(series, features, out_png,
                                 title=f'{index_name} {year}: pixel ({row}, {col})',
                                 index_name=index_name, dpi=dpi, figsize=figsize)
            written.append(out_png)
        except Exception as e:
            if verbose:
                print(f"  ✗ Plot error for pixel ({row}, {col}): {e}")
    return written


# ============================================================================
# MAIN EXECUTION FUNCTION
# ============================================================================

def main():
    """
    Main execution function for the monthly phenology pipeline
    """
    print("\n" + "═" * 70)
    print("MONTHLY PHENOLOGY FEATURE EXTRACTION PIPELINE")
    print("═" * 70)
    print(get_config_summary())
    validate_config()

    os.makedirs(OUTPUT_FOLDER, exist_ok=True)

    phenology_params = get_phenology_params()

    summaries = []
    for year in YEARS:
        summary = process_year(
            year,
            INPUT_FOLDER,
            OUTPUT_FOLDER,
            file_prefix=FILE_PREFIX,
            index_name=INDEX_NAME,
            band_index=INDEX_BAND_INDEX,
            tile_size=TILE_SIZE,
            use_parallel=USE_PARALLEL_PROCESSING,
            n_processes=N_PROCESSES,
            fail_on_tile_error=FAIL_ON_TILE_ERROR,
            output_dtype=OUTPUT_DTYPE,
            nodata=NO_DATA_VALUE,
            **phenology_params,
        )
        summaries.append(summary)

        if SAVE_SAMPLES_CSV and (SAMPLE_POINTS_PATH or RANDOM_SAMPLE_SIZE > 0):
            export_samples(
                summary['output'], OUTPUT_FOLDER, INDEX_NAME, year,
                sample_points_path=SAMPLE_POINTS_PATH,
                label_column=SAMPLE_LABEL_COLUMN,
                random_sample_size=RANDOM_SAMPLE_SIZE,
                random_sample_seeds=RANDOM_SAMPLE_SEEDS,
            )

        if SAVE_PLOTS and PLOT_PIXELS:
            plot_pixels(
                PLOT_PIXELS, INPUT_FOLDER, OUTPUT_FOLDER, year,
                file_prefix=FILE_PREFIX, index_name=INDEX_NAME,
                band_index=INDEX_BAND_INDEX,
                dpi=PLOT_DPI, figsize=PLOT_FIGSIZE,
                **phenology_params,
            )

    df_all = pd.DataFrame(summaries)
    out_summary = os.path.join(OUTPUT_FOLDER, f"phenology_{INDEX_NAME}_run_summary.csv")
    df_all.to_csv(out_summary, index=False)

    print("\n" + "═" * 70)
    print("FINAL SUMMARY")
    print("═" * 70)
    print(df_all[['year', 'months_available', 'n_pixels', 'n_no_data',
                  'n_empty_season']].to_string(index=False))
    print(f"\n✓ Run summary: {out_summary}")
    print("\n" + "═" * 70)
    print("ALL PROCESSING COMPLETED!")
    print("═" * 70)


# ============================================================================
# ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    main()
