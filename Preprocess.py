"""
Monthly Composite Preprocessing Module
======================================
Preparation checks run before phenology extraction:
1. Cataloguing the monthly composites of each year (duplicates, missing months)
2. Verifying that all composites of a year share one pixel grid

Composites are never modified; problems are reported or raised.
"""

import os
import re

import rasterio

import config


# ============================================================================
# COMPOSITE CATALOGUE
# ============================================================================

def composite_filename_pattern(file_prefix, index_name, year):
    """
    Regular expression matching the composites of one year

    Matches ``{prefix}_{index}_{year}_{MM}`` with an optional suffix before
    the ``.tif`` extension (e.g. a ``_T1`` re-export marker).
    """
    return re.compile(
        rf"^{re.escape(file_prefix)}_{re.escape(index_name)}_{int(year)}_(\d{{2}})(?:_.*)?\.tiff?$",
        re.IGNORECASE,
    )


def catalog_monthly_composites(folder_path, year, file_prefix="monthly",
                               index_name="NDVI", verbose=True):
    """
    Find the monthly composite file of each month of a year

    When several files match the same month (re-exports), the first by
    sorted name is kept and the others are reported.

    Parameters:
    -----------
    folder_path : str
        Folder containing the composites
    year : int
        Analysis year
    file_prefix : str
        Filename prefix
    index_name : str
        Vegetation index name used in the filenames
    verbose : bool
        Print duplicates and missing months

    Returns:
    --------
    dict
        {'files': {month: path}, 'missing': [months], 'duplicates': {month: [paths]}}
    """
    if not os.path.isdir(folder_path):
        raise FileNotFoundError(f"Composite folder not found: {folder_path}")

    pattern = composite_filename_pattern(file_prefix, index_name, year)

    files = {}
    duplicates = {}
    for fname in sorted(os.listdir(folder_path)):
        m = pattern.match(fname)
        if not m:
            continue
        month = int(m.group(1))
        if not 1 <= month <= 12:
            if verbose:
                print(f"  ⚠ Ignoring {fname}: month {month:02d} out of range")
            continue
        path = os.path.join(folder_path, fname)
        if month in files:
            duplicates.setdefault(month, []).append(path)
        else:
            files[month] = path

    missing = [m for m in range(1, 13) if m not in files]

    if verbose:
        for month, paths in sorted(duplicates.items()):
            print(f"  ⚠ Month {month:02d}: keeping {os.path.basename(files[month])}, "
                  f"ignoring {len(paths)} duplicate(s)")
        if missing:
            print(f"  ⚠ Year {year}: no composite for month(s) {missing} "
                  f"(treated as missing observations)")

    return {'files': files, 'missing': missing, 'duplicates': duplicates}


# ============================================================================
# GRID CONSISTENCY
# ============================================================================

def check_composite_grids(month_files, band_index=1):
    """
    Verify that all composites share size, transform and CRS

    Parameters:
    -----------
    month_files : dict
        {month: path}
    band_index : int
        Index band that must exist in every file (1-based)

    Returns:
    --------
    dict
        Reference grid: {'height', 'width', 'transform', 'crs'}

    Raises:
    -------
    ValueError
        If no file is given, a file lacks the band, or grids differ
    """
    if not month_files:
        raise ValueError("No monthly composites to check")

    reference = None
    reference_month = None
    for month in sorted(month_files):
        path = month_files[month]
        with rasterio.open(path) as src:
            if band_index > src.count:
                raise ValueError(f"{path} has {src.count} band(s), band {band_index} requested")
            grid = {
                'height': src.height,
                'width': src.width,
                'transform': src.transform,
                'crs': src.crs,
            }

        if reference is None:
            reference, reference_month = grid, month
            continue

        if (grid['height'], grid['width']) != (reference['height'], reference['width']):
            raise ValueError(
                f"Month {month:02d} grid {grid['height']}x{grid['width']} differs from "
                f"month {reference_month:02d} grid {reference['height']}x{reference['width']}"
            )
        if not grid['transform'].almost_equals(reference['transform']):
            raise ValueError(f"Month {month:02d} transform differs from month {reference_month:02d}")
        if grid['crs'] != reference['crs']:
            raise ValueError(f"Month {month:02d} CRS {grid['crs']} differs from {reference['crs']}")

    return reference


# ============================================================================
# MAIN PIPELINE
# ============================================================================

def preprocess_pipeline(input_folder, years, file_prefix="monthly", index_name="NDVI",
                        band_index=1, verbose=True):
    """
    Catalogue and check the composites of every analysis year

    Returns summary as dictionary keyed by year
    """
    if verbose:
        print("=" * 70)
        print("CHECKING MONTHLY COMPOSITES")
        print("=" * 70)

    summary = {}
    for year in years:
        if verbose:
            print("\n" + "─" * 70)
            print(f"Year {year}")
            print("─" * 70)

        catalog = catalog_monthly_composites(input_folder, year, file_prefix,
                                             index_name, verbose=verbose)
        if not catalog['files']:
            if verbose:
                print(f"  ✗ No composites found for {year}")
            summary[year] = {'status': 'failed', 'reason': 'No composites', **catalog}
            continue

        grid = check_composite_grids(catalog['files'], band_index)
        if verbose:
            print(f"  ✓ {len(catalog['files'])} month(s), grid {grid['height']}x{grid['width']}")
        summary[year] = {'status': 'success', 'grid': grid, **catalog}

    return summary


if __name__ == "__main__":
    config.validate_config()
    cfg = config.get_processing_config()

    result = preprocess_pipeline(
        input_folder=cfg['input_folder'],
        years=cfg['years'],
        file_prefix=cfg['file_prefix'],
        index_name=cfg['index_name'],
        band_index=cfg['index_band'],
    )

    print("\nPreprocessing result:")
    for year, info in result.items():
        print(f"  {year}: {info['status']}, missing months {info['missing']}")
