import os

import numpy as np
import pytest
import rasterio
from rasterio.transform import from_origin


CRS = "EPSG:32633"
TRANSFORM = from_origin(500000.0, 4100000.0, 10.0, 10.0)


def write_composite(path, band, nodata=None, transform=TRANSFORM, crs=CRS, count=1):
    """Write a single-band (or repeated multi-band) float32 GeoTIFF"""
    height, width = band.shape
    profile = {
        'driver': 'GTiff',
        'height': height,
        'width': width,
        'count': count,
        'dtype': 'float32',
        'crs': crs,
        'transform': transform,
    }
    if nodata is not None:
        profile['nodata'] = nodata
    with rasterio.open(path, 'w', **profile) as dst:
        for i in range(1, count + 1):
            dst.write(band.astype('float32'), i)
    return path


def write_monthly_stack(folder, year, stack, prefix="monthly", index_name="NDVI",
                        skip_months=(), nodata=None):
    """Write a (12, H, W) stack as one composite per month; returns {month: path}"""
    files = {}
    for month in range(1, 13):
        if month in skip_months:
            continue
        path = os.path.join(folder, f"{prefix}_{index_name}_{year}_{month:02d}.tif")
        files[month] = write_composite(path, stack[month - 1], nodata=nodata)
    return files


@pytest.fixture
def seasonal_stack():
    """Synthetic 12 x 5 x 7 NDVI stack with a mix of pixel situations"""
    rng = np.random.default_rng(42)
    months = np.arange(1, 13).reshape(12, 1, 1)
    peak = rng.integers(4, 10, size=(1, 5, 7))
    amp = rng.uniform(0.3, 0.7, size=(1, 5, 7))
    stack = 0.1 + amp * np.exp(-((months - peak) ** 2) / 6.0)
    stack = np.round(stack, 3).astype('float32')

    # Scattered cloud gaps
    gaps = rng.random((12, 5, 7)) < 0.15
    stack[gaps] = np.nan

    # Pixel (0, 0): never observed
    stack[:, 0, 0] = np.nan
    # Pixel (0, 1): constant series
    stack[:, 0, 1] = 0.4
    # Pixel (0, 2): all negative (water)
    stack[:, 0, 2] = -0.3
    return stack
