import os

import numpy as np
import pytest
from rasterio.transform import from_origin

from conftest import write_composite, write_monthly_stack
import Preprocess as pp


def test_catalog_finds_months_and_reports_gaps(tmp_path, seasonal_stack):
    folder = str(tmp_path)
    write_monthly_stack(folder, 2024, seasonal_stack, skip_months=(1, 12))
    # Other years and other indices are ignored
    write_composite(os.path.join(folder, "monthly_NDVI_2023_05.tif"), seasonal_stack[0])
    write_composite(os.path.join(folder, "monthly_EVI_2024_05.tif"), seasonal_stack[0])

    catalog = pp.catalog_monthly_composites(folder, 2024, verbose=False)
    assert sorted(catalog['files']) == list(range(2, 12))
    assert catalog['missing'] == [1, 12]
    assert catalog['duplicates'] == {}


def test_catalog_keeps_first_duplicate(tmp_path, seasonal_stack):
    folder = str(tmp_path)
    write_monthly_stack(folder, 2024, seasonal_stack)
    dup = write_composite(os.path.join(folder, "monthly_NDVI_2024_03_T1.tif"), seasonal_stack[2])

    catalog = pp.catalog_monthly_composites(folder, 2024, verbose=False)
    assert os.path.basename(catalog['files'][3]) == "monthly_NDVI_2024_03.tif"
    assert catalog['duplicates'] == {3: [dup]}


def test_catalog_ignores_out_of_range_month(tmp_path, seasonal_stack):
    folder = str(tmp_path)
    write_composite(os.path.join(folder, "monthly_NDVI_2024_13.tif"), seasonal_stack[0])
    catalog = pp.catalog_monthly_composites(folder, 2024, verbose=False)
    assert catalog['files'] == {}
    assert catalog['missing'] == list(range(1, 13))


def test_catalog_missing_folder(tmp_path):
    with pytest.raises(FileNotFoundError):
        pp.catalog_monthly_composites(os.path.join(str(tmp_path), "nope"), 2024)


def test_check_grids_returns_reference(tmp_path, seasonal_stack):
    files = write_monthly_stack(str(tmp_path), 2024, seasonal_stack)
    grid = pp.check_composite_grids(files)
    assert (grid['height'], grid['width']) == (5, 7)
    assert grid['crs'] is not None


def test_check_grids_rejects_size_mismatch(tmp_path, seasonal_stack):
    files = write_monthly_stack(str(tmp_path), 2024, seasonal_stack)
    files[6] = write_composite(os.path.join(str(tmp_path), "odd.tif"), np.zeros((4, 7)))
    with pytest.raises(ValueError, match="Month 06"):
        pp.check_composite_grids(files)


def test_check_grids_rejects_transform_mismatch(tmp_path, seasonal_stack):
    files = write_monthly_stack(str(tmp_path), 2024, seasonal_stack)
    files[6] = write_composite(os.path.join(str(tmp_path), "shifted.tif"), seasonal_stack[5],
                               transform=from_origin(500100.0, 4100000.0, 10.0, 10.0))
    with pytest.raises(ValueError, match="transform"):
        pp.check_composite_grids(files)


def test_check_grids_rejects_missing_band(tmp_path, seasonal_stack):
    files = write_monthly_stack(str(tmp_path), 2024, seasonal_stack)
    with pytest.raises(ValueError):
        pp.check_composite_grids(files, band_index=2)


def test_check_grids_requires_files():
    with pytest.raises(ValueError):
        pp.check_composite_grids({})


def test_preprocess_pipeline_summary(tmp_path, seasonal_stack):
    folder = str(tmp_path)
    write_monthly_stack(folder, 2024, seasonal_stack, skip_months=(7,))
    summary = pp.preprocess_pipeline(folder, [2023, 2024], verbose=False)
    assert summary[2023]['status'] == 'failed'
    assert summary[2024]['status'] == 'success'
    assert summary[2024]['missing'] == [7]
    assert summary[2024]['grid']['width'] == 7
