import os

import matplotlib
matplotlib.use('Agg')

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
import rasterio
import xarray as xr

from conftest import CRS, write_monthly_stack
from models import FEATURE_NAMES, PhenologyRunError
from phenology import extract_phenology_dataset
import run


def run_year(input_folder, output_folder, **kwargs):
    params = dict(use_parallel=False, tile_size=3, verbose=False)
    params.update(kwargs)
    return run.process_year(2024, input_folder, output_folder, **params)


def expected_stack(stack):
    """Feature bands as the pipeline writes them for an in-memory stack"""
    ds = extract_phenology_dataset(xr.DataArray(stack, dims=('month', 'y', 'x')))
    bands = np.stack([ds[name].values for name in FEATURE_NAMES]).astype('float32')
    bands[:, ds['no_data'].values] = np.nan
    return bands


@pytest.fixture
def composites(tmp_path, seasonal_stack):
    folder = os.path.join(str(tmp_path), "composites")
    os.makedirs(folder)
    write_monthly_stack(folder, 2024, seasonal_stack)
    return folder


def test_process_year_writes_feature_raster(tmp_path, composites, seasonal_stack):
    out = os.path.join(str(tmp_path), "out")
    summary = run_year(composites, out)

    assert summary['output'] == os.path.join(out, "phenology_NDVI_2024.tif")
    assert summary['n_tiles'] == 6
    assert summary['n_pixels'] == 35
    assert summary['n_no_data'] == 1
    assert summary['failed_tiles'] == []
    assert summary['missing_months'] == []

    with rasterio.open(summary['output']) as src:
        assert src.count == len(FEATURE_NAMES)
        assert src.descriptions == tuple(FEATURE_NAMES)
        assert src.tags()['year'] == '2024'
        data = src.read()

    np.testing.assert_array_equal(data, expected_stack(seasonal_stack))
    assert np.isnan(data[:, 0, 0]).all()


def test_process_year_counts_empty_seasons(tmp_path, composites):
    summary = run_year(composites, str(tmp_path))
    # Pixel (0, 2) is negative all year
    assert summary['n_empty_season'] >= 1


def test_tile_size_does_not_change_output(tmp_path, composites):
    a = run_year(composites, os.path.join(str(tmp_path), "a"), tile_size=1)
    b = run_year(composites, os.path.join(str(tmp_path), "b"), tile_size=512)
    with rasterio.open(a['output']) as src_a, rasterio.open(b['output']) as src_b:
        np.testing.assert_array_equal(src_a.read(), src_b.read())


def test_missing_month_file_is_treated_as_missing(tmp_path, seasonal_stack):
    folder = str(tmp_path)
    write_monthly_stack(folder, 2024, seasonal_stack, skip_months=(6,))
    summary = run_year(folder, os.path.join(folder, "out"))
    assert summary['missing_months'] == [6]

    gapped = seasonal_stack.copy()
    gapped[5] = np.nan
    with rasterio.open(summary['output']) as src:
        np.testing.assert_array_equal(src.read(), expected_stack(gapped))


def test_no_composites_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        run_year(str(tmp_path), str(tmp_path))


def test_failed_tile_raises_run_error(tmp_path, composites, monkeypatch):
    original = run.read_monthly_window

    def flaky(month_files, row_off, col_off, *args, **kwargs):
        if (row_off, col_off) == (0, 0):
            raise OSError("corrupt block")
        return original(month_files, row_off, col_off, *args, **kwargs)

    monkeypatch.setattr(run, 'read_monthly_window', flaky)

    with pytest.raises(PhenologyRunError) as excinfo:
        run_year(composites, str(tmp_path))
    err = excinfo.value
    assert err.year == 2024
    assert [t.tile_id for t in err.failed_tiles] == [0]
    assert 'corrupt block' in err.failed_tiles[0].reason


def test_failed_tile_written_as_nodata_when_tolerated(tmp_path, composites, monkeypatch):
    original = run.read_monthly_window

    def flaky(month_files, row_off, col_off, *args, **kwargs):
        if (row_off, col_off) == (0, 3):
            raise OSError("corrupt block")
        return original(month_files, row_off, col_off, *args, **kwargs)

    monkeypatch.setattr(run, 'read_monthly_window', flaky)

    summary = run_year(composites, str(tmp_path), fail_on_tile_error=False)
    assert summary['failed_tiles'] == [1]
    with rasterio.open(summary['output']) as src:
        data = src.read()
    assert np.isnan(data[:, 0:3, 3:6]).all()
    assert np.isfinite(data[:, 4, 0]).all()


def test_process_tile_reports_error():
    result = run.process_tile((7, (0, 0, 2, 2), {}, 1, 0.5, 1e-6))
    assert result['error'] is None
    assert result['no_data'].all()

    result = run.process_tile((7, (0, 0, 2, 2), {1: "does_not_exist.tif"}, 1, 0.5, 1e-6))
    assert result['tile_id'] == 7
    assert result['error'] is not None


def test_features_to_stack_marks_no_data():
    features = {name: np.ones((2, 2)) for name in FEATURE_NAMES}
    no_data = np.array([[True, False], [False, False]])

    stack = run.features_to_stack(features, no_data)
    assert stack.shape == (14, 2, 2)
    assert stack.dtype == np.float32
    assert np.isnan(stack[:, 0, 0]).all()
    assert (stack[:, 1, 1] == 1).all()

    kept = run.features_to_stack(features, no_data, nodata=None)
    assert (kept == 1).all()


def test_output_profile():
    grid = {'height': 4, 'width': 5, 'transform': None, 'crs': CRS}
    profile = run.output_profile(grid, 'float64', None)
    assert profile['count'] == 14
    assert profile['dtype'] == 'float64'
    assert 'nodata' not in profile


def test_export_samples(tmp_path, composites):
    out = str(tmp_path)
    summary = run_year(composites, out)

    # Pixel centres: x = 500005 + 10 * col, y = 4099995 - 10 * row
    points = gpd.GeoDataFrame(
        {'class': ['crop', 'water', 'none']},
        geometry=gpd.points_from_xy([500035.0, 500025.0, 500005.0], [4099975.0, 4099995.0, 4099995.0]),
        crs=CRS,
    )
    points_path = os.path.join(out, "points.gpkg")
    points.to_file(points_path, driver="GPKG")

    written = run.export_samples(summary['output'], out, 'NDVI', 2024,
                                 sample_points_path=points_path, label_column='class',
                                 random_sample_size=5, random_sample_seeds=(0, 1),
                                 verbose=False)
    assert len(written) == 3

    samples = pd.read_csv(written[0])
    # The never-observed pixel (0, 0) is dropped
    assert samples['class'].tolist() == ['crop', 'water']
    assert list(samples.columns) == ['class', 'x', 'y'] + list(FEATURE_NAMES)
    assert samples.loc[1, 'NDVImax'] == pytest.approx(-0.3)

    randoms = pd.read_csv(written[1])
    assert len(randoms) == 5
    assert randoms[list(FEATURE_NAMES)].notna().all().all()


def test_plot_pixels(tmp_path, composites):
    out = str(tmp_path)
    written = run.plot_pixels([(1, 1), (0, 0)], composites, out, 2024,
                              dpi=50, figsize=(6, 3), verbose=False)
    assert len(written) == 2
    assert all(os.path.exists(p) for p in written)


def test_parallel_run_matches_sequential(tmp_path, composites):
    seq = run_year(composites, os.path.join(str(tmp_path), "seq"), tile_size=2)
    par = run_year(composites, os.path.join(str(tmp_path), "par"), tile_size=2,
                   use_parallel=True, n_processes=2)
    assert par['n_no_data'] == seq['n_no_data']
    assert par['n_empty_season'] == seq['n_empty_season']
    with rasterio.open(seq['output']) as src_seq, rasterio.open(par['output']) as src_par:
        np.testing.assert_array_equal(src_par.read(), src_seq.read())


@pytest.mark.parametrize('nodata', [None, 0, 0.0])
def test_nodata_must_differ_from_empty_season(tmp_path, composites, nodata):
    with pytest.raises(ValueError):
        run_year(composites, str(tmp_path), nodata=nodata)


def test_main_uses_configured_phenology_params(tmp_path, composites, monkeypatch):
    out = os.path.join(str(tmp_path), "out")
    monkeypatch.setattr(run, 'INPUT_FOLDER', composites)
    monkeypatch.setattr(run, 'OUTPUT_FOLDER', out)
    monkeypatch.setattr(run, 'YEARS', [2024])
    monkeypatch.setattr(run, 'USE_PARALLEL_PROCESSING', False)
    monkeypatch.setattr(run, 'TILE_SIZE', 4)
    monkeypatch.setattr(run, 'get_phenology_params',
                        lambda: {'threshold_fraction': 0.8, 'peak_tolerance': 1e-6})

    run.main()

    with rasterio.open(os.path.join(out, "phenology_NDVI_2024.tif")) as src:
        assert src.tags()['threshold_fraction'] == '0.8'
        thr = src.read(2)
        ndvi_max = src.read(1)
    np.testing.assert_allclose(thr, np.float32(0.8) * ndvi_max, rtol=1e-6)

    summary = pd.read_csv(os.path.join(out, "phenology_NDVI_run_summary.csv"))
    assert summary['year'].tolist() == [2024]
