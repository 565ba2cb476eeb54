import pytest

import config


def test_default_config_is_valid():
    config.validate_config()


def test_phenology_params_follow_config():
    params = config.get_phenology_params()
    assert params == {'threshold_fraction': 0.5, 'peak_tolerance': 1e-6}


def test_processing_config_has_all_sections():
    cfg = config.get_processing_config()
    for key in ('input_folder', 'years', 'index_name', 'tile_size', 'nodata', 'fail_on_tile_error'):
        assert key in cfg


def test_summary_mentions_index_and_years():
    summary = config.get_config_summary()
    assert config.INDEX_NAME in summary
    assert str(config.YEARS[0]) in summary


@pytest.mark.parametrize('name, value', [
    ('THRESHOLD_FRACTION', 0.0),
    ('THRESHOLD_FRACTION', 1.5),
    ('PEAK_TOLERANCE', -1.0),
    ('TILE_SIZE', 0),
    ('INDEX_BAND_INDEX', 0),
    ('YEARS', []),
    ('N_PROCESSES', 0),
    ('OUTPUT_DTYPE', 'int16'),
    ('PLOT_PIXELS', [(1, 2, 3)]),
    ('NO_DATA_VALUE', None),
    ('NO_DATA_VALUE', 0),
])
def test_invalid_values_are_rejected(monkeypatch, name, value):
    monkeypatch.setattr(config, name, value)
    with pytest.raises(ValueError):
        config.validate_config()
