"""
Tests for relocation loading and the per-individual batch runner
"""

import json

import numpy as np
import pandas as pd
import pytest

from home_range_analysis import (
    EstimatorConfig,
    GridTruncationWarning,
    load_data,
    project_lonlat,
)
from run_analysis import main, run_analysis


class TestLoadData:

    def test_drops_missing_coordinates(self, tmp_path):
        path = tmp_path / 'relocations.csv'
        pd.DataFrame({
            'Name': ['a', 'a', 'a', 'b'],
            'x': [1.0, None, 3.0, 'n/a'],
            'y': [1.0, 2.0, None, 4.0],
        }).to_csv(path, index=False)
        df = load_data(str(path))
        assert len(df) == 1
        assert df.loc[0, 'x'] == 1.0

    def test_gzipped_tsv(self, tmp_path, relocations_df):
        path = tmp_path / 'relocations.tsv.gz'
        relocations_df.to_csv(path, sep='\t', index=False, compression='gzip')
        df = load_data(str(path))
        assert len(df) == len(relocations_df)
        assert set(df['Name']) == {'Tom', 'Luna', 'Solo'}

    def test_missing_id_column_is_one_individual(self, tmp_path):
        path = tmp_path / 'relocations.csv'
        pd.DataFrame({'x': [1.0, 2.0], 'y': [3.0, 4.0]}).to_csv(path, index=False)
        df = load_data(str(path))
        assert (df['Name'] == 'all').all()

    def test_lonlat_projection(self, tmp_path):
        path = tmp_path / 'gps.csv'
        pd.DataFrame({'Name': ['a', 'a'], 'lon': [-93.0, -93.0],
                      'lat': [45.0, 45.01]}).to_csv(path, index=False)
        df = load_data(str(path), x_col='lon', y_col='lat', lonlat=True)
        dy = df['y'].iloc[1] - df['y'].iloc[0]
        assert dy == pytest.approx(np.radians(0.01) * 6371000.0)
        assert df['x'].abs().max() == pytest.approx(0.0, abs=1e-6)

    def test_projection_scales_longitude(self):
        df = pd.DataFrame({'lon': [10.0, 10.01], 'lat': [60.0, 60.0]})
        projected = project_lonlat(df)
        dx = projected['x'].iloc[1] - projected['x'].iloc[0]
        assert dx == pytest.approx(np.radians(0.01) * 6371000.0 * 0.5, rel=1e-6)


class TestRunAnalysis:

    def test_failures_are_isolated(self, relocations_df):
        summary, results = run_analysis(relocations_df)
        assert list(summary['individual']) == ['Luna', 'Solo', 'Tom']
        assert set(results) == {'Luna', 'Tom'}

        solo = summary.set_index('individual').loc['Solo']
        assert 'at least 2' in solo['error']
        assert pd.isna(solo['area'])

        tom = summary.set_index('individual').loc['Tom']
        assert tom['area'] > 0
        assert tom['method'] == 'reference'

    def test_parallel_matches_sequential(self, relocations_df):
        sequential, _ = run_analysis(relocations_df, workers=1)
        parallel, _ = run_analysis(relocations_df, workers=3)
        pd.testing.assert_frame_equal(
            sequential.set_index('individual').sort_index(),
            parallel.set_index('individual').sort_index())

    def test_lscv_failure_recorded(self, relocations_df):
        sites = np.random.default_rng(1).normal(scale=100.0, size=(10, 2))
        den = pd.DataFrame({'Name': 'Den', 'x': np.repeat(sites[:, 0], 3),
                            'y': np.repeat(sites[:, 1], 3)})
        df = pd.concat([relocations_df, den], ignore_index=True)

        summary, _ = run_analysis(df, config=EstimatorConfig(bandwidth='lscv'))
        row = summary.set_index('individual').loc['Den']
        assert 'LSCV did not converge' in row['error']

        config = EstimatorConfig(bandwidth='lscv', fallback_to_reference=True)
        summary, _ = run_analysis(df, config=config)
        row = summary.set_index('individual').loc['Den']
        assert row['method'] == 'reference'
        assert pd.isna(row['error'])

    def test_writes_outputs(self, tmp_path, relocations_df):
        summary, results = run_analysis(relocations_df, str(tmp_path))

        written = pd.read_csv(tmp_path / 'home_range_summary.csv')
        assert len(written) == 3

        levels = pd.read_csv(tmp_path / 'home_range_levels.csv')
        assert set(levels['individual']) == {'Tom', 'Luna'}

        with open(tmp_path / 'home_ranges.geojson') as f:
            geojson = json.load(f)
        n_islands = sum(r.n_islands for r in results.values())
        assert len(geojson['features']) == n_islands
        assert geojson['features'][0]['geometry']['type'] == 'Polygon'

        with open(tmp_path / 'analysis_summary.json') as f:
            overview = json.load(f)
        assert overview['n_individuals'] == 3
        assert overview['n_failed'] == 1
        assert overview['n_truncated'] == 0

    def test_truncated_count(self, tmp_path, relocations_df):
        with pytest.warns(GridTruncationWarning):
            run_analysis(relocations_df, str(tmp_path), config=EstimatorConfig(padding=0.0))
        with open(tmp_path / 'analysis_summary.json') as f:
            overview = json.load(f)
        assert overview['n_truncated'] == 2
        assert len(overview['warnings']) == 2

    def test_missing_id_reported(self, capsys, relocations_df):
        unnamed = pd.DataFrame({'Name': [None, None], 'x': [1.0, 2.0], 'y': [3.0, 4.0]})
        df = pd.concat([relocations_df, unnamed], ignore_index=True)
        summary, _ = run_analysis(df)
        assert 'Dropped 2 relocations with no Name' in capsys.readouterr().out
        assert list(summary['individual']) == ['Luna', 'Solo', 'Tom']


class TestMain:

    def test_cli(self, tmp_path, relocations_df):
        path = tmp_path / 'relocations.csv'
        relocations_df.to_csv(path, index=False)
        out = tmp_path / 'out'
        summary = main(['-i', str(path), '-o', str(out), '-p', '90', '--area-unit', 'km2'])
        assert (summary['percent'] == 90.0).all()
        assert (out / 'home_range_summary.csv').exists()

    def test_missing_input(self, tmp_path):
        with pytest.raises(SystemExit):
            main(['-i', str(tmp_path / 'nope.csv')])

    def test_invalid_config(self, tmp_path, relocations_df):
        path = tmp_path / 'relocations.csv'
        relocations_df.to_csv(path, index=False)
        with pytest.raises(SystemExit):
            main(['-i', str(path), '-o', str(tmp_path / 'out'), '-b', 'silverman'])
