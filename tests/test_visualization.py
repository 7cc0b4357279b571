"""
Smoke tests for the home range plots
"""

from home_range_analysis import EstimatorConfig, estimate_home_range
from run_analysis import run_analysis
from visualization import (
    generate_all_visualizations,
    plot_home_range,
    safe_name,
)


def test_safe_name():
    assert safe_name('Big Cat/2') == 'Big_Cat_2'


def test_plot_home_range(tmp_path, two_cluster_points):
    result = estimate_home_range(two_cluster_points, 'pair', EstimatorConfig(grid_size=80))
    path = plot_home_range(result, tmp_path, points=two_cluster_points)
    assert path.exists()
    assert path.name == 'home_range_pair.png'


def test_generate_all_visualizations(tmp_path, relocations_df):
    _, results = run_analysis(relocations_df)
    generate_all_visualizations(results, str(tmp_path), df=relocations_df)
    assert (tmp_path / 'home_range_Tom.png').exists()
    assert (tmp_path / 'home_range_Luna.png').exists()
    assert (tmp_path / 'home_range_overview.png').exists()
    assert (tmp_path / 'area_levels.png').exists()
