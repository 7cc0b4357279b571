"""
Visualization Module for Home Range Analysis
============================================
Plots of utilization distributions, home range outlines and area tables.
"""

import argparse
from pathlib import Path
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from home_range_analysis import HomeRangeResult

# Use a non-interactive backend for server-side rendering
plt.switch_backend('Agg')


def safe_name(individual) -> str:
    return str(individual).replace(' ', '_').replace('/', '_')


def draw_polygon(ax, geometry, color: str = 'red', linewidth: float = 2,
                 label: Optional[str] = None) -> None:
    """Draw a polygon outline, holes included."""
    x, y = geometry.exterior.xy
    ax.plot(x, y, color=color, linewidth=linewidth, label=label)
    for interior in geometry.interiors:
        x, y = interior.xy
        ax.plot(x, y, color=color, linewidth=linewidth, linestyle='--')


def plot_home_range(result: HomeRangeResult, output_path: Path,
                    points: Optional[np.ndarray] = None,
                    figsize: Tuple[int, int] = (10, 10)) -> Path:
    """Plot the UD heatmap with the home range outline and relocations."""
    fig, ax = plt.subplots(figsize=figsize)

    ud = result.ud
    extent = [ud.xs[0] - ud.dx / 2, ud.xs[-1] + ud.dx / 2,
              ud.ys[0] - ud.dy / 2, ud.ys[-1] + ud.dy / 2]
    im = ax.imshow(ud.density, extent=extent, origin='lower', aspect='equal',
                   cmap='YlOrRd')
    plt.colorbar(im, ax=ax, label='Utilization density', shrink=0.8)

    if points is not None and len(points) > 0:
        ax.scatter(points[:, 0], points[:, 1], c='steelblue', s=4, alpha=0.5,
                   label='Relocations')

    for i, polygon in enumerate(result.polygons):
        label = f'{result.percent:g}% home range' if i == 0 else None
        draw_polygon(ax, polygon.geometry, color='black', label=label)

    ax.set_xlabel('X')
    ax.set_ylabel('Y')
    ax.set_title(f'{result.individual}: {result.percent:g}% KDE home range '
                 f'(h={result.bandwidth:.1f}, {result.method})')
    ax.legend(loc='best')

    filename = f'home_range_{safe_name(result.individual)}.png'
    plt.tight_layout()
    plt.savefig(output_path / filename, dpi=150, bbox_inches='tight')
    plt.close()
    print(f"  Saved: {filename}")
    return output_path / filename


def plot_home_range_overview(results: Dict[object, HomeRangeResult], output_path: Path,
                             figsize: Tuple[int, int] = (12, 10)) -> Path:
    """All home ranges on one map, one colour per individual."""
    fig, ax = plt.subplots(figsize=figsize)

    colors = plt.cm.tab10(np.linspace(0, 1, 10))
    for i, (individual, result) in enumerate(results.items()):
        color = colors[i % 10]
        for j, polygon in enumerate(result.polygons):
            draw_polygon(ax, polygon.geometry, color=color,
                         label=str(individual) if j == 0 else None)

    ax.set_aspect('equal')
    ax.set_xlabel('X')
    ax.set_ylabel('Y')
    ax.set_title('Home Ranges by Individual')
    if results:
        ax.legend(loc='best')

    plt.tight_layout()
    plt.savefig(output_path / 'home_range_overview.png', dpi=150, bbox_inches='tight')
    plt.close()
    print(f"  Saved: home_range_overview.png")
    return output_path / 'home_range_overview.png'


def plot_area_levels(results: Dict[object, HomeRangeResult], output_path: Path,
                     figsize: Tuple[int, int] = (10, 6)) -> Path:
    """Home range area against enclosed probability mass."""
    fig, ax = plt.subplots(figsize=figsize)

    for individual, result in results.items():
        levels = result.levels
        ax.plot(levels['percent'], levels['area'], marker='o', linewidth=2,
                label=str(individual))

    ax.set_xlabel('Utilization distribution (%)')
    ax.set_ylabel('Area')
    ax.set_title('Home Range Area by Contour Level')
    if results:
        ax.legend(loc='best')

    plt.tight_layout()
    plt.savefig(output_path / 'area_levels.png', dpi=150, bbox_inches='tight')
    plt.close()
    print(f"  Saved: area_levels.png")
    return output_path / 'area_levels.png'


def generate_all_visualizations(results: Dict[object, HomeRangeResult], analysis_dir: str,
                                df: Optional[pd.DataFrame] = None, id_col: str = 'Name'):
    """Generate all visualizations for a set of home range results."""
    output_path = Path(analysis_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    print("Generating visualizations...")

    for individual, result in results.items():
        points = None
        if df is not None:
            points = df.loc[df[id_col] == individual, ['x', 'y']].values
        try:
            plot_home_range(result, output_path, points=points)
        except Exception as e:
            print(f"  Error plotting {individual}: {e}")

    try:
        plot_home_range_overview(results, output_path)
    except Exception as e:
        print(f"  Error plotting overview: {e}")

    try:
        plot_area_levels(results, output_path)
    except Exception as e:
        print(f"  Error plotting area levels: {e}")

    print("\n✓ Visualization complete!")


def main():
    from home_range_analysis import EstimatorConfig, load_data
    from run_analysis import run_analysis

    parser = argparse.ArgumentParser(description='Visualize Home Range Estimates')
    parser.add_argument('-i', '--input', type=str, required=True,
                        help='Relocations file')
    parser.add_argument('-o', '--output', type=str, default='output/home_range',
                        help='Output directory for plots')
    parser.add_argument('--id-col', type=str, default='Name',
                        help='Individual identifier column')
    parser.add_argument('-p', '--percent', type=float, default=95.0,
                        help='Home range contour level (percent)')

    args = parser.parse_args()
    df = load_data(args.input, id_col=args.id_col)
    _, results = run_analysis(df, None, EstimatorConfig(percent=args.percent),
                              id_col=args.id_col)
    generate_all_visualizations(results, args.output, df=df, id_col=args.id_col)


if __name__ == '__main__':
    main()
