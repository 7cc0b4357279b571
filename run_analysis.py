#!/usr/bin/env python3
"""
Home Range Analysis Runner
==========================
Unified CLI for estimating kernel density home ranges per individual.

Usage:
    python run_analysis.py --input relocations.csv --output output/home_range
    python run_analysis.py -i tracks.tsv.gz --lonlat --x-col lon --y-col lat
    python run_analysis.py -i relocations.csv --bandwidth lscv --fallback-reference
    python run_analysis.py -i relocations.csv --percent 90 --area-unit km2 --visualize
"""

import argparse
import json
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, Optional, Tuple

import pandas as pd
from shapely.geometry import mapping

from home_range_analysis import (
    AREA_UNITS,
    EstimatorConfig,
    HomeRangeError,
    HomeRangeResult,
    estimate_home_range,
    load_data,
)

SUMMARY_COLUMNS = ['individual', 'n', 'bandwidth', 'method', 'percent', 'area',
                   'area_unit', 'n_islands', 'mass', 'truncated', 'error']


def estimate_individual(individual, group: pd.DataFrame,
                        config: EstimatorConfig) -> Tuple[object, Optional[HomeRangeResult], Optional[str]]:
    """Run one individual; failures come back as a message instead of raising."""
    points = group[['x', 'y']].values
    try:
        return individual, estimate_home_range(points, individual, config), None
    except HomeRangeError as e:
        return individual, None, str(e)


def summarize(results: Dict[object, HomeRangeResult], errors: Dict[object, str],
              counts: Dict[object, int], config: EstimatorConfig) -> pd.DataFrame:
    """One row per individual, failed ones included."""
    unit = config.area_unit if config.area_scale is None else 'custom'
    rows = []
    for individual in counts:
        result = results.get(individual)
        if result is None:
            rows.append({
                'individual': individual,
                'n': counts[individual],
                'percent': config.percent,
                'area_unit': unit,
                'error': errors.get(individual),
            })
            continue
        rows.append({
            'individual': individual,
            'n': result.n,
            'bandwidth': result.bandwidth,
            'method': result.method,
            'percent': result.percent,
            'area': result.area,
            'area_unit': unit,
            'n_islands': result.n_islands,
            'mass': result.mass,
            'truncated': result.ud.truncated,
            'error': None,
        })
    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)


def home_ranges_geojson(results: Dict[object, HomeRangeResult]) -> dict:
    """FeatureCollection with one feature per home range island."""
    features = []
    for individual, result in results.items():
        for i, polygon in enumerate(result.polygons):
            features.append({
                'type': 'Feature',
                'geometry': mapping(polygon.geometry),
                'properties': {
                    'individual': str(individual),
                    'island': i,
                    'percent': result.percent,
                    'area': polygon.area,
                    'mass': polygon.mass,
                    'bandwidth': result.bandwidth,
                },
            })
    return {'type': 'FeatureCollection', 'features': features}


def write_outputs(results: Dict[object, HomeRangeResult], summary: pd.DataFrame,
                  output_path: Path) -> None:
    output_path.mkdir(parents=True, exist_ok=True)

    summary.to_csv(output_path / 'home_range_summary.csv', index=False)

    levels = [result.levels.assign(individual=individual)
              for individual, result in results.items()]
    if levels:
        levels_df = pd.concat(levels, ignore_index=True)
        levels_df = levels_df[['individual', 'percent', 'area', 'n_islands', 'mass']]
        levels_df.to_csv(output_path / 'home_range_levels.csv', index=False)

    with open(output_path / 'home_ranges.geojson', 'w') as f:
        json.dump(home_ranges_geojson(results), f)

    failed = summary['error'].notna()
    overview = {
        'n_individuals': len(summary),
        'n_estimated': int((~failed).sum()),
        'n_failed': int(failed.sum()),
        'n_truncated': int(summary['truncated'].eq(True).sum()),
        'total_area': float(summary['area'].sum(skipna=True)),
        'warnings': [w for result in results.values() for w in result.warnings],
        'errors': summary.loc[failed, 'error'].tolist(),
    }
    with open(output_path / 'analysis_summary.json', 'w') as f:
        json.dump(overview, f, indent=2, default=str)


def run_analysis(df: pd.DataFrame, output_dir: Optional[str] = None,
                 config: Optional[EstimatorConfig] = None, id_col: str = 'Name',
                 workers: int = 1) -> Tuple[pd.DataFrame, Dict[object, HomeRangeResult]]:
    """
    Estimate a home range for every individual in df.

    Individuals are independent: each one is estimated on its own relocations
    and a failure for one never stops the others.

    Args:
        df: Relocations with 'x', 'y' and id_col columns
        output_dir: Where to write CSV/GeoJSON/JSON outputs (None skips writing)
        config: EstimatorConfig shared by all individuals
        id_col: Column identifying individuals
        workers: Thread count for parallel estimation
    """
    config = config or EstimatorConfig()
    df = df.dropna(subset=['x', 'y'])
    missing_id = df[id_col].isna()
    if missing_id.any():
        print(f"Dropped {int(missing_id.sum()):,} relocations with no {id_col}")
        df = df[~missing_id]
    groups = {name: group for name, group in df.groupby(id_col, sort=True)}
    counts = {name: len(group) for name, group in groups.items()}

    results = {}
    errors = {}

    print(f"\nEstimating {config.percent:g}% home ranges for {len(groups)} individuals "
          f"(bandwidth: {config.bandwidth})...")

    def record(outcome):
        individual, result, error = outcome
        if result is None:
            errors[individual] = error
            print(f"   ✗ {error}")
        else:
            results[individual] = result
            islands = f", {result.n_islands} islands" if result.n_islands > 1 else ''
            print(f"   {individual}: h={result.bandwidth:.2f} ({result.method}), "
                  f"area={result.area:.2f}{islands}")
            for note in result.warnings:
                print(f"   ⚠ {note}")

    if workers > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(estimate_individual, name, group, config)
                       for name, group in groups.items()]
            for future in as_completed(futures):
                record(future.result())
    else:
        for name, group in groups.items():
            record(estimate_individual(name, group, config))

    summary = summarize(results, errors, counts, config)

    if output_dir is not None:
        output_path = Path(output_dir)
        write_outputs(results, summary, output_path)
        print(f"\n✓ Home range analysis complete! Results saved to {output_path}")

    return summary, results


def quick_analysis(input_file: str, output_dir: str = 'output/quick_analysis',
                   **config_kwargs) -> pd.DataFrame:
    """
    Quick analysis function for interactive use.

    Example:
        >>> from run_analysis import quick_analysis
        >>> summary = quick_analysis('relocations.csv', percent=90)
    """
    df = load_data(input_file)
    summary, _ = run_analysis(df, output_dir, EstimatorConfig(**config_kwargs))
    return summary


def build_config(args: argparse.Namespace) -> EstimatorConfig:
    return EstimatorConfig(
        grid_size=args.grid_size,
        cell_size=args.cell_size,
        padding=args.padding,
        bandwidth=args.bandwidth,
        lscv_range=(args.lscv_min, args.lscv_max),
        lscv_steps=args.lscv_steps,
        percent=args.percent,
        area_unit=args.area_unit,
        area_scale=args.area_scale,
        levels=tuple(args.levels),
        fallback_to_reference=args.fallback_reference,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Kernel Density Home Range Estimation',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # 95% home ranges with the reference bandwidth, areas in hectares
  python run_analysis.py -i relocations.csv -o output/home_range

  # GPS tracks in degrees, projected to local metres
  python run_analysis.py -i tracks.tsv.gz --lonlat --x-col lon --y-col lat

  # LSCV bandwidth, retrying with the reference bandwidth where it fails
  python run_analysis.py -i relocations.csv -b lscv --fallback-reference
        """
    )

    parser.add_argument('-i', '--input', type=str, required=True,
                        help='Input relocations (CSV or TSV, optionally gzipped)')
    parser.add_argument('-o', '--output', type=str, default='output/home_range',
                        help='Output directory')
    parser.add_argument('-n', '--nrows', type=int, default=None,
                        help='Number of rows to read (for testing)')
    parser.add_argument('--x-col', type=str, default='x', help='X (or longitude) column')
    parser.add_argument('--y-col', type=str, default='y', help='Y (or latitude) column')
    parser.add_argument('--id-col', type=str, default='Name', help='Individual identifier column')
    parser.add_argument('--name', type=str, default=None,
                        help='Filter to a specific individual')
    parser.add_argument('--lonlat', action='store_true',
                        help='Coordinates are lon/lat degrees; project to local metres')

    parser.add_argument('-b', '--bandwidth', type=str, default='reference',
                        help="'reference', 'lscv' or a fixed bandwidth in coordinate units")
    parser.add_argument('--lscv-min', type=float, default=0.1,
                        help='Smallest LSCV candidate as a multiple of the reference bandwidth')
    parser.add_argument('--lscv-max', type=float, default=10.0,
                        help='Largest LSCV candidate as a multiple of the reference bandwidth')
    parser.add_argument('--lscv-steps', type=int, default=50,
                        help='Number of LSCV candidates (geometric spacing)')
    parser.add_argument('--fallback-reference', action='store_true',
                        help='Use the reference bandwidth where LSCV does not converge')

    parser.add_argument('-g', '--grid-size', type=int, default=100,
                        help='Grid cells per axis')
    parser.add_argument('--cell-size', type=float, default=None,
                        help='Square cell side in coordinate units (overrides --grid-size)')
    parser.add_argument('--padding', type=float, default=4.0,
                        help='Grid margin beyond the data extent, in bandwidths')
    parser.add_argument('-p', '--percent', type=float, default=95.0,
                        help='Probability mass enclosed by the home range (percent)')
    parser.add_argument('--levels', type=float, nargs='+', default=[50, 75, 90, 95],
                        help='Percent levels for the area table')
    parser.add_argument('--area-unit', type=str, default='ha', choices=sorted(AREA_UNITS),
                        help='Output area unit (input coordinates in metres)')
    parser.add_argument('--area-scale', type=float, default=None,
                        help='Custom factor from squared coordinate units to output area')

    parser.add_argument('-w', '--workers', type=int, default=1,
                        help='Individuals estimated in parallel')
    parser.add_argument('--visualize', action='store_true',
                        help='Generate plots after analysis')
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    input_path = Path(args.input)
    if not input_path.exists():
        print(f"Error: Input file {args.input} not found")
        sys.exit(1)

    try:
        config = build_config(args)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(2)

    output_path = Path(args.output)
    output_path.mkdir(parents=True, exist_ok=True)

    print("=" * 60)
    print("Kernel Density Home Range Estimation")
    print("=" * 60)
    print(f"Input:     {args.input}")
    print(f"Output:    {args.output}")
    print(f"Bandwidth: {config.bandwidth}")
    print(f"Contour:   {config.percent:g}%")
    if args.nrows:
        print(f"Rows:      {args.nrows:,}")
    print("=" * 60)

    start_time = time.time()

    df = load_data(args.input, x_col=args.x_col, y_col=args.y_col, id_col=args.id_col,
                   lonlat=args.lonlat, nrows=args.nrows)

    if args.name:
        print(f"Filtering to {args.id_col}={args.name}...")
        df = df[df[args.id_col].astype(str) == args.name].copy()
        print(f"Filtered to {len(df):,} records")

    summary, results = run_analysis(df, str(output_path), config,
                                    id_col=args.id_col, workers=args.workers)

    if args.visualize:
        print("\n" + "=" * 40)
        print("Generating Visualizations")
        print("=" * 40)
        from visualization import generate_all_visualizations
        generate_all_visualizations(results, str(output_path), df=df, id_col=args.id_col)

    elapsed = time.time() - start_time
    n_failed = int(summary['error'].notna().sum())
    print("\n" + "=" * 60)
    print(f"✅ {len(summary) - n_failed} of {len(summary)} home ranges estimated "
          f"in {elapsed:.1f} seconds")
    print(f"📁 Results saved to: {output_path}")
    print("=" * 60)

    return summary


if __name__ == '__main__':
    main()
