"""
Home Range Analysis Module
==========================
Kernel density home range estimation for animal relocation data.

Methods include:
1. Bandwidth selection (reference bandwidth, least-squares cross-validation)
2. Utilization distribution (bivariate normal kernel on a padded grid)
3. Home range contours (probability-mass threshold, marching squares)
4. Relocation loading and local projection of lon/lat tracks
"""

import math
import warnings
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist
from shapely import contains_xy
from shapely.geometry import Polygon
from skimage import measure
from sklearn.neighbors import KernelDensity

# Constants
EARTH_RADIUS_KM = 6371.0

# Scale factors from square metres
AREA_UNITS = {
    'm2': 1.0,
    'ha': 1e-4,
    'km2': 1e-6,
}

DEFAULT_LEVELS = (50, 75, 90, 95)


class HomeRangeError(Exception):
    """Base class for per-individual estimation failures."""

    def __init__(self, message: str, individual=None):
        super().__init__(message)
        self.individual = individual


class InsufficientDataError(HomeRangeError):
    """Fewer than two valid relocations."""

    def __init__(self, individual, n: int):
        super().__init__(f"{individual}: need at least 2 valid relocations, got {n}",
                         individual)
        self.n = n


class BandwidthConvergenceFailure(HomeRangeError):
    """LSCV score has no interior minimum within the searched range."""

    def __init__(self, individual, h_range: Tuple[float, float]):
        super().__init__(
            f"{individual}: LSCV did not converge for h in "
            f"[{h_range[0]:.4g}, {h_range[1]:.4g}] (no interior minimum)",
            individual)
        self.h_range = h_range


class EmptyDistributionError(HomeRangeError):
    """Degenerate utilization distribution (no positive mass)."""

    def __init__(self, individual, reason: str = 'utilization distribution is empty'):
        super().__init__(f"{individual}: {reason}", individual)


class GridMassWarning(UserWarning):
    """Gridded utilization distribution does not integrate to one."""


class GridTruncationWarning(GridMassWarning):
    """Grid does not extend far enough to hold the kernel mass."""


class GridResolutionWarning(GridMassWarning):
    """Grid cells are wider than the kernel bandwidth."""


@dataclass
class EstimatorConfig:
    """Settings for one home range estimation run."""
    grid_size: int = 100
    cell_size: Optional[float] = None
    padding: float = 4.0
    bandwidth: Union[str, float] = 'reference'
    lscv_range: Tuple[float, float] = (0.1, 10.0)
    lscv_steps: int = 50
    percent: float = 95.0
    area_unit: str = 'ha'
    area_scale: Optional[float] = None
    truncation_tolerance: float = 0.01
    levels: Sequence[float] = DEFAULT_LEVELS
    fallback_to_reference: bool = False

    def __post_init__(self):
        if isinstance(self.bandwidth, str):
            if self.bandwidth not in ('reference', 'lscv'):
                try:
                    self.bandwidth = float(self.bandwidth)
                except ValueError:
                    raise ValueError(f"Unknown bandwidth method: {self.bandwidth!r}")
        if not isinstance(self.bandwidth, str) and not self.bandwidth > 0:
            raise ValueError("Manual bandwidth must be positive")
        if self.grid_size < 2:
            raise ValueError("grid_size must be at least 2")
        if self.cell_size is not None and self.cell_size <= 0:
            raise ValueError("cell_size must be positive")
        if self.padding < 0:
            raise ValueError("padding must be non-negative")
        lo, hi = self.lscv_range
        if not 0 < lo < hi:
            raise ValueError("lscv_range must satisfy 0 < low < high")
        if self.lscv_steps < 3:
            raise ValueError("lscv_steps must be at least 3")
        if not 0 < self.percent <= 100:
            raise ValueError("percent must be in (0, 100]")
        if self.area_scale is None and self.area_unit not in AREA_UNITS:
            raise ValueError(f"Unknown area unit {self.area_unit!r}; "
                             f"expected one of {sorted(AREA_UNITS)} or an area_scale")
        if self.area_scale is not None and self.area_scale <= 0:
            raise ValueError("area_scale must be positive")

    @property
    def scale(self) -> float:
        """Factor from squared coordinate units to output area units."""
        if self.area_scale is not None:
            return self.area_scale
        return AREA_UNITS[self.area_unit]


@dataclass
class UtilizationDistribution:
    """Kernel density surface on a regular grid (rows are y, columns are x)."""
    xs: np.ndarray
    ys: np.ndarray
    density: np.ndarray
    bandwidth: float
    truncated: bool = False
    coarse: bool = False
    notes: List[str] = field(default_factory=list)

    @property
    def dx(self) -> float:
        return float(self.xs[1] - self.xs[0])

    @property
    def dy(self) -> float:
        return float(self.ys[1] - self.ys[0])

    @property
    def cell_area(self) -> float:
        return self.dx * self.dy

    @property
    def mass(self) -> float:
        return float(self.density.sum() * self.cell_area)

    def mesh(self) -> Tuple[np.ndarray, np.ndarray]:
        return np.meshgrid(self.xs, self.ys)


@dataclass
class HomeRangePolygon:
    """One island of a home range."""
    individual: object
    geometry: Polygon
    area: float
    mass: float


@dataclass
class HomeRangeResult:
    """Everything estimated for one individual."""
    individual: object
    n: int
    bandwidth: float
    method: str
    percent: float
    ud: UtilizationDistribution
    polygons: List[HomeRangePolygon]
    levels: pd.DataFrame
    warnings: List[str] = field(default_factory=list)

    @property
    def area(self) -> float:
        return sum(p.area for p in self.polygons)

    @property
    def mass(self) -> float:
        return sum(p.mass for p in self.polygons)

    @property
    def n_islands(self) -> int:
        return len(self.polygons)


def as_observations(points) -> np.ndarray:
    """Coerce relocations to an (n, 2) float array without missing rows."""
    arr = np.asarray(points, dtype=float)
    if arr.size == 0:
        arr = arr.reshape(0, 2)
    elif arr.shape == (2,):
        arr = arr.reshape(1, 2)
    elif arr.ndim != 2 or arr.shape[1] != 2:
        raise ValueError(f"Relocations must be an (n, 2) array of x, y, got shape {arr.shape}")
    return arr[~np.isnan(arr).any(axis=1)]


class BandwidthSelection:
    """Choose the kernel smoothing parameter h."""

    @staticmethod
    def reference_bandwidth(points: np.ndarray, individual=None) -> float:
        """
        Reference bandwidth h = 0.5 * (sd_x + sd_y) * n^(-1/6).

        Args:
            points: (n, 2) array of x, y coordinates
            individual: Identifier used in error messages
        """
        n = len(points)
        if n < 2:
            raise InsufficientDataError(individual, n)

        sd_x, sd_y = np.std(points, axis=0, ddof=1)
        h = 0.5 * (sd_x + sd_y) * n ** (-1.0 / 6.0)
        if not h > 0:
            raise EmptyDistributionError(individual, 'relocations have no spatial spread')
        return float(h)

    @staticmethod
    def lscv_score(points: np.ndarray, h: float) -> float:
        """
        Least-squares cross-validation score for the bivariate normal kernel.

        Integral of the squared estimate minus twice the mean leave-one-out
        density at the observations, both in closed form.
        """
        n = len(points)
        d2 = pdist(points, 'sqeuclidean')
        h2 = h * h
        # pdist holds each pair once
        s4 = 2.0 * np.exp(-d2 / (4.0 * h2)).sum()
        s2 = 2.0 * np.exp(-d2 / (2.0 * h2)).sum()

        integral = (n + s4) / (4.0 * math.pi * h2 * n * n)
        leave_one_out = s2 / (math.pi * h2 * n * (n - 1))
        return float(integral - leave_one_out)

    @staticmethod
    def lscv_candidates(h_ref: float, config: EstimatorConfig) -> np.ndarray:
        """Geometric sequence of candidate bandwidths around h_ref."""
        lo, hi = config.lscv_range
        return np.geomspace(h_ref * lo, h_ref * hi, config.lscv_steps)

    @staticmethod
    def select_interior_minimum(candidates: np.ndarray, scores: np.ndarray,
                                individual=None) -> float:
        """Return the candidate with the lowest score, if it is not on the range edge."""
        candidates = np.asarray(candidates, dtype=float)
        scores = np.asarray(scores, dtype=float)
        h_range = (float(candidates[0]), float(candidates[-1]))

        if not np.isfinite(scores).any():
            raise BandwidthConvergenceFailure(individual, h_range)

        idx = int(np.nanargmin(np.where(np.isfinite(scores), scores, np.nan)))
        if idx == 0 or idx == len(candidates) - 1:
            raise BandwidthConvergenceFailure(individual, h_range)
        return float(candidates[idx])

    @staticmethod
    def lscv_bandwidth(points: np.ndarray, individual=None,
                       config: Optional[EstimatorConfig] = None,
                       score: Optional[Callable[[np.ndarray, float], float]] = None) -> float:
        """
        Bandwidth minimizing the LSCV score over a bounded candidate range.

        Raises BandwidthConvergenceFailure when the score curve has no
        interior minimum; there is no implicit fallback.
        """
        config = config or EstimatorConfig(bandwidth='lscv')
        score = score or BandwidthSelection.lscv_score

        h_ref = BandwidthSelection.reference_bandwidth(points, individual)
        candidates = BandwidthSelection.lscv_candidates(h_ref, config)
        scores = [score(points, h) for h in candidates]
        return BandwidthSelection.select_interior_minimum(candidates, scores, individual)

    @staticmethod
    def select(points: np.ndarray, individual=None,
               config: Optional[EstimatorConfig] = None) -> Tuple[float, str]:
        """
        Apply the configured bandwidth policy.

        Returns:
            (h, method) where method is 'reference', 'lscv' or 'manual'
        """
        config = config or EstimatorConfig()
        if len(points) < 2:
            raise InsufficientDataError(individual, len(points))

        if config.bandwidth == 'reference':
            return BandwidthSelection.reference_bandwidth(points, individual), 'reference'
        if config.bandwidth == 'lscv':
            try:
                return BandwidthSelection.lscv_bandwidth(points, individual, config), 'lscv'
            except BandwidthConvergenceFailure as e:
                if not config.fallback_to_reference:
                    raise
                print(f"   {e}; using reference bandwidth as requested")
                return BandwidthSelection.reference_bandwidth(points, individual), 'reference'
        return float(config.bandwidth), 'manual'


class KernelDensitySurface:
    """Build the utilization distribution on a padded grid."""

    @staticmethod
    def build_grid(points: np.ndarray, h: float,
                   config: EstimatorConfig) -> Tuple[np.ndarray, np.ndarray]:
        """
        Cell-centre axes covering the data extent padded by config.padding * h.
        """
        margin = config.padding * h
        x_min, y_min = points.min(axis=0) - margin
        x_max, y_max = points.max(axis=0) + margin

        if config.cell_size is not None:
            nx = max(2, int(math.ceil((x_max - x_min) / config.cell_size)) + 1)
            ny = max(2, int(math.ceil((y_max - y_min) / config.cell_size)) + 1)
            xs = x_min + config.cell_size * np.arange(nx)
            ys = y_min + config.cell_size * np.arange(ny)
        else:
            xs = np.linspace(x_min, x_max, config.grid_size)
            ys = np.linspace(y_min, y_max, config.grid_size)
        return xs, ys

    @staticmethod
    def evaluate(points: np.ndarray, h: float,
                 xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        """
        UD(x) = 1/(n h^2) * sum_i K((x - X_i) / h) with the bivariate normal K.

        Returns:
            density array of shape (len(ys), len(xs))
        """
        xx, yy = np.meshgrid(xs, ys)
        positions = np.column_stack([xx.ravel(), yy.ravel()])

        kde = KernelDensity(bandwidth=h, kernel='gaussian')
        kde.fit(points)
        density = np.exp(kde.score_samples(positions))
        return density.reshape(xx.shape)

    @staticmethod
    def build(points: np.ndarray, h: float, config: Optional[EstimatorConfig] = None,
              individual=None) -> UtilizationDistribution:
        config = config or EstimatorConfig()
        if not h > 0:
            raise EmptyDistributionError(individual, f'bandwidth must be positive, got {h}')

        xs, ys = KernelDensitySurface.build_grid(points, h, config)
        if xs[-1] <= xs[0] or ys[-1] <= ys[0]:
            raise EmptyDistributionError(individual, 'grid has no extent')

        density = KernelDensitySurface.evaluate(points, h, xs, ys)
        ud = UtilizationDistribution(xs=xs, ys=ys, density=density, bandwidth=h)

        mass = ud.mass
        if not np.isfinite(mass) or mass <= 0:
            raise EmptyDistributionError(individual)

        # A cell wider than h cannot resolve the kernel, so the mass sum says
        # nothing about padding.
        cell = max(ud.dx, ud.dy)
        if cell > h:
            ud.coarse = True
            message = resolution_message(individual, cell, h, mass)
            category = GridResolutionWarning
        elif abs(mass - 1.0) <= config.truncation_tolerance:
            return ud
        elif mass < 1.0:
            ud.truncated = True
            message = truncation_message(individual, mass, config.padding)
            category = GridTruncationWarning
        else:
            message = (f"{individual}: grid sums to {mass:.1%} of the kernel mass; "
                       f"refine grid_size or cell_size")
            category = GridMassWarning

        ud.notes.append(message)
        warnings.warn(message, category, stacklevel=2)
        return ud


def truncation_message(individual, mass: float, padding: float) -> str:
    return (f"{individual}: grid holds only {mass:.1%} of the kernel mass "
            f"(padding {padding:g} bandwidths); home range areas are biased low")


def resolution_message(individual, cell: float, h: float, mass: float) -> str:
    return (f"{individual}: grid cell size {cell:.4g} exceeds bandwidth {h:.4g} "
            f"(grid sums to {mass:.1%} of the kernel mass); "
            f"increase grid_size or lower cell_size")


class HomeRangeContours:
    """Extract home range polygons from a utilization distribution."""

    @staticmethod
    def density_threshold(ud: UtilizationDistribution, p: float) -> float:
        """
        Density value t such that cells with UD >= t hold a fraction p of the mass.

        Cells are accumulated in descending order of density until the
        cumulative mass reaches p; t is the density of the last cell taken.
        """
        if not 0 < p <= 1:
            raise ValueError(f"Probability mass must be in (0, 1], got {p}")

        values = ud.density.ravel()
        positive = values[values > 0]
        if positive.size == 0:
            raise EmptyDistributionError(None)

        if p >= 1.0:
            return float(positive.min())

        sorted_density = np.sort(positive)[::-1]
        cumulative = np.cumsum(sorted_density)
        cumulative /= cumulative[-1]

        idx = min(int(np.searchsorted(cumulative, p)), len(sorted_density) - 1)
        return float(sorted_density[idx])

    @staticmethod
    def region_mask(ud: UtilizationDistribution, p: float) -> np.ndarray:
        threshold = HomeRangeContours.density_threshold(ud, p)
        return (ud.density >= threshold) & (ud.density > 0)

    @staticmethod
    def trace_polygons(ud: UtilizationDistribution, mask: np.ndarray) -> List[Polygon]:
        """
        Trace the boundary of a cell mask into disjoint polygons.

        The mask is padded with empty cells so every ring closes; nested
        rings turn into holes through symmetric difference.
        """
        padded = np.pad(mask.astype(float), 1, mode='constant', constant_values=0.0)
        rings = measure.find_contours(padded, 0.5)

        region = Polygon()
        for ring in rings:
            if len(ring) < 4:
                continue
            rows, cols = ring[:, 0] - 1, ring[:, 1] - 1
            xs = ud.xs[0] + cols * ud.dx
            ys = ud.ys[0] + rows * ud.dy
            poly = Polygon(np.column_stack([xs, ys])).buffer(0)
            if poly.is_empty:
                continue
            region = region.symmetric_difference(poly)

        geoms = getattr(region, 'geoms', [region])
        return [g for g in geoms
                if isinstance(g, Polygon) and not g.is_empty and g.area > 0]

    @staticmethod
    def extract(ud: UtilizationDistribution, p: float = 0.95, individual=None,
                area_scale: float = 1.0) -> List[HomeRangePolygon]:
        """
        Home range polygons enclosing a fraction p of the UD mass.

        Returns one polygon per island; a fragmented home range is a valid
        result, not an error.
        """
        total = float(ud.density.sum())
        if not np.isfinite(total) or total <= 0:
            raise EmptyDistributionError(individual)

        mask = HomeRangeContours.region_mask(ud, p)
        xx, yy = ud.mesh()
        cell_x, cell_y = xx[mask], yy[mask]
        cell_density = ud.density[mask]

        polygons = []
        for geom in HomeRangeContours.trace_polygons(ud, mask):
            inside = contains_xy(geom, cell_x, cell_y)
            polygons.append(HomeRangePolygon(
                individual=individual,
                geometry=geom,
                area=float(geom.area * area_scale),
                mass=float(cell_density[inside].sum() / total),
            ))

        polygons.sort(key=lambda poly: poly.area, reverse=True)
        return polygons

    @staticmethod
    def area_table(ud: UtilizationDistribution, levels: Sequence[float] = DEFAULT_LEVELS,
                   area_scale: float = 1.0, individual=None) -> pd.DataFrame:
        """
        Home range area and island count at several percent levels
        (e.g. the 50% core area next to the 95% home range).
        """
        rows = []
        for pct in levels:
            polygons = HomeRangeContours.extract(ud, pct / 100.0, individual, area_scale)
            rows.append({
                'percent': pct,
                'area': sum(p.area for p in polygons),
                'n_islands': len(polygons),
                'mass': sum(p.mass for p in polygons),
            })
        return pd.DataFrame(rows, columns=['percent', 'area', 'n_islands', 'mass'])


def estimate_home_range(points, individual=None,
                        config: Optional[EstimatorConfig] = None) -> HomeRangeResult:
    """
    Bandwidth selection, UD construction and contour extraction for one individual.

    Args:
        points: (n, 2) relocations in a linear unit; rows with NaN are dropped
        individual: Identifier carried on the result and the polygons
        config: EstimatorConfig (defaults: reference bandwidth, 95%, hectares)
    """
    config = config or EstimatorConfig()
    points = as_observations(points)
    if len(points) < 2:
        raise InsufficientDataError(individual, len(points))

    h, method = BandwidthSelection.select(points, individual, config)
    ud = KernelDensitySurface.build(points, h, config, individual)

    scale = config.scale
    polygons = HomeRangeContours.extract(ud, config.percent / 100.0, individual, scale)
    levels = HomeRangeContours.area_table(ud, config.levels, scale, individual)

    notes = list(ud.notes)

    return HomeRangeResult(
        individual=individual,
        n=len(points),
        bandwidth=h,
        method=method,
        percent=config.percent,
        ud=ud,
        polygons=polygons,
        levels=levels,
        warnings=notes,
    )


def project_lonlat(df: pd.DataFrame, lon_col: str = 'lon', lat_col: str = 'lat',
                   x_col: str = 'x', y_col: str = 'y') -> pd.DataFrame:
    """
    Project lon/lat degrees to local metres (equirectangular around the centroid).

    Adequate over the few kilometres a home range spans.
    """
    df = df.copy()
    lat0 = np.radians(df[lat_col].mean())
    lon0 = np.radians(df[lon_col].mean())
    radius_m = EARTH_RADIUS_KM * 1000.0

    df[x_col] = (np.radians(df[lon_col]) - lon0) * np.cos(lat0) * radius_m
    df[y_col] = (np.radians(df[lat_col]) - lat0) * radius_m
    return df


def load_data(filepath: str, x_col: str = 'x', y_col: str = 'y',
              id_col: str = 'Name', lonlat: bool = False,
              nrows: Optional[int] = None) -> pd.DataFrame:
    """
    Load relocations from CSV or TSV (optionally gzipped).

    Coordinates are coerced to numbers; rows missing x or y are dropped.
    The returned frame carries the coordinates in 'x' and 'y' columns. With
    lonlat=True, x_col/y_col hold longitude/latitude and are projected to
    local metres.
    """
    print(f"Loading data from {filepath}...")

    path = str(filepath)
    stem = path[:-3] if path.endswith('.gz') else path
    sep = '\t' if stem.endswith('.tsv') else ','
    compression = 'gzip' if path.endswith('.gz') else None
    df = pd.read_csv(path, sep=sep, compression=compression, nrows=nrows)

    for col in (x_col, y_col):
        if col not in df.columns:
            raise KeyError(f"Column {col!r} not found in {filepath}")
        df[col] = pd.to_numeric(df[col], errors='coerce')

    n_before = len(df)
    df = df.dropna(subset=[x_col, y_col]).reset_index(drop=True)
    dropped = n_before - len(df)
    if dropped:
        print(f"Dropped {dropped:,} rows with missing coordinates")

    if lonlat:
        df = project_lonlat(df, lon_col=x_col, lat_col=y_col)
    else:
        df['x'] = df[x_col]
        df['y'] = df[y_col]

    if id_col not in df.columns:
        df[id_col] = 'all'

    print(f"Loaded {len(df):,} records for {df[id_col].nunique()} individuals")
    return df
