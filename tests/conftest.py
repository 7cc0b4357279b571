import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture
def cluster_points():
    rng = np.random.default_rng(42)
    return rng.normal(loc=[500.0, 200.0], scale=100.0, size=(80, 2))


@pytest.fixture
def two_cluster_points():
    rng = np.random.default_rng(7)
    left = rng.normal(loc=[0.0, 0.0], scale=20.0, size=(50, 2))
    right = rng.normal(loc=[1000.0, 0.0], scale=20.0, size=(50, 2))
    return np.vstack([left, right])


@pytest.fixture
def relocations_df():
    rng = np.random.default_rng(3)
    frames = []
    for name, center in [('Tom', (0.0, 0.0)), ('Luna', (2000.0, 500.0))]:
        pts = rng.normal(loc=center, scale=150.0, size=(60, 2))
        frames.append(pd.DataFrame({'Name': name, 'x': pts[:, 0], 'y': pts[:, 1]}))
    frames.append(pd.DataFrame({'Name': ['Solo'], 'x': [10.0], 'y': [20.0]}))
    return pd.concat(frames, ignore_index=True)
