import pytest
import numpy as np
from pydrain.grid import Grid
from pydrain.sview import Raster, ViewFinder

dirmap = (64, 128, 1, 2, 4, 8, 16, 32)
nodata = -9999


def make_raster(array, nodata=nodata):
    array = np.asarray(array)
    return Raster(array, ViewFinder(shape=array.shape, nodata=nodata))


def generate_dems():
    dems = dict()
    # Single-cell pit in the middle of a 3x3 grid
    dems["pit"] = make_raster(np.array([[9, 4, 9],
                                        [9, 1, 9],
                                        [9, 4, 9]], dtype=np.int64))
    dems["flat"] = make_raster(np.full((4, 4), 7, dtype=np.int64))
    # Every cell drains towards the upper left corner
    i, j = np.indices((5, 5))
    dems["cone"] = make_raster((i + j + 1).astype(np.int64))
    # Diagonal decreasing from upper left to lower right, flat elsewhere
    ramp = np.full((5, 5), 100, dtype=np.int64)
    for k in range(5):
        ramp[k, k] = 50 - 10 * k
    dems["ramp"] = make_raster(ramp)
    rng = np.random.default_rng(12345)
    dems["random"] = make_raster(rng.integers(0, 100, size=(24, 31)).astype(np.int64))
    holes = rng.integers(0, 100, size=(16, 16)).astype(np.int64)
    holes[5:8, 9:11] = nodata
    holes[12, 3] = nodata
    dems["holes"] = make_raster(holes)
    return dems


@pytest.fixture()
def dems():
    return generate_dems()


@pytest.fixture()
def d():
    class Datasets:
        pass

    # Initialize dataset holder
    d = Datasets()

    dems = generate_dems()
    d.dem = dems["random"]
    d.grid = Grid.from_raster(d.dem)

    # Calculate additional grids used during tests
    d.filled_dem = d.grid.fill_depressions(d.dem, threshold=d.dem.size)
    d.slope = d.grid.slope(d.filled_dem)
    d.steep = d.grid.classify_steep(d.slope)
    d.fdir_d8 = d.grid.flowdir(d.filled_dem, dirmap=dirmap, routing="d8")
    d.fdir_hybrid = d.grid.flowdir(d.filled_dem, dirmap=dirmap, routing="hybrid",
                                   slope=d.slope, steep=d.steep)

    return d
