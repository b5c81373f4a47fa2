from collections import deque

import numpy as np
import pyproj
import pytest
from pydrain.grid import Grid
from pydrain.sview import Raster, ViewFinder
from pydrain._priority_flood import Partition, split_partitions
from conftest import make_raster, nodata


# Initialize parameters
dirmap = (64, 128, 1, 2, 4, 8, 16, 32)
offsets = ((-1, 0), (-1, 1), (0, 1), (1, 1), (1, 0), (1, -1), (0, -1), (-1, -1))


def reachable_from_outlets(filled, outlets, nodata_cells):
    # Cells reachable from an outlet by only ever stepping up (or level)
    m, n = filled.shape
    reached = outlets & ~nodata_cells
    queue = deque(zip(*np.nonzero(reached)))
    while queue:
        i, j = queue.popleft()
        for di, dj in offsets:
            r, c = i + di, j + dj
            if (0 <= r < m) and (0 <= c < n):
                if nodata_cells[r, c] or reached[r, c]:
                    continue
                if filled[r, c] >= filled[i, j]:
                    reached[r, c] = True
                    queue.append((r, c))
    return reached


def boundary(shape):
    edges = np.zeros(shape, dtype=bool)
    edges[0, :] = edges[-1, :] = True
    edges[:, 0] = edges[:, -1] = True
    return edges


def test_constructors(dems):
    dem = dems["pit"]
    grid = Grid.from_raster(dem)
    assert grid.shape == (3, 3)
    assert grid.nodata == nodata
    Grid(viewfinder=dem.viewfinder)
    with pytest.raises(TypeError):
        Grid(viewfinder=dem)
    with pytest.raises(TypeError):
        Grid.from_raster(np.asarray(dem))


def test_properties(dems):
    grid = Grid.from_raster(dems["cone"])
    assert grid.size == 25
    assert grid.affine.a == 1.
    assert isinstance(grid.crs, pyproj.Proj)
    assert grid.mask.all()


def test_view(dems):
    dem = dems["holes"]
    grid = Grid.from_raster(dem)
    out = grid.view(dem, nodata=-1)
    assert out.nodata == -1
    assert (np.asarray(out) == -1).sum() == (np.asarray(dem) == nodata).sum()
    assert (np.asarray(dem) == nodata).sum() == 7


def test_fill_pit(dems):
    dem = dems["pit"]
    original = np.asarray(dem).copy()
    grid = Grid.from_raster(dem)
    filled = grid.fill_depressions(dem)
    # Pit is raised to its lowest neighbor, other cells are untouched
    assert filled[1, 1] == 4
    expected = original.copy()
    expected[1, 1] = 4
    assert (np.asarray(filled) == expected).all()
    # Input is not modified
    assert (np.asarray(dem) == original).all()
    assert filled.dtype == np.int64
    assert filled.nodata == nodata


def test_fill_depressions(d):
    dem, filled = d.dem, d.filled_dem
    nodata_cells = np.asarray(dem) == nodata
    assert (np.asarray(filled) >= np.asarray(dem)).all()
    reached = reachable_from_outlets(np.asarray(filled), boundary(dem.shape),
                                     nodata_cells)
    assert reached[~nodata_cells].all()
    # Filling twice changes nothing
    refilled = d.grid.fill_depressions(filled, threshold=dem.size)
    assert (np.asarray(refilled) == np.asarray(filled)).all()


def test_fill_partitioned(d):
    dem = d.dem
    # Partitions are flooded independently: still monotone, never above
    # the unpartitioned result
    for threshold in (1, 10, 100):
        filled = d.grid.fill_depressions(dem, threshold=threshold, n_workers=4)
        assert (np.asarray(filled) >= np.asarray(dem)).all()
        assert (np.asarray(filled) <= np.asarray(d.filled_dem)).all()


def test_fill_partition_boundary():
    # Pit lies on the boundary ring of its partition, so it only drains
    # when the grid is flooded as a whole
    dem = np.full((4, 4), 10, dtype=np.int64)
    dem[1, 1] = 1
    dem = make_raster(dem)
    grid = Grid.from_raster(dem)
    partitioned = grid.fill_depressions(dem, threshold=4)
    assert partitioned[1, 1] == 1
    whole = grid.fill_depressions(dem, threshold=16)
    assert whole[1, 1] == 10


def test_fill_nodata(dems):
    dem = dems["holes"]
    grid = Grid.from_raster(dem)
    nodata_cells = np.asarray(dem) == nodata
    filled = grid.fill_depressions(dem, threshold=dem.size)
    assert (np.asarray(filled)[nodata_cells] == nodata).all()
    assert (np.asarray(filled)[~nodata_cells] >= np.asarray(dem)[~nodata_cells]).all()
    # Cells next to nodata drain into it when asked to
    outlets = grid.fill_depressions(dem, threshold=dem.size, nodata_outlets=True)
    assert (np.asarray(outlets) <= np.asarray(filled)).all()
    adjacent = np.zeros(dem.shape, dtype=bool)
    m, n = dem.shape
    for i, j in zip(*np.nonzero(nodata_cells)):
        for di, dj in offsets:
            if (0 <= i + di < m) and (0 <= j + dj < n):
                adjacent[i + di, j + dj] = True
    adjacent &= ~nodata_cells
    assert (np.asarray(outlets)[adjacent] == np.asarray(dem)[adjacent]).all()
    reached = reachable_from_outlets(np.asarray(outlets), boundary(dem.shape) | adjacent,
                                     nodata_cells)
    assert reached[~nodata_cells].all()


def test_fill_nodata_outlet():
    dem = np.full((5, 5), 10, dtype=np.int64)
    dem[2, 2] = nodata
    dem[1, 1] = 2
    dem = make_raster(dem)
    grid = Grid.from_raster(dem)
    assert grid.fill_depressions(dem)[1, 1] == 10
    assert grid.fill_depressions(dem, nodata_outlets=True)[1, 1] == 2


def test_fill_all_nodata():
    dem = make_raster(np.full((6, 6), nodata, dtype=np.int64))
    grid = Grid.from_raster(dem)
    filled = grid.fill_depressions(dem, threshold=4)
    assert (np.asarray(filled) == nodata).all()


def test_fill_invalid(dems):
    dem = dems["pit"]
    grid = Grid.from_raster(dem)
    with pytest.raises(ValueError):
        grid.fill_depressions(dem, threshold=0)
    nan_dem = Raster(np.ones((3, 3)), ViewFinder(shape=(3, 3), nodata=np.nan))
    with pytest.raises(ValueError):
        grid.fill_depressions(nan_dem)


def test_detect_depressions(dems):
    dem = dems["pit"]
    grid = Grid.from_raster(dem)
    depressions = grid.detect_depressions(dem)
    assert depressions.dtype == np.bool_
    assert depressions[1, 1]
    assert depressions.sum() == 1


def test_elevation_range(dems):
    dem = dems["pit"]
    grid = Grid.from_raster(dem)
    assert grid.elevation_range(dem) == (1, 9)
    assert grid.elevation_range(grid.fill_depressions(dem)) == (4, 9)
    holes = dems["holes"]
    grid = Grid.from_raster(holes)
    low, high = grid.elevation_range(holes)
    assert low >= 0 and high < 100
    empty = make_raster(np.full((2, 2), nodata, dtype=np.int64))
    with pytest.raises(ValueError):
        Grid.from_raster(empty).elevation_range(empty)


def test_split_partitions():
    partition = Partition(0, 37, 0, 23)
    leaves = split_partitions(partition, threshold=50)
    covered = np.zeros((37, 23), dtype=np.int64)
    for leaf in leaves:
        cells = (leaf.row_end - leaf.row_start) * (leaf.col_end - leaf.col_start)
        assert 0 < cells <= 50
        covered[leaf.row_start:leaf.row_end, leaf.col_start:leaf.col_end] += 1
    # Leaves are disjoint and cover the whole partition
    assert (covered == 1).all()
    assert split_partitions(Partition(0, 4, 0, 4), threshold=16) == [Partition(0, 4, 0, 4)]
    assert split_partitions(Partition(0, 0, 0, 5)) == []
    # The midpoint goes to the first half
    assert split_partitions(Partition(0, 5, 0, 1), threshold=3) == [
        Partition(0, 3, 0, 1), Partition(3, 5, 0, 1)]


def test_flowdir_pit(dems):
    dem = dems["pit"]
    grid = Grid.from_raster(dem)
    fdir = grid.flowdir(dem, dirmap=dirmap, routing="d8")
    # Pit drains to the first of its lowest neighbors in scan order (north)
    assert fdir[1, 1] == 64
    assert fdir[0, 1] == 4
    assert fdir[2, 1] == 64
    assert fdir[0, 0] == 2
    # A filled pit is sometimes expected to keep pointing at its lowest original
    # neighbor. Filling makes the two level, and level cells get `nodir`, as on
    # the flat grid below, so the direction only exists on the unfilled DEM.
    filled = grid.fill_depressions(dem)
    fdir = grid.flowdir(filled, dirmap=dirmap, routing="d8")
    assert fdir[1, 1] == 0
    assert fdir.metadata["routing"] == "d8"
    assert fdir.metadata["dirmap"] == dirmap


def test_flowdir_flat(dems):
    dem = dems["flat"]
    grid = Grid.from_raster(dem)
    fdir = grid.flowdir(dem)
    assert (np.asarray(fdir) == 0).all()
    fdir = grid.flowdir(dem, nodir=-5)
    assert (np.asarray(fdir) == -5).all()


def test_flowdir_d8(d):
    fdir = np.asarray(d.fdir_d8)
    filled = np.asarray(d.filled_dem)
    m, n = filled.shape
    assert set(np.unique(fdir)) <= set(dirmap) | {0}
    for i in range(m):
        for j in range(n):
            lower = [filled[i + di, j + dj] for di, dj in offsets
                     if (0 <= i + di < m) and (0 <= j + dj < n)
                     and filled[i + di, j + dj] < filled[i, j]]
            if lower:
                k = dirmap.index(fdir[i, j])
                assert filled[i + offsets[k][0], j + offsets[k][1]] == min(lower)
            else:
                assert fdir[i, j] == 0


def test_flowdir_nodata(dems):
    dem = dems["holes"]
    grid = Grid.from_raster(dem)
    nodata_cells = np.asarray(dem) == nodata
    fdir = grid.flowdir(dem)
    assert fdir.nodata == nodata
    assert (np.asarray(fdir)[nodata_cells] == nodata).all()
    assert (np.asarray(fdir)[~nodata_cells] != nodata).all()
    fdir = grid.flowdir(dem, nodata_out=-3)
    assert (np.asarray(fdir)[nodata_cells] == -3).all()


def test_flowdir_nodata_collision():
    dem = np.arange(16, dtype=np.int64).reshape(4, 4) + 1
    dem[0, 0] = 0
    dem = make_raster(dem, nodata=0)
    grid = Grid.from_raster(dem)
    with pytest.warns(UserWarning):
        fdir = grid.flowdir(dem)
    assert fdir.nodata == -1
    assert fdir[0, 0] == -1
    with pytest.warns(UserWarning):
        grid.flowdir(dem, nodata_out=3, routing="hybrid",
                     slope=grid.slope(dem), steep=grid.classify_steep(grid.slope(dem)))


def test_flowdir_invalid(dems):
    dem = dems["cone"]
    grid = Grid.from_raster(dem)
    with pytest.raises(ValueError):
        grid.flowdir(dem, routing="dinf")
    with pytest.raises(ValueError):
        grid.flowdir(dem, dirmap=(1, 2, 3, 4, 5, 6, 7, 8))
    with pytest.raises(ValueError):
        grid.flowdir(dem, routing="hybrid")
    with pytest.raises(TypeError):
        grid.flowdir(np.asarray(dem))


def test_shape_mismatch(dems):
    dem = dems["cone"]
    grid = Grid.from_raster(dem)
    slope = grid.slope(dem)
    steep = grid.classify_steep(slope)
    wrong = make_raster(np.zeros((4, 5)), nodata=np.nan)
    with pytest.raises(ValueError, match="slope"):
        grid.flowdir(dem, routing="hybrid", slope=wrong, steep=steep)
    wrong_steep = make_raster(np.zeros((5, 4), dtype=bool), nodata=False)
    with pytest.raises(ValueError, match="steep"):
        grid.flowdir(dem, routing="hybrid", slope=slope, steep=wrong_steep)
    with pytest.raises(ValueError, match="dem"):
        grid.flowdir(dems["flat"])


def test_slope():
    i, j = np.indices((3, 4))
    dem = make_raster((2 * j).astype(np.int64))
    grid = Grid.from_raster(dem)
    slope = grid.slope(dem)
    assert slope.dtype == np.float64
    assert np.isnan(slope.nodata)
    # Centered differences in the interior, zero across the edges
    assert slope[1, 1] == pytest.approx(np.degrees(np.arctan(2.)))
    assert slope[1, 0] == 0.
    assert slope[0, 1] == pytest.approx(np.degrees(np.arctan(2.)))
    slope = grid.slope(dem, cellsize=2.)
    assert slope[1, 1] == pytest.approx(45.)
    holes = np.asarray(dem).copy()
    holes[1, 2] = nodata
    holes = make_raster(holes)
    slope = grid.slope(holes)
    assert np.isnan(slope[1, 2])
    assert slope[1, 1] == 0.
    assert slope[1, 3] == 0.


def test_classify_steep():
    slope = make_raster(np.array([[0., 19.9, 20.],
                                  [20.1, 45., np.nan]]), nodata=np.nan)
    grid = Grid.from_raster(slope)
    steep = grid.classify_steep(slope)
    assert steep.dtype == np.bool_
    assert (np.asarray(steep) == np.array([[False, False, False],
                                           [True, True, False]])).all()
    steep = grid.classify_steep(slope, threshold=0.)
    assert steep[0, 1] and not steep[0, 0] and not steep[1, 2]


def test_hybrid_ramp(dems):
    dem = dems["ramp"]
    grid = Grid.from_raster(dem)
    slope = grid.slope(dem)
    diagonal = np.eye(5, dtype=bool)
    steep = make_raster(diagonal, nodata=False)
    fdir = grid.flowdir(dem, routing="hybrid", slope=slope, steep=steep)
    # Steep cells get single D8 codes down the diagonal
    for k in range(4):
        assert fdir[k, k] == 2
    assert fdir[4, 4] == 0
    assert (np.asarray(fdir)[~diagonal] == 0).all()
    for algorithm in ("sweep", "iterative"):
        acc = grid.accumulation(fdir, routing="hybrid", dem=dem, slope=slope,
                                steep=steep, algorithm=algorithm)
        assert acc.dtype == np.float64
        for k in range(5):
            assert acc[k, k] == k + 1
        assert (np.asarray(acc)[~diagonal] == 1.).all()


def test_hybrid_mfd():
    dem = make_raster(np.array([[9, 9, 9],
                                [9, 5, 9],
                                [9, 1, 9],
                                [9, 0, 9]], dtype=np.int64))
    grid = Grid.from_raster(dem)
    slope = grid.slope(dem)
    steep = make_raster(np.zeros(dem.shape, dtype=bool), nodata=False)
    fdir = grid.flowdir(dem, routing="hybrid", slope=slope, steep=steep)
    assert fdir[1, 1] == 4
    assert fdir[0, 1] == 4
    assert fdir[0, 0] == 2
    # East carries most of the flow, southeast falls below the share threshold
    assert fdir[1, 0] == 1
    assert fdir[1, 2] == 16
    # Only lower neighbor lies on the edge, where the slope is zero
    assert fdir[2, 1] == 0
    iterative = grid.accumulation(fdir, routing="hybrid", dem=dem, slope=slope,
                                  steep=steep, algorithm="iterative")
    sweep = grid.accumulation(fdir, routing="hybrid", dem=dem, slope=slope,
                              steep=steep, algorithm="sweep")
    assert iterative[2, 1] == pytest.approx(3 + iterative[1, 1])
    # (1, 2) and the row below drain into (1, 1) after it has been swept
    assert sweep[1, 1] < iterative[1, 1]
    assert (np.asarray(sweep) <= np.asarray(iterative) + 1e-12).all()


def test_mfd_shares(d):
    shares = d.grid.mfd_shares(d.filled_dem, d.slope)
    fdir = np.asarray(d.fdir_hybrid)
    steep = np.asarray(d.steep)
    totals = shares.sum(axis=2)
    has_outflow = totals > 0
    assert totals[has_outflow] == pytest.approx(1.)
    m, n = fdir.shape
    for i in range(m):
        for j in range(n):
            if steep[i, j]:
                assert fdir[i, j] in set(dirmap) | {0}
                continue
            for k, code in enumerate(dirmap):
                has_bit = bool(fdir[i, j] & code)
                assert has_bit == (shares[i, j, k] >= 0.5)


def test_accumulation_flat(dems):
    dem = dems["flat"]
    grid = Grid.from_raster(dem)
    fdir = grid.flowdir(dem)
    for algorithm in ("sweep", "iterative"):
        acc = grid.accumulation(fdir, algorithm=algorithm)
        assert acc.dtype == np.int64
        assert (np.asarray(acc) == 1).all()


def test_accumulation_cone(dems):
    dem = dems["cone"]
    grid = Grid.from_raster(dem)
    fdir = grid.flowdir(dem)
    assert fdir[0, 0] == 0
    assert fdir[2, 2] == 32
    for algorithm in ("sweep", "iterative"):
        acc = grid.accumulation(fdir, algorithm=algorithm)
        assert acc[0, 0] == 25
        assert acc[4, 4] == 1


def test_accumulation_d8(d):
    fdir = d.fdir_d8
    acc = d.grid.accumulation(fdir, algorithm="iterative")
    sinks = np.asarray(fdir) == 0
    # Every cell is counted exactly once, at the sink it drains to
    assert np.asarray(acc)[sinks].sum() == fdir.size
    sweep = d.grid.accumulation(fdir, algorithm="sweep")
    assert (np.asarray(sweep) >= 1).all()
    assert (np.asarray(sweep) <= np.asarray(acc)).all()


def test_accumulation_nodata(dems):
    dem = dems["holes"]
    grid = Grid.from_raster(dem)
    nodata_cells = np.asarray(dem) == nodata
    filled = grid.fill_depressions(dem, threshold=dem.size)
    fdir = grid.flowdir(filled)
    acc = grid.accumulation(fdir, algorithm="iterative")
    assert acc.nodata == nodata
    assert (np.asarray(acc)[nodata_cells] == nodata).all()
    sinks = (np.asarray(fdir) == 0)
    assert np.asarray(acc)[sinks].sum() == (~nodata_cells).sum()
    slope = grid.slope(filled)
    steep = grid.classify_steep(slope)
    fdir = grid.flowdir(filled, routing="hybrid", slope=slope, steep=steep)
    acc = grid.accumulation(fdir, dem=filled, slope=slope, steep=steep)
    assert acc.metadata["routing"] == "hybrid"
    assert np.isnan(np.asarray(acc)[nodata_cells]).all()
    assert (np.asarray(acc)[~nodata_cells] >= 1.).all()


def test_accumulation_invalid(dems):
    dem = dems["cone"]
    grid = Grid.from_raster(dem)
    fdir = grid.flowdir(dem)
    with pytest.raises(ValueError):
        grid.accumulation(fdir, algorithm="recursive")
    with pytest.raises(ValueError):
        grid.accumulation(fdir, routing="mfd")
    with pytest.raises(ValueError):
        grid.accumulation(fdir, routing="hybrid")


def test_hybrid_accumulation_nodir():
    dem = make_raster(np.array([[9, 9, 9],
                                [9, 5, 9],
                                [1, 1, 1]], dtype=np.int64))
    grid = Grid.from_raster(dem)
    slope = make_raster(np.full(dem.shape, 30.), nodata=np.nan)
    steep = make_raster(np.zeros(dem.shape, dtype=bool), nodata=False)
    expected = np.array([[1., 1., 1.],
                         [1., 4., 1.],
                         [1., 1., 1.]])
    for nodir in (0, -1):
        fdir = grid.flowdir(dem, routing="hybrid", slope=slope, steep=steep,
                            nodir=nodir)
        # No share of the center or the bottom row reaches one half
        assert fdir[1, 1] == nodir
        assert (np.asarray(fdir)[2] == nodir).all()
        assert fdir.metadata["nodir"] == nodir
        for algorithm in ("sweep", "iterative"):
            acc = grid.accumulation(fdir, dem=dem, slope=slope, steep=steep,
                                    algorithm=algorithm)
            assert np.asarray(acc) == pytest.approx(expected)
    # Cells marked `nodir` keep their accumulation in d8 routing too
    fdir = grid.flowdir(dem, nodir=-1)
    acc = grid.accumulation(fdir, nodir=-1)
    assert (np.asarray(acc)[np.asarray(fdir) == -1] >= 1).all()
    assert np.asarray(acc)[2].sum() == dem.size


def test_nodir_collision(dems):
    dem = dems["cone"]
    grid = Grid.from_raster(dem)
    slope = grid.slope(dem)
    steep = grid.classify_steep(slope)
    with pytest.raises(ValueError):
        grid.flowdir(dem, nodir=1)
    with pytest.raises(ValueError):
        grid.flowdir(dem, routing="hybrid", slope=slope, steep=steep, nodir=3)
    # Not a single code, but a possible combination of codes
    fdir = grid.flowdir(dem, nodir=3)
    assert fdir[0, 0] == 3
    with pytest.raises(ValueError):
        grid.accumulation(fdir, routing="hybrid", dem=dem, slope=slope, steep=steep)


def test_accumulation_nodata_collision():
    dem = make_raster(np.array([[50, 40, 30, 20, 10]], dtype=np.int64), nodata=3)
    grid = Grid.from_raster(dem)
    fdir = grid.flowdir(dem)
    assert fdir.nodata == 3
    with pytest.warns(UserWarning):
        acc = grid.accumulation(fdir)
    assert acc.nodata == -1
    assert (np.asarray(acc) == np.array([[1, 2, 3, 4, 5]])).all()
    # A count of three must survive a change of sentinel
    out = grid.view(acc, nodata=-2)
    assert (np.asarray(out) == np.array([[1, 2, 3, 4, 5]])).all()
    acc = grid.accumulation(fdir, nodata_out=0)
    assert acc.nodata == 0
    with pytest.raises(ValueError):
        grid.accumulation(fdir, nodata_out=np.nan)
