import math
import numpy as np
from numba import njit, prange

# Neighbors are always scanned in the order N, NE, E, SE, S, SW, W, NW
ROW_OFFSETS = np.array([-1, -1, 0, 1, 1, 1, 0, -1], dtype=np.int64)
COL_OFFSETS = np.array([0, 1, 1, 1, 0, -1, -1, -1], dtype=np.int64)
# Contour length weights for the multiple flow direction model
CONTOUR_LENGTHS = np.array([0.5, 0.5 * math.sqrt(2), 0.5, 0.5 * math.sqrt(2),
                            0.5, 0.5 * math.sqrt(2), 0.5, 0.5 * math.sqrt(2)])
MFD_EXPONENT = 5.
MFD_MIN_SHARE = 0.5

# Functions for 'slope'

@njit(parallel=True, cache=True)
def _slope_numba(dem, nodata_cells, cellsize):
    m, n = dem.shape
    slope = np.full(dem.shape, np.nan, dtype=np.float64)
    for i in prange(m):
        for j in range(n):
            if nodata_cells[i, j]:
                continue
            dzdx = 0.
            dzdy = 0.
            if (j > 0) and (j < n - 1):
                if not (nodata_cells[i, j - 1] or nodata_cells[i, j + 1]):
                    dzdx = (dem[i, j + 1] - dem[i, j - 1]) / (2 * cellsize)
            if (i > 0) and (i < m - 1):
                if not (nodata_cells[i - 1, j] or nodata_cells[i + 1, j]):
                    dzdy = (dem[i + 1, j] - dem[i - 1, j]) / (2 * cellsize)
            gradient = math.sqrt(dzdx * dzdx + dzdy * dzdy)
            slope[i, j] = math.degrees(math.atan(gradient))
    return slope

# Functions for 'flowdir'

@njit(cache=True)
def _steepest_neighbor(dem, valid, i, j, row_offsets, col_offsets):
    # Index (in scan order) of the strictly lowest valid neighbor that is lower
    # than cell (i, j), or -1. Ties go to the first neighbor scanned.
    m, n = dem.shape
    min_elev = dem[i, j]
    k_min = -1
    for k in range(8):
        row = i + row_offsets[k]
        col = j + col_offsets[k]
        if row < 0 or row >= m or col < 0 or col >= n:
            continue
        if not valid[row, col]:
            continue
        if dem[row, col] < min_elev:
            min_elev = dem[row, col]
            k_min = k
    return k_min

@njit(cache=True)
def _mfd_transfer(dem, slope, valid, i, j, row_offsets, col_offsets, contour_lengths,
                  exponent, transfer):
    # Fills transfer[k] = tan(slope_k)^p * L_k for each strictly lower neighbor k
    # and returns the sum over all neighbors.
    m, n = dem.shape
    total = 0.
    for k in range(8):
        transfer[k] = 0.
        row = i + row_offsets[k]
        col = j + col_offsets[k]
        if row < 0 or row >= m or col < 0 or col >= n:
            continue
        if not valid[row, col]:
            continue
        if dem[row, col] >= dem[i, j]:
            continue
        tan_beta = math.tan(math.radians(slope[row, col]))
        transfer[k] = (tan_beta ** exponent) * contour_lengths[k]
        total += transfer[k]
    return total

@njit(parallel=True, cache=True)
def _mfd_shares_numba(dem, slope, valid, row_offsets, col_offsets, contour_lengths,
                      exponent):
    m, n = dem.shape
    shares = np.zeros((m, n, 8), dtype=np.float64)
    for i in prange(m):
        transfer = np.zeros(8, dtype=np.float64)
        for j in range(n):
            if not valid[i, j]:
                continue
            total = _mfd_transfer(dem, slope, valid, i, j, row_offsets, col_offsets,
                                  contour_lengths, exponent, transfer)
            if total > 0:
                for k in range(8):
                    shares[i, j, k] = transfer[k] / total
    return shares

@njit(parallel=True, cache=True)
def _d8_flowdir_numba(dem, valid, dirmap, nodata_out, nodir, row_offsets, col_offsets):
    m, n = dem.shape
    fdir = np.zeros(dem.shape, dtype=np.int64)
    for i in prange(m):
        for j in range(n):
            if not valid[i, j]:
                fdir[i, j] = nodata_out
            else:
                k = _steepest_neighbor(dem, valid, i, j, row_offsets, col_offsets)
                if k < 0:
                    fdir[i, j] = nodir
                else:
                    fdir[i, j] = dirmap[k]
    return fdir

@njit(parallel=True, cache=True)
def _hybrid_flowdir_numba(dem, slope, steep, valid, dirmap, nodata_out, nodir,
                          row_offsets, col_offsets, contour_lengths, exponent,
                          min_share):
    m, n = dem.shape
    fdir = np.zeros(dem.shape, dtype=np.int64)
    for i in prange(m):
        transfer = np.zeros(8, dtype=np.float64)
        for j in range(n):
            if not valid[i, j]:
                fdir[i, j] = nodata_out
            elif steep[i, j]:
                k = _steepest_neighbor(dem, valid, i, j, row_offsets, col_offsets)
                if k < 0:
                    fdir[i, j] = nodir
                else:
                    fdir[i, j] = dirmap[k]
            else:
                total = _mfd_transfer(dem, slope, valid, i, j, row_offsets, col_offsets,
                                      contour_lengths, exponent, transfer)
                mask = 0
                if total > 0:
                    for k in range(8):
                        if (transfer[k] > 0) and (transfer[k] / total >= min_share):
                            mask |= dirmap[k]
                if mask == 0:
                    fdir[i, j] = nodir
                else:
                    fdir[i, j] = mask
    return fdir

# Functions for 'accumulation'

@njit(parallel=True, cache=True)
def _d8_endnodes_numba(fdir, valid, dirmap, nodir, row_offsets, col_offsets):
    # Flat index of the downstream cell of each cell; cells without a
    # (valid, in-bounds) target point to themselves.
    m, n = fdir.shape
    endnodes = np.empty(m * n, dtype=np.int64)
    for i in prange(m):
        for j in range(n):
            ix = i * n + j
            endnodes[ix] = ix
            if (not valid[i, j]) or (fdir[i, j] == nodir):
                continue
            for k in range(8):
                if fdir[i, j] == dirmap[k]:
                    row = i + row_offsets[k]
                    col = j + col_offsets[k]
                    if row >= 0 and row < m and col >= 0 and col < n:
                        if valid[row, col]:
                            endnodes[ix] = row * n + col
                    break
    return endnodes

@njit(cache=True)
def _d8_accumulation_sweep_numba(acc, endnodes):
    # Forward then backward raster-order sweep. Each cell forwards only what
    # it has received since it last forwarded, so nothing is counted twice.
    size = endnodes.size
    pending = acc.copy()
    for k in range(size):
        endnode = endnodes[k]
        if endnode != k:
            acc.flat[endnode] += pending.flat[k]
            pending.flat[endnode] += pending.flat[k]
            pending.flat[k] = 0
    for k in range(size - 1, -1, -1):
        endnode = endnodes[k]
        if endnode != k:
            acc.flat[endnode] += pending.flat[k]
            pending.flat[endnode] += pending.flat[k]
            pending.flat[k] = 0
    return acc

@njit(cache=True)
def _d8_accumulation_iter_numba(acc, endnodes, indegree, startnodes):
    n = startnodes.size
    for k in range(n):
        startnode = startnodes[k]
        endnode = endnodes[startnode]
        while (indegree[startnode] == 0) and (endnode != startnode):
            acc.flat[endnode] += acc.flat[startnode]
            indegree[endnode] -= 1
            startnode = endnode
            endnode = endnodes[startnode]
    return acc

@njit(parallel=True, cache=True)
def _hybrid_proportions_numba(fdir, dem, slope, steep, valid, dirmap, nodir,
                              row_offsets, col_offsets, contour_lengths, exponent):
    # Fraction of each cell's accumulation passed to each of its 8 neighbors
    m, n = fdir.shape
    props = np.zeros((m, n, 8), dtype=np.float64)
    for i in prange(m):
        transfer = np.zeros(8, dtype=np.float64)
        for j in range(n):
            if not valid[i, j]:
                continue
            code = fdir[i, j]
            # Sinks and flats keep their accumulation
            if code == nodir:
                continue
            if steep[i, j]:
                for k in range(8):
                    if code == dirmap[k]:
                        props[i, j, k] = 1.
                        break
            else:
                total = _mfd_transfer(dem, slope, valid, i, j, row_offsets, col_offsets,
                                      contour_lengths, exponent, transfer)
                if total > 0:
                    for k in range(8):
                        if code & dirmap[k]:
                            props[i, j, k] = transfer[k] / total
            # Never pass flow outside of the grid or onto invalid cells
            for k in range(8):
                if props[i, j, k] > 0:
                    row = i + row_offsets[k]
                    col = j + col_offsets[k]
                    if row < 0 or row >= m or col < 0 or col >= n:
                        props[i, j, k] = 0.
                    elif not valid[row, col]:
                        props[i, j, k] = 0.
    return props

@njit(cache=True)
def _hybrid_accumulation_sweep_numba(acc, props, row_offsets, col_offsets):
    # Single raster-order pass; each cell pushes its current value
    m, n = acc.shape
    for i in range(m):
        for j in range(n):
            value = acc[i, j]
            for k in range(8):
                prop = props[i, j, k]
                if prop > 0:
                    acc[i + row_offsets[k], j + col_offsets[k]] += value * prop
    return acc

@njit(cache=True)
def _hybrid_indegree_numba(props, row_offsets, col_offsets):
    m, n, _ = props.shape
    indegree = np.zeros(m * n, dtype=np.uint8)
    for i in range(m):
        for j in range(n):
            for k in range(8):
                if props[i, j, k] > 0:
                    row = i + row_offsets[k]
                    col = j + col_offsets[k]
                    indegree[row * n + col] += 1
    return indegree

@njit(cache=True)
def _hybrid_accumulation_iter_numba(acc, props, indegree, startnodes, row_offsets,
                                    col_offsets):
    m, n = acc.shape
    queue = np.empty(m * n, dtype=np.int64)
    head = 0
    tail = 0
    for k in range(startnodes.size):
        queue[tail] = startnodes[k]
        tail += 1
    while head < tail:
        node = queue[head]
        head += 1
        i = node // n
        j = node % n
        value = acc[i, j]
        for k in range(8):
            prop = props[i, j, k]
            if prop > 0:
                row = i + row_offsets[k]
                col = j + col_offsets[k]
                acc[row, col] += value * prop
                endnode = row * n + col
                indegree[endnode] -= 1
                if indegree[endnode] == 0:
                    queue[tail] = endnode
                    tail += 1
    return acc

# Functions for 'fill_depressions'

@njit(parallel=True, cache=True)
def _nodata_neighbors_numba(nodata_cells, row_offsets, col_offsets):
    # Valid cells touching at least one nodata cell
    m, n = nodata_cells.shape
    adjacent = np.zeros(nodata_cells.shape, dtype=np.bool_)
    for i in prange(m):
        for j in range(n):
            if nodata_cells[i, j]:
                continue
            for k in range(8):
                row = i + row_offsets[k]
                col = j + col_offsets[k]
                if row < 0 or row >= m or col < 0 or col >= n:
                    continue
                if nodata_cells[row, col]:
                    adjacent[i, j] = True
                    break
    return adjacent
