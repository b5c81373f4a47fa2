from numba import njit, from_dtype
from numba.typed import typedlist
from numba.types import Tuple, int64

import numpy as np
from collections import namedtuple
from heapq import heappop, heappush, heapify
from functools import wraps

# Half-open rectangle [row_start, row_end) x [col_start, col_end) of a raster
Partition = namedtuple('Partition', ['row_start', 'row_end', 'col_start', 'col_end'])


def pfwrapper(func):
    # Implemenation detail of priority-flood algorithm
    # Needed to define the types used in priority queue
    @wraps(func)
    def _wrapper(dem, mask, *args):
        # Tuple elements:
        # 0: dem data type (for elevation priority)
        # 1: int64 for insertion index (to maintain total ordering)
        # 2: int64 for row index
        # 3: int64 for col index
        tuple_type = Tuple([from_dtype(dem.dtype), int64, int64, int64])
        return func(dem, mask, tuple_type, *args)
    return _wrapper


def split_partitions(partition, threshold=1000):
    """
    Recursively quarter a partition until every piece holds at most `threshold`
    cells. The row and column ranges are split at their midpoints, the midpoint
    itself going to the upper/left half. Empty pieces are dropped.

    Parameters
    ----------
    partition : Partition
                Rectangle to split.
    threshold : int
                Maximum number of cells of a leaf partition.

    Returns
    -------
    leaves : list of Partition
             Disjoint leaf partitions covering `partition`, in row-major
             quadrant order.
    """
    row_start, row_end, col_start, col_end = partition
    if (row_end <= row_start) or (col_end <= col_start):
        return []
    if (row_end - row_start) * (col_end - col_start) <= threshold:
        return [partition]
    row_mid = (row_start + row_end - 1) // 2 + 1
    col_mid = (col_start + col_end - 1) // 2 + 1
    quadrants = (Partition(row_start, row_mid, col_start, col_mid),
                 Partition(row_start, row_mid, col_mid, col_end),
                 Partition(row_mid, row_end, col_start, col_mid),
                 Partition(row_mid, row_end, col_mid, col_end))
    leaves = []
    for quadrant in quadrants:
        leaves.extend(split_partitions(quadrant, threshold=threshold))
    return leaves


@njit(cache=True)
def count(start=0, step=1):
    # Numba accelerated count() from itertools
    # count(10) --> 10 11 12 13 14 ...
    # count(2.5, 0.5) --> 2.5 3.0 3.5 ...
    n = start
    while True:
        yield n
        n += step


@pfwrapper
@njit(nogil=True, cache=True)
def fill_partition(dem, dem_mask, tuple_type, seeds, row_start, row_end, col_start, col_end):
    # Priority-flood restricted to one partition; writes only inside it
    open_cells = typedlist.List.empty_list(tuple_type)  # Priority queue
    closed_cells = np.zeros((row_end - row_start, col_end - col_start), dtype=np.bool_)

    counter = count()
    # Push the boundary ring (and any extra seeds) onto the priority queue
    for i in range(row_start, row_end):
        for j in range(col_start, col_end):
            if dem_mask[i, j]:
                continue
            on_ring = ((i == row_start) or (i == row_end - 1) or
                       (j == col_start) or (j == col_end - 1))
            if on_ring or seeds[i, j]:
                open_cells.append((dem[i, j], next(counter), i, j))
                closed_cells[i - row_start, j - col_start] = True
    if len(open_cells) > 0:
        heapify(open_cells)

    row_offsets = np.array([-1, -1, 0, 1, 1, 1, 0, -1])
    col_offsets = np.array([0, 1, 1, 1, 0, -1, -1, -1])

    while len(open_cells) > 0:
        elv, _, i, j = heappop(open_cells)

        for n in range(8):
            row = i + row_offsets[n]
            col = j + col_offsets[n]

            if row < row_start or row >= row_end or col < col_start or col >= col_end:
                continue

            if dem_mask[row, col] or closed_cells[row - row_start, col - col_start]:
                continue

            closed_cells[row - row_start, col - col_start] = True

            if dem[row, col] < elv:
                dem[row, col] = elv

            heappush(open_cells, (dem[row, col], next(counter), row, col))

    return dem
