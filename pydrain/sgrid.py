import warnings
from concurrent.futures import ThreadPoolExecutor

import numba
import pyproj
import numpy as np
from affine import Affine

_pyproj_init = 'epsg:4326'

# Import input/output functions
import pydrain.io

# Import viewing functions
from pydrain.sview import Raster
from pydrain.sview import View, ViewFinder

# Import numba functions
import pydrain._sgrid as _self
from pydrain._priority_flood import Partition, split_partitions, fill_partition

_ROUTINGS = ('d8', 'hybrid')

class sGrid():
    """
    Container class for holding, aligning, and conditioning gridded elevation data
    and for routing flow over it.

    Attributes
    ==========
    viewfinder : Class containing all information about the coordinate system
                 of the grid object. Includes the `affine`, `shape`, `crs`,
                 `nodata` and `mask` attributes.
    affine : Affine transformation matrix (uses affine module).
    shape : The shape of the grid (number of rows, number of columns).
    crs : The coordinate reference system.
    nodata : The value indicating `no data`.
    mask : A boolean array used to mask grid cells.
    bbox : The bounding box of the grid (xmin, ymin, xmax, ymax).
    size : The number of cells in the grid.

    Methods
    =======
        --------
        File I/O
        --------
        read_ascii : Read an ascii grid from a file and return a Raster object.
        read_raster : Read a raster image file and return a Raster object.
        from_ascii : Initializes Grid from an ascii file and return a new Grid instance.
        from_raster : Initializes Grid from a raster image file or Raster object and
                      return a new Grid instance.
        to_ascii : Writes a gridded dataset to an ascii file.
        to_raster : Writes a gridded dataset to a raster image file.
        to_csv : Writes a gridded dataset to a comma-separated text file.
        ----------
        Hydrologic
        ----------
        fill_depressions : Fill depressions in a digital elevation dataset using a
                           partitioned, parallel priority-flood.
        detect_depressions : Detect cells raised by fill_depressions.
        elevation_range : Minimum and maximum elevation of the valid cells.
        slope : Compute the terrain slope (in degrees) of each cell.
        classify_steep : Classify cells as steep or gentle from a slope raster.
        flowdir : Generate a flow direction grid from a digital elevation dataset,
                  using either D8 or hybrid D8/MFD routing.
        mfd_shares : Compute the multiple flow direction outflow shares of each cell.
        accumulation : Compute the number of cells upstream of each cell.
        ---------------
        Data Processing
        ---------------
        view : Returns a "view" of a dataset defined by the grid's viewfinder.
    """

    def __init__(self, viewfinder=None):
        if viewfinder is not None:
            try:
                assert isinstance(viewfinder, ViewFinder)
            except AssertionError:
                raise TypeError('viewfinder must be an instance of ViewFinder.')
            self._viewfinder = viewfinder
        else:
            self._viewfinder = ViewFinder(**self.defaults)

    @property
    def viewfinder(self):
        return self._viewfinder

    @viewfinder.setter
    def viewfinder(self, new_viewfinder):
        try:
            assert isinstance(new_viewfinder, ViewFinder)
        except AssertionError:
            raise TypeError('viewfinder must be an instance of ViewFinder.')
        self._viewfinder = new_viewfinder

    @property
    def defaults(self):
        props = {
            'affine' : Affine(1.,0.,0.,0.,1.,0.),
            'shape' : (1,1),
            'nodata' : 0,
            'crs' : pyproj.Proj(_pyproj_init),
        }
        return props

    @property
    def affine(self):
        return self.viewfinder.affine

    @property
    def shape(self):
        return self.viewfinder.shape

    @property
    def nodata(self):
        return self.viewfinder.nodata

    @property
    def crs(self):
        return self.viewfinder.crs

    @property
    def mask(self):
        return self.viewfinder.mask

    @affine.setter
    def affine(self, new_affine):
        self.viewfinder.affine = new_affine

    @property
    def bbox(self):
        return self.viewfinder.bbox

    @property
    def size(self):
        return self.viewfinder.size

    def read_ascii(self, data, skiprows=6, mask=None, crs=None, dtype=np.int64,
                   metadata={}, **kwargs):
        """
        Reads data from an ascii file and returns a Raster.

        Parameters
        ----------
        data : str
               File name or path.
        skiprows : int (optional)
                   The number of rows taken up by the header (defaults to 6).
        mask : np.ndarray or Raster
               Boolean array to mask dataset.
        crs : pyroj.Proj
              Coordinate reference system of ascii data. Defaults to the grid's crs.
        dtype : numpy datatype
                Datatype of the returned Raster (defaults to np.int64).
        metadata : dict
                   Other attributes describing dataset, such as direction
                   mapping for flow direction files. e.g.:
                   metadata={'dirmap' : (64, 128, 1, 2, 4, 8, 16, 32),
                             'routing' : 'd8'}

        Additional keyword arguments (**kwargs) are passed to numpy.loadtxt()

        Returns
        -------
        out : Raster
              Raster object containing loaded data.
        """
        if crs is None:
            crs = self.crs
        return pydrain.io.read_ascii(data, skiprows=skiprows, mask=mask, crs=crs,
                                     dtype=dtype, metadata=metadata, **kwargs)

    def read_raster(self, data, band=1, nodata=None, metadata={}, **kwargs):
        """
        Reads data from a raster file and returns a Raster object.

        Parameters
        ----------
        data : str
               File name or path.
        band : int
               The band number to read if multiband.
        nodata : int or float
                 Value indicating 'no data' in raster file. If None, will attempt to read
                 intended 'no data' value from raster file.
        metadata : dict
                   Other attributes describing dataset.

        Additional keyword arguments are passed to rasterio.open()

        Returns
        -------
        out : Raster
              Raster object containing loaded data.
        """
        return pydrain.io.read_raster(data, band=band, nodata=nodata,
                                      metadata=metadata, **kwargs)

    def to_ascii(self, data, file_name, target_view=None, delimiter=' ', fmt=None,
                 apply_output_mask=True, inherit_nodata=True, nodata=None,
                 dtype=None, **kwargs):
        """
        Writes gridded data to ascii grid files.

        Parameters
        ----------
        data: Raster
              Raster dataset to write.
        file_name : str
                    Name of file or path to write to.
        target_view : ViewFinder
                      ViewFinder to use when writing data. Defaults to grid.viewfinder.
        delimiter : string (optional)
                    Delimiter to use in output file (defaults to ' ')
        fmt : str
              Formatting for numeric data. Passed to np.savetxt.
        apply_output_mask : bool
                            If True, mask the output Raster according to grid.mask.
        inherit_nodata : bool
                         If True, output ascii inherits `nodata` value from `data`.
                         If False, output ascii uses `nodata` value from grid's viewfinder.
        nodata : int or float
                 Value indicating no data in output Raster (overrides target_view.nodata)
        dtype : numpy datatype
                Desired datatype of the output array.

        Additional keyword arguments (**kwargs) are passed to np.savetxt
        """
        if target_view is None:
            target_view = self.viewfinder
        return pydrain.io.to_ascii(data, file_name, target_view=target_view,
                                   delimiter=delimiter, fmt=fmt,
                                   apply_output_mask=apply_output_mask,
                                   inherit_nodata=inherit_nodata,
                                   nodata=nodata, dtype=dtype, **kwargs)

    def to_raster(self, data, file_name, target_view=None, profile=None, blockxsize=256,
                  blockysize=256, apply_output_mask=True, inherit_nodata=True,
                  nodata=None, dtype=None, **kwargs):
        """
        Writes gridded data to a raster.

        Parameters
        ----------
        data: Raster
              Raster dataset to write.
        file_name : str
                    Name of file or path to write to.
        target_view : ViewFinder
                      ViewFinder to use when writing data. Defaults to grid.viewfinder.
        profile : dict
                  Profile of driver for writing data. See rasterio documentation.
        blockxsize : int
                     Size of blocks in horizontal direction. See rasterio documentation.
        blockysize : int
                     Size of blocks in vertical direction. See rasterio documentation.
        apply_output_mask : bool
                            If True, mask the output Raster according to grid.mask.
        inherit_nodata : bool
                         If True, output Raster inherits `nodata` value from `data`.
                         If False, output Raster uses `nodata` value from grid's viewfinder.
        nodata : int or float
                 Value indicating no data in output Raster (overrides target_view.nodata)
        dtype : numpy datatype
                Desired datatype of the output array.
        """
        if target_view is None:
            target_view = self.viewfinder
        return pydrain.io.to_raster(data, file_name, target_view=target_view,
                                    profile=profile, blockxsize=blockxsize,
                                    blockysize=blockysize,
                                    apply_output_mask=apply_output_mask,
                                    inherit_nodata=inherit_nodata,
                                    nodata=nodata, dtype=dtype, **kwargs)

    def to_csv(self, data, file_name, nodata=None, fmt=None, delimiter=',', **kwargs):
        """
        Writes gridded data to a headerless comma-separated text file, one row of
        the grid per line. Cells holding `no data` are written as an integer.

        Parameters
        ----------
        data: Raster
              Raster dataset to write.
        file_name : str
                    Name of file or path to write to.
        nodata : int
                 Integer written for `no data` cells. Defaults to data.nodata, or to
                 the grid's `nodata` value when data.nodata is NaN.
        fmt : str
              Formatting for numeric data.
        delimiter : str
                    Delimiter between cells (defaults to ',').
        """
        data = self._input_handler(data, name='data', apply_output_mask=False)
        if nodata is None:
            nodata = data.nodata
            if np.isnan(nodata):
                nodata = self.nodata
        return pydrain.io.to_csv(data, file_name, nodata=nodata, fmt=fmt,
                                 delimiter=delimiter, **kwargs)

    @classmethod
    def from_ascii(cls, data, **kwargs):
        """
        Instantiates grid from an ascii text file.

        Parameters
        ----------
        data: str
              File path of ascii text file.

        Additional keyword arguments (**kwargs) are passed to self.read_ascii.

        Returns
        -------
        new_grid : Grid
                   A new Grid instance with its ViewFinder defined by the ascii file.
        """
        newinstance = cls()
        data = newinstance.read_ascii(data, **kwargs)
        newinstance.viewfinder = data.viewfinder
        return newinstance

    @classmethod
    def from_raster(cls, data, **kwargs):
        """
        Instantiates grid from a raster object or raster file.

        Parameters
        ----------
        data: Raster or str representing file path
              Raster data to use for instantiation.

        Additional keyword arguments (**kwargs) are passed to self.read_raster if
        data is a file path.

        Returns
        -------
        new_grid : Grid
                   A new Grid instance with its ViewFinder defined by the input raster.
        """
        newinstance = cls()
        if isinstance(data, Raster):
            newinstance.viewfinder = data.viewfinder
            return newinstance
        elif isinstance(data, str):
            data = newinstance.read_raster(data, **kwargs)
            newinstance.viewfinder = data.viewfinder
            return newinstance
        else:
            raise TypeError('`data` must be a Raster or str.')

    def view(self, data, data_view=None, target_view=None, apply_output_mask=True,
             inherit_nodata=True, nodata=None, dtype=None, **kwargs):
        """
        Return a copy of a gridded dataset expressed in the spatial reference system
        of a ViewFinder (by default, the grid's own viewfinder). Data are never
        resampled: the dataset must have the shape of the target view.

        Parameters
        ----------
        data : Raster
               A Raster object containing the gridded data and its spatial reference system
               (as defined by its ViewFinder).
        data_view : ViewFinder
                    The spatial reference system of the data. Defaults to the Raster dataset's
                    `viewfinder` attribute.
        target_view : ViewFinder
                      The desired spatial reference system. Defaults the the Grid instance's
                      `viewfinder` attribute.
        apply_output_mask : bool
                           If True, mask the output Raster according to grid.mask.
        inherit_nodata : bool
                         If True, output Raster inherits `nodata` value from `data` or `data_view`.
                         If False, output Raster uses `nodata` value from grid's viewfinder.
        nodata : int or float
                 Value indicating no data in output Raster. Cells holding the
                 dataset's own `nodata` value are rewritten to it.
        dtype : numpy datatype
                Desired datatype of the output array.

        Returns
        -------
        out : Raster
              View of the input Raster at the provided target view.
        """
        # Check input type
        try:
            assert isinstance(data, Raster)
        except AssertionError:
            raise TypeError("data must be a Raster instance")
        # If no target view is provided, use grid's viewfinder
        if target_view is None:
            target_view = self.viewfinder
        out = View.view(data, target_view, data_view=data_view,
                        apply_output_mask=apply_output_mask,
                        inherit_nodata=inherit_nodata,
                        nodata=nodata, dtype=dtype)
        return out

    def fill_depressions(self, dem, threshold=1000, nodata_outlets=False,
                         n_workers=None, **kwargs):
        """
        Fill depressions in a DEM with a priority-flood. The grid is recursively
        quartered until every partition holds at most `threshold` cells, and each
        partition is then flooded independently from its own boundary ring. The
        partitions are processed in parallel by a pool of worker threads.

        Note that partitions are not merged afterwards: a depression whose spill
        point lies in another partition is only drained as far as the boundary of
        its own partition. Use a `threshold` of at least `dem.size` to flood the
        whole grid as a single partition.

        Parameters
        ----------
        dem : Raster
              Digital elevation data. Elevations are treated as integers.
        threshold : int
                    Maximum number of cells of a partition that is flooded directly.
        nodata_outlets : bool
                         If True, valid cells adjacent to `no data` cells are also
                         used as outlets (seeds of the flood).
        n_workers : int
                    Number of worker threads. Defaults to the number of threads
                    used by numba.

        Additional keyword arguments (**kwargs) are passed to self.view.

        Returns
        -------
        filled_dem : Raster
                     Raster representing digital elevation data with depressions
                     removed. The input DEM is left unmodified.
        """
        try:
            assert int(threshold) >= 1
        except AssertionError:
            raise ValueError('`threshold` must be a positive number of cells.')
        dem = self._elevation_handler(dem, name='dem', **kwargs)
        nodata_cells = np.asarray(self._get_nodata_cells(dem))
        if nodata_outlets:
            seeds = _self._nodata_neighbors_numba(nodata_cells, _self.ROW_OFFSETS,
                                                  _self.COL_OFFSETS)
        else:
            seeds = np.zeros(dem.shape, dtype=np.bool_)
        m, n = dem.shape
        partitions = split_partitions(Partition(0, m, 0, n), threshold=int(threshold))
        if n_workers is None:
            n_workers = numba.get_num_threads()
        # Partitions are disjoint, so every worker writes to its own cells only
        dem_out = np.asarray(dem).copy()
        with ThreadPoolExecutor(max_workers=n_workers) as executor:
            futures = [executor.submit(fill_partition, dem_out, nodata_cells, seeds,
                                       *partition)
                       for partition in partitions]
            for future in futures:
                future.result()
        dem_out = self._output_handler(data=dem_out, viewfinder=dem.viewfinder,
                                       metadata=dem.metadata, nodata=dem.nodata)
        return dem_out

    def detect_depressions(self, dem, **kwargs):
        """
        Detect cells lying in depressions of a DEM.

        Parameters
        ----------
        dem : Raster
              Digital elevation data

        Additional keyword arguments (**kwargs) are passed to self.fill_depressions.

        Returns
        -------
        depressions : Raster
                      Boolean Raster indicating cells raised by filling.
        """
        filled_dem = self.fill_depressions(dem, **kwargs)
        dem = self._elevation_handler(dem, name='dem')
        nodata_cells = self._get_nodata_cells(dem)
        depressions = np.zeros(filled_dem.shape, dtype=np.bool_)
        depressions[np.asarray(dem) != np.asarray(filled_dem)] = True
        depressions[nodata_cells] = False
        depressions = self._output_handler(data=depressions,
                                           viewfinder=filled_dem.viewfinder,
                                           metadata=filled_dem.metadata,
                                           nodata=False)
        return depressions

    def elevation_range(self, dem):
        """
        Minimum and maximum elevation over the valid cells of a DEM.

        Parameters
        ----------
        dem : Raster
              Digital elevation data

        Returns
        -------
        (min, max) : tuple of ints
        """
        dem = self._elevation_handler(dem, name='dem')
        nodata_cells = self._get_nodata_cells(dem)
        values = np.asarray(dem)[~np.asarray(nodata_cells)]
        try:
            assert values.size > 0
        except AssertionError:
            raise ValueError('`dem` contains no valid cells.')
        return int(values.min()), int(values.max())

    def slope(self, dem, cellsize=None, nodata_out=np.nan, **kwargs):
        """
        Computes the terrain slope of each cell in degrees, from centered finite
        differences of elevation. A difference is taken as zero when either of the
        two neighbors lies outside of the grid or holds `no data`.

        Parameters
        ----------
        dem : Raster
              Digital elevation data.
        cellsize : float
                   Spacing between cell centers. Defaults to the cell width of the
                   DEM's affine transform.
        nodata_out : float
                     Value to indicate nodata in output array.

        Additional keyword arguments (**kwargs) are passed to self.view.

        Returns
        -------
        slope : Raster
                Raster of slopes in degrees (float64).
        """
        dem = self._elevation_handler(dem, name='dem', **kwargs)
        nodata_cells = np.asarray(self._get_nodata_cells(dem))
        if cellsize is None:
            _, cellsize = dem.dy_dx
        try:
            assert cellsize > 0
        except AssertionError:
            raise ValueError('`cellsize` must be positive.')
        slope = _self._slope_numba(np.asarray(dem), nodata_cells, float(cellsize))
        if not np.isnan(nodata_out):
            slope[nodata_cells] = nodata_out
        slope = self._output_handler(data=slope, viewfinder=dem.viewfinder,
                                     metadata=dem.metadata, nodata=nodata_out)
        return slope

    def classify_steep(self, slope, threshold=20., **kwargs):
        """
        Classifies cells as steep (slope strictly greater than `threshold`) or
        gentle. Cells with `no data` are never steep.

        Parameters
        ----------
        slope : Raster
                Slope data in degrees.
        threshold : float
                    Slope (in degrees) above which a cell is steep.

        Additional keyword arguments (**kwargs) are passed to self.view.

        Returns
        -------
        steep : Raster
                Boolean Raster indicating steep cells.
        """
        input_overrides = {'dtype' : np.float64, 'nodata' : np.nan}
        kwargs.update(input_overrides)
        slope = self._input_handler(slope, name='slope', **kwargs)
        valid = ~np.isnan(slope)
        steep = np.zeros(slope.shape, dtype=np.bool_)
        np.greater(np.asarray(slope), threshold, out=steep, where=np.asarray(valid))
        steep = self._output_handler(data=steep, viewfinder=slope.viewfinder,
                                     metadata=slope.metadata, nodata=False)
        return steep

    def flowdir(self, dem, routing='d8', slope=None, steep=None, nodata_out=None,
                nodir=0, dirmap=(64, 128, 1, 2, 4, 8, 16, 32), **kwargs):
        """
        Generates a flow direction raster from a DEM grid. Both d8 and hybrid
        d8/mfd routing are supported.

        Parameters
        ----------
        dem : Raster
              Digital elevation model data (depressions already filled).
        routing : str
                  Routing algorithm to use:
                  'd8'     : D8 flow directions
                  'hybrid' : D8 flow directions on steep cells, multiple flow
                             directions (a bitmask of dirmap values) on gentle cells
        slope : Raster
                Slope in degrees (required for hybrid routing).
        steep : Raster
                Boolean steepness mask (required for hybrid routing).
        nodata_out : int
                     Value to indicate nodata in output array. Defaults to the
                     DEM's `nodata` value.
        nodir : int
                Value to indicate cells without any outflow (sinks and flats).
        dirmap : list or tuple (length 8)
                 List of integer values representing the following
                 cardinal and intercardinal directions (in order):
                 [N, NE, E, SE, S, SW, W, NW]

        Additional keyword arguments (**kwargs) are passed to self.view.

        Returns
        -------
        fdir : Raster
               Raster indicating flow directions (int64).
        """
        routing = self._check_routing(routing)
        dirmap = self._check_dirmap(dirmap)
        dem = self._elevation_handler(dem, name='dem', **kwargs)
        nodata_cells = np.asarray(self._get_nodata_cells(dem))
        if nodata_out is None:
            nodata_out = dem.nodata
        nodir = self._check_nodir(nodir, dirmap, routing)
        nodata_out = self._resolve_nodata_out(nodata_out, nodir, dirmap, routing)
        if routing == 'd8':
            fdir = self._d8_flowdir(dem, nodata_cells, nodata_out=nodata_out,
                                    nodir=nodir, dirmap=dirmap)
        elif routing == 'hybrid':
            slope, steep = self._routing_inputs_handler(slope, steep)
            fdir = self._hybrid_flowdir(dem, slope, steep, nodata_cells,
                                        nodata_out=nodata_out, nodir=nodir,
                                        dirmap=dirmap)
        fdir.metadata.update({'dirmap' : dirmap, 'routing' : routing, 'nodir' : nodir})
        return fdir

    def _d8_flowdir(self, dem, nodata_cells, nodata_out=0, nodir=0,
                    dirmap=(64, 128, 1, 2, 4, 8, 16, 32)):
        valid = ~nodata_cells
        fdir = _self._d8_flowdir_numba(np.asarray(dem), valid, np.asarray(dirmap),
                                       nodata_out, nodir, _self.ROW_OFFSETS,
                                       _self.COL_OFFSETS)
        return self._output_handler(data=fdir, viewfinder=dem.viewfinder,
                                    metadata=dem.metadata, nodata=nodata_out)

    def _hybrid_flowdir(self, dem, slope, steep, nodata_cells, nodata_out=0, nodir=0,
                        dirmap=(64, 128, 1, 2, 4, 8, 16, 32)):
        valid = ~nodata_cells & ~np.isnan(np.asarray(slope))
        fdir = _self._hybrid_flowdir_numba(np.asarray(dem), np.asarray(slope),
                                           np.asarray(steep), valid, np.asarray(dirmap),
                                           nodata_out, nodir, _self.ROW_OFFSETS,
                                           _self.COL_OFFSETS, _self.CONTOUR_LENGTHS,
                                           _self.MFD_EXPONENT, _self.MFD_MIN_SHARE)
        return self._output_handler(data=fdir, viewfinder=dem.viewfinder,
                                    metadata=dem.metadata, nodata=nodata_out)

    def mfd_shares(self, dem, slope, **kwargs):
        """
        Computes the multiple flow direction shares of every cell: the fraction of
        the cell's outflow passed to each of its 8 neighbors, proportional to
        tan(slope of neighbor)^5 times the contour length towards the neighbor.
        Only valid neighbors that are strictly lower than the cell receive flow.

        Parameters
        ----------
        dem : Raster
              Digital elevation model data.
        slope : Raster
                Slope in degrees.

        Returns
        -------
        shares : np.ndarray (rows x cols x 8)
                 Shares in the order [N, NE, E, SE, S, SW, W, NW]. The shares of a
                 cell sum to one, or are all zero if the cell has no outflow.
        """
        dem = self._elevation_handler(dem, name='dem', **kwargs)
        slope, _ = self._routing_inputs_handler(slope, None, require_steep=False)
        valid = (~np.asarray(self._get_nodata_cells(dem))
                 & ~np.isnan(np.asarray(slope)))
        shares = _self._mfd_shares_numba(np.asarray(dem), np.asarray(slope), valid,
                                         _self.ROW_OFFSETS, _self.COL_OFFSETS,
                                         _self.CONTOUR_LENGTHS, _self.MFD_EXPONENT)
        return shares

    def accumulation(self, fdir, routing=None, dem=None, slope=None, steep=None,
                     dirmap=None, nodir=None, nodata_out=None, algorithm='sweep',
                     **kwargs):
        """
        Generates a flow accumulation raster. Every valid cell contributes one unit,
        which is passed downstream along the flow directions.

        Parameters
        ----------
        fdir : Raster
               Flow direction data.
        routing : str
                  Routing algorithm used to produce `fdir`:
                  'd8'     : D8 flow directions
                  'hybrid' : Hybrid D8/MFD flow directions
                  Defaults to fdir.metadata['routing'], or 'd8'.
        dem : Raster
              Digital elevation data (required for hybrid routing).
        slope : Raster
                Slope in degrees (required for hybrid routing).
        steep : Raster
                Boolean steepness mask (required for hybrid routing).
        dirmap : list or tuple (length 8)
                 List of integer values representing the following
                 cardinal and intercardinal directions (in order):
                 [N, NE, E, SE, S, SW, W, NW]
                 Defaults to fdir.metadata['dirmap'].
        nodir : int
                Value marking cells without any outflow in `fdir`. Defaults to
                fdir.metadata['nodir'], or 0.
        nodata_out : int or float
                     Value to indicate nodata in output raster. Defaults to
                     fdir.nodata for d8 routing and to np.nan for hybrid routing.
                     A value that could be a valid accumulation (1 or more) is
                     replaced, with a warning.
        algorithm : str
                    Algorithm type to use:
                    'sweep'     : A forward and a backward raster-order sweep (d8),
                                  or a single raster-order pass (hybrid). Contributions
                                  travelling against both sweep orders may not reach
                                  the outlet.
                    'iterative' : Visit cells in topological order of the drainage
                                  graph (exact).

        Additional keyword arguments (**kwargs) are passed to self.view.

        Returns
        --------
        acc : Raster
              Raster indicating the accumulation at each cell (int64 for d8
              routing, float64 for hybrid routing).
        """
        try:
            assert isinstance(fdir, Raster)
        except AssertionError:
            raise TypeError('`fdir` must be a Raster.')
        if routing is None:
            routing = fdir.metadata.get('routing', 'd8')
        routing = self._check_routing(routing)
        if dirmap is None:
            dirmap = fdir.metadata.get('dirmap', (64, 128, 1, 2, 4, 8, 16, 32))
        dirmap = self._check_dirmap(dirmap)
        if nodir is None:
            nodir = fdir.metadata.get('nodir', 0)
        nodir = self._check_nodir(nodir, dirmap, routing)
        try:
            algorithm = algorithm.lower()
            assert algorithm in {'sweep', 'iterative'}
        except (AttributeError, AssertionError):
            raise ValueError('Algorithm must be `sweep` or `iterative`.')
        try:
            assert not np.isnan(fdir.nodata)
        except AssertionError:
            raise ValueError('`nodata` value of `fdir` must be an integer.')
        fdir_overrides = {'dtype' : np.int64, 'nodata' : int(fdir.nodata)}
        kwargs.update(fdir_overrides)
        fdir = self._input_handler(fdir, name='fdir', **kwargs)
        if routing == 'd8':
            if nodata_out is None:
                nodata_out = fdir.nodata
            nodata_out = self._resolve_accumulation_nodata(nodata_out, routing)
            acc = self._d8_accumulation(fdir, dirmap=dirmap, nodir=nodir,
                                        nodata_out=nodata_out, algorithm=algorithm)
        elif routing == 'hybrid':
            if nodata_out is None:
                nodata_out = np.nan
            nodata_out = self._resolve_accumulation_nodata(nodata_out, routing)
            try:
                assert dem is not None
            except AssertionError:
                raise ValueError('Hybrid routing requires `dem`.')
            dem = self._elevation_handler(dem, name='dem')
            slope, steep = self._routing_inputs_handler(slope, steep)
            acc = self._hybrid_accumulation(fdir, dem, slope, steep, dirmap=dirmap,
                                            nodir=nodir, nodata_out=nodata_out,
                                            algorithm=algorithm)
        acc.metadata.update({'routing' : routing})
        return acc

    def _d8_accumulation(self, fdir, dirmap=(64, 128, 1, 2, 4, 8, 16, 32), nodir=0,
                         nodata_out=0, algorithm='sweep'):
        # Find nodata cells
        nodata_cells = np.asarray(self._get_nodata_cells(fdir))
        valid = ~nodata_cells
        # Downstream cell of each cell (cells without outflow point to themselves)
        endnodes = _self._d8_endnodes_numba(np.asarray(fdir), valid, np.asarray(dirmap),
                                            nodir, _self.ROW_OFFSETS, _self.COL_OFFSETS)
        # Initialize accumulation array to ones where valid cells exist
        acc = valid.astype(np.int64)
        if algorithm == 'sweep':
            acc = _self._d8_accumulation_sweep_numba(acc, endnodes)
        elif algorithm == 'iterative':
            startnodes = np.arange(fdir.size, dtype=np.int64)
            is_edge = (endnodes != startnodes)
            # Find indegree of all cells
            indegree = np.bincount(endnodes[is_edge],
                                   minlength=fdir.size).astype(np.uint8)
            # Set starting nodes to those with no predecessors
            startnodes = startnodes[(indegree == 0)]
            acc = _self._d8_accumulation_iter_numba(acc, endnodes, indegree, startnodes)
        acc[nodata_cells] = nodata_out
        acc = self._output_handler(data=acc, viewfinder=fdir.viewfinder,
                                   metadata=fdir.metadata, nodata=nodata_out)
        return acc

    def _hybrid_accumulation(self, fdir, dem, slope, steep,
                             dirmap=(64, 128, 1, 2, 4, 8, 16, 32), nodir=0,
                             nodata_out=np.nan, algorithm='sweep'):
        nodata_cells = (np.asarray(self._get_nodata_cells(fdir))
                        | np.asarray(self._get_nodata_cells(dem))
                        | np.isnan(np.asarray(slope)))
        valid = ~nodata_cells
        # Outflow proportions are independent per cell and computed in parallel
        props = _self._hybrid_proportions_numba(np.asarray(fdir), np.asarray(dem),
                                                np.asarray(slope), np.asarray(steep),
                                                valid, np.asarray(dirmap), nodir,
                                                _self.ROW_OFFSETS, _self.COL_OFFSETS,
                                                _self.CONTOUR_LENGTHS,
                                                _self.MFD_EXPONENT)
        acc = valid.astype(np.float64)
        # Additions are applied serially
        if algorithm == 'sweep':
            acc = _self._hybrid_accumulation_sweep_numba(acc, props, _self.ROW_OFFSETS,
                                                         _self.COL_OFFSETS)
        elif algorithm == 'iterative':
            indegree = _self._hybrid_indegree_numba(props, _self.ROW_OFFSETS,
                                                    _self.COL_OFFSETS)
            startnodes = np.flatnonzero(indegree == 0).astype(np.int64)
            acc = _self._hybrid_accumulation_iter_numba(acc, props, indegree, startnodes,
                                                        _self.ROW_OFFSETS,
                                                        _self.COL_OFFSETS)
        acc[nodata_cells] = nodata_out
        acc = self._output_handler(data=acc, viewfinder=fdir.viewfinder,
                                   metadata=fdir.metadata, nodata=nodata_out)
        return acc

    def _input_handler(self, data, name='data', **kwargs):
        try:
            assert (isinstance(data, Raster))
        except AssertionError:
            raise TypeError('`{}` must be a Raster.'.format(name))
        try:
            assert tuple(data.shape) == tuple(self.shape)
        except AssertionError:
            raise ValueError('`{}` has shape {}, but the grid has shape {}.'
                             .format(name, data.shape, self.shape))
        dataset = self.view(data, data_view=data.viewfinder, target_view=self.viewfinder,
                            **kwargs)
        return dataset

    def _elevation_handler(self, dem, name='dem', **kwargs):
        # Elevations are handled as integers
        try:
            assert (isinstance(dem, Raster))
        except AssertionError:
            raise TypeError('`{}` must be a Raster.'.format(name))
        try:
            assert not np.isnan(dem.nodata)
        except AssertionError:
            raise ValueError('`nodata` value of `{}` must be an integer, not NaN.'
                             .format(name))
        input_overrides = {'dtype' : np.int64, 'nodata' : int(dem.nodata)}
        kwargs.update(input_overrides)
        return self._input_handler(dem, name=name, **kwargs)

    def _routing_inputs_handler(self, slope, steep, require_steep=True):
        try:
            assert slope is not None
        except AssertionError:
            raise ValueError('Hybrid routing requires a `slope` raster.')
        slope = self._input_handler(slope, name='slope', dtype=np.float64,
                                    nodata=np.nan)
        if steep is None:
            if require_steep:
                raise ValueError('Hybrid routing requires a `steep` raster.')
        else:
            steep = self._input_handler(steep, name='steep', dtype=np.bool_,
                                        nodata=False)
        return slope, steep

    def _output_handler(self, data, viewfinder, metadata={}, **kwargs):
        new_view = ViewFinder(**viewfinder.properties)
        for param, value in kwargs.items():
            if (value is not None) and (hasattr(new_view, param)):
                setattr(new_view, param, value)
        dataset = Raster(data, new_view, metadata=metadata)
        return dataset

    def _get_nodata_cells(self, data):
        try:
            assert (isinstance(data, Raster))
        except AssertionError:
            raise TypeError('Data must be a Raster.')
        nodata = data.nodata
        if np.isnan(nodata):
            nodata_cells = np.isnan(data).astype(np.bool_)
        else:
            nodata_cells = (data == nodata).astype(np.bool_)
        return nodata_cells

    def _check_routing(self, routing):
        try:
            routing = routing.lower()
            assert routing in _ROUTINGS
        except (AttributeError, AssertionError):
            raise ValueError('Routing method must be one of: `d8`, `hybrid`')
        return routing

    def _check_dirmap(self, dirmap):
        dirmap = tuple(int(d) for d in dirmap)
        try:
            assert len(dirmap) == 8
            assert len(set(dirmap)) == 8
            # Codes must be distinct powers of two so that they can be combined
            assert all((d > 0) and (d & (d - 1) == 0) for d in dirmap)
        except AssertionError:
            raise ValueError('`dirmap` must hold 8 distinct powers of two.')
        return dirmap

    def _resolve_nodata_out(self, nodata_out, nodir, dirmap, routing):
        try:
            assert not np.isnan(nodata_out)
        except AssertionError:
            raise ValueError('`nodata_out` of an integer flow direction grid cannot be NaN.')
        nodata_out = int(nodata_out)
        if routing == 'd8':
            collides = (nodata_out == nodir) or (nodata_out in dirmap)
        else:
            # Any combination of direction bits is a possible output
            collides = (nodata_out == nodir) or ((nodata_out > 0)
                                                 and ((nodata_out & ~sum(dirmap)) == 0))
        if collides:
            fallback = -1 if nodir != -1 else -2
            warnings.warn('`nodata_out` value {} collides with a flow direction value. '
                          'Using {} instead.'.format(nodata_out, fallback))
            nodata_out = fallback
        return nodata_out

    def _check_nodir(self, nodir, dirmap, routing):
        nodir = int(nodir)
        try:
            if routing == 'd8':
                assert nodir not in dirmap
            else:
                # Any combination of direction bits marks an outflow
                assert (nodir <= 0) or ((nodir & ~sum(dirmap)) != 0)
        except AssertionError:
            raise ValueError('`nodir` value {} is also a flow direction value.'
                             .format(nodir))
        return nodir

    def _resolve_accumulation_nodata(self, nodata_out, routing):
        if routing == 'd8':
            try:
                assert not np.isnan(nodata_out)
            except AssertionError:
                raise ValueError('`nodata_out` of an integer accumulation grid cannot be NaN.')
            nodata_out = int(nodata_out)
            fallback = -1
        else:
            fallback = np.nan
        # Every valid cell accumulates at least its own unit
        if nodata_out >= 1:
            warnings.warn('`nodata_out` value {} collides with an accumulation value. '
                          'Using {} instead.'.format(nodata_out, fallback))
            nodata_out = fallback
        return nodata_out
