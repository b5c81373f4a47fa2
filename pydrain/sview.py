import copy
import numpy as np
import pyproj
from affine import Affine

_pyproj_init = 'epsg:4326'

class Raster(np.ndarray):
    """
    A single layer of gridded data (elevation, slope, steepness, flow direction or
    flow accumulation) tied to the ViewFinder that locates it. Every Raster carries
    its own copy of the ViewFinder and of its metadata.

    Attributes
    ==========
    viewfinder : Spatial reference of the Raster (`affine`, `shape`, `crs`,
                 `nodata` and `mask`).
    affine : Affine transformation matrix (uses affine module).
    crs : The coordinate reference system.
    nodata : The value marking cells without data.
    mask : A boolean array used to mask raster cells.
    metadata : A dictionary of optional metadata, e.g. the `dirmap`, `routing`
               and `nodir` used to produce a flow direction grid.
    bbox : The bounding box of the raster (xmin, ymin, xmax, ymax).
    dy_dx : Cell height and cell width.
    """

    def __new__(cls, input_array, viewfinder=None, metadata={}):
        # A Raster passed in lends its reference and metadata unless overridden
        if isinstance(input_array, Raster):
            if viewfinder is None:
                viewfinder = input_array.viewfinder
            if not metadata:
                metadata = input_array.metadata
        obj = np.asarray(input_array).view(cls)
        if viewfinder is None:
            viewfinder = ViewFinder(shape=obj.shape)
        try:
            assert isinstance(viewfinder, ViewFinder)
        except AssertionError:
            raise TypeError('A Raster must be located by a ViewFinder.')
        try:
            assert tuple(viewfinder.shape) == tuple(obj.shape)
        except AssertionError:
            raise ValueError('ViewFinder shape {} differs from array shape {}.'
                             .format(viewfinder.shape, obj.shape))
        try:
            assert obj.dtype.kind in 'biuf'
        except AssertionError:
            raise TypeError('Raster data must be boolean or numeric, not {}.'
                            .format(obj.dtype))
        try:
            assert np.can_cast(np.min_scalar_type(viewfinder.nodata), obj.dtype)
        except AssertionError:
            raise TypeError('`nodata` value {} cannot be held by dtype {}.'
                            .format(viewfinder.nodata, obj.dtype))
        obj._viewfinder = viewfinder.copy()
        obj.metadata = dict(metadata)
        return obj

    def __array_finalize__(self, obj):
        if obj is None:
            return
        self._viewfinder = getattr(obj, '_viewfinder', None)
        self.metadata = getattr(obj, 'metadata', None)

    @property
    def viewfinder(self):
        return self._viewfinder

    @viewfinder.setter
    def viewfinder(self, new_viewfinder):
        try:
            assert isinstance(new_viewfinder, ViewFinder)
            assert tuple(new_viewfinder.shape) == tuple(self.shape)
        except AssertionError:
            raise ValueError('Expected a ViewFinder of shape {}.'.format(self.shape))
        self._viewfinder = new_viewfinder

    @property
    def affine(self):
        return self.viewfinder.affine

    @property
    def crs(self):
        return self.viewfinder.crs

    @property
    def nodata(self):
        return self.viewfinder.nodata

    @property
    def mask(self):
        return self.viewfinder.mask

    @property
    def bbox(self):
        return self.viewfinder.bbox

    @property
    def dy_dx(self):
        return (abs(self.affine.e), abs(self.affine.a))


class ViewFinder():
    """
    Spatial reference shared by a Grid and the Rasters it produces: an affine
    transformation, a coordinate reference system, a boolean mask (whose shape is
    the shape of the grid) and the sentinel marking cells without data.
    """
    def __init__(self, affine=Affine(1., 0., 0., 0., 1., 0.), shape=(1,1),
                 nodata=0, mask=None, crs=pyproj.Proj(_pyproj_init)):
        self.affine = affine
        self.crs = crs
        self.nodata = nodata
        self.mask = np.ones(shape, dtype=np.bool_) if mask is None else mask

    @property
    def affine(self):
        return self._affine

    @affine.setter
    def affine(self, new_affine):
        try:
            assert isinstance(new_affine, Affine)
        except AssertionError:
            raise TypeError('`affine` must be an `Affine` object.')
        self._affine = new_affine

    @property
    def crs(self):
        return self._crs

    @crs.setter
    def crs(self, new_crs):
        try:
            assert isinstance(new_crs, pyproj.Proj)
        except AssertionError:
            raise TypeError('`crs` must be a `pyproj.Proj` object.')
        self._crs = new_crs

    @property
    def nodata(self):
        return self._nodata

    @nodata.setter
    def nodata(self, new_nodata):
        try:
            assert np.min_scalar_type(new_nodata).kind in 'biuf'
        except AssertionError:
            raise TypeError('`nodata` must be a boolean or numeric value.')
        self._nodata = new_nodata

    @property
    def mask(self):
        return self._mask

    @mask.setter
    def mask(self, new_mask):
        new_mask = np.asarray(new_mask)
        try:
            assert new_mask.ndim == 2
            assert (new_mask.dtype == np.bool_) or np.isin(new_mask, (0, 1)).all()
        except AssertionError:
            raise TypeError('`mask` must be a two-dimensional boolean array.')
        self._mask = new_mask.astype(np.bool_)

    @property
    def shape(self):
        return self.mask.shape

    @property
    def size(self):
        return self.mask.size

    @property
    def bbox(self):
        nrows, ncols = self.shape
        xmin, ymax = self.affine * (0, 0)
        xmax, ymin = self.affine * (ncols, nrows)
        return (xmin, ymin, xmax, ymax)

    @property
    def properties(self):
        return {'affine' : self.affine, 'shape' : self.shape, 'nodata' : self.nodata,
                'crs' : self.crs, 'mask' : self.mask}

    def copy(self):
        return copy.deepcopy(self)


class View():
    """
    Classmethods re-expressing a Raster under another ViewFinder. Rasters are
    never resampled: a view may change the dtype, the `nodata` sentinel and the
    mask of a dataset, but both views must have the same shape.
    """

    def __init__(self):
        raise NotImplementedError('The View class is used for classmethods '
                                  'and is not meant to be instantiated.')

    @classmethod
    def view(cls, data, target_view, data_view=None, apply_output_mask=True,
             inherit_nodata=True, nodata=None, dtype=None):
        """
        Return a copy of `data` expressed in the spatial reference of `target_view`.

        Parameters
        ----------
        data : Raster
               Gridded data to view.
        target_view : ViewFinder
                      The desired spatial reference. Must have the shape of `data`.
        data_view : ViewFinder
                    The spatial reference of the data. Defaults to data.viewfinder.
        apply_output_mask : bool
                            If True, cells outside of target_view.mask become `nodata`.
        inherit_nodata : bool
                         If True, the output keeps the `nodata` value of `data_view`.
                         If False, it takes the `nodata` value of `target_view`.
        nodata : int or float
                 `nodata` value of the output (overrides both of the above). Cells
                 holding the old sentinel are rewritten to the new one.
        dtype : numpy datatype
                Desired datatype of the output array.

        Returns
        -------
        out : Raster
              Copy of `data` located by the target view, with the metadata of `data`.
        """
        if data_view is None:
            try:
                assert isinstance(data, Raster)
            except AssertionError:
                raise TypeError('`data` must be a Raster instance.')
            data_view = data.viewfinder
        try:
            assert tuple(data_view.shape) == tuple(target_view.shape)
        except AssertionError:
            raise ValueError('Cannot view data with shape {} through a view with shape {}.'
                             .format(data_view.shape, target_view.shape))
        if nodata is None:
            nodata = data_view.nodata if inherit_nodata else target_view.nodata
        target_view = ViewFinder(**dict(target_view.properties, nodata=nodata))
        out = cls._replace_nodata(np.array(data), data_view.nodata, nodata)
        if apply_output_mask:
            out = np.where(target_view.mask, out, nodata)
        if dtype is None:
            dtype = np.result_type(np.min_scalar_type(nodata), out.dtype)
        out = Raster(out.astype(dtype), target_view)
        if isinstance(data, Raster) and data.metadata:
            out.metadata.update(data.metadata)
        return out

    @classmethod
    def _replace_nodata(cls, data, old_nodata, new_nodata):
        if np.isnan(old_nodata):
            if np.isnan(new_nodata):
                return data
            old_cells = np.isnan(data)
        elif old_nodata == new_nodata:
            return data
        else:
            old_cells = (data == old_nodata)
        if old_cells.any():
            data = data.astype(np.result_type(data, np.min_scalar_type(new_nodata)))
            data[old_cells] = new_nodata
        return data
