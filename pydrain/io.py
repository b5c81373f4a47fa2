import ast
import os
import warnings
import numpy as np
import pyproj
import rasterio
from affine import Affine
from pydrain.sview import Raster, ViewFinder, View

_pyproj_init = 'epsg:4326'

_ASCII_HEADER_KEYS = ('ncols', 'nrows', 'xllcorner', 'xllcenter', 'yllcorner',
                      'yllcenter', 'cellsize', 'nodata_value')

def read_ascii_header(data, skiprows=6):
    """
    Reads the header of an ESRI ascii grid. Keys may appear in any order and
    in any case.

    Parameters
    ----------
    data : str
           File name or path.
    skiprows : int (optional)
               The number of rows taken up by the header (defaults to 6).

    Returns
    -------
    header : dict
             Lower-cased header keys mapped to their (numeric) values.
    """
    header = {}
    with open(data) as f:
        for _ in range(skiprows):
            line = f.readline().split()
            if len(line) < 2:
                continue
            key = line[0].lower()
            if key in _ASCII_HEADER_KEYS:
                header[key] = ast.literal_eval(line[1])
    try:
        assert ('ncols' in header) and ('nrows' in header)
    except AssertionError:
        raise ValueError('Ascii grid header of {} must define `ncols` and `nrows`.'
                         .format(data))
    return header

def read_ascii(data, skiprows=6, mask=None, crs=pyproj.Proj(_pyproj_init),
               dtype=np.int64, metadata={}, **kwargs):
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
          Coordinate reference system of ascii data.
    dtype : numpy datatype
            Datatype of the returned Raster (defaults to np.int64, since elevations
            are treated as integers).
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
    header = read_ascii_header(data, skiprows=skiprows)
    ncols, nrows = int(header['ncols']), int(header['nrows'])
    cellsize = header.get('cellsize', 1.)
    nodata = header.get('nodata_value', -9999)
    # Cell centers are shifted by half a cell with respect to the lower left corner
    if 'xllcenter' in header:
        xll = header['xllcenter'] - cellsize / 2
    else:
        xll = header.get('xllcorner', 0.)
    if 'yllcenter' in header:
        yll = header['yllcenter'] - cellsize / 2
    else:
        yll = header.get('yllcorner', 0.)
    shape = (nrows, ncols)
    data = np.loadtxt(data, skiprows=skiprows, ndmin=2, **kwargs)
    try:
        assert data.shape == shape
    except AssertionError:
        raise ValueError('Ascii grid body has shape {}, but header declares {}.'
                         .format(data.shape, shape))
    if np.issubdtype(dtype, np.integer):
        data = np.trunc(data)
    data = data.astype(dtype)
    nodata = data.dtype.type(nodata)
    affine = Affine(cellsize, 0., xll, 0., -cellsize, yll + nrows * cellsize)
    viewfinder = ViewFinder(affine=affine, shape=shape, mask=mask, nodata=nodata, crs=crs)
    out = Raster(data, viewfinder, metadata=metadata)
    return out

def read_raster(data, band=1, nodata=None, metadata={}, **kwargs):
    """
    Reads one band of a raster file (e.g. a GeoTIFF) and returns a Raster object.

    Parameters
    ----------
    data : str
           File name or path.
    band : int
           The band number to read if multiband.
    nodata : int or float
             Value indicating 'no data' in raster file. If None, the band's own
             `nodata` value is used, or 0 (with a warning) if it has none.
    metadata : dict
                Other attributes describing dataset, such as direction
                mapping for flow direction files. e.g.:
                metadata={'dirmap' : (64, 128, 1, 2, 4, 8, 16, 32),
                            'routing' : 'd8'}

    Additional keyword arguments are passed to rasterio.open()

    Returns
    -------
    out : Raster
          Raster object containing loaded data.
    """
    with rasterio.open(data, **kwargs) as f:
        try:
            assert 1 <= band <= f.count
        except AssertionError:
            raise ValueError('{} has {} band(s); cannot read band {}.'
                             .format(data, f.count, band))
        values = np.ma.filled(f.read(band))
        if nodata is None:
            nodata = f.nodatavals[band - 1]
            if nodata is None:
                warnings.warn('No `nodata` value detected. Defaulting to 0.')
                nodata = 0
            nodata = values.dtype.type(nodata)
        viewfinder = ViewFinder(affine=f.transform, shape=f.shape, nodata=nodata,
                                crs=pyproj.Proj(f.crs, preserve_units=True))
    out = Raster(values, viewfinder, metadata=metadata)
    return out

def to_ascii(data, file_name, target_view=None, delimiter=' ', fmt=None,
             apply_output_mask=True, inherit_nodata=True, nodata=None,
             dtype=None, **kwargs):
    """
    Writes a Raster object to a formatted ascii text file.

    Parameters
    ----------
    data: Raster
          Raster dataset to write.
    file_name : str
                Name of file or path to write to.
    target_view : ViewFinder
                  ViewFinder to use when writing data. Defaults to data.viewfinder.
    delimiter : string (optional)
                Delimiter to use in output file (defaults to ' ')
    fmt : str
            Formatting for numeric data. Passed to np.savetxt.
    apply_output_mask : bool
                        If True, mask the output Raster according to target_view.mask.
    inherit_nodata : bool
                     If True, output ascii inherits `nodata` value from `data`.
                     If False, output ascii uses `nodata` value from `target_view`.
    nodata : int or float
                Value indicating no data in output Raster (overrides target_view.nodata)
    dtype : numpy datatype
            Desired datatype of the output array.

    Additional keyword arguments (**kwargs) are passed to np.savetxt
    """
    if target_view is None:
        target_view = data.viewfinder
    data = View.view(data, target_view, apply_output_mask=apply_output_mask,
                     inherit_nodata=inherit_nodata, nodata=nodata, dtype=dtype)
    dy, dx = data.dy_dx
    try:
        assert dx == dy
    except AssertionError:
        raise ValueError('Raster cells must be square.')
    nodata = data.nodata
    shape = data.shape
    bbox = data.bbox
    cellsize = dx
    header_space = 9*' '
    header = (("ncols{0}{1}\nnrows{0}{2}\nxllcorner{0}{3}\n"
                "yllcorner{0}{4}\ncellsize{0}{5}\nNODATA_value{0}{6}")
                .format(header_space,
                        shape[1],
                        shape[0],
                        bbox[0],
                        bbox[1],
                        cellsize,
                        nodata))
    if fmt is None:
        if np.issubdtype(data.dtype, np.integer):
            fmt = '%d'
        else:
            fmt = '%.18e'
    _makedirs(file_name)
    np.savetxt(file_name, data, fmt=fmt, delimiter=delimiter,
               header=header, comments='', **kwargs)

def to_csv(data, file_name, nodata=None, fmt=None, delimiter=',', **kwargs):
    """
    Writes a Raster object to a headerless delimited text file, one raster row
    per line. Cells holding `no data` are written as the integer `nodata` value.

    Parameters
    ----------
    data: Raster
          Raster dataset to write.
    file_name : str
                Name of file or path to write to. Missing parent directories
                are created.
    nodata : int
             Integer written in place of `no data` cells. Defaults to data.nodata,
             which must then be an integer value.
    fmt : str
          Formatting for valid numeric cells. Defaults to '%d' for integer data
          and to the shortest round-tripping representation for real data.
    delimiter : str
                Delimiter between cells (defaults to ',').

    Additional keyword arguments (**kwargs) are passed to open()
    """
    try:
        assert isinstance(data, Raster)
    except AssertionError:
        raise TypeError('Data must be a Raster.')
    if nodata is None:
        nodata = data.nodata
    try:
        assert not np.isnan(nodata)
    except AssertionError:
        raise ValueError('An integer `nodata` value is required to write a raster '
                         'with NaN as its `no data` value.')
    nodata_str = str(int(nodata))
    if np.isnan(data.nodata):
        nodata_cells = np.isnan(data)
    else:
        nodata_cells = (np.asarray(data) == data.nodata)
    if fmt is None:
        if np.issubdtype(data.dtype, np.integer) or np.issubdtype(data.dtype, np.bool_):
            fmt = '%d'
    values = np.asarray(data)
    _makedirs(file_name)
    with open(file_name, 'w', **kwargs) as f:
        for row, row_nodata in zip(values, nodata_cells):
            if fmt is None:
                cells = [repr(float(value)) for value in row]
            else:
                cells = [fmt % value for value in row]
            line = delimiter.join(nodata_str if is_nodata else cell
                                  for cell, is_nodata in zip(cells, row_nodata))
            f.write(line + '\n')

def to_raster(data, file_name, target_view=None, profile=None, blockxsize=256,
              blockysize=256, apply_output_mask=True, inherit_nodata=True,
              nodata=None, dtype=None, **kwargs):
    """
    Writes a Raster object to a single band raster file (a tiled GeoTIFF unless
    another `profile` is given).

    Parameters
    ----------
    data: Raster
          Raster dataset to write.
    file_name : str
                Name of file or path to write to. Missing parent directories
                are created.
    target_view : ViewFinder
                  ViewFinder to use when writing data. Defaults to data.viewfinder.
    profile : dict
              Creation options of the driver. See rasterio documentation. The
              georeferencing, size, dtype and `nodata` keys are always taken
              from the data.
    blockxsize : int
                 Tile width of the default GeoTIFF profile.
    blockysize : int
                 Tile height of the default GeoTIFF profile.
    apply_output_mask : bool
                        If True, mask the output Raster according to target_view.mask.
    inherit_nodata : bool
                     If True, output Raster inherits `nodata` value from `data`.
                     If False, output Raster uses `nodata` value from `target_view`.
    nodata : int or float
             Value indicating no data in output Raster (overrides target_view.nodata)
    dtype : numpy datatype
            Desired datatype of the output array.

    Additional keyword arguments (**kwargs) are passed to rasterio.open()
    """
    if target_view is None:
        target_view = data.viewfinder
    data = View.view(data, target_view, apply_output_mask=apply_output_mask,
                     inherit_nodata=inherit_nodata, nodata=nodata, dtype=dtype)
    if profile:
        profile = dict(profile)
    else:
        profile = {'driver' : 'GTiff', 'tiled' : True, 'blockxsize' : blockxsize,
                   'blockysize' : blockysize}
    height, width = data.shape
    profile.update(count=1, height=height, width=width, dtype=data.dtype.name,
                   crs=data.crs.srs, transform=data.affine, nodata=data.nodata)
    profile.update(kwargs)
    _makedirs(file_name)
    with rasterio.open(file_name, 'w', **profile) as dst:
        dst.write(np.asarray(data), 1)

def _makedirs(file_name):
    parent = os.path.dirname(os.fspath(file_name))
    if parent:
        os.makedirs(parent, exist_ok=True)
