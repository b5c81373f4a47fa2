import os
import importlib.util

import numpy as np
import pytest
from affine import Affine
from typer.testing import CliRunner
from pydrain.grid import Grid
from conftest import make_raster, nodata


def load_cli():
    path = os.path.join(os.path.dirname(os.path.realpath(__file__)), "..", "bin", "drain.py")
    spec = importlib.util.spec_from_file_location("drain", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture()
def cli():
    return load_cli()


@pytest.fixture()
def dem():
    i, j = np.indices((6, 7))
    dem = (3 * (i + j) + 10).astype(np.int64)
    dem[3, 3] = 0
    dem[5, 6] = nodata
    return make_raster(dem)


@pytest.fixture()
def dem_path(dem, tmp_path):
    grid = Grid.from_raster(dem)
    path = str(tmp_path / "dem.asc")
    grid.to_ascii(dem, path)
    return path


def test_run(cli, dem_path, tmp_path):
    result_dir = tmp_path / "results"
    runner = CliRunner()
    result = runner.invoke(cli.app, ["run", dem_path, str(result_dir)])
    assert result.exit_code == 0, result.output
    assert "Original DEM: min 0, max 40" in result.output
    assert "Elapsed time" in result.output
    for name in ("filled_dem.asc", "slope.csv", "flow_directions.csv",
                 "flow_accumulation.csv"):
        assert (result_dir / name).exists()
    grid = Grid.from_ascii(str(result_dir / "filled_dem.asc"))
    filled = grid.read_ascii(str(result_dir / "filled_dem.asc"))
    assert filled[3, 3] > 0
    assert filled[5, 6] == nodata
    rows = (result_dir / "flow_accumulation.csv").read_text().splitlines()
    assert len(rows) == 6
    assert all(len(row.split(",")) == 7 for row in rows)
    assert rows[5].split(",")[6] == str(nodata)


def test_fill_and_accumulate(cli, dem_path, tmp_path):
    runner = CliRunner()
    filled_path = str(tmp_path / "filled.asc")
    result = runner.invoke(cli.app, ["fill-depressions", dem_path, filled_path,
                                     "--threshold", "4"])
    assert result.exit_code == 0, result.output
    grid = Grid.from_ascii(filled_path)
    filled = grid.read_ascii(filled_path)
    fdir = grid.flowdir(filled)
    fdir_path = str(tmp_path / "fdir.asc")
    grid.to_ascii(fdir, fdir_path)
    acc_path = str(tmp_path / "acc.csv")
    result = runner.invoke(cli.app, ["accumulation", fdir_path, acc_path,
                                     "--algorithm", "iterative"])
    assert result.exit_code == 0, result.output
    acc = np.loadtxt(acc_path, delimiter=",", dtype=np.int64)
    expected = grid.accumulation(fdir, algorithm="iterative")
    assert (acc == np.asarray(expected)).all()
    result = runner.invoke(cli.app, ["accumulation", fdir_path, acc_path,
                                     "--routing", "hybrid"])
    assert result.exit_code != 0


def test_fill_depressions_geotiff(cli, dem, tmp_path):
    grid = Grid.from_raster(dem)
    grid.affine = Affine(5., 0., 100., 0., -5., 200.)
    tif_path = str(tmp_path / "dem.tif")
    grid.to_raster(dem, tif_path)
    filled_path = str(tmp_path / "out" / "filled.tif")
    runner = CliRunner()
    result = runner.invoke(cli.app, ["fill-depressions", tif_path, filled_path])
    assert result.exit_code == 0, result.output
    assert "Wrote filled DEM" in result.output
    filled_grid = Grid.from_raster(filled_path)
    filled = filled_grid.read_raster(filled_path)
    assert filled_grid.shape == (6, 7)
    assert filled_grid.affine == grid.affine
    assert filled.nodata == nodata
    assert filled[5, 6] == nodata
    # The pit is raised to the lowest cell of its rim
    assert filled[3, 3] == 22
    expected = grid.fill_depressions(dem)
    assert (np.asarray(filled) == np.asarray(expected)).all()
