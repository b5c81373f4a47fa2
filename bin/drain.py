#!/usr/bin/env python
import os
import time

import typer
import numpy as np
from typing import Tuple
from typing_extensions import Annotated


app = typer.Typer()


def lazy_import():
    global sGrid
    from pydrain.sgrid import sGrid


def read_grid(path):
    # ESRI ascii grids hold integer elevations; anything else goes through rasterio
    if path.lower().endswith(".asc"):
        grid = sGrid.from_ascii(path)
        data = grid.read_ascii(path)
    else:
        grid = sGrid.from_raster(path)
        data = grid.read_raster(path)
    return grid, data


def write_grid(grid, data, path):
    if path.lower().endswith(".asc"):
        grid.to_ascii(data, path)
    elif path.lower().endswith(".csv"):
        grid.to_csv(data, path)
    else:
        grid.to_raster(data, path, blockxsize=16, blockysize=16)


@app.command()
def fill_depressions(
    dem_path: str = typer.Argument(..., help="Path to the input DEM"),
    output_path: str = typer.Argument(..., help="Path to the filled DEM"),
    threshold: int = typer.Option(
        1000, "-t", "--threshold", help="Maximum number of cells of a fill partition."
    ),
    nodata_outlets: bool = typer.Option(
        False, help="Let depressions drain into cells without data."
    ),
):
    """
    Fills depressions in the DEM and saves the result.
    """

    start = time.time()
    lazy_import()

    grid, dem = read_grid(dem_path)

    typer.echo("Filling depressions ...")
    filled_dem = grid.fill_depressions(dem, threshold=threshold,
                                       nodata_outlets=nodata_outlets)

    write_grid(grid, filled_dem, output_path)
    typer.echo(f"Wrote filled DEM as {output_path}")

    end = time.time() - start
    typer.echo(f"Elapsed time: {end:.3f} seconds")


@app.command()
def flow_directions(
    dem_path: str = typer.Argument(..., help="The input filled DEM"),
    output_path: str = typer.Argument(..., help="The output flow directions map"),
    dirmap: Annotated[
        Tuple[int, int, int, int, int, int, int, int],
        typer.Argument(help="8 direction map from N to NW clockwise"),
    ] = (64, 128, 1, 2, 4, 8, 16, 32),
    routing: str = typer.Option("d8", "-r", "--routing", help="Either 'd8' or 'hybrid'."),
    steep_threshold: float = typer.Option(
        20., help="Slope (degrees) above which hybrid routing uses D8."
    ),
):
    """
    Compute flow directions from a filled DEM using the D8 or hybrid D8/MFD method.
    """

    start = time.time()
    lazy_import()

    grid, dem = read_grid(dem_path)

    typer.echo("Computing flow directions ...")
    if routing.lower() == "hybrid":
        slope = grid.slope(dem)
        steep = grid.classify_steep(slope, threshold=steep_threshold)
        fdir = grid.flowdir(dem, routing=routing, slope=slope, steep=steep, dirmap=dirmap)
    else:
        fdir = grid.flowdir(dem, routing=routing, dirmap=dirmap)

    write_grid(grid, fdir, output_path)
    typer.echo(f"Wrote flow directions map as {output_path}")

    end = time.time() - start
    typer.echo(f"Elapsed time: {end:.3f} seconds")


@app.command()
def accumulation(
    fdir_path: str = typer.Argument(..., help="The flow directions map"),
    output_path: str = typer.Argument(
        ..., help="Path where the resulting accumulation map will be saved."
    ),
    routing: str = typer.Option("d8", "-r", "--routing", help="Either 'd8' or 'hybrid'."),
    algorithm: str = typer.Option(
        "sweep", "-a", "--algorithm", help="Either 'sweep' or 'iterative'."
    ),
    dem_path: str = typer.Option(
        None, "-d", "--dem-path", help="Filled DEM (required for hybrid routing)."
    ),
    steep_threshold: float = typer.Option(
        20., help="Slope (degrees) above which hybrid routing uses D8."
    ),
):
    """
    Calculates the flow accumulation from a flow direction map and writes the
    result to an output file.
    """
    start = time.time()
    lazy_import()

    grid, fdir = read_grid(fdir_path)

    if routing.lower() == "hybrid":
        if dem_path is None:
            raise typer.BadParameter("Hybrid routing requires --dem-path.")
        _, dem = read_grid(dem_path)
        slope = grid.slope(dem)
        steep = grid.classify_steep(slope, threshold=steep_threshold)
        acc = grid.accumulation(fdir, routing=routing, dem=dem, slope=slope,
                                steep=steep, algorithm=algorithm)
    else:
        acc = grid.accumulation(fdir, routing=routing, algorithm=algorithm)

    write_grid(grid, acc, output_path)

    typer.echo(f"Accumulation map written as: {output_path}")
    end = time.time() - start
    typer.echo(f"Elapsed time: {end:.3f} seconds")


@app.command()
def run(
    dem_path: str = typer.Argument(..., help="Path to the input DEM"),
    result_dir: str = typer.Argument(..., help="Directory receiving the results"),
    routing: str = typer.Option(
        "hybrid", "-r", "--routing", help="Either 'd8' or 'hybrid'."
    ),
    threshold: int = typer.Option(
        1000, "-t", "--threshold", help="Maximum number of cells of a fill partition."
    ),
    steep_threshold: float = typer.Option(
        20., help="Slope (degrees) above which hybrid routing uses D8."
    ),
    algorithm: str = typer.Option(
        "sweep", "-a", "--algorithm", help="Either 'sweep' or 'iterative'."
    ),
):
    """
    Runs the whole pipeline: fills depressions, computes slope, steepness, flow
    directions and flow accumulation, and writes them to the result directory.
    """
    start = time.time()
    lazy_import()

    grid, dem = read_grid(dem_path)
    dem_min, dem_max = grid.elevation_range(dem)
    typer.echo(f"Original DEM: min {dem_min}, max {dem_max}")

    typer.echo("Filling depressions ...")
    filled_dem = grid.fill_depressions(dem, threshold=threshold)
    filled_min, filled_max = grid.elevation_range(filled_dem)
    typer.echo(f"Filled DEM: min {filled_min}, max {filled_max}")

    typer.echo("Computing slope ...")
    slope = grid.slope(filled_dem)
    steep = grid.classify_steep(slope, threshold=steep_threshold)
    typer.echo(f"Steep cells: {int(np.count_nonzero(steep))}")

    typer.echo("Computing flow directions ...")
    fdir = grid.flowdir(filled_dem, routing=routing, slope=slope, steep=steep)

    typer.echo("Computing flow accumulation ...")
    acc = grid.accumulation(fdir, routing=routing, dem=filled_dem, slope=slope,
                            steep=steep, algorithm=algorithm)

    os.makedirs(result_dir, exist_ok=True)
    grid.to_ascii(filled_dem, os.path.join(result_dir, "filled_dem.asc"))
    grid.to_csv(slope, os.path.join(result_dir, "slope.csv"))
    grid.to_csv(fdir, os.path.join(result_dir, "flow_directions.csv"))
    grid.to_csv(acc, os.path.join(result_dir, "flow_accumulation.csv"))
    typer.echo(f"Results written to {result_dir}")

    end = time.time() - start
    typer.echo(f"Elapsed time: {end:.3f} seconds")


if __name__ == "__main__":
    app()
