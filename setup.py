#!/usr/bin/env python

from setuptools import setup

setup(
    name="pydrain",
    version="0.1.0",
    description="Depression filling, hybrid D8/MFD flow routing and flow accumulation on elevation grids.",
    packages=["pydrain"],
    scripts=["bin/drain.py"],
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "Natural Language :: English",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Scientific/Engineering :: GIS",
        "Topic :: Scientific/Engineering :: Hydrology",
    ],
    include_package_data=True,
    install_requires=[
        "affine<3",
        "numba",
        "numpy",
        "pyproj",
        "rasterio>=1",
    ],
    extras_require=dict(
        cli=["typer", "typing_extensions"],
        dev=["pytest", "pytest-cov", "typer", "typing_extensions"],
    ),
)
