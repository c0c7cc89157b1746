"""Tree inventory data import: road geometries and tree-to-road distances."""

__version__ = "0.1.0"
