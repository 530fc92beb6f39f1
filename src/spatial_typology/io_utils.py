"""
I/O utilities with atomic writes and safe reads.

All outputs are written to a temp file in the destination directory and then
renamed over the target, so a failed run never leaves a half-written table.
Geometry is passed through untouched; nothing here inspects it.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional, Union

import geopandas as gpd
import pandas as pd
import yaml

GEO_SUFFIXES = {".geojson", ".gpkg", ".shp", ".json"}


# =============================================================================
# Atomic Write Utilities
# =============================================================================

@contextmanager
def atomic_path(target_path: Union[str, Path], suffix: Optional[str] = None):
    """
    Yield a temp path next to ``target_path``; replace the target on success.
    
    If the body raises, the temp file is removed and the target is unchanged.
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)
    
    if suffix is None:
        suffix = target_path.suffix or ".tmp"
    
    fd, temp_path = tempfile.mkstemp(
        suffix=suffix,
        prefix=f".{target_path.stem}_",
        dir=target_path.parent,
    )
    os.close(fd)
    temp_path = Path(temp_path)
    
    try:
        yield temp_path
        temp_path.replace(target_path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


@contextmanager
def atomic_write(
    target_path: Union[str, Path],
    mode: str = "w",
    suffix: Optional[str] = None,
):
    """
    Context manager for atomic file writes.
    
    Example:
        with atomic_write("output.json") as f:
            f.write("{}")
    """
    with atomic_path(target_path, suffix=suffix) as temp_path:
        encoding = None if "b" in mode else "utf-8"
        with open(temp_path, mode, encoding=encoding) as f:
            yield f


def atomic_write_df(
    df: pd.DataFrame,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """
    Atomically write a DataFrame to CSV or Parquet (format from extension).
    
    Args:
        df: DataFrame to write
        target_path: Destination path (.csv or .parquet)
        **kwargs: Additional arguments passed to to_csv/to_parquet
    """
    suffix = Path(target_path).suffix.lower()
    if suffix not in (".csv", ".parquet"):
        raise ValueError(f"Unsupported format: {suffix}")
    
    with atomic_path(target_path) as temp_path:
        if suffix == ".parquet":
            df.to_parquet(temp_path, **kwargs)
        else:
            df.to_csv(temp_path, **kwargs)


def atomic_write_gdf(
    gdf: gpd.GeoDataFrame,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """
    Atomically write a GeoDataFrame to GeoParquet, GeoJSON or GeoPackage.
    
    Args:
        gdf: GeoDataFrame to write
        target_path: Destination path (.parquet, .geojson, .gpkg)
        **kwargs: Additional arguments passed to writer
    """
    suffix = Path(target_path).suffix.lower()
    drivers = {".geojson": "GeoJSON", ".gpkg": "GPKG"}
    if suffix != ".parquet" and suffix not in drivers:
        raise ValueError(f"Unsupported geo format: {suffix}")
    
    with atomic_path(target_path) as temp_path:
        if suffix == ".parquet":
            gdf.to_parquet(temp_path, **kwargs)
        else:
            # the GeoJSON driver refuses to overwrite the empty mkstemp file
            temp_path.unlink()
            gdf.to_file(temp_path, driver=drivers[suffix], **kwargs)


def atomic_write_json(
    data: Any,
    target_path: Union[str, Path],
    **kwargs,
) -> None:
    """
    Atomically write JSON data.
    
    Args:
        data: JSON-serializable data
        target_path: Destination path
        **kwargs: Additional arguments passed to json.dump
    """
    kwargs.setdefault("indent", 2)
    kwargs.setdefault("default", str)
    
    with atomic_write(target_path, mode="w", suffix=".json") as f:
        json.dump(data, f, **kwargs)


# =============================================================================
# Read Utilities
# =============================================================================

def read_yaml(path: Union[str, Path]) -> dict:
    """Read a YAML file. An empty file reads as an empty dict."""
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def read_json(path: Union[str, Path]) -> Any:
    """Read a JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def read_gdf(
    path: Union[str, Path],
    **kwargs,
) -> gpd.GeoDataFrame:
    """Read a GeoDataFrame from GeoParquet, GeoJSON, GeoPackage or Shapefile."""
    path = Path(path)
    if path.suffix.lower() == ".parquet":
        return gpd.read_parquet(path, **kwargs)
    return gpd.read_file(path, **kwargs)


def read_df(
    path: Union[str, Path],
    **kwargs,
) -> pd.DataFrame:
    """
    Read a DataFrame from CSV or Parquet.
    
    Args:
        path: Path to data file
        **kwargs: Additional arguments passed to reader
    
    Returns:
        DataFrame
    """
    path = Path(path)
    suffix = path.suffix.lower()
    
    if suffix == ".parquet":
        return pd.read_parquet(path, **kwargs)
    elif suffix == ".csv":
        return pd.read_csv(path, **kwargs)
    else:
        raise ValueError(f"Unsupported format: {suffix}")


def read_units(path: Union[str, Path]) -> pd.DataFrame:
    """
    Read the unit feature table, keeping geometry when the file carries it.
    
    Geo formats always come back as a GeoDataFrame. A Parquet file is tried as
    GeoParquet first and falls back to a plain table when it has no geometry
    metadata.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Unit feature table not found: {path}")
    
    suffix = path.suffix.lower()
    if suffix in GEO_SUFFIXES:
        return read_gdf(path)
    if suffix == ".parquet":
        try:
            return gpd.read_parquet(path)
        except ValueError:
            # plain Parquet without geo metadata
            return pd.read_parquet(path)
    return read_df(path)
