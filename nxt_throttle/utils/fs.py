"""File helpers for the config loader and the log file handler.

Usage:
    from nxt_throttle.utils.fs import load_yaml
    data = load_yaml("nxt_throttle/configs/bridge.yaml")
"""

from pathlib import Path
from typing import Any, Dict, Union

import yaml

PathLike = Union[str, Path]


def ensure_dir(p: PathLike) -> Path:
    """Create *p* and its parents if missing; return it as a Path."""
    path = Path(p)
    path.mkdir(parents=True, exist_ok=True)
    return path


def load_yaml(path: PathLike) -> Dict[str, Any]:
    """Parse a YAML mapping with ``yaml.safe_load``.

    Parameters
    ----------
    path : str | Path
        File to read.

    Returns
    -------
    dict
        Top-level mapping; empty for an empty file.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    yaml.YAMLError
        If the file is not valid YAML or its top level is not a mapping.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"YAML file not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise yaml.YAMLError(
            f"{path}: expected a mapping at top level, "
            f"got {type(data).__name__}"
        )
    return data
