"""Reading parameters from a YAML configuration file.

OpenCV-style files are accepted: a leading ``%YAML:1.0`` line is ignored and
``!!opencv-matrix`` nodes are read as numpy arrays.
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import yaml

logger = logging.getLogger(__name__)


class _ConfigLoader(yaml.SafeLoader):
    pass


def _construct_matrix(loader, node):
    m = loader.construct_mapping(node, deep=True)
    try:
        rows, cols = int(m["rows"]), int(m["cols"])
        return np.array(m["data"], dtype=float).reshape(rows, cols)
    except (KeyError, TypeError, ValueError) as exc:
        raise yaml.constructor.ConstructorError(
            None, None, f"invalid opencv-matrix: {exc}", node.start_mark
        ) from exc


_ConfigLoader.add_constructor("tag:yaml.org,2002:opencv-matrix", _construct_matrix)


class Config:
    """Parameters read from one configuration file."""

    def __init__(self, filename):
        self.path = Path(filename)
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.error("parameter file %s does not exist.", self.path)
            raise
        lines = text.splitlines()
        if lines and lines[0].startswith("%YAML:"):
            lines = lines[1:]
        data = yaml.load("\n".join(lines), Loader=_ConfigLoader)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"parameter file {self.path} does not hold a mapping")
        self._data = data

    def get(self, key):
        """Value of a parameter; raises KeyError when it is missing."""
        try:
            return self._data[key]
        except KeyError:
            raise KeyError(f"parameter {key!r} not found in {self.path}") from None

    def __repr__(self) -> str:
        return f"Config({str(self.path)!r})"