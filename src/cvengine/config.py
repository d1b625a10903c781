"""
Engine configuration.

Defaults can be overridden with a JSON file, searched for in the current
directory (`cvengine.json`) and in `~/.config/cvengine/config.json`.

"""

import json
import os
from dataclasses import dataclass, fields
from typing import Literal

from .exceptions import ConfigurationError

__all__ = [
    'EngineConfig',
    'DEFAULT',
    'config_file_path',
    'read_config',
]

DEFAULT = {
    "derivatives": True,
    "degenerate": "raise",
    "check_finite": True,
    "cores": 1,
    "order": "forward",
    "dtype": "float64",
}

PATHS = [
    os.path.join('.', 'cvengine.json'),
    os.path.join(os.path.expanduser("~"), ".config", "cvengine",
                 "config.json")
]

_DTYPES = ("float32", "float64")


@dataclass
class EngineConfig:
    """
    Settings shared by the pairwise reduction and grid engines.

    Parameters
    ----------
    derivatives : bool
        Compute derivatives of every output (default: True)
    degenerate : {'raise', 'zero'}
        What the normalizing step does for an entity with zero total
        weight: raise `ZeroWeightError`, or substitute a zero value with
        zero derivative and emit a `DegenerateWeightWarning`.
    check_finite : bool
        Abort with `NumericalError` when a kernel, switching function or
        grid function produces NaN/Inf.
    cores : int
        Number of worker processes used to run the tasks of a pass.
    order : {'forward', 'reversed'}
        Task execution order.  The result does not depend on it.
    dtype : {'float64', 'float32'}
        Floating point precision of all engine arithmetic.
    """

    derivatives: bool = True
    degenerate: Literal['raise', 'zero'] = 'raise'
    check_finite: bool = True
    cores: int = 1
    order: Literal['forward', 'reversed'] = 'forward'
    dtype: str = 'float64'

    def __post_init__(self):
        if self.degenerate not in ('raise', 'zero'):
            raise ValueError(
                f"degenerate must be 'raise' or 'zero', "
                f"got {self.degenerate!r}")
        if self.order not in ('forward', 'reversed'):
            raise ValueError(
                f"order must be 'forward' or 'reversed', got {self.order!r}")
        if int(self.cores) < 1:
            raise ValueError(f"cores must be >= 1, got {self.cores}")
        if self.dtype not in _DTYPES:
            raise ValueError(
                f"dtype must be one of {sorted(_DTYPES)}, got {self.dtype!r}")

    @property
    def torch_dtype(self):
        import torch
        return getattr(torch, self.dtype)

    @classmethod
    def from_dict(cls, settings: dict) -> 'EngineConfig':
        known = {f.name for f in fields(cls)}
        unknown = set(settings) - known
        if unknown:
            raise ConfigurationError(
                "Unknown configuration keys: {}".format(
                    ", ".join(sorted(unknown))))
        return cls(**settings)


def config_file_path():
    """
    Search for configuration file and return path if found.

    """
    for path in PATHS:
        if os.path.exists(path):
            return path
    return None


def read_config(config_file=None) -> EngineConfig:
    """
    Read the configuration file (if any) on top of the defaults.

    """
    config_dict = DEFAULT.copy()
    if config_file is None:
        config_file = config_file_path()
    if config_file is not None:
        with open(config_file) as fp:
            config_dict.update(json.load(fp))
    return EngineConfig.from_dict(config_dict)
