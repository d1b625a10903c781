"""
cvengine: collective variables and grid functions with analytic
derivatives.

The numerical engines need the PyTorch stack (torch, torch-scatter).
Importing `cvengine` always succeeds; accessing an engine symbol on a
system without the stack raises an ImportError with installation
guidance.
"""

import os
from importlib import import_module
from typing import Any, Dict, Tuple

from ._optional import require_torch_stack
from .exceptions import (CVEngineError, ConfigurationError, NumericalError,
                         ZeroWeightError, DegenerateWeightWarning)
from .config import EngineConfig, read_config

with open(os.path.join(os.path.dirname(__file__), 'VERSION')) as _fp:
    __version__ = _fp.read().strip()

__all__ = [
    "CVEngineError",
    "ConfigurationError",
    "NumericalError",
    "ZeroWeightError",
    "DegenerateWeightWarning",
    "EngineConfig",
    "read_config",
    "Value",
    "DerivativeArena",
    "MultiValue",
    "RationalSwitch",
    "CosineCutoff",
    "StepSwitch",
    "KernelRegistry",
    "default_kernel_registry",
    "SymmetryFunction",
    "AllPairsNeighbors",
    "ExplicitNeighbors",
    "TaskList",
    "run_tasks",
    "FunctionRegistry",
    "default_function_registry",
    "GridValue",
    "EvaluateFunctionOnGrid",
    "ActionRegistry",
    "ActionSet",
    "default_action_registry",
]

# Map exported names to (relative_module, attr_name)
_NAME_TO_SPEC: Dict[str, Tuple[str, str]] = {
    "Value": (".value", "Value"),
    "DerivativeArena": (".value", "DerivativeArena"),
    "MultiValue": (".multivalue", "MultiValue"),
    # switching functions
    "RationalSwitch": (".switching", "RationalSwitch"),
    "CosineCutoff": (".switching", "CosineCutoff"),
    "StepSwitch": (".switching", "StepSwitch"),
    # pairwise reduction
    "KernelRegistry": (".kernels", "KernelRegistry"),
    "default_kernel_registry": (".kernels", "default_kernel_registry"),
    "SymmetryFunction": (".symmetry", "SymmetryFunction"),
    "AllPairsNeighbors": (".neighbors", "AllPairsNeighbors"),
    "ExplicitNeighbors": (".neighbors", "ExplicitNeighbors"),
    # scheduling
    "TaskList": (".tasks", "TaskList"),
    "run_tasks": (".tasks", "run_tasks"),
    # grids
    "FunctionRegistry": (".functions", "FunctionRegistry"),
    "default_function_registry": (".functions",
                                  "default_function_registry"),
    "GridValue": (".grid", "GridValue"),
    "EvaluateFunctionOnGrid": (".grid", "EvaluateFunctionOnGrid"),
    # registration
    "ActionRegistry": (".registry", "ActionRegistry"),
    "ActionSet": (".registry", "ActionSet"),
    "default_action_registry": (".registry", "default_action_registry"),
}


def __getattr__(name: str) -> Any:  # PEP 562 lazy attribute access
    if name in _NAME_TO_SPEC:
        require_torch_stack(name)
        rel_mod, attr = _NAME_TO_SPEC[name]
        mod = import_module(rel_mod, __name__)
        return getattr(mod, attr)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> Any:
    return sorted(list(globals().keys()) + __all__)
