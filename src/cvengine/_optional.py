"""
Helpers for the runtime dependencies of the numerical core.

This module centralizes checks and error messages for the PyTorch stack
(torch, torch-scatter) so that `import cvengine` succeeds even on a
system where the wheels are missing or broken, and the failure is
reported with installation guidance when an engine is first accessed.
"""

from __future__ import annotations

from typing import Tuple, Optional


def _safe_import(module: str) -> Tuple[bool, Optional[Exception]]:
    try:
        __import__(module)
        return True, None
    except Exception as e:  # pragma: no cover
        return False, e


def torch_stack_status() -> Tuple[bool, str]:
    """
    Returns (available, reason_if_unavailable) for the engine stack:
      - torch
      - torch-scatter
    """
    ok, err = _safe_import("torch")
    if not ok:
        return (False, f"PyTorch not installed ({err})"
                if err else "PyTorch not installed")

    ok, err = _safe_import("torch_scatter")
    if not ok:
        return (
            False,
            "Missing dependency: torch-scatter. Install with: "
            "pip install torch-scatter -f "
            "https://data.pyg.org/whl/torch-${TORCH}+${CUDA}.html",
        )
    return True, ""


def require_torch_stack(feature: str = "this feature") -> None:
    ok, reason = torch_stack_status()
    if not ok:
        raise ImportError(f"{feature} requires the PyTorch stack. {reason}")
