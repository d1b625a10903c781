"""
Per-neighbor kernels of the pairwise reduction engine.

A kernel maps the displacement vectors d_j = r_j - r_i of the neighbors
of a central atom to values f(d_j) and their gradients with respect to
the three components of d_j.  Values and gradients are derived by hand
and computed together in `evaluate`; any new kernel must come with a
finite difference test of its gradient.

Kernels are looked up by name in an explicit `KernelRegistry`:

    >>> registry = default_kernel_registry()
    >>> kernel = registry.get("tetrahedral")
    >>> f, df = kernel.evaluate(displacements)   # (n, 1), (n, 1, 3)

"""

import math
from typing import Dict, List, Tuple

import torch

from .exceptions import ConfigurationError

__all__ = [
    'Kernel',
    'TetrahedralKernel',
    'CoordinationKernel',
    'SimpleCubicKernel',
    'DirectionKernel',
    'KernelRegistry',
    'default_kernel_registry',
]


class Kernel:
    """
    Base class of all kernels.

    Subclasses set `name` and `n_components` and implement `evaluate`,
    which takes (n, 3) displacements and returns values of shape
    (n, n_components) and gradients of shape (n, n_components, 3).
    """

    name = None
    n_components = 1

    def evaluate(self, displacements: torch.Tensor
                 ) -> Tuple[torch.Tensor, torch.Tensor]:
        raise NotImplementedError

    def __repr__(self):
        return "{}()".format(self.__class__.__name__)


class TetrahedralKernel(Kernel):
    """
    Tetrahedral order of the first coordination shell.

    Implements:

        f(d) = (√3/8) Σ_k (s_k·d)^3 / r^3

    with the four tetrahedral directions s_1 = (1, 1, 1),
    s_2 = (1, -1, -1), s_3 = (-1, 1, -1), s_4 = (-1, -1, 1) and r = |d|.
    The prefactor √3/8 normalizes the kernel such that a neighbor along
    any of the four directions contributes exactly 1.

    Gradient:

        ∂f/∂d = (√3/8) Σ_k [3 (s_k·d)^2 s_k / r^3 - 3 (s_k·d)^3 d / r^5]
    """

    name = "tetrahedral"
    n_components = 1
    prefactor = math.sqrt(3.0) / 8.0

    def evaluate(self, displacements):
        d = displacements
        signs = torch.tensor([[1.0, 1.0, 1.0],
                              [1.0, -1.0, -1.0],
                              [-1.0, 1.0, -1.0],
                              [-1.0, -1.0, 1.0]],
                             dtype=d.dtype, device=d.device)
        r = torch.linalg.norm(d, dim=-1)
        r3 = r**3
        r5 = r**5

        sp = d @ signs.T                       # (n, 4)
        sp3 = (sp**3).sum(dim=-1)              # (n,)

        f = self.prefactor * sp3 / r3
        df = self.prefactor * (
            3.0 * (sp**2) @ signs / r3.unsqueeze(-1)
            - 3.0 * sp3.unsqueeze(-1) * d / r5.unsqueeze(-1)
        )
        return f.unsqueeze(-1), df.unsqueeze(1)


class CoordinationKernel(Kernel):
    """
    Constant kernel f(d) = 1.

    Without normalization the reduction is the (switched) coordination
    number, i.e. the total weight W.
    """

    name = "coordination"
    n_components = 1

    def evaluate(self, displacements):
        n = displacements.shape[0]
        f = torch.ones(n, 1, dtype=displacements.dtype,
                       device=displacements.device)
        return f, torch.zeros(n, 1, 3, dtype=displacements.dtype,
                              device=displacements.device)


class SimpleCubicKernel(Kernel):
    """
    Simple cubic order: f(d) = (x^4 + y^4 + z^4) / r^4.

    Gradient: ∂f/∂d_a = 4 d_a^3 / r^4 - 4 f d_a / r^2
    """

    name = "simplecubic"
    n_components = 1

    def evaluate(self, displacements):
        d = displacements
        r2 = (d**2).sum(dim=-1)
        r4 = r2**2
        f = (d**4).sum(dim=-1) / r4
        df = (4.0 * d**3 / r4.unsqueeze(-1)
              - 4.0 * (f / r2).unsqueeze(-1) * d)
        return f.unsqueeze(-1), df.unsqueeze(1)


class DirectionKernel(Kernel):
    """
    Unit bond vector f(d) = d / r (three components).

    Gradient: ∂f_a/∂d_b = (δ_ab - f_a f_b) / r
    """

    name = "direction"
    n_components = 3

    def evaluate(self, displacements):
        d = displacements
        r = torch.linalg.norm(d, dim=-1, keepdim=True)
        f = d / r
        eye = torch.eye(3, dtype=d.dtype, device=d.device)
        df = (eye - f.unsqueeze(-1) * f.unsqueeze(-2)) / r.unsqueeze(-1)
        return f, df


class KernelRegistry:
    """
    Explicit table of kernels by name.

    The engine resolves kernel names through the registry it was given,
    so new kernels plug in without changes to the engine.
    """

    def __init__(self):
        self._kernels: Dict[str, Kernel] = {}

    def register(self, kernel: Kernel) -> Kernel:
        if not kernel.name:
            raise ConfigurationError(
                "kernel {!r} has no name".format(kernel))
        if kernel.name in self._kernels:
            raise ConfigurationError(
                "kernel already registered: {}".format(kernel.name))
        self._kernels[kernel.name] = kernel
        return kernel

    def get(self, name: str) -> Kernel:
        try:
            return self._kernels[name]
        except KeyError:
            raise ConfigurationError(
                "unknown kernel: {} (available: {})".format(
                    name, ", ".join(self.names()))) from None

    def names(self) -> List[str]:
        return sorted(self._kernels)

    def __contains__(self, name):
        return name in self._kernels

    def __len__(self):
        return len(self._kernels)


def default_kernel_registry() -> KernelRegistry:
    """A new registry with all kernels shipped with cvengine."""
    registry = KernelRegistry()
    for kernel in (TetrahedralKernel(), CoordinationKernel(),
                   SimpleCubicKernel(), DirectionKernel()):
        registry.register(kernel)
    return registry
