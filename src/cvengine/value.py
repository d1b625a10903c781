"""
Values and the arena of derivative slots they refer to.

A `Value` is produced by exactly one action and holds, besides its data,
the derivatives of every element with respect to a set of leaf slots of
a `DerivativeArena`.  Values never point at other Values: the link to
upstream quantities is the index list `derivative_indices`, so the
derivatives of a Value are a dense block

    derivatives[n, k] = d data.flatten()[n] / d slot[derivative_indices[k]]

"""

from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np
import torch

from .exceptions import ConfigurationError

__all__ = ['DerivativeArena', 'Value']


class DerivativeArena:
    """
    Contiguous index space of leaf derivative slots.

    Slots are handed out in named blocks.  The block called `positions`
    is used by the pairwise reduction engine, with three slots per atom:

        slot = offset + 3 * atom + component

    Example:
        >>> arena = DerivativeArena()
        >>> arena.add_block("positions", 3 * 64)
        0
        >>> arena.position_slot(2, 1)
        7
    """

    def __init__(self):
        self._blocks: Dict[str, Tuple[int, int]] = {}
        self.nslots = 0

    def add_block(self, name: str, size: int) -> int:
        if name in self._blocks:
            raise ConfigurationError(
                "Derivative block already defined: {}".format(name))
        if size < 0:
            raise ConfigurationError(
                "Invalid size for derivative block {}: {}".format(name, size))
        offset = self.nslots
        self._blocks[name] = (offset, int(size))
        self.nslots += int(size)
        return offset

    def block(self, name: str) -> Tuple[int, int]:
        try:
            return self._blocks[name]
        except KeyError:
            raise ConfigurationError(
                "Unknown derivative block: {}".format(name)) from None

    def __contains__(self, name):
        return name in self._blocks

    @property
    def natoms(self) -> int:
        return self.block("positions")[1] // 3

    def position_slot(self, atom: int, component: int) -> int:
        offset, size = self.block("positions")
        slot = offset + 3 * int(atom) + int(component)
        if not offset <= slot < offset + size:
            raise IndexError(
                "atom {} is outside the positions block".format(atom))
        return slot

    def position_slots(self, atom: int) -> torch.Tensor:
        """Slots of the x, y and z coordinate of `atom`."""
        offset, _ = self.block("positions")
        return offset + 3 * int(atom) + torch.arange(3, dtype=torch.long)

    @classmethod
    def for_positions(cls, natoms: int) -> 'DerivativeArena':
        arena = cls()
        arena.add_block("positions", 3 * natoms)
        return arena


class Value:
    """
    A named numeric quantity together with its derivatives.

    Parameters
    ----------
    name : str
        Label of the quantity (e.g. `tt` or `tt.mean`)
    shape : tuple of int
        `()` for a scalar, otherwise the vector/grid shape
    has_derivatives : bool
        Whether the producing action stores derivatives
    periodic : bool
        Periodicity flag used by wrap-aware consumers
    domain : tuple(float, float), optional
        `(min, max)` of a periodic value
    producer : str, optional
        Label of the action that computes this value
    dtype : torch.dtype
        Floating point type of data and derivatives
    """

    def __init__(
        self,
        name: str,
        shape: Sequence[int] = (),
        has_derivatives: bool = False,
        periodic: bool = False,
        domain: Optional[Tuple[float, float]] = None,
        producer: Optional[str] = None,
        dtype: torch.dtype = torch.float64,
    ):
        self.name = name
        self.producer = producer
        self.has_derivatives = has_derivatives
        self.dtype = dtype
        self.periodic = False
        self.domain = None
        if periodic:
            if domain is None:
                raise ConfigurationError(
                    "periodic value {} needs a domain".format(name))
            self.set_periodic(*domain)
        self.resize(shape)

    def __repr__(self):
        return "Value({!r}, shape={}, derivatives={})".format(
            self.name, self.shape, self.has_derivatives)

    def set_periodic(self, vmin: float, vmax: float):
        if not vmin < vmax:
            raise ConfigurationError(
                "invalid periodic domain for {}: ({}, {})".format(
                    self.name, vmin, vmax))
        self.periodic = True
        self.domain = (float(vmin), float(vmax))

    def set_not_periodic(self):
        self.periodic = False
        self.domain = None

    def resize(self, shape: Sequence[int]):
        """Change the shape; data and derivatives are reset to zero."""
        self.shape = tuple(int(s) for s in shape)
        self.data = torch.zeros(self.shape, dtype=self.dtype)
        self.derivative_indices = torch.zeros(0, dtype=torch.long)
        self.derivatives = torch.zeros(self.numel, 0, dtype=self.dtype)

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def numel(self) -> int:
        return int(np.prod(self.shape, dtype=int))

    @property
    def is_scalar(self) -> bool:
        return self.shape == ()

    @property
    def nderivatives(self) -> int:
        return len(self.derivative_indices)

    def set(self, data, derivatives=None, derivative_indices=None):
        """
        Store the result of a pass.

        Args:
            data: tensor (or array) of this value's shape
            derivatives: (numel, len(derivative_indices)) tensor
            derivative_indices: arena slots the derivative columns refer to
        """
        data = torch.as_tensor(data, dtype=self.dtype)
        if tuple(data.shape) != self.shape:
            raise ConfigurationError(
                "shape mismatch for {}: expected {}, got {}".format(
                    self.name, self.shape, tuple(data.shape)))
        self.data = data.clone()
        if derivatives is None:
            return
        if derivative_indices is None:
            raise ConfigurationError(
                "derivatives of {} given without their slots".format(
                    self.name))
        indices = torch.as_tensor(derivative_indices, dtype=torch.long)
        derivatives = torch.as_tensor(derivatives, dtype=self.dtype)
        if tuple(derivatives.shape) != (self.numel, len(indices)):
            raise ConfigurationError(
                "derivative block of {} has shape {}, expected {}".format(
                    self.name, tuple(derivatives.shape),
                    (self.numel, len(indices))))
        self.derivative_indices = indices.clone()
        self.derivatives = derivatives.clone()

    def _flat_index(self, index: Union[int, Sequence[int]]) -> int:
        if self.is_scalar:
            return 0
        if isinstance(index, (int, np.integer)):
            if not 0 <= index < self.numel:
                raise IndexError(
                    "index {} out of range for {}".format(index, self.name))
            return int(index)
        return int(np.ravel_multi_index(tuple(index), self.shape))

    def get(self, index: Union[int, Sequence[int]] = 0) -> float:
        return float(self.data.reshape(-1)[self._flat_index(index)])

    def get_derivatives(self, index: Union[int, Sequence[int]] = 0
                        ) -> torch.Tensor:
        """Derivative row of one element (columns: `derivative_indices`)."""
        return self.derivatives[self._flat_index(index)]

    def derivative_map(self, index: Union[int, Sequence[int]] = 0
                       ) -> Dict[int, float]:
        """Non-zero derivatives of one element keyed by arena slot."""
        row = self.get_derivatives(index)
        return {int(self.derivative_indices[k]): float(row[k])
                for k in torch.nonzero(row).flatten().tolist()}

    def clear(self):
        self.data = torch.zeros(self.shape, dtype=self.dtype)
        self.derivatives = torch.zeros_like(self.derivatives)
