"""
Per-task derivative accumulator.

One `MultiValue` is owned by exactly one in-flight task.  It collects
the task's output values and their derivatives and, for normalized
pairwise reductions, a separate weight channel:

    values[s]                   running numerator N_s
    derivatives[s, u]           dN_s/du at fixed weights
    weights[s]                  running total weight W_s
    weight_derivatives[s, j]    dN_s/dw_j for the weight of neighbor j

The derivative columns are local to the task: `slots[k]` is the arena
slot of column k, so a task touching m slots holds m columns, however
large the arena.

Every `add_*` call accumulates, nothing is overwritten.  Results of
different tasks are never combined in here; the caller sums them.
"""

from typing import Dict, Optional, Sequence, Union

import torch

from .exceptions import ConfigurationError

__all__ = ['MultiValue']


class MultiValue:
    """
    Scratch space for one task.

    Parameters
    ----------
    nvalues : int
        Number of output slots (components) of the task
    nderivatives : int
        Number of local derivative columns
    nweights : int
        Number of weight arguments (neighbors) of the task
    dtype : torch.dtype
        Floating point type
    slots : sequence of int, optional
        Sorted upstream slot of each derivative column (default: the
        column index itself)
    """

    def __init__(
        self,
        nvalues: int,
        nderivatives: int,
        nweights: int = 0,
        dtype: torch.dtype = torch.float64,
        slots: Optional[Sequence[int]] = None,
    ):
        self.nvalues = nvalues
        self.nderivatives = nderivatives
        self.nweights = nweights
        self.dtype = dtype
        self.values = torch.zeros(nvalues, dtype=dtype)
        self.derivatives = torch.zeros(nvalues, nderivatives, dtype=dtype)
        self.weights = torch.zeros(nvalues, dtype=dtype)
        self.weight_derivatives = torch.zeros(nvalues, nweights, dtype=dtype)
        self._active = torch.zeros(nderivatives, dtype=torch.bool)
        self._active_weights = torch.zeros(nweights, dtype=torch.bool)
        if slots is None:
            self.slots = torch.arange(nderivatives, dtype=torch.long)
        else:
            self.slots = torch.as_tensor(slots, dtype=torch.long)
        if len(self.slots) != nderivatives:
            raise ConfigurationError(
                "{} slots given for {} derivative columns".format(
                    len(self.slots), nderivatives))

    def clear(self):
        """Zero all channels so the instance can serve the next task."""
        self.values.zero_()
        self.derivatives.zero_()
        self.weights.zero_()
        self.weight_derivatives.zero_()
        self._active.zero_()
        self._active_weights.zero_()

    def add_value(self, slot: int, amount):
        self.values[slot] += amount

    def add_derivative(self, slot: int, index: int, amount):
        self.derivatives[slot, index] += amount
        self._active[index] = True

    def add_derivatives(self, slot: int,
                        indices: Union[torch.Tensor, Sequence[int]],
                        amounts: torch.Tensor):
        """Vectorized `add_derivative` for a block of indices."""
        indices = torch.as_tensor(indices, dtype=torch.long)
        self.derivatives[slot].index_add_(
            0, indices, torch.as_tensor(amounts, dtype=self.dtype))
        self._active[indices] = True

    def add_weight(self, slot: int, amount):
        self.weights[slot] += amount

    def add_weight_derivative(self, slot: int, index: int, amount):
        """
        Record dN/dw_index.

        The normalized derivative with respect to the weight,
        (dN/dw - S) / W, is only formed by the normalizing step once all
        neighbors have been accumulated.
        """
        self.weight_derivatives[slot, index] += amount
        self._active_weights[index] = True

    def add_weight_derivatives(self, slot: int,
                               indices: Union[torch.Tensor, Sequence[int]],
                               amounts: torch.Tensor):
        indices = torch.as_tensor(indices, dtype=torch.long)
        self.weight_derivatives[slot].index_add_(
            0, indices, torch.as_tensor(amounts, dtype=self.dtype))
        self._active_weights[indices] = True

    def get_value(self, slot: int = 0) -> float:
        return float(self.values[slot])

    def get_weight(self, slot: int = 0) -> float:
        return float(self.weights[slot])

    def get_derivative(self, slot: int, index: int) -> float:
        return float(self.derivatives[slot, index])

    def get_weight_derivative(self, slot: int, index: int) -> float:
        return float(self.weight_derivatives[slot, index])

    def has_derivative(self, index: int) -> bool:
        """True if any slot received a derivative with respect to `index`."""
        return bool(self._active[index])

    def has_derivatives(self, slot: int, index: int) -> bool:
        return bool(self._active[index]) and bool(
            self.derivatives[slot, index] != 0)

    def active_indices(self) -> torch.Tensor:
        return torch.nonzero(self._active).flatten()

    def active_weight_indices(self) -> torch.Tensor:
        return torch.nonzero(self._active_weights).flatten()

    def derivative_map(self, slot: int = 0) -> Dict[int, float]:
        """Active derivatives of `slot` keyed by upstream slot."""
        return {int(self.slots[i]): float(self.derivatives[slot, i])
                for i in self.active_indices()}
