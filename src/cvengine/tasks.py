"""
Task descriptors and the (thin) task scheduler.

A pass of an engine is a set of independent tasks: one per active
central atom for pairwise reductions, one per node for grid functions.
Tasks carry everything they read, own their accumulator, and may run in
any order or in parallel.  Results are keyed by task index and combined
afterwards with a plain sum, so the order of execution never changes the
result.
"""

import functools
import multiprocessing as mp
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import torch
from torch_scatter import scatter_add

from .exceptions import ConfigurationError

__all__ = [
    'PairwiseTask',
    'GridTask',
    'TaskList',
    'pairwise_tasks',
    'grid_tasks',
    'order_tasks',
    'run_tasks',
    'combine',
]


@dataclass(frozen=True)
class PairwiseTask:
    """
    Central atom `index` against its neighbors.

    Attributes
    ----------
    index : int
        Index of the central atom
    neighbors : torch.Tensor
        (nnb,) neighbor atom indices
    displacements : torch.Tensor
        (nnb, 3) displacement vectors r_j - r_index
    """

    index: int
    neighbors: torch.Tensor
    displacements: torch.Tensor

    @property
    def n_neighbors(self) -> int:
        return int(self.neighbors.shape[0])


@dataclass(frozen=True)
class GridTask:
    """Grid node `node` (multi-index) with flat index `index`."""

    index: int
    node: Tuple[int, ...]


class TaskList:
    """
    The domain of an engine and the currently active part of it.

    The active set may change between passes (atoms entering or leaving
    the population) but is fixed during a pass.  Active indices are kept
    sorted, so the position of a task in the output is stable.
    """

    def __init__(self, ntasks: int):
        self.ntasks = int(ntasks)
        self._active = np.arange(self.ntasks)

    def __len__(self):
        return len(self._active)

    @property
    def active(self) -> np.ndarray:
        return self._active

    def activate(self, indices: Optional[Iterable[int]] = None):
        """Make `indices` (all tasks if None) the active set."""
        if indices is None:
            self._active = np.arange(self.ntasks)
            return
        indices = np.unique(np.asarray(list(indices), dtype=int))
        if len(indices) > 0 and (indices[0] < 0
                                 or indices[-1] >= self.ntasks):
            raise ConfigurationError(
                "active task out of range [0, {})".format(self.ntasks))
        self._active = indices

    def deactivate_all(self):
        self._active = np.zeros(0, dtype=int)

    def ordered(self, order: str = "forward") -> np.ndarray:
        if order == "forward":
            return self._active.copy()
        elif order == "reversed":
            return self._active[::-1].copy()
        raise ConfigurationError("unknown task order: {}".format(order))


def pairwise_tasks(positions: torch.Tensor, provider,
                   active: Sequence[int]) -> List[PairwiseTask]:
    """
    Build the tasks of a pairwise reduction pass.

    The neighbor lists are read once, before any task runs.
    """
    tasks = []
    for i in active:
        idx, vec = provider.neighbors(positions, int(i))
        tasks.append(PairwiseTask(index=int(i),
                                  neighbors=idx.to(torch.long),
                                  displacements=vec.to(positions.dtype)))
    return tasks


def grid_tasks(shape: Sequence[int]) -> List[GridTask]:
    """One task per node of a grid of `shape`, in C order."""
    return [GridTask(index=k, node=tuple(int(i) for i in node))
            for k, node in enumerate(np.ndindex(*tuple(shape)))]


def order_tasks(tasks: Sequence, order: str = "forward") -> list:
    tasks = sorted(tasks, key=lambda t: t.index)
    if order == "reversed":
        tasks.reverse()
    elif order != "forward":
        raise ConfigurationError("unknown task order: {}".format(order))
    return tasks


def _run_keyed(func, task):
    return task.index, func(task)


def run_tasks(func: Callable, tasks: Sequence, cores: int = 1,
              order: str = "forward") -> Dict[int, object]:
    """
    Run `func` on every task.

    Args:
        func: picklable callable taking one task
        tasks: task descriptors
        cores: number of worker processes; 1 runs in this process
        order: 'forward' or 'reversed' execution order

    Returns
    -------
        dict mapping task index to the result of `func`
    """
    tasks = order_tasks(tasks, order)
    keyed = functools.partial(_run_keyed, func)
    if cores == 1:
        results = list(map(keyed, tasks))
    else:
        with mp.Pool(processes=cores) as pool:
            results = pool.map(keyed, tasks)
    return dict(results)


def combine(values: torch.Tensor, index: torch.Tensor,
            size: int) -> torch.Tensor:
    """
    Sum per-task contributions into per-entity rows.

    Args:
        values: (ntasks, ...) per-task results
        index: (ntasks,) row each task contributes to
        size: number of rows of the result

    Returns
    -------
        (size, ...) tensor with the summed contributions
    """
    return scatter_add(values, torch.as_tensor(index, dtype=torch.long),
                       dim=0, dim_size=size)
