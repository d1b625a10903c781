"""
Pairwise reduction engine (symmetry functions).

For every active central atom i with neighbors j the engine computes

    S_i = (1 / W_i) Σ_j w_j f(d_ij),        W_i = Σ_j w_j

where d_ij = r_j - r_i, w_j = σ(|d_ij|) is a switching weight and f is
a kernel (see `cvengine.kernels`).  Derivatives with respect to all atom
positions are accumulated together with the values.

The reduction is split in two steps.  `compute_task` accumulates the
numerator N = Σ_j w_j f_j, its derivatives at fixed weights, the total
weight W and the raw weight derivatives dN/dw_j = f_j.  `normalize` then
applies the linear normalization once all neighbors are known:

    dS/dw_j = (f_j - S) / W
    dS/du   = (dN/du) / W + Σ_j dS/dw_j dw_j/du

"""

import functools
import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Union

import torch

from .config import EngineConfig
from .exceptions import (ConfigurationError, DegenerateWeightWarning,
                         NumericalError, ZeroWeightError)
from .kernels import Kernel, KernelRegistry, default_kernel_registry
from .multivalue import MultiValue
from .switching import SwitchingFunction
from .tasks import (PairwiseTask, TaskList, combine, pairwise_tasks,
                    run_tasks)
from .value import DerivativeArena, Value

logger = logging.getLogger(__name__)

__all__ = ['ReductionResult', 'SymmetryFunction']


@dataclass
class ReductionResult:
    """
    Result of one pairwise task.

    Attributes
    ----------
    index : int
        Central atom
    value : torch.Tensor
        (n_components,) normalized value S (numerator N if the reduction
        is not normalized)
    weight : float
        Total weight W
    derivative_indices : torch.Tensor
        Arena slots of the derivative columns
    derivatives : torch.Tensor
        (n_components, len(derivative_indices)) derivatives of `value`
    weight_derivatives : dict
        Local neighbor index -> (n_components,) derivative of `value`
        with respect to that neighbor's weight
    degenerate : bool
        True if W was zero and a substitute value was used
    """

    index: int
    value: torch.Tensor
    weight: float
    derivative_indices: torch.Tensor
    derivatives: torch.Tensor
    weight_derivatives: Dict[int, torch.Tensor] = field(default_factory=dict)
    degenerate: bool = False


class SymmetryFunction:
    """
    Per-atom symmetry function with analytic derivatives.

    Parameters
    ----------
    kernel : str or Kernel
        Kernel name (looked up in `registry`) or kernel object
    switch : SwitchingFunction, optional
        Maps neighbor distances to weights; all weights are 1 if None
    registry : KernelRegistry, optional
        Kernel table; a fresh `default_kernel_registry()` if None
    config : EngineConfig, optional
        Engine settings
    name : str, optional
        Label of the output value (default: the kernel name)
    normalized : bool
        Divide by the total weight (default: True).  Without
        normalization the output is the numerator N = Σ_j w_j f_j.

    Example:
        >>> tt = SymmetryFunction("tetrahedral",
        ...                       switch=RationalSwitch(r_0=0.2, d_0=1.3))
        >>> value = tt.calculate(positions, AllPairsNeighbors(cutoff=3.0))
    """

    needs_positions = True

    def __init__(
        self,
        kernel: Union[str, Kernel],
        switch: Optional[SwitchingFunction] = None,
        registry: Optional[KernelRegistry] = None,
        config: Optional[EngineConfig] = None,
        name: Optional[str] = None,
        normalized: bool = True,
    ):
        if isinstance(kernel, str):
            registry = default_kernel_registry() if registry is None \
                else registry
            kernel = registry.get(kernel)
        if not isinstance(kernel, Kernel):
            raise ConfigurationError(
                "not a kernel: {!r}".format(kernel))
        self.kernel = kernel
        self.switch = switch
        self.config = EngineConfig() if config is None else config
        self.normalized = normalized
        self.name = kernel.name if name is None else name
        self.dtype = self.config.torch_dtype
        self.arena = None
        self.task_list = None
        self.degenerate = torch.zeros(0, dtype=torch.bool)
        self.arguments = []
        self.value = Value(self.name, (), producer=self.name,
                           has_derivatives=self.config.derivatives,
                           dtype=self.dtype)

    def __repr__(self):
        return "SymmetryFunction({!r}, switch={!r})".format(
            self.kernel.name, self.switch)

    @property
    def n_components(self) -> int:
        return self.kernel.n_components

    @property
    def outputs(self):
        return [self.value]

    def setup(self, natoms: int, arena: Optional[DerivativeArena] = None,
              active: Optional[Sequence[int]] = None):
        """
        Define the atoms, the derivative slots and the active centers.

        Called by `calculate` when the number of atoms changes; call it
        directly to share an arena with other actions.
        """
        if arena is None:
            arena = DerivativeArena.for_positions(natoms)
        elif arena.natoms != natoms:
            raise ConfigurationError(
                "arena holds {} atoms, positions have {}".format(
                    arena.natoms, natoms))
        self.arena = arena
        self.task_list = TaskList(natoms)
        self.task_list.activate(active)

    # ------------------------------------------------------------------
    # per-task steps

    def _check_finite(self, tensor, what, task, neighbors=None):
        if not self.config.check_finite or bool(torch.isfinite(tensor).all()):
            return
        msg = "non-finite {}".format(what)
        if neighbors is not None:
            bad = ~torch.isfinite(tensor.reshape(len(neighbors), -1)).all(-1)
            msg += " for neighbor(s) {}".format(neighbors[bad].tolist())
        raise NumericalError(msg, task=task)

    def _distances(self, task: PairwiseTask) -> torch.Tensor:
        r = torch.linalg.norm(task.displacements, dim=-1)
        zero = r == 0.0
        if bool(zero.any()):
            raise NumericalError(
                "zero distance to neighbor(s) {}".format(
                    task.neighbors[zero].tolist()), task=task.index)
        return r

    def weights_for(self, task: PairwiseTask):
        """
        Switching weights of the neighbors of `task`.

        Returns
        -------
            weights: (nnb,) tensor
            weight_gradients: (nnb, 3) dw_j/dd_ij
        """
        d = task.displacements
        r = self._distances(task)
        if self.switch is None:
            return torch.ones_like(r), torch.zeros_like(d)
        w, dw = self.switch(r)
        self._check_finite(w, "switching weight", task.index, task.neighbors)
        self._check_finite(dw, "switching derivative", task.index,
                           task.neighbors)
        return w, (dw / r).unsqueeze(-1) * d

    def _atom_slots(self, atoms: torch.Tensor) -> torch.Tensor:
        """(natoms, 3) arena slots of the coordinates of `atoms`."""
        offset, _ = self.arena.block("positions")
        return (offset + 3 * atoms.to(torch.long).unsqueeze(-1)
                + torch.arange(3, dtype=torch.long))

    def accumulator(self, task: PairwiseTask,
                    weights: Optional[torch.Tensor] = None) -> MultiValue:
        """
        A `MultiValue` whose derivative columns are the slots `task` can
        touch: the central atom and every neighbor of nonzero weight.
        """
        neighbors = task.neighbors if weights is None \
            else task.neighbors[weights != 0.0]
        atoms = torch.unique(torch.cat([
            torch.tensor([task.index], dtype=torch.long),
            neighbors.to(torch.long)]))
        slots = self._atom_slots(atoms).flatten()
        return MultiValue(self.n_components, len(slots), task.n_neighbors,
                          dtype=self.dtype, slots=slots)

    def _local_columns(self, myvals: MultiValue,
                       atoms: torch.Tensor) -> torch.Tensor:
        """(natoms, 3) derivative columns of `atoms` in `myvals`."""
        wanted = self._atom_slots(atoms)
        if len(myvals.slots) == 0:
            raise ConfigurationError("accumulator holds no slots")
        columns = torch.searchsorted(myvals.slots, wanted).clamp(
            max=len(myvals.slots) - 1)
        if not torch.equal(myvals.slots[columns], wanted):
            raise ConfigurationError(
                "accumulator does not hold the slots of atom(s) {}".format(
                    atoms.tolist()))
        return columns

    def compute_task(self, task: PairwiseTask, weights: torch.Tensor,
                     myvals: MultiValue):
        """
        Accumulate the numerator, the total weight and their derivatives.

        Neighbors with a weight of exactly zero are skipped, so they
        leave no trace in `myvals`.
        """
        self._distances(task)
        keep = torch.nonzero(weights != 0.0).flatten()
        if len(keep) == 0:
            return
        f, df = self.kernel.evaluate(task.displacements[keep])
        self._check_finite(f, "kernel value", task.index,
                           task.neighbors[keep])
        self._check_finite(df, "kernel gradient", task.index,
                           task.neighbors[keep])

        w = weights[keep]
        wf = w.unsqueeze(-1) * f
        for c in range(self.n_components):
            myvals.add_value(c, wf[:, c].sum())
            myvals.add_weight(c, w.sum())
        if not self.config.derivatives:
            return

        central = self._local_columns(
            myvals, torch.tensor([task.index]))[0]
        neighbor = self._local_columns(myvals, task.neighbors[keep])
        wdf = w.view(-1, 1, 1) * df
        for c in range(self.n_components):
            myvals.add_weight_derivatives(c, keep, f[:, c])
            # d_ij = r_j - r_i
            myvals.add_derivatives(c, neighbor.flatten(),
                                   wdf[:, c].flatten())
            myvals.add_derivatives(c, central, -wdf[:, c].sum(dim=0))

    def _result(self, task, myvals, value, scale, dvalue_dw,
                weight_gradients):
        """
        Derivatives of `value` = N / scale including the weight chain.

        dvalue_dw maps local neighbor index -> d value / d w_j.
        """
        derivatives = myvals.derivatives / scale.unsqueeze(-1)
        if weight_gradients is not None and dvalue_dw:
            js = sorted(dvalue_dw)
            idx = torch.as_tensor(js, dtype=torch.long)
            dv = torch.stack([dvalue_dw[j] for j in js])
            # (nc, m * 3): component, then neighbor and coordinate
            block = (dv.unsqueeze(-1) * weight_gradients[idx].unsqueeze(1)
                     ).permute(1, 0, 2).reshape(self.n_components, -1)
            neighbor = self._local_columns(myvals, task.neighbors[idx])
            central = self._local_columns(
                myvals, torch.tensor([task.index]))[0]
            derivatives.index_add_(1, neighbor.flatten(), block)
            derivatives.index_add_(1, central.repeat(len(js)), -block)

        return ReductionResult(
            index=task.index,
            value=value,
            weight=float(myvals.weights[0]),
            derivative_indices=myvals.slots.clone(),
            derivatives=derivatives,
            weight_derivatives=dvalue_dw)

    def normalize(self, task: PairwiseTask, myvals: MultiValue,
                  weight_gradients: Optional[torch.Tensor] = None
                  ) -> ReductionResult:
        """
        Turn the accumulated pieces into S and its derivatives.

        Args:
            task: the task `myvals` belongs to
            myvals: accumulator filled by `compute_task`
            weight_gradients: (nnb, 3) dw_j/dd_ij; if given, the
              dependence of the weights on the positions is included

        Raises
        ------
            ZeroWeightError: if the total weight is zero
        """
        W = myvals.weights.clone()
        if bool((W == 0.0).any()):
            raise ZeroWeightError(task=task.index)
        S = myvals.values / W
        dS_dw = {j: (myvals.weight_derivatives[:, j] - S) / W
                 for j in myvals.active_weight_indices().tolist()}
        return self._result(task, myvals, S, W, dS_dw, weight_gradients)

    def numerator(self, task: PairwiseTask, myvals: MultiValue,
                  weight_gradients: Optional[torch.Tensor] = None
                  ) -> ReductionResult:
        """N = Σ_j w_j f_j and its derivatives, without normalization."""
        dN_dw = {j: myvals.weight_derivatives[:, j].clone()
                 for j in myvals.active_weight_indices().tolist()}
        return self._result(task, myvals, myvals.values.clone(),
                            torch.ones_like(myvals.weights), dN_dw,
                            weight_gradients)

    def run_task(self, task: PairwiseTask) -> ReductionResult:
        """Complete evaluation of one central atom."""
        weights, weight_gradients = self.weights_for(task)
        myvals = self.accumulator(task, weights)
        self.compute_task(task, weights, myvals)
        if not self.config.derivatives:
            weight_gradients = None
        if not self.normalized:
            return self.numerator(task, myvals, weight_gradients)
        try:
            return self.normalize(task, myvals, weight_gradients)
        except ZeroWeightError:
            if self.config.degenerate == "raise":
                raise
        # substitute chosen by the "zero" policy
        return ReductionResult(
            index=task.index,
            value=torch.zeros(self.n_components, dtype=self.dtype),
            weight=0.0,
            derivative_indices=torch.zeros(0, dtype=torch.long),
            derivatives=torch.zeros(self.n_components, 0, dtype=self.dtype),
            degenerate=True)

    # ------------------------------------------------------------------
    # full pass

    def build_tasks(self, positions: torch.Tensor, provider):
        return pairwise_tasks(positions, provider, self.task_list.active)

    def calculate(self, positions: torch.Tensor, neighbor_provider=None,
                  tasks: Optional[Sequence[PairwiseTask]] = None,
                  active: Optional[Sequence[int]] = None,
                  cores: Optional[int] = None,
                  order: Optional[str] = None) -> Value:
        """
        Evaluate all active central atoms.

        Args:
            positions: (N, 3) atomic positions
            neighbor_provider: object with a `neighbors(positions, i)`
              method; required unless `tasks` is given
            tasks: prebuilt tasks (one per active atom)
            active: central atoms to evaluate (default: all, or the
              active set of the previous pass)
            cores: number of worker processes (default: config)
            order: task execution order (default: config)

        Returns
        -------
            Value of shape (nactive,) or (nactive, n_components) with
            derivatives with respect to the arena's position slots
        """
        positions = torch.as_tensor(positions, dtype=self.dtype)
        natoms = positions.shape[0]
        if self.arena is None or self.arena.natoms != natoms:
            self.setup(natoms, active=active)
        elif active is not None:
            self.task_list.activate(active)

        if tasks is None:
            if neighbor_provider is None:
                raise ConfigurationError(
                    "{}: neither tasks nor a neighbor provider given".format(
                        self.name))
            tasks = self.build_tasks(positions, neighbor_provider)
        else:
            self.task_list.activate(t.index for t in tasks)

        cores = self.config.cores if cores is None else cores
        order = self.config.order if order is None else order
        logger.debug("%s: pass over %d central atoms (cores=%d, order=%s)",
                     self.name, len(tasks), cores, order)
        results = run_tasks(functools.partial(_run_symmetry_task, self),
                            tasks, cores=cores, order=order)
        return self._assemble(results)

    def _assemble(self, results: Dict[int, ReductionResult]) -> Value:
        active = self.task_list.active
        nc = self.n_components
        shape = (len(active),) if nc == 1 else (len(active), nc)
        if self.value.shape != shape:
            self.value.resize(shape)

        data = torch.zeros(len(active), nc, dtype=self.dtype)
        degenerate = torch.zeros(len(active), dtype=torch.bool)
        for row, i in enumerate(active.tolist()):
            data[row] = results[i].value
            degenerate[row] = results[i].degenerate
        self.degenerate = degenerate
        if degenerate.any():
            warnings.warn(
                "{}: zero total weight for atom(s) {}; value set to "
                "zero".format(self.name,
                              active[degenerate.numpy()].tolist()),
                DegenerateWeightWarning)

        if not self.config.derivatives:
            self.value.set(data.reshape(shape))
            return self.value

        slots = torch.unique(torch.cat(
            [results[i].derivative_indices for i in active.tolist()]
            + [torch.zeros(0, dtype=torch.long)]))
        lookup = torch.full((self.arena.nslots,), -1, dtype=torch.long)
        lookup[slots] = torch.arange(len(slots))
        derivatives = torch.zeros(len(active), nc, len(slots),
                                  dtype=self.dtype)
        for row, i in enumerate(active.tolist()):
            res = results[i]
            derivatives[row][:, lookup[res.derivative_indices]] = \
                res.derivatives
        self.value.set(data.reshape(shape),
                       derivatives.reshape(len(active) * nc, len(slots)),
                       slots)
        return self.value

    def calculate_population(self, positions: torch.Tensor,
                             neighbor_provider=None, **kwargs):
        """
        Per-atom values plus their sum and mean over the population.

        Returns
        -------
            (per_atom, total, mean) Values
        """
        per_atom = self.calculate(positions, neighbor_provider, **kwargs)
        nactive = len(self.task_list.active)
        nc = self.n_components
        shape = () if nc == 1 else (nc,)
        total = Value(self.name + ".sum", shape, producer=self.name,
                      has_derivatives=self.config.derivatives,
                      dtype=self.dtype)
        mean = Value(self.name + ".mean", shape, producer=self.name,
                     has_derivatives=self.config.derivatives,
                     dtype=self.dtype)
        rows_to_total = torch.zeros(nactive, dtype=torch.long)
        data = combine(per_atom.data.reshape(nactive, nc),
                       rows_to_total, 1)[0]
        if not self.config.derivatives:
            total.set(data.reshape(shape))
            mean.set((data / max(nactive, 1)).reshape(shape))
            return per_atom, total, mean
        rows = combine(per_atom.derivatives.reshape(
            nactive, nc, per_atom.nderivatives), rows_to_total, 1)[0]
        total.set(data.reshape(shape), rows, per_atom.derivative_indices)
        mean.set((data / max(nactive, 1)).reshape(shape),
                 rows / max(nactive, 1), per_atom.derivative_indices)
        return per_atom, total, mean

    def threshold_count(self, switch: SwitchingFunction,
                        more_than: bool = True) -> Value:
        """
        Switched number of atoms of the last pass above a threshold.

        With σ the switching function applied to the per-atom values,

            more_than:  n = Σ_i [1 - σ(S_i)]
            less_than:  n = Σ_i σ(S_i)

        e.g. `threshold_count(RationalSwitch(r_0=0.8))` counts the atoms
        whose tetrahedral order exceeds about 0.8.

        Returns
        -------
            scalar Value named `<name>.morethan` or `<name>.lessthan`
        """
        if self.n_components != 1:
            raise ConfigurationError(
                "{}: threshold counts need a scalar kernel".format(
                    self.name))
        per_atom = self.value
        s, ds = switch(per_atom.data.reshape(-1))
        self._check_finite(s, "threshold switch", None)
        if more_than:
            terms, dterms = 1.0 - s, -ds
        else:
            terms, dterms = s, ds
        suffix = ".morethan" if more_than else ".lessthan"
        count = Value(self.name + suffix, (), producer=self.name,
                      has_derivatives=self.config.derivatives,
                      dtype=self.dtype)
        rows_to_total = torch.zeros(per_atom.numel, dtype=torch.long)
        data = combine(terms, rows_to_total, 1).reshape(())
        if not self.config.derivatives:
            count.set(data)
            return count
        rows = combine(dterms.unsqueeze(-1) * per_atom.derivatives,
                       rows_to_total, 1)
        count.set(data, rows, per_atom.derivative_indices)
        return count


def _run_symmetry_task(action: SymmetryFunction, task: PairwiseTask):
    return action.run_task(task)
