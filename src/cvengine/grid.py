"""
Grid-shaped values and pointwise evaluation of functions on grids.

`EvaluateFunctionOnGrid` applies a scalar function g to one or more
arguments of identical shape, node by node, and propagates the partial
derivatives ∂g/∂x_k through the derivatives the arguments carry
themselves, so that the output's derivatives refer to the same upstream
slots as its arguments.

    >>> grid = GridValue("dens", (10, 10))
    >>> grid.set(table)
    >>> evaluate = EvaluateFunctionOnGrid(grid, "identity")
    >>> out = evaluate.calculate()

"""

import functools
import logging
from typing import List, Optional, Sequence, Union

import numpy as np
import torch

from .config import EngineConfig
from .exceptions import ConfigurationError, NumericalError
from .functions import (FunctionRegistry, GridFunction, GridInterpolator,
                        default_function_registry)
from .multivalue import MultiValue
from .tasks import GridTask, grid_tasks, run_tasks
from .value import Value

logger = logging.getLogger(__name__)

__all__ = ['GRID_TYPES', 'GridValue', 'EvaluateFunctionOnGrid']

GRID_TYPES = ("flat", "fibonacci")


class GridValue(Value):
    """
    A Value sampled on a regular grid, with its grid header.

    Parameters
    ----------
    name : str
        Label of the grid
    shape : tuple of int
        Number of points along each dimension
    grid_type : {'flat', 'fibonacci'}
        Sampling scheme; `fibonacci` grids sample a sphere irregularly
    argument_names : list of str, optional
        Names of the coordinates along each dimension
    gmin, gmax : list of float, optional
        Coordinate range; defaults to [0, n-1] (or [0, n] if periodic)
    pbc : list of bool, optional
        Periodicity of each dimension (default: all False)
    has_derivatives : bool
        Whether the grid values carry derivatives
    """

    def __init__(
        self,
        name: str,
        shape: Sequence[int],
        grid_type: str = "flat",
        argument_names: Optional[Sequence[str]] = None,
        gmin: Optional[Sequence[float]] = None,
        gmax: Optional[Sequence[float]] = None,
        pbc: Optional[Sequence[bool]] = None,
        has_derivatives: bool = False,
        producer: Optional[str] = None,
        dtype: torch.dtype = torch.float64,
    ):
        super().__init__(name, shape, has_derivatives=has_derivatives,
                         producer=producer, dtype=dtype)
        if grid_type not in GRID_TYPES:
            raise ConfigurationError(
                "unknown grid type: {}".format(grid_type))
        self.grid_type = grid_type
        self.set_header(argument_names, gmin, gmax, pbc)

    def set_header(self, argument_names=None, gmin=None, gmax=None,
                   pbc=None):
        """Coordinates of the grid; omitted entries take their defaults."""
        rank = self.rank
        self.pbc = [False] * rank if pbc is None else [bool(p) for p in pbc]
        if argument_names is None:
            argument_names = ["x{}".format(k) for k in range(rank)]
        self.argument_names = list(argument_names)
        if gmin is None:
            gmin = [0.0] * rank
        if gmax is None:
            gmax = [float(n) if p else float(n - 1)
                    for n, p in zip(self.shape, self.pbc)]
        self.gmin = [float(v) for v in gmin]
        self.gmax = [float(v) for v in gmax]
        for attr in ('pbc', 'argument_names', 'gmin', 'gmax'):
            if len(getattr(self, attr)) != rank:
                raise ConfigurationError(
                    "grid {}: {} must have {} entries".format(
                        self.name, attr, rank))

    @property
    def nbin(self) -> List[int]:
        return list(self.shape)

    @property
    def spacing(self) -> List[float]:
        spacing = []
        for n, lo, hi, p in zip(self.shape, self.gmin, self.gmax, self.pbc):
            npoints = n if p else n - 1
            spacing.append((hi - lo) / npoints if npoints > 0 else 0.0)
        return spacing

    def grid_coordinates(self, node: Sequence[int]) -> List[float]:
        """Coordinates of the grid point with multi-index `node`."""
        return [lo + i * dx
                for i, lo, dx in zip(node, self.gmin, self.spacing)]

    def header(self) -> dict:
        return {
            "grid_type": self.grid_type,
            "argument_names": list(self.argument_names),
            "min": list(self.gmin),
            "max": list(self.gmax),
            "nbin": self.nbin,
            "spacing": self.spacing,
            "pbc": list(self.pbc),
        }


class EvaluateFunctionOnGrid:
    """
    Pointwise evaluation of a scalar function on grid-shaped arguments.

    Parameters
    ----------
    grid : Value
        The primary grid.  Its header decides whether pointwise
        evaluation is possible at all.
    function : str or GridFunction
        Function name (see `FunctionRegistry`), `"interpolate"` to use
        the primary grid itself as the function, or a function object
    arguments : list of Value, optional
        Arguments of the function, all of the same rank and shape;
        defaults to `[grid]`
    name : str, optional
        Label of the output value
    registry : FunctionRegistry, optional
        Function table; a fresh `default_function_registry()` if None
    config : EngineConfig, optional
        Engine settings

    Raises
    ------
        ConfigurationError: for fibonacci grids, mismatched ranks or
          shapes of the arguments, or a wrong number of arguments; all
          raised here, before any node is evaluated
    """

    needs_positions = False

    def __init__(
        self,
        grid: Value,
        function: Union[str, GridFunction],
        arguments: Optional[Sequence[Value]] = None,
        name: Optional[str] = None,
        registry: Optional[FunctionRegistry] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = EngineConfig() if config is None else config
        self.dtype = self.config.torch_dtype
        if getattr(grid, "grid_type", "flat") == "fibonacci":
            raise ConfigurationError("cannot interpolate on fibonacci sphere")
        self.grid = grid

        if isinstance(function, str):
            if function == GridInterpolator.name:
                function = GridInterpolator(grid)
            else:
                registry = default_function_registry() if registry is None \
                    else registry
                function = registry.get(function)
        self.function = function

        self.arguments = [grid] if arguments is None else list(arguments)
        self._check_arguments()
        self.function.check_arity(len(self.arguments))
        logger.info("  arguments for grid are %s",
                    " ".join(arg.name for arg in self.arguments))

        self.name = "{}_{}".format(grid.name, function.name) \
            if name is None else name
        shape = self.arguments[0].shape
        if len(shape) == 0:
            self.value = Value(self.name, (), has_derivatives=True,
                               producer=self.name, dtype=self.dtype)
        else:
            header = self._template_header()
            self.value = GridValue(
                self.name, shape,
                grid_type=header.get("grid_type", "flat"),
                argument_names=header.get("argument_names"),
                gmin=header.get("min"), gmax=header.get("max"),
                pbc=header.get("pbc"),
                has_derivatives=self.config.derivatives,
                producer=self.name, dtype=self.dtype)
        self.value.set_not_periodic()

        self._setup_chain()
        self.evaluations = 0
        self.argument_derivatives = torch.zeros(
            self.value.numel, len(self.arguments), dtype=self.dtype)

    def __repr__(self):
        return "EvaluateFunctionOnGrid({!r}, {!r})".format(
            self.grid.name, self.function)

    @property
    def outputs(self):
        return [self.value]

    def _check_arguments(self):
        first = self.arguments[0]
        for arg in self.arguments[1:]:
            if arg.rank != first.rank:
                raise ConfigurationError(
                    "mismatched ranks for arguments: {} has rank {}, "
                    "{} has rank {}".format(first.name, first.rank,
                                            arg.name, arg.rank))
            for j in range(first.rank):
                if arg.shape[j] != first.shape[j]:
                    raise ConfigurationError(
                        "mismatched shapes for arguments: {} {} vs. "
                        "{} {}".format(first.name, first.shape,
                                       arg.name, arg.shape))

    def _template_header(self) -> dict:
        template = self.arguments[0]
        return template.header() if isinstance(template, GridValue) else {}

    def _match_output_shape(self):
        """
        Follow a change in the shape of the arguments.

        The per-atom output of a pairwise action changes its length when
        the active set changes; the output grid is resized accordingly.
        A change of rank is a configuration error.
        """
        shape = self.arguments[0].shape
        if shape == self.value.shape:
            return
        if len(shape) != self.value.rank:
            raise ConfigurationError(
                "rank of arguments of {} changed from {} to {}".format(
                    self.name, self.value.rank, len(shape)))
        logger.debug("%s: output resized from %s to %s", self.name,
                     self.value.shape, shape)
        self.value.resize(shape)
        header = self._template_header()
        self.value.set_header(header.get("argument_names"),
                              header.get("min"), header.get("max"),
                              header.get("pbc"))
        self.argument_derivatives = torch.zeros(
            self.value.numel, len(self.arguments), dtype=self.dtype)

    def _setup_chain(self):
        """
        Union of the upstream slots of all arguments.

        If no argument carries upstream derivatives, the output's
        derivatives are taken with respect to the argument values
        themselves (one column per argument).
        """
        chained = [arg.has_derivatives and arg.nderivatives > 0
                   for arg in self.arguments]
        if any(chained) and not all(chained):
            raise ConfigurationError(
                "cannot mix arguments with and without derivatives: "
                + ", ".join(a.name for a, c in zip(self.arguments, chained)
                            if not c))
        self.chain = all(chained)
        if self.chain:
            self.derivative_indices = torch.unique(torch.cat(
                [arg.derivative_indices for arg in self.arguments]))
        else:
            self.derivative_indices = torch.arange(
                len(self.arguments), dtype=torch.long)
        self._columns = []
        if self.chain:
            for arg in self.arguments:
                self._columns.append(torch.searchsorted(
                    self.derivative_indices, arg.derivative_indices))

    def tasks(self) -> List[GridTask]:
        return grid_tasks(self.value.shape)

    def retrieve_arguments(self, task: GridTask) -> torch.Tensor:
        return torch.stack([arg.data.reshape(-1)[task.index].to(self.dtype)
                            for arg in self.arguments])

    def perform_task(self, task: GridTask, myvals: MultiValue
                     ) -> torch.Tensor:
        """
        Evaluate g at one node and chain its derivatives.

        Returns
        -------
            (nargs,) partial derivatives ∂g/∂x_k at this node
        """
        args = self.retrieve_arguments(task)
        value, partials = self.function.evaluate(args)
        if self.config.check_finite and not (
                bool(torch.isfinite(value)) and
                bool(torch.isfinite(partials).all())):
            raise NumericalError(
                "non-finite value of {} at node {}".format(
                    self.function.name, task.node), task=task.index)
        myvals.add_value(0, value)
        if not self.config.derivatives:
            return partials
        for k, arg in enumerate(self.arguments):
            if self.chain:
                myvals.add_derivatives(
                    0, self._columns[k],
                    partials[k] * arg.derivatives[task.index])
            else:
                myvals.add_derivative(0, k, partials[k])
        return partials

    def run_task(self, task: GridTask):
        myvals = MultiValue(1, len(self.derivative_indices),
                            dtype=self.dtype)
        partials = self.perform_task(task, myvals)
        return myvals.values[0], myvals.derivatives[0], partials

    def calculate(self, cores: Optional[int] = None,
                  order: Optional[str] = None) -> Value:
        """
        Evaluate the function at every node of the shared shape.

        Arguments are re-read at every call, so the chain picks up
        the latest values and derivatives of upstream actions.
        """
        self._check_arguments()
        self._match_output_shape()
        self._setup_chain()
        cores = self.config.cores if cores is None else cores
        order = self.config.order if order is None else order
        tasks = self.tasks()
        results = run_tasks(functools.partial(_run_grid_task, self), tasks,
                            cores=cores, order=order)
        self.evaluations += len(tasks)

        n = self.value.numel
        data = torch.zeros(n, dtype=self.dtype)
        derivatives = torch.zeros(n, len(self.derivative_indices),
                                  dtype=self.dtype)
        partials = torch.zeros(n, len(self.arguments), dtype=self.dtype)
        for k in range(n):
            data[k], derivatives[k], partials[k] = results[k]
        self.argument_derivatives = partials
        data = data.reshape(self.value.shape)
        if self.config.derivatives or self.value.is_scalar:
            self.value.set(data, derivatives, self.derivative_indices)
        else:
            self.value.set(data)
        return self.value

    def node_derivatives(self, node: Sequence[int]) -> torch.Tensor:
        """∂g/∂x_k for all arguments k at grid point `node`."""
        if self.value.is_scalar:
            return self.argument_derivatives[0]
        flat = int(np.ravel_multi_index(tuple(node), self.value.shape))
        return self.argument_derivatives[flat]


def _run_grid_task(action: EvaluateFunctionOnGrid, task: GridTask):
    return action.run_task(task)
