"""
Scalar functions evaluated pointwise on grids.

A grid function takes the values x_1 ... x_n of its arguments at one
grid node and returns g(x_1, ..., x_n) together with the partial
derivatives ∂g/∂x_k, all derived by hand:

    >>> g = RatioFunction()
    >>> value, partials = g.evaluate(torch.tensor([2.0, 4.0]))
    >>> # value = 0.5, partials = [0.25, -0.125]

"""

import itertools
from typing import Dict, List, Optional, Sequence, Tuple

import torch

from .exceptions import ConfigurationError, NumericalError

__all__ = [
    'GridFunction',
    'IdentityFunction',
    'SumFunction',
    'ProductFunction',
    'RatioFunction',
    'LinearFunction',
    'GridInterpolator',
    'FunctionRegistry',
    'default_function_registry',
]


class GridFunction:
    """
    Base class of grid functions.

    `arity` is the number of arguments, or None if any number is
    accepted.  `evaluate` takes a (nargs,) tensor and returns the value
    (0-d tensor) and the (nargs,) partial derivatives.
    """

    name = None
    arity: Optional[int] = 1

    def evaluate(self, args: torch.Tensor
                 ) -> Tuple[torch.Tensor, torch.Tensor]:
        raise NotImplementedError

    def check_arity(self, nargs: int):
        if self.arity is not None and nargs != self.arity:
            raise ConfigurationError(
                "function {} takes {} argument(s), {} given".format(
                    self.name, self.arity, nargs))
        if nargs == 0:
            raise ConfigurationError(
                "function {} needs at least one argument".format(self.name))

    def __repr__(self):
        return "{}()".format(self.__class__.__name__)


class IdentityFunction(GridFunction):
    """g(x) = x"""

    name = "identity"
    arity = 1

    def evaluate(self, args):
        return args[0].clone(), torch.ones_like(args)


class SumFunction(GridFunction):
    """g(x_1, ..., x_n) = Σ_k x_k"""

    name = "sum"
    arity = None

    def evaluate(self, args):
        return args.sum(), torch.ones_like(args)


class ProductFunction(GridFunction):
    """g(x_1, ..., x_n) = Π_k x_k"""

    name = "product"
    arity = None

    def evaluate(self, args):
        n = len(args)
        partials = torch.empty_like(args)
        for k in range(n):
            others = torch.cat([args[:k], args[k + 1:]])
            partials[k] = others.prod()
        return args.prod(), partials


class RatioFunction(GridFunction):
    """
    g(x, y) = x / y

    Used to normalize an unnormalized symmetry function by its
    coordination number.
    """

    name = "ratio"
    arity = 2

    def evaluate(self, args):
        x, y = args[0], args[1]
        value = x / y
        return value, torch.stack([1.0 / y, -x / y**2])


class LinearFunction(GridFunction):
    """g(x_1, ..., x_n) = c_0 + Σ_k c_k x_k"""

    name = "linear"
    arity = None

    def __init__(self, coefficients: Sequence[float], constant: float = 0.0):
        self.coefficients = [float(c) for c in coefficients]
        self.constant = float(constant)
        self.arity = len(self.coefficients)

    def __repr__(self):
        return "LinearFunction({}, constant={})".format(
            self.coefficients, self.constant)

    def evaluate(self, args):
        c = torch.as_tensor(self.coefficients, dtype=args.dtype)
        return self.constant + (c * args).sum(), c.clone()


class GridInterpolator(GridFunction):
    """
    The function tabulated on a grid, evaluated by multilinear
    interpolation at the coordinates given by the arguments.

    Periodic dimensions wrap around; a point outside a non-periodic
    dimension raises `NumericalError`.

    Parameters
    ----------
    grid : GridValue
        Tabulated function values and the grid header
    """

    name = "interpolate"

    def __init__(self, grid):
        self.grid = grid
        self.arity = grid.rank
        for k, n in enumerate(grid.shape):
            if n < 2 and not grid.pbc[k]:
                raise ConfigurationError(
                    "cannot interpolate along dimension {} of {} with "
                    "{} point(s)".format(k, grid.name, n))

    def __repr__(self):
        return "GridInterpolator({!r})".format(self.grid.name)

    def _locate(self, k: int, x: float) -> Tuple[int, int, float]:
        """Lower/upper node and fractional position along dimension k."""
        grid = self.grid
        n = grid.shape[k]
        u = (x - grid.gmin[k]) / grid.spacing[k]
        if grid.pbc[k]:
            u = u % n
            i0 = int(u) % n
            return i0, (i0 + 1) % n, u - int(u)
        if u < -1.0e-10 or u > n - 1 + 1.0e-10:
            raise NumericalError(
                "point {} outside grid {} along dimension {}".format(
                    x, grid.name, k))
        i0 = min(max(int(u), 0), n - 2)
        return i0, i0 + 1, u - i0

    def evaluate(self, args):
        rank = self.grid.rank
        cells = [self._locate(k, float(args[k])) for k in range(rank)]
        table = self.grid.data
        value = torch.zeros((), dtype=args.dtype)
        partials = torch.zeros(rank, dtype=args.dtype)
        for corner in itertools.product((0, 1), repeat=rank):
            node = tuple(cells[k][corner[k]] for k in range(rank))
            factors = [cells[k][2] if corner[k] else 1.0 - cells[k][2]
                       for k in range(rank)]
            y = table[node]
            value = value + y * _prod(factors)
            for k in range(rank):
                sign = 1.0 if corner[k] else -1.0
                others = factors[:k] + factors[k + 1:]
                partials[k] += (sign * y * _prod(others)
                                / self.grid.spacing[k])
        return value, partials


def _prod(factors: List[float]) -> float:
    result = 1.0
    for f in factors:
        result *= f
    return result


class FunctionRegistry:
    """Explicit table of grid functions by name."""

    def __init__(self):
        self._functions: Dict[str, GridFunction] = {}

    def register(self, function: GridFunction) -> GridFunction:
        if not function.name:
            raise ConfigurationError(
                "function {!r} has no name".format(function))
        if function.name in self._functions:
            raise ConfigurationError(
                "function already registered: {}".format(function.name))
        self._functions[function.name] = function
        return function

    def get(self, name: str) -> GridFunction:
        try:
            return self._functions[name]
        except KeyError:
            raise ConfigurationError(
                "unknown function: {} (available: {})".format(
                    name, ", ".join(self.names()))) from None

    def names(self) -> List[str]:
        return sorted(self._functions)

    def __contains__(self, name):
        return name in self._functions


def default_function_registry() -> FunctionRegistry:
    """A new registry with the stateless functions of cvengine."""
    registry = FunctionRegistry()
    for function in (IdentityFunction(), SumFunction(), ProductFunction(),
                     RatioFunction()):
        registry.register(function)
    return registry
