"""
Switching functions mapping a distance to a smooth weight in [0, 1].

Every switching function is called on a tensor of distances and returns
the weights together with their derivatives with respect to distance:

    >>> switch = RationalSwitch(r_0=0.2, d_0=1.3)
    >>> w, dw = switch(torch.tensor([1.0, 1.4, 2.0], dtype=torch.float64))

"""

from typing import Optional, Tuple

import torch

from .exceptions import ConfigurationError

__all__ = ['SwitchingFunction', 'RationalSwitch', 'CosineCutoff',
           'StepSwitch']


class SwitchingFunction:
    """Base class: subclasses implement `evaluate`."""

    def __call__(self, r: torch.Tensor
                 ) -> Tuple[torch.Tensor, torch.Tensor]:
        return self.evaluate(r)

    def evaluate(self, r: torch.Tensor
                 ) -> Tuple[torch.Tensor, torch.Tensor]:
        raise NotImplementedError


class RationalSwitch(SwitchingFunction):
    """
    Rational switching function.

    Implements: s(r) = (1 - x^nn) / (1 - x^mm),  x = (r - d_0) / r_0
                s(r) = 1                          for r <= d_0
                s(r) = 0                          for r >= d_max

    The removable singularity at x = 1 is replaced by its limits
    s = nn/mm and ds/dx = nn (nn - mm) / (2 mm).

    Reference: M. Iannuzzi, A. Laio, and M. Parrinello, PRL 90 (2003)
    238302.
    """

    def __init__(self, r_0: float, d_0: float = 0.0, nn: int = 6,
                 mm: Optional[int] = None, d_max: Optional[float] = None):
        if r_0 <= 0.0:
            raise ConfigurationError(
                "r_0 must be positive, got {}".format(r_0))
        mm = 2 * nn if mm is None else mm
        if nn <= 0 or mm <= 0 or nn == mm:
            raise ConfigurationError(
                "invalid exponents nn={} mm={}".format(nn, mm))
        self.r_0 = float(r_0)
        self.d_0 = float(d_0)
        self.nn = int(nn)
        self.mm = int(mm)
        self.d_max = None if d_max is None else float(d_max)

    def __repr__(self):
        return ("RationalSwitch(r_0={}, d_0={}, nn={}, mm={}, "
                "d_max={})".format(self.r_0, self.d_0, self.nn, self.mm,
                                   self.d_max))

    def evaluate(self, r):
        nn, mm = self.nn, self.mm
        x = (r - self.d_0) / self.r_0
        near_one = torch.abs(x - 1.0) < 1.0e-8
        xn = x**nn
        xm = x**mm
        denom = torch.where(near_one, torch.ones_like(x), 1.0 - xm)
        w = (1.0 - xn) / denom
        dwdx = (-nn * x**(nn - 1) * denom + mm * x**(mm - 1) * (1.0 - xn)
                ) / denom**2
        w = torch.where(near_one, torch.full_like(x, nn / mm), w)
        dwdx = torch.where(near_one,
                           torch.full_like(x, 0.5 * nn * (nn - mm) / mm),
                           dwdx)
        inside = x <= 0.0
        w = torch.where(inside, torch.ones_like(x), w)
        dwdx = torch.where(inside, torch.zeros_like(x), dwdx)
        if self.d_max is not None:
            outside = r >= self.d_max
            w = torch.where(outside, torch.zeros_like(x), w)
            dwdx = torch.where(outside, torch.zeros_like(x), dwdx)
        return w, dwdx / self.r_0


class CosineCutoff(SwitchingFunction):
    """
    Cosine cutoff function.

    Implements: fc(r) = 0.5 * [cos(π*r/Rc) + 1] for r < Rc
                fc(r) = 0                       for r >= Rc

    The weight smoothly goes to zero at r = Rc with a continuous first
    derivative.
    """

    def __init__(self, r_cut: float):
        if r_cut <= 0.0:
            raise ConfigurationError(
                "r_cut must be positive, got {}".format(r_cut))
        self.r_cut = float(r_cut)

    def __repr__(self):
        return "CosineCutoff(r_cut={})".format(self.r_cut)

    def evaluate(self, r):
        Rc = self.r_cut
        fc = torch.where(
            r < Rc,
            0.5 * (torch.cos(torch.pi * r / Rc) + 1.0),
            torch.zeros_like(r),
        )
        dfc = torch.where(
            r < Rc,
            -0.5 * torch.pi / Rc * torch.sin(torch.pi * r / Rc),
            torch.zeros_like(r),
        )
        return fc, dfc


class StepSwitch(SwitchingFunction):
    """Hard cutoff: 1 for r <= r_cut, 0 otherwise, zero derivative."""

    def __init__(self, r_cut: float):
        self.r_cut = float(r_cut)

    def __repr__(self):
        return "StepSwitch(r_cut={})".format(self.r_cut)

    def evaluate(self, r):
        w = torch.where(r <= self.r_cut, torch.ones_like(r),
                        torch.zeros_like(r))
        return w, torch.zeros_like(r)
