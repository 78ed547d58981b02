#########################################################################################
##
##                          FITTED PARAMETER DECLARATION
##                         (estimation/parameters.py)
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import warnings
from typing import Callable, Sequence

import numpy as np


__all__ = ["Parameter", "log_parameters"]


# PARAMETER =============================================================================

class Parameter:
    """A fitted model parameter.

    The optimizer works on ``value``; the model receives ``transform(value)``.
    With ``transform=np.exp`` the optimizer searches log-space while the
    reaction rate stays positive.

    Parameters
    ----------
    name : str
        Parameter identifier.
    value : float
        Initial value in optimizer space.
    bounds : tuple[float, float]
        Lower / upper bounds in optimizer space.
    transform : callable, optional
        ``model_value = transform(optimizer_value)``.
    index : int, optional
        Position of the parameter in the solver's parameter vector.

    Example
    -------
    .. code-block:: python

        k = Parameter("k", value=np.log(10.0), transform=np.exp)
        k()       # 10.0
        k.value   # 2.302...
    """

    def __init__(
        self,
        name: str,
        value: float = 0.0,
        bounds: tuple[float, float] = (-np.inf, np.inf),
        transform: Callable[[float], float] | None = None,
        index: int | None = None,
    ):
        self.name = name
        self.transform = transform
        self.index = index

        lo, hi = bounds
        if np.isfinite(lo) and np.isfinite(hi) and lo > hi:
            raise ValueError(
                f"Parameter '{name}': lower bound {lo} > upper bound {hi}"
            )
        self.bounds = bounds

        if np.isfinite(lo) and float(value) < lo:
            warnings.warn(
                f"Parameter '{name}': initial value {value} < lower bound {lo}",
                UserWarning,
                stacklevel=2,
            )
        if np.isfinite(hi) and float(value) > hi:
            warnings.warn(
                f"Parameter '{name}': initial value {value} > upper bound {hi}",
                UserWarning,
                stacklevel=2,
            )

        self.set(value)


    @property
    def value(self) -> float:
        """Current optimizer-space value."""
        return self._value


    @value.setter
    def value(self, new_value: float) -> None:
        self.set(new_value)


    def __call__(self) -> float:
        """Return the model-space value (after optional transform)."""
        return float(self.transform(self._value)) if self.transform is not None else self._value


    def set(self, value: float) -> None:
        self._value = float(value)


    def __repr__(self) -> str:
        return (
            f"Parameter(name={self.name!r}, value={self._value:.6g}, "
            f"model_value={self():.6g}, bounds={self.bounds})"
        )


def log_parameters(names: Sequence[str], values, indices: Sequence[int] | None = None) -> list[Parameter]:
    """Log-space parameters for positive model values.

    Parameters
    ----------
    names : sequence of str
        Parameter names.
    values : array_like
        Positive model-space values.
    indices : sequence of int, optional
        Solver parameter index of each entry.

    Returns
    -------
    list[Parameter]
        One parameter per name with ``value = log(model value)`` and
        ``transform = np.exp``.
    """
    values = np.asarray(values, dtype=float).reshape(-1)
    if len(names) != values.size:
        raise ValueError(f"{len(names)} name(s) for {values.size} value(s)")
    if np.any(values <= 0):
        raise ValueError("log-space parameters require positive values")
    indices = list(indices) if indices is not None else [None] * values.size
    return [
        Parameter(str(n), value=float(np.log(v)), transform=np.exp, index=i)
        for n, v, i in zip(names, values, indices)
    ]
