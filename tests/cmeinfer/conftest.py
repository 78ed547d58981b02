########################################################################################
##
##                       SHARED FIXTURES FOR THE cmeinfer TESTS
##
##         Analytic stand-ins for the external FSP solver and distortion
##         operator: a birth-death process started empty has a Poisson
##         distribution with mean (k/g)(1 - exp(-g t)).
##
########################################################################################

# IMPORTS ==============================================================================

import numpy as np
import pytest
from scipy.stats import binom, poisson

from cmeinfer.data import DataTensor
from cmeinfer.interfaces import DenseTensor, ModelSolution, StateSpace, TimeSolution


# HELPERS ==============================================================================

def _poisson_and_derivative(lam, n_max):
    """Truncated Poisson pmf over 0..n_max and its derivative in the mean."""
    n = np.arange(n_max + 1)
    p = poisson.pmf(n, lam)
    p_prev = np.concatenate([[0.0], p[:-1]])
    return p, p_prev - p


def _birth_death_mean(k, g, t):
    e = np.exp(-g * t)
    lam = (k / g) * (1.0 - e)
    dlam_dk = (1.0 - e) / g
    dlam_dg = -k / g**2 * (1.0 - e) + (k / g) * t * e
    return lam, dlam_dk, dlam_dg


class BirthDeathSolver:
    """One-species birth-death model, parameters ``[k, g]``."""

    def __init__(self, k=10.0, g=0.2, n_max=120, initial_time=0.0):
        self.species = ["x"]
        self.parameter_names = ["k", "g"]
        self.parameter_values = [k, g]
        self.initial_time = initial_time
        self.n_max = n_max
        self.calls = []

    def solve(self, parameters, times, *, options, state_space=None, sensitivity=False):
        self.calls.append(
            {"parameters": np.array(parameters), "times": np.array(times),
             "options": options, "state_space": state_space, "sensitivity": sensitivity}
        )
        k, g = parameters
        solutions = []
        for t in times:
            lam, dk, dg = _birth_death_mean(k, g, t)
            p, dp = _poisson_and_derivative(lam, self.n_max)
            sens = [DenseTensor(dp * dk), DenseTensor(dp * dg)] if sensitivity else None
            solutions.append(TimeSolution(time=float(t), p=DenseTensor(p), sensitivities=sens))
        ss = state_space or StateSpace.from_states(
            np.arange(self.n_max + 1).reshape(1, -1), bounds=[self.n_max]
        )
        return ModelSolution(solutions=solutions, state_space=ss, bounds=ss.bounds)


class TwoSpeciesSolver:
    """Independent species ``x`` (birth-death, ``k, g``) and ``y`` (Poisson mean ``c``)."""

    def __init__(self, k=10.0, g=0.2, c=3.0, n_max=80, m_max=30):
        self.species = ["x", "y"]
        self.parameter_names = ["k", "g", "c"]
        self.parameter_values = [k, g, c]
        self.initial_time = 0.0
        self.n_max = n_max
        self.m_max = m_max

    def solve(self, parameters, times, *, options, state_space=None, sensitivity=False):
        k, g, c = parameters
        py, dpy = _poisson_and_derivative(c, self.m_max)
        solutions = []
        for t in times:
            lam, dk, dg = _birth_death_mean(k, g, t)
            px, dpx = _poisson_and_derivative(lam, self.n_max)
            p = np.outer(px, py)
            sens = None
            if sensitivity:
                sens = [
                    DenseTensor(np.outer(dpx * dk, py)),
                    DenseTensor(np.outer(dpx * dg, py)),
                    DenseTensor(np.outer(px, dpy)),
                ]
            solutions.append(TimeSolution(time=float(t), p=DenseTensor(p), sensitivities=sens))
        return ModelSolution(solutions=solutions, state_space=state_space)


class BinomialDetection:
    """Each molecule is detected independently with probability ``q``."""

    def __init__(self, q=0.9, n_max=120):
        n = np.arange(n_max + 1)
        self.C = binom.pmf(n[:, None], n[None, :], q)

    def compute_observation_dist(self, p):
        return DenseTensor(self.C @ p.as_dense_array())

    def compute_observation_dist_diff(self, p, s, param_index):
        return DenseTensor(self.C @ s.as_dense_array())


def sample_birth_death(times, n_cells, k=10.0, g=0.2, seed=0):
    """Per-cell samples of the birth-death model at each time."""
    rng = np.random.default_rng(seed)
    t_all, x_all = [], []
    for t in times:
        lam, _, _ = _birth_death_mean(k, g, t)
        t_all.append(np.full(n_cells, float(t)))
        x_all.append(rng.poisson(lam, n_cells))
    return np.concatenate(t_all), np.concatenate(x_all)


# FIXTURES =============================================================================

@pytest.fixture
def birth_death_solver():
    return BirthDeathSolver()


@pytest.fixture
def two_species_solver():
    return TwoSpeciesSolver()


@pytest.fixture
def binomial_pdo():
    return BinomialDetection()


@pytest.fixture
def birth_death_data():
    t, x = sample_birth_death([2.0, 4.0, 8.0, 16.0], 1000)
    return DataTensor.from_samples(t, x, ["x"])


@pytest.fixture
def small_birth_death_data():
    t, x = sample_birth_death([1.0, 3.0, 6.0], 200, seed=3)
    return DataTensor.from_samples(t, x, ["x"])
