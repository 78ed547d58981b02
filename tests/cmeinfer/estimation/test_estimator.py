########################################################################################
##
##                                  TESTS FOR
##                   'estimation/estimator.py' and 'estimation/parameters.py'
##
########################################################################################

# IMPORTS ==============================================================================

import numpy as np
import pytest

from cmeinfer.errors import ConfigurationError
from cmeinfer.estimation import (
    FitResult,
    LogSpaceObjective,
    Parameter,
    ParameterEstimator,
    Simplex,
    log_parameters,
)
from cmeinfer.likelihood import LikelihoodEngine


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _k_only(solver, data):
    return LikelihoodEngine(solver, data, fit_options={"model_vars_to_fit": [0]})


# ═══════════════════════════════════════════════════════════════════════════
# Parameters
# ═══════════════════════════════════════════════════════════════════════════

class TestParameter:

    def test_transform(self):
        p = Parameter("k", value=np.log(10.0), transform=np.exp)
        assert p() == pytest.approx(10.0)
        assert p.value == pytest.approx(np.log(10.0))

    def test_no_transform(self):
        p = Parameter("g", value=0.2)
        assert p() == 0.2

    def test_setter(self):
        p = Parameter("k", value=1.0)
        p.value = 2.5
        assert p.value == 2.5

    def test_bound_order(self):
        with pytest.raises(ValueError, match="lower bound"):
            Parameter("k", bounds=(1.0, 0.0))

    def test_out_of_bounds_warns(self):
        with pytest.warns(UserWarning, match="lower bound"):
            Parameter("k", value=-1.0, bounds=(0.0, 1.0))
        with pytest.warns(UserWarning, match="upper bound"):
            Parameter("k", value=2.0, bounds=(0.0, 1.0))

    def test_repr(self):
        assert "model_value" in repr(Parameter("k", value=1.0))


class TestLogParameters:

    def test_values_in_log_space(self):
        pars = log_parameters(["k", "g"], [10.0, 0.2], indices=[0, 1])
        assert [p.name for p in pars] == ["k", "g"]
        assert [p.index for p in pars] == [0, 1]
        np.testing.assert_allclose([p.value for p in pars], np.log([10.0, 0.2]))
        np.testing.assert_allclose([p() for p in pars], [10.0, 0.2])

    def test_requires_positive_values(self):
        with pytest.raises(ValueError, match="positive"):
            log_parameters(["k"], [0.0])

    def test_name_count(self):
        with pytest.raises(ValueError):
            log_parameters(["k"], [1.0, 2.0])


# ═══════════════════════════════════════════════════════════════════════════
# Objective
# ═══════════════════════════════════════════════════════════════════════════

class TestLogSpaceObjective:

    def test_value_gradient_density_agree(self, birth_death_solver, small_birth_death_data):
        engine = LikelihoodEngine(birth_death_solver, small_birth_death_data)
        obj = LogSpaceObjective(engine)
        x = np.log([9.0, 0.22])
        value, grad = obj.with_gradient(x)
        assert obj(x) == pytest.approx(value)
        assert obj.log_density(x) == pytest.approx(-value)
        assert grad.shape == (2,)


# ═══════════════════════════════════════════════════════════════════════════
# Estimator
# ═══════════════════════════════════════════════════════════════════════════

class TestParameterEstimator:

    def test_freeze_state_space(self, birth_death_solver, small_birth_death_data):
        est = ParameterEstimator(LikelihoodEngine(birth_death_solver, small_birth_death_data))
        ss = est.freeze_state_space()
        assert ss is est.state_space
        assert ss.n_states == 121
        np.testing.assert_array_equal(est.engine.fsp_options.bounds, [120])

    def test_simplex_recovers_rate(self, birth_death_solver, birth_death_data):
        est = ParameterEstimator(_k_only(birth_death_solver, birth_death_data))
        fit = est.maximize_likelihood([7.0], backend="simplex")
        assert isinstance(fit, FitResult)
        assert fit.names == ["k"]
        assert fit.backend == "simplex"
        assert fit.parameters[0] == pytest.approx(10.0, rel=0.05)
        assert fit.result.x[0] == pytest.approx(np.log(fit.parameters[0]))
        assert est.parameters[0]() == pytest.approx(fit.parameters[0])
        assert est.last_fit is fit
        assert fit.chains == []

    def test_fit_improves_likelihood(self, birth_death_solver, birth_death_data):
        engine = _k_only(birth_death_solver, birth_death_data)
        start = engine.compute_likelihood([7.0]).log_likelihood
        fit = ParameterEstimator(engine).maximize_likelihood([7.0])
        assert fit.log_likelihood > start

    def test_gradient_recovers_rate_without_fsp_expansion(self, birth_death_solver, birth_death_data):
        est = ParameterEstimator(_k_only(birth_death_solver, birth_death_data))
        fit = est.maximize_likelihood([12.0], backend="gradient")
        assert fit.parameters[0] == pytest.approx(10.0, rel=0.05)

        fit_calls = birth_death_solver.calls[1:]
        assert fit_calls
        assert all(c["options"].fsp_tol == np.inf for c in fit_calls)
        assert all(c["sensitivity"] for c in fit_calls)
        assert all(c["state_space"] is est.state_space for c in fit_calls)

    def test_simplex_keeps_fsp_tolerance(self, birth_death_solver, small_birth_death_data):
        est = ParameterEstimator(_k_only(birth_death_solver, small_birth_death_data))
        est.maximize_likelihood([9.0], backend="simplex", max_iter=5)
        assert all(c["options"].fsp_tol == 1e-3 for c in birth_death_solver.calls)

    def test_default_guess_from_solver(self, birth_death_solver, small_birth_death_data):
        est = ParameterEstimator(_k_only(birth_death_solver, small_birth_death_data))
        est.maximize_likelihood(options={"max_iter": 2})
        np.testing.assert_allclose(birth_death_solver.calls[0]["parameters"], [10.0, 0.2])

    def test_metropolis_hastings_chains(self, birth_death_solver, small_birth_death_data):
        est = ParameterEstimator(_k_only(birth_death_solver, small_birth_death_data))
        fit = est.maximize_likelihood(
            [10.0],
            backend="metropolis_hastings",
            options={"number_of_samples": 30, "burn_in": 5, "num_chains": 2, "seed": 0},
        )
        assert len(fit.chains) == 2
        assert fit.result.diagnostics["samples"].shape == (30, 1)
        assert np.isfinite(fit.log_likelihood)

    def test_backend_instance(self, birth_death_solver, small_birth_death_data):
        est = ParameterEstimator(_k_only(birth_death_solver, small_birth_death_data))
        fit = est.maximize_likelihood([9.0], backend=Simplex(max_iter=3))
        assert fit.backend == "simplex"

    def test_options_need_backend_name(self, birth_death_solver, small_birth_death_data):
        est = ParameterEstimator(_k_only(birth_death_solver, small_birth_death_data))
        with pytest.raises(ConfigurationError):
            est.maximize_likelihood([9.0], backend=Simplex(), options={"max_iter": 3})

    def test_guess_size_checked(self, birth_death_solver, small_birth_death_data):
        est = ParameterEstimator(_k_only(birth_death_solver, small_birth_death_data))
        with pytest.raises(ConfigurationError, match="starting value"):
            est.maximize_likelihood([9.0, 0.2])

    def test_guess_must_be_positive(self, birth_death_solver, small_birth_death_data):
        est = ParameterEstimator(_k_only(birth_death_solver, small_birth_death_data))
        with pytest.raises(ConfigurationError, match="positive"):
            est.maximize_likelihood([-1.0])

    def test_display(self, birth_death_solver, small_birth_death_data, capsys):
        est = ParameterEstimator(_k_only(birth_death_solver, small_birth_death_data))
        est.maximize_likelihood([9.0], max_iter=5)
        est.display()
        out = capsys.readouterr().out
        assert "Parameter Estimation Results" in out
        assert "simplex" in out
        assert "k" in out
