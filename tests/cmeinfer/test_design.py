########################################################################################
##
##                                  TESTS FOR
##                                  'design.py'
##
########################################################################################

# IMPORTS ==============================================================================

import numpy as np
import pytest

from cmeinfer.design import (
    Converged,
    Scanning,
    SubspaceCriterion,
    determinant_criterion,
    get_criterion,
    inverse_trace_criterion,
    is_locally_optimal,
    optimize_cell_counts,
    smallest_eigenvalue_criterion,
    trace_criterion,
)
from cmeinfer.fim import total_fim


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _random_fims(n_times, n_params, seed):
    rng = np.random.default_rng(seed)
    out = []
    for _ in range(n_times):
        a = rng.standard_normal((n_params, n_params))
        out.append(a @ a.T + 0.05 * np.eye(n_params))
    return out


def _assert_no_improving_move(fims, counts, criterion):
    """Exhaustive single-unit exchange check on an allocation."""
    counts = np.asarray(counts)
    current = criterion(total_fim(fims, counts))
    for i in range(counts.size):
        if counts[i] == 0:
            continue
        for k in range(counts.size):
            if k == i:
                continue
            moved = counts.copy()
            moved[i] -= 1
            moved[k] += 1
            tol = 1e-9 * max(1.0, abs(current))
            assert not criterion(total_fim(fims, moved)) < current - tol, (i, k)


# ═══════════════════════════════════════════════════════════════════════════
# Criteria
# ═══════════════════════════════════════════════════════════════════════════

class TestCriteria:

    def test_values(self):
        F = np.diag([2.0, 4.0])
        assert determinant_criterion(F) == pytest.approx(-8.0)
        assert smallest_eigenvalue_criterion(F) == pytest.approx(-2.0)
        assert trace_criterion(F) == pytest.approx(-6.0)
        assert inverse_trace_criterion(F) == pytest.approx(0.75)

    def test_inverse_trace_singular(self):
        assert inverse_trace_criterion(np.diag([1.0, 0.0])) == np.inf

    def test_subspace(self):
        assert SubspaceCriterion([0])(np.diag([2.0, 4.0])) == pytest.approx(0.5)
        assert SubspaceCriterion([0, 1])(np.diag([2.0, 4.0])) == pytest.approx(0.125)

    def test_subspace_singular_is_infinite(self):
        assert SubspaceCriterion([1])(np.diag([1.0, 0.0])) == np.inf

    def test_subspace_index_checked(self):
        with pytest.raises(IndexError):
            SubspaceCriterion([3])(np.eye(2))

    def test_get_criterion_labels(self):
        assert get_criterion("Determinant") is determinant_criterion
        assert get_criterion("Smallest Eigenvalue") is smallest_eigenvalue_criterion
        assert get_criterion("Trace") is trace_criterion
        assert get_criterion("E") is smallest_eigenvalue_criterion
        assert isinstance(get_criterion([0, 1]), SubspaceCriterion)

        def custom(F):
            return 0.0

        assert get_criterion(custom) is custom

    def test_get_criterion_unknown(self):
        with pytest.raises(ValueError, match="Unknown design criterion"):
            get_criterion("G-optimal")


# ═══════════════════════════════════════════════════════════════════════════
# Search
# ═══════════════════════════════════════════════════════════════════════════

class TestOptimizeCellCounts:

    def test_trace_prefers_first_of_tied_time_points(self):
        fims = [np.diag([1.0, 1.0]), np.diag([2.0, 0.5]), np.diag([0.5, 2.0])]
        res = optimize_cell_counts(fims, 10, criterion="trace")
        np.testing.assert_array_equal(res.cell_counts, [0, 10, 0])
        assert res.n_moves == 10
        assert res.n_sweeps == 2
        assert res.criterion_value == pytest.approx(-25.0)

    def test_smallest_eigenvalue_balances(self):
        fims = [np.diag([1.0, 0.0]), np.diag([0.0, 1.0])]
        res = optimize_cell_counts(fims, 10)
        np.testing.assert_array_equal(res.cell_counts, [5, 5])
        assert res.evaluation.is_identifiable

    def test_budget_preserved(self):
        fims = _random_fims(5, 3, seed=11)
        res = optimize_cell_counts(fims, 37, criterion="determinant")
        assert res.cell_counts.sum() == 37
        assert np.all(res.cell_counts >= 0)

    @pytest.mark.parametrize("seed", [7, 8, 9])
    @pytest.mark.parametrize(
        "crit", ["determinant", "smallest_eigenvalue", "trace", "inverse_trace", [0, 2]]
    )
    def test_result_is_local_optimum(self, seed, crit):
        fims = _random_fims(6, 3, seed=seed)
        res = optimize_cell_counts(fims, 25, criterion=crit)
        _assert_no_improving_move(fims, res.cell_counts, get_criterion(crit))
        assert is_locally_optimal(fims, res.cell_counts, crit)

    def test_never_worse_than_seed(self):
        fims = _random_fims(4, 2, seed=5)
        seed = np.array([3, 3, 3, 3])
        res = optimize_cell_counts(fims, criterion="determinant", initial=seed)
        assert res.criterion_value <= determinant_criterion(total_fim(fims, seed))
        np.testing.assert_array_equal(seed, [3, 3, 3, 3])

    def test_zero_budget(self):
        res = optimize_cell_counts([np.eye(2), np.eye(2)], 0)
        np.testing.assert_array_equal(res.cell_counts, [0, 0])
        assert res.n_moves == 0
        assert res.evaluation.mle_covariance is None

    def test_seed_budget_mismatch(self):
        with pytest.raises(ValueError, match="budget"):
            optimize_cell_counts([np.eye(2), np.eye(2)], 5, initial=[1, 1])

    def test_seed_must_be_non_negative_integers(self):
        with pytest.raises(ValueError):
            optimize_cell_counts([np.eye(2), np.eye(2)], initial=[-1, 3])
        with pytest.raises(ValueError):
            optimize_cell_counts([np.eye(2), np.eye(2)], initial=[0.5, 1.5])

    def test_budget_required_without_seed(self):
        with pytest.raises(ValueError):
            optimize_cell_counts([np.eye(2)])

    def test_no_time_points(self):
        with pytest.raises(ValueError):
            optimize_cell_counts([], 3)


class TestLocalOptimality:

    def test_detects_improving_move(self):
        fims = [np.diag([1.0, 0.0]), np.diag([0.0, 1.0])]
        assert not is_locally_optimal(fims, [10, 0], "smallest_eigenvalue")
        assert is_locally_optimal(fims, [5, 5], "smallest_eigenvalue")


class TestSearchStates:

    def test_states_are_values(self):
        assert Scanning(2, moved=True) == Scanning(2, True)
        assert Scanning(0) != Scanning(1)
        assert Converged() == Converged()
