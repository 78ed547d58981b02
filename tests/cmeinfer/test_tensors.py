########################################################################################
##
##                                  TESTS FOR
##                        'tensors.py' and 'interfaces.py'
##
########################################################################################

# IMPORTS ==============================================================================

import numpy as np
import pytest

from cmeinfer.errors import AlignmentError, ConfigurationError
from cmeinfer.interfaces import DenseTensor, StateSpace, as_reducible
from cmeinfer.tensors import (
    align_solution,
    align_to_shape,
    apply_floor,
    marginalize,
    observed_axes,
    unobserved_axes,
)


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

class _IdentityPdo:
    def compute_observation_dist(self, p):
        return p

    def compute_observation_dist_diff(self, p, s, param_index):
        return s


class _ShiftPdo:
    """Measurement adds one to every count."""

    def _shift(self, t):
        a = t.as_dense_array()
        return DenseTensor(np.concatenate([[0.0], a]))

    def compute_observation_dist(self, p):
        return self._shift(p)

    def compute_observation_dist_diff(self, p, s, param_index):
        return self._shift(s)


# ═══════════════════════════════════════════════════════════════════════════
# Interfaces
# ═══════════════════════════════════════════════════════════════════════════

class TestDenseTensor:

    def test_sum_over_axes(self):
        a = np.arange(24.0).reshape(2, 3, 4)
        t = DenseTensor(a).sum_over_axes([0, 2])
        np.testing.assert_allclose(t.as_dense_array(), a.sum(axis=(0, 2)))

    def test_empty_axes_keeps_values(self):
        a = np.arange(6.0).reshape(2, 3)
        np.testing.assert_array_equal(DenseTensor(a).sum_over_axes([]).as_dense_array(), a)

    def test_axis_out_of_range(self):
        with pytest.raises(IndexError):
            DenseTensor(np.ones((2, 2))).sum_over_axes([2])

    def test_as_reducible_passthrough(self):
        t = DenseTensor(np.ones(3))
        assert as_reducible(t) is t
        assert isinstance(as_reducible(np.ones(3)), DenseTensor)


class TestStateSpace:

    def test_from_states_is_consistent(self):
        ss = StateSpace.from_states(np.array([[0, 1, 2], [0, 0, 1]]))
        assert ss.n_states == 3
        assert ss.is_consistent()
        assert ss.index_map[(2, 1)] == 2

    def test_stale_handle_detected(self):
        ss = StateSpace(states=np.zeros((1, 4), dtype=int), index_map={(0,): 0})
        assert not ss.is_consistent()


# ═══════════════════════════════════════════════════════════════════════════
# Species links
# ═══════════════════════════════════════════════════════════════════════════

class TestSpeciesAxes:

    def test_pairs_and_names(self):
        assert observed_axes(["a", "b", "c"], [("c", "col_c"), ("a", "col_a")]) == [0, 2]
        assert observed_axes(["a", "b", "c"], ["b"]) == [1]
        assert unobserved_axes(["a", "b", "c"], ["b"]) == [0, 2]

    def test_unknown_species(self):
        with pytest.raises(ConfigurationError, match="not model species"):
            observed_axes(["a"], ["z"])


# ═══════════════════════════════════════════════════════════════════════════
# Marginalisation and alignment
# ═══════════════════════════════════════════════════════════════════════════

class TestMarginalize:

    def test_noop_when_nothing_unobserved(self):
        t = DenseTensor(np.ones((2, 2)))
        assert marginalize(t, []) is t

    def test_sums_hidden_axes(self):
        a = np.random.default_rng(0).random((3, 4))
        out = marginalize(a, [1]).as_dense_array()
        np.testing.assert_allclose(out, a.sum(axis=1))


class TestAlignToShape:

    def test_idempotent_on_matching_shape(self):
        a = np.arange(6.0).reshape(2, 3)
        assert align_to_shape(a, (2, 3)) is a
        np.testing.assert_array_equal(align_to_shape(align_to_shape(a, (2, 3)), (2, 3)), a)

    def test_pads_with_zeros(self):
        out = align_to_shape(np.array([0.2, 0.3]), (5,))
        np.testing.assert_array_equal(out, [0.2, 0.3, 0.0, 0.0, 0.0])

    def test_truncates(self):
        out = align_to_shape(np.arange(10.0), (4,))
        np.testing.assert_array_equal(out, [0.0, 1.0, 2.0, 3.0])

    def test_mixed_pad_and_truncate(self):
        a = np.ones((4, 2))
        out = align_to_shape(a, (3, 3))
        assert out.shape == (3, 3)
        np.testing.assert_array_equal(out[:, 2], 0.0)
        np.testing.assert_array_equal(out[:, :2], 1.0)

    def test_axis_count_mismatch(self):
        with pytest.raises(AlignmentError, match=r"\(3, 3\)"):
            align_to_shape(np.ones((3, 3)), (3,))

    def test_alignment_error_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            align_to_shape(np.ones(3), (3, 1))


class TestApplyFloor:

    def test_floor(self):
        out = apply_floor(np.array([0.0, 1e-12, 0.5]), 1e-10)
        np.testing.assert_array_equal(out, [1e-10, 1e-10, 0.5])


class TestAlignSolution:

    def test_same_operations_on_p_and_sensitivities(self):
        rng = np.random.default_rng(1)
        p = rng.random((6, 3))
        s = [rng.random((6, 3)), rng.random((6, 3))]
        res = align_solution(p, s, target_shape=(4,), unobserved=[1])
        np.testing.assert_allclose(res.p, p.sum(axis=1)[:4])
        for sk, out in zip(s, res.sensitivities):
            np.testing.assert_allclose(out, sk.sum(axis=1)[:4])
            assert out.shape == res.p.shape

    def test_discarded_mass_reported(self):
        p = np.array([0.5, 0.3, 0.2])
        res = align_solution(p, target_shape=(2,))
        assert res.discarded_mass == pytest.approx(0.2)

    def test_warn_policy(self):
        with pytest.warns(UserWarning, match="discards probability mass"):
            align_solution(np.array([0.5, 0.3, 0.2]), target_shape=(2,), truncation="warn")

    def test_renormalize_policy(self):
        p = np.array([0.5, 0.3, 0.2])
        res = align_solution(p, target_shape=(2,), truncation="renormalize")
        assert res.p.sum() == pytest.approx(1.0)
        np.testing.assert_allclose(res.p, [0.625, 0.375])

    def test_renormalize_sensitivity_matches_finite_difference(self):
        def p_of(theta):
            return np.array([theta, 2 * theta**2, 1.0 - theta - 2 * theta**2 + 0.3])

        theta, h = 0.2, 1e-6
        s = (p_of(theta + h) - p_of(theta - h)) / (2 * h)
        res = align_solution(p_of(theta), [s], target_shape=(2,), truncation="renormalize")
        up = align_solution(p_of(theta + h), target_shape=(2,), truncation="renormalize").p
        dn = align_solution(p_of(theta - h), target_shape=(2,), truncation="renormalize").p
        np.testing.assert_allclose(res.sensitivities[0], (up - dn) / (2 * h), rtol=1e-5)

    def test_unknown_policy(self):
        with pytest.raises(ConfigurationError):
            align_solution(np.ones(2), target_shape=(2,), truncation="clip")

    def test_floor_applied(self):
        res = align_solution(np.array([0.0, 1.0]), target_shape=(3,))
        np.testing.assert_array_equal(res.p, [0.0, 1.0, 0.0])
        np.testing.assert_array_equal(res.p_floored, [1e-10, 1.0, 1e-10])

    def test_axis_order_transposes(self):
        p = np.arange(6.0).reshape(2, 3)
        res = align_solution(p, target_shape=(3, 2), axis_order=[1, 0])
        np.testing.assert_array_equal(res.p, p.T)

    def test_identity_pdo_changes_nothing(self):
        p = np.array([0.1, 0.6, 0.3])
        s = [np.array([1.0, -2.0, 1.0])]
        plain = align_solution(p, s, target_shape=(3,))
        dist = align_solution(p, s, target_shape=(3,), pdo=_IdentityPdo())
        np.testing.assert_allclose(dist.p, plain.p)
        np.testing.assert_allclose(dist.sensitivities[0], plain.sensitivities[0])

    def test_pdo_applied_before_alignment(self):
        p = np.array([0.4, 0.6])
        res = align_solution(p, [np.array([1.0, -1.0])], target_shape=(3,), pdo=_ShiftPdo())
        np.testing.assert_allclose(res.p, [0.0, 0.4, 0.6])
        np.testing.assert_allclose(res.sensitivities[0], [0.0, 1.0, -1.0])
