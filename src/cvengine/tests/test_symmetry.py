"""
Tests for the pairwise reduction engine.

Derivatives with respect to atomic positions are validated against
central finite differences of the complete pass.
"""

import warnings

import pytest
import torch

from ..config import EngineConfig
from ..exceptions import (ConfigurationError, DegenerateWeightWarning,
                          NumericalError, ZeroWeightError)
from ..multivalue import MultiValue
from ..neighbors import AllPairsNeighbors, ExplicitNeighbors
from ..switching import CosineCutoff, RationalSwitch
from ..symmetry import SymmetryFunction
from ..tasks import PairwiseTask
from ..value import DerivativeArena


def dense_derivatives(value, nslots):
    """(numel, nslots) derivative matrix of a Value."""
    dense = torch.zeros(value.numel, nslots, dtype=torch.float64)
    dense[:, value.derivative_indices] = value.derivatives
    return dense


def numerical_derivatives(action, positions, provider, epsilon=1e-6):
    n = positions.shape[0]
    result = torch.zeros(action.value.numel, 3 * n, dtype=torch.float64)
    for atom in range(n):
        for k in range(3):
            pos_fwd = positions.clone()
            pos_fwd[atom, k] += epsilon
            f_fwd = action.calculate(pos_fwd, provider).data.reshape(-1)
            pos_bwd = positions.clone()
            pos_bwd[atom, k] -= epsilon
            f_bwd = action.calculate(pos_bwd, provider).data.reshape(-1)
            result[:, 3 * atom + k] = (f_fwd - f_bwd) / (2.0 * epsilon)
    return result


@pytest.fixture
def tetrahedron():
    """Central atom with four neighbors along the tetrahedral directions."""
    return torch.tensor([[0.0, 0.0, 0.0],
                         [1.0, 1.0, 1.0],
                         [1.0, -1.0, -1.0],
                         [-1.0, 1.0, -1.0],
                         [-1.0, -1.0, 1.0]], dtype=torch.float64)


@pytest.fixture
def cluster():
    """Small random cluster without overlapping atoms."""
    torch.manual_seed(11)
    grid = torch.tensor([[i, j, k] for i in range(2) for j in range(2)
                         for k in range(2)], dtype=torch.float64) * 1.4
    return grid + 0.3 * torch.rand(8, 3, dtype=torch.float64)


class TestTetrahedral:

    def test_perfect_tetrahedron_is_one(self, tetrahedron):
        tt = SymmetryFunction("tetrahedral")
        provider = ExplicitNeighbors([[1, 2, 3, 4], [], [], [], []])
        value = tt.calculate(tetrahedron, provider, active=[0])
        assert value.shape == (1,)
        assert value.get(0) == pytest.approx(1.0, abs=1e-12)

    def test_perfect_tetrahedron_has_zero_gradient(self, tetrahedron):
        # distorting a perfect tetrahedron can only lower the order
        tt = SymmetryFunction("tetrahedral")
        provider = ExplicitNeighbors([[1, 2, 3, 4], [], [], [], []])
        value = tt.calculate(tetrahedron, provider, active=[0])
        assert torch.allclose(value.derivatives,
                              torch.zeros_like(value.derivatives),
                              atol=1e-12)

    @pytest.mark.parametrize("kernel", ["tetrahedral", "simplecubic",
                                        "direction"])
    def test_position_derivatives(self, kernel, cluster):
        tt = SymmetryFunction(kernel, switch=RationalSwitch(r_0=1.2))
        provider = AllPairsNeighbors()
        value = tt.calculate(cluster, provider)
        analytical = dense_derivatives(value, 3 * len(cluster))
        numerical = numerical_derivatives(tt, cluster, provider)
        assert torch.allclose(analytical, numerical, rtol=1e-6, atol=1e-7)

    def test_unnormalized_position_derivatives(self, cluster):
        tt = SymmetryFunction("tetrahedral", switch=CosineCutoff(r_cut=2.5),
                              normalized=False)
        provider = AllPairsNeighbors(cutoff=2.5)
        value = tt.calculate(cluster, provider)
        analytical = dense_derivatives(value, 3 * len(cluster))
        numerical = numerical_derivatives(tt, cluster, provider)
        assert torch.allclose(analytical, numerical, rtol=1e-6, atol=1e-7)

    def test_translation_invariance(self, cluster):
        tt = SymmetryFunction("tetrahedral", switch=RationalSwitch(r_0=1.2))
        value = tt.calculate(cluster, AllPairsNeighbors())
        dense = dense_derivatives(value, 3 * len(cluster))
        # sum over atoms of d/dx_k vanishes for every k
        net = dense.reshape(value.numel, len(cluster), 3).sum(dim=1)
        assert torch.allclose(net, torch.zeros_like(net), atol=1e-10)

    def test_vector_kernel_shape(self, cluster):
        dv = SymmetryFunction("direction", switch=RationalSwitch(r_0=1.2))
        value = dv.calculate(cluster, AllPairsNeighbors())
        assert value.shape == (8, 3)
        assert value.derivatives.shape[0] == 24


class TestWeightChannel:

    def _task(self):
        d = torch.tensor([[1.0, 0.2, 0.1],
                          [-0.3, 1.1, 0.4],
                          [0.2, -0.5, -1.3]], dtype=torch.float64)
        return PairwiseTask(index=0, neighbors=torch.tensor([1, 2, 3]),
                            displacements=d)

    def test_weight_derivatives(self):
        tt = SymmetryFunction("tetrahedral")
        tt.setup(4)
        task = self._task()
        weights = torch.tensor([1.0, 0.5, 0.25], dtype=torch.float64)
        myvals = tt.accumulator(task, weights)
        tt.compute_task(task, weights, myvals)

        f, _ = tt.kernel.evaluate(task.displacements)
        W = float(weights.sum())
        N = float((weights * f[:, 0]).sum())
        assert myvals.get_value(0) == pytest.approx(N)
        assert myvals.get_weight(0) == pytest.approx(W)
        for j in range(3):
            assert myvals.get_weight_derivative(0, j) == pytest.approx(
                float(f[j, 0]))

        result = tt.normalize(task, myvals)
        S = N / W
        assert float(result.value[0]) == pytest.approx(S)
        for j in range(3):
            assert float(result.weight_derivatives[j][0]) == pytest.approx(
                (float(f[j, 0]) - S) / W)

    def test_weight_derivatives_by_finite_differences(self):
        tt = SymmetryFunction("tetrahedral")
        tt.setup(4)
        task = self._task()
        weights = torch.tensor([1.0, 0.5, 0.25], dtype=torch.float64)
        myvals = tt.accumulator(task, weights)
        tt.compute_task(task, weights, myvals)
        result = tt.normalize(task, myvals)

        epsilon = 1e-6
        for j in range(3):
            values = []
            for sign in (1.0, -1.0):
                w = weights.clone()
                w[j] += sign * epsilon
                mv = tt.accumulator(task, w)
                tt.compute_task(task, w, mv)
                values.append(float(tt.normalize(task, mv).value[0]))
            numerical = (values[0] - values[1]) / (2.0 * epsilon)
            assert float(result.weight_derivatives[j][0]) == pytest.approx(
                numerical, rel=1e-6, abs=1e-9)

    def test_central_atom_gets_opposite_sign(self):
        tt = SymmetryFunction("tetrahedral")
        tt.setup(2)
        task = PairwiseTask(index=0, neighbors=torch.tensor([1]),
                            displacements=torch.tensor([[0.9, 0.3, -0.2]],
                                                       dtype=torch.float64))
        myvals = MultiValue(1, tt.arena.nslots, 1)
        tt.compute_task(task, torch.tensor([0.7], dtype=torch.float64),
                        myvals)
        central = myvals.derivatives[0, 0:3]
        neighbor = myvals.derivatives[0, 3:6]
        assert torch.allclose(central, -neighbor)

    def test_accumulator_holds_touched_slots_only(self):
        tt = SymmetryFunction("tetrahedral")
        tt.setup(100)
        task = PairwiseTask(index=40, neighbors=torch.tensor([57, 3, 20, 8]),
                            displacements=torch.rand(4, 3,
                                                     dtype=torch.float64))
        weights = torch.tensor([1.0, 0.5, 0.25, 0.0], dtype=torch.float64)
        myvals = tt.accumulator(task, weights)
        assert myvals.nderivatives == 12
        expected = [3 * a + k for a in (3, 20, 40, 57) for k in range(3)]
        assert myvals.slots.tolist() == expected

    def test_sparse_and_full_accumulators_agree(self):
        torch.manual_seed(2)
        tt = SymmetryFunction("tetrahedral")
        tt.setup(6)
        task = PairwiseTask(index=4, neighbors=torch.tensor([0, 5, 2]),
                            displacements=torch.rand(3, 3,
                                                     dtype=torch.float64)
                            + 0.5)
        weights = torch.tensor([0.9, 0.4, 0.7], dtype=torch.float64)
        weight_gradients = torch.rand(3, 3, dtype=torch.float64)

        dense = []
        for myvals in (tt.accumulator(task, weights),
                       MultiValue(1, tt.arena.nslots, 3)):
            tt.compute_task(task, weights, myvals)
            result = tt.normalize(task, myvals, weight_gradients)
            block = torch.zeros(1, tt.arena.nslots, dtype=torch.float64)
            block[:, result.derivative_indices] = result.derivatives
            dense.append(block)
        assert torch.allclose(dense[0], dense[1], rtol=1e-14, atol=1e-15)

    def test_accumulator_of_another_task(self):
        tt = SymmetryFunction("tetrahedral")
        tt.setup(4)
        task = self._task()
        other = PairwiseTask(index=3, neighbors=torch.tensor([2]),
                             displacements=torch.ones(1, 3,
                                                      dtype=torch.float64))
        weights = torch.ones(3, dtype=torch.float64)
        with pytest.raises(ConfigurationError, match="does not hold"):
            tt.compute_task(task, weights, tt.accumulator(other))


class TestDegenerateCases:

    def test_zero_weight_is_reported(self, tetrahedron):
        tt = SymmetryFunction("tetrahedral")
        provider = ExplicitNeighbors([[], [0], [0], [0], [0]])
        with pytest.raises(ZeroWeightError) as excinfo:
            tt.calculate(tetrahedron, provider, active=[0])
        assert excinfo.value.task == 0

    def test_normalize_without_neighbors(self):
        tt = SymmetryFunction("tetrahedral")
        tt.setup(3)
        task = PairwiseTask(index=2, neighbors=torch.zeros(0,
                                                           dtype=torch.long),
                            displacements=torch.zeros(0, 3,
                                                      dtype=torch.float64))
        myvals = tt.accumulator(task)
        tt.compute_task(task, torch.zeros(0, dtype=torch.float64), myvals)
        with pytest.raises(ZeroWeightError, match="task 2"):
            tt.normalize(task, myvals)

    def test_zero_policy_substitutes_and_flags(self, tetrahedron):
        tt = SymmetryFunction("tetrahedral",
                              config=EngineConfig(degenerate="zero"))
        provider = ExplicitNeighbors([[1, 2, 3, 4], [], [0], [], []])
        with pytest.warns(DegenerateWeightWarning):
            value = tt.calculate(tetrahedron, provider, active=[0, 1, 2])
        assert torch.isfinite(value.data).all()
        assert torch.isfinite(value.derivatives).all()
        assert tt.degenerate.tolist() == [False, True, False]
        assert value.get(1) == 0.0
        assert value.derivative_map(1) == {}

    def test_zero_distance_fails_loudly(self, tetrahedron):
        positions = tetrahedron.clone()
        positions[3] = positions[0]
        tt = SymmetryFunction("tetrahedral")
        provider = ExplicitNeighbors([[1, 2, 3, 4], [], [], [], []])
        with pytest.raises(NumericalError, match="zero distance") as excinfo:
            tt.calculate(positions, provider, active=[0])
        assert excinfo.value.task == 0

    def test_non_finite_positions(self, tetrahedron):
        positions = tetrahedron.clone()
        positions[2, 1] = float("nan")
        tt = SymmetryFunction("tetrahedral", switch=RationalSwitch(r_0=1.0))
        provider = ExplicitNeighbors([[1, 2, 3, 4], [], [], [], []])
        with pytest.raises(NumericalError, match="non-finite"):
            tt.calculate(positions, provider, active=[0])

    def test_missing_neighbor_provider(self, tetrahedron):
        with pytest.raises(ConfigurationError):
            SymmetryFunction("tetrahedral").calculate(tetrahedron)


class TestCutoff:

    def test_far_neighbor_vanishes_identically(self, tetrahedron):
        positions = torch.cat([tetrahedron * 0.8,
                               torch.tensor([[9.0, 0.5, -0.2]],
                                            dtype=torch.float64)])
        switch = CosineCutoff(r_cut=3.0)

        with_far = SymmetryFunction("tetrahedral", switch=switch)
        v1 = with_far.calculate(
            positions, ExplicitNeighbors([[1, 2, 3, 4, 5]] + [[]] * 5),
            active=[0])
        without = SymmetryFunction("tetrahedral", switch=switch)
        v2 = without.calculate(
            positions, ExplicitNeighbors([[1, 2, 3, 4]] + [[]] * 5),
            active=[0])

        assert torch.equal(v1.data, v2.data)
        assert torch.equal(v1.derivative_indices, v2.derivative_indices)
        assert torch.equal(v1.derivatives, v2.derivatives)
        far_slots = set(range(15, 18))
        assert not far_slots & set(v1.derivative_map(0))


class TestPass:

    def test_order_invariance(self, cluster):
        tt = SymmetryFunction("tetrahedral", switch=RationalSwitch(r_0=1.2))
        provider = AllPairsNeighbors()
        forward = tt.calculate(cluster, provider, order="forward")
        data_fwd = forward.data.clone()
        deriv_fwd = forward.derivatives.clone()
        reversed_ = tt.calculate(cluster, provider, order="reversed")
        assert torch.equal(data_fwd, reversed_.data)
        assert torch.equal(deriv_fwd, reversed_.derivatives)

    def test_active_set_can_shrink(self, cluster):
        tt = SymmetryFunction("tetrahedral", switch=RationalSwitch(r_0=1.2))
        provider = AllPairsNeighbors()
        full = tt.calculate(cluster, provider).data.clone()
        part = tt.calculate(cluster, provider, active=[5, 1])
        assert part.shape == (2,)
        assert torch.allclose(part.data, full[[1, 5]])

    def test_population_sum_and_mean(self, cluster):
        tt = SymmetryFunction("tetrahedral", switch=RationalSwitch(r_0=1.2))
        per_atom, total, mean = tt.calculate_population(
            cluster, AllPairsNeighbors())
        assert total.get() == pytest.approx(float(per_atom.data.sum()))
        assert mean.get() == pytest.approx(float(per_atom.data.mean()))
        assert total.name == "tetrahedral.sum"
        dense = dense_derivatives(per_atom, 24).sum(dim=0)
        assert torch.allclose(dense_derivatives(total, 24)[0], dense)

    def test_without_derivatives(self, cluster):
        tt = SymmetryFunction("tetrahedral", switch=RationalSwitch(r_0=1.2),
                              config=EngineConfig(derivatives=False))
        value = tt.calculate(cluster, AllPairsNeighbors())
        assert value.nderivatives == 0
        reference = SymmetryFunction("tetrahedral",
                                     switch=RationalSwitch(r_0=1.2))
        expected = reference.calculate(cluster, AllPairsNeighbors())
        assert torch.allclose(value.data, expected.data)

    def test_shared_arena(self, cluster):
        arena = DerivativeArena()
        arena.add_block("box", 9)
        arena.add_block("positions", 24)
        tt = SymmetryFunction("tetrahedral", switch=RationalSwitch(r_0=1.2))
        tt.setup(8, arena=arena)
        value = tt.calculate(cluster, AllPairsNeighbors())
        assert int(value.derivative_indices.min()) >= 9

    def test_no_warning_for_regular_pass(self, cluster):
        tt = SymmetryFunction("tetrahedral", switch=RationalSwitch(r_0=1.2))
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            tt.calculate(cluster, AllPairsNeighbors())

    def test_worker_pool_gives_the_same_result(self, cluster):
        switch = RationalSwitch(r_0=1.2)
        serial = SymmetryFunction("tetrahedral", switch=switch).calculate(
            cluster, AllPairsNeighbors())
        pooled = SymmetryFunction("tetrahedral", switch=switch).calculate(
            cluster, AllPairsNeighbors(), cores=2)
        assert torch.equal(serial.data, pooled.data)
        assert torch.equal(serial.derivative_indices,
                           pooled.derivative_indices)
        assert torch.equal(serial.derivatives, pooled.derivatives)


class TestThresholdCount:

    def _count(self, positions, more_than=True):
        tt = SymmetryFunction("tetrahedral", switch=RationalSwitch(r_0=1.2))
        tt.calculate(positions, AllPairsNeighbors())
        return tt, tt.threshold_count(RationalSwitch(r_0=0.3, d_0=0.1),
                                      more_than=more_than)

    def test_value(self, cluster):
        tt, count = self._count(cluster)
        s, _ = RationalSwitch(r_0=0.3, d_0=0.1)(tt.value.data)
        assert count.name == "tetrahedral.morethan"
        assert count.get() == pytest.approx(float((1.0 - s).sum()))

    def test_more_and_less_than_add_up(self, cluster):
        tt, more = self._count(cluster)
        less = tt.threshold_count(RationalSwitch(r_0=0.3, d_0=0.1),
                                  more_than=False)
        assert more.get() + less.get() == pytest.approx(8.0)
        assert torch.allclose(more.derivatives, -less.derivatives)

    def test_position_derivatives(self, cluster):
        _, count = self._count(cluster)
        analytical = dense_derivatives(count, 24)[0]
        epsilon = 1e-6
        numerical = torch.zeros(24, dtype=torch.float64)
        for atom in range(8):
            for k in range(3):
                values = []
                for sign in (1.0, -1.0):
                    positions = cluster.clone()
                    positions[atom, k] += sign * epsilon
                    values.append(self._count(positions)[1].get())
                numerical[3 * atom + k] = (values[0] - values[1]) / (
                    2.0 * epsilon)
        assert torch.allclose(analytical, numerical, rtol=1e-6, atol=1e-7)

    def test_vector_kernel_is_rejected(self, cluster):
        dv = SymmetryFunction("direction", switch=RationalSwitch(r_0=1.2))
        dv.calculate(cluster, AllPairsNeighbors())
        with pytest.raises(ConfigurationError, match="scalar kernel"):
            dv.threshold_count(RationalSwitch(r_0=0.5))
