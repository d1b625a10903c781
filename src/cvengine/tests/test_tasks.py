import numpy as np
import pytest
import torch

from ..exceptions import ConfigurationError
from ..neighbors import AllPairsNeighbors, ExplicitNeighbors
from ..tasks import (GridTask, TaskList, combine, grid_tasks, order_tasks,
                     pairwise_tasks, run_tasks)


def square_index(task):
    return task.index ** 2


class TestTaskList:

    def test_all_active_by_default(self):
        tasks = TaskList(5)
        assert len(tasks) == 5
        assert tasks.active.tolist() == [0, 1, 2, 3, 4]

    def test_activate_sorts_and_deduplicates(self):
        tasks = TaskList(6)
        tasks.activate([4, 1, 4, 0])
        assert tasks.active.tolist() == [0, 1, 4]
        assert tasks.ordered("reversed").tolist() == [4, 1, 0]

    def test_activate_out_of_range(self):
        tasks = TaskList(3)
        with pytest.raises(ConfigurationError, match="out of range"):
            tasks.activate([0, 3])

    def test_deactivate_and_reactivate(self):
        tasks = TaskList(3)
        tasks.deactivate_all()
        assert len(tasks) == 0
        tasks.activate()
        assert len(tasks) == 3

    def test_unknown_order(self):
        with pytest.raises(ConfigurationError, match="unknown task order"):
            TaskList(3).ordered("random")


class TestDescriptors:

    def test_grid_tasks_in_c_order(self):
        tasks = grid_tasks((2, 3))
        assert [t.index for t in tasks] == list(range(6))
        assert tasks[4].node == (1, 1)
        flat = np.ravel_multi_index(tasks[5].node, (2, 3))
        assert flat == 5

    def test_scalar_grid_has_one_task(self):
        assert grid_tasks(()) == [GridTask(index=0, node=())]

    def test_pairwise_tasks(self):
        positions = torch.tensor([[0.0, 0.0, 0.0],
                                  [1.0, 0.0, 0.0],
                                  [0.0, 2.0, 0.0]], dtype=torch.float64)
        tasks = pairwise_tasks(positions, AllPairsNeighbors(cutoff=1.5),
                               [0, 2])
        assert [t.index for t in tasks] == [0, 2]
        assert tasks[0].neighbors.tolist() == [1]
        assert tasks[0].displacements.tolist() == [[1.0, 0.0, 0.0]]
        assert tasks[1].n_neighbors == 0

    def test_explicit_neighbors_keep_their_order(self):
        positions = torch.rand(4, 3, dtype=torch.float64)
        provider = ExplicitNeighbors([[3, 1, 2], [], [], []])
        task = pairwise_tasks(positions, provider, [0])[0]
        assert task.neighbors.tolist() == [3, 1, 2]
        assert torch.allclose(task.displacements[0],
                              positions[3] - positions[0])


class TestScheduler:

    def test_order_tasks(self):
        tasks = grid_tasks((4,))
        shuffled = [tasks[2], tasks[0], tasks[3], tasks[1]]
        assert [t.index for t in order_tasks(shuffled)] == [0, 1, 2, 3]
        assert [t.index for t in order_tasks(shuffled, "reversed")] == \
            [3, 2, 1, 0]

    def test_results_are_keyed_by_task(self):
        tasks = grid_tasks((5,))
        forward = run_tasks(square_index, tasks)
        backward = run_tasks(square_index, tasks, order="reversed")
        assert forward == backward == {0: 0, 1: 1, 2: 4, 3: 9, 4: 16}

    def test_worker_pool(self):
        tasks = grid_tasks((7,))
        assert run_tasks(square_index, tasks, cores=2) == \
            run_tasks(square_index, tasks, cores=1)

    def test_combine(self):
        values = torch.tensor([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]],
                              dtype=torch.float64)
        summed = combine(values, [2, 0, 2], 4)
        assert summed.tolist() == [[3.0, 4.0], [0.0, 0.0],
                                   [6.0, 8.0], [0.0, 0.0]]
