# Copyright (c) Meta Platforms, Inc. and affiliates
import unittest

import torch
import torch.distributed as dist

from meshpipe import (
    Pipeline,
    PipelineExecutor,
    ProcessGroupCommunicator,
    RankMapping,
)

# torch.testing._internal.common_distributed requires "expecttest"
from torch.testing._internal.common_distributed import MultiProcessTestCase
from torch.testing._internal.common_utils import FILE_SCHEMA

from test_commons import AddOne, Scale


class TestRankMapping(unittest.TestCase):
    def test_lookup(self):
        mapping = RankMapping({10: 0, 11: 1, 12: 2}, 1)
        self.assertEqual(mapping.device_to_rank(12), 2)
        self.assertEqual(mapping.rank_to_device(0), 10)
        self.assertEqual(mapping.local_rank(), 1)
        self.assertEqual(mapping.local_device(), 11)

    def test_not_a_bijection(self):
        with self.assertRaises(RuntimeError):
            RankMapping({0: 0, 1: 0}, 0)

    def test_unknown_local_rank(self):
        with self.assertRaises(RuntimeError):
            RankMapping({0: 0, 1: 1}, 2)

    def test_unknown_device(self):
        mapping = RankMapping({0: 0}, 0)
        with self.assertRaises(KeyError):
            mapping.device_to_rank(5)


def two_stage_pipeline():
    pipe = Pipeline()
    x = pipe.add_input("x")
    s1 = pipe.add_stage(Scale(2.0), [x], [0], name="s1")
    comm = pipe.add_communication(s1.outputs[0], name="c")
    s2 = pipe.add_stage(AddOne(), [comm.dst], [1, 2], name="s2")
    pipe.set_outputs(s2.outputs)
    return pipe


# python -m unittest test_communicator.TestProcessGroupExecution.<test>
#               or
# pytest test_communicator.py -vsk <test>
class TestProcessGroupExecution(MultiProcessTestCase):
    @property
    def world_size(self) -> int:
        # one sender device, two receiver devices
        return 3

    @property
    def init_method(self) -> str:
        return f"{FILE_SCHEMA}{self.file_name}"

    def setUp(self):
        super().setUp()
        # starts world_size processes
        self._spawn_processes()

    def init_distributed(self):
        dist.init_process_group(
            init_method=self.init_method,
            backend="gloo",
            rank=self.rank,
            world_size=self.world_size,
        )

    def test_end_to_end(self):
        self.init_distributed()
        pipe = two_stage_pipeline()
        executor = PipelineExecutor(
            pipe,
            RankMapping.from_process_group(),
            ProcessGroupCommunicator(),
        )

        for i in range(2):
            x = torch.tensor([1.0, 2.0, 3.0]) + i
            (out,) = executor.run([x])
            if self.rank == 0:
                self.assertTrue(executor.is_placeholder_output(0))
                self.assertEqual(out.shape, torch.Size([3]))
            else:
                self.assertFalse(executor.is_placeholder_output(0))
                torch.testing.assert_close(out, x * 2 + 1)

        self.assertEqual(executor.runner_constructions, 2)
        self.assertEqual(executor.membership_computations, 2)
        dist.destroy_process_group()

    def test_send_recv(self):
        self.init_distributed()
        comm = ProcessGroupCommunicator()
        tensor = torch.full((4,), float(self.rank))
        # Every rank issues the same calls; rank 2 only watches
        comm.send_recv(1, 0, tensor)
        comm.send_recv(0, 0, tensor)
        if self.rank == 2:
            torch.testing.assert_close(tensor, torch.full((4,), 2.0))
        else:
            torch.testing.assert_close(tensor, torch.zeros(4))
        dist.destroy_process_group()

    def test_remapped_devices(self):
        self.init_distributed()
        pipe = two_stage_pipeline()
        # Rank r drives device 2 - r: device 0 (the sender) lives on rank 2
        mapping = RankMapping.from_process_group(device_ids=[2, 1, 0])
        self.assertEqual(mapping.local_device(), 2 - self.rank)
        executor = PipelineExecutor(pipe, mapping, ProcessGroupCommunicator())

        x = torch.tensor([1.0, 2.0, 3.0])
        (out,) = executor.run([x])
        if self.rank == 2:
            self.assertTrue(executor.is_placeholder_output(0))
        else:
            torch.testing.assert_close(out, torch.tensor([3.0, 5.0, 7.0]))
        dist.destroy_process_group()


if __name__ == "__main__":
    unittest.main()
