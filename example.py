# Copyright (c) Meta Platforms, Inc. and affiliates
# Run with: torchrun --nproc-per-node 3 example.py
import os

import torch
import torch.distributed as dist

from meshpipe import (
    Pipeline,
    PipelineExecutor,
    ProcessGroupCommunicator,
    RankMapping,
)


class MyNetworkBlock(torch.nn.Module):
    def __init__(self, in_dim, out_dim):
        super().__init__()
        self.lin = torch.nn.Linear(in_dim, out_dim)

    def forward(self, x):
        x = self.lin(x)
        x = torch.relu(x)
        return x


# `torchrun` defines `LOCAL_RANK` and `WORLD_SIZE`, the index of this process
# within the set of processes and the total number of processes.
#
# To learn more about `torchrun`, see
# https://pytorch.org/docs/stable/elastic/run.html
local_rank = int(os.environ["LOCAL_RANK"])
world_size = int(os.environ["WORLD_SIZE"])
assert world_size == 3, "This example expects 3 processes"

dist.init_process_group(backend="gloo", rank=local_rank, world_size=world_size)

# Every rank builds the same modules from the same seed, so that replicated
# stages hold the same parameters everywhere
torch.manual_seed(0)

# Two blocks on device 0, then the output projection replicated on
# devices 1 and 2. The value crossing from {0} to {1, 2} is sent from 0 to
# both 1 and 2.
pipe = Pipeline.from_sequential(
    [
        MyNetworkBlock(512, 1024),
        MyNetworkBlock(1024, 256),
        torch.nn.Linear(256, 10),
    ],
    [[0], [0], [1, 2]],
)
if local_rank == 0:
    print(pipe)

executor = PipelineExecutor(
    pipe,
    RankMapping.from_process_group(),
    ProcessGroupCommunicator(),
)

x = torch.randn(32, 512)
for step in range(2):
    (out,) = executor.run([x])
    if executor.is_placeholder_output(0):
        print(f"[{local_rank}] step {step}: placeholder {tuple(out.shape)}")
    else:
        print(f"[{local_rank}] step {step}: output norm {out.norm():.4f}")

dist.destroy_process_group()
