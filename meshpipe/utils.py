# Copyright (c) Meta Platforms, Inc. and affiliates
from typing import Any, Tuple

import torch


def as_output_tuple(output: Any) -> Tuple[Any, ...]:
    """
    Unify the output form of a stage sub-graph to a tuple, so that output
    index `i` always corresponds to the stage's `i`-th declared output.
    """
    if type(output) is list:
        # export and some fx passes return outputs in list format
        output = tuple(output)
    return output if type(output) is tuple else (output,)


def make_tensor_from_meta(
    example: torch.Tensor,
    device: torch.device,
) -> torch.Tensor:
    """
    Create an uninitialized tensor with the size, dtype and layout of
    `example` (a fake or meta tensor) on `device`.
    """
    return torch.empty(
        example.size(),
        dtype=example.dtype,
        layout=example.layout,
        device=device,
    )

