# Copyright (c) Meta Platforms, Inc. and affiliates
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence, Tuple

import torch
from torch._subclasses.fake_tensor import FakeTensorMode
from torch.fx.node import map_aggregate
from torch.profiler import record_function
from packaging import version

from meshpipe import config
from meshpipe.debug import map_debug_info
from meshpipe.IR import PipelineStage
from meshpipe.utils import as_output_tuple, make_tensor_from_meta

logger = logging.getLogger(__name__)

# Fake tensor propagation with materialized parameters needs PT 2.1+
TORCH_REQUIRED_VERSION = version.parse("2.1")

torch_version = version.parse(torch.__version__)
assert (torch_version.major, torch_version.minor) >= (  # type: ignore
    TORCH_REQUIRED_VERSION.major,  # type: ignore
    TORCH_REQUIRED_VERSION.minor,  # type: ignore
), "meshpipe requires PyTorch >= 2.1"


class StageRunner(ABC):
    """
    Executes one stage. Created once per stage and reused across runs.
    """

    @abstractmethod
    def run(self, inputs: Sequence[Any]) -> Tuple[Any, ...]:
        """
        Compute the stage outputs from concrete inputs.
        """
        raise NotImplementedError

    @abstractmethod
    def placeholder(self, inputs: Sequence[Any]) -> Tuple[Any, ...]:
        """
        Produce outputs with the size, dtype and layout `run` would produce
        for `inputs`, without computing their contents.
        """
        raise NotImplementedError


class ModuleStageRunner(StageRunner):
    """
    Runs `stage.submod` (an `nn.Module` or any callable on tensors).
    Placeholders are obtained by propagating fake tensors through the
    submodule, so no real compute happens for stages this rank does not own.
    """

    def __init__(
        self,
        stage: PipelineStage,
        device: Optional[torch.device] = None,
    ):
        self.stage = stage
        self.submod = stage.submod
        self.device = device
        logger.info(f"Creating runner for {stage.name} on mesh {stage.mesh}")

    def run(self, inputs: Sequence[Any]) -> Tuple[Any, ...]:
        with record_function(f"Run {self.stage.name}"):
            try:
                output = self.submod(*inputs)
            except Exception as e:
                exc_msg = f"""
                Stage {self.stage.name} failed to run:
                inputs: {map_debug_info(tuple(inputs))}
                """
                raise RuntimeError(exc_msg) from e

        output = as_output_tuple(output)
        logger.debug(
            f"Ran {self.stage.name}, outputs: {map_debug_info(output)}"
        )
        return output

    def _placeholder_device(self, example: torch.Tensor) -> torch.device:
        if self.device is not None:
            return torch.device(self.device)
        if config.placeholder_device is not None:
            return torch.device(config.placeholder_device)
        if example.device.type == "meta":
            return torch.device("cpu")
        # Where the stage would have produced the output. For fake tensors
        # this is the fake device.
        return example.device

    def placeholder(self, inputs: Sequence[Any]) -> Tuple[Any, ...]:
        # The submodule may hold materialized parameters, hence
        # `allow_non_fake_inputs`
        fake_mode = FakeTensorMode(allow_non_fake_inputs=True)

        def to_fake(a):
            if not isinstance(a, torch.Tensor):
                return a
            if a.device.type == "meta":
                # Meta placeholders from upstream stages have no device of
                # their own; give them the one this runner places outputs on
                with fake_mode:
                    return make_tensor_from_meta(a, self._placeholder_device(a))
            return fake_mode.from_tensor(a)

        with record_function(f"Placeholder {self.stage.name}"):
            fake_inputs = map_aggregate(tuple(inputs), to_fake)
            try:
                with fake_mode, torch.no_grad():
                    fake_output = self.submod(*fake_inputs)
            except Exception as e:
                exc_msg = f"""
                Stage {self.stage.name} failed to propagate shapes:
                inputs: {map_debug_info(tuple(inputs))}
                """
                raise RuntimeError(exc_msg) from e

        def to_placeholder(a):
            if not isinstance(a, torch.Tensor):
                return a
            if config.allocate_placeholders:
                return make_tensor_from_meta(a, self._placeholder_device(a))
            return make_tensor_from_meta(a, torch.device("meta"))

        output = tuple(
            to_placeholder(a) for a in as_output_tuple(fake_output)
        )
        logger.debug(
            f"Placeholders for {self.stage.name}: {map_debug_info(output)}"
        )
        return output
