# Copyright (c) Meta Platforms, Inc. and affiliates
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

import torch
from torch.profiler import record_function

from meshpipe import config
from meshpipe.CommunicationLowering import (
    CommunicationLowering,
    EvenSplitLowering,
)
from meshpipe.Communicator import Communicator, RankMapping
from meshpipe.debug import map_debug_info
from meshpipe.IR import (
    DeviceMesh,
    NodeKind,
    Pipeline,
    PipelineCommunication,
    PipelineStage,
    PipelineVal,
)
from meshpipe.StageRunner import ModuleStageRunner, StageRunner
from meshpipe.utils import make_tensor_from_meta

logger = logging.getLogger(__name__)


class Binding:
    def __init__(self, tensor: Any, is_placeholder: bool = False):
        self.tensor = tensor
        self.is_placeholder = is_placeholder

    def __repr__(self):
        kind = "placeholder" if self.is_placeholder else "value"
        return f"Binding({kind}, {map_debug_info(self.tensor)})"


class ValueStore:
    """
    Maps pipeline values to what this rank holds for them during one run.
    Every value is bound at most once.
    """

    def __init__(self):
        self._bindings: Dict[int, Binding] = {}

    def bind(
        self,
        val: PipelineVal,
        tensor: Any,
        is_placeholder: bool = False,
    ):
        if val.id in self._bindings:
            raise RuntimeError(f"{val.name} is already bound")
        self._bindings[val.id] = Binding(tensor, is_placeholder)

    def get(self, val: PipelineVal) -> Binding:
        if val.id not in self._bindings:
            raise RuntimeError(
                f"{val.name} has not been bound; was it visited before its producer?"
            )
        return self._bindings[val.id]

    def clear(self):
        self._bindings.clear()

    def __contains__(self, val: PipelineVal) -> bool:
        return val.id in self._bindings

    def __len__(self) -> int:
        return len(self._bindings)


class PipelineExecutor:
    """
    Runs a `Pipeline` on one rank.

    Every rank runs the whole graph in the same order. Stages whose mesh holds
    the local device are computed; the others only produce placeholders, so
    that shapes keep flowing to the local stages. Communications are lowered
    into point-to-point transfers that every rank issues in the same order.

    Stage runners and stage membership are cached across `run` calls; value
    bindings only live for the duration of one call.

    Example:
        ```
        pipe = Pipeline.from_sequential([mod0, mod1], [[0], [1, 2]])
        executor = PipelineExecutor(
            pipe,
            RankMapping.from_process_group(),
            ProcessGroupCommunicator(),
        )
        outputs = executor.run([x])
        ```
    """

    def __init__(
        self,
        pipeline: Pipeline,
        rank_mapping: RankMapping,
        communicator: Communicator,
        runner_factory: Callable[[PipelineStage], StageRunner] = ModuleStageRunner,
        lowering: Optional[CommunicationLowering] = None,
    ):
        pipeline.validate()
        self.pipeline = pipeline
        self.rank_mapping = rank_mapping
        self.comm = communicator
        self.runner_factory = runner_factory
        self.lowering = lowering if lowering is not None else EvenSplitLowering()
        self.rank = rank_mapping.local_rank()

        self.values = ValueStore()
        # stage id -> whether the local device is in the stage mesh
        self._should_run: Dict[int, bool] = {}
        # stage id -> runner
        self._runners: Dict[int, StageRunner] = {}
        self.membership_computations = 0
        self.runner_constructions = 0
        self._output_is_placeholder: List[bool] = []

        logger.info(
            f"[{self.rank}] Creating PipelineExecutor on device "
            f"{rank_mapping.local_device()} for a pipeline of "
            f"{len(pipeline.nodes)} nodes"
        )

    def should_run(self, stage: PipelineStage) -> bool:
        if stage.id not in self._should_run:
            self._should_run[stage.id] = (
                self.rank_mapping.local_device() in stage.mesh
            )
            self.membership_computations += 1
            logger.info(
                f"[{self.rank}] {stage.name} on {stage.mesh} is "
                f"{'local' if self._should_run[stage.id] else 'remote'}"
            )
        return self._should_run[stage.id]

    def _get_runner(self, stage: PipelineStage) -> StageRunner:
        if stage.id not in self._runners:
            self._runners[stage.id] = self.runner_factory(stage)
            self.runner_constructions += 1
        return self._runners[stage.id]

    def _mesh_ranks(self, mesh: DeviceMesh) -> List[int]:
        return [self.rank_mapping.device_to_rank(d) for d in mesh]

    def _participates(self, comm: PipelineCommunication) -> bool:
        return self.rank in self._mesh_ranks(
            comm.sender_mesh
        ) or self.rank in self._mesh_ranks(comm.receiver_mesh)

    def _resolve(self, val: PipelineVal) -> Binding:
        if val in self.values:
            return self.values.get(val)
        producer = val.producer
        if (
            producer is not None
            and producer.kind is NodeKind.COMMUNICATION
            and not self._participates(producer)
        ):
            # This rank took no part in the communication and holds no copy
            # of its output. The placeholder of the source has the same
            # metadata.
            return Binding(self.values.get(producer.src).tensor, True)
        return self.values.get(val)

    def run_stage(self, stage: PipelineStage):
        inputs = [self._resolve(val).tensor for val in stage.inputs]
        runner = self._get_runner(stage)

        is_local = self.should_run(stage)
        with record_function(f"Stage {stage.name}"):
            if is_local:
                outputs = runner.run(inputs)
            else:
                outputs = runner.placeholder(inputs)

        if len(outputs) != len(stage.outputs):
            raise RuntimeError(
                f"{stage.name} declares {len(stage.outputs)} outputs but its "
                f"runner returned {len(outputs)}"
            )

        for val, out in zip(stage.outputs, outputs):
            self.values.bind(val, out, is_placeholder=not is_local)

        logger.debug(
            f"[{self.rank}] {'Ran' if is_local else 'Placeholder-ran'} "
            f"{stage.name}, outputs: {map_debug_info(tuple(outputs))}"
        )

    def _recv_buffer(self, src: Binding, is_sender: bool) -> torch.Tensor:
        if is_sender:
            # Keep the local copy intact
            return torch.empty_like(src.tensor)
        if src.tensor.device.type == "meta":
            device = config.placeholder_device or "cpu"
            return make_tensor_from_meta(src.tensor, torch.device(device))
        # The placeholder of the source is never read on this rank
        return src.tensor

    def run_communication(self, comm: PipelineCommunication):
        sender_ranks = self._mesh_ranks(comm.sender_mesh)
        receiver_ranks = self._mesh_ranks(comm.receiver_mesh)
        descriptors = self.lowering.lower(sender_ranks, receiver_ranks)

        is_sender = self.rank in sender_ranks
        is_receiver = self.rank in receiver_ranks

        src = self.values.get(comm.src)
        if not isinstance(src.tensor, torch.Tensor):
            raise RuntimeError(
                f"{comm.name} can only transfer a tensor but {comm.src.name} "
                f"is bound to {type(src.tensor)}"
            )
        send_buffer = src.tensor
        recv_buffer = (
            self._recv_buffer(src, is_sender) if is_receiver else None
        )

        with record_function(f"Communication {comm.name}"):
            for descriptor in descriptors:
                for receiver in descriptor.receivers:
                    if self.rank == receiver and self.rank != descriptor.root:
                        tensor = recv_buffer
                    else:
                        tensor = send_buffer
                    logger.debug(
                        f"[{self.rank}] {comm.name}: {descriptor.root} -> {receiver}"
                    )
                    self.comm.send_recv(receiver, descriptor.root, tensor)

        if is_sender:
            # Senders see their own payload as the output
            self.values.bind(comm.dst, send_buffer, src.is_placeholder)
        elif is_receiver:
            self.values.bind(comm.dst, recv_buffer)

    def run(self, inputs: Sequence[Any]) -> List[Any]:
        """
        Run the pipeline on `inputs`, one per global input, and return one
        result per global output. On ranks that do not own the stage
        producing an output, the result is a placeholder.
        """
        # Make sure inputs align at global boundary.
        if len(inputs) != len(self.pipeline.inputs):
            raise ValueError(
                f"Expecting {len(self.pipeline.inputs)} inputs but got {len(inputs)}"
            )

        self.values.clear()
        try:
            for val, inp in zip(self.pipeline.inputs, inputs):
                self.values.bind(val, inp)

            for node in self.pipeline.traverse_to(self.pipeline.outputs):
                if node.kind is NodeKind.STAGE:
                    self.run_stage(node)
                elif node.kind is NodeKind.COMMUNICATION:
                    self.run_communication(node)
                else:
                    raise AssertionError(f"Unknown node kind {node.kind}")

            bindings = [self._resolve(val) for val in self.pipeline.outputs]
        finally:
            self.values.clear()

        self._output_is_placeholder = [b.is_placeholder for b in bindings]
        return [b.tensor for b in bindings]

    def run_with_input(self, inputs: Sequence[Any]) -> List[Any]:
        return self.run(inputs)

    def __call__(self, *inputs) -> List[Any]:
        return self.run(inputs)

    def is_placeholder_output(self, index: int) -> bool:
        """
        Whether the `index`-th output of the last `run` is a placeholder on
        this rank.
        """
        return self._output_is_placeholder[index]
