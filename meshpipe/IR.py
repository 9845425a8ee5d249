# Copyright (c) Meta Platforms, Inc. and affiliates
import logging
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

import torch


logger = logging.getLogger(__name__)


class DeviceMesh(object):
    """
    DeviceMesh is the ordered set of device ids a pipeline stage is pinned to.

    The order of the ids matters: it is the order in which senders and
    receivers of a cross-mesh communication are enumerated, so that every
    rank lowers the same communication into the same list of transfers.

    Args:
        mesh: a list (or integer tensor) of device ids. Multi-dimensional
            layouts are flattened in row-major order.

    Example:
        ```
        mesh = DeviceMesh([1, 2])
        assert 2 in mesh and len(mesh) == 2
        ```
    """

    def __init__(self, mesh: Union[torch.Tensor, Sequence[int]]) -> None:
        ids = torch.as_tensor(mesh)
        if ids.numel() == 0:
            raise RuntimeError("DeviceMesh must contain at least one device")
        if ids.is_floating_point() or ids.is_complex() or ids.dtype == torch.bool:
            raise TypeError(
                f"DeviceMesh expects integer device ids, but got {ids.dtype}"
            )
        device_ids = tuple(ids.to(torch.long).flatten().tolist())
        if len(set(device_ids)) != len(device_ids):
            raise RuntimeError(
                f"DeviceMesh cannot have duplicate values, but found {list(device_ids)}"
            )
        self._device_ids = device_ids

    @property
    def device_ids(self):
        return self._device_ids

    def __contains__(self, device_id) -> bool:
        return device_id in self._device_ids

    def __iter__(self):
        return iter(self._device_ids)

    def __len__(self) -> int:
        return len(self._device_ids)

    def __eq__(self, other) -> bool:
        if not isinstance(other, DeviceMesh):
            return False
        return self._device_ids == other._device_ids

    def __hash__(self):
        return hash(self._device_ids)

    def __repr__(self) -> str:
        return f"DeviceMesh({list(self._device_ids)})"


MeshLike = Union[DeviceMesh, torch.Tensor, Sequence[int]]


def _as_mesh(mesh: MeshLike) -> DeviceMesh:
    return mesh if isinstance(mesh, DeviceMesh) else DeviceMesh(mesh)


class NodeKind(Enum):
    STAGE = 1
    COMMUNICATION = 2


class PipelineVal:
    """
    A value flowing through the pipeline graph. `producer` is the node that
    defines it, or None for a global input.
    """

    def __init__(self, id: int, name: str, producer=None):
        self.id = id
        self.name = name
        self.producer = producer

    def __repr__(self):
        return f"PipelineVal({self.name})"


class PipelineStage:
    kind = NodeKind.STAGE

    def __init__(
        self,
        id: int,
        name: str,
        submod: Callable,
        inputs: List[PipelineVal],
        mesh: DeviceMesh,
    ):
        self.id = id
        self.name = name
        self.submod = submod
        self.inputs = inputs
        self.outputs: List[PipelineVal] = []
        self.mesh = mesh

    def __repr__(self):
        return (
            f"PipelineStage({self.name}, mesh={list(self.mesh)}, "
            f"inputs={[v.name for v in self.inputs]}, "
            f"outputs={[v.name for v in self.outputs]})"
        )


class PipelineCommunication:
    """
    Moves one value from the mesh of the stage producing it (the senders)
    to the mesh of the stage consuming it (the receivers).
    """

    kind = NodeKind.COMMUNICATION

    def __init__(self, id: int, name: str, src: PipelineVal):
        self.id = id
        self.name = name
        self.src = src
        self.dst: Optional[PipelineVal] = None
        # Set once a stage consumes `dst`
        self.receiver_mesh: Optional[DeviceMesh] = None

    @property
    def inputs(self) -> List[PipelineVal]:
        return [self.src]

    @property
    def outputs(self) -> List[PipelineVal]:
        return [self.dst]

    @property
    def sender_mesh(self) -> DeviceMesh:
        return self.src.producer.mesh

    def __repr__(self):
        return (
            f"PipelineCommunication({self.name}, {self.src.name} -> {self.dst.name}, "
            f"senders={list(self.sender_mesh)}, "
            f"receivers={list(self.receiver_mesh) if self.receiver_mesh else None})"
        )


PipelineNode = Union[PipelineStage, PipelineCommunication]


class Pipeline:
    """
    A computation graph partitioned into stages pinned to device meshes, with
    explicit communications wherever a value crosses from one mesh to
    another.

    Nodes can only consume values that already exist, so the order in which
    nodes are added is a topological order. `traverse_to` derives its order
    from it, which makes the traversal identical on every rank.
    """

    def __init__(self):
        self.nodes: List[PipelineNode] = []
        self.inputs: List[PipelineVal] = []
        self.outputs: List[PipelineVal] = []
        self._values: Dict[int, PipelineVal] = {}
        self._next_node_id = 0

    def _new_val(self, name: Optional[str], producer=None) -> PipelineVal:
        val_id = len(self._values)
        val = PipelineVal(val_id, name or f"val_{val_id}", producer)
        self._values[val_id] = val
        return val

    def _new_node_id(self) -> int:
        node_id = self._next_node_id
        self._next_node_id += 1
        return node_id

    def _check_owned(self, val: PipelineVal):
        if self._values.get(val.id) is not val:
            raise RuntimeError(f"{val} does not belong to this pipeline")

    def add_input(self, name: Optional[str] = None) -> PipelineVal:
        val = self._new_val(name or f"input_{len(self.inputs)}")
        self.inputs.append(val)
        return val

    def add_stage(
        self,
        submod: Callable,
        inputs: Iterable[PipelineVal],
        mesh: MeshLike,
        num_outputs: int = 1,
        name: Optional[str] = None,
    ) -> PipelineStage:
        if num_outputs < 1:
            raise ValueError(
                f"A stage needs at least one output but got {num_outputs}"
            )
        mesh = _as_mesh(mesh)
        inputs = list(inputs)
        stage = PipelineStage(
            self._new_node_id(),
            name or f"stage_{len(self.nodes)}",
            submod,
            inputs,
            mesh,
        )

        for val in inputs:
            self._check_owned(val)
            producer = val.producer
            if producer is None:
                # Global inputs are bound on every rank
                continue
            if producer.kind is NodeKind.STAGE:
                if producer.mesh != mesh:
                    raise RuntimeError(
                        f"{stage.name} on {mesh} consumes {val.name} produced on "
                        f"{producer.mesh}; cross-mesh values must go through a "
                        f"communication"
                    )
            elif producer.kind is NodeKind.COMMUNICATION:
                if producer.receiver_mesh is None:
                    producer.receiver_mesh = mesh
                elif producer.receiver_mesh != mesh:
                    raise RuntimeError(
                        f"{producer.name} already delivers to {producer.receiver_mesh}, "
                        f"cannot also deliver to {stage.name} on {mesh}"
                    )

        for i in range(num_outputs):
            stage.outputs.append(self._new_val(f"{stage.name}_out_{i}", stage))

        self.nodes.append(stage)
        logger.debug(f"Added {stage}")
        return stage

    def add_communication(
        self,
        src: PipelineVal,
        name: Optional[str] = None,
    ) -> PipelineCommunication:
        self._check_owned(src)
        if src.producer is None or src.producer.kind is not NodeKind.STAGE:
            raise RuntimeError(
                f"Communication source {src.name} must be produced by a stage"
            )
        comm = PipelineCommunication(
            self._new_node_id(),
            name or f"comm_{len(self.nodes)}",
            src,
        )
        comm.dst = self._new_val(f"{comm.name}_out", comm)
        self.nodes.append(comm)
        logger.debug(f"Added {comm.name}: {src.name} -> {comm.dst.name}")
        return comm

    def set_outputs(self, outputs: Iterable[PipelineVal]):
        outputs = list(outputs)
        for val in outputs:
            self._check_owned(val)
        self.outputs = outputs

    def validate(self):
        """
        Check the graph-level invariants that cannot be checked while nodes
        are being added.
        """
        if not self.outputs:
            raise RuntimeError("Pipeline has no outputs")
        for node in self.nodes:
            if (
                node.kind is NodeKind.COMMUNICATION
                and node.receiver_mesh is None
            ):
                raise RuntimeError(
                    f"{node.name} has no consuming stage, cannot infer its receivers"
                )

    def traverse_to(
        self,
        targets: Optional[Iterable[PipelineVal]] = None,
    ) -> List[PipelineNode]:
        """
        Returns the nodes needed to compute `targets` (default: the global
        outputs), producers first.
        """
        targets = self.outputs if targets is None else list(targets)
        needed = set()
        worklist = [val.producer for val in targets if val.producer is not None]
        while worklist:
            node = worklist.pop()
            if node.id in needed:
                continue
            needed.add(node.id)
            for val in node.inputs:
                if val.producer is not None:
                    worklist.append(val.producer)

        return [node for node in self.nodes if node.id in needed]

    @staticmethod
    def from_sequential(
        modules: Sequence[Callable],
        meshes: Sequence[MeshLike],
    ) -> "Pipeline":
        """
        Build a linear pipeline with one single-input, single-output stage per
        module. A communication is inserted between consecutive stages whose
        meshes differ.
        """
        if len(modules) == 0:
            raise ValueError("Expecting at least one module")
        if len(modules) != len(meshes):
            raise ValueError(
                f"Expecting one mesh per module but got {len(meshes)} meshes "
                f"for {len(modules)} modules"
            )
        pipe = Pipeline()
        val = pipe.add_input()
        prev_mesh = None
        for i, (mod, mesh) in enumerate(zip(modules, meshes)):
            mesh = _as_mesh(mesh)
            if prev_mesh is not None and prev_mesh != mesh:
                val = pipe.add_communication(val, name=f"comm_{i - 1}_{i}").dst
            stage = pipe.add_stage(mod, [val], mesh, name=f"stage_{i}")
            val = stage.outputs[0]
            prev_mesh = mesh
        pipe.set_outputs([val])
        return pipe

    def __str__(self):
        lines = [f"Pipeline(inputs={[v.name for v in self.inputs]})"]
        lines += [f"  {node}" for node in self.nodes]
        lines.append(f"  outputs={[v.name for v in self.outputs]}")
        return "\n".join(lines)

    def __repr__(self):
        return self.__str__()
