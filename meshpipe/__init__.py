# Copyright (c) Meta Platforms, Inc. and affiliates
from .CommunicationLowering import (
    CommunicationLowering,
    EvenSplitLowering,
    lower_communication,
    SendRecvDescriptor,
)
from .Communicator import Communicator, ProcessGroupCommunicator, RankMapping
from .IR import (
    DeviceMesh,
    NodeKind,
    Pipeline,
    PipelineCommunication,
    PipelineStage,
    PipelineVal,
)
from .PipelineExecutor import Binding, PipelineExecutor, ValueStore
from .StageRunner import ModuleStageRunner, StageRunner


__all__ = [
    "DeviceMesh",
    "NodeKind",
    "Pipeline",
    "PipelineVal",
    "PipelineStage",
    "PipelineCommunication",
    "RankMapping",
    "Communicator",
    "ProcessGroupCommunicator",
    "SendRecvDescriptor",
    "CommunicationLowering",
    "EvenSplitLowering",
    "lower_communication",
    "StageRunner",
    "ModuleStageRunner",
    "Binding",
    "ValueStore",
    "PipelineExecutor",
]
