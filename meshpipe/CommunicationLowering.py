# Copyright (c) Meta Platforms, Inc. and affiliates
import logging
from abc import ABC, abstractmethod
from typing import List, Sequence


logger = logging.getLogger(__name__)


class SendRecvDescriptor:
    """
    One sender (`root`) and the ranks it sends to. `team[0]` is always the
    root; `receivers` are the remaining members.
    """

    def __init__(self, root: int, receivers: Sequence[int] = ()):
        self.root = root
        self.team: List[int] = [root] + list(receivers)

    @property
    def receivers(self) -> List[int]:
        return self.team[1:]

    def __eq__(self, other):
        if not isinstance(other, SendRecvDescriptor):
            return False
        return self.root == other.root and self.team == other.team

    def __repr__(self):
        return f"SendRecvDescriptor(root={self.root}, receivers={self.receivers})"


class CommunicationLowering(ABC):
    """
    Policy turning a cross-mesh communication into point-to-point transfers.
    Must be deterministic: every rank lowers every communication and the
    resulting transfers have to match across ranks.
    """

    @abstractmethod
    def lower(
        self,
        sender_ranks: Sequence[int],
        receiver_ranks: Sequence[int],
    ) -> List[SendRecvDescriptor]:
        raise NotImplementedError


class EvenSplitLowering(CommunicationLowering):
    """
    Split the receivers evenly across the senders, in order. Each sender gets
    `len(receivers) // len(senders)` consecutive receivers, and the first
    `len(receivers) % len(senders)` senders get one more.

    The split ignores the topology.
    TODO: send to the receivers that are closest to each sender.
    """

    def lower(
        self,
        sender_ranks: Sequence[int],
        receiver_ranks: Sequence[int],
    ) -> List[SendRecvDescriptor]:
        num_senders = len(sender_ranks)
        if num_senders == 0:
            raise RuntimeError(
                "Cannot lower a communication without any sender"
            )

        per_sender, remainder = divmod(len(receiver_ranks), num_senders)
        descriptors: List[SendRecvDescriptor] = []
        start = 0
        for i, src in enumerate(sender_ranks):
            end = start + per_sender + (1 if i < remainder else 0)
            descriptors.append(
                SendRecvDescriptor(src, receiver_ranks[start:end])
            )
            start = end

        logger.debug(
            f"Lowered {list(sender_ranks)} -> {list(receiver_ranks)} into {descriptors}"
        )
        return descriptors


def lower_communication(
    sender_ranks: Sequence[int],
    receiver_ranks: Sequence[int],
) -> List[SendRecvDescriptor]:
    return EvenSplitLowering().lower(sender_ranks, receiver_ranks)
