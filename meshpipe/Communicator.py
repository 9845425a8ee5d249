# Copyright (c) Meta Platforms, Inc. and affiliates
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Sequence

import torch
import torch.distributed as dist


logger = logging.getLogger(__name__)


class RankMapping:
    """
    Bijection between the device ids used in `DeviceMesh`es and the process
    ranks used for communication, plus the rank of the current process.
    """

    def __init__(self, device_to_rank: Dict[int, int], rank: int):
        self._device_to_rank = dict(device_to_rank)
        self._rank_to_device = {r: d for d, r in self._device_to_rank.items()}
        if len(self._rank_to_device) != len(self._device_to_rank):
            raise RuntimeError(
                f"Device to rank mapping must be a bijection, but got {self._device_to_rank}"
            )
        if rank not in self._rank_to_device:
            raise RuntimeError(
                f"Local rank {rank} is not part of the mapping {self._device_to_rank}"
            )
        self._rank = rank

    @staticmethod
    def from_process_group(
        group: Optional[dist.ProcessGroup] = None,
        device_ids: Optional[Sequence[int]] = None,
    ) -> "RankMapping":
        """
        Build the mapping of the current process. Without `device_ids`, the
        device id of a rank is the rank itself; otherwise `device_ids[r]` is
        the device id of rank `r` in `group`.
        """
        group_rank = dist.get_rank(group)
        world_size = dist.get_world_size(group)
        if device_ids is None:
            device_ids = list(range(world_size))
        if len(device_ids) != world_size:
            raise ValueError(
                f"Expecting {world_size} device ids but got {len(device_ids)}"
            )

        def global_rank(r):
            return r if group is None else dist.get_global_rank(group, r)

        return RankMapping(
            {d: global_rank(r) for r, d in enumerate(device_ids)},
            global_rank(group_rank),
        )

    def device_to_rank(self, device_id: int) -> int:
        return self._device_to_rank[device_id]

    def rank_to_device(self, rank: int) -> int:
        return self._rank_to_device[rank]

    def local_rank(self) -> int:
        return self._rank

    def local_device(self) -> int:
        return self._rank_to_device[self._rank]

    def __repr__(self):
        return f"RankMapping(rank={self._rank}, device_to_rank={self._device_to_rank})"


class Communicator(ABC):
    """
    Point-to-point transport. `send_recv` is called with the same arguments,
    in the same order, on every rank: the sender sends `tensor`, the receiver
    receives into `tensor`, and everybody else ignores the call.
    """

    @abstractmethod
    def send_recv(
        self,
        receiver_rank: int,
        sender_rank: int,
        tensor: torch.Tensor,
    ) -> None:
        raise NotImplementedError


class ProcessGroupCommunicator(Communicator):
    def __init__(
        self,
        rank: Optional[int] = None,
        group: Optional[dist.ProcessGroup] = None,
    ):
        # Ranks handed to `send_recv` are global ranks
        self.rank = dist.get_rank() if rank is None else rank
        self.group = group

    def send_recv(
        self,
        receiver_rank: int,
        sender_rank: int,
        tensor: torch.Tensor,
    ) -> None:
        if receiver_rank == sender_rank:
            # The sender already holds the data
            return

        if self.rank == sender_rank:
            logger.debug(
                f"[{self.rank}] Sending tensor to rank {receiver_rank}: {tensor.size()}"
            )
            ops = [dist.P2POp(dist.isend, tensor, receiver_rank, self.group)]
        elif self.rank == receiver_rank:
            logger.debug(
                f"[{self.rank}] Receiving tensor from rank {sender_rank}: {tensor.size()}"
            )
            ops = [dist.P2POp(dist.irecv, tensor, sender_rank, self.group)]
        else:
            return

        # Blocking: return only once the transfer has completed locally
        works = dist.batch_isend_irecv(ops)
        for work in works:
            work.wait()
