# Copyright (c) Meta Platforms, Inc. and affiliates
import queue
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Sequence, Tuple

import torch
import torch.nn as nn

from meshpipe import Communicator, RankMapping


class Scale(nn.Module):
    def __init__(self, factor: float):
        super().__init__()
        self.factor = factor

    def forward(self, x):
        return x * self.factor


class AddOne(nn.Module):
    def forward(self, x):
        return x + 1


class MLP(nn.Module):
    def __init__(
        self,
        dim: int,
        hidden_dim: int,
        out_dim: int,
    ):
        super().__init__()
        self.w1 = nn.Linear(dim, hidden_dim, bias=False)
        self.w2 = nn.Linear(hidden_dim, out_dim, bias=False)
        self.relu = nn.ReLU()

    def forward(self, x):
        x = self.w1(x)
        x = self.w2(x)
        x = self.relu(x)
        return x


class MultiOutputArgMLP(nn.Module):
    def __init__(
        self,
        dim: int,
        out_dim: int,
    ):
        super().__init__()
        self.w1 = nn.Linear(dim, out_dim, bias=False)

    def forward(self, x):
        x = self.w1(x)
        y = torch.cat([x, x], dim=0)
        return x, y


def same_tensor_meta(a: torch.Tensor, b: torch.Tensor) -> bool:
    """
    Whether two tensors agree on everything a placeholder must preserve.
    """
    return (
        a.size() == b.size()
        and a.dtype == b.dtype
        and a.layout == b.layout
    )


class MessageHub:
    """
    In-memory transport shared by simulated ranks of one process, one thread
    per rank. Sends are buffered per (sender, receiver) pair; receives block
    until the matching send arrives or `timeout` expires.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._lock = threading.Lock()
        self._queues: Dict[Tuple[int, int], queue.Queue] = {}
        # rank -> (receiver, sender) pairs seen by that rank, in call order
        self.calls: Dict[int, List[Tuple[int, int]]] = defaultdict(list)
        self.sent: List[Tuple[int, int]] = []

    def channel(self, sender_rank: int, receiver_rank: int) -> queue.Queue:
        with self._lock:
            return self._queues.setdefault(
                (sender_rank, receiver_rank), queue.Queue()
            )


class LocalCommunicator(Communicator):
    def __init__(self, rank: int, hub: MessageHub):
        self.rank = rank
        self.hub = hub

    def send_recv(self, receiver_rank, sender_rank, tensor):
        with self.hub._lock:
            self.hub.calls[self.rank].append((receiver_rank, sender_rank))
        if receiver_rank == sender_rank:
            return
        if self.rank == sender_rank:
            # Recorded before the put, so that `sent` follows causal order
            with self.hub._lock:
                self.hub.sent.append((sender_rank, receiver_rank))
            self.hub.channel(sender_rank, receiver_rank).put(tensor.clone())
        elif self.rank == receiver_rank:
            try:
                data = self.hub.channel(sender_rank, receiver_rank).get(
                    timeout=self.hub.timeout
                )
            except queue.Empty:
                raise RuntimeError(
                    f"Rank {receiver_rank} timed out receiving from rank {sender_rank}"
                ) from None
            tensor.copy_(data)


def identity_mapping(world_size: int, rank: int) -> RankMapping:
    return RankMapping({d: d for d in range(world_size)}, rank)


def run_ranks(
    ranks: Sequence[int],
    fn: Callable[[int, MessageHub], object],
    timeout: float = 60.0,
) -> Dict[int, object]:
    """
    Run `fn(rank, hub)` for each simulated rank, each in its own thread, and
    return the results by rank. The first failing rank's exception is
    re-raised.
    """
    hub = MessageHub()
    results: Dict[int, object] = {}
    errors: Dict[int, BaseException] = {}

    def target(rank):
        try:
            results[rank] = fn(rank, hub)
        except BaseException as e:
            errors[rank] = e

    threads = [
        threading.Thread(target=target, args=(rank,), name=f"rank{rank}", daemon=True)
        for rank in ranks
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout)

    hung = [t.name for t in threads if t.is_alive()]
    if hung:
        raise RuntimeError(f"{hung} did not finish, transfers are mismatched")
    if errors:
        rank = min(errors)
        raise RuntimeError(f"Rank {rank} failed") from errors[rank]
    return results
