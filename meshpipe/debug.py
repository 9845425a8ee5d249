# Copyright (c) Meta Platforms, Inc. and affiliates
import logging
import os

import torch
import torch.fx

from meshpipe import config


MESHPIPE_VERBOSITY = os.environ.get("MESHPIPE_VERBOSITY")
if MESHPIPE_VERBOSITY not in [None, "WARNING", "INFO", "DEBUG"]:
    logging.warning(
        f"Unsupported MESHPIPE_VERBOSITY level: {MESHPIPE_VERBOSITY}"
    )
    MESHPIPE_VERBOSITY = None

if MESHPIPE_VERBOSITY:
    logging.getLogger("meshpipe").setLevel(MESHPIPE_VERBOSITY)
    # It seems we need to print something to make the level setting effective
    # for child loggers. Doing it here.
    logging.warning(f"Setting meshpipe logging level to: {MESHPIPE_VERBOSITY}")
else:
    logging.getLogger("meshpipe").setLevel(config.log_level)


def friendly_debug_info(v):
    if isinstance(v, torch.Tensor):
        return f"Tensor({v.shape}, dtype={v.dtype}, device={v.device})"
    else:
        return str(v)


def map_debug_info(a):
    return torch.fx.node.map_aggregate(a, friendly_debug_info)
