# Copyright (c) Meta Platforms, Inc. and affiliates
import logging
import sys
from types import ModuleType


# Placeholder outputs of non-local stages are uninitialized tensors of the
# right size/dtype on `placeholder_device`. They double as receive buffers
# for incoming transfers. When False, placeholders live on the meta device
# and hold no storage at all.
allocate_placeholders = True

# Device for placeholder outputs. None means the device the stage would have
# produced the output on (CPU when that is unknown).
placeholder_device = None

# Level of the "meshpipe" logger when MESHPIPE_VERBOSITY is not set
log_level = logging.WARNING


class _AccessLimitingConfig(ModuleType):
    def __setattr__(self, name, value):
        if name not in _allowed_config_names:
            raise AttributeError(f"{__name__}.{name} does not exist")
        return object.__setattr__(self, name, value)


_allowed_config_names = {*globals().keys()}
sys.modules[__name__].__class__ = _AccessLimitingConfig
