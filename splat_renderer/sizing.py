#
# Copyright (C) 2023, Inria
# GRAPHDECO research group, https://team.inria.fr/graphdeco
# All rights reserved.
#
# This software is free for non-commercial, research and evaluation use
# under the terms of the LICENSE.md file.
#
# For inquiries contact  george.drettakis@inria.fr
#

"""
Buffer sizing for stages whose output count is only known on the device.

Both strategies take a device scalar holding the real count and a host side
upper bound, and return the host side size to allocate. Work past the real
count is always masked against the device scalar, so the rasterizer runs the
same code whichever strategy is active.
"""

import torch

class ReadbackSizing:
    """ Reads the count back to the host. Exact buffers, one sync per call. """
    name = "readback"

    def resolve(self, count : torch.Tensor, upper_bound : int) -> int:
        return max(0, min(int(count.item()), int(upper_bound)))

class UpperBoundSizing:
    """ Never syncs. Buffers are sized to the capped upper bound. """
    name = "upper_bound"

    def resolve(self, count : torch.Tensor, upper_bound : int) -> int:
        return max(0, int(upper_bound))

SIZING_STRATEGIES = {
    "readback": ReadbackSizing,
    "upper_bound": UpperBoundSizing,
}

def select_sizing(name):
    # every torch device can read a scalar back; upper_bound is opt in
    if name == "auto":
        name = "readback"
    if name not in SIZING_STRATEGIES:
        raise ValueError("Unknown sizing strategy '{}', expected one of {}".format(name, ["auto"] + list(SIZING_STRATEGIES)))
    return SIZING_STRATEGIES[name]()
