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

import torch

def supports_atomic_add(mode="auto"):
    """
    Whether per-splat gradients may be scattered with atomic adds.
    'auto' falls back to the serialized path when torch runs in deterministic mode.
    """
    if mode == "on":
        return True
    if mode == "off":
        return False
    if mode != "auto":
        raise ValueError("Unknown atomic_add mode '{}', expected auto, on or off".format(mode))
    return not torch.are_deterministic_algorithms_enabled()

def atomic_accumulate(target, index, values):
    target.index_add_(0, index, values)
    return target

def serialized_accumulate(target, index, values):
    """
    Deterministic replacement for index_add_: rows are stably sorted by
    destination, summed with a float64 prefix sum and written once per segment.
    """
    if index.numel() == 0:
        return target
    order = torch.argsort(index, stable=True)
    sorted_index = index[order]
    prefix = values[order].to(torch.float64).cumsum(0)
    unique_index, counts = torch.unique_consecutive(sorted_index, return_counts=True)
    ends = prefix[counts.cumsum(0) - 1]
    segment_sums = torch.diff(ends, dim=0, prepend=torch.zeros_like(ends[:1]))
    target[unique_index] += segment_sums.to(target.dtype)
    return target

def get_accumulator(atomic):
    return atomic_accumulate if atomic else serialized_accumulate
