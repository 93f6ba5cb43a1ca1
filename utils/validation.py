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

# Plausible ranges for the stored (pre-activation) splat parameters
VALUE_RANGES = {
    "xyz": (None, None),
    "f_dc": (-5.0, 5.0),
    "f_rest": (-5.0, 5.0),
    "opacity": (-20.0, 20.0),
    "scaling": (-10.0, 10.0),
    "rotation": (None, None),
}

def validate_tensor_val(tensor, name, min_val=None, max_val=None):
    """
    Report NaN / Inf and out of range values of a tensor. Never raises.
    Returns True when the tensor is clean.
    """
    if tensor is None or tensor.numel() == 0:
        return True
    tensor = tensor.detach()
    num_nan = int(torch.isnan(tensor).sum().item())
    num_inf = int(torch.isinf(tensor).sum().item())
    finite = tensor[torch.isfinite(tensor)]
    num_below = int((finite < min_val).sum().item()) if min_val is not None else 0
    num_above = int((finite > max_val).sum().item()) if max_val is not None else 0

    clean = True
    if num_nan > 0 or num_inf > 0:
        print("[VALIDATION] {}: {} NaN and {} Inf values out of {}".format(name, num_nan, num_inf, tensor.numel()))
        clean = False
    if num_below > 0:
        print("[VALIDATION] {}: {} values below {} (min {:.4f})".format(name, num_below, min_val, finite.min().item()))
        clean = False
    if num_above > 0:
        print("[VALIDATION] {}: {} values above {} (max {:.4f})".format(name, num_above, max_val, finite.max().item()))
        clean = False
    return clean

def validate_splat_params(named_params, check_grads=False):
    """
    named_params: iterable of (name, tensor) as stored in the splat store.
    With check_grads, gradients are checked for NaN / Inf as well.
    """
    clean = True
    for name, param in named_params:
        min_val, max_val = VALUE_RANGES.get(name, (None, None))
        clean &= validate_tensor_val(param, name, min_val, max_val)
        if check_grads and param.grad is not None:
            clean &= validate_tensor_val(param.grad, name + ".grad")
    return clean
