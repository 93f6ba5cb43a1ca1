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

def psnr(img1, img2):
    mse = (((img1 - img2)) ** 2).reshape(img1.shape[0], -1).mean(1, keepdim=True)
    return 20 * torch.log10(1.0 / torch.sqrt(mse))

def quantize_8bit(image):
    # Round trip through 8 bit, as if the image had been written to disk
    return torch.round(image.clamp(0.0, 1.0) * 255.0) / 255.0

def pack_rgba8(rgba):
    """
    [H, W, 4] float RGBA in [0, 1] -> [H, W, 1] int32, one byte per channel.
    Red ends up in the lowest byte on little endian hosts.
    """
    bytes_ = torch.round(rgba.detach().clamp(0.0, 1.0) * 255.0).to(torch.uint8).contiguous()
    return bytes_.view(torch.int32)

def unpack_rgba8(packed):
    """ Inverse of pack_rgba8, returns [H, W, 4] float RGBA. """
    return packed.contiguous().view(torch.uint8).float() / 255.0
