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
from typing import NamedTuple, Tuple

class RasterSettings(NamedTuple):
    image_width : int
    image_height : int
    tile_bounds : Tuple[int, int]
    bg : torch.Tensor
    sh_degree : int
    scaling_modifier : float
    batch_size : int
    tiles_per_chunk : int
    max_intersections : int
    sizing : object
    atomic : bool

    @property
    def img_size(self):
        return (self.image_width, self.image_height)

class RenderAux(NamedTuple):
    """
    Intermediates of one forward pass, kept for the backward pass.
    Compact arrays are in depth order and hold only projected splats; with
    upper bound sizing they are padded and `compact_valid` marks the real rows.
    Per pixel buffers are tile major: [num_tiles, TILE_SIZE * TILE_SIZE].
    """
    img_size : Tuple[int, int]
    tile_bounds : Tuple[int, int]
    background : torch.Tensor
    global_from_compact_gid : torch.Tensor  # [M]
    compact_valid : torch.Tensor            # [M] bool
    num_visible : torch.Tensor              # device scalar
    xy : torch.Tensor                       # [M, 2]
    conic : torch.Tensor                    # [M, 3]
    colors : torch.Tensor                   # [M, 3]
    opacities : torch.Tensor                # [M]
    tile_ranges : torch.Tensor              # [TY, TX, 2]
    compact_gid_from_isect : torch.Tensor   # [I]
    num_intersections : torch.Tensor        # device scalar
    num_batches : int
    final_transmittance : torch.Tensor      # [num_tiles, P]
    final_index : torch.Tensor              # [num_tiles, P]
    visible : torch.Tensor                  # [N] bool
    radii : torch.Tensor                    # [N]
