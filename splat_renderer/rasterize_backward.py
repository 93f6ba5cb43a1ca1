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
from typing import NamedTuple
from splat_renderer.rasterize import splat_alpha, gather_batch
from splat_renderer.tiles import image_to_tiles, tile_pixel_coords

class RasterGrads(NamedTuple):
    """ Screen space gradients of the compact rows of a RenderAux. """
    v_xy : torch.Tensor           # [M, 2]
    v_conic : torch.Tensor        # [M, 3]
    v_colors : torch.Tensor       # [M, 3]
    v_opacities : torch.Tensor    # [M]
    refine_weight : torch.Tensor  # [M, 2], sum of |dL/dxy| over pixels, in NDC units

def rasterize_backward(aux, v_rgba, batch_size, tiles_per_chunk, accumulate):
    """
    Walks every tile back to front from each pixel's final index, rebuilding
    transmittance as T_k = T_(k+1) / (1 - alpha_k) and carrying the color of
    everything behind (background included). Per splat gradients are summed
    over the pixels of a tile and scattered with `accumulate`.
    """
    tile_bounds = aux.tile_bounds
    width, height = aux.img_size
    num_tiles = tile_bounds[0] * tile_bounds[1]
    M = aux.xy.shape[0]
    device, dtype = aux.xy.device, aux.xy.dtype
    bg = aux.background
    ranges = aux.tile_ranges.view(-1, 2)
    isect_size = aux.compact_gid_from_isect.shape[0]

    # xy 2, conic 3, color 3, opacity 1, refine 2
    grads = torch.zeros((M, 11), dtype=dtype, device=device)
    v_tiles = image_to_tiles(v_rgba.to(dtype), tile_bounds)

    for chunk_start in range(0, num_tiles, tiles_per_chunk):
        tiles = torch.arange(chunk_start, min(chunk_start + tiles_per_chunk, num_tiles), device=device)
        px, py = tile_pixel_coords(tiles, tile_bounds, dtype)
        start, end = ranges[tiles, 0], ranges[tiles, 1]
        v_color_px = v_tiles[tiles, :, :3]
        v_alpha_px = v_tiles[tiles, :, 3]
        T_final = aux.final_transmittance[tiles]
        final_index = aux.final_index[tiles]

        T_after = T_final.clone()
        S_after = T_final[..., None] * bg

        for b in reversed(range(aux.num_batches)):
            idx, in_range, batch_cids = gather_batch(aux.compact_gid_from_isect, start, end, b, batch_size, isect_size)
            colors = aux.colors[batch_cids]
            conic = aux.conic[batch_cids]
            sa = splat_alpha(aux.xy[batch_cids], conic, aux.opacities[batch_cids], px, py, in_range)

            contrib = sa.keep & (idx[:, None, :] < final_index[..., None])
            alpha = torch.where(contrib, sa.alpha, torch.zeros_like(sa.alpha))
            one_minus = 1.0 - alpha
            # prod_{j >= k} (1 - alpha_j) within the batch
            rev_prod = torch.flip(torch.cumprod(torch.flip(one_minus, [-1]), dim=-1), [-1])
            T = T_after[..., None] / rev_prod
            weights = alpha * T
            weighted = weights[..., None] * colors[:, None, :, :]
            suffix = torch.flip(torch.cumsum(torch.flip(weighted, [2]), dim=2), [2])
            S = S_after[:, :, None, :] + suffix - weighted

            v_colors = weights[..., None] * v_color_px[:, :, None, :]
            v_alpha = ((T[..., None] * colors[:, None, :, :] - S / one_minus[..., None]) * v_color_px[:, :, None, :]).sum(-1) \
                + v_alpha_px[..., None] * T_final[..., None] / one_minus
            v_alpha = torch.where(contrib, v_alpha, torch.zeros_like(v_alpha))

            # alpha = opacity * exp(-sigma), constant where clamped
            live = contrib & ~sa.clamped
            v_opac = torch.where(live, v_alpha * sa.gaussian, torch.zeros_like(v_alpha))
            v_sigma = torch.where(live, -v_alpha * alpha, torch.zeros_like(v_alpha))

            A = conic[:, None, :, 0]
            B = conic[:, None, :, 1]
            C = conic[:, None, :, 2]
            v_conic = torch.stack((0.5 * v_sigma * sa.dx * sa.dx,
                                   v_sigma * sa.dx * sa.dy,
                                   0.5 * v_sigma * sa.dy * sa.dy), dim=-1)
            v_xy = torch.stack((v_sigma * (A * sa.dx + B * sa.dy),
                                v_sigma * (B * sa.dx + C * sa.dy)), dim=-1)

            batch_grads = torch.cat((
                v_xy.sum(1),
                v_conic.sum(1),
                v_colors.sum(1),
                v_opac.sum(1)[..., None],
                v_xy.abs().sum(1),
            ), dim=-1)
            accumulate(grads, batch_cids.reshape(-1), batch_grads.reshape(-1, 11))

            T_after = T_after / rev_prod[..., 0]
            S_after = S_after + weighted.sum(2)

    # pixel -> NDC units, so that thresholds do not depend on the resolution
    ndc_scale = grads.new_tensor([0.5 * width, 0.5 * height])
    return RasterGrads(
        v_xy=grads[:, 0:2],
        v_conic=grads[:, 2:5],
        v_colors=grads[:, 5:8],
        v_opacities=grads[:, 8],
        refine_weight=grads[:, 9:11] * ndc_scale,
    )
