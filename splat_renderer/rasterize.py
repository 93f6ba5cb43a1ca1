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

import math
import torch
from typing import NamedTuple
from splat_renderer.project import project_gaussians
from splat_renderer.render_aux import RenderAux
from splat_renderer.tiles import PIXELS_PER_TILE, count_intersections, map_to_intersections, sort_by_tile, \
    get_tile_ranges, tile_pixel_coords, tiles_to_image
from utils.sh_utils import num_sh_coeffs

MAX_ALPHA = 0.999
ALPHA_THRESHOLD = 1.0 / 255.0
TRANSMITTANCE_THRESHOLD = 1e-4

class SplatAlpha(NamedTuple):
    dx : torch.Tensor
    dy : torch.Tensor
    gaussian : torch.Tensor
    alpha : torch.Tensor
    keep : torch.Tensor
    clamped : torch.Tensor

def splat_alpha(xy, conic, opacities, px, py, in_range):
    """
    Opacity of every (pixel, splat) pair of a batch.
    xy [T, B, 2], conic [T, B, 3], opacities [T, B], px / py [T, P], in_range [T, B]
    Returns [T, P, B] tensors. Skipped pairs have alpha == 0.
    """
    dx = xy[:, None, :, 0] - px[:, :, None]
    dy = xy[:, None, :, 1] - py[:, :, None]
    A = conic[:, None, :, 0]
    B = conic[:, None, :, 1]
    C = conic[:, None, :, 2]
    sigma = 0.5 * (A * dx * dx + C * dy * dy) + B * dx * dy
    gaussian = torch.exp(-sigma)
    raw_alpha = opacities[:, None, :] * gaussian
    alpha = raw_alpha.clamp_max(MAX_ALPHA)
    keep = in_range[:, None, :] & (sigma >= 0) & (alpha >= ALPHA_THRESHOLD)
    alpha = torch.where(keep, alpha, torch.zeros_like(alpha))
    return SplatAlpha(dx=dx, dy=dy, gaussian=gaussian, alpha=alpha, keep=keep, clamped=raw_alpha > MAX_ALPHA)

def gather_batch(gid_from_isect, start, end, b, batch_size, isect_size):
    """ Compact ids of the b-th batch of every tile range, and which of them are real. """
    idx = start[:, None] + b * batch_size + torch.arange(batch_size, device=start.device)[None]
    in_range = idx < end[:, None]
    cids = gid_from_isect[idx.clamp(max=max(isect_size - 1, 0))]
    return idx, in_range, cids

def check_inputs(means, quats, log_scales, sh_coeffs, raw_opacity, camera, settings):
    camera.validate(settings.img_size)
    N = means.shape[0]
    expected = {
        "means": (means, (N, 3)),
        "quats": (quats, (N, 4)),
        "log_scales": (log_scales, (N, 3)),
        "raw_opacity": (raw_opacity, (N, 1)),
    }
    for name, (tensor, shape) in expected.items():
        if tuple(tensor.shape) != shape:
            raise ValueError("{} has shape {}, expected {}".format(name, tuple(tensor.shape), shape))
    if sh_coeffs.dim() != 3 or sh_coeffs.shape[0] != N or sh_coeffs.shape[2] != 3 \
            or sh_coeffs.shape[1] < num_sh_coeffs(settings.sh_degree):
        raise ValueError("sh_coeffs has shape {}, expected ({}, >={}, 3)".format(
            tuple(sh_coeffs.shape), N, num_sh_coeffs(settings.sh_degree)))

def rasterize_forward(means, quats, log_scales, sh_coeffs, raw_opacity, camera, settings):
    """
    Renders the splats through `camera`.
    Returns (rgba [H, W, 4], RenderAux). Color is premultiplied and composited
    over settings.bg; alpha is 1 - final transmittance.
    """
    check_inputs(means, quats, log_scales, sh_coeffs, raw_opacity, camera, settings)
    N = means.shape[0]
    device, dtype = means.device, means.dtype
    sizing = settings.sizing
    tile_bounds = settings.tile_bounds
    num_tiles = tile_bounds[0] * tile_bounds[1]
    bg = settings.bg.to(device=device, dtype=dtype)

    proj = project_gaussians(means, quats, log_scales, sh_coeffs, raw_opacity, settings.sh_degree, camera,
                             settings.img_size, tile_bounds, settings.scaling_modifier)

    # Depth sort, visible splats first. Stable, so equal depths keep index order.
    num_visible = proj.valid.sum()
    M = sizing.resolve(num_visible, N)
    depth_key = torch.where(proj.valid, proj.depths, torch.full_like(proj.depths, math.inf))
    order = torch.sort(depth_key, stable=True).indices[:M]
    compact_valid = proj.valid[order]
    xy = proj.xy[order]
    conic = proj.conic[order]
    colors = proj.colors[order]
    opacities = proj.opacities[order]
    rect_min = proj.rect_min[order]
    rect_max = proj.rect_max[order]

    # Bin into tiles
    counts = count_intersections(rect_min, rect_max, compact_valid)
    capacity = min(num_tiles * N, settings.max_intersections)
    total = counts.sum()
    isect_size = sizing.resolve(total, capacity)
    tile_ids, cids, offsets, total = map_to_intersections(rect_min, rect_max, counts, tile_bounds, isect_size)
    sorted_tiles, gid_from_isect = sort_by_tile(tile_ids, cids)
    tile_ranges = get_tile_ranges(sorted_tiles, tile_bounds)
    ranges = tile_ranges.view(-1, 2)

    emitted = compact_valid & (counts > 0) & (offsets < isect_size)
    visible = torch.zeros(N, dtype=torch.bool, device=device)
    visible[order] = emitted

    # a splat lands at most once in a tile
    longest = sizing.resolve((ranges[:, 1] - ranges[:, 0]).max(), min(M, isect_size))
    batch_size = settings.batch_size
    num_batches = (longest + batch_size - 1) // batch_size

    color_out = torch.zeros((num_tiles, PIXELS_PER_TILE, 3), dtype=dtype, device=device)
    final_T = torch.ones((num_tiles, PIXELS_PER_TILE), dtype=dtype, device=device)
    final_index = torch.zeros((num_tiles, PIXELS_PER_TILE), dtype=torch.long, device=device)

    for chunk_start in range(0, num_tiles, settings.tiles_per_chunk):
        tiles = torch.arange(chunk_start, min(chunk_start + settings.tiles_per_chunk, num_tiles), device=device)
        px, py = tile_pixel_coords(tiles, tile_bounds, dtype)
        start, end = ranges[tiles, 0], ranges[tiles, 1]

        T = torch.ones_like(px)
        C = torch.zeros((tiles.shape[0], PIXELS_PER_TILE, 3), dtype=dtype, device=device)
        done = torch.zeros_like(px, dtype=torch.bool)
        last = torch.zeros_like(px, dtype=torch.long)

        for b in range(num_batches):
            idx, in_range, batch_cids = gather_batch(gid_from_isect, start, end, b, batch_size, isect_size)
            sa = splat_alpha(xy[batch_cids], conic[batch_cids], opacities[batch_cids], px, py, in_range)

            one_minus = 1.0 - sa.alpha
            T_incl = T[..., None] * torch.cumprod(one_minus, dim=-1)
            T_excl = T[..., None] * torch.cat((torch.ones_like(one_minus[..., :1]),
                                               torch.cumprod(one_minus[..., :-1], dim=-1)), dim=-1)
            # the splat that would take T below the threshold ends the pixel and is not composited
            stop = sa.keep & (T_incl <= TRANSMITTANCE_THRESHOLD)
            stopped = torch.cumsum(stop.int(), dim=-1) > 0
            include = sa.keep & ~stopped & ~done[..., None]

            weights = torch.where(include, sa.alpha * T_excl, torch.zeros_like(T_excl))
            C = C + torch.einsum("tpb,tbc->tpc", weights, colors[batch_cids])
            T = T * torch.where(include, one_minus, torch.ones_like(one_minus)).prod(dim=-1)
            done = done | stop.any(dim=-1)
            last = torch.maximum(last, torch.where(include, idx[:, None, :] + 1, torch.zeros_like(idx[:, None, :])).amax(dim=-1))

        color_out[tiles] = C
        final_T[tiles] = T
        final_index[tiles] = last

    rgb = color_out + final_T[..., None] * bg
    rgba = torch.cat((rgb, 1.0 - final_T[..., None]), dim=-1)
    rgba = tiles_to_image(rgba, tile_bounds, settings.img_size)

    aux = RenderAux(
        img_size=settings.img_size,
        tile_bounds=tile_bounds,
        background=bg,
        global_from_compact_gid=order,
        compact_valid=compact_valid,
        num_visible=num_visible,
        xy=xy,
        conic=conic,
        colors=colors,
        opacities=opacities,
        tile_ranges=tile_ranges,
        compact_gid_from_isect=gid_from_isect,
        num_intersections=total,
        num_batches=num_batches,
        final_transmittance=final_T,
        final_index=final_index,
        visible=visible,
        radii=proj.radii,
    )
    return rgba.contiguous(), aux
