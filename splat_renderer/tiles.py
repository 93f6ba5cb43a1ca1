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
import torch.nn.functional as F

TILE_SIZE = 16
PIXELS_PER_TILE = TILE_SIZE * TILE_SIZE
# default cap on (tile, splat) pairs per render
INTERSECTS_UPPER_BOUND = 256 * 65535

def get_tile_bounds(img_size):
    width, height = img_size
    return ((width + TILE_SIZE - 1) // TILE_SIZE, (height + TILE_SIZE - 1) // TILE_SIZE)

def tile_rect(xy, radii, tile_bounds):
    """
    Tiles touched by the screen space square of half size `radii` around `xy`,
    as [min, max) tile coordinates clamped to the grid.
    """
    with torch.no_grad():
        xy = xy.detach()
        r = radii.to(xy.dtype)[:, None]
        bounds = xy.new_tensor(tile_bounds)
        rect_min = torch.minimum(torch.floor((xy - r) / TILE_SIZE).clamp_min(0), bounds)
        rect_max = torch.minimum(torch.ceil((xy + r) / TILE_SIZE).clamp_min(0), bounds)
    return rect_min.long(), rect_max.long()

def count_intersections(rect_min, rect_max, valid):
    size = (rect_max - rect_min).clamp_min(0)
    counts = size[:, 0] * size[:, 1]
    return torch.where(valid, counts, torch.zeros_like(counts))

def map_to_intersections(rect_min, rect_max, counts, tile_bounds, isect_size):
    """
    Every splat owns the slice [offset, offset + count) of the intersection
    buffer, offset being the exclusive prefix sum of the counts. Each slot finds
    its splat by binary search over the inclusive sums, so no per-splat loop or
    readback is needed. Slots past the real total get the sentinel tile id
    num_tiles and sort to the end.
    Returns (tile_ids [I], compact_gids [I], offsets [M], total)
    """
    num_tiles = tile_bounds[0] * tile_bounds[1]
    device = counts.device
    inclusive = torch.cumsum(counts, dim=0)
    offsets = inclusive - counts
    total = inclusive[-1] if counts.numel() > 0 else counts.new_zeros(())

    slots = torch.arange(isect_size, device=device, dtype=torch.long)
    if counts.numel() == 0 or isect_size == 0:
        empty = slots.new_zeros(0)
        return empty, empty, offsets, total

    cid = torch.searchsorted(inclusive, slots, right=True).clamp_(max=counts.numel() - 1)
    local = slots - offsets[cid]
    width = (rect_max[cid, 0] - rect_min[cid, 0]).clamp_min(1)
    tile_x = rect_min[cid, 0] + local % width
    tile_y = rect_min[cid, 1] + local // width
    tile_ids = torch.where(slots < total, tile_y * tile_bounds[0] + tile_x, torch.full_like(slots, num_tiles))
    return tile_ids, cid, offsets, total

def sort_by_tile(tile_ids, compact_gids):
    # stable, so every tile keeps the depth order of the slots
    sorted_tiles, perm = torch.sort(tile_ids, stable=True)
    return sorted_tiles, compact_gids[perm]

def get_tile_ranges(sorted_tiles, tile_bounds):
    num_tiles = tile_bounds[0] * tile_bounds[1]
    tiles = torch.arange(num_tiles, device=sorted_tiles.device, dtype=torch.long)
    if sorted_tiles.numel() == 0:
        return torch.zeros((tile_bounds[1], tile_bounds[0], 2), dtype=torch.long, device=sorted_tiles.device)
    start = torch.searchsorted(sorted_tiles, tiles)
    end = torch.searchsorted(sorted_tiles, tiles, right=True)
    empty = start == end
    start = torch.where(empty, torch.zeros_like(start), start)
    end = torch.where(empty, torch.zeros_like(end), end)
    return torch.stack((start, end), dim=-1).view(tile_bounds[1], tile_bounds[0], 2)

def tile_pixel_coords(tiles, tile_bounds, dtype):
    """ Pixel centres of the given tiles, each [T, PIXELS_PER_TILE]. """
    local = torch.arange(PIXELS_PER_TILE, device=tiles.device)
    px = (tiles % tile_bounds[0])[:, None] * TILE_SIZE + (local % TILE_SIZE)[None]
    py = (tiles // tile_bounds[0])[:, None] * TILE_SIZE + (local // TILE_SIZE)[None]
    return px.to(dtype) + 0.5, py.to(dtype) + 0.5

def tiles_to_image(values, tile_bounds, img_size):
    """ [num_tiles, P, C] -> [H, W, C] """
    TX, TY = tile_bounds
    width, height = img_size
    C = values.shape[-1]
    image = values.reshape(TY, TX, TILE_SIZE, TILE_SIZE, C).permute(0, 2, 1, 3, 4)
    return image.reshape(TY * TILE_SIZE, TX * TILE_SIZE, C)[:height, :width]

def image_to_tiles(image, tile_bounds):
    """ [H, W, C] -> [num_tiles, P, C], zero padded. """
    TX, TY = tile_bounds
    height, width, C = image.shape
    image = F.pad(image, (0, 0, 0, TX * TILE_SIZE - width, 0, TY * TILE_SIZE - height))
    tiles = image.reshape(TY, TILE_SIZE, TX, TILE_SIZE, C).permute(0, 2, 1, 3, 4)
    return tiles.reshape(TX * TY, PIXELS_PER_TILE, C)
