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
from scene.cameras import Camera
from splat_renderer.accumulate import get_accumulator, supports_atomic_add
from splat_renderer.project import project_backward
from splat_renderer.rasterize import rasterize_forward
from splat_renderer.rasterize_backward import rasterize_backward
from splat_renderer.render_aux import RasterSettings
from splat_renderer.sizing import select_sizing
from splat_renderer.tiles import get_tile_bounds
from utils.image_utils import pack_rgba8

class SplatGrads(NamedTuple):
    v_means : torch.Tensor
    v_quats : torch.Tensor
    v_log_scales : torch.Tensor
    v_sh_coeffs : torch.Tensor
    v_raw_opacity : torch.Tensor
    refine_weight : torch.Tensor  # [N, 2]
    visible : torch.Tensor        # [N] bool

def render_backward(aux, v_rgba, means, quats, log_scales, sh_coeffs, raw_opacity, camera, settings):
    """
    Gradients of the loss w.r.t. every splat parameter, given dL/d(rgba) of the
    image produced by rasterize_forward with the same inputs.
    """
    raster = rasterize_backward(aux, v_rgba, settings.batch_size, settings.tiles_per_chunk,
                                get_accumulator(settings.atomic))
    gids = aux.global_from_compact_gid
    v_means, v_quats, v_log_scales, v_sh_coeffs, v_raw_opacity = project_backward(
        means, quats, log_scales, sh_coeffs, raw_opacity, settings.sh_degree, camera, settings.img_size,
        gids, aux.compact_valid, raster.v_xy, raster.v_conic, raster.v_colors, raster.v_opacities,
        settings.scaling_modifier)

    refine_weight = torch.zeros((means.shape[0], 2), dtype=means.dtype, device=means.device)
    refine_weight[gids] = torch.where(aux.compact_valid[:, None], raster.refine_weight,
                                      torch.zeros_like(raster.refine_weight))
    return SplatGrads(v_means, v_quats, v_log_scales, v_sh_coeffs, v_raw_opacity, refine_weight, aux.visible)

class _RasterizeSplats(torch.autograd.Function):
    @staticmethod
    def forward(ctx, means, quats, log_scales, sh_coeffs, raw_opacity, viewspace_points, camera, settings, outputs):
        rgba, aux = rasterize_forward(means, quats, log_scales, sh_coeffs, raw_opacity, camera, settings)
        ctx.camera = camera
        ctx.settings = settings
        ctx.aux = aux
        ctx.save_for_backward(means, quats, log_scales, sh_coeffs, raw_opacity)
        outputs["aux"] = aux
        return rgba

    @staticmethod
    def backward(ctx, v_rgba):
        means, quats, log_scales, sh_coeffs, raw_opacity = ctx.saved_tensors
        grads = render_backward(ctx.aux, v_rgba, means, quats, log_scales, sh_coeffs, raw_opacity,
                                ctx.camera, ctx.settings)
        # the refine weight travels as the gradient of the viewspace points
        return (grads.v_means, grads.v_quats, grads.v_log_scales, grads.v_sh_coeffs, grads.v_raw_opacity,
                grads.refine_weight, None, None, None)

def make_settings(pipe, bg_color, img_size, sh_degree, device, scaling_modifier=1.0):
    sizing = pipe.sizing if hasattr(pipe.sizing, "resolve") else select_sizing(pipe.sizing)
    return RasterSettings(
        image_width=int(img_size[0]),
        image_height=int(img_size[1]),
        tile_bounds=get_tile_bounds((int(img_size[0]), int(img_size[1]))),
        bg=bg_color,
        sh_degree=sh_degree,
        scaling_modifier=scaling_modifier,
        batch_size=pipe.tile_batch,
        tiles_per_chunk=pipe.tiles_per_chunk,
        max_intersections=pipe.max_intersections,
        sizing=sizing,
        atomic=supports_atomic_add(pipe.atomic_add),
    )

def render(viewpoint_camera, pc, pipe, bg_color : torch.Tensor, scaling_modifier = 1.0, img_size=None, packed=False):
    """
    Render the scene.

    viewpoint_camera is a SceneView, or a Camera together with img_size = (width, height).
    With packed=True the image comes back as [H, W, 1] int32 RGBA8 and carries no gradients.
    """
    if isinstance(viewpoint_camera, Camera):
        if img_size is None:
            raise ValueError("Rendering a bare Camera needs img_size")
        camera = viewpoint_camera
    else:
        camera = viewpoint_camera.camera
        img_size = img_size or viewpoint_camera.img_size

    means3D = pc.get_xyz
    settings = make_settings(pipe, bg_color, img_size, pc.active_sh_degree, means3D.device, scaling_modifier)

    if packed:
        with torch.no_grad():
            rgba, aux = rasterize_forward(means3D, pc._rotation, pc._scaling, pc.get_features, pc._opacity,
                                          camera, settings)
        return {
            "render": pack_rgba8(rgba),
            "visibility_filter": aux.visible,
            "radii": aux.radii,
        }

    # Carries the screen space refine weight back as its gradient
    screenspace_points = torch.zeros((means3D.shape[0], 2), dtype=means3D.dtype, device=means3D.device,
                                     requires_grad=True)
    outputs = {}
    rgba = _RasterizeSplats.apply(means3D, pc._rotation, pc._scaling, pc.get_features, pc._opacity,
                                  screenspace_points, camera, settings, outputs)
    aux = outputs["aux"]

    return {
        "render": rgba[..., :3].permute(2, 0, 1),
        "alpha": rgba[..., 3:].permute(2, 0, 1),
        "rgba": rgba,
        "viewspace_points": screenspace_points,
        "visibility_filter": aux.visible,
        "radii": aux.radii,
        "aux": aux,
    }
