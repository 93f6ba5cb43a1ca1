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
from typing import NamedTuple
from utils.general_utils import build_rotation, build_scaling_rotation
from utils.sh_utils import eval_sh, eval_sh_basis, eval_sh_basis_grad, num_sh_coeffs
from splat_renderer.tiles import tile_rect

NEAR_PLANE = 0.01
COV2D_BLUR = 0.3
# the Jacobian is evaluated at most 30% of the half fov outside the frustum
FRUSTUM_MARGIN = 0.3

class CameraParams(NamedTuple):
    R_cw : torch.Tensor
    t_cw : torch.Tensor
    campos : torch.Tensor
    fx : float
    fy : float
    cx : float
    cy : float
    lim_x_pos : float
    lim_x_neg : float
    lim_y_pos : float
    lim_y_neg : float

class Projection(NamedTuple):
    """ Per splat screen space values, [N, ...]. Rows with valid == False are finite garbage. """
    xy : torch.Tensor
    conic : torch.Tensor
    colors : torch.Tensor
    opacities : torch.Tensor
    depths : torch.Tensor
    radii : torch.Tensor
    rect_min : torch.Tensor
    rect_max : torch.Tensor
    valid : torch.Tensor

def camera_params(camera, img_size, dtype, device):
    width, height = img_size
    W2L = camera.world_to_local().to(device=device, dtype=dtype)
    fx, fy = camera.focal(img_size)
    cx, cy = camera.center(img_size)
    tan_fovx = 0.5 * width / fx
    tan_fovy = 0.5 * height / fy
    return CameraParams(
        R_cw=W2L[:3, :3],
        t_cw=W2L[:3, 3],
        campos=camera.position.to(device=device, dtype=dtype),
        fx=fx, fy=fy, cx=cx, cy=cy,
        lim_x_pos=(width - cx) / fx + FRUSTUM_MARGIN * tan_fovx,
        lim_x_neg=cx / fx + FRUSTUM_MARGIN * tan_fovx,
        lim_y_pos=(height - cy) / fy + FRUSTUM_MARGIN * tan_fovy,
        lim_y_neg=cy / fy + FRUSTUM_MARGIN * tan_fovy,
    )

def _projection_jacobian(p, tz, u_c, v_c):
    zeros = torch.zeros_like(tz)
    return torch.stack((
        torch.stack((p.fx / tz, zeros, -p.fx * u_c / tz), dim=-1),
        torch.stack((zeros, p.fy / tz, -p.fy * v_c / tz), dim=-1),
    ), dim=-2)

def project_gaussians(means, quats, log_scales, sh_coeffs, raw_opacity, sh_degree, camera, img_size, tile_bounds,
                      scaling_modifier=1.0):
    """
    EWA splatting of every Gaussian into the camera. Written with plain torch ops,
    so it also serves as an autograd reference for project_backward.
    """
    p = camera_params(camera, img_size, means.dtype, means.device)

    t = means @ p.R_cw.T + p.t_cw
    tz = t[:, 2]
    in_front = tz > NEAR_PLANE
    tz = torch.where(in_front, tz, torch.ones_like(tz))
    u = t[:, 0] / tz
    v = t[:, 1] / tz
    u_c = u.clamp(-p.lim_x_neg, p.lim_x_pos)
    v_c = v.clamp(-p.lim_y_neg, p.lim_y_pos)

    T = _projection_jacobian(p, tz, u_c, v_c) @ p.R_cw
    L = build_scaling_rotation(torch.exp(log_scales) * scaling_modifier, quats)
    cov3d = L @ L.transpose(1, 2)
    cov2d = T @ cov3d @ T.transpose(1, 2)

    a = cov2d[:, 0, 0] + COV2D_BLUR
    b = cov2d[:, 0, 1]
    c = cov2d[:, 1, 1] + COV2D_BLUR
    det = a * c - b * b
    det_ok = det > 0
    det = torch.where(det_ok, det, torch.ones_like(det))
    conic = torch.stack((c / det, -b / det, a / det), dim=-1)

    with torch.no_grad():
        mid = 0.5 * (a + c)
        lambda_max = mid + torch.sqrt(torch.clamp_min(mid * mid - det, 0.1))
        radii = torch.ceil(3.0 * torch.sqrt(lambda_max))
        radii = torch.where(in_front & det_ok, radii, torch.zeros_like(radii))

    xy = torch.stack((p.fx * u + p.cx, p.fy * v + p.cy), dim=-1)

    dirs = F.normalize(means - p.campos, dim=-1)
    colors = eval_sh(sh_degree, sh_coeffs.transpose(1, 2), dirs) + 0.5
    colors = torch.clamp_min(colors, 0.0)
    opacities = torch.sigmoid(raw_opacity[:, 0])

    rect_min, rect_max = tile_rect(xy, radii, tile_bounds)
    covers = ((rect_max - rect_min).prod(dim=-1) > 0)
    valid = in_front & det_ok & (radii > 0) & covers
    radii = torch.where(valid, radii, torch.zeros_like(radii)).long()

    return Projection(xy=xy, conic=conic, colors=colors, opacities=opacities, depths=t[:, 2],
                      radii=radii, rect_min=rect_min, rect_max=rect_max, valid=valid)

def _quat_to_rotmat_backward(qn, v_R):
    w, x, y, z = qn.unbind(-1)
    g = lambda i, j: v_R[:, i, j]
    v_w = 2 * (-z * g(0, 1) + y * g(0, 2) + z * g(1, 0) - x * g(1, 2) - y * g(2, 0) + x * g(2, 1))
    v_x = 2 * (y * g(0, 1) + z * g(0, 2) + y * g(1, 0) - 2 * x * g(1, 1) - w * g(1, 2)
               + z * g(2, 0) + w * g(2, 1) - 2 * x * g(2, 2))
    v_y = 2 * (-2 * y * g(0, 0) + x * g(0, 1) + w * g(0, 2) + x * g(1, 0) + z * g(1, 2)
               - w * g(2, 0) + z * g(2, 1) - 2 * y * g(2, 2))
    v_z = 2 * (-2 * z * g(0, 0) - w * g(0, 1) + x * g(0, 2) + w * g(1, 0) - 2 * z * g(1, 1)
               + y * g(1, 2) + x * g(2, 0) + y * g(2, 1))
    return torch.stack((v_w, v_x, v_y, v_z), dim=-1)

def _normalize_backward(x_n, norm, v_x_n):
    return (v_x_n - x_n * (x_n * v_x_n).sum(-1, keepdim=True)) / norm

def project_backward(means, quats, log_scales, sh_coeffs, raw_opacity, sh_degree, camera, img_size,
                     gids, valid, v_xy, v_conic, v_colors, v_opacities, scaling_modifier=1.0):
    """
    Pulls screen space gradients of the compact rows `gids` back to the splat
    parameters. Rows with valid == False get zero gradient, as do splats that
    never made it into the compact set.
    Returns (v_means, v_quats, v_log_scales, v_sh_coeffs, v_raw_opacity), each with N rows.
    """
    N = means.shape[0]
    p = camera_params(camera, img_size, means.dtype, means.device)
    keep = valid[:, None]
    v_xy = torch.where(keep, v_xy, torch.zeros_like(v_xy))
    v_conic = torch.where(keep, v_conic, torch.zeros_like(v_conic))
    v_colors = torch.where(keep, v_colors, torch.zeros_like(v_colors))
    v_opacities = torch.where(valid, v_opacities, torch.zeros_like(v_opacities))

    m = means[gids]
    q = quats[gids]
    log_s = log_scales[gids]
    coeffs = sh_coeffs[gids]
    raw = raw_opacity[gids, 0]

    # Recompute the forward intermediates
    t = m @ p.R_cw.T + p.t_cw
    tz = torch.where(valid, t[:, 2], torch.ones_like(t[:, 2]))
    tx, ty = t[:, 0], t[:, 1]
    u = tx / tz
    v = ty / tz
    clamped_x = (u < -p.lim_x_neg) | (u > p.lim_x_pos)
    clamped_y = (v < -p.lim_y_neg) | (v > p.lim_y_pos)
    u_c = u.clamp(-p.lim_x_neg, p.lim_x_pos)
    v_c = v.clamp(-p.lim_y_neg, p.lim_y_pos)

    J = _projection_jacobian(p, tz, u_c, v_c)
    T = J @ p.R_cw
    scales = torch.exp(log_s) * scaling_modifier
    R = build_rotation(q)
    L = R * scales[:, None, :]
    cov3d = L @ L.transpose(1, 2)
    cov2d = T @ cov3d @ T.transpose(1, 2)
    a = cov2d[:, 0, 0] + COV2D_BLUR
    b = cov2d[:, 0, 1]
    c = cov2d[:, 1, 1] + COV2D_BLUR
    det = a * c - b * b
    det = torch.where(valid & (det > 0), det, torch.ones_like(det))
    P = torch.stack((
        torch.stack((c / det, -b / det), dim=-1),
        torch.stack((-b / det, a / det), dim=-1),
    ), dim=-2)

    # Screen position
    inv_tz = 1.0 / tz
    inv_tz2 = inv_tz * inv_tz
    v_tx = p.fx * inv_tz * v_xy[:, 0]
    v_ty = p.fy * inv_tz * v_xy[:, 1]
    v_tz = -(p.fx * tx * v_xy[:, 0] + p.fy * ty * v_xy[:, 1]) * inv_tz2

    # Conic = inverse(cov2d): dL/dcov = -P G P with G the symmetric conic gradient
    G = torch.stack((
        torch.stack((v_conic[:, 0], 0.5 * v_conic[:, 1]), dim=-1),
        torch.stack((0.5 * v_conic[:, 1], v_conic[:, 2]), dim=-1),
    ), dim=-2)
    v_cov2d = -P @ G @ P

    # cov2d = T cov3d T^T
    v_cov3d = T.transpose(1, 2) @ v_cov2d @ T
    v_T = 2.0 * v_cov2d @ T @ cov3d
    v_J = v_T @ p.R_cw.T

    # Perspective Jacobian; clamped axes only depend on tz
    v_tx = v_tx + torch.where(clamped_x, torch.zeros_like(tx), -p.fx * inv_tz2 * v_J[:, 0, 2])
    v_ty = v_ty + torch.where(clamped_y, torch.zeros_like(ty), -p.fy * inv_tz2 * v_J[:, 1, 2])
    kx = torch.where(clamped_x, torch.ones_like(tz), 2.0 * torch.ones_like(tz))
    ky = torch.where(clamped_y, torch.ones_like(tz), 2.0 * torch.ones_like(tz))
    v_tz = v_tz - p.fx * inv_tz2 * v_J[:, 0, 0] - p.fy * inv_tz2 * v_J[:, 1, 1] \
        + kx * p.fx * u_c * inv_tz2 * v_J[:, 0, 2] + ky * p.fy * v_c * inv_tz2 * v_J[:, 1, 2]

    v_t = torch.stack((v_tx, v_ty, v_tz), dim=-1)
    v_m = v_t @ p.R_cw

    # cov3d = L L^T with L = R diag(s)
    v_L = 2.0 * v_cov3d @ L
    v_scales = (v_L * R).sum(dim=1)
    v_log_s = v_scales * scales
    v_R = v_L * scales[:, None, :]
    q_norm = q.norm(dim=-1, keepdim=True)
    qn = q / q_norm
    v_q = _normalize_backward(qn, q_norm, _quat_to_rotmat_backward(qn, v_R))

    # View dependent color
    K = num_sh_coeffs(sh_degree)
    dirs = m - p.campos
    dist = dirs.norm(dim=-1, keepdim=True)
    dirs_n = dirs / dist
    basis = eval_sh_basis(sh_degree, dirs_n)
    rgb = (coeffs[:, :K, :] * basis[..., None]).sum(1) + 0.5
    v_rgb = torch.where(rgb >= 0, v_colors, torch.zeros_like(v_colors))
    v_coeffs = torch.zeros_like(coeffs)
    v_coeffs[:, :K, :] = basis[..., None] * v_rgb[:, None, :]
    if sh_degree > 0:
        basis_grad = eval_sh_basis_grad(sh_degree, dirs_n)
        weights = (coeffs[:, :K, :] * v_rgb[:, None, :]).sum(-1)
        v_dirs_n = (basis_grad * weights[..., None]).sum(1)
        v_m = v_m + _normalize_backward(dirs_n, dist, v_dirs_n)

    sig = torch.sigmoid(raw)
    v_raw = v_opacities * sig * (1 - sig)

    def scatter(values, like):
        values = torch.where(valid.view(-1, *([1] * (values.dim() - 1))), values, torch.zeros_like(values))
        out = torch.zeros_like(like)
        out[gids] = values.to(like.dtype)
        return out

    return (scatter(v_m, means), scatter(v_q, quats), scatter(v_log_s, log_scales),
            scatter(v_coeffs, sh_coeffs), scatter(v_raw[:, None], raw_opacity))
