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
import numpy as np
from utils.general_utils import inverse_sigmoid, get_expon_lr_func, build_rotation
from torch import nn
import os
from typing import NamedTuple
from utils.system_utils import mkdir_p
from plyfile import PlyData, PlyElement
from utils.sh_utils import RGB2SH, num_sh_coeffs, sh_degree_from_coeffs
from utils.graphics_utils import BasicPointCloud, BoundingBox, knn_distances
from utils.general_utils import build_scaling_rotation
from utils.validation import validate_splat_params

class SplatRecord(NamedTuple):
    """ Activated splat parameters, as exchanged with exporters and viewers. """
    position : torch.Tensor   # [N, 3]
    scale : torch.Tensor      # [N, 3], positive
    opacity : torch.Tensor    # [N], in (0, 1)
    rotation : torch.Tensor   # [N, 4], normalised (w, x, y, z)
    sh_coeffs : torch.Tensor  # [N, (deg + 1) ** 2, 3]

    @property
    def num_splats(self):
        return self.position.shape[0]

class GaussianModel:

    def setup_functions(self):
        def build_covariance_from_scaling_rotation(scaling, scaling_modifier, rotation):
            L = build_scaling_rotation(scaling_modifier * scaling, rotation)
            actual_covariance = L @ L.transpose(1, 2)
            return actual_covariance

        self.scaling_activation = torch.exp
        self.scaling_inverse_activation = torch.log

        self.covariance_activation = build_covariance_from_scaling_rotation

        self.opacity_activation = torch.sigmoid
        self.inverse_opacity_activation = inverse_sigmoid

        self.rotation_activation = torch.nn.functional.normalize

    def __init__(self, sh_degree, device="cuda"):
        self.active_sh_degree = 0
        self.max_sh_degree = sh_degree
        self.device = torch.device(device)
        self._xyz = torch.empty(0)
        self._features_dc = torch.empty(0)
        self._features_rest = torch.empty(0)
        self._scaling = torch.empty(0)
        self._rotation = torch.empty(0)
        self._opacity = torch.empty(0)
        self.optimizer = None
        self.spatial_lr_scale = 0
        self.setup_functions()

    def capture(self):
        return (
            self.active_sh_degree,
            self._xyz,
            self._features_dc,
            self._features_rest,
            self._scaling,
            self._rotation,
            self._opacity,
            self.optimizer.state_dict(),
            self.spatial_lr_scale,
        )

    def restore(self, model_args, training_args):
        (self.active_sh_degree,
        self._xyz,
        self._features_dc,
        self._features_rest,
        self._scaling,
        self._rotation,
        self._opacity,
        opt_dict,
        self.spatial_lr_scale) = model_args
        self.max_sh_degree = sh_degree_from_coeffs(self._features_rest.shape[1] + 1)
        self.training_setup(training_args)
        self.optimizer.load_state_dict(opt_dict)

    @property
    def get_scaling(self):
        return self.scaling_activation(self._scaling)

    @property
    def get_rotation(self):
        return self.rotation_activation(self._rotation)

    @property
    def get_xyz(self):
        return self._xyz

    @property
    def get_features(self):
        features_dc = self._features_dc
        features_rest = self._features_rest
        return torch.cat((features_dc, features_rest), dim=1)

    @property
    def get_features_dc(self):
        return self._features_dc

    @property
    def get_features_rest(self):
        return self._features_rest

    @property
    def get_opacity(self):
        return self.opacity_activation(self._opacity)

    @property
    def num_splats(self):
        return self._xyz.shape[0]

    def get_covariance(self, scaling_modifier = 1):
        return self.covariance_activation(self.get_scaling, scaling_modifier, self._rotation)

    def oneupSHdegree(self):
        if self.active_sh_degree < self.max_sh_degree:
            self.active_sh_degree += 1

    def named_params(self):
        return [("xyz", self._xyz), ("f_dc", self._features_dc), ("f_rest", self._features_rest),
                ("opacity", self._opacity), ("scaling", self._scaling), ("rotation", self._rotation)]

    def _set_params(self, xyz, features_dc, features_rest, scaling, rotation, opacity):
        to_param = lambda t: nn.Parameter(t.to(device=self.device, dtype=torch.float).contiguous().requires_grad_(True))
        self._xyz = to_param(xyz)
        self._features_dc = to_param(features_dc)
        self._features_rest = to_param(features_rest)
        self._scaling = to_param(scaling)
        self._rotation = to_param(rotation)
        self._opacity = to_param(opacity)

    def _features_from_rgb(self, rgb):
        features = torch.zeros((rgb.shape[0], num_sh_coeffs(self.max_sh_degree), 3), device=self.device)
        features[:, 0, :] = RGB2SH(rgb)
        return features

    def create_from_pcd(self, pcd : BasicPointCloud, spatial_lr_scale : float):
        self.spatial_lr_scale = spatial_lr_scale
        fused_point_cloud = torch.tensor(np.asarray(pcd.points)).float().to(self.device)
        features = self._features_from_rgb(torch.tensor(np.asarray(pcd.colors)).float().to(self.device))

        print("Number of points at initialisation : ", fused_point_cloud.shape[0])

        # mean squared distance to the 3 nearest neighbours
        dist2 = torch.clamp_min((knn_distances(fused_point_cloud, 3) ** 2).mean(dim=-1).nan_to_num(1.0), 0.0000001)
        scales = torch.log(torch.sqrt(dist2))[...,None].repeat(1, 3)
        rots = torch.zeros((fused_point_cloud.shape[0], 4), device=self.device)
        rots[:, 0] = 1

        opacities = self.inverse_opacity_activation(0.1 * torch.ones((fused_point_cloud.shape[0], 1), dtype=torch.float, device=self.device))

        self._set_params(fused_point_cloud, features[:, 0:1], features[:, 1:], scales, rots, opacities)

    def create_random(self, count, bounds : BoundingBox, spatial_lr_scale : float, generator=None):
        """ Uniformly scattered splats with random orientation and color. """
        self.spatial_lr_scale = spatial_lr_scale
        lo = torch.as_tensor(bounds.min, dtype=torch.float)
        hi = torch.as_tensor(bounds.max, dtype=torch.float)
        positions = lo + (hi - lo) * torch.rand((count, 3), generator=generator)
        colors = torch.rand((count, 3), generator=generator)
        rots = torch.nn.functional.normalize(torch.randn((count, 4), generator=generator), dim=-1)
        opacities = inverse_sigmoid(torch.tensor(0.1)) + (inverse_sigmoid(torch.tensor(0.25)) - inverse_sigmoid(torch.tensor(0.1))) \
            * torch.rand((count, 1), generator=generator)

        positions = positions.to(self.device)
        features = self._features_from_rgb(colors.to(self.device))
        scales = knn_log_scales(positions)

        print("Number of random points at initialisation : ", count)
        self._set_params(positions, features[:, 0:1], features[:, 1:], scales, rots, opacities)

    def from_record(self, record : SplatRecord, spatial_lr_scale : float = 1.0):
        self.spatial_lr_scale = spatial_lr_scale
        coeffs = record.sh_coeffs.detach().float()
        record_degree = sh_degree_from_coeffs(coeffs.shape[1])
        opacity = record.opacity.detach().float().reshape(-1, 1).clamp(1e-6, 1 - 1e-6)
        self._set_params(record.position.detach(),
                         coeffs[:, 0:1],
                         coeffs[:, 1:],
                         self.scaling_inverse_activation(record.scale.detach().float()),
                         self.rotation_activation(record.rotation.detach().float(), dim=-1),
                         self.inverse_opacity_activation(opacity))
        if record_degree != self.max_sh_degree:
            self.with_sh_degree(self.max_sh_degree)
        self.active_sh_degree = self.max_sh_degree

    def to_record(self):
        with torch.no_grad():
            return SplatRecord(
                position=self._xyz.detach().clone(),
                scale=self.get_scaling.detach().clone(),
                opacity=self.get_opacity.detach()[:, 0].clone(),
                rotation=self.get_rotation.detach().clone(),
                sh_coeffs=self.get_features.detach().clone(),
            )

    def with_sh_degree(self, sh_degree):
        """ Pads with zeros or truncates the SH coefficients. Only valid before training_setup. """
        assert self.optimizer is None, "Cannot change the SH degree of a model under optimisation"
        rest = num_sh_coeffs(sh_degree) - 1
        current = self._features_rest.detach()
        if current.shape[1] < rest:
            pad = torch.zeros((current.shape[0], rest - current.shape[1], 3), dtype=current.dtype, device=current.device)
            current = torch.cat((current, pad), dim=1)
        else:
            current = current[:, :rest]
        self._features_rest = nn.Parameter(current.contiguous().requires_grad_(True))
        self.max_sh_degree = sh_degree
        self.active_sh_degree = min(self.active_sh_degree, sh_degree)

    def training_setup(self, training_args):
        l = [
            {'params': [self._xyz], 'lr': training_args.position_lr_init * self.spatial_lr_scale, "name": "xyz"},
            {'params': [self._features_dc], 'lr': training_args.feature_lr, "name": "f_dc"},
            {'params': [self._features_rest], 'lr': training_args.feature_lr / training_args.sh_lr_scale, "name": "f_rest"},
            {'params': [self._opacity], 'lr': training_args.opacity_lr, "name": "opacity"},
            {'params': [self._scaling], 'lr': training_args.scaling_lr, "name": "scaling"},
            {'params': [self._rotation], 'lr': training_args.rotation_lr, "name": "rotation"}
        ]

        self.optimizer = torch.optim.Adam(l, lr=0.0, eps=1e-15)
        self.sh_lr_scale = training_args.sh_lr_scale
        self.xyz_scheduler_args = get_expon_lr_func(lr_init=training_args.position_lr_init*self.spatial_lr_scale,
                                                    lr_final=training_args.position_lr_final*self.spatial_lr_scale,
                                                    lr_delay_mult=training_args.position_lr_delay_mult,
                                                    max_steps=training_args.position_lr_max_steps)
        self.scaling_scheduler_args = get_expon_lr_func(lr_init=training_args.scaling_lr,
                                                        lr_final=training_args.scaling_lr_final,
                                                        max_steps=training_args.iterations)
        self.feature_scheduler_args = get_expon_lr_func(lr_init=training_args.feature_lr,
                                                        lr_final=training_args.feature_lr_final,
                                                        max_steps=training_args.iterations)

    def update_learning_rate(self, iteration):
        ''' Learning rate scheduling per step '''
        xyz_lr = 0.0
        for param_group in self.optimizer.param_groups:
            if param_group["name"] == "xyz":
                xyz_lr = self.xyz_scheduler_args(iteration)
                param_group['lr'] = xyz_lr
            elif param_group["name"] == "scaling":
                param_group['lr'] = self.scaling_scheduler_args(iteration)
            elif param_group["name"] == "f_dc":
                param_group['lr'] = self.feature_scheduler_args(iteration)
            elif param_group["name"] == "f_rest":
                param_group['lr'] = self.feature_scheduler_args(iteration) / self.sh_lr_scale
        return xyz_lr

    def construct_list_of_attributes(self):
        l = ['x', 'y', 'z', 'nx', 'ny', 'nz']
        for i in range(self._features_dc.shape[1]*self._features_dc.shape[2]):
            l.append('f_dc_{}'.format(i))
        for i in range(self._features_rest.shape[1]*self._features_rest.shape[2]):
            l.append('f_rest_{}'.format(i))
        l.append('opacity')
        for i in range(self._scaling.shape[1]):
            l.append('scale_{}'.format(i))
        for i in range(self._rotation.shape[1]):
            l.append('rot_{}'.format(i))
        return l

    def save_ply(self, path):
        mkdir_p(os.path.dirname(path))

        xyz = self._xyz.detach().cpu().numpy()
        normals = np.zeros_like(xyz)
        f_dc = self._features_dc.detach().transpose(1, 2).flatten(start_dim=1).contiguous().cpu().numpy()
        f_rest = self._features_rest.detach().transpose(1, 2).flatten(start_dim=1).contiguous().cpu().numpy()
        opacities = self._opacity.detach().cpu().numpy()
        scale = self._scaling.detach().cpu().numpy()
        rotation = self._rotation.detach().cpu().numpy()

        dtype_full = [(attribute, 'f4') for attribute in self.construct_list_of_attributes()]

        elements = np.empty(xyz.shape[0], dtype=dtype_full)
        attributes = np.concatenate((xyz, normals, f_dc, f_rest, opacities, scale, rotation), axis=1)
        elements[:] = list(map(tuple, attributes))
        el = PlyElement.describe(elements, 'vertex')
        PlyData([el]).write(path)

    def load_ply(self, path):
        plydata = PlyData.read(path)

        xyz = np.stack((np.asarray(plydata.elements[0]["x"]),
                        np.asarray(plydata.elements[0]["y"]),
                        np.asarray(plydata.elements[0]["z"])),  axis=1)
        opacities = np.asarray(plydata.elements[0]["opacity"])[..., np.newaxis]

        features_dc = np.zeros((xyz.shape[0], 3, 1))
        features_dc[:, 0, 0] = np.asarray(plydata.elements[0]["f_dc_0"])
        features_dc[:, 1, 0] = np.asarray(plydata.elements[0]["f_dc_1"])
        features_dc[:, 2, 0] = np.asarray(plydata.elements[0]["f_dc_2"])

        extra_f_names = [p.name for p in plydata.elements[0].properties if p.name.startswith("f_rest_")]
        extra_f_names = sorted(extra_f_names, key = lambda x: int(x.split('_')[-1]))
        assert len(extra_f_names) % 3 == 0, "Malformed SH coefficients in {}".format(path)
        rest_per_channel = len(extra_f_names) // 3
        file_degree = sh_degree_from_coeffs(rest_per_channel + 1)
        features_extra = np.zeros((xyz.shape[0], len(extra_f_names)))
        for idx, attr_name in enumerate(extra_f_names):
            features_extra[:, idx] = np.asarray(plydata.elements[0][attr_name])
        features_extra = features_extra.reshape((features_extra.shape[0], 3, rest_per_channel))

        scale_names = [p.name for p in plydata.elements[0].properties if p.name.startswith("scale_")]
        scale_names = sorted(scale_names, key = lambda x: int(x.split('_')[-1]))
        scales = np.zeros((xyz.shape[0], len(scale_names)))
        for idx, attr_name in enumerate(scale_names):
            scales[:, idx] = np.asarray(plydata.elements[0][attr_name])

        rot_names = [p.name for p in plydata.elements[0].properties if p.name.startswith("rot")]
        rot_names = sorted(rot_names, key = lambda x: int(x.split('_')[-1]))
        rots = np.zeros((xyz.shape[0], len(rot_names)))
        for idx, attr_name in enumerate(rot_names):
            rots[:, idx] = np.asarray(plydata.elements[0][attr_name])

        self._set_params(torch.tensor(xyz, dtype=torch.float),
                         torch.tensor(features_dc, dtype=torch.float).transpose(1, 2),
                         torch.tensor(features_extra, dtype=torch.float).transpose(1, 2),
                         torch.tensor(scales, dtype=torch.float),
                         torch.tensor(rots, dtype=torch.float),
                         torch.tensor(opacities, dtype=torch.float))
        if file_degree != self.max_sh_degree:
            self.with_sh_degree(self.max_sh_degree)

        self.active_sh_degree = self.max_sh_degree

    def _params_by_name(self):
        return {name: param for name, param in self.named_params()}

    def _assign(self, optimizable_tensors):
        self._xyz = optimizable_tensors["xyz"]
        self._features_dc = optimizable_tensors["f_dc"]
        self._features_rest = optimizable_tensors["f_rest"]
        self._opacity = optimizable_tensors["opacity"]
        self._scaling = optimizable_tensors["scaling"]
        self._rotation = optimizable_tensors["rotation"]

    def _index_optimizer(self, index):
        optimizable_tensors = {}
        if self.optimizer is None:
            for name, param in self.named_params():
                optimizable_tensors[name] = nn.Parameter(param.detach()[index].requires_grad_(True))
            return optimizable_tensors
        for group in self.optimizer.param_groups:
            stored_state = self.optimizer.state.get(group['params'][0], None)
            if stored_state is not None:
                stored_state["exp_avg"] = stored_state["exp_avg"][index]
                stored_state["exp_avg_sq"] = stored_state["exp_avg_sq"][index]

                del self.optimizer.state[group['params'][0]]
                group["params"][0] = nn.Parameter((group["params"][0][index].requires_grad_(True)))
                self.optimizer.state[group['params'][0]] = stored_state

                optimizable_tensors[group["name"]] = group["params"][0]
            else:
                group["params"][0] = nn.Parameter(group["params"][0][index].requires_grad_(True))
                optimizable_tensors[group["name"]] = group["params"][0]
        return optimizable_tensors

    def compact_by_index(self, index):
        """ Keeps the rows `index` (in that order), optimizer moments included. """
        with torch.no_grad():
            self._assign(self._index_optimizer(index))

    def cat_tensors_to_optimizer(self, tensors_dict):
        optimizable_tensors = {}
        if self.optimizer is None:
            for name, param in self.named_params():
                optimizable_tensors[name] = nn.Parameter(torch.cat((param.detach(), tensors_dict[name]), dim=0).requires_grad_(True))
            return optimizable_tensors
        for group in self.optimizer.param_groups:
            assert len(group["params"]) == 1
            extension_tensor = tensors_dict[group["name"]]
            stored_state = self.optimizer.state.get(group['params'][0], None)
            if stored_state is not None:
                stored_state["exp_avg"] = torch.cat((stored_state["exp_avg"], torch.zeros_like(extension_tensor)), dim=0)
                stored_state["exp_avg_sq"] = torch.cat((stored_state["exp_avg_sq"], torch.zeros_like(extension_tensor)), dim=0)

                del self.optimizer.state[group['params'][0]]
                group["params"][0] = nn.Parameter(torch.cat((group["params"][0], extension_tensor), dim=0).requires_grad_(True))
                self.optimizer.state[group['params'][0]] = stored_state

                optimizable_tensors[group["name"]] = group["params"][0]
            else:
                group["params"][0] = nn.Parameter(torch.cat((group["params"][0], extension_tensor), dim=0).requires_grad_(True))
                optimizable_tensors[group["name"]] = group["params"][0]

        return optimizable_tensors

    def extend(self, new_xyz, new_features_dc, new_features_rest, new_opacities, new_scaling, new_rotation):
        """ Appends rows; their optimizer moments start at zero. """
        d = {"xyz": new_xyz,
        "f_dc": new_features_dc,
        "f_rest": new_features_rest,
        "opacity": new_opacities,
        "scaling" : new_scaling,
        "rotation" : new_rotation}

        with torch.no_grad():
            self._assign(self.cat_tensors_to_optimizer(d))

    def add_noise(self, noise_lr):
        """ Pushes nearly transparent splats around, along their own covariance. """
        with torch.no_grad():
            gate = torch.sigmoid(100.0 * ((1.0 - self.get_opacity) - 0.995))
            noise = torch.randn_like(self._xyz)
            noise = torch.bmm(self.get_covariance(), noise[..., None])[..., 0]
            self._xyz.add_(noise * gate * noise_lr)

    def validate_values(self, check_grads=False):
        return validate_splat_params(self.named_params(), check_grads=check_grads)

def knn_log_scales(positions):
    """
    Log scale from half the mean distance to the two nearest neighbours, clamped
    to [1e-3, 0.1 * median extent of the central 75% of the points].
    """
    n = positions.shape[0]
    if n < 2:
        return torch.full((n, 3), float(np.log(1e-2)), device=positions.device)
    lo = torch.quantile(positions, 0.125, dim=0)
    hi = torch.quantile(positions, 0.875, dim=0)
    median_size = max(float((hi - lo).median()), 1e-2)
    dist = 0.5 * knn_distances(positions, 2).mean(dim=-1)
    dist = dist.clamp(1e-3, median_size * 0.1)
    return torch.log(dist)[:, None].repeat(1, 3)
