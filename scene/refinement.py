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
from utils.general_utils import build_rotation

class RefineStats(NamedTuple):
    num_added : int
    num_pruned : int
    num_splats : int

class RefineRecord:
    """
    Per splat statistics gathered between two refinement boundaries.
    Rows are kept aligned with the GaussianModel they describe.
    """

    def __init__(self, num_splats, device="cuda"):
        self.device = torch.device(device)
        self.refine_weight_norm = torch.zeros(num_splats, device=self.device)
        self.refine_weight_sum = torch.zeros(num_splats, device=self.device)
        self.vis_count = torch.zeros(num_splats, dtype=torch.int32, device=self.device)

    def __len__(self):
        return self.refine_weight_norm.shape[0]

    def gather_stats(self, refine_weight, visible):
        # refine_weight: [N, 2] screen space gradient magnitude, visible: [N] bool
        assert refine_weight.shape[0] == len(self), "refine stats for {} splats, record has {}".format(
            refine_weight.shape[0], len(self))
        norm = torch.linalg.norm(refine_weight.detach().float(), dim=-1)
        norm = torch.where(visible, norm, torch.zeros_like(norm))
        self.refine_weight_norm = torch.maximum(self.refine_weight_norm, norm)
        self.refine_weight_sum += norm
        self.vis_count += visible.int()

    def saliency(self, mode="max"):
        if mode == "max":
            return self.refine_weight_norm
        if mode == "mean":
            return self.refine_weight_sum / self.vis_count.clamp_min(1).float()
        raise ValueError("Unknown refine weight mode '{}'".format(mode))

    def above_threshold(self, threshold, mode="max"):
        return (self.saliency(mode) > threshold) & (self.vis_count > 0)

    def keep(self, index):
        self.refine_weight_norm = self.refine_weight_norm[index]
        self.refine_weight_sum = self.refine_weight_sum[index]
        self.vis_count = self.vis_count[index]

    def extend(self, count):
        self.refine_weight_norm = torch.cat((self.refine_weight_norm, torch.zeros(count, device=self.device)))
        self.refine_weight_sum = torch.cat((self.refine_weight_sum, torch.zeros(count, device=self.device)))
        self.vis_count = torch.cat((self.vis_count, torch.zeros(count, dtype=torch.int32, device=self.device)))

    def reset(self):
        self.refine_weight_norm.zero_()
        self.refine_weight_sum.zero_()
        self.vis_count.zero_()

class RefinementTracker:
    """ Decides when and where to grow and prune splats. """

    def __init__(self, opt):
        self.refine_every = opt.refine_every
        self.refine_from_iter = opt.refine_from_iter
        self.growth_stop_iter = opt.growth_stop_iter
        self.growth_grad_threshold = opt.growth_grad_threshold
        self.growth_select_fraction = opt.growth_select_fraction
        self.max_splats = opt.max_splats
        self.min_opacity = opt.min_opacity
        self.refine_weight_mode = opt.refine_weight_mode

    def should_refine(self, iteration):
        return iteration >= self.refine_from_iter and iteration % self.refine_every == 0

    def select_growth(self, record, num_splats):
        saliency = record.saliency(self.refine_weight_mode)
        candidates = torch.nonzero(record.above_threshold(self.growth_grad_threshold, self.refine_weight_mode),
                                   as_tuple=False).squeeze(-1)
        num_select = math.ceil(candidates.shape[0] * self.growth_select_fraction)
        num_select = min(num_select, max(self.max_splats - num_splats, 0))
        if num_select <= 0:
            return candidates[:0]
        top = torch.topk(saliency[candidates], num_select).indices
        return torch.sort(candidates[top]).values

    def grow(self, gaussians, record, selected):
        """ One child per selected splat, sampled from its parent's Gaussian at half the scale. """
        stds = gaussians.get_scaling[selected]
        means = torch.zeros((stds.size(0), 3), device=stds.device)
        samples = torch.normal(mean=means, std=stds)
        rots = build_rotation(gaussians._rotation[selected])
        new_xyz = torch.bmm(rots, samples.unsqueeze(-1)).squeeze(-1) + gaussians.get_xyz[selected]
        new_scaling = gaussians._scaling[selected] - math.log(2.0)
        gaussians.extend(new_xyz.detach(),
                         gaussians._features_dc[selected].detach(),
                         gaussians._features_rest[selected].detach(),
                         gaussians._opacity[selected].detach(),
                         new_scaling.detach(),
                         gaussians._rotation[selected].detach())
        record.extend(selected.shape[0])

    def refine(self, gaussians, record, iteration):
        with torch.no_grad():
            num_before = gaussians.num_splats
            assert len(record) == num_before, "refine record has {} rows, model has {}".format(len(record), num_before)

            num_added = 0
            if iteration < self.growth_stop_iter:
                selected = self.select_growth(record, num_before)
                num_added = selected.shape[0]
                if num_added > 0:
                    self.grow(gaussians, record, selected)

            prune_mask = (gaussians.get_opacity[:, 0] < self.min_opacity) | (record.vis_count == 0)
            prune_mask[num_before:] = False
            num_pruned = int(prune_mask.sum())
            if num_pruned == prune_mask.shape[0]:
                num_pruned = 0
            if num_pruned > 0:
                keep = torch.nonzero(~prune_mask, as_tuple=False).squeeze(-1)
                gaussians.compact_by_index(keep)
                record.keep(keep)

            assert len(record) == gaussians.num_splats
            record.reset()

        return RefineStats(num_added=num_added, num_pruned=num_pruned, num_splats=gaussians.num_splats)
