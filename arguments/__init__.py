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

from argparse import ArgumentParser
import os
from splat_renderer.tiles import INTERSECTS_UPPER_BOUND

class GroupParams:
    pass

class ParamGroup:
    def __init__(self, parser: ArgumentParser, name : str, fill_none = False):
        group = parser.add_argument_group(name)
        for key, value in vars(self).items():
            shorthand = False
            if key.startswith("_"):
                shorthand = True
                key = key[1:]
            t = type(value)
            value = value if not fill_none else None
            if shorthand:
                if t == bool:
                    group.add_argument("--" + key, ("-" + key[0:1]), default=value, action="store_true")
                else:
                    group.add_argument("--" + key, ("-" + key[0:1]), default=value, type=t)
            else:
                if t == bool:
                    group.add_argument("--" + key, default=value, action="store_true")
                else:
                    group.add_argument("--" + key, default=value, type=t)

    def extract(self, args):
        group = GroupParams()
        for arg in vars(args).items():
            if arg[0] in vars(self) or ("_" + arg[0]) in vars(self):
                setattr(group, arg[0], arg[1])
        return group

    def defaults(self):
        """ A GroupParams holding the default of every attribute. """
        group = GroupParams()
        for key, value in vars(self).items():
            setattr(group, key[1:] if key.startswith("_") else key, value)
        return group

class ModelParams(ParamGroup):
    def __init__(self, parser, sentinel=False):
        self.sh_degree = 3
        self._source_path = ""
        self._model_path = ""
        self._white_background = False
        self.data_device = "cuda"
        self.init_count = 10000
        self.load_iteration = 0
        self.eval = False
        super().__init__(parser, "Loading Parameters", sentinel)

    def extract(self, args):
        g = super().extract(args)
        g.source_path = os.path.abspath(g.source_path) if g.source_path else ""
        return g

class PipelineParams(ParamGroup):
    def __init__(self, parser):
        self.tile_batch = 64
        self.tiles_per_chunk = 64
        self.max_intersections = INTERSECTS_UPPER_BOUND
        self.sizing = "auto"
        self.atomic_add = "auto"
        self.debug_validation = False
        super().__init__(parser, "Pipeline Parameters")

class OptimizationParams(ParamGroup):
    def __init__(self, parser):
        self.iterations = 30_000
        self.position_lr_init = 0.00016
        self.position_lr_final = 0.0000016
        self.position_lr_delay_mult = 0.01
        self.position_lr_max_steps = 30_000
        self.feature_lr = 0.0025
        self.feature_lr_final = 0.001
        self.sh_lr_scale = 20.0
        self.opacity_lr = 0.025
        self.scaling_lr = 0.005
        self.scaling_lr_final = 0.001
        self.rotation_lr = 0.001
        self.lambda_dssim = 0.2
        self.opac_loss_weight = 1e-8
        self.match_alpha_weight = 0.1
        self.mean_noise_weight = 1e4
        self.sh_increase_interval = 1000
        self.refine_every = 100
        self.refine_from_iter = 500
        self.growth_stop_iter = 15_000
        self.growth_grad_threshold = 0.003
        self.growth_select_fraction = 0.2
        self.max_splats = 10_000_000
        self.min_opacity = 0.005
        self.refine_weight_mode = "max"
        self.random_background = False
        super().__init__(parser, "Optimization Parameters")

class ProcessParams(ParamGroup):
    def __init__(self, parser):
        self.seed = 42
        self.eval_every = 1000
        self.export_every = 5000
        self.eval_save_to_disk = False
        super().__init__(parser, "Process Parameters")
