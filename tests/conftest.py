import math
import pytest
import torch
from argparse import ArgumentParser
from arguments import ModelParams, OptimizationParams, PipelineParams, ProcessParams
from scene.cameras import Camera
from splat_renderer.render_aux import RasterSettings
from splat_renderer.sizing import select_sizing
from splat_renderer.tiles import get_tile_bounds, INTERSECTS_UPPER_BOUND
from utils.sh_utils import RGB2SH, num_sh_coeffs

@pytest.fixture
def camera():
    return Camera.create(position=(0.0, 0.0, 0.0), rotation=(1.0, 0.0, 0.0, 0.0),
                         fov_x=math.pi / 2, fov_y=math.pi / 2)

@pytest.fixture
def make_settings():
    def _make(img_size, sh_degree=0, bg=(0.0, 0.0, 0.0), dtype=torch.float64, sizing="readback", atomic=True,
              batch_size=4, tiles_per_chunk=3, scaling_modifier=1.0):
        return RasterSettings(
            image_width=img_size[0],
            image_height=img_size[1],
            tile_bounds=get_tile_bounds(img_size),
            bg=torch.tensor(bg, dtype=dtype),
            sh_degree=sh_degree,
            scaling_modifier=scaling_modifier,
            batch_size=batch_size,
            tiles_per_chunk=tiles_per_chunk,
            max_intersections=INTERSECTS_UPPER_BOUND,
            sizing=select_sizing(sizing),
            atomic=atomic,
        )
    return _make

@pytest.fixture
def make_splats():
    """
    Splats in front of the default camera, as raw parameters:
    (means, quats, log_scales, sh_coeffs, raw_opacity).
    """
    def _make(n, sh_degree=0, seed=0, dtype=torch.float64, opacity=(0.3, 0.6), spread=0.6, depth=(2.0, 4.0),
              log_scale=(-2.0, -1.2)):
        g = torch.Generator().manual_seed(seed)
        rand = lambda *shape: torch.rand(shape, generator=g, dtype=dtype)
        z = depth[0] + (depth[1] - depth[0]) * rand(n)
        xy = (rand(n, 2) * 2.0 - 1.0) * spread * z[:, None] * 0.5
        means = torch.cat((xy, z[:, None]), dim=-1)
        quats = torch.nn.functional.normalize(torch.randn((n, 4), generator=g, dtype=dtype), dim=-1)
        log_scales = log_scale[0] + (log_scale[1] - log_scale[0]) * rand(n, 3)
        sh_coeffs = torch.zeros((n, num_sh_coeffs(sh_degree), 3), dtype=dtype)
        sh_coeffs[:, 0] = RGB2SH(rand(n, 3))
        if sh_degree > 0:
            sh_coeffs[:, 1:] = 0.1 * torch.randn((n, num_sh_coeffs(sh_degree) - 1, 3), generator=g, dtype=dtype)
        o = opacity[0] + (opacity[1] - opacity[0]) * rand(n, 1)
        raw_opacity = torch.log(o / (1 - o))
        return means, quats, log_scales, sh_coeffs, raw_opacity
    return _make

@pytest.fixture
def params():
    """ Default parameter groups, with cpu friendly overrides. """
    def _make():
        parser = ArgumentParser()
        dataset = ModelParams(parser).defaults()
        opt = OptimizationParams(parser).defaults()
        pipe = PipelineParams(parser).defaults()
        proc = ProcessParams(parser).defaults()
        dataset.data_device = "cpu"
        pipe.sizing = "readback"
        return dataset, opt, pipe, proc
    return _make
