import math
import pytest
import torch
from scene.cameras import Camera
from scene.gaussian_model import GaussianModel, SplatRecord
from splat_renderer import render
from splat_renderer.rasterize import rasterize_forward
from splat_renderer.sizing import ReadbackSizing, UpperBoundSizing, select_sizing
from utils.image_utils import quantize_8bit, unpack_rgba8
from utils.sh_utils import RGB2SH

def _opaque_splat(position, color, log_scale, dtype=torch.float64):
    means = torch.tensor([position], dtype=dtype)
    quats = torch.tensor([[1.0, 0.0, 0.0, 0.0]], dtype=dtype)
    log_scales = torch.full((1, 3), log_scale, dtype=dtype)
    sh_coeffs = RGB2SH(torch.tensor([[color]], dtype=dtype))
    raw_opacity = torch.full((1, 1), 12.0, dtype=dtype)
    return means, quats, log_scales, sh_coeffs, raw_opacity

def _cat(*splats):
    return tuple(torch.cat(parts, dim=0) for parts in zip(*splats))

@pytest.mark.parametrize("bg", [(0.0, 0.0, 0.0), (0.2, 0.5, 0.9)])
def test_zero_splats_render_background(make_settings, bg):
    cameras = [
        Camera.create(),
        Camera.create(position=(1.0, -2.0, 3.0), rotation=(0.5, 0.5, -0.5, 0.5), fov_x=0.8, fov_y=0.6),
    ]
    empty = (torch.zeros((0, 3), dtype=torch.float64), torch.zeros((0, 4), dtype=torch.float64),
             torch.zeros((0, 3), dtype=torch.float64), torch.zeros((0, 1, 3), dtype=torch.float64),
             torch.zeros((0, 1), dtype=torch.float64))
    for sizing in ("readback", "upper_bound"):
        settings = make_settings((37, 21), bg=bg, sizing=sizing)
        for camera in cameras:
            rgba, aux = rasterize_forward(*empty, camera, settings)
            assert rgba.shape == (21, 37, 4)
            assert torch.allclose(rgba[..., :3], torch.tensor(bg, dtype=torch.float64).expand(21, 37, 3))
            assert torch.all(rgba[..., 3] == 0)
            assert int(aux.num_intersections) == 0

@pytest.mark.parametrize("img_size", [(0, 16), (16, 0)])
def test_zero_sized_image_is_rejected(make_settings, make_splats, camera, img_size):
    with pytest.raises(ValueError):
        rasterize_forward(*make_splats(2), camera, make_settings(img_size))

def test_bad_camera_and_shapes_are_rejected(make_settings, make_splats, camera):
    settings = make_settings((16, 16))
    means, quats, log_scales, sh_coeffs, raw_opacity = make_splats(3)
    with pytest.raises(ValueError):
        rasterize_forward(means, quats, log_scales, sh_coeffs, raw_opacity, camera._replace(fov_x=0.0), settings)
    with pytest.raises(ValueError):
        rasterize_forward(means[:2], quats, log_scales, sh_coeffs, raw_opacity, camera, settings)
    with pytest.raises(ValueError):
        rasterize_forward(means, quats, log_scales, sh_coeffs[..., :2], raw_opacity, camera, settings)

@pytest.mark.parametrize("near_first", [True, False])
def test_nearer_opaque_splat_wins(make_settings, camera, near_first):
    red = _opaque_splat((0.0, 0.0, 2.0), (1.0, 0.0, 0.0), math.log(1.0))
    blue = _opaque_splat((0.0, 0.0, 4.0), (0.0, 0.0, 1.0), math.log(2.0))
    splats = _cat(red, blue) if near_first else _cat(blue, red)
    rgba, aux = rasterize_forward(*splats, camera, make_settings((32, 32)))
    center = rgba[16, 16]
    assert center[0] > 0.99
    assert center[2] < 0.01
    assert int(aux.num_visible) == 2

def test_culled_splats_are_not_visible(make_settings, camera):
    behind = _opaque_splat((0.0, 0.0, -2.0), (1.0, 1.0, 1.0), 0.0)
    off_screen = _opaque_splat((50.0, 0.0, 2.0), (1.0, 1.0, 1.0), -3.0)
    seen = _opaque_splat((0.0, 0.0, 2.0), (1.0, 1.0, 1.0), -1.0)
    rgba, aux = rasterize_forward(*_cat(behind, off_screen, seen), camera, make_settings((32, 32)))
    assert aux.visible.tolist() == [False, False, True]
    assert aux.radii[0] == 0 and aux.radii[1] == 0 and aux.radii[2] > 0

def test_single_white_splat_fills_viewport(make_settings, camera):
    white = _opaque_splat((0.0, 0.0, 2.0), (1.0, 1.0, 1.0), math.log(100.0))
    rgba, _ = rasterize_forward(*white, camera, make_settings((32, 32)))
    assert torch.allclose(rgba[..., :3], torch.ones_like(rgba[..., :3]), atol=2e-3)
    assert torch.allclose(rgba[..., 3], torch.ones_like(rgba[..., 3]), atol=2e-3)

def test_compositing_stops_at_transmittance_threshold(make_settings, camera):
    layers = [_opaque_splat((0.0, 0.0, 2.0 + i), (1.0, 1.0, 1.0), math.log(100.0)) for i in range(4)]
    _, aux = rasterize_forward(*_cat(*layers), camera, make_settings((16, 16)))
    # the first splat leaves T ~ 1e-3, the second would take it below 1e-4
    assert torch.all(aux.final_index == 1)
    assert torch.all(aux.final_transmittance > 1e-4)

def test_sizing_strategies_render_the_same_image(make_settings, make_splats, camera):
    splats = make_splats(12, sh_degree=1, seed=4)
    behind = _opaque_splat((0.0, 0.0, -1.0), (1.0, 1.0, 1.0), 0.0)
    splats = _cat(splats, (behind[0], behind[1], behind[2], torch.zeros((1, 4, 3), dtype=torch.float64), behind[4]))
    readback, aux_r = rasterize_forward(*splats, camera, make_settings((40, 32), sh_degree=1, sizing="readback"))
    upper, aux_u = rasterize_forward(*splats, camera, make_settings((40, 32), sh_degree=1, sizing="upper_bound"))
    assert aux_u.compact_gid_from_isect.shape[0] >= aux_r.compact_gid_from_isect.shape[0]
    assert int(aux_u.num_intersections) == int(aux_r.num_intersections)
    assert torch.allclose(readback, upper, rtol=0.0, atol=1e-12)
    assert torch.equal(aux_r.visible, aux_u.visible)

def test_auto_sizing_allocates_exact_buffers(make_settings, make_splats, camera):
    assert isinstance(select_sizing("auto"), ReadbackSizing)
    assert isinstance(select_sizing("upper_bound"), UpperBoundSizing)
    with pytest.raises(ValueError):
        select_sizing("exact")
    splats = make_splats(12, sh_degree=1, seed=4)
    _, aux = rasterize_forward(*splats, camera, make_settings((40, 32), sh_degree=1, sizing="auto"))
    assert aux.compact_gid_from_isect.shape[0] == int(aux.num_intersections) > 0
    assert aux.xy.shape[0] == int(aux.num_visible)

def test_packed_output_matches_rgba(params, camera):
    dataset, opt, pipe, proc = params()
    record = SplatRecord(
        position=torch.tensor([[0.0, 0.0, 2.0], [0.3, -0.2, 3.0]]),
        scale=torch.tensor([[0.3, 0.2, 0.25], [0.5, 0.5, 0.5]]),
        opacity=torch.tensor([0.7, 0.4]),
        rotation=torch.tensor([[1.0, 0.0, 0.0, 0.0], [0.9, 0.1, 0.3, 0.0]]),
        sh_coeffs=RGB2SH(torch.tensor([[[0.9, 0.2, 0.1]], [[0.1, 0.8, 0.3]]])),
    )
    gaussians = GaussianModel(0, "cpu")
    gaussians.from_record(record)
    bg = torch.tensor([0.1, 0.1, 0.1])

    packed = render(camera, gaussians, pipe, bg, img_size=(24, 20), packed=True)
    full = render(camera, gaussians, pipe, bg, img_size=(24, 20))
    assert packed["render"].dtype == torch.int32
    assert packed["render"].shape == (20, 24, 1)
    assert torch.allclose(unpack_rgba8(packed["render"]), quantize_8bit(full["rgba"].detach()), atol=1e-6)
    assert full["render"].shape == (3, 20, 24)
    assert full["alpha"].shape == (1, 20, 24)

def test_bare_camera_needs_image_size(params, camera):
    dataset, opt, pipe, proc = params()
    gaussians = GaussianModel(0, "cpu")
    gaussians.from_record(SplatRecord(torch.zeros((1, 3)), torch.ones((1, 3)), torch.full((1,), 0.5),
                                      torch.tensor([[1.0, 0.0, 0.0, 0.0]]), torch.zeros((1, 1, 3))))
    with pytest.raises(ValueError):
        render(camera, gaussians, pipe, torch.zeros(3))
