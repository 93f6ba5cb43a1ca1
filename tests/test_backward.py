import pytest
import torch
from scene.gaussian_model import GaussianModel
from splat_renderer import make_settings as settings_for, render, render_backward
from splat_renderer.accumulate import atomic_accumulate, serialized_accumulate, supports_atomic_add
from splat_renderer.project import project_gaussians, project_backward
from splat_renderer.rasterize import rasterize_forward
from splat_renderer.tiles import get_tile_bounds

IMG_SIZE = (40, 32)
NAMES = ("means", "quats", "log_scales", "sh_coeffs", "raw_opacity")

def _weights(seed=0):
    g = torch.Generator().manual_seed(seed)
    return torch.randn((IMG_SIZE[1], IMG_SIZE[0], 4), generator=g, dtype=torch.float64)

def _loss(splats, camera, settings, weights):
    rgba, _ = rasterize_forward(*splats, camera, settings)
    return (rgba * weights).sum()

def _analytic(splats, camera, settings, weights):
    with torch.no_grad():
        rgba, aux = rasterize_forward(*splats, camera, settings)
        return render_backward(aux, weights, *splats, camera, settings)

def test_projection_backward_matches_autograd(make_splats, camera):
    splats = make_splats(9, sh_degree=3, seed=1, spread=1.6, log_scale=(-1.5, -0.5))
    # past the right edge of the frustum, so the Jacobian is clamped in x
    edge = make_splats(1, sh_degree=3, seed=2, log_scale=(-0.5, -0.5))
    edge[0][0] = torch.tensor([1.35 * 3.0, 0.0, 3.0], dtype=torch.float64)
    splats = tuple(torch.cat(parts) for parts in zip(splats, edge))
    inputs = [t.clone().requires_grad_(True) for t in splats]
    tile_bounds = get_tile_bounds(IMG_SIZE)
    proj = project_gaussians(*inputs, 3, camera, IMG_SIZE, tile_bounds)

    g = torch.Generator().manual_seed(2)
    valid = proj.valid
    mask = lambda t: torch.where(valid.view(-1, *([1] * (t.dim() - 1))), t, torch.zeros_like(t))
    v_xy = mask(torch.randn((10, 2), generator=g, dtype=torch.float64))
    v_conic = mask(torch.randn((10, 3), generator=g, dtype=torch.float64))
    v_colors = mask(torch.randn((10, 3), generator=g, dtype=torch.float64))
    v_opacities = mask(torch.randn(10, generator=g, dtype=torch.float64))

    loss = (proj.xy * v_xy).sum() + (proj.conic * v_conic).sum() + (proj.colors * v_colors).sum() \
        + (proj.opacities * v_opacities).sum()
    expected = torch.autograd.grad(loss, inputs)

    gids = torch.arange(10)
    actual = project_backward(*splats, 3, camera, IMG_SIZE, gids, valid, v_xy, v_conic, v_colors, v_opacities)
    assert bool(valid.all())
    for name, a, e in zip(NAMES, actual, expected):
        torch.testing.assert_close(a, e, rtol=1e-6, atol=1e-9, msg="gradient of {}".format(name))

def test_render_backward_matches_autograd(make_settings, make_splats, camera):
    splats = make_splats(8, sh_degree=1, seed=5)
    settings = make_settings(IMG_SIZE, sh_degree=1)
    weights = _weights(1)

    inputs = [t.clone().requires_grad_(True) for t in splats]
    expected = torch.autograd.grad(_loss(inputs, camera, settings, weights), inputs)
    actual = _analytic(splats, camera, settings, weights)
    for name, a, e in zip(NAMES, actual[:5], expected):
        torch.testing.assert_close(a, e, rtol=1e-5, atol=1e-8, msg="gradient of {}".format(name))

def test_gradients_match_finite_differences(make_settings, make_splats, camera):
    splats = make_splats(6, sh_degree=1, seed=7)
    settings = make_settings(IMG_SIZE, sh_degree=1)
    weights = _weights(3)
    analytic = _analytic(splats, camera, settings, weights)
    eps = 1e-6

    for which in (0, 1, 2, 4):
        fd = torch.zeros_like(splats[which])
        flat = fd.view(-1)
        for i in range(flat.shape[0]):
            plus = [t.clone() for t in splats]
            minus = [t.clone() for t in splats]
            plus[which].view(-1)[i] += eps
            minus[which].view(-1)[i] -= eps
            flat[i] = (_loss(plus, camera, settings, weights) - _loss(minus, camera, settings, weights)) / (2 * eps)
        # relative per element; the absolute floor only covers float64 round off near zero
        torch.testing.assert_close(analytic[which], fd, rtol=1e-3, atol=1e-6,
                                   msg="gradient of {}".format(NAMES[which]))

def test_atomic_and_serialized_accumulation_agree(make_settings, make_splats, camera):
    splats = make_splats(8, seed=9)
    weights = _weights(4)
    atomic = _analytic(splats, camera, make_settings(IMG_SIZE, atomic=True), weights)
    serialized = _analytic(splats, camera, make_settings(IMG_SIZE, atomic=False), weights)
    for a, s in zip(atomic[:6], serialized[:6]):
        torch.testing.assert_close(a, s, rtol=1e-7, atol=1e-9)

def test_sizing_strategies_give_the_same_gradients(make_settings, make_splats, camera):
    splats = make_splats(8, seed=11)
    weights = _weights(5)
    readback = _analytic(splats, camera, make_settings(IMG_SIZE, sizing="readback"), weights)
    upper = _analytic(splats, camera, make_settings(IMG_SIZE, sizing="upper_bound"), weights)
    for r, u in zip(readback[:6], upper[:6]):
        torch.testing.assert_close(r, u, rtol=1e-7, atol=1e-9)

def test_culled_splat_gets_no_gradient(make_settings, make_splats, camera):
    means, quats, log_scales, sh_coeffs, raw_opacity = make_splats(4, seed=13)
    means[2] = torch.tensor([0.0, 0.0, -3.0], dtype=torch.float64)
    grads = _analytic((means, quats, log_scales, sh_coeffs, raw_opacity), camera, make_settings(IMG_SIZE), _weights(6))
    assert not grads.visible[2]
    for g in grads[:6]:
        assert torch.all(g[2] == 0)
    assert torch.all(grads.refine_weight >= 0)

def test_accumulators_on_repeated_indices():
    g = torch.Generator().manual_seed(0)
    index = torch.randint(0, 7, (200,), generator=g)
    values = torch.randn((200, 5), generator=g, dtype=torch.float64)
    a = atomic_accumulate(torch.zeros((9, 5), dtype=torch.float64), index, values)
    s = serialized_accumulate(torch.zeros((9, 5), dtype=torch.float64), index, values)
    torch.testing.assert_close(a, s)
    assert torch.all(a[7:] == 0)

def test_atomic_add_modes():
    assert supports_atomic_add("on")
    assert not supports_atomic_add("off")
    with pytest.raises(ValueError):
        supports_atomic_add("sometimes")

def test_autograd_function_routes_gradients(params, make_splats, camera):
    dataset, opt, pipe, proc = params()
    pipe.tile_batch = 8
    means, quats, log_scales, sh_coeffs, raw_opacity = make_splats(5, seed=17, dtype=torch.float32)
    gaussians = GaussianModel(0, "cpu")
    gaussians._set_params(means, sh_coeffs[:, :1], sh_coeffs[:, 1:], log_scales, quats, raw_opacity)
    bg = torch.tensor([0.3, 0.2, 0.1])

    render_pkg = render(camera, gaussians, pipe, bg, img_size=IMG_SIZE)
    weights = _weights(7).float()
    (render_pkg["rgba"] * weights).sum().backward()

    settings = settings_for(pipe, bg, IMG_SIZE, 0, "cpu")
    with torch.no_grad():
        expected = render_backward(render_pkg["aux"], weights, means, quats, log_scales, sh_coeffs, raw_opacity,
                                   camera, settings)
    torch.testing.assert_close(gaussians._xyz.grad, expected.v_means, rtol=1e-4, atol=1e-6)
    torch.testing.assert_close(gaussians._opacity.grad, expected.v_raw_opacity, rtol=1e-4, atol=1e-6)
    torch.testing.assert_close(render_pkg["viewspace_points"].grad, expected.refine_weight, rtol=1e-4, atol=1e-6)
