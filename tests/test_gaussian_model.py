import math
import numpy as np
import torch
from scene.gaussian_model import GaussianModel, SplatRecord
from utils.graphics_utils import BasicPointCloud, BoundingBox, knn_distances
from utils.sh_utils import num_sh_coeffs

def _random_model(count=64, sh_degree=1, seed=0):
    gaussians = GaussianModel(sh_degree, "cpu")
    bounds = BoundingBox.from_min_max([-1.0, -2.0, 0.0], [1.0, 2.0, 3.0])
    gaussians.create_random(count, bounds, 1.0, generator=torch.Generator().manual_seed(seed))
    return gaussians, bounds

def test_create_random_fills_bounds():
    gaussians, bounds = _random_model(500)
    assert gaussians.num_splats == 500
    xyz = gaussians.get_xyz.detach()
    assert torch.all(xyz >= torch.tensor(bounds.min, dtype=torch.float32) - 1e-6)
    assert torch.all(xyz <= torch.tensor(bounds.max, dtype=torch.float32) + 1e-6)
    opacity = gaussians.get_opacity.detach()
    assert torch.all(opacity >= 0.1 - 1e-5) and torch.all(opacity <= 0.25 + 1e-5)
    scales = gaussians.get_scaling.detach()
    assert torch.all(scales >= 1e-3 - 1e-7)
    assert gaussians.get_features.shape == (500, num_sh_coeffs(1), 3)
    assert torch.all(gaussians.get_features_rest == 0)
    assert torch.allclose(gaussians.get_rotation.detach().norm(dim=-1), torch.ones(500))

def test_create_from_pcd_uses_neighbour_distances():
    points = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
    pcd = BasicPointCloud(points=points, colors=np.full((4, 3), 0.5), normals=np.zeros((4, 3)))
    gaussians = GaussianModel(0, "cpu")
    gaussians.create_from_pcd(pcd, 2.0)
    # the origin has its three neighbours at distance 1
    assert math.isclose(float(gaussians.get_scaling[0, 0]), 1.0, rel_tol=1e-5)
    assert torch.allclose(gaussians.get_opacity.detach(), torch.full((4, 1), 0.1))
    assert torch.allclose(gaussians.get_features.detach(), torch.zeros((4, 1, 3)), atol=1e-6)
    assert gaussians.spatial_lr_scale == 2.0

def test_knn_distances_are_sorted():
    points = torch.tensor([[0.0, 0.0, 0.0], [3.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
    d = knn_distances(points, 2, chunk_size=2)
    assert torch.allclose(d, torch.tensor([[1.0, 3.0], [2.0, 3.0], [1.0, 2.0]]))
    assert knn_distances(points[:1], 3).shape == (1, 0)

def test_record_round_trip():
    gaussians, _ = _random_model(32, sh_degree=2)
    record = gaussians.to_record()
    assert isinstance(record, SplatRecord) and record.num_splats == 32

    restored = GaussianModel(2, "cpu")
    restored.from_record(record)
    again = restored.to_record()
    for a, b in zip(record, again):
        assert torch.allclose(a, b, atol=1e-5)

def test_ply_round_trip(tmp_path):
    gaussians, _ = _random_model(20, sh_degree=3)
    with torch.no_grad():
        gaussians._features_rest.normal_()
    path = str(tmp_path / "point_cloud" / "iteration_7" / "point_cloud.ply")
    gaussians.save_ply(path)

    loaded = GaussianModel(3, "cpu")
    loaded.load_ply(path)
    assert loaded.active_sh_degree == 3
    for name, param in gaussians.named_params():
        assert torch.allclose(param, dict(loaded.named_params())[name], atol=1e-6), name

def test_load_ply_adapts_sh_degree(tmp_path):
    gaussians, _ = _random_model(10, sh_degree=1)
    path = str(tmp_path / "splats.ply")
    gaussians.save_ply(path)

    higher = GaussianModel(3, "cpu")
    higher.load_ply(path)
    assert higher.get_features.shape == (10, 16, 3)
    assert torch.allclose(higher.get_features[:, :4], gaussians.get_features)
    assert torch.all(higher.get_features[:, 4:] == 0)

def test_with_sh_degree_pads_and_truncates():
    gaussians, _ = _random_model(8, sh_degree=2)
    with torch.no_grad():
        gaussians._features_rest.fill_(0.5)
    gaussians.with_sh_degree(1)
    assert gaussians.get_features.shape == (8, 4, 3)
    gaussians.with_sh_degree(3)
    assert gaussians.get_features.shape == (8, 16, 3)
    assert torch.all(gaussians.get_features_rest[:, :3] == 0.5)
    assert torch.all(gaussians.get_features_rest[:, 3:] == 0)
    assert gaussians.max_sh_degree == 3

def test_compact_by_index_keeps_optimizer_rows_aligned(params):
    dataset, opt, pipe, proc = params()
    gaussians, _ = _random_model(10)
    gaussians.training_setup(opt)
    gaussians._xyz.grad = torch.arange(30, dtype=torch.float32).view(10, 3)
    for _, param in gaussians.named_params():
        if param.grad is None:
            param.grad = torch.ones_like(param)
    gaussians.optimizer.step()
    exp_avg = gaussians.optimizer.state[gaussians._xyz]["exp_avg"].clone()
    xyz = gaussians.get_xyz.detach().clone()

    index = torch.tensor([7, 2, 5])
    gaussians.compact_by_index(index)
    assert gaussians.num_splats == 3
    assert torch.equal(gaussians.get_xyz.detach(), xyz[index])
    assert torch.equal(gaussians.optimizer.state[gaussians._xyz]["exp_avg"], exp_avg[index])
    for group in gaussians.optimizer.param_groups:
        assert group["params"][0].shape[0] == 3

def test_extend_gives_new_rows_zero_moments(params):
    dataset, opt, pipe, proc = params()
    gaussians, _ = _random_model(4, sh_degree=0)
    gaussians.training_setup(opt)
    for _, param in gaussians.named_params():
        param.grad = torch.ones_like(param)
    gaussians.optimizer.step()

    gaussians.extend(torch.zeros((2, 3)), torch.zeros((2, 1, 3)), torch.zeros((2, 0, 3)), torch.zeros((2, 1)),
                     torch.zeros((2, 3)), torch.tensor([[1.0, 0.0, 0.0, 0.0]] * 2))
    assert gaussians.num_splats == 6
    state = gaussians.optimizer.state[gaussians._opacity]
    assert torch.all(state["exp_avg"][:4] != 0)
    assert torch.all(state["exp_avg"][4:] == 0)

def test_learning_rate_schedules(params):
    dataset, opt, pipe, proc = params()
    gaussians, _ = _random_model(4, sh_degree=0)
    gaussians.spatial_lr_scale = 2.0
    gaussians.training_setup(opt)
    lr_start = gaussians.update_learning_rate(0)
    lr_end = gaussians.update_learning_rate(opt.position_lr_max_steps)
    assert math.isclose(lr_end, opt.position_lr_final * 2.0, rel_tol=1e-6)
    assert math.isclose(lr_start, opt.position_lr_init * 2.0, rel_tol=1e-6)
    lrs = {group["name"]: group["lr"] for group in gaussians.optimizer.param_groups}
    assert math.isclose(lrs["f_dc"], opt.feature_lr_final, rel_tol=1e-6)
    assert math.isclose(lrs["f_rest"], opt.feature_lr_final / opt.sh_lr_scale, rel_tol=1e-6)

def test_add_noise_only_moves_transparent_splats():
    record = SplatRecord(
        position=torch.zeros((2, 3)),
        scale=torch.ones((2, 3)),
        opacity=torch.tensor([0.999, 0.0001]),
        rotation=torch.tensor([[1.0, 0.0, 0.0, 0.0]] * 2),
        sh_coeffs=torch.zeros((2, 1, 3)),
    )
    gaussians = GaussianModel(0, "cpu")
    gaussians.from_record(record)
    torch.manual_seed(0)
    gaussians.add_noise(1.0)
    moved = gaussians.get_xyz.detach().norm(dim=-1)
    assert moved[0] < 1e-6
    assert moved[1] > 0

def test_validation_reports_corrupt_values(capsys):
    gaussians, _ = _random_model(6)
    assert gaussians.validate_values()
    with torch.no_grad():
        gaussians._xyz[0, 0] = float("nan")
        gaussians._opacity[1, 0] = 50.0
    assert not gaussians.validate_values()
    out = capsys.readouterr().out
    assert "[VALIDATION] xyz: 1 NaN" in out
    assert "[VALIDATION] opacity: 1 values above 20.0" in out
