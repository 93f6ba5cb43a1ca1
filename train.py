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

import os
import sys
import time
import uuid
import threading
from enum import Enum
import torch
from PIL import Image
from tqdm import tqdm
from argparse import ArgumentParser, Namespace
from arguments import ModelParams, PipelineParams, OptimizationParams, ProcessParams
from scene import Scene, GaussianModel
from scene.dataset_loader import SceneLoader
from scene.refinement import RefineRecord, RefinementTracker
from splat_renderer import render
from utils.general_utils import safe_state, get_device
from utils.image_utils import psnr, quantize_8bit
from utils.loss_utils import l1_loss, ssim
from utils.system_utils import mkdir_p

try:
    from torch.utils.tensorboard import SummaryWriter
    TENSORBOARD_FOUND = True
except ImportError:
    TENSORBOARD_FOUND = False

class ProcessState(Enum):
    IDLE = "idle"
    LOADING = "loading"
    TRAINING = "training"
    EVALUATING = "evaluating"
    EXPORTING = "exporting"
    PAUSED = "paused"
    DONE = "done"
    FAILED = "failed"

class TrainingFailure(RuntimeError):
    """ A run aborted because a collaborator (files, data, loader) failed. The cause is chained. """

class TrainingProcess:
    """
    Owns the splats of one scene and optimises them step by step.
    Only the thread calling run() mutates the model; viewers go through
    render(), snapshot(), pause(), resume() and new_source().
    """

    def __init__(self, scene : Scene, dataset, opt, pipe, proc, tb_writer=None, checkpoint_iterations=(),
                 start_checkpoint=None, quiet=False):
        self.dataset = dataset
        self.opt = opt
        self.pipe = pipe
        self.proc = proc
        self.tb_writer = tb_writer
        self.checkpoint_iterations = list(checkpoint_iterations)
        self.start_checkpoint = start_checkpoint
        self.quiet = quiet
        self.device = get_device(dataset.data_device)

        self.scene = None
        self.gaussians = None
        self.record = None
        self.tracker = None
        self.loader = None
        self.iteration = 0
        self.state = ProcessState.IDLE

        bg_color = [1, 1, 1] if dataset.white_background else [0, 0, 0]
        self.background = torch.tensor(bg_color, dtype=torch.float32, device=self.device)

        self._initial_scene = scene
        self._pending_source = None
        # guards the splat store, the pause flag and the pending source
        self._lock = threading.Lock()
        self._wake = threading.Condition(self._lock)
        self._paused = False

    @property
    def num_splats(self):
        gaussians = self.gaussians
        return 0 if gaussians is None else gaussians.num_splats

    def pause(self):
        with self._lock:
            self._paused = True

    def resume(self):
        with self._wake:
            self._paused = False
            self._wake.notify_all()

    def new_source(self, scene : Scene):
        """ Replaces the scene; picked up at the next step boundary. """
        with self._wake:
            self._pending_source = scene
            self._wake.notify_all()

    def snapshot(self):
        """ A detached copy of the current splats, or None before loading. """
        with self._lock:
            gaussians = self.gaussians
            if gaussians is None:
                return None
            return gaussians.to_record()

    def render(self, camera, img_size, background, scaling_modifier=None, packed=True):
        """ Gradient free render of a copy of the current splats. None before loading. """
        with self._lock:
            gaussians = self.gaussians
            if gaussians is None:
                return None
            record = gaussians.to_record()
            max_sh_degree, active_sh_degree = gaussians.max_sh_degree, gaussians.active_sh_degree
        frozen = GaussianModel(max_sh_degree, self.device)
        frozen.from_record(record)
        frozen.active_sh_degree = active_sh_degree
        background = torch.as_tensor(background, dtype=torch.float32, device=self.device)
        with torch.no_grad():
            return render(camera, frozen, self.pipe, background,
                          scaling_modifier=1.0 if scaling_modifier is None else scaling_modifier,
                          img_size=img_size, packed=packed)["render"]

    def _setup(self, scene, restore_checkpoint):
        self.state = ProcessState.LOADING
        opt = self.opt
        self.scene = scene
        generator = torch.Generator().manual_seed(self.proc.seed)
        gaussians = GaussianModel(self.dataset.sh_degree, self.device)
        # load_iteration: 0 starts fresh, -1 picks the latest saved iteration
        load_iteration = self.dataset.load_iteration if restore_checkpoint else 0
        scene.init_gaussians(gaussians, self.dataset.init_count, load_iteration=load_iteration or None,
                             generator=generator)
        gaussians.training_setup(opt)

        first_iter = scene.loaded_iter or 0
        if restore_checkpoint and self.start_checkpoint:
            (model_params, first_iter) = torch.load(self.start_checkpoint, weights_only=False)
            gaussians.restore(model_params, opt)

        self.gaussians = gaussians
        self.record = RefineRecord(gaussians.num_splats, self.device)
        self.tracker = RefinementTracker(opt)
        self.loader = SceneLoader(scene.getTrainCameras(), self.device, seed=self.proc.seed).start()
        self.iteration = first_iter
        self.ema_loss_for_log = 0.0
        print("\n[ITER {}] Training {} splats on {} views".format(first_iter, gaussians.num_splats,
                                                                len(scene.getTrainCameras())))

    def _teardown(self):
        if self.loader is not None:
            self.loader.stop()
            self.loader = None

    def _swap_source(self):
        with self._lock:
            scene, self._pending_source = self._pending_source, None
        if scene is None:
            return False
        print("\n[ITER {}] Switching to a new source".format(self.iteration))
        self._teardown()
        self._setup(scene, restore_checkpoint=False)
        return True

    def compute_loss(self, render_pkg, sample, bg):
        opt = self.opt
        image = render_pkg["render"]
        gt_image = sample.image
        alpha_mask = sample.alpha_mask
        transparent = alpha_mask is not None and sample.view.alpha_mode == "transparent"

        if alpha_mask is not None and not transparent:
            image = image * alpha_mask
        if transparent:
            # the render is composited over bg, so is the target
            gt_image = gt_image * alpha_mask + (1.0 - alpha_mask) * bg[:, None, None]

        Ll1 = l1_loss(image, gt_image)
        ssim_value = ssim(image, gt_image)
        loss = (1.0 - opt.lambda_dssim) * Ll1 + opt.lambda_dssim * (1.0 - ssim_value)

        if opt.opac_loss_weight > 0:
            visible = render_pkg["visibility_filter"]
            loss = loss + opt.opac_loss_weight * self.gaussians.get_opacity[visible].sum()
        if transparent and opt.match_alpha_weight > 0:
            loss = loss + opt.match_alpha_weight * l1_loss(render_pkg["alpha"], alpha_mask)
        return loss, Ll1

    def step(self):
        """ One optimisation step. Returns (loss, Ll1). """
        opt = self.opt
        gaussians = self.gaussians
        iteration = self.iteration + 1

        xyz_lr = gaussians.update_learning_rate(iteration)
        if iteration % opt.sh_increase_interval == 0:
            gaussians.oneupSHdegree()

        sample = self.loader.next()
        bg = torch.rand((3), device=self.device) if opt.random_background else self.background

        render_pkg = render(sample.view, gaussians, self.pipe, bg)
        loss, Ll1 = self.compute_loss(render_pkg, sample, bg)
        loss.backward()

        # snapshot() and render() read the store under the same lock
        with torch.no_grad(), self._lock:
            refine_weight = render_pkg["viewspace_points"].grad
            visible = render_pkg["visibility_filter"]
            if self.pipe.debug_validation:
                gaussians.validate_values(check_grads=True)

            gaussians.optimizer.step()
            gaussians.optimizer.zero_grad(set_to_none = True)

            if opt.mean_noise_weight > 0:
                decay = max(0.0, 1.0 - iteration / opt.iterations)
                gaussians.add_noise(opt.mean_noise_weight * xyz_lr * decay)

            self.record.gather_stats(refine_weight, visible)
            if iteration < opt.iterations and self.tracker.should_refine(iteration):
                stats = self.tracker.refine(gaussians, self.record, iteration)
                print("\n[ITER {}] Refine: +{} / -{} splats, {} total".format(
                    iteration, stats.num_added, stats.num_pruned, stats.num_splats))
                if self.tb_writer:
                    self.tb_writer.add_scalar('refine/added', stats.num_added, iteration)
                    self.tb_writer.add_scalar('refine/pruned', stats.num_pruned, iteration)

        self.iteration = iteration
        return loss, Ll1

    def run(self):
        progress_bar = None
        try:
            if self.gaussians is None:
                self._setup(self._initial_scene, restore_checkpoint=True)
            progress_bar = tqdm(range(self.iteration, self.opt.iterations), desc="Training progress", disable=self.quiet)

            while self.iteration < self.opt.iterations:
                if self._swap_source():
                    progress_bar.close()
                    progress_bar = tqdm(range(self.iteration, self.opt.iterations), desc="Training progress",
                                        disable=self.quiet)
                with self._wake:
                    paused = self._paused
                    if paused:
                        self.state = ProcessState.PAUSED
                        # a new source is swapped in while paused
                        while self._paused and self._pending_source is None:
                            self._wake.wait()
                if paused:
                    continue
                self.state = ProcessState.TRAINING

                iter_start = time.perf_counter()
                loss, Ll1 = self.step()
                elapsed = (time.perf_counter() - iter_start) * 1000.0
                iteration = self.iteration

                with torch.no_grad():
                    self.ema_loss_for_log = 0.4 * loss.item() + 0.6 * self.ema_loss_for_log
                    progress_bar.set_postfix({"Loss": f"{self.ema_loss_for_log:.{7}f}", "Splats": self.num_splats})
                    progress_bar.update(1)

                    training_report(self.tb_writer, iteration, Ll1, loss, elapsed, self.gaussians)
                    if iteration % self.proc.eval_every == 0 or iteration == self.opt.iterations:
                        self.evaluate(iteration)
                    if iteration % self.proc.export_every == 0 or iteration == self.opt.iterations:
                        self.export(iteration)
                    if iteration in self.checkpoint_iterations:
                        self.save_checkpoint(iteration)

            self.state = ProcessState.DONE
        except (TrainingFailure, AssertionError):
            self.state = ProcessState.FAILED
            raise
        except Exception as e:
            self.state = ProcessState.FAILED
            raise TrainingFailure("Training aborted at iteration {}: {}".format(self.iteration, e)) from e
        finally:
            if progress_bar is not None:
                progress_bar.close()
            self._teardown()

    def evaluate(self, iteration):
        """ Forward only on held out views, black background, 8 bit round trip. """
        self.state = ProcessState.EVALUATING
        scene = self.scene
        black = torch.zeros(3, dtype=torch.float32, device=self.device)
        train_views = scene.getTrainCameras()
        validation_configs = ({'name': 'test', 'cameras' : scene.getTestCameras()},
                              {'name': 'train', 'cameras' : [train_views[idx % len(train_views)] for idx in range(5, 30, 5)]})

        results = {}
        for config in validation_configs:
            if not config['cameras']:
                continue
            psnr_test = 0.0
            ssim_test = 0.0
            for idx, viewpoint in enumerate(config['cameras']):
                gt_image, alpha_mask = viewpoint.split_image(self.device)
                if alpha_mask is not None:
                    gt_image = gt_image * alpha_mask
                image = quantize_8bit(render(viewpoint, self.gaussians, self.pipe, black)["render"])
                gt_image = quantize_8bit(gt_image)
                if self.tb_writer and (idx < 5):
                    self.tb_writer.add_images(config['name'] + "_view_{}/render".format(viewpoint.image_name), image[None], global_step=iteration)
                if self.proc.eval_save_to_disk:
                    save_image(image, os.path.join(self.scene.model_path, "eval", "iteration_{}".format(iteration),
                                                   "{}_{}.png".format(config['name'], viewpoint.image_name or idx)))
                psnr_test += psnr(image, gt_image).mean().double().item()
                ssim_test += ssim(image, gt_image).double().item()
            psnr_test /= len(config['cameras'])
            ssim_test /= len(config['cameras'])
            results[config['name']] = (psnr_test, ssim_test)
            print("\n[ITER {}] Evaluating {}: PSNR {} SSIM {}".format(iteration, config['name'], psnr_test, ssim_test))
            if self.tb_writer:
                self.tb_writer.add_scalar(config['name'] + '/loss_viewpoint - psnr', psnr_test, iteration)
                self.tb_writer.add_scalar(config['name'] + '/loss_viewpoint - ssim', ssim_test, iteration)

        if self.tb_writer:
            self.tb_writer.add_histogram("scene/opacity_histogram", self.gaussians.get_opacity, iteration)
        self.state = ProcessState.TRAINING
        return results

    def export(self, iteration):
        self.state = ProcessState.EXPORTING
        print("\n[ITER {}] Saving Gaussians".format(iteration))
        path = self.scene.save(iteration)
        self.state = ProcessState.TRAINING
        return path

    def save_checkpoint(self, iteration):
        print("\n[ITER {}] Saving Checkpoint".format(iteration))
        mkdir_p(self.scene.model_path or ".")
        torch.save((self.gaussians.capture(), iteration), os.path.join(self.scene.model_path, "chkpnt" + str(iteration) + ".pth"))

def save_image(image, path):
    mkdir_p(os.path.dirname(path))
    array = (image.clamp(0.0, 1.0) * 255.0).round().byte().permute(1, 2, 0).cpu().numpy()
    Image.fromarray(array).save(path)

def load_scene_file(path, dataset):
    """
    Reads a scene written with torch.save: a dict with a "train" list of SceneViews and
    optionally "test", "point_cloud" (BasicPointCloud), "record" (SplatRecord) and "bounds".
    """
    try:
        data = torch.load(path, weights_only=False)
        train_views = data["train"]
    except (OSError, KeyError, TypeError, RuntimeError) as e:
        raise TrainingFailure("Could not read a scene from {}".format(path)) from e
    test_views = data.get("test", []) if dataset.eval else []
    return Scene(train_views, test_views, point_cloud=data.get("point_cloud"), initial_record=data.get("record"),
                 bounds=data.get("bounds"), model_path=dataset.model_path)

def training(dataset, opt, pipe, proc, checkpoint_iterations, checkpoint, quiet=False):
    tb_writer = prepare_output_and_logger(dataset)
    scene = load_scene_file(dataset.source_path, dataset)
    process = TrainingProcess(scene, dataset, opt, pipe, proc, tb_writer, checkpoint_iterations, checkpoint, quiet)
    process.run()
    return process

def prepare_output_and_logger(args):
    if not args.model_path:
        if os.getenv('OAR_JOB_ID'):
            unique_str=os.getenv('OAR_JOB_ID')
        else:
            unique_str = str(uuid.uuid4())
        args.model_path = os.path.join("./output/", unique_str[0:10])

    # Set up output folder
    print("Output folder: {}".format(args.model_path))
    os.makedirs(args.model_path, exist_ok = True)
    with open(os.path.join(args.model_path, "cfg_args"), 'w') as cfg_log_f:
        cfg_log_f.write(str(Namespace(**vars(args))))

    # Create Tensorboard writer
    tb_writer = None
    if TENSORBOARD_FOUND:
        tb_writer = SummaryWriter(args.model_path)
    else:
        print("Tensorboard not available: not logging progress")
    return tb_writer

def training_report(tb_writer, iteration, Ll1, loss, elapsed, gaussians):
    if tb_writer:
        tb_writer.add_scalar('train_loss_patches/l1_loss', Ll1.item(), iteration)
        tb_writer.add_scalar('train_loss_patches/total_loss', loss.item(), iteration)
        tb_writer.add_scalar('iter_time', elapsed, iteration)
        tb_writer.add_scalar('total_points', gaussians.num_splats, iteration)

if __name__ == "__main__":
    parser = ArgumentParser(description="Training script parameters")
    lp = ModelParams(parser)
    op = OptimizationParams(parser)
    pp = PipelineParams(parser)
    rp = ProcessParams(parser)
    parser.add_argument('--detect_anomaly', action='store_true', default=False)
    parser.add_argument("--quiet", action="store_true")
    parser.add_argument("--checkpoint_iterations", nargs="+", type=int, default=[])
    parser.add_argument("--start_checkpoint", type=str, default = None)
    args = parser.parse_args(sys.argv[1:])

    print("Optimizing " + args.model_path)

    # Initialize system state (RNG)
    safe_state(args.quiet, args.seed)

    torch.autograd.set_detect_anomaly(args.detect_anomaly)
    try:
        training(lp.extract(args), op.extract(args), pp.extract(args), rp.extract(args),
                 args.checkpoint_iterations, args.start_checkpoint, args.quiet)
    except TrainingFailure as e:
        print("\nTraining failed: {}".format(e))
        sys.exit(1)

    # All done
    print("\nTraining complete.")
