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
import random
import numpy as np
from utils.system_utils import searchForMaxIteration
from utils.graphics_utils import BoundingBox, getNerfppNorm
from scene.gaussian_model import GaussianModel, SplatRecord
from scene.cameras import Camera, SceneView

class Scene:
    """
    Training and held out views of one capture, with what is known about its extent.
    The views come from a dataset reader; the initial splats from a point cloud,
    a splat record, random sampling in `bounds`, or a previously saved iteration.
    """

    gaussians : GaussianModel

    def __init__(self, train_views, test_views=None, point_cloud=None, initial_record=None, bounds=None,
                 model_path="", shuffle=True):
        self.model_path = model_path
        self.loaded_iter = None
        self.gaussians = None
        self.point_cloud = point_cloud
        self.initial_record = initial_record

        self.train_cameras = list(train_views)
        self.test_cameras = list(test_views or [])
        if len(self.train_cameras) == 0:
            raise ValueError("A scene needs at least one training view")

        if shuffle:
            random.shuffle(self.train_cameras)
            random.shuffle(self.test_cameras)

        cam_centers = np.stack([view.camera.position.detach().cpu().numpy() for view in self.train_cameras])
        self.nerf_normalization = getNerfppNorm(cam_centers)
        self.cameras_extent = max(float(self.nerf_normalization["radius"]), 1e-3)

        if bounds is None:
            if point_cloud is not None and len(point_cloud.points) > 0:
                bounds = BoundingBox.from_min_max(np.min(point_cloud.points, axis=0), np.max(point_cloud.points, axis=0))
            else:
                center = -self.nerf_normalization["translate"]
                bounds = BoundingBox(center=center, extent=np.full(3, self.cameras_extent))
        self.bounds = bounds

    def init_gaussians(self, gaussians : GaussianModel, init_count=10000, load_iteration=None, generator=None):
        """ Fills `gaussians` from the best available source and keeps a reference to it. """
        self.gaussians = gaussians
        if load_iteration:
            if load_iteration == -1:
                self.loaded_iter = searchForMaxIteration(os.path.join(self.model_path, "point_cloud"))
            else:
                self.loaded_iter = load_iteration
            print("Loading trained model at iteration {}".format(self.loaded_iter))
            gaussians.load_ply(os.path.join(self.model_path,
                                            "point_cloud",
                                            "iteration_" + str(self.loaded_iter),
                                            "point_cloud.ply"))
            gaussians.spatial_lr_scale = self.cameras_extent
        elif self.initial_record is not None:
            gaussians.from_record(self.initial_record, self.cameras_extent)
        elif self.point_cloud is not None and len(self.point_cloud.points) > 0:
            gaussians.create_from_pcd(self.point_cloud, self.cameras_extent)
        else:
            gaussians.create_random(init_count, self.bounds, self.cameras_extent, generator=generator)
        return gaussians

    def save(self, iteration):
        point_cloud_path = os.path.join(self.model_path, "point_cloud/iteration_{}".format(iteration))
        self.gaussians.save_ply(os.path.join(point_cloud_path, "point_cloud.ply"))
        return point_cloud_path

    def getTrainCameras(self):
        return self.train_cameras

    def getTestCameras(self):
        return self.test_cameras
