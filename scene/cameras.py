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
import numpy as np
from typing import NamedTuple
from PIL import Image
from utils.general_utils import PILtoTorch, build_rotation
from utils.graphics_utils import fov2focal, rotmat2qvec

class Camera(NamedTuple):
    """
    Pinhole camera, looking down +Z in its local frame with +X right and +Y down.
    rotation is the local-to-world quaternion (w, x, y, z).
    center_uv is the principal point in normalised image coordinates.
    """
    position : torch.Tensor
    rotation : torch.Tensor
    fov_x : float
    fov_y : float
    center_uv : tuple = (0.5, 0.5)

    @classmethod
    def create(cls, position=(0.0, 0.0, 0.0), rotation=(1.0, 0.0, 0.0, 0.0), fov_x=math.pi / 2, fov_y=math.pi / 2,
               center_uv=(0.5, 0.5), dtype=torch.float32):
        return cls(torch.as_tensor(position, dtype=dtype), torch.as_tensor(rotation, dtype=dtype),
                   float(fov_x), float(fov_y), tuple(center_uv))

    @classmethod
    def from_world_view(cls, R, T, fov_x, fov_y, center_uv=(0.5, 0.5)):
        # COLMAP style extrinsics: the world to view rotation is R^T, the translation T
        R = np.asarray(R, dtype=np.float64)
        T = np.asarray(T, dtype=np.float64)
        position = -R @ T
        return cls.create(position, rotmat2qvec(R), fov_x, fov_y, center_uv)

    def rotation_matrix(self):
        return build_rotation(self.rotation[None].to(torch.float64))[0]

    def world_to_local(self):
        R_cw = self.rotation_matrix().transpose(0, 1)
        W2L = torch.eye(4, dtype=torch.float64, device=self.position.device)
        W2L[:3, :3] = R_cw
        W2L[:3, 3] = -R_cw @ self.position.to(torch.float64)
        return W2L

    def focal(self, img_size):
        width, height = img_size
        return fov2focal(self.fov_x, width), fov2focal(self.fov_y, height)

    def center(self, img_size):
        width, height = img_size
        return self.center_uv[0] * width, self.center_uv[1] * height

    def validate(self, img_size):
        width, height = img_size
        if int(width) <= 0 or int(height) <= 0:
            raise ValueError("Cannot render a {}x{} image, both sides must be positive".format(width, height))
        for name, fov in (("fov_x", self.fov_x), ("fov_y", self.fov_y)):
            if not (0.0 < fov < math.pi):
                raise ValueError("Camera {} must lie in (0, pi), got {}".format(name, fov))

class SceneView:
    """
    A camera paired with the photograph it should reproduce.
    The image is either given directly (tensor [C, H, W] or PIL image) or produced
    on demand by `loader`, a callable returning one of those.
    alpha_mode: 'masked' multiplies the render by the alpha channel,
                'transparent' supervises the rendered alpha with it.
    """
    def __init__(self, camera : Camera, image=None, image_name="", uid=0, alpha_mode="masked",
                 loader=None, resolution=None):
        if image is None and loader is None:
            raise ValueError("SceneView '{}' has neither an image nor a loader".format(image_name))
        if alpha_mode not in ("masked", "transparent"):
            raise ValueError("Unknown alpha mode '{}'".format(alpha_mode))
        self.camera = camera
        self.image_name = image_name
        self.uid = uid
        self.alpha_mode = alpha_mode
        self._image = image
        self._loader = loader
        self._resolution = resolution

        if image is not None:
            self.image_width, self.image_height = self._size_of(image)
        elif resolution is not None:
            self.image_width, self.image_height = resolution
        else:
            self.image_width, self.image_height = self._size_of(self.load_image())

    @staticmethod
    def _size_of(image):
        if isinstance(image, Image.Image):
            return image.size
        return int(image.shape[-1]), int(image.shape[-2])

    @property
    def img_size(self):
        return (self.image_width, self.image_height)

    def load_image(self):
        """ Returns the target as a float tensor [C, H, W], C being 3 or 4. """
        image = self._image if self._image is not None else self._loader()
        if isinstance(image, Image.Image):
            image = PILtoTorch(image, self._resolution)
        image = torch.as_tensor(image)
        if image.dim() != 3 or image.shape[0] not in (3, 4):
            raise ValueError("Image of view '{}' has shape {}, expected [3|4, H, W]".format(self.image_name, tuple(image.shape)))
        return image.float()

    def split_image(self, device):
        """ -> (original_image [3, H, W], alpha_mask [1, H, W] or None) on device """
        image = self.load_image().to(device)
        gt_image = image[:3, ...].clamp(0.0, 1.0)
        alpha_mask = image[3:4, ...] if image.shape[0] == 4 else None
        return gt_image, alpha_mask
