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
import math
import numpy as np
from typing import NamedTuple

class BasicPointCloud(NamedTuple):
    points : np.array
    colors : np.array
    normals : np.array

class BoundingBox(NamedTuple):
    center : np.array
    extent : np.array  # half size along each axis

    @property
    def min(self):
        return self.center - self.extent

    @property
    def max(self):
        return self.center + self.extent

    @classmethod
    def from_min_max(cls, mins, maxs):
        mins = np.asarray(mins, dtype=np.float64)
        maxs = np.asarray(maxs, dtype=np.float64)
        return cls(center=(mins + maxs) * 0.5, extent=(maxs - mins) * 0.5)

def getNerfppNorm(cam_centers):
    # cam_centers: [N, 3] camera positions in world space
    cam_centers = np.asarray(cam_centers, dtype=np.float64).reshape(-1, 3)
    center = np.mean(cam_centers, axis=0)
    dist = np.linalg.norm(cam_centers - center[None], axis=1)
    diagonal = np.max(dist) if dist.size > 0 else 0.0
    radius = diagonal * 1.1

    translate = -center

    return {"translate": translate, "radius": radius}

def rotmat2qvec(R):
    Rxx, Ryx, Rzx, Rxy, Ryy, Rzy, Rxz, Ryz, Rzz = np.asarray(R, dtype=np.float64).flat
    K = np.array([
        [Rxx - Ryy - Rzz, 0, 0, 0],
        [Ryx + Rxy, Ryy - Rxx - Rzz, 0, 0],
        [Rzx + Rxz, Rzy + Ryz, Rzz - Rxx - Ryy, 0],
        [Ryz - Rzy, Rzx - Rxz, Rxy - Ryx, Rxx + Ryy + Rzz]]) / 3.0
    eigvals, eigvecs = np.linalg.eigh(K)
    qvec = eigvecs[[3, 0, 1, 2], np.argmax(eigvals)]
    if qvec[0] < 0:
        qvec *= -1
    return qvec

def fov2focal(fov, pixels):
    return pixels / (2 * math.tan(fov / 2))

def knn_distances(points, k, chunk_size=2048):
    """
    Distances from every point to its k nearest other points, ascending, [N, k].
    Brute force over chunks of rows; k is reduced when there are too few points.
    """
    N = points.shape[0]
    k = min(k, N - 1)
    if k <= 0:
        return points.new_zeros((N, 0))
    dists = []
    for start in range(0, N, chunk_size):
        rows = points[start:start + chunk_size]
        d = torch.cdist(rows, points)
        self_idx = torch.arange(rows.shape[0], device=points.device)
        d[self_idx, self_idx + start] = float("inf")
        dists.append(d.topk(k, dim=-1, largest=False).values)
    return torch.cat(dists, dim=0)
