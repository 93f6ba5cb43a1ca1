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

import queue
import random
import threading
import torch
from typing import NamedTuple, Optional
from scene.cameras import SceneView

class TrainSample(NamedTuple):
    view : SceneView
    image : torch.Tensor                  # [3, H, W]
    alpha_mask : Optional[torch.Tensor]   # [1, H, W]

class _WorkerError(NamedTuple):
    exc : BaseException

class SceneLoader:
    """
    Prefetches training views on a background thread, one item ahead.
    Views are drawn in random order without replacement, reshuffled every epoch.
    An exception in the worker is re-raised by the next call to `next()`.
    """

    def __init__(self, views, device="cuda", seed=0, timeout=0.1):
        if len(views) == 0:
            raise ValueError("SceneLoader needs at least one view")
        self.views = list(views)
        self.device = device
        self.timeout = timeout
        self._rng = random.Random(seed)
        self._queue = queue.Queue(maxsize=1)
        self._stop = threading.Event()
        self._thread = None

    def start(self):
        if self._thread is not None:
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._worker, name="scene-loader", daemon=True)
        self._thread.start()
        return self

    def _put(self, item):
        while not self._stop.is_set():
            try:
                self._queue.put(item, timeout=self.timeout)
                return True
            except queue.Full:
                continue
        return False

    def _worker(self):
        try:
            while not self._stop.is_set():
                order = list(range(len(self.views)))
                self._rng.shuffle(order)
                for idx in order:
                    view = self.views[idx]
                    image, alpha_mask = view.split_image(self.device)
                    if not self._put(TrainSample(view, image, alpha_mask)):
                        return
        except Exception as e:
            self._put(_WorkerError(e))

    def next(self):
        if self._thread is None:
            self.start()
        item = self._queue.get()
        if isinstance(item, _WorkerError):
            raise item.exc
        return item

    def __iter__(self):
        while True:
            yield self.next()

    def stop(self):
        self._stop.set()
        # unblock a worker waiting on a full queue
        try:
            self._queue.get_nowait()
        except queue.Empty:
            pass
        if self._thread is not None:
            self._thread.join()
            self._thread = None
