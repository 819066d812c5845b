"""Reading a KITTI-style stereo dataset: calibration and image pairs."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
from PIL import Image

from slamkit.frame import Frame
from slamkit.geometry import Camera
from slamkit.lie import SE3

logger = logging.getLogger(__name__)

_NUM_CAMERAS = 4
_SCALE = 0.5


def _load_gray(path: Path) -> np.ndarray:
    with Image.open(path) as img:
        return np.asarray(img.convert("L"))


def _half_nearest(image: np.ndarray) -> np.ndarray:
    rows, cols = image.shape[:2]
    new_rows = int(np.rint(rows * _SCALE))
    new_cols = int(np.rint(cols * _SCALE))
    return image[0:2 * new_rows:2, 0:2 * new_cols:2].copy()


class Dataset:
    """Cameras and stereo frames of one dataset sequence."""

    def __init__(self, dataset_path):
        self.dataset_path = Path(dataset_path)
        self.current_image_index = 0
        self.cameras: list[Camera] = []

    def load_calibration(self) -> list[Camera]:
        """Read the four projection matrices of ``calib.txt`` into cameras.

        Intrinsics are halved to match the half-size images.
        """
        calib = self.dataset_path / "calib.txt"
        try:
            text = calib.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.error("cannot find %s!", calib)
            raise
        lines = [line.split() for line in text.splitlines() if line.strip()]
        if len(lines) < _NUM_CAMERAS:
            raise ValueError(f"{calib}: expected {_NUM_CAMERAS} cameras, got {len(lines)}")
        cameras = []
        for i, fields in enumerate(lines[:_NUM_CAMERAS]):
            if len(fields) < 13:
                raise ValueError(f"{calib}: camera {i} needs 12 values")
            projection = np.array([float(v) for v in fields[1:13]]).reshape(3, 4)
            K = projection[:, :3]
            try:
                t = np.linalg.solve(K, projection[:, 3])
            except np.linalg.LinAlgError as exc:
                raise ValueError(f"{calib}: camera {i} has a singular matrix") from exc
            K = K * _SCALE
            cameras.append(
                Camera(K[0, 0], K[1, 1], K[0, 2], K[1, 2], float(np.linalg.norm(t)), SE3(None, t))
            )
            logger.info("Camera %d extrinsics: %s", i, t)
        self.cameras = cameras
        self.current_image_index = 0
        return cameras

    def next_frame(self) -> Frame | None:
        """Next stereo pair at half size, or None when the images run out."""
        name = f"{self.current_image_index:06d}.png"
        try:
            left = _load_gray(self.dataset_path / "image_0" / name)
            right = _load_gray(self.dataset_path / "image_1" / name)
        except OSError:
            logger.warning("cannot find images at index %d", self.current_image_index)
            return None
        frame = Frame.create()
        frame.left_img = _half_nearest(left)
        frame.right_img = _half_nearest(right)
        self.current_image_index += 1
        return frame

    def camera(self, camera_id: int) -> Camera:
        if not 0 <= camera_id < len(self.cameras):
            raise IndexError(f"no camera {camera_id}")
        return self.cameras[camera_id]

    def __repr__(self) -> str:
        return f"Dataset({str(self.dataset_path)!r})"