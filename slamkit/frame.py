"""Frames, 2D features and 3D map points of the stereo visual odometry.

A feature refers weakly to the frame that holds it and to the map point it
has been associated with.  A map point refers weakly to the features that
observe it.
"""

from __future__ import annotations

import itertools
import threading
import weakref

import numpy as np

from slamkit.lie import SE3


def _weak(obj):
    return None if obj is None else weakref.ref(obj)


def _deref(ref):
    return None if ref is None else ref()


class Feature:
    """A 2D feature point, associated with a map point after triangulation."""

    def __init__(self, frame=None, position=(0.0, 0.0), is_on_left_image=True):
        pos = np.asarray(position, dtype=float).reshape(-1)
        if pos.shape != (2,):
            raise ValueError(f"position must be a 2D point, got shape {np.shape(position)}")
        self._frame = _weak(frame)
        self.position = pos
        self._map_point = None
        self.is_outlier = False
        self.is_on_left_image = is_on_left_image

    @property
    def frame(self):
        """The frame holding this feature, or None once it is gone."""
        return _deref(self._frame)

    @frame.setter
    def frame(self, frame) -> None:
        self._frame = _weak(frame)

    @property
    def map_point(self):
        """The associated map point, or None."""
        return _deref(self._map_point)

    @map_point.setter
    def map_point(self, map_point) -> None:
        self._map_point = _weak(map_point)

    def __repr__(self) -> str:
        return (
            f"Feature(position={self.position.tolist()!r}, "
            f"left={self.is_on_left_image}, outlier={self.is_outlier})"
        )


class Frame:
    """A stereo frame; every frame has an id, keyframes also a keyframe id."""

    _ids = itertools.count()
    _keyframe_ids = itertools.count()
    _counter_lock = threading.Lock()

    def __init__(self, frame_id=0, time_stamp=0.0, pose=None, left_img=None, right_img=None):
        self.id = frame_id
        self.keyframe_id = 0
        self.is_keyframe = False
        self.time_stamp = time_stamp
        self._pose = SE3() if pose is None else pose
        self._pose_lock = threading.Lock()
        self.left_img = left_img
        self.right_img = right_img
        self.features_left: list[Feature] = []
        # A None entry marks a left feature without a match in the right image.
        self.features_right: list[Feature | None] = []

    @property
    def pose(self) -> SE3:
        """World-to-camera pose."""
        with self._pose_lock:
            return self._pose

    @pose.setter
    def pose(self, pose: SE3) -> None:
        with self._pose_lock:
            self._pose = pose

    @classmethod
    def create(cls) -> "Frame":
        """New frame with the next frame id."""
        with Frame._counter_lock:
            frame_id = next(Frame._ids)
        return cls(frame_id=frame_id)

    def set_keyframe(self) -> None:
        """Mark this frame as a keyframe and give it the next keyframe id."""
        with Frame._counter_lock:
            keyframe_id = next(Frame._keyframe_ids)
        self.is_keyframe = True
        self.keyframe_id = keyframe_id

    def __repr__(self) -> str:
        return f"Frame(id={self.id}, keyframe_id={self.keyframe_id}, keyframe={self.is_keyframe})"


class MapPoint:
    """A landmark formed by triangulating features."""

    _ids = itertools.count()
    _counter_lock = threading.Lock()

    def __init__(self, point_id=0, position=None):
        self.id = point_id
        self.is_outlier = False
        self._pos = np.zeros(3) if position is None else np.asarray(position, dtype=float).reshape(3).copy()
        self._lock = threading.Lock()
        self.observed_times = 0
        self._observations: list[weakref.ref] = []

    @property
    def pos(self) -> np.ndarray:
        """Position in the world frame."""
        with self._lock:
            return self._pos.copy()

    @pos.setter
    def pos(self, position) -> None:
        value = np.asarray(position, dtype=float).reshape(-1)
        if value.shape != (3,):
            raise ValueError(f"position must be a 3D point, got shape {np.shape(position)}")
        with self._lock:
            self._pos = value.copy()

    @classmethod
    def create(cls) -> "MapPoint":
        """New map point with the next map point id."""
        with MapPoint._counter_lock:
            point_id = next(MapPoint._ids)
        return cls(point_id=point_id)

    def add_observation(self, feature: Feature) -> None:
        with self._lock:
            self._observations.append(weakref.ref(feature))
            self.observed_times += 1

    def remove_observation(self, feature: Feature) -> bool:
        """Drop an observing feature and detach it; returns whether it was found."""
        with self._lock:
            for position, ref in enumerate(self._observations):
                if ref() is feature:
                    del self._observations[position]
                    feature.map_point = None
                    self.observed_times -= 1
                    return True
        return False

    def observations(self) -> list[Feature]:
        """The observing features that still exist."""
        with self._lock:
            refs = list(self._observations)
        return [f for f in (ref() for ref in refs) if f is not None]

    def __repr__(self) -> str:
        return f"MapPoint(id={self.id}, pos={self.pos.tolist()!r}, observed={self.observed_times})"