"""Rotations and rigid-body transforms: SO(3), SE(3) and their Lie algebras.

Tangent vectors of SE(3) are ordered translation first, rotation last.
Quaternions are passed and returned in (w, x, y, z) order.
"""

from __future__ import annotations

import math

import numpy as np

_SMALL_ANGLE = 1e-8
_QUAT_EPS = 1e-10
_ORTHO_TOL = 1e-6


def _vec(v, size: int) -> np.ndarray:
    arr = np.asarray(v, dtype=float).reshape(-1)
    if arr.shape != (size,):
        raise ValueError(f"expected a vector of length {size}, got shape {np.shape(v)}")
    return arr


def hat(v) -> np.ndarray:
    """Return the skew-symmetric matrix of a 3-vector."""
    x, y, z = _vec(v, 3)
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def vee(m) -> np.ndarray:
    """Return the 3-vector of a skew-symmetric matrix."""
    mat = np.asarray(m, dtype=float)
    if mat.shape != (3, 3):
        raise ValueError(f"expected a 3x3 matrix, got shape {mat.shape}")
    return np.array([mat[2, 1], mat[0, 2], mat[1, 0]])


def angle_axis_to_matrix(angle: float, axis) -> np.ndarray:
    """Rotation matrix for a rotation of ``angle`` radians about ``axis``."""
    k = _vec(axis, 3)
    norm = np.linalg.norm(k)
    if norm < _QUAT_EPS:
        raise ValueError("rotation axis must be non-zero")
    k = k / norm
    c, s = math.cos(angle), math.sin(angle)
    return c * np.eye(3) + s * hat(k) + (1.0 - c) * np.outer(k, k)


def quaternion_to_matrix(w: float, x: float, y: float, z: float) -> np.ndarray:
    """Rotation matrix of a quaternion; the quaternion is normalised first."""
    q = np.array([w, x, y, z], dtype=float)
    norm = np.linalg.norm(q)
    if norm < _QUAT_EPS:
        raise ValueError("quaternion must be non-zero")
    w, x, y, z = q / norm
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
            [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
            [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
        ]
    )


def matrix_to_quaternion(matrix) -> np.ndarray:
    """Quaternion (w, x, y, z) of a rotation matrix."""
    m = np.asarray(matrix, dtype=float)
    if m.shape != (3, 3):
        raise ValueError(f"expected a 3x3 matrix, got shape {m.shape}")
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0.0:
        t = math.sqrt(trace + 1.0)
        w = 0.5 * t
        t = 0.5 / t
        return np.array(
            [w, (m[2, 1] - m[1, 2]) * t, (m[0, 2] - m[2, 0]) * t, (m[1, 0] - m[0, 1]) * t]
        )
    i = 0
    if m[1, 1] > m[0, 0]:
        i = 1
    if m[2, 2] > m[i, i]:
        i = 2
    j = (i + 1) % 3
    k = (j + 1) % 3
    t = math.sqrt(m[i, i] - m[j, j] - m[k, k] + 1.0)
    xyz = np.zeros(3)
    xyz[i] = 0.5 * t
    t = 0.5 / t
    w = (m[k, j] - m[j, k]) * t
    xyz[j] = (m[j, i] + m[i, j]) * t
    xyz[k] = (m[k, i] + m[i, k]) * t
    return np.array([w, *xyz])


def euler_zyx(matrix) -> np.ndarray:
    """Yaw, pitch and roll (Z-Y-X order) of a rotation matrix.

    Yaw is returned in [0, pi]; pitch and roll in [-pi, pi].
    """
    m = np.asarray(matrix, dtype=float)
    if m.shape != (3, 3):
        raise ValueError(f"expected a 3x3 matrix, got shape {m.shape}")
    yaw = math.atan2(m[1, 0], m[0, 0])
    c2 = math.hypot(m[2, 2], m[2, 1])
    if yaw < 0.0:
        yaw += math.pi
        pitch = math.atan2(-m[2, 0], -c2)
    else:
        pitch = math.atan2(-m[2, 0], c2)
    s1, c1 = math.sin(yaw), math.cos(yaw)
    roll = math.atan2(s1 * m[0, 2] - c1 * m[1, 2], c1 * m[1, 1] - s1 * m[0, 1])
    return np.array([yaw, pitch, roll])


def transform_between(T1w: "SE3", T2w: "SE3", p) -> np.ndarray:
    """Express a point given in frame 1 in frame 2, both poses being world-to-frame."""
    return (T2w * T1w.inverse()) * _vec(p, 3)


class SO3:
    """A 3D rotation."""

    __slots__ = ("matrix",)

    def __init__(self, matrix=None):
        if matrix is None:
            m = np.eye(3)
        else:
            m = np.array(matrix, dtype=float)
            if m.shape != (3, 3):
                raise ValueError(f"expected a 3x3 matrix, got shape {m.shape}")
            if not np.allclose(m.T @ m, np.eye(3), atol=_ORTHO_TOL) or np.linalg.det(m) <= 0:
                raise ValueError("matrix is not a rotation matrix")
        self.matrix = m

    @classmethod
    def _make(cls, m: np.ndarray) -> "SO3":
        obj = object.__new__(cls)
        obj.matrix = m
        return obj

    @classmethod
    def from_quaternion(cls, w, x, y, z) -> "SO3":
        """Rotation of a quaternion, normalised first."""
        return cls._make(quaternion_to_matrix(w, x, y, z))

    @classmethod
    def exp(cls, omega) -> "SO3":
        """Exponential map from a rotation vector."""
        w = _vec(omega, 3)
        theta = float(np.linalg.norm(w))
        if theta < _SMALL_ANGLE:
            a = 1.0 - theta * theta / 6.0
            b = 0.5 - theta * theta / 24.0
        else:
            a = math.sin(theta) / theta
            b = (1.0 - math.cos(theta)) / (theta * theta)
        k = hat(w)
        return cls._make(np.eye(3) + a * k + b * (k @ k))

    def log(self) -> np.ndarray:
        """Logarithmic map to a rotation vector with norm at most pi."""
        w, x, y, z = self.unit_quaternion()
        squared_n = x * x + y * y + z * z
        n = math.sqrt(squared_n)
        if squared_n < _QUAT_EPS * _QUAT_EPS:
            factor = 2.0 / w - (2.0 / 3.0) * squared_n / (w * w * w)
        elif abs(w) < _QUAT_EPS:
            factor = math.pi / n if w > 0 else -math.pi / n
        else:
            factor = 2.0 * math.atan(n / w) / n
        return factor * np.array([x, y, z])

    def inverse(self) -> "SO3":
        return SO3._make(self.matrix.T.copy())

    def unit_quaternion(self) -> np.ndarray:
        """Unit quaternion (w, x, y, z) of this rotation."""
        q = matrix_to_quaternion(self.matrix)
        return q / np.linalg.norm(q)

    def __mul__(self, other):
        if isinstance(other, SO3):
            q = matrix_to_quaternion(self.matrix @ other.matrix)
            return SO3._make(quaternion_to_matrix(*q))
        try:
            arr = np.asarray(other, dtype=float)
        except (TypeError, ValueError):
            return NotImplemented
        if arr.shape == (3,):
            return self.matrix @ arr
        if arr.ndim == 2 and arr.shape[1] == 3:
            return arr @ self.matrix.T
        raise ValueError(f"cannot rotate an array of shape {arr.shape}")

    def __repr__(self) -> str:
        return f"SO3({self.matrix.tolist()!r})"


class SE3:
    """A rigid-body transform: rotation followed by translation."""

    __slots__ = ("so3", "translation")

    def __init__(self, rotation=None, translation=None):
        if rotation is None:
            self.so3 = SO3()
        elif isinstance(rotation, SO3):
            self.so3 = rotation
        else:
            self.so3 = SO3(rotation)
        self.translation = np.zeros(3) if translation is None else _vec(translation, 3).copy()

    @property
    def rotation_matrix(self) -> np.ndarray:
        return self.so3.matrix

    @classmethod
    def from_quaternion(cls, w, x, y, z, translation=None) -> "SE3":
        """Transform from a quaternion (normalised first) and a translation."""
        return cls(SO3.from_quaternion(w, x, y, z), translation)

    @classmethod
    def exp(cls, xi) -> "SE3":
        """Exponential map from a twist (translation part first)."""
        v = _vec(xi, 6)
        rho, omega = v[:3], v[3:]
        so3 = SO3.exp(omega)
        theta = float(np.linalg.norm(omega))
        k = hat(omega)
        if theta < _SMALL_ANGLE:
            V = np.eye(3) + 0.5 * k + (k @ k) / 6.0
        else:
            V = (
                np.eye(3)
                + (1.0 - math.cos(theta)) / theta**2 * k
                + (theta - math.sin(theta)) / theta**3 * (k @ k)
            )
        return cls(so3, V @ rho)

    @staticmethod
    def hat(xi) -> np.ndarray:
        """4x4 matrix form of a twist."""
        v = _vec(xi, 6)
        m = np.zeros((4, 4))
        m[:3, :3] = hat(v[3:])
        m[:3, 3] = v[:3]
        return m

    @staticmethod
    def vee(m) -> np.ndarray:
        """Twist of a 4x4 matrix in se(3)."""
        mat = np.asarray(m, dtype=float)
        if mat.shape != (4, 4):
            raise ValueError(f"expected a 4x4 matrix, got shape {mat.shape}")
        return np.concatenate([mat[:3, 3], vee(mat[:3, :3])])

    def log(self) -> np.ndarray:
        """Logarithmic map to a twist (translation part first)."""
        omega = self.so3.log()
        theta = float(np.linalg.norm(omega))
        k = hat(omega)
        if theta < _SMALL_ANGLE:
            V_inv = np.eye(3) - 0.5 * k + (k @ k) / 12.0
        else:
            half = 0.5 * theta
            V_inv = (
                np.eye(3)
                - 0.5 * k
                + (1.0 - theta * math.cos(half) / (2.0 * math.sin(half))) / theta**2 * (k @ k)
            )
        return np.concatenate([V_inv @ self.translation, omega])

    def inverse(self) -> "SE3":
        r_inv = self.so3.inverse()
        return SE3(r_inv, -(r_inv.matrix @ self.translation))

    def matrix(self) -> np.ndarray:
        m = np.eye(4)
        m[:3, :3] = self.so3.matrix
        m[:3, 3] = self.translation
        return m

    def matrix3x4(self) -> np.ndarray:
        return self.matrix()[:3, :]

    def adjoint(self) -> np.ndarray:
        """6x6 adjoint matrix, acting on twists ordered translation first."""
        r = self.so3.matrix
        adj = np.zeros((6, 6))
        adj[:3, :3] = r
        adj[:3, 3:] = hat(self.translation) @ r
        adj[3:, 3:] = r
        return adj

    def unit_quaternion(self) -> np.ndarray:
        return self.so3.unit_quaternion()

    def __mul__(self, other):
        if isinstance(other, SE3):
            return SE3(self.so3 * other.so3, self.so3.matrix @ other.translation + self.translation)
        try:
            arr = np.asarray(other, dtype=float)
        except (TypeError, ValueError):
            return NotImplemented
        if arr.shape == (3,):
            return self.so3.matrix @ arr + self.translation
        if arr.ndim == 2 and arr.shape[1] == 3:
            return arr @ self.so3.matrix.T + self.translation
        raise ValueError(f"cannot transform an array of shape {arr.shape}")

    def __repr__(self) -> str:
        return f"SE3(rotation={self.so3.matrix.tolist()!r}, translation={self.translation.tolist()!r})"