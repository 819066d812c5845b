"""Pose graph optimisation on SE(3) with errors expressed in the Lie algebra.

Each vertex is a pose; each edge holds a measured relative transform
``Z_ij`` between two vertices.  The error of an edge is
``log(Z_ij^-1 * T_i^-1 * T_j)`` and poses are updated by left
multiplication with ``exp(dx)``.  Graphs are read from and written to the
``VERTEX_SE3:QUAT`` / ``EDGE_SE3:QUAT`` text format, where poses are
``tx ty tz qx qy qz qw`` and edges carry the upper triangle of a 6x6
information matrix.
"""

from __future__ import annotations

import argparse
import math
import sys
import warnings
from dataclasses import dataclass, field
from typing import Iterable, TextIO

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse import identity as sparse_identity
from scipy.sparse.linalg import spsolve

from slamkit.lie import SE3

VERTEX_TAG = "VERTEX_SE3:QUAT"
EDGE_TAG = "EDGE_SE3:QUAT"

_DIM = 6
_UPPER = list(zip(*np.triu_indices(_DIM)))
_BLOCK_ROWS = np.repeat(np.arange(_DIM), _DIM)
_BLOCK_COLS = np.tile(np.arange(_DIM), _DIM)

_TAU = 1e-5
_MAX_TRIALS = 10
_GOOD_STEP_LOWER = 1.0 / 3.0
_GOOD_STEP_UPPER = 2.0 / 3.0


def jr_inv(error: SE3) -> np.ndarray:
    """Inverse right Jacobian used to linearise an edge error.

    The identity is used, which holds exactly for a zero error and is a good
    approximation for the small errors met near convergence.
    """
    if not isinstance(error, SE3):
        raise TypeError("error must be an SE3 transform")
    return np.eye(_DIM)


def _format(values) -> str:
    return " ".join(repr(float(v)) for v in values)


def _information(information) -> np.ndarray:
    if information is None:
        return np.eye(_DIM)
    info = np.array(information, dtype=float)
    if info.shape != (_DIM, _DIM):
        raise ValueError(f"information matrix must be 6x6, got shape {info.shape}")
    return info


@dataclass
class Edge:
    """A relative-pose measurement between vertices ``i`` and ``j``."""

    i: int
    j: int
    measurement: SE3
    information: np.ndarray = field(default_factory=lambda: np.eye(_DIM))

    def error(self, pose_i: SE3, pose_j: SE3) -> np.ndarray:
        """Twist ``log(Z^-1 * T_i^-1 * T_j)``."""
        return (self.measurement.inverse() * pose_i.inverse() * pose_j).log()

    def jacobians(self, pose_i: SE3, pose_j: SE3):
        """Jacobians of the error with respect to left updates of both poses."""
        J = jr_inv(SE3.exp(self.error(pose_i, pose_j)))
        adj = pose_j.inverse().adjoint()
        return -J @ adj, J @ adj

    def chi2(self, pose_i: SE3, pose_j: SE3) -> float:
        e = self.error(pose_i, pose_j)
        return float(e @ self.information @ e)


class PoseGraph:
    """A graph of SE(3) poses joined by relative-pose measurements."""

    def __init__(self):
        self.vertices: dict[int, SE3] = {}
        self.fixed: set[int] = set()
        self.edges: list[Edge] = []

    def add_vertex(self, index: int, pose: SE3 | None = None, fixed: bool = False) -> None:
        """Add a pose; a fixed pose is never changed by optimisation."""
        if index in self.vertices:
            raise ValueError(f"vertex {index} already exists")
        self.vertices[index] = SE3() if pose is None else pose
        if fixed:
            self.fixed.add(index)

    def add_edge(self, i: int, j: int, measurement: SE3, information=None) -> Edge:
        """Add a measurement of ``T_i^-1 * T_j`` between two existing vertices."""
        for index in (i, j):
            if index not in self.vertices:
                raise KeyError(f"vertex {index} does not exist")
        edge = Edge(i, j, measurement, _information(information))
        self.edges.append(edge)
        return edge

    def total_error(self) -> float:
        """Sum over edges of ``e^T * information * e``."""
        return sum(
            edge.chi2(self.vertices[edge.i], self.vertices[edge.j]) for edge in self.edges
        )

    def _linear_system(self, slots: dict[int, int], size: int):
        rows, cols, vals = [], [], []
        b = np.zeros(size)
        for edge in self.edges:
            pose_i, pose_j = self.vertices[edge.i], self.vertices[edge.j]
            e = edge.error(pose_i, pose_j)
            Ji, Jj = edge.jacobians(pose_i, pose_j)
            info = edge.information
            blocks = [(slots.get(edge.i), Ji), (slots.get(edge.j), Jj)]
            for sa, Ja in blocks:
                if sa is None:
                    continue
                b[sa * _DIM:(sa + 1) * _DIM] += Ja.T @ info @ e
                for sc, Jc in blocks:
                    if sc is None:
                        continue
                    rows.append(sa * _DIM + _BLOCK_ROWS)
                    cols.append(sc * _DIM + _BLOCK_COLS)
                    vals.append((Ja.T @ info @ Jc).reshape(-1))
        if rows:
            H = coo_matrix(
                (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
                shape=(size, size),
            ).tocsr()
        else:
            H = coo_matrix((size, size)).tocsr()
        return H, b

    def _apply(self, dx: np.ndarray, free: list[int]) -> None:
        for slot, index in enumerate(free):
            step = dx[slot * _DIM:(slot + 1) * _DIM]
            self.vertices[index] = SE3.exp(step) * self.vertices[index]

    def optimize(self, iterations: int = 30) -> float:
        """Run Levenberg-Marquardt iterations and return the final total error."""
        free = [k for k in self.vertices if k not in self.fixed]
        chi2 = self.total_error()
        if not free or not self.edges or iterations <= 0:
            return chi2
        slots = {index: slot for slot, index in enumerate(free)}
        size = _DIM * len(free)
        eye = sparse_identity(size, format="csr")
        lam = None
        nu = 2.0
        for _ in range(iterations):
            H, b = self._linear_system(slots, size)
            if lam is None:
                lam = _TAU * max(float(H.diagonal().max()), 1e-12)
            step_norm = None
            for _trial in range(_MAX_TRIALS):
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore")
                    dx = np.asarray(spsolve((H + lam * eye).tocsc(), -b)).reshape(-1)
                if not np.all(np.isfinite(dx)):
                    lam *= nu
                    nu *= 2.0
                    continue
                backup = {index: self.vertices[index] for index in free}
                self._apply(dx, free)
                new_chi2 = self.total_error()
                predicted = float(dx @ (lam * dx - b))
                if math.isfinite(new_chi2) and new_chi2 < chi2 and predicted > 0.0:
                    rho = (chi2 - new_chi2) / predicted
                    alpha = min(1.0 - (2.0 * rho - 1.0) ** 3, _GOOD_STEP_UPPER)
                    lam *= max(_GOOD_STEP_LOWER, alpha)
                    nu = 2.0
                    chi2 = new_chi2
                    step_norm = float(np.linalg.norm(dx))
                    break
                self.vertices.update(backup)
                lam *= nu
                nu *= 2.0
            if step_norm is None or chi2 <= 0.0 or step_norm < 1e-12:
                break
        return chi2

    def write(self, stream: TextIO) -> None:
        """Write all vertices then all edges in the g2o SE3 quaternion format."""
        for index, pose in self.vertices.items():
            w, x, y, z = pose.unit_quaternion()
            stream.write(
                f"{VERTEX_TAG} {index} {_format(pose.translation)} {_format((x, y, z, w))}\n"
            )
        for edge in self.edges:
            m = edge.measurement
            w, x, y, z = m.unit_quaternion()
            upper = [edge.information[r, c] for r, c in _UPPER]
            stream.write(
                f"{EDGE_TAG} {edge.i} {edge.j} {_format(m.translation)} "
                f"{_format((x, y, z, w))} {_format(upper)}\n"
            )


def _pose(data) -> SE3:
    return SE3.from_quaternion(data[6], data[3], data[4], data[5], data[:3])


def read_pose_graph(stream: Iterable[str]) -> PoseGraph:
    """Read a graph; vertex 0 is fixed and lines with other tags are skipped.

    Missing information entries keep the identity's value.
    """
    graph = PoseGraph()
    for number, line in enumerate(stream, start=1):
        fields = line.split()
        if not fields:
            continue
        tag, values = fields[0], fields[1:]
        try:
            if tag == VERTEX_TAG:
                if len(values) < 8:
                    raise ValueError(f"vertex needs 8 values, got {len(values)}")
                index = int(values[0])
                data = [float(v) for v in values[1:8]]
                graph.add_vertex(index, _pose(data), fixed=index == 0)
            elif tag == EDGE_TAG:
                if len(values) < 9:
                    raise ValueError(f"edge needs at least 9 values, got {len(values)}")
                i, j = int(values[0]), int(values[1])
                data = [float(v) for v in values[2:9]]
                info = np.eye(_DIM)
                for (r, c), v in zip(_UPPER, values[9:9 + len(_UPPER)]):
                    info[r, c] = info[c, r] = float(v)
                graph.add_edge(i, j, _pose(data), info)
        except (ValueError, KeyError) as exc:
            raise ValueError(f"line {number}: {exc}") from exc
    return graph


def main(argv=None) -> int:
    """Optimise a pose graph file and save the result."""
    parser = argparse.ArgumentParser(
        prog="slamkit-pose-graph",
        description="Optimise an SE(3) pose graph with Lie-algebra errors.",
    )
    parser.add_argument("graph", help="pose graph file, e.g. sphere.g2o")
    parser.add_argument("--output", default="result.g2o")
    parser.add_argument("--iterations", type=int, default=30)
    args = parser.parse_args(argv)

    try:
        with open(args.graph, encoding="utf-8") as stream:
            graph = read_pose_graph(stream)
    except OSError:
        print(f"file {args.graph} does not exist.")
        return 1
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    print(f"read total {len(graph.vertices)} vertices, {len(graph.edges)} edges.")
    print("optimizing ...")
    before = graph.total_error()
    after = graph.optimize(args.iterations)
    print(f"total error: {before:g} -> {after:g}")
    print("saving optimization results ...")
    with open(args.output, "w", encoding="utf-8") as stream:
        graph.write(stream)
    return 0