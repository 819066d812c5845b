"""Reading pose trajectories and measuring the error between two of them.

A trajectory file holds one pose per line in the form
``time tx ty tz qx qy qz qw``.
"""

from __future__ import annotations

import argparse
import math
import sys
from pathlib import Path
from typing import Iterable

import numpy as np

from slamkit.lie import SE3

DEFAULT_GROUNDTRUTH = "./example/groundtruth.txt"
DEFAULT_ESTIMATED = "./example/estimated.txt"

_FIELDS = 8


def parse_trajectory(lines: Iterable[str]) -> list[SE3]:
    """Parse ``time tx ty tz qx qy qz qw`` lines into poses; blank lines are skipped."""
    poses = []
    for number, line in enumerate(lines, start=1):
        fields = line.split()
        if not fields:
            continue
        if len(fields) != _FIELDS:
            raise ValueError(
                f"line {number}: expected {_FIELDS} values, got {len(fields)}"
            )
        try:
            _, tx, ty, tz, qx, qy, qz, qw = (float(f) for f in fields)
        except ValueError as exc:
            raise ValueError(f"line {number}: {exc}") from exc
        poses.append(SE3.from_quaternion(qw, qx, qy, qz, (tx, ty, tz)))
    return poses


def read_trajectory(path) -> list[SE3]:
    """Read a trajectory file."""
    with open(path, encoding="utf-8") as stream:
        return parse_trajectory(stream)


def absolute_trajectory_error(groundtruth, estimated) -> float:
    """Root mean square of the norms of log(gt_i^-1 * est_i) over all poses."""
    groundtruth = list(groundtruth)
    estimated = list(estimated)
    if not groundtruth or not estimated:
        raise ValueError("trajectories must not be empty")
    if len(groundtruth) != len(estimated):
        raise ValueError(
            f"trajectories differ in length: {len(groundtruth)} vs {len(estimated)}"
        )
    squared = [
        float(np.linalg.norm((gt.inverse() * est).log())) ** 2
        for gt, est in zip(groundtruth, estimated)
    ]
    return math.sqrt(sum(squared) / len(squared))


def main(argv=None) -> int:
    """Report the pose count of one trajectory, or the RMSE between two."""
    parser = argparse.ArgumentParser(
        prog="slamkit-trajectory",
        description="Read trajectories and compute the RMSE between them.",
    )
    parser.add_argument("groundtruth", nargs="?", default=DEFAULT_GROUNDTRUTH)
    parser.add_argument("estimated", nargs="?", default=None)
    parser.add_argument(
        "--single",
        action="store_true",
        help="only read the first trajectory and report its size",
    )
    args = parser.parse_args(argv)

    estimated_path = args.estimated
    if estimated_path is None and not args.single:
        estimated_path = DEFAULT_ESTIMATED

    try:
        groundtruth = read_trajectory(args.groundtruth)
        if estimated_path is None:
            print(f"read total {len(groundtruth)} pose entries")
            return 0
        estimated = read_trajectory(estimated_path)
        rmse = absolute_trajectory_error(groundtruth, estimated)
    except FileNotFoundError as exc:
        print(f"trajectory {Path(exc.filename)} not found.", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    print(f"RMSE = {rmse:g}")
    return 0