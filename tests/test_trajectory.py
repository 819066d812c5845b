import math

import numpy as np
import pytest

from slamkit.lie import SE3
from slamkit.trajectory import (
    absolute_trajectory_error,
    main,
    parse_trajectory,
    read_trajectory,
)

LINES = [
    "1305031102.175304 1.3405 0.6266 1.6575 0.6574 0.6126 -0.2949 -0.3248",
    "",
    "1305031102.211214 1.3303 0.6256 1.6464 0.6579 0.6161 -0.2932 -0.3189",
]


def test_parse_reads_translation_and_rotation():
    poses = parse_trajectory(LINES)
    assert len(poses) == 2
    np.testing.assert_allclose(poses[0].translation, [1.3405, 0.6266, 1.6575])
    q = np.array([-0.3248, 0.6574, 0.6126, -0.2949])
    q /= np.linalg.norm(q)
    got = poses[0].unit_quaternion()
    assert min(np.linalg.norm(got - q), np.linalg.norm(got + q)) < 1e-9


def test_parse_rejects_wrong_field_count():
    with pytest.raises(ValueError):
        parse_trajectory(["0 1 2 3"])


def test_parse_rejects_non_numbers():
    with pytest.raises(ValueError):
        parse_trajectory(["0 1 2 3 a 0 0 1"])


def test_read_trajectory_file(tmp_path):
    path = tmp_path / "traj.txt"
    path.write_text("\n".join(LINES) + "\n")
    assert len(read_trajectory(path)) == 2


def test_read_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_trajectory(tmp_path / "missing.txt")


def test_error_of_identical_trajectories_is_zero():
    poses = parse_trajectory(LINES)
    assert absolute_trajectory_error(poses, poses) == pytest.approx(0.0, abs=1e-9)


def test_error_of_translated_trajectory():
    gt = [SE3(), SE3()]
    est = [SE3(None, (1.0, 0.0, 0.0)), SE3(None, (0.0, 1.0, 0.0))]
    assert absolute_trajectory_error(gt, est) == pytest.approx(1.0)


def test_error_is_rms_of_pose_errors():
    gt = [SE3(), SE3()]
    est = [SE3(), SE3(None, (0.0, 0.0, 2.0))]
    assert absolute_trajectory_error(gt, est) == pytest.approx(math.sqrt(2.0))


def test_error_requires_equal_length():
    with pytest.raises(ValueError):
        absolute_trajectory_error([SE3()], [SE3(), SE3()])


def test_error_requires_non_empty():
    with pytest.raises(ValueError):
        absolute_trajectory_error([], [])


def test_main_prints_rmse(tmp_path, capsys):
    gt = tmp_path / "gt.txt"
    est = tmp_path / "est.txt"
    gt.write_text("0 0 0 0 0 0 0 1\n")
    est.write_text("0 1 0 0 0 0 0 1\n")
    assert main([str(gt), str(est)]) == 0
    assert "RMSE = 1" in capsys.readouterr().out


def test_main_single_counts_entries(tmp_path, capsys):
    gt = tmp_path / "gt.txt"
    gt.write_text("\n".join(LINES))
    assert main([str(gt), "--single"]) == 0
    assert "read total 2 pose entries" in capsys.readouterr().out


def test_main_missing_file_fails(tmp_path):
    assert main([str(tmp_path / "a.txt"), str(tmp_path / "b.txt")]) == 1