import numpy as np
import pytest

from slamkit.config import Config


def _write(tmp_path, text):
    path = tmp_path / "default.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_reads_opencv_style_file(tmp_path):
    path = _write(
        tmp_path,
        "%YAML:1.0\n---\ndataset_dir: /data/kitti/00\nnum_features: 150\nnum_features_init: 50\n",
    )
    config = Config(path)
    assert config.get("dataset_dir") == "/data/kitti/00"
    assert config.get("num_features") == 150
    assert config.get("num_features_init") == 50


def test_plain_yaml(tmp_path):
    config = Config(_write(tmp_path, "scale: 0.5\n"))
    assert config.get("scale") == 0.5


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        Config(tmp_path / "absent.yaml")


def test_missing_key(tmp_path):
    config = Config(_write(tmp_path, "a: 1\n"))
    with pytest.raises(KeyError):
        config.get("b")


def test_non_mapping_rejected(tmp_path):
    with pytest.raises(ValueError):
        Config(_write(tmp_path, "- 1\n- 2\n"))


def test_opencv_matrix(tmp_path):
    text = (
        "%YAML:1.0\n"
        "K: !!opencv-matrix\n"
        "  rows: 2\n"
        "  cols: 2\n"
        "  dt: d\n"
        "  data: [1.0, 2.0, 3.0, 4.0]\n"
    )
    config = Config(_write(tmp_path, text))
    np.testing.assert_allclose(config.get("K"), [[1.0, 2.0], [3.0, 4.0]])