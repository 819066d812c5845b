import numpy as np
import pytest
from PIL import Image
from scipy.ndimage import gaussian_filter

from slamkit import dense_mapping as dm
from slamkit.lie import SE3

SHIFT = 10.0
SCENE_DEPTH = 3.0


def _texture(seed=0):
    rng = np.random.default_rng(seed)
    smooth = gaussian_filter(rng.random((dm.HEIGHT, dm.WIDTH)), 2.0)
    smooth = (smooth - smooth.min()) / (smooth.max() - smooth.min())
    return (smooth * 255).astype(np.uint8)


def _shifted_pair():
    ref = _texture()
    curr = np.roll(ref, int(SHIFT), axis=1)
    tx = SCENE_DEPTH * SHIFT / dm.FX
    return ref, curr, SE3(None, (tx, 0.0, 0.0))


def test_pixel_camera_round_trip():
    for px in [(0.0, 0.0), (100.5, 37.25), (639.0, 479.0)]:
        assert np.allclose(dm.cam2px(dm.px2cam(px)), px)


def test_principal_point_maps_to_optical_axis():
    assert np.allclose(dm.px2cam((dm.CX, dm.CY)), [0.0, 0.0, 1.0])


def test_cam2px_is_scale_invariant():
    p = np.array([0.3, -0.2, 2.0])
    assert np.allclose(dm.cam2px(p), dm.cam2px(5 * p))


def test_inside_border_limits():
    assert dm.inside((dm.BORDER, dm.BORDER))
    assert not dm.inside((dm.BORDER - 0.5, dm.BORDER))
    assert not dm.inside((dm.WIDTH - dm.BORDER, 100))
    assert dm.inside((dm.WIDTH - dm.BORDER - 0.5, 100))
    assert dm.inside((100, dm.HEIGHT - dm.BORDER))
    assert not dm.inside((100, dm.HEIGHT - dm.BORDER + 0.5))


def test_bilinear_at_integer_pixel_matches_image():
    img = _texture(1)
    assert dm.bilinear(img, (50, 60)) == pytest.approx(img[60, 50] / 255.0)


def test_bilinear_exact_on_linear_ramp():
    cols = np.arange(100) * 2
    img = np.tile(cols, (50, 1)).astype(np.uint8)
    assert dm.bilinear(img, (10.5, 7.25)) == pytest.approx(21 / 255.0)


def test_bilinear_outside_raises():
    img = np.zeros((10, 10), dtype=np.uint8)
    with pytest.raises(IndexError):
        dm.bilinear(img, (9.5, 2.0))


def test_ncc_identical_windows_is_one():
    img = _texture(2)
    assert dm.ncc(img, img, (100, 100), (100, 100)) == pytest.approx(1.0, abs=1e-6)


def test_ncc_inverted_image_is_minus_one():
    img = _texture(3)
    inverted = 255 - img
    assert dm.ncc(img, inverted, (200, 150), (200, 150)) == pytest.approx(-1.0, abs=1e-6)


def test_ncc_against_flat_image_is_zero():
    img = _texture(4)
    flat = np.full_like(img, 128)
    assert dm.ncc(img, flat, (200, 150), (200, 150)) == pytest.approx(0.0, abs=1e-9)


def test_epipolar_search_identity_pose_returns_same_pixel():
    img = _texture(5)
    result = dm.epipolar_search(img, img, SE3(), (300.0, 200.0), 3.0, 1.0)
    assert result is not None
    pt, _ = result
    assert np.allclose(pt, (300.0, 200.0))


def test_epipolar_search_finds_shifted_match():
    ref, curr, T_C_R = _shifted_pair()
    result = dm.epipolar_search(ref, curr, T_C_R, (320.0, 240.0), 3.0, np.sqrt(3.0))
    assert result is not None
    pt, direction = result
    assert abs(pt[0] - (320.0 + SHIFT)) < 0.5
    assert pt[1] == pytest.approx(240.0, abs=1e-6)
    assert abs(direction[0]) == pytest.approx(1.0, abs=1e-9)
    assert direction[1] == pytest.approx(0.0, abs=1e-9)


def test_epipolar_search_unrelated_image_fails():
    ref = _texture(6)
    rng = np.random.default_rng(7)
    curr = rng.integers(0, 256, size=ref.shape).astype(np.uint8)
    T = SE3(None, (0.06, 0.0, 0.0))
    assert dm.epipolar_search(ref, curr, T, (320.0, 240.0), 3.0, np.sqrt(3.0)) is None


def test_update_depth_filter_triangulates_depth():
    _, _, T_C_R = _shifted_pair()
    depth = np.full((dm.HEIGHT, dm.WIDTH), 2.0)
    cov = np.full((dm.HEIGHT, dm.WIDTH), 1e9)
    mu, sigma2 = dm.update_depth_filter(
        (320.0, 240.0), (330.0, 240.0), T_C_R, (-1.0, 0.0), depth, cov
    )
    assert mu == pytest.approx(SCENE_DEPTH, abs=0.05)
    assert depth[240, 320] == mu
    assert cov[240, 320] == sigma2
    assert sigma2 < 1e9


def test_update_depth_filter_fuses_between_prior_and_measurement():
    _, _, T_C_R = _shifted_pair()
    depth = np.full((dm.HEIGHT, dm.WIDTH), 2.0)
    cov = np.full((dm.HEIGHT, dm.WIDTH), 3.0)
    mu, sigma2 = dm.update_depth_filter(
        (320.0, 240.0), (330.0, 240.0), T_C_R, (-1.0, 0.0), depth, cov
    )
    assert 2.0 < mu < SCENE_DEPTH + 0.05
    assert 0.0 < sigma2 < 3.0


def test_update_only_touches_unconverged_pixels():
    ref, curr, T_C_R = _shifted_pair()
    depth = np.full((dm.HEIGHT, dm.WIDTH), 3.0)
    cov = np.full((dm.HEIGHT, dm.WIDTH), 0.05)
    depth[240, 320] = 2.5
    cov[240, 320] = 3.0
    before_depth = depth.copy()
    count = dm.update(ref, curr, T_C_R, depth, cov)
    assert count == 1
    assert 2.5 < depth[240, 320] < SCENE_DEPTH + 0.05
    assert cov[240, 320] < 3.0
    mask = np.ones_like(depth, dtype=bool)
    mask[240, 320] = False
    assert np.array_equal(depth[mask], before_depth[mask])


def test_update_rejects_wrong_shape():
    img = np.zeros((10, 10), dtype=np.uint8)
    with pytest.raises(ValueError):
        dm.update(img, img, SE3(), np.zeros((10, 10)), np.zeros((10, 10)))


def test_evaluate_depth_equal_maps():
    d = np.full((dm.HEIGHT, dm.WIDTH), 2.0)
    err = dm.evaluate_depth(d, d.copy())
    assert err.mean_squared_error == 0.0
    assert err.mean_error == 0.0


def test_evaluate_depth_ignores_border():
    truth = np.full((dm.HEIGHT, dm.WIDTH), 4.0)
    estimate = np.full((dm.HEIGHT, dm.WIDTH), 3.0)
    estimate[:5, :] = 1000.0
    err = dm.evaluate_depth(truth, estimate)
    assert err.mean_error == pytest.approx(1.0)
    assert err.mean_squared_error == pytest.approx(1.0)


def test_evaluate_depth_shape_mismatch():
    with pytest.raises(ValueError):
        dm.evaluate_depth(np.zeros((100, 100)), np.zeros((100, 90)))


def _write_dataset(root, lines, depth_values=None):
    (root / "images").mkdir()
    (root / "depthmaps").mkdir()
    (root / dm.TRAJECTORY_FILE).write_text("\n".join(lines) + "\n", encoding="utf-8")
    count = dm.HEIGHT * dm.WIDTH if depth_values is None else depth_values
    (root / dm.REFERENCE_DEPTH_FILE).write_text(" ".join(["100"] * count), encoding="utf-8")


def test_read_dataset(tmp_path):
    _write_dataset(
        tmp_path,
        ["a.png 1 2 3 0 0 0 1", "b.png 0.5 0 0 0 0 0 1"],
    )
    data = dm.read_dataset(tmp_path)
    assert data.image_files == [tmp_path / "images" / "a.png", tmp_path / "images" / "b.png"]
    assert np.allclose(data.poses[0].translation, [1, 2, 3])
    assert np.allclose(data.poses[1].rotation_matrix, np.eye(3))
    assert data.ref_depth.shape == (dm.HEIGHT, dm.WIDTH)
    assert np.all(data.ref_depth == 1.0)


def test_read_dataset_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        dm.read_dataset(tmp_path)


def test_read_dataset_short_depth(tmp_path):
    _write_dataset(tmp_path, ["a.png 0 0 0 0 0 0 1"], depth_values=10)
    with pytest.raises(ValueError):
        dm.read_dataset(tmp_path)


def test_main_missing_dataset(tmp_path):
    assert dm.main([str(tmp_path / "nothing")]) == 1


def test_main_single_image_writes_initial_depth(tmp_path):
    _write_dataset(tmp_path, ["a.png 0 0 0 0 0 0 1"])
    Image.fromarray(_texture(8)).save(tmp_path / "images" / "a.png")
    out = tmp_path / "depth.png"
    assert dm.main([str(tmp_path), "--output", str(out)]) == 0
    saved = np.asarray(Image.open(out))
    assert saved.shape == (dm.HEIGHT, dm.WIDTH)
    assert np.all(saved == round(dm.INIT_DEPTH))